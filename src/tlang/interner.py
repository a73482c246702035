"""String interner for identifiers, package paths and string literals."""

Symbol = int


class StringInterner:
  """Stores each distinct string once and hands out integer symbols."""

  def __init__(self) -> None:
    self._symbols: dict[str, Symbol] = {}
    self._strings: list[str] = []

  def intern(self, text: str) -> Symbol:
    symbol = self._symbols.get(text)
    if symbol is None:
      symbol = len(self._strings)
      self._strings.append(text)
      self._symbols[text] = symbol
    return symbol

  def get(self, text: str) -> Symbol | None:
    """Look up a symbol without interning."""
    return self._symbols.get(text)

  def resolve(self, symbol: Symbol) -> str:
    if not 0 <= symbol < len(self._strings):
      raise KeyError(f"Unknown symbol {symbol}")
    return self._strings[symbol]

  def __contains__(self, text: object) -> bool:
    return text in self._symbols

  def __len__(self) -> int:
    return len(self._strings)
