"""Lexer for the T language.

Produces tokens lazily, one per ``next_token()`` call. Comments are returned as
COMMENT tokens; the token provider drops them before the parser sees them.
"""

import logging

from .tokens import KEYWORDS, Token, TokenType
from .interner import StringInterner
from .location import SourceLocation, byte_offsets

logger = logging.getLogger(__name__)

SIMPLE_TOKENS: dict[str, TokenType] = {
  "(": TokenType.LPAREN,
  ")": TokenType.RPAREN,
  "[": TokenType.LBRACKET,
  "]": TokenType.RBRACKET,
  "{": TokenType.LBRACE,
  "}": TokenType.RBRACE,
  ",": TokenType.COMMA,
  ";": TokenType.SEMICOLON,
  "+": TokenType.PLUS,
  "*": TokenType.STAR,
  "%": TokenType.PERCENT,
  "^": TokenType.CARET,
  "~": TokenType.TILDE,
}

# (first char) -> [(second char, two-char type)], single-char type
COMPOUND_TOKENS: dict[str, tuple[list[tuple[str, TokenType]], TokenType]] = {
  "=": ([("=", TokenType.EQ)], TokenType.ASSIGN),
  "!": ([("=", TokenType.NE)], TokenType.BANG),
  "<": ([("=", TokenType.LE), ("<", TokenType.SHL)], TokenType.LT),
  ">": ([("=", TokenType.GE), (">", TokenType.SHR)], TokenType.GT),
  "&": ([("&", TokenType.AND)], TokenType.AMP),
  "|": ([("|", TokenType.OR)], TokenType.PIPE),
  "-": ([(">", TokenType.ARROW)], TokenType.MINUS),
  ".": ([(".", TokenType.DOTDOT)], TokenType.DOT),
  ":": ([(":", TokenType.COLONCOLON)], TokenType.COLON),
}

# Tokens after which a '-' is a binary minus rather than a sign
VALUE_END_TOKENS = frozenset(
  {
    TokenType.UINT64,
    TokenType.INT64,
    TokenType.INTEGER,
    TokenType.STRING,
    TokenType.IDENT,
    TokenType.TRUE,
    TokenType.FALSE,
    TokenType.NULL,
    TokenType.SELF,
    TokenType.RPAREN,
    TokenType.RBRACKET,
    TokenType.RBRACE,
  }
)

ESCAPES: dict[str, str] = {"n": "\n", "t": "\t", '"': '"', "\\": "\\"}

DIGITS = frozenset("0123456789")
HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


class LexerError(Exception):
  """Raised when the lexer encounters invalid input."""

  def __init__(self, message: str, kind: str, location: SourceLocation, span: tuple[int, int]) -> None:
    super().__init__(f"{message} at line {location.line}, column {location.column}")
    self.message = message
    self.kind = kind
    self.location = location
    self.span = span


class Lexer:
  """Tokenizes T source code on demand."""

  def __init__(self, source: str, interner: StringInterner | None = None) -> None:
    self.source = source
    self.interner = interner if interner is not None else StringInterner()
    self.pos = 0
    self.line = 1
    self.column = 1
    self.last_type: TokenType | None = None
    self.offsets = byte_offsets(source)

  def _current(self) -> str:
    return self.source[self.pos] if self.pos < len(self.source) else ""

  def _peek(self, offset: int = 1) -> str:
    pos = self.pos + offset
    return self.source[pos] if pos < len(self.source) else ""

  def _advance(self) -> str:
    ch = self._current()
    self.pos += 1
    self.line, self.column = (self.line + 1, 1) if ch == "\n" else (self.line, self.column + 1)
    return ch

  def _read_while(self, pred) -> str:
    start = self.pos
    while self._current() and pred(self._current()):
      self._advance()
    return self.source[start : self.pos]

  def byte_offset(self, pos: int) -> int:
    """UTF-8 byte offset of the character at pos; token spans use byte offsets."""
    pos = min(pos, len(self.source))
    return pos if self.offsets is None else self.offsets[pos]

  def _location(self, offset: int, line: int, col: int) -> SourceLocation:
    return SourceLocation(line, col, self.byte_offset(offset))

  def _error(self, message: str, kind: str, start: int, line: int, col: int) -> LexerError:
    span = (self.byte_offset(start), self.byte_offset(self.pos))
    return LexerError(message, kind, self._location(start, line, col), span)

  def _emit(self, type: TokenType, value: int | str | None, start: int) -> Token:
    self.last_type = type
    return Token(type, value, self.byte_offset(start), self.byte_offset(self.pos))

  def _compound(self, ch: str, start: int) -> Token:
    """Handle one- or two-character operators like ==, <<, ->, .., ::."""
    pairs, single = COMPOUND_TOKENS[ch]
    self._advance()
    for second, two_type in pairs:
      if self._current() == second:
        self._advance()
        return self._emit(two_type, None, start)
    return self._emit(single, None, start)

  def _read_string(self, start: int, line: int, col: int) -> Token:
    """Read a string literal with escape sequences."""
    self._advance()  # opening quote
    chars: list[str] = []
    bad_escape: str | None = None
    while self._current() and self._current() != '"':
      if self._current() == "\n":
        raise self._error("Unterminated string literal", "unterminated_string", start, line, col)
      if self._current() == "\\":
        self._advance()
        escaped = self._advance()
        if escaped in ESCAPES:
          chars.append(ESCAPES[escaped])
        elif bad_escape is None:
          bad_escape = escaped
      else:
        chars.append(self._advance())
    if not self._current():
      raise self._error("Unterminated string literal", "unterminated_string", start, line, col)
    self._advance()  # closing quote
    if bad_escape is not None:
      raise self._error(f"Invalid escape sequence '\\{bad_escape}'", "invalid_escape", start, line, col)
    return self._emit(TokenType.STRING, self.interner.intern("".join(chars)), start)

  def _read_block_comment(self, start: int, line: int, col: int) -> Token:
    """Read a /* ... */ comment, honoring nested comments."""
    self._advance()
    self._advance()
    depth = 1
    while depth > 0:
      if not self._current():
        raise self._error("Unterminated block comment", "unterminated_comment", start, line, col)
      if self._current() == "/" and self._peek() == "*":
        self._advance()
        self._advance()
        depth += 1
      elif self._current() == "*" and self._peek() == "/":
        self._advance()
        self._advance()
        depth -= 1
      else:
        self._advance()
    text = self.source[start + 2 : self.pos - 2]
    return Token(TokenType.COMMENT, text, self.byte_offset(start), self.byte_offset(self.pos))

  def _read_suffix(self, start: int, line: int, col: int) -> str:
    """Read an optional u64/i64 suffix directly following a digit sequence."""
    suffix = self._read_while(lambda c: c.isalnum() or c == "_")
    if suffix not in ("", "u64", "i64"):
      raise self._error(f"Invalid numeric suffix '{suffix}'", "invalid_suffix", start, line, col)
    return suffix

  def _read_number(self, start: int, line: int, col: int, negative: bool = False) -> Token:
    if negative:
      self._advance()
    if self._current() == "0" and self._peek() in ("x", "X"):
      self._advance()
      self._advance()
      digits = self._read_while(lambda c: c in HEX_DIGITS)
      if not digits:
        raise self._error("Hex literal requires at least one digit", "invalid_suffix", start, line, col)
      raw = f"0x{digits}"
      value = int(digits, 16)
    else:
      raw = self._read_while(lambda c: c in DIGITS)
      value = int(raw)
    suffix = self._read_suffix(start, line, col)
    match suffix:
      case "u64":
        return self._emit(TokenType.UINT64, value, start)
      case "i64":
        return self._emit(TokenType.INT64, -value if negative else value, start)
    return self._emit(TokenType.INTEGER, raw, start)

  def _starts_negative_i64(self) -> bool:
    """Check for '-' immediately followed by decimal digits and an i64 suffix."""
    if self.last_type in VALUE_END_TOKENS or self._peek() not in DIGITS:
      return False
    end = self.pos + 1
    while end < len(self.source) and self.source[end] in DIGITS:
      end += 1
    if self.source[end : end + 3] != "i64":
      return False
    after = self.source[end + 3 : end + 4]
    return not (after.isalnum() or after == "_")

  def next_token(self) -> Token | None:
    """Return the next token, or None at end of input."""
    while self.pos < len(self.source):
      ch = self._current()
      start, line, col = self.pos, self.line, self.column

      match ch:
        case "\n":
          self._advance()
          if self.last_type in (None, TokenType.NEWLINE):
            continue
          return self._emit(TokenType.NEWLINE, None, start)
        case " " | "\t" | "\r":
          self._advance()
        case "#":
          text = self._read_while(lambda c: c != "\n")
          return Token(TokenType.COMMENT, text[1:], self.byte_offset(start), self.byte_offset(self.pos))
        case "/":
          if self._peek() == "*":
            return self._read_block_comment(start, line, col)
          self._advance()
          return self._emit(TokenType.SLASH, None, start)
        case '"':
          return self._read_string(start, line, col)
        case c if c in DIGITS:
          return self._read_number(start, line, col)
        case "-" if self._starts_negative_i64():
          return self._read_number(start, line, col, negative=True)
        case c if c.isalpha() or c == "_":
          ident = self._read_while(lambda c: c.isalnum() or c == "_")
          token_type = KEYWORDS.get(ident, TokenType.IDENT)
          value = self.interner.intern(ident) if token_type == TokenType.IDENT else None
          return self._emit(token_type, value, start)
        case c if c in COMPOUND_TOKENS:
          return self._compound(c, start)
        case c if c in SIMPLE_TOKENS:
          self._advance()
          return self._emit(SIMPLE_TOKENS[c], None, start)
        case _:
          self._advance()
          raise self._error(f"Unexpected character '{ch}'", "unexpected_character", start, line, col)
    return None


def tokenize(source: str, interner: StringInterner | None = None) -> list[Token]:
  """Tokenize the whole source, keeping comments, and append an EOF token."""
  lexer = Lexer(source, interner)
  tokens: list[Token] = []
  while (token := lexer.next_token()) is not None:
    tokens.append(token)
  end = lexer.byte_offset(len(source))
  tokens.append(Token(TokenType.EOF, None, end, end))
  logger.debug("lexed %d tokens over %d lines", len(tokens), lexer.line)
  return tokens
