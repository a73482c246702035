"""Source positions for tokens and AST nodes."""

from bisect import bisect_right
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class SourceLocation:
  """1-based line/column plus the 0-based UTF-8 byte offset into the source."""

  line: int
  column: int
  offset: int

  def __str__(self) -> str:
    return f"{self.line}:{self.column}:{self.offset}"


def byte_offsets(source: str) -> list[int] | None:
  """UTF-8 byte offset of every code point index (plus the end), or None for ASCII text."""
  if source.isascii():
    return None
  offsets = [0]
  total = 0
  for ch in source:
    total += len(ch.encode("utf-8", "surrogatepass"))
    offsets.append(total)
  return offsets


class LocationPool:
  """Maps expression and statement handles to source spans.

  Spans are half-open ``[start, end)`` byte offsets into the UTF-8 encoded
  source. Line and column are computed on demand from a table of line start
  offsets; columns count characters.
  """

  def __init__(self, source: str) -> None:
    self.source = source
    self.offsets = byte_offsets(source)
    self.size = self.to_byte(len(source))
    self.line_chars: list[int] = [0]
    for i, ch in enumerate(source):
      if ch == "\n":
        self.line_chars.append(i + 1)
    self.line_starts: list[int] = [self.to_byte(i) for i in self.line_chars]
    self.expr_spans: dict[int, tuple[int, int]] = {}
    self.stmt_spans: dict[int, tuple[int, int]] = {}

  def to_byte(self, index: int) -> int:
    """Byte offset of the character at index."""
    return index if self.offsets is None else self.offsets[index]

  def to_char(self, offset: int) -> int:
    """Index of the character containing byte offset."""
    return offset if self.offsets is None else bisect_right(self.offsets, offset) - 1

  def locate(self, offset: int) -> SourceLocation:
    """Convert a byte offset into a SourceLocation, clamping to the source bounds."""
    offset = max(0, min(offset, self.size))
    line_index = bisect_right(self.line_starts, offset) - 1
    column = self.to_char(offset) - self.line_chars[line_index] + 1
    return SourceLocation(line_index + 1, column, offset)

  def text(self, start: int, end: int) -> str:
    return self.source[self.to_char(start) : self.to_char(end)]

  def line_text(self, line: int) -> str:
    if not 1 <= line <= len(self.line_chars):
      return ""
    start = self.line_chars[line - 1]
    end = self.source.find("\n", start)
    return self.source[start:] if end == -1 else self.source[start:end]

  def record_expr(self, ref: int, start: int, end: int) -> None:
    self.expr_spans[ref] = (start, end)

  def record_stmt(self, ref: int, start: int, end: int) -> None:
    self.stmt_spans[ref] = (start, end)

  def expr_span(self, ref: int) -> tuple[int, int] | None:
    return self.expr_spans.get(ref)

  def stmt_span(self, ref: int) -> tuple[int, int] | None:
    return self.stmt_spans.get(ref)

  def expr_location(self, ref: int) -> SourceLocation | None:
    span = self.expr_spans.get(ref)
    return self.locate(span[0]) if span is not None else None

  def stmt_location(self, ref: int) -> SourceLocation | None:
    span = self.stmt_spans.get(ref)
    return self.locate(span[0]) if span is not None else None

  @property
  def line_count(self) -> int:
    return len(self.line_starts)
