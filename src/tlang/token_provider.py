"""Lookahead buffer between the lexer and the parser."""

from .lexer import Lexer, LexerError
from .tokens import Token, TokenType


class TokenProvider:
  """Buffers lexer output for arbitrary lookahead, dropping comment tokens.

  Tokens are pulled from the lexer on demand. Consumed tokens are discarded
  once the consumed prefix dominates the buffer, so memory stays proportional
  to the lookahead actually used. Lexer errors are recorded in ``errors`` and
  lexing resumes after the offending input.
  """

  COMPACT_THRESHOLD = 256

  def __init__(self, lexer: Lexer) -> None:
    self.lexer = lexer
    self.buffer: list[Token] = []
    self.cursor = 0
    self.consumed = 0
    self.errors: list[LexerError] = []
    self.exhausted = False

  def _fill(self, n: int) -> None:
    while len(self.buffer) - self.cursor <= n and not self.exhausted:
      try:
        token = self.lexer.next_token()
      except LexerError as e:
        self.errors.append(e)
        continue
      if token is None:
        end = self.lexer.byte_offset(len(self.lexer.source))
        self.buffer.append(Token(TokenType.EOF, None, end, end))
        self.exhausted = True
      elif token.type != TokenType.COMMENT:
        self.buffer.append(token)

  def peek(self) -> Token:
    token = self.peek_at(0)
    assert token is not None
    return token

  def peek_at(self, n: int) -> Token | None:
    """Return the token n positions ahead (0 = current), or None past EOF."""
    self._fill(n)
    index = self.cursor + n
    return self.buffer[index] if index < len(self.buffer) else None

  def peek_position_at(self, n: int) -> tuple[int, int] | None:
    token = self.peek_at(n)
    return (token.start, token.end) if token is not None else None

  def advance(self) -> Token:
    token = self.peek()
    if token.type != TokenType.EOF:
      self.cursor += 1
      self.consumed += 1
      if self.cursor >= self.COMPACT_THRESHOLD and self.cursor * 2 >= len(self.buffer):
        del self.buffer[: self.cursor]
        self.cursor = 0
    return token

  def replace_current(self, token: Token) -> None:
    """Swap the current token, e.g. to split '>>' when closing nested type arguments."""
    self._fill(0)
    self.buffer[self.cursor] = token

  def line_count(self) -> int:
    return self.lexer.line
