"""Token definitions for the T language."""

from enum import Enum, auto
from dataclasses import dataclass


class TokenType(Enum):
  # Literals
  UINT64 = auto()
  INT64 = auto()
  INTEGER = auto()
  STRING = auto()
  TRUE = auto()
  FALSE = auto()
  NULL = auto()

  # Identifiers
  IDENT = auto()

  # Keywords
  FN = auto()
  VAL = auto()
  VAR = auto()
  IF = auto()
  ELIF = auto()
  ELSE = auto()
  FOR = auto()
  WHILE = auto()
  IN = auto()
  TO = auto()
  BREAK = auto()
  CONTINUE = auto()
  RETURN = auto()
  STRUCT = auto()
  IMPL = auto()
  PACKAGE = auto()
  IMPORT = auto()
  PUB = auto()
  SELF = auto()
  SELF_TYPE = auto()
  AS = auto()
  DICT = auto()

  # Type names
  U64 = auto()
  I64 = auto()
  BOOL = auto()
  STR = auto()
  PTR = auto()
  USIZE = auto()
  UNDERSCORE = auto()

  # Punctuation
  LPAREN = auto()
  RPAREN = auto()
  LBRACKET = auto()
  RBRACKET = auto()
  LBRACE = auto()
  RBRACE = auto()
  COMMA = auto()
  SEMICOLON = auto()
  COLON = auto()
  COLONCOLON = auto()
  DOT = auto()
  DOTDOT = auto()
  ARROW = auto()
  ASSIGN = auto()

  # Operators
  PLUS = auto()
  MINUS = auto()
  STAR = auto()
  SLASH = auto()
  PERCENT = auto()
  AMP = auto()
  PIPE = auto()
  CARET = auto()
  TILDE = auto()
  BANG = auto()
  SHL = auto()
  SHR = auto()
  AND = auto()
  OR = auto()

  # Comparison
  EQ = auto()
  NE = auto()
  LT = auto()
  GT = auto()
  LE = auto()
  GE = auto()

  # Layout
  NEWLINE = auto()
  COMMENT = auto()
  EOF = auto()


KEYWORDS: dict[str, TokenType] = {
  "fn": TokenType.FN,
  "val": TokenType.VAL,
  "var": TokenType.VAR,
  "if": TokenType.IF,
  "elif": TokenType.ELIF,
  "else": TokenType.ELSE,
  "for": TokenType.FOR,
  "while": TokenType.WHILE,
  "in": TokenType.IN,
  "to": TokenType.TO,
  "break": TokenType.BREAK,
  "continue": TokenType.CONTINUE,
  "return": TokenType.RETURN,
  "struct": TokenType.STRUCT,
  "impl": TokenType.IMPL,
  "package": TokenType.PACKAGE,
  "import": TokenType.IMPORT,
  "pub": TokenType.PUB,
  "self": TokenType.SELF,
  "Self": TokenType.SELF_TYPE,
  "as": TokenType.AS,
  "dict": TokenType.DICT,
  "true": TokenType.TRUE,
  "false": TokenType.FALSE,
  "null": TokenType.NULL,
  "u64": TokenType.U64,
  "i64": TokenType.I64,
  "bool": TokenType.BOOL,
  "str": TokenType.STR,
  "ptr": TokenType.PTR,
  "usize": TokenType.USIZE,
  "_": TokenType.UNDERSCORE,
}

# Spelling of each keyword, used in diagnostics
KEYWORD_NAMES: dict[TokenType, str] = {t: name for name, t in KEYWORDS.items()}


@dataclass(frozen=True, slots=True)
class Token:
  """A token with its payload and half-open source span.

  ``value`` holds the integer for UINT64/INT64, the raw digits for INTEGER, the
  comment text for COMMENT and the interned symbol for IDENT/STRING.
  """

  type: TokenType
  value: int | str | None
  start: int
  end: int

  def __repr__(self) -> str:
    return f"Token({self.type.name}, {self.value!r}, {self.start}..{self.end})"
