"""Recursive descent parser for the T language.

Statements are parsed by recursive descent, binary expressions by precedence
climbing. Errors are collected rather than raised: after a mismatch the parser
skips to a synchronizing token and carries on, so one run reports every
syntax error it can find.
"""

import logging
from dataclasses import dataclass

from .ast import (
  Expr,
  IfExpr,
  ExprRef,
  ForStmt,
  Program,
  StmtRef,
  ValStmt,
  VarExpr,
  VarStmt,
  CastExpr,
  CallExpr,
  ExprList,
  ExprPool,
  ExprStmt,
  Function,
  Operator,
  StmtPool,
  UnaryOp,
  BlockExpr,
  BreakStmt,
  ImplBlock,
  IndexExpr,
  Parameter,
  SliceExpr,
  UnaryExpr,
  WhileStmt,
  AssignExpr,
  BinaryExpr,
  ImportDecl,
  ReturnStmt,
  StructDecl,
  UnitLiteral,
  Visibility,
  BoolLiteral,
  DictLiteral,
  NullLiteral,
  StructField,
  ArrayLiteral,
  ContinueStmt,
  Int64Literal,
  TupleLiteral,
  NumberLiteral,
  StringLiteral,
  StructLiteral,
  UInt64Literal,
  MethodCallExpr,
  MethodFunction,
  TupleIndexExpr,
  FieldAccessExpr,
  IndexAssignExpr,
  QualifiedCallExpr,
  AssociatedCallExpr,
)
from .lexer import Lexer
from .types import (
  I64,
  PTR,
  U64,
  BOOL,
  SELF,
  UNIT,
  STRING,
  DictType,
  TypeDecl,
  ArrayType,
  TupleType,
  StructType,
  GenericType,
  IdentifierType,
)
from .tokens import KEYWORD_NAMES, Token, TokenType
from .interner import Symbol, StringInterner
from .location import LocationPool, SourceLocation
from .token_provider import TokenProvider

logger = logging.getLogger(__name__)

MAX_STRUCT_FIELDS = 1000
MAX_IMPL_METHODS = 500
MAX_PARAMETERS = 255
MAX_RECURSION_DEPTH = 128

U64_MAX = 2**64 - 1
I64_MIN = -(2**63)
I64_MAX = 2**63 - 1


class ParseError(Exception):
  """A syntax error with its source location."""

  def __init__(self, message: str, location: SourceLocation, kind: str = "unexpected_token") -> None:
    super().__init__(f"{location}: {message}")
    self.message = message
    self.location = location
    self.kind = kind


# Operator precedence (higher = binds tighter)
PRECEDENCE: dict[TokenType, int] = {
  TokenType.OR: 1,
  TokenType.AND: 2,
  TokenType.EQ: 3,
  TokenType.NE: 3,
  TokenType.LT: 4,
  TokenType.LE: 4,
  TokenType.GT: 4,
  TokenType.GE: 4,
  TokenType.PIPE: 5,
  TokenType.CARET: 6,
  TokenType.AMP: 7,
  TokenType.SHL: 8,
  TokenType.SHR: 8,
  TokenType.PLUS: 9,
  TokenType.MINUS: 9,
  TokenType.STAR: 10,
  TokenType.SLASH: 10,
  TokenType.PERCENT: 10,
}

BINARY_OPS: dict[TokenType, Operator] = {
  TokenType.OR: Operator.LOGICAL_OR,
  TokenType.AND: Operator.LOGICAL_AND,
  TokenType.EQ: Operator.EQ,
  TokenType.NE: Operator.NE,
  TokenType.LT: Operator.LT,
  TokenType.LE: Operator.LE,
  TokenType.GT: Operator.GT,
  TokenType.GE: Operator.GE,
  TokenType.PIPE: Operator.BIT_OR,
  TokenType.CARET: Operator.BIT_XOR,
  TokenType.AMP: Operator.BIT_AND,
  TokenType.SHL: Operator.SHL,
  TokenType.SHR: Operator.SHR,
  TokenType.PLUS: Operator.IADD,
  TokenType.MINUS: Operator.ISUB,
  TokenType.STAR: Operator.IMUL,
  TokenType.SLASH: Operator.IDIV,
  TokenType.PERCENT: Operator.IMOD,
}

UNARY_OPS: dict[TokenType, UnaryOp] = {
  TokenType.MINUS: UnaryOp.NEG,
  TokenType.BANG: UnaryOp.LOGICAL_NOT,
  TokenType.TILDE: UnaryOp.BIT_NOT,
}

PRIMITIVE_TYPES: dict[TokenType, TypeDecl] = {
  TokenType.U64: U64,
  TokenType.I64: I64,
  TokenType.BOOL: BOOL,
  TokenType.STR: STRING,
  TokenType.PTR: PTR,
  TokenType.USIZE: U64,
}

TOP_LEVEL_STARTS = frozenset({TokenType.FN, TokenType.STRUCT, TokenType.IMPL, TokenType.PUB})
OPENERS = frozenset({TokenType.LPAREN, TokenType.LBRACKET, TokenType.LBRACE})
CLOSERS = frozenset({TokenType.RPAREN, TokenType.RBRACKET, TokenType.RBRACE})
STATEMENT_ENDS = frozenset({TokenType.NEWLINE, TokenType.SEMICOLON})

TOKEN_TEXT: dict[TokenType, str] = {
  TokenType.LPAREN: "'('",
  TokenType.RPAREN: "')'",
  TokenType.LBRACKET: "'['",
  TokenType.RBRACKET: "']'",
  TokenType.LBRACE: "'{'",
  TokenType.RBRACE: "'}'",
  TokenType.NEWLINE: "newline",
  TokenType.EOF: "end of file",
}


def parse_integer_text(text: str) -> int:
  """Parse the raw text of an unsuffixed literal, with optional sign and 0x prefix."""
  negative = text.startswith("-")
  digits = text[1:] if negative else text
  value = int(digits[2:], 16) if digits[:2].lower() == "0x" else int(digits, 10)
  return -value if negative else value


@dataclass
class ParseResult:
  """Outcome of parsing: the program (possibly partial) and all errors."""

  program: Program
  errors: list[ParseError]

  @property
  def success(self) -> bool:
    return not self.errors


class Parser:
  """Parses a token stream into a Program backed by expression and statement pools."""

  def __init__(
    self,
    tokens: TokenProvider,
    interner: StringInterner,
    locations: LocationPool,
    max_struct_fields: int = MAX_STRUCT_FIELDS,
    max_impl_methods: int = MAX_IMPL_METHODS,
    max_parameters: int = MAX_PARAMETERS,
    max_recursion_depth: int = MAX_RECURSION_DEPTH,
  ) -> None:
    self.tokens = tokens
    self.interner = interner
    self.locations = locations
    self.max_struct_fields = max_struct_fields
    self.max_impl_methods = max_impl_methods
    self.max_parameters = max_parameters
    self.max_recursion_depth = max_recursion_depth
    self.expressions = ExprPool()
    self.statements = StmtPool()
    self.errors: list[ParseError] = []
    self.depth = 0
    self.last_end = 0
    # Struct literals are not allowed directly in if/while conditions and for bounds
    self.no_struct_literal = False
    # Type parameters visible while parsing types
    self.generic_scopes: list[tuple[Symbol, ...]] = []
    # First path segments and aliases of imported modules
    self.module_roots: set[Symbol] = set()
    self.self_symbol = interner.intern("self")

  # === Token helpers ===

  def _current(self) -> Token:
    return self.tokens.peek()

  def _peek(self, offset: int = 1) -> Token:
    token = self.tokens.peek_at(offset)
    return token if token is not None else self._current()

  def _at_end(self) -> bool:
    return self._current().type == TokenType.EOF

  def _check(self, *types: TokenType) -> bool:
    return self._current().type in types

  def _advance(self) -> Token:
    token = self.tokens.advance()
    if token.type != TokenType.EOF:
      self.last_end = token.end
    return token

  def _match(self, type: TokenType) -> bool:
    if self._check(type):
      self._advance()
      return True
    return False

  def _describe(self, token: Token) -> str:
    match token.type:
      case TokenType.IDENT:
        return f"identifier '{self.interner.resolve(token.value)}'"
      case TokenType.INTEGER | TokenType.UINT64 | TokenType.INT64:
        return f"number '{token.value}'"
      case TokenType.STRING:
        return "string literal"
    if token.type in KEYWORD_NAMES:
      return f"'{KEYWORD_NAMES[token.type]}'"
    if token.type in TOKEN_TEXT:
      return TOKEN_TEXT[token.type]
    return f"'{self.locations.text(token.start, token.end)}'"

  def _error(self, message: str, kind: str = "unexpected_token", token: Token | None = None) -> ParseError:
    token = token or self._current()
    if kind == "unexpected_token":
      message = f"{message}, found {self._describe(token)}"
    return ParseError(message, self.locations.locate(token.start), kind)

  def _record(self, error: ParseError) -> None:
    logger.debug("parse error: %s", error)
    self.errors.append(error)

  def _expect(self, type: TokenType, message: str) -> Token:
    if not self._check(type):
      raise self._error(message)
    return self._advance()

  def _expect_ident(self, message: str) -> Symbol:
    token = self._current()
    if token.type in KEYWORD_NAMES and token.type not in (TokenType.TRUE, TokenType.FALSE, TokenType.NULL):
      name = KEYWORD_NAMES[token.type]
      raise self._error(f"'{name}' is a reserved keyword and cannot be used as an identifier", "reserved_keyword")
    return self._expect(TokenType.IDENT, message).value

  def _skip_newlines(self) -> None:
    while self._check(TokenType.NEWLINE):
      self._advance()

  def _skip_separators(self) -> None:
    while self._check(TokenType.NEWLINE, TokenType.SEMICOLON):
      self._advance()

  def _peek_past_newlines(self, offset: int) -> tuple[Token, int]:
    """Return the first non-newline token at or after offset, with its offset."""
    while self._peek(offset).type == TokenType.NEWLINE:
      offset += 1
    return self._peek(offset), offset

  def _add_expr(self, expr: Expr, start: int) -> ExprRef:
    ref = self.expressions.add(expr)
    self.locations.record_expr(ref, start, max(self.last_end, start))
    return ref

  def _add_stmt(self, stmt, start: int) -> StmtRef:
    ref = self.statements.add(stmt)
    self.locations.record_stmt(ref, start, max(self.last_end, start))
    return ref

  def _enter(self) -> None:
    if self.depth >= self.max_recursion_depth:
      raise self._error(f"Nesting exceeds maximum depth of {self.max_recursion_depth}", "limit_exceeded")
    self.depth += 1

  # === Error recovery ===

  def _synchronize(self, top_level: bool = False) -> None:
    """Skip tokens until a statement end, a top-level keyword or an unmatched closer."""
    depth = 0
    while not self._at_end():
      token_type = self._current().type
      if token_type in OPENERS:
        depth += 1
      elif token_type in CLOSERS:
        if depth == 0 and not top_level:
          return
        depth = max(depth - 1, 0)
      elif depth == 0:
        if token_type in STATEMENT_ENDS and not top_level:
          self._advance()
          return
        if token_type in TOP_LEVEL_STARTS:
          return
      self._advance()

  def _skip_to_closer(self, closer: TokenType) -> None:
    """Skip to the closer matching an already-consumed opener and consume it."""
    depth = 0
    while not self._at_end():
      token_type = self._current().type
      if token_type in OPENERS:
        depth += 1
      elif token_type in CLOSERS:
        if depth == 0:
          if token_type == closer:
            self._advance()
          return
        depth -= 1
      self._advance()

  # === Declarations ===

  def parse(self) -> Program:
    """Parse an entire source file."""
    package_decl: tuple[Symbol, ...] | None = None
    imports: list[ImportDecl] = []
    functions: list[Function] = []
    declarations: list[StmtRef] = []
    self._skip_separators()

    if self._check(TokenType.PACKAGE):
      try:
        package_decl = self._parse_package()
      except ParseError as e:
        self._record(e)
        self._synchronize()
      self._skip_separators()

    while self._check(TokenType.IMPORT):
      try:
        imports.append(self._parse_import())
      except ParseError as e:
        self._record(e)
        self._synchronize()
      self._skip_separators()

    while not self._at_end():
      before = self.tokens.consumed
      try:
        match self._current().type:
          case TokenType.FN:
            functions.append(self._parse_function(Visibility.PRIVATE))
          case TokenType.STRUCT:
            declarations.append(self._parse_struct(Visibility.PRIVATE))
          case TokenType.IMPL:
            declarations.append(self._parse_impl())
          case TokenType.PUB:
            pub_token = self._advance()
            if self._check(TokenType.FN):
              functions.append(self._parse_function(Visibility.PUBLIC))
            elif self._check(TokenType.STRUCT):
              declarations.append(self._parse_struct(Visibility.PUBLIC))
            elif self._check(TokenType.IMPL):
              raise self._error("'pub' is not supported on impl blocks; mark individual methods 'pub'", "unexpected_token", pub_token)
            else:
              raise self._error("'pub' keyword must be followed by a function or struct declaration")
          case TokenType.IMPORT:
            raise self._error("Import declarations must appear before other declarations")
          case TokenType.PACKAGE:
            raise self._error("Package declaration must be the first declaration")
          case _:
            raise self._error("Expected 'fn', 'struct' or 'impl'")
      except ParseError as e:
        self._record(e)
        self._synchronize(top_level=True)
        if self.tokens.consumed == before:
          self._advance()
      self._skip_separators()

    for lex_error in self.tokens.errors:
      self.errors.append(ParseError(lex_error.message, lex_error.location, "lex_error"))
    self.errors.sort(key=lambda e: e.location.offset)

    return Program(
      package_decl,
      imports,
      functions,
      declarations,
      self.statements,
      self.expressions,
      self.interner,
      self.locations,
    )

  def _parse_path(self, message: str) -> tuple[Symbol, ...]:
    """Parse: ident ('.' ident)*"""
    segments = [self._expect_ident(message)]
    while self._match(TokenType.DOT):
      segments.append(self._expect_ident("Expected identifier after '.'"))
    return tuple(segments)

  def _parse_package(self) -> tuple[Symbol, ...]:
    """Parse: package a.b.c"""
    package_token = self._expect(TokenType.PACKAGE, "Expected 'package'")
    if self._check(TokenType.NEWLINE, TokenType.SEMICOLON, TokenType.EOF):
      raise self._error("Package declaration requires a module path", "empty_package", package_token)
    return self._parse_path("Expected package name")

  def _parse_import(self) -> ImportDecl:
    """Parse: import a.b.c (as alias)?"""
    self._expect(TokenType.IMPORT, "Expected 'import'")
    path = self._parse_path("Expected module path after 'import'")
    alias: Symbol | None = None
    if self._match(TokenType.AS):
      alias = self._expect_ident("Expected alias name after 'as'")
    self.module_roots.add(path[0] if alias is None else alias)
    return ImportDecl(path, alias)

  def _parse_generic_params(self) -> tuple[Symbol, ...]:
    """Parse optional type parameters: <T, U>"""
    if not self._match(TokenType.LT):
      return ()
    params: list[Symbol] = []
    while not self._check(TokenType.GT):
      params.append(self._expect_ident("Expected type parameter name"))
      if not self._match(TokenType.COMMA):
        break
    self._expect(TokenType.GT, "Expected '>' after type parameters")
    return tuple(params)

  def _parse_params(self, in_impl: bool) -> tuple[tuple[Parameter, ...], bool]:
    """Parse a parenthesized parameter list, returning (params, has_self_param)."""
    self._expect(TokenType.LPAREN, "Expected '('")
    params: list[Parameter] = []
    has_self = False
    self._skip_newlines()
    while not self._check(TokenType.RPAREN):
      if self._check(TokenType.AMP, TokenType.SELF):
        self_token = self._current()
        if not in_impl:
          raise self._error("'self' parameter is only allowed in impl methods", "unexpected_token", self_token)
        if params or has_self:
          raise self._error("'self' must be the first parameter", "unexpected_token", self_token)
        self._match(TokenType.AMP)
        self._expect(TokenType.SELF, "Expected 'self' after '&'")
        if self._match(TokenType.COLON):
          self._expect(TokenType.SELF_TYPE, "Expected 'Self' as the type of 'self'")
        has_self = True
      else:
        if len(params) >= self.max_parameters:
          self._record(self._error(f"Too many parameters (maximum is {self.max_parameters})", "limit_exceeded"))
          self._skip_to_closer(TokenType.RPAREN)
          return tuple(params), has_self
        name = self._expect_ident("Expected parameter name")
        self._expect(TokenType.COLON, "Expected ':' after parameter name")
        params.append(Parameter(name, self._parse_type()))
      self._skip_newlines()
      if not self._match(TokenType.COMMA):
        break
      self._skip_newlines()
    self._expect(TokenType.RPAREN, "Expected ')' after parameters")
    return tuple(params), has_self

  def _parse_return_type(self) -> TypeDecl | None:
    if self._match(TokenType.ARROW):
      return self._parse_type()
    return None

  def _parse_body(self) -> StmtRef:
    start = self._current().start
    block = self._parse_block()
    return self._add_stmt(ExprStmt(block), start)

  def _parse_function(self, visibility: Visibility) -> Function:
    """Parse: fn name<T>(p: T, ...) -> R { body }"""
    start = self._expect(TokenType.FN, "Expected 'fn'").start
    name = self._expect_ident("Expected function name")
    generics = self._parse_generic_params()
    self.generic_scopes.append(generics)
    try:
      params, _ = self._parse_params(in_impl=False)
      return_type = self._parse_return_type()
      body = self._parse_body()
    finally:
      self.generic_scopes.pop()
    return Function(name, params, return_type, body, generics, visibility, start)

  def _parse_struct(self, visibility: Visibility) -> StmtRef:
    """Parse: struct Name<T> { pub a: T, b: u64 }"""
    start = self._expect(TokenType.STRUCT, "Expected 'struct'").start
    name = self._expect_ident("Expected struct name")
    generics = self._parse_generic_params()
    self.generic_scopes.append(generics)
    try:
      self._expect(TokenType.LBRACE, "Expected '{' after struct name")
      fields: list[StructField] = []
      self._skip_separators()
      while not self._check(TokenType.RBRACE, TokenType.EOF):
        if len(fields) >= self.max_struct_fields:
          self._record(self._error(f"Too many fields in struct (maximum is {self.max_struct_fields})", "limit_exceeded"))
          self._skip_to_closer(TokenType.RBRACE)
          return self._add_stmt(StructDecl(name, tuple(fields), generics, visibility), start)
        field_visibility = Visibility.PUBLIC if self._match(TokenType.PUB) else Visibility.PRIVATE
        field_name = self._expect_ident("Expected field name")
        self._expect(TokenType.COLON, "Expected ':' after field name")
        fields.append(StructField(field_name, self._parse_type(), field_visibility))
        if not self._check(TokenType.COMMA, TokenType.NEWLINE, TokenType.RBRACE):
          raise self._error("Expected ',' or newline after struct field")
        self._skip_separators()
        self._match(TokenType.COMMA)
        self._skip_separators()
      self._expect(TokenType.RBRACE, "Expected '}' after struct fields")
    finally:
      self.generic_scopes.pop()
    return self._add_stmt(StructDecl(name, tuple(fields), generics, visibility), start)

  def _parse_impl(self) -> StmtRef:
    """Parse: impl<T> Name<T> { fn method(&self) -> T { ... } }"""
    start = self._expect(TokenType.IMPL, "Expected 'impl'").start
    generics = self._parse_generic_params()
    self.generic_scopes.append(generics)
    try:
      target = self._expect_ident("Expected struct name after 'impl'")
      if self._match(TokenType.LT):
        # Target arguments repeat the impl's parameters; arity is checked later
        while not self._check(TokenType.GT, TokenType.EOF):
          self._parse_type()
          if not self._match(TokenType.COMMA):
            break
        self._expect_type_close()
      self._expect(TokenType.LBRACE, "Expected '{' after impl target")
      methods: list[MethodFunction] = []
      self._skip_separators()
      while not self._check(TokenType.RBRACE, TokenType.EOF):
        if len(methods) >= self.max_impl_methods:
          self._record(self._error(f"Too many methods in impl block (maximum is {self.max_impl_methods})", "limit_exceeded"))
          self._skip_to_closer(TokenType.RBRACE)
          return self._add_stmt(ImplBlock(target, tuple(methods), generics), start)
        methods.append(self._parse_method())
        self._skip_separators()
      self._expect(TokenType.RBRACE, "Expected '}' after impl block")
    finally:
      self.generic_scopes.pop()
    return self._add_stmt(ImplBlock(target, tuple(methods), generics), start)

  def _parse_method(self) -> MethodFunction:
    start = self._current().start
    visibility = Visibility.PUBLIC if self._match(TokenType.PUB) else Visibility.PRIVATE
    self._expect(TokenType.FN, "Expected 'fn' in impl block")
    name = self._expect_ident("Expected method name")
    generics = self._parse_generic_params()
    self.generic_scopes.append(generics)
    try:
      params, has_self = self._parse_params(in_impl=True)
      return_type = self._parse_return_type()
      body = self._parse_body()
    finally:
      self.generic_scopes.pop()
    return MethodFunction(name, params, return_type, body, generics, visibility, has_self, start)

  # === Types ===

  def _is_generic(self, name: Symbol) -> bool:
    return any(name in scope for scope in self.generic_scopes)

  def _expect_type_close(self) -> None:
    """Consume the '>' closing type arguments, splitting a '>>' token in two."""
    token = self._current()
    if token.type == TokenType.SHR:
      self.tokens.replace_current(Token(TokenType.GT, None, token.start + 1, token.end))
      self.last_end = token.start + 1
      return
    self._expect(TokenType.GT, "Expected '>' after type arguments")

  def _parse_type(self) -> TypeDecl:
    token = self._current()
    if token.type in PRIMITIVE_TYPES:
      self._advance()
      return PRIMITIVE_TYPES[token.type]
    match token.type:
      case TokenType.SELF_TYPE:
        self._advance()
        return SELF
      case TokenType.LBRACKET:
        self._advance()
        element = self._parse_type()
        size: int | None = None
        if self._match(TokenType.SEMICOLON):
          if self._match(TokenType.UNDERSCORE):
            size = None
          else:
            size_token = self._expect(TokenType.INTEGER, "Expected array size or '_'")
            size = parse_integer_text(size_token.value)
        self._expect(TokenType.RBRACKET, "Expected ']' after array type")
        return ArrayType(element, size)
      case TokenType.LPAREN:
        self._advance()
        if self._match(TokenType.RPAREN):
          return UNIT
        elements = [self._parse_type()]
        trailing_comma = False
        while self._match(TokenType.COMMA):
          trailing_comma = True
          if self._check(TokenType.RPAREN):
            break
          trailing_comma = False
          elements.append(self._parse_type())
        self._expect(TokenType.RPAREN, "Expected ')' after tuple type")
        if len(elements) == 1 and not trailing_comma:
          return elements[0]
        return TupleType(tuple(elements))
      case TokenType.DICT:
        self._advance()
        self._expect(TokenType.LBRACKET, "Expected '[' after 'dict'")
        key = self._parse_type()
        self._expect(TokenType.COMMA, "Expected ',' between dict key and value types")
        value = self._parse_type()
        self._expect(TokenType.RBRACKET, "Expected ']' after dict type")
        return DictType(key, value)
      case TokenType.IDENT:
        self._advance()
        name = token.value
        if self._is_generic(name):
          return GenericType(name)
        if self._match(TokenType.LT):
          args: list[TypeDecl] = []
          while not self._check(TokenType.GT, TokenType.EOF):
            args.append(self._parse_type())
            if not self._match(TokenType.COMMA):
              break
          self._expect_type_close()
          return StructType(name, tuple(args))
        return IdentifierType(name)
    raise self._error("Expected type")

  # === Statements ===

  def _parse_block(self) -> ExprRef:
    """Parse: { stmt* }"""
    start = self._expect(TokenType.LBRACE, "Expected '{'").start
    self._enter()
    saved = self.no_struct_literal
    self.no_struct_literal = False
    statements: list[StmtRef] = []
    try:
      self._skip_separators()
      while not self._check(TokenType.RBRACE, TokenType.EOF):
        before = self.tokens.consumed
        try:
          statements.append(self._parse_stmt())
        except ParseError as e:
          self._record(e)
          self._synchronize()
          if self._check(*TOP_LEVEL_STARTS):
            break
          if self.tokens.consumed == before:
            self._advance()
        self._skip_separators()
      self._expect(TokenType.RBRACE, "Expected '}' to close block")
    finally:
      self.depth -= 1
      self.no_struct_literal = saved
    return self._add_expr(BlockExpr(tuple(statements)), start)

  def _parse_stmt(self) -> StmtRef:
    token = self._current()
    start = token.start
    match token.type:
      case TokenType.VAL:
        self._advance()
        name = self._expect_ident("Expected variable name after 'val'")
        type_decl = self._parse_type() if self._match(TokenType.COLON) else None
        self._expect(TokenType.ASSIGN, "Expected '=' after val binding")
        self._skip_newlines()
        return self._add_stmt(ValStmt(name, type_decl, self._parse_expr()), start)
      case TokenType.VAR:
        self._advance()
        name = self._expect_ident("Expected variable name after 'var'")
        type_decl = self._parse_type() if self._match(TokenType.COLON) else None
        value: ExprRef | None = None
        if self._match(TokenType.ASSIGN):
          self._skip_newlines()
          value = self._parse_expr()
        return self._add_stmt(VarStmt(name, type_decl, value), start)
      case TokenType.RETURN:
        self._advance()
        if self._check(TokenType.NEWLINE, TokenType.SEMICOLON, TokenType.RBRACE, TokenType.EOF):
          return self._add_stmt(ReturnStmt(None), start)
        return self._add_stmt(ReturnStmt(self._parse_expr()), start)
      case TokenType.BREAK:
        self._advance()
        return self._add_stmt(BreakStmt(), start)
      case TokenType.CONTINUE:
        self._advance()
        return self._add_stmt(ContinueStmt(), start)
      case TokenType.FOR:
        self._advance()
        var = self._expect_ident("Expected loop variable after 'for'")
        self._expect(TokenType.IN, "Expected 'in' after loop variable")
        range_start = self._parse_condition()
        self._expect(TokenType.TO, "Expected 'to' in for loop range")
        range_end = self._parse_condition()
        return self._add_stmt(ForStmt(var, range_start, range_end, self._parse_block()), start)
      case TokenType.WHILE:
        self._advance()
        condition = self._parse_condition()
        return self._add_stmt(WhileStmt(condition, self._parse_block()), start)
    return self._add_stmt(ExprStmt(self._parse_expr()), start)

  # === Expressions ===

  def _parse_condition(self) -> ExprRef:
    """Parse an expression in which 'Name {' does not start a struct literal."""
    saved = self.no_struct_literal
    self.no_struct_literal = True
    try:
      return self._parse_expr()
    finally:
      self.no_struct_literal = saved

  def _parse_expr(self) -> ExprRef:
    """Parse an expression, including assignment forms."""
    self._enter()
    try:
      start = self._current().start
      target = self._parse_binary(1)
      if not self._match(TokenType.ASSIGN):
        return target
      self._skip_newlines()
      value = self._parse_expr()
      match self.expressions.get(target):
        case IndexExpr(obj, index):
          return self._add_expr(IndexAssignExpr(obj, index, value), start)
        case VarExpr() | FieldAccessExpr() | TupleIndexExpr():
          return self._add_expr(AssignExpr(target, value), start)
      raise ParseError("Invalid assignment target", self.locations.locate(start))
    finally:
      self.depth -= 1

  def _parse_binary(self, min_prec: int) -> ExprRef:
    """Precedence climbing over left-associative binary operators."""
    start = self._current().start
    left = self._parse_unary()
    while True:
      token = self._current()
      prec = PRECEDENCE.get(token.type)
      if prec is None or prec < min_prec:
        return left
      self._advance()
      self._skip_newlines()
      right = self._parse_binary(prec + 1)
      left = self._add_expr(BinaryExpr(BINARY_OPS[token.type], left, right), start)

  def _parse_unary(self) -> ExprRef:
    token = self._current()
    if token.type not in UNARY_OPS:
      return self._parse_postfix()
    self._advance()
    if token.type == TokenType.MINUS and self._check(TokenType.INTEGER):
      # Negative literals stay untyped; the sign later selects i64
      literal = self._advance()
      symbol = self.interner.intern(f"-{literal.value}")
      return self._parse_postfix_ops(self._add_expr(NumberLiteral(symbol), token.start), token.start)
    self._enter()
    try:
      operand = self._parse_unary()
    finally:
      self.depth -= 1
    return self._add_expr(UnaryExpr(UNARY_OPS[token.type], operand), token.start)

  def _parse_postfix(self) -> ExprRef:
    start = self._current().start
    return self._parse_postfix_ops(self._parse_primary(), start)

  def _parse_postfix_ops(self, expr: ExprRef, start: int) -> ExprRef:
    """Parse field access, tuple index, method calls, indexing, slicing and casts."""
    while True:
      if self._match(TokenType.DOT):
        token = self._current()
        if token.type == TokenType.IDENT:
          self._advance()
          if self._check(TokenType.LPAREN):
            args = self._parse_args()
            expr = self._add_expr(MethodCallExpr(expr, token.value, args), start)
          else:
            expr = self._add_expr(FieldAccessExpr(expr, token.value), start)
        elif token.type == TokenType.INTEGER:
          self._advance()
          expr = self._add_expr(TupleIndexExpr(expr, parse_integer_text(token.value)), start)
        else:
          raise self._error("Expected field name or tuple index after '.'")
      elif self._check(TokenType.LBRACKET):
        expr = self._parse_index(expr, start)
      elif self._match(TokenType.AS):
        expr = self._add_expr(CastExpr(expr, self._parse_type()), start)
      else:
        return expr

  def _parse_index(self, target: ExprRef, start: int) -> ExprRef:
    """Parse: target[i], target[a..b], target[..b], target[a..], target[..]"""
    self._expect(TokenType.LBRACKET, "Expected '['")
    saved = self.no_struct_literal
    self.no_struct_literal = False
    try:
      self._skip_newlines()
      index: ExprRef | None = None
      if not self._check(TokenType.DOTDOT):
        index = self._parse_expr()
        self._skip_newlines()
      if self._match(TokenType.DOTDOT):
        self._skip_newlines()
        end: ExprRef | None = None
        if not self._check(TokenType.RBRACKET):
          end = self._parse_expr()
          self._skip_newlines()
        self._expect(TokenType.RBRACKET, "Expected ']' after slice")
        return self._add_expr(SliceExpr(target, index, end), start)
      self._expect(TokenType.RBRACKET, "Expected ']' after index")
      assert index is not None
      return self._add_expr(IndexExpr(target, index), start)
    finally:
      self.no_struct_literal = saved

  def _parse_args(self) -> ExprRef:
    """Parse: (a, b, c) into an ExprList node."""
    start = self._expect(TokenType.LPAREN, "Expected '('").start
    saved = self.no_struct_literal
    self.no_struct_literal = False
    try:
      items = self._parse_sequence(TokenType.RPAREN, "Expected ',' or ')' in argument list")
    finally:
      self.no_struct_literal = saved
    self._expect(TokenType.RPAREN, "Expected ')' after arguments")
    return self._add_expr(ExprList(tuple(items)), start)

  def _parse_sequence(self, closer: TokenType, message: str) -> list[ExprRef]:
    """Parse comma-separated expressions up to (not including) closer; trailing comma allowed."""
    items: list[ExprRef] = []
    self._skip_newlines()
    while not self._check(closer):
      items.append(self._parse_expr())
      self._skip_newlines()
      if not self._match(TokenType.COMMA):
        if not self._check(closer):
          raise self._error(message)
        break
      self._skip_newlines()
    return items

  def _looks_like_struct_literal(self) -> bool:
    """IDENT '{' followed by '}' or 'field:' starts a struct literal."""
    if self.no_struct_literal or self._peek(1).type != TokenType.LBRACE:
      return False
    token, offset = self._peek_past_newlines(2)
    if token.type == TokenType.RBRACE:
      return True
    return token.type == TokenType.IDENT and self._peek(offset + 1).type == TokenType.COLON

  def _qualified_call_length(self) -> int:
    """Number of path segments in 'root.a.b(' starting at an imported module root, else 0."""
    if self._current().value not in self.module_roots:
      return 0
    offset = 0
    while self._peek(offset + 1).type == TokenType.DOT and self._peek(offset + 2).type == TokenType.IDENT:
      offset += 2
    if offset == 0 or self._peek(offset + 1).type != TokenType.LPAREN:
      return 0
    return offset // 2 + 1

  def _parse_primary(self) -> ExprRef:
    token = self._current()
    start = token.start
    match token.type:
      case TokenType.UINT64:
        self._advance()
        value = token.value
        if value > U64_MAX:
          self._record(self._error(f"Integer literal {value} out of range for u64", "invalid_literal", token))
          value = 0
        return self._add_expr(UInt64Literal(value), start)
      case TokenType.INT64:
        self._advance()
        value = token.value
        if not I64_MIN <= value <= I64_MAX:
          self._record(self._error(f"Integer literal {value} out of range for i64", "invalid_literal", token))
          value = 0
        return self._add_expr(Int64Literal(value), start)
      case TokenType.INTEGER:
        self._advance()
        return self._add_expr(NumberLiteral(self.interner.intern(token.value)), start)
      case TokenType.STRING:
        self._advance()
        return self._add_expr(StringLiteral(token.value), start)
      case TokenType.TRUE | TokenType.FALSE:
        self._advance()
        return self._add_expr(BoolLiteral(token.type == TokenType.TRUE), start)
      case TokenType.NULL:
        self._advance()
        return self._add_expr(NullLiteral(), start)
      case TokenType.SELF:
        self._advance()
        return self._add_expr(VarExpr(self.self_symbol), start)
      case TokenType.IDENT:
        return self._parse_identifier()
      case TokenType.LPAREN:
        return self._parse_paren()
      case TokenType.LBRACKET:
        self._advance()
        saved = self.no_struct_literal
        self.no_struct_literal = False
        try:
          elements = self._parse_sequence(TokenType.RBRACKET, "Expected ',' or ']' in array literal")
        finally:
          self.no_struct_literal = saved
        self._expect(TokenType.RBRACKET, "Expected ']' after array elements")
        return self._add_expr(ArrayLiteral(tuple(elements)), start)
      case TokenType.DICT:
        return self._parse_dict()
      case TokenType.LBRACE:
        return self._parse_block()
      case TokenType.IF:
        return self._parse_if()
    raise self._error("Expected expression")

  def _parse_identifier(self) -> ExprRef:
    token = self._current()
    start = token.start
    name = token.value
    next_type = self._peek(1).type

    if next_type == TokenType.COLONCOLON:
      self._advance()
      self._advance()
      func = self._expect_ident("Expected function name after '::'")
      args = self._parse_args()
      return self._add_expr(AssociatedCallExpr(name, func, args), start)

    if next_type == TokenType.LPAREN:
      self._advance()
      return self._add_expr(CallExpr(name, self._parse_args()), start)

    if segments := self._qualified_call_length():
      path: list[Symbol] = [self._advance().value]
      for _ in range(segments - 2):
        self._advance()
        path.append(self._advance().value)
      self._advance()
      func = self._advance().value
      return self._add_expr(QualifiedCallExpr(tuple(path), func, self._parse_args()), start)

    if self._looks_like_struct_literal():
      return self._parse_struct_literal()

    self._advance()
    return self._add_expr(VarExpr(name), start)

  def _parse_struct_literal(self) -> ExprRef:
    """Parse: Name { a: expr, b: expr }"""
    token = self._advance()
    self._expect(TokenType.LBRACE, "Expected '{'")
    fields: list[tuple[Symbol, ExprRef]] = []
    self._skip_newlines()
    while not self._check(TokenType.RBRACE):
      if len(fields) >= self.max_struct_fields:
        self._record(self._error(f"Too many fields in struct literal (maximum is {self.max_struct_fields})", "limit_exceeded"))
        self._skip_to_closer(TokenType.RBRACE)
        return self._add_expr(StructLiteral(token.value, tuple(fields)), token.start)
      field_name = self._expect_ident("Expected field name in struct literal")
      self._expect(TokenType.COLON, "Expected ':' after field name")
      self._skip_newlines()
      fields.append((field_name, self._parse_expr()))
      self._skip_newlines()
      if not self._match(TokenType.COMMA):
        break
      self._skip_newlines()
    self._expect(TokenType.RBRACE, "Expected '}' after struct literal")
    return self._add_expr(StructLiteral(token.value, tuple(fields)), token.start)

  def _parse_paren(self) -> ExprRef:
    """Parse: () | (e) | (e,) | (e1, e2, ...)"""
    start = self._expect(TokenType.LPAREN, "Expected '('").start
    saved = self.no_struct_literal
    self.no_struct_literal = False
    try:
      self._skip_newlines()
      if self._match(TokenType.RPAREN):
        return self._add_expr(UnitLiteral(), start)
      first = self._parse_expr()
      self._skip_newlines()
      if self._match(TokenType.RPAREN):
        return first
      self._expect(TokenType.COMMA, "Expected ',' or ')'")
      elements = [first, *self._parse_sequence(TokenType.RPAREN, "Expected ',' or ')' in tuple")]
      self._expect(TokenType.RPAREN, "Expected ')' after tuple elements")
      return self._add_expr(TupleLiteral(tuple(elements)), start)
    finally:
      self.no_struct_literal = saved

  def _parse_dict(self) -> ExprRef:
    """Parse: dict{ k: v, ... }"""
    start = self._expect(TokenType.DICT, "Expected 'dict'").start
    self._expect(TokenType.LBRACE, "Expected '{' after 'dict'")
    saved = self.no_struct_literal
    self.no_struct_literal = False
    entries: list[tuple[ExprRef, ExprRef]] = []
    try:
      self._skip_newlines()
      while not self._check(TokenType.RBRACE):
        key = self._parse_expr()
        self._expect(TokenType.COLON, "Expected ':' between dict key and value")
        self._skip_newlines()
        entries.append((key, self._parse_expr()))
        self._skip_newlines()
        if not self._match(TokenType.COMMA):
          break
        self._skip_newlines()
    finally:
      self.no_struct_literal = saved
    self._expect(TokenType.RBRACE, "Expected '}' after dict entries")
    return self._add_expr(DictLiteral(tuple(entries)), start)

  def _skip_newlines_before(self, *types: TokenType) -> None:
    """Skip newlines only if the next real token is one of types."""
    if self._check(TokenType.NEWLINE):
      token, _ = self._peek_past_newlines(0)
      if token.type in types:
        self._skip_newlines()

  def _parse_if(self) -> ExprRef:
    """Parse: if c { } (elif c { })* (else { })?"""
    start = self._expect(TokenType.IF, "Expected 'if'").start
    condition = self._parse_condition()
    then_block = self._parse_block()
    elifs: list[tuple[ExprRef, ExprRef]] = []
    else_block: ExprRef | None = None
    self._skip_newlines_before(TokenType.ELIF, TokenType.ELSE)
    while self._match(TokenType.ELIF):
      elif_condition = self._parse_condition()
      elifs.append((elif_condition, self._parse_block()))
      self._skip_newlines_before(TokenType.ELIF, TokenType.ELSE)
    if self._match(TokenType.ELSE):
      if self._check(TokenType.IF):
        # 'else if' nests a new if-expression as the else block
        else_block = self._parse_if()
      else:
        else_block = self._parse_block()
    return self._add_expr(IfExpr(condition, then_block, tuple(elifs), else_block), start)


def parse_source(source: str, interner: StringInterner | None = None, **limits: int) -> ParseResult:
  """Lex and parse source text, collecting every error."""
  interner = interner if interner is not None else StringInterner()
  locations = LocationPool(source)
  provider = TokenProvider(Lexer(source, interner))
  parser = Parser(provider, interner, locations, **limits)
  program = parser.parse()
  logger.debug(
    "parsed %d functions, %d expressions, %d errors",
    len(program.functions),
    len(program.expressions),
    len(parser.errors),
  )
  return ParseResult(program, parser.errors)


def parse(source: str, interner: StringInterner | None = None) -> Program:
  """Parse source, raising the first ParseError if any were collected."""
  result = parse_source(source, interner)
  if result.errors:
    raise result.errors[0]
  return result.program
