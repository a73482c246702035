"""Tests for the T language lexer, token provider and parser."""

import pytest

from tlang.ast import (
  IfExpr,
  ValStmt,
  Operator,
  BlockExpr,
  WhileStmt,
  BinaryExpr,
  Visibility,
  NumberLiteral,
  MethodCallExpr,
  QualifiedCallExpr,
)
from tlang.lexer import Lexer, LexerError, tokenize
from tlang.types import U64, StructType, GenericType
from tlang.parser import parse, parse_source
from tlang.tokens import TokenType
from tlang.interner import StringInterner
from tlang.location import LocationPool, SourceLocation
from tlang.token_provider import TokenProvider


def body_block(program, index=0):
  """The block expression forming the body of the index-th function."""
  return program.expressions.get(program.statements.get(program.functions[index].body).expr)


class TestInterner:
  def test_intern_is_stable(self):
    interner = StringInterner()
    a = interner.intern("point")
    b = interner.intern("point")
    assert a == b
    assert interner.resolve(a) == "point"
    assert len(interner) == 1

  def test_distinct_strings(self):
    interner = StringInterner()
    assert interner.intern("x") != interner.intern("y")
    assert "x" in interner
    assert "z" not in interner

  def test_get_does_not_intern(self):
    interner = StringInterner()
    assert interner.get("missing") is None
    assert len(interner) == 0

  def test_resolve_unknown_symbol(self):
    interner = StringInterner()
    with pytest.raises(KeyError):
      interner.resolve(42)


class TestLocation:
  def test_locate(self):
    pool = LocationPool("ab\ncd\n")
    assert pool.locate(0) == SourceLocation(1, 1, 0)
    assert pool.locate(3) == SourceLocation(2, 1, 3)
    assert pool.locate(4) == SourceLocation(2, 2, 4)

  def test_locate_clamps(self):
    pool = LocationPool("ab\ncd\n")
    assert pool.locate(100) == SourceLocation(3, 1, 6)
    assert pool.locate(-5) == SourceLocation(1, 1, 0)

  def test_line_text(self):
    pool = LocationPool("ab\ncd")
    assert pool.line_text(1) == "ab"
    assert pool.line_text(2) == "cd"
    assert pool.line_text(9) == ""

  def test_offsets_are_utf8_bytes(self):
    pool = LocationPool("é\nxé y")
    assert pool.locate(0) == SourceLocation(1, 1, 0)
    assert pool.locate(3) == SourceLocation(2, 1, 3)
    assert pool.locate(7) == SourceLocation(2, 4, 7)
    assert pool.locate(100) == SourceLocation(2, 5, 8)
    assert pool.text(3, 6) == "xé"
    assert pool.line_text(2) == "xé y"

  def test_display(self):
    assert str(SourceLocation(2, 1, 3)) == "2:1:3"


class TestLexer:
  def test_basic_tokens(self):
    tokens = tokenize("fn main() -> u64 { 1u64 }")
    types = [t.type for t in tokens]
    assert types == [
      TokenType.FN,
      TokenType.IDENT,
      TokenType.LPAREN,
      TokenType.RPAREN,
      TokenType.ARROW,
      TokenType.U64,
      TokenType.LBRACE,
      TokenType.UINT64,
      TokenType.RBRACE,
      TokenType.EOF,
    ]

  def test_token_spans(self):
    tokens = tokenize("val xy")
    assert (tokens[1].start, tokens[1].end) == (4, 6)

  def test_operators(self):
    tokens = tokenize("a << b >> c && d || e != f <= g .. h :: i")
    types = {t.type for t in tokens}
    for expected in (TokenType.SHL, TokenType.SHR, TokenType.AND, TokenType.OR, TokenType.NE):
      assert expected in types
    assert TokenType.LE in types
    assert TokenType.DOTDOT in types
    assert TokenType.COLONCOLON in types

  def test_keywords(self):
    tokens = tokenize("val var elif package import pub Self self as dict usize")
    types = [t.type for t in tokens[:-1]]
    assert types == [
      TokenType.VAL,
      TokenType.VAR,
      TokenType.ELIF,
      TokenType.PACKAGE,
      TokenType.IMPORT,
      TokenType.PUB,
      TokenType.SELF_TYPE,
      TokenType.SELF,
      TokenType.AS,
      TokenType.DICT,
      TokenType.USIZE,
    ]

  def test_identifiers_are_interned(self):
    interner = StringInterner()
    tokens = tokenize("count count", interner)
    assert tokens[0].value == tokens[1].value == interner.get("count")

  def test_integer_suffixes(self):
    tokens = tokenize("1u64 2i64 3")
    assert (tokens[0].type, tokens[0].value) == (TokenType.UINT64, 1)
    assert (tokens[1].type, tokens[1].value) == (TokenType.INT64, 2)
    assert (tokens[2].type, tokens[2].value) == (TokenType.INTEGER, "3")

  def test_hex_literals(self):
    tokens = tokenize("0xFFu64 0x1F")
    assert (tokens[0].type, tokens[0].value) == (TokenType.UINT64, 255)
    assert (tokens[1].type, tokens[1].value) == (TokenType.INTEGER, "0x1F")

  def test_negative_i64_literal(self):
    tokens = tokenize("val x = -5i64")
    assert tokens[3].type == TokenType.INT64
    assert tokens[3].value == -5

  def test_minus_after_value_is_binary(self):
    tokens = tokenize("a -5i64")
    assert [t.type for t in tokens] == [TokenType.IDENT, TokenType.MINUS, TokenType.INT64, TokenType.EOF]
    assert tokens[2].value == 5

  def test_string_escapes(self):
    interner = StringInterner()
    tokens = tokenize('"a\\tb\\n"', interner)
    assert tokens[0].type == TokenType.STRING
    assert interner.resolve(tokens[0].value) == "a\tb\n"

  def test_invalid_suffix(self):
    with pytest.raises(LexerError, match="Invalid numeric suffix 'abc'"):
      tokenize("1abc")

  def test_unterminated_string(self):
    with pytest.raises(LexerError, match="Unterminated string literal"):
      tokenize('"abc')

  def test_invalid_escape_spans_string(self):
    with pytest.raises(LexerError) as exc_info:
      tokenize('"a\\qb" x')
    assert exc_info.value.message == "Invalid escape sequence '\\q'"
    assert exc_info.value.kind == "invalid_escape"
    assert exc_info.value.span == (0, 6)

  def test_unexpected_character(self):
    with pytest.raises(LexerError, match="Unexpected character '@'"):
      tokenize("@")

  def test_spans_are_utf8_bytes(self):
    tokens = tokenize('"é" x')
    assert [(t.type, t.start, t.end) for t in tokens] == [
      (TokenType.STRING, 0, 4),
      (TokenType.IDENT, 5, 6),
      (TokenType.EOF, 6, 6),
    ]
    with pytest.raises(LexerError) as exc_info:
      tokenize('"é" @')
    assert exc_info.value.span == (5, 6)
    assert exc_info.value.location == SourceLocation(1, 5, 5)

  def test_non_ascii_digit_is_unexpected(self):
    with pytest.raises(LexerError, match="Unexpected character '²'") as exc_info:
      tokenize("1 ²")
    assert exc_info.value.kind == "unexpected_character"
    result = parse_source("fn f() -> u64 { ² }")
    assert [e.kind for e in result.errors] == ["lex_error"]

  def test_nested_block_comments(self):
    tokens = tokenize("/* a /* b */ c */ x")
    assert [t.type for t in tokens] == [TokenType.COMMENT, TokenType.IDENT, TokenType.EOF]
    assert tokens[0].value == " a /* b */ c "

  def test_unterminated_block_comment(self):
    with pytest.raises(LexerError, match="Unterminated block comment"):
      tokenize("/* never closed")

  def test_line_comment(self):
    tokens = tokenize("a # note\nb")
    assert [t.type for t in tokens] == [
      TokenType.IDENT,
      TokenType.COMMENT,
      TokenType.NEWLINE,
      TokenType.IDENT,
      TokenType.EOF,
    ]

  def test_newlines_collapse(self):
    tokens = tokenize("\n\na\n\n\nb")
    assert [t.type for t in tokens] == [TokenType.IDENT, TokenType.NEWLINE, TokenType.IDENT, TokenType.EOF]


class TestTokenProvider:
  def test_drops_comments(self):
    provider = TokenProvider(Lexer("a # c\nb /* d */"))
    types = []
    while (token := provider.advance()).type != TokenType.EOF:
      types.append(token.type)
    assert types == [TokenType.IDENT, TokenType.NEWLINE, TokenType.IDENT]

  def test_peek_past_end(self):
    provider = TokenProvider(Lexer("a"))
    assert provider.peek_at(0).type == TokenType.IDENT
    assert provider.peek_at(1).type == TokenType.EOF
    assert provider.peek_at(5) is None
    assert provider.peek_position_at(5) is None

  def test_advance_stops_at_eof(self):
    provider = TokenProvider(Lexer(""))
    assert provider.advance().type == TokenType.EOF
    assert provider.advance().type == TokenType.EOF
    assert provider.consumed == 0

  def test_collects_errors_and_continues(self):
    provider = TokenProvider(Lexer("a @ b"))
    assert provider.advance().type == TokenType.IDENT
    assert provider.advance().type == TokenType.IDENT
    assert provider.advance().type == TokenType.EOF
    assert len(provider.errors) == 1
    assert provider.errors[0].message == "Unexpected character '@'"

  def test_compacts_consumed_tokens(self):
    interner = StringInterner()
    source = " ".join(f"x{i}" for i in range(1000))
    provider = TokenProvider(Lexer(source, interner))
    for _ in range(600):
      provider.advance()
    assert provider.consumed == 600
    assert len(provider.buffer) < 300
    assert provider.peek().value == interner.get("x600")


class TestParser:
  def test_simple_function(self):
    program = parse("fn main() -> u64 { 42u64 }")
    func = program.functions[0]
    assert program.interner.resolve(func.name) == "main"
    assert func.return_type == U64
    assert func.visibility == Visibility.PRIVATE
    assert isinstance(body_block(program), BlockExpr)

  def test_precedence(self):
    program = parse("fn main() -> u64 { 1u64 + 2u64 * 3u64 }")
    block = body_block(program)
    root = program.expressions.get(program.statements.get(block.statements[-1]).expr)
    assert isinstance(root, BinaryExpr)
    assert root.op == Operator.IADD
    assert program.expressions.get(root.right).op == Operator.IMUL

  def test_statements_without_separators(self):
    program = parse("fn main() -> i64 { val x: i64 = 10   x + 1 }")
    block = body_block(program)
    assert len(block.statements) == 2
    assert isinstance(program.statements.get(block.statements[0]), ValStmt)

  def test_generic_struct(self):
    program = parse("struct Box<T> { pub v: T, w: u64 }")
    struct = program.structs()[0]
    t = program.interner.get("T")
    assert struct.generics == (t,)
    assert struct.fields[0].type_decl == GenericType(t)
    assert struct.fields[0].visibility == Visibility.PUBLIC
    assert struct.fields[1].visibility == Visibility.PRIVATE

  def test_nested_type_arguments(self):
    program = parse("struct Box<T> { v: T }\nfn f(b: Box<Box<u64>>) -> u64 { 1u64 }")
    box = program.interner.get("Box")
    param = program.functions[0].parameters[0]
    assert param.type_decl == StructType(box, (StructType(box, (U64,)),))

  def test_impl_methods(self):
    source = """struct P { x: u64 }
impl P {
  fn get(&self) -> u64 { self.x }
  pub fn new(x: u64) -> Self { P { x: x } }
}"""
    program = parse(source)
    impl = program.impls()[0]
    get, new = impl.methods
    assert get.has_self_param
    assert not new.has_self_param
    assert new.visibility == Visibility.PUBLIC
    assert len(new.parameters) == 1

  def test_package_and_imports(self):
    program = parse("package app.main\nimport math.basic\nimport util as u\nfn main() { }")
    names = program.interner.resolve
    assert [names(s) for s in program.package_decl] == ["app", "main"]
    assert [names(s) for s in program.imports[0].module_path] == ["math", "basic"]
    assert names(program.imports[1].alias) == "u"

  def test_negative_literal_folds(self):
    program = parse("fn main() { val x = -5 }")
    literals = [e for e in program.expressions.nodes if isinstance(e, NumberLiteral)]
    assert [program.interner.resolve(e.symbol) for e in literals] == ["-5"]

  def test_else_if_nests(self):
    program = parse("fn f(a: bool) -> u64 { if a { 1u64 } elif a { 2u64 } else if a { 3u64 } else { 4u64 } }")
    block = body_block(program)
    outer = program.expressions.get(program.statements.get(block.statements[0]).expr)
    assert isinstance(outer, IfExpr)
    assert len(outer.elif_branches) == 1
    assert isinstance(program.expressions.get(outer.else_block), IfExpr)

  def test_qualified_call_requires_import(self):
    program = parse("import math.basic\nfn main() -> u64 { math.basic.add(1u64, 2u64) }")
    call = next(e for e in program.expressions.nodes if isinstance(e, QualifiedCallExpr))
    assert [program.interner.resolve(s) for s in call.path] == ["math", "basic"]
    assert program.interner.resolve(call.name) == "add"

    program = parse("fn main() { a.b.c() }")
    assert not any(isinstance(e, QualifiedCallExpr) for e in program.expressions.nodes)
    assert any(isinstance(e, MethodCallExpr) for e in program.expressions.nodes)

  def test_qualified_call_through_alias(self):
    program = parse("import math.basic as mb\nfn main() -> u64 { mb.add(1u64) }")
    call = next(e for e in program.expressions.nodes if isinstance(e, QualifiedCallExpr))
    assert [program.interner.resolve(s) for s in call.path] == ["mb"]

  def test_no_struct_literal_in_condition(self):
    program = parse("fn f(a: bool) { while a { break } }")
    block = body_block(program)
    assert isinstance(program.statements.get(block.statements[0]), WhileStmt)

  def test_locations_cover_every_node(self):
    source = "struct P { x: u64 }\nfn main() -> u64 {\n  val p = P { x: 1u64 }\n  p.x + [1, 2][0]\n}"
    program = parse(source)
    for ref in range(len(program.expressions)):
      location = program.locations.expr_location(ref)
      assert location is not None
      assert 0 <= location.offset < len(source)
    for ref in range(len(program.statements)):
      assert program.locations.stmt_location(ref) is not None

  def test_missing_brace(self):
    result = parse_source("fn main() -> u64 { 1u64 ")
    assert not result.success
    assert result.errors[0].message == "Expected '}' to close block, found end of file"

  def test_reserved_keyword(self):
    result = parse_source("fn main() { val val = 1u64 }")
    assert result.errors[0].kind == "reserved_keyword"
    assert result.errors[0].message == "'val' is a reserved keyword and cannot be used as an identifier"

  def test_recovers_and_collects_errors(self):
    source = "fn a() { val = 1u64 }\nfn b() { val = 2u64 }\nfn c() -> u64 { 3u64 }"
    result = parse_source(source)
    assert len(result.errors) == 2
    assert [e.location.line for e in result.errors] == [1, 2]
    assert len(result.program.functions) == 3

  def test_parse_raises_first_error(self):
    from tlang.parser import ParseError

    with pytest.raises(ParseError, match="Expected"):
      parse("fn main( { }")

  def test_invalid_assignment_target(self):
    result = parse_source("fn main() { 1u64 = 2u64 }")
    assert result.errors[0].message == "Invalid assignment target"

  def test_empty_package(self):
    result = parse_source("package\nfn main() { }")
    assert result.errors[0].kind == "empty_package"

  def test_pub_impl_rejected(self):
    result = parse_source("struct S { a: u64 }\npub impl S { }")
    assert "'pub' is not supported on impl blocks" in result.errors[0].message

  def test_lex_errors_are_reported(self):
    result = parse_source("fn main() { val c = 1u64 @ 2u64 }")
    assert any(e.kind == "lex_error" and e.message == "Unexpected character '@'" for e in result.errors)

  def test_parameter_limit(self):
    result = parse_source("fn f(a: u64, b: u64, c: u64) { }", max_parameters=2)
    assert len(result.errors) == 1
    assert result.errors[0].kind == "limit_exceeded"
    assert result.errors[0].message == "Too many parameters (maximum is 2)"

  def test_struct_field_limit(self):
    result = parse_source("struct S { a: u64, b: u64, c: u64 }", max_struct_fields=2)
    assert result.errors[0].message == "Too many fields in struct (maximum is 2)"

  def test_impl_method_limit(self):
    result = parse_source("struct S { a: u64 }\nimpl S { fn x() { }\n fn y() { } }", max_impl_methods=1)
    assert len(result.errors) == 1
    assert result.errors[0].message == "Too many methods in impl block (maximum is 1)"

  def test_nesting_limit(self):
    source = "fn main() -> u64 { " + "(" * 50 + "1u64" + ")" * 50 + " }"
    result = parse_source(source, max_recursion_depth=20)
    assert any(
      e.kind == "limit_exceeded" and e.message == "Nesting exceeds maximum depth of 20" for e in result.errors
    )
    assert parse_source(source).success
