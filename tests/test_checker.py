"""Tests for the T language type checker."""

import pytest

from tlang.ast import (
  CallExpr,
  Operator,
  BlockExpr,
  SliceExpr,
  BinaryExpr,
  Int64Literal,
  NumberLiteral,
  UInt64Literal,
)
from tlang.types import (
  I64,
  U64,
  NUMBER,
  UNKNOWN,
  SelfType,
  ArrayType,
  contains_generic,
  substitute_generics,
)
from tlang.errors import (
  NotFound,
  ArrayError,
  AccessDenied,
  MethodError,
  TypeMismatch,
  GenericError,
  InvalidLiteral,
  TypeCheckError,
  ConversionError,
  FatalTypeCheckError,
  UnsupportedOperation,
  TypeMismatchOperation,
)
from tlang.parser import parse
from tlang.checker import check_program
from tlang.interner import StringInterner
from tlang.inference import InstantiationKind, TypeInferenceEngine, mangle


def check(source, **kwargs):
  program = parse(source)
  return program, check_program(program, **kwargs)


def check_ok(source):
  program, result = check(source)
  assert result.success, [str(e) for e in result.errors]
  return program, result.result


def check_error(source):
  program, result = check(source)
  assert not result.success
  return result.errors[0]


def body_ref(program, index=0):
  return program.statements.get(program.functions[index].body).expr


def refs_of(program, node_type):
  return [ref for ref, e in enumerate(program.expressions.nodes) if isinstance(e, node_type)]


def evaluate(program, ref):
  """Evaluate integer arithmetic on the typed pool."""
  match program.expressions.get(ref):
    case UInt64Literal(value) | Int64Literal(value):
      return value
    case BinaryExpr(op, left, right):
      lhs, rhs = evaluate(program, left), evaluate(program, right)
      return {Operator.IADD: lhs + rhs, Operator.ISUB: lhs - rhs, Operator.IMUL: lhs * rhs}[op]
    case BlockExpr(statements):
      return evaluate(program, program.statements.get(statements[-1]).expr)
  raise AssertionError("not an arithmetic expression")


class TestScenarios:
  def test_typed_arithmetic(self):
    program, checked = check_ok("fn main() -> u64 { 1u64 + 2u64 * 3u64 }")
    root = body_ref(program)
    assert checked.expr_types[root] == U64
    assert evaluate(program, root) == 7

  def test_number_inference_via_annotation(self):
    program, checked = check_ok("fn main() -> i64 { val x: i64 = 10   x + 1 }")
    (binary,) = refs_of(program, BinaryExpr)
    assert checked.expr_types[binary] == I64
    nodes = program.expressions.nodes
    assert Int64Literal(10) in nodes
    assert Int64Literal(1) in nodes
    assert not any(isinstance(e, NumberLiteral) for e in nodes)

  def test_generic_identity(self):
    program, checked = check_ok("fn id<T>(x: T) -> T { x }\nfn main() -> u64 { id(7u64) }")
    t = program.interner.get("T")
    (inst,) = checked.instantiations
    assert program.interner.resolve(inst.original_name) == "id"
    assert inst.substitutions == {t: U64}
    assert inst.instantiated_name == "id_u64"
    assert inst.kind == InstantiationKind.FUNCTION
    (call,) = refs_of(program, CallExpr)
    assert checked.expr_types[call] == U64

  def test_generic_struct_and_method(self):
    source = """struct Box<T> { v: T }
impl<T> Box<T> { fn get(&self) -> T { self.v } }
fn main() -> u64 { val b = Box { v: 10u64 }; b.get() }"""
    program, checked = check_ok(source)
    t = program.interner.get("T")
    found = {(program.interner.resolve(i.original_name), i.kind): i for i in checked.instantiations}
    assert set(found) == {("Box", InstantiationKind.STRUCT), ("Box::get", InstantiationKind.FUNCTION)}
    assert found["Box", InstantiationKind.STRUCT].substitutions == {t: U64}
    assert found["Box", InstantiationKind.STRUCT].instantiated_name == "Box_u64"
    assert found["Box::get", InstantiationKind.FUNCTION].instantiated_name == "Box_get_u64"
    assert checked.expr_types[body_ref(program, 0)] == U64

  def test_val_immutability(self):
    source = "fn main() -> u64 { val x = 1u64   x = 2u64   x }"
    error = check_error(source)
    assert isinstance(error.kind, AccessDenied)
    assert error.message == "Access denied: cannot assign to immutable variable 'x'"
    assert error.location.offset == source.index("x = 2u64")
    assert error.context == "function 'main'"

  def test_mixed_array(self):
    source = "fn main() -> u64 { val a = [1u64, true]   0u64 }"
    error = check_error(source)
    assert isinstance(error.kind, ArrayError)
    assert "UInt64" in error.message
    assert "Bool" in error.message
    assert error.location.offset == source.index("[1u64")


class TestChecker:
  def test_undefined_variable(self):
    error = check_error("fn main() -> u64 { y }")
    assert isinstance(error.kind, NotFound)
    assert error.message == "Identifier 'y' not found"

  def test_undefined_function(self):
    error = check_error("fn main() -> u64 { nope() }")
    assert error.message == "Function 'nope' not found"

  def test_return_type_mismatch(self):
    error = check_error("fn main() -> bool { 1u64 }")
    assert isinstance(error.kind, TypeMismatch)
    assert error.message == "Type mismatch: expected Bool, but got UInt64"

  def test_signed_unsigned_mix(self):
    error = check_error("fn main() -> u64 { 1u64 + 2i64 }")
    assert isinstance(error.kind, TypeMismatchOperation)

  def test_error_location_lines(self):
    error = check_error("fn main() -> u64 {\n  val x = 1u64\n  x = 2u64\n  x\n}")
    assert (error.location.line, error.location.column) == (3, 3)

  def test_error_offset_counts_utf8_bytes(self):
    source = 'fn f() -> u64 { val s = "éé"   zz }'
    error = check_error(source)
    assert isinstance(error.kind, NotFound)
    assert error.location.offset == len(source[: source.index("zz")].encode())
    assert (error.location.line, error.location.column) == (1, source.index("zz") + 1)

  def test_errors_isolated_per_function(self):
    _, result = check("fn a() -> u64 { true }\nfn b() -> u64 { missing }\nfn c() -> u64 { 1u64 }")
    assert [e.context for e in result.errors] == ["function 'a'", "function 'b'"]

  def test_arity(self):
    error = check_error("fn f(a: u64) -> u64 { a }\nfn main() -> u64 { f(1u64, 2u64) }")
    assert error.message == "Function 'f' expects 1 argument(s), but got 2"

  def test_mutual_recursion(self):
    check_ok(
      """fn even(n: u64) -> bool { if n == 0 { true } else { odd(n - 1) } }
fn odd(n: u64) -> bool { if n == 0 { false } else { even(n - 1) } }"""
    )

  def test_cast(self):
    check_ok("fn main() -> i64 { 5u64 as i64 }")
    error = check_error("fn main() -> u64 { true as u64 }")
    assert isinstance(error.kind, ConversionError)

  def test_var_reassignment(self):
    check_ok("fn main() -> u64 { var x = 1u64\n x = 2u64\n x }")

  def test_untyped_var_takes_first_assignment(self):
    check_ok("fn main() -> u64 { var x\n x = 5u64\n x }")

  def test_parameters_are_immutable(self):
    error = check_error("fn f(a: u64) -> u64 { a = 2u64\n a }")
    assert isinstance(error.kind, AccessDenied)

  def test_if_without_else_as_value(self):
    error = check_error("fn f(a: bool) -> u64 { val x = if a { 1u64 }\n 0u64 }")
    assert error.message == "'if' without 'else' cannot be used as a value"

  def test_if_branch_mismatch(self):
    error = check_error("fn f(a: bool) -> u64 { if a { 1u64 } else { true } }")
    assert isinstance(error.kind, TypeMismatch)

  def test_if_condition_must_be_bool(self):
    error = check_error("fn f() -> u64 { if 1u64 { 1u64 } else { 2u64 } }")
    assert error.message == "Type mismatch: expected Bool, but got UInt64"

  def test_early_return_in_branch(self):
    check_ok("fn f(a: bool) -> u64 { if a { return 1u64 } else { 2u64 } }")

  def test_break_outside_loop(self):
    error = check_error("fn f() { break }")
    assert error.message == "'break' outside of a loop"

  def test_for_loop(self):
    program, _ = check_ok("fn f() -> u64 { var s = 0u64\n for i in 0 to 10 { s = s + i }\n s }")
    assert UInt64Literal(0) in program.expressions.nodes
    assert UInt64Literal(10) in program.expressions.nodes

  def test_for_loop_negative_bound(self):
    program, _ = check_ok("fn f() { for i in -5 to 5 { } }")
    assert Int64Literal(-5) in program.expressions.nodes
    assert Int64Literal(5) in program.expressions.nodes

  def test_while_loop(self):
    check_ok("fn f() -> u64 { var i = 0u64\n while i < 10 { i = i + 1\n if i == 5 { break } }\n i }")

  def test_block_scoping(self):
    error = check_error("fn f() -> u64 { { val x = 1u64 }\n x }")
    assert error.message == "Identifier 'x' not found"

  def test_shadowing_is_restored(self):
    check_ok("fn f() -> u64 { val x = 1u64\n { val x = true }\n x }")

  def test_struct_fields(self):
    source = "struct P { x: u64, y: u64 }\nfn f() -> u64 { val p = P { x: 1u64, y: 2 }\n p.x + p.y }"
    program, _ = check_ok(source)
    assert UInt64Literal(2) in program.expressions.nodes

  def test_struct_missing_field(self):
    error = check_error("struct P { x: u64, y: u64 }\nfn f() -> u64 { val p = P { x: 1u64 }\n p.x }")
    assert error.message == "Missing field(s) y in struct literal 'P'"

  def test_struct_unknown_field(self):
    error = check_error("struct P { x: u64 }\nfn f() -> u64 { val p = P { x: 1u64, z: 3u64 }\n p.x }")
    assert error.message == "Field 'P.z' not found"

  def test_duplicate_struct(self):
    error = check_error("struct P { x: u64 }\nstruct P { y: u64 }\nfn main() { }")
    assert error.message == "Struct 'P' already defined"

  def test_builtin_cannot_be_redefined(self):
    error = check_error("fn __builtin_heap_alloc(n: u64) -> ptr { null }")
    assert error.message == "Cannot redefine builtin function '__builtin_heap_alloc'"

  def test_builtin_call(self):
    program, checked = check_ok("fn f() -> ptr { __builtin_heap_alloc(16) }")
    (call,) = refs_of(program, CallExpr)
    assert call in checked.builtin_calls
    assert UInt64Literal(16) in program.expressions.nodes

  def test_methods_and_associated_functions(self):
    source = """struct Counter { n: u64 }
impl Counter {
  fn get(&self) -> u64 { self.n }
  fn new() -> Self { Counter { n: 0 } }
}
fn main() -> u64 { val c = Counter::new()
  c.get() }"""
    check_ok(source)

  def test_associated_function_on_instance(self):
    source = """struct Counter { n: u64 }
impl Counter { fn new() -> Self { Counter { n: 0 } } }
fn main() { val c = Counter::new()
  c.new() }"""
    error = check_error(source)
    assert isinstance(error.kind, MethodError)
    assert "associated function must be called as Type::name(...)" in error.message

  def test_method_through_associated_syntax(self):
    source = """struct Counter { n: u64 }
impl Counter { fn get(&self) -> u64 { self.n } }
fn main() -> u64 { Counter::get() }"""
    error = check_error(source)
    assert isinstance(error.kind, MethodError)

  def test_string_methods(self):
    check_ok('fn f() -> u64 { val s = "hi"\n s.len() }')
    error = check_error('fn f() -> u64 { val s = "hi"\n s.foo() }')
    assert error.message == "Method 'foo' error for type String: method not found"

  def test_array_index_and_slice(self):
    program, checked = check_ok("fn f() -> u64 { val a = [1u64, 2u64, 3u64]\n val b = a[1..]\n b[0] }")
    (slice_ref,) = refs_of(program, SliceExpr)
    assert checked.expr_types[slice_ref] == ArrayType(U64, None)

  def test_dict_index(self):
    check_ok('fn f() -> u64 { val d = dict{"a": 1u64, "b": 2}\n d["a"] }')

  def test_dict_slice_unsupported(self):
    error = check_error("fn f() { val d = dict{1u64: 2u64}\n val e = d[0..1] }")
    assert isinstance(error.kind, UnsupportedOperation)

  def test_index_assign(self):
    check_ok("fn f() -> u64 { var a = [1u64, 2u64]\n a[0] = 5\n a[1] }")
    error = check_error("fn f() { val a = [1u64]\n a[0] = 2u64 }")
    assert error.message == "Access denied: cannot modify element of immutable variable 'a'"

  def test_getitem_protocol(self):
    source = """struct V { d: [u64; 3] }
impl V { fn __getitem__(&self, i: u64) -> u64 { self.d[i] } }
fn f(v: V) -> u64 { v[1] }"""
    check_ok(source)

  def test_empty_array_needs_hint(self):
    error = check_error("fn f() { val a = [] }")
    assert error.message == "Array error: cannot infer the element type of an empty array literal"
    check_ok("fn f() { val a: [u64; 0] = [] }")

  def test_tuples(self):
    check_ok("fn f() -> bool { val t = (1u64, true)\n t.1 }")
    error = check_error("fn f() -> bool { val t = (1u64, true)\n t.2 }")
    assert error.message.startswith("Tuple index 2 out of bounds")

  def test_recursion_limit_is_fatal(self):
    source = "fn main() -> u64 { " + "1u64 + " * 30 + "1u64 }"
    _, result = check(source, max_recursion_depth=10)
    (error,) = result.errors
    assert isinstance(error, FatalTypeCheckError)
    assert error.message == "Maximum recursion depth 10 exceeded during type inference"

  def test_types_are_complete(self):
    source = """fn main() -> i64 {
  var total = 0
  for i in 0 to 5 { total = total + 1 }
  val x: i64 = 10
  x + total
}"""
    program, checked = check_ok(source)
    for t in checked.expr_types.values():
      assert t != NUMBER
      assert t != UNKNOWN
      assert not isinstance(t, SelfType)
    assert not any(isinstance(e, NumberLiteral) for e in program.expressions.nodes)


class TestNumbers:
  def test_positive_defaults_to_u64(self):
    program, _ = check_ok("fn f() { val x = 5 }")
    assert UInt64Literal(5) in program.expressions.nodes

  def test_negative_defaults_to_i64(self):
    program, _ = check_ok("fn f() { val x = -5 }")
    assert Int64Literal(-5) in program.expressions.nodes

  def test_variable_settles_from_use(self):
    program, _ = check_ok("fn f() -> i64 { val x = 5\n x }")
    assert Int64Literal(5) in program.expressions.nodes

  def test_adopts_other_operand(self):
    program, _ = check_ok("fn f(a: i64) -> i64 { a * 3 }")
    assert Int64Literal(3) in program.expressions.nodes

  def test_branches_adopt_return_type(self):
    program, _ = check_ok("fn f(a: bool) -> i64 { if a { 1 } else { 2 } }")
    assert {Int64Literal(1), Int64Literal(2)} <= set(program.expressions.nodes)

  def test_shift_amount(self):
    program, _ = check_ok("fn f() -> u64 { 1u64 << 3 }")
    assert UInt64Literal(3) in program.expressions.nodes

  def test_shift_amount_must_be_u64(self):
    error = check_error("fn f() -> u64 { 1u64 << 2i64 }")
    assert isinstance(error.kind, TypeMismatchOperation)
    assert error.message == "Type mismatch in shift operation: incompatible types UInt64 and Int64"
    check_ok("fn f() -> i64 { 1i64 >> 2u64 }")

  def test_long_binding_chain_settles(self):
    lines = ["val v0 = 1"] + [f"val v{i} = v{i - 1} + 1" for i in range(1, 600)]
    program, _ = check_ok("fn f() -> u64 {\n" + "\n".join(lines) + "\nv599 }")
    assert UInt64Literal(1) in program.expressions.nodes
    assert not any(isinstance(e, NumberLiteral) for e in program.expressions.nodes)

  def test_long_binding_chain_defaults_signed(self):
    lines = ["val v0 = -1"] + [f"val v{i} = v{i - 1} + 1" for i in range(1, 600)]
    program, _ = check_ok("fn f() {\n" + "\n".join(lines) + "\n}")
    assert Int64Literal(-1) in program.expressions.nodes
    assert not any(isinstance(e, NumberLiteral) for e in program.expressions.nodes)

  def test_out_of_range_literal(self):
    error = check_error("fn f() -> i64 { 9223372036854775808 }")
    assert isinstance(error.kind, InvalidLiteral)
    assert error.message == "Invalid Int64 literal: '9223372036854775808'"

  def test_hex_literal(self):
    program, _ = check_ok("fn f() -> u64 { 0xff }")
    assert UInt64Literal(255) in program.expressions.nodes


class TestGenerics:
  def test_instantiations_are_deduplicated(self):
    _, checked = check_ok("fn id<T>(x: T) -> T { x }\nfn main() -> u64 { val a = id(1u64)\n val b = id(2u64)\n a + b }")
    assert [i.instantiated_name for i in checked.instantiations] == ["id_u64"]

  def test_distinct_instantiations(self):
    _, checked = check_ok("fn id<T>(x: T) -> T { x }\nfn main() -> u64 { val a = id(true)\n id(1u64) }")
    assert {i.instantiated_name for i in checked.instantiations} == {"id_bool", "id_u64"}

  def test_literal_argument_defaults_by_sign(self):
    _, checked = check_ok("fn id<T>(x: T) -> T { x }\nfn main() { val a = id(5)\n val b = id(-5) }")
    assert {i.instantiated_name for i in checked.instantiations} == {"id_u64", "id_i64"}

  def test_return_hint_drives_inference(self):
    program, checked = check_ok("fn id<T>(x: T) -> T { x }\nfn main() -> i64 { id(5) }")
    assert [i.instantiated_name for i in checked.instantiations] == ["id_i64"]
    assert Int64Literal(5) in program.expressions.nodes

  def test_return_hint_drives_method_inference(self):
    source = """struct Maker { n: u64 }
impl Maker { fn wrap<T>(&self, x: T) -> T { x } }
fn main() -> i64 { val m = Maker { n: 0u64 }
 val y: i64 = m.wrap(5)
 y }"""
    program, checked = check_ok(source)
    assert [i.instantiated_name for i in checked.instantiations] == ["Maker_wrap_i64"]
    assert Int64Literal(5) in program.expressions.nodes

  def test_substitution_removes_parameters(self):
    program, checked = check_ok("fn pick<T, U>(a: T, b: U) -> (T, U) { (a, b) }\nfn main() { val p = pick(1u64, true) }")
    (inst,) = checked.instantiations
    sig = checked.function_table[program.interner.get("pick")]
    for t in (*sig.param_types, sig.return_type):
      assert not contains_generic(substitute_generics(t, inst.substitutions))
    assert inst.instantiated_name == "pick_u64_bool"

  def test_cannot_infer(self):
    error = check_error("fn make<T>() -> u64 { 1u64 }\nfn main() -> u64 { make() }")
    assert isinstance(error.kind, GenericError)
    assert error.message == "cannot infer parameter 'T' for 'make'"

  def test_conflicting_arguments(self):
    error = check_error("fn pair<T>(a: T, b: T) -> T { a }\nfn main() -> u64 { pair(1u64, true) }")
    assert error.message == "Type mismatch: expected UInt64, but got Bool"
    assert error.context == "argument 2 of 'pair'"

  def test_error_inside_instantiation(self):
    error = check_error("fn first<T>(x: T) -> T { x + 1u64 }\nfn main() -> bool { first(true) }")
    assert error.context == "instantiation 'first_bool'"

  def test_annotated_generic_struct(self):
    program, _ = check_ok("struct Box<T> { v: T }\nfn main() -> u64 { val b: Box<u64> = Box { v: 1 }\n b.v }")
    assert UInt64Literal(1) in program.expressions.nodes

  def test_generic_struct_requires_arguments(self):
    error = check_error("struct Box<T> { v: T }\nfn main() { val b: Box = Box { v: 1u64 } }")
    assert error.message == "Generic struct 'Box' requires 1 type argument(s)"

  def test_generic_associated_function(self):
    source = """struct Box<T> { v: T }
impl<T> Box<T> {
  fn new(v: T) -> Self { Box { v: v } }
  fn get(&self) -> T { self.v }
}
fn main() -> u64 { val b = Box::new(5u64)
  b.get() }"""
    _, checked = check_ok(source)
    assert {i.instantiated_name for i in checked.instantiations} == {"Box_new_u64", "Box_u64", "Box_get_u64"}

  def test_occurs_check(self):
    interner = StringInterner()
    t = interner.intern("T")
    engine = TypeInferenceEngine(interner)
    scope = engine.push_generic_scope([t], fresh=True)
    engine.add_constraint(scope[t], ArrayType(scope[t], 1), "test")
    with pytest.raises(TypeCheckError, match="Occurs check failed"):
      engine.solve_constraints()

  def test_mangling_is_deterministic(self):
    interner = StringInterner()
    t, u = interner.intern("T"), interner.intern("U")
    assert mangle("Box::get", {t: U64}, interner) == "Box_get_u64"
    assert mangle("pair", {u: I64, t: U64}, interner) == mangle("pair", {t: U64, u: I64}, interner)
