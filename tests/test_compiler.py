"""Tests for the T compiler pipeline, module resolution and command line."""

from pathlib import Path

import pytest

from tlang.cli import main
from tlang.ast import QualifiedCallExpr
from tlang.types import U64
from tlang.parser import parse
from tlang.errors import TypeCheckError
from tlang.modules import ModuleResolver
from tlang.compiler import CompilerOptions, compile_file, compile_source
from tlang.interner import StringInterner

MATH_BASIC = """package math.basic

pub fn add(a: u64, b: u64) -> u64 { a + b }
fn hidden() -> u64 { 0u64 }
"""


def write(path: Path, text: str) -> Path:
  path.parent.mkdir(parents=True, exist_ok=True)
  path.write_text(text)
  return path


def qualified_call(result):
  program = result.program
  return next(ref for ref, e in enumerate(program.expressions.nodes) if isinstance(e, QualifiedCallExpr))


class TestCompiler:
  def test_compile_source(self):
    result = compile_source("fn main() -> u64 { 1u64 + 2u64 }")
    assert result.success
    assert result.errors == []
    assert result.checked is not None

  def test_parse_errors_stop_pipeline(self):
    result = compile_source("fn main( {")
    assert not result.success
    assert result.checked is None
    assert result.errors[0].message.startswith("Expected parameter name")

  def test_options_pass_limits(self):
    result = compile_source("fn f(a: u64, b: u64) { }", CompilerOptions(max_parameters=1))
    assert not result.success
    assert result.errors[0].kind == "limit_exceeded"

  def test_format_errors(self):
    result = compile_source("fn main() -> u64 { true }")
    assert result.format_errors().splitlines() == [
      "<input>:1:19: Type mismatch: expected UInt64, but got Bool (in function 'main')",
      "  fn main() -> u64 { true }",
      "  " + " " * 18 + "^",
    ]

  def test_errors_sorted_by_location(self):
    result = compile_source("fn a() -> u64 { true }\nfn b() -> u64 { false }")
    offsets = [e.location.offset for e in result.sorted_errors()]
    assert len(offsets) == 2
    assert offsets == sorted(offsets)

  def test_unresolved_module_is_requested(self):
    result = compile_source(
      "import math.basic\nfn main() { math.basic.add(1u64) }", CompilerOptions(resolve_imports=False)
    )
    assert result.success
    names = result.program.interner.resolve
    assert [[names(s) for s in path] for path in result.checked.module_requests] == [["math", "basic"]]


class TestModules:
  def test_qualified_call(self, tmp_path):
    write(tmp_path / "math" / "basic.t", MATH_BASIC)
    main_file = write(tmp_path / "main.t", "import math.basic\nfn main() -> u64 { math.basic.add(1u64, 2) }")
    result = compile_file(main_file)
    assert result.success, result.format_errors()
    assert result.checked.expr_types[qualified_call(result)] == U64

  def test_alias(self, tmp_path):
    write(tmp_path / "math" / "basic.t", MATH_BASIC)
    main_file = write(tmp_path / "main.t", "import math.basic as mb\nfn main() -> u64 { mb.add(1u64, 2u64) }")
    assert compile_file(main_file).success

  def test_private_function(self, tmp_path):
    write(tmp_path / "math" / "basic.t", MATH_BASIC)
    main_file = write(tmp_path / "main.t", "import math.basic\nfn main() -> u64 { math.basic.hidden() }")
    result = compile_file(main_file)
    assert result.errors[0].message == "Access denied: function 'math.basic.hidden' is private to its module"

  def test_missing_function(self, tmp_path):
    write(tmp_path / "math" / "basic.t", MATH_BASIC)
    main_file = write(tmp_path / "main.t", "import math.basic\nfn main() -> u64 { math.basic.nope() }")
    result = compile_file(main_file)
    assert result.errors[0].message == "Function 'math.basic.nope' not found"

  def test_missing_module(self, tmp_path):
    main_file = write(tmp_path / "main.t", "import nowhere\nfn main() { }")
    result = compile_file(main_file)
    assert not result.success
    assert result.errors[0].message == "Module 'nowhere' not found"
    assert result.errors[0].context == "imports"

  def test_module_index_file(self, tmp_path):
    write(tmp_path / "util" / "mod.t", "package util\npub fn one() -> u64 { 1u64 }")
    main_file = write(tmp_path / "main.t", "import util\nfn main() -> u64 { util.one() }")
    assert compile_file(main_file).success

  def test_search_paths(self, tmp_path):
    lib = tmp_path / "lib"
    write(lib / "util.t", "package util\npub fn one() -> u64 { 1u64 }")
    main_file = write(tmp_path / "app" / "main.t", "import util\nfn main() -> u64 { util.one() }")
    assert not compile_file(main_file).success
    assert compile_file(main_file, CompilerOptions(search_paths=[lib])).success

  def test_package_mismatch(self, tmp_path):
    write(tmp_path / "math" / "basic.t", "package math.other\npub fn add() -> u64 { 1u64 }")
    main_file = write(tmp_path / "main.t", "import math.basic\nfn main() { }")
    result = compile_file(main_file)
    assert result.errors[0].message == "Package declaration mismatch: expected 'math.basic', found 'math.other'"

  def test_module_parse_error(self, tmp_path):
    write(tmp_path / "math" / "basic.t", "package math.basic\npub fn add( {")
    main_file = write(tmp_path / "main.t", "import math.basic\nfn main() { }")
    result = compile_file(main_file)
    assert "Failed to parse module" in result.errors[0].message

  def test_circular_imports(self, tmp_path):
    write(tmp_path / "a.t", "package a\nimport b\npub fn fa() -> u64 { 1u64 }")
    write(tmp_path / "b.t", "package b\nimport a\npub fn fb() -> u64 { 2u64 }")
    main_file = write(tmp_path / "main.t", "import a\nfn main() -> u64 { a.fa() }")
    result = compile_file(main_file)
    assert result.errors[0].message == "Circular dependency detected: a -> b -> a"

  def test_foreign_struct_types_are_opaque(self, tmp_path):
    write(
      tmp_path / "geo.t",
      "package geo\nstruct Point { x: u64 }\npub fn origin() -> Point { Point { x: 0u64 } }",
    )
    main_file = write(tmp_path / "main.t", "import geo\nfn main() { val p = geo.origin()\n val x = p.x }")
    assert compile_file(main_file).success

  def test_resolver_caches_modules(self, tmp_path):
    write(tmp_path / "a.t", "package a\nimport b\npub fn fa() -> u64 { 1u64 }")
    write(tmp_path / "b.t", "package b\npub fn fb() -> u64 { 2u64 }")
    interner = StringInterner()
    program = parse("import a\nfn main() { }", interner)
    resolver = ModuleResolver(interner, [tmp_path])
    first = resolver.resolve_import(program.imports[0])
    second = resolver.resolve_import(program.imports[0])
    assert first is second
    a, b = interner.get("a"), interner.get("b")
    assert set(resolver.loaded_modules) == {(a,), (b,)}
    assert resolver.dependency_graph == {(a,): [(b,)]}

    resolver.clear_cache()
    assert resolver.loaded_modules == {}

  def test_resolver_reports_missing_file(self, tmp_path):
    interner = StringInterner()
    program = parse("import x.y\nfn main() { }", interner)
    resolver = ModuleResolver(interner, [tmp_path])
    with pytest.raises(TypeCheckError, match="Module 'x.y' not found"):
      resolver.resolve_import(program.imports[0])


class TestCli:
  def test_check(self, tmp_path, capsys):
    source = write(tmp_path / "main.t", "fn id<T>(x: T) -> T { x }\nfn main() -> u64 { id(1u64) }")
    assert main(["check", str(source)]) == 0
    out = capsys.readouterr().out
    assert out.startswith(f"{source}: ok (")
    assert "1 instantiations" in out

  def test_check_reports_errors(self, tmp_path, capsys):
    source = write(tmp_path / "main.t", "fn main() -> u64 { true }")
    assert main(["check", str(source)]) == 1
    assert "Type mismatch: expected UInt64, but got Bool" in capsys.readouterr().err

  def test_check_include_path(self, tmp_path):
    lib = tmp_path / "lib"
    write(lib / "util.t", "package util\npub fn one() -> u64 { 1u64 }")
    source = write(tmp_path / "app" / "main.t", "import util\nfn main() -> u64 { util.one() }")
    assert main(["check", str(source), "-I", str(lib)]) == 0

  def test_missing_file(self, tmp_path, capsys):
    assert main(["check", str(tmp_path / "missing.t")]) == 2
    assert "not found" in capsys.readouterr().err

  def test_tokens(self, tmp_path, capsys):
    source = write(tmp_path / "main.t", "fn main")
    assert main(["tokens", str(source)]) == 0
    assert capsys.readouterr().out.splitlines() == ["1:1:0 FN", "1:4:3 IDENT 'main'", "1:8:7 EOF"]

  def test_tokens_lex_error(self, tmp_path, capsys):
    source = write(tmp_path / "main.t", "a @ b")
    assert main(["tokens", str(source)]) == 1
    assert "Unexpected character '@'" in capsys.readouterr().err

  def test_ast(self, tmp_path, capsys):
    source = write(tmp_path / "main.t", "fn main() -> u64 { 1u64 }")
    assert main(["ast", str(source)]) == 0
    assert "UInt64Literal(value=1)" in capsys.readouterr().out
