"""Compiler pipeline for the T language frontend."""

import logging
from pathlib import Path
from dataclasses import field, dataclass

from .ast import Program
from .errors import TypeCheckError
from .parser import (
  MAX_PARAMETERS,
  MAX_IMPL_METHODS,
  MAX_STRUCT_FIELDS,
  MAX_RECURSION_DEPTH,
  ParseError,
  parse_source,
)
from .checker import CheckedProgram, check_program
from .modules import ModulePath, ModuleResolver
from .interner import StringInterner

logger = logging.getLogger(__name__)

CompileError = ParseError | TypeCheckError


@dataclass
class CompilerOptions:
  """Limits and module search settings for one compilation."""

  max_recursion_depth: int = MAX_RECURSION_DEPTH
  max_struct_fields: int = MAX_STRUCT_FIELDS
  max_impl_methods: int = MAX_IMPL_METHODS
  max_parameters: int = MAX_PARAMETERS
  search_paths: list[Path] = field(default_factory=list)
  resolve_imports: bool = True

  def parser_limits(self) -> dict[str, int]:
    return {
      "max_struct_fields": self.max_struct_fields,
      "max_impl_methods": self.max_impl_methods,
      "max_parameters": self.max_parameters,
      "max_recursion_depth": self.max_recursion_depth,
    }


@dataclass
class CompileResult:
  """Result of a compilation."""

  success: bool
  program: Program | None = None
  checked: CheckedProgram | None = None
  errors: list[CompileError] = field(default_factory=list)
  path: str | None = None

  def sorted_errors(self) -> list[CompileError]:
    return sorted(self.errors, key=lambda e: e.location.offset if e.location is not None else -1)

  def format_errors(self) -> str:
    """Render every error as 'file:line:col: message' with the source line and a caret."""
    name = self.path or "<input>"
    lines: list[str] = []
    for error in self.sorted_errors():
      message = error.message
      if isinstance(error, TypeCheckError) and error.context is not None:
        message = f"{message} (in {error.context})"
      location = error.location
      if location is None:
        lines.append(f"{name}: {message}")
        continue
      lines.append(f"{name}:{location.line}:{location.column}: {message}")
      if self.program is not None:
        lines.append(f"  {self.program.locations.line_text(location.line)}")
        lines.append(f"  {' ' * (location.column - 1)}^")
    return "\n".join(lines)


class Compiler:
  """Orchestrates parsing, module resolution and type checking."""

  def __init__(self, options: CompilerOptions | None = None) -> None:
    self.options = options or CompilerOptions()

  def check_source(self, source: str, path: Path | None = None) -> CompileResult:
    """Parse and type check source; path locates the file for imports and diagnostics."""
    name = str(path) if path is not None else None
    interner = StringInterner()

    # Parsing
    parsed = parse_source(source, interner, **self.options.parser_limits())
    program = parsed.program
    program.path = name
    if not parsed.success:
      logger.debug("parsing failed with %d errors", len(parsed.errors))
      return CompileResult(False, program, errors=list(parsed.errors), path=name)

    # Imports
    modules: dict[ModulePath, Program] = {}
    if self.options.resolve_imports and program.imports:
      resolver = ModuleResolver(
        interner,
        [*self.options.search_paths, Path(".")],
        self.options.parser_limits(),
      )
      current_dir = path.parent if path is not None else None
      try:
        modules = resolver.resolve_program(program, current_dir)
      except TypeCheckError as e:
        return CompileResult(False, program, errors=[e.with_context("imports")], path=name)
      logger.debug("resolved %d modules", len(modules))

    # Type checking (also rewrites untyped literals in the expression pool)
    result = check_program(program, modules, self.options.max_recursion_depth)
    return CompileResult(result.success, program, result.result, list(result.errors), name)

  def check_file(self, path: Path) -> CompileResult:
    return self.check_source(path.read_text(), path)


def compile_source(source: str, options: CompilerOptions | None = None) -> CompileResult:
  """Convenience function to check source text."""
  return Compiler(options).check_source(source)


def compile_file(path: Path, options: CompilerOptions | None = None) -> CompileResult:
  """Check a source file, resolving its imports relative to its directory."""
  return Compiler(options).check_file(path)
