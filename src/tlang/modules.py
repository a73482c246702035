"""Locating, parsing and caching imported modules."""

import logging
from pathlib import Path
from dataclasses import field, dataclass

from .ast import Program, ImportDecl
from .errors import TypeCheckError
from .parser import parse_source
from .interner import Symbol, StringInterner

logger = logging.getLogger(__name__)

MODULE_EXTENSION = ".t"
MODULE_INDEX = "mod.t"

ModulePath = tuple[Symbol, ...]


@dataclass
class ResolvedModule:
  package_name: ModulePath
  file_path: Path
  program: Program


@dataclass
class ModuleResolver:
  """Finds imported modules on disk and parses them with a shared interner.

  A module path ``a.b`` is looked up as ``a/b.t`` and then ``a/b/mod.t`` under
  the importing file's directory followed by each search path, in order.
  Loaded modules are cached by path; imports of a loaded module are resolved
  depth-first, and re-entering a module still being resolved is a cycle.
  """

  interner: StringInterner
  search_paths: list[Path] = field(default_factory=lambda: [Path(".")])
  parse_limits: dict[str, int] = field(default_factory=dict)
  loaded_modules: dict[ModulePath, ResolvedModule] = field(default_factory=dict)
  dependency_graph: dict[ModulePath, list[ModulePath]] = field(default_factory=dict)
  resolving_stack: list[ModulePath] = field(default_factory=list)

  def add_search_path(self, path: Path) -> None:
    self.search_paths.append(Path(path))

  def clear_cache(self) -> None:
    self.loaded_modules.clear()
    self.dependency_graph.clear()
    self.resolving_stack.clear()

  def path_name(self, path: ModulePath) -> str:
    return ".".join(self.interner.resolve(s) for s in path)

  def resolve_program(self, program: Program, current_dir: Path | None = None) -> dict[ModulePath, Program]:
    """Resolve every import of program (transitively); returns parsed modules by path."""
    own_package = program.package_decl
    if own_package is not None:
      self.resolving_stack.append(own_package)
    try:
      for import_decl in program.imports:
        self.resolve_import(import_decl, current_dir)
    finally:
      if own_package is not None:
        self.resolving_stack.pop()
    return {path: module.program for path, module in self.loaded_modules.items()}

  def resolve_import(self, import_decl: ImportDecl, current_dir: Path | None = None) -> ResolvedModule:
    module_path = import_decl.module_path
    cached = self.loaded_modules.get(module_path)
    if cached is not None:
      logger.debug("module cache hit: %s", self.path_name(module_path))
      return cached

    if module_path in self.resolving_stack:
      chain = " -> ".join(self.path_name(p) for p in self.resolving_stack)
      raise TypeCheckError.generic_error(f"Circular dependency detected: {chain} -> {self.path_name(module_path)}")

    if self.resolving_stack:
      self.dependency_graph.setdefault(self.resolving_stack[-1], []).append(module_path)
    self.resolving_stack.append(module_path)
    try:
      file_path = self.find_module_file(module_path, current_dir)
      module = self.load_module(file_path, module_path)
      for nested in module.program.imports:
        self.resolve_import(nested, file_path.parent)
    finally:
      self.resolving_stack.pop()

    self.loaded_modules[module_path] = module
    return module

  def find_module_file(self, module_path: ModulePath, current_dir: Path | None = None) -> Path:
    components = [self.interner.resolve(s) for s in module_path]
    roots = [current_dir, *self.search_paths] if current_dir is not None else list(self.search_paths)
    for root in roots:
      file_path = Path(root, *components[:-1], components[-1] + MODULE_EXTENSION)
      if file_path.is_file():
        return file_path
      index_path = Path(root, *components, MODULE_INDEX)
      if index_path.is_file():
        return index_path
    raise TypeCheckError.not_found("Module", ".".join(components))

  def load_module(self, file_path: Path, expected_package: ModulePath) -> ResolvedModule:
    logger.debug("loading module %s from %s", self.path_name(expected_package), file_path)
    try:
      source = file_path.read_text()
    except OSError as e:
      raise TypeCheckError.generic_error(f"Failed to read module file {file_path}: {e}") from e

    result = parse_source(source, self.interner, **self.parse_limits)
    if result.errors:
      raise TypeCheckError.generic_error(f"Failed to parse module {file_path}: {result.errors[0]}")
    program = result.program
    program.path = str(file_path)

    package = program.package_decl
    if package is not None and package != expected_package:
      raise TypeCheckError.generic_error(
        f"Package declaration mismatch: expected '{self.path_name(expected_package)}', "
        f"found '{self.path_name(package)}'"
      )
    return ResolvedModule(expected_package, file_path, program)
