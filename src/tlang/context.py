"""Scoped symbol tables used by the type checker."""

from dataclasses import field, dataclass

from .ast import ExprRef, Visibility
from .types import TypeDecl
from .interner import Symbol


@dataclass
class VarState:
  """A variable binding; ``origin`` is the initializer, used to settle untyped literals."""

  type: TypeDecl
  mutable: bool
  origin: ExprRef | None = None


@dataclass(frozen=True, slots=True)
class FieldInfo:
  type: TypeDecl
  visibility: Visibility


@dataclass
class StructDefinition:
  name: Symbol
  fields: dict[Symbol, FieldInfo]
  generics: tuple[Symbol, ...]
  visibility: Visibility


@dataclass(frozen=True, slots=True)
class FunctionSignature:
  """Resolved signature of a function, method or associated function."""

  name: Symbol
  param_names: tuple[Symbol, ...]
  param_types: tuple[TypeDecl, ...]
  return_type: TypeDecl
  generics: tuple[Symbol, ...] = ()
  visibility: Visibility = Visibility.PRIVATE
  has_self_param: bool = False
  owner: Symbol | None = None


@dataclass
class TypeCheckContext:
  """Variables, functions, structs and methods visible to the checker."""

  scopes: list[dict[Symbol, VarState]] = field(default_factory=list)
  functions: dict[Symbol, FunctionSignature] = field(default_factory=dict)
  struct_definitions: dict[Symbol, StructDefinition] = field(default_factory=dict)
  struct_methods: dict[Symbol, dict[Symbol, FunctionSignature]] = field(default_factory=dict)
  # Type parameters declared by each struct's impl block
  impl_generics: dict[Symbol, tuple[Symbol, ...]] = field(default_factory=dict)
  current_impl_target: Symbol | None = None
  # Per scope: variable -> substitution recorded when a generic struct was bound to it
  var_type_mappings: list[dict[Symbol, dict[Symbol, TypeDecl]]] = field(default_factory=list)

  def push_scope(self) -> None:
    self.scopes.append({})
    self.var_type_mappings.append({})

  def pop_scope(self) -> None:
    self.scopes.pop()
    self.var_type_mappings.pop()

  @property
  def depth(self) -> int:
    return len(self.scopes)

  def reset(self) -> None:
    self.scopes.clear()
    self.var_type_mappings.clear()
    self.current_impl_target = None

  def define_var(self, name: Symbol, type: TypeDecl, mutable: bool, origin: ExprRef | None = None) -> VarState:
    state = VarState(type, mutable, origin)
    self.scopes[-1][name] = state
    self.var_type_mappings[-1].pop(name, None)
    return state

  def lookup_var(self, name: Symbol) -> VarState | None:
    for scope in reversed(self.scopes):
      if name in scope:
        return scope[name]
    return None

  def set_var_mapping(self, name: Symbol, subst: dict[Symbol, TypeDecl]) -> None:
    self.var_type_mappings[-1][name] = subst

  def lookup_var_mapping(self, name: Symbol) -> dict[Symbol, TypeDecl] | None:
    for scope, mappings in zip(reversed(self.scopes), reversed(self.var_type_mappings)):
      if name in scope:
        return mappings.get(name)
    return None

  def lookup_method(self, struct: Symbol, method: Symbol) -> FunctionSignature | None:
    return self.struct_methods.get(struct, {}).get(method)
