"""Constraint-based inference for generic calls and struct literals.

Type parameters of the callee are replaced by fresh inference variables,
argument types are collected as constraints, and the constraints are solved by
Robinson unification with an occurs check. Type parameters of the enclosing
definition stay rigid (GenericType) and only unify with themselves.
"""

from enum import Enum
from typing import Iterable
from dataclasses import dataclass

from .types import (
  NUMBER,
  UNKNOWN,
  DictType,
  TypeDecl,
  ArrayType,
  TupleType,
  StructType,
  GenericType,
  SimpleType,
  compact,
  describe,
  is_integer,
  contains_number,
  contains_generic,
)
from .errors import TypeCheckError, FatalTypeCheckError
from .interner import Symbol, StringInterner


@dataclass(frozen=True, slots=True)
class TypeVar:
  """Inference variable standing for one type parameter at one use site."""

  id: int
  name: Symbol


@dataclass(frozen=True, slots=True)
class Constraint:
  left: object
  right: object
  origin: str


class InstantiationKind(Enum):
  FUNCTION = "function"
  STRUCT = "struct"


@dataclass(frozen=True, slots=True)
class Instantiation:
  """A generic entity paired with the concrete types it is used at."""

  original_name: Symbol
  type_substitutions: tuple[tuple[Symbol, TypeDecl], ...]
  instantiated_name: str
  kind: InstantiationKind

  @property
  def substitutions(self) -> dict[Symbol, TypeDecl]:
    return dict(self.type_substitutions)


def mangle(name: str, subst: dict[Symbol, TypeDecl], interner: StringInterner) -> str:
  """Deterministic monomorphic name: base, then '_' + compact type per parameter in symbol order."""
  parts = [name.replace("::", "_")]
  for param in sorted(subst):
    parts.append(compact(subst[param], interner))
  return "_".join(parts)


def _map_type(t, fn):
  """Rebuild t bottom-up, applying fn to every leaf."""
  match t:
    case ArrayType(elem, size):
      return ArrayType(_map_type(elem, fn), size)
    case TupleType(elems):
      return TupleType(tuple(_map_type(e, fn) for e in elems))
    case DictType(key, value):
      return DictType(_map_type(key, fn), _map_type(value, fn))
    case StructType(name, args):
      return StructType(name, tuple(_map_type(a, fn) for a in args))
  return fn(t)


def _occurs(var: TypeVar, t) -> bool:
  match t:
    case TypeVar():
      return t == var
    case ArrayType(elem, _):
      return _occurs(var, elem)
    case TupleType(elems) | StructType(_, elems):
      return any(_occurs(var, e) for e in elems)
    case DictType(key, value):
      return _occurs(var, key) or _occurs(var, value)
  return False


class TypeInferenceEngine:
  """Holds constraints, the generic scope stack and the instantiation record."""

  def __init__(self, interner: StringInterner, max_recursion_depth: int = 128) -> None:
    self.interner = interner
    self.max_recursion_depth = max_recursion_depth
    self.constraints: list[Constraint] = []
    self.generic_scopes: list[dict[Symbol, object]] = []
    self.instantiations: list[Instantiation] = []
    self._seen: dict[tuple, Instantiation] = {}
    self._next_var = 0
    self.depth = 0

  # === Generic scopes ===

  def push_generic_scope(self, params: Iterable[Symbol], fresh: bool = False) -> dict[Symbol, object]:
    """Bind params to themselves (rigid) or to fresh inference variables."""
    scope: dict[Symbol, object] = {}
    for param in params:
      if fresh:
        scope[param] = TypeVar(self._next_var, param)
        self._next_var += 1
      else:
        scope[param] = GenericType(param)
    self.generic_scopes.append(scope)
    return scope

  def pop_generic_scope(self) -> None:
    self.generic_scopes.pop()

  def lookup_generic_type(self, name: Symbol):
    for scope in reversed(self.generic_scopes):
      if name in scope:
        return scope[name]
    return None

  def reset(self) -> None:
    self.constraints.clear()
    self.generic_scopes.clear()
    self.depth = 0

  # === Recursion guard ===

  def enter(self) -> None:
    self.depth += 1
    if self.depth > self.max_recursion_depth:
      raise FatalTypeCheckError.generic_error(
        f"Maximum recursion depth {self.max_recursion_depth} exceeded during type inference"
      )

  def exit(self) -> None:
    self.depth -= 1

  # === Constraints ===

  def add_constraint(self, left, right, origin: str) -> None:
    self.constraints.append(Constraint(left, right, origin))

  def clear_constraints(self, mark: int = 0) -> None:
    del self.constraints[mark:]

  def solve_constraints(self, mark: int = 0) -> dict[TypeVar, TypeDecl]:
    """Unify constraints added since mark; concrete ones first so literals adopt their types."""
    pending = self.constraints[mark:]
    ordered = [c for c in pending if not contains_number(c.right)] + [c for c in pending if contains_number(c.right)]
    subst: dict[TypeVar, TypeDecl] = {}
    for constraint in ordered:
      try:
        self._unify(constraint.left, constraint.right, subst)
      except TypeCheckError as e:
        raise e.with_context(constraint.origin)
    return {var: self.apply_solution(t, subst) for var, t in subst.items()}

  def apply_solution(self, t, subst: dict[TypeVar, TypeDecl]):
    """Substitute solved variables, following chains of bindings."""
    for _ in range(len(subst) + 1):
      t2 = _map_type(t, lambda leaf: subst.get(leaf, leaf) if isinstance(leaf, TypeVar) else leaf)
      if t2 == t:
        return t
      t = t2
    return t

  def _bind(self, var: TypeVar, t, subst: dict[TypeVar, TypeDecl]) -> None:
    if isinstance(t, TypeVar) and t == var:
      return
    if _occurs(var, t):
      name = self.interner.resolve(var.name)
      raise TypeCheckError.generic_error(f"Occurs check failed: type parameter '{name}' occurs in its own binding")
    subst[var] = t

  def _unify(self, a, b, subst: dict[TypeVar, TypeDecl]) -> None:
    # A variable bound to an untyped literal adopts the first concrete integer type
    for var, other in ((a, b), (b, a)):
      if isinstance(var, TypeVar) and subst.get(var) == NUMBER:
        other = self.apply_solution(other, subst)
        if is_integer(other):
          subst[var] = other
          return
    a = self.apply_solution(a, subst)
    b = self.apply_solution(b, subst)
    if a == b:
      return
    if isinstance(a, TypeVar):
      self._bind(a, b, subst)
      return
    if isinstance(b, TypeVar):
      self._bind(b, a, subst)
      return
    if a == UNKNOWN or b == UNKNOWN:
      return
    if (a == NUMBER and is_integer(b)) or (b == NUMBER and is_integer(a)):
      return
    match a, b:
      case ArrayType(ea, sa), ArrayType(eb, sb):
        if sa is not None and sb is not None and sa != sb:
          raise self._mismatch(a, b)
        self._unify(ea, eb, subst)
        return
      case TupleType(ea), TupleType(eb) if len(ea) == len(eb):
        for x, y in zip(ea, eb):
          self._unify(x, y, subst)
        return
      case DictType(ka, va), DictType(kb, vb):
        self._unify(ka, kb, subst)
        self._unify(va, vb, subst)
        return
      case StructType(na, aa), StructType(nb, ab) if na == nb and len(aa) == len(ab):
        for x, y in zip(aa, ab):
          self._unify(x, y, subst)
        return
    raise self._mismatch(a, b)

  def _describe(self, t) -> str:
    if isinstance(t, TypeVar):
      return self.interner.resolve(t.name)
    return describe(t, self.interner)

  def _mismatch(self, expected, actual) -> TypeCheckError:
    return TypeCheckError.type_mismatch(self._describe(expected), self._describe(actual))

  def substitute_vars(self, t, scope: dict[Symbol, object]):
    """Replace GenericType(p) by the variable bound to p in scope."""
    return _map_type(t, lambda leaf: scope.get(leaf.name, leaf) if isinstance(leaf, GenericType) else leaf)

  # === Instantiations ===

  def record_instantiation(
    self, original: Symbol, subst: dict[Symbol, TypeDecl], kind: InstantiationKind
  ) -> tuple[Instantiation, bool]:
    """Record a concrete instantiation; returns it and whether it was new."""
    key_subst = tuple(sorted(subst.items(), key=lambda item: item[0]))
    key = (original, key_subst, kind)
    if key in self._seen:
      return self._seen[key], False
    name = mangle(self.interner.resolve(original), subst, self.interner)
    instantiation = Instantiation(original, key_subst, name, kind)
    self._seen[key] = instantiation
    self.instantiations.append(instantiation)
    return instantiation, True


def is_concrete(t) -> bool:
  """True when t holds no type parameters, inference variables or unresolved parts."""
  if isinstance(t, TypeVar) or contains_generic(t):
    return False
  found = False

  def visit(leaf):
    nonlocal found
    if isinstance(leaf, TypeVar) or (isinstance(leaf, SimpleType) and leaf in (UNKNOWN, NUMBER)):
      found = True
    return leaf

  _map_type(t, visit)
  return not found
