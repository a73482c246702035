"""Type declarations: the surface type syntax as data."""

from dataclasses import dataclass

from .interner import Symbol, StringInterner


@dataclass(frozen=True, slots=True)
class SimpleType:
  """Primitive type like 'u64', 'bool', 'str', plus the 'unknown' and 'number' markers."""

  name: str


@dataclass(frozen=True, slots=True)
class ArrayType:
  """Array type like [u64; 5]. A size of None means '_' or unsized."""

  element_type: "TypeDecl"
  size: int | None


@dataclass(frozen=True, slots=True)
class TupleType:
  """Tuple type like (u64, bool, str)."""

  element_types: tuple["TypeDecl", ...]


@dataclass(frozen=True, slots=True)
class DictType:
  """Dictionary type: dict[K, V]."""

  key_type: "TypeDecl"
  value_type: "TypeDecl"


@dataclass(frozen=True, slots=True)
class StructType:
  """Plain or instantiated generic struct: Point, Box<u64>."""

  name: Symbol
  type_args: tuple["TypeDecl", ...] = ()


@dataclass(frozen=True, slots=True)
class IdentifierType:
  """Named type reference, resolved during checking."""

  name: Symbol


@dataclass(frozen=True, slots=True)
class GenericType:
  """Type parameter in scope, like T."""

  name: Symbol


@dataclass(frozen=True, slots=True)
class SelfType:
  """'Self' inside an impl block."""


TypeDecl = SimpleType | ArrayType | TupleType | DictType | StructType | IdentifierType | GenericType | SelfType

UNKNOWN = SimpleType("unknown")
UNIT = SimpleType("unit")
BOOL = SimpleType("bool")
U64 = SimpleType("u64")
I64 = SimpleType("i64")
STRING = SimpleType("str")
PTR = SimpleType("ptr")
NUMBER = SimpleType("number")
SELF = SelfType()

INTEGER_TYPES = (U64, I64)

DISPLAY_NAMES: dict[SimpleType, str] = {
  UNKNOWN: "Unknown",
  UNIT: "Unit",
  BOOL: "Bool",
  U64: "UInt64",
  I64: "Int64",
  STRING: "String",
  PTR: "Ptr",
  NUMBER: "Number",
}


def is_integer(t: "TypeDecl") -> bool:
  return t in INTEGER_TYPES


def is_numeric(t: "TypeDecl") -> bool:
  """Concrete integer or an unresolved numeric literal."""
  return t in INTEGER_TYPES or t == NUMBER


def substitute_generics(t: "TypeDecl", subst: dict[Symbol, "TypeDecl"]) -> "TypeDecl":
  """Replace every Generic(p) with subst[p] where present, recursing into compound types."""
  if not subst:
    return t
  match t:
    case GenericType(name):
      return subst.get(name, t)
    case ArrayType(elem, size):
      return ArrayType(substitute_generics(elem, subst), size)
    case TupleType(elems):
      return TupleType(tuple(substitute_generics(e, subst) for e in elems))
    case DictType(key, value):
      return DictType(substitute_generics(key, subst), substitute_generics(value, subst))
    case StructType(name, args):
      return StructType(name, tuple(substitute_generics(a, subst) for a in args))
  return t


def substitute_self(t: "TypeDecl", replacement: "TypeDecl") -> "TypeDecl":
  """Replace Self with the concrete impl target."""
  match t:
    case SelfType():
      return replacement
    case ArrayType(elem, size):
      return ArrayType(substitute_self(elem, replacement), size)
    case TupleType(elems):
      return TupleType(tuple(substitute_self(e, replacement) for e in elems))
    case DictType(key, value):
      return DictType(substitute_self(key, replacement), substitute_self(value, replacement))
    case StructType(name, args):
      return StructType(name, tuple(substitute_self(a, replacement) for a in args))
  return t


def _any(t: "TypeDecl", pred) -> bool:
  if pred(t):
    return True
  match t:
    case ArrayType(elem, _):
      return _any(elem, pred)
    case TupleType(elems) | StructType(_, elems):
      return any(_any(e, pred) for e in elems)
    case DictType(key, value):
      return _any(key, pred) or _any(value, pred)
  return False


def contains_number(t: "TypeDecl") -> bool:
  return _any(t, lambda x: x == NUMBER)


def contains_generic(t: "TypeDecl") -> bool:
  return _any(t, lambda x: isinstance(x, GenericType))


def contains_self(t: "TypeDecl") -> bool:
  return _any(t, lambda x: isinstance(x, SelfType))


def contains_unknown(t: "TypeDecl") -> bool:
  return _any(t, lambda x: x == UNKNOWN)


def replace_number(t: "TypeDecl", target: "TypeDecl") -> "TypeDecl":
  """Replace every Number inside t with target."""
  match t:
    case SimpleType() if t == NUMBER:
      return target
    case ArrayType(elem, size):
      return ArrayType(replace_number(elem, target), size)
    case TupleType(elems):
      return TupleType(tuple(replace_number(e, target) for e in elems))
    case DictType(key, value):
      return DictType(replace_number(key, target), replace_number(value, target))
    case StructType(name, args):
      return StructType(name, tuple(replace_number(a, target) for a in args))
  return t


def describe(t: "TypeDecl", interner: StringInterner) -> str:
  """Human-readable type name for diagnostics."""
  match t:
    case SimpleType():
      return DISPLAY_NAMES.get(t, t.name)
    case ArrayType(elem, size):
      return f"[{describe(elem, interner)}; {'_' if size is None else size}]"
    case TupleType(elems):
      return f"({', '.join(describe(e, interner) for e in elems)})"
    case DictType(key, value):
      return f"dict[{describe(key, interner)}, {describe(value, interner)}]"
    case StructType(name, args):
      if not args:
        return interner.resolve(name)
      return f"{interner.resolve(name)}<{', '.join(describe(a, interner) for a in args)}>"
    case IdentifierType(name) | GenericType(name):
      return interner.resolve(name)
    case SelfType():
      return "Self"
  return str(t)


def compact(t: "TypeDecl", interner: StringInterner) -> str:
  """Short identifier-safe form used in mangled instantiation names."""
  match t:
    case SimpleType():
      return t.name
    case ArrayType(elem, size):
      return f"arr{'' if size is None else size}_{compact(elem, interner)}"
    case TupleType(elems):
      return "tup_" + "_".join(compact(e, interner) for e in elems)
    case DictType(key, value):
      return f"dict_{compact(key, interner)}_{compact(value, interner)}"
    case StructType(name, args):
      return "_".join([interner.resolve(name), *(compact(a, interner) for a in args)])
    case IdentifierType(name) | GenericType(name):
      return interner.resolve(name)
    case SelfType():
      return "Self"
  return "unknown"
