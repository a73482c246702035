"""Builtin functions and methods known to the checker."""

from dataclasses import dataclass

from .types import PTR, U64, BOOL, UNIT, STRING, TypeDecl, ArrayType


@dataclass(frozen=True, slots=True)
class BuiltinSignature:
  param_types: tuple[TypeDecl, ...]
  return_type: TypeDecl


BUILTIN_PREFIX = "__builtin_"

BUILTIN_FUNCTIONS: dict[str, BuiltinSignature] = {
  "__builtin_heap_alloc": BuiltinSignature((U64,), PTR),
  "__builtin_heap_free": BuiltinSignature((PTR,), UNIT),
  "__builtin_heap_realloc": BuiltinSignature((PTR, U64), PTR),
  "__builtin_ptr_read": BuiltinSignature((PTR, U64), U64),
  "__builtin_ptr_write": BuiltinSignature((PTR, U64, U64), UNIT),
  "__builtin_ptr_is_null": BuiltinSignature((PTR,), BOOL),
  "__builtin_mem_copy": BuiltinSignature((PTR, PTR, U64), UNIT),
  "__builtin_mem_move": BuiltinSignature((PTR, PTR, U64), UNIT),
  "__builtin_mem_set": BuiltinSignature((PTR, U64, U64), UNIT),
}

STRING_METHODS: dict[str, BuiltinSignature] = {
  "len": BuiltinSignature((), U64),
  "concat": BuiltinSignature((STRING,), STRING),
  "substring": BuiltinSignature((U64, U64), STRING),
  "contains": BuiltinSignature((STRING,), BOOL),
  # Element count is only known at run time
  "split": BuiltinSignature((STRING,), ArrayType(STRING, 0)),
  "trim": BuiltinSignature((), STRING),
  "to_upper": BuiltinSignature((), STRING),
  "to_lower": BuiltinSignature((), STRING),
}

# Available on every type
UNIVERSAL_METHODS: dict[str, BuiltinSignature] = {
  "is_null": BuiltinSignature((), BOOL),
}


def is_builtin_name(name: str) -> bool:
  return name.startswith(BUILTIN_PREFIX)
