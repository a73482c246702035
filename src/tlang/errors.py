"""Type checking errors and the multi-error result."""

from typing import Generic, TypeVar
from dataclasses import field, dataclass

from .location import SourceLocation

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class TypeMismatch:
  expected: str
  actual: str

  def message(self) -> str:
    return f"Type mismatch: expected {self.expected}, but got {self.actual}"


@dataclass(frozen=True, slots=True)
class TypeMismatchOperation:
  op: str
  left: str
  right: str

  def message(self) -> str:
    return f"Type mismatch in {self.op} operation: incompatible types {self.left} and {self.right}"


@dataclass(frozen=True, slots=True)
class NotFound:
  item_type: str
  name: str

  def message(self) -> str:
    return f"{self.item_type} '{self.name}' not found"


@dataclass(frozen=True, slots=True)
class UnsupportedOperation:
  op: str
  type: str

  def message(self) -> str:
    return f"Unsupported operation '{self.op}' for type {self.type}"


@dataclass(frozen=True, slots=True)
class ConversionError:
  source: str
  target: str

  def message(self) -> str:
    return f"Cannot convert '{self.source}' to {self.target}"


@dataclass(frozen=True, slots=True)
class ArrayError:
  msg: str

  def message(self) -> str:
    return f"Array error: {self.msg}"


@dataclass(frozen=True, slots=True)
class MethodError:
  method: str
  type: str
  reason: str

  def message(self) -> str:
    return f"Method '{self.method}' error for type {self.type}: {self.reason}"


@dataclass(frozen=True, slots=True)
class InvalidLiteral:
  value: str
  expected_type: str

  def message(self) -> str:
    return f"Invalid {self.expected_type} literal: '{self.value}'"


@dataclass(frozen=True, slots=True)
class AccessDenied:
  msg: str

  def message(self) -> str:
    return f"Access denied: {self.msg}"


@dataclass(frozen=True, slots=True)
class GenericError:
  msg: str

  def message(self) -> str:
    return self.msg


ErrorKind = (
  TypeMismatch
  | TypeMismatchOperation
  | NotFound
  | UnsupportedOperation
  | ConversionError
  | ArrayError
  | MethodError
  | InvalidLiteral
  | AccessDenied
  | GenericError
)


class TypeCheckError(Exception):
  """Raised when a type error is detected.

  Carries a structured ``kind``, an optional ``context`` naming the enclosing
  construct, and the location of the offending expression once known.
  """

  def __init__(self, kind: ErrorKind, context: str | None = None, location: SourceLocation | None = None) -> None:
    super().__init__(kind.message())
    self.kind = kind
    self.context = context
    self.location = location

  @property
  def message(self) -> str:
    return self.kind.message()

  def with_context(self, context: str) -> "TypeCheckError":
    if self.context is None:
      self.context = context
    return self

  def with_location(self, location: SourceLocation | None) -> "TypeCheckError":
    if self.location is None:
      self.location = location
    return self

  def __str__(self) -> str:
    text = self.kind.message()
    if self.location is not None:
      text = f"{self.location}: {text}"
    if self.context is not None:
      text = f"{text} (in {self.context})"
    return text

  # Constructors mirroring the error kinds

  @classmethod
  def type_mismatch(cls, expected: str, actual: str) -> "TypeCheckError":
    return cls(TypeMismatch(expected, actual))

  @classmethod
  def type_mismatch_operation(cls, op: str, left: str, right: str) -> "TypeCheckError":
    return cls(TypeMismatchOperation(op, left, right))

  @classmethod
  def not_found(cls, item_type: str, name: str) -> "TypeCheckError":
    return cls(NotFound(item_type, name))

  @classmethod
  def unsupported_operation(cls, op: str, type: str) -> "TypeCheckError":
    return cls(UnsupportedOperation(op, type))

  @classmethod
  def conversion_error(cls, source: str, target: str) -> "TypeCheckError":
    return cls(ConversionError(source, target))

  @classmethod
  def array_error(cls, msg: str) -> "TypeCheckError":
    return cls(ArrayError(msg))

  @classmethod
  def method_error(cls, method: str, type: str, reason: str) -> "TypeCheckError":
    return cls(MethodError(method, type, reason))

  @classmethod
  def invalid_literal(cls, value: str, expected_type: str) -> "TypeCheckError":
    return cls(InvalidLiteral(value, expected_type))

  @classmethod
  def access_denied(cls, msg: str) -> "TypeCheckError":
    return cls(AccessDenied(msg))

  @classmethod
  def generic_error(cls, msg: str) -> "TypeCheckError":
    return cls(GenericError(msg))


class FatalTypeCheckError(TypeCheckError):
  """Aborts the whole check, e.g. when inference recursion runs away."""


@dataclass
class MultipleTypeCheckResult(Generic[T]):
  """Result of checking a whole program: the artifact (if any) and every error."""

  result: T | None
  errors: list[TypeCheckError] = field(default_factory=list)

  @property
  def success(self) -> bool:
    return not self.errors

  def sorted_errors(self) -> list[TypeCheckError]:
    return sorted(self.errors, key=lambda e: e.location.offset if e.location is not None else -1)
