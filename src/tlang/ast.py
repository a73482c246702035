"""AST node definitions and the append-only pools that own them.

Expressions and statements live in ExprPool/StmtPool and refer to each other
through integer handles (ExprRef/StmtRef), so the type checker can keep side
tables keyed by handle.
"""

from enum import Enum
from dataclasses import dataclass

from .types import TypeDecl
from .interner import Symbol, StringInterner
from .location import LocationPool

ExprRef = int
StmtRef = int


class Operator(Enum):
  IADD = "+"
  ISUB = "-"
  IMUL = "*"
  IDIV = "/"
  IMOD = "%"
  EQ = "=="
  NE = "!="
  LT = "<"
  LE = "<="
  GT = ">"
  GE = ">="
  LOGICAL_AND = "&&"
  LOGICAL_OR = "||"
  BIT_AND = "&"
  BIT_OR = "|"
  BIT_XOR = "^"
  SHL = "<<"
  SHR = ">>"


ARITHMETIC_OPS = frozenset({Operator.IADD, Operator.ISUB, Operator.IMUL, Operator.IDIV, Operator.IMOD})
COMPARISON_OPS = frozenset({Operator.EQ, Operator.NE, Operator.LT, Operator.LE, Operator.GT, Operator.GE})
LOGICAL_OPS = frozenset({Operator.LOGICAL_AND, Operator.LOGICAL_OR})
BITWISE_OPS = frozenset({Operator.BIT_AND, Operator.BIT_OR, Operator.BIT_XOR})
SHIFT_OPS = frozenset({Operator.SHL, Operator.SHR})


class UnaryOp(Enum):
  NEG = "-"
  LOGICAL_NOT = "!"
  BIT_NOT = "~"


class Visibility(Enum):
  PRIVATE = "private"
  PUBLIC = "pub"


# === Expressions ===


@dataclass(frozen=True, slots=True)
class Int64Literal:
  value: int


@dataclass(frozen=True, slots=True)
class UInt64Literal:
  value: int


@dataclass(frozen=True, slots=True)
class NumberLiteral:
  """Integer literal without a suffix; its type is decided during checking."""

  symbol: Symbol


@dataclass(frozen=True, slots=True)
class BoolLiteral:
  value: bool


@dataclass(frozen=True, slots=True)
class StringLiteral:
  symbol: Symbol


@dataclass(frozen=True, slots=True)
class NullLiteral:
  pass


@dataclass(frozen=True, slots=True)
class UnitLiteral:
  pass


@dataclass(frozen=True, slots=True)
class VarExpr:
  name: Symbol


@dataclass(frozen=True, slots=True)
class BinaryExpr:
  op: Operator
  left: ExprRef
  right: ExprRef


@dataclass(frozen=True, slots=True)
class UnaryExpr:
  op: UnaryOp
  operand: ExprRef


@dataclass(frozen=True, slots=True)
class ExprList:
  """Argument list payload of calls; never a standalone expression."""

  items: tuple[ExprRef, ...]


@dataclass(frozen=True, slots=True)
class CallExpr:
  """Call of a named function: f(a, b). ``args`` refers to an ExprList."""

  name: Symbol
  args: ExprRef


@dataclass(frozen=True, slots=True)
class MethodCallExpr:
  receiver: ExprRef
  method: Symbol
  args: ExprRef


@dataclass(frozen=True, slots=True)
class FieldAccessExpr:
  target: ExprRef
  field: Symbol


@dataclass(frozen=True, slots=True)
class TupleIndexExpr:
  target: ExprRef
  index: int


@dataclass(frozen=True, slots=True)
class IndexExpr:
  target: ExprRef
  index: ExprRef


@dataclass(frozen=True, slots=True)
class SliceExpr:
  target: ExprRef
  start: ExprRef | None
  end: ExprRef | None


@dataclass(frozen=True, slots=True)
class IndexAssignExpr:
  target: ExprRef
  index: ExprRef
  value: ExprRef


@dataclass(frozen=True, slots=True)
class ArrayLiteral:
  elements: tuple[ExprRef, ...]


@dataclass(frozen=True, slots=True)
class TupleLiteral:
  elements: tuple[ExprRef, ...]


@dataclass(frozen=True, slots=True)
class DictLiteral:
  entries: tuple[tuple[ExprRef, ExprRef], ...]


@dataclass(frozen=True, slots=True)
class StructLiteral:
  name: Symbol
  fields: tuple[tuple[Symbol, ExprRef], ...]


@dataclass(frozen=True, slots=True)
class AssignExpr:
  target: ExprRef
  value: ExprRef


@dataclass(frozen=True, slots=True)
class BlockExpr:
  """Block of statements; its value is the last expression statement, else unit."""

  statements: tuple[StmtRef, ...]


@dataclass(frozen=True, slots=True)
class IfExpr:
  condition: ExprRef
  then_block: ExprRef
  elif_branches: tuple[tuple[ExprRef, ExprRef], ...]
  else_block: ExprRef | None


@dataclass(frozen=True, slots=True)
class QualifiedCallExpr:
  """Call through a module path: math.basic.add(1, 2)."""

  path: tuple[Symbol, ...]
  name: Symbol
  args: ExprRef


@dataclass(frozen=True, slots=True)
class AssociatedCallExpr:
  """Call of an associated function: Point::new(1, 2)."""

  struct_name: Symbol
  name: Symbol
  args: ExprRef


@dataclass(frozen=True, slots=True)
class CastExpr:
  expr: ExprRef
  target_type: TypeDecl


Expr = (
  Int64Literal
  | UInt64Literal
  | NumberLiteral
  | BoolLiteral
  | StringLiteral
  | NullLiteral
  | UnitLiteral
  | VarExpr
  | BinaryExpr
  | UnaryExpr
  | ExprList
  | CallExpr
  | MethodCallExpr
  | FieldAccessExpr
  | TupleIndexExpr
  | IndexExpr
  | SliceExpr
  | IndexAssignExpr
  | ArrayLiteral
  | TupleLiteral
  | DictLiteral
  | StructLiteral
  | AssignExpr
  | BlockExpr
  | IfExpr
  | QualifiedCallExpr
  | AssociatedCallExpr
  | CastExpr
)


# === Statements ===


@dataclass(frozen=True, slots=True)
class ExprStmt:
  expr: ExprRef


@dataclass(frozen=True, slots=True)
class ValStmt:
  """Immutable binding: val x: T = e"""

  name: Symbol
  type_decl: TypeDecl | None
  value: ExprRef


@dataclass(frozen=True, slots=True)
class VarStmt:
  """Mutable binding: var x: T = e (type and initializer optional)"""

  name: Symbol
  type_decl: TypeDecl | None
  value: ExprRef | None


@dataclass(frozen=True, slots=True)
class ReturnStmt:
  value: ExprRef | None


@dataclass(frozen=True, slots=True)
class BreakStmt:
  pass


@dataclass(frozen=True, slots=True)
class ContinueStmt:
  pass


@dataclass(frozen=True, slots=True)
class ForStmt:
  var: Symbol
  start: ExprRef
  end: ExprRef
  body: ExprRef


@dataclass(frozen=True, slots=True)
class WhileStmt:
  condition: ExprRef
  body: ExprRef


@dataclass(frozen=True, slots=True)
class StructField:
  name: Symbol
  type_decl: TypeDecl
  visibility: Visibility


@dataclass(frozen=True, slots=True)
class Parameter:
  name: Symbol
  type_decl: TypeDecl


@dataclass(frozen=True, slots=True)
class MethodFunction:
  """Function inside an impl block; ``has_self_param`` marks a receiver."""

  name: Symbol
  parameters: tuple[Parameter, ...]
  return_type: TypeDecl | None
  body: StmtRef
  generics: tuple[Symbol, ...]
  visibility: Visibility
  has_self_param: bool
  start: int = 0


@dataclass(frozen=True, slots=True)
class StructDecl:
  name: Symbol
  fields: tuple[StructField, ...]
  generics: tuple[Symbol, ...]
  visibility: Visibility


@dataclass(frozen=True, slots=True)
class ImplBlock:
  target: Symbol
  methods: tuple[MethodFunction, ...]
  generics: tuple[Symbol, ...] = ()


Stmt = ExprStmt | ValStmt | VarStmt | ReturnStmt | BreakStmt | ContinueStmt | ForStmt | WhileStmt | StructDecl | ImplBlock


@dataclass(frozen=True, slots=True)
class Function:
  name: Symbol
  parameters: tuple[Parameter, ...]
  return_type: TypeDecl | None
  body: StmtRef
  generics: tuple[Symbol, ...]
  visibility: Visibility
  start: int = 0


@dataclass(frozen=True, slots=True)
class ImportDecl:
  module_path: tuple[Symbol, ...]
  alias: Symbol | None = None


class ExprPool:
  """Append-only arena of expressions addressed by ExprRef."""

  def __init__(self) -> None:
    self.nodes: list[Expr] = []

  def add(self, expr: Expr) -> ExprRef:
    self.nodes.append(expr)
    return len(self.nodes) - 1

  def get(self, ref: ExprRef) -> Expr:
    return self.nodes[ref]

  def replace(self, ref: ExprRef, expr: Expr) -> None:
    """Rewrite a node in place; the handle stays valid."""
    self.nodes[ref] = expr

  def __len__(self) -> int:
    return len(self.nodes)


class StmtPool:
  """Append-only arena of statements addressed by StmtRef."""

  def __init__(self) -> None:
    self.nodes: list[Stmt] = []

  def add(self, stmt: Stmt) -> StmtRef:
    self.nodes.append(stmt)
    return len(self.nodes) - 1

  def get(self, ref: StmtRef) -> Stmt:
    return self.nodes[ref]

  def __len__(self) -> int:
    return len(self.nodes)


@dataclass
class Program:
  """A parsed source file: declarations plus the pools they index."""

  package_decl: tuple[Symbol, ...] | None
  imports: list[ImportDecl]
  functions: list[Function]
  declarations: list[StmtRef]
  statements: StmtPool
  expressions: ExprPool
  interner: StringInterner
  locations: LocationPool
  path: str | None = None

  def structs(self) -> list[StructDecl]:
    return [s for ref in self.declarations if isinstance(s := self.statements.get(ref), StructDecl)]

  def impls(self) -> list[ImplBlock]:
    return [s for ref in self.declarations if isinstance(s := self.statements.get(ref), ImplBlock)]


def expr_children(expr: Expr) -> tuple[ExprRef, ...]:
  """Direct sub-expressions of a node (statements inside blocks excluded)."""
  match expr:
    case BinaryExpr(_, left, right):
      return (left, right)
    case UnaryExpr(_, operand):
      return (operand,)
    case ExprList(items) | ArrayLiteral(items) | TupleLiteral(items):
      return items
    case CallExpr(_, args) | QualifiedCallExpr(_, _, args) | AssociatedCallExpr(_, _, args):
      return (args,)
    case MethodCallExpr(receiver, _, args):
      return (receiver, args)
    case FieldAccessExpr(target, _) | TupleIndexExpr(target, _):
      return (target,)
    case IndexExpr(target, index):
      return (target, index)
    case SliceExpr(target, start, end):
      return tuple(r for r in (target, start, end) if r is not None)
    case IndexAssignExpr(target, index, value):
      return (target, index, value)
    case DictLiteral(entries):
      return tuple(r for pair in entries for r in pair)
    case StructLiteral(_, fields):
      return tuple(r for _, r in fields)
    case AssignExpr(target, value):
      return (target, value)
    case IfExpr(cond, then_block, elifs, else_block):
      refs = [cond, then_block]
      for elif_cond, elif_block in elifs:
        refs += [elif_cond, elif_block]
      if else_block is not None:
        refs.append(else_block)
      return tuple(refs)
    case CastExpr(inner, _):
      return (inner,)
  return ()
