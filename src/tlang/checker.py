"""Type checker for the T language.

Checks every function and method body against the declared signatures,
records a type for each expression, infers generic instantiations, and settles
untyped integer literals to u64 or i64. Errors are collected per function: the
first error in a body stops that body and checking moves on to the next one.
"""

import logging
from dataclasses import field, dataclass

from .ast import (
  Expr,
  IfExpr,
  ExprRef,
  ForStmt,
  Program,
  StmtRef,
  ValStmt,
  VarExpr,
  VarStmt,
  CallExpr,
  CastExpr,
  ExprList,
  ExprStmt,
  Function,
  Operator,
  UnaryOp,
  BlockExpr,
  BreakStmt,
  IndexExpr,
  SliceExpr,
  UnaryExpr,
  WhileStmt,
  AssignExpr,
  BinaryExpr,
  ReturnStmt,
  StructDecl,
  Visibility,
  BoolLiteral,
  DictLiteral,
  NullLiteral,
  UnitLiteral,
  ArrayLiteral,
  ContinueStmt,
  Int64Literal,
  TupleLiteral,
  NumberLiteral,
  StringLiteral,
  StructLiteral,
  UInt64Literal,
  MethodCallExpr,
  MethodFunction,
  TupleIndexExpr,
  FieldAccessExpr,
  IndexAssignExpr,
  QualifiedCallExpr,
  AssociatedCallExpr,
  SHIFT_OPS,
  LOGICAL_OPS,
  BITWISE_OPS,
  ARITHMETIC_OPS,
  COMPARISON_OPS,
  expr_children,
)
from .types import (
  I64,
  PTR,
  U64,
  BOOL,
  UNIT,
  NUMBER,
  STRING,
  UNKNOWN,
  DictType,
  SelfType,
  TypeDecl,
  ArrayType,
  TupleType,
  StructType,
  GenericType,
  IdentifierType,
  describe,
  is_integer,
  is_numeric,
  replace_number,
  contains_number,
  contains_generic,
  substitute_self,
  substitute_generics,
)
from .errors import TypeCheckError, FatalTypeCheckError, MultipleTypeCheckResult
from .parser import I64_MAX, I64_MIN, U64_MAX, MAX_RECURSION_DEPTH, parse_integer_text
from .context import FieldInfo, VarState, TypeCheckContext, StructDefinition, FunctionSignature
from .builtins import STRING_METHODS, BUILTIN_FUNCTIONS, UNIVERSAL_METHODS, BuiltinSignature, is_builtin_name
from .interner import Symbol
from .inference import Instantiation, InstantiationKind, TypeInferenceEngine, is_concrete

logger = logging.getLogger(__name__)

DICT_KEY_TYPES = (U64, I64, NUMBER, BOOL, STRING)


@dataclass
class InferenceState:
  """Per-program inference results keyed by expression handle."""

  expr_types: dict[ExprRef, TypeDecl] = field(default_factory=dict)
  # Literal rewrites applied to the pool once checking succeeds
  transformed_exprs: dict[ExprRef, Expr] = field(default_factory=dict)
  # Expected type propagated into the expression being checked
  type_hint: TypeDecl | None = None
  # Identifier expressions whose variable still holds an untyped literal
  variable_expr_mapping: dict[ExprRef, VarState] = field(default_factory=dict)


@dataclass
class FunctionCheckingState:
  return_types: list[TypeDecl] = field(default_factory=list)
  loop_depth: int = 0


@dataclass
class CheckedProgram:
  """The typed artifact handed to backends."""

  program: Program
  expr_types: dict[ExprRef, TypeDecl]
  instantiations: list[Instantiation]
  struct_definitions: dict[Symbol, StructDefinition]
  struct_methods: dict[Symbol, dict[Symbol, FunctionSignature]]
  function_table: dict[Symbol, FunctionSignature]
  # Call expressions lowered specially by backends
  builtin_calls: set[ExprRef]
  # Qualified calls into modules that were not loaded before checking
  module_requests: list[tuple[Symbol, ...]]


class TypeChecker:
  """Visitor over a parsed Program producing per-expression types."""

  def __init__(
    self,
    program: Program,
    modules: dict[tuple[Symbol, ...], Program] | None = None,
    max_recursion_depth: int = MAX_RECURSION_DEPTH,
  ) -> None:
    self.program = program
    self.interner = program.interner
    self.locations = program.locations
    self.exprs = program.expressions
    self.stmts = program.statements
    self.modules = modules or {}
    self.max_recursion_depth = max_recursion_depth
    self.context = TypeCheckContext()
    self.engine = TypeInferenceEngine(self.interner, max_recursion_depth)
    self.inference = InferenceState()
    self.function_state = FunctionCheckingState()
    self.errors: list[TypeCheckError] = []
    # Bodies of functions and methods, for re-checking generic instantiations
    self.function_defs: dict[Symbol, Function] = {}
    self.method_defs: dict[tuple[Symbol, Symbol], MethodFunction] = {}
    # Concrete types for the type parameters of the body being re-checked
    self.active_subst: dict[Symbol, TypeDecl] = {}
    # Blocks whose last statement leaves the block (return/break/continue)
    self.diverging: set[ExprRef] = set()
    self.builtin_calls: set[ExprRef] = set()
    self.module_requests: list[tuple[Symbol, ...]] = []
    self.self_symbol = self.interner.intern("self")
    self.import_aliases = {imp.alias: imp.module_path for imp in program.imports if imp.alias is not None}
    self.imported_paths = {imp.module_path for imp in program.imports}

  @property
  def expr_types(self) -> dict[ExprRef, TypeDecl]:
    return self.inference.expr_types

  @property
  def transformed_exprs(self) -> dict[ExprRef, Expr]:
    return self.inference.transformed_exprs

  def _name(self, symbol: Symbol) -> str:
    return self.interner.resolve(symbol)

  def _describe(self, t: TypeDecl) -> str:
    return describe(t, self.interner)

  # === Entry point ===

  def check_program(self) -> MultipleTypeCheckResult[CheckedProgram]:
    """Check the whole program, collecting errors function by function."""
    try:
      self._register_structs()
      self._register_functions()
      self._register_impls()

      for func in self.program.functions:
        self._check_isolated(lambda: self._check_function(func), f"function '{self._name(func.name)}'")

      for impl in self.program.impls():
        if impl.target not in self.context.struct_definitions:
          continue
        for method in impl.methods:
          context = f"method '{self._name(impl.target)}::{self._name(method.name)}'"
          self._check_isolated(lambda: self._check_method(impl.target, method), context)

      if not self.errors:
        self.apply_expr_transformations()
        self._check_isolated(self.finalize_number_types, "number finalization")
    except FatalTypeCheckError as e:
      self.errors.append(e)

    logger.debug(
      "checked %d expressions, %d instantiations, %d errors",
      len(self.expr_types),
      len(self.engine.instantiations),
      len(self.errors),
    )
    if self.errors:
      return MultipleTypeCheckResult(None, self.errors)
    return MultipleTypeCheckResult(
      CheckedProgram(
        self.program,
        self.expr_types,
        self.engine.instantiations,
        self.context.struct_definitions,
        self.context.struct_methods,
        self.context.functions,
        self.builtin_calls,
        self.module_requests,
      ),
      [],
    )

  def _check_isolated(self, check, context: str) -> None:
    try:
      check()
    except FatalTypeCheckError:
      raise
    except TypeCheckError as e:
      logger.debug("type error in %s: %s", context, e)
      self.errors.append(e.with_context(context))
      self._reset_function_state()

  def _reset_function_state(self) -> None:
    self.context.reset()
    self.engine.reset()
    self.function_state = FunctionCheckingState()
    self.active_subst = {}
    self.inference.type_hint = None

  def _collect(self, error: TypeCheckError, ref: StmtRef | None = None) -> None:
    if ref is not None:
      error.with_location(self.locations.stmt_location(ref))
    self.errors.append(error)

  # === Registration ===

  def _register_structs(self) -> None:
    """Register struct names first so field types may refer to any struct."""
    registered: list[tuple[StmtRef, StructDecl]] = []
    for ref in self.program.declarations:
      decl = self.stmts.get(ref)
      if not isinstance(decl, StructDecl):
        continue
      if decl.name in self.context.struct_definitions:
        self._collect(TypeCheckError.generic_error(f"Struct '{self._name(decl.name)}' already defined"), ref)
        continue
      self.context.struct_definitions[decl.name] = StructDefinition(decl.name, {}, decl.generics, decl.visibility)
      registered.append((ref, decl))

    for ref, decl in registered:
      definition = self.context.struct_definitions[decl.name]
      try:
        fields: dict[Symbol, FieldInfo] = {}
        for struct_field in decl.fields:
          if struct_field.name in fields:
            raise TypeCheckError.generic_error(
              f"Duplicate field '{self._name(struct_field.name)}' in struct '{self._name(decl.name)}'"
            )
          fields[struct_field.name] = FieldInfo(self._resolve_type(struct_field.type_decl), struct_field.visibility)
        definition.fields = fields
      except TypeCheckError as e:
        self._collect(e.with_context(f"struct '{self._name(decl.name)}'"), ref)

  def _signature(self, func: Function | MethodFunction, owner: Symbol | None = None) -> FunctionSignature:
    param_names = tuple(p.name for p in func.parameters)
    param_types = tuple(self._resolve_type(p.type_decl, keep_self=True) for p in func.parameters)
    return_type = UNIT if func.return_type is None else self._resolve_type(func.return_type, keep_self=True)
    has_self = isinstance(func, MethodFunction) and func.has_self_param
    return FunctionSignature(
      func.name, param_names, param_types, return_type, func.generics, func.visibility, has_self, owner
    )

  def _register_functions(self) -> None:
    for func in self.program.functions:
      name = self._name(func.name)
      location = self.locations.locate(func.start)
      try:
        if is_builtin_name(name):
          raise TypeCheckError.generic_error(f"Cannot redefine builtin function '{name}'")
        if func.name in self.context.functions:
          raise TypeCheckError.generic_error(f"Function '{name}' already defined")
        self.context.functions[func.name] = self._signature(func)
        self.function_defs[func.name] = func
      except TypeCheckError as e:
        self.errors.append(e.with_context(f"function '{name}'").with_location(location))

  def _register_impls(self) -> None:
    for ref in self.program.declarations:
      impl = self.stmts.get(ref)
      if isinstance(impl, StructDecl):
        continue
      target = self._name(impl.target)
      definition = self.context.struct_definitions.get(impl.target)
      if definition is None:
        self._collect(TypeCheckError.not_found("Struct", target).with_context(f"impl '{target}'"), ref)
        continue
      if len(impl.generics) != len(definition.generics):
        self._collect(
          TypeCheckError.generic_error(
            f"impl for '{target}' declares {len(impl.generics)} type parameter(s), "
            f"but the struct has {len(definition.generics)}"
          ),
          ref,
        )
        continue
      self.context.impl_generics[impl.target] = impl.generics
      methods = self.context.struct_methods.setdefault(impl.target, {})
      self.context.current_impl_target = impl.target
      try:
        for method in impl.methods:
          if method.name in methods:
            raise TypeCheckError.generic_error(f"Method '{self._name(method.name)}' already defined for '{target}'")
          methods[method.name] = self._signature(method, impl.target)
          self.method_defs[(impl.target, method.name)] = method
      except TypeCheckError as e:
        self._collect(e.with_context(f"impl '{target}'"), ref)
      finally:
        self.context.current_impl_target = None

  # === Types ===

  def _self_type(self) -> TypeDecl:
    target = self.context.current_impl_target
    if target is None:
      raise TypeCheckError.generic_error("'Self' is only valid inside an impl block")
    generics = self.context.impl_generics.get(target, ())
    return StructType(target, tuple(self.active_subst.get(g, GenericType(g)) for g in generics))

  def _resolve_type(self, t: TypeDecl, keep_self: bool = False) -> TypeDecl:
    """Resolve named types to structs and apply the active generic substitution."""
    match t:
      case IdentifierType(name):
        definition = self.context.struct_definitions.get(name)
        if definition is None:
          raise TypeCheckError.not_found("Type", self._name(name))
        if definition.generics:
          raise TypeCheckError.generic_error(
            f"Generic struct '{self._name(name)}' requires {len(definition.generics)} type argument(s)"
          )
        return StructType(name)
      case StructType(name, args):
        definition = self.context.struct_definitions.get(name)
        if definition is None:
          raise TypeCheckError.not_found("Type", self._name(name))
        if len(args) != len(definition.generics):
          raise TypeCheckError.generic_error(
            f"Struct '{self._name(name)}' expects {len(definition.generics)} type argument(s), but got {len(args)}"
          )
        return StructType(name, tuple(self._resolve_type(a, keep_self) for a in args))
      case GenericType(name):
        return self.active_subst.get(name, t)
      case SelfType():
        return t if keep_self else self._self_type()
      case ArrayType(elem, size):
        return ArrayType(self._resolve_type(elem, keep_self), size)
      case TupleType(elems):
        return TupleType(tuple(self._resolve_type(e, keep_self) for e in elems))
      case DictType(key, value):
        return DictType(self._resolve_type(key, keep_self), self._resolve_type(value, keep_self))
    return t

  def _compatible(self, expected: TypeDecl, actual: TypeDecl) -> bool:
    if expected == actual or UNKNOWN in (expected, actual):
      return True
    if (expected == NUMBER and is_numeric(actual)) or (actual == NUMBER and is_numeric(expected)):
      return True
    match expected, actual:
      case ArrayType(ee, es), ArrayType(ae, as_):
        return (es is None or as_ is None or es == as_) and self._compatible(ee, ae)
      case TupleType(ee), TupleType(ae):
        return len(ee) == len(ae) and all(self._compatible(x, y) for x, y in zip(ee, ae))
      case DictType(ek, ev), DictType(ak, av):
        return self._compatible(ek, ak) and self._compatible(ev, av)
      case StructType(en, ea), StructType(an, aa):
        return en == an and len(ea) == len(aa) and all(self._compatible(x, y) for x, y in zip(ea, aa))
    return False

  def _merge(self, expected: TypeDecl, actual: TypeDecl) -> TypeDecl:
    """Combine a declared type with a compatible value type, filling inferred parts."""
    if expected == UNKNOWN or expected == NUMBER:
      return actual
    match expected, actual:
      case ArrayType(ee, es), ArrayType(ae, as_):
        return ArrayType(self._merge(ee, ae), as_ if es is None else es)
      case TupleType(ee), TupleType(ae):
        return TupleType(tuple(self._merge(x, y) for x, y in zip(ee, ae)))
      case DictType(ek, ev), DictType(ak, av):
        return DictType(self._merge(ek, ak), self._merge(ev, av))
    return expected

  def _coerce(self, expected: TypeDecl, ref: ExprRef, actual: TypeDecl) -> TypeDecl:
    """Require actual to fit expected, settling untyped literals in ref to the expected type."""
    if not self._compatible(expected, actual):
      raise TypeCheckError.type_mismatch(self._describe(expected), self._describe(actual)).with_location(
        self.locations.expr_location(ref)
      )
    merged = self._merge(expected, actual)
    if contains_number(actual) and not contains_number(merged):
      self._resolve_numbers(ref, merged)
    return merged

  # === Number resolution ===

  def _literal_value(self, ref: ExprRef, symbol: Symbol, target: TypeDecl) -> Expr:
    text = self._name(symbol)
    value = parse_integer_text(text)
    if target == U64:
      if not 0 <= value <= U64_MAX:
        raise TypeCheckError.invalid_literal(text, "UInt64").with_location(self.locations.expr_location(ref))
      return UInt64Literal(value)
    if not I64_MIN <= value <= I64_MAX:
      raise TypeCheckError.invalid_literal(text, "Int64").with_location(self.locations.expr_location(ref))
    return Int64Literal(value)

  def _resolve_numbers(self, ref: ExprRef, target: TypeDecl) -> None:
    """Settle every untyped literal flowing into ref to the integer types in target."""
    pending = [(ref, target)]
    while pending:
      ref, target = pending.pop()
      current = self.expr_types.get(ref)
      if current is not None and not contains_number(current):
        continue
      children: list[tuple[ExprRef, TypeDecl]] = []
      match self.exprs.get(ref):
        case NumberLiteral(symbol):
          if not is_integer(target):
            continue
          self.transformed_exprs[ref] = self._literal_value(ref, symbol, target)
        case VarExpr():
          state = self.inference.variable_expr_mapping.get(ref)
          if state is not None:
            if contains_number(state.type) and is_integer(target):
              state.type = replace_number(state.type, target)
            elif contains_number(state.type):
              state.type = self._merge(target, state.type)
            if state.origin is not None:
              children.append((state.origin, state.type))
            target = state.type
        case BinaryExpr(op, left, right) if op in ARITHMETIC_OPS or op in BITWISE_OPS:
          children = [(left, target), (right, target)]
        case BinaryExpr(op, left, _) if op in SHIFT_OPS:
          children.append((left, target))
        case UnaryExpr(op, operand) if op != UnaryOp.LOGICAL_NOT:
          children.append((operand, target))
        case ArrayLiteral(elements) if isinstance(target, ArrayType):
          children = [(element, target.element_type) for element in elements]
        case TupleLiteral(elements) if isinstance(target, TupleType) and len(target.element_types) == len(elements):
          children = list(zip(elements, target.element_types))
        case DictLiteral(entries) if isinstance(target, DictType):
          for key, value in entries:
            children += [(key, target.key_type), (value, target.value_type)]
        case BlockExpr() | IfExpr():
          children = [(branch, target) for branch in self._value_sources(ref)]
        case AssignExpr() | IndexAssignExpr():
          continue
      if current is not None:
        if is_integer(target):
          self.expr_types[ref] = replace_number(current, target)
        elif self._compatible(target, current):
          self.expr_types[ref] = self._merge(target, current)
      pending.extend(reversed(children))

  def _value_sources(self, ref: ExprRef) -> list[ExprRef]:
    """Expressions whose value becomes the value of a block or if-expression."""
    match self.exprs.get(ref):
      case BlockExpr(statements):
        if ref in self.diverging or not statements:
          return []
        last = self.stmts.get(statements[-1])
        return [last.expr] if isinstance(last, ExprStmt) else []
      case IfExpr(_, then_block, elifs, else_block):
        branches = [then_block, *(block for _, block in elifs)]
        if else_block is not None:
          branches.append(else_block)
        return [b for b in branches if b not in self.diverging]
    return []

  def _default_number_type(self, ref: ExprRef) -> TypeDecl:
    """i64 when any literal feeding ref is negative, else u64."""
    seen: set[ExprRef] = set()
    pending = [ref]
    while pending:
      ref = pending.pop()
      if ref in seen:
        continue
      seen.add(ref)
      expr = self.exprs.get(ref)
      match expr:
        case NumberLiteral(symbol):
          if self._name(symbol).startswith("-"):
            return I64
          continue
        case VarExpr():
          state = self.inference.variable_expr_mapping.get(ref)
          if state is None:
            continue
          if is_integer(state.type):
            if state.type == I64:
              return I64
            continue
          if state.origin is not None:
            pending.append(state.origin)
          continue
        case UnaryExpr(UnaryOp.NEG, _):
          return I64
        case BlockExpr() | IfExpr():
          children = self._value_sources(ref)
        case _:
          children = list(expr_children(expr))
      pending.extend(child for child in children if contains_number(self.expr_types.get(child, UNIT)))
    return U64

  def apply_expr_transformations(self) -> None:
    """Write recorded literal rewrites into the expression pool."""
    for ref, expr in self.transformed_exprs.items():
      self.exprs.replace(ref, expr)

  def finalize_number_types(self) -> None:
    """Settle every literal still untyped after checking, outermost expressions first."""
    pending = sorted((ref for ref, t in self.expr_types.items() if contains_number(t)), reverse=True)
    for ref in pending:
      current = self.expr_types[ref]
      if not contains_number(current):
        continue
      self._resolve_numbers(ref, replace_number(current, self._default_number_type(ref)))
    self.apply_expr_transformations()
    logger.debug("finalized %d untyped literal sites", len(pending))

  # === Functions ===

  def _bind_parameters(self, sig: FunctionSignature, self_type: TypeDecl | None) -> TypeDecl:
    if self_type is not None and sig.has_self_param:
      self.context.define_var(self.self_symbol, self_type, mutable=False)
    for name, param_type in zip(sig.param_names, sig.param_types):
      self.context.define_var(name, self._resolve_type(param_type), mutable=False)
    return self._resolve_type(sig.return_type)

  def _check_body(self, body: StmtRef, return_type: TypeDecl) -> None:
    stmt = self.stmts.get(body)
    assert isinstance(stmt, ExprStmt)
    self.function_state.return_types.append(return_type)
    try:
      body_type = self._check_expr(stmt.expr, return_type)
      if stmt.expr not in self.diverging and return_type != UNIT:
        self._coerce(return_type, stmt.expr, body_type)
    finally:
      self.function_state.return_types.pop()

  def _check_function(self, func: Function) -> None:
    sig = self.context.functions.get(func.name)
    if sig is None or self.function_defs.get(func.name) is not func:
      return
    self.context.push_scope()
    self.engine.push_generic_scope(sig.generics)
    try:
      return_type = self._bind_parameters(sig, None)
      self._check_body(func.body, return_type)
    finally:
      self.engine.pop_generic_scope()
      self.context.pop_scope()

  def _check_method(self, target: Symbol, method: MethodFunction) -> None:
    sig = self.context.lookup_method(target, method.name)
    if sig is None or self.method_defs.get((target, method.name)) is not method:
      return
    saved_target = self.context.current_impl_target
    self.context.current_impl_target = target
    self.context.push_scope()
    self.engine.push_generic_scope((*self.context.impl_generics.get(target, ()), *sig.generics))
    try:
      return_type = self._bind_parameters(sig, self._self_type())
      self._check_body(method.body, return_type)
    finally:
      self.engine.pop_generic_scope()
      self.context.pop_scope()
      self.context.current_impl_target = saved_target

  def _check_instantiation(self, instantiation: Instantiation, check) -> None:
    """Re-check a generic body under a concrete substitution without disturbing recorded results."""
    saved_types = dict(self.expr_types)
    saved_transforms = dict(self.transformed_exprs)
    saved_mapping = dict(self.inference.variable_expr_mapping)
    saved_diverging = set(self.diverging)
    saved_subst = self.active_subst
    saved_scopes = (self.context.scopes, self.context.var_type_mappings)
    saved_state = self.function_state
    saved_target = self.context.current_impl_target
    self.active_subst = instantiation.substitutions
    self.context.current_impl_target = None
    self.context.scopes, self.context.var_type_mappings = [], []
    self.function_state = FunctionCheckingState()
    self.engine.enter()
    try:
      check()
    except FatalTypeCheckError:
      raise
    except TypeCheckError as e:
      raise e.with_context(f"instantiation '{instantiation.instantiated_name}'")
    finally:
      self.engine.exit()
      self.inference.expr_types = saved_types
      self.inference.transformed_exprs = saved_transforms
      self.inference.variable_expr_mapping = saved_mapping
      self.diverging = saved_diverging
      self.active_subst = saved_subst
      self.context.scopes, self.context.var_type_mappings = saved_scopes
      self.function_state = saved_state
      self.context.current_impl_target = saved_target

  # === Statements ===

  def _check_stmt(self, ref: StmtRef, hint: TypeDecl | None = None) -> TypeDecl:
    """Check a statement; returns the value type for expression statements, else unit."""
    try:
      return self._visit_stmt(ref, hint)
    except TypeCheckError as e:
      raise e.with_location(self.locations.stmt_location(ref))

  def _check_binding_value(self, value: ExprRef, declared: TypeDecl | None) -> TypeDecl:
    expr = self.exprs.get(value)
    if isinstance(expr, IfExpr) and expr.else_block is None:
      raise TypeCheckError.generic_error("'if' without 'else' cannot be used as a value")
    if declared is None:
      return self._check_expr(value)
    declared = self._resolve_type(declared)
    return self._coerce(declared, value, self._check_expr(value, declared))

  def _record_struct_mapping(self, name: Symbol, t: TypeDecl) -> None:
    if isinstance(t, StructType) and t.type_args:
      generics = self.context.impl_generics.get(t.name) or self.context.struct_definitions[t.name].generics
      self.context.set_var_mapping(name, dict(zip(generics, t.type_args)))

  def _visit_stmt(self, ref: StmtRef, hint: TypeDecl | None) -> TypeDecl:
    stmt = self.stmts.get(ref)
    match stmt:
      case ExprStmt(expr):
        return self._check_expr(expr, hint)
      case ValStmt(name, declared, value):
        value_type = self._check_binding_value(value, declared)
        origin = value if contains_number(value_type) else None
        self.context.define_var(name, value_type, mutable=False, origin=origin)
        self._record_struct_mapping(name, value_type)
      case VarStmt(name, declared, value):
        if value is None:
          var_type = UNKNOWN if declared is None else self._resolve_type(declared)
          self.context.define_var(name, var_type, mutable=True)
        else:
          value_type = self._check_binding_value(value, declared)
          origin = value if contains_number(value_type) else None
          self.context.define_var(name, value_type, mutable=True, origin=origin)
          self._record_struct_mapping(name, value_type)
      case ReturnStmt(value):
        if not self.function_state.return_types:
          raise TypeCheckError.generic_error("'return' outside of a function")
        return_type = self.function_state.return_types[-1]
        if value is None:
          if return_type != UNIT:
            raise TypeCheckError.type_mismatch(self._describe(return_type), self._describe(UNIT))
        else:
          value_type = self._check_expr(value, return_type)
          if return_type != UNIT:
            self._coerce(return_type, value, value_type)
      case BreakStmt() | ContinueStmt():
        if self.function_state.loop_depth == 0:
          keyword = "break" if isinstance(stmt, BreakStmt) else "continue"
          raise TypeCheckError.generic_error(f"'{keyword}' outside of a loop")
      case ForStmt(var, start, end, body):
        start_type = self._check_expr(start)
        end_type = self._check_expr(end, start_type if is_integer(start_type) else None)
        loop_type = self._unify_numeric("for range", start, start_type, end, end_type, None)
        if loop_type == NUMBER:
          loop_type = self._default_number_type(start)
          if loop_type == U64:
            loop_type = self._default_number_type(end)
          self._resolve_numbers(start, loop_type)
          self._resolve_numbers(end, loop_type)
        self.context.push_scope()
        self.context.define_var(var, loop_type, mutable=False)
        self.function_state.loop_depth += 1
        try:
          self._check_expr(body)
        finally:
          self.function_state.loop_depth -= 1
          self.context.pop_scope()
      case WhileStmt(condition, body):
        self._check_condition(condition)
        self.function_state.loop_depth += 1
        try:
          self._check_expr(body)
        finally:
          self.function_state.loop_depth -= 1
      case _:
        raise TypeCheckError.generic_error("Declarations are only allowed at the top level")
    return UNIT

  # === Expressions ===

  def _check_expr(self, ref: ExprRef, hint: TypeDecl | None = None) -> TypeDecl:
    """Infer the type of ref (using hint where the form needs one) and record it."""
    saved_hint = self.inference.type_hint
    self.inference.type_hint = hint
    try:
      self.engine.enter()
      t = self._visit_expr(ref, self.exprs.get(ref), hint)
    except TypeCheckError as e:
      raise e.with_location(self.locations.expr_location(ref))
    finally:
      self.inference.type_hint = saved_hint
      self.engine.exit()
    self.expr_types[ref] = t
    return t

  def _check_condition(self, ref: ExprRef) -> None:
    cond_type = self._check_expr(ref, BOOL)
    if cond_type not in (BOOL, UNKNOWN):
      raise TypeCheckError.type_mismatch(self._describe(BOOL), self._describe(cond_type)).with_location(
        self.locations.expr_location(ref)
      )

  def _visit_expr(self, ref: ExprRef, expr: Expr, hint: TypeDecl | None) -> TypeDecl:
    match expr:
      case UInt64Literal():
        return U64
      case Int64Literal():
        return I64
      case NumberLiteral():
        return NUMBER
      case BoolLiteral():
        return BOOL
      case StringLiteral():
        return STRING
      case NullLiteral():
        return hint if hint is not None and hint != UNKNOWN else PTR
      case UnitLiteral():
        return UNIT
      case VarExpr(name):
        state = self.context.lookup_var(name)
        if state is None:
          raise TypeCheckError.not_found("Identifier", self._name(name))
        if contains_number(state.type):
          self.inference.variable_expr_mapping[ref] = state
        return state.type
      case BinaryExpr(op, left, right):
        return self._check_binary(op, left, right, hint)
      case UnaryExpr(op, operand):
        return self._check_unary(op, operand, hint)
      case ExprList(items):
        for item in items:
          self._check_expr(item)
        return UNIT
      case CallExpr(name, args):
        return self._check_call(ref, name, args, hint)
      case MethodCallExpr(receiver, method, args):
        return self._check_method_call(receiver, method, args, hint)
      case AssociatedCallExpr(struct_name, name, args):
        return self._check_associated_call(struct_name, name, args, hint)
      case QualifiedCallExpr(path, name, args):
        return self._check_qualified_call(path, name, args)
      case FieldAccessExpr(target, field_name):
        return self._check_field_access(target, field_name)
      case TupleIndexExpr(target, index):
        target_type = self._check_expr(target)
        if not isinstance(target_type, TupleType):
          raise TypeCheckError.unsupported_operation("tuple access", self._describe(target_type))
        if index >= len(target_type.element_types):
          raise TypeCheckError.generic_error(
            f"Tuple index {index} out of bounds for {self._describe(target_type)} "
            f"with {len(target_type.element_types)} element(s)"
          )
        return target_type.element_types[index]
      case IndexExpr(target, index):
        return self._check_index(target, index)
      case SliceExpr(target, start, end):
        return self._check_slice(target, start, end)
      case IndexAssignExpr(target, index, value):
        return self._check_index_assign(target, index, value)
      case ArrayLiteral(elements):
        return self._check_array_literal(elements, hint)
      case TupleLiteral(elements):
        hints: list[TypeDecl | None] = [None] * len(elements)
        if isinstance(hint, TupleType) and len(hint.element_types) == len(elements):
          hints = list(hint.element_types)
        types = []
        for element, element_hint in zip(elements, hints):
          element_type = self._check_expr(element, element_hint)
          if element_hint is not None:
            element_type = self._coerce(element_hint, element, element_type)
          types.append(element_type)
        return TupleType(tuple(types))
      case DictLiteral(entries):
        return self._check_dict_literal(entries, hint)
      case StructLiteral(name, fields):
        return self._check_struct_literal(name, fields, hint)
      case AssignExpr(target, value):
        return self._check_assign(target, value)
      case BlockExpr(statements):
        return self._check_block(ref, statements, hint)
      case IfExpr(condition, then_block, elifs, else_block):
        return self._check_if(ref, condition, then_block, elifs, else_block, hint)
      case CastExpr(inner, target_type):
        return self._check_cast(inner, self._resolve_type(target_type))
    raise TypeCheckError.generic_error(f"Unsupported expression {type(expr).__name__}")

  def _check_block(self, ref: ExprRef, statements: tuple[StmtRef, ...], hint: TypeDecl | None) -> TypeDecl:
    self.context.push_scope()
    try:
      result = UNIT
      for i, stmt_ref in enumerate(statements):
        last = i == len(statements) - 1
        result = self._check_stmt(stmt_ref, hint if last else None)
      if statements:
        last_stmt = self.stmts.get(statements[-1])
        if isinstance(last_stmt, ReturnStmt):
          self.diverging.add(ref)
          return self.function_state.return_types[-1] if self.function_state.return_types else UNIT
        if isinstance(last_stmt, (BreakStmt, ContinueStmt)):
          self.diverging.add(ref)
          return UNIT
        if not isinstance(last_stmt, ExprStmt):
          return UNIT
        if last_stmt.expr in self.diverging:
          self.diverging.add(ref)
      return result
    finally:
      self.context.pop_scope()

  def _check_if(
    self,
    ref: ExprRef,
    condition: ExprRef,
    then_block: ExprRef,
    elifs: tuple[tuple[ExprRef, ExprRef], ...],
    else_block: ExprRef | None,
    hint: TypeDecl | None,
  ) -> TypeDecl:
    self._check_condition(condition)
    branches = [then_block]
    for elif_condition, elif_block in elifs:
      self._check_condition(elif_condition)
      branches.append(elif_block)
    if else_block is None:
      for branch in branches:
        self._check_expr(branch)
      return UNIT
    branches.append(else_block)

    branch_types = [(b, self._check_expr(b, hint)) for b in branches]
    live = [(b, t) for b, t in branch_types if b not in self.diverging]
    if not live:
      self.diverging.add(ref)
      return branch_types[0][1]

    # Prefer a branch type without untyped literals as the common type
    common = next((t for _, t in live if not contains_number(t)), live[0][1])
    if hint is not None and contains_number(common) and self._compatible(hint, common) and not contains_number(hint):
      common = self._merge(hint, common)
    for branch, branch_type in live:
      if not self._compatible(common, branch_type):
        raise TypeCheckError.type_mismatch(self._describe(common), self._describe(branch_type)).with_location(
          self.locations.expr_location(branch)
        )
      if contains_number(branch_type) and not contains_number(common):
        self._resolve_numbers(branch, common)
    return common

  def _unify_numeric(
    self, op: str, left: ExprRef, lt: TypeDecl, right: ExprRef, rt: TypeDecl, hint: TypeDecl | None
  ) -> TypeDecl:
    """Common integer type of two operands, settling untyped literals."""
    if contains_generic(lt) or contains_generic(rt):
      return lt if contains_generic(lt) else rt
    if lt == UNKNOWN or rt == UNKNOWN:
      return rt if lt == UNKNOWN else lt
    if not (is_numeric(lt) and is_numeric(rt)):
      raise TypeCheckError.type_mismatch_operation(op, self._describe(lt), self._describe(rt))
    if lt == rt and lt != NUMBER:
      return lt
    if lt == NUMBER and rt == NUMBER:
      if hint is not None and is_integer(hint):
        self._resolve_numbers(left, hint)
        self._resolve_numbers(right, hint)
        return hint
      return NUMBER
    if lt == NUMBER:
      self._resolve_numbers(left, rt)
      return rt
    if rt == NUMBER:
      self._resolve_numbers(right, lt)
      return lt
    raise TypeCheckError.type_mismatch_operation(op, self._describe(lt), self._describe(rt))

  def _check_binary(self, op: Operator, left: ExprRef, right: ExprRef, hint: TypeDecl | None) -> TypeDecl:
    if op in LOGICAL_OPS:
      lt = self._check_expr(left, BOOL)
      rt = self._check_expr(right, BOOL)
      if lt not in (BOOL, UNKNOWN) or rt not in (BOOL, UNKNOWN):
        raise TypeCheckError.type_mismatch_operation(op.value, self._describe(lt), self._describe(rt))
      return BOOL

    numeric_hint = hint if hint is not None and is_integer(hint) else None
    lt = self._check_expr(left, numeric_hint if op not in COMPARISON_OPS else None)
    if op in SHIFT_OPS:
      rt = self._check_expr(right, U64)
      if rt == NUMBER:
        self._resolve_numbers(right, U64)
      elif not (rt == U64 or contains_generic(rt) or rt == UNKNOWN):
        raise TypeCheckError.type_mismatch_operation("shift", self._describe(U64), self._describe(rt))
      if lt == NUMBER and numeric_hint is not None:
        self._resolve_numbers(left, numeric_hint)
        return numeric_hint
      if not (is_numeric(lt) or contains_generic(lt) or lt == UNKNOWN):
        raise TypeCheckError.unsupported_operation(op.value, self._describe(lt))
      return lt

    rt = self._check_expr(right, lt if is_integer(lt) else (numeric_hint if op not in COMPARISON_OPS else None))

    if op in COMPARISON_OPS:
      if is_numeric(lt) and is_numeric(rt):
        self._unify_numeric(op.value, left, lt, right, rt, None)
      elif op in (Operator.EQ, Operator.NE) or lt == STRING:
        if not self._compatible(lt, rt) and not (contains_generic(lt) or contains_generic(rt)):
          raise TypeCheckError.type_mismatch_operation(op.value, self._describe(lt), self._describe(rt))
      else:
        self._unify_numeric(op.value, left, lt, right, rt, None)
      return BOOL

    return self._unify_numeric(op.value, left, lt, right, rt, numeric_hint)

  def _check_unary(self, op: UnaryOp, operand: ExprRef, hint: TypeDecl | None) -> TypeDecl:
    match op:
      case UnaryOp.LOGICAL_NOT:
        t = self._check_expr(operand, BOOL)
        if t not in (BOOL, UNKNOWN):
          raise TypeCheckError.unsupported_operation(op.value, self._describe(t))
        return BOOL
      case UnaryOp.NEG:
        t = self._check_expr(operand, I64)
        if t == NUMBER:
          self._resolve_numbers(operand, I64)
          return I64
        if t in (I64, UNKNOWN) or contains_generic(t):
          return t
        raise TypeCheckError.unsupported_operation(op.value, self._describe(t))
    t = self._check_expr(operand, hint if hint is not None and is_integer(hint) else None)
    if is_numeric(t) or t == UNKNOWN or contains_generic(t):
      return t
    raise TypeCheckError.unsupported_operation(op.value, self._describe(t))

  def _check_cast(self, inner: ExprRef, target: TypeDecl) -> TypeDecl:
    source = self._check_expr(inner, target if is_integer(target) else None)
    if source == target or source == UNKNOWN:
      return target
    if source == NUMBER and is_integer(target):
      self._resolve_numbers(inner, target)
      return target
    if is_integer(source) and is_integer(target):
      return target
    raise TypeCheckError.conversion_error(self._describe(source), self._describe(target))

  def _check_assign(self, target: ExprRef, value: ExprRef) -> TypeDecl:
    target_expr = self.exprs.get(target)
    root = target_expr
    while isinstance(root, (FieldAccessExpr, TupleIndexExpr)):
      root = self.exprs.get(root.target)
    if isinstance(root, VarExpr):
      state = self.context.lookup_var(root.name)
      if state is None:
        raise TypeCheckError.not_found("Identifier", self._name(root.name))
      if not state.mutable and not (root.name == self.self_symbol and root is not target_expr):
        raise TypeCheckError.access_denied(f"cannot assign to immutable variable '{self._name(root.name)}'")
      if isinstance(target_expr, VarExpr) and state.type == UNKNOWN:
        # First assignment of an untyped 'var' fixes its type
        value_type = self._check_expr(value)
        self.expr_types[target] = value_type
        state.type = value_type
        if contains_number(value_type):
          state.origin = value
          self.inference.variable_expr_mapping[target] = state
        return UNIT
    target_type = self._check_expr(target)
    value_type = self._check_expr(value, target_type)
    if target_type == NUMBER and is_integer(value_type):
      self._resolve_numbers(target, value_type)
      return UNIT
    if target_type == NUMBER and value_type == NUMBER and self._default_number_type(value) == I64:
      self._resolve_numbers(target, I64)
      self._resolve_numbers(value, I64)
      return UNIT
    self._coerce(target_type, value, value_type)
    return UNIT

  # === Collections ===

  def _check_array_literal(self, elements: tuple[ExprRef, ...], hint: TypeDecl | None) -> TypeDecl:
    hint_element = hint.element_type if isinstance(hint, ArrayType) else None
    if not elements:
      if hint_element is None:
        raise TypeCheckError.array_error("cannot infer the element type of an empty array literal")
      return ArrayType(hint_element, 0 if hint.size is None else hint.size)

    types = [(e, self._check_expr(e, hint_element)) for e in elements]
    element_type = hint_element
    if element_type is None or element_type == UNKNOWN:
      element_type = next((t for _, t in types if not contains_number(t)), types[0][1])
    for element, t in types:
      if not self._compatible(element_type, t):
        raise TypeCheckError.array_error(
          f"array elements must have the same type, but found {self._describe(element_type)} and {self._describe(t)}"
        )
    if not contains_number(element_type):
      for element, t in types:
        if contains_number(t):
          self._resolve_numbers(element, element_type)
    return ArrayType(element_type, len(elements))

  def _check_dict_literal(self, entries: tuple[tuple[ExprRef, ExprRef], ...], hint: TypeDecl | None) -> TypeDecl:
    if not entries:
      if not isinstance(hint, DictType):
        raise TypeCheckError.generic_error("cannot infer the type of an empty dict literal")
      return hint
    key_hint = hint.key_type if isinstance(hint, DictType) else None
    value_hint = hint.value_type if isinstance(hint, DictType) else None
    keys = [(k, self._check_expr(k, key_hint)) for k, _ in entries]
    values = [(v, self._check_expr(v, value_hint)) for _, v in entries]
    key_type = self._common_type(keys, key_hint)
    if key_type not in DICT_KEY_TYPES and key_type != UNKNOWN:
      raise TypeCheckError.unsupported_operation("dict key", self._describe(key_type))
    value_type = self._common_type(values, value_hint)
    return DictType(key_type, value_type)

  def _common_type(self, items: list[tuple[ExprRef, TypeDecl]], hint: TypeDecl | None) -> TypeDecl:
    common = hint if hint is not None and hint != UNKNOWN else next(
      (t for _, t in items if not contains_number(t)), items[0][1]
    )
    for ref, t in items:
      if not self._compatible(common, t):
        raise TypeCheckError.type_mismatch(self._describe(common), self._describe(t)).with_location(
          self.locations.expr_location(ref)
        )
      if contains_number(t) and not contains_number(common):
        self._resolve_numbers(ref, common)
    return common

  def _integer_index(self, index: ExprRef) -> None:
    index_type = self._check_expr(index)
    if index_type == NUMBER:
      self._resolve_numbers(index, self._default_number_type(index))
    elif not (is_integer(index_type) or index_type == UNKNOWN or contains_generic(index_type)):
      raise TypeCheckError.array_error(f"index must be an integer, but got {self._describe(index_type)}")

  def _check_index(self, target: ExprRef, index: ExprRef) -> TypeDecl:
    target_type = self._check_expr(target)
    match target_type:
      case ArrayType(element, _):
        self._integer_index(index)
        return element
      case DictType(key, value):
        self._coerce(key, index, self._check_expr(index, key))
        return value
      case StructType():
        return self._call_protocol(target_type, "__getitem__", [index])
      case _ if target_type == UNKNOWN:
        self._check_expr(index)
        return UNKNOWN
    raise TypeCheckError.unsupported_operation("index", self._describe(target_type))

  def _check_slice(self, target: ExprRef, start: ExprRef | None, end: ExprRef | None) -> TypeDecl:
    target_type = self._check_expr(target)
    match target_type:
      case ArrayType(element, _):
        for bound in (start, end):
          if bound is not None:
            self._integer_index(bound)
        return ArrayType(element, None)
      case StructType():
        if start is None or end is None:
          raise TypeCheckError.method_error("__getslice__", self._describe(target_type), "both slice bounds are required")
        return self._call_protocol(target_type, "__getslice__", [start, end])
    raise TypeCheckError.unsupported_operation("slice", self._describe(target_type))

  def _check_index_assign(self, target: ExprRef, index: ExprRef, value: ExprRef) -> TypeDecl:
    target_type = self._check_expr(target)
    target_expr = self.exprs.get(target)
    if isinstance(target_type, (ArrayType, DictType)) and isinstance(target_expr, VarExpr):
      state = self.context.lookup_var(target_expr.name)
      if state is not None and not state.mutable:
        raise TypeCheckError.access_denied(f"cannot modify element of immutable variable '{self._name(target_expr.name)}'")
    match target_type:
      case ArrayType(element, _):
        self._integer_index(index)
        self._coerce(element, value, self._check_expr(value, element))
        return UNIT
      case DictType(key, element):
        self._coerce(key, index, self._check_expr(index, key))
        self._coerce(element, value, self._check_expr(value, element))
        return UNIT
      case StructType():
        self._call_protocol(target_type, "__setitem__", [index, value])
        return UNIT
    raise TypeCheckError.unsupported_operation("index assignment", self._describe(target_type))

  # === Structs ===

  def _struct_subst(self, struct_type: StructType) -> dict[Symbol, TypeDecl]:
    definition = self.context.struct_definitions[struct_type.name]
    return dict(zip(definition.generics, struct_type.type_args))

  def _check_field_access(self, target: ExprRef, field_name: Symbol) -> TypeDecl:
    target_type = self._check_expr(target)
    if target_type == UNKNOWN:
      return UNKNOWN
    if not isinstance(target_type, StructType):
      raise TypeCheckError.unsupported_operation(f"field access '.{self._name(field_name)}'", self._describe(target_type))
    definition = self.context.struct_definitions.get(target_type.name)
    info = definition.fields.get(field_name) if definition is not None else None
    if info is None:
      raise TypeCheckError.not_found("Field", f"{self._describe(target_type)}.{self._name(field_name)}")
    return substitute_generics(info.type, self._struct_subst(target_type))

  def _check_struct_literal(
    self, name: Symbol, fields: tuple[tuple[Symbol, ExprRef], ...], hint: TypeDecl | None
  ) -> TypeDecl:
    definition = self.context.struct_definitions.get(name)
    if definition is None:
      raise TypeCheckError.not_found("Struct", self._name(name))
    struct_name = self._name(name)
    seen: set[Symbol] = set()
    for field_name, _ in fields:
      if field_name in seen:
        raise TypeCheckError.generic_error(f"Field '{self._name(field_name)}' specified more than once in '{struct_name}'")
      if field_name not in definition.fields:
        raise TypeCheckError.not_found("Field", f"{struct_name}.{self._name(field_name)}")
      seen.add(field_name)
    missing = [self._name(f) for f in definition.fields if f not in seen]
    if missing:
      raise TypeCheckError.generic_error(f"Missing field(s) {', '.join(missing)} in struct literal '{struct_name}'")

    if not definition.generics:
      for field_name, value in fields:
        field_type = definition.fields[field_name].type
        self._coerce(field_type, value, self._check_expr(value, field_type))
      return StructType(name)

    hint_subst: dict[Symbol, TypeDecl] = {}
    if isinstance(hint, StructType) and hint.name == name and all(is_concrete(a) for a in hint.type_args):
      hint_subst = dict(zip(definition.generics, hint.type_args))
    subst = self._infer_generics(
      definition.generics,
      [(definition.fields[f].type, v, f"field '{self._name(f)}' of '{struct_name}'") for f, v in fields],
      struct_name,
      hint_subst,
    )
    result = StructType(name, tuple(subst[g] for g in definition.generics))
    if is_concrete(result):
      self.engine.record_instantiation(name, subst, InstantiationKind.STRUCT)
    return result

  # === Calls ===

  def _arg_refs(self, args: ExprRef) -> tuple[ExprRef, ...]:
    args_expr = self.exprs.get(args)
    if not isinstance(args_expr, ExprList):
      raise TypeCheckError.generic_error("Invalid argument list")
    self.expr_types[args] = UNIT
    return args_expr.items

  def _check_arity(self, what: str, expected: int, actual: int) -> None:
    if expected != actual:
      raise TypeCheckError.generic_error(f"{what} expects {expected} argument(s), but got {actual}")

  def _check_args(self, param_types: tuple[TypeDecl, ...] | list[TypeDecl], args: tuple[ExprRef, ...]) -> None:
    for param_type, arg in zip(param_types, args):
      self._coerce(param_type, arg, self._check_expr(arg, param_type))

  def _infer_generics(
    self,
    generics: tuple[Symbol, ...],
    pairs: list[tuple[TypeDecl, ExprRef, str]],
    owner: str,
    known: dict[Symbol, TypeDecl] | None = None,
    return_type: TypeDecl | None = None,
    hint: TypeDecl | None = None,
  ) -> dict[Symbol, TypeDecl]:
    """Solve type parameters from (declared type, expression, origin) pairs."""
    known = known or {}
    scope = self.engine.push_generic_scope(generics, fresh=True)
    mark = len(self.engine.constraints)
    try:
      for param, bound in known.items():
        if param in scope:
          self.engine.add_constraint(scope[param], bound, f"type argument of '{owner}'")
      checked: list[tuple[TypeDecl, ExprRef, TypeDecl]] = []
      for declared, ref, origin in pairs:
        expected = self.engine.substitute_vars(declared, scope)
        seed = substitute_generics(declared, known) if known else declared
        arg_type = self._check_expr(ref, seed if not contains_generic(seed) else None)
        if contains_generic(declared):
          self.engine.add_constraint(expected, arg_type, origin)
        else:
          self._coerce(declared, ref, arg_type)
        checked.append((declared, ref, arg_type))
      if return_type is not None and contains_generic(return_type) and hint not in (None, UNIT) and is_concrete(hint):
        expected = self.engine.substitute_vars(return_type, scope)
        self.engine.add_constraint(expected, hint, f"expected type of '{owner}'")
      solution = self.engine.solve_constraints(mark)
    finally:
      self.engine.clear_constraints(mark)
      self.engine.pop_generic_scope()

    subst: dict[Symbol, TypeDecl] = {}
    for param in generics:
      var = scope[param]
      if var not in solution:
        raise TypeCheckError.generic_error(f"cannot infer parameter '{self._name(param)}' for '{owner}'")
      subst[param] = solution[var]

    # Untyped literals bound to a parameter default by sign
    for param, bound in subst.items():
      if contains_number(bound):
        sources = [ref for declared, ref, t in checked if declared == GenericType(param) and contains_number(t)]
        target = I64 if any(self._default_number_type(r) == I64 for r in sources) else U64
        subst[param] = replace_number(bound, target)
    for declared, ref, arg_type in checked:
      if contains_number(arg_type) and contains_generic(declared):
        self._resolve_numbers(ref, substitute_generics(declared, subst))
    return subst

  def _check_call(self, ref: ExprRef, name: Symbol, args: ExprRef, hint: TypeDecl | None) -> TypeDecl:
    func_name = self._name(name)
    arg_refs = self._arg_refs(args)

    if is_builtin_name(func_name):
      builtin = BUILTIN_FUNCTIONS.get(func_name)
      if builtin is None:
        raise TypeCheckError.not_found("Function", func_name)
      self._check_arity(f"Function '{func_name}'", len(builtin.param_types), len(arg_refs))
      self._check_args(builtin.param_types, arg_refs)
      self.builtin_calls.add(ref)
      return builtin.return_type

    sig = self.context.functions.get(name)
    if sig is None:
      raise TypeCheckError.not_found("Function", func_name)
    self._check_arity(f"Function '{func_name}'", len(sig.param_types), len(arg_refs))
    if not sig.generics:
      self._check_args(sig.param_types, arg_refs)
      return sig.return_type

    subst = self._infer_generics(
      sig.generics,
      [(p, a, f"argument {i + 1} of '{func_name}'") for i, (p, a) in enumerate(zip(sig.param_types, arg_refs))],
      func_name,
      return_type=sig.return_type,
      hint=hint,
    )
    if all(is_concrete(t) for t in subst.values()):
      instantiation, new = self.engine.record_instantiation(name, subst, InstantiationKind.FUNCTION)
      if new:
        func = self.function_defs[name]
        self._check_instantiation(instantiation, lambda: self._check_function(func))
    return substitute_generics(sig.return_type, subst)

  def _receiver_subst(self, receiver: ExprRef, receiver_type: StructType) -> dict[Symbol, TypeDecl]:
    receiver_expr = self.exprs.get(receiver)
    if isinstance(receiver_expr, VarExpr):
      mapping = self.context.lookup_var_mapping(receiver_expr.name)
      if mapping is not None:
        return dict(mapping)
    generics = self.context.impl_generics.get(receiver_type.name, ())
    return dict(zip(generics, receiver_type.type_args))

  def _check_method_call(
    self, receiver: ExprRef, method: Symbol, args: ExprRef, hint: TypeDecl | None = None
  ) -> TypeDecl:
    receiver_type = self._check_expr(receiver)
    method_name = self._name(method)
    arg_refs = self._arg_refs(args)

    if isinstance(receiver_type, StructType):
      sig = self.context.lookup_method(receiver_type.name, method)
      if sig is not None:
        if not sig.has_self_param:
          raise TypeCheckError.method_error(
            method_name, self._describe(receiver_type), "associated function must be called as Type::name(...)"
          )
        subst = self._receiver_subst(receiver, receiver_type)
        return self._invoke_method(receiver_type, sig, arg_refs, subst, hint)

    if receiver_type == STRING and method_name in STRING_METHODS:
      return self._invoke_builtin_method(method_name, STRING_METHODS[method_name], arg_refs)
    if method_name in UNIVERSAL_METHODS:
      return self._invoke_builtin_method(method_name, UNIVERSAL_METHODS[method_name], arg_refs)
    if receiver_type == UNKNOWN:
      for arg in arg_refs:
        self._check_expr(arg)
      return UNKNOWN
    raise TypeCheckError.method_error(method_name, self._describe(receiver_type), "method not found")

  def _invoke_builtin_method(self, name: str, sig: BuiltinSignature, args: tuple[ExprRef, ...]) -> TypeDecl:
    self._check_arity(f"Method '{name}'", len(sig.param_types), len(args))
    self._check_args(sig.param_types, args)
    return sig.return_type

  def _invoke_method(
    self,
    struct_type: StructType,
    sig: FunctionSignature,
    args: tuple[ExprRef, ...],
    struct_subst: dict[Symbol, TypeDecl],
    hint: TypeDecl | None = None,
  ) -> TypeDecl:
    """Check a call of sig on struct_type (or its associated function) and record the instantiation."""
    owner = f"{self._describe(StructType(struct_type.name))}::{self._name(sig.name)}"
    self._check_arity(f"Method '{owner}'", len(sig.param_types), len(args))
    params = [substitute_generics(substitute_self(p, struct_type), struct_subst) for p in sig.param_types]
    return_type = substitute_generics(substitute_self(sig.return_type, struct_type), struct_subst)

    subst = dict(struct_subst)
    if sig.generics:
      method_subst = self._infer_generics(
        sig.generics,
        [(p, a, f"argument {i + 1} of '{owner}'") for i, (p, a) in enumerate(zip(params, args))],
        owner,
        return_type=return_type,
        hint=hint,
      )
      subst.update(method_subst)
      return_type = substitute_generics(return_type, method_subst)
    else:
      self._check_args(params, args)

    if subst and all(is_concrete(t) for t in subst.values()):
      original = self.interner.intern(owner)
      instantiation, new = self.engine.record_instantiation(original, subst, InstantiationKind.FUNCTION)
      method_def = self.method_defs.get((struct_type.name, sig.name))
      if new and method_def is not None:
        self._check_instantiation(instantiation, lambda: self._check_method(struct_type.name, method_def))
    return return_type

  def _call_protocol(self, struct_type: StructType, method_name: str, args: list[ExprRef]) -> TypeDecl:
    """Route indexing and slicing on structs to their __getitem__-style methods."""
    sig = self.context.lookup_method(struct_type.name, self.interner.intern(method_name))
    if sig is None or not sig.has_self_param:
      raise TypeCheckError.method_error(method_name, self._describe(struct_type), "method not found")
    generics = self.context.impl_generics.get(struct_type.name, ())
    return self._invoke_method(struct_type, sig, tuple(args), dict(zip(generics, struct_type.type_args)))

  def _check_associated_call(
    self, struct_name: Symbol, name: Symbol, args: ExprRef, hint: TypeDecl | None
  ) -> TypeDecl:
    definition = self.context.struct_definitions.get(struct_name)
    if definition is None:
      raise TypeCheckError.not_found("Struct", self._name(struct_name))
    owner = f"{self._name(struct_name)}::{self._name(name)}"
    sig = self.context.lookup_method(struct_name, name)
    if sig is None:
      raise TypeCheckError.not_found("Associated function", owner)
    if sig.has_self_param:
      raise TypeCheckError.method_error(
        self._name(name), self._name(struct_name), "method takes 'self' and must be called on an instance"
      )
    arg_refs = self._arg_refs(args)
    generics = self.context.impl_generics.get(struct_name, ())
    if not generics:
      return self._invoke_method(StructType(struct_name), sig, arg_refs, {}, hint)

    self._check_arity(f"Function '{owner}'", len(sig.param_types), len(arg_refs))
    self_type = StructType(struct_name, tuple(GenericType(g) for g in generics))
    params = [substitute_self(p, self_type) for p in sig.param_types]
    return_type = substitute_self(sig.return_type, self_type)
    known: dict[Symbol, TypeDecl] = {}
    if isinstance(hint, StructType) and hint.name == struct_name and all(is_concrete(a) for a in hint.type_args):
      known = dict(zip(generics, hint.type_args))
    subst = self._infer_generics(
      (*generics, *sig.generics),
      [(p, a, f"argument {i + 1} of '{owner}'") for i, (p, a) in enumerate(zip(params, arg_refs))],
      owner,
      known,
      return_type,
      hint,
    )
    if all(is_concrete(t) for t in subst.values()):
      instantiation, new = self.engine.record_instantiation(self.interner.intern(owner), subst, InstantiationKind.FUNCTION)
      method_def = self.method_defs.get((struct_name, name))
      if new and method_def is not None:
        self._check_instantiation(instantiation, lambda: self._check_method(struct_name, method_def))
    return substitute_generics(return_type, subst)

  def _foreign_type(self, t: TypeDecl) -> TypeDecl:
    """Types from another module: primitives carry over, named types are opaque."""
    match t:
      case IdentifierType() | StructType() | GenericType() | SelfType():
        return UNKNOWN
      case ArrayType(elem, size):
        return ArrayType(self._foreign_type(elem), size)
      case TupleType(elems):
        return TupleType(tuple(self._foreign_type(e) for e in elems))
      case DictType(key, value):
        return DictType(self._foreign_type(key), self._foreign_type(value))
    return t

  def _check_qualified_call(self, path: tuple[Symbol, ...], name: Symbol, args: ExprRef) -> TypeDecl:
    if len(path) == 1 and path[0] in self.import_aliases:
      path = self.import_aliases[path[0]]
    module_name = ".".join(self._name(s) for s in path)
    if path not in self.imported_paths:
      raise TypeCheckError.not_found("Module", module_name)
    arg_refs = self._arg_refs(args)
    qualified = f"{module_name}.{self._name(name)}"

    module = self.modules.get(path)
    if module is None:
      for arg in arg_refs:
        self._check_expr(arg)
      self.module_requests.append(path)
      return UNKNOWN

    func = next((f for f in module.functions if f.name == name), None)
    if func is None:
      raise TypeCheckError.not_found("Function", qualified)
    if func.visibility != Visibility.PUBLIC:
      raise TypeCheckError.access_denied(f"function '{qualified}' is private to its module")
    self._check_arity(f"Function '{qualified}'", len(func.parameters), len(arg_refs))
    self._check_args([self._foreign_type(p.type_decl) for p in func.parameters], arg_refs)
    return UNIT if func.return_type is None else self._foreign_type(func.return_type)


def check_program(
  program: Program,
  modules: dict[tuple[Symbol, ...], Program] | None = None,
  max_recursion_depth: int = MAX_RECURSION_DEPTH,
) -> MultipleTypeCheckResult[CheckedProgram]:
  """Type check a parsed program, collecting every error."""
  return TypeChecker(program, modules, max_recursion_depth).check_program()
