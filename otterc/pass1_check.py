"""Otter Pass 1 — Type inference and checking.

Walks the resolved AST and assigns every expression, pattern and binding a
type. Constraints from assignments, calls, returns and operators are solved
by unification against a Substitution owned by this run. Generic parameters
are rigid inside their declaration and instantiated with fresh variables at
each use. Match exhaustiveness and struct field sets are checked here.

Errors are recorded per occurrence; the failing expression gets the error
placeholder type so one mistake does not cascade.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from otterc.ast_nodes import (
    Node, Program,
    TypeExpr, PrimitiveTypeExpr, NamedTypeExpr, GenericTypeExpr, FunctionTypeExpr,
    Pattern, WildcardPattern, LiteralPattern, BindingPattern, VariantPattern,
    StructPattern, ListPattern,
    Expr, Literal, Identifier, BinaryExpr, UnaryExpr, CallExpr, MemberExpr,
    IndexExpr, StructInit, ListLit, DictLit, Comprehension, RangeExpr, IfExpr,
    MatchArm, MatchExpr, AwaitExpr, SpawnExpr, Param, LambdaExpr, FString,
    Stmt, LetStmt, AssignStmt, AugAssignStmt, ReturnStmt, BreakStmt, ContinueStmt,
    PassStmt, IfStmt, WhileStmt, ForStmt, MatchStmt, ExprStmt,
    Item, FunctionDef, StructDef, EnumDef, TypeAliasDef,
)
from otterc.errors import (
    Diagnostic, DiagnosticSink, ErrorKind, InternalCompilerError,
    type_error, warning,
)
from otterc.prelude import builtin_type_id
from otterc.resolver import Resolution
from otterc.symbols import DeclKind, Declaration, ModuleTable
from otterc.types import (
    BOOL, ERROR, INT, NUMERIC, PRIMITIVES, STRING, UNIT,
    DictType, ErrorType, FunctionType, GenericType, ListType, NamedType,
    Scheme, Type, TypeParam, TypeVar,
    contains_error, free_vars, substitute,
)
from otterc.unify import Substitution, UnificationError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Typed module
# ---------------------------------------------------------------------------

@dataclass
class StructInfo:
    decl_id: int
    name: str
    type_params: tuple[TypeParam, ...]
    fields: dict[str, Type]


@dataclass
class VariantInfo:
    decl_id: int
    name: str
    tag: int
    payload: tuple[Type, ...]


@dataclass
class EnumInfo:
    decl_id: int
    name: str
    type_params: tuple[TypeParam, ...]
    variants: list[VariantInfo]

    def variant(self, name: str) -> Optional[VariantInfo]:
        for v in self.variants:
            if v.name == name:
                return v
        return None


@dataclass
class TypedModule:
    """The checker's product: the AST plus side tables keyed by node/decl id."""
    program: Program
    resolution: Resolution
    table: ModuleTable
    expr_types: dict[int, Type] = field(default_factory=dict)
    decl_types: dict[int, Type] = field(default_factory=dict)
    signatures: dict[int, Scheme] = field(default_factory=dict)
    structs: dict[int, StructInfo] = field(default_factory=dict)
    enums: dict[int, EnumInfo] = field(default_factory=dict)
    # Reference node id (callee, struct init, variant pattern) -> type arguments.
    instantiations: dict[int, tuple[Type, ...]] = field(default_factory=dict)
    # MemberExpr id -> ("field", name) | ("method", decl id) | ("decl", decl id)
    #                  | ("builtin_method", qualified name)
    members: dict[int, tuple[str, Any]] = field(default_factory=dict)
    # Match / destructuring-let node id -> decision tree.
    match_trees: dict[int, Any] = field(default_factory=dict)
    diagnostics: list[Diagnostic] = field(default_factory=list)
    has_errors: bool = False

    @property
    def module(self) -> str:
        return self.program.module_name

    def type_of(self, node: Node) -> Type:
        try:
            return self.expr_types[node.id]
        except KeyError:
            raise InternalCompilerError(
                f"no type recorded for {type(node).__name__}#{node.id}", node.span) from None

    def decl_id(self, node: Node) -> Optional[int]:
        return self.resolution.bindings.get(node.id)

    def decl(self, decl_id: int) -> Declaration:
        return self.table.decl(decl_id)

    def _owner(self, decl_id: int) -> "TypedModule":
        module = self.table.decl(decl_id).module
        if module == self.module:
            return self
        info = self.table.get(module)
        if info is None or info.typed is None:
            raise InternalCompilerError(f"module '{module}' has not been checked")
        return info.typed

    def struct_info(self, decl_id: int) -> StructInfo:
        return self._owner(decl_id).structs[decl_id]

    def enum_info(self, decl_id: int) -> EnumInfo:
        return self._owner(decl_id).enums[decl_id]

    def variant_info(self, decl_id: int) -> VariantInfo:
        decl = self.table.decl(decl_id)
        return self.enum_info(decl.parent).variants[decl.tag]

    def scheme(self, decl_id: int) -> Scheme:
        return self._owner(decl_id).signatures[decl_id]

    def decl_type(self, decl_id: int) -> Type:
        return self._owner(decl_id).decl_types[decl_id]

    def owner_of(self, decl_id: int) -> "TypedModule":
        return self._owner(decl_id)


class _FunctionContext:
    def __init__(self, return_type: Optional[Type], inferred_return: bool):
        self.return_type = return_type
        self.inferred_return = inferred_return
        self.saw_value_return = False


_ARITHMETIC = ("+", "-", "*", "/", "%")
_EQUALITY = ("==", "!=")
_ORDERING = ("<", ">", "<=", ">=")


class TypeChecker:
    """Type checker for one resolved module."""

    def __init__(self, program: Program, resolution: Resolution, table: ModuleTable,
                 sink: DiagnosticSink):
        self.program = program
        self.resolution = resolution
        self.table = table
        self.sink = sink
        self.subst = Substitution()
        self.typed = TypedModule(program=program, resolution=resolution, table=table)
        self._fn: Optional[_FunctionContext] = None
        self._deferred_numeric: list[tuple[Type, Node, str]] = []
        # Functions whose return type comes from their body, and bodies already begun.
        self._inferred_bodies: dict[int, FunctionDef] = {}
        self._started: set[int] = set()
        self._alias_stack: list[int] = []
        self._error_count = 0
        try:
            self._task_id: Optional[int] = builtin_type_id(table, "Task")
        except KeyError:
            self._task_id = None

    # -------------------------------------------------------------------
    # Diagnostics
    # -------------------------------------------------------------------

    def _error(self, message: str, node: Optional[Node], code: str,
               **details: Any) -> Type:
        self._error_count += 1
        span = node.span if node is not None else None
        self.sink.report(type_error(message, span, code=code, **details))
        return ERROR

    def _unify(self, expected: Type, actual: Type, node: Node, code: str,
               message: Optional[str] = None) -> bool:
        try:
            self.subst.unify(expected, actual)
            return True
        except UnificationError as e:
            exp = self.subst.resolve(expected)
            act = self.subst.resolve(actual)
            if contains_error(exp) or contains_error(act):
                return False
            text = message or f"expected {exp}, got {act}"
            if e.reason == "infinite type":
                text += " (infinite type)"
            self._error(text, node, code, expected=str(exp), actual=str(act))
            return False

    def _resolved(self, t: Type) -> Type:
        return self.subst.resolve(t)

    def _record(self, node: Node, t: Type) -> Type:
        self.typed.expr_types[node.id] = t
        return t

    def _decl_of(self, node: Node) -> Optional[Declaration]:
        decl_id = self.resolution.bindings.get(node.id)
        if decl_id is None:
            return None
        return self.table.decl(decl_id)

    # -------------------------------------------------------------------
    # Entry
    # -------------------------------------------------------------------

    def check_program(self) -> TypedModule:
        items = [it for it in self.program.items if isinstance(it, Item)]
        statements = [it for it in self.program.items if isinstance(it, Stmt)]

        # Pass 1: declare types, then signatures (which may name any type).
        for item in items:
            if isinstance(item, (StructDef, EnumDef)):
                self._register_type_decl(item)
        for item in items:
            if isinstance(item, StructDef):
                self._register_struct_fields(item)
            elif isinstance(item, EnumDef):
                self._register_enum_variants(item)
        for item in items:
            if isinstance(item, FunctionDef):
                self._register_function(item, owner=None)
            elif isinstance(item, StructDef):
                owner = self._decl_of(item)
                for method in item.methods:
                    self._register_function(method, owner=owner)

        # Module-level statements run first, in order.
        self._fn = None
        for stmt in statements:
            self._check_stmt(stmt)

        # Pass 2: bodies.
        for item in items:
            if isinstance(item, FunctionDef):
                self._check_function(item)
            elif isinstance(item, StructDef):
                for method in item.methods:
                    self._check_function(method)
            elif isinstance(item, TypeAliasDef):
                self._type_from_expr(item.target)

        self._finalize()
        logger.debug("checked module %s: %d expression types, %d errors",
                     self.program.module_name, len(self.typed.expr_types), self._error_count)
        return self.typed

    # -------------------------------------------------------------------
    # Declarations
    # -------------------------------------------------------------------

    def _type_params_of(self, decl: Declaration) -> tuple[TypeParam, ...]:
        return tuple(TypeParam(tp, self.table.decl(tp).name) for tp in decl.type_params)

    def _self_type(self, decl: Declaration) -> Type:
        params = self._type_params_of(decl)
        if params:
            return GenericType(decl.id, params, decl.name)
        return NamedType(decl.id, decl.name)

    def _register_type_decl(self, item: Item) -> None:
        decl = self._decl_of(item)
        if decl is None or decl.node is not item:
            return
        params = self._type_params_of(decl)
        if isinstance(item, StructDef):
            self.typed.structs[decl.id] = StructInfo(decl.id, decl.name, params, {})
        else:
            self.typed.enums[decl.id] = EnumInfo(decl.id, decl.name, params, [])

    def _register_struct_fields(self, item: StructDef) -> None:
        decl = self._decl_of(item)
        if decl is None or decl.id not in self.typed.structs:
            return
        info = self.typed.structs[decl.id]
        for f in item.fields:
            if f.name not in info.fields:
                info.fields[f.name] = self._type_from_expr(f.type_expr)

    def _register_enum_variants(self, item: EnumDef) -> None:
        decl = self._decl_of(item)
        if decl is None or decl.id not in self.typed.enums:
            return
        info = self.typed.enums[decl.id]
        for variant in item.variants:
            vdecl = self._decl_of(variant)
            if vdecl is None:
                continue
            payload = tuple(self._type_from_expr(t) for t in variant.payload)
            info.variants.append(VariantInfo(vdecl.id, variant.name, vdecl.tag, payload))

    def _register_function(self, fn: FunctionDef, owner: Optional[Declaration]) -> None:
        decl = self._decl_of(fn)
        if decl is None or decl.node is not fn:
            return
        params: list[Type] = []
        for i, param in enumerate(fn.params):
            if owner is not None and i == 0 and param.name == "self":
                t = self._self_type(owner)
            elif param.type_expr is not None:
                t = self._type_from_expr(param.type_expr)
            else:
                t = self.subst.fresh()
            params.append(t)
            pdecl = self._decl_of(param)
            if pdecl is not None:
                self.typed.decl_types[pdecl.id] = t
        if fn.return_type is not None:
            ret = self._type_from_expr(fn.return_type)
        else:
            ret = self.subst.fresh()
            self._inferred_bodies[decl.id] = fn
        type_params = self._type_params_of(decl)
        if owner is not None:
            type_params = self._type_params_of(owner) + type_params
        self.typed.signatures[decl.id] = Scheme(type_params, FunctionType(tuple(params), ret))

    # -------------------------------------------------------------------
    # Type expressions
    # -------------------------------------------------------------------

    def _type_from_expr(self, te: TypeExpr) -> Type:
        if isinstance(te, PrimitiveTypeExpr):
            return PRIMITIVES[te.name]
        elif isinstance(te, NamedTypeExpr):
            return self._named_type(te, te, [])
        elif isinstance(te, GenericTypeExpr):
            args = [self._type_from_expr(a) for a in te.args]
            return self._named_type(te.base, te, args)
        elif isinstance(te, FunctionTypeExpr):
            params = tuple(self._type_from_expr(p) for p in te.params)
            ret = self._type_from_expr(te.ret) if te.ret is not None else UNIT
            return FunctionType(params, ret)
        raise InternalCompilerError(f"unhandled type expression {type(te).__name__}", te.span)

    def _named_type(self, base: NamedTypeExpr, node: TypeExpr, args: list[Type]) -> Type:
        decl = self._decl_of(base)
        if decl is None:
            return ERROR
        if decl.kind == DeclKind.TYPE_PARAM:
            if args:
                return self._error(f"type parameter '{decl.name}' takes no type arguments",
                                   node, "type-arity")
            return TypeParam(decl.id, decl.name)
        if decl.kind == DeclKind.BUILTIN_TYPE:
            return self._builtin_type(decl, node, args)
        if decl.kind in (DeclKind.STRUCT, DeclKind.ENUM):
            expected = len(decl.type_params)
            if len(args) != expected:
                return self._error(
                    f"type '{decl.name}' expects {expected} type argument(s), got {len(args)}",
                    node, "type-arity")
            if not args:
                return NamedType(decl.id, decl.name)
            return GenericType(decl.id, tuple(args), decl.name)
        if decl.kind == DeclKind.TYPE_ALIAS:
            return self._expand_alias(decl, node, args)
        return ERROR

    def _builtin_type(self, decl: Declaration, node: TypeExpr, args: list[Type]) -> Type:
        arity = {"List": 1, "Dict": 2, "Task": 1}[decl.name]
        if len(args) != arity:
            return self._error(
                f"type '{decl.name}' expects {arity} type argument(s), got {len(args)}",
                node, "type-arity")
        if decl.name == "List":
            return ListType(args[0])
        if decl.name == "Dict":
            return DictType(args[0], args[1])
        return GenericType(decl.id, tuple(args), decl.name)

    def _expand_alias(self, decl: Declaration, node: TypeExpr, args: list[Type]) -> Type:
        alias = decl.node
        if not isinstance(alias, TypeAliasDef):
            return ERROR
        if decl.id in self._alias_stack:
            return self._error(f"type alias '{decl.name}' refers to itself", node,
                               "recursive-alias")
        params = self._type_params_of(decl)
        if len(args) != len(params):
            return self._error(
                f"type alias '{decl.name}' expects {len(params)} type argument(s), "
                f"got {len(args)}", node, "type-arity")
        self._alias_stack.append(decl.id)
        try:
            owner = self.typed if decl.module == self.program.module_name else None
            if owner is None:
                other = self.table.get(decl.module)
                if other is None or other.typed is None:
                    return ERROR
                checker = TypeChecker(other.program, other.resolution, self.table, self.sink)
                target = checker._type_from_expr(alias.target)
            else:
                target = self._type_from_expr(alias.target)
        finally:
            self._alias_stack.pop()
        return substitute(target, dict(zip(params, args)))

    def _instantiate(self, scheme: Scheme) -> tuple[Type, tuple[Type, ...]]:
        args = tuple(self.subst.fresh() for _ in scheme.params)
        return substitute(scheme.type, dict(zip(scheme.params, args))), args

    def _instantiate_decl_type(self, decl: Declaration) -> tuple[Type, tuple[Type, ...]]:
        """A struct/enum type with fresh variables for its parameters."""
        params = self._type_params_of(decl)
        if not params:
            return NamedType(decl.id, decl.name), ()
        args = tuple(self.subst.fresh() for _ in params)
        return GenericType(decl.id, args, decl.name), args

    def _adt_of(self, t: Type, kind: DeclKind) -> Optional[tuple[Declaration, dict[TypeParam, Type]]]:
        """The struct/enum declaration of t with its parameter mapping."""
        t = self._resolved(t)
        if isinstance(t, (NamedType, GenericType)):
            decl = self.table.decl(t.decl_id)
            if decl.kind != kind:
                return None
            params = self._type_params_of(decl)
            args = t.args if isinstance(t, GenericType) else ()
            return decl, dict(zip(params, args))
        return None

    # -------------------------------------------------------------------
    # Functions
    # -------------------------------------------------------------------

    def _check_function(self, fn: FunctionDef) -> None:
        decl = self._decl_of(fn)
        if decl is None or decl.id not in self.typed.signatures or decl.id in self._started:
            return
        self._started.add(decl.id)
        sig = self.typed.signatures[decl.id].type
        if not isinstance(sig, FunctionType):
            raise InternalCompilerError(f"'{decl.name}' has a non-function signature", fn.span)
        saved = self._fn
        try:
            self._fn = None
            for param, pt in zip(fn.params, sig.params):
                if param.default is not None:
                    dt = self._infer(param.default)
                    self._unify(pt, dt, param.default, "default-type",
                                f"default value of '{param.name}' has type "
                                f"{self._resolved(dt)}, expected {self._resolved(pt)}")
            self._fn = _FunctionContext(sig.ret, inferred_return=fn.return_type is None)
            for stmt in fn.body:
                self._check_stmt(stmt)
            if self._fn.inferred_return and not self._fn.saw_value_return:
                self._unify(sig.ret, UNIT, fn, "return-type")
        finally:
            self._fn = saved

    def _check_body_first(self, decl_id: int) -> None:
        """Check a function's body before its inferred return type is used.

        Bodies already begun are skipped, so recursion sees the return type
        as far as it is known.
        """
        fn = self._inferred_bodies.get(decl_id)
        if fn is not None and decl_id not in self._started:
            logger.debug("checking body of %s ahead of its use", fn.name)
            self._check_function(fn)

    # -------------------------------------------------------------------
    # Statements
    # -------------------------------------------------------------------

    def _check_block(self, body: list[Stmt]) -> None:
        for stmt in body:
            self._check_stmt(stmt)

    def _check_stmt(self, stmt: Stmt) -> None:
        if isinstance(stmt, LetStmt):
            self._check_let(stmt)
        elif isinstance(stmt, AssignStmt):
            target = self._infer_assign_target(stmt.target)
            value = self._infer(stmt.value)
            self._unify(target, value, stmt.value, "assignment-type",
                        f"cannot assign {self._resolved(value)} to a binding of type "
                        f"{self._resolved(target)}")
        elif isinstance(stmt, AugAssignStmt):
            target = self._infer_assign_target(stmt.target)
            value = self._infer(stmt.value)
            result = self._arithmetic(stmt.op, target, value, stmt)
            self._unify(target, result, stmt, "assignment-type")
        elif isinstance(stmt, ReturnStmt):
            self._check_return(stmt)
        elif isinstance(stmt, (BreakStmt, ContinueStmt, PassStmt)):
            pass
        elif isinstance(stmt, IfStmt):
            self._expect_bool(stmt.condition)
            self._check_block(stmt.then_body)
            self._check_block(stmt.else_body)
        elif isinstance(stmt, WhileStmt):
            self._expect_bool(stmt.condition)
            self._check_block(stmt.body)
        elif isinstance(stmt, ForStmt):
            it = self._infer(stmt.iterable)
            elem = self._iter_elem(it, stmt.iterable)
            tdecl = self._decl_of(stmt.target)
            if tdecl is not None:
                self.typed.decl_types[tdecl.id] = elem
            self._record(stmt.target, elem)
            self._check_block(stmt.body)
        elif isinstance(stmt, MatchStmt):
            subject = self._infer(stmt.subject)
            for arm in stmt.arms:
                self._check_pattern(arm.pattern, subject)
                self._check_block(arm.body)
            self._check_exhaustive(subject, stmt.arms, stmt)
        elif isinstance(stmt, ExprStmt):
            self._infer(stmt.expr)
        else:
            raise InternalCompilerError(f"unhandled statement {type(stmt).__name__}", stmt.span)

    def _check_let(self, stmt: LetStmt) -> None:
        value = self._infer(stmt.value)
        if stmt.type_expr is not None:
            declared = self._type_from_expr(stmt.type_expr)
            self._unify(declared, value, stmt.value, "let-type",
                        f"expected {self._resolved(declared)}, got {self._resolved(value)}")
            value = declared
        self._check_pattern(stmt.pattern, value)
        pattern = stmt.pattern
        if isinstance(pattern, LiteralPattern):
            self._error("refutable pattern in let binding", pattern, "refutable-pattern")
        elif isinstance(pattern, VariantPattern):
            vdecl = self._decl_of(pattern)
            if vdecl is not None and vdecl.kind == DeclKind.VARIANT:
                info = self.typed.enum_info(vdecl.parent)
                if len(info.variants) > 1:
                    self._error(
                        f"refutable pattern in let binding: '{info.name}' has other "
                        f"variants; use match", pattern, "refutable-pattern")

    def _check_return(self, stmt: ReturnStmt) -> None:
        if self._fn is None:
            self._error("'return' outside of a function", stmt, "return-outside-function")
            return
        if stmt.value is None:
            value: Type = UNIT
        else:
            value = self._infer(stmt.value)
            self._fn.saw_value_return = True
        self._unify(self._fn.return_type, value, stmt.value or stmt, "return-type",
                    f"return type mismatch: expected {self._resolved(self._fn.return_type)}, "
                    f"got {self._resolved(value)}")

    def _expect_bool(self, expr: Expr) -> None:
        t = self._infer(expr)
        self._unify(BOOL, t, expr, "condition-type",
                    f"condition must be bool, got {self._resolved(t)}")

    def _infer_assign_target(self, target: Expr) -> Type:
        if isinstance(target, Identifier):
            decl = self._decl_of(target)
            if decl is None:
                return self._record(target, ERROR)
            if decl.kind not in (DeclKind.LOCAL, DeclKind.PARAM):
                return self._record(target, self._error(
                    f"cannot assign to {decl.kind.value} '{decl.name}'", target,
                    "invalid-assignment"))
        return self._infer(target)

    def _iter_elem(self, t: Type, node: Node) -> Type:
        r = self._resolved(t)
        if isinstance(r, ListType):
            return r.elem
        if isinstance(r, DictType):
            return r.key
        if r == STRING:
            return STRING
        if isinstance(r, ErrorType):
            return ERROR
        if isinstance(r, TypeVar):
            return self._error("cannot infer the type of the iterated value; add a type "
                               "annotation", node, "cannot-infer")
        return self._error(f"type {r} is not iterable", node, "not-iterable")

    # -------------------------------------------------------------------
    # Patterns
    # -------------------------------------------------------------------

    def _check_pattern(self, pattern: Pattern, expected: Type) -> None:
        self._record(pattern, expected)
        if isinstance(pattern, WildcardPattern):
            return
        elif isinstance(pattern, BindingPattern):
            decl = self._decl_of(pattern)
            if decl is not None and decl.is_global and decl.id in self.typed.decl_types:
                self._unify(self.typed.decl_types[decl.id], expected, pattern, "let-type")
            elif decl is not None:
                self.typed.decl_types[decl.id] = expected
        elif isinstance(pattern, LiteralPattern):
            lit = PRIMITIVES[pattern.kind]
            self._unify(expected, lit, pattern, "pattern-type",
                        f"literal pattern of type {lit} does not match {self._resolved(expected)}")
        elif isinstance(pattern, VariantPattern):
            self._check_variant_pattern(pattern, expected)
        elif isinstance(pattern, StructPattern):
            self._check_struct_pattern(pattern, expected)
        elif isinstance(pattern, ListPattern):
            elem = self.subst.fresh()
            self._unify(expected, ListType(elem), pattern, "pattern-type",
                        f"list pattern does not match {self._resolved(expected)}")
            for sub in pattern.prefix + pattern.suffix:
                self._check_pattern(sub, elem)
            if pattern.rest is not None:
                self._record(pattern.rest, ListType(elem))
                rdecl = self._decl_of(pattern.rest)
                if rdecl is not None:
                    self.typed.decl_types[rdecl.id] = ListType(elem)
        else:
            raise InternalCompilerError(f"unhandled pattern {type(pattern).__name__}",
                                        pattern.span)

    def _check_variant_pattern(self, pattern: VariantPattern, expected: Type) -> None:
        decl = self._decl_of(pattern)
        if decl is None or decl.kind != DeclKind.VARIANT:
            for sub in pattern.args:
                self._check_pattern(sub, ERROR)
            return
        enum_decl = self.table.decl(decl.parent)
        enum_type, args = self._instantiate_decl_type(enum_decl)
        self.typed.instantiations[pattern.id] = args
        self._unify(expected, enum_type, pattern, "pattern-type",
                    f"pattern '{decl.name}' of type {enum_decl.name} does not match "
                    f"{self._resolved(expected)}")
        variant = self.typed.variant_info(decl.id)
        mapping = dict(zip(self._type_params_of(enum_decl), args))
        payload = [substitute(t, mapping) for t in variant.payload]
        if len(pattern.args) != len(payload):
            self._error(f"variant '{decl.name}' has {len(payload)} field(s), pattern has "
                        f"{len(pattern.args)}", pattern, "pattern-arity")
            for sub in pattern.args:
                self._check_pattern(sub, ERROR)
            return
        for sub, t in zip(pattern.args, payload):
            self._check_pattern(sub, t)

    def _check_struct_pattern(self, pattern: StructPattern, expected: Type) -> None:
        decl = self._decl_of(pattern)
        if decl is None or decl.kind != DeclKind.STRUCT:
            for fp in pattern.fields:
                self._check_pattern(fp.pattern, ERROR)
            return
        struct_type, args = self._instantiate_decl_type(decl)
        self.typed.instantiations[pattern.id] = args
        self._unify(expected, struct_type, pattern, "struct-pattern-type",
                    f"struct pattern '{decl.name}' does not match {self._resolved(expected)}")
        info = self.typed.struct_info(decl.id)
        mapping = dict(zip(info.type_params, args))
        seen: set[str] = set()
        for fp in pattern.fields:
            if fp.name in seen:
                self._error(f"field '{fp.name}' listed twice in pattern", fp, "duplicate-field")
            seen.add(fp.name)
            ft = info.fields.get(fp.name)
            if ft is None:
                self._error(f"struct '{decl.name}' has no field '{fp.name}'", fp, "unknown-field")
                self._check_pattern(fp.pattern, ERROR)
                continue
            self._check_pattern(fp.pattern, substitute(ft, mapping))

    def _is_catch_all(self, pattern: Pattern) -> bool:
        if isinstance(pattern, (WildcardPattern, BindingPattern)):
            return True
        if isinstance(pattern, StructPattern):
            return all(self._is_catch_all(fp.pattern) for fp in pattern.fields)
        return False

    def _check_exhaustive(self, subject: Type, arms: list[MatchArm], node: Node) -> None:
        catch_all = None
        for i, arm in enumerate(arms):
            if catch_all is not None:
                self.sink.report(warning(ErrorKind.TYPE_ERROR, "unreachable case",
                                         arm.span, code="unreachable-case"))
            elif self._is_catch_all(arm.pattern):
                catch_all = i
        if catch_all is not None:
            return
        t = self._resolved(subject)
        if contains_error(t):
            return
        adt = self._adt_of(t, DeclKind.ENUM)
        if adt is not None:
            info = self.typed.enum_info(adt[0].id)
            covered = set()
            for arm in arms:
                if isinstance(arm.pattern, VariantPattern):
                    vdecl = self._decl_of(arm.pattern)
                    if vdecl is not None:
                        covered.add(vdecl.id)
            missing = [v.name for v in info.variants if v.decl_id not in covered]
            if missing:
                self._error(
                    f"non-exhaustive match: missing variant(s) {', '.join(missing)}",
                    node, "non-exhaustive-match", missing=missing)
            return
        self._error(f"non-exhaustive match on {t}: add a wildcard `_` or binding case",
                    node, "non-exhaustive-match", missing=["_"])

    # -------------------------------------------------------------------
    # Expressions
    # -------------------------------------------------------------------

    def _infer(self, expr: Expr) -> Type:
        return self._record(expr, self._do_infer(expr))

    def _do_infer(self, expr: Expr) -> Type:
        if isinstance(expr, Literal):
            return PRIMITIVES[expr.kind]
        elif isinstance(expr, Identifier):
            return self._infer_reference(expr)
        elif isinstance(expr, BinaryExpr):
            return self._infer_binary(expr)
        elif isinstance(expr, UnaryExpr):
            return self._infer_unary(expr)
        elif isinstance(expr, CallExpr):
            return self._infer_call(expr)
        elif isinstance(expr, MemberExpr):
            return self._infer_member(expr)
        elif isinstance(expr, IndexExpr):
            return self._infer_index(expr)
        elif isinstance(expr, StructInit):
            return self._infer_struct_init(expr)
        elif isinstance(expr, ListLit):
            elem = self.subst.fresh()
            for el in expr.elements:
                t = self._infer(el)
                self._unify(elem, t, el, "list-element",
                            f"list elements must share one type: expected "
                            f"{self._resolved(elem)}, got {self._resolved(t)}")
            return ListType(elem)
        elif isinstance(expr, DictLit):
            key, value = self.subst.fresh(), self.subst.fresh()
            for entry in expr.entries:
                self._unify(key, self._infer(entry.key), entry.key, "dict-key")
                self._unify(value, self._infer(entry.value), entry.value, "dict-value")
            return DictType(key, value)
        elif isinstance(expr, Comprehension):
            return self._infer_comprehension(expr)
        elif isinstance(expr, RangeExpr):
            for bound in (expr.start, expr.end):
                t = self._infer(bound)
                self._unify(INT, t, bound, "range-bound",
                            f"range bounds must be int, got {self._resolved(t)}")
            return ListType(INT)
        elif isinstance(expr, IfExpr):
            self._expect_bool(expr.condition)
            then = self._infer(expr.then_expr)
            other = self._infer(expr.else_expr)
            self._unify(then, other, expr.else_expr, "branch-type",
                        f"conditional branches differ: {self._resolved(then)} and "
                        f"{self._resolved(other)}")
            return then
        elif isinstance(expr, MatchExpr):
            subject = self._infer(expr.subject)
            result = self.subst.fresh()
            for arm in expr.arms:
                self._check_pattern(arm.pattern, subject)
                if arm.value is not None:
                    t = self._infer(arm.value)
                    self._unify(result, t, arm.value, "branch-type",
                                f"match arms differ: expected {self._resolved(result)}, "
                                f"got {self._resolved(t)}")
            self._check_exhaustive(subject, expr.arms, expr)
            return result
        elif isinstance(expr, AwaitExpr):
            t = self._infer(expr.operand)
            if self._task_id is None:
                return ERROR
            inner = self.subst.fresh()
            if not self._unify(GenericType(self._task_id, (inner,), "Task"), t, expr.operand,
                               "await-type", f"'await' expects a Task, got {self._resolved(t)}"):
                return ERROR
            return inner
        elif isinstance(expr, SpawnExpr):
            t = self._infer(expr.operand)
            if self._task_id is None:
                return ERROR
            return GenericType(self._task_id, (t,), "Task")
        elif isinstance(expr, LambdaExpr):
            return self._infer_lambda(expr)
        elif isinstance(expr, FString):
            for part in expr.parts:
                self._infer(part)
            return STRING
        raise InternalCompilerError(f"unhandled expression {type(expr).__name__}", expr.span)

    def _infer_reference(self, expr: Expr) -> Type:
        """Type of a name (Identifier or module/enum-qualified MemberExpr) used as a value."""
        decl = self._decl_of(expr)
        if decl is None:
            return ERROR
        kind = decl.kind
        if kind in (DeclKind.LOCAL, DeclKind.PARAM):
            try:
                return self.typed.decl_type(decl.id)
            except KeyError:
                if decl.is_global and self._fn is not None:
                    # A body checked ahead of a later module-level let; the let unifies.
                    t = self.subst.fresh()
                    self.typed.decl_types[decl.id] = t
                    return t
                return self._error(f"'{decl.name}' is used before its type is known",
                                   expr, "cannot-infer")
        if kind == DeclKind.FUNCTION:
            if decl.parent is not None:
                return self._error(f"method '{decl.name}' must be called on a value",
                                   expr, "not-a-value")
            self._check_body_first(decl.id)
            t, args = self._instantiate(self.typed.scheme(decl.id))
            if args:
                self.typed.instantiations[expr.id] = args
            return t
        if kind == DeclKind.VARIANT:
            enum_decl = self.table.decl(decl.parent)
            enum_type, args = self._instantiate_decl_type(enum_decl)
            if args:
                self.typed.instantiations[expr.id] = args
            variant = self.typed.variant_info(decl.id)
            mapping = dict(zip(self._type_params_of(enum_decl), args))
            if not variant.payload:
                return enum_type
            return FunctionType(tuple(substitute(t, mapping) for t in variant.payload),
                                enum_type)
        if kind == DeclKind.FOREIGN_FUNCTION:
            return self._foreign_type(decl, expr)
        if kind == DeclKind.BUILTIN_FUNCTION:
            return self._error(f"builtin '{decl.name}' must be called directly", expr,
                               "not-a-value")
        return self._error(f"{kind.value.replace('_', ' ')} '{decl.name}' is not a value",
                           expr, "not-a-value")

    def _foreign_type(self, decl: Declaration, node: Node) -> Type:
        if decl.signature is None:
            raise InternalCompilerError(
                f"foreign function '{decl.qualified_name}' has no signature", node.span)
        names = list(decl.signature[0]) + [decl.signature[1]]
        types = []
        for name in names:
            t = PRIMITIVES.get(name)
            if t is None:
                return self._error(f"foreign function '{decl.qualified_name}' uses "
                                   f"unsupported type '{name}'", node, "foreign-type")
            types.append(t)
        return FunctionType(tuple(types[:-1]), types[-1])

    # -- operators ------------------------------------------------------

    def _infer_binary(self, expr: BinaryExpr) -> Type:
        op = expr.op
        if op in ("and", "or"):
            for side in (expr.left, expr.right):
                t = self._infer(side)
                self._unify(BOOL, t, side, "operator-type",
                            f"operator '{op}' requires bool operands, got {self._resolved(t)}")
            return BOOL
        if op in ("is", "is not"):
            return self._infer_is(expr)
        left = self._infer(expr.left)
        right = self._infer(expr.right)
        if op in _ARITHMETIC:
            return self._arithmetic(op, left, right, expr)
        if op in _EQUALITY or op in _ORDERING:
            lr, rr = self._resolved(left), self._resolved(right)
            try:
                self.subst.unify(left, right)
            except UnificationError:
                if not (contains_error(lr) or contains_error(rr)):
                    self._error(f"cannot compare {lr} with {rr}", expr, "comparison-type",
                                expected=str(lr), actual=str(rr))
                return BOOL
            if op in _ORDERING:
                t = self._resolved(left)
                if isinstance(t, TypeVar):
                    self._deferred_numeric.append((t, expr, "ordered"))
                elif not (t in NUMERIC or t == STRING or isinstance(t, ErrorType)):
                    self._error(f"operator '{op}' is not defined for {t}", expr,
                                "operator-type")
            return BOOL
        raise InternalCompilerError(f"unknown binary operator '{op}'", expr.span)

    def _arithmetic(self, op: str, left: Type, right: Type, node: Node) -> Type:
        lr, rr = self._resolved(left), self._resolved(right)
        if op == "+" and (lr == STRING or rr == STRING):
            return STRING
        if contains_error(lr) or contains_error(rr):
            return ERROR
        try:
            self.subst.unify(left, right)
        except UnificationError:
            return self._error(
                f"operator '{op}' requires operands of the same numeric type, got {lr} and {rr}",
                node, "operator-type", expected=str(lr), actual=str(rr))
        t = self._resolved(left)
        if isinstance(t, TypeVar):
            self._deferred_numeric.append((t, node, op))
            return t
        if t not in NUMERIC:
            return self._error(f"operator '{op}' is not defined for {t}", node,
                               "operator-type")
        return t

    def _infer_unary(self, expr: UnaryExpr) -> Type:
        t = self._infer(expr.operand)
        if expr.op == "not":
            self._unify(BOOL, t, expr.operand, "operator-type",
                        f"operator 'not' requires bool, got {self._resolved(t)}")
            return BOOL
        r = self._resolved(t)
        if isinstance(r, TypeVar):
            self._deferred_numeric.append((r, expr, expr.op))
            return r
        if r not in NUMERIC and not isinstance(r, ErrorType):
            return self._error(f"unary '{expr.op}' is not defined for {r}", expr,
                               "operator-type")
        return r

    def _infer_is(self, expr: BinaryExpr) -> Type:
        left = self._infer(expr.left)
        target = expr.right
        decl = self._decl_of(target) if isinstance(target, (Identifier, MemberExpr)) else None
        if decl is None or decl.kind != DeclKind.VARIANT:
            if decl is not None or not isinstance(target, (Identifier, MemberExpr)):
                self._error(f"'{expr.op}' expects a variant such as None on its right side",
                            target, "is-operand")
            self._record(target, ERROR)
            return BOOL
        enum_decl = self.table.decl(decl.parent)
        enum_type, args = self._instantiate_decl_type(enum_decl)
        self._record(target, enum_type)
        if args:
            self.typed.instantiations[target.id] = args
        if isinstance(target, MemberExpr):
            self.typed.members[target.id] = ("decl", decl.id)
        self._unify(enum_type, left, expr.left, "is-operand",
                    f"'{expr.op} {decl.name}' requires a {enum_decl.name} operand, got "
                    f"{self._resolved(left)}")
        return BOOL

    # -- calls ----------------------------------------------------------

    def _infer_call(self, call: CallExpr) -> Type:
        callee = call.callee
        decl = self._decl_of(callee) if isinstance(callee, (Identifier, MemberExpr)) else None

        if decl is not None and decl.kind == DeclKind.BUILTIN_FUNCTION:
            self._record(callee, UNIT)
            return self._builtin_call(decl.name, call)

        if decl is None and isinstance(callee, MemberExpr):
            return self._method_call(call, callee)

        if decl is not None and decl.kind == DeclKind.FUNCTION and decl.parent is None:
            fn_type = self._record(callee, self._infer_reference(callee))
            if isinstance(callee, MemberExpr):
                self.typed.members[callee.id] = ("decl", decl.id)
            if not isinstance(fn_type, FunctionType):
                self._check_args_loose(call)
                return ERROR
            fn_node = decl.node if isinstance(decl.node, FunctionDef) else None
            return self._check_args(call, list(fn_type.params), fn_node, decl.name,
                                    fn_type.ret)

        if decl is not None and decl.kind == DeclKind.VARIANT:
            t = self._record(callee, self._infer_reference(callee))
            if isinstance(callee, MemberExpr):
                self.typed.members[callee.id] = ("decl", decl.id)
            if not isinstance(t, FunctionType):
                self._check_args_loose(call)
                return self._error(f"variant '{decl.name}' takes no payload", call,
                                   "wrong-argument-count")
            return self._check_args(call, list(t.params), None, decl.name, t.ret)

        callee_type = self._infer(callee)
        if isinstance(callee, MemberExpr) and decl is not None:
            self.typed.members[callee.id] = ("decl", decl.id)
        r = self._resolved(callee_type)
        name = decl.name if decl is not None else "value"
        if isinstance(r, FunctionType):
            return self._check_args(call, list(r.params), None, name, r.ret)
        if isinstance(r, TypeVar):
            params = tuple(self.subst.fresh() for _ in call.args)
            ret = self.subst.fresh()
            self._unify(r, FunctionType(params, ret), callee, "not-callable")
            return self._check_args(call, list(params), None, name, ret)
        self._check_args_loose(call)
        if isinstance(r, ErrorType):
            return ERROR
        return self._error(f"type {r} is not callable", callee, "not-callable")

    def _check_args_loose(self, call: CallExpr) -> None:
        for arg in call.args:
            self._infer(arg)
        for kw in call.kwargs:
            self._infer(kw.value)

    def _check_args(self, call: CallExpr, params: list[Type], fn_node: Optional[FunctionDef],
                    name: str, ret: Type, skip_self: bool = False) -> Type:
        param_nodes: list[Param] = []
        if fn_node is not None:
            param_nodes = list(fn_node.params[1:] if skip_self else fn_node.params)
        names = [p.name for p in param_nodes]
        supplied: list[Optional[Expr]] = [None] * len(params)
        ok = True
        if len(call.args) > len(params):
            ok = False
        for i, arg in enumerate(call.args):
            if i < len(params):
                supplied[i] = arg
        for kw in call.kwargs:
            if kw.name not in names:
                self._error(f"'{name}' has no parameter named '{kw.name}'", kw,
                            "unknown-keyword")
                self._infer(kw.value)
                continue
            idx = names.index(kw.name)
            if supplied[idx] is not None:
                self._error(f"parameter '{kw.name}' of '{name}' given twice", kw,
                            "duplicate-argument")
            supplied[idx] = kw.value
        for i, arg in enumerate(supplied):
            if arg is None and not (i < len(param_nodes) and param_nodes[i].default is not None):
                ok = False
        if not ok:
            required = sum(1 for p in param_nodes if p.default is None) if param_nodes \
                else len(params)
            given = len(call.args) + len(call.kwargs)
            expected = str(len(params)) if required == len(params) \
                else f"{required} to {len(params)}"
            self._error(f"'{name}' expects {expected} argument(s), got {given}", call,
                        "wrong-argument-count", expected=expected, actual=str(given))
            for arg in call.args[len(params):]:
                self._infer(arg)
        for i, arg in enumerate(supplied):
            if arg is None:
                continue
            t = self._infer(arg)
            self._unify(params[i], t, arg, "argument-type",
                        f"argument {i + 1} of '{name}': expected {self._resolved(params[i])}, "
                        f"got {self._resolved(t)}")
        return ret

    def _builtin_call(self, name: str, call: CallExpr) -> Type:
        arg_types = [self._infer(a) for a in call.args]
        for kw in call.kwargs:
            self._error(f"builtin '{name}' takes no keyword arguments", kw, "unknown-keyword")
            self._infer(kw.value)
        arity = {"print": (1, 1), "println": (0, 1), "len": (1, 1), "str": (1, 1),
                 "now_ms": (0, 0), "panic": (1, 1)}[name]
        if not arity[0] <= len(arg_types) <= arity[1]:
            expected = str(arity[0]) if arity[0] == arity[1] else f"{arity[0]} to {arity[1]}"
            return self._error(f"'{name}' expects {expected} argument(s), got {len(arg_types)}",
                               call, "wrong-argument-count")
        if name in ("print", "println"):
            return UNIT
        if name == "str":
            return STRING
        if name == "now_ms":
            return INT
        if name == "panic":
            self._unify(STRING, arg_types[0], call.args[0], "argument-type",
                        f"'panic' expects a string, got {self._resolved(arg_types[0])}")
            return UNIT
        # len
        t = self._resolved(arg_types[0])
        if isinstance(t, (ListType, DictType)) or t == STRING or isinstance(t, ErrorType):
            return INT
        if isinstance(t, TypeVar):
            return self._error("cannot infer the argument type of 'len'; add a type annotation",
                               call.args[0], "cannot-infer")
        return self._error(f"'len' is not defined for {t}", call.args[0], "argument-type")

    def _method_call(self, call: CallExpr, callee: MemberExpr) -> Type:
        recv = self._infer(callee.obj)
        r = self._resolved(recv)
        name = callee.name
        if isinstance(r, ErrorType):
            self._record(callee, ERROR)
            self._check_args_loose(call)
            return ERROR
        if isinstance(r, TypeVar):
            self._record(callee, ERROR)
            self._check_args_loose(call)
            return self._error(f"cannot infer the type of the receiver of '.{name}()'; add a "
                               f"type annotation", callee.obj, "cannot-infer")
        adt = self._adt_of(r, DeclKind.STRUCT)
        if adt is not None:
            sdecl, mapping = adt
            mdecl_id = sdecl.members.get(name)
            if mdecl_id is not None:
                mdecl = self.table.decl(mdecl_id)
                self._check_body_first(mdecl_id)
                fn_type, args = self._instantiate(self.typed.scheme(mdecl_id))
                assert isinstance(fn_type, FunctionType)
                self.typed.instantiations[callee.id] = args
                self.typed.members[callee.id] = ("method", mdecl_id)
                self._record(callee, fn_type)
                fn_node = mdecl.node if isinstance(mdecl.node, FunctionDef) else None
                has_self = bool(fn_node and fn_node.params and fn_node.params[0].name == "self")
                if not has_self:
                    self._check_args_loose(call)
                    return self._error(f"'{name}' has no 'self' parameter and cannot be called "
                                       f"on a value", callee, "not-a-method")
                self._unify(fn_type.params[0], recv, callee.obj, "receiver-type")
                return self._check_args(call, list(fn_type.params[1:]), fn_node, name,
                                        fn_type.ret, skip_self=True)
            field_type = self.typed.struct_info(sdecl.id).fields.get(name)
            if field_type is not None:
                ft = self._record(callee, substitute(field_type, mapping))
                self.typed.members[callee.id] = ("field", name)
                fr = self._resolved(ft)
                if isinstance(fr, FunctionType):
                    return self._check_args(call, list(fr.params), None, name, fr.ret)
                self._check_args_loose(call)
                return self._error(f"field '{name}' of type {fr} is not callable", callee,
                                   "not-callable")
            self._record(callee, ERROR)
            self._check_args_loose(call)
            return self._error(f"type {r} has no method '{name}'", callee, "unknown-member")
        return self._builtin_method(call, callee, r)

    def _builtin_method(self, call: CallExpr, callee: MemberExpr, recv: Type) -> Type:
        name = callee.name
        table: dict[str, tuple[list[Type], Type]] = {}
        prefix = ""
        if isinstance(recv, ListType):
            prefix = "list"
            table = {"append": ([recv.elem], UNIT), "pop": ([], recv.elem), "len": ([], INT)}
        elif isinstance(recv, DictType):
            prefix = "dict"
            table = {"len": ([], INT), "contains": ([recv.key], BOOL),
                     "keys": ([], ListType(recv.key))}
        elif recv == STRING:
            prefix = "string"
            table = {"len": ([], INT)}
        if name not in table:
            self._record(callee, ERROR)
            self._check_args_loose(call)
            return self._error(f"type {recv} has no method '{name}'", callee, "unknown-member")
        params, ret = table[name]
        self._record(callee, FunctionType(tuple(params), ret))
        self.typed.members[callee.id] = ("builtin_method", f"{prefix}.{name}")
        return self._check_args(call, params, None, name, ret)

    # -- members, indexing, construction -----------------------------------

    def _infer_member(self, expr: MemberExpr) -> Type:
        decl = self._decl_of(expr)
        if decl is not None:
            self.typed.members[expr.id] = ("decl", decl.id)
            return self._infer_reference(expr)
        obj = self._infer(expr.obj)
        r = self._resolved(obj)
        if isinstance(r, ErrorType):
            return ERROR
        if isinstance(r, TypeVar):
            return self._error(f"cannot infer the type of the value whose '.{expr.name}' is "
                               f"accessed; add a type annotation", expr.obj, "cannot-infer")
        adt = self._adt_of(r, DeclKind.STRUCT)
        if adt is not None:
            sdecl, mapping = adt
            ft = self.typed.struct_info(sdecl.id).fields.get(expr.name)
            if ft is not None:
                self.typed.members[expr.id] = ("field", expr.name)
                return substitute(ft, mapping)
            if expr.name in sdecl.members:
                return self._error(f"method '{expr.name}' must be called", expr, "not-a-value")
        return self._error(f"type {r} has no field '{expr.name}'", expr, "unknown-member")

    def _infer_index(self, expr: IndexExpr) -> Type:
        obj = self._infer(expr.obj)
        idx = self._infer(expr.index)
        r = self._resolved(obj)
        if isinstance(r, ListType):
            self._unify(INT, idx, expr.index, "index-type",
                        f"list index must be int, got {self._resolved(idx)}")
            return r.elem
        if isinstance(r, DictType):
            self._unify(r.key, idx, expr.index, "index-type")
            return r.value
        if r == STRING:
            self._unify(INT, idx, expr.index, "index-type")
            return STRING
        if isinstance(r, ErrorType):
            return ERROR
        if isinstance(r, TypeVar):
            return self._error("cannot infer the type of the indexed value; add a type "
                               "annotation", expr.obj, "cannot-infer")
        return self._error(f"type {r} is not indexable", expr, "not-indexable")

    def _infer_struct_init(self, expr: StructInit) -> Type:
        decl = self._decl_of(expr)
        if decl is None:
            for f in expr.fields:
                self._infer(f.value)
            return ERROR
        if decl.kind == DeclKind.TYPE_ALIAS:
            target = self._expand_alias(decl, expr, [])
            adt = self._adt_of(target, DeclKind.STRUCT)
            if adt is None:
                for f in expr.fields:
                    self._infer(f.value)
                return self._error(f"'{decl.name}' is not a struct", expr, "not-a-struct")
            decl = adt[0]
            struct_type = self._resolved(target)
            args = struct_type.args if isinstance(struct_type, GenericType) else ()
        elif decl.kind == DeclKind.STRUCT:
            struct_type, args = self._instantiate_decl_type(decl)
        else:
            for f in expr.fields:
                self._infer(f.value)
            return ERROR
        self.typed.instantiations[expr.id] = tuple(args)
        info = self.typed.struct_info(decl.id)
        mapping = dict(zip(info.type_params, args))
        seen: set[str] = set()
        for f in expr.fields:
            value = self._infer(f.value)
            if f.name in seen:
                self._error(f"field '{f.name}' given twice", f, "duplicate-field")
                continue
            seen.add(f.name)
            ft = info.fields.get(f.name)
            if ft is None:
                self._error(f"struct '{decl.name}' has no field '{f.name}'", f, "extra-field")
                continue
            expected = substitute(ft, mapping)
            self._unify(expected, value, f.value, "field-type",
                        f"field '{f.name}' expects {self._resolved(expected)}, got "
                        f"{self._resolved(value)}")
        missing = [name for name in info.fields if name not in seen]
        if missing:
            self._error(f"missing field(s) {', '.join(missing)} in '{decl.name}'", expr,
                        "missing-field", missing=missing)
        return struct_type

    def _infer_comprehension(self, expr: Comprehension) -> Type:
        it = self._infer(expr.iterable)
        elem = self._iter_elem(it, expr.iterable)
        tdecl = self._decl_of(expr.target)
        if tdecl is not None:
            self.typed.decl_types[tdecl.id] = elem
        self._record(expr.target, elem)
        if expr.condition is not None:
            self._expect_bool(expr.condition)
        if expr.kind == "dict":
            assert expr.key is not None
            key = self._infer(expr.key)
            return DictType(key, self._infer(expr.element))
        return ListType(self._infer(expr.element))

    def _infer_lambda(self, expr: LambdaExpr) -> Type:
        params: list[Type] = []
        for param in expr.params:
            t = self._type_from_expr(param.type_expr) if param.type_expr is not None \
                else self.subst.fresh()
            if param.default is not None:
                self._unify(t, self._infer(param.default), param.default, "default-type")
            pdecl = self._decl_of(param)
            if pdecl is not None:
                self.typed.decl_types[pdecl.id] = t
            params.append(t)
        ret = self._type_from_expr(expr.return_type) if expr.return_type is not None \
            else self.subst.fresh()
        saved = self._fn
        self._fn = _FunctionContext(ret, inferred_return=False)
        try:
            body = self._infer(expr.body)
        finally:
            self._fn = saved
        self._unify(ret, body, expr.body, "return-type",
                    f"lambda body has type {self._resolved(body)}, expected "
                    f"{self._resolved(ret)}")
        return FunctionType(tuple(params), ret)

    # -------------------------------------------------------------------
    # Finalization
    # -------------------------------------------------------------------

    def _finalize(self) -> None:
        for t, node, op in self._deferred_numeric:
            r = self._resolved(t)
            if isinstance(r, TypeVar) or contains_error(r):
                continue
            if op == "ordered":
                if r not in NUMERIC and r != STRING:
                    self._error(f"ordering comparison is not defined for {r}", node,
                                "operator-type")
            elif r not in NUMERIC:
                self._error(f"operator '{op}' is not defined for {r}", node, "operator-type")

        reported: set[int] = set()

        def settle(t: Type, node: Optional[Node], what: str) -> Type:
            r = self._resolved(t)
            fv = free_vars(r)
            if fv and not (fv & reported):
                self._error(f"cannot infer the type of {what}; add a type annotation",
                            node, "cannot-infer")
            reported.update(fv)
            return r

        typed = self.typed
        for decl_id in list(typed.decl_types):
            decl = self.table.decl(decl_id)
            typed.decl_types[decl_id] = settle(typed.decl_types[decl_id], decl.node,
                                               f"'{decl.name}'")
        for decl_id, scheme in list(typed.signatures.items()):
            decl = self.table.decl(decl_id)
            typed.signatures[decl_id] = Scheme(
                scheme.params, settle(scheme.type, decl.node, f"function '{decl.name}'"))
        for node_id in sorted(typed.expr_types):
            node = self.program.nodes[node_id] if node_id < len(self.program.nodes) else None
            typed.expr_types[node_id] = settle(typed.expr_types[node_id], node, "this expression")
        for node_id in list(typed.instantiations):
            node = self.program.nodes[node_id] if node_id < len(self.program.nodes) else None
            typed.instantiations[node_id] = tuple(
                settle(a, node, "a type argument") for a in typed.instantiations[node_id])


def typecheck(program: Program, resolution: Resolution, table: ModuleTable,
              sink: DiagnosticSink) -> TypedModule:
    """Type check one resolved module."""
    return TypeChecker(program, resolution, table, sink).check_program()
