"""Otter Resolver — binds every name to a declaration id.

Module-level items are collected first so top-level forward references work;
top-level statements are then resolved in source order, and item bodies last
so functions may refer to any module-level binding. Lookup is lexical: inner
scopes shadow outer ones, and rebinding a name inside the same scope is a
duplicate definition.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from otterc.ast_nodes import (
    Node, Program,
    TypeExpr, PrimitiveTypeExpr, NamedTypeExpr, GenericTypeExpr, FunctionTypeExpr,
    Pattern, WildcardPattern, LiteralPattern, BindingPattern, VariantPattern,
    StructPattern, ListPattern,
    Expr, Literal, Identifier, BinaryExpr, UnaryExpr, CallExpr, MemberExpr,
    IndexExpr, StructInit, ListLit, DictLit, Comprehension, RangeExpr, IfExpr,
    MatchArm, MatchExpr, AwaitExpr, SpawnExpr, LambdaExpr, FString,
    Stmt, LetStmt, AssignStmt, AugAssignStmt, ReturnStmt, BreakStmt, ContinueStmt,
    PassStmt, IfStmt, WhileStmt, ForStmt, MatchStmt, ExprStmt,
    Item, TypeParam, FunctionDef, StructDef, EnumDef, TypeAliasDef, UseDecl,
)
from otterc.errors import (
    DiagnosticSink, InternalCompilerError, Note, SourceSpan,
    find_best_match, name_error,
)
from otterc.symbols import (
    TYPE_KINDS, DeclKind, Declaration, ModuleInfo, ModuleTable, Scope,
)

logger = logging.getLogger(__name__)


@dataclass
class Resolution:
    module: str
    scope: Scope
    # Node id (reference or definition) -> declaration id.
    bindings: dict[int, int] = field(default_factory=dict)
    exports: dict[str, int] = field(default_factory=dict)
    # Module-level let bindings in source order.
    globals: list[int] = field(default_factory=list)

    def decl_id(self, node: Node) -> Optional[int]:
        return self.bindings.get(node.id)


class Resolver:
    """Two-pass name resolution for one module."""

    def __init__(self, program: Program, table: ModuleTable, sink: DiagnosticSink,
                 parent_scope: Optional[Scope] = None):
        self.program = program
        self.table = table
        self.sink = sink
        self.module = program.module_name
        self.module_scope = Scope(parent=parent_scope or table.prelude_scope, kind="module")
        self.scope = self.module_scope
        self.result = Resolution(module=self.module, scope=self.module_scope)
        self._scopes_by_item: dict[int, Scope] = {}
        self._import_module: Optional[Callable[[str, Node], Optional[ModuleInfo]]] = None

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------

    def _declare(self, kind: DeclKind, name: str, node: Node, scope: Optional[Scope] = None,
                 **kwargs) -> Declaration:
        decl = self.table.new_decl(kind, name, self.module, span=node.span, node=node, **kwargs)
        self.result.bindings[node.id] = decl.id
        target = scope or self.scope
        existing = target.define(name, decl.id)
        if existing is not None:
            prev = self.table.decl(existing)
            diag = name_error(
                name, node.span, code="duplicate-definition",
                message=f"duplicate definition of '{name}'",
            )
            if prev.span is not None:
                diag.notes.append(Note(f"'{name}' first defined here", prev.span))
            self.sink.report(diag)
        return decl

    def _undefined(self, name: str, span: Optional[SourceSpan], what: str = "symbol") -> None:
        suggestion = find_best_match(name, self.scope.visible_names())
        help_text = f"did you mean '{suggestion}'?" if suggestion else None
        self.sink.report(name_error(name, span, message=f"undefined {what} '{name}'",
                                    help=help_text))

    def _lookup(self, name: str, node: Node) -> Optional[int]:
        decl_id = self.scope.lookup(name)
        if decl_id is None:
            self._undefined(name, node.span)
            return None
        self.result.bindings[node.id] = decl_id
        return decl_id

    def _resolve_path(self, path: list[str], node: Node, what: str = "symbol") -> Optional[int]:
        """Resolve a dotted path through modules and enums; binds node to the result."""
        decl_id = self.scope.lookup(path[0])
        if decl_id is None:
            self._undefined(path[0], node.span, what)
            return None
        for part in path[1:]:
            decl = self.table.decl(decl_id)
            next_id = self._member_of(decl, part, node.span)
            if next_id is None:
                return None
            decl_id = next_id
        self.result.bindings[node.id] = decl_id
        return decl_id

    def _member_of(self, decl: Declaration, name: str,
                   span: Optional[SourceSpan]) -> Optional[int]:
        if decl.kind == DeclKind.MODULE:
            info = self.table.get(decl.target_module)
            exports = info.exports if info is not None else {}
            if name in exports:
                return exports[name]
            suggestion = find_best_match(name, exports)
            self.sink.report(name_error(
                name, span, code="undefined-symbol",
                message=f"module '{decl.target_module}' has no exported member '{name}'",
                help=f"did you mean '{suggestion}'?" if suggestion else None,
            ))
            return None
        if decl.kind == DeclKind.ENUM:
            if name in decl.members:
                return decl.members[name]
            self.sink.report(name_error(
                name, span, message=f"enum '{decl.name}' has no variant '{name}'",
            ))
            return None
        self.sink.report(name_error(
            name, span, message=f"'{decl.name}' is not a module or enum",
        ))
        return None

    def _push(self, kind: str = "block") -> Scope:
        self.scope = self.scope.child(kind)
        return self.scope

    def _pop(self, saved: Scope) -> None:
        self.scope = saved

    # -------------------------------------------------------------------
    # Entry
    # -------------------------------------------------------------------

    def resolve(self, import_module: Optional[Callable[[str, Node], Optional[ModuleInfo]]] = None
                ) -> Resolution:
        self._import_module = import_module
        items = [it for it in self.program.items if isinstance(it, Item)]
        statements = [it for it in self.program.items if isinstance(it, Stmt)]

        # Pass 1: collect declarations.
        for item in items:
            self._collect_item(item)
        # Signatures may name any collected type.
        for item in items:
            self._resolve_item_signature(item)
        # Top-level statements, in order.
        for stmt in statements:
            self._resolve_stmt(stmt, top_level=True)
        # Pass 2: bodies.
        for item in items:
            self._resolve_item_body(item)

        self._compute_exports(items, statements)
        logger.debug("resolved module %s: %d bindings", self.module,
                     len(self.result.bindings))
        return self.result

    def _compute_exports(self, items: list[Item], statements: list[Stmt]) -> None:
        exports = self.result.exports
        for item in items:
            if not item.is_public:
                continue
            decl_id = self.result.bindings.get(item.id)
            if decl_id is None:
                continue
            exports[item.name] = decl_id
            if isinstance(item, EnumDef):
                decl = self.table.decl(decl_id)
                for vname, vid in decl.members.items():
                    exports.setdefault(vname, vid)
        for stmt in statements:
            if isinstance(stmt, LetStmt) and stmt.is_public:
                for binding in pattern_bindings(stmt.pattern):
                    decl_id = self.result.bindings.get(binding.id)
                    if decl_id is not None:
                        exports[self.table.decl(decl_id).name] = decl_id

    # -------------------------------------------------------------------
    # Items
    # -------------------------------------------------------------------

    def _collect_item(self, item: Item) -> None:
        if isinstance(item, FunctionDef):
            self._declare(DeclKind.FUNCTION, item.name, item, is_public=item.is_public)
        elif isinstance(item, StructDef):
            decl = self._declare(DeclKind.STRUCT, item.name, item, is_public=item.is_public)
            method_scope = Scope(kind="methods")
            for method in item.methods:
                mdecl = self._declare(DeclKind.FUNCTION, method.name, method,
                                      scope=method_scope, parent=decl.id,
                                      is_public=method.is_public)
                decl.members.setdefault(method.name, mdecl.id)
            field_names = set()
            for f in item.fields:
                if f.name in field_names:
                    self.sink.report(name_error(
                        f.name, f.span, code="duplicate-definition",
                        message=f"duplicate field '{f.name}' in struct '{item.name}'",
                    ))
                elif f.name in decl.members:
                    self.sink.report(name_error(
                        f.name, f.span, code="duplicate-definition",
                        message=f"'{f.name}' is both a field and a method of '{item.name}'",
                    ))
                field_names.add(f.name)
        elif isinstance(item, EnumDef):
            decl = self._declare(DeclKind.ENUM, item.name, item, is_public=item.is_public)
            for tag, variant in enumerate(item.variants):
                vdecl = self._declare(DeclKind.VARIANT, variant.name, variant,
                                      parent=decl.id, tag=tag, is_public=item.is_public)
                decl.members.setdefault(variant.name, vdecl.id)
        elif isinstance(item, TypeAliasDef):
            self._declare(DeclKind.TYPE_ALIAS, item.name, item, is_public=item.is_public)
        elif isinstance(item, UseDecl):
            self._collect_use(item)
        else:
            raise InternalCompilerError(f"unhandled item {type(item).__name__}", item.span)

    def _collect_use(self, item: UseDecl) -> None:
        target = item.module_name
        decl = self._declare(DeclKind.MODULE, item.name, item, is_public=item.is_public,
                             target_module=target)
        cycle = self.table.cycle_through(target)
        if cycle is not None:
            self.sink.report(name_error(
                target, item.span, code="circular-module",
                message="circular module dependency: " + " -> ".join(cycle),
            ))
            return
        info = self.table.get(target)
        if info is None and self._import_module is not None:
            info = self._import_module(target, item)
        if info is None:
            self.sink.report(name_error(
                target, item.span, code="unresolved-module",
                message=f"unresolved module '{target}'",
            ))
        logger.debug("use %s as %s (decl #%d)", target, item.name, decl.id)

    def _declare_type_params(self, params: list[TypeParam], owner: Declaration) -> None:
        for tp in params:
            d = self._declare(DeclKind.TYPE_PARAM, tp.name, tp, parent=owner.id)
            owner.type_params.append(d.id)

    def _resolve_item_signature(self, item: Item) -> None:
        decl_id = self.result.bindings.get(item.id)
        if decl_id is None:
            return
        decl = self.table.decl(decl_id)
        if decl.node is not item:
            return
        saved = self.scope
        if isinstance(item, FunctionDef):
            self._push("generic")
            item_scope = self.scope
            self._declare_type_params(item.type_params, decl)
            self._resolve_signature(item, item_scope)
            self._scopes_by_item[item.id] = item_scope
        elif isinstance(item, StructDef):
            self._push("generic")
            struct_scope = self.scope
            self._declare_type_params(item.type_params, decl)
            for f in item.fields:
                self._resolve_type(f.type_expr)
            for method in item.methods:
                mdecl = self.table.decl(self.result.bindings[method.id])
                self.scope = struct_scope.child("generic")
                method_scope = self.scope
                self._declare_type_params(method.type_params, mdecl)
                self._resolve_signature(method, method_scope)
                self._scopes_by_item[method.id] = method_scope
        elif isinstance(item, EnumDef):
            self._push("generic")
            self._declare_type_params(item.type_params, decl)
            for variant in item.variants:
                for ty in variant.payload:
                    self._resolve_type(ty)
        elif isinstance(item, TypeAliasDef):
            self._push("generic")
            self._declare_type_params(item.type_params, decl)
            self._resolve_type(item.target)
        self._pop(saved)

    def _resolve_signature(self, fn: FunctionDef, scope: Scope) -> None:
        saved = self.scope
        self.scope = scope
        for param in fn.params:
            if param.type_expr is not None:
                self._resolve_type(param.type_expr)
        if fn.return_type is not None:
            self._resolve_type(fn.return_type)
        self.scope = saved

    def _resolve_item_body(self, item: Item) -> None:
        if isinstance(item, FunctionDef):
            self._resolve_function_body(item, owner=None)
        elif isinstance(item, StructDef):
            decl_id = self.result.bindings.get(item.id)
            owner = self.table.decl(decl_id) if decl_id is not None else None
            for method in item.methods:
                self._resolve_function_body(method, owner=owner)

    def _resolve_function_body(self, fn: FunctionDef, owner: Optional[Declaration]) -> None:
        scope = self._scopes_by_item.get(fn.id)
        if scope is None:
            return
        saved = self.scope
        self.scope = scope
        for param in fn.params:
            if param.default is not None:
                self._resolve_expr(param.default)
        self._push("function")
        for i, param in enumerate(fn.params):
            is_self = owner is not None and i == 0 and param.name == "self"
            self._declare(DeclKind.PARAM, param.name, param,
                          parent=owner.id if is_self else None)
        self._push("block")
        for stmt in fn.body:
            self._resolve_stmt(stmt)
        self._pop(saved)

    # -------------------------------------------------------------------
    # Types
    # -------------------------------------------------------------------

    def _resolve_type(self, ty: TypeExpr) -> None:
        if isinstance(ty, PrimitiveTypeExpr):
            return
        elif isinstance(ty, NamedTypeExpr):
            decl_id = self._resolve_path(ty.path, ty, what="type")
            if decl_id is not None and self.table.decl(decl_id).kind not in TYPE_KINDS:
                self.sink.report(name_error(
                    ty.name, ty.span, code="not-a-type",
                    message=f"'{ty.name}' is not a type",
                ))
        elif isinstance(ty, GenericTypeExpr):
            self._resolve_type(ty.base)
            for arg in ty.args:
                self._resolve_type(arg)
        elif isinstance(ty, FunctionTypeExpr):
            for p in ty.params:
                self._resolve_type(p)
            if ty.ret is not None:
                self._resolve_type(ty.ret)
        else:
            raise InternalCompilerError(f"unhandled type expression {type(ty).__name__}",
                                        ty.span)

    # -------------------------------------------------------------------
    # Statements
    # -------------------------------------------------------------------

    def _resolve_block(self, body: list[Stmt]) -> None:
        saved = self.scope
        self._push("block")
        for stmt in body:
            self._resolve_stmt(stmt)
        self._pop(saved)

    def _resolve_stmt(self, stmt: Stmt, top_level: bool = False) -> None:
        if isinstance(stmt, LetStmt):
            self._resolve_expr(stmt.value)
            if stmt.type_expr is not None:
                self._resolve_type(stmt.type_expr)
            self._declare_pattern(stmt.pattern, is_global=top_level)
            if top_level:
                for binding in pattern_bindings(stmt.pattern):
                    decl_id = self.result.bindings.get(binding.id)
                    if decl_id is not None:
                        self.result.globals.append(decl_id)
        elif isinstance(stmt, (AssignStmt, AugAssignStmt)):
            self._resolve_expr(stmt.target)
            self._resolve_expr(stmt.value)
        elif isinstance(stmt, ReturnStmt):
            if stmt.value is not None:
                self._resolve_expr(stmt.value)
        elif isinstance(stmt, (BreakStmt, ContinueStmt, PassStmt)):
            pass
        elif isinstance(stmt, IfStmt):
            self._resolve_expr(stmt.condition)
            self._resolve_block(stmt.then_body)
            self._resolve_block(stmt.else_body)
        elif isinstance(stmt, WhileStmt):
            self._resolve_expr(stmt.condition)
            self._resolve_block(stmt.body)
        elif isinstance(stmt, ForStmt):
            self._resolve_expr(stmt.iterable)
            saved = self.scope
            self._push("loop")
            self._declare(DeclKind.LOCAL, stmt.target.name, stmt.target)
            self._resolve_block(stmt.body)
            self._pop(saved)
        elif isinstance(stmt, MatchStmt):
            self._resolve_expr(stmt.subject)
            for arm in stmt.arms:
                self._resolve_arm(arm)
        elif isinstance(stmt, ExprStmt):
            self._resolve_expr(stmt.expr)
        else:
            raise InternalCompilerError(f"unhandled statement {type(stmt).__name__}",
                                        stmt.span)

    def _resolve_arm(self, arm: MatchArm) -> None:
        saved = self.scope
        self._push("arm")
        self._declare_pattern(arm.pattern)
        if arm.value is not None:
            self._resolve_expr(arm.value)
        else:
            for stmt in arm.body:
                self._resolve_stmt(stmt)
        self._pop(saved)

    # -------------------------------------------------------------------
    # Patterns
    # -------------------------------------------------------------------

    def _declare_pattern(self, pattern: Pattern, is_global: bool = False) -> None:
        if isinstance(pattern, (WildcardPattern, LiteralPattern)):
            return
        elif isinstance(pattern, BindingPattern):
            self._declare(DeclKind.LOCAL, pattern.name, pattern, is_global=is_global)
        elif isinstance(pattern, VariantPattern):
            decl_id = self._resolve_path(pattern.path, pattern, what="variant")
            if decl_id is not None and self.table.decl(decl_id).kind != DeclKind.VARIANT:
                self.sink.report(name_error(
                    pattern.name, pattern.span, code="not-a-variant",
                    message=f"'{'.'.join(pattern.path)}' is not an enum variant",
                ))
            for sub in pattern.args:
                self._declare_pattern(sub, is_global)
        elif isinstance(pattern, StructPattern):
            decl_id = self._resolve_path(pattern.path, pattern, what="struct")
            if decl_id is not None and self.table.decl(decl_id).kind != DeclKind.STRUCT:
                self.sink.report(name_error(
                    pattern.name, pattern.span, code="not-a-struct",
                    message=f"'{pattern.name}' is not a struct",
                ))
            for fp in pattern.fields:
                self._declare_pattern(fp.pattern, is_global)
        elif isinstance(pattern, ListPattern):
            for sub in pattern.prefix:
                self._declare_pattern(sub, is_global)
            if pattern.rest is not None and pattern.rest.name is not None:
                self._declare(DeclKind.LOCAL, pattern.rest.name, pattern.rest,
                              is_global=is_global)
            for sub in pattern.suffix:
                self._declare_pattern(sub, is_global)
        else:
            raise InternalCompilerError(f"unhandled pattern {type(pattern).__name__}",
                                        pattern.span)

    # -------------------------------------------------------------------
    # Expressions
    # -------------------------------------------------------------------

    def _resolve_expr(self, expr: Expr) -> None:
        if isinstance(expr, Literal):
            return
        elif isinstance(expr, Identifier):
            self._lookup(expr.name, expr)
        elif isinstance(expr, BinaryExpr):
            self._resolve_expr(expr.left)
            self._resolve_expr(expr.right)
        elif isinstance(expr, UnaryExpr):
            self._resolve_expr(expr.operand)
        elif isinstance(expr, CallExpr):
            self._resolve_expr(expr.callee)
            for arg in expr.args:
                self._resolve_expr(arg)
            for kw in expr.kwargs:
                self._resolve_expr(kw.value)
        elif isinstance(expr, MemberExpr):
            self._resolve_member(expr)
        elif isinstance(expr, IndexExpr):
            self._resolve_expr(expr.obj)
            self._resolve_expr(expr.index)
        elif isinstance(expr, StructInit):
            decl_id = self._resolve_path(expr.path, expr, what="struct")
            if decl_id is not None and self.table.decl(decl_id).kind not in (
                    DeclKind.STRUCT, DeclKind.TYPE_ALIAS):
                self.sink.report(name_error(
                    expr.name, expr.span, code="not-a-struct",
                    message=f"'{expr.name}' is not a struct",
                ))
            for f in expr.fields:
                self._resolve_expr(f.value)
        elif isinstance(expr, ListLit):
            for el in expr.elements:
                self._resolve_expr(el)
        elif isinstance(expr, DictLit):
            for entry in expr.entries:
                self._resolve_expr(entry.key)
                self._resolve_expr(entry.value)
        elif isinstance(expr, Comprehension):
            self._resolve_expr(expr.iterable)
            saved = self.scope
            self._push("comprehension")
            self._declare(DeclKind.LOCAL, expr.target.name, expr.target)
            if expr.condition is not None:
                self._resolve_expr(expr.condition)
            if expr.key is not None:
                self._resolve_expr(expr.key)
            self._resolve_expr(expr.element)
            self._pop(saved)
        elif isinstance(expr, RangeExpr):
            self._resolve_expr(expr.start)
            self._resolve_expr(expr.end)
        elif isinstance(expr, IfExpr):
            self._resolve_expr(expr.condition)
            self._resolve_expr(expr.then_expr)
            self._resolve_expr(expr.else_expr)
        elif isinstance(expr, MatchExpr):
            self._resolve_expr(expr.subject)
            for arm in expr.arms:
                self._resolve_arm(arm)
        elif isinstance(expr, (AwaitExpr, SpawnExpr)):
            self._resolve_expr(expr.operand)
        elif isinstance(expr, LambdaExpr):
            self._resolve_lambda(expr)
        elif isinstance(expr, FString):
            for part in expr.parts:
                self._resolve_expr(part)
        else:
            raise InternalCompilerError(f"unhandled expression {type(expr).__name__}",
                                        expr.span)

    def _resolve_member(self, expr: MemberExpr) -> None:
        self._resolve_expr(expr.obj)
        if not isinstance(expr.obj, (Identifier, MemberExpr)):
            return
        obj_decl = self.result.bindings.get(expr.obj.id)
        if obj_decl is None:
            return
        decl = self.table.decl(obj_decl)
        if decl.kind in (DeclKind.MODULE, DeclKind.ENUM):
            member = self._member_of(decl, expr.name, expr.span)
            if member is not None:
                self.result.bindings[expr.id] = member

    def _resolve_lambda(self, expr: LambdaExpr) -> None:
        for param in expr.params:
            if param.default is not None:
                self._resolve_expr(param.default)
            if param.type_expr is not None:
                self._resolve_type(param.type_expr)
        if expr.return_type is not None:
            self._resolve_type(expr.return_type)
        saved = self.scope
        self._push("function")
        for param in expr.params:
            self._declare(DeclKind.PARAM, param.name, param)
        self._resolve_expr(expr.body)
        self._pop(saved)


def pattern_bindings(pattern: Pattern) -> list[Node]:
    """Binding nodes of a pattern, left to right."""
    if isinstance(pattern, BindingPattern):
        return [pattern]
    if isinstance(pattern, VariantPattern):
        return [b for sub in pattern.args for b in pattern_bindings(sub)]
    if isinstance(pattern, StructPattern):
        return [b for fp in pattern.fields for b in pattern_bindings(fp.pattern)]
    if isinstance(pattern, ListPattern):
        out = [b for sub in pattern.prefix for b in pattern_bindings(sub)]
        if pattern.rest is not None and pattern.rest.name is not None:
            out.append(pattern.rest)
        out.extend(b for sub in pattern.suffix for b in pattern_bindings(sub))
        return out
    return []


def resolve(program: Program, table: ModuleTable, sink: DiagnosticSink,
            import_module: Optional[Callable[[str, Node], Optional[ModuleInfo]]] = None
            ) -> Resolution:
    """Resolve one module's names against the module table."""
    return Resolver(program, table, sink).resolve(import_module)
