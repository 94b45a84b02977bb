"""Otter Pass 2 — Lower.

Typed AST (with decision trees) to IR. The whole program reachable from the
root module is lowered into one IRModule: module initialisers, every
non-generic function of the root module, and each generic instantiation
requested from a call site. Instantiations are cached by (declaration id,
concrete type arguments), so one specialised function exists per distinct
tuple.

Heap values (structs, enums, closures, environments) are allocated through
the runtime allocator and filled with stores at layout offsets; lists,
dicts, strings and tasks are opaque runtime objects.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Callable, Optional

from otterc.ast_nodes import (
    Node,
    BindingPattern, RestPattern,
    Expr, Literal, Identifier, BinaryExpr, UnaryExpr, CallExpr, MemberExpr,
    IndexExpr, StructInit, ListLit, DictLit, Comprehension, RangeExpr, IfExpr,
    MatchExpr, AwaitExpr, SpawnExpr, Param, LambdaExpr, FString,
    Stmt, LetStmt, AssignStmt, AugAssignStmt, ReturnStmt, BreakStmt, ContinueStmt,
    PassStmt, IfStmt, WhileStmt, ForStmt, MatchStmt, ExprStmt,
    FunctionDef, StructDef, UseDecl, walk,
)
from otterc.config import CompilerConfig
from otterc.errors import InternalCompilerError
from otterc.ir import (
    ExternDecl, IRBlock, IRFunction, IRGlobal, IRInstr, IRModule, IROpKind, Value,
    EnumLayout, StructLayout, F64, I1, I32, I64, PTR, VOID,
)
from otterc.layout import TargetLayout
from otterc.match_compiler import (
    Fail, FieldStep, IndexStep, Leaf, Path, PayloadStep, SliceStep, Switch, Tree,
)
from otterc.pass1_check import TypedModule
from otterc.runtime_abi import ANY, RUNTIME_ENTRY_POINTS, WASM_HOST_IMPORTS, extern, host_import
from otterc.symbols import DeclKind, Declaration
from otterc.types import (
    BOOL, FLOAT, INT, PRIMITIVES, STRING, UNIT,
    DictType, ErrorType, FunctionType, GenericType, ListType, NamedType,
    PrimitiveType, Type, TypeParam, TypeVar,
    children, substitute,
)

logger = logging.getLogger(__name__)


_ARITH_OPS = {
    "+": IROpKind.ADD, "-": IROpKind.SUB, "*": IROpKind.MUL,
    "/": IROpKind.DIV, "%": IROpKind.MOD,
}
_CMP_OPS = {
    "==": IROpKind.EQ, "!=": IROpKind.NE, "<": IROpKind.LT,
    ">": IROpKind.GT, "<=": IROpKind.LE, ">=": IROpKind.GE,
}


def ir_type(t: Type) -> str:
    """IR value type of a concrete source type."""
    if t == INT:
        return I64
    if t == FLOAT:
        return F64
    if t == BOOL:
        return I1
    if t == UNIT:
        return VOID
    return PTR


def storage_type(t: Type) -> str:
    """Type of a stored field or element; unit occupies a byte."""
    it = ir_type(t)
    return I1 if it == VOID else it


def _is_concrete(t: Type) -> bool:
    if isinstance(t, (TypeVar, TypeParam, ErrorType)):
        return False
    return all(_is_concrete(c) for c in children(t))


class FunctionLowerer:
    """Per-function state: blocks, temporaries and local slots."""

    def __init__(self, lowerer: "Lowerer", typed: TypedModule,
                 mapping: dict[TypeParam, Type], name: str, origin: str = "",
                 is_init: bool = False):
        self.lw = lowerer
        self.typed = typed
        self.mapping = mapping
        self.fn = IRFunction(name=name, origin=origin or name)
        self.block = IRBlock("entry")
        self.fn.blocks.append(self.block)
        self.is_init = is_init
        self.slots: dict[int, tuple[str, str]] = {}
        self.captures: dict[int, tuple[int, str]] = {}
        self.env: Optional[Value] = None
        self.loops: list[tuple[str, str]] = []
        self._temps = 0
        self._labels = 0
        self._slot_count = 0

    # -------------------------------------------------------------------
    # Emission
    # -------------------------------------------------------------------

    def label(self, hint: str) -> str:
        self._labels += 1
        return f"{hint}.{self._labels}"

    def start_block(self, label: str) -> None:
        self.block = IRBlock(label)
        self.fn.blocks.append(self.block)

    def _append(self, instr: IRInstr) -> None:
        if self.block.terminated:
            self.start_block(self.label("dead"))
        self.block.instrs.append(instr)

    def value(self, op: IROpKind, ty: str, *operands) -> Value:
        self._temps += 1
        dest = f"%{self._temps}"
        self._append(IRInstr(op, dest, ty, list(operands)))
        return Value(dest, ty)

    def do(self, op: IROpKind, *operands, ty: str = VOID) -> None:
        self._append(IRInstr(op, None, ty, list(operands)))

    def jmp(self, label: str) -> None:
        self.do(IROpKind.JMP, label)

    def br(self, cond: Value, then: str, other: str) -> None:
        self.do(IROpKind.BR, cond, then, other)

    def ret(self, value: Optional[Value]) -> None:
        if value is None:
            self.do(IROpKind.RET)
        else:
            self.do(IROpKind.RET, value, ty=value.type)

    def finish(self) -> IRFunction:
        if not self.block.terminated:
            if self.fn.return_type == VOID:
                self.do(IROpKind.RET)
            else:
                self.do(IROpKind.UNREACHABLE)
        return self.fn

    def call(self, name: str, ret: str, *args: Optional[Value]) -> Optional[Value]:
        argv = [a for a in args if a is not None]
        if ret == VOID:
            self.do(IROpKind.CALL, f"@{name}", *argv)
            return None
        return self.value(IROpKind.CALL, ret, f"@{name}", *argv)

    def rt(self, name: str, *args: Optional[Value], result: Optional[str] = None
           ) -> Optional[Value]:
        """Call a runtime entry point; `result` types an `any` return."""
        self.lw.use_extern(name)
        ret = RUNTIME_ENTRY_POINTS[name][1]
        if ret == ANY:
            ret = result or VOID
        return self.call(name, ret, *args)

    def host(self, name: str, *args: Value) -> Optional[Value]:
        self.lw.use_import(name)
        return self.call(name, WASM_HOST_IMPORTS[name][1], *args)

    # -------------------------------------------------------------------
    # Memory helpers
    # -------------------------------------------------------------------

    @staticmethod
    def imm(n: int, ty: str = I64) -> Value:
        return Value(str(n), ty)

    def alloc(self, size: int, align: int) -> Value:
        v = self.rt("otter_alloc", self.imm(size), self.imm(align))
        assert v is not None
        return v

    def load(self, ptr: Value, offset: int, ty: str) -> Value:
        return self.value(IROpKind.LOAD, ty, ptr, self.imm(offset))

    def store(self, ptr: Value, offset: int, v: Value) -> None:
        self.do(IROpKind.STORE, ptr, self.imm(offset), v)

    def materialize(self, v: Optional[Value]) -> Value:
        return v if v is not None else Value("false", I1)

    def panic(self, message: str) -> None:
        self.rt("otter_panic", self.lw.string(message))
        self.do(IROpKind.UNREACHABLE)

    # -------------------------------------------------------------------
    # Types
    # -------------------------------------------------------------------

    def concrete(self, t: Type, node: Optional[Node] = None) -> Type:
        t = substitute(t, self.mapping)
        if not _is_concrete(t):
            raise InternalCompilerError(
                f"unresolved type {t} reached lowering in {self.fn.name}",
                node.span if node is not None else None)
        return t

    def ty(self, node: Node) -> Type:
        return self.concrete(self.typed.type_of(node), node)

    def decl_ty(self, decl_id: int) -> Type:
        return self.concrete(self.typed.decl_type(decl_id))

    def type_args(self, node: Node) -> tuple[Type, ...]:
        return tuple(self.concrete(a, node) for a in self.typed.instantiations.get(node.id, ()))

    def adt(self, t: Type) -> tuple[Declaration, dict[TypeParam, Type]]:
        if not isinstance(t, (NamedType, GenericType)):
            raise InternalCompilerError(f"expected a struct or enum type, got {t}")
        decl = self.lw.table.decl(t.decl_id)
        params = tuple(TypeParam(p, self.lw.table.decl(p).name) for p in decl.type_params)
        args = t.args if isinstance(t, GenericType) else ()
        return decl, dict(zip(params, args))

    # -------------------------------------------------------------------
    # Variables
    # -------------------------------------------------------------------

    def new_slot(self, hint: str, ty: str) -> str:
        self._slot_count += 1
        name = f"%{hint}.{self._slot_count}"
        self.do(IROpKind.LOCAL, name, ty=ty)
        return name

    def bind(self, decl_id: int, v: Optional[Value], t: Type) -> None:
        decl = self.lw.table.decl(decl_id)
        if decl.is_global:
            self.lw.set_global(self, decl, v, initial=True)
            return
        it = ir_type(t)
        if decl_id not in self.slots:
            slot = self.new_slot(decl.name, it) if it != VOID else ""
            self.slots[decl_id] = (slot, it)
        slot, it = self.slots[decl_id]
        if slot and v is not None:
            self.do(IROpKind.SET, slot, v)

    def read(self, decl_id: int, node: Optional[Node] = None) -> Optional[Value]:
        decl = self.lw.table.decl(decl_id)
        if decl_id in self.slots:
            slot, it = self.slots[decl_id]
            return self.value(IROpKind.GET, it, slot) if slot else None
        if decl_id in self.captures:
            offset, it = self.captures[decl_id]
            assert self.env is not None
            return self.load(self.env, offset, it)
        if decl.is_global:
            it = ir_type(self.lw.global_type(decl))
            if it == VOID:
                return None
            return self.value(IROpKind.GLOBAL_GET, it, f"@{decl.qualified_name}")
        raise InternalCompilerError(f"no storage for '{decl.name}' in {self.fn.name}",
                                    node.span if node is not None else None)

    def write(self, decl_id: int, v: Optional[Value], node: Node) -> None:
        decl = self.lw.table.decl(decl_id)
        if decl.is_global and decl_id not in self.slots:
            self.lw.set_global(self, decl, v, initial=False)
        elif decl_id in self.slots:
            slot, _ = self.slots[decl_id]
            if slot and v is not None:
                self.do(IROpKind.SET, slot, v)
        else:
            raise InternalCompilerError(f"cannot assign to captured '{decl.name}'", node.span)

    # -------------------------------------------------------------------
    # Functions
    # -------------------------------------------------------------------

    def lower_function(self, fn_node: FunctionDef, sig: FunctionType) -> IRFunction:
        self.fn.return_type = ir_type(sig.ret)
        for param, pt in zip(fn_node.params, sig.params):
            decl_id = self.typed.decl_id(param)
            it = ir_type(pt)
            if decl_id is None or it == VOID:
                continue
            v = Value(f"%{param.name}", it)
            self.fn.params.append(v)
            self.bind(decl_id, v, pt)
        self.block_stmts(fn_node.body)
        return self.finish()

    # -------------------------------------------------------------------
    # Statements
    # -------------------------------------------------------------------

    def block_stmts(self, body: list[Stmt]) -> None:
        for stmt in body:
            self.stmt(stmt)

    def stmt(self, stmt: Stmt) -> None:
        if isinstance(stmt, LetStmt):
            v = self.expr(stmt.value)
            if isinstance(stmt.pattern, BindingPattern):
                decl_id = self.typed.decl_id(stmt.pattern)
                if decl_id is not None:
                    self.bind(decl_id, v, self.ty(stmt.pattern))
            else:
                join = self.label("let.end")
                self.lower_match(self.typed.match_trees[stmt.id], v, self.ty(stmt.value),
                                 lambda arm: self.jmp(join))
                self.start_block(join)
        elif isinstance(stmt, AssignStmt):
            self.assign(stmt.target, self.expr(stmt.value))
        elif isinstance(stmt, AugAssignStmt):
            read, write = self.place(stmt.target)
            current = read()
            rhs = self.expr(stmt.value)
            t = self.ty(stmt.target)
            write(self.binary(stmt.op, current, rhs, t, self.ty(stmt.value), t))
        elif isinstance(stmt, ReturnStmt):
            self.ret(self.expr(stmt.value) if stmt.value is not None else None)
        elif isinstance(stmt, BreakStmt):
            self.jmp(self.loops[-1][1])
        elif isinstance(stmt, ContinueStmt):
            self.jmp(self.loops[-1][0])
        elif isinstance(stmt, PassStmt):
            pass
        elif isinstance(stmt, IfStmt):
            cond = self.expr(stmt.condition)
            then, other, join = self.label("then"), self.label("else"), self.label("endif")
            self.br(cond, then, other)
            self.start_block(then)
            self.block_stmts(stmt.then_body)
            self.jmp(join)
            self.start_block(other)
            self.block_stmts(stmt.else_body)
            self.jmp(join)
            self.start_block(join)
        elif isinstance(stmt, WhileStmt):
            head, body, done = self.label("while"), self.label("do"), self.label("endwhile")
            self.jmp(head)
            self.start_block(head)
            self.br(self.expr(stmt.condition), body, done)
            self.start_block(body)
            self.loops.append((head, done))
            self.block_stmts(stmt.body)
            self.loops.pop()
            self.jmp(head)
            self.start_block(done)
        elif isinstance(stmt, ForStmt):
            target = self.typed.decl_id(stmt.target)

            def body(elem: Optional[Value]) -> None:
                if target is not None:
                    self.bind(target, elem, self.ty(stmt.target))
                self.block_stmts(stmt.body)

            self.loop_over(stmt.iterable, body, loop_control=True)
        elif isinstance(stmt, MatchStmt):
            subject = self.expr(stmt.subject)
            join = self.label("match.end")

            def arm_body(i: int) -> None:
                self.block_stmts(stmt.arms[i].body)
                self.jmp(join)

            self.lower_match(self.typed.match_trees[stmt.id], subject, self.ty(stmt.subject),
                             arm_body)
            self.start_block(join)
        elif isinstance(stmt, ExprStmt):
            self.expr(stmt.expr)
        else:
            raise InternalCompilerError(f"unhandled statement {type(stmt).__name__}", stmt.span)

    def assign(self, target: Expr, v: Optional[Value]) -> None:
        _, write = self.place(target)
        write(v)

    def place(self, target: Expr
              ) -> tuple[Callable[[], Optional[Value]], Callable[[Optional[Value]], None]]:
        """Read and write accessors for an assignable expression.

        The target's object and index are evaluated here, once, so a compound
        assignment reads and writes the same element.
        """
        if isinstance(target, Identifier):
            decl_id = self.typed.decl_id(target)
            if decl_id is None:
                raise InternalCompilerError("unresolved assignment target", target.span)
            return (lambda: self.decl_value(target),
                    lambda v: self.write(decl_id, v, target))
        if isinstance(target, MemberExpr):
            obj = self.expr(target.obj)
            if obj is None:
                raise InternalCompilerError("field base has no value", target.span)
            offset = self.lw.struct_layout(self.ty(target.obj)).field(target.name).offset
            return (lambda: self.load(obj, offset, storage_type(self.ty(target))),
                    lambda v: self.store(obj, offset, self.materialize(v)))
        if isinstance(target, IndexExpr):
            obj = self.expr(target.obj)
            idx = self.expr(target.index)
            obj_t = self.ty(target.obj)
            if isinstance(obj_t, DictType):
                value_t = storage_type(obj_t.value)
                return (lambda: self.rt("otter_dict_get", obj, idx, result=value_t),
                        lambda v: self.rt("otter_dict_set", obj, idx, self.materialize(v)))
            if isinstance(obj_t, ListType):
                elem_t = storage_type(obj_t.elem)
                return (lambda: self.rt("otter_list_get", obj, idx, result=elem_t),
                        lambda v: self.rt("otter_list_set", obj, idx, self.materialize(v)))
        raise InternalCompilerError("invalid assignment target", target.span)

    def loop_over(self, iterable: Expr, body: Callable[[Optional[Value]], None],
                  loop_control: bool = False) -> None:
        """Counted loop over a range, list, dict (keys) or string (chars)."""
        head, step, done = self.label("for"), self.label("next"), self.label("endfor")
        counter = self.new_slot("i", I64)
        if isinstance(iterable, RangeExpr):
            start = self.expr(iterable.start)
            end = self.expr(iterable.end)
            self.do(IROpKind.SET, counter, start)
            seq = None
        else:
            seq = self.expr(iterable)
            seq_t = self.ty(iterable)
            if isinstance(seq_t, DictType):
                seq = self.rt("otter_dict_keys", seq)
                elem_t = seq_t.key
            elif seq_t == STRING:
                seq = self.rt("otter_str_chars", seq)
                elem_t = STRING
            else:
                assert isinstance(seq_t, ListType)
                elem_t = seq_t.elem
            end = self.rt("otter_list_len", seq)
            self.do(IROpKind.SET, counter, self.imm(0))
        self.jmp(head)
        self.start_block(head)
        i = self.value(IROpKind.GET, I64, counter)
        body_label = self.label("body")
        self.br(self.value(IROpKind.LT, I1, i, end), body_label, done)
        self.start_block(body_label)
        if seq is None:
            elem: Optional[Value] = i
        else:
            elem = self.rt("otter_list_get", seq, i, result=ir_type(elem_t))
        if loop_control:
            self.loops.append((step, done))
        body(elem)
        if loop_control:
            self.loops.pop()
        self.jmp(step)
        self.start_block(step)
        current = self.value(IROpKind.GET, I64, counter)
        self.do(IROpKind.SET, counter, self.value(IROpKind.ADD, I64, current, self.imm(1)))
        self.jmp(head)
        self.start_block(done)

    # -------------------------------------------------------------------
    # Decision trees
    # -------------------------------------------------------------------

    def lower_match(self, tree: Tree, subject: Optional[Value], subject_t: Type,
                    arm_body: Callable[[int], None]) -> None:
        arm_labels: dict[int, str] = {}
        self._tree(tree, {(): (self.materialize(subject), subject_t)}, arm_labels)
        for arm in sorted(arm_labels):
            self.start_block(arm_labels[arm])
            arm_body(arm)

    def _tree(self, tree: Tree, cache: dict[Path, tuple[Value, Type]],
              arm_labels: dict[int, str]) -> None:
        if isinstance(tree, Leaf):
            for decl_id, path in tree.bindings:
                v, t = self.access(path, cache)
                self.bind(decl_id, v, t)
            if tree.arm not in arm_labels:
                arm_labels[tree.arm] = self.label(f"arm{tree.arm}")
            self.jmp(arm_labels[tree.arm])
            return
        if isinstance(tree, Fail):
            self.panic("no match case applies")
            return
        assert isinstance(tree, Switch)
        v, t = self.access(tree.path, cache)
        if tree.kind == "tag":
            tag = self.load(v, 0, I32)
            labels = [self.label(f"case.{c.label}") for c in tree.cases]
            default = self.label("default")
            self._append(IRInstr(IROpKind.SWITCH, None, VOID, [tag, default],
                                 [(c.test, lbl) for c, lbl in zip(tree.cases, labels)]))
            for case, lbl in zip(tree.cases, labels):
                self.start_block(lbl)
                self._tree(case.tree, dict(cache), arm_labels)
            self.start_block(default)
            self._tree(tree.default if tree.default is not None else Fail(), dict(cache),
                       arm_labels)
        elif tree.kind == "literal":
            for case in tree.cases:
                cond = self.equals(v, self.literal(case.test, t), t)
                yes, no = self.label("lit"), self.label("nolit")
                self.br(cond, yes, no)
                self.start_block(yes)
                self._tree(case.tree, dict(cache), arm_labels)
                self.start_block(no)
            self._tree(tree.default if tree.default is not None else Fail(), dict(cache),
                       arm_labels)
        elif tree.kind == "length":
            test = tree.cases[0].test
            n = self.rt("otter_list_len", v)
            op = IROpKind.EQ if test.op == "==" else IROpKind.GE
            yes, no = self.label("len"), self.label("nolen")
            self.br(self.value(op, I1, n, self.imm(test.n)), yes, no)
            self.start_block(yes)
            self._tree(tree.cases[0].tree, dict(cache), arm_labels)
            self.start_block(no)
            self._tree(tree.default if tree.default is not None else Fail(), dict(cache),
                       arm_labels)
        else:
            raise InternalCompilerError(f"unknown switch kind '{tree.kind}'")

    def access(self, path: Path, cache: dict[Path, tuple[Value, Type]]) -> tuple[Value, Type]:
        if path in cache:
            return cache[path]
        parent, step = path[:-1], path[-1]
        v, t = self.access(parent, cache)
        if isinstance(step, PayloadStep):
            decl, mapping = self.adt(t)
            info = self.typed.enum_info(decl.id)
            variant = self.typed.variant_info(step.variant)
            layout = self.lw.enum_layout(t)
            ft = substitute(variant.payload[step.index], mapping)
            f = layout.variants[variant.tag].fields[step.index]
            out = (self.load(v, f.offset, storage_type(ft)), ft)
            assert info is not None
        elif isinstance(step, FieldStep):
            decl, mapping = self.adt(t)
            ft = substitute(self.typed.struct_info(decl.id).fields[step.name], mapping)
            f = self.lw.struct_layout(t).field(step.name)
            out = (self.load(v, f.offset, storage_type(ft)), ft)
        elif isinstance(step, IndexStep):
            assert isinstance(t, ListType)
            if step.from_end:
                n = self.rt("otter_list_len", v)
                idx = self.value(IROpKind.SUB, I64, n, self.imm(step.index))
            else:
                idx = self.imm(step.index)
            out = (self.rt("otter_list_get", v, idx, result=storage_type(t.elem)), t.elem)
        elif isinstance(step, SliceStep):
            n = self.rt("otter_list_len", v)
            end = self.value(IROpKind.SUB, I64, n, self.imm(step.end))
            out = (self.rt("otter_list_slice", v, self.imm(step.start), end), t)
        else:
            raise InternalCompilerError(f"unknown access step {step!r}")
        cache[path] = out  # type: ignore[assignment]
        return out  # type: ignore[return-value]

    # -------------------------------------------------------------------
    # Expressions
    # -------------------------------------------------------------------

    def literal(self, value, t: Type) -> Value:
        if t == STRING:
            return self.lw.string(value)
        if t == BOOL:
            return Value("true" if value else "false", I1)
        if t == FLOAT:
            return Value(repr(float(value)), F64)
        return Value(str(value), I64)

    def expr(self, e: Expr) -> Optional[Value]:
        if isinstance(e, Literal):
            return self.literal(e.value, PRIMITIVES[e.kind])
        elif isinstance(e, Identifier):
            return self.decl_value(e)
        elif isinstance(e, MemberExpr):
            member = self.typed.members.get(e.id)
            if member is not None and member[0] == "decl":
                return self.decl_value(e)
            obj = self.expr(e.obj)
            assert obj is not None
            t = self.ty(e)
            f = self.lw.struct_layout(self.ty(e.obj)).field(e.name)
            return self.load(obj, f.offset, storage_type(t))
        elif isinstance(e, BinaryExpr):
            return self.binary_expr(e)
        elif isinstance(e, UnaryExpr):
            v = self.expr(e.operand)
            t = self.ty(e)
            if e.op == "not":
                return self.value(IROpKind.NOT, I1, v)
            if e.op == "-":
                return self.value(IROpKind.NEG, ir_type(t), v)
            return v
        elif isinstance(e, CallExpr):
            return self.call_expr(e)
        elif isinstance(e, IndexExpr):
            obj = self.expr(e.obj)
            idx = self.expr(e.index)
            obj_t = self.ty(e.obj)
            if isinstance(obj_t, DictType):
                return self.rt("otter_dict_get", obj, idx, result=storage_type(obj_t.value))
            if obj_t == STRING:
                return self.rt("otter_str_get", obj, idx)
            assert isinstance(obj_t, ListType)
            return self.rt("otter_list_get", obj, idx, result=storage_type(obj_t.elem))
        elif isinstance(e, StructInit):
            return self.struct_init(e)
        elif isinstance(e, ListLit):
            lst = self.rt("otter_list_new", self.imm(len(e.elements)))
            for el in e.elements:
                self.rt("otter_list_push", lst, self.materialize(self.expr(el)))
            return lst
        elif isinstance(e, DictLit):
            d = self.rt("otter_dict_new")
            for entry in e.entries:
                k = self.expr(entry.key)
                self.rt("otter_dict_set", d, self.materialize(k),
                        self.materialize(self.expr(entry.value)))
            return d
        elif isinstance(e, Comprehension):
            return self.comprehension(e)
        elif isinstance(e, RangeExpr):
            return self.rt("otter_range", self.expr(e.start), self.expr(e.end))
        elif isinstance(e, IfExpr):
            t = ir_type(self.ty(e))
            slot = self.new_slot("if", t) if t != VOID else ""
            then, other, join = self.label("then"), self.label("else"), self.label("endif")
            self.br(self.expr(e.condition), then, other)
            for label, branch in ((then, e.then_expr), (other, e.else_expr)):
                self.start_block(label)
                v = self.expr(branch)
                if slot and v is not None:
                    self.do(IROpKind.SET, slot, v)
                self.jmp(join)
            self.start_block(join)
            return self.value(IROpKind.GET, t, slot) if slot else None
        elif isinstance(e, MatchExpr):
            return self.match_expr(e)
        elif isinstance(e, AwaitExpr):
            handle = self.expr(e.operand)
            return self.rt("otter_task_join", handle, result=ir_type(self.ty(e)))
        elif isinstance(e, SpawnExpr):
            clo = self.closure(e, [], lambda child: child.expr(e.operand),
                               self.ty(e.operand), "spawn")
            return self.rt("otter_task_submit", clo)
        elif isinstance(e, LambdaExpr):
            fn_t = self.ty(e)
            assert isinstance(fn_t, FunctionType)
            return self.closure(e, e.params, lambda child: child.expr(e.body), fn_t.ret,
                                "lambda", fn_t.params)
        elif isinstance(e, FString):
            acc = self.lw.string("")
            for part in e.parts:
                piece = self.to_str(self.expr(part), self.ty(part))
                acc = self.rt("otter_str_append", acc, piece)
            return acc
        raise InternalCompilerError(f"unhandled expression {type(e).__name__}", e.span)

    def decl_value(self, node: Expr) -> Optional[Value]:
        decl_id = self.typed.decl_id(node)
        if decl_id is None:
            raise InternalCompilerError("unresolved name reached lowering", node.span)
        decl = self.lw.table.decl(decl_id)
        if decl.kind in (DeclKind.LOCAL, DeclKind.PARAM):
            return self.read(decl_id, node)
        if decl.kind == DeclKind.FUNCTION:
            fn_t = self.ty(node)
            assert isinstance(fn_t, FunctionType)
            target = self.lw.instance(decl_id, self.type_args(node))
            return self.function_value(self.lw.thunk(target, fn_t), fn_t)
        if decl.kind == DeclKind.VARIANT:
            t = self.ty(node)
            if isinstance(t, FunctionType):
                return self.function_value(self.lw.variant_thunk(decl, t), t)
            return self.construct_variant(decl, t, [])
        if decl.kind == DeclKind.FOREIGN_FUNCTION:
            fn_t = self.ty(node)
            assert isinstance(fn_t, FunctionType)
            return self.function_value(self.lw.thunk(self.lw.foreign(decl, fn_t), fn_t), fn_t)
        raise InternalCompilerError(f"'{decl.name}' is not a value", node.span)

    def function_value(self, fn_name: str, fn_t: FunctionType) -> Value:
        ptr = self.lw.layout.pointer_size
        clo = self.alloc(2 * ptr, ptr)
        self.store(clo, 0, self.value(IROpKind.FUNC_REF, PTR, f"@{fn_name}"))
        self.store(clo, ptr, Value("null", PTR))
        return clo

    def call_closure(self, clo: Value, ret: str, args: list[Optional[Value]]) -> Optional[Value]:
        ptr = self.lw.layout.pointer_size
        fp = self.load(clo, 0, PTR)
        env = self.load(clo, ptr, PTR)
        argv = [a for a in args if a is not None]
        if ret == VOID:
            self.do(IROpKind.CALL_INDIRECT, fp, env, *argv)
            return None
        return self.value(IROpKind.CALL_INDIRECT, ret, fp, env, *argv)

    # -- operators ------------------------------------------------------

    def binary_expr(self, e: BinaryExpr) -> Optional[Value]:
        if e.op in ("and", "or"):
            slot = self.new_slot(e.op, I1)
            self.do(IROpKind.SET, slot, self.expr(e.left))
            rhs, join = self.label(e.op), self.label(f"end{e.op}")
            cond = self.value(IROpKind.GET, I1, slot)
            if e.op == "and":
                self.br(cond, rhs, join)
            else:
                self.br(cond, join, rhs)
            self.start_block(rhs)
            self.do(IROpKind.SET, slot, self.expr(e.right))
            self.jmp(join)
            self.start_block(join)
            return self.value(IROpKind.GET, I1, slot)
        if e.op in ("is", "is not"):
            subject = self.expr(e.left)
            assert subject is not None
            vdecl = self.typed.decl_id(e.right)
            if vdecl is None:
                raise InternalCompilerError("unresolved variant in 'is'", e.span)
            tag = self.load(subject, 0, I32)
            op = IROpKind.EQ if e.op == "is" else IROpKind.NE
            return self.value(op, I1, tag, self.imm(self.lw.table.decl(vdecl).tag, I32))
        left = self.expr(e.left)
        right = self.expr(e.right)
        return self.binary(e.op, left, right, self.ty(e.left), self.ty(e.right), self.ty(e))

    def binary(self, op: str, left: Optional[Value], right: Optional[Value],
               lt: Type, rt: Type, result: Type) -> Optional[Value]:
        if op == "+" and result == STRING:
            return self.rt("otter_str_append", self.to_str(left, lt), self.to_str(right, rt))
        if op in _ARITH_OPS:
            return self.value(_ARITH_OPS[op], ir_type(result), left, right)
        if op in ("==", "!="):
            eq = self.equals(self.materialize(left), self.materialize(right), lt)
            return eq if op == "==" else self.value(IROpKind.NOT, I1, eq)
        if op in _CMP_OPS:
            if lt == STRING:
                c = self.rt("otter_str_cmp", left, right)
                return self.value(_CMP_OPS[op], I1, c, self.imm(0))
            return self.value(_CMP_OPS[op], I1, left, right)
        raise InternalCompilerError(f"unknown operator '{op}'")

    def equals(self, a: Value, b: Value, t: Type) -> Value:
        if t == STRING:
            v = self.rt("otter_str_eq", a, b)
        elif t in (INT, FLOAT, BOOL):
            v = self.value(IROpKind.EQ, I1, a, b)
        elif t == UNIT:
            v = Value("true", I1)
        else:
            v = self.rt("otter_value_eq", a, b)
        assert v is not None
        return v

    def to_str(self, v: Optional[Value], t: Type) -> Value:
        if t == STRING and v is not None:
            return v
        if v is None:
            return self.lw.string("()")
        s = self.rt("otter_to_string", v)
        assert s is not None
        return s

    # -- calls ----------------------------------------------------------

    def call_expr(self, call: CallExpr) -> Optional[Value]:
        callee = call.callee
        ret = ir_type(self.ty(call))
        decl_id = self.typed.decl_id(callee) if isinstance(callee, (Identifier, MemberExpr)) \
            else None
        decl = self.lw.table.decl(decl_id) if decl_id is not None else None
        member = self.typed.members.get(callee.id) if isinstance(callee, MemberExpr) else None

        if decl is not None and decl.kind == DeclKind.BUILTIN_FUNCTION:
            return self.builtin_call(decl.name, call)
        if member is not None and member[0] == "method":
            assert isinstance(callee, MemberExpr)
            mdecl = self.lw.table.decl(member[1])
            target = self.lw.instance(mdecl.id, self.type_args(callee))
            recv = self.expr(callee.obj)
            assert isinstance(mdecl.node, FunctionDef)
            args = self.arguments(call, mdecl, self.type_args(callee), skip_self=True)
            return self.call(target, ret, recv, *args)
        if member is not None and member[0] == "builtin_method":
            assert isinstance(callee, MemberExpr)
            return self.builtin_method(member[1], callee, call, ret)
        if decl is not None and decl.kind == DeclKind.FUNCTION and decl.parent is None:
            type_args = self.type_args(callee)
            target = self.lw.instance(decl.id, type_args)
            return self.call(target, ret, *self.arguments(call, decl, type_args))
        if decl is not None and decl.kind == DeclKind.VARIANT:
            payload = [self.expr(a) for a in call.args]
            return self.construct_variant(decl, self.ty(call), payload)
        if decl is not None and decl.kind == DeclKind.FOREIGN_FUNCTION:
            fn_t = self.ty(callee)
            assert isinstance(fn_t, FunctionType)
            return self.call(self.lw.foreign(decl, fn_t), ret,
                             *[self.expr(a) for a in call.args])
        clo = self.expr(callee)
        assert clo is not None
        return self.call_closure(clo, ret, [self.expr(a) for a in call.args])

    def arguments(self, call: CallExpr, decl: Declaration, type_args: tuple[Type, ...],
                  skip_self: bool = False) -> list[Optional[Value]]:
        fn_node = decl.node
        assert isinstance(fn_node, FunctionDef)
        params = fn_node.params[1:] if skip_self else fn_node.params
        values: list[Optional[Value]] = [None] * len(params)
        given = [False] * len(params)
        for i, arg in enumerate(call.args):
            values[i] = self.expr(arg)
            given[i] = True
        names = [p.name for p in params]
        for kw in call.kwargs:
            idx = names.index(kw.name)
            values[idx] = self.expr(kw.value)
            given[idx] = True
        for i, param in enumerate(params):
            if not given[i]:
                assert param.default is not None
                values[i] = self.default_value(decl, param, type_args)
        return values

    def default_value(self, decl: Declaration, param: Param,
                      type_args: tuple[Type, ...]) -> Optional[Value]:
        """A default evaluates at the call site in its declaring module's context."""
        owner = self.typed.owner_of(decl.id)
        scheme = owner.scheme(decl.id)
        saved = (self.typed, self.mapping)
        self.typed = owner
        self.mapping = dict(zip(scheme.params, type_args))
        try:
            assert param.default is not None
            return self.expr(param.default)
        finally:
            self.typed, self.mapping = saved

    def builtin_call(self, name: str, call: CallExpr) -> Optional[Value]:
        args = [self.expr(a) for a in call.args]
        types = [self.ty(a) for a in call.args]
        if name in ("print", "println"):
            text = self.to_str(args[0], types[0]) if args else self.lw.string("")
            if name == "println":
                text = self.rt("otter_str_append", text, self.lw.string("\n"))
            self.write_stdout(text)
            return None
        if name == "str":
            return self.to_str(args[0], types[0])
        if name == "len":
            t = types[0]
            if isinstance(t, DictType):
                return self.rt("otter_dict_len", args[0])
            if t == STRING:
                return self.rt("otter_str_len", args[0])
            return self.rt("otter_list_len", args[0])
        if name == "now_ms":
            if self.lw.target == "wasm32":
                return self.host("otter_now_ms")
            return self.rt("otter_time_now_ms")
        if name == "panic":
            self.rt("otter_panic", args[0])
            return None
        raise InternalCompilerError(f"unknown builtin '{name}'", call.span)

    def write_stdout(self, text: Optional[Value]) -> None:
        if self.lw.target == "wasm32":
            data = self.rt("otter_str_data", text)
            size = self.rt("otter_str_bytes", text)
            assert data is not None and size is not None
            self.host("otter_write", data, size)
        else:
            self.rt("otter_print", text)

    def builtin_method(self, qualified: str, callee: MemberExpr, call: CallExpr,
                       ret: str) -> Optional[Value]:
        recv = self.expr(callee.obj)
        args = [self.materialize(self.expr(a)) for a in call.args]
        entry = {
            "list.append": "otter_list_push",
            "list.pop": "otter_list_pop",
            "list.len": "otter_list_len",
            "dict.len": "otter_dict_len",
            "dict.contains": "otter_dict_contains",
            "dict.keys": "otter_dict_keys",
            "string.len": "otter_str_len",
        }.get(qualified)
        if entry is None:
            raise InternalCompilerError(f"unknown builtin method '{qualified}'", callee.span)
        return self.rt(entry, recv, *args, result=ret)

    # -- construction ---------------------------------------------------

    def construct_variant(self, decl: Declaration, enum_t: Type,
                          payload: list[Optional[Value]]) -> Value:
        layout = self.lw.enum_layout(enum_t)
        obj = self.alloc(layout.size, layout.align)
        self.store(obj, 0, self.imm(decl.tag, I32))
        for f, v in zip(layout.variants[decl.tag].fields, payload):
            self.store(obj, f.offset, self.materialize(v))
        return obj

    def struct_init(self, e: StructInit) -> Value:
        t = self.ty(e)
        layout = self.lw.struct_layout(t)
        values = [(f.name, self.expr(f.value)) for f in e.fields]
        obj = self.alloc(layout.size, layout.align)
        for name, v in values:
            self.store(obj, layout.field(name).offset, self.materialize(v))
        return obj

    def comprehension(self, e: Comprehension) -> Optional[Value]:
        is_dict = e.kind == "dict"
        out = self.rt("otter_dict_new") if is_dict else self.rt("otter_list_new", self.imm(0))
        target = self.typed.decl_id(e.target)

        def body(elem: Optional[Value]) -> None:
            if target is not None:
                self.bind(target, elem, self.ty(e.target))
            skip = None
            if e.condition is not None:
                keep, skip = self.label("keep"), self.label("skip")
                self.br(self.expr(e.condition), keep, skip)
                self.start_block(keep)
            if is_dict:
                assert e.key is not None
                k = self.materialize(self.expr(e.key))
                self.rt("otter_dict_set", out, k, self.materialize(self.expr(e.element)))
            else:
                self.rt("otter_list_push", out, self.materialize(self.expr(e.element)))
            if skip is not None:
                self.jmp(skip)
                self.start_block(skip)

        self.loop_over(e.iterable, body)
        return out

    def match_expr(self, e: MatchExpr) -> Optional[Value]:
        t = ir_type(self.ty(e))
        slot = self.new_slot("match", t) if t != VOID else ""
        subject = self.expr(e.subject)
        join = self.label("match.end")

        def arm_value(i: int) -> None:
            arm = e.arms[i]
            assert arm.value is not None
            v = self.expr(arm.value)
            if slot and v is not None:
                self.do(IROpKind.SET, slot, v)
            self.jmp(join)

        self.lower_match(self.typed.match_trees[e.id], subject, self.ty(e.subject), arm_value)
        self.start_block(join)
        return self.value(IROpKind.GET, t, slot) if slot else None

    # -- closures -------------------------------------------------------

    def free_decls(self, node: Node) -> list[int]:
        """Locals referenced inside node but bound outside it, in first-use order."""
        table = self.lw.table
        inner: set[int] = set()
        for n in walk(node):
            if isinstance(n, (BindingPattern, Param, RestPattern)):
                d = self.typed.decl_id(n)
                if d is not None:
                    inner.add(d)
        out: list[int] = []
        for n in walk(node):
            if not isinstance(n, Identifier):
                continue
            d = self.typed.decl_id(n)
            if d is None or d in inner or d in out:
                continue
            decl = table.decl(d)
            if decl.kind in (DeclKind.LOCAL, DeclKind.PARAM) and not decl.is_global:
                out.append(d)
        return out

    def closure(self, node: Node, params: list[Param],
                body: Callable[["FunctionLowerer"], Optional[Value]], ret_t: Type,
                kind: str, param_types: tuple[Type, ...] = ()) -> Value:
        captured = self.free_decls(node)
        name = self.lw.fresh_name(f"{self.fn.name}.{kind}")
        env_fields = [(self.lw.table.decl(d).name, storage_type(self.decl_ty(d)))
                      for d in captured]
        env_layout = self.lw.layout.struct(f"{name}.env", env_fields)

        child = FunctionLowerer(self.lw, self.typed, self.mapping, name, origin=self.fn.origin)
        child.env = Value("%env.0", PTR)
        child.fn.params.append(child.env)
        child.fn.return_type = ir_type(ret_t)
        for d, f in zip(captured, env_layout.fields):
            child.captures[d] = (f.offset, f.type)
        for param, pt in zip(params, param_types):
            decl_id = self.typed.decl_id(param)
            it = ir_type(pt)
            if decl_id is None or it == VOID:
                continue
            v = Value(f"%{param.name}", it)
            child.fn.params.append(v)
            child.bind(decl_id, v, pt)
        child.ret(body(child))
        self.lw.add_function(child.finish())

        if captured:
            env = self.alloc(env_layout.size, env_layout.align)
            for d, f in zip(captured, env_layout.fields):
                self.store(env, f.offset, self.materialize(self.read(d, node)))
        else:
            env = Value("null", PTR)
        ptr = self.lw.layout.pointer_size
        clo = self.alloc(2 * ptr, ptr)
        self.store(clo, 0, self.value(IROpKind.FUNC_REF, PTR, f"@{name}"))
        self.store(clo, ptr, env)
        return clo


class Lowerer:
    """Lowers a checked root module, and whatever it reaches, to one IRModule."""

    def __init__(self, typed: TypedModule, config: Optional[CompilerConfig] = None):
        self.typed = typed
        self.table = typed.table
        self.config = config or CompilerConfig()
        self.target = self.config.target
        self.layout = TargetLayout(self.target)
        self.module = IRModule(name=typed.module, target=self.target)
        self._strings: dict[str, int] = {}
        self._externs: set[str] = set()
        self._imports: set[str] = set()
        self._foreign: dict[str, ExternDecl] = {}
        self._instances: dict[tuple[int, tuple[Type, ...]], str] = {}
        self._pending: deque[tuple[int, tuple[Type, ...], str]] = deque()
        self._structs: dict[str, StructLayout] = {}
        self._enums: dict[str, EnumLayout] = {}
        self._globals: dict[int, IRGlobal] = {}
        self._names: dict[str, int] = {}
        self._thunks: set[str] = set()

    # -------------------------------------------------------------------
    # Entry
    # -------------------------------------------------------------------

    def lower(self) -> IRModule:
        deps = self._dependencies()
        dep_inits = [self._lower_init(dep, []) for dep in deps]
        self.module.init = self._lower_init(self.typed, dep_inits)

        for item in self.typed.program.items:
            if isinstance(item, FunctionDef):
                decl_id = self.typed.decl_id(item)
                if decl_id is not None and not item.type_params:
                    self.instance(decl_id, ())
            elif isinstance(item, StructDef) and not item.type_params:
                for method in item.methods:
                    decl_id = self.typed.decl_id(method)
                    if decl_id is not None and not method.type_params:
                        self.instance(decl_id, ())
        self._drain()

        entry_id = self.typed.resolution.scope.lookup_local(self.config.entry)
        if entry_id is not None:
            entry = self.table.decl(entry_id)
            if entry.kind == DeclKind.FUNCTION and not entry.type_params:
                self.module.entry = self._instances.get((entry_id, ()))

        self.module.strings = sorted(self._strings, key=self._strings.__getitem__)
        self.module.externs = [extern(n) for n in sorted(self._externs)] + \
            [self._foreign[n] for n in sorted(self._foreign)]
        self.module.imports = [host_import(n) for n in sorted(self._imports)]
        logger.info("lowered %s for %s: %d functions, %d instantiations",
                    self.module.name, self.target, len(self.module.functions),
                    len(self._instances))
        return self.module

    def _dependencies(self) -> list[TypedModule]:
        """Imported modules in initialisation order (dependencies first)."""
        order: list[TypedModule] = []
        seen: set[str] = {self.typed.module}

        def visit(typed: TypedModule) -> None:
            for item in typed.program.items:
                if not isinstance(item, UseDecl) or item.module_name in seen:
                    continue
                seen.add(item.module_name)
                info = self.table.get(item.module_name)
                if info is None or info.is_foreign or info.typed is None:
                    continue
                visit(info.typed)
                order.append(info.typed)

        visit(self.typed)
        return order

    def _lower_init(self, typed: TypedModule, deps: list[str]) -> str:
        name = f"{typed.module}.__init__"
        for decl_id in typed.resolution.globals:
            decl = self.table.decl(decl_id)
            t = typed.decl_type(decl_id)
            if ir_type(t) == VOID:
                continue
            g = IRGlobal(decl.qualified_name, ir_type(t), is_root=ir_type(t) == PTR)
            self._globals[decl_id] = g
            self.module.globals.append(g)
        fl = FunctionLowerer(self, typed, {}, name, is_init=True)
        for dep in deps:
            fl.call(dep, VOID)
        for item in typed.program.items:
            if isinstance(item, Stmt):
                fl.stmt(item)
        self.add_function(fl.finish())
        return name

    def _drain(self) -> None:
        while self._pending:
            decl_id, args, name = self._pending.popleft()
            owner = self.typed.owner_of(decl_id)
            decl = self.table.decl(decl_id)
            fn_node = decl.node
            if not isinstance(fn_node, FunctionDef):
                raise InternalCompilerError(f"'{decl.name}' has no function body")
            scheme = owner.scheme(decl_id)
            mapping = dict(zip(scheme.params, args))
            sig = substitute(scheme.type, mapping)
            assert isinstance(sig, FunctionType)
            origin = decl.qualified_name
            if args:
                origin += f"<{', '.join(str(a) for a in args)}>"
            fl = FunctionLowerer(self, owner, mapping, name, origin=origin)
            self.add_function(fl.lower_function(fn_node, sig))

    # -------------------------------------------------------------------
    # Module-level tables
    # -------------------------------------------------------------------

    def add_function(self, fn: IRFunction) -> None:
        self.module.functions.append(fn)

    def fresh_name(self, base: str) -> str:
        n = self._names.get(base, 0)
        self._names[base] = n + 1
        return f"{base}{n}"

    def string(self, text: str) -> Value:
        idx = self._strings.get(text)
        if idx is None:
            idx = len(self._strings)
            self._strings[text] = idx
        return Value(f"$s{idx}", PTR)

    def use_extern(self, name: str) -> None:
        self._externs.add(name)

    def use_import(self, name: str) -> None:
        self._imports.add(name)

    def foreign(self, decl: Declaration, fn_t: FunctionType) -> str:
        name = f"otter_ffi_{decl.module}_{decl.name}"
        if name not in self._foreign:
            self._foreign[name] = ExternDecl(
                name, tuple(ir_type(p) for p in fn_t.params if ir_type(p) != VOID),
                ir_type(fn_t.ret))
        return name

    def global_type(self, decl: Declaration) -> Type:
        return self.typed.decl_type(decl.id)

    def set_global(self, fl: FunctionLowerer, decl: Declaration, v: Optional[Value],
                   initial: bool) -> None:
        g = self._globals.get(decl.id)
        if g is None or v is None:
            return
        if g.is_root and not initial:
            old = fl.value(IROpKind.GLOBAL_GET, PTR, f"@{g.name}")
            fl.rt("otter_remove_root", old)
        fl.do(IROpKind.GLOBAL_SET, f"@{g.name}", v)
        if g.is_root:
            fl.rt("otter_add_root", v)

    # -------------------------------------------------------------------
    # Instantiation
    # -------------------------------------------------------------------

    def mangle(self, t: Type) -> str:
        if isinstance(t, PrimitiveType):
            return t.name
        if isinstance(t, NamedType):
            return self.table.decl(t.decl_id).qualified_name
        if isinstance(t, GenericType):
            decl = self.table.decl(t.decl_id)
            base = decl.name if decl.kind == DeclKind.BUILTIN_TYPE else decl.qualified_name
            return f"{base}<{','.join(self.mangle(a) for a in t.args)}>"
        if isinstance(t, ListType):
            return f"List<{self.mangle(t.elem)}>"
        if isinstance(t, DictType):
            return f"Dict<{self.mangle(t.key)},{self.mangle(t.value)}>"
        if isinstance(t, FunctionType):
            return f"fn({','.join(self.mangle(p) for p in t.params)})->{self.mangle(t.ret)}"
        raise InternalCompilerError(f"cannot mangle non-concrete type {t}")

    def instance(self, decl_id: int, args: tuple[Type, ...]) -> str:
        """Name of the (possibly specialised) function, queueing it on first request."""
        key = (decl_id, args)
        name = self._instances.get(key)
        if name is None:
            decl = self.table.decl(decl_id)
            if decl.parent is not None:
                owner = self.table.decl(decl.parent)
                base = f"{decl.module}.{owner.name}.{decl.name}"
            else:
                base = decl.qualified_name
            name = base + (f"<{','.join(self.mangle(a) for a in args)}>" if args else "")
            self._instances[key] = name
            self._pending.append((decl_id, args, name))
            logger.debug("instantiating %s", name)
        return name

    def thunk(self, target: str, fn_t: FunctionType) -> str:
        """Closure-callable wrapper (env first) that forwards to target."""
        name = f"{target}.thunk"
        if name in self._thunks:
            return name
        self._thunks.add(name)
        fl = FunctionLowerer(self, self.typed, {}, name, origin=target)
        fl.fn.params.append(Value("%env.0", PTR))
        fl.fn.return_type = ir_type(fn_t.ret)
        args = []
        for i, p in enumerate(fn_t.params):
            if ir_type(p) != VOID:
                v = Value(f"%a{i}", ir_type(p))
                fl.fn.params.append(v)
                args.append(v)
        fl.ret(fl.call(target, ir_type(fn_t.ret), *args))
        self.add_function(fl.finish())
        return name

    def variant_thunk(self, decl: Declaration, fn_t: FunctionType) -> str:
        name = f"{self.mangle(fn_t.ret)}.{decl.name}.new"
        if name in self._thunks:
            return name
        self._thunks.add(name)
        fl = FunctionLowerer(self, self.typed, {}, name, origin=decl.qualified_name)
        fl.fn.params.append(Value("%env.0", PTR))
        fl.fn.return_type = PTR
        payload: list[Optional[Value]] = []
        for i, p in enumerate(fn_t.params):
            if ir_type(p) == VOID:
                payload.append(None)
                continue
            v = Value(f"%a{i}", ir_type(p))
            fl.fn.params.append(v)
            payload.append(v)
        fl.ret(fl.construct_variant(decl, fn_t.ret, payload))
        self.add_function(fl.finish())
        return name

    # -------------------------------------------------------------------
    # Layouts
    # -------------------------------------------------------------------

    def _adt_mapping(self, t: Type) -> tuple[Declaration, dict[TypeParam, Type]]:
        if not isinstance(t, (NamedType, GenericType)):
            raise InternalCompilerError(f"expected a struct or enum type, got {t}")
        decl = self.table.decl(t.decl_id)
        params = tuple(TypeParam(p, self.table.decl(p).name) for p in decl.type_params)
        args = t.args if isinstance(t, GenericType) else ()
        return decl, dict(zip(params, args))

    def struct_layout(self, t: Type) -> StructLayout:
        key = self.mangle(t)
        layout = self._structs.get(key)
        if layout is None:
            decl, mapping = self._adt_mapping(t)
            info = self.typed.struct_info(decl.id)
            fields = [(name, storage_type(substitute(ft, mapping)))
                      for name, ft in info.fields.items()]
            layout = self.layout.struct(key, fields)
            self._structs[key] = layout
            self.module.structs.append(layout)
        return layout

    def enum_layout(self, t: Type) -> EnumLayout:
        key = self.mangle(t)
        layout = self._enums.get(key)
        if layout is None:
            decl, mapping = self._adt_mapping(t)
            info = self.typed.enum_info(decl.id)
            variants = [(v.name, [storage_type(substitute(p, mapping)) for p in v.payload])
                        for v in info.variants]
            layout = self.layout.enum(key, variants)
            self._enums[key] = layout
            self.module.enums.append(layout)
        return layout


def lower_module(typed: TypedModule, config: Optional[CompilerConfig] = None) -> IRModule:
    """Lower a checked module (and everything it reaches) to IR."""
    return Lowerer(typed, config).lower()
