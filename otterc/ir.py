"""Otter IR — typed three-address code in basic blocks.

Target independent apart from the layouts recorded on the module. Every
value is a named temporary, global, string constant or immediate; locals are
slots read and written through `get` and `set`. JSON-serializable, and
`IRModule.dump()` renders a stable text form.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union


class IROpKind(Enum):
    # Constants and addresses
    CONST = "const"
    FUNC_REF = "func_ref"

    # Arithmetic
    ADD = "add"
    SUB = "sub"
    MUL = "mul"
    DIV = "div"
    MOD = "mod"
    NEG = "neg"

    # Comparison
    EQ = "eq"
    NE = "ne"
    LT = "lt"
    GT = "gt"
    LE = "le"
    GE = "ge"

    # Logical
    NOT = "not"

    # Locals and globals
    LOCAL = "local"
    SET = "set"
    GET = "get"
    GLOBAL_GET = "global_get"
    GLOBAL_SET = "global_set"

    # Memory
    LOAD = "load"
    STORE = "store"

    # Calls
    CALL = "call"
    CALL_INDIRECT = "call_indirect"

    # Terminators
    BR = "br"
    JMP = "jmp"
    SWITCH = "switch"
    RET = "ret"
    UNREACHABLE = "unreachable"


TERMINATORS = frozenset({
    IROpKind.BR, IROpKind.JMP, IROpKind.SWITCH, IROpKind.RET, IROpKind.UNREACHABLE,
})

# IR value types
I1 = "i1"
I32 = "i32"
I64 = "i64"
F64 = "f64"
PTR = "ptr"
VOID = "void"


@dataclass(frozen=True)
class Value:
    """A typed operand: temporary (%t3), global (@g), string constant ($s0) or immediate."""
    text: str
    type: str

    def __str__(self) -> str:
        return f"{self.type} {self.text}"

    def to_dict(self) -> dict[str, Any]:
        return {"value": self.text, "type": self.type}


Operand = Union[Value, str]


def _operand_dict(op: Operand) -> Any:
    return op.to_dict() if isinstance(op, Value) else op


@dataclass
class IRInstr:
    op: IROpKind
    dest: Optional[str] = None
    type: str = VOID
    operands: list[Operand] = field(default_factory=list)
    # Switch cases: (constant, label)
    targets: list[tuple[int, str]] = field(default_factory=list)

    @property
    def is_terminator(self) -> bool:
        return self.op in TERMINATORS

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"op": self.op.value, "type": self.type}
        if self.dest is not None:
            d["dest"] = self.dest
        if self.operands:
            d["operands"] = [_operand_dict(o) for o in self.operands]
        if self.targets:
            d["targets"] = [[c, label] for c, label in self.targets]
        return d

    def render(self) -> str:
        ops = ", ".join(str(o) for o in self.operands)
        if self.op == IROpKind.SWITCH:
            cases = " ".join(f"{c} -> {label}" for c, label in self.targets)
            return f"switch {ops} [{cases}]"
        head = f"{self.dest} = " if self.dest is not None else ""
        if self.op in (IROpKind.CALL, IROpKind.CALL_INDIRECT):
            callee, args = self.operands[0], self.operands[1:]
            return f"{head}{self.op.value} {self.type} {callee}({', '.join(str(a) for a in args)})"
        if self.type != VOID or self.dest is not None:
            return f"{head}{self.op.value} {self.type} {ops}".rstrip()
        return f"{self.op.value} {ops}".rstrip()


@dataclass
class IRBlock:
    label: str
    instrs: list[IRInstr] = field(default_factory=list)

    @property
    def terminated(self) -> bool:
        return bool(self.instrs) and self.instrs[-1].is_terminator

    def to_dict(self) -> dict[str, Any]:
        return {"label": self.label, "instrs": [i.to_dict() for i in self.instrs]}


@dataclass
class IRFunction:
    name: str
    params: list[Value] = field(default_factory=list)
    return_type: str = VOID
    blocks: list[IRBlock] = field(default_factory=list)
    # Source-level origin, e.g. "main.add<int>"
    origin: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "origin": self.origin,
            "params": [p.to_dict() for p in self.params],
            "return_type": self.return_type,
            "blocks": [b.to_dict() for b in self.blocks],
        }


@dataclass
class FieldLayout:
    name: str
    type: str
    offset: int
    size: int


@dataclass
class StructLayout:
    name: str
    size: int
    align: int
    fields: list[FieldLayout] = field(default_factory=list)

    def field(self, name: str) -> FieldLayout:
        for f in self.fields:
            if f.name == name:
                return f
        raise KeyError(name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name, "size": self.size, "align": self.align,
            "fields": [{"name": f.name, "type": f.type, "offset": f.offset, "size": f.size}
                       for f in self.fields],
        }


@dataclass
class VariantLayout:
    name: str
    tag: int
    fields: list[FieldLayout] = field(default_factory=list)


@dataclass
class EnumLayout:
    """Tag (i32) at offset 0; payload slot sized to the largest variant."""
    name: str
    size: int
    align: int
    payload_offset: int
    payload_size: int
    variants: list[VariantLayout] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name, "size": self.size, "align": self.align,
            "tag": {"type": I32, "offset": 0},
            "payload": {"offset": self.payload_offset, "size": self.payload_size},
            "variants": [
                {"name": v.name, "tag": v.tag,
                 "fields": [{"type": f.type, "offset": f.offset, "size": f.size}
                            for f in v.fields]}
                for v in self.variants
            ],
        }


@dataclass
class IRGlobal:
    name: str
    type: str
    is_root: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "type": self.type, "root": self.is_root}


@dataclass
class ExternDecl:
    """A runtime entry point or host import: fixed name and signature."""
    name: str
    params: tuple[str, ...]
    result: str
    module: str = ""  # host import module ("env") or "" for runtime symbols

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"name": self.name, "params": list(self.params), "result": self.result}
        if self.module:
            d["module"] = self.module
        return d

    def render(self) -> str:
        where = f"import {self.module}." if self.module else "extern "
        return f"{where}{self.name}({', '.join(self.params)}) -> {self.result}"


@dataclass
class IRModule:
    """Top-level IR module: layouts, globals, constants, externs and functions."""
    name: str = "main"
    target: str = "native"
    structs: list[StructLayout] = field(default_factory=list)
    enums: list[EnumLayout] = field(default_factory=list)
    globals: list[IRGlobal] = field(default_factory=list)
    strings: list[str] = field(default_factory=list)
    externs: list[ExternDecl] = field(default_factory=list)
    imports: list[ExternDecl] = field(default_factory=list)
    functions: list[IRFunction] = field(default_factory=list)
    entry: Optional[str] = None
    init: Optional[str] = None

    def function(self, name: str) -> IRFunction:
        for fn in self.functions:
            if fn.name == name:
                return fn
        raise KeyError(name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "module": self.name,
            "target": self.target,
            "structs": [s.to_dict() for s in self.structs],
            "enums": [e.to_dict() for e in self.enums],
            "globals": [g.to_dict() for g in self.globals],
            "strings": list(self.strings),
            "externs": [e.to_dict() for e in self.externs],
            "imports": [i.to_dict() for i in self.imports],
            "functions": [f.to_dict() for f in self.functions],
            "init": self.init,
            "entry": self.entry,
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def dump(self) -> str:
        lines = [f"module {self.name} target {self.target}"]
        for s in self.structs:
            fields = ", ".join(f"{f.name}: {f.type} @{f.offset}" for f in s.fields)
            lines.append(f"struct {s.name} size {s.size} align {s.align} {{ {fields} }}")
        for e in self.enums:
            lines.append(f"enum {e.name} size {e.size} align {e.align} "
                         f"payload @{e.payload_offset}+{e.payload_size}")
            for v in e.variants:
                fields = ", ".join(f"{f.type} @{f.offset}" for f in v.fields)
                lines.append(f"  variant {v.tag} {v.name} ({fields})")
        for i, text in enumerate(self.strings):
            lines.append(f"string $s{i} = {json.dumps(text)}")
        for g in self.globals:
            lines.append(f"global @{g.name}: {g.type}" + (" root" if g.is_root else ""))
        for ext in self.externs:
            lines.append(ext.render())
        for imp in self.imports:
            lines.append(imp.render())
        if self.init:
            lines.append(f"init @{self.init}")
        if self.entry:
            lines.append(f"entry @{self.entry}")
        for fn in self.functions:
            params = ", ".join(str(p) for p in fn.params)
            lines.append("")
            lines.append(f"fn @{fn.name}({params}) -> {fn.return_type}:")
            for block in fn.blocks:
                lines.append(f"{block.label}:")
                for instr in block.instrs:
                    lines.append(f"    {instr.render()}")
        return "\n".join(lines) + "\n"
