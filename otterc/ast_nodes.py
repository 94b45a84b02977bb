"""Otter AST node definitions.

Top-level constructs: use, type, struct, enum, fn, let and expression
statements. Every node carries a source span and an integer id; the parser
registers each node in the Program's arena so later stages attach their
results in side tables keyed by id instead of mutating the tree.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Iterator, Optional, Union

from otterc.errors import SourceSpan


@dataclass
class Node:
    span: Optional[SourceSpan] = None
    id: int = -1


# ---------------------------------------------------------------------------
# Type expressions (in source)
# ---------------------------------------------------------------------------

@dataclass
class TypeExpr(Node):
    pass


@dataclass
class PrimitiveTypeExpr(TypeExpr):
    """int, float, bool, string, unit"""
    name: str = ""


@dataclass
class NamedTypeExpr(TypeExpr):
    """Point  |  geo.Point  |  T"""
    path: list[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return ".".join(self.path)


@dataclass
class GenericTypeExpr(TypeExpr):
    """List<int>  |  Option<T>"""
    base: NamedTypeExpr = field(default_factory=NamedTypeExpr)
    args: list[TypeExpr] = field(default_factory=list)


@dataclass
class FunctionTypeExpr(TypeExpr):
    """fn(int, int) -> int"""
    params: list[TypeExpr] = field(default_factory=list)
    ret: Optional[TypeExpr] = None


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

@dataclass
class Pattern(Node):
    pass


@dataclass
class WildcardPattern(Pattern):
    pass


@dataclass
class LiteralPattern(Pattern):
    value: Any = None
    kind: str = ""


@dataclass
class BindingPattern(Pattern):
    name: str = ""


@dataclass
class VariantPattern(Pattern):
    """Some(x)  |  None  |  Shape.Circle(r)"""
    path: list[str] = field(default_factory=list)
    args: list[Pattern] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.path[-1]


@dataclass
class FieldPattern(Node):
    name: str = ""
    pattern: Pattern = field(default_factory=Pattern)


@dataclass
class StructPattern(Pattern):
    """Point { x, y: py }; omitted fields are not checked."""
    path: list[str] = field(default_factory=list)
    fields: list[FieldPattern] = field(default_factory=list)

    @property
    def name(self) -> str:
        return ".".join(self.path)


@dataclass
class RestPattern(Node):
    """The `..rest` (or bare `..`) element of a list pattern."""
    name: Optional[str] = None


@dataclass
class ListPattern(Pattern):
    prefix: list[Pattern] = field(default_factory=list)
    rest: Optional[RestPattern] = None
    suffix: list[Pattern] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Expressions
# ---------------------------------------------------------------------------

@dataclass
class Expr(Node):
    pass


@dataclass
class Literal(Expr):
    value: Any = None
    kind: str = ""  # "int", "float", "string", "bool"


@dataclass
class Identifier(Expr):
    name: str = ""


@dataclass
class BinaryExpr(Expr):
    op: str = ""
    left: Expr = field(default_factory=Expr)
    right: Expr = field(default_factory=Expr)


@dataclass
class UnaryExpr(Expr):
    op: str = ""
    operand: Expr = field(default_factory=Expr)


@dataclass
class KeywordArg(Node):
    name: str = ""
    value: Expr = field(default_factory=Expr)


@dataclass
class CallExpr(Expr):
    callee: Expr = field(default_factory=Expr)
    args: list[Expr] = field(default_factory=list)
    kwargs: list[KeywordArg] = field(default_factory=list)


@dataclass
class MemberExpr(Expr):
    obj: Expr = field(default_factory=Expr)
    name: str = ""


@dataclass
class IndexExpr(Expr):
    obj: Expr = field(default_factory=Expr)
    index: Expr = field(default_factory=Expr)


@dataclass
class FieldInit(Node):
    name: str = ""
    value: Expr = field(default_factory=Expr)


@dataclass
class StructInit(Expr):
    """Point { x: 1, y: 2 }"""
    path: list[str] = field(default_factory=list)
    fields: list[FieldInit] = field(default_factory=list)

    @property
    def name(self) -> str:
        return ".".join(self.path)


@dataclass
class ListLit(Expr):
    elements: list[Expr] = field(default_factory=list)


@dataclass
class DictEntry(Node):
    key: Expr = field(default_factory=Expr)
    value: Expr = field(default_factory=Expr)


@dataclass
class DictLit(Expr):
    entries: list[DictEntry] = field(default_factory=list)


@dataclass
class Comprehension(Expr):
    """[e for x in xs if c]  |  {k: v for x in xs}"""
    kind: str = "list"
    key: Optional[Expr] = None
    element: Expr = field(default_factory=Expr)
    target: BindingPattern = field(default_factory=BindingPattern)
    iterable: Expr = field(default_factory=Expr)
    condition: Optional[Expr] = None


@dataclass
class RangeExpr(Expr):
    start: Expr = field(default_factory=Expr)
    end: Expr = field(default_factory=Expr)


@dataclass
class IfExpr(Expr):
    condition: Expr = field(default_factory=Expr)
    then_expr: Expr = field(default_factory=Expr)
    else_expr: Expr = field(default_factory=Expr)


@dataclass
class MatchArm(Node):
    """`case pattern:` followed by a block (statement) or an expression."""
    pattern: Pattern = field(default_factory=Pattern)
    body: list[Stmt] = field(default_factory=list)
    value: Optional[Expr] = None


@dataclass
class MatchExpr(Expr):
    subject: Expr = field(default_factory=Expr)
    arms: list[MatchArm] = field(default_factory=list)


@dataclass
class AwaitExpr(Expr):
    operand: Expr = field(default_factory=Expr)


@dataclass
class SpawnExpr(Expr):
    operand: Expr = field(default_factory=Expr)


@dataclass
class Param(Node):
    name: str = ""
    type_expr: Optional[TypeExpr] = None
    default: Optional[Expr] = None


@dataclass
class LambdaExpr(Expr):
    params: list[Param] = field(default_factory=list)
    return_type: Optional[TypeExpr] = None
    body: Expr = field(default_factory=Expr)


@dataclass
class FString(Expr):
    """Interpolated string; literal chunks are string Literals."""
    parts: list[Expr] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Statements
# ---------------------------------------------------------------------------

@dataclass
class Stmt(Node):
    pass


@dataclass
class LetStmt(Stmt):
    pattern: Pattern = field(default_factory=Pattern)
    type_expr: Optional[TypeExpr] = None
    value: Expr = field(default_factory=Expr)
    is_public: bool = False


@dataclass
class AssignStmt(Stmt):
    target: Expr = field(default_factory=Expr)
    value: Expr = field(default_factory=Expr)


@dataclass
class AugAssignStmt(Stmt):
    target: Expr = field(default_factory=Expr)
    op: str = ""
    value: Expr = field(default_factory=Expr)


@dataclass
class ReturnStmt(Stmt):
    value: Optional[Expr] = None


@dataclass
class BreakStmt(Stmt):
    pass


@dataclass
class ContinueStmt(Stmt):
    pass


@dataclass
class PassStmt(Stmt):
    pass


@dataclass
class IfStmt(Stmt):
    """elif chains are nested IfStmts in else_body."""
    condition: Expr = field(default_factory=Expr)
    then_body: list[Stmt] = field(default_factory=list)
    else_body: list[Stmt] = field(default_factory=list)


@dataclass
class WhileStmt(Stmt):
    condition: Expr = field(default_factory=Expr)
    body: list[Stmt] = field(default_factory=list)


@dataclass
class ForStmt(Stmt):
    target: BindingPattern = field(default_factory=BindingPattern)
    iterable: Expr = field(default_factory=Expr)
    body: list[Stmt] = field(default_factory=list)


@dataclass
class MatchStmt(Stmt):
    subject: Expr = field(default_factory=Expr)
    arms: list[MatchArm] = field(default_factory=list)


@dataclass
class ExprStmt(Stmt):
    expr: Expr = field(default_factory=Expr)


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------

@dataclass
class Item(Node):
    name: str = ""
    is_public: bool = False


@dataclass
class TypeParam(Node):
    name: str = ""


@dataclass
class FunctionDef(Item):
    type_params: list[TypeParam] = field(default_factory=list)
    params: list[Param] = field(default_factory=list)
    return_type: Optional[TypeExpr] = None
    body: list[Stmt] = field(default_factory=list)


@dataclass
class FieldDef(Node):
    name: str = ""
    type_expr: TypeExpr = field(default_factory=TypeExpr)


@dataclass
class StructDef(Item):
    type_params: list[TypeParam] = field(default_factory=list)
    fields: list[FieldDef] = field(default_factory=list)
    methods: list[FunctionDef] = field(default_factory=list)


@dataclass
class VariantDef(Node):
    name: str = ""
    payload: list[TypeExpr] = field(default_factory=list)


@dataclass
class EnumDef(Item):
    type_params: list[TypeParam] = field(default_factory=list)
    variants: list[VariantDef] = field(default_factory=list)


@dataclass
class TypeAliasDef(Item):
    type_params: list[TypeParam] = field(default_factory=list)
    target: TypeExpr = field(default_factory=TypeExpr)


@dataclass
class UseDecl(Item):
    """use a.b.c [as x]; `name` holds the bound alias."""
    path: list[str] = field(default_factory=list)

    @property
    def module_name(self) -> str:
        return ".".join(self.path)


TopLevel = Union[Item, Stmt]


@dataclass
class Program:
    items: list[TopLevel] = field(default_factory=list)
    nodes: list[Node] = field(default_factory=list)
    filename: str = "<stdin>"
    module_name: str = "main"
    has_errors: bool = False

    def node(self, node_id: int) -> Node:
        return self.nodes[node_id]


# ---------------------------------------------------------------------------
# Dump
# ---------------------------------------------------------------------------

def dump_ast(program: Program) -> str:
    """Stable indented rendering of the tree (spans omitted, ids kept)."""
    lines = [f"Program {program.module_name} ({program.filename})"]
    for item in program.items:
        _dump_node(item, 1, lines)
    return "\n".join(lines) + "\n"


def _dump_node(node: Node, depth: int, lines: list[str]) -> None:
    pad = "  " * depth
    scalars = []
    children: list[tuple[str, Any]] = []
    for f in fields(node):
        if f.name in ("span", "id"):
            continue
        value = getattr(node, f.name)
        if isinstance(value, Node):
            children.append((f.name, value))
        elif isinstance(value, list) and value and isinstance(value[0], Node):
            children.append((f.name, value))
        elif isinstance(value, list) and not value:
            continue
        elif value is None or value is False or value == "":
            continue
        else:
            scalars.append(f"{f.name}={value!r}")
    head = f"{pad}{type(node).__name__}#{node.id}"
    if scalars:
        head += " " + " ".join(scalars)
    lines.append(head)
    for name, child in children:
        lines.append(f"{pad}  {name}:")
        if isinstance(child, list):
            for c in child:
                _dump_node(c, depth + 2, lines)
        else:
            _dump_node(child, depth + 2, lines)


def iter_children(node: Node) -> Iterator[Node]:
    for f in fields(node):
        if f.name in ("span", "id"):
            continue
        value = getattr(node, f.name)
        if isinstance(value, Node):
            yield value
        elif isinstance(value, list):
            for v in value:
                if isinstance(v, Node):
                    yield v


def walk(node: Node) -> Iterator[Node]:
    """Pre-order traversal of node and its descendants."""
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        stack.extend(reversed(list(iter_children(current))))
