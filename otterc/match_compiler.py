"""Otter match compiler — pattern lists to decision trees.

A clause matrix is specialised one test at a time: each row is a list of
(access path, pattern) columns plus the bindings gathered so far. Irrefutable
columns are consumed eagerly (bindings recorded, struct patterns expanded
into their fields); the first remaining column of the first row decides the
next Switch. Every path from the root tests a value at most once per
constructor, and leaves carry the arm index plus where each binding lives.

List lengths are tested with binary `==n` / `>=n` switches. A row survives
the true branch when its own length constraint is compatible with the test
and is expanded when the test implies it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from otterc.ast_nodes import (
    Pattern, WildcardPattern, LiteralPattern, BindingPattern, VariantPattern,
    StructPattern, ListPattern, LetStmt, MatchExpr, MatchStmt,
)
from otterc.errors import InternalCompilerError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Access paths
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PayloadStep:
    """Payload slot `index` of variant `variant` (decl id)."""
    variant: int
    index: int

    def __str__(self) -> str:
        return f".{self.index}"


@dataclass(frozen=True)
class FieldStep:
    name: str

    def __str__(self) -> str:
        return f".{self.name}"


@dataclass(frozen=True)
class IndexStep:
    """Element `index` from the front, or `len - index` when from_end."""
    index: int
    from_end: bool = False

    def __str__(self) -> str:
        return f"[-{self.index}]" if self.from_end else f"[{self.index}]"


@dataclass(frozen=True)
class SliceStep:
    """Elements [start, len - end)."""
    start: int
    end: int

    def __str__(self) -> str:
        return f"[{self.start}:-{self.end}]"


Step = Union[PayloadStep, FieldStep, IndexStep, SliceStep]
Path = tuple[Step, ...]


def path_str(path: Path) -> str:
    return "$" + "".join(str(s) for s in path)


# ---------------------------------------------------------------------------
# Decision trees
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LengthTest:
    op: str  # "==" or ">="
    n: int

    def admits(self, length: int) -> bool:
        return length == self.n if self.op == "==" else length >= self.n

    def __str__(self) -> str:
        return f"len {self.op} {self.n}"


@dataclass
class Leaf:
    arm: int
    # (binding decl id, path of the bound value)
    bindings: list[tuple[int, Path]] = field(default_factory=list)


@dataclass
class Fail:
    pass


@dataclass
class Case:
    # tag switch: variant tag; literal switch: the value; length switch: LengthTest
    test: Any
    tree: "Tree"
    label: str = ""


@dataclass
class Switch:
    path: Path
    kind: str  # "tag" | "literal" | "length"
    cases: list[Case] = field(default_factory=list)
    default: Optional["Tree"] = None


Tree = Union[Leaf, Fail, Switch]


def dump_tree(tree: Tree, indent: int = 0) -> str:
    """Indented text rendering, stable across runs."""
    pad = "  " * indent
    if isinstance(tree, Leaf):
        binds = ", ".join(f"#{d}={path_str(p)}" for d, p in tree.bindings)
        return f"{pad}leaf arm {tree.arm}" + (f" [{binds}]" if binds else "") + "\n"
    if isinstance(tree, Fail):
        return f"{pad}fail\n"
    out = f"{pad}switch {tree.kind} {path_str(tree.path)}\n"
    for case in tree.cases:
        test = str(case.test) if tree.kind == "length" else (case.label or repr(case.test))
        out += f"{pad}  case {test}:\n" + dump_tree(case.tree, indent + 2)
    if tree.default is not None:
        out += f"{pad}  default:\n" + dump_tree(tree.default, indent + 2)
    return out


def tree_size(tree: Tree) -> int:
    if isinstance(tree, Switch):
        n = 1 + sum(tree_size(c.tree) for c in tree.cases)
        if tree.default is not None:
            n += tree_size(tree.default)
        return n
    return 1


# ---------------------------------------------------------------------------
# Compiler
# ---------------------------------------------------------------------------

@dataclass
class _Row:
    columns: list[tuple[Path, Pattern]]
    arm: int
    bindings: list[tuple[int, Path]]


def _length_of(p: ListPattern) -> LengthTest:
    n = len(p.prefix) + len(p.suffix)
    return LengthTest(">=" if p.rest is not None else "==", n)


def _implies(test: LengthTest, want: LengthTest) -> bool:
    """Every length admitted by test is admitted by want."""
    if test.op == "==":
        return want.admits(test.n)
    return want.op == ">=" and test.n >= want.n


def _compatible(test: LengthTest, want: LengthTest) -> bool:
    """Some length satisfies both."""
    if test.op == "==":
        return want.admits(test.n)
    if want.op == "==":
        return want.n >= test.n
    return True


def _compatible_with_negation(test: LengthTest, want: LengthTest) -> bool:
    """Some length fails test and satisfies want."""
    if test.op == "==":
        return want.op == ">=" or want.n != test.n
    return want.n < test.n


class MatchCompiler:
    """Builds decision trees for one module's patterns.

    `decl_of(node)` maps binding/variant pattern nodes to declaration ids and
    `variant_count(variant_decl_id)` gives (tag, number of variants in its enum).
    """

    def __init__(self, decl_of: Callable[[Any], Optional[int]],
                 variant_count: Callable[[int], tuple[int, int]]):
        self.decl_of = decl_of
        self.variant_count = variant_count

    def compile(self, patterns: list[Pattern]) -> Tree:
        rows = [_Row([((), p)], i, []) for i, p in enumerate(patterns)]
        return self._compile(rows)

    # -- row normalisation ----------------------------------------------

    def _normalize(self, row: _Row) -> _Row:
        columns: list[tuple[Path, Pattern]] = []
        bindings = list(row.bindings)
        pending = list(row.columns)
        while pending:
            path, pat = pending.pop(0)
            if isinstance(pat, WildcardPattern):
                continue
            if isinstance(pat, BindingPattern):
                decl = self.decl_of(pat)
                if decl is not None:
                    bindings.append((decl, path))
                continue
            if isinstance(pat, StructPattern):
                expanded = [(path + (FieldStep(fp.name),), fp.pattern) for fp in pat.fields]
                pending[0:0] = expanded
                continue
            columns.append((path, pat))
        return _Row(columns, row.arm, bindings)

    # -- specialisation -------------------------------------------------

    def _compile(self, rows: list[_Row]) -> Tree:
        if not rows:
            return Fail()
        rows = [self._normalize(r) for r in rows]
        first = rows[0]
        if not first.columns:
            return Leaf(first.arm, first.bindings)
        path, pat = first.columns[0]
        if isinstance(pat, VariantPattern):
            return self._switch_tag(rows, path)
        if isinstance(pat, LiteralPattern):
            return self._switch_literal(rows, path)
        if isinstance(pat, ListPattern):
            return self._switch_length(rows, path, _length_of(pat))
        raise InternalCompilerError(f"unhandled pattern {type(pat).__name__} in match")

    @staticmethod
    def _take(row: _Row, path: Path) -> tuple[Optional[Pattern], list[tuple[Path, Pattern]]]:
        for i, (p, pat) in enumerate(row.columns):
            if p == path:
                return pat, row.columns[:i] + row.columns[i + 1:]
        return None, row.columns

    @staticmethod
    def _insert(row: _Row, path: Path, rest: list[tuple[Path, Pattern]],
                new: list[tuple[Path, Pattern]]) -> _Row:
        """Put new columns where the tested column was, keeping left-to-right order."""
        idx = next((i for i, (p, _) in enumerate(row.columns) if p == path), 0)
        return _Row(rest[:idx] + new + rest[idx:], row.arm, row.bindings)

    def _switch_tag(self, rows: list[_Row], path: Path) -> Tree:
        seen: list[int] = []
        names: dict[int, str] = {}
        total = 0
        for row in rows:
            pat, _ = self._take(row, path)
            if isinstance(pat, VariantPattern):
                vid = self.decl_of(pat)
                if vid is None:
                    raise InternalCompilerError("unresolved variant in match", pat.span)
                if vid not in seen:
                    seen.append(vid)
                    names[vid] = pat.name
        cases = []
        for vid in seen:
            tag, total = self.variant_count(vid)
            specialised = []
            for row in rows:
                pat, rest = self._take(row, path)
                if pat is None:
                    specialised.append(row)
                elif isinstance(pat, VariantPattern) and self.decl_of(pat) == vid:
                    sub = [(path + (PayloadStep(vid, i),), a) for i, a in enumerate(pat.args)]
                    specialised.append(self._insert(row, path, rest, sub))
            cases.append(Case(tag, self._compile(specialised), names[vid]))
        cases.sort(key=lambda c: c.test)
        default = None
        if len(seen) < total:
            default = self._compile([r for r in rows if self._take(r, path)[0] is None])
        return Switch(path, "tag", cases, default)

    def _switch_literal(self, rows: list[_Row], path: Path) -> Tree:
        values: list[tuple[str, Any]] = []
        for row in rows:
            pat, _ = self._take(row, path)
            if isinstance(pat, LiteralPattern):
                key = (pat.kind, pat.value)
                if key not in values:
                    values.append(key)
        cases = []
        for kind, value in values:
            specialised = []
            for row in rows:
                pat, rest = self._take(row, path)
                if pat is None:
                    specialised.append(row)
                elif isinstance(pat, LiteralPattern) and (pat.kind, pat.value) == (kind, value):
                    specialised.append(self._insert(row, path, rest, []))
            cases.append(Case(value, self._compile(specialised), repr(value)))
        default = None
        exhausted = values and values[0][0] == "bool" and len(values) == 2
        if not exhausted:
            default = self._compile([r for r in rows if self._take(r, path)[0] is None])
        return Switch(path, "literal", cases, default)

    def _switch_length(self, rows: list[_Row], path: Path, test: LengthTest) -> Tree:
        yes: list[_Row] = []
        no: list[_Row] = []
        for row in rows:
            pat, rest = self._take(row, path)
            if pat is None:
                yes.append(row)
                no.append(row)
                continue
            assert isinstance(pat, ListPattern)
            want = _length_of(pat)
            if _implies(test, want):
                yes.append(self._insert(row, path, rest, self._elements(path, pat)))
            elif _compatible(test, want):
                yes.append(row)
            if _compatible_with_negation(test, want):
                no.append(row)
        return Switch(path, "length", [Case(test, self._compile(yes), str(test))],
                      self._compile(no))

    def _elements(self, path: Path, pat: ListPattern) -> list[tuple[Path, Pattern]]:
        cols: list[tuple[Path, Pattern]] = []
        for i, sub in enumerate(pat.prefix):
            cols.append((path + (IndexStep(i),), sub))
        n_suffix = len(pat.suffix)
        for j, sub in enumerate(pat.suffix):
            cols.append((path + (IndexStep(n_suffix - j, from_end=True),), sub))
        if pat.rest is not None and pat.rest.name is not None:
            # A named rest is a binding over the middle slice.
            binding = BindingPattern(span=pat.rest.span, id=pat.rest.id, name=pat.rest.name)
            cols.append((path + (SliceStep(len(pat.prefix), n_suffix),), binding))
        return cols


# ---------------------------------------------------------------------------
# Reference evaluation
# ---------------------------------------------------------------------------

@dataclass
class VariantValue:
    tag: int
    payload: tuple = ()
    name: str = ""


@dataclass
class StructValue:
    fields: dict = field(default_factory=dict)


def follow(value: Any, path: Path) -> Any:
    for step in path:
        if isinstance(step, PayloadStep):
            value = value.payload[step.index]
        elif isinstance(step, FieldStep):
            value = value.fields[step.name]
        elif isinstance(step, IndexStep):
            value = value[len(value) - step.index] if step.from_end else value[step.index]
        elif isinstance(step, SliceStep):
            value = value[step.start:len(value) - step.end]
        else:
            raise InternalCompilerError(f"unknown access step {step!r}")
    return value


def evaluate(tree: Tree, value: Any) -> Optional[tuple[int, dict[int, Any]]]:
    """Run a decision tree on a plain value; (arm, bindings) or None on failure."""
    while True:
        if isinstance(tree, Leaf):
            return tree.arm, {decl: follow(value, path) for decl, path in tree.bindings}
        if isinstance(tree, Fail):
            return None
        probe = follow(value, tree.path)
        nxt: Optional[Tree] = None
        for case in tree.cases:
            if tree.kind == "tag" and probe.tag == case.test:
                nxt = case.tree
            elif tree.kind == "literal" and probe == case.test and type(probe) is type(case.test):
                nxt = case.tree
            elif tree.kind == "length" and case.test.admits(len(probe)):
                nxt = case.tree
            if nxt is not None:
                break
        if nxt is None:
            nxt = tree.default if tree.default is not None else Fail()
        tree = nxt


# ---------------------------------------------------------------------------
# Module entry
# ---------------------------------------------------------------------------

def compile_match(patterns: list[Pattern], typed: Any) -> Tree:
    """Decision tree for a pattern list, using a TypedModule's bindings."""
    def variant_count(vid: int) -> tuple[int, int]:
        decl = typed.decl(vid)
        return decl.tag, len(typed.enum_info(decl.parent).variants)

    compiler = MatchCompiler(typed.decl_id, variant_count)
    return compiler.compile(patterns)


def compile_module_matches(typed: Any) -> None:
    """Fill typed.match_trees for every match and destructuring let."""
    for node in typed.program.nodes:
        if isinstance(node, (MatchStmt, MatchExpr)):
            typed.match_trees[node.id] = compile_match([a.pattern for a in node.arms], typed)
        elif isinstance(node, LetStmt) and not isinstance(node.pattern, BindingPattern):
            typed.match_trees[node.id] = compile_match([node.pattern], typed)
    logger.debug("compiled %d decision trees for %s", len(typed.match_trees), typed.module)
