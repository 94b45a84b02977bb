"""Match compiler tests — decision tree shape and reference evaluation."""

from otterc.ast_nodes import MatchStmt
from otterc.driver import new_module_table, resolve_and_typecheck
from otterc.match_compiler import (
    Fail, Leaf, Switch, StructValue, VariantValue, compile_match, dump_tree, evaluate,
    tree_size,
)
from otterc.parser import parse_source


def checked(source):
    program, diags = parse_source(source)
    assert diags == []
    typed, diags = resolve_and_typecheck(program, new_module_table())
    assert [d for d in diags if d.is_error] == [], [str(d) for d in diags]
    return typed


def first_match(typed):
    node = next(n for n in typed.program.nodes if isinstance(n, MatchStmt))
    return node, typed.match_trees[node.id]


def run(typed, tree, value):
    result = evaluate(tree, value)
    if result is None:
        return None
    arm, bindings = result
    return arm, {typed.decl(d).name: v for d, v in bindings.items()}


def match_fn(param_type, *cases):
    arms = "".join(f"        case {c}:\n            return {i}\n" for i, c in enumerate(cases))
    return f"fn f(v: {param_type}) -> int:\n    match v:\n{arms}"


def some(tree, payload):
    tag = next(c.test for c in tree.cases if c.label == "Some")
    return VariantValue(tag, (payload,), "Some")


def none(tree):
    tag = next(c.test for c in tree.cases if c.label == "None")
    return VariantValue(tag, (), "None")


class TestListPatterns:
    def test_head_and_rest(self):
        typed = checked(match_fn("List<int>", "[a, b, ..rest]", "_"))
        _, tree = first_match(typed)
        assert run(typed, tree, [1, 2, 3, 4, 5]) == (0, {"a": 1, "b": 2, "rest": [3, 4, 5]})
        assert run(typed, tree, [1, 2]) == (0, {"a": 1, "b": 2, "rest": []})
        assert run(typed, tree, [1]) == (1, {})

    def test_first_and_last(self):
        typed = checked(match_fn("List<int>", "[first, .., last]", "_"))
        _, tree = first_match(typed)
        assert run(typed, tree, [7, 8, 9]) == (0, {"first": 7, "last": 9})
        assert run(typed, tree, [7, 9]) == (0, {"first": 7, "last": 9})
        assert run(typed, tree, []) == (1, {})

    def test_exact_lengths_before_rest(self):
        typed = checked(match_fn("List<int>", "[]", "[x]", "[x, ..]", "_"))
        _, tree = first_match(typed)
        assert run(typed, tree, [])[0] == 0
        assert run(typed, tree, [4]) == (1, {"x": 4})
        assert run(typed, tree, [4, 5, 6]) == (2, {"x": 4})

    def test_literal_elements(self):
        typed = checked(match_fn("List<int>", "[0, y]", "[x, 0]", "_"))
        _, tree = first_match(typed)
        assert run(typed, tree, [0, 3]) == (0, {"y": 3})
        assert run(typed, tree, [3, 0]) == (1, {"x": 3})
        assert run(typed, tree, [3, 3]) == (2, {})


class TestVariantPatterns:
    def test_full_coverage_has_no_default(self):
        typed = checked(match_fn("Option<int>", "Some(x)", "None"))
        _, tree = first_match(typed)
        assert isinstance(tree, Switch) and tree.kind == "tag"
        assert tree.default is None
        assert sorted(c.label for c in tree.cases) == ["None", "Some"]

    def test_partial_coverage_keeps_default(self):
        typed = checked(match_fn("Option<int>", "Some(x)", "_"))
        _, tree = first_match(typed)
        assert isinstance(tree, Switch) and tree.default is not None
        assert [c.label for c in tree.cases] == ["Some"]
        assert run(typed, tree, VariantValue(1, (), "None")) == (1, {})

    def test_nested_literal_payload(self):
        typed = checked(match_fn("Option<int>", "Some(0)", "Some(n)", "None"))
        _, tree = first_match(typed)
        assert run(typed, tree, some(tree, 0)) == (0, {})
        assert run(typed, tree, some(tree, 5)) == (1, {"n": 5})
        assert run(typed, tree, none(tree)) == (2, {})

    def test_payload_tested_once_per_path(self):
        typed = checked(match_fn("Option<Option<int>>", "Some(Some(1))", "Some(Some(x))",
                                 "Some(None)", "None"))
        _, tree = first_match(typed)

        def check(node, tested):
            if isinstance(node, Switch):
                key = (node.path, node.kind)
                assert key not in tested
                for case in node.cases:
                    check(case.tree, tested | {key})
                if node.default is not None:
                    check(node.default, tested | {key})

        check(tree, frozenset())


class TestStructPatterns:
    SOURCE = ("struct Point:\n    x: int\n    y: int\n"
              + match_fn("Point", "Point { x: 0, y }", "Point { x, y: 0 }", "_"))

    def test_fields(self):
        typed = checked(self.SOURCE)
        _, tree = first_match(typed)
        assert run(typed, tree, StructValue({"x": 0, "y": 2})) == (0, {"y": 2})
        assert run(typed, tree, StructValue({"x": 3, "y": 0})) == (1, {"x": 3})
        assert run(typed, tree, StructValue({"x": 3, "y": 3})) == (2, {})


class TestTrees:
    def test_bool_literals_are_exhaustive(self):
        typed = checked(match_fn("bool", "true", "false", "_"))
        node, _ = first_match(typed)
        tree = compile_match([node.arms[0].pattern, node.arms[1].pattern], typed)
        assert isinstance(tree, Switch) and tree.default is None

    def test_wildcard_first_is_a_leaf(self):
        typed = checked(match_fn("int", "n"))
        _, tree = first_match(typed)
        assert isinstance(tree, Leaf) and tree.arm == 0

    def test_missing_value_fails(self):
        typed = checked(match_fn("int", "1", "_"))
        node, _ = first_match(typed)
        tree = compile_match([node.arms[0].pattern], typed)
        assert isinstance(tree.default, Fail)
        assert evaluate(tree, 2) is None

    def test_dump_is_stable(self):
        source = match_fn("Option<int>", "Some(0)", "Some(n)", "None")
        first = dump_tree(first_match(checked(source))[1])
        second = dump_tree(first_match(checked(source))[1])
        assert first == second
        assert first.startswith("switch tag $\n")
        assert "leaf arm 1 [#" in first

    def test_size_counts_nodes(self):
        typed = checked(match_fn("int", "1", "2", "_"))
        _, tree = first_match(typed)
        assert tree_size(tree) == 4
