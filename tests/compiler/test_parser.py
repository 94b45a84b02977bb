"""Parser tests — AST shapes, precedence, patterns and syntax-error recovery."""

from otterc.ast_nodes import (
    BinaryExpr, CallExpr, Comprehension, EnumDef, ExprStmt, FString, FunctionDef, IfExpr,
    IfStmt, LambdaExpr, LetStmt, ListPattern, MatchExpr, MatchStmt, RangeExpr, StructDef,
    StructInit, StructPattern, UseDecl, VariantPattern, dump_ast,
)
from otterc.errors import ErrorKind
from otterc.parser import parse_source


def parse_ok(source):
    program, diags = parse_source(source)
    assert diags == [], [str(d) for d in diags]
    return program


def first_expr(source):
    program = parse_ok(source)
    stmt = program.items[0]
    assert isinstance(stmt, ExprStmt)
    return stmt.expr


class TestItems:
    def test_function_with_generics_and_defaults(self):
        program = parse_ok("fn pick<T>(a: T, b: T, first: bool = true) -> T:\n"
                           "    return a if first else b\n")
        fn = program.items[0]
        assert isinstance(fn, FunctionDef)
        assert fn.name == "pick"
        assert [tp.name for tp in fn.type_params] == ["T"]
        assert [p.name for p in fn.params] == ["a", "b", "first"]
        assert fn.params[2].default is not None

    def test_struct_with_method(self):
        program = parse_ok("struct Point:\n    x: int\n    y: int\n"
                           "    fn norm(self) -> int:\n        return self.x * self.x\n")
        st = program.items[0]
        assert isinstance(st, StructDef)
        assert [f.name for f in st.fields] == ["x", "y"]
        assert [m.name for m in st.methods] == ["norm"]

    def test_enum_variant_forms(self):
        program = parse_ok("enum Shape:\n    Circle: (float)\n    Rect(float, float)\n"
                           "    Empty\n")
        en = program.items[0]
        assert isinstance(en, EnumDef)
        assert [(v.name, len(v.payload)) for v in en.variants] == [
            ("Circle", 1), ("Rect", 2), ("Empty", 0)]

    def test_use_with_alias(self):
        program = parse_ok("pub use geo.shapes as s\n")
        use = program.items[0]
        assert isinstance(use, UseDecl)
        assert use.module_name == "geo.shapes"
        assert use.name == "s"
        assert use.is_public

    def test_node_ids_index_the_arena(self):
        program = parse_ok("fn f(a: int) -> int:\n    return a + 1\n")
        for i, node in enumerate(program.nodes):
            assert node.id == i
            assert program.node(i) is node


class TestExpressions:
    def test_multiplication_binds_tighter(self):
        e = first_expr("1 + 2 * 3\n")
        assert isinstance(e, BinaryExpr) and e.op == "+"
        assert isinstance(e.right, BinaryExpr) and e.right.op == "*"

    def test_comparison_and_boolean_operators(self):
        e = first_expr("a < b and not c or d\n")
        assert e.op == "or"
        assert e.left.op == "and"
        assert e.left.left.op == "<"

    def test_is_not(self):
        e = first_expr("x is not None\n")
        assert isinstance(e, BinaryExpr) and e.op == "is not"

    def test_range(self):
        e = first_expr("0..n + 1\n")
        assert isinstance(e, RangeExpr)
        assert isinstance(e.end, BinaryExpr)

    def test_conditional_expression(self):
        e = first_expr("a if c else b\n")
        assert isinstance(e, IfExpr)

    def test_call_with_keyword_arguments(self):
        e = first_expr("f(1, scale=2)\n")
        assert isinstance(e, CallExpr)
        assert len(e.args) == 1
        assert [k.name for k in e.kwargs] == ["scale"]

    def test_struct_init_requires_uppercase_name(self):
        e = first_expr("Point { x: 1, y: 2 }\n")
        assert isinstance(e, StructInit)
        assert [f.name for f in e.fields] == ["x", "y"]

    def test_comprehensions(self):
        lst = first_expr("[x * x for x in xs if x > 0]\n")
        assert isinstance(lst, Comprehension) and lst.kind == "list"
        assert lst.condition is not None
        dct = first_expr("{k: 1 for k in ks}\n")
        assert isinstance(dct, Comprehension) and dct.kind == "dict"

    def test_lambda(self):
        program = parse_ok("let inc = fn(x: int) -> int: x + 1\n")
        assert isinstance(program.items[0].value, LambdaExpr)

    def test_fstring(self):
        e = first_expr('f"n={n}"\n')
        assert isinstance(e, FString)
        assert len(e.parts) == 2

    def test_match_expression(self):
        program = parse_ok("let v = match o:\n    case Some(x): x\n    case None: 0\n")
        m = program.items[0].value
        assert isinstance(m, MatchExpr)
        assert len(m.arms) == 2


class TestPatterns:
    def test_list_pattern_with_rest(self):
        program = parse_ok("match xs:\n    case [a, b, ..rest]:\n        pass\n")
        stmt = program.items[0]
        assert isinstance(stmt, MatchStmt)
        pat = stmt.arms[0].pattern
        assert isinstance(pat, ListPattern)
        assert len(pat.prefix) == 2
        assert pat.rest is not None and pat.rest.name == "rest"
        assert pat.suffix == []

    def test_first_and_last(self):
        program = parse_ok("match xs:\n    case [first, .., last]:\n        pass\n")
        pat = program.items[0].arms[0].pattern
        assert pat.rest.name is None
        assert len(pat.suffix) == 1

    def test_struct_and_variant_patterns(self):
        program = parse_ok("match s:\n    case Point { x, y: 0 }:\n        pass\n"
                           "    case Shape.Circle(r):\n        pass\n")
        arms = program.items[0].arms
        assert isinstance(arms[0].pattern, StructPattern)
        assert isinstance(arms[1].pattern, VariantPattern)
        assert arms[1].pattern.path == ["Shape", "Circle"]

    def test_two_rest_elements(self):
        _, diags = parse_source("match xs:\n    case [..a, ..b]:\n        pass\n")
        assert "multiple-rest" in [d.code for d in diags]


class TestSyntaxErrors:
    def test_default_parameter_order(self):
        _, diags = parse_source("fn f(a: int = 1, b: int):\n    pass\n")
        assert len(diags) == 1
        assert diags[0].kind == ErrorKind.SYNTAX_ERROR
        assert diags[0].code == "default-parameter-order"
        assert "'b'" in diags[0].message

    def test_break_outside_loop(self):
        _, diags = parse_source("fn f():\n    break\n")
        assert diags and "outside of a loop" in diags[0].message

    def test_return_outside_function(self):
        _, diags = parse_source("return 1\n")
        assert diags and diags[0].kind == ErrorKind.SYNTAX_ERROR

    def test_missing_block(self):
        _, diags = parse_source("fn f():\npass\n")
        assert diags[0].code == "missing-block"

    def test_recovery_reports_later_errors(self):
        source = "fn f():\n    let = 1\n    let y = 2\n    let = 3\n"
        program, diags = parse_source(source)
        assert len(diags) == 2
        assert program.has_errors
        fn = program.items[0]
        assert any(isinstance(s, LetStmt) for s in fn.body)

    def test_else_branch(self):
        program = parse_ok("if a:\n    pass\nelif b:\n    pass\nelse:\n    pass\n")
        stmt = program.items[0]
        assert isinstance(stmt, IfStmt)
        assert isinstance(stmt.else_body[0], IfStmt)


class TestDump:
    def test_dump_ast_is_deterministic(self):
        source = "fn add(a: int, b: int) -> int:\n    return a + b\n"
        assert dump_ast(parse_ok(source)) == dump_ast(parse_ok(source))
        assert dump_ast(parse_ok(source)).startswith("Program main (<stdin>)")
