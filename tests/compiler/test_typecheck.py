"""Type checker tests — inference, generics, calls, patterns and exhaustiveness."""

import pytest

from otterc.driver import new_module_table, resolve_and_typecheck
from otterc.errors import ErrorKind, InternalCompilerError, Severity
from otterc.parser import parse_source
from otterc.types import BOOL, INT, STRING, UNIT, FunctionType, GenericType, ListType


def check(source):
    table = new_module_table()
    program, diags = parse_source(source)
    assert diags == [], [str(d) for d in diags]
    return resolve_and_typecheck(program, table)


def type_errors(diags):
    return [d for d in diags if d.kind == ErrorKind.TYPE_ERROR and d.is_error]


def global_type(typed, name):
    return typed.decl_type(typed.resolution.scope.lookup_local(name))


def signature(typed, name):
    return typed.scheme(typed.resolution.scope.lookup_local(name)).type


class TestInference:
    def test_add_returns_int(self):
        typed, diags = check("fn add(a: int, b: int) -> int:\n    return a + b\n")
        assert diags == []
        sig = signature(typed, "add")
        assert isinstance(sig, FunctionType)
        assert sig.params == (INT, INT)
        assert sig.ret == INT

    def test_unannotated_function_is_inferred(self):
        typed, diags = check("fn double(x):\n    return x * 2\n")
        assert diags == []
        assert signature(typed, "double") == FunctionType((INT,), INT)

    def test_function_without_return_value_returns_unit(self):
        typed, diags = check("fn hello():\n    println(\"hi\")\n")
        assert diags == []
        assert signature(typed, "hello").ret == UNIT

    def test_list_literal(self):
        typed, diags = check("let xs = [1, 2, 3]\n")
        assert diags == []
        assert global_type(typed, "xs") == ListType(INT)

    def test_string_concatenation_converts_the_other_side(self):
        typed, diags = check('let s = "n=" + 1\n')
        assert diags == []
        assert global_type(typed, "s") == STRING

    def test_range_is_a_list_of_int(self):
        typed, diags = check("let r = 0..10\n")
        assert diags == []
        assert global_type(typed, "r") == ListType(INT)

    def test_comparison_is_bool(self):
        typed, diags = check('let b = "a" < "b"\n')
        assert diags == []
        assert global_type(typed, "b") == BOOL

    def test_empty_list_cannot_be_inferred(self):
        _, diags = check("let xs = []\n")
        assert [d.code for d in type_errors(diags)] == ["cannot-infer"]

    def test_annotation_fixes_empty_list(self):
        typed, diags = check("let xs: List<string> = []\n")
        assert diags == []
        assert global_type(typed, "xs") == ListType(STRING)

    def test_callee_declared_after_its_caller(self):
        typed, diags = check("fn main():\n    let xs = make()\n    println(str(len(xs)))\n"
                             "fn make():\n    return [1, 2]\n")
        assert diags == [], [str(d) for d in diags]
        assert signature(typed, "make").ret == ListType(INT)

    def test_later_function_used_by_a_module_level_let(self):
        typed, diags = check("let n = len(make())\nfn make():\n    return [1, 2]\n")
        assert diags == [], [str(d) for d in diags]
        assert global_type(typed, "n") == INT

    def test_later_method_result_is_a_receiver(self):
        source = ("fn main():\n    let b = Box { n: 1 }\n    println(str(b.twice().n))\n"
                  "struct Box:\n    n: int\n"
                  "    fn twice(self):\n        return Box { n: self.n * 2 }\n")
        _, diags = check(source)
        assert diags == [], [str(d) for d in diags]

    def test_recursive_function_without_return_annotation(self):
        typed, diags = check("fn fact(n: int):\n    if n == 0:\n        return 1\n"
                             "    return n * fact(n - 1)\n")
        assert diags == [], [str(d) for d in diags]
        assert signature(typed, "fact").ret == INT

    def test_body_checked_early_sees_a_later_global(self):
        typed, diags = check("let a = f()\nlet b = 2\nfn f():\n    return b\n")
        assert diags == [], [str(d) for d in diags]
        assert global_type(typed, "a") == INT


class TestGenerics:
    SOURCE = ("fn id<T>(x: T) -> T:\n    return x\n"
              "let a = id(1)\nlet b = id(\"s\")\n")

    def test_each_use_is_instantiated_separately(self):
        typed, diags = check(self.SOURCE)
        assert diags == []
        assert global_type(typed, "a") == INT
        assert global_type(typed, "b") == STRING

    def test_instantiation_is_recorded_on_the_callee(self):
        typed, _ = check(self.SOURCE)
        recorded = sorted(str(args[0]) for args in typed.instantiations.values() if args)
        assert recorded == ["int", "string"]

    def test_generic_enum_payload(self):
        typed, diags = check("let o = Some(3)\n")
        assert diags == []
        t = global_type(typed, "o")
        assert isinstance(t, GenericType) and t.name == "Option"
        assert t.args == (INT,)

    def test_rigid_type_parameter(self):
        _, diags = check("fn bad<T>(x: T) -> int:\n    return x\n")
        assert [d.code for d in type_errors(diags)] == ["return-type"]


class TestErrors:
    def test_let_annotation_mismatch(self):
        _, diags = check('let x: int = "s"\n')
        errs = type_errors(diags)
        assert [d.code for d in errs] == ["let-type"]
        assert errs[0].details["expected_type"] == "int"
        assert errs[0].details["actual_type"] == "string"

    def test_wrong_argument_count(self):
        _, diags = check("fn add(a: int, b: int) -> int:\n    return a + b\nlet x = add(1)\n")
        assert [d.code for d in type_errors(diags)] == ["wrong-argument-count"]

    def test_keyword_arguments_and_defaults(self):
        source = ("fn scale(x: int, by: int = 2) -> int:\n    return x * by\n"
                  "let a = scale(3)\nlet b = scale(3, by=4)\n")
        _, diags = check(source)
        assert diags == []
        _, diags = check(source + "let c = scale(3, factor=4)\n")
        assert [d.code for d in type_errors(diags)] == ["unknown-keyword"]

    def test_operator_on_struct(self):
        _, diags = check("struct P:\n    x: int\nlet a = P { x: 1 }\nlet b = a + a\n")
        assert [d.code for d in type_errors(diags)] == ["operator-type"]

    def test_condition_must_be_bool(self):
        _, diags = check("fn f():\n    if 1:\n        pass\n")
        assert [d.code for d in type_errors(diags)] == ["condition-type"]

    def test_error_type_does_not_cascade(self):
        _, diags = check("let a = missing + 1\nlet b = a * 2\nlet c = b - 1\n")
        assert [d.kind for d in diags] == [ErrorKind.NAME_ERROR]

    def test_struct_fields(self):
        _, diags = check("struct P:\n    x: int\n    y: int\nlet a = P { x: 1 }\n")
        assert [d.code for d in type_errors(diags)] == ["missing-field"]
        _, diags = check("struct P:\n    x: int\nlet a = P { x: 1, z: 2 }\n")
        assert [d.code for d in type_errors(diags)] == ["extra-field"]

    def test_methods(self):
        source = ("struct Counter:\n    n: int\n"
                  "    fn next(self, step: int = 1) -> int:\n        return self.n + step\n"
                  "let c = Counter { n: 1 }\nlet a = c.next()\nlet b = c.next(step=5)\n")
        typed, diags = check(source)
        assert diags == []
        assert global_type(typed, "b") == INT

    def test_foreign_function_without_signature_is_a_compiler_bug(self):
        table = new_module_table()
        info = table.add_foreign_module("mathx", {"hypot": (["float", "float"], "float")})
        table.decl(info.exports["hypot"]).signature = None
        program, _ = parse_source("use mathx\nlet h = mathx.hypot(3.0, 4.0)\n")
        with pytest.raises(InternalCompilerError, match="has no signature"):
            resolve_and_typecheck(program, table)


class TestPatterns:
    def test_option_match_missing_none(self):
        source = ("fn f(o: Option<int>) -> int:\n"
                  "    match o:\n"
                  "        case Some(x):\n"
                  "            return x\n"
                  "    return 0\n")
        _, diags = check(source)
        errs = type_errors(diags)
        assert len(errs) == 1
        assert errs[0].code == "non-exhaustive-match"
        assert "None" in errs[0].message
        assert errs[0].details["missing"] == ["None"]

    def test_exhaustive_option_match(self):
        source = ("fn f(o: Option<int>) -> int:\n"
                  "    match o:\n"
                  "        case Some(x):\n            return x\n"
                  "        case None:\n            return 0\n")
        typed, diags = check(source)
        assert diags == []
        assert typed.match_trees

    def test_irrefutable_struct_pattern_is_a_catch_all(self):
        source = ("struct P:\n    x: int\n"
                  "fn f(p: P) -> int:\n    match p:\n        case P { x }:\n"
                  "            return x\n")
        _, diags = check(source)
        assert diags == []

    def test_unreachable_case_warning(self):
        source = ("fn f(n: int) -> int:\n    match n:\n        case _:\n            return 0\n"
                  "        case 1:\n            return 1\n")
        _, diags = check(source)
        assert [(d.code, d.severity) for d in diags] == [("unreachable-case", Severity.WARNING)]

    def test_refutable_let(self):
        _, diags = check("let o = Some(1)\nlet Some(x) = o\n")
        assert [d.code for d in type_errors(diags)] == ["refutable-pattern"]

    def test_is_none(self):
        typed, diags = check("let o = Some(1)\nlet b = o is None\nlet c = o is not None\n")
        assert diags == []
        assert global_type(typed, "b") == BOOL

    def test_literal_pattern_type(self):
        _, diags = check('fn f(n: int):\n    match n:\n        case "a":\n            pass\n'
                         "        case _:\n            pass\n")
        assert [d.code for d in type_errors(diags)] == ["pattern-type"]


class TestConcurrencyAndClosures:
    def test_spawn_and_await(self):
        source = ("fn work() -> int:\n    return 1\n"
                  "fn main():\n    let t = spawn work()\n    let v = await t\n"
                  "    println(str(v))\n")
        _, diags = check(source)
        assert diags == []

    def test_await_requires_task(self):
        _, diags = check("fn main():\n    let v = await 1\n")
        assert [d.code for d in type_errors(diags)] == ["await-type"]

    @pytest.mark.parametrize("body", ["fn(x: int) -> int: x + 1", "fn(x: int): x * 2"])
    def test_lambda_types(self, body):
        typed, diags = check(f"let f = {body}\nlet y = f(2)\n")
        assert diags == []
        assert global_type(typed, "y") == INT
