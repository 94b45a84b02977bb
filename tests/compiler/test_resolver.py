"""Resolver tests — scopes, shadowing, modules and name errors."""

from otterc.driver import new_module_table, resolve_and_typecheck
from otterc.errors import ErrorKind
from otterc.parser import parse_source
from otterc.symbols import DeclKind


def check(source, modules=None):
    modules = modules or {}
    table = new_module_table(loader=modules.get)
    program, diags = parse_source(source)
    assert diags == [], [str(d) for d in diags]
    typed, diags = resolve_and_typecheck(program, table)
    return typed, diags


def name_errors(diags):
    return [d for d in diags if d.kind == ErrorKind.NAME_ERROR]


class TestScopes:
    def test_locals_and_params_resolve(self):
        typed, diags = check("fn f(a: int) -> int:\n    let b = a\n    return b\n")
        assert diags == []
        kinds = {typed.decl(d).kind for d in typed.resolution.bindings.values()}
        assert DeclKind.PARAM in kinds and DeclKind.LOCAL in kinds

    def test_undefined_symbol_suggests_a_close_name(self):
        _, diags = check("let count = 1\nprintln(str(cont))\n")
        errs = name_errors(diags)
        assert len(errs) == 1
        assert errs[0].code == "undefined-symbol"
        assert "cont" in errs[0].message
        assert errs[0].help == "did you mean 'count'?"

    def test_duplicate_definition_in_same_scope(self):
        _, diags = check("let x = 1\nlet x = 2\n")
        assert [d.code for d in name_errors(diags)] == ["duplicate-definition"]

    def test_shadowing_in_nested_scope_is_allowed(self):
        _, diags = check("fn f(x: int) -> int:\n    if x > 0:\n        let x = 2\n"
                         "        return x\n    return x\n")
        assert diags == []

    def test_functions_can_be_used_before_definition(self):
        _, diags = check("fn a() -> int:\n    return b()\nfn b() -> int:\n    return 1\n")
        assert diags == []

    def test_prelude_is_visible_and_shadowable(self):
        _, diags = check("let o: Option<int> = Some(1)\n")
        assert diags == []
        _, diags = check("enum Option:\n    Nothing\nlet o = Nothing\n")
        assert diags == []

    def test_globals_are_recorded_in_order(self):
        typed, _ = check("let a = 1\nlet b = 2\n")
        names = [typed.decl(d).name for d in typed.resolution.globals]
        assert names == ["a", "b"]


class TestModules:
    GEO = ("pub fn area(w: int, h: int) -> int:\n    return w * h\n"
           "fn hidden() -> int:\n    return 0\n")

    def test_use_exported_function(self):
        _, diags = check("use geo\nlet a = geo.area(2, 3)\n", {"geo": self.GEO})
        assert diags == []

    def test_private_member_is_a_name_error(self):
        _, diags = check("use geo\nlet a = geo.hidden()\n", {"geo": self.GEO})
        errs = name_errors(diags)
        assert errs and "no exported member 'hidden'" in errs[0].message

    def test_alias(self):
        _, diags = check("use geo as g\nlet a = g.area(1, 1)\n", {"geo": self.GEO})
        assert diags == []

    def test_unresolved_module(self):
        _, diags = check("use nowhere\n")
        assert [d.code for d in name_errors(diags)] == ["unresolved-module"]

    def test_circular_modules_are_rejected(self):
        modules = {"a": "use b\n", "b": "use a\n"}
        _, diags = check("use a\n", modules)
        circular = [d for d in diags if d.code == "circular-module"]
        assert len(circular) == 1
        assert "a -> b -> a" in circular[0].message
