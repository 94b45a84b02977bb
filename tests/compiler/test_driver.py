"""Driver tests — whole-pipeline results and diagnostic policy."""

import json

import pytest

from otterc import CompileError, compile_source
from otterc.config import CompilerConfig
from otterc.driver import new_module_table, parse, tokenize
from otterc.errors import ErrorKind, Severity

UNREACHABLE = ("fn f(n: int) -> int:\n    match n:\n        case _:\n            return 0\n"
               "        case 1:\n            return 1\n"
               "fn main():\n    println(str(f(1)))\n")


class TestCompileSource:
    def test_success(self):
        result = compile_source('fn main():\n    println("hi")\n')
        assert result.ok
        assert result.errors == [] and result.warnings == []
        assert result.tokens[-1].type.name == "EOF"
        assert result.ir is not None and result.ir.entry == "main.main"

    def test_errors_from_every_front_stage_are_reported_together(self):
        result = compile_source("let a = 1 +\nlet b = missing\n")
        kinds = {d.kind for d in result.errors}
        assert ErrorKind.SYNTAX_ERROR in kinds
        assert ErrorKind.NAME_ERROR in kinds
        assert result.ir is None and not result.ok

    def test_strict_raises(self):
        with pytest.raises(CompileError) as info:
            compile_source("let x = missing\n", strict=True)
        assert info.value.errors[0].code == "undefined-symbol"
        assert json.loads(info.value.to_json())[0]["code"] == "undefined-symbol"

    def test_warnings_do_not_block_lowering(self):
        result = compile_source(UNREACHABLE)
        assert result.ok
        assert [d.code for d in result.warnings] == ["unreachable-case"]

    def test_to_dict(self):
        data = compile_source("let x = missing\n").to_dict()
        assert data["ok"] is False
        assert data["ir"] is None
        assert data["diagnostics"][0]["kind"] == "name_error"

    def test_module_name_prefixes_symbols(self):
        result = compile_source('fn main():\n    println("hi")\n', module_name="app")
        assert result.ir.entry == "app.main"


class TestPolicy:
    def test_warnings_as_errors(self):
        result = compile_source(UNREACHABLE, config=CompilerConfig(warnings_as_errors=True))
        assert not result.ok
        assert [(d.code, d.severity) for d in result.errors] == \
            [("unreachable-case", Severity.ERROR)]

    def test_max_errors(self):
        source = "let a = m1\nlet b = m2\nlet c = m3\n"
        assert len(compile_source(source).errors) == 3
        limited = compile_source(source, config=CompilerConfig(max_errors=2))
        assert len(limited.errors) == 2

    def test_without_prelude(self):
        config = CompilerConfig(prelude=False)
        table = new_module_table(config=config)
        result = compile_source("let o = Some(1)\n", module_table=table, config=config)
        assert [d.code for d in result.errors] == ["undefined-symbol"]


class TestModules:
    def test_dependency_errors_are_reported(self):
        table = new_module_table(loader={"broken": "pub let x: int = \"s\"\n"}.get)
        result = compile_source("use broken\n", module_table=table)
        assert [d.code for d in result.errors] == ["let-type"]
        assert result.errors[0].span.file == "<module broken>"

    def test_table_is_reused_across_compilations(self):
        table = new_module_table(loader={"util": "pub fn two() -> int:\n    return 2\n"}.get)
        source = "use util\nfn main():\n    println(str(util.two()))\n"
        first = compile_source(source, module_table=table, module_name="a")
        second = compile_source(source, module_table=table, module_name="b")
        assert first.ok and second.ok
        assert "util.two" in [fn.name for fn in second.ir.functions]


class TestStages:
    def test_stage_functions(self):
        tokens, diags = tokenize("let x = 1\n")
        assert diags == []
        program, diags = parse(tokens)
        assert diags == [] and len(program.items) == 1
