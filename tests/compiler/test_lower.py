"""Lowering tests — IR shape, runtime calls, instantiation and layouts."""

import pytest

from otterc.config import CompilerConfig
from otterc.driver import compile_source, lower, new_module_table, resolve_and_typecheck
from otterc.errors import CompileError
from otterc.ir import IROpKind, PTR, I64, Value
from otterc.layout import TargetLayout
from otterc.parser import parse_source

HELLO = 'fn main():\n    println("Hello, world!")\n'


def compile_ir(source, target="native"):
    result = compile_source(source, config=CompilerConfig(target=target))
    assert result.ok, [str(d) for d in result.diagnostics]
    return result.ir


def instrs(fn):
    return [i for block in fn.blocks for i in block.instrs]


def callees(fn):
    return [i.operands[0] for i in instrs(fn) if i.op == IROpKind.CALL]


class TestHello:
    def test_native_prints_through_runtime(self):
        ir = compile_ir(HELLO)
        assert ir.entry == "main.main"
        assert "@otter_print" in callees(ir.function("main.main"))
        assert "otter_print" in [e.name for e in ir.externs]
        assert ir.imports == []
        assert "Hello, world!" in ir.strings

    def test_wasm32_writes_through_host_import(self):
        ir = compile_ir(HELLO, target="wasm32")
        calls = callees(ir.function("main.main"))
        assert "@otter_write" in calls
        assert "@otter_print" not in calls
        assert [(i.name, i.module) for i in ir.imports] == [("otter_write", "env")]
        assert ir.target == "wasm32"

    def test_dump_is_deterministic(self):
        source = HELLO + "fn id<T>(x: T) -> T:\n    return x\nlet a = id(1)\nlet b = id(\"s\")\n"
        assert compile_ir(source).dump() == compile_ir(source).dump()

    def test_every_block_is_terminated(self):
        source = ("fn classify(n: int) -> string:\n"
                  "    if n < 0:\n        return \"neg\"\n"
                  "    elif n == 0:\n        return \"zero\"\n"
                  "    return \"pos\"\n"
                  "fn main():\n    let i = 0\n    while i < 3:\n        i += 1\n"
                  "        if i == 2:\n            continue\n"
                  "        println(classify(i))\n")
        ir = compile_ir(source)
        for fn in ir.functions:
            for block in fn.blocks:
                assert block.instrs and block.instrs[-1].is_terminator, (fn.name, block.label)


class TestInstantiation:
    SOURCE = ("fn id<T>(x: T) -> T:\n    return x\n"
              "fn main():\n    let a = id(1)\n    let b = id(2)\n    let c = id(\"s\")\n"
              "    println(str(a + b) + c)\n")

    def test_one_copy_per_type_argument(self):
        ir = compile_ir(self.SOURCE)
        names = [fn.name for fn in ir.functions]
        assert names.count("main.id<int>") == 1
        assert names.count("main.id<string>") == 1
        assert "main.id" not in names

    def test_specialised_signature(self):
        ir = compile_ir(self.SOURCE)
        fn = ir.function("main.id<int>")
        assert [p.type for p in fn.params] == [I64]
        assert fn.return_type == I64
        assert ir.function("main.id<string>").return_type == PTR

    def test_methods_are_lowered(self):
        source = ("struct Counter:\n    n: int\n"
                  "    fn get(self) -> int:\n        return self.n\n"
                  "fn main():\n    let c = Counter { n: 2 }\n    println(str(c.get()))\n")
        ir = compile_ir(source)
        assert "main.Counter.get" in [fn.name for fn in ir.functions]
        assert [s.name for s in ir.structs] == ["main.Counter"]


class TestGlobals:
    SOURCE = 'let greeting = "hi"\nlet count = 3\nfn main():\n    println(greeting)\n'

    def test_globals_and_roots(self):
        ir = compile_ir(self.SOURCE)
        globals_ = {g.name: g for g in ir.globals}
        assert globals_["main.greeting"].type == PTR and globals_["main.greeting"].is_root
        assert globals_["main.count"].type == I64 and not globals_["main.count"].is_root

    def test_init_registers_roots(self):
        ir = compile_ir(self.SOURCE)
        assert ir.init == "main.__init__"
        init = ir.function("main.__init__")
        assert callees(init).count("@otter_add_root") == 1
        assert [i.operands[0] for i in instrs(init) if i.op == IROpKind.GLOBAL_SET] == \
            ["@main.greeting", "@main.count"]

    def test_dependency_init_runs_first(self):
        modules = {"config": "pub let limit = 10\n"}
        table = new_module_table(loader=modules.get)
        source = "use config\nfn main():\n    println(str(config.limit))\n"
        result = compile_source(source, module_table=table)
        assert result.ok, [str(d) for d in result.diagnostics]
        init = result.ir.function("main.__init__")
        assert callees(init)[0] == "@config.__init__"
        assert "config.limit" in [g.name for g in result.ir.globals]


class TestClosures:
    def test_lambda_captures_by_value(self):
        source = ("fn main():\n    let k = 3\n    let f = fn(x: int) -> int: x + k\n"
                  "    println(str(f(2)))\n")
        ir = compile_ir(source)
        lam = ir.function("main.main.lambda0")
        assert lam.params[0].text == "%env.0"
        assert [p.text for p in lam.params[1:]] == ["%x"]
        assert any(i.op == IROpKind.LOAD for i in instrs(lam))
        assert any(i.op == IROpKind.CALL_INDIRECT for i in instrs(ir.function("main.main")))
        assert "main.main.lambda0.env" not in [s.name for s in ir.structs]

    def test_function_value_uses_thunk(self):
        source = ("fn inc(x: int) -> int:\n    return x + 1\n"
                  "fn apply(f: fn(int) -> int, v: int) -> int:\n    return f(v)\n"
                  "fn main():\n    println(str(apply(inc, 1)))\n")
        ir = compile_ir(source)
        assert "main.inc.thunk" in [fn.name for fn in ir.functions]

    def test_spawn_submits_a_closure(self):
        source = ("fn work() -> int:\n    return 1\n"
                  "fn main():\n    let t = spawn work()\n    println(str(await t))\n")
        ir = compile_ir(source)
        calls = callees(ir.function("main.main"))
        assert "@otter_task_submit" in calls
        assert "@otter_task_join" in calls


class TestMatches:
    def test_variant_match_switches_on_tag(self):
        source = ("fn get(o: Option<int>) -> int:\n    match o:\n"
                  "        case Some(x):\n            return x\n"
                  "        case None:\n            return 0\n"
                  "fn main():\n    println(str(get(Some(4))))\n")
        ir = compile_ir(source)
        fn = ir.function("main.get")
        switch = [i for i in instrs(fn) if i.op == IROpKind.SWITCH]
        assert len(switch) == 1
        assert sorted(c for c, _ in switch[0].targets) == [0, 1]
        assert [e.name for e in ir.enums] == ["prelude.Option<int>"]

    def test_list_match_tests_length(self):
        source = ("fn head(xs: List<int>) -> int:\n    match xs:\n"
                  "        case [first, ..]:\n            return first\n"
                  "        case _:\n            return 0\n"
                  "fn main():\n    println(str(head([1, 2])))\n")
        ir = compile_ir(source)
        assert "@otter_list_len" in callees(ir.function("main.head"))


class TestCompoundAssignment:
    def test_list_index_is_evaluated_once(self):
        source = ("fn f() -> int:\n    return 0\n"
                  "fn main():\n    let xs = [1, 2]\n    xs[f()] += 1\n")
        calls = callees(compile_ir(source).function("main.main"))
        assert calls.count("@main.f") == 1
        assert calls.count("@otter_list_get") == 1
        assert calls.count("@otter_list_set") == 1
        assert calls.index("@main.f") < calls.index("@otter_list_get") \
            < calls.index("@otter_list_set")

    def test_get_and_set_share_the_element(self):
        source = ("fn f() -> int:\n    return 1\n"
                  "fn main():\n    let xs = [1, 2]\n    xs[f()] *= 3\n")
        fn = compile_ir(source).function("main.main")
        calls = [i for i in instrs(fn) if i.op == IROpKind.CALL]
        get = next(i for i in calls if i.operands[0] == "@otter_list_get")
        put = next(i for i in calls if i.operands[0] == "@otter_list_set")
        assert put.operands[1:3] == get.operands[1:3]

    def test_dict_key_is_evaluated_once(self):
        source = ('fn key() -> string:\n    return "a"\n'
                  'fn main():\n    let d = {"a": 1}\n    d[key()] += 2\n')
        calls = callees(compile_ir(source).function("main.main"))
        assert calls.count("@main.key") == 1
        assert calls.count("@otter_dict_get") == 1
        assert calls.count("@otter_dict_set") == 1

    def test_field_is_loaded_and_stored_at_its_offset(self):
        source = ("struct P:\n    flag: bool\n    x: int\n"
                  "fn make() -> P:\n    return P { flag: true, x: 1 }\n"
                  "fn main():\n    let p = make()\n    p.x += 5\n")
        fn = compile_ir(source).function("main.main")
        assert callees(fn).count("@main.make") == 1
        loads = [i for i in instrs(fn) if i.op == IROpKind.LOAD]
        stores = [i for i in instrs(fn) if i.op == IROpKind.STORE]
        assert [i.operands[1] for i in loads] == [Value("8", I64)]
        assert [i.operands[1] for i in stores] == [Value("8", I64)]
        assert stores[0].operands[0] == loads[0].operands[0]


class TestRefusal:
    def test_lowering_refuses_a_module_with_errors(self):
        program, _ = parse_source('let x: int = "s"\n')
        typed, diags = resolve_and_typecheck(program, new_module_table())
        assert diags
        with pytest.raises(CompileError) as info:
            lower(typed)
        assert info.value.errors[0].code == "let-type"


class TestLayouts:
    def test_native_enum(self):
        layout = TargetLayout("native").enum("Option<int>", [("Some", ["i64"]), ("None", [])])
        assert (layout.size, layout.align, layout.payload_offset) == (16, 8, 8)
        assert [v.tag for v in layout.variants] == [0, 1]
        assert layout.variants[0].fields[0].offset == 8

    def test_wasm32_pointer_payload(self):
        layout = TargetLayout("wasm32").enum("Option<string>", [("Some", ["ptr"]), ("None", [])])
        assert (layout.size, layout.align, layout.payload_offset) == (8, 4, 4)

    def test_struct_padding(self):
        layout = TargetLayout("native").struct("P", [("flag", "i1"), ("n", "i64")])
        assert [(f.name, f.offset, f.size) for f in layout.fields] == [("flag", 0, 1), ("n", 8, 8)]
        assert layout.size == 16

    def test_unknown_target(self):
        with pytest.raises(ValueError):
            TargetLayout("sparc")


class TestForeign:
    def test_foreign_calls_become_externs(self):
        table = new_module_table()
        table.add_foreign_module("mathx", {"hypot": (["float", "float"], "float")})
        source = "use mathx\nfn main():\n    println(str(mathx.hypot(3.0, 4.0)))\n"
        result = compile_source(source, module_table=table)
        assert result.ok, [str(d) for d in result.diagnostics]
        ext = next(e for e in result.ir.externs if e.name == "otter_ffi_mathx_hypot")
        assert ext.params == ("f64", "f64") and ext.result == "f64"
        assert "@otter_ffi_mathx_hypot" in callees(result.ir.function("main.main"))

    def test_unsupported_foreign_type(self):
        table = new_module_table()
        table.add_foreign_module("io", {"read": ([], "List")})
        result = compile_source("use io\nlet r = io.read()\n", module_table=table)
        assert [d.code for d in result.errors] == ["foreign-type"]


class TestIdempotence:
    def test_relowering_the_same_module_is_byte_identical(self):
        source = ("fn id<T>(x: T) -> T:\n    return x\n"
                  "fn main():\n    let o = Some(id(3))\n    match o:\n"
                  "        case Some(v):\n            println(f\"v={v}\")\n"
                  "        case None:\n            pass\n")
        program, _ = parse_source(source)
        typed, diags = resolve_and_typecheck(program, new_module_table())
        assert diags == []
        first, _ = lower(typed)
        second, _ = lower(typed)
        assert first.dump() == second.dump()
        assert first.to_json() == second.to_json()
