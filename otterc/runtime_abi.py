"""Runtime entry points and host imports consumed by lowered code.

Names and signatures are fixed; implementations live in the external
runtime. `any` marks a word-sized operand or result whose concrete IR type is
given by the calling instruction.
"""

from __future__ import annotations

from otterc.ir import ExternDecl, I1, I64, PTR, VOID

ANY = "any"

RUNTIME_ENTRY_POINTS: dict[str, tuple[tuple[str, ...], str]] = {
    # memory
    "otter_alloc": ((I64, I64), PTR),
    "otter_add_root": ((PTR,), VOID),
    "otter_remove_root": ((PTR,), VOID),
    # tasks
    "otter_task_submit": ((PTR,), PTR),
    "otter_task_join": ((PTR,), ANY),
    # strings and formatting
    "otter_to_string": ((ANY,), PTR),
    "otter_str_append": ((PTR, PTR), PTR),
    "otter_str_eq": ((PTR, PTR), I1),
    "otter_str_cmp": ((PTR, PTR), I64),
    "otter_str_len": ((PTR,), I64),
    "otter_str_get": ((PTR, I64), PTR),
    "otter_str_chars": ((PTR,), PTR),
    "otter_str_data": ((PTR,), PTR),
    "otter_str_bytes": ((PTR,), I64),
    "otter_value_eq": ((PTR, PTR), I1),
    # io
    "otter_print": ((PTR,), VOID),
    "otter_time_now_ms": ((), I64),
    "otter_panic": ((PTR,), VOID),
    # lists
    "otter_list_new": ((I64,), PTR),
    "otter_list_push": ((PTR, ANY), VOID),
    "otter_list_get": ((PTR, I64), ANY),
    "otter_list_set": ((PTR, I64, ANY), VOID),
    "otter_list_len": ((PTR,), I64),
    "otter_list_pop": ((PTR,), ANY),
    "otter_list_slice": ((PTR, I64, I64), PTR),
    "otter_range": ((I64, I64), PTR),
    # dicts
    "otter_dict_new": ((), PTR),
    "otter_dict_set": ((PTR, ANY, ANY), VOID),
    "otter_dict_get": ((PTR, ANY), ANY),
    "otter_dict_len": ((PTR,), I64),
    "otter_dict_contains": ((PTR, ANY), I1),
    "otter_dict_keys": ((PTR,), PTR),
}

HOST_IMPORT_MODULE = "env"

# Freestanding wasm32: stdout writes and the clock go through the host.
WASM_HOST_IMPORTS: dict[str, tuple[tuple[str, ...], str]] = {
    "otter_write": ((PTR, I64), VOID),
    "otter_now_ms": ((), I64),
}


def extern(name: str) -> ExternDecl:
    params, result = RUNTIME_ENTRY_POINTS[name]
    return ExternDecl(name, params, result)


def host_import(name: str) -> ExternDecl:
    params, result = WASM_HOST_IMPORTS[name]
    return ExternDecl(name, params, result, module=HOST_IMPORT_MODULE)


def is_runtime_symbol(name: str) -> bool:
    return name in RUNTIME_ENTRY_POINTS or name in WASM_HOST_IMPORTS
