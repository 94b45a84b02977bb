"""Built-in names visible in every module.

Builtin functions and type constructors are declared directly in the module
table's prelude scope. Option is ordinary otter source compiled by the same
pipeline as user code; its exports are then added to the prelude scope, so
a user declaration of the same name shadows it.
"""

from __future__ import annotations

from otterc.symbols import DeclKind, ModuleTable

PRELUDE_MODULE = "prelude"
BUILTIN_MODULE = "builtin"

PRELUDE_SOURCE = """\
pub enum Option<T>:
    Some: (T)
    None
"""

# name -> number of type arguments
BUILTIN_TYPES: dict[str, int] = {
    "List": 1,
    "Dict": 2,
    "Task": 1,
}

BUILTIN_FUNCTIONS = ("print", "println", "len", "str", "now_ms", "panic")


def install_builtins(table: ModuleTable) -> None:
    """Declare builtin functions and type constructors in the prelude scope."""
    for name in BUILTIN_TYPES:
        decl = table.new_decl(DeclKind.BUILTIN_TYPE, name, BUILTIN_MODULE, is_public=True)
        table.prelude_scope.define(name, decl.id)
    for name in BUILTIN_FUNCTIONS:
        decl = table.new_decl(DeclKind.BUILTIN_FUNCTION, name, BUILTIN_MODULE, is_public=True)
        table.prelude_scope.define(name, decl.id)


def builtin_type_id(table: ModuleTable, name: str) -> int:
    decl_id = table.prelude_scope.lookup_local(name)
    if decl_id is None:
        raise KeyError(name)
    return decl_id


def publish_prelude(table: ModuleTable) -> None:
    """Make the compiled prelude module's exports visible to every module."""
    info = table.get(PRELUDE_MODULE)
    if info is None:
        return
    for name, decl_id in info.exports.items():
        table.prelude_scope.define(name, decl_id)
    table.prelude_loaded = True
