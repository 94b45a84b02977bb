"""Declarations, lexical scopes and the per-build module table.

Declarations live in one arena owned by the ModuleTable and are referenced by
integer id everywhere after resolution. Scopes map names to those ids and
chain to their parent; lookup walks outward so inner scopes shadow outer ones.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterator, Optional

from otterc.ast_nodes import Node, Program
from otterc.errors import SourceSpan

logger = logging.getLogger(__name__)


class DeclKind(Enum):
    FUNCTION = "function"
    STRUCT = "struct"
    ENUM = "enum"
    VARIANT = "variant"
    TYPE_ALIAS = "type_alias"
    TYPE_PARAM = "type_param"
    LOCAL = "local"
    PARAM = "param"
    MODULE = "module"
    BUILTIN_FUNCTION = "builtin_function"
    BUILTIN_TYPE = "builtin_type"
    FOREIGN_FUNCTION = "foreign_function"


TYPE_KINDS = frozenset({
    DeclKind.STRUCT, DeclKind.ENUM, DeclKind.TYPE_ALIAS,
    DeclKind.TYPE_PARAM, DeclKind.BUILTIN_TYPE,
})

VALUE_KINDS = frozenset({
    DeclKind.FUNCTION, DeclKind.VARIANT, DeclKind.LOCAL, DeclKind.PARAM,
    DeclKind.BUILTIN_FUNCTION, DeclKind.FOREIGN_FUNCTION,
})


@dataclass
class Declaration:
    id: int
    kind: DeclKind
    name: str
    module: str
    span: Optional[SourceSpan] = None
    node: Optional[Node] = None
    # Owning struct (methods, self), enum (variants) or generic item (type params).
    parent: Optional[int] = None
    is_public: bool = False
    # Variant discriminant.
    tag: int = 0
    # Struct methods / enum variants by name.
    members: dict[str, int] = field(default_factory=dict)
    type_params: list[int] = field(default_factory=list)
    # Module declarations: the module they name.
    target_module: str = ""
    # Foreign functions: (param type names, result type name).
    signature: Optional[tuple[tuple[str, ...], str]] = None
    # Module-level let bindings.
    is_global: bool = False

    @property
    def qualified_name(self) -> str:
        return f"{self.module}.{self.name}"

    def __repr__(self) -> str:
        return f"Declaration(#{self.id} {self.kind.value} {self.qualified_name})"


class Scope:
    """A lexical scope: name -> declaration id, chained to a parent."""

    def __init__(self, parent: Optional["Scope"] = None, kind: str = "block"):
        self.parent = parent
        self.kind = kind
        self.names: dict[str, int] = {}

    def define(self, name: str, decl_id: int) -> Optional[int]:
        """Bind name here. Returns the existing id when already bound in this scope."""
        existing = self.names.get(name)
        if existing is not None:
            return existing
        self.names[name] = decl_id
        return None

    def lookup(self, name: str) -> Optional[int]:
        scope: Optional[Scope] = self
        while scope is not None:
            if name in scope.names:
                return scope.names[name]
            scope = scope.parent
        return None

    def lookup_local(self, name: str) -> Optional[int]:
        return self.names.get(name)

    def visible_names(self) -> Iterator[str]:
        scope: Optional[Scope] = self
        seen: set[str] = set()
        while scope is not None:
            for name in scope.names:
                if name not in seen:
                    seen.add(name)
                    yield name
            scope = scope.parent

    def child(self, kind: str = "block") -> "Scope":
        return Scope(parent=self, kind=kind)


@dataclass
class ModuleInfo:
    name: str
    filename: str = "<stdin>"
    scope: Optional[Scope] = None
    exports: dict[str, int] = field(default_factory=dict)
    program: Optional[Program] = None
    resolution: Any = None
    typed: Any = None
    is_foreign: bool = False


# Compiles a module's source through the front end and registers it.
ModuleCompiler = Callable[["ModuleTable", str, str], Optional[ModuleInfo]]


class ModuleTable:
    """Everything one build shares across modules.

    Owns the declaration arena, the builtin/prelude scope, checked modules,
    foreign (FFI bridge) modules and the stack of modules being compiled,
    which is how circular `use` chains are detected.
    """

    def __init__(self, loader: Optional[Callable[[str], Optional[str]]] = None,
                 compiler: Optional[ModuleCompiler] = None):
        self.decls: list[Declaration] = []
        self.modules: dict[str, ModuleInfo] = {}
        self.loader = loader
        self.compiler = compiler
        self.in_progress: list[str] = []
        self.prelude_scope = Scope(kind="prelude")
        self.prelude_loaded = False

    # -------------------------------------------------------------------
    # Declaration arena
    # -------------------------------------------------------------------

    def new_decl(self, kind: DeclKind, name: str, module: str, **kwargs: Any) -> Declaration:
        decl = Declaration(id=len(self.decls), kind=kind, name=name, module=module, **kwargs)
        self.decls.append(decl)
        return decl

    def decl(self, decl_id: int) -> Declaration:
        return self.decls[decl_id]

    # -------------------------------------------------------------------
    # Modules
    # -------------------------------------------------------------------

    def get(self, name: str) -> Optional[ModuleInfo]:
        return self.modules.get(name)

    def register(self, info: ModuleInfo) -> None:
        self.modules[info.name] = info

    def begin(self, name: str) -> None:
        self.in_progress.append(name)

    def finish(self, name: str) -> None:
        if self.in_progress and self.in_progress[-1] == name:
            self.in_progress.pop()
        elif name in self.in_progress:
            self.in_progress.remove(name)

    def cycle_through(self, name: str) -> Optional[list[str]]:
        """The dependency chain name -> ... -> name when name is still being compiled."""
        if name not in self.in_progress:
            return None
        idx = self.in_progress.index(name)
        return self.in_progress[idx:] + [name]

    def load(self, name: str) -> Optional[ModuleInfo]:
        """Find a module, compiling it through the loader when it is not known yet."""
        info = self.modules.get(name)
        if info is not None:
            return info
        if self.loader is None or self.compiler is None:
            return None
        source = self.loader(name)
        if source is None:
            return None
        logger.debug("compiling dependency %s", name)
        return self.compiler(self, name, source)

    def add_foreign_module(self, name: str,
                           functions: dict[str, tuple[list[str], str]]) -> ModuleInfo:
        """Register an FFI bridge module from its declared (params, result) per function."""
        info = ModuleInfo(name=name, filename=f"<foreign {name}>", is_foreign=True)
        for fn_name in sorted(functions):
            params, result = functions[fn_name]
            decl = self.new_decl(DeclKind.FOREIGN_FUNCTION, fn_name, name,
                                 is_public=True,
                                 signature=(tuple(params), result))
            info.exports[fn_name] = decl.id
        self.register(info)
        return info
