"""Otter semantic types.

Frozen dataclasses so types can be compared structurally, hashed and used as
monomorphization cache keys. Named/Generic types refer to their declaration by
id; the name is carried for diagnostics only and excluded from equality.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union


@dataclass(frozen=True)
class PrimitiveType:
    name: str  # "int", "float", "bool", "string", "unit"

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class NamedType:
    """A non-generic struct or enum."""
    decl_id: int
    name: str = field(default="", compare=False)

    def __str__(self) -> str:
        return self.name or f"#{self.decl_id}"


@dataclass(frozen=True)
class GenericType:
    """A generic struct/enum/builtin applied to type arguments."""
    decl_id: int
    args: tuple["Type", ...]
    name: str = field(default="", compare=False)

    def __str__(self) -> str:
        inner = ", ".join(str(a) for a in self.args)
        return f"{self.name or '#' + str(self.decl_id)}<{inner}>"


@dataclass(frozen=True)
class FunctionType:
    params: tuple["Type", ...]
    ret: "Type"

    def __str__(self) -> str:
        params = ", ".join(str(p) for p in self.params)
        return f"fn({params}) -> {self.ret}"


@dataclass(frozen=True)
class TypeVar:
    """A unification variable, owned by one Substitution."""
    id: int

    def __str__(self) -> str:
        return f"?{self.id}"


@dataclass(frozen=True)
class TypeParam:
    """A declared generic parameter; rigid inside its own declaration."""
    decl_id: int
    name: str = field(default="", compare=False)

    def __str__(self) -> str:
        return self.name or f"T#{self.decl_id}"


@dataclass(frozen=True)
class ListType:
    elem: "Type"

    def __str__(self) -> str:
        return f"List<{self.elem}>"


@dataclass(frozen=True)
class DictType:
    key: "Type"
    value: "Type"

    def __str__(self) -> str:
        return f"Dict<{self.key}, {self.value}>"


@dataclass(frozen=True)
class ErrorType:
    """Placeholder after a reported error; unifies with everything."""

    def __str__(self) -> str:
        return "<error>"


Type = Union[PrimitiveType, NamedType, GenericType, FunctionType, TypeVar,
             TypeParam, ListType, DictType, ErrorType]


INT = PrimitiveType("int")
FLOAT = PrimitiveType("float")
BOOL = PrimitiveType("bool")
STRING = PrimitiveType("string")
UNIT = PrimitiveType("unit")
ERROR = ErrorType()

PRIMITIVES: dict[str, PrimitiveType] = {
    "int": INT,
    "float": FLOAT,
    "bool": BOOL,
    "string": STRING,
    "unit": UNIT,
}

NUMERIC = (INT, FLOAT)


@dataclass(frozen=True)
class Scheme:
    """A possibly generic signature: type parameters bound over a type."""
    params: tuple[TypeParam, ...]
    type: Type

    def __str__(self) -> str:
        if not self.params:
            return str(self.type)
        return f"<{', '.join(str(p) for p in self.params)}> {self.type}"


def children(t: Type) -> tuple[Type, ...]:
    if isinstance(t, GenericType):
        return t.args
    if isinstance(t, FunctionType):
        return t.params + (t.ret,)
    if isinstance(t, ListType):
        return (t.elem,)
    if isinstance(t, DictType):
        return (t.key, t.value)
    return ()


def substitute(t: Type, mapping: dict[TypeParam, Type]) -> Type:
    """Replace type parameters according to mapping."""
    if not mapping:
        return t
    if isinstance(t, TypeParam):
        return mapping.get(t, t)
    if isinstance(t, GenericType):
        return GenericType(t.decl_id, tuple(substitute(a, mapping) for a in t.args), t.name)
    if isinstance(t, FunctionType):
        return FunctionType(tuple(substitute(p, mapping) for p in t.params),
                            substitute(t.ret, mapping))
    if isinstance(t, ListType):
        return ListType(substitute(t.elem, mapping))
    if isinstance(t, DictType):
        return DictType(substitute(t.key, mapping), substitute(t.value, mapping))
    return t


def free_vars(t: Type) -> set[int]:
    if isinstance(t, TypeVar):
        return {t.id}
    out: set[int] = set()
    for c in children(t):
        out |= free_vars(c)
    return out


def contains_type_params(t: Type) -> bool:
    if isinstance(t, TypeParam):
        return True
    return any(contains_type_params(c) for c in children(t))


def contains_error(t: Type) -> bool:
    if isinstance(t, ErrorType):
        return True
    return any(contains_error(c) for c in children(t))
