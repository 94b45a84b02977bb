"""Unification over type variables.

The Substitution is the solver state of one type-checking run and is passed
explicitly; nothing here is module-global. Variables are merged with a
union-find (path compression, union by rank); a class representative may be
bound to a non-variable type.
"""

from __future__ import annotations

from typing import Optional

from otterc.types import (
    DictType, ErrorType, FunctionType, GenericType, ListType, NamedType,
    PrimitiveType, Type, TypeParam, TypeVar, children,
)


class UnificationError(Exception):
    def __init__(self, left: Type, right: Type, reason: str = "mismatch"):
        self.left = left
        self.right = right
        self.reason = reason
        super().__init__(f"cannot unify {left} with {right} ({reason})")


class Substitution:
    """Union-find over type-variable ids plus bindings of class representatives."""

    def __init__(self) -> None:
        self._parent: dict[int, int] = {}
        self._rank: dict[int, int] = {}
        self._binding: dict[int, Type] = {}
        self._next = 0

    def fresh(self) -> TypeVar:
        var = TypeVar(self._next)
        self._next += 1
        self._parent[var.id] = var.id
        self._rank[var.id] = 0
        return var

    def find(self, var_id: int) -> int:
        root = var_id
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[var_id] != root:
            self._parent[var_id], var_id = root, self._parent[var_id]
        return root

    def shallow(self, t: Type) -> Type:
        """Follow a variable to its binding, or to its class representative."""
        if isinstance(t, TypeVar):
            root = self.find(t.id)
            bound = self._binding.get(root)
            if bound is not None:
                return self.shallow(bound)
            return TypeVar(root)
        return t

    def resolve(self, t: Type) -> Type:
        """Apply the substitution all the way down."""
        t = self.shallow(t)
        if isinstance(t, GenericType):
            return GenericType(t.decl_id, tuple(self.resolve(a) for a in t.args), t.name)
        if isinstance(t, FunctionType):
            return FunctionType(tuple(self.resolve(p) for p in t.params), self.resolve(t.ret))
        if isinstance(t, ListType):
            return ListType(self.resolve(t.elem))
        if isinstance(t, DictType):
            return DictType(self.resolve(t.key), self.resolve(t.value))
        return t

    def occurs(self, var_id: int, t: Type) -> bool:
        t = self.shallow(t)
        if isinstance(t, TypeVar):
            return self.find(t.id) == var_id
        return any(self.occurs(var_id, c) for c in children(t))

    def _bind(self, var: TypeVar, t: Type) -> None:
        root = self.find(var.id)
        if self.occurs(root, t):
            raise UnificationError(var, self.resolve(t), "infinite type")
        self._binding[root] = t

    def _union(self, a: int, b: int) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return
        if self._rank[ra] < self._rank[rb]:
            ra, rb = rb, ra
        self._parent[rb] = ra
        if self._rank[ra] == self._rank[rb]:
            self._rank[ra] += 1

    def unify(self, left: Type, right: Type) -> None:
        a = self.shallow(left)
        b = self.shallow(right)

        if isinstance(a, ErrorType) or isinstance(b, ErrorType):
            return
        if isinstance(a, TypeVar) and isinstance(b, TypeVar):
            self._union(a.id, b.id)
            return
        if isinstance(a, TypeVar):
            self._bind(a, b)
            return
        if isinstance(b, TypeVar):
            self._bind(b, a)
            return

        if isinstance(a, PrimitiveType) and isinstance(b, PrimitiveType):
            if a.name != b.name:
                raise UnificationError(a, b)
            return
        if isinstance(a, NamedType) and isinstance(b, NamedType):
            if a.decl_id != b.decl_id:
                raise UnificationError(a, b)
            return
        if isinstance(a, TypeParam) and isinstance(b, TypeParam):
            if a.decl_id != b.decl_id:
                raise UnificationError(a, b, "distinct type parameters")
            return
        if isinstance(a, GenericType) and isinstance(b, GenericType):
            if a.decl_id != b.decl_id or len(a.args) != len(b.args):
                raise UnificationError(a, b)
            for x, y in zip(a.args, b.args):
                self._unify_inner(x, y, left, right)
            return
        if isinstance(a, FunctionType) and isinstance(b, FunctionType):
            if len(a.params) != len(b.params):
                raise UnificationError(a, b, "arity")
            for x, y in zip(a.params, b.params):
                self._unify_inner(x, y, left, right)
            self._unify_inner(a.ret, b.ret, left, right)
            return
        if isinstance(a, ListType) and isinstance(b, ListType):
            self._unify_inner(a.elem, b.elem, left, right)
            return
        if isinstance(a, DictType) and isinstance(b, DictType):
            self._unify_inner(a.key, b.key, left, right)
            self._unify_inner(a.value, b.value, left, right)
            return
        raise UnificationError(a, b)

    def _unify_inner(self, x: Type, y: Type, left: Type, right: Type) -> None:
        """Unify components; report failures against the outer types."""
        try:
            self.unify(x, y)
        except UnificationError as e:
            raise UnificationError(self.resolve(left), self.resolve(right), e.reason) from None

    def try_unify(self, left: Type, right: Type) -> Optional[UnificationError]:
        try:
            self.unify(left, right)
        except UnificationError as e:
            return e
        return None
