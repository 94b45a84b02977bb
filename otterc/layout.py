"""Struct and enum layouts for a target.

Scalar sizes and alignments come from the target's LLVM data layout via
llvmlite; aggregates are laid out in declaration order with natural
alignment. Enums carry an i32 tag at offset 0 followed by one payload slot
sized and aligned for the largest variant.
"""

from __future__ import annotations

import logging
from typing import Sequence

from llvmlite import binding as llvm
from llvmlite import ir as llvm_ir

from otterc.ir import (
    EnumLayout, FieldLayout, StructLayout, VariantLayout, F64, I1, I32, I64, PTR,
)

logger = logging.getLogger(__name__)

DATA_LAYOUTS: dict[str, str] = {
    "native": "e-m:e-p270:32:32-p271:32:32-p272:64:64-i64:64-i128:128-f80:128-n8:16:32:64-S128",
    "wasm32": "e-m:e-p:32:32-p10:8:8-p20:8:8-i64:64-n32:64-S128",
}

TARGETS = tuple(DATA_LAYOUTS)


def _llvm_type(ir_type: str) -> llvm_ir.Type:
    if ir_type == I64:
        return llvm_ir.IntType(64)
    if ir_type == I32:
        return llvm_ir.IntType(32)
    if ir_type == I1:
        # Stored as a byte.
        return llvm_ir.IntType(8)
    if ir_type == F64:
        return llvm_ir.DoubleType()
    if ir_type == PTR:
        return llvm_ir.IntType(8).as_pointer()
    raise ValueError(f"no storage layout for IR type '{ir_type}'")


def _align_up(offset: int, align: int) -> int:
    return (offset + align - 1) // align * align


class TargetLayout:
    """Scalar size/alignment queries for one target, memoised."""

    def __init__(self, target: str = "native"):
        if target not in DATA_LAYOUTS:
            raise ValueError(f"unknown target '{target}' (expected one of {', '.join(TARGETS)})")
        self.target = target
        self._data = llvm.create_target_data(DATA_LAYOUTS[target])
        self._cache: dict[str, tuple[int, int]] = {}

    def scalar(self, ir_type: str) -> tuple[int, int]:
        """(size, alignment) in bytes."""
        cached = self._cache.get(ir_type)
        if cached is None:
            ty = _llvm_type(ir_type)
            cached = (ty.get_abi_size(self._data), ty.get_abi_alignment(self._data))
            self._cache[ir_type] = cached
        return cached

    @property
    def pointer_size(self) -> int:
        return self.scalar(PTR)[0]

    def _fields(self, fields: Sequence[tuple[str, str]], start: int = 0
                ) -> tuple[list[FieldLayout], int, int]:
        out = []
        offset = start
        align = 1
        for name, ir_type in fields:
            size, field_align = self.scalar(ir_type)
            offset = _align_up(offset, field_align)
            out.append(FieldLayout(name, ir_type, offset, size))
            offset += size
            align = max(align, field_align)
        return out, offset, align

    def struct(self, name: str, fields: Sequence[tuple[str, str]]) -> StructLayout:
        laid, end, align = self._fields(fields)
        size = _align_up(max(end, 1), align)
        return StructLayout(name, size, align, laid)

    def enum(self, name: str, variants: Sequence[tuple[str, Sequence[str]]]) -> EnumLayout:
        tag_size, tag_align = self.scalar(I32)
        payload_align = 1
        for _, payload in variants:
            for ir_type in payload:
                payload_align = max(payload_align, self.scalar(ir_type)[1])
        payload_offset = _align_up(tag_size, payload_align)
        payload_size = 0
        laid_variants = []
        for tag, (vname, payload) in enumerate(variants):
            laid, end, _ = self._fields([(str(i), t) for i, t in enumerate(payload)],
                                        start=payload_offset)
            payload_size = max(payload_size, end - payload_offset)
            laid_variants.append(VariantLayout(vname, tag, laid))
        align = max(tag_align, payload_align)
        size = _align_up(payload_offset + payload_size, align)
        logger.debug("enum %s on %s: size %d, payload @%d+%d", name, self.target, size,
                     payload_offset, payload_size)
        return EnumLayout(name, size, align, payload_offset, payload_size, laid_variants)
