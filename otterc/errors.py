"""Structured diagnostics for the otter compiler.

Every diagnostic is machine-readable: a kind, a stable code, a primary span
and optional notes. Stages never print; they append to a DiagnosticSink that
the driver owns and returns to its caller.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Iterator, Optional


class ErrorKind(Enum):
    LEXICAL_ERROR = "lexical_error"
    SYNTAX_ERROR = "syntax_error"
    NAME_ERROR = "name_error"
    TYPE_ERROR = "type_error"
    INTERNAL_ERROR = "internal_error"


class Severity(Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class SourceSpan:
    start: int
    end: int
    line: int
    column: int
    end_line: int
    end_column: int
    file: str = "<stdin>"

    def __str__(self) -> str:
        return f"{self.file}:{self.line}:{self.column}"

    def to(self, other: "SourceSpan") -> "SourceSpan":
        """Span covering self through other."""
        return SourceSpan(
            self.start, other.end, self.line, self.column,
            other.end_line, other.end_column, self.file,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "file": self.file,
            "start": self.start,
            "end": self.end,
            "line": self.line,
            "column": self.column,
            "end_line": self.end_line,
            "end_column": self.end_column,
        }


@dataclass
class Note:
    message: str
    span: Optional[SourceSpan] = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"message": self.message}
        if self.span:
            d["span"] = self.span.to_dict()
        return d


@dataclass
class Diagnostic:
    kind: ErrorKind
    message: str
    span: Optional[SourceSpan] = None
    code: str = ""
    severity: Severity = Severity.ERROR
    notes: list[Note] = field(default_factory=list)
    help: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        return self.severity == Severity.ERROR

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "message": self.message,
        }
        if self.code:
            d["code"] = self.code
        if self.span:
            d["span"] = self.span.to_dict()
        if self.notes:
            d["notes"] = [n.to_dict() for n in self.notes]
        if self.help:
            d["help"] = self.help
        if self.details:
            d["details"] = self.details
        return d

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def __str__(self) -> str:
        loc = f" {self.span}" if self.span else ""
        prefix = "" if self.is_error else "warning "
        return f"[{prefix}{self.kind.value}]{loc}: {self.message}"


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

def lexical_error(message: str, span: Optional[SourceSpan] = None,
                  code: str = "lexical") -> Diagnostic:
    return Diagnostic(kind=ErrorKind.LEXICAL_ERROR, message=message, span=span, code=code)


def syntax_error(message: str, span: Optional[SourceSpan] = None,
                 code: str = "unexpected-token") -> Diagnostic:
    return Diagnostic(kind=ErrorKind.SYNTAX_ERROR, message=message, span=span, code=code)


def name_error(name: str, span: Optional[SourceSpan] = None,
               code: str = "undefined-symbol", message: Optional[str] = None,
               help: Optional[str] = None) -> Diagnostic:
    return Diagnostic(
        kind=ErrorKind.NAME_ERROR,
        message=message or f"undefined symbol '{name}'",
        span=span,
        code=code,
        help=help,
        details={"name": name},
    )


def type_error(message: str, span: Optional[SourceSpan] = None,
               code: str = "type-mismatch", expected: Optional[str] = None,
               actual: Optional[str] = None, **details: Any) -> Diagnostic:
    if expected is not None:
        details["expected_type"] = expected
    if actual is not None:
        details["actual_type"] = actual
    return Diagnostic(kind=ErrorKind.TYPE_ERROR, message=message, span=span,
                      code=code, details=details)


def internal_error(message: str, span: Optional[SourceSpan] = None) -> Diagnostic:
    return Diagnostic(kind=ErrorKind.INTERNAL_ERROR, message=message, span=span,
                      code="internal")


def warning(kind: ErrorKind, message: str, span: Optional[SourceSpan] = None,
            code: str = "") -> Diagnostic:
    return Diagnostic(kind=kind, message=message, span=span, code=code,
                      severity=Severity.WARNING)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class CompileError(Exception):
    """Raised when a caller asks for a hard failure on user-facing diagnostics."""

    def __init__(self, errors: "Diagnostic | list[Diagnostic]"):
        if isinstance(errors, Diagnostic):
            errors = [errors]
        self.errors = errors
        super().__init__("; ".join(str(e) for e in errors))

    def to_json(self, indent: int = 2) -> str:
        return json.dumps([e.to_dict() for e in self.errors], indent=indent)


class InternalCompilerError(Exception):
    """A compiler bug. Never recorded in a sink; always halts the pipeline."""

    def __init__(self, message: str, span: Optional[SourceSpan] = None):
        self.diagnostic = internal_error(message, span)
        super().__init__(str(self.diagnostic))


# ---------------------------------------------------------------------------
# Sink
# ---------------------------------------------------------------------------

class DiagnosticSink:
    """Ordered accumulation of diagnostics shared by the stages of one run."""

    def __init__(self, diagnostics: Optional[Iterable[Diagnostic]] = None):
        self._items: list[Diagnostic] = list(diagnostics or [])

    def report(self, diagnostic: Diagnostic) -> Diagnostic:
        if diagnostic.kind == ErrorKind.INTERNAL_ERROR:
            raise InternalCompilerError(diagnostic.message, diagnostic.span)
        self._items.append(diagnostic)
        return diagnostic

    def extend(self, diagnostics: Iterable[Diagnostic]) -> None:
        for d in diagnostics:
            self.report(d)

    @property
    def errors(self) -> list[Diagnostic]:
        return [d for d in self._items if d.is_error]

    @property
    def warnings(self) -> list[Diagnostic]:
        return [d for d in self._items if not d.is_error]

    @property
    def has_errors(self) -> bool:
        return any(d.is_error for d in self._items)

    def __iter__(self) -> Iterator[Diagnostic]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def to_list(self) -> list[Diagnostic]:
        return list(self._items)


# ---------------------------------------------------------------------------
# "Did you mean" suggestions
# ---------------------------------------------------------------------------

def levenshtein(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def find_best_match(target: str, candidates: Iterable[str]) -> Optional[str]:
    """Closest candidate within the edit-distance threshold, ties broken by name."""
    threshold = 1 if len(target) < 3 else 3
    best: Optional[tuple[int, str]] = None
    for name in candidates:
        if name == target:
            continue
        d = levenshtein(target, name)
        if d <= threshold and (best is None or (d, name) < best):
            best = (d, name)
    return best[1] if best else None
