"""Otter — compiler front and middle end for the Otter language."""

__version__ = "0.1.0"

from otterc.driver import (  # noqa: E402
    CompilationResult,
    compile_source,
    lower,
    new_module_table,
    parse,
    resolve_and_typecheck,
    tokenize,
)
from otterc.config import CompilerConfig, load_config  # noqa: E402
from otterc.errors import CompileError, Diagnostic, InternalCompilerError  # noqa: E402

__all__ = [
    "CompilationResult",
    "CompileError",
    "CompilerConfig",
    "Diagnostic",
    "InternalCompilerError",
    "compile_source",
    "load_config",
    "lower",
    "new_module_table",
    "parse",
    "resolve_and_typecheck",
    "tokenize",
]
