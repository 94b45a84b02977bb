"""Otter Driver — the stage-by-stage API consumed by command-line front ends.

Each stage takes the previous stage's output and returns its own result
together with the diagnostics it produced:

    tokenize(text)                        -> (tokens, diagnostics)
    parse(tokens)                         -> (program, diagnostics)
    resolve_and_typecheck(program, table) -> (typed module, diagnostics)
    lower(typed)                          -> (IR module, diagnostics)

Resolution and checking still run after parse errors so that several
problems are reported in one pass; lowering refuses any module with an
error-severity diagnostic upstream.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from otterc import lexer, parser
from otterc.ast_nodes import Node, Program
from otterc.config import CompilerConfig
from otterc.errors import CompileError, Diagnostic, DiagnosticSink, Severity
from otterc.ir import IRModule
from otterc.lexer import Token
from otterc.match_compiler import compile_module_matches
from otterc.pass1_check import TypedModule, typecheck
from otterc.pass2_lower import lower_module
from otterc.prelude import PRELUDE_MODULE, PRELUDE_SOURCE, install_builtins, publish_prelude
from otterc.resolver import resolve
from otterc.symbols import ModuleInfo, ModuleTable

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------

def tokenize(text: str, filename: str = "<stdin>") -> tuple[list[Token], list[Diagnostic]]:
    return lexer.tokenize(text, filename)


def parse(tokens: list[Token], filename: str = "<stdin>",
          module_name: str = "main") -> tuple[Program, list[Diagnostic]]:
    return parser.parse(tokens, filename, module_name)


def new_module_table(loader: Optional[Callable[[str], Optional[str]]] = None,
                     config: Optional[CompilerConfig] = None) -> ModuleTable:
    """A module table with builtins installed and, unless disabled, the prelude."""
    table = ModuleTable(loader=loader)
    _prepare_table(table, config or CompilerConfig())
    return table


def resolve_and_typecheck(program: Program, module_table: Optional[ModuleTable] = None,
                          config: Optional[CompilerConfig] = None
                          ) -> tuple[TypedModule, list[Diagnostic]]:
    """Resolve names and check types for one module.

    Modules reached through `use` are compiled through the table's loader
    and their diagnostics are reported with this module's. Decision trees
    are built only when no error was recorded.
    """
    config = config or CompilerConfig()
    table = module_table if module_table is not None else ModuleTable()
    _prepare_table(table, config)
    sink = DiagnosticSink()
    typed = _check_program(program, table, sink)
    diagnostics = _apply_policy(sink.to_list(), config)
    typed.diagnostics = diagnostics
    typed.has_errors = program.has_errors or any(d.is_error for d in diagnostics)
    if not typed.has_errors:
        compile_module_matches(typed)
    return typed, diagnostics


def lower(typed: TypedModule, config: Optional[CompilerConfig] = None
          ) -> tuple[IRModule, list[Diagnostic]]:
    """Lower a checked module; refuses when any error was reported upstream."""
    if typed.has_errors:
        errors = [d for d in typed.diagnostics if d.is_error]
        logger.debug("refusing to lower %s: %d error(s) upstream", typed.module, len(errors))
        raise CompileError(errors)
    return lower_module(typed, config), []


# ---------------------------------------------------------------------------
# Whole pipeline
# ---------------------------------------------------------------------------

@dataclass
class CompilationResult:
    tokens: list[Token] = field(default_factory=list)
    program: Optional[Program] = None
    typed: Optional[TypedModule] = None
    ir: Optional[IRModule] = None
    diagnostics: list[Diagnostic] = field(default_factory=list)

    @property
    def errors(self) -> list[Diagnostic]:
        return [d for d in self.diagnostics if d.is_error]

    @property
    def warnings(self) -> list[Diagnostic]:
        return [d for d in self.diagnostics if not d.is_error]

    @property
    def ok(self) -> bool:
        return self.ir is not None and not self.errors

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "diagnostics": [d.to_dict() for d in self.diagnostics],
            "ir": self.ir.to_dict() if self.ir is not None else None,
        }


def compile_source(text: str, filename: str = "<stdin>",
                   module_table: Optional[ModuleTable] = None,
                   config: Optional[CompilerConfig] = None,
                   module_name: str = "main", strict: bool = False) -> CompilationResult:
    """Run every stage on one source text.

    With strict=True a CompileError is raised instead of returning a result
    that carries errors.
    """
    config = config or CompilerConfig()
    result = CompilationResult()
    result.tokens, lex_diags = tokenize(text, filename)
    result.program, parse_diags = parse(result.tokens, filename, module_name)
    front = _apply_policy(lex_diags + parse_diags, config)
    result.typed, check_diags = resolve_and_typecheck(result.program, module_table, config)
    result.diagnostics = _apply_policy(front + check_diags, config)
    if result.errors:
        result.typed.has_errors = True
        if strict:
            raise CompileError(result.errors)
        return result
    result.ir, lower_diags = lower(result.typed, config)
    result.diagnostics.extend(lower_diags)
    logger.info("compiled %s: %d function(s), %d warning(s)", filename,
                len(result.ir.functions), len(result.warnings))
    return result


# ---------------------------------------------------------------------------
# Internals
# ---------------------------------------------------------------------------

def _prepare_table(table: ModuleTable, config: CompilerConfig) -> None:
    if table.compiler is None:
        table.compiler = _compile_dependency
    if table.prelude_scope.lookup_local("print") is None:
        install_builtins(table)
    if config.prelude and not table.prelude_loaded and table.get(PRELUDE_MODULE) is None:
        info = _compile_dependency(table, PRELUDE_MODULE, PRELUDE_SOURCE)
        if info is None or info.typed is None or info.typed.has_errors:
            raise CompileError(info.typed.diagnostics if info and info.typed else [])
        publish_prelude(table)


def _check_program(program: Program, table: ModuleTable, sink: DiagnosticSink) -> TypedModule:
    name = program.module_name

    def import_module(target: str, node: Node) -> Optional[ModuleInfo]:
        known = table.get(target) is not None
        info = table.load(target)
        if info is not None and not known and info.typed is not None:
            sink.extend(info.typed.diagnostics)
        return info

    table.begin(name)
    try:
        resolution = resolve(program, table, sink, import_module)
        info = ModuleInfo(name=name, filename=program.filename, scope=resolution.scope,
                          exports=resolution.exports, program=program, resolution=resolution)
        table.register(info)
        typed = typecheck(program, resolution, table, sink)
        info.typed = typed
    finally:
        table.finish(name)
    return typed


def _compile_dependency(table: ModuleTable, name: str, source: str) -> Optional[ModuleInfo]:
    """Front end for a module reached through `use` (or the prelude)."""
    filename = f"<module {name}>"
    tokens, lex_diags = tokenize(source, filename)
    program, parse_diags = parse(tokens, filename, name)
    sink = DiagnosticSink(lex_diags + parse_diags)
    typed = _check_program(program, table, sink)
    typed.diagnostics = sink.to_list()
    typed.has_errors = program.has_errors or sink.has_errors
    if not typed.has_errors:
        compile_module_matches(typed)
    return table.get(name)


def _apply_policy(diagnostics: list[Diagnostic], config: CompilerConfig) -> list[Diagnostic]:
    """Promote warnings when asked to, then cap the number of errors kept."""
    out: list[Diagnostic] = []
    errors = 0
    for d in diagnostics:
        if config.warnings_as_errors and d.severity == Severity.WARNING:
            d = dataclasses.replace(d, severity=Severity.ERROR)
        if d.is_error:
            if config.max_errors and errors >= config.max_errors:
                continue
            errors += 1
        out.append(d)
    return out
