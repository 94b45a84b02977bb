"""Otter Lexer — indentation-aware tokenizer with span tracking.

Produces a flat token stream. Leading whitespace at each logical line start is
measured against an indentation stack and turned into INDENT / DEDENT tokens;
inside brackets newlines and indentation are ignored. Lexical errors become
ERROR tokens carrying their diagnostic, and lexing continues except after
unterminated constructs, which end the stream early.
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Optional, Union

from otterc.errors import Diagnostic, SourceSpan, lexical_error

logger = logging.getLogger(__name__)


class TokenType(Enum):
    # Keywords
    FN = auto()
    LET = auto()
    RETURN = auto()
    IF = auto()
    ELIF = auto()
    ELSE = auto()
    WHILE = auto()
    FOR = auto()
    IN = auto()
    BREAK = auto()
    CONTINUE = auto()
    PASS = auto()
    MATCH = auto()
    CASE = auto()
    STRUCT = auto()
    ENUM = auto()
    TYPE = auto()
    USE = auto()
    PUB = auto()
    AS = auto()
    AND = auto()
    OR = auto()
    NOT = auto()
    IS = auto()
    TRUE = auto()
    FALSE = auto()
    AWAIT = auto()
    SPAWN = auto()

    # Literals
    INT = auto()
    FLOAT = auto()
    STRING = auto()
    FSTRING = auto()

    # Identifier
    IDENT = auto()

    # Operators
    PLUS = auto()
    MINUS = auto()
    STAR = auto()
    SLASH = auto()
    PERCENT = auto()
    EQ = auto()
    NEQ = auto()
    LT = auto()
    GT = auto()
    LTE = auto()
    GTE = auto()
    ASSIGN = auto()
    PLUS_ASSIGN = auto()
    MINUS_ASSIGN = auto()
    STAR_ASSIGN = auto()
    SLASH_ASSIGN = auto()
    PERCENT_ASSIGN = auto()
    ARROW = auto()
    DOT = auto()
    DOTDOT = auto()

    # Delimiters
    LPAREN = auto()
    RPAREN = auto()
    LBRACKET = auto()
    RBRACKET = auto()
    LBRACE = auto()
    RBRACE = auto()
    COLON = auto()
    COMMA = auto()

    # Structure
    NEWLINE = auto()
    INDENT = auto()
    DEDENT = auto()
    EOF = auto()
    ERROR = auto()


KEYWORDS: dict[str, TokenType] = {
    "fn": TokenType.FN,
    "let": TokenType.LET,
    "return": TokenType.RETURN,
    "if": TokenType.IF,
    "elif": TokenType.ELIF,
    "else": TokenType.ELSE,
    "while": TokenType.WHILE,
    "for": TokenType.FOR,
    "in": TokenType.IN,
    "break": TokenType.BREAK,
    "continue": TokenType.CONTINUE,
    "pass": TokenType.PASS,
    "match": TokenType.MATCH,
    "case": TokenType.CASE,
    "struct": TokenType.STRUCT,
    "enum": TokenType.ENUM,
    "type": TokenType.TYPE,
    "use": TokenType.USE,
    "pub": TokenType.PUB,
    "as": TokenType.AS,
    "and": TokenType.AND,
    "or": TokenType.OR,
    "not": TokenType.NOT,
    "is": TokenType.IS,
    "true": TokenType.TRUE,
    "false": TokenType.FALSE,
    "await": TokenType.AWAIT,
    "spawn": TokenType.SPAWN,
}

_TWO_CHAR_OPS: dict[str, TokenType] = {
    "==": TokenType.EQ,
    "!=": TokenType.NEQ,
    "<=": TokenType.LTE,
    ">=": TokenType.GTE,
    "->": TokenType.ARROW,
    "..": TokenType.DOTDOT,
    "+=": TokenType.PLUS_ASSIGN,
    "-=": TokenType.MINUS_ASSIGN,
    "*=": TokenType.STAR_ASSIGN,
    "/=": TokenType.SLASH_ASSIGN,
    "%=": TokenType.PERCENT_ASSIGN,
}

_ONE_CHAR_OPS: dict[str, TokenType] = {
    "+": TokenType.PLUS,
    "-": TokenType.MINUS,
    "*": TokenType.STAR,
    "/": TokenType.SLASH,
    "%": TokenType.PERCENT,
    "<": TokenType.LT,
    ">": TokenType.GT,
    "=": TokenType.ASSIGN,
    ".": TokenType.DOT,
    "(": TokenType.LPAREN,
    ")": TokenType.RPAREN,
    "[": TokenType.LBRACKET,
    "]": TokenType.RBRACKET,
    "{": TokenType.LBRACE,
    "}": TokenType.RBRACE,
    ":": TokenType.COLON,
    ",": TokenType.COMMA,
}

_OPENERS = {"(", "[", "{"}
_CLOSERS = {")", "]", "}"}


def _is_digit(ch: str) -> bool:
    return "0" <= ch <= "9"


_ESCAPES = {
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "0": "\0",
    "\\": "\\",
    "'": "'",
    '"': '"',
    "{": "{",
    "}": "}",
}


@dataclass(frozen=True)
class FStringText:
    text: str
    span: SourceSpan


@dataclass(frozen=True)
class FStringExpr:
    tokens: tuple["Token", ...]
    span: SourceSpan


FStringPart = Union[FStringText, FStringExpr]


@dataclass(frozen=True)
class Token:
    type: TokenType
    text: str
    span: SourceSpan
    value: Any = None

    def __repr__(self) -> str:
        return f"Token({self.type.name}, {self.text!r}, {self.span})"


class _StopLexing(Exception):
    """An unterminated construct ends the stream early."""


class Lexer:
    """Tokenizer over source[start:end].

    In expression mode (f-string placeholders) newlines are plain whitespace
    and no structural tokens are produced.
    """

    def __init__(self, source: str, filename: str = "<stdin>",
                 start: int = 0, end: Optional[int] = None,
                 expression_mode: bool = False,
                 line_starts: Optional[list[int]] = None):
        self.source = source
        self.filename = filename
        self.pos = start
        self.end = len(source) if end is None else end
        self.expression_mode = expression_mode
        self.tokens: list[Token] = []
        self.diagnostics: list[Diagnostic] = []
        self.indent_stack: list[int] = [0]
        self.depth = 0
        self._line_has_tokens = False
        if line_starts is None:
            line_starts = [0]
            for i, ch in enumerate(source):
                if ch == "\n":
                    line_starts.append(i + 1)
        self._line_starts = line_starts

    # -------------------------------------------------------------------
    # Cursor helpers
    # -------------------------------------------------------------------

    def _peek(self) -> str:
        if self.pos < self.end:
            return self.source[self.pos]
        return "\0"

    def _peek_ahead(self, offset: int) -> str:
        p = self.pos + offset
        if p < self.end:
            return self.source[p]
        return "\0"

    def _at_end(self) -> bool:
        return self.pos >= self.end

    def _advance(self) -> str:
        ch = self.source[self.pos]
        self.pos += 1
        return ch

    def _line_col(self, offset: int) -> tuple[int, int]:
        idx = bisect.bisect_right(self._line_starts, offset) - 1
        return idx + 1, offset - self._line_starts[idx] + 1

    def _span(self, start: int, end: Optional[int] = None) -> SourceSpan:
        if end is None:
            end = self.pos
        line, col = self._line_col(start)
        end_line, end_col = self._line_col(end)
        return SourceSpan(start, end, line, col, end_line, end_col, self.filename)

    def _emit(self, tt: TokenType, start: int, value: Any = None,
              end: Optional[int] = None) -> Token:
        span = self._span(start, end)
        tok = Token(tt, self.source[span.start:span.end], span, value)
        self.tokens.append(tok)
        if tt not in (TokenType.NEWLINE, TokenType.INDENT, TokenType.DEDENT, TokenType.EOF):
            self._line_has_tokens = True
        return tok

    def _error(self, message: str, start: int, code: str,
               end: Optional[int] = None) -> None:
        diag = lexical_error(message, self._span(start, end), code=code)
        self.diagnostics.append(diag)
        self._emit(TokenType.ERROR, start, diag, end)

    # -------------------------------------------------------------------
    # Driver loop
    # -------------------------------------------------------------------

    def tokenize(self) -> list[Token]:
        at_line_start = not self.expression_mode
        try:
            while True:
                if at_line_start and self.depth == 0:
                    self._handle_line_start()
                    at_line_start = False
                if self._at_end():
                    break
                ch = self._peek()
                if ch == "\n":
                    if self.expression_mode or self.depth > 0:
                        self._advance()
                        continue
                    if self._line_has_tokens:
                        self._emit(TokenType.NEWLINE, self.pos, end=self.pos + 1)
                    self._advance()
                    self._line_has_tokens = False
                    at_line_start = True
                elif ch in " \t\r":
                    self._advance()
                elif ch == "#":
                    self._skip_comment()
                else:
                    self._lex_token()
        except _StopLexing:
            pass
        self._finish()
        logger.debug("lexed %d tokens from %s", len(self.tokens), self.filename)
        return self.tokens

    def _finish(self) -> None:
        if self.expression_mode:
            self._emit(TokenType.EOF, self.pos, end=self.pos)
            return
        if self._line_has_tokens:
            self._emit(TokenType.NEWLINE, self.pos, end=self.pos)
            self._line_has_tokens = False
        while len(self.indent_stack) > 1:
            self.indent_stack.pop()
            self._emit(TokenType.DEDENT, self.pos, end=self.pos)
        self._emit(TokenType.EOF, self.pos, end=self.pos)

    def _skip_comment(self) -> None:
        while not self._at_end() and self._peek() != "\n":
            self._advance()

    # -------------------------------------------------------------------
    # Indentation
    # -------------------------------------------------------------------

    def _handle_line_start(self) -> None:
        """Measure indentation of the next non-blank line and emit INDENT/DEDENT."""
        while True:
            line_start = self.pos
            width = 0
            tab_at: Optional[int] = None
            while not self._at_end() and self._peek() in " \t":
                if self._peek() == "\t" and tab_at is None:
                    tab_at = self.pos
                elif self._peek() == " ":
                    width += 1
                self._advance()
            if self._at_end():
                return
            ch = self._peek()
            if ch == "\r" and self._peek_ahead(1) == "\n":
                self._advance()
                ch = "\n"
            if ch == "\n":
                self._advance()
                continue
            if ch == "#":
                self._skip_comment()
                if not self._at_end():
                    self._advance()
                continue
            if tab_at is not None:
                line, col = self._line_col(tab_at)
                self._error(
                    f"tabs are not allowed for indentation (line {line}, column {col})",
                    tab_at, "tab-indentation", end=tab_at + 1,
                )
            self._apply_indent(width, line_start)
            return

    def _apply_indent(self, width: int, line_start: int) -> None:
        top = self.indent_stack[-1]
        if width > top:
            self.indent_stack.append(width)
            self._emit(TokenType.INDENT, self.pos, end=self.pos)
        elif width < top:
            while width < self.indent_stack[-1]:
                self.indent_stack.pop()
                self._emit(TokenType.DEDENT, self.pos, end=self.pos)
            if width != self.indent_stack[-1]:
                self._error(
                    f"inconsistent indentation: expected {self.indent_stack[-1]} "
                    f"spaces, found {width}",
                    line_start, "inconsistent-dedent", end=self.pos,
                )
        self._line_has_tokens = False

    # -------------------------------------------------------------------
    # Tokens
    # -------------------------------------------------------------------

    def _lex_token(self) -> None:
        ch = self._peek()
        start = self.pos

        if _is_digit(ch):
            self._read_number()
            return

        if ch in ("f", "F") and self._peek_ahead(1) in ("'", '"'):
            self._advance()
            self._read_string(start, is_fstring=True)
            return

        if ch in ("'", '"'):
            self._read_string(start, is_fstring=False)
            return

        if ch.isalpha() or ch == "_":
            self._read_identifier()
            return

        two = ch + self._peek_ahead(1)
        if two in _TWO_CHAR_OPS:
            self.pos += 2
            self._emit(_TWO_CHAR_OPS[two], start)
            return

        if ch in _ONE_CHAR_OPS:
            self._advance()
            if ch in _OPENERS:
                self.depth += 1
            elif ch in _CLOSERS and self.depth > 0:
                self.depth -= 1
            self._emit(_ONE_CHAR_OPS[ch], start)
            return

        self._advance()
        self._error(f"unexpected character `{ch}`", start, "unexpected-character")

    def _read_identifier(self) -> None:
        start = self.pos
        while not self._at_end() and (self._peek().isalnum() or self._peek() == "_"):
            self._advance()
        text = self.source[start:self.pos]
        tt = KEYWORDS.get(text, TokenType.IDENT)
        self._emit(tt, start, text)

    def _read_digits(self, allowed: str) -> str:
        out = []
        while not self._at_end() and (self._peek() in allowed or self._peek() == "_"):
            ch = self._advance()
            if ch != "_":
                out.append(ch)
        return "".join(out)

    def _read_number(self) -> None:
        start = self.pos
        if self._peek() == "0" and self._peek_ahead(1) in "xXbB":
            base_char = self._peek_ahead(1).lower()
            self.pos += 2
            if base_char == "x":
                digits = self._read_digits("0123456789abcdefABCDEF")
                base = 16
            else:
                digits = self._read_digits("01")
                base = 2
            if not digits or self._peek().isalnum():
                while not self._at_end() and (self._peek().isalnum() or self._peek() == "_"):
                    self._advance()
                self._error(f"invalid integer literal `{self.source[start:self.pos]}`",
                            start, "invalid-number")
                return
            self._emit(TokenType.INT, start, int(digits, base))
            return

        text = self._read_digits("0123456789")
        is_float = False
        if self._peek() == "." and _is_digit(self._peek_ahead(1)):
            is_float = True
            self._advance()
            text += "." + self._read_digits("0123456789")
        if self._peek() in "eE" and (
            _is_digit(self._peek_ahead(1))
            or (self._peek_ahead(1) in "+-" and _is_digit(self._peek_ahead(2)))
        ):
            is_float = True
            text += self._advance()
            if self._peek() in "+-":
                text += self._advance()
            text += self._read_digits("0123456789")
        if is_float:
            self._emit(TokenType.FLOAT, start, float(text))
        else:
            self._emit(TokenType.INT, start, int(text))

    # -------------------------------------------------------------------
    # Strings
    # -------------------------------------------------------------------

    def _read_string(self, start: int, is_fstring: bool) -> None:
        quote = self._peek()
        triple = self._peek_ahead(1) == quote and self._peek_ahead(2) == quote
        closing = quote * 3 if triple else quote
        self.pos += len(closing)

        parts: list[FStringPart] = []
        buf: list[str] = []
        chunk_start = self.pos

        def flush() -> None:
            if buf:
                parts.append(FStringText("".join(buf), self._span(chunk_start)))
                buf.clear()

        while True:
            if self._at_end() or (self._peek() == "\n" and not triple):
                self._error("unterminated string literal", start, "unterminated-string")
                raise _StopLexing()
            if self.source.startswith(closing, self.pos) and self.pos + len(closing) <= self.end:
                self.pos += len(closing)
                break
            ch = self._peek()
            if ch == "\\":
                esc_start = self.pos
                self._advance()
                if self._at_end():
                    continue
                esc = self._advance()
                if esc in _ESCAPES:
                    buf.append(_ESCAPES[esc])
                else:
                    self._error(f"unknown escape sequence `\\{esc}`", esc_start,
                                "unknown-escape")
                    buf.append(esc)
            elif is_fstring and ch == "{":
                if self._peek_ahead(1) == "{":
                    self.pos += 2
                    buf.append("{")
                    continue
                flush()
                parts.append(self._read_placeholder(start))
                chunk_start = self.pos
            elif is_fstring and ch == "}":
                if self._peek_ahead(1) == "}":
                    self.pos += 2
                    buf.append("}")
                    continue
                self._error("single `}` is not allowed in an f-string", self.pos,
                            "unbalanced-brace", end=self.pos + 1)
                self._advance()
                buf.append("}")
            else:
                buf.append(self._advance())

        if is_fstring:
            flush()
            self._emit(TokenType.FSTRING, start, tuple(parts))
        else:
            self._emit(TokenType.STRING, start, "".join(buf))

    def _read_placeholder(self, string_start: int) -> FStringExpr:
        open_pos = self.pos
        self._advance()
        expr_start = self.pos
        depth = 0
        while True:
            if self._at_end() or self._peek() == "\n":
                self._error("unterminated placeholder in f-string", open_pos,
                            "unterminated-placeholder")
                raise _StopLexing()
            ch = self._peek()
            if ch in ("'", '"'):
                self._skip_nested_string(open_pos)
                continue
            if ch in _OPENERS:
                depth += 1
            elif ch in _CLOSERS:
                if depth == 0:
                    if ch != "}":
                        self._error("unterminated placeholder in f-string", open_pos,
                                    "unterminated-placeholder")
                        raise _StopLexing()
                    break
                depth -= 1
            self._advance()
        expr_end = self.pos
        self._advance()
        sub = Lexer(self.source, self.filename, start=expr_start, end=expr_end,
                    expression_mode=True, line_starts=self._line_starts)
        sub_tokens = sub.tokenize()
        self.diagnostics.extend(sub.diagnostics)
        return FStringExpr(tuple(sub_tokens), self._span(open_pos))

    def _skip_nested_string(self, open_pos: int) -> None:
        quote = self._advance()
        while True:
            if self._at_end() or self._peek() == "\n":
                self._error("unterminated placeholder in f-string", open_pos,
                            "unterminated-placeholder")
                raise _StopLexing()
            ch = self._advance()
            if ch == "\\" and not self._at_end():
                self._advance()
            elif ch == quote:
                return


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def tokenize(source: str, filename: str = "<stdin>") -> tuple[list[Token], list[Diagnostic]]:
    """Tokenize source text. Returns (tokens, diagnostics)."""
    lexer = Lexer(source, filename)
    tokens = lexer.tokenize()
    return tokens, lexer.diagnostics


def dump_tokens(tokens: list[Token]) -> str:
    """Stable one-token-per-line rendering."""
    lines = []
    for tok in tokens:
        lines.append(_dump_token(tok, ""))
    return "\n".join(lines) + "\n"


def _dump_token(tok: Token, indent: str) -> str:
    loc = f"{tok.span.line}:{tok.span.column}"
    if tok.type == TokenType.FSTRING:
        out = [f"{indent}{loc} FSTRING"]
        for part in tok.value:
            if isinstance(part, FStringText):
                out.append(f"{indent}  text {part.text!r}")
            else:
                out.append(f"{indent}  expr")
                for sub in part.tokens:
                    out.append(_dump_token(sub, indent + "    "))
        return "\n".join(out)
    if tok.type in (TokenType.NEWLINE, TokenType.INDENT, TokenType.DEDENT, TokenType.EOF):
        return f"{indent}{loc} {tok.type.name}"
    if tok.type == TokenType.ERROR:
        return f"{indent}{loc} ERROR {tok.value.message!r}"
    return f"{indent}{loc} {tok.type.name} {tok.text!r}"
