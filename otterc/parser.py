"""Otter Parser — recursive-descent parser with precedence climbing.

Parses a token stream into an AST whose nodes are registered in the
Program's arena. Syntax errors are recorded and the parser resynchronises at
the next statement boundary so one pass reports independent errors.

Top-level productions:
  use a.b [as c]       pub use a.b
  type Name<T> = T
  struct Name<T>:      (fields and methods)
  enum Name<T>:        (variants)
  fn name<T>(...) -> T:
  let pattern = expr
  expression statements
"""

from __future__ import annotations

import logging
from typing import Callable, Optional, TypeVar

from otterc.ast_nodes import (
    Node, Program, TopLevel,
    TypeExpr, PrimitiveTypeExpr, NamedTypeExpr, GenericTypeExpr, FunctionTypeExpr,
    Pattern, WildcardPattern, LiteralPattern, BindingPattern, VariantPattern,
    FieldPattern, StructPattern, RestPattern, ListPattern,
    Expr, Literal, Identifier, BinaryExpr, UnaryExpr, KeywordArg, CallExpr,
    MemberExpr, IndexExpr, FieldInit, StructInit, ListLit, DictEntry, DictLit,
    Comprehension, RangeExpr, IfExpr, MatchArm, MatchExpr, AwaitExpr, SpawnExpr,
    Param, LambdaExpr, FString,
    Stmt, LetStmt, AssignStmt, AugAssignStmt, ReturnStmt, BreakStmt, ContinueStmt,
    PassStmt, IfStmt, WhileStmt, ForStmt, MatchStmt, ExprStmt,
    TypeParam, FunctionDef, FieldDef, StructDef, VariantDef, EnumDef,
    TypeAliasDef, UseDecl,
)
from otterc.errors import Diagnostic, SourceSpan, syntax_error
from otterc.lexer import KEYWORDS, FStringExpr, FStringText, Token, TokenType, tokenize

logger = logging.getLogger(__name__)

N = TypeVar("N", bound=Node)

PRIMITIVE_TYPE_NAMES = ("int", "float", "bool", "string", "unit")

# Binding power of each binary operator; higher binds tighter.
BINARY_PRECEDENCE: dict[TokenType, int] = {
    TokenType.OR: 1,
    TokenType.AND: 2,
    TokenType.DOTDOT: 3,
    TokenType.EQ: 4,
    TokenType.NEQ: 4,
    TokenType.LT: 4,
    TokenType.GT: 4,
    TokenType.LTE: 4,
    TokenType.GTE: 4,
    TokenType.IS: 4,
    TokenType.PLUS: 5,
    TokenType.MINUS: 5,
    TokenType.STAR: 6,
    TokenType.SLASH: 6,
    TokenType.PERCENT: 6,
}

_BINARY_OPS: dict[TokenType, str] = {
    TokenType.OR: "or",
    TokenType.AND: "and",
    TokenType.EQ: "==",
    TokenType.NEQ: "!=",
    TokenType.LT: "<",
    TokenType.GT: ">",
    TokenType.LTE: "<=",
    TokenType.GTE: ">=",
    TokenType.PLUS: "+",
    TokenType.MINUS: "-",
    TokenType.STAR: "*",
    TokenType.SLASH: "/",
    TokenType.PERCENT: "%",
}

_UNARY_OPS: dict[TokenType, str] = {
    TokenType.NOT: "not",
    TokenType.MINUS: "-",
    TokenType.PLUS: "+",
}

_AUG_ASSIGN_OPS: dict[TokenType, str] = {
    TokenType.PLUS_ASSIGN: "+",
    TokenType.MINUS_ASSIGN: "-",
    TokenType.STAR_ASSIGN: "*",
    TokenType.SLASH_ASSIGN: "/",
    TokenType.PERCENT_ASSIGN: "%",
}

_STATEMENT_KEYWORDS = frozenset({
    TokenType.LET, TokenType.RETURN, TokenType.IF, TokenType.WHILE,
    TokenType.FOR, TokenType.MATCH, TokenType.BREAK, TokenType.CONTINUE,
    TokenType.PASS, TokenType.FN, TokenType.STRUCT, TokenType.ENUM,
    TokenType.TYPE, TokenType.USE, TokenType.PUB,
})


class ParseError(Exception):
    """Unwinds to the nearest statement boundary."""

    def __init__(self, diagnostic: Diagnostic):
        self.diagnostic = diagnostic
        super().__init__(diagnostic.message)


class Parser:
    """Recursive-descent parser for otter."""

    def __init__(self, tokens: list[Token], filename: str = "<stdin>",
                 module_name: str = "main"):
        self.tokens = [t for t in tokens if t.type != TokenType.ERROR]
        self.had_lexical_errors = len(self.tokens) != len(tokens)
        if not self.tokens or self.tokens[-1].type != TokenType.EOF:
            end = tokens[-1].span if tokens else SourceSpan(0, 0, 1, 1, 1, 1, filename)
            self.tokens.append(Token(TokenType.EOF, "", end))
        self.pos = 0
        self.filename = filename
        self.module_name = module_name
        self.diagnostics: list[Diagnostic] = []
        self.nodes: list[Node] = []
        self._prev: Optional[Token] = None
        self._fn_depth = 0
        self._loop_depth = 0

    # -------------------------------------------------------------------
    # Cursor
    # -------------------------------------------------------------------

    def _current(self) -> Token:
        if self.pos < len(self.tokens):
            return self.tokens[self.pos]
        return self.tokens[-1]

    def _peek(self) -> TokenType:
        return self._current().type

    def _peek_at(self, offset: int) -> TokenType:
        idx = self.pos + offset
        if idx < len(self.tokens):
            return self.tokens[idx].type
        return TokenType.EOF

    def _advance(self) -> Token:
        tok = self._current()
        if self.pos < len(self.tokens) - 1:
            self.pos += 1
        self._prev = tok
        return tok

    def _expect(self, tt: TokenType, what: Optional[str] = None) -> Token:
        tok = self._current()
        if tok.type != tt:
            self._error(f"expected {what or _describe_type(tt)}, got {_describe(tok)}", tok)
        return self._advance()

    def _match(self, tt: TokenType) -> Optional[Token]:
        if self._peek() == tt:
            return self._advance()
        return None

    def _error(self, message: str, tok: Optional[Token] = None,
               code: str = "unexpected-token") -> None:
        tok = tok or self._current()
        raise ParseError(syntax_error(message, tok.span, code=code))

    def _record(self, diagnostic: Diagnostic) -> None:
        self.diagnostics.append(diagnostic)

    def _make(self, cls: type[N], start: SourceSpan, /, **kwargs) -> N:
        end = self._prev.span if self._prev is not None else start
        span = start.to(end) if end.end >= start.start else start
        node = cls(span=span, id=len(self.nodes), **kwargs)
        self.nodes.append(node)
        return node

    # -------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------

    def _synchronize(self) -> None:
        """Skip to the start of the next statement at the same or lower indent."""
        start_pos = self.pos
        while True:
            tt = self._peek()
            if tt in (TokenType.EOF, TokenType.DEDENT):
                break
            if tt == TokenType.NEWLINE:
                self._advance()
                if self._peek() == TokenType.INDENT:
                    self._skip_block()
                break
            if (tt in _STATEMENT_KEYWORDS and self.pos != start_pos
                    and self._prev is not None
                    and self._prev.type in (TokenType.NEWLINE, TokenType.INDENT,
                                            TokenType.DEDENT)):
                break
            if tt == TokenType.INDENT:
                self._skip_block()
                break
            self._advance()
        if self.pos == start_pos and self._peek() not in (TokenType.EOF, TokenType.DEDENT):
            self._advance()

    def _skip_block(self) -> None:
        depth = 0
        while self._peek() != TokenType.EOF:
            tt = self._advance().type
            if tt == TokenType.INDENT:
                depth += 1
            elif tt == TokenType.DEDENT:
                depth -= 1
                if depth == 0:
                    return

    # -------------------------------------------------------------------
    # Top level
    # -------------------------------------------------------------------

    def parse(self) -> Program:
        items: list[TopLevel] = []
        while self._peek() != TokenType.EOF:
            tt = self._peek()
            if tt in (TokenType.NEWLINE, TokenType.DEDENT):
                self._advance()
                continue
            if tt == TokenType.INDENT:
                self._record(syntax_error("unexpected indent", self._current().span,
                                          code="unexpected-indent"))
                self._skip_block()
                continue
            try:
                items.append(self._parse_top_level())
            except ParseError as e:
                self._record(e.diagnostic)
                self._synchronize()
        program = Program(
            items=items,
            nodes=self.nodes,
            filename=self.filename,
            module_name=self.module_name,
            has_errors=self.had_lexical_errors or any(d.is_error for d in self.diagnostics),
        )
        logger.debug("parsed %d top-level items (%d nodes) from %s",
                     len(items), len(self.nodes), self.filename)
        return program

    def _parse_top_level(self) -> TopLevel:
        start = self._current().span
        is_public = self._match(TokenType.PUB) is not None
        tt = self._peek()
        if tt == TokenType.USE:
            return self._parse_use(start, is_public)
        elif tt == TokenType.TYPE:
            return self._parse_type_alias(start, is_public)
        elif tt == TokenType.STRUCT:
            return self._parse_struct(start, is_public)
        elif tt == TokenType.ENUM:
            return self._parse_enum(start, is_public)
        elif tt == TokenType.FN and self._peek_at(1) == TokenType.IDENT:
            return self._parse_function(start, is_public)
        elif tt == TokenType.LET:
            return self._parse_let(start, is_public)
        elif is_public:
            self._error(f"expected an item after 'pub', got {_describe(self._current())}")
        elif tt in _STATEMENT_KEYWORDS and tt != TokenType.FN:
            self._error(f"{_describe(self._current())} is not allowed at top level")
        return self._parse_expression_statement(top_level=True)

    # -------------------------------------------------------------------
    # Blocks
    # -------------------------------------------------------------------

    def _parse_indented(self, parse_one: Callable[[], N]) -> list[N]:
        """NEWLINE INDENT parse_one+ DEDENT, recovering per entry."""
        if self._peek() != TokenType.NEWLINE:
            self._error(f"expected a newline and an indented block, got "
                        f"{_describe(self._current())}", code="missing-block")
        while self._match(TokenType.NEWLINE):
            pass
        if self._peek() != TokenType.INDENT:
            self._error("expected an indented block", code="missing-block")
        self._advance()
        entries: list[N] = []
        while self._peek() not in (TokenType.DEDENT, TokenType.EOF):
            if self._match(TokenType.NEWLINE):
                continue
            try:
                entries.append(parse_one())
            except ParseError as e:
                self._record(e.diagnostic)
                self._synchronize()
        self._match(TokenType.DEDENT)
        return entries

    def _parse_block(self) -> list[Stmt]:
        return self._parse_indented(self._parse_statement)

    def _end_statement(self) -> None:
        if self._match(TokenType.NEWLINE):
            return
        if self._peek() in (TokenType.DEDENT, TokenType.EOF):
            return
        if self._prev is not None and self._prev.type == TokenType.DEDENT:
            return
        self._error(f"expected end of statement, got {_describe(self._current())}")

    # -------------------------------------------------------------------
    # Items
    # -------------------------------------------------------------------

    def _parse_type_params(self) -> list[TypeParam]:
        """Optional <T, U>"""
        params: list[TypeParam] = []
        if self._match(TokenType.LT):
            while True:
                tok = self._expect(TokenType.IDENT, "a type parameter name")
                params.append(self._make(TypeParam, tok.span, name=tok.text))
                if not self._match(TokenType.COMMA):
                    break
            self._expect(TokenType.GT)
        return params

    def _parse_params(self, closing: TokenType) -> list[Param]:
        params: list[Param] = []
        seen_default = False
        while self._peek() != closing:
            tok = self._expect(TokenType.IDENT, "a parameter name")
            type_expr = self._parse_type() if self._match(TokenType.COLON) else None
            default = self._parse_expression() if self._match(TokenType.ASSIGN) else None
            param = self._make(Param, tok.span, name=tok.text, type_expr=type_expr,
                               default=default)
            if default is not None:
                seen_default = True
            elif seen_default:
                self._record(syntax_error(
                    f"parameter '{tok.text}' without a default follows a parameter "
                    f"with a default",
                    param.span, code="default-parameter-order",
                ))
            params.append(param)
            if not self._match(TokenType.COMMA):
                break
        return params

    def _parse_function(self, start: SourceSpan, is_public: bool) -> FunctionDef:
        self._expect(TokenType.FN)
        name = self._expect(TokenType.IDENT, "a function name").text
        type_params = self._parse_type_params()
        self._expect(TokenType.LPAREN)
        params = self._parse_params(TokenType.RPAREN)
        self._expect(TokenType.RPAREN)
        return_type = self._parse_type() if self._match(TokenType.ARROW) else None
        self._expect(TokenType.COLON)
        saved_loop = self._loop_depth
        self._fn_depth += 1
        self._loop_depth = 0
        try:
            body = self._parse_block()
        finally:
            self._fn_depth -= 1
            self._loop_depth = saved_loop
        return self._make(FunctionDef, start, name=name, is_public=is_public,
                          type_params=type_params, params=params,
                          return_type=return_type, body=body)

    def _parse_struct(self, start: SourceSpan, is_public: bool) -> StructDef:
        self._expect(TokenType.STRUCT)
        name = self._expect(TokenType.IDENT, "a struct name").text
        type_params = self._parse_type_params()
        self._expect(TokenType.COLON)
        fields: list[FieldDef] = []
        methods: list[FunctionDef] = []

        def member() -> Node:
            mstart = self._current().span
            if self._match(TokenType.PASS):
                self._end_statement()
                return self._make(PassStmt, mstart)
            method_public = self._match(TokenType.PUB) is not None
            if self._peek() == TokenType.FN:
                fn = self._parse_function(mstart, method_public)
                methods.append(fn)
                return fn
            tok = self._expect(TokenType.IDENT, "a field name or method")
            self._expect(TokenType.COLON)
            type_expr = self._parse_type()
            self._end_statement()
            fdef = self._make(FieldDef, tok.span, name=tok.text, type_expr=type_expr)
            fields.append(fdef)
            return fdef

        self._parse_indented(member)
        return self._make(StructDef, start, name=name, is_public=is_public,
                          type_params=type_params, fields=fields, methods=methods)

    def _parse_enum(self, start: SourceSpan, is_public: bool) -> EnumDef:
        self._expect(TokenType.ENUM)
        name = self._expect(TokenType.IDENT, "an enum name").text
        type_params = self._parse_type_params()
        self._expect(TokenType.COLON)

        def variant() -> VariantDef:
            tok = self._expect(TokenType.IDENT, "a variant name")
            payload: list[TypeExpr] = []
            has_colon = self._match(TokenType.COLON) is not None
            if has_colon or self._peek() == TokenType.LPAREN:
                self._expect(TokenType.LPAREN)
                while self._peek() != TokenType.RPAREN:
                    payload.append(self._parse_type())
                    if not self._match(TokenType.COMMA):
                        break
                self._expect(TokenType.RPAREN)
            self._end_statement()
            return self._make(VariantDef, tok.span, name=tok.text, payload=payload)

        variants = self._parse_indented(variant)
        return self._make(EnumDef, start, name=name, is_public=is_public,
                          type_params=type_params, variants=variants)

    def _parse_type_alias(self, start: SourceSpan, is_public: bool) -> TypeAliasDef:
        self._expect(TokenType.TYPE)
        name = self._expect(TokenType.IDENT, "a type name").text
        type_params = self._parse_type_params()
        self._expect(TokenType.ASSIGN)
        target = self._parse_type()
        self._end_statement()
        return self._make(TypeAliasDef, start, name=name, is_public=is_public,
                          type_params=type_params, target=target)

    def _parse_use(self, start: SourceSpan, is_public: bool) -> UseDecl:
        self._expect(TokenType.USE)
        path = [self._expect(TokenType.IDENT, "a module name").text]
        while self._match(TokenType.DOT):
            path.append(self._expect(TokenType.IDENT, "a module name").text)
        alias = path[-1]
        if self._match(TokenType.AS):
            alias = self._expect(TokenType.IDENT, "an alias").text
        self._end_statement()
        return self._make(UseDecl, start, name=alias, is_public=is_public, path=path)

    # -------------------------------------------------------------------
    # Type expressions
    # -------------------------------------------------------------------

    def _parse_type(self) -> TypeExpr:
        start = self._current().span
        if self._match(TokenType.FN):
            self._expect(TokenType.LPAREN)
            params: list[TypeExpr] = []
            while self._peek() != TokenType.RPAREN:
                params.append(self._parse_type())
                if not self._match(TokenType.COMMA):
                    break
            self._expect(TokenType.RPAREN)
            ret = self._parse_type() if self._match(TokenType.ARROW) else None
            return self._make(FunctionTypeExpr, start, params=params, ret=ret)

        tok = self._expect(TokenType.IDENT, "a type")
        path = [tok.text]
        while self._match(TokenType.DOT):
            path.append(self._expect(TokenType.IDENT, "a type name").text)
        if len(path) == 1 and path[0] in PRIMITIVE_TYPE_NAMES:
            return self._make(PrimitiveTypeExpr, start, name=path[0])
        base = self._make(NamedTypeExpr, start, path=path)
        if self._match(TokenType.LT):
            args: list[TypeExpr] = []
            while True:
                args.append(self._parse_type())
                if not self._match(TokenType.COMMA):
                    break
            self._expect(TokenType.GT)
            return self._make(GenericTypeExpr, start, base=base, args=args)
        return base

    # -------------------------------------------------------------------
    # Statements
    # -------------------------------------------------------------------

    def _parse_statement(self) -> Stmt:
        start = self._current().span
        tt = self._peek()
        if tt == TokenType.LET:
            return self._parse_let(start, False)
        elif tt == TokenType.RETURN:
            tok = self._advance()
            if self._fn_depth == 0:
                self._error("'return' outside of a function", tok)
            value = None
            if self._peek() not in (TokenType.NEWLINE, TokenType.DEDENT, TokenType.EOF):
                value = self._parse_expression()
            self._end_statement()
            return self._make(ReturnStmt, start, value=value)
        elif tt in (TokenType.BREAK, TokenType.CONTINUE):
            tok = self._advance()
            if self._loop_depth == 0:
                self._error(f"'{tok.text}' outside of a loop", tok)
            self._end_statement()
            return self._make(BreakStmt if tt == TokenType.BREAK else ContinueStmt, start)
        elif tt == TokenType.PASS:
            self._advance()
            self._end_statement()
            return self._make(PassStmt, start)
        elif tt == TokenType.IF:
            return self._parse_if()
        elif tt == TokenType.WHILE:
            self._advance()
            condition = self._parse_expression()
            self._expect(TokenType.COLON)
            body = self._parse_loop_body()
            return self._make(WhileStmt, start, condition=condition, body=body)
        elif tt == TokenType.FOR:
            self._advance()
            tok = self._expect(TokenType.IDENT, "a loop variable")
            target = self._make(BindingPattern, tok.span, name=tok.text)
            self._expect(TokenType.IN)
            iterable = self._parse_expression()
            self._expect(TokenType.COLON)
            body = self._parse_loop_body()
            return self._make(ForStmt, start, target=target, iterable=iterable, body=body)
        elif tt == TokenType.MATCH:
            self._advance()
            subject = self._parse_expression()
            self._expect(TokenType.COLON)
            arms = self._parse_indented(lambda: self._parse_arm(inline=False))
            return self._make(MatchStmt, start, subject=subject, arms=arms)
        elif tt in (TokenType.STRUCT, TokenType.ENUM, TokenType.TYPE, TokenType.USE,
                    TokenType.PUB) or (tt == TokenType.FN and self._peek_at(1) == TokenType.IDENT):
            self._error(f"{_describe(self._current())} declarations are only allowed at top level")
        return self._parse_expression_statement(top_level=False)

    def _parse_loop_body(self) -> list[Stmt]:
        self._loop_depth += 1
        try:
            return self._parse_block()
        finally:
            self._loop_depth -= 1

    def _parse_let(self, start: SourceSpan, is_public: bool) -> LetStmt:
        self._expect(TokenType.LET)
        pattern = self._parse_pattern()
        type_expr = self._parse_type() if self._match(TokenType.COLON) else None
        self._expect(TokenType.ASSIGN, "'=' in let binding")
        value = self._parse_expression()
        self._end_statement()
        return self._make(LetStmt, start, pattern=pattern, type_expr=type_expr,
                          value=value, is_public=is_public)

    def _parse_if(self) -> IfStmt:
        start = self._advance().span  # IF or ELIF
        condition = self._parse_expression()
        self._expect(TokenType.COLON)
        then_body = self._parse_block()
        else_body: list[Stmt] = []
        if self._peek() == TokenType.ELIF:
            else_body = [self._parse_if()]
        elif self._match(TokenType.ELSE):
            self._expect(TokenType.COLON)
            else_body = self._parse_block()
        return self._make(IfStmt, start, condition=condition, then_body=then_body,
                          else_body=else_body)

    def _parse_arm(self, inline: bool) -> MatchArm:
        start = self._expect(TokenType.CASE, "'case'").span
        pattern = self._parse_pattern()
        self._expect(TokenType.COLON)
        if inline:
            value = self._parse_expression()
            self._end_statement()
            return self._make(MatchArm, start, pattern=pattern, value=value)
        body = self._parse_block()
        return self._make(MatchArm, start, pattern=pattern, body=body)

    def _parse_expression_statement(self, top_level: bool) -> Stmt:
        start = self._current().span
        expr = self._parse_expression()
        tt = self._peek()
        if tt == TokenType.ASSIGN or tt in _AUG_ASSIGN_OPS:
            op_tok = self._advance()
            if top_level:
                self._error("assignment is not allowed at top level; use 'let'", op_tok)
            if not isinstance(expr, (Identifier, MemberExpr, IndexExpr)):
                self._error("invalid assignment target", op_tok, code="invalid-assignment")
            value = self._parse_expression()
            self._end_statement()
            if tt == TokenType.ASSIGN:
                return self._make(AssignStmt, start, target=expr, value=value)
            return self._make(AugAssignStmt, start, target=expr,
                              op=_AUG_ASSIGN_OPS[tt], value=value)
        self._end_statement()
        return self._make(ExprStmt, start, expr=expr)

    # -------------------------------------------------------------------
    # Expressions
    # -------------------------------------------------------------------

    def _parse_expression(self) -> Expr:
        start = self._current().span
        expr = self._parse_binary(1)
        if self._match(TokenType.IF):
            condition = self._parse_binary(1)
            self._expect(TokenType.ELSE, "'else' in conditional expression")
            other = self._parse_expression()
            return self._make(IfExpr, start, condition=condition, then_expr=expr,
                              else_expr=other)
        return expr

    def _parse_binary(self, min_prec: int) -> Expr:
        start = self._current().span
        left = self._parse_unary()
        while True:
            tt = self._peek()
            prec = BINARY_PRECEDENCE.get(tt)
            if prec is None or prec < min_prec:
                return left
            self._advance()
            if tt == TokenType.IS:
                op = "is not" if self._match(TokenType.NOT) else "is"
            else:
                op = _BINARY_OPS.get(tt, "..")
            right = self._parse_binary(prec + 1)
            if tt == TokenType.DOTDOT:
                left = self._make(RangeExpr, start, start=left, end=right)
            else:
                left = self._make(BinaryExpr, start, op=op, left=left, right=right)

    def _parse_unary(self) -> Expr:
        start = self._current().span
        tt = self._peek()
        if tt in _UNARY_OPS:
            self._advance()
            operand = self._parse_unary()
            return self._make(UnaryExpr, start, op=_UNARY_OPS[tt], operand=operand)
        if tt == TokenType.AWAIT:
            self._advance()
            return self._make(AwaitExpr, start, operand=self._parse_unary())
        if tt == TokenType.SPAWN:
            self._advance()
            return self._make(SpawnExpr, start, operand=self._parse_unary())
        return self._parse_postfix()

    def _parse_postfix(self) -> Expr:
        start = self._current().span
        expr = self._parse_primary()
        while True:
            if self._match(TokenType.LPAREN):
                args, kwargs = self._parse_call_args()
                expr = self._make(CallExpr, start, callee=expr, args=args, kwargs=kwargs)
            elif self._match(TokenType.DOT):
                name = self._expect(TokenType.IDENT, "a member name").text
                expr = self._make(MemberExpr, start, obj=expr, name=name)
            elif self._match(TokenType.LBRACKET):
                index = self._parse_expression()
                self._expect(TokenType.RBRACKET)
                expr = self._make(IndexExpr, start, obj=expr, index=index)
            else:
                return expr

    def _parse_call_args(self) -> tuple[list[Expr], list[KeywordArg]]:
        args: list[Expr] = []
        kwargs: list[KeywordArg] = []
        while self._peek() != TokenType.RPAREN:
            if self._peek() == TokenType.IDENT and self._peek_at(1) == TokenType.ASSIGN:
                tok = self._advance()
                self._advance()
                value = self._parse_expression()
                kwargs.append(self._make(KeywordArg, tok.span, name=tok.text, value=value))
            else:
                if kwargs:
                    self._error("positional argument follows keyword argument")
                args.append(self._parse_expression())
            if not self._match(TokenType.COMMA):
                break
        self._expect(TokenType.RPAREN)
        return args, kwargs

    def _parse_primary(self) -> Expr:
        tok = self._current()
        start = tok.span
        tt = tok.type

        if tt == TokenType.INT:
            self._advance()
            return self._make(Literal, start, value=tok.value, kind="int")
        elif tt == TokenType.FLOAT:
            self._advance()
            return self._make(Literal, start, value=tok.value, kind="float")
        elif tt == TokenType.STRING:
            self._advance()
            return self._make(Literal, start, value=tok.value, kind="string")
        elif tt in (TokenType.TRUE, TokenType.FALSE):
            self._advance()
            return self._make(Literal, start, value=tt == TokenType.TRUE, kind="bool")
        elif tt == TokenType.FSTRING:
            self._advance()
            return self._parse_fstring(tok)
        elif tt == TokenType.IDENT:
            path_len = self._struct_init_path_length()
            if path_len:
                return self._parse_struct_init(path_len)
            self._advance()
            return self._make(Identifier, start, name=tok.text)
        elif tt == TokenType.LPAREN:
            self._advance()
            expr = self._parse_expression()
            self._expect(TokenType.RPAREN)
            return expr
        elif tt == TokenType.LBRACKET:
            return self._parse_list()
        elif tt == TokenType.LBRACE:
            return self._parse_dict()
        elif tt == TokenType.FN:
            return self._parse_lambda()
        elif tt == TokenType.MATCH:
            self._advance()
            subject = self._parse_expression()
            self._expect(TokenType.COLON)
            arms = self._parse_indented(lambda: self._parse_arm(inline=True))
            return self._make(MatchExpr, start, subject=subject, arms=arms)
        self._error(f"expected an expression, got {_describe(tok)}")
        raise AssertionError("unreachable")

    def _struct_init_path_length(self) -> int:
        """Length of `Name` / `mod.Name` when followed by `{` with an uppercase last part."""
        i = 0
        while True:
            if self._peek_at(i) != TokenType.IDENT:
                return 0
            if self._peek_at(i + 1) == TokenType.DOT:
                i += 2
                continue
            last = self.tokens[self.pos + i]
            if self._peek_at(i + 1) == TokenType.LBRACE and last.text[:1].isupper():
                return i // 2 + 1
            return 0

    def _parse_struct_init(self, path_len: int) -> StructInit:
        start = self._current().span
        path = [self._advance().text]
        for _ in range(path_len - 1):
            self._expect(TokenType.DOT)
            path.append(self._expect(TokenType.IDENT).text)
        self._expect(TokenType.LBRACE)
        fields: list[FieldInit] = []
        while self._peek() != TokenType.RBRACE:
            if not (self._peek() == TokenType.IDENT and self._peek_at(1) == TokenType.COLON):
                self._error("struct instantiation requires named fields (`field: value`)",
                            code="positional-struct-init")
            tok = self._advance()
            self._advance()
            value = self._parse_expression()
            fields.append(self._make(FieldInit, tok.span, name=tok.text, value=value))
            if not self._match(TokenType.COMMA):
                break
        self._expect(TokenType.RBRACE)
        return self._make(StructInit, start, path=path, fields=fields)

    def _parse_list(self) -> Expr:
        start = self._expect(TokenType.LBRACKET).span
        if self._match(TokenType.RBRACKET):
            return self._make(ListLit, start, elements=[])
        first = self._parse_expression()
        if self._peek() == TokenType.FOR:
            comp = self._parse_comprehension_tail(start, "list", None, first)
            self._expect(TokenType.RBRACKET)
            return self._finish(comp)
        elements = [first]
        while self._match(TokenType.COMMA):
            if self._peek() == TokenType.RBRACKET:
                break
            elements.append(self._parse_expression())
        self._expect(TokenType.RBRACKET)
        return self._make(ListLit, start, elements=elements)

    def _parse_dict(self) -> Expr:
        start = self._expect(TokenType.LBRACE).span
        if self._match(TokenType.RBRACE):
            return self._make(DictLit, start, entries=[])
        key = self._parse_expression()
        self._expect(TokenType.COLON)
        value = self._parse_expression()
        if self._peek() == TokenType.FOR:
            comp = self._parse_comprehension_tail(start, "dict", key, value)
            self._expect(TokenType.RBRACE)
            return self._finish(comp)
        entries = [self._make(DictEntry, key.span or start, key=key, value=value)]
        while self._match(TokenType.COMMA):
            if self._peek() == TokenType.RBRACE:
                break
            k = self._parse_expression()
            self._expect(TokenType.COLON)
            v = self._parse_expression()
            entries.append(self._make(DictEntry, k.span or start, key=k, value=v))
        self._expect(TokenType.RBRACE)
        return self._make(DictLit, start, entries=entries)

    def _parse_comprehension_tail(self, start: SourceSpan, kind: str,
                                  key: Optional[Expr], element: Expr) -> Comprehension:
        self._expect(TokenType.FOR)
        tok = self._expect(TokenType.IDENT, "a loop variable")
        target = self._make(BindingPattern, tok.span, name=tok.text)
        self._expect(TokenType.IN)
        iterable = self._parse_binary(1)
        condition = self._parse_expression() if self._match(TokenType.IF) else None
        # Registered once the closing bracket is consumed so the span covers it.
        return Comprehension(span=start, kind=kind, key=key, element=element,
                             target=target, iterable=iterable, condition=condition)

    def _finish(self, node: N) -> N:
        start = node.span
        end = self._prev.span
        node.span = start.to(end)
        node.id = len(self.nodes)
        self.nodes.append(node)
        return node

    def _parse_lambda(self) -> LambdaExpr:
        start = self._expect(TokenType.FN).span
        self._expect(TokenType.LPAREN)
        params = self._parse_params(TokenType.RPAREN)
        self._expect(TokenType.RPAREN)
        return_type = self._parse_type() if self._match(TokenType.ARROW) else None
        self._expect(TokenType.COLON)
        saved_loop = self._loop_depth
        self._fn_depth += 1
        self._loop_depth = 0
        try:
            body = self._parse_expression()
        finally:
            self._fn_depth -= 1
            self._loop_depth = saved_loop
        return self._make(LambdaExpr, start, params=params, return_type=return_type,
                          body=body)

    def _parse_fstring(self, tok: Token) -> FString:
        parts: list[Expr] = []
        for part in tok.value:
            if isinstance(part, FStringText):
                node = Literal(span=part.span, id=len(self.nodes), value=part.text,
                               kind="string")
                self.nodes.append(node)
                parts.append(node)
            elif isinstance(part, FStringExpr):
                parts.append(self._parse_sub_expression(part))
        prev = self._prev
        self._prev = tok
        node = self._make(FString, tok.span, parts=parts)
        self._prev = prev
        return node

    def _parse_sub_expression(self, part: FStringExpr) -> Expr:
        """Parse a placeholder's own token stream with this parser's arena."""
        saved = (self.tokens, self.pos, self._prev)
        sub_tokens = [t for t in part.tokens if t.type != TokenType.ERROR]
        if len(sub_tokens) != len(part.tokens):
            self.had_lexical_errors = True
        self.tokens, self.pos = sub_tokens, 0
        try:
            if self._peek() == TokenType.EOF:
                self._error("empty expression in f-string", code="empty-placeholder")
            expr = self._parse_expression()
            if self._peek() != TokenType.EOF:
                self._error(f"unexpected {_describe(self._current())} in f-string expression")
            return expr
        finally:
            self.tokens, self.pos, self._prev = saved

    # -------------------------------------------------------------------
    # Patterns
    # -------------------------------------------------------------------

    def _parse_pattern(self) -> Pattern:
        tok = self._current()
        start = tok.span
        tt = tok.type

        if tt == TokenType.IDENT and tok.text == "_":
            self._advance()
            return self._make(WildcardPattern, start)
        if tt in (TokenType.INT, TokenType.FLOAT, TokenType.STRING):
            self._advance()
            kind = {TokenType.INT: "int", TokenType.FLOAT: "float",
                    TokenType.STRING: "string"}[tt]
            return self._make(LiteralPattern, start, value=tok.value, kind=kind)
        if tt in (TokenType.TRUE, TokenType.FALSE):
            self._advance()
            return self._make(LiteralPattern, start, value=tt == TokenType.TRUE, kind="bool")
        if tt == TokenType.MINUS and self._peek_at(1) in (TokenType.INT, TokenType.FLOAT):
            self._advance()
            num = self._advance()
            kind = "int" if num.type == TokenType.INT else "float"
            return self._make(LiteralPattern, start, value=-num.value, kind=kind)
        if tt == TokenType.LBRACKET:
            return self._parse_list_pattern()
        if tt == TokenType.IDENT:
            self._advance()
            path = [tok.text]
            while self._match(TokenType.DOT):
                path.append(self._expect(TokenType.IDENT, "a variant name").text)
            if self._match(TokenType.LBRACE):
                return self._parse_struct_pattern(start, path)
            if self._match(TokenType.LPAREN):
                args: list[Pattern] = []
                while self._peek() != TokenType.RPAREN:
                    args.append(self._parse_pattern())
                    if not self._match(TokenType.COMMA):
                        break
                self._expect(TokenType.RPAREN)
                return self._make(VariantPattern, start, path=path, args=args)
            if len(path) > 1 or path[0][:1].isupper():
                return self._make(VariantPattern, start, path=path, args=[])
            return self._make(BindingPattern, start, name=tok.text)
        self._error(f"expected a pattern, got {_describe(tok)}")
        raise AssertionError("unreachable")

    def _parse_struct_pattern(self, start: SourceSpan, path: list[str]) -> StructPattern:
        fields: list[FieldPattern] = []
        while self._peek() != TokenType.RBRACE:
            if self._match(TokenType.DOTDOT):
                break
            tok = self._expect(TokenType.IDENT, "a field name")
            if self._match(TokenType.COLON):
                sub = self._parse_pattern()
            else:
                sub = self._make(BindingPattern, tok.span, name=tok.text)
            fields.append(self._make(FieldPattern, tok.span, name=tok.text, pattern=sub))
            if not self._match(TokenType.COMMA):
                break
        self._expect(TokenType.RBRACE)
        return self._make(StructPattern, start, path=path, fields=fields)

    def _parse_list_pattern(self) -> ListPattern:
        start = self._expect(TokenType.LBRACKET).span
        prefix: list[Pattern] = []
        suffix: list[Pattern] = []
        rest: Optional[RestPattern] = None
        while self._peek() != TokenType.RBRACKET:
            if self._peek() == TokenType.DOTDOT:
                dot = self._advance()
                if rest is not None:
                    self._error("a list pattern may contain at most one rest element", dot,
                                code="multiple-rest")
                name = None
                if self._peek() == TokenType.IDENT and self._current().text != "_":
                    name = self._advance().text
                elif self._peek() == TokenType.IDENT:
                    self._advance()
                rest = self._make(RestPattern, dot.span, name=name)
            elif rest is None:
                prefix.append(self._parse_pattern())
            else:
                suffix.append(self._parse_pattern())
            if not self._match(TokenType.COMMA):
                break
        self._expect(TokenType.RBRACKET)
        return self._make(ListPattern, start, prefix=prefix, rest=rest, suffix=suffix)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _describe_type(tt: TokenType) -> str:
    for text, kw in _KEYWORD_TEXT.items():
        if kw == tt:
            return f"'{text}'"
    return tt.name


def _describe(tok: Token) -> str:
    if tok.type in (TokenType.NEWLINE, TokenType.INDENT, TokenType.DEDENT, TokenType.EOF):
        return {
            TokenType.NEWLINE: "end of line",
            TokenType.INDENT: "indent",
            TokenType.DEDENT: "dedent",
            TokenType.EOF: "end of input",
        }[tok.type]
    return f"'{tok.text}'"


_KEYWORD_TEXT: dict[str, TokenType] = {
    "(": TokenType.LPAREN, ")": TokenType.RPAREN, "[": TokenType.LBRACKET,
    "]": TokenType.RBRACKET, "{": TokenType.LBRACE, "}": TokenType.RBRACE,
    ":": TokenType.COLON, ",": TokenType.COMMA, "=": TokenType.ASSIGN,
    ">": TokenType.GT, "<": TokenType.LT, ".": TokenType.DOT, "->": TokenType.ARROW,
    "in": TokenType.IN, "else": TokenType.ELSE, "case": TokenType.CASE,
    **KEYWORDS,
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def parse(tokens: list[Token], filename: str = "<stdin>",
          module_name: str = "main") -> tuple[Program, list[Diagnostic]]:
    """Parse a token stream. Returns (program, diagnostics)."""
    parser = Parser(tokens, filename, module_name)
    program = parser.parse()
    return program, parser.diagnostics


def parse_source(source: str, filename: str = "<stdin>",
                 module_name: str = "main") -> tuple[Program, list[Diagnostic]]:
    """Tokenize and parse in one step; diagnostics of both stages in order."""
    tokens, lex_diags = tokenize(source, filename)
    program, parse_diags = parse(tokens, filename, module_name)
    return program, lex_diags + parse_diags
