"""Lexer tests — token kinds, literals, indentation and lexical errors."""

from otterc.errors import ErrorKind
from otterc.lexer import FStringExpr, FStringText, TokenType, dump_tokens, tokenize

T = TokenType


def kinds(source):
    tokens, _ = tokenize(source)
    return [t.type for t in tokens]


class TestTokenSequence:
    """Structural tokens around indented blocks."""

    def test_hello_program(self):
        source = 'fn main():\n    println("Hello")\n'
        assert kinds(source) == [
            T.FN, T.IDENT, T.LPAREN, T.RPAREN, T.COLON, T.NEWLINE,
            T.INDENT, T.IDENT, T.LPAREN, T.STRING, T.RPAREN, T.NEWLINE,
            T.DEDENT, T.EOF,
        ]

    def test_missing_final_newline_still_closes_blocks(self):
        assert kinds("fn f():\n    pass") == [
            T.FN, T.IDENT, T.LPAREN, T.RPAREN, T.COLON, T.NEWLINE,
            T.INDENT, T.PASS, T.NEWLINE, T.DEDENT, T.EOF,
        ]

    def test_multiple_dedents_at_once(self):
        source = "if a:\n    if b:\n        pass\nx\n"
        ks = kinds(source)
        assert ks.count(T.INDENT) == 2
        assert ks.count(T.DEDENT) == 2
        # Both dedents come before the identifier on the last line.
        last_ident = len(ks) - 1 - ks[::-1].index(T.IDENT)
        assert ks[last_ident - 2:last_ident] == [T.DEDENT, T.DEDENT]

    def test_blank_and_comment_lines_are_ignored(self):
        source = "fn f():\n\n    # note\n    pass\n\n# end\n"
        assert kinds(source).count(T.NEWLINE) == 2

    def test_newlines_inside_brackets_are_joined(self):
        source = "let xs = [\n    1,\n        2,\n]\n"
        ks = kinds(source)
        assert T.INDENT not in ks
        assert ks.count(T.NEWLINE) == 1

    def test_keywords_and_identifiers(self):
        tokens, _ = tokenize("match None case is_ok spawn")
        assert [t.type for t in tokens[:5]] == [T.MATCH, T.IDENT, T.CASE, T.IDENT, T.SPAWN]


class TestLiterals:
    def test_numbers(self):
        tokens, diags = tokenize("42 3.5 1e3 0x1F 0b101 1_000")
        assert diags == []
        values = [(t.type, t.value) for t in tokens if t.type in (T.INT, T.FLOAT)]
        assert values == [(T.INT, 42), (T.FLOAT, 3.5), (T.FLOAT, 1000.0),
                          (T.INT, 31), (T.INT, 5), (T.INT, 1000)]

    def test_string_escapes(self):
        tokens, diags = tokenize(r'"a\tb\n\"q\""')
        assert diags == []
        assert tokens[0].value == 'a\tb\n"q"'

    def test_unknown_escape_is_reported_and_lexing_continues(self):
        tokens, diags = tokenize('"bad \\q" + 1\n')
        assert [d.code for d in diags] == ["unknown-escape"]
        assert diags[0].kind == ErrorKind.LEXICAL_ERROR
        assert T.INT in [t.type for t in tokens]

    def test_fstring_parts(self):
        tokens, diags = tokenize('f"x = {x + 1}!"')
        assert diags == []
        parts = tokens[0].value
        assert isinstance(parts[0], FStringText) and parts[0].text == "x = "
        assert isinstance(parts[1], FStringExpr)
        assert [t.type for t in parts[1].tokens] == [T.IDENT, T.PLUS, T.INT, T.EOF]
        assert isinstance(parts[2], FStringText) and parts[2].text == "!"

    def test_fstring_double_braces_are_literal(self):
        tokens, _ = tokenize('f"{{a}}"')
        assert [p.text for p in tokens[0].value] == ["{a}"]


class TestLexicalErrors:
    def test_tab_indentation(self):
        _, diags = tokenize("fn f():\n\tpass\n")
        assert diags[0].code == "tab-indentation"
        assert "line 2, column 1" in diags[0].message

    def test_inconsistent_dedent(self):
        _, diags = tokenize("if a:\n        pass\n    pass\n")
        assert [d.code for d in diags] == ["inconsistent-dedent"]

    def test_unterminated_string_ends_stream(self):
        tokens, diags = tokenize('let s = "open\nlet t = 1\n')
        assert diags[0].code == "unterminated-string"
        assert tokens[-1].type == T.EOF

    def test_non_ascii_digits_are_unexpected_characters(self):
        for source in ("let a = ²\n", "let a = ٣\n"):
            tokens, diags = tokenize(source)
            assert [d.code for d in diags] == ["unexpected-character"]
            assert tokens[-1].type == T.EOF

    def test_non_ascii_digit_after_exponent_is_not_part_of_number(self):
        tokens, diags = tokenize("let a = 1e²\n")
        assert tokens[3].type == T.INT and tokens[3].value == 1
        assert tokens[-1].type == T.EOF

    def test_spans_are_one_based(self):
        tokens, _ = tokenize("let x = 1\n")
        x = tokens[1]
        assert (x.span.line, x.span.column, x.span.start, x.span.end) == (1, 5, 4, 5)


class TestDump:
    def test_dump_is_stable(self):
        tokens, _ = tokenize("fn f():\n    pass\n")
        assert dump_tokens(tokens) == dump_tokens(tokenize("fn f():\n    pass\n")[0])
        assert dump_tokens(tokens).splitlines()[0].startswith("1:1")
