"""Property-based tests for the layout rule.

Random well-indented programs must lex to balanced INDENT/DEDENT pairs,
one pair per block, and parse without diagnostics. Arbitrary text over a
small alphabet must never crash the lexer.
"""

from __future__ import annotations

from hypothesis import given, settings
from hypothesis import strategies as st

from otterc.lexer import TokenType, tokenize
from otterc.parser import parse_source


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

@st.composite
def blocks(draw, depth: int = 0):
    """A list of statements; each is ("pass", None) or ("if true:", body)."""
    stmts = []
    for _ in range(draw(st.integers(min_value=1, max_value=3))):
        if depth < 4 and draw(st.booleans()):
            stmts.append(("if true:", draw(blocks(depth + 1))))
        else:
            stmts.append((draw(st.sampled_from(["pass", "let x = 1", "println(\"hi\")"])), None))
    return stmts


def render(stmts, level: int, blank_lines: bool) -> list[str]:
    lines = []
    for head, body in stmts:
        lines.append("    " * level + head)
        if blank_lines:
            lines.append("")
        if body is not None:
            lines.extend(render(body, level + 1, blank_lines))
    return lines


def count_blocks(stmts) -> int:
    return sum(1 + count_blocks(body) for _, body in stmts if body is not None)


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------

class TestLayoutRule:
    @given(blocks(), st.booleans(), st.booleans())
    @settings(max_examples=150)
    def test_indents_balance_dedents(self, body, blank_lines, final_newline):
        source = "\n".join(["fn main():"] + render(body, 1, blank_lines))
        if final_newline:
            source += "\n"
        tokens, diags = tokenize(source)
        assert diags == []
        indents = sum(1 for t in tokens if t.type == TokenType.INDENT)
        dedents = sum(1 for t in tokens if t.type == TokenType.DEDENT)
        assert indents == dedents == 1 + count_blocks(body)
        assert tokens[-1].type == TokenType.EOF

    @given(blocks())
    @settings(max_examples=100)
    def test_well_indented_programs_parse(self, body):
        source = "\n".join(["fn main():"] + render(body, 1, False)) + "\n"
        _, diags = parse_source(source)
        assert diags == []


class TestLexerRobustness:
    @given(st.text(alphabet="ab019\u00b2\u0663 \t\n()[]{}\".:+-=#_e", max_size=80))
    @settings(max_examples=300)
    def test_arbitrary_text_ends_with_eof(self, text):
        tokens, _ = tokenize(text)
        assert tokens and tokens[-1].type == TokenType.EOF

    @given(st.integers(min_value=0, max_value=2 ** 62))
    def test_integer_literals(self, n):
        tokens, diags = tokenize(f"let x = {n}\n")
        assert diags == []
        ints = [t for t in tokens if t.type == TokenType.INT]
        assert [t.value for t in ints] == [n]
