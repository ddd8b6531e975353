from typing import List

import pytest

from lexer import Lexer, SourceReader, Token, parse_number


def types(text: str) -> List[str]:
    return [token.type for token in Lexer(text).tokenize()]


def test_keywords_and_identifiers():
    assert types("def extern if then else for in var unary binary foo x1") == [
        "DEF", "EXTERN", "IF", "THEN", "ELSE", "FOR", "IN", "VAR", "UNARY", "BINARY", "IDENT", "IDENT", "EOF",
    ]


def test_identifier_text_is_captured():
    tokens = Lexer("fib2(x)").tokenize()
    assert tokens[0] == Token("IDENT", "fib2", 1, 1)
    assert [t.value for t in tokens[1:4]] == ["(", "x", ")"]


def test_numbers():
    tokens = Lexer("42 1.5 .25").tokenize()
    assert [t.value for t in tokens[:3]] == [42.0, 1.5, 0.25]
    assert all(t.type == "NUMBER" for t in tokens[:3])


@pytest.mark.parametrize("text, expected", [("1.2.3", 1.2), (".", 0.0), ("3.", 3.0), ("..5", 0.0)])
def test_malformed_numbers_truncate(text, expected):
    assert parse_number(text) == expected
    token = Lexer(text).next_token()
    assert token.type == "NUMBER"
    assert token.value == expected


def test_other_characters_are_returned_as_themselves():
    tokens = Lexer("a | b; @").tokenize()
    assert [(t.type, t.value) for t in tokens] == [
        ("IDENT", "a"), ("CHAR", "|"), ("IDENT", "b"), ("CHAR", ";"), ("CHAR", "@"), ("EOF", None),
    ]


def test_comments_are_skipped():
    assert types("# a comment\n  42 # trailing\n") == ["NUMBER", "EOF"]


def test_comment_at_end_of_input():
    assert types("1 # no newline") == ["NUMBER", "EOF"]


def test_end_of_input_is_sticky():
    lexer = Lexer("x")
    assert lexer.next_token().type == "IDENT"
    assert lexer.next_token().type == "EOF"
    assert lexer.next_token().type == "EOF"


def test_token_positions():
    tokens = Lexer("a\n  bc + 1").tokenize()
    assert (tokens[0].line, tokens[0].column) == (1, 1)
    assert (tokens[1].line, tokens[1].column) == (2, 3)
    assert (tokens[2].line, tokens[2].column) == (2, 6)


def test_reader_pulls_lines_with_prompts():
    lines = ["def f(x)", "x + 1;"]
    prompts: List[str] = []

    def provider(prompt: str) -> str:
        prompts.append(prompt)
        if not lines:
            raise EOFError
        return lines.pop(0)

    reader = SourceReader(line_provider=provider, prompt="ready> ", continuation_prompt="...> ")
    tokens = Lexer(reader).tokenize()
    assert [t.type for t in tokens] == ["DEF", "IDENT", "CHAR", "IDENT", "CHAR", "IDENT", "CHAR", "NUMBER", "CHAR", "EOF"]
    assert prompts == ["ready> ", "...> ", "...> "]
    assert tokens[5].line == 2


def test_reader_prompt_reset():
    prompts: List[str] = []

    def provider(prompt: str) -> str:
        prompts.append(prompt)
        if len(prompts) > 2:
            raise EOFError
        return "1;"

    reader = SourceReader(line_provider=provider, prompt="p1", continuation_prompt="p2")
    lexer = Lexer(reader)
    assert lexer.next_token().value == 1.0
    assert lexer.next_token().value == ";"
    reader.reset_prompt()
    assert lexer.next_token().value == 1.0
    assert prompts == ["p1", "p1"]
