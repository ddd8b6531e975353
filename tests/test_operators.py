import pytest

from lexer import KSError, Token
from operators import BUILTIN_PRECEDENCE, NO_PRECEDENCE, OperatorTable


def char(ch: str) -> Token:
    return Token("CHAR", ch, 1, 1)


def test_seeded_with_builtins():
    table = OperatorTable()
    assert table.snapshot() == {"<": 10, "+": 20, "-": 20, "*": 40}
    assert table.get_precedence(char("*")) == 40


def test_tables_do_not_share_state():
    first = OperatorTable()
    second = OperatorTable()
    first.set_precedence("|", 5)
    assert not second.has("|")
    assert "|" not in BUILTIN_PRECEDENCE


def test_unknown_and_non_character_tokens():
    table = OperatorTable()
    assert table.get_precedence(char("|")) == NO_PRECEDENCE
    assert table.get_precedence(char("(")) == NO_PRECEDENCE
    assert table.get_precedence(Token("IDENT", "x", 1, 1)) == NO_PRECEDENCE
    assert table.get_precedence(Token("EOF", None, 1, 1)) == NO_PRECEDENCE
    assert NO_PRECEDENCE < 1


def test_set_precedence_overwrites():
    table = OperatorTable()
    table.set_precedence("|", 5)
    table.set_precedence("+", 50)
    assert table.precedence_of("|") == 5
    assert table.precedence_of("+") == 50


@pytest.mark.parametrize("op, precedence", [("|", 0), ("|", -3), ("||", 5), ("", 5)])
def test_invalid_entries_are_rejected(op, precedence):
    with pytest.raises(KSError):
        OperatorTable().set_precedence(op, precedence)
