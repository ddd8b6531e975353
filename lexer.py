from __future__ import annotations
import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Union


class KSError(Exception):
    """Base class for front end and driver errors."""

    label = "Error"

    def __init__(self, message: str, *, location: Optional["SourceLocation"] = None) -> None:
        super().__init__(message)
        self.message = message
        self.location = location

    def describe(self) -> str:
        if self.location is None:
            return f"{self.label}: {self.message}"
        return f"{self.label}: {self.message} at {self.location}"


class KSParseError(KSError):
    """Raised when parsing fails."""

    label = "ParseError"


@dataclass(frozen=True)
class SourceLocation:
    file: str
    line: int
    column: int

    def __str__(self) -> str:
        return f"{self.file}:{self.line}:{self.column}"


@dataclass
class Token:
    type: str
    value: Union[str, float, None]
    line: int
    column: int

    def is_char(self, ch: str) -> bool:
        return self.type == "CHAR" and self.value == ch


KEYWORDS = {
    "def": "DEF",
    "extern": "EXTERN",
    "if": "IF",
    "then": "THEN",
    "else": "ELSE",
    "for": "FOR",
    "in": "IN",
    "var": "VAR",
    "unary": "UNARY",
    "binary": "BINARY",
}

WHITESPACE = " \t\n\r\v\f"
LETTERS = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
DIGITS = "0123456789"

_FLOAT_PREFIX = re.compile(r"\d+\.?\d*|\.\d+")


def parse_number(text: str) -> float:
    # Longest prefix that forms a float; "1.2.3" reads as 1.2 and "." as 0.0.
    match = _FLOAT_PREFIX.match(text)
    if match is None:
        return 0.0
    return float(match.group(0))


LineProvider = Callable[[str], str]


class SourceReader:
    """Character stream over a string or over lines pulled from a provider.

    A provider behaves like ``input``: it receives the prompt to show and
    raises ``EOFError`` once input is exhausted.
    """

    def __init__(
        self,
        text: str = "",
        *,
        line_provider: Optional[LineProvider] = None,
        prompt: str = "",
        continuation_prompt: str = "",
    ) -> None:
        self._buffer = text
        self._index = 0
        self._line_provider = line_provider
        self._exhausted = line_provider is None
        self.primary_prompt = prompt
        self.continuation_prompt = continuation_prompt
        self.prompt = prompt

    def reset_prompt(self) -> None:
        self.prompt = self.primary_prompt

    def read(self) -> str:
        while self._index >= len(self._buffer):
            if self._exhausted or self._line_provider is None:
                return ""
            try:
                line = self._line_provider(self.prompt)
            except EOFError:
                self._exhausted = True
                return ""
            self.prompt = self.continuation_prompt
            self._buffer = line + "\n"
            self._index = 0
        ch = self._buffer[self._index]
        self._index += 1
        return ch


class Lexer:
    def __init__(self, source: Union[str, SourceReader], filename: str = "<string>") -> None:
        self.reader = source if isinstance(source, SourceReader) else SourceReader(source)
        self.filename = filename
        self.line = 1
        self.column = 0
        # One character of lookahead; a space so the first call starts by skipping it.
        self._last = " "

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        while True:
            token = self.next_token()
            tokens.append(token)
            if token.type == "EOF":
                return tokens

    def next_token(self) -> Token:
        while True:
            while self._last != "" and self._last in WHITESPACE:
                self._advance()

            ch = self._last
            line, column = self.line, self.column

            if ch != "" and ch in LETTERS:
                text = self._consume_while(LETTERS + DIGITS)
                token_type = KEYWORDS.get(text, "IDENT")
                return Token(token_type, text, line, column)

            if ch != "" and ch in DIGITS + ".":
                text = self._consume_while(DIGITS + ".")
                return Token("NUMBER", parse_number(text), line, column)

            if ch == "#":
                self._consume_comment()
                if self._last != "":
                    continue

            if self._last == "":
                return Token("EOF", None, self.line, self.column)

            self._advance()
            return Token("CHAR", ch, line, column)

    def location(self, token: Token) -> SourceLocation:
        return SourceLocation(file=self.filename, line=token.line, column=token.column)

    def _consume_while(self, allowed: str) -> str:
        chars: List[str] = []
        while self._last != "" and self._last in allowed:
            chars.append(self._last)
            self._advance()
        return "".join(chars)

    def _consume_comment(self) -> None:
        while self._last not in ("", "\n", "\r"):
            self._advance()

    def _advance(self) -> None:
        if self._last == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self._last = self.reader.read()
