from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict

from lexer import KSError, Token


# Higher binds tighter.
BUILTIN_PRECEDENCE: Dict[str, int] = {
    "<": 10,
    "+": 20,
    "-": 20,
    "*": 40,
}

DEFAULT_BINARY_PRECEDENCE = 30
MIN_USER_PRECEDENCE = 1
MAX_USER_PRECEDENCE = 100

# Below every valid precedence: parsing of a binary chain stops here.
NO_PRECEDENCE = -1


@dataclass
class OperatorTable:
    _precedence: Dict[str, int] = field(default_factory=lambda: dict(BUILTIN_PRECEDENCE))

    def set_precedence(self, op: str, precedence: int) -> None:
        if not isinstance(op, str) or len(op) != 1:
            raise KSError(f"Operator must be a single character, got {op!r}")
        if precedence < 1:
            raise KSError(f"Precedence of '{op}' must be positive, got {precedence}")
        self._precedence[op] = int(precedence)

    def get_precedence(self, token: Token) -> int:
        if token.type != "CHAR":
            return NO_PRECEDENCE
        return self.precedence_of(str(token.value))

    def precedence_of(self, op: str) -> int:
        return self._precedence.get(op, NO_PRECEDENCE)

    def has(self, op: str) -> bool:
        return op in self._precedence

    def snapshot(self) -> Dict[str, int]:
        return dict(self._precedence)
