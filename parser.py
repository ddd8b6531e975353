from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, NoReturn, Optional, Tuple, Union

from lexer import KSParseError, Lexer, SourceLocation, SourceReader, Token
from operators import DEFAULT_BINARY_PRECEDENCE, MAX_USER_PRECEDENCE, MIN_USER_PRECEDENCE, OperatorTable


ANON_FUNCTION_NAME = "__anon_expr"

# Parenthesised, unary and control-flow nesting allowed inside one expression.
MAX_NESTING_DEPTH = 100


class KSNestingError(KSParseError):
    """Raised when an expression nests deeper than MAX_NESTING_DEPTH."""


@dataclass
class NumberLiteral:
    value: float
    location: Optional[SourceLocation] = field(default=None, compare=False, repr=False)


@dataclass
class VariableRef:
    name: str
    location: Optional[SourceLocation] = field(default=None, compare=False, repr=False)


@dataclass
class UnaryOp:
    opcode: str
    operand: "Expr"
    location: Optional[SourceLocation] = field(default=None, compare=False, repr=False)


@dataclass
class BinaryOp:
    opcode: str
    left: "Expr"
    right: "Expr"
    location: Optional[SourceLocation] = field(default=None, compare=False, repr=False)


@dataclass
class VarBinding:
    names: List[Tuple[str, Optional["Expr"]]]
    body: "Expr"
    location: Optional[SourceLocation] = field(default=None, compare=False, repr=False)


@dataclass
class IfExpr:
    condition: "Expr"
    then_branch: "Expr"
    else_branch: "Expr"
    location: Optional[SourceLocation] = field(default=None, compare=False, repr=False)


@dataclass
class ForLoop:
    var_name: str
    start: "Expr"
    end: "Expr"
    step: Optional["Expr"]
    body: "Expr"
    location: Optional[SourceLocation] = field(default=None, compare=False, repr=False)


@dataclass
class Call:
    callee: str
    args: List["Expr"]
    location: Optional[SourceLocation] = field(default=None, compare=False, repr=False)


Expr = Union[NumberLiteral, VariableRef, UnaryOp, BinaryOp, VarBinding, IfExpr, ForLoop, Call]


@dataclass(frozen=True)
class Prototype:
    name: str
    params: Tuple[str, ...] = ()
    is_operator: bool = False
    precedence: int = DEFAULT_BINARY_PRECEDENCE
    location: Optional[SourceLocation] = field(default=None, compare=False, repr=False)

    @property
    def arity(self) -> int:
        return len(self.params)

    @property
    def is_unary(self) -> bool:
        return self.is_operator and self.arity == 1

    @property
    def is_binary(self) -> bool:
        return self.is_operator and self.arity == 2

    @property
    def operator_symbol(self) -> str:
        if not self.is_operator:
            raise ValueError(f"'{self.name}' is not an operator")
        return self.name[-1]


@dataclass
class FunctionDef:
    proto: Prototype
    body: Expr
    location: Optional[SourceLocation] = field(default=None, compare=False, repr=False)


class Parser:
    """Precedence climbing parser over a live token stream.

    Only ``current`` is carried between rules. The operator table is
    consulted on every binary step, so precedences registered while the
    stream is being consumed apply to everything parsed afterwards.
    """

    def __init__(self, lexer: Lexer, operators: OperatorTable) -> None:
        self.lexer = lexer
        self.operators = operators
        self._depth = 0
        self.current: Token = lexer.next_token()

    @classmethod
    def from_source(cls, text: str, operators: Optional[OperatorTable] = None, filename: str = "<string>") -> "Parser":
        return cls(Lexer(SourceReader(text), filename), operators if operators is not None else OperatorTable())

    def advance(self) -> Token:
        self.current = self.lexer.next_token()
        return self.current

    # ---- top level ----

    def parse_definition(self) -> FunctionDef:
        keyword = self._consume("DEF", "Expected 'def'")
        proto = self.parse_prototype()
        body = self.parse_expression()
        return FunctionDef(proto=proto, body=body, location=self._location(keyword))

    def parse_extern(self) -> Prototype:
        self._consume("EXTERN", "Expected 'extern'")
        return self.parse_prototype()

    def parse_top_level_expression(self) -> FunctionDef:
        start = self.current
        body = self.parse_expression()
        location = self._location(start)
        proto = Prototype(name=ANON_FUNCTION_NAME, params=(), location=location)
        return FunctionDef(proto=proto, body=body, location=location)

    def parse_prototype(self) -> Prototype:
        start = self.current
        precedence = DEFAULT_BINARY_PRECEDENCE
        if start.type == "IDENT":
            name = str(start.value)
            kind = 0
            self.advance()
        elif start.type == "UNARY":
            self.advance()
            name = "unary" + self._consume_operator_symbol("Expected unary operator")
            kind = 1
        elif start.type == "BINARY":
            self.advance()
            name = "binary" + self._consume_operator_symbol("Expected binary operator")
            kind = 2
            if self.current.type == "NUMBER":
                value = float(self.current.value)  # type: ignore[arg-type]
                if value < MIN_USER_PRECEDENCE or value > MAX_USER_PRECEDENCE:
                    self._fail(f"Invalid precedence: must be {MIN_USER_PRECEDENCE}..{MAX_USER_PRECEDENCE}")
                precedence = int(value)
                self.advance()
        else:
            self._fail("Expected function name in prototype")

        if not self.current.is_char("("):
            self._fail("Expected '(' in prototype")
        params: List[str] = []
        while self.advance().type == "IDENT":
            params.append(str(self.current.value))
        if not self.current.is_char(")"):
            self._fail("Expected ')' in prototype")
        self.advance()

        if kind and len(params) != kind:
            raise KSParseError("Invalid number of operands for operator", location=self._location(start))
        return Prototype(
            name=name,
            params=tuple(params),
            is_operator=kind != 0,
            precedence=precedence,
            location=self._location(start),
        )

    # ---- expressions ----

    def parse_expression(self) -> Expr:
        lhs = self._parse_unary()
        return self._parse_binary_rhs(0, lhs)

    def _parse_binary_rhs(self, min_precedence: int, lhs: Expr) -> Expr:
        while True:
            precedence = self.operators.get_precedence(self.current)
            if precedence < min_precedence:
                return lhs
            op_token = self.current
            self.advance()
            rhs = self._parse_unary()
            next_precedence = self.operators.get_precedence(self.current)
            if precedence < next_precedence:
                rhs = self._parse_binary_rhs(precedence + 1, rhs)
            lhs = BinaryOp(opcode=str(op_token.value), left=lhs, right=rhs, location=self._location(op_token))

    def _parse_unary(self) -> Expr:
        token = self.current
        if self._depth >= MAX_NESTING_DEPTH:
            raise KSNestingError(
                f"Expression nested deeper than {MAX_NESTING_DEPTH} levels", location=self._location(token)
            )
        self._depth += 1
        try:
            if not self._starts_unary(token):
                return self._parse_primary()
            self.advance()
            operand = self._parse_unary()
            return UnaryOp(opcode=str(token.value), operand=operand, location=self._location(token))
        finally:
            self._depth -= 1

    def _parse_primary(self) -> Expr:
        token = self.current
        if token.type == "IDENT":
            return self._parse_identifier()
        if token.type == "NUMBER":
            self.advance()
            return NumberLiteral(value=float(token.value), location=self._location(token))  # type: ignore[arg-type]
        if token.type == "IF":
            return self._parse_if()
        if token.type == "FOR":
            return self._parse_for()
        if token.type == "VAR":
            return self._parse_var()
        if token.is_char("("):
            self.advance()
            inner = self.parse_expression()
            self._expect_char(")", "Expected ')'")
            return inner
        self._fail("Unknown token when expecting an expression")

    def _parse_identifier(self) -> Expr:
        ident = self.current
        name = str(ident.value)
        self.advance()
        if not self.current.is_char("("):
            return VariableRef(name=name, location=self._location(ident))
        self.advance()
        args: List[Expr] = []
        if not self.current.is_char(")"):
            while True:
                args.append(self.parse_expression())
                if self.current.is_char(")"):
                    break
                if not self.current.is_char(","):
                    self._fail("Expected ')' or ',' in argument list")
                self.advance()
        self.advance()
        return Call(callee=name, args=args, location=self._location(ident))

    def _parse_if(self) -> IfExpr:
        keyword = self.current
        self.advance()
        condition = self.parse_expression()
        self._consume("THEN", "Expected 'then'")
        then_branch = self.parse_expression()
        self._consume("ELSE", "Expected 'else'")
        else_branch = self.parse_expression()
        return IfExpr(
            condition=condition,
            then_branch=then_branch,
            else_branch=else_branch,
            location=self._location(keyword),
        )

    def _parse_for(self) -> ForLoop:
        keyword = self.current
        self.advance()
        var_name = str(self._consume("IDENT", "Expected identifier after 'for'").value)
        self._expect_char("=", "Expected '=' after 'for'")
        start = self.parse_expression()
        self._expect_char(",", "Expected ',' after 'for' start value")
        end = self.parse_expression()
        step: Optional[Expr] = None
        if self.current.is_char(","):
            self.advance()
            step = self.parse_expression()
        self._consume("IN", "Expected 'in' after 'for'")
        body = self.parse_expression()
        return ForLoop(var_name=var_name, start=start, end=end, step=step, body=body, location=self._location(keyword))

    def _parse_var(self) -> VarBinding:
        keyword = self.current
        self.advance()
        if self.current.type != "IDENT":
            self._fail("Expected identifier after 'var'")
        names: List[Tuple[str, Optional[Expr]]] = []
        while True:
            name = str(self.current.value)
            self.advance()
            init: Optional[Expr] = None
            if self.current.is_char("="):
                self.advance()
                init = self.parse_expression()
            names.append((name, init))
            if not self.current.is_char(","):
                break
            self.advance()
            if self.current.type != "IDENT":
                self._fail("Expected identifier list after 'var'")
        self._consume("IN", "Expected 'in' keyword after 'var'")
        body = self.parse_expression()
        return VarBinding(names=names, body=body, location=self._location(keyword))

    # ---- helpers ----

    def _starts_unary(self, token: Token) -> bool:
        if token.type != "CHAR":
            return False
        ch = str(token.value)
        return ch.isascii() and ch not in "(,"

    def _consume_operator_symbol(self, message: str) -> str:
        token = self.current
        if token.type != "CHAR" or not str(token.value).isascii():
            self._fail(message)
        self.advance()
        return str(token.value)

    def _consume(self, token_type: str, message: str) -> Token:
        token = self.current
        if token.type != token_type:
            self._fail(message)
        self.advance()
        return token

    def _expect_char(self, ch: str, message: str) -> Token:
        token = self.current
        if not token.is_char(ch):
            self._fail(message)
        self.advance()
        return token

    def _fail(self, message: str) -> NoReturn:
        token = self.current
        raise KSParseError(f"{message}, found {_describe(token)}", location=self._location(token))

    def _location(self, token: Token) -> SourceLocation:
        return self.lexer.location(token)


def _describe(token: Token) -> str:
    if token.type == "EOF":
        return "end of input"
    if token.type == "CHAR":
        return f"'{token.value}'"
    if token.type == "NUMBER":
        return f"number {token.value:g}"
    if token.type == "IDENT":
        return f"identifier '{token.value}'"
    return f"'{token.value}'"
