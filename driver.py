"""Compilation driver: one top-level form at a time, REPL style."""

from __future__ import annotations
import json
import sys
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

import numpy as np

from codegen import CodeGenerator, CompiledUnit, KSElaborationError
from lexer import KSError, KSParseError, Lexer, SourceLocation, SourceReader
from operators import OperatorTable
from parser import ANON_FUNCTION_NAME, FunctionDef, KSNestingError, Parser, Prototype
from prototypes import PrototypeRegistry
from session import ExecutionSession, HostLibrary, KSExecutionError


Sink = Callable[[str], None]


class DriverState(Enum):
    AWAITING_TOKEN = "awaiting-token"
    DISPATCH = "dispatch"
    DEFINING = "defining"
    DECLARING = "declaring"
    EVALUATING = "evaluating"
    HALTED = "halted"


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    form: str
    name: Optional[str]
    location: Optional[SourceLocation]
    outcome: str
    unit: Optional[str] = None
    value: Optional[float] = None
    message: Optional[str] = None
    snapshot: Optional[Dict[str, Any]] = None


class StateLogger:
    def __init__(self, verbose: bool) -> None:
        self.verbose = verbose
        self.entries: List[StateEntry] = []
        self.next_state_index = 0

    def record(
        self,
        *,
        form: str,
        name: Optional[str],
        location: Optional[SourceLocation],
        outcome: str,
        unit: Optional[str] = None,
        value: Optional[float] = None,
        message: Optional[str] = None,
        snapshot: Optional[Dict[str, Any]] = None,
    ) -> StateEntry:
        step_index = self.next_state_index
        entry = StateEntry(
            step_index=step_index,
            state_id=f"s_{step_index:06d}",
            form=form,
            name=name,
            location=location,
            outcome=outcome,
            unit=unit,
            value=value,
            message=message,
            snapshot=snapshot if self.verbose else None,
        )
        self.entries.append(entry)
        self.next_state_index += 1
        return entry

    def to_json(self) -> str:
        rendered: List[Dict[str, Any]] = []
        for entry in self.entries:
            data = asdict(entry)
            if entry.location is not None:
                data["location"] = str(entry.location)
            rendered.append(data)
        return json.dumps(rendered, indent=2)


class Driver:
    """Owns the operator table, prototype registry, backend and session.

    Nothing is shared between two drivers.
    """

    def __init__(
        self,
        *,
        filename: str = "<stdin>",
        output_sink: Optional[Sink] = None,
        diagnostic_sink: Optional[Sink] = None,
        dump: bool = True,
        verbose: bool = False,
        host: Optional[HostLibrary] = None,
    ) -> None:
        self.filename = filename
        self.output_sink = output_sink or (lambda text: print(text, end=""))
        self.diagnostic_sink = diagnostic_sink or (lambda text: print(text, end="", file=sys.stderr))
        self.dump = dump
        self.verbose = verbose
        self.operators = OperatorTable()
        self.prototypes = PrototypeRegistry()
        self.codegen = CodeGenerator(self.prototypes)
        self.session = ExecutionSession(host=host or HostLibrary(self.output_sink))
        self.logger = StateLogger(verbose=verbose)
        self.state = DriverState.AWAITING_TOKEN
        self.parser: Optional[Parser] = None
        self.results: List[np.float64] = []

    def run(self, source: Union[str, SourceReader]) -> List[np.float64]:
        """Process every top-level form in ``source``.

        Returns the values of the expressions evaluated during this call.
        Raises ``KSExecutionError`` when a loaded unit cannot be run.
        """
        reader = source if isinstance(source, SourceReader) else SourceReader(source)
        reader.reset_prompt()
        self.parser = Parser(Lexer(reader, self.filename), self.operators)
        self.state = DriverState.AWAITING_TOKEN
        start = len(self.results)
        while self.state is not DriverState.HALTED:
            self.step()
        return self.results[start:]

    def step(self) -> None:
        parser = self._require_parser()
        self.state = DriverState.DISPATCH
        token = parser.current
        if token.type == "EOF":
            self.state = DriverState.HALTED
            return
        if token.is_char(";"):
            parser.advance()
        elif token.type == "DEF":
            self.state = DriverState.DEFINING
            self._handle_definition()
        elif token.type == "EXTERN":
            self.state = DriverState.DECLARING
            self._handle_extern()
        else:
            self.state = DriverState.EVALUATING
            self._handle_top_level_expression()
        self._await_next_form()

    # ---- handlers ----

    def _handle_definition(self) -> None:
        parser = self._require_parser()
        start = parser.lexer.location(parser.current)
        try:
            func = parser.parse_definition()
        except KSParseError as error:
            self._recover("definition", None, start, error)
            return
        try:
            unit = self.define(func)
        except KSElaborationError as error:
            self._report("definition", func.proto.name, func.location, error)
            return
        self._dump("Read function definition:", unit)
        self.logger.record(
            form="definition",
            name=func.proto.name,
            location=func.location,
            outcome="ok",
            unit=unit.name,
            snapshot=self._snapshot(),
        )

    def _handle_extern(self) -> None:
        parser = self._require_parser()
        start = parser.lexer.location(parser.current)
        try:
            proto = parser.parse_extern()
        except KSParseError as error:
            self._recover("extern", None, start, error)
            return
        try:
            unit = self.declare_extern(proto)
        except KSElaborationError as error:
            self._report("extern", proto.name, proto.location, error)
            return
        self._dump("Read extern:", unit)
        self.logger.record(
            form="extern",
            name=proto.name,
            location=proto.location,
            outcome="ok",
            unit=unit.name,
            snapshot=self._snapshot(),
        )

    def _handle_top_level_expression(self) -> None:
        parser = self._require_parser()
        start = parser.lexer.location(parser.current)
        try:
            func = parser.parse_top_level_expression()
        except KSParseError as error:
            self._recover("expression", None, start, error)
            return
        try:
            unit = self.compile_function(func)
        except KSElaborationError as error:
            self._report("expression", None, func.location, error)
            return
        self._dump("Read top-level expression:", unit)
        value = self.evaluate(unit)
        self.results.append(value)
        self.output_sink(f"Evaluated to {value:f}\n")
        self.logger.record(
            form="expression",
            name=None,
            location=func.location,
            outcome="ok",
            unit=unit.name,
            value=float(value),
            snapshot=self._snapshot(),
        )

    # ---- compilation protocol ----

    def compile_function(self, func: FunctionDef) -> CompiledUnit:
        proto = func.proto
        if self.prototypes.is_defined(proto.name):
            raise KSElaborationError(f"Function '{proto.name}' cannot be redefined", location=proto.location)
        self._check_conflict(proto)
        unit = self.codegen.begin_unit()
        handle = self.codegen.declare_function(unit, proto)
        self.codegen.define_function_body(handle, func.body)
        return self.codegen.finalize_unit(unit)

    def define(self, func: FunctionDef) -> CompiledUnit:
        """Compile a named definition and keep its unit loaded for good."""
        unit = self.compile_function(func)
        self.session.load(unit)
        proto = func.proto
        self.prototypes.declare(proto)
        self.prototypes.mark_defined(proto.name)
        if proto.is_binary:
            self.operators.set_precedence(proto.operator_symbol, proto.precedence)
        return unit

    def declare_extern(self, proto: Prototype) -> CompiledUnit:
        self._check_conflict(proto)
        self.prototypes.declare(proto)
        unit = self.codegen.begin_unit()
        self.codegen.declare_function(unit, proto)
        return self.codegen.finalize_unit(unit)

    def evaluate(self, unit: CompiledUnit) -> np.float64:
        """Load a single-use expression unit, run it and unload it again."""
        handle = self.session.load(unit)
        try:
            if self.session.resolve_symbol(ANON_FUNCTION_NAME) is None:
                raise KSExecutionError(f"Symbol '{ANON_FUNCTION_NAME}' missing from {unit.name}")
            return self.session.invoke(ANON_FUNCTION_NAME)
        finally:
            self.session.unload(handle)

    # ---- helpers ----

    def _check_conflict(self, proto: Prototype) -> None:
        known = self.prototypes.get(proto.name)
        if known is not None and known.arity != proto.arity:
            status = "defined" if self.prototypes.is_defined(proto.name) else "declared"
            raise KSElaborationError(
                f"Function '{proto.name}' is {status} with {known.arity} arguments, redeclared with {proto.arity}",
                location=proto.location,
            )

    def _recover(self, form: str, name: Optional[str], location: SourceLocation, error: KSParseError) -> None:
        self._report(form, name, location, error)
        parser = self._require_parser()
        if isinstance(error, KSNestingError):
            # The rest of an over-deep form cannot be parsed; resume after its ';'.
            while parser.current.type != "EOF" and not parser.current.is_char(";"):
                parser.advance()
            return
        # Skip the offending token so the next form starts cleanly.
        parser.advance()

    def _report(self, form: str, name: Optional[str], location: Optional[SourceLocation], error: KSError) -> None:
        self.diagnostic_sink(error.describe() + "\n")
        outcome = "parse_error" if isinstance(error, KSParseError) else "elaboration_error"
        self.logger.record(
            form=form,
            name=name,
            location=error.location or location,
            outcome=outcome,
            message=error.message,
            snapshot=self._snapshot(),
        )

    def _dump(self, heading: str, unit: CompiledUnit) -> None:
        if self.dump:
            self.diagnostic_sink(f"{heading}\n{unit.source}\n")

    def _snapshot(self) -> Optional[Dict[str, Any]]:
        if not self.verbose:
            return None
        return {"operators": self.operators.snapshot(), "prototypes": self.prototypes.names()}

    def _await_next_form(self) -> None:
        parser = self._require_parser()
        self.state = DriverState.HALTED if parser.current.type == "EOF" else DriverState.AWAITING_TOKEN
        parser.lexer.reader.reset_prompt()

    def _require_parser(self) -> Parser:
        if self.parser is None:
            raise KSError("Driver.run() has not been started")
        return self.parser
