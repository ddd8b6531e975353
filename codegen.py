from __future__ import annotations
import math
from dataclasses import dataclass, field
from types import CodeType
from typing import Dict, List, Optional, Tuple

from lexer import KSError, SourceLocation
from parser import (
    BinaryOp,
    Call,
    Expr,
    ForLoop,
    IfExpr,
    NumberLiteral,
    Prototype,
    UnaryOp,
    VarBinding,
    VariableRef,
)
from prototypes import PrototypeRegistry
from scope import BindingEnvironment, StorageHandle


INDENT = "    "

# Built-in binary operators, lowered inline. "<" yields exactly 0.0 or 1.0;
# an unordered comparison (NaN operand) is false.
BUILTIN_BINARY: Dict[str, str] = {
    "+": "{left} + {right}",
    "-": "{left} - {right}",
    "*": "{left} * {right}",
    "<": "f64({left} < {right})",
}


class KSElaborationError(KSError):
    """Raised when an AST cannot be lowered into a compilation unit."""

    label = "ElaborationError"


def mangle(name: str) -> str:
    return "ks_" + "".join(ch if ch.isascii() and ch.isalnum() else f"_{ord(ch):02x}" for ch in name)


@dataclass(frozen=True)
class UnitSymbol:
    name: str
    symbol: str
    arity: int


@dataclass
class FunctionHandle:
    unit: "UnitBuilder"
    prototype: Prototype
    symbol: str
    params: List[StorageHandle] = field(default_factory=list)
    body: Optional[List[str]] = None

    @property
    def name(self) -> str:
        return self.prototype.name

    @property
    def has_body(self) -> bool:
        return self.body is not None


@dataclass
class UnitBuilder:
    name: str
    functions: Dict[str, FunctionHandle] = field(default_factory=dict)
    constant_lines: List[str] = field(default_factory=list)
    _constants: Dict[str, str] = field(default_factory=dict)

    def get_function(self, name: str) -> Optional[FunctionHandle]:
        return self.functions.get(name)

    def constant(self, value: float) -> str:
        key = float(value).hex()
        existing = self._constants.get(key)
        if existing is not None:
            return existing
        const_name = f"c{len(self._constants)}"
        literal = repr(float(value)) if math.isfinite(value) else repr(str(float(value)))
        self.constant_lines.append(f"{const_name} = f64({literal})")
        self._constants[key] = const_name
        return const_name


@dataclass(frozen=True)
class CompiledUnit:
    name: str
    source: str
    code: CodeType = field(repr=False)
    exports: Dict[str, UnitSymbol]
    imports: Dict[str, UnitSymbol]


class CodeGenerator:
    """Lowers prototypes and function bodies into Python source units.

    Every unit is one Python module. Functions that a unit only declares are
    left as names for the execution session to link when the unit is loaded.
    """

    def __init__(self, prototypes: PrototypeRegistry) -> None:
        self.prototypes = prototypes
        self._unit_counter = 0

    def begin_unit(self) -> UnitBuilder:
        unit = UnitBuilder(name=f"unit_{self._unit_counter:04d}")
        self._unit_counter += 1
        return unit

    def declare_function(self, unit: UnitBuilder, proto: Prototype) -> FunctionHandle:
        existing = unit.get_function(proto.name)
        if existing is not None:
            if existing.prototype.arity != proto.arity:
                raise KSElaborationError(
                    f"Function '{proto.name}' redeclared with {proto.arity} arguments, previously {existing.prototype.arity}",
                    location=proto.location,
                )
            return existing
        handle = FunctionHandle(unit=unit, prototype=proto, symbol=mangle(proto.name))
        unit.functions[proto.name] = handle
        return handle

    def define_function_body(self, handle: FunctionHandle, body: Expr) -> None:
        if handle.has_body:
            raise KSElaborationError(f"Function '{handle.name}' cannot be redefined", location=handle.prototype.location)
        try:
            params, lines = FunctionLowering(self, handle).lower(body)
        except RecursionError as exc:
            raise KSElaborationError(
                f"Body of '{handle.name}' is nested too deeply to compile", location=handle.prototype.location
            ) from exc
        handle.params = params
        handle.body = lines

    def finalize_unit(self, unit: UnitBuilder) -> CompiledUnit:
        lines: List[str] = [f"# {unit.name}"]
        exports: Dict[str, UnitSymbol] = {}
        imports: Dict[str, UnitSymbol] = {}
        for handle in unit.functions.values():
            entry = UnitSymbol(name=handle.name, symbol=handle.symbol, arity=handle.prototype.arity)
            if handle.has_body:
                exports[handle.name] = entry
            else:
                imports[handle.name] = entry
                lines.append(f"# declare {handle.symbol}({', '.join(handle.prototype.params)})")
        lines.extend(unit.constant_lines)
        for handle in unit.functions.values():
            if handle.body is None:
                continue
            lines.append("")
            lines.append(f"def {handle.symbol}({', '.join(handle.params)}):")
            lines.extend(handle.body)
        source = "\n".join(lines) + "\n"
        try:
            code = compile(source, f"<{unit.name}>", "exec")
        except (SyntaxError, RecursionError) as exc:
            raise KSElaborationError(f"Unit {unit.name} could not be compiled: {exc}") from exc
        return CompiledUnit(name=unit.name, source=source, code=code, exports=exports, imports=imports)


class FunctionLowering:
    def __init__(self, codegen: CodeGenerator, handle: FunctionHandle) -> None:
        self.codegen = codegen
        self.handle = handle
        self.unit = handle.unit
        self.env = BindingEnvironment()
        self.lines: List[str] = []
        self._depth = 1
        self._temp_count = 0
        self._storage_count = 0

    def lower(self, body: Expr) -> Tuple[List[StorageHandle], List[str]]:
        names = list(self.handle.prototype.params)
        params = [self._new_storage(name) for name in names]
        with self.env.scope(list(zip(names, params))):
            result = self._lower(body)
        self._emit(f"return {result}")
        return params, self.lines

    def _lower(self, expr: Expr) -> str:
        if isinstance(expr, NumberLiteral):
            return self.unit.constant(expr.value)
        if isinstance(expr, VariableRef):
            return self._lower_variable(expr)
        if isinstance(expr, UnaryOp):
            return self._lower_unary(expr)
        if isinstance(expr, BinaryOp):
            return self._lower_binary(expr)
        if isinstance(expr, VarBinding):
            return self._lower_var_binding(expr)
        if isinstance(expr, IfExpr):
            return self._lower_if(expr)
        if isinstance(expr, ForLoop):
            return self._lower_for(expr)
        if isinstance(expr, Call):
            return self._lower_call(expr)
        raise KSElaborationError(f"Cannot lower {type(expr).__name__}", location=getattr(expr, "location", None))

    def _lower_variable(self, expr: VariableRef) -> str:
        storage = self.env.lookup(expr.name)
        if storage is None:
            raise KSElaborationError(f"Unknown variable name '{expr.name}'", location=expr.location)
        return self._assign_temp(storage)

    def _lower_unary(self, expr: UnaryOp) -> str:
        operand = self._lower(expr.operand)
        callee = self._resolve("unary" + expr.opcode)
        if callee is None:
            raise KSElaborationError(f"Unknown unary operator '{expr.opcode}'", location=expr.location)
        return self._emit_call(callee, [operand], expr.location)

    def _lower_binary(self, expr: BinaryOp) -> str:
        # Walk the left spine iteratively; long left-associative chains stay flat.
        chain: List[BinaryOp] = [expr]
        while isinstance(chain[-1].left, BinaryOp):
            chain.append(chain[-1].left)
        value = self._lower(chain[-1].left)
        for node in reversed(chain):
            value = self._apply_binary(node, value, self._lower(node.right))
        return value

    def _apply_binary(self, expr: BinaryOp, left: str, right: str) -> str:
        template = BUILTIN_BINARY.get(expr.opcode)
        if template is not None:
            return self._assign_temp(template.format(left=left, right=right))
        callee = self._resolve("binary" + expr.opcode)
        if callee is None:
            raise KSElaborationError(f"Unknown binary operator '{expr.opcode}'", location=expr.location)
        return self._emit_call(callee, [left, right], expr.location)

    def _lower_call(self, expr: Call) -> str:
        callee = self._resolve(expr.callee)
        if callee is None:
            raise KSElaborationError(f"Unknown function referenced '{expr.callee}'", location=expr.location)
        self._check_arity(callee, len(expr.args), expr.location)
        args = [self._lower(arg) for arg in expr.args]
        return self._emit_call(callee, args, expr.location)

    def _lower_var_binding(self, expr: VarBinding) -> str:
        saved: List[Tuple[str, Optional[StorageHandle]]] = []
        try:
            for name, init in expr.names:
                value = self._lower(init) if init is not None else self.unit.constant(0.0)
                storage = self._new_storage(name)
                self._emit(f"{storage} = {value}")
                saved.append((name, self.env.bind(name, storage)))
            return self._lower(expr.body)
        finally:
            for name, previous in reversed(saved):
                self.env.restore(name, previous)

    def _lower_if(self, expr: IfExpr) -> str:
        condition = self._lower(expr.condition)
        result = self._new_temp()
        self._emit(f"if truthy({condition}):")
        self._depth += 1
        self._emit(f"{result} = {self._lower(expr.then_branch)}")
        self._depth -= 1
        self._emit("else:")
        self._depth += 1
        self._emit(f"{result} = {self._lower(expr.else_branch)}")
        self._depth -= 1
        return result

    def _lower_for(self, expr: ForLoop) -> str:
        start = self._lower(expr.start)
        storage = self._new_storage(expr.var_name)
        self._emit(f"{storage} = {start}")
        with self.env.scope([(expr.var_name, storage)]):
            self._emit("while True:")
            self._depth += 1
            self._lower(expr.body)
            step = self._lower(expr.step) if expr.step is not None else self.unit.constant(1.0)
            end = self._lower(expr.end)
            self._emit(f"{storage} = {storage} + {step}")
            self._emit(f"if not truthy({end}):")
            self._emit(INDENT + "break")
            self._depth -= 1
        return self.unit.constant(0.0)

    def _resolve(self, name: str) -> Optional[FunctionHandle]:
        return self.codegen.prototypes.resolve(name, self.unit, self.codegen.declare_function)

    def _check_arity(self, callee: FunctionHandle, supplied: int, location: Optional[SourceLocation]) -> None:
        expected = callee.prototype.arity
        if supplied != expected:
            raise KSElaborationError(
                f"Incorrect number of arguments passed to '{callee.name}': expected {expected}, got {supplied}",
                location=location,
            )

    def _emit_call(self, callee: FunctionHandle, args: List[str], location: Optional[SourceLocation]) -> str:
        self._check_arity(callee, len(args), location)
        return self._assign_temp(f"{callee.symbol}({', '.join(args)})")

    def _assign_temp(self, value: str) -> str:
        temp = self._new_temp()
        self._emit(f"{temp} = {value}")
        return temp

    def _new_temp(self) -> str:
        name = f"t{self._temp_count}"
        self._temp_count += 1
        return name

    def _new_storage(self, name: str) -> StorageHandle:
        storage = f"{name}_{self._storage_count}"
        self._storage_count += 1
        return storage

    def _emit(self, line: str) -> None:
        self.lines.append(INDENT * self._depth + line)
