from __future__ import annotations
import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import numpy as np

from codegen import CompiledUnit, UnitSymbol
from lexer import KSError


logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


class KSExecutionError(KSError):
    """Raised when a compiled unit cannot be linked or run. Not recoverable."""

    label = "ExecutionError"


OutputSink = Callable[[str], None]
SessionHandle = int


def truthy(value: Any) -> bool:
    # Ordered and not equal to zero; NaN is false.
    return bool(value != 0.0) and not bool(np.isnan(value))


@dataclass
class HostFunction:
    name: str
    arity: int
    impl: Callable[..., Any]


class HostLibrary:
    """Functions an ``extern`` binds to when no loaded unit defines the name."""

    def __init__(self, output_sink: Optional[OutputSink] = None) -> None:
        self.output_sink = output_sink or (lambda text: print(text, end=""))
        self.table: Dict[str, HostFunction] = {}
        self._register_math("sin", 1, np.sin)
        self._register_math("cos", 1, np.cos)
        self._register_math("tan", 1, np.tan)
        self._register_math("atan", 1, np.arctan)
        self._register_math("atan2", 2, np.arctan2)
        self._register_math("sqrt", 1, np.sqrt)
        self._register_math("exp", 1, np.exp)
        self._register_math("log", 1, np.log)
        self._register_math("pow", 2, np.power)
        self._register_math("fabs", 1, np.fabs)
        self._register_math("floor", 1, np.floor)
        self._register_math("ceil", 1, np.ceil)
        self._register_math("fmod", 2, np.fmod)
        self.register("putchard", 1, self._putchard)
        self.register("printd", 1, self._printd)

    def register(self, name: str, arity: int, impl: Callable[..., Any]) -> None:
        self.table[name] = HostFunction(name=name, arity=arity, impl=impl)

    def get(self, name: str) -> Optional[HostFunction]:
        return self.table.get(name)

    def _register_math(self, name: str, arity: int, ufunc: Callable[..., Any]) -> None:
        self.register(name, arity, lambda *args: np.float64(ufunc(*args)))

    def _putchard(self, value: Any) -> np.float64:
        # Only the low byte is written, like a C char conversion.
        if math.isfinite(value):
            self.output_sink(chr(int(value) & 0xFF))
        return np.float64(0.0)

    def _printd(self, value: Any) -> np.float64:
        self.output_sink(f"{float(value):f}\n")
        return np.float64(0.0)


class _Trampoline:
    """Stand-in for a function a unit declares but does not define.

    Linking happens on the first call so that a definition loaded after the
    calling unit is still found. Loading a unit that exports the name clears
    the link, so the newest definition is picked up on the next call.
    """

    __slots__ = ("session", "name", "arity", "target")

    def __init__(self, session: "ExecutionSession", name: str, arity: int) -> None:
        self.session = session
        self.name = name
        self.arity = arity
        self.target: Optional[Callable[..., Any]] = None

    def __call__(self, *args: Any) -> Any:
        target = self.target
        if target is None:
            target = self.session.link(self.name, self.arity)
            self.target = target
        return target(*args)


@dataclass
class LoadedUnit:
    handle: SessionHandle
    unit: CompiledUnit
    namespace: Dict[str, Any]


class ExecutionSession:
    def __init__(self, *, host: Optional[HostLibrary] = None, output_sink: Optional[OutputSink] = None) -> None:
        self.host = host or HostLibrary(output_sink)
        self.units: Dict[SessionHandle, LoadedUnit] = {}
        self._next_handle = 0

    def load(self, unit: CompiledUnit) -> SessionHandle:
        namespace: Dict[str, Any] = {"__name__": unit.name, "f64": np.float64, "truthy": truthy}
        for imported in unit.imports.values():
            namespace[imported.symbol] = _Trampoline(self, imported.name, imported.arity)
        exec(unit.code, namespace)
        handle = self._next_handle
        self._next_handle += 1
        self.units[handle] = LoadedUnit(handle=handle, unit=unit, namespace=namespace)
        self._relink(unit.exports)
        logger.debug("Loaded %s as handle %d, exports %s", unit.name, handle, sorted(unit.exports))
        return handle

    def unload(self, handle: SessionHandle) -> None:
        loaded = self.units.pop(handle, None)
        if loaded is None:
            raise KSExecutionError(f"No unit is loaded under handle {handle}")
        logger.debug("Unloaded %s (handle %d)", loaded.unit.name, handle)

    def resolve_symbol(self, name: str) -> Optional[Callable[..., Any]]:
        found = self._find_export(name)
        if found is not None:
            return found[0]
        host = self.host.get(name)
        return host.impl if host is not None else None

    def link(self, name: str, arity: int) -> Callable[..., Any]:
        found = self._find_export(name)
        if found is None:
            host = self.host.get(name)
            if host is None:
                raise KSExecutionError(f"Program used external function '{name}' which could not be resolved")
            found = (host.impl, host.arity)
        target, target_arity = found
        if target_arity != arity:
            raise KSExecutionError(f"External function '{name}' takes {target_arity} arguments, declared with {arity}")
        return target

    def invoke(self, name: str, *args: float) -> np.float64:
        target = self.resolve_symbol(name)
        if target is None:
            raise KSExecutionError(f"Symbol '{name}' could not be resolved")
        try:
            with np.errstate(all="ignore"):
                return np.float64(target(*(np.float64(arg) for arg in args)))
        except KSExecutionError:
            raise
        except Exception as exc:
            raise KSExecutionError(f"Internal execution error in '{name}': {exc}") from exc

    def _find_export(self, name: str) -> Optional[Tuple[Callable[..., Any], int]]:
        for loaded in reversed(list(self.units.values())):
            symbol = loaded.unit.exports.get(name)
            if symbol is not None:
                return loaded.namespace[symbol.symbol], symbol.arity
        return None

    def _relink(self, names: Dict[str, UnitSymbol]) -> None:
        # A new definition takes over from whatever a trampoline linked to before.
        for loaded in self.units.values():
            for value in loaded.namespace.values():
                if isinstance(value, _Trampoline) and value.name in names:
                    value.target = None
