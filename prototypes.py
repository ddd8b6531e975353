from __future__ import annotations
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Set

from parser import Prototype

if TYPE_CHECKING:
    from codegen import FunctionHandle, UnitBuilder


DeclareFunction = Callable[["UnitBuilder", Prototype], "FunctionHandle"]


@dataclass
class PrototypeRegistry:
    """Signatures known to the session, whether or not a body exists yet.

    A later declaration of a name replaces the earlier prototype.
    """

    _prototypes: Dict[str, Prototype] = field(default_factory=dict)
    _defined: Set[str] = field(default_factory=set)

    def declare(self, proto: Prototype) -> None:
        self._prototypes[proto.name] = proto

    def get(self, name: str) -> Optional[Prototype]:
        return self._prototypes.get(name)

    def has(self, name: str) -> bool:
        return name in self._prototypes

    def names(self) -> List[str]:
        return sorted(self._prototypes)

    def mark_defined(self, name: str) -> None:
        self._defined.add(name)

    def is_defined(self, name: str) -> bool:
        return name in self._defined

    def resolve(self, name: str, unit: "UnitBuilder", declare: DeclareFunction) -> Optional["FunctionHandle"]:
        handle = unit.get_function(name)
        if handle is not None:
            return handle
        proto = self._prototypes.get(name)
        if proto is None:
            return None
        # Each unit gets its own declaration; the body lives in whichever unit defined it.
        return declare(unit, proto)
