from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Tuple


StorageHandle = str


@dataclass
class BindingEnvironment:
    """Name to storage mapping for the function being elaborated.

    Shadowing is undone exactly: ``restore`` puts back whatever ``bind``
    displaced, or removes the name when nothing was bound before.
    """

    values: Dict[str, StorageHandle] = field(default_factory=dict)

    def bind(self, name: str, handle: StorageHandle) -> Optional[StorageHandle]:
        previous = self.values.get(name)
        self.values[name] = handle
        return previous

    def restore(self, name: str, previous: Optional[StorageHandle]) -> None:
        if previous is None:
            self.values.pop(name, None)
        else:
            self.values[name] = previous

    @contextmanager
    def scope(self, bindings: Sequence[Tuple[str, StorageHandle]]) -> Iterator[None]:
        saved: List[Tuple[str, Optional[StorageHandle]]] = []
        try:
            for name, handle in bindings:
                saved.append((name, self.bind(name, handle)))
            yield
        finally:
            for name, previous in reversed(saved):
                self.restore(name, previous)

    def lookup(self, name: str) -> Optional[StorageHandle]:
        return self.values.get(name)

    def has(self, name: str) -> bool:
        return name in self.values

    def clear(self) -> None:
        self.values.clear()

    def snapshot(self) -> Dict[str, StorageHandle]:
        return dict(self.values)
