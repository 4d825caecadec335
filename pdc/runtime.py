from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Event, Lock


@dataclass(frozen=True)
class RouteTarget:
    service: str
    pool: str
    base_url: str
    weight: int


@dataclass
class OperationSlot:
    """Serializes operations on one deployment.

    ``preempt`` is raised by a rollback before it queues for ``lock``; the
    operation currently holding the lock checks it at every wait.
    """

    lock: Lock = field(default_factory=Lock)
    preempt: Event = field(default_factory=Event)


class RuntimeState:
    """In-memory state: per-deployment operation slots and the routing table."""

    def __init__(self) -> None:
        self.lock = Lock()
        self.slots: dict[str, OperationSlot] = {}
        self.routing: dict[str, list[RouteTarget]] = {}  # service -> targets
        self.rr_index: dict[str, int] = {}  # key -> idx

    def slot(self, name: str) -> OperationSlot:
        with self.lock:
            s = self.slots.get(name)
            if s is None:
                s = self.slots[name] = OperationSlot()
            return s

    @contextmanager
    def exclusive(self, name: str, preempting: bool = False) -> Iterator[OperationSlot]:
        s = self.slot(name)
        if preempting:
            s.preempt.set()
        with s.lock:
            if preempting:
                s.preempt.clear()
            yield s

    def set_targets(self, service: str, targets: list[RouteTarget]) -> None:
        with self.lock:
            self.routing[service] = targets

    def get_targets(self, service: str) -> list[RouteTarget]:
        with self.lock:
            return list(self.routing.get(service, []))

    def drop_targets(self, service: str) -> None:
        with self.lock:
            self.routing.pop(service, None)

    def next_index(self, key: str, n: int) -> int:
        with self.lock:
            if n <= 0:
                return 0
            i = self.rr_index.get(key, 0) % n
            self.rr_index[key] = (i + 1) % n
            return i
