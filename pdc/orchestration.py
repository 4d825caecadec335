"""Orchestration client interface consumed by the controller.

The controller never talks to a cluster directly; it drives pools and
routing selectors through an :class:`OrchestrationClient`. Implementations
raise :class:`OrchestrationUnavailable` for transient failures (the caller
retries) and :class:`PoolNotFound` when a pool does not exist.
"""
from __future__ import annotations

import abc
import copy
from dataclasses import dataclass
from threading import Lock

from .errors import OrchestrationUnavailable, PoolNotFound


@dataclass(frozen=True)
class PoolStatus:
    name: str
    image: str
    replica_count: int
    ready_count: int

    @property
    def ready(self) -> bool:
        return self.ready_count == self.replica_count


class OrchestrationClient(abc.ABC):
    @abc.abstractmethod
    def create_or_update_pool(self, name: str, image: str, replica_count: int) -> None:
        """Create the pool or converge it to ``image`` x ``replica_count``."""

    @abc.abstractmethod
    def get_pool_status(self, name: str) -> PoolStatus:
        ...

    @abc.abstractmethod
    def delete_pool(self, name: str) -> None:
        """Delete the pool. Deleting a missing pool succeeds."""

    @abc.abstractmethod
    def set_routing_selector(self, service: str, weights: dict[str, int]) -> None:
        ...

    @abc.abstractmethod
    def get_routing_selector(self, service: str) -> dict[str, int] | None:
        ...

    @abc.abstractmethod
    def delete_routing_selector(self, service: str) -> None:
        ...

    def ping(self) -> bool:
        return True


class InMemoryOrchestrator(OrchestrationClient):
    """Orchestrator kept entirely in process memory.

    Pools become ready as soon as they are scaled, which makes it useful for
    dry runs of a rollout plan and as the base of test doubles.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self.pools: dict[str, PoolStatus] = {}
        self.selectors: dict[str, dict[str, int]] = {}

    def _ready_count(self, name: str, replica_count: int) -> int:
        return replica_count

    def create_or_update_pool(self, name: str, image: str, replica_count: int) -> None:
        replica_count = max(0, int(replica_count))
        with self._lock:
            self.pools[name] = PoolStatus(
                name=name,
                image=image,
                replica_count=replica_count,
                ready_count=self._ready_count(name, replica_count),
            )

    def get_pool_status(self, name: str) -> PoolStatus:
        with self._lock:
            status = self.pools.get(name)
        if status is None:
            raise PoolNotFound(f"pool '{name}' does not exist")
        return status

    def delete_pool(self, name: str) -> None:
        with self._lock:
            self.pools.pop(name, None)

    def set_routing_selector(self, service: str, weights: dict[str, int]) -> None:
        with self._lock:
            self.selectors[service] = dict(weights)

    def get_routing_selector(self, service: str) -> dict[str, int] | None:
        with self._lock:
            weights = self.selectors.get(service)
            return copy.copy(weights) if weights is not None else None

    def delete_routing_selector(self, service: str) -> None:
        with self._lock:
            self.selectors.pop(service, None)


__all__ = ["OrchestrationClient", "InMemoryOrchestrator", "PoolStatus", "OrchestrationUnavailable", "PoolNotFound"]
