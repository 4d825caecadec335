from __future__ import annotations

from threading import Event
from typing import Any, Callable

from . import db
from .errors import HealthCheckTimeout, InvariantViolation, OrchestrationUnavailable, RolloutPreempted
from .health import HealthGate, HealthResult
from .models import Deployment, RoutingSelector, Strategy
from .orchestration import OrchestrationClient


def validate_selector(selector: RoutingSelector, strategy: Strategy) -> None:
    if not selector.weights:
        raise InvariantViolation(f"empty routing selector for '{selector.service}'")
    for pool, weight in selector.weights.items():
        if not 0 <= weight <= 100:
            raise InvariantViolation(f"weight {weight} for pool '{pool}' is outside [0,100]")
    if selector.total != 100:
        raise InvariantViolation(f"weights for '{selector.service}' sum to {selector.total}, not 100")
    if strategy is Strategy.BLUE_GREEN and sorted(selector.weights.values())[-1] != 100:
        raise InvariantViolation(f"blue-green selector for '{selector.service}' has no single live pool")


class TrafficRouter:
    """Pushes routing selectors to the orchestrator.

    Blue-green flips are two-phase: the pool about to go live must pass the
    health gate at full size before the single selector update is sent, so
    the flip is the only externally visible change.
    """

    def __init__(
        self,
        client: OrchestrationClient,
        gate: HealthGate,
        call: Callable[..., Any] | None = None,
        health_timeout_s: float = 120.0,
    ) -> None:
        self.client = client
        self.gate = gate
        self._call = call or (lambda fn, *args: fn(*args))
        self.health_timeout_s = health_timeout_s

    def apply(
        self,
        dep: Deployment,
        selector: RoutingSelector,
        gate: bool = True,
        cancel: Event | None = None,
        deadline_s: float | None = None,
    ) -> None:
        validate_selector(selector, dep.strategy)
        if dep.strategy is Strategy.BLUE_GREEN and gate:
            self._converge_before_flip(dep, selector, cancel, deadline_s)
        self._push(selector)

    def _converge_before_flip(
        self, dep: Deployment, selector: RoutingSelector, cancel: Event | None, deadline_s: float | None
    ) -> None:
        target = selector.live_pool()
        live = self.read_live(selector.service)
        if live is not None and live.get(target, 0) == 100:
            return
        pool = next(p for p in (dep.stable_pool, dep.candidate_pool) if p is not None and p.name == target)
        deadline = self.health_timeout_s if deadline_s is None else deadline_s
        res = self.gate.wait(pool.name, pool.replica_count, deadline, cancel=cancel)
        if res is HealthResult.CANCELLED:
            raise RolloutPreempted(f"flip to '{target}' pre-empted by rollback")
        if not res.ok:
            raise HealthCheckTimeout(f"pool '{target}' not ready for cutover ({res.value})")

    def read_live(self, service: str) -> dict[str, int] | None:
        try:
            return self._call(self.client.get_routing_selector, service)
        except OrchestrationUnavailable:
            return None

    def _push(self, selector: RoutingSelector) -> None:
        try:
            self._call(self.client.set_routing_selector, selector.service, dict(selector.weights))
        except OrchestrationUnavailable:
            # The update may have landed even though the ack was lost.
            live = self.read_live(selector.service)
            if live is not None and selector.same_split(RoutingSelector(selector.service, live)):
                db.log_event("WARN", "Selector ack lost; live selector already matches", service_name=selector.service)
                return
            raise
