from __future__ import annotations

import copy
import time
from threading import Event, Lock
from typing import Any, Callable, NoReturn

from . import db
from .alerts import alert
from .errors import (
    DeploymentNotFound,
    HealthCheckTimeout,
    IllegalTransition,
    InvariantViolation,
    NonMonotonicShift,
    OrchestrationUnavailable,
    RolloutPreempted,
)
from .health import HealthGate, HealthResult
from .models import (
    CANDIDATE_LABEL,
    STABLE_LABEL,
    Deployment,
    DeploymentState,
    Pool,
    RoutingSelector,
    Strategy,
    validate_deployment_name,
    validate_image,
)
from .orchestration import OrchestrationClient
from .planner import clamp_weight, split
from .retry import call_with_retry
from .router import TrafficRouter, validate_selector
from .runtime import RuntimeState
from .settings import Settings, settings as default_settings
from .state_machine import DeploymentStateMachine

S = DeploymentState

# Canary capacity is conserved in every state where no pool is being
# drained or filled wholesale.
_CONSERVING_STATES = frozenset({S.STABLE, S.DEPLOYING, S.SHIFTING})


class Controller:
    """Public entry point: one serialized control loop per deployment.

    Every verb loads the last committed record, checks legality with the
    state machine, drives the orchestrator and commits the new record. A
    failure part-way leaves the last committed record in place, and
    re-issuing the verb converges instead of applying its effects twice.
    """

    def __init__(
        self,
        client: OrchestrationClient,
        settings: Settings = default_settings,
        runtime: RuntimeState | None = None,
        gate: HealthGate | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.settings = settings
        self.runtime = runtime or RuntimeState()
        self.gate = gate or HealthGate(client, poll_interval_s=settings.poll_interval_s)
        self._sleep = sleep
        self.router = TrafficRouter(client, self.gate, call=self._call, health_timeout_s=settings.health_timeout_s)
        self._snap_lock = Lock()
        self._snapshots: dict[str, Deployment] = {}
        self._reconciled: set[str] = set()

    # ------------------------------------------------------------------ verbs

    def init(
        self,
        name: str,
        image: str,
        strategy: Strategy | str = Strategy.CANARY,
        total_capacity: int = 1,
        health_timeout_s: float | None = None,
    ) -> dict[str, Any]:
        validate_deployment_name(name)
        validate_image(image)
        strategy = Strategy(strategy)
        total_capacity = int(total_capacity)
        if total_capacity < 1:
            raise ValueError("total_capacity must be >= 1")

        with self.runtime.exclusive(name):
            dep = self._find(name)
            if dep is None:
                dep = Deployment(name=name, strategy=strategy, total_capacity=total_capacity)
                self._reconciled.add(name)
                self._commit(dep)
            else:
                self._ensure_reconciled(dep)

            if dep.state is S.STABLE and dep.stable_pool is not None and dep.stable_pool.image == image:
                return self._noop(dep, "init", image=image)
            if dep.state is not S.UNINITIALIZED:
                raise IllegalTransition(
                    f"'{name}' is already initialized ({dep.state.value}); use deploy to change the image"
                )
            sm = DeploymentStateMachine(dep)
            sm.require_verb("init")
            # Not started yet, so an earlier failed init may be retried with new parameters.
            dep.strategy = strategy
            dep.total_capacity = total_capacity

            pool = Pool(name=dep.next_pool_name(), label=STABLE_LABEL, image=image, replica_count=total_capacity)
            self._scale(pool, total_capacity)
            res = self.gate.wait(pool.name, total_capacity, self._deadline(health_timeout_s))
            if not res.ok:
                db.log_event("ERROR", f"Initial pool {pool.name} not ready ({res.value})", service_name=name, version=image)
                raise HealthCheckTimeout(f"pool '{pool.name}' did not become ready ({res.value})")
            pool.ready_count = total_capacity
            dep.stable_pool = pool
            dep.candidate_pool = None
            dep.candidate_weight = 0
            self.router.apply(dep, dep.selector(), deadline_s=self._deadline(health_timeout_s))
            sm.transition(S.STABLE, "init", image=image, strategy=strategy.value, total_capacity=total_capacity)
            self._commit(dep)
            db.log_event("INFO", f"Initialized {pool.name} with {total_capacity} replicas", service_name=name, version=image)
            return dep.to_dict()

    def deploy(
        self,
        name: str,
        image: str,
        initial_weight: int = 0,
        health_timeout_s: float | None = None,
    ) -> dict[str, Any]:
        validate_image(image)
        weight = clamp_weight(initial_weight)
        with self.runtime.exclusive(name) as slot:
            dep = self._load(name)
            self._ensure_reconciled(dep)
            self._check_strategy_weight(dep, weight)

            if dep.candidate_pool is not None and dep.candidate_pool.image == image:
                if dep.state in (S.SHIFTING, S.PROMOTING):
                    return self._noop(dep, "deploy", image=image, initial_weight=weight)
                if dep.state is S.DEPLOYING:
                    db.log_event("INFO", "Resuming interrupted deploy", service_name=name, version=image)
                    return self._run_deploy(dep, weight, slot.preempt, health_timeout_s)
            if dep.state is S.STABLE and dep.stable_pool is not None and dep.stable_pool.image == image:
                return self._noop(dep, "deploy", image=image, initial_weight=weight)

            sm = DeploymentStateMachine(dep)
            sm.require_verb("deploy")
            self._checkpoint(slot.preempt)
            dep.candidate_pool = Pool(name=dep.next_pool_name(), label=CANDIDATE_LABEL, image=image)
            dep.candidate_weight = 0
            dep.shift_direction = 0
            sm.transition(S.DEPLOYING, "deploy", image=image, initial_weight=weight)
            self._commit(dep)
            db.log_event("INFO", f"Deploying {image} as {dep.candidate_pool.name}", service_name=name, version=image)
            return self._run_deploy(dep, weight, slot.preempt, health_timeout_s)

    def _run_deploy(self, dep: Deployment, weight: int, cancel: Event, health_timeout_s: float | None) -> dict[str, Any]:
        stable, cand = self._pair(dep)
        if dep.strategy is Strategy.CANARY:
            stable_n, cand_n = split(dep.total_capacity, weight)
        else:
            stable_n, cand_n = dep.total_capacity, dep.total_capacity

        self._checkpoint(cancel)
        self._scale(cand, cand_n)
        cand.replica_count = cand_n
        res = self.gate.wait(cand.name, cand_n, self._deadline(health_timeout_s), cancel=cancel)
        if res is HealthResult.CANCELLED:
            raise RolloutPreempted(f"deploy of '{dep.name}' pre-empted by rollback")
        if not res.ok:
            self._auto_rollback(dep, res.value)
        cand.ready_count = cand_n

        self._checkpoint(cancel)
        planned = self._with_weight(dep, weight)
        try:
            self.router.apply(planned, planned.selector(), cancel=cancel, deadline_s=self._deadline(health_timeout_s))
        except HealthCheckTimeout:
            self._auto_rollback(dep, HealthResult.TIMED_OUT.value)
        except OrchestrationUnavailable:
            # Traffic never moved; give the candidate replicas back.
            self._scale(cand, 0)
            raise
        if stable.replica_count != stable_n:
            self._scale(stable, stable_n)

        stable.replica_count = stable_n
        stable.ready_count = min(stable.ready_count, stable_n)
        dep.candidate_weight = weight
        DeploymentStateMachine(dep).transition(S.SHIFTING, "deploy", image=cand.image, initial_weight=weight)
        self._commit(dep)
        db.log_event(
            "INFO",
            f"Candidate live at {weight}% ({stable_n}/{cand_n} replicas)",
            service_name=dep.name,
            version=cand.image,
        )
        return dep.to_dict()

    def _auto_rollback(self, dep: Deployment, reason: str) -> NoReturn:
        cand = self._pair(dep)[1]
        db.log_event(
            "ERROR",
            f"Candidate {cand.name} not ready ({reason}); rolling back automatically",
            service_name=dep.name,
            version=cand.image,
        )
        self._rollback_locked(dep, verb="deploy", reason=reason, drain_candidate=True)
        alert(dep.name, "ROLLBACK", candidate=cand.image, gate=reason, state=dep.state.value)
        raise HealthCheckTimeout(
            f"candidate '{cand.name}' did not become ready ({reason}); deployment rolled back to Stable"
        )

    def shift(self, name: str, weight: int, health_timeout_s: float | None = None) -> dict[str, Any]:
        weight = clamp_weight(weight)
        with self.runtime.exclusive(name) as slot:
            dep = self._load(name)
            self._ensure_reconciled(dep)
            sm = DeploymentStateMachine(dep)
            sm.require_verb("shift")
            self._check_strategy_weight(dep, weight)
            if weight == dep.candidate_weight:
                return self._noop(dep, "shift", weight=weight)
            direction = 1 if weight > dep.candidate_weight else -1
            if dep.shift_direction and direction != dep.shift_direction:
                raise NonMonotonicShift(
                    f"shift to {weight}% reverses the rollout direction (currently at {dep.candidate_weight}%, "
                    f"moving {'up' if dep.shift_direction > 0 else 'down'}); roll back instead"
                )
            self._checkpoint(slot.preempt)

            stable, cand = self._pair(dep)
            previous = dep.candidate_weight
            if dep.strategy is Strategy.CANARY:
                stable_n, cand_n = split(dep.total_capacity, weight)
                # Grow first and gate the grown pool; shrink only after traffic moved.
                if cand_n > cand.replica_count:
                    grow, grow_n, shrink, shrink_n = cand, cand_n, stable, stable_n
                else:
                    grow, grow_n, shrink, shrink_n = stable, stable_n, cand, cand_n
                if grow_n != grow.replica_count:
                    self._scale(grow, grow_n)
                    res = self.gate.wait(grow.name, grow_n, self._deadline(health_timeout_s), cancel=slot.preempt)
                    if res is HealthResult.CANCELLED:
                        raise RolloutPreempted(f"shift of '{name}' pre-empted by rollback")
                    if not res.ok:
                        self._scale(grow, grow.replica_count)
                        db.log_event(
                            "ERROR",
                            f"Shift to {weight}% aborted: {grow.name} not ready ({res.value}); holding at {previous}%",
                            service_name=name,
                            version=cand.image,
                        )
                        raise HealthCheckTimeout(
                            f"pool '{grow.name}' did not become ready ({res.value}); holding at {previous}%"
                        )
                    grow.ready_count = grow_n
                self._checkpoint(slot.preempt)
                planned = self._with_weight(dep, weight)
                try:
                    self.router.apply(planned, planned.selector(), cancel=slot.preempt)
                except OrchestrationUnavailable:
                    # Selector unchanged: undo the scale-up so capacity stays at the recorded split.
                    if grow_n != grow.replica_count:
                        self._scale(grow, grow.replica_count)
                    raise
                if shrink_n != shrink.replica_count:
                    self._scale(shrink, shrink_n)
                grow.replica_count = grow_n
                shrink.replica_count = shrink_n
                shrink.ready_count = min(shrink.ready_count, shrink_n)
            else:
                planned = self._with_weight(dep, weight)
                try:
                    self.router.apply(
                        planned,
                        planned.selector(),
                        cancel=slot.preempt,
                        deadline_s=self._deadline(health_timeout_s),
                    )
                except HealthCheckTimeout:
                    db.log_event(
                        "ERROR",
                        f"Cutover to {weight}% aborted; holding at {previous}%",
                        service_name=name,
                        version=cand.image,
                    )
                    raise

            dep.candidate_weight = weight
            dep.shift_direction = direction
            sm.transition(S.SHIFTING, "shift", weight=weight, previous_weight=previous)
            self._commit(dep)
            db.log_event("INFO", f"Shifted {previous}% -> {weight}%", service_name=name, version=cand.image)
            return dep.to_dict()

    def promote(self, name: str, health_timeout_s: float | None = None) -> dict[str, Any]:
        with self.runtime.exclusive(name) as slot:
            dep = self._load(name)
            self._ensure_reconciled(dep)
            sm = DeploymentStateMachine(dep)
            sm.require_verb("promote")
            if dep.state is S.SHIFTING:
                cand = self._pair(dep)[1]
                self._checkpoint(slot.preempt)
                previous_n = cand.replica_count
                if previous_n != dep.total_capacity:
                    self._scale(cand, dep.total_capacity)
                res = self.gate.wait(
                    cand.name, dep.total_capacity, self._deadline(health_timeout_s), cancel=slot.preempt
                )
                if res is HealthResult.CANCELLED:
                    raise RolloutPreempted(f"promote of '{name}' pre-empted by rollback")
                if not res.ok:
                    if previous_n != dep.total_capacity:
                        self._scale(cand, previous_n)
                    db.log_event(
                        "ERROR",
                        f"Promotion aborted: {cand.name} not ready at full capacity ({res.value})",
                        service_name=name,
                        version=cand.image,
                    )
                    raise HealthCheckTimeout(f"candidate '{cand.name}' not ready at full capacity ({res.value})")
                cand.replica_count = cand.ready_count = dep.total_capacity
                sm.transition(S.PROMOTING, "promote", image=cand.image)
                self._commit(dep)
            else:
                db.log_event("INFO", "Resuming interrupted promotion", service_name=name)
            self._finish_promote(dep)
            return dep.to_dict()

    def _finish_promote(self, dep: Deployment) -> None:
        old, new = dep.stable_pool, dep.candidate_pool
        if new is None:
            raise InvariantViolation(f"'{dep.name}' is promoting without a candidate pool")
        self.router.apply(dep, RoutingSelector(service=dep.name, weights={new.name: 100}))
        if old is not None and old.name != new.name:
            self._call(self.client.delete_pool, old.name)
        new.label = STABLE_LABEL
        dep.stable_pool = new
        dep.candidate_pool = None
        dep.candidate_weight = 0
        dep.shift_direction = 0
        DeploymentStateMachine(dep).transition(
            S.STABLE, "promote", image=new.image, retired=old.name if old is not None else None
        )
        self._commit(dep)
        retired = old.name if old is not None else "-"
        db.log_event("INFO", f"Promoted {new.name}; retired {retired}", service_name=dep.name, version=new.image)

    def rollback(self, name: str) -> dict[str, Any]:
        # Raising the pre-emption flag before queueing makes the operation in
        # flight give way at its next checkpoint.
        with self.runtime.exclusive(name, preempting=True):
            dep = self._load(name)
            self._ensure_reconciled(dep)
            if dep.state is S.STABLE and self._was_rolled_back(dep):
                return self._noop(dep, "rollback")
            DeploymentStateMachine(dep).require_verb("rollback")
            self._rollback_locked(dep, verb="rollback", reason="requested")
            return dep.to_dict()

    def _rollback_locked(self, dep: Deployment, verb: str, reason: str, drain_candidate: bool = False) -> None:
        sm = DeploymentStateMachine(dep)
        if dep.state is not S.ROLLING_BACK:
            sm.transition(S.ROLLING_BACK, verb, reason=reason, weight=dep.candidate_weight)
            self._commit(dep)
        stable, cand = dep.stable_pool, dep.candidate_pool
        if stable is None:
            raise InvariantViolation(f"'{dep.name}' has no stable pool to roll back to")
        # Restore stable capacity before it takes all traffic back.
        if stable.replica_count != dep.total_capacity:
            self._scale(stable, dep.total_capacity)
            stable.replica_count = dep.total_capacity
        dep.candidate_weight = 0
        self.router.apply(dep, dep.selector(), gate=False)
        # Blue-green keeps a candidate that served traffic allocated for
        # inspection; canary gives its replicas back to stable.
        if cand is not None and (dep.strategy is Strategy.CANARY or drain_candidate or cand.replica_count == 0):
            self._scale(cand, 0)
            cand.replica_count = cand.ready_count = 0
        dep.shift_direction = 0
        sm.transition(S.STABLE, verb, reason=reason)
        self._commit(dep)
        db.log_event(
            "WARN",
            f"Rolled back to {stable.name} ({reason})",
            service_name=dep.name,
            version=stable.image,
        )

    def cleanup(self, name: str) -> dict[str, Any]:
        with self.runtime.exclusive(name):
            dep = self._load(name)
            self._ensure_reconciled(dep)
            sm = DeploymentStateMachine(dep)
            sm.require_verb("cleanup")
            cand = dep.candidate_pool
            if cand is None:
                return self._noop(dep, "cleanup")
            self._call(self.client.delete_pool, cand.name)
            dep.candidate_pool = None
            self.router.apply(dep, dep.selector(), gate=False)
            sm.transition(S.STABLE, "cleanup", deleted=[cand.name])
            self._commit(dep)
            db.log_event("INFO", f"Deleted idle pool {cand.name}", service_name=name, version=cand.image)
            return dep.to_dict()

    def destroy(self, name: str) -> None:
        with self.runtime.exclusive(name):
            dep = self._load(name)
            DeploymentStateMachine(dep).require_verb("destroy")
            for pool_name in dep.pool_names():
                self._call(self.client.delete_pool, pool_name)
            self._call(self.client.delete_routing_selector, name)
            db.delete_deployment(name)
            with self._snap_lock:
                self._snapshots.pop(name, None)
            self._reconciled.discard(name)
            db.log_event("INFO", "Deployment destroyed", service_name=name)

    def status(self, name: str) -> dict[str, Any]:
        with self._snap_lock:
            snap = self._snapshots.get(name)
        if snap is None:
            dep = db.load_deployment(name)
            if dep is None:
                raise DeploymentNotFound(f"unknown deployment '{name}'")
            snap = self._publish(dep)
        return snap.to_dict()

    def list_deployments(self) -> list[dict[str, Any]]:
        return [self.status(dep.name) for dep in db.list_deployments()]

    # ---------------------------------------------------------- reconciliation

    def reconcile_all(self) -> dict[str, str]:
        """Re-validate every persisted deployment against the live orchestrator."""
        results: dict[str, str] = {}
        for dep in db.list_deployments():
            with self.runtime.exclusive(dep.name):
                try:
                    fresh = self._load(dep.name)
                    self._reconciled.discard(dep.name)
                    self._ensure_reconciled(fresh)
                    results[dep.name] = fresh.state.value
                except (OrchestrationUnavailable, HealthCheckTimeout, InvariantViolation) as e:
                    db.log_event("ERROR", f"Reconciliation failed: {e}", service_name=dep.name)
                    results[dep.name] = f"error: {e.kind}"
        return results

    def _ensure_reconciled(self, dep: Deployment) -> None:
        if dep.name in self._reconciled:
            return
        state = dep.state
        if state in (S.STABLE, S.SHIFTING):
            for pool in (dep.stable_pool, dep.candidate_pool):
                if pool is not None:
                    self._scale(pool, pool.replica_count)
            if dep.stable_pool is not None:
                self.router.apply(dep, dep.selector(), gate=False)
        elif state is S.DEPLOYING:
            # The candidate never passed its gate: treat as failed.
            self._rollback_locked(dep, verb="reconcile", reason="interrupted deploy", drain_candidate=True)
        elif state is S.PROMOTING:
            self._finish_promote(dep)
        elif state is S.ROLLING_BACK:
            self._rollback_locked(dep, verb="reconcile", reason="interrupted rollback")
        self._reconciled.add(dep.name)
        db.log_event("INFO", f"Reconciled from persisted state {state.value}", service_name=dep.name)

    # ---------------------------------------------------------------- helpers

    def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        def _log_retry(attempt: int, e: BaseException) -> None:
            db.log_event("WARN", f"{getattr(fn, '__name__', 'call')} failed (attempt {attempt}): {e}")

        try:
            return call_with_retry(
                fn,
                *args,
                attempts=self.settings.retry_attempts,
                base_delay_s=self.settings.retry_base_delay_s,
                max_delay_s=self.settings.retry_max_delay_s,
                sleep=self._sleep,
                on_retry=_log_retry,
            )
        except OrchestrationUnavailable as e:
            db.log_event("ERROR", f"{getattr(fn, '__name__', 'call')} gave up after retries: {e}")
            raise

    def _scale(self, pool: Pool, replicas: int) -> None:
        self._call(self.client.create_or_update_pool, pool.name, pool.image, replicas)

    def _deadline(self, health_timeout_s: float | None) -> float:
        return self.settings.health_timeout_s if health_timeout_s is None else float(health_timeout_s)

    @staticmethod
    def _checkpoint(cancel: Event) -> None:
        if cancel.is_set():
            raise RolloutPreempted("operation pre-empted by rollback")

    @staticmethod
    def _check_strategy_weight(dep: Deployment, weight: int) -> None:
        if dep.strategy is Strategy.BLUE_GREEN and weight not in (0, 100):
            raise ValueError("blue-green deployments only accept weights 0 or 100")

    @staticmethod
    def _with_weight(dep: Deployment, weight: int) -> Deployment:
        planned = copy.deepcopy(dep)
        planned.candidate_weight = weight
        return planned

    @staticmethod
    def _pair(dep: Deployment) -> tuple[Pool, Pool]:
        if dep.stable_pool is None or dep.candidate_pool is None:
            raise InvariantViolation(f"'{dep.name}' in {dep.state.value} needs both a stable and a candidate pool")
        return dep.stable_pool, dep.candidate_pool

    @staticmethod
    def _was_rolled_back(dep: Deployment) -> bool:
        return bool(dep.history) and dep.history[-1].verb == "rollback"

    def _find(self, name: str) -> Deployment | None:
        with self._snap_lock:
            snap = self._snapshots.get(name)
        if snap is not None:
            return copy.deepcopy(snap)
        return db.load_deployment(name)

    def _load(self, name: str) -> Deployment:
        dep = self._find(name)
        if dep is None:
            raise DeploymentNotFound(f"unknown deployment '{name}'")
        return dep

    def _noop(self, dep: Deployment, verb: str, **params: Any) -> dict[str, Any]:
        db.log_event("INFO", f"{verb} {params or ''} already applied; nothing to do", service_name=dep.name)
        return dep.to_dict()

    def _check_invariants(self, dep: Deployment) -> None:
        problems: list[str] = []
        if not 0 <= dep.candidate_weight <= 100:
            problems.append(f"candidate weight {dep.candidate_weight} outside [0,100]")
        if dep.state is not S.UNINITIALIZED:
            if dep.stable_pool is None:
                problems.append("no stable pool")
            else:
                try:
                    validate_selector(dep.selector(), dep.strategy)
                except InvariantViolation as e:
                    problems.append(str(e))
        if dep.strategy is Strategy.CANARY and dep.state in _CONSERVING_STATES and dep.stable_pool is not None:
            used = dep.stable_pool.replica_count + (dep.candidate_pool.replica_count if dep.candidate_pool else 0)
            if used != dep.total_capacity:
                problems.append(f"replicas {used} != total capacity {dep.total_capacity}")
        if problems:
            msg = "; ".join(problems)
            db.log_event("CRITICAL", f"Invariant violation: {msg}", service_name=dep.name)
            alert(dep.name, "INVARIANT VIOLATION", state=dep.state.value, problems=msg)
            raise InvariantViolation(msg)

    def _commit(self, dep: Deployment) -> None:
        self._check_invariants(dep)
        db.save_deployment(dep)
        self._publish(dep)

    def _publish(self, dep: Deployment) -> Deployment:
        snap = copy.deepcopy(dep)
        with self._snap_lock:
            self._snapshots[dep.name] = snap
        return snap
