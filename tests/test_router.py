import pytest

from pdc.errors import HealthCheckTimeout, InvariantViolation, OrchestrationUnavailable
from pdc.health import HealthGate
from pdc.models import Deployment, DeploymentState, Pool, RoutingSelector, Strategy
from pdc.retry import call_with_retry
from pdc.router import TrafficRouter, validate_selector


def _router(orch):
    def call(fn, *args):
        return call_with_retry(fn, *args, attempts=2, base_delay_s=0, sleep=lambda _s: None)

    return TrafficRouter(orch, HealthGate(orch, poll_interval_s=0.01), call=call, health_timeout_s=0.05)


def _bg_deployment():
    return Deployment(
        name="web",
        strategy=Strategy.BLUE_GREEN,
        total_capacity=2,
        state=DeploymentState.SHIFTING,
        stable_pool=Pool(name="web-blue", label="stable", image="v1", replica_count=2),
        candidate_pool=Pool(name="web-green", label="candidate", image="v2", replica_count=2),
    )


@pytest.mark.parametrize(
    "weights,strategy",
    [
        ({"a": 60, "b": 30}, Strategy.CANARY),
        ({"a": 120, "b": -20}, Strategy.CANARY),
        ({"a": 50, "b": 50}, Strategy.BLUE_GREEN),
        ({}, Strategy.CANARY),
    ],
)
def test_validate_selector_rejects_broken_splits(weights, strategy):
    with pytest.raises(InvariantViolation):
        validate_selector(RoutingSelector("web", weights), strategy)


def test_validate_selector_accepts_valid_splits():
    validate_selector(RoutingSelector("web", {"a": 70, "b": 30}), Strategy.CANARY)
    validate_selector(RoutingSelector("web", {"a": 0, "b": 100}), Strategy.BLUE_GREEN)


def test_blue_green_flip_waits_for_full_readiness(orch):
    orch.create_or_update_pool("web-blue", "v1", 2)
    orch.create_or_update_pool("web-green", "v2", 2)
    orch.set_routing_selector("web", {"web-blue": 100, "web-green": 0})
    orch.unready.add("web-green")
    dep = _bg_deployment()

    with pytest.raises(HealthCheckTimeout):
        _router(orch).apply(dep, RoutingSelector("web", {"web-blue": 0, "web-green": 100}))
    assert orch.selectors["web"] == {"web-blue": 100, "web-green": 0}

    orch.unready.clear()
    _router(orch).apply(dep, RoutingSelector("web", {"web-blue": 0, "web-green": 100}))
    assert orch.selectors["web"] == {"web-blue": 0, "web-green": 100}


def test_lost_ack_is_confirmed_by_reading_live_state(orch):
    dep = _bg_deployment()
    orch.create_or_update_pool("web-blue", "v1", 2)
    orch.lost_acks = 5
    _router(orch).apply(dep, RoutingSelector("web", {"web-blue": 100, "web-green": 0}), gate=False)
    assert orch.selectors["web"] == {"web-blue": 100, "web-green": 0}


def test_unconfirmed_update_is_reported(orch):
    dep = _bg_deployment()
    orch.fail("set_routing_selector", 5)
    with pytest.raises(OrchestrationUnavailable):
        _router(orch).apply(dep, RoutingSelector("web", {"web-blue": 100, "web-green": 0}), gate=False)
    assert "web" not in orch.selectors
