from threading import Event

import httpx
import pytest

from pdc import health
from pdc.health import HealthGate, HealthResult, check_health


def test_gate_passes_when_all_replicas_ready(orch):
    orch.create_or_update_pool("web-blue", "v1", 3)
    gate = HealthGate(orch, poll_interval_s=0.01)
    assert gate.wait("web-blue", 3, deadline_s=0.2) is HealthResult.HEALTHY
    assert gate.is_healthy("web-blue", 3, deadline_s=0.2)


def test_gate_times_out_instead_of_hanging(orch):
    orch.create_or_update_pool("web-green", "v2", 2)
    orch.unready.add("web-green")
    gate = HealthGate(orch, poll_interval_s=0.01)
    assert gate.wait("web-green", 2, deadline_s=0.05) is HealthResult.TIMED_OUT
    assert gate.is_healthy("web-green", 2, deadline_s=0.05) is False


def test_gate_requires_expected_replica_count(orch):
    orch.create_or_update_pool("web-green", "v2", 1)
    gate = HealthGate(orch, poll_interval_s=0.01)
    assert gate.wait("web-green", 2, deadline_s=0.05) is HealthResult.TIMED_OUT


def test_missing_pool_is_unhealthy_immediately(orch):
    gate = HealthGate(orch, poll_interval_s=10)
    assert gate.wait("nope", 1, deadline_s=5) is HealthResult.UNHEALTHY


def test_transient_errors_keep_polling(orch):
    orch.create_or_update_pool("web-blue", "v1", 2)
    orch.fail("get_pool_status", 2)
    gate = HealthGate(orch, poll_interval_s=0.0)
    assert gate.wait("web-blue", 2, deadline_s=1) is HealthResult.HEALTHY
    assert len([c for c in orch.calls if c[0] == "get_pool_status"]) == 3


def test_cancel_event_stops_the_wait(orch):
    orch.create_or_update_pool("web-green", "v2", 2)
    orch.unready.add("web-green")
    cancel = Event()
    cancel.set()
    gate = HealthGate(orch, poll_interval_s=10)
    assert gate.wait("web-green", 2, deadline_s=30, cancel=cancel) is HealthResult.CANCELLED


@pytest.fixture
def mock_http(monkeypatch):
    real_client = httpx.Client

    def install(handler):
        def client(**kwargs):
            return real_client(transport=httpx.MockTransport(handler), **kwargs)

        monkeypatch.setattr(health.httpx, "Client", client)

    return install


def test_check_health_ok(mock_http):
    mock_http(lambda request: httpx.Response(200, json={"status": "healthy"}))
    ok, msg, latency = check_health("http://web-blue-1:8000/health")
    assert ok is True
    assert msg == "Healthy"
    assert latency is not None


def test_check_health_bad_status_and_payload(mock_http):
    mock_http(lambda request: httpx.Response(503, json={"detail": "not ready"}))
    ok, msg, _ = check_health("http://x/health")
    assert (ok, msg) == (False, "HTTP 503")

    mock_http(lambda request: httpx.Response(200, json={"status": "starting"}))
    ok, msg, _ = check_health("http://x/health")
    assert ok is False
    assert msg.startswith("Unhealthy payload")


def test_check_health_no_response(mock_http):
    def refuse(request):
        raise httpx.ConnectError("refused", request=request)

    mock_http(refuse)
    ok, msg, _ = check_health("http://x/health")
    assert (ok, msg) == (False, "No response")
