from __future__ import annotations

import time
from enum import Enum
from threading import Event
from typing import Callable

import httpx

from .errors import OrchestrationUnavailable, PoolNotFound
from .orchestration import OrchestrationClient


def check_health(url: str, timeout_s: float = 2.0) -> tuple[bool, str, float | None]:
    """Call an instance health endpoint.

    Expected JSON: {"status": "healthy"}.
    Returns (is_healthy, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if resp.status_code != 200:
            return False, f"HTTP {resp.status_code}", latency_ms
        try:
            data = resp.json()
        except ValueError:
            return False, "Invalid JSON", latency_ms
        if isinstance(data, dict) and data.get("status") == "healthy":
            return True, "Healthy", latency_ms
        return False, f"Unhealthy payload: {data!r}", latency_ms
    except (httpx.ConnectError, httpx.TimeoutException):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms


class HealthResult(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def ok(self) -> bool:
        return self is HealthResult.HEALTHY


class HealthGate:
    """Decides whether a pool may receive traffic.

    A pool passes once it reports exactly the expected replicas and all of
    them ready. The gate never waits past the caller's deadline.
    """

    def __init__(
        self,
        client: OrchestrationClient,
        poll_interval_s: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.poll_interval_s = max(0.0, float(poll_interval_s))
        self.clock = clock

    def wait(
        self,
        pool_name: str,
        expected_replicas: int,
        deadline_s: float,
        cancel: Event | None = None,
    ) -> HealthResult:
        t_end = self.clock() + max(0.0, float(deadline_s))
        while True:
            if cancel is not None and cancel.is_set():
                return HealthResult.CANCELLED
            try:
                st = self.client.get_pool_status(pool_name)
            except PoolNotFound:
                return HealthResult.UNHEALTHY
            except OrchestrationUnavailable:
                st = None  # not ready yet; keep polling until the deadline
            if st is not None and st.replica_count == expected_replicas and st.ready:
                return HealthResult.HEALTHY
            remaining = t_end - self.clock()
            if remaining <= 0:
                return HealthResult.TIMED_OUT
            pause = min(self.poll_interval_s, remaining)
            if cancel is not None:
                if cancel.wait(pause):
                    return HealthResult.CANCELLED
            else:
                time.sleep(pause)

    def is_healthy(self, pool_name: str, expected_replicas: int, deadline_s: float) -> bool:
        return self.wait(pool_name, expected_replicas, deadline_s).ok
