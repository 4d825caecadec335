import os
import sys
from dataclasses import replace
from threading import Event

import pytest

# Ensure project root is importable (so `import pdc` / `import cli` work without installing)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from pdc import db  # noqa: E402
from pdc.controller import Controller  # noqa: E402
from pdc.errors import OrchestrationUnavailable  # noqa: E402
from pdc.orchestration import InMemoryOrchestrator, PoolStatus  # noqa: E402
from pdc.settings import Settings  # noqa: E402


class FakeOrchestrator(InMemoryOrchestrator):
    """In-memory orchestrator with failure injection and call recording."""

    def __init__(self):
        super().__init__()
        self.unready: set[str] = set()
        self.failures: dict[str, int] = {}
        self.lost_acks = 0
        self.calls: list[tuple] = []
        self.watch: str | None = None
        self.watched_polled = Event()

    def fail(self, op: str, times: int = 1) -> None:
        self.failures[op] = self.failures.get(op, 0) + times

    def _maybe_fail(self, op: str, *args) -> None:
        self.calls.append((op, *args))
        if self.failures.get(op, 0) > 0:
            self.failures[op] -= 1
            raise OrchestrationUnavailable(f"{op} unavailable")

    def create_or_update_pool(self, name, image, replica_count):
        self._maybe_fail("create_or_update_pool", name, image, replica_count)
        super().create_or_update_pool(name, image, replica_count)

    def get_pool_status(self, name) -> PoolStatus:
        self._maybe_fail("get_pool_status", name)
        st = super().get_pool_status(name)
        if name == self.watch:
            self.watched_polled.set()
        if name in self.unready:
            return replace(st, ready_count=0)
        return st

    def delete_pool(self, name):
        self._maybe_fail("delete_pool", name)
        super().delete_pool(name)

    def set_routing_selector(self, service, weights):
        self._maybe_fail("set_routing_selector", service, dict(weights))
        super().set_routing_selector(service, weights)
        if self.lost_acks > 0:
            self.lost_acks -= 1
            raise OrchestrationUnavailable("ack lost")

    def get_routing_selector(self, service):
        self._maybe_fail("get_routing_selector", service)
        return super().get_routing_selector(service)

    def delete_routing_selector(self, service):
        self._maybe_fail("delete_routing_selector", service)
        super().delete_routing_selector(service)

    def scale_calls(self, pool: str) -> list[int]:
        return [c[3] for c in self.calls if c[0] == "create_or_update_pool" and c[1] == pool]


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        db_path=str(tmp_path / "pdc.db"),
        health_timeout_s=0.3,
        poll_interval_s=0.01,
        retry_attempts=3,
        retry_base_delay_s=0.0,
        retry_max_delay_s=0.0,
    )


@pytest.fixture(autouse=True)
def isolated_db(monkeypatch, test_settings):
    """Point the sqlite layer at a per-test database."""
    monkeypatch.setattr(db, "settings", test_settings)
    db.init_db()
    yield


@pytest.fixture
def orch():
    return FakeOrchestrator()


@pytest.fixture
def controller(orch, test_settings):
    return Controller(orch, settings=test_settings, sleep=lambda _s: None)
