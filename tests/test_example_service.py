import importlib.util
import os

import pytest
from fastapi.testclient import TestClient

_APP_PATH = os.path.join(os.path.dirname(os.path.dirname(__file__)), "examples", "example_service", "app.py")


@pytest.fixture
def service():
    spec = importlib.util.spec_from_file_location("example_service_app", _APP_PATH)
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)
    return mod


def test_healthy_by_default(service):
    c = TestClient(service.app)
    r = c.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "healthy", "version": service.VERSION}
    assert c.get("/version").json() == {"version": service.VERSION}


def test_broken_build_fails_health(service, monkeypatch):
    monkeypatch.setattr(service, "BROKEN", True)
    r = TestClient(service.app).get("/health")
    assert r.status_code == 503
