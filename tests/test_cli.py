import cli


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload
        self.text = str(payload)

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        return self._payload


def test_verbs_post_to_deployment_routes(monkeypatch, capsys):
    sent = []

    def fake_post(url, json=None, auth=None, timeout=None):
        sent.append((url, json, auth))
        return FakeResponse(200, {"name": "web", "state": "Shifting"})

    monkeypatch.setattr(cli.requests, "post", fake_post)
    rc = cli.main(["--api", "http://ctl:8000/", "--user", "ops", "--password", "pw", "shift", "web", "40"])
    assert rc == 0
    assert sent == [("http://ctl:8000/deployments/web/shift", {"weight": 40, "health_timeout_s": None}, ("ops", "pw"))]
    assert '"Shifting"' in capsys.readouterr().out


def test_error_kinds_map_to_exit_codes(monkeypatch):
    cases = [
        (409, "IllegalTransition", 3),
        (504, "HealthCheckTimeout", 4),
        (503, "OrchestrationUnavailable", 5),
        (404, "DeploymentNotFound", 2),
        (422, "InvalidRequest", 1),
    ]
    for status, kind, expected in cases:
        resp = FakeResponse(status, {"error": kind, "detail": "x"})
        monkeypatch.setattr(cli.requests, "post", lambda *a, resp=resp, **kw: resp)
        assert cli.main(["promote", "web"]) == expected, kind


def test_unreachable_api(monkeypatch):
    def refuse(*_a, **_kw):
        raise cli.requests.ConnectionError("refused")

    monkeypatch.setattr(cli.requests, "get", refuse)
    assert cli.main(["list"]) == 1
