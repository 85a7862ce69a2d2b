import json
import logging

import pytest

from mapbackend.api import create_app
from mapbackend.config.settings import Settings
from mapbackend.logging_utils import JsonFormatter
from mapbackend.security.headers import SECURITY_HEADERS
from mapbackend.tests.conftest import make_settings


def test_health_endpoints(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.text == "ok"

    r = client.get("/api/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["message"] == "Server is healthy"
    assert body["uptime"] >= 0


def test_every_response_carries_security_headers_and_correlation_id(client):
    for r in (
        client.get("/health"),
        client.post("/api/supabase", json={"table": "nope", "method": "SELECT"}),
    ):
        for name, value in SECURITY_HEADERS.items():
            assert r.headers[name] == value
        assert len(r.headers["X-Correlation-ID"]) == 32
    assert "frame-src 'none'" in r.headers["Content-Security-Policy"]


def test_unknown_route_is_404(client):
    assert client.get("/api/nope").status_code == 404


@pytest.mark.parametrize(
    "missing,env",
    [
        ("supabase_url", "SUPABASE_URL"),
        ("supabase_anon_key", "SUPABASE_ANON_KEY"),
        ("supabase_service_role_key", "SUPABASE_SERVICE_ROLE_KEY"),
        ("jwt_secret", "JWT_SECRET"),
    ],
)
def test_missing_configuration_fails_at_startup(missing, env):
    with pytest.raises(RuntimeError) as ei:
        create_app(settings=make_settings(**{missing: ""}))
    assert env in str(ei.value)


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("SUPABASE_URL", "https://env.test")
    monkeypatch.setenv("API_RATE_LIMIT", "7")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.test, https://b.test")
    s = Settings()
    assert s.supabase_url == "https://env.test"
    assert s.api_rate_limit == 7
    assert s.cors_allow_origins == ["https://a.test", "https://b.test"]


def test_json_formatter_includes_event_payload():
    record = logging.LogRecord("security", logging.WARNING, __file__, 1, "[SECURITY] %s", ("X",), None)
    record.event = {"security_event": "X"}
    out = json.loads(JsonFormatter().format(record))
    assert out["level"] == "WARNING"
    assert out["event"] == {"security_event": "X"}
