from __future__ import annotations

from fastapi.testclient import TestClient

from ratewarden.main import app


client = TestClient(app)


def test_preserves_incoming_request_id_header():
    incoming_id = "test-request-id-123"
    resp = client.get("/health", headers={"X-Request-ID": incoming_id})

    assert resp.status_code == 200
    assert resp.headers.get("X-Request-ID") == incoming_id


def test_generates_request_id_when_missing():
    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.headers.get("X-Request-ID")
    assert resp.headers.get("X-Request-Duration-ms") is not None


def test_request_id_is_echoed_on_rejections(monkeypatch):
    from ratewarden.adapters.rate_limit.base import LimiterConfig
    from ratewarden.adapters.rate_limit.in_memory import AdaptiveRateLimiter
    from ratewarden.core import rate_limit as rate_limit_module

    monkeypatch.setattr(rate_limit_module.settings.app, "rate_limit_enabled", True)
    monkeypatch.setattr(rate_limit_module.settings.app, "suspicious_user_agents", None)
    limiter = AdaptiveRateLimiter(LimiterConfig(base_capacity=1, min_capacity=1), clock=lambda: 5_000.0)
    monkeypatch.setattr(rate_limit_module, "get_rate_limiter", lambda: limiter)

    client.get("/v1/limits/status")
    resp = client.get("/v1/limits/status", headers={"X-Request-ID": "req-429"})

    assert resp.status_code == 429
    assert resp.headers.get("X-Request-ID") == "req-429"


def test_limited_requests_are_logged_with_their_outcome(monkeypatch, caplog):
    import logging

    from ratewarden.adapters.rate_limit.base import LimiterConfig
    from ratewarden.adapters.rate_limit.in_memory import AdaptiveRateLimiter
    from ratewarden.core import rate_limit as rate_limit_module

    monkeypatch.setattr(rate_limit_module.settings.app, "rate_limit_enabled", True)
    monkeypatch.setattr(rate_limit_module.settings.app, "suspicious_user_agents", None)
    limiter = AdaptiveRateLimiter(LimiterConfig(base_capacity=1, min_capacity=1), clock=lambda: 5_000.0)
    monkeypatch.setattr(rate_limit_module, "get_rate_limiter", lambda: limiter)
    caplog.set_level(logging.INFO, logger="ratewarden.core.middleware")

    client.get("/v1/limits/status", headers={"X-Request-ID": "req-ok"})
    client.get("/v1/limits/status", headers={"X-Request-ID": "req-429"})
    client.get("/health")

    records = [r for r in caplog.records if r.name == "ratewarden.core.middleware"]
    assert [r.getMessage() for r in records] == ["http.request", "http.request_limited"]
    assert [r.rate_limit_outcome for r in records] == ["allowed", "rate_limited"]
    assert records[1].status_code == 429
    assert records[1].route == "/v1/limits/status"


def test_rate_limit_outcome_summarizes_decisions():
    from types import SimpleNamespace

    from ratewarden.adapters.rate_limit.base import Allow, Reject
    from ratewarden.core.middleware import rate_limit_outcome

    def request_with(decision):
        return SimpleNamespace(state=SimpleNamespace(rate_limit=decision))

    assert rate_limit_outcome(request_with(Allow(remaining=1, limit=2))) == "allowed"
    assert rate_limit_outcome(request_with(Allow(remaining=1, limit=2, delay_ms=50))) == "delayed"
    assert rate_limit_outcome(request_with(Reject(reason="blocked", retry_after_ms=10, limit=2))) == "blocked"
    assert rate_limit_outcome(request_with(None)) == "not_limited"
    assert rate_limit_outcome(SimpleNamespace(state=SimpleNamespace())) == "not_limited"
