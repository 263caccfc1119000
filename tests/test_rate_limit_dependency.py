"""Tests for the HTTP side of rate limiting.

Covers key derivation, the 429 mapping and its headers, User-Agent based
violations and the slow-down delay. The engine is swapped for one driven by
a frozen clock so every request lands at the same instant.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

from ratewarden.adapters.rate_limit.base import LimiterConfig, hash_limiter_key
from ratewarden.adapters.rate_limit.in_memory import AdaptiveRateLimiter
from ratewarden.core import rate_limit as rate_limit_module
from ratewarden.core.config import settings
from ratewarden.main import app

STATUS_URL = "/v1/limits/status"


def make_request(
    path: str = "/v1/limits/status",
    client_host: str = "10.0.0.1",
    headers: dict[str, str] | None = None,
) -> Request:
    raw_headers = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    scope = {
        "type": "http",
        "method": "GET",
        "scheme": "http",
        "server": ("testserver", 80),
        "root_path": "",
        "path": path,
        "query_string": b"",
        "headers": raw_headers,
        "client": (client_host, 50000),
    }
    return Request(scope)


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


@pytest.fixture
def use_limiter(monkeypatch: pytest.MonkeyPatch):
    """Install a frozen-clock limiter built from the given policy."""

    monkeypatch.setattr(settings.app, "rate_limit_enabled", True)
    monkeypatch.setattr(settings.app, "rate_limit_include_headers", True)
    monkeypatch.setattr(settings.app, "rate_limit_per_route", False)
    monkeypatch.setattr(settings.app, "trust_forwarded_for", False)
    monkeypatch.setattr(settings.app, "suspicious_user_agents", None)

    def install(**policy) -> AdaptiveRateLimiter:
        policy.setdefault("min_capacity", 1)
        limiter = AdaptiveRateLimiter(LimiterConfig(**policy), clock=lambda: 1_000_000.0)
        monkeypatch.setattr(rate_limit_module, "get_rate_limiter", lambda: limiter)
        return limiter

    return install


class TestRateLimitResponses:
    def test_allowed_requests_carry_budget_headers(self, client: TestClient, use_limiter) -> None:
        use_limiter(base_capacity=2)

        first = client.get(STATUS_URL)
        second = client.get(STATUS_URL)

        assert first.status_code == 200
        assert first.headers["X-RateLimit-Limit"] == "2"
        assert first.headers["X-RateLimit-Remaining"] == "1"
        assert second.headers["X-RateLimit-Remaining"] == "0"

        body = second.json()
        assert body["enabled"] is True
        assert body["key_type"] == "ip"
        assert body["limit"] == 2
        assert body["remaining"] == 0
        assert body["window_ms"] == 60_000

    def test_full_window_maps_to_429_with_retry_after(self, client: TestClient, use_limiter) -> None:
        use_limiter(base_capacity=2)

        client.get(STATUS_URL)
        client.get(STATUS_URL)
        rejected = client.get(STATUS_URL)

        assert rejected.status_code == 429
        assert rejected.headers["Retry-After"] == "60"
        assert rejected.headers["X-RateLimit-Limit"] == "2"
        assert rejected.headers["X-RateLimit-Remaining"] == "0"
        detail = rejected.json()["detail"]
        assert detail["code"] == "rate_limited"
        assert detail["retry_after_seconds"] == 60
        assert "Rate limit exceeded" in detail["message"]

    def test_repeated_violations_map_to_blocked(self, client: TestClient, use_limiter) -> None:
        use_limiter(base_capacity=1, suspicion_threshold=2, block_duration_ms=120_000)

        assert client.get(STATUS_URL).status_code == 200
        assert client.get(STATUS_URL).json()["detail"]["code"] == "rate_limited"

        blocked = client.get(STATUS_URL)
        assert blocked.status_code == 429
        assert blocked.headers["Retry-After"] == "120"
        detail = blocked.json()["detail"]
        assert detail["code"] == "blocked"
        assert detail["retry_after_seconds"] == 120
        assert "blocked" in detail["message"]

    def test_api_keys_have_independent_budgets(self, client: TestClient, use_limiter) -> None:
        use_limiter(base_capacity=1)
        key1 = {"X-API-Key": "test-api-key-123"}
        key2 = {"X-API-Key": "test-api-key-456"}

        assert client.get(STATUS_URL, headers=key1).status_code == 200
        assert client.get(STATUS_URL, headers=key1).status_code == 429
        assert client.get(STATUS_URL, headers=key2).status_code == 200
        assert client.get(STATUS_URL, headers=key2).json()["detail"]["code"] == "rate_limited"

    def test_headers_can_be_disabled_except_retry_after(
        self, client: TestClient, use_limiter, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        use_limiter(base_capacity=1)
        monkeypatch.setattr(settings.app, "rate_limit_include_headers", False)

        allowed = client.get(STATUS_URL)
        rejected = client.get(STATUS_URL)

        assert "X-RateLimit-Limit" not in allowed.headers
        assert rejected.status_code == 429
        assert "Retry-After" in rejected.headers
        assert "X-RateLimit-Limit" not in rejected.headers

    def test_disabled_limiting_admits_everything(
        self, client: TestClient, use_limiter, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        limiter = use_limiter(base_capacity=1)
        monkeypatch.setattr(settings.app, "rate_limit_enabled", False)

        for _ in range(3):
            resp = client.get(STATUS_URL)
            assert resp.status_code == 200
            assert resp.json()["enabled"] is False

        assert limiter.stats()["tracked_keys"] == 0

    def test_slow_down_delay_is_reported(self, client: TestClient, use_limiter) -> None:
        use_limiter(base_capacity=5, slow_down_after=1, slow_down_step_ms=5)

        assert client.get(STATUS_URL).json()["delay_ms"] == 0
        assert client.get(STATUS_URL).json()["delay_ms"] == 5
        assert client.get(STATUS_URL).json()["delay_ms"] == 10


class TestSuspiciousUserAgents:
    def test_flagged_user_agent_gets_blocked(
        self, client: TestClient, use_limiter, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        use_limiter(base_capacity=100, suspicion_threshold=2)
        monkeypatch.setattr(settings.app, "suspicious_user_agents", "sqlmap, nikto")
        scanner = {"User-Agent": "sqlmap/1.7"}

        assert client.get(STATUS_URL, headers=scanner).status_code == 200

        blocked = client.get(STATUS_URL, headers=scanner)
        assert blocked.status_code == 429
        assert blocked.json()["detail"]["code"] == "blocked"

        # The block is per key, not per User-Agent.
        assert client.get(STATUS_URL, headers={"User-Agent": "Mozilla/5.0"}).status_code == 429

    def test_matching_is_case_insensitive(
        self, client: TestClient, use_limiter, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        limiter = use_limiter(base_capacity=100, suspicion_threshold=5)
        monkeypatch.setattr(settings.app, "suspicious_user_agents", "nikto")

        client.get(STATUS_URL, headers={"User-Agent": "Mozilla/5.00 (Nikto/2.1.6)"})

        assert limiter.stats()["violations"] == 1

    def test_ordinary_user_agents_are_not_flagged(
        self, client: TestClient, use_limiter, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        limiter = use_limiter(base_capacity=100, suspicion_threshold=1)
        monkeypatch.setattr(settings.app, "suspicious_user_agents", "sqlmap")

        assert client.get(STATUS_URL, headers={"User-Agent": "curl/8.0"}).status_code == 200
        assert limiter.stats()["violations"] == 0


class TestKeyDerivation:
    def test_ip_key_uses_socket_address(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings.app, "trust_forwarded_for", False)
        monkeypatch.setattr(settings.app, "rate_limit_per_route", False)
        request = make_request(headers={"X-Forwarded-For": "203.0.113.7"})

        assert rate_limit_module.build_rate_limit_key(request, None) == "ip:10.0.0.1"

    def test_forwarded_for_first_hop_when_trusted(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings.app, "trust_forwarded_for", True)
        monkeypatch.setattr(settings.app, "rate_limit_per_route", False)
        request = make_request(headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"})

        assert rate_limit_module.build_rate_limit_key(request, None) == "ip:203.0.113.7"

    def test_empty_forwarded_for_falls_back_to_socket(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings.app, "trust_forwarded_for", True)
        monkeypatch.setattr(settings.app, "rate_limit_per_route", False)
        request = make_request(headers={"X-Forwarded-For": " , 10.0.0.9"})

        assert rate_limit_module.build_rate_limit_key(request, None) == "ip:10.0.0.1"

    def test_api_key_is_hashed(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings.app, "rate_limit_per_route", False)

        key = rate_limit_module.build_rate_limit_key(make_request(), "sk-live-secret")

        assert key == f"api_key:{hash_limiter_key('sk-live-secret')}"
        assert "sk-live-secret" not in key

    def test_per_route_suffix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings.app, "trust_forwarded_for", False)
        monkeypatch.setattr(settings.app, "rate_limit_per_route", True)

        key = rate_limit_module.build_rate_limit_key(make_request(path="/v1/limits/status"), None)

        assert key == "ip:10.0.0.1+route:/v1/limits/status"

    def test_process_limiter_is_reused_until_policy_changes(self, monkeypatch: pytest.MonkeyPatch) -> None:
        first = rate_limit_module.get_rate_limiter()
        assert rate_limit_module.get_rate_limiter() is first

        monkeypatch.setattr(settings.limiter, "base_capacity", settings.limiter.base_capacity + 1)

        rebuilt = rate_limit_module.get_rate_limiter()
        assert rebuilt is not first
        assert rebuilt.config.base_capacity == settings.limiter.base_capacity


def test_health_reports_limiter_counters(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings.app, "rate_limit_enabled", True)
    monkeypatch.setattr(settings.app, "suspicious_user_agents", None)

    client.get(STATUS_URL)
    resp = client.get("/health")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["limiter"]["allowed"] == 1
    assert body["limiter"]["tracked_keys"] == 1
    assert body["limiter"]["window_ms"] == settings.limiter.window_ms
    # Aggregates only: no key material in the payload.
    assert "testclient" not in resp.text
