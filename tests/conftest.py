"""Pytest configuration and fixtures shared across all test modules.

Environment defaults are set before any ratewarden import so the settings
singleton is built with test values.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("APP_LOAD_SAMPLING_ENABLED", "false")

import pytest

from ratewarden.core import rate_limit


class FakeClock:
    """Deterministic millisecond clock."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, ms: float) -> None:
        self.current += ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def fresh_process_limiter(monkeypatch: pytest.MonkeyPatch) -> None:
    """Drop the cached process-wide limiter so tests don't share state."""
    monkeypatch.setattr(rate_limit, "_limiter", None)
    monkeypatch.setattr(rate_limit, "_limiter_config", None)
