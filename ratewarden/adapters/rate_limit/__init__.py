"""Rate limiting adapters.

This package provides a small abstraction layer so callers can start with the
in-memory limiter and later migrate to Redis or another shared store without
changing the HTTP layer.
"""

from __future__ import annotations

from ratewarden.adapters.rate_limit.base import (
    AbstractRateLimiter,
    Allow,
    Decision,
    LimiterConfig,
    Reject,
    effective_capacity,
    load_adaptation_factor,
)
from ratewarden.adapters.rate_limit.in_memory import AdaptiveRateLimiter

__all__ = [
    "AbstractRateLimiter",
    "AdaptiveRateLimiter",
    "Allow",
    "Decision",
    "LimiterConfig",
    "Reject",
    "effective_capacity",
    "load_adaptation_factor",
]
