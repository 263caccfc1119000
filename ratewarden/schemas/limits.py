"""Pydantic schemas for rate limit responses."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class RateLimitStatusResponse(BaseModel):
    """The caller's standing after the current request was admitted."""

    enabled: bool = Field(
        ..., description="Whether rate limiting is active for this deployment."
    )
    key_type: str | None = Field(
        default=None,
        description="How the caller was identified: 'api_key' or 'ip'.",
    )
    limit: int | None = Field(
        default=None,
        description="Effective requests per window after load adaptation.",
    )
    remaining: int | None = Field(
        default=None,
        description="Requests left in the current window.",
    )
    delay_ms: int = Field(
        default=0,
        description="Slow-down delay applied before this response.",
    )
    window_ms: int | None = Field(
        default=None,
        description="Sliding window duration in milliseconds.",
    )


class RateLimitErrorDetail(BaseModel):
    """Body ``detail`` of a 429 response."""

    code: Literal["rate_limited", "blocked"] = Field(
        ..., description="'rate_limited' when the window is full, 'blocked' after repeated violations."
    )
    message: str = Field(..., description="Human-readable explanation with a retry hint.")
    retry_after_seconds: int = Field(
        ..., ge=1, description="Seconds to wait before retrying (same as Retry-After)."
    )


class RateLimitErrorResponse(BaseModel):
    detail: RateLimitErrorDetail


class LimiterStats(BaseModel):
    """Aggregate limiter counters. No per-key data is exposed."""

    allowed: int
    rate_limited: int
    blocked: int
    blocks_activated: int
    violations: int
    evictions: int
    tracked_keys: int
    blocked_keys: int
    current_load: float
    effective_capacity: int
    window_ms: int


class HealthResponse(BaseModel):
    status: Literal["ok"] = "ok"
    limiter: LimiterStats
