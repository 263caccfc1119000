"""Rate limiting dependencies for FastAPI routes.

This module is the caller of the decision engine: it derives the limiter key
from request metadata, feeds abuse signals into the engine and maps its
decisions onto HTTP.

Key strategy:
- ``api_key:<hash>`` when an X-API-Key header is present.
- Otherwise ``ip:<client address>`` (first X-Forwarded-For hop when the
  deployment trusts its proxy).
- With per-route limiting enabled, ``+route:<path>`` is appended.

Response mapping:
- Allow: ``X-RateLimit-Limit`` / ``X-RateLimit-Remaining`` headers, plus an
  optional slow-down delay before the route runs.
- Reject: 429 with ``Retry-After`` in seconds and a JSON detail carrying the
  reason and a numeric retry hint.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated

from fastapi import Header, HTTPException, Request, Response, status

from ratewarden.adapters.rate_limit.base import (
    REASON_BLOCKED,
    AbstractRateLimiter,
    Allow,
    Decision,
    LimiterConfig,
    Reject,
    hash_limiter_key,
)
from ratewarden.adapters.rate_limit.in_memory import AdaptiveRateLimiter
from ratewarden.core.config import parse_csv, settings

logger = logging.getLogger(__name__)


_limiter: AdaptiveRateLimiter | None = None
_limiter_config: LimiterConfig | None = None


def get_rate_limiter() -> AdaptiveRateLimiter:
    """Return the process-wide rate limiter instance.

    The instance is cached in-module to preserve state across requests.
    If configuration changes (primarily in tests), the limiter is rebuilt.
    """

    global _limiter, _limiter_config

    config = settings.limiter.to_limiter_config()
    if _limiter is None or _limiter_config != config:
        _limiter = AdaptiveRateLimiter(config)
        _limiter_config = config
        logger.info(
            "rate_limit.limiter_built",
            extra={
                "window_ms": config.window_ms,
                "base_capacity": config.base_capacity,
                "suspicion_threshold": config.suspicion_threshold,
            },
        )

    return _limiter


def get_client_ip(request: Request) -> str:
    """Extract the client address, honouring X-Forwarded-For when trusted."""

    if settings.app.trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop

    return request.client.host if request.client else "unknown"


def build_rate_limit_key(request: Request, x_api_key: str | None) -> str:
    """Build the limiter key for the current request.

    Args:
        request: FastAPI request.
        x_api_key: API key value from the X-API-Key header.

    Returns:
        str: Namespaced limiter key.
    """

    if x_api_key:
        # The raw credential never becomes part of limiter state.
        key = f"api_key:{hash_limiter_key(x_api_key)}"
    else:
        key = f"ip:{get_client_ip(request)}"

    if settings.app.rate_limit_per_route:
        key = f"{key}+route:{request.url.path}"
    return key


def _key_type(key: str) -> str:
    return key.split(":", 1)[0]


def rejection_message(decision: Reject) -> str:
    """Client-facing explanation of a rejection, always with a retry hint."""

    seconds = decision.retry_after_seconds
    if decision.reason == REASON_BLOCKED:
        return (
            "Access temporarily blocked after repeated limit violations. "
            f"Try again in {seconds} seconds."
        )
    return f"Rate limit exceeded. Try again in {seconds} seconds."


def rejection_headers(decision: Reject) -> dict[str, str]:
    """HTTP headers describing a rejection."""

    headers = {"Retry-After": str(decision.retry_after_seconds)}
    if settings.app.rate_limit_include_headers:
        headers["X-RateLimit-Limit"] = str(decision.limit)
        headers["X-RateLimit-Remaining"] = "0"
    return headers


async def flag_suspicious_user_agent(
    request: Request,
    x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
) -> None:
    """FastAPI dependency counting suspicious User-Agents as violations.

    Matching is a case-insensitive substring test against the configured
    ``APP_SUSPICIOUS_USER_AGENTS`` markers. Each match climbs the same
    escalation ladder as exceeding the rate window, so a flagged client gets
    blocked after ``suspicion_threshold`` requests. Must run before
    ``enforce_rate_limit`` so the block applies to the same request.
    """

    if not settings.app.rate_limit_enabled:
        return

    markers = {marker.lower() for marker in parse_csv(settings.app.suspicious_user_agents)}
    if not markers:
        return

    user_agent = request.headers.get("user-agent", "").lower()
    if not any(marker in user_agent for marker in markers):
        return

    key = build_rate_limit_key(request, x_api_key)
    blocked = get_rate_limiter().record_violation(key)
    logger.warning(
        "rate_limit.suspicious_user_agent",
        extra={
            "key_type": _key_type(key),
            "key_hash": hash_limiter_key(key),
            "blocked": blocked,
        },
    )


async def enforce_rate_limit(
    request: Request,
    response: Response,
    x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
) -> None:
    """FastAPI dependency enforcing rate limits.

    Consumes one request from the caller's budget and stores the decision on
    ``request.state.rate_limit`` for the route to inspect.

    Raises:
        HTTPException: 429 Too Many Requests when the decision is a reject.
    """

    if not settings.app.rate_limit_enabled:
        request.state.rate_limit = None
        return

    limiter: AbstractRateLimiter = get_rate_limiter()
    key = build_rate_limit_key(request, x_api_key)
    decision: Decision = limiter.check(key)
    request.state.rate_limit = decision

    log_context = {
        "key_type": _key_type(key),
        "key_hash": hash_limiter_key(key),
        "limit": decision.limit,
        "route": request.url.path,
    }

    if isinstance(decision, Allow):
        logger.info(
            "rate_limit.allowed",
            extra={**log_context, "remaining": decision.remaining, "delay_ms": decision.delay_ms},
        )
        if settings.app.rate_limit_include_headers:
            response.headers["X-RateLimit-Limit"] = str(decision.limit)
            response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        if decision.delay_ms:
            await asyncio.sleep(decision.delay_ms / 1000)
        return

    logger.warning(
        "rate_limit.exceeded",
        extra={
            **log_context,
            "reason": decision.reason,
            "retry_after_ms": decision.retry_after_ms,
        },
    )

    raise HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "code": decision.reason,
            "message": rejection_message(decision),
            "retry_after_seconds": decision.retry_after_seconds,
        },
        headers=rejection_headers(decision),
    )
