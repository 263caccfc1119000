from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from ratewarden.adapters.rate_limit.base import Allow
from ratewarden.core.rate_limit import (
    enforce_rate_limit,
    flag_suspicious_user_agent,
    get_rate_limiter,
)
from ratewarden.schemas.limits import RateLimitErrorResponse, RateLimitStatusResponse

router = APIRouter(tags=["Rate limits"])


@router.get(
    "/limits/status",
    response_model=RateLimitStatusResponse,
    dependencies=[Depends(flag_suspicious_user_agent), Depends(enforce_rate_limit)],
    responses={429: {"model": RateLimitErrorResponse, "description": "Rate limited or blocked"}},
)
async def rate_limit_status(request: Request) -> RateLimitStatusResponse:
    """Report the caller's remaining budget.

    The request itself counts against the budget, so repeated calls walk the
    caller down to a 429 exactly like any other limited route.
    """

    decision = getattr(request.state, "rate_limit", None)
    if not isinstance(decision, Allow):
        return RateLimitStatusResponse(enabled=False)

    key_type = "api_key" if request.headers.get("X-API-Key") else "ip"
    return RateLimitStatusResponse(
        enabled=True,
        key_type=key_type,
        limit=decision.limit,
        remaining=decision.remaining,
        delay_ms=decision.delay_ms,
        window_ms=get_rate_limiter().config.window_ms,
    )
