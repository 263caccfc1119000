from __future__ import annotations

from fastapi import APIRouter

from ratewarden.core.rate_limit import get_rate_limiter
from ratewarden.schemas.limits import HealthResponse, LimiterStats

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthResponse)
def health_check() -> HealthResponse:
    """Liveness check with aggregate limiter counters.

    Not rate limited, so load balancers can always reach it.
    """

    return HealthResponse(limiter=LimiterStats(**get_rate_limiter().stats()))
