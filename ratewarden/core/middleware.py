"""HTTP middleware for request correlation and limiter outcome logging.

Every request gets a correlation id (taken from the configured header or
generated) bound to the logging context, so the limiter's own events and the
per-request summary logged here can be joined.

Usage:
    app.middleware("http")(request_id_middleware)
"""

from __future__ import annotations

import logging
import time
import uuid

from fastapi import Request, Response

from ratewarden.adapters.rate_limit.base import Allow, Reject
from ratewarden.core.config import settings
from ratewarden.core.logging import clear_request_id, set_request_id

logger = logging.getLogger(__name__)

OUTCOME_NOT_LIMITED = "not_limited"


def rate_limit_outcome(request: Request) -> str:
    """Summarize the limiter decision stored on the request, if any.

    Returns:
        ``"allowed"``, ``"delayed"``, the reject reason (``"rate_limited"`` or
        ``"blocked"``), or ``"not_limited"`` for routes without the
        dependency or with limiting disabled.
    """

    decision = getattr(request.state, "rate_limit", None)
    if isinstance(decision, Reject):
        return decision.reason
    if isinstance(decision, Allow):
        return "delayed" if decision.delay_ms else "allowed"
    return OUTCOME_NOT_LIMITED


async def request_id_middleware(request: Request, call_next) -> Response:
    """Bind a request id, then log the request with its limiter outcome.

    The id is echoed on the response together with an
    ``X-Request-Duration-ms`` header; the duration includes any slow-down
    delay the limiter imposed.
    """

    header_name = settings.log.request_id_header
    request_id = request.headers.get(header_name) or uuid.uuid4().hex
    set_request_id(request_id)
    started = time.perf_counter()
    try:
        response: Response = await call_next(request)
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        outcome = rate_limit_outcome(request)
        if outcome != OUTCOME_NOT_LIMITED:
            logger.info(
                "http.request_limited" if response.status_code == 429 else "http.request",
                extra={
                    "route": request.url.path,
                    "method": request.method,
                    "status_code": response.status_code,
                    "duration_ms": elapsed_ms,
                    "rate_limit_outcome": outcome,
                },
            )
    finally:
        clear_request_id()

    response.headers[header_name] = request_id
    response.headers["X-Request-Duration-ms"] = f"{elapsed_ms:.2f}"
    return response
