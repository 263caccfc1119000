"""Global exception handlers for consistent error responses.

Design:
- AppError subclasses -> 400 (usage errors are the client's or caller's fault)
- Unexpected Exception -> generic 500 (safety net)
- All responses include request_id for tracing

Rate limit rejections do not pass through here: they are decisions, mapped
to 429 by ``ratewarden.core.rate_limit``.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ratewarden.core.errors import AppError, InvalidArgumentError
from ratewarden.core.logging import get_request_id

logger = logging.getLogger(__name__)


def _error_body(code: str, message: str, details: dict | None = None) -> dict:
    error_content = {
        "code": code,
        "message": message,
        "request_id": get_request_id(),
    }
    if details:
        error_content["details"] = details
    return {"error": error_content}


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Handle domain application errors with a consistent JSON body.

    Args:
        request: FastAPI request object.
        exc: AppError instance (or subclass).

    Returns:
        JSONResponse with status 400 and the error code, message and details.
    """
    logger.warning(
        "app_error_handled",
        extra={
            "error_code": exc.code,
            "error_message": exc.message,
            "error_kind": "invalid_argument" if isinstance(exc, InvalidArgumentError) else "app_error",
            "request_path": request.url.path,
            "has_details": bool(exc.details),
        },
    )

    return JSONResponse(
        status_code=400,
        content=_error_body(exc.code, exc.message, dict(exc.details) if exc.details else None),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback handler for unexpected errors.

    Logs the failure for debugging and returns a generic message so no
    implementation detail leaks to the client.
    """
    logger.error(
        "unhandled_exception",
        extra={
            "error_type": type(exc).__name__,
            "error_msg": str(exc),
            "request_path": request.url.path,
            "request_method": request.method,
        },
    )

    return JSONResponse(
        status_code=500,
        content=_error_body(
            "internal_server_error",
            "An unexpected error occurred. Please try again later.",
        ),
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI app."""
    app.exception_handler(AppError)(app_error_handler)
    app.exception_handler(Exception)(general_exception_handler)
