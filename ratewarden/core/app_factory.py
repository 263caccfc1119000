"""Application factory for the FastAPI app.

Centralizes app construction (metadata, lifespan, middleware, handlers,
routers) so tests can build fresh instances.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from ratewarden import __version__
from ratewarden.api.routes import health_router, limits_router
from ratewarden.core.config import settings
from ratewarden.core.exception_handlers import setup_exception_handlers
from ratewarden.core.load_sampler import start_load_sampler, stop_load_sampler
from ratewarden.core.logging import configure_logging
from ratewarden.core.middleware import request_id_middleware
from ratewarden.core.openapi import apply_openapi_customizations
from ratewarden.core.rate_limit import get_rate_limiter


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    await start_load_sampler(app, get_rate_limiter)
    try:
        yield
    finally:
        await stop_load_sampler(app)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance.

    Returns:
        Configured FastAPI app with middleware, handlers, routers and docs.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    app = FastAPI(
        title="ratewarden",
        description=(
            "Adaptive per-key rate limiting: sliding windows, load-based "
            "capacity, slow-down and suspicion-based blocking. Rejections are "
            "429 responses with a Retry-After hint."
        ),
        version=__version__,
        lifespan=lifespan,
    )

    app.middleware("http")(request_id_middleware)

    setup_exception_handlers(app)

    app.include_router(limits_router, prefix="/v1")
    app.include_router(health_router)

    apply_openapi_customizations(app)

    return app
