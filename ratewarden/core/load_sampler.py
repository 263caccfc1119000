"""Background host-load sampler feeding the limiter's adaptive capacity.

The limiter only consumes a normalized ``[0, 1]`` scalar; this module is one
way to produce it: the one-minute load average divided by the CPU count,
sampled on an asyncio task that lives for the duration of the app.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Callable

from fastapi import FastAPI

from ratewarden.adapters.rate_limit.base import AbstractRateLimiter
from ratewarden.core.config import settings

logger = logging.getLogger(__name__)


def sample_host_load() -> float:
    """Return the one-minute load average per CPU, clamped to ``[0, 1]``.

    Raises:
        OSError: If the platform does not expose a load average.
    """
    load_1m, _, _ = os.getloadavg()
    cpus = os.cpu_count() or 1
    return min(1.0, max(0.0, load_1m / cpus))


class LoadSampler:
    """Periodically report a load sample to a limiter."""

    def __init__(
        self,
        limiter_provider: Callable[[], AbstractRateLimiter],
        *,
        interval_s: float = 10.0,
        sampler: Callable[[], float] = sample_host_load,
    ) -> None:
        self._limiter_provider = limiter_provider
        self._interval_s = max(0.1, interval_s)
        self._sampler = sampler
        self.last_sample: float | None = None

    def sample_once(self) -> float:
        """Take one sample and report it. Returns the reported value."""
        load = self._sampler()
        self._limiter_provider().report_load(load)
        self.last_sample = load
        logger.debug("load_sampler.sample", extra={"load": round(load, 3)})
        return load

    async def run(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._interval_s)
            except asyncio.CancelledError:
                logger.info("load_sampler.cancelled")
                break
            try:
                self.sample_once()
            except OSError as exc:
                logger.warning(
                    "load_sampler.unavailable",
                    extra={"error_type": type(exc).__name__, "error_msg": str(exc)},
                )
                break


async def start_load_sampler(app: FastAPI, limiter_provider: Callable[[], AbstractRateLimiter]) -> None:
    if not settings.app.load_sampling_enabled:
        return

    sampler = LoadSampler(
        limiter_provider,
        interval_s=settings.app.load_sampling_interval_seconds,
    )
    app.state.load_sampler = sampler
    app.state.load_sampler_task = asyncio.create_task(sampler.run())
    logger.info(
        "load_sampler.started",
        extra={"interval_s": settings.app.load_sampling_interval_seconds},
    )


async def stop_load_sampler(app: FastAPI) -> None:
    task: Any = getattr(app.state, "load_sampler_task", None)
    if task is None:
        return
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    app.state.load_sampler_task = None
