"""Rate limiter interfaces.

Callers should depend on this abstraction (not the concrete implementation)
so the storage backend can be swapped later with minimal changes.

A decision is one of two frozen dataclasses:

- ``Allow``: the request is admitted. ``delay_ms`` is a slow-down hint the
  caller may honour before serving the request.
- ``Reject``: the request is refused, always with a positive
  ``retry_after_ms`` the caller can turn into a ``Retry-After`` header.
"""

from __future__ import annotations

import hashlib
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal, Union

from ratewarden.core.errors import InvalidArgumentError

RejectReason = Literal["rate_limited", "blocked"]

REASON_RATE_LIMITED: RejectReason = "rate_limited"
REASON_BLOCKED: RejectReason = "blocked"


@dataclass(frozen=True)
class Allow:
    """The request is admitted.

    Attributes:
        remaining: Requests left in the current window for this key.
        limit: Effective capacity used for the decision.
        delay_ms: Suggested delay before serving (0 when no slow-down applies).
    """

    remaining: int
    limit: int
    delay_ms: int = 0

    @property
    def allowed(self) -> bool:
        return True


@dataclass(frozen=True)
class Reject:
    """The request is refused.

    Attributes:
        reason: ``"rate_limited"`` when the window is full, ``"blocked"`` when
            the key is serving a block.
        retry_after_ms: Earliest time (ms from now) at which a retry can
            succeed. Always > 0.
        limit: Effective capacity used for the decision.
    """

    reason: RejectReason
    retry_after_ms: int
    limit: int

    @property
    def allowed(self) -> bool:
        return False

    @property
    def retry_after_seconds(self) -> int:
        """Retry hint rounded up to whole seconds (for HTTP ``Retry-After``)."""
        return max(1, math.ceil(self.retry_after_ms / 1000))


Decision = Union[Allow, Reject]


def _require(condition: bool, field_name: str, value: Any, message: str) -> None:
    if not condition:
        raise InvalidArgumentError(
            code="invalid_limiter_config",
            message=f"{field_name} {message}",
            details={"field": field_name, "value": value},
        )


@dataclass(frozen=True)
class LimiterConfig:
    """Immutable limiter policy. Create a new limiter to change it.

    Attributes:
        window_ms: Sliding window duration.
        base_capacity: Requests allowed per window under nominal load.
        min_capacity: Lower bound for the adaptive capacity.
        max_capacity: Upper bound for the adaptive capacity.
        suspicion_threshold: Violations before a key is blocked.
        block_duration_ms: How long a key stays blocked once thresholded.
        idle_eviction_ms: Age after which an inactive key's state is dropped.
        load_low_water: Load at or below which ``idle_load_factor`` applies.
        load_high_water: Load at or above which ``min_load_factor`` applies.
        min_load_factor: Capacity multiplier under heavy load.
        idle_load_factor: Capacity multiplier under light load.
        suspicion_decay_ms: One suspicion point is forgiven per elapsed
            interval without violations. 0 disables decay.
        slow_down_after: Window occupancy after which admitted requests carry
            a delay hint. None disables slow-down.
        slow_down_step_ms: Delay added per request past ``slow_down_after``.
        slow_down_max_delay_ms: Upper bound for the delay hint.
        exempt_keys: Keys that are always admitted and never tracked.
        max_keys: Upper bound on tracked keys (LRU eviction). None disables.
        sweep_interval_ms: Minimum spacing of opportunistic idle sweeps.
        clock_skew_tolerance_ms: How far ``now`` may move backwards for a key.
    """

    window_ms: int = 60_000
    base_capacity: int = 100
    min_capacity: int = 5
    max_capacity: int = 200
    suspicion_threshold: int = 5
    block_duration_ms: int = 900_000
    idle_eviction_ms: int = 3_600_000
    load_low_water: float = 0.3
    load_high_water: float = 0.8
    min_load_factor: float = 0.3
    idle_load_factor: float = 1.0
    suspicion_decay_ms: int = 0
    slow_down_after: int | None = None
    slow_down_step_ms: int = 500
    slow_down_max_delay_ms: int = 20_000
    exempt_keys: frozenset[str] = field(default_factory=frozenset)
    max_keys: int | None = 100_000
    sweep_interval_ms: int = 60_000
    clock_skew_tolerance_ms: int = 1_000

    def __post_init__(self) -> None:
        _require(self.window_ms >= 1, "window_ms", self.window_ms, "must be >= 1")
        _require(self.base_capacity >= 1, "base_capacity", self.base_capacity, "must be >= 1")
        _require(self.min_capacity >= 1, "min_capacity", self.min_capacity, "must be >= 1")
        _require(
            self.max_capacity >= self.min_capacity,
            "max_capacity",
            self.max_capacity,
            "must be >= min_capacity",
        )
        _require(
            self.suspicion_threshold >= 1,
            "suspicion_threshold",
            self.suspicion_threshold,
            "must be >= 1",
        )
        _require(
            self.block_duration_ms >= 1,
            "block_duration_ms",
            self.block_duration_ms,
            "must be >= 1",
        )
        _require(
            self.idle_eviction_ms >= 1,
            "idle_eviction_ms",
            self.idle_eviction_ms,
            "must be >= 1",
        )
        _require(
            0.0 <= self.load_low_water < self.load_high_water <= 1.0,
            "load_low_water",
            (self.load_low_water, self.load_high_water),
            "must satisfy 0 <= load_low_water < load_high_water <= 1",
        )
        _require(
            0.0 < self.min_load_factor <= self.idle_load_factor,
            "min_load_factor",
            (self.min_load_factor, self.idle_load_factor),
            "must satisfy 0 < min_load_factor <= idle_load_factor",
        )
        _require(
            self.suspicion_decay_ms >= 0,
            "suspicion_decay_ms",
            self.suspicion_decay_ms,
            "must be >= 0",
        )
        _require(
            self.slow_down_after is None or self.slow_down_after >= 0,
            "slow_down_after",
            self.slow_down_after,
            "must be >= 0",
        )
        _require(
            0 <= self.slow_down_step_ms and 0 <= self.slow_down_max_delay_ms,
            "slow_down_step_ms",
            (self.slow_down_step_ms, self.slow_down_max_delay_ms),
            "and slow_down_max_delay_ms must be >= 0",
        )
        _require(
            self.max_keys is None or self.max_keys >= 1,
            "max_keys",
            self.max_keys,
            "must be >= 1",
        )
        _require(
            self.sweep_interval_ms >= 0,
            "sweep_interval_ms",
            self.sweep_interval_ms,
            "must be >= 0",
        )
        _require(
            self.clock_skew_tolerance_ms >= 0,
            "clock_skew_tolerance_ms",
            self.clock_skew_tolerance_ms,
            "must be >= 0",
        )


def load_adaptation_factor(load: float, config: LimiterConfig) -> float:
    """Map a normalized load sample to a capacity multiplier.

    The curve is flat at ``idle_load_factor`` up to ``load_low_water``, falls
    linearly to ``min_load_factor`` at ``load_high_water`` and stays there.
    It never increases as load increases.

    Args:
        load: Load sample in ``[0, 1]``.
        config: Limiter policy holding the curve parameters.

    Returns:
        Multiplier applied to ``base_capacity``.
    """

    if load <= config.load_low_water:
        return config.idle_load_factor
    if load >= config.load_high_water:
        return config.min_load_factor

    span = config.load_high_water - config.load_low_water
    progress = (load - config.load_low_water) / span
    return config.idle_load_factor - progress * (config.idle_load_factor - config.min_load_factor)


def effective_capacity(load: float, config: LimiterConfig) -> int:
    """Compute the per-window request budget for a load sample.

    Returns:
        ``floor(clamp(base_capacity * factor, min_capacity, max_capacity))``,
        never below 1.
    """

    scaled = config.base_capacity * load_adaptation_factor(load, config)
    clamped = min(max(scaled, config.min_capacity), config.max_capacity)
    return max(1, math.floor(clamped))


class AbstractRateLimiter(ABC):
    """Interface for rate limiters."""

    @abstractmethod
    def check(self, key: str, now: float | None = None) -> Decision:
        """Decide whether a request for ``key`` is admitted.

        Args:
            key: Non-empty identifier (e.g., ``"ip:203.0.113.7"``).
            now: Monotonic timestamp in milliseconds. Defaults to the
                limiter's clock.

        Returns:
            ``Allow`` or ``Reject``.

        Raises:
            InvalidArgumentError: If the key or timestamp is malformed.
        """
        raise NotImplementedError

    @abstractmethod
    def record_violation(self, key: str, now: float | None = None) -> bool:
        """Count an out-of-band abuse signal against ``key``.

        Returns:
            True if the key is blocked after the call.
        """
        raise NotImplementedError

    @abstractmethod
    def report_load(self, load_sample: float) -> None:
        """Update the process-wide load sample in ``[0, 1]``."""
        raise NotImplementedError

    @abstractmethod
    def evict_idle(self, now: float | None = None) -> int:
        """Drop idle key states. Returns the number of evicted keys."""
        raise NotImplementedError


def hash_limiter_key(key: str) -> str:
    """Hash a limiter key for logging without exposing client identifiers."""
    return hashlib.sha256(key.encode()).hexdigest()[:16]
