"""In-memory adaptive sliding-window rate limiter.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: one lock guards the key map and every per-key transition.
- No background threads: idle keys are swept opportunistically during calls
  (or explicitly via ``evict_idle``).
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Any, Callable

from ratewarden.adapters.rate_limit.base import (
    REASON_BLOCKED,
    REASON_RATE_LIMITED,
    AbstractRateLimiter,
    Allow,
    Decision,
    LimiterConfig,
    Reject,
    effective_capacity,
    hash_limiter_key,
)
from ratewarden.core.errors import InvalidArgumentError

logger = logging.getLogger(__name__)


def monotonic_ms() -> float:
    """Default clock: monotonic time in milliseconds."""
    return time.monotonic() * 1000


@dataclass
class _KeyState:
    last_seen: float
    history: deque[float] = field(default_factory=deque)
    suspicion_score: int = 0
    blocked_until: float | None = None
    last_violation_at: float | None = None

    def is_blocked(self, now: float) -> bool:
        return self.blocked_until is not None and now < self.blocked_until


def _ceil_ms(value: float) -> int:
    return max(1, math.ceil(value))


class AdaptiveRateLimiter(AbstractRateLimiter):
    """Sliding-window limiter with load-adaptive capacity and blocking.

    Each key keeps the timestamps of its admitted requests inside the trailing
    window. A request that finds the window full counts as a violation; enough
    violations block the key for ``block_duration_ms`` regardless of window
    occupancy. Out-of-band abuse signals feed the same ladder through
    ``record_violation``.

    Capacity shrinks with the load reported through ``report_load``, always
    within ``[min_capacity, max_capacity]``.
    """

    def __init__(
        self,
        config: LimiterConfig | None = None,
        *,
        clock: Callable[[], float] = monotonic_ms,
    ) -> None:
        """Initialize the limiter.

        Args:
            config: Limiter policy. Defaults to ``LimiterConfig()``.
            clock: Time source returning monotonic milliseconds, used when a
                caller does not pass ``now``.
        """
        self._config = config or LimiterConfig()
        self._clock = clock
        self._lock = threading.RLock()
        self._states: OrderedDict[str, _KeyState] = OrderedDict()
        # Written without the lock; readers tolerate a stale sample.
        self._load = 0.0
        self._last_sweep: float | None = None
        self._counters = self._empty_counters()

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return (
            f"AdaptiveRateLimiter(window_ms={self._config.window_ms}, "
            f"base_capacity={self._config.base_capacity}, load={self._load:.2f}, "
            f"tracked_keys={len(self._states)})"
        )

    @property
    def config(self) -> LimiterConfig:
        return self._config

    @property
    def current_load(self) -> float:
        return self._load

    def current_capacity(self) -> int:
        """Effective per-window capacity for the latest load sample."""
        return effective_capacity(self._load, self._config)

    def check(self, key: str, now: float | None = None) -> Decision:
        """Decide whether a request for ``key`` is admitted at ``now``.

        Args:
            key: Non-empty rate limit key.
            now: Monotonic timestamp in milliseconds (defaults to the clock).

        Returns:
            ``Allow`` with the remaining budget, or ``Reject`` with a reason and
            an accurate retry hint.

        Raises:
            InvalidArgumentError: If the key is empty or ``now`` moved backwards
                beyond the clock-skew tolerance.
        """
        self._validate_key(key)
        now = self._resolve_now(now)
        capacity = self.current_capacity()
        cfg = self._config

        if key in cfg.exempt_keys:
            with self._lock:
                self._counters["allowed"] += 1
            return Allow(remaining=capacity, limit=capacity)

        with self._lock:
            self._maybe_sweep_locked(now)
            state = self._get_state_locked(key, now)
            # Skew within tolerance is clamped forward so history stays ordered.
            now = state.last_seen

            if state.is_blocked(now):
                self._counters["blocked"] += 1
                return Reject(
                    reason=REASON_BLOCKED,
                    retry_after_ms=_ceil_ms(state.blocked_until - now),
                    limit=capacity,
                )

            self._expire_block_locked(key, state, now)
            self._decay_suspicion_locked(state, now)
            self._prune_locked(state, now)

            if len(state.history) >= capacity:
                if self._register_violation_locked(key, state, now):
                    self._counters["blocked"] += 1
                    return Reject(
                        reason=REASON_BLOCKED,
                        retry_after_ms=cfg.block_duration_ms,
                        limit=capacity,
                    )
                self._counters["rate_limited"] += 1
                # Occupancy can exceed capacity after a load increase; the
                # retry point is when enough entries age out to admit one.
                freeing = state.history[len(state.history) - capacity]
                return Reject(
                    reason=REASON_RATE_LIMITED,
                    retry_after_ms=_ceil_ms(cfg.window_ms - (now - freeing)),
                    limit=capacity,
                )

            state.history.append(now)
            self._counters["allowed"] += 1
            return Allow(
                remaining=capacity - len(state.history),
                limit=capacity,
                delay_ms=self._slow_down_delay(len(state.history)),
            )

    def record_violation(self, key: str, now: float | None = None) -> bool:
        """Count an abuse signal detected outside the rate window.

        The violation climbs the same ladder as a rejected request: once the
        suspicion score reaches ``suspicion_threshold`` the key is blocked. An
        active block is not extended.

        Args:
            key: Non-empty rate limit key.
            now: Monotonic timestamp in milliseconds (defaults to the clock).

        Returns:
            True if the key is blocked after the call.
        """
        self._validate_key(key)
        now = self._resolve_now(now)

        if key in self._config.exempt_keys:
            return False

        with self._lock:
            self._maybe_sweep_locked(now)
            state = self._get_state_locked(key, now)
            now = state.last_seen
            if state.is_blocked(now):
                return True

            self._expire_block_locked(key, state, now)
            self._decay_suspicion_locked(state, now)
            blocked = self._register_violation_locked(key, state, now)
            score = state.suspicion_score

        logger.info(
            "rate_limit.violation_recorded",
            extra={
                "key_hash": hash_limiter_key(key),
                "suspicion_score": score,
                "blocked": blocked,
            },
        )
        return blocked

    def report_load(self, load_sample: float) -> None:
        """Store the latest normalized load sample.

        Raises:
            InvalidArgumentError: If the sample is not a number in ``[0, 1]``.
        """
        if (
            isinstance(load_sample, bool)
            or not isinstance(load_sample, (int, float))
            or not 0.0 <= load_sample <= 1.0
        ):
            raise InvalidArgumentError(
                code="invalid_load_sample",
                message="load_sample must be a number in [0, 1]",
                details={"field": "load_sample", "value": load_sample},
            )
        self._load = float(load_sample)

    def evict_idle(self, now: float | None = None) -> int:
        """Drop key states idle for longer than ``idle_eviction_ms``.

        Keys serving an active block are kept so an idle attacker cannot shed
        the block by going quiet.

        Returns:
            Number of evicted keys.
        """
        now = self._resolve_now(now)
        with self._lock:
            return self._evict_idle_locked(now)

    def unblock(self, key: str) -> bool:
        """Forget everything known about ``key`` (block, suspicion, history).

        Returns:
            True if the key was tracked.
        """
        self._validate_key(key)
        with self._lock:
            removed = self._states.pop(key, None) is not None

        if removed:
            logger.info("rate_limit.unblocked", extra={"key_hash": hash_limiter_key(key)})
        return removed

    def reset(self) -> None:
        """Remove all key states and reset counters."""
        with self._lock:
            self._states.clear()
            self._counters = self._empty_counters()
            self._last_sweep = None

    def stats(self, now: float | None = None) -> dict[str, Any]:
        """Return lightweight limiter metrics without exposing keys.

        Args:
            now: Timestamp used to count active blocks. Callers that pass
                their own ``now`` to ``check`` should pass it here as well.
        """
        now = self._resolve_now(now)
        with self._lock:
            return {
                **self._counters,
                "tracked_keys": len(self._states),
                "blocked_keys": sum(1 for s in self._states.values() if s.is_blocked(now)),
                "current_load": self._load,
                "effective_capacity": self.current_capacity(),
                "window_ms": self._config.window_ms,
            }

    @staticmethod
    def _empty_counters() -> dict[str, int]:
        return {
            "allowed": 0,
            "rate_limited": 0,
            "blocked": 0,
            "blocks_activated": 0,
            "violations": 0,
            "evictions": 0,
        }

    @staticmethod
    def _validate_key(key: str) -> None:
        if not isinstance(key, str) or not key:
            raise InvalidArgumentError(
                code="invalid_rate_limit_key",
                message="key must be a non-empty string",
                details={"field": "key"},
            )

    def _resolve_now(self, now: float | None) -> float:
        if now is None:
            return self._clock()
        if isinstance(now, bool) or not isinstance(now, (int, float)) or not math.isfinite(now):
            raise InvalidArgumentError(
                code="invalid_timestamp",
                message="now must be a finite number of milliseconds",
                details={"field": "now", "value": now},
            )
        return float(now)

    def _get_state_locked(self, key: str, now: float) -> _KeyState:
        state = self._states.get(key)
        if state is None:
            state = _KeyState(last_seen=now)
            self._states[key] = state
            self._evict_if_over_capacity_locked(now, keep=key)
            return state

        tolerance = self._config.clock_skew_tolerance_ms
        if now < state.last_seen - tolerance:
            raise InvalidArgumentError(
                code="non_monotonic_timestamp",
                message="now is earlier than a previously seen timestamp for this key",
                details={
                    "key_hash": hash_limiter_key(key),
                    "now_ms": now,
                    "last_seen_ms": state.last_seen,
                    "tolerance_ms": tolerance,
                },
            )

        state.last_seen = max(state.last_seen, now)
        self._states.move_to_end(key)  # mark as recently used
        return state

    def _expire_block_locked(self, key: str, state: _KeyState, now: float) -> None:
        if state.blocked_until is None or now < state.blocked_until:
            return
        # Full reprieve: suspicion and window start over once the block is served.
        state.blocked_until = None
        state.suspicion_score = 0
        state.last_violation_at = None
        state.history.clear()
        logger.info("rate_limit.block_expired", extra={"key_hash": hash_limiter_key(key)})

    def _decay_suspicion_locked(self, state: _KeyState, now: float) -> None:
        decay_ms = self._config.suspicion_decay_ms
        if not decay_ms or not state.suspicion_score or state.last_violation_at is None:
            return

        intervals = int((now - state.last_violation_at) // decay_ms)
        if intervals <= 0:
            return

        state.suspicion_score = max(0, state.suspicion_score - intervals)
        if state.suspicion_score:
            state.last_violation_at += intervals * decay_ms
        else:
            state.last_violation_at = None

    def _prune_locked(self, state: _KeyState, now: float) -> None:
        cutoff = now - self._config.window_ms
        history = state.history
        while history and history[0] <= cutoff:
            history.popleft()

    def _register_violation_locked(self, key: str, state: _KeyState, now: float) -> bool:
        cfg = self._config
        state.suspicion_score += 1
        state.last_violation_at = now
        self._counters["violations"] += 1

        if state.suspicion_score < cfg.suspicion_threshold:
            return False

        state.blocked_until = now + cfg.block_duration_ms
        self._counters["blocks_activated"] += 1
        logger.warning(
            "rate_limit.block_activated",
            extra={
                "key_hash": hash_limiter_key(key),
                "suspicion_score": state.suspicion_score,
                "block_duration_ms": cfg.block_duration_ms,
            },
        )
        return True

    def _slow_down_delay(self, occupancy: int) -> int:
        cfg = self._config
        if cfg.slow_down_after is None or occupancy <= cfg.slow_down_after:
            return 0
        return min((occupancy - cfg.slow_down_after) * cfg.slow_down_step_ms, cfg.slow_down_max_delay_ms)

    def _maybe_sweep_locked(self, now: float) -> None:
        if self._last_sweep is None:
            self._last_sweep = now
            return
        if now - self._last_sweep < self._config.sweep_interval_ms:
            return
        self._evict_idle_locked(now)

    def _evict_idle_locked(self, now: float) -> int:
        self._last_sweep = now
        idle_ms = self._config.idle_eviction_ms
        stale_keys = [
            key
            for key, state in self._states.items()
            if now - state.last_seen > idle_ms and not state.is_blocked(now)
        ]
        for key in stale_keys:
            del self._states[key]

        if stale_keys:
            self._counters["evictions"] += len(stale_keys)
            logger.info(
                "rate_limit.evicted",
                extra={
                    "evicted": len(stale_keys),
                    "reason": "idle",
                    "tracked_keys": len(self._states),
                },
            )
        return len(stale_keys)

    def _evict_if_over_capacity_locked(self, now: float, keep: str) -> None:
        max_keys = self._config.max_keys
        if max_keys is None:
            return

        while len(self._states) > max_keys:
            # Least recently used first; active blocks go only as a last resort.
            candidates = [k for k in self._states if k != keep]
            key = next(
                (k for k in candidates if not self._states[k].is_blocked(now)),
                candidates[0],
            )
            del self._states[key]
            self._counters["evictions"] += 1
            logger.debug(
                "rate_limit.evicted",
                extra={"key_hash": hash_limiter_key(key), "reason": "max_keys"},
            )
