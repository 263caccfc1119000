"""Application-level exception types.

Rate limit rejections are not errors: they are returned as ``Reject``
decisions. The types below cover usage errors (bad keys, bad timestamps,
bad configuration) which are surfaced to the caller immediately.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients."""

    field: str
    value: Any
    key_hash: str
    now_ms: float
    last_seen_ms: float
    tolerance_ms: int


@dataclass
class AppError(Exception):
    """Base error for limiter misuse and service failures.

    Attributes:
        code: Stable identifier clients can branch on (``invalid_load_sample``).
        message: Sentence describing what the caller got wrong.
        details: Structured context; never contains raw limiter keys.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when a value or policy fails validation."""


class InvalidArgumentError(ValidationAppError):
    """Raised when a limiter operation is called with malformed input.

    Examples: an empty key, a timestamp that moves backwards for a key by
    more than the configured clock-skew tolerance, or a load sample outside
    ``[0, 1]``.
    """
