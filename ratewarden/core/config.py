"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ratewarden.adapters.rate_limit.base import LimiterConfig

# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Nested BaseSettings don't inherit env_file, so populate os.environ first.
if _env_file:
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


def parse_csv(value: str | None) -> set[str]:
    """Parse a comma-separated setting into a set of trimmed, non-empty items.

    Examples:
        >>> sorted(parse_csv("curl, wget ,"))
        ['curl', 'wget']
        >>> parse_csv(None)
        set()
    """
    if not value:
        return set()
    return {item.strip() for item in value.split(",") if item.strip()}


def _build_limiter_settings() -> "LimiterSettings":
    """Build limiter settings from environment."""

    return LimiterSettings()


def _build_app_settings() -> "AppSettings":
    """Build app settings from environment."""

    return AppSettings()


def _build_log_settings() -> "LogSettings":
    """Build log settings from environment."""

    return LogSettings()


class LimiterSettings(BaseSettings):
    """Rate limiter policy, mirrored 1:1 onto ``LimiterConfig``."""

    window_ms: int = Field(60_000, description="Sliding window duration in milliseconds", ge=1)
    base_capacity: int = Field(100, description="Requests per window under nominal load", ge=1)
    min_capacity: int = Field(5, description="Lower bound for the adaptive capacity", ge=1)
    max_capacity: int = Field(200, description="Upper bound for the adaptive capacity", ge=1)
    suspicion_threshold: int = Field(5, description="Violations before a key is blocked", ge=1)
    block_duration_ms: int = Field(900_000, description="Block duration in milliseconds", ge=1)
    idle_eviction_ms: int = Field(
        3_600_000,
        description="Idle age after which a key's state is discarded",
        ge=1,
    )
    load_low_water: float = Field(0.3, description="Load at or below which capacity is not reduced")
    load_high_water: float = Field(0.8, description="Load at or above which capacity is fully reduced")
    min_load_factor: float = Field(0.3, description="Capacity multiplier under heavy load")
    idle_load_factor: float = Field(1.0, description="Capacity multiplier under light load")
    suspicion_decay_ms: int = Field(
        0,
        description="Quiet interval that forgives one suspicion point (0 disables)",
        ge=0,
    )
    slow_down_after: int | None = Field(
        None,
        description="Window occupancy after which admitted requests are delayed",
    )
    slow_down_step_ms: int = Field(500, description="Delay added per request past the threshold", ge=0)
    slow_down_max_delay_ms: int = Field(20_000, description="Maximum slow-down delay", ge=0)
    exempt_keys: str | None = Field(
        None,
        description="Comma-separated list of keys that are never limited (e.g. ip:127.0.0.1)",
    )
    max_keys: int | None = Field(100_000, description="Maximum tracked keys before LRU eviction")
    sweep_interval_ms: int = Field(60_000, description="Minimum spacing of idle sweeps", ge=0)
    clock_skew_tolerance_ms: int = Field(
        1_000,
        description="How far timestamps may move backwards for a key",
        ge=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="LIMITER_",
        case_sensitive=False,
    )

    def to_limiter_config(self) -> LimiterConfig:
        """Build the immutable engine policy.

        Raises:
            InvalidArgumentError: If the combination of values is inconsistent
                (e.g. ``max_capacity < min_capacity``).
        """

        return LimiterConfig(
            window_ms=self.window_ms,
            base_capacity=self.base_capacity,
            min_capacity=self.min_capacity,
            max_capacity=self.max_capacity,
            suspicion_threshold=self.suspicion_threshold,
            block_duration_ms=self.block_duration_ms,
            idle_eviction_ms=self.idle_eviction_ms,
            load_low_water=self.load_low_water,
            load_high_water=self.load_high_water,
            min_load_factor=self.min_load_factor,
            idle_load_factor=self.idle_load_factor,
            suspicion_decay_ms=self.suspicion_decay_ms,
            slow_down_after=self.slow_down_after,
            slow_down_step_ms=self.slow_down_step_ms,
            slow_down_max_delay_ms=self.slow_down_max_delay_ms,
            exempt_keys=frozenset(parse_csv(self.exempt_keys)),
            max_keys=self.max_keys,
            sweep_interval_ms=self.sweep_interval_ms,
            clock_skew_tolerance_ms=self.clock_skew_tolerance_ms,
        )


class AppSettings(BaseSettings):
    """HTTP integration configuration."""

    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )
    rate_limit_enabled: bool = Field(
        True,
        description="Enable rate limiting on protected routes",
    )
    rate_limit_include_headers: bool = Field(
        True,
        description="Include X-RateLimit-* and Retry-After headers",
    )
    rate_limit_per_route: bool = Field(
        False,
        description="Track each route separately (key gets a +route:<path> suffix)",
    )
    trust_forwarded_for: bool = Field(
        False,
        description="Use the first X-Forwarded-For hop as the client address",
    )
    suspicious_user_agents: str | None = Field(
        None,
        description="Comma-separated User-Agent fragments that count as a violation",
    )
    load_sampling_enabled: bool = Field(
        False,
        description="Report host load average to the limiter in the background",
    )
    load_sampling_interval_seconds: float = Field(
        10.0,
        description="Seconds between load samples",
        gt=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="json or plain")
    output: str = Field("stdout", description="stdout or file")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int = Field(10_485_760, description="Rotate log file at this size (0 disables)", ge=0)
    backup_count: int = Field(5, description="Rotated files to keep", ge=0)
    request_id_header: str = Field("X-Request-ID", description="Header carrying the request id")

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if a setting has the wrong type.
    """

    app_env: str = APP_ENV
    limiter: LimiterSettings = Field(default_factory=_build_limiter_settings)
    app: AppSettings = Field(default_factory=_build_app_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Nested settings are created via default_factory so env loading works.
settings = Settings()
