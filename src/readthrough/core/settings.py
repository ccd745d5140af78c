"""Environment-driven settings for a cache-aside loader.

``LoaderSettings`` gathers every tunable of :class:`CacheAsideLoader` (TTL,
breaker thresholds, retry schedule, key prefix) plus the logging knobs, and
reads them from ``READTHROUGH_*`` environment variables or a ``.env`` file.

Examples:
    >>> from readthrough.core.settings import LoaderSettings
    >>> settings = LoaderSettings(ttl_seconds=60, backoff="exponential")
    >>> settings.retry_strategy().next_delay(2)
    4.0

Environment::

    READTHROUGH_TTL_SECONDS=600
    READTHROUGH_FAILURE_THRESHOLD=5
    READTHROUGH_RESET_TIMEOUT=60
    READTHROUGH_MAX_RETRIES=3
    READTHROUGH_BASE_DELAY=1.0
    READTHROUGH_BACKOFF=linear
    READTHROUGH_REDIS_URL=redis://localhost:6379/0
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from readthrough.core.logging import configure_logging
from readthrough.execution.retry import (
    ConstantBackoff,
    ExponentialBackoff,
    LinearBackoff,
    RetryStrategy,
)


class LoaderSettings(BaseSettings):
    """Settings for a cache-aside loader and its logging.

    Fields
    ──────
    ttl_seconds        : Cache TTL for origin results (<= 0 disables caching)
    failure_threshold  : Consecutive origin failures that open the breaker
    reset_timeout      : Seconds the breaker stays open before a probe
    max_retries        : Total origin attempts per fetch
    base_delay         : Backoff unit in seconds
    max_delay          : Backoff cap in seconds
    backoff            : linear | exponential | constant
    key_prefix         : Namespace prepended to every cache key
    redis_url          : Redis URL when the Redis backend is used
    log_level          : Structlog log level
    log_json           : JSON logs (None → auto-detect from TTY)
    """

    model_config = SettingsConfigDict(
        env_prefix="READTHROUGH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Cache ────────────────────────────────────────────────────
    ttl_seconds: float = 600.0
    key_prefix: str = ""
    redis_url: str | None = None

    # ── Circuit breaker ──────────────────────────────────────────
    failure_threshold: int = Field(default=5, gt=0)
    reset_timeout: float = Field(default=60.0, ge=0)

    # ── Retry ────────────────────────────────────────────────────
    max_retries: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    backoff: Literal["linear", "exponential", "constant"] = "linear"

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None

    def retry_strategy(self) -> RetryStrategy:
        """Build the retry strategy described by these settings."""
        if self.backoff == "exponential":
            return ExponentialBackoff(
                max_retries=self.max_retries,
                base_delay=self.base_delay,
                max_delay=self.max_delay,
            )
        if self.backoff == "constant":
            return ConstantBackoff(max_retries=self.max_retries, delay=self.base_delay)
        return LinearBackoff(
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            increment=self.base_delay,
            max_delay=self.max_delay,
        )

    def configure_logging(self, service: str = "readthrough") -> None:
        """Apply ``log_level`` and ``log_json`` through :func:`configure_logging`."""
        configure_logging(level=self.log_level, json_format=self.log_json, service=service)


__all__ = ["LoaderSettings"]
