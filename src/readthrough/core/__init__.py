"""Readthrough Core -- clock, cache store, errors, logging and settings.

Architecture::

    clock.py      Clock protocol, SystemClock, ManualClock (tests)
    errors.py     Structured error hierarchy (ReadThroughError, OriginError, ...)
    cache.py      CacheBackend protocol, InMemoryCache, RedisCache, MISS
    logging.py    structlog configuration (JSON / console)
    settings.py   LoaderSettings (pydantic-settings, READTHROUGH_* env)

``settings`` is not imported here; import it from ``readthrough.core.settings``.
"""

from readthrough.core.cache import MISS, CacheBackend, CacheEntry, InMemoryCache, RedisCache
from readthrough.core.clock import Clock, ManualClock, SystemClock
from readthrough.core.errors import (
    CacheStoreError,
    CircuitOpenError,
    ConfigError,
    ErrorCategory,
    ErrorContext,
    FetchTimeoutError,
    InvalidConfigError,
    OriginError,
    ReadThroughError,
)
from readthrough.core.logging import configure_logging, get_logger

__all__ = [
    "MISS",
    "CacheBackend",
    "CacheEntry",
    "CacheStoreError",
    "CircuitOpenError",
    "Clock",
    "ConfigError",
    "ErrorCategory",
    "ErrorContext",
    "FetchTimeoutError",
    "InMemoryCache",
    "InvalidConfigError",
    "ManualClock",
    "OriginError",
    "ReadThroughError",
    "RedisCache",
    "SystemClock",
    "configure_logging",
    "get_logger",
]
