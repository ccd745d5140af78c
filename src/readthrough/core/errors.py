"""
Structured error types for readthrough.

Every error raised by the loader derives from ``ReadThroughError`` and carries
metadata that callers, retry logic and log pipelines can act on:

- **Category:** what failed (origin, circuit, cache, timeout, config)
- **Retryable:** whether the retry layer may attempt the operation again
- **Retry-after:** how long until trying again makes sense
- **Context:** the cache key, origin name and attempt count
- **Cause:** the underlying exception, chained as ``__cause__``

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                      ReadThroughError                        │
        │   (category, retryable, retry_after, context, cause)         │
        ├──────────────────────────────────────────────────────────────┤
        │  OriginError        CircuitOpenError     CacheStoreError     │
        │  (ORIGIN)           (CIRCUIT)            (CACHE)             │
        │                                                              │
        │  FetchTimeoutError  ConfigError                              │
        │  (TIMEOUT)          (CONFIG)                                 │
        │                          │                                   │
        │                     InvalidConfigError                       │
        └──────────────────────────────────────────────────────────────┘

Guardrails:
    ❌ DON'T: Retry a ``CircuitOpenError`` in a tight loop
    ✅ DO: Honour ``retry_after`` or fall back to a stale value

    ❌ DON'T: Surface ``CacheStoreError`` to callers of ``fetch``
    ✅ DO: Treat cache failures as misses (the loader already does)

    ❌ DON'T: Swallow the original exception when wrapping
    ✅ DO: Pass it as ``cause=`` for error chaining

Examples:
    >>> error = OriginError("users origin failed", cause=ConnectionError("refused"))
    >>> error.with_context(key="user:42", attempts=3).to_dict()["context"]
    {'key': 'user:42', 'attempts': 3}
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    ORIGIN = "ORIGIN"
    CIRCUIT = "CIRCUIT"
    CACHE = "CACHE"
    TIMEOUT = "TIMEOUT"
    CONFIG = "CONFIG"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Attributes:
        key: Cache key being fetched
        origin: Name of the origin (and of its circuit breaker)
        attempts: Number of origin attempts made before giving up
        metadata: Additional key-value pairs
    """

    key: str | None = None
    origin: str | None = None
    attempts: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for name in ["key", "origin", "attempts"]:
            value = getattr(self, name)
            if value is not None:
                result[name] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class ReadThroughError(Exception):
    """
    Base exception for all readthrough errors.

    Subclasses set ``default_category`` and ``default_retryable``; both can be
    overridden per instance.

    Examples:
        >>> error = ReadThroughError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.retryable
        False
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: float | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> ReadThroughError:
        """
        Add context to this error (fluent API).

        Usage:
            raise OriginError("Failed", cause=exc).with_context(
                key="user:42",
                origin="users_db",
            )
        """
        for name, value in kwargs.items():
            if name != "metadata" and hasattr(self.context, name):
                setattr(self.context, name, value)
            else:
                self.context.metadata[name] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = repr(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


class OriginError(ReadThroughError):
    """The origin loader failed on its final attempt.

    ``cause`` holds the last underlying error. Retryable by default since the
    origin may recover; the loader itself has already exhausted its retries.
    """

    default_category = ErrorCategory.ORIGIN
    default_retryable = True

    @property
    def attempts(self) -> int | None:
        return self.context.attempts


class CircuitOpenError(ReadThroughError):
    """Raised when the circuit is open and the origin was not contacted.

    Not retryable by the retry layer: looping on an open breaker would defeat
    the point of shedding load. ``retry_after`` tells callers when the next
    probe will be admitted.
    """

    default_category = ErrorCategory.CIRCUIT
    default_retryable = False

    def __init__(
        self,
        message: str = "Circuit breaker is open",
        *,
        breaker: str | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message, retry_after=retry_after)
        self.breaker = breaker
        if breaker is not None:
            self.context.origin = breaker


class CacheStoreError(ReadThroughError):
    """A cache backend operation failed."""

    default_category = ErrorCategory.CACHE
    default_retryable = True


class FetchTimeoutError(ReadThroughError):
    """A waiter gave up on an in-flight fetch before it finished."""

    default_category = ErrorCategory.TIMEOUT
    default_retryable = True


class ConfigError(ReadThroughError):
    """Base for configuration errors."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class InvalidConfigError(ConfigError):
    """A configuration value is out of range."""

    def __init__(self, key: str, value: Any, message: str | None = None):
        msg = message or f"Invalid configuration value for {key!r}: {value!r}"
        super().__init__(msg)
        self.key = key
        self.value = value
        self.context.metadata.update({"config_key": key, "config_value": value})


__all__ = [
    "CacheStoreError",
    "CircuitOpenError",
    "ConfigError",
    "ErrorCategory",
    "ErrorContext",
    "FetchTimeoutError",
    "InvalidConfigError",
    "OriginError",
    "ReadThroughError",
]
