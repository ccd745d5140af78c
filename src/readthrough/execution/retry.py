"""Retry strategies with linear or exponential backoff.

``max_retries`` counts total attempts: with ``max_retries=3`` the wrapped call
runs at most three times and sleeps twice. Delays never decrease from one
attempt to the next (unless jitter is switched on).

Errors that declare ``retryable=False`` (``CircuitOpenError`` among them)
are re-raised immediately without consuming further attempts.

Example:
    >>> from readthrough.execution.retry import LinearBackoff, RetryContext
    >>>
    >>> strategy = LinearBackoff(max_retries=3, base_delay=0.5, increment=0.5)
    >>> [strategy.next_delay(i) for i in range(3)]
    [0.5, 1.0, 1.5]
    >>> result = RetryContext(strategy).run(lambda: "ok")
"""

import asyncio
import functools
import inspect
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Calculate delay before the next attempt.

        Args:
            attempt: Zero-based index of the attempt that just failed

        Returns:
            Delay in seconds before next attempt
        """
        ...

    @abstractmethod
    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        """Determine if another attempt should be made.

        Args:
            attempt: Number of attempts made so far
            error: The exception that caused the failure

        Returns:
            True if should retry, False otherwise
        """
        ...


def _is_retryable(error: Exception | None) -> bool:
    return error is None or getattr(error, "retryable", True) is not False


@dataclass
class LinearBackoff(RetryStrategy):
    """Linear backoff strategy.

    Delay = min(base_delay + increment * attempt, max_delay)

    With ``increment == base_delay`` this is ``base_delay * (attempt + 1)``.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    increment: float = 1.0
    max_delay: float = 30.0

    def next_delay(self, attempt: int) -> float:
        """Calculate linear backoff delay."""
        return min(
            self.base_delay + (self.increment * attempt),
            self.max_delay,
        )

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        """Check if retry should be attempted."""
        return attempt < self.max_retries and _is_retryable(error)


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay) [+ jitter]

    Attributes:
        max_retries: Total number of attempts
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap in seconds
        multiplier: Exponential multiplier (default: 2)
        jitter: Add randomness to spread out synchronized retries
        jitter_range: Range of jitter as fraction of delay (0.0-1.0)
        retryable_errors: Exception types that are retryable (None = all)
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: bool = False
    jitter_range: float = 0.25
    retryable_errors: set[type] | None = None

    def next_delay(self, attempt: int) -> float:
        """Calculate exponential backoff delay."""
        delay = min(
            self.base_delay * (self.multiplier ** attempt),
            self.max_delay,
        )

        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay += random.uniform(-jitter_amount, jitter_amount)
            delay = max(0, delay)

        return delay

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        """Check if retry should be attempted."""
        if attempt >= self.max_retries or not _is_retryable(error):
            return False

        if error is not None and self.retryable_errors is not None:
            return isinstance(error, tuple(self.retryable_errors))

        return True


@dataclass
class ConstantBackoff(RetryStrategy):
    """Constant delay between retries."""

    max_retries: int = 3
    delay: float = 1.0

    def next_delay(self, attempt: int) -> float:
        return self.delay

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        return attempt < self.max_retries and _is_retryable(error)


@dataclass
class NoRetry(RetryStrategy):
    """No retry - fail immediately."""

    def next_delay(self, attempt: int) -> float:
        return 0.0

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        return False


@dataclass
class RetryContext:
    """Tracks one retry sequence and runs it.

    A context is single-use: create one per logical call.

    Example:
        >>> ctx = RetryContext(LinearBackoff(max_retries=3))
        >>> result = ctx.run(lambda: call_api())
        >>> ctx.attempts
        1
    """

    strategy: RetryStrategy
    on_retry: Callable[[int, Exception, float], None] | None = None
    sleep: Callable[[float], None] = time.sleep
    sleep_async: Callable[[float], Awaitable[None]] = asyncio.sleep
    attempt: int = field(default=0, init=False)
    last_error: Exception | None = field(default=None, init=False)
    delays: list[float] = field(default_factory=list, init=False)
    errors: list[tuple[int, Exception]] = field(default_factory=list, init=False)

    @property
    def attempts(self) -> int:
        """Number of attempts made."""
        return self.attempt

    def _record_failure(self, error: Exception) -> float | None:
        """Record a failed attempt; return the delay, or None to give up."""
        self.last_error = error
        self.errors.append((self.attempt, error))

        if not self.strategy.should_retry(self.attempt, error):
            return None

        delay = self.strategy.next_delay(self.attempt - 1)
        self.delays.append(delay)
        if self.on_retry:
            self.on_retry(self.attempt, error, delay)
        return delay

    def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Execute function with retry logic.

        Raises:
            The error from the last attempt once retries are exhausted, or
            any non-retryable error as soon as it occurs.
        """
        while True:
            self.attempt += 1
            try:
                return func(*args, **kwargs)
            except Exception as e:
                delay = self._record_failure(e)
                if delay is None:
                    raise
                self.sleep(delay)

    async def run_async(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Execute async function with retry logic."""
        while True:
            self.attempt += 1
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                delay = self._record_failure(e)
                if delay is None:
                    raise
                await self.sleep_async(delay)


def with_retry(
    strategy: RetryStrategy | None = None,
    on_retry: Callable[[int, Exception, float], None] | None = None,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator factory to add retry logic to a function.

    Args:
        strategy: Retry strategy (default: LinearBackoff)
        on_retry: Callback called before each retry (attempt, error, delay)

    Example:
        >>> @with_retry(LinearBackoff(max_retries=3, base_delay=0.1, increment=0.1))
        ... def flaky_operation():
        ...     return call_api()
    """
    if strategy is None:
        strategy = LinearBackoff()

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                ctx = RetryContext(strategy=strategy, on_retry=on_retry)
                return await ctx.run_async(func, *args, **kwargs)
            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> T:
            ctx = RetryContext(strategy=strategy, on_retry=on_retry)
            return ctx.run(func, *args, **kwargs)
        return sync_wrapper

    return decorator


__all__ = [
    "ConstantBackoff",
    "ExponentialBackoff",
    "LinearBackoff",
    "NoRetry",
    "RetryContext",
    "RetryStrategy",
    "with_retry",
]
