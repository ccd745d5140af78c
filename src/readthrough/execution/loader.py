"""Resilient cache-aside loader.

Composes the cache store, request coalescer, retry policy and circuit breaker
into a single read path::

    fetch(key)
      │
      ├─ cache.get(prefix + key) ── hit ──▶ value
      │
      └─ miss ─▶ coalescer.run(key)            (one driver per key)
                   └─ RetryContext.run         (backoff between attempts)
                        └─ breaker.call        (fail fast when open)
                             └─ origin(key)
                   ├─ success ─▶ cache.set(prefix + key, value, ttl) ─▶ value
                   └─ failure ─▶ OriginError | CircuitOpenError (nothing cached)

Cache failures never reach the caller: a failed read is a miss and a failed
write is logged and dropped. Every waiter on a key gets the same value or the
same error.

Example:
    >>> from readthrough import CacheAsideLoader, InMemoryCache
    >>>
    >>> loader = CacheAsideLoader(
    ...     InMemoryCache(),
    ...     load_user,
    ...     ttl_seconds=600,
    ...     key_prefix="user:",
    ...     name="users_db",
    ... )
    >>> user = loader.fetch("42")
"""

from __future__ import annotations

import functools
import inspect
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Generic, TypeVar

from readthrough.core.cache import MISS, CacheBackend
from readthrough.core.clock import Clock, SystemClock
from readthrough.core.errors import CircuitOpenError, InvalidConfigError, OriginError
from readthrough.core.logging import get_logger
from readthrough.execution.circuit_breaker import CircuitBreaker
from readthrough.execution.coalesce import AsyncRequestCoalescer, RequestCoalescer
from readthrough.execution.retry import LinearBackoff, RetryContext, RetryStrategy

if TYPE_CHECKING:
    from readthrough.core.settings import LoaderSettings

V = TypeVar("V")

logger = get_logger(__name__)


class _LoaderBase(Generic[V]):
    """Configuration and cache/log plumbing shared by both loaders."""

    def __init__(
        self,
        cache: Any,
        origin: Callable[[str], Any],
        *,
        ttl_seconds: float = 600.0,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
        retry_strategy: RetryStrategy | None = None,
        key_prefix: str = "",
        name: str = "origin",
        clock: Clock | None = None,
    ):
        if max_retries < 1:
            raise InvalidConfigError("max_retries", max_retries, "max_retries must be at least 1")
        if base_delay < 0:
            raise InvalidConfigError("base_delay", base_delay, "base_delay must not be negative")

        self.name = name
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix
        self._cache = cache
        self._origin = origin
        self._clock = clock or SystemClock()
        self._breaker = CircuitBreaker(
            name=name,
            failure_threshold=failure_threshold,
            reset_timeout=reset_timeout,
            clock=self._clock,
        )
        self._retry_strategy = retry_strategy or LinearBackoff(
            max_retries=max_retries,
            base_delay=base_delay,
            increment=base_delay,
        )

    @classmethod
    def from_settings(
        cls,
        cache: Any,
        origin: Callable[[str], Any],
        settings: LoaderSettings | None = None,
        *,
        name: str = "origin",
        clock: Clock | None = None,
    ):
        """Build a loader from :class:`LoaderSettings` (env-driven by default)."""
        from readthrough.core.settings import LoaderSettings

        settings = settings or LoaderSettings()
        return cls(
            cache,
            origin,
            ttl_seconds=settings.ttl_seconds,
            failure_threshold=settings.failure_threshold,
            reset_timeout=settings.reset_timeout,
            max_retries=settings.max_retries,
            base_delay=settings.base_delay,
            retry_strategy=settings.retry_strategy(),
            key_prefix=settings.key_prefix,
            name=name,
            clock=clock,
        )

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def retry_strategy(self) -> RetryStrategy:
        return self._retry_strategy

    def cache_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def _retry_context(self, key: str) -> RetryContext:
        return RetryContext(
            self._retry_strategy,
            on_retry=functools.partial(self._log_retry, key),
            sleep=self._clock.sleep,
            sleep_async=self._clock.sleep_async,
        )

    def _log_retry(self, key: str, attempt: int, error: Exception, delay: float) -> None:
        logger.warning(
            "origin_retry",
            origin=self.name,
            key=key,
            attempt=attempt,
            delay=delay,
            error=repr(error),
        )

    def _origin_failed(self, key: str, ctx: RetryContext, exc: Exception) -> OriginError:
        logger.error(
            "origin_failed",
            origin=self.name,
            key=key,
            attempts=ctx.attempts,
            error=repr(exc),
        )
        return OriginError(
            f"Origin {self.name!r} failed for {key!r} after {ctx.attempts} attempt(s)",
            cause=exc,
        ).with_context(key=key, origin=self.name, attempts=ctx.attempts)

    def _circuit_rejected(self, key: str, exc: CircuitOpenError) -> None:
        logger.warning(
            "circuit_open_rejected",
            origin=self.name,
            key=key,
            retry_after=exc.retry_after,
        )

    def _should_store(self) -> bool:
        return self.ttl_seconds > 0

    def _cache_failed(self, event: str, key: str, exc: Exception) -> None:
        logger.warning(event, origin=self.name, key=key, error=repr(exc))


class CacheAsideLoader(_LoaderBase[V]):
    """Read-through loader for threaded callers.

    Args:
        cache: Any :class:`CacheBackend`
        origin: ``origin(key) -> value``; any ``Exception`` counts as a failure
        ttl_seconds: TTL for cached origin results (<= 0 disables caching)
        failure_threshold: Consecutive failures that open the breaker
        reset_timeout: Seconds the breaker stays open before a probe
        max_retries: Total origin attempts per fetch
        base_delay: Backoff unit; delay after attempt i is ``base_delay * (i + 1)``
        retry_strategy: Overrides ``max_retries``/``base_delay`` when given
        key_prefix: Namespace prepended to cache keys (not passed to origin)
        name: Origin name, used for the breaker and in logs/errors
        clock: Time source (default: SystemClock)
    """

    def __init__(
        self,
        cache: CacheBackend,
        origin: Callable[[str], V],
        **kwargs: Any,
    ):
        super().__init__(cache, origin, **kwargs)
        self._coalescer = RequestCoalescer()

    @property
    def coalescer(self) -> RequestCoalescer:
        return self._coalescer

    def fetch(self, key: str, *, timeout: float | None = None) -> V:
        """Return the value for ``key`` from cache or origin.

        Args:
            key: Caller-supplied key
            timeout: Max seconds to wait on another caller's in-flight fetch

        Raises:
            OriginError: The origin failed on every attempt
            CircuitOpenError: The breaker rejected the call
            FetchTimeoutError: ``timeout`` expired while waiting
        """
        cache_key = self.cache_key(key)
        value = self._read_cache(cache_key)
        if value is not MISS:
            logger.debug("cache_hit", origin=self.name, key=key)
            return value

        logger.debug("cache_miss", origin=self.name, key=key)
        return self._coalescer.run(
            cache_key, lambda: self._load_and_store(key, cache_key), timeout=timeout
        )

    def refresh(self, key: str, *, timeout: float | None = None) -> V:
        """Reload ``key`` from the origin and overwrite its cache entry."""
        cache_key = self.cache_key(key)
        return self._coalescer.run(
            cache_key, lambda: self._load_and_store(key, cache_key), timeout=timeout
        )

    def invalidate(self, key: str) -> None:
        """Drop the cache entry for ``key``; the next fetch goes to the origin."""
        cache_key = self.cache_key(key)
        try:
            self._cache.delete(cache_key)
        except Exception as exc:
            self._cache_failed("cache_invalidate_failed", cache_key, exc)

    def _load_and_store(self, key: str, cache_key: str) -> V:
        value = self._load_from_origin(key)
        self._write_cache(cache_key, value)
        return value

    def _load_from_origin(self, key: str) -> V:
        ctx = self._retry_context(key)
        try:
            return ctx.run(self._breaker.call, self._origin, key)
        except CircuitOpenError as exc:
            self._circuit_rejected(key, exc)
            raise
        except Exception as exc:
            raise self._origin_failed(key, ctx, exc) from exc

    def _read_cache(self, cache_key: str) -> Any:
        try:
            return self._cache.get(cache_key)
        except Exception as exc:
            self._cache_failed("cache_read_failed", cache_key, exc)
            return MISS

    def _write_cache(self, cache_key: str, value: V) -> None:
        if not self._should_store():
            return
        try:
            self._cache.set(cache_key, value, ttl_seconds=self.ttl_seconds)
        except Exception as exc:
            self._cache_failed("cache_write_failed", cache_key, exc)


async def _maybe_await(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


class AsyncCacheAsideLoader(_LoaderBase[V]):
    """Read-through loader for asyncio callers.

    Same contract as :class:`CacheAsideLoader`; ``origin`` is a coroutine
    function and cache methods may return awaitables. Cancelling a caller
    detaches it without cancelling the shared fetch.
    """

    def __init__(
        self,
        cache: Any,
        origin: Callable[[str], Awaitable[V]],
        **kwargs: Any,
    ):
        super().__init__(cache, origin, **kwargs)
        self._coalescer = AsyncRequestCoalescer()

    @property
    def coalescer(self) -> AsyncRequestCoalescer:
        return self._coalescer

    async def fetch(self, key: str, *, timeout: float | None = None) -> V:
        """Return the value for ``key`` from cache or origin."""
        cache_key = self.cache_key(key)
        value = await self._read_cache(cache_key)
        if value is not MISS:
            logger.debug("cache_hit", origin=self.name, key=key)
            return value

        logger.debug("cache_miss", origin=self.name, key=key)
        return await self._coalescer.run(
            cache_key, lambda: self._load_and_store(key, cache_key), timeout=timeout
        )

    async def refresh(self, key: str, *, timeout: float | None = None) -> V:
        """Reload ``key`` from the origin and overwrite its cache entry."""
        cache_key = self.cache_key(key)
        return await self._coalescer.run(
            cache_key, lambda: self._load_and_store(key, cache_key), timeout=timeout
        )

    async def invalidate(self, key: str) -> None:
        """Drop the cache entry for ``key``."""
        cache_key = self.cache_key(key)
        try:
            await _maybe_await(self._cache.delete(cache_key))
        except Exception as exc:
            self._cache_failed("cache_invalidate_failed", cache_key, exc)

    async def _load_and_store(self, key: str, cache_key: str) -> V:
        value = await self._load_from_origin(key)
        await self._write_cache(cache_key, value)
        return value

    async def _load_from_origin(self, key: str) -> V:
        ctx = self._retry_context(key)
        try:
            return await ctx.run_async(self._breaker.call_async, self._origin, key)
        except CircuitOpenError as exc:
            self._circuit_rejected(key, exc)
            raise
        except Exception as exc:
            raise self._origin_failed(key, ctx, exc) from exc

    async def _read_cache(self, cache_key: str) -> Any:
        try:
            return await _maybe_await(self._cache.get(cache_key))
        except Exception as exc:
            self._cache_failed("cache_read_failed", cache_key, exc)
            return MISS

    async def _write_cache(self, cache_key: str, value: V) -> None:
        if not self._should_store():
            return
        try:
            await _maybe_await(self._cache.set(cache_key, value, ttl_seconds=self.ttl_seconds))
        except Exception as exc:
            self._cache_failed("cache_write_failed", cache_key, exc)


__all__ = [
    "AsyncCacheAsideLoader",
    "CacheAsideLoader",
]
