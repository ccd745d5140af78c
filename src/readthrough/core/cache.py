"""
Cache store abstraction with in-memory and Redis backends.

The loader only needs a small contract from a cache: read a key, write a key
with a TTL, and delete a key. ``CacheBackend`` captures that contract;
``InMemoryCache`` and ``RedisCache`` implement it.

Manifesto:
    The cache is an optimization, never a source of truth. Backends report
    absence with the ``MISS`` sentinel (so a cached ``None`` stays a value),
    and the loader treats any backend failure as a miss.

    - **Protocol-based:** CacheBackend defines the contract
    - **Tier-aware:** InMemoryCache for one process, RedisCache for many
    - **TTL support:** Every write may carry its own time-to-live

Architecture:
    ::

        CacheBackend (Protocol)
        ├── InMemoryCache  : single-process, bounded LRU, clock-driven TTL
        └── RedisCache     : distributed, JSON values, PX expiry

        API: get(key) → value | MISS
             set(key, value, ttl_seconds=None)
             delete(key)
             exists(key) → bool
             clear()

Examples:
    >>> from readthrough.core.cache import InMemoryCache, MISS
    >>> cache = InMemoryCache(max_size=1000, default_ttl_seconds=600)
    >>> cache.set("user:123", {"name": "Alice"})
    >>> cache.get("user:123")
    {'name': 'Alice'}
    >>> cache.get("user:999") is MISS
    True

Guardrails:
    ❌ DON'T: Use InMemoryCache in multi-process deployments (no sharing)
    ✅ DO: Use RedisCache when several workers front the same origin

    ❌ DON'T: Cache without TTL (unbounded staleness)
    ✅ DO: Always set default_ttl_seconds or per-key ttl_seconds
"""

from __future__ import annotations

import json
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Final, Protocol

from readthrough.core.clock import Clock, SystemClock
from readthrough.core.errors import CacheStoreError


class _Miss:
    """Type of the ``MISS`` sentinel."""

    _instance: _Miss | None = None

    def __new__(cls) -> _Miss:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS: Final = _Miss()


@dataclass(frozen=True)
class CacheEntry:
    """A cached value and its absolute expiry.

    Attributes:
        key: Cache key
        value: Cached value
        expires_at: Clock reading at which the entry stops being valid
            (``None`` → never expires)
    """

    key: str
    value: Any
    expires_at: float | None = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class CacheBackend(Protocol):
    """Protocol for cache backend implementations.

    Implementations must be safe to call from several threads at once. The
    loader never relies on ``get`` followed by ``set`` being atomic.
    """

    def get(self, key: str) -> Any:
        """Retrieve a value by key.

        Returns:
            Cached value, or ``MISS`` if not found or expired.
        """
        ...

    def set(self, key: str, value: Any, *, ttl_seconds: float | None = None) -> None:
        """Store a value with optional TTL.

        Args:
            key: Cache key.
            value: JSON-serializable value to cache.
            ttl_seconds: Time-to-live in seconds. ``None`` → backend default.
                Zero or negative → the value is not stored.
        """
        ...

    def delete(self, key: str) -> None:
        """Remove a key. No-op if the key does not exist."""
        ...

    def exists(self, key: str) -> bool:
        """Check if a key exists and has not expired."""
        ...

    def clear(self) -> None:
        """Remove all keys."""
        ...


def _resolve_ttl(ttl_seconds: float | None, default: float | None) -> float | None:
    return ttl_seconds if ttl_seconds is not None else default


# ------------------------------------------------------------------ #
# In-Memory Cache
# ------------------------------------------------------------------ #


class InMemoryCache:
    """Bounded in-memory cache with TTL support.

    Uses LRU eviction when ``max_size`` is reached. Expiry is lazy: an expired
    entry is dropped the next time it is read. All operations hold a lock.

    Example:
        cache = InMemoryCache(max_size=500, default_ttl_seconds=1800)
        cache.set("session:abc", {"user_id": 42}, ttl_seconds=3600)
        session = cache.get("session:abc")
    """

    def __init__(
        self,
        *,
        max_size: int = 10_000,
        default_ttl_seconds: float | None = 3600,
        clock: Clock | None = None,
    ):
        """Initialize in-memory cache.

        Args:
            max_size: Maximum number of keys (LRU eviction after).
            default_ttl_seconds: Default TTL for all keys (``None`` → no expiry).
            clock: Time source for expiry (default: ``SystemClock``).
        """
        if max_size < 1:
            raise ValueError(f"max_size must be positive, got {max_size}")
        self._store: OrderedDict[str, CacheEntry] = OrderedDict()
        self._max_size = max_size
        self._default_ttl = default_ttl_seconds
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        """Retrieve a value by key."""
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return MISS
            self._store.move_to_end(key)
            return entry.value

    def set(self, key: str, value: Any, *, ttl_seconds: float | None = None) -> None:
        """Store a value with optional TTL."""
        ttl = _resolve_ttl(ttl_seconds, self._default_ttl)
        if ttl is not None and ttl <= 0:
            return

        expires_at = self._clock.now() + ttl if ttl is not None else None
        with self._lock:
            if key not in self._store and len(self._store) >= self._max_size:
                self._store.popitem(last=False)
            self._store[key] = CacheEntry(key=key, value=value, expires_at=expires_at)
            self._store.move_to_end(key)

    def delete(self, key: str) -> None:
        """Remove a key from the cache."""
        with self._lock:
            self._store.pop(key, None)

    def exists(self, key: str) -> bool:
        """Check if key exists and is not expired."""
        with self._lock:
            return self._live_entry(key) is not None

    def clear(self) -> None:
        """Remove all keys."""
        with self._lock:
            self._store.clear()

    def size(self) -> int:
        """Return current number of stored keys (expired ones included)."""
        with self._lock:
            return len(self._store)

    def entry(self, key: str) -> CacheEntry | None:
        """Return the live entry for ``key`` without touching LRU order."""
        with self._lock:
            return self._live_entry(key)

    def _live_entry(self, key: str) -> CacheEntry | None:
        # Caller holds the lock.
        entry = self._store.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock.now()):
            del self._store[key]
            return None
        return entry


# ------------------------------------------------------------------ #
# Redis Cache (optional)
# ------------------------------------------------------------------ #


class RedisCache:
    """Redis-backed distributed cache.

    Requires ``redis`` package (install via ``pip install readthrough[redis]``).
    Values are stored as JSON; TTLs are applied with millisecond precision.
    Client errors surface as :class:`CacheStoreError`.

    Example:
        cache = RedisCache("redis://localhost:6379/0", default_ttl_seconds=600)
        cache.set("product:123", {"name": "Widget", "price": 9.99})
        product = cache.get("product:123")
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        default_ttl_seconds: float | None = 3600,
        client: Any = None,
    ):
        """Initialize Redis cache.

        Args:
            url: Redis connection URL.
            default_ttl_seconds: Default TTL for all keys (``None`` → no expiry).
            client: Pre-built Redis client; ``url`` is ignored when given.

        Raises:
            ImportError: If ``redis`` package not installed.
        """
        try:
            import redis
        except ImportError as exc:
            msg = (
                "Redis backend requires 'redis' package. "
                "Install with: pip install readthrough[redis]"
            )
            raise ImportError(msg) from exc

        self._redis_error: type[Exception] = redis.RedisError
        self._client = client if client is not None else redis.from_url(url, decode_responses=False)
        self._default_ttl = default_ttl_seconds

    def get(self, key: str) -> Any:
        """Retrieve a value by key."""
        try:
            raw = self._client.get(key)
        except self._redis_error as exc:
            raise CacheStoreError(f"Redis GET failed for {key!r}", cause=exc) from exc

        if raw is None:
            return MISS
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise CacheStoreError(f"Undecodable value stored at {key!r}", cause=exc) from exc

    def set(self, key: str, value: Any, *, ttl_seconds: float | None = None) -> None:
        """Store a value with optional TTL."""
        ttl = _resolve_ttl(ttl_seconds, self._default_ttl)
        if ttl is not None and ttl <= 0:
            return

        serialized = json.dumps(value)
        try:
            if ttl is not None:
                self._client.set(key, serialized, px=max(1, int(ttl * 1000)))
            else:
                self._client.set(key, serialized)
        except self._redis_error as exc:
            raise CacheStoreError(f"Redis SET failed for {key!r}", cause=exc) from exc

    def delete(self, key: str) -> None:
        """Remove a key from the cache."""
        try:
            self._client.delete(key)
        except self._redis_error as exc:
            raise CacheStoreError(f"Redis DEL failed for {key!r}", cause=exc) from exc

    def exists(self, key: str) -> bool:
        """Check if key exists."""
        try:
            return bool(self._client.exists(key))
        except self._redis_error as exc:
            raise CacheStoreError(f"Redis EXISTS failed for {key!r}", cause=exc) from exc

    def clear(self) -> None:
        """Remove all keys from the current Redis database.

        Warning: This flushes the entire Redis DB.
        """
        try:
            self._client.flushdb()
        except self._redis_error as exc:
            raise CacheStoreError("Redis FLUSHDB failed", cause=exc) from exc


__all__ = [
    "MISS",
    "CacheBackend",
    "CacheEntry",
    "InMemoryCache",
    "RedisCache",
]
