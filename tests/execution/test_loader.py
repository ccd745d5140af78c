"""Tests for CacheAsideLoader.

Covers:
- Cache hits short-circuit the origin
- Coalescing of concurrent misses
- Retry, breaker trip and half-open recovery through fetch()
- TTL expiry, TTL <= 0, key prefixes
- Cache failures degrading to origin reads
- refresh() / invalidate()
"""

import threading
from unittest.mock import MagicMock

import pytest
import structlog

from readthrough.core.cache import MISS, InMemoryCache
from readthrough.core.errors import (
    CacheStoreError,
    CircuitOpenError,
    FetchTimeoutError,
    InvalidConfigError,
    OriginError,
)
from readthrough.core.settings import LoaderSettings
from readthrough.execution.circuit_breaker import CircuitState
from readthrough.execution.loader import CacheAsideLoader
from readthrough.execution.retry import ExponentialBackoff


@pytest.fixture
def make_loader(cache, clock):
    def factory(origin, **kwargs):
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("ttl_seconds", 600)
        return CacheAsideLoader(kwargs.pop("cache", cache), origin, **kwargs)
    return factory


class TestCacheHit:
    """Tests for reads served from cache."""

    def test_hit_short_circuits_origin(self, make_loader, cache, origin):
        """A hit never calls the origin."""
        cache.set("user:1", {"name": "cached"})
        loader = make_loader(origin)

        assert loader.fetch("user:1") == {"name": "cached"}
        assert origin.call_count == 0

    def test_cached_none_is_a_hit(self, make_loader, cache, origin):
        """A cached None counts as a hit."""
        cache.set("k", None)
        assert make_loader(origin).fetch("k") is None
        assert origin.call_count == 0


class TestCacheMiss:
    """Tests for reads that go to the origin."""

    def test_miss_loads_and_stores(self, make_loader, cache, origin, clock):
        """A miss loads from the origin and stores with the TTL."""
        loader = make_loader(origin, ttl_seconds=600)

        assert loader.fetch("user:1") == "value-for-user:1"
        assert origin.calls == ["user:1"]
        entry = cache.entry("user:1")
        assert entry.value == "value-for-user:1"
        assert entry.expires_at == clock.now() + 600

        assert loader.fetch("user:1") == "value-for-user:1"
        assert origin.call_count == 1

    def test_key_prefix(self, make_loader, cache, origin):
        """key_prefix namespaces cache keys but not origin keys."""
        loader = make_loader(origin, key_prefix="user:")
        loader.fetch("42")

        assert origin.calls == ["42"]
        assert cache.get("user:42") == "value-for-42"
        assert loader.cache_key("42") == "user:42"

    @pytest.mark.parametrize("ttl", [0, -5])
    def test_non_positive_ttl_does_not_cache(self, make_loader, cache, origin, ttl):
        """TTL <= 0 returns the value without caching it."""
        loader = make_loader(origin, ttl_seconds=ttl)
        loader.fetch("k")
        loader.fetch("k")

        assert origin.call_count == 2
        assert cache.size() == 0

    def test_ttl_expiry_reloads(self, make_loader, cache, origin, clock):
        """Expired entries are reloaded from the origin."""
        loader = make_loader(origin, ttl_seconds=1)
        loader.fetch("k")
        clock.advance(0.5)
        loader.fetch("k")
        assert origin.call_count == 1

        clock.advance(0.5)
        loader.fetch("k")
        assert origin.call_count == 2


class TestCoalescing:
    """Tests for per-key request coalescing."""

    def test_fifty_concurrent_fetches_one_origin_call(self, make_loader, origin, wait_until):
        """Fifty concurrent misses produce one origin call."""
        origin.default = lambda key: {"key": key, "token": object()}
        origin.gate = threading.Event()
        loader = make_loader(origin)

        results = []
        lock = threading.Lock()

        def caller():
            value = loader.fetch("hot")
            with lock:
                results.append(value)

        threads = [threading.Thread(target=caller) for _ in range(50)]
        for t in threads:
            t.start()
        wait_until(lambda: loader.coalescer.waiters("hot") == 50)
        origin.gate.set()
        for t in threads:
            t.join()

        assert origin.call_count == 1
        assert len(results) == 50
        assert all(r is results[0] for r in results)

    def test_waiters_share_failure(self, make_loader, make_origin, cache, wait_until):
        """Waiters get the same error object and nothing is cached."""
        origin = make_origin(ConnectionError("down"))
        origin.gate = threading.Event()
        loader = make_loader(origin, max_retries=1)

        errors = []
        lock = threading.Lock()

        def caller():
            try:
                loader.fetch("k")
            except OriginError as exc:
                with lock:
                    errors.append(exc)

        threads = [threading.Thread(target=caller) for _ in range(10)]
        for t in threads:
            t.start()
        wait_until(lambda: loader.coalescer.waiters("k") == 10)
        origin.gate.set()
        for t in threads:
            t.join()

        assert origin.call_count == 1
        assert len(errors) == 10
        assert all(e is errors[0] for e in errors)
        assert not cache.exists("k")

    def test_waiter_timeout(self, make_loader, origin, wait_until):
        """A waiter can give up without disturbing the fetch."""
        origin.gate = threading.Event()
        loader = make_loader(origin)
        driver_result = []
        driver = threading.Thread(target=lambda: driver_result.append(loader.fetch("k")))
        driver.start()
        wait_until(lambda: loader.coalescer.in_flight("k"))

        with pytest.raises(FetchTimeoutError):
            loader.fetch("k", timeout=0.05)

        origin.gate.set()
        driver.join()
        assert driver_result == ["value-for-k"]
        assert origin.call_count == 1


class TestRetry:
    """Tests for the retry path."""

    def test_retry_then_success(self, make_loader, make_origin, cache, clock):
        """Transient failures are retried with linear backoff."""
        origin = make_origin(ConnectionError("1"), ConnectionError("2"), "third-time")
        loader = make_loader(origin, max_retries=3, base_delay=0.5)

        assert loader.fetch("k") == "third-time"
        assert origin.call_count == 3
        assert clock.sleeps == [0.5, 1.0]
        assert cache.get("k") == "third-time"

    def test_exhausted_raises_origin_error(self, make_loader, make_origin, cache):
        """Exhausted retries raise OriginError wrapping the last error."""
        last = ConnectionError("3")
        origin = make_origin(ConnectionError("1"), ConnectionError("2"), last)
        loader = make_loader(origin, max_retries=3, name="users_db")

        with pytest.raises(OriginError) as exc_info:
            loader.fetch("k")

        error = exc_info.value
        assert error.cause is last
        assert error.__cause__ is last
        assert error.attempts == 3
        assert error.context.key == "k"
        assert error.context.origin == "users_db"
        assert cache.get("k") is MISS

    def test_custom_retry_strategy(self, make_loader, make_origin, clock):
        """A supplied retry strategy replaces the default."""
        origin = make_origin(ValueError(), ValueError(), "ok")
        loader = make_loader(
            origin, retry_strategy=ExponentialBackoff(max_retries=3, base_delay=1.0)
        )
        assert loader.fetch("k") == "ok"
        assert clock.sleeps == [1.0, 2.0]

    def test_retry_logged(self, make_loader, make_origin):
        """Each retry is logged as origin_retry."""
        origin = make_origin(ConnectionError("1"))
        loader = make_loader(origin, max_retries=2)

        with structlog.testing.capture_logs() as logs:
            loader.fetch("k")

        retries = [log for log in logs if log["event"] == "origin_retry"]
        assert len(retries) == 1
        assert retries[0]["key"] == "k"
        assert retries[0]["attempt"] == 1
        assert retries[0]["log_level"] == "warning"


class TestCircuitBreaker:
    """Tests for breaker integration."""

    def test_breaker_trips_after_threshold(self, make_loader, make_origin):
        """Consecutive failures open the breaker."""
        origin = make_origin(ConnectionError(), ConnectionError(), ConnectionError())
        loader = make_loader(origin, failure_threshold=3, max_retries=1)

        for key in ("a", "b", "c"):
            with pytest.raises(OriginError):
                loader.fetch(key)
        assert loader.breaker.state == CircuitState.OPEN

        with pytest.raises(CircuitOpenError) as exc_info:
            loader.fetch("d")
        assert origin.call_count == 3
        assert exc_info.value.retry_after == 60.0

    def test_open_breaker_not_retried(self, make_loader, make_origin, clock):
        """CircuitOpenError ends the retry loop at once."""
        origin = make_origin(ConnectionError(), ConnectionError())
        loader = make_loader(origin, failure_threshold=2, max_retries=5, base_delay=1.0)

        with pytest.raises(CircuitOpenError):
            loader.fetch("k")
        assert origin.call_count == 2
        assert clock.sleeps == [1.0, 2.0]

    def test_open_breaker_still_serves_cache(self, make_loader, make_origin, cache):
        """An open breaker does not block cache hits."""
        cache.set("warm", "cached")
        loader = make_loader(make_origin(), failure_threshold=1)
        loader.breaker.force_open()

        assert loader.fetch("warm") == "cached"
        with pytest.raises(CircuitOpenError):
            loader.fetch("cold")

    def test_half_open_probe_success_closes(self, make_loader, make_origin, clock):
        """A successful probe after reset_timeout closes the breaker."""
        origin = make_origin(ConnectionError(), ConnectionError(), "recovered")
        loader = make_loader(origin, failure_threshold=2, max_retries=1, reset_timeout=30)
        for key in ("a", "b"):
            with pytest.raises(OriginError):
                loader.fetch(key)

        clock.advance(30)
        assert loader.breaker.state == CircuitState.HALF_OPEN
        assert loader.fetch("c") == "recovered"
        assert loader.breaker.state == CircuitState.CLOSED

        assert loader.fetch("d") == "value-for-d"
        assert origin.call_count == 4

    def test_half_open_probe_failure_reopens(self, make_loader, make_origin, clock):
        """A failed probe re-opens the breaker at the failure time."""
        origin = make_origin(ConnectionError(), ConnectionError(), ConnectionError())
        loader = make_loader(origin, failure_threshold=2, max_retries=1, reset_timeout=30)
        for key in ("a", "b"):
            with pytest.raises(OriginError):
                loader.fetch(key)

        clock.advance(31)
        with pytest.raises(OriginError):
            loader.fetch("c")
        assert loader.breaker.state == CircuitState.OPEN
        assert loader.breaker.opened_at == 31.0

        with pytest.raises(CircuitOpenError):
            loader.fetch("d")
        assert origin.call_count == 3


class TestFailureLeavesNoEntry:
    """Tests for failure atomicity."""

    @pytest.mark.parametrize("key", ["a", "user:1", "", "ключ"])
    def test_failed_fetch_leaves_no_entry(self, make_loader, make_origin, cache, key):
        """A failed fetch writes nothing under any key."""
        origin = make_origin(*[RuntimeError("nope")] * 3)
        loader = make_loader(origin, max_retries=3, base_delay=0)

        with pytest.raises(OriginError):
            loader.fetch(key)
        assert not cache.exists(key)


class TestCacheFailures:
    """Tests for cache backend failures."""

    def test_read_failure_is_a_miss(self, make_loader, origin):
        """A read error is treated as a miss."""
        broken = MagicMock()
        broken.get.side_effect = CacheStoreError("redis down")
        loader = make_loader(origin, cache=broken)

        assert loader.fetch("k") == "value-for-k"
        broken.set.assert_called_once_with("k", "value-for-k", ttl_seconds=600)

    def test_write_failure_is_dropped(self, make_loader, origin):
        """A write error is logged and the value still returned."""
        broken = MagicMock()
        broken.get.return_value = MISS
        broken.set.side_effect = ConnectionError("redis down")
        loader = make_loader(origin, cache=broken)

        with structlog.testing.capture_logs() as logs:
            assert loader.fetch("k") == "value-for-k"
        assert any(log["event"] == "cache_write_failed" for log in logs)

    def test_invalidate_failure_is_logged(self, make_loader, origin):
        """An invalidate error is logged, not raised."""
        broken = MagicMock()
        broken.delete.side_effect = CacheStoreError("redis down")
        loader = make_loader(origin, cache=broken)

        with structlog.testing.capture_logs() as logs:
            loader.invalidate("k")
        assert logs[0]["event"] == "cache_invalidate_failed"


class TestRefreshAndInvalidate:
    """Tests for refresh() and invalidate()."""

    def test_refresh_overwrites_entry(self, make_loader, cache, origin):
        """refresh() bypasses and overwrites the cached value."""
        cache.set("k", "stale")
        loader = make_loader(origin)

        assert loader.refresh("k") == "value-for-k"
        assert cache.get("k") == "value-for-k"
        assert origin.call_count == 1

    def test_invalidate_forces_reload(self, make_loader, origin):
        """invalidate() makes the next fetch hit the origin."""
        loader = make_loader(origin)
        loader.fetch("k")
        loader.invalidate("k")
        loader.fetch("k")
        assert origin.call_count == 2


class TestConstruction:
    """Tests for loader construction."""

    @pytest.mark.parametrize(
        "kwargs",
        [{"max_retries": 0}, {"base_delay": -1}, {"failure_threshold": 0}, {"reset_timeout": -1}],
    )
    def test_rejects_invalid_config(self, cache, origin, kwargs):
        """Bad breaker or retry parameters raise InvalidConfigError."""
        with pytest.raises(InvalidConfigError):
            CacheAsideLoader(cache, origin, **kwargs)

    def test_from_settings(self, cache, origin, clock):
        """from_settings() applies every setting."""
        settings = LoaderSettings(
            ttl_seconds=5,
            failure_threshold=2,
            reset_timeout=10,
            max_retries=4,
            base_delay=0.25,
            backoff="exponential",
            key_prefix="p:",
        )
        loader = CacheAsideLoader.from_settings(cache, origin, settings, name="db", clock=clock)

        assert loader.ttl_seconds == 5
        assert loader.key_prefix == "p:"
        assert loader.breaker.name == "db"
        assert loader.breaker.failure_threshold == 2
        assert loader.breaker.reset_timeout == 10
        assert isinstance(loader.retry_strategy, ExponentialBackoff)
        assert loader.retry_strategy.max_retries == 4

        loader.fetch("x")
        assert cache.entry("p:x").expires_at == 5.0

    def test_separate_instances_have_separate_breakers(self, cache, origin):
        """Each loader owns its own breaker."""
        first = CacheAsideLoader(cache, origin)
        second = CacheAsideLoader(InMemoryCache(), origin)
        first.breaker.force_open()
        assert second.breaker.state == CircuitState.CLOSED
