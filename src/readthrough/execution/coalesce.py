"""Request coalescing: one origin fetch per key, shared by every caller.

WHY
───
When a hot key expires, every request that misses at that moment would hit
the origin at once. The coalescer keeps a ledger of in-flight fetches so the
first caller for a key drives the fetch and later callers wait for its
result.

ARCHITECTURE
────────────
::

    RequestCoalescer
      ├── .run(key, func, timeout=None)  ─ drive or join the fetch for key
      ├── .in_flight(key)                ─ is a fetch for key underway?
      └── .waiters(key)                  ─ callers attached to that fetch

    ledger: dict[key → InFlightRequest(future, waiters)]
      insert/lookup/remove happen under one lock; func runs outside it.

    driver:  func() → remove ledger entry → publish result on the future
    waiters: block on the future (no polling) → same value or same error

``AsyncRequestCoalescer`` gives the same guarantees to asyncio tasks. The fetch
runs in its own task, so cancelling any caller (including the one that
started it) only detaches that caller.

Example::

    coalescer = RequestCoalescer()
    user = coalescer.run("user:42", lambda: db.load_user(42))
"""

import asyncio
import threading
from concurrent.futures import Future
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, TypeVar

from readthrough.core.errors import FetchTimeoutError

T = TypeVar("T")


@dataclass
class InFlightRequest(Generic[T]):
    """Ledger entry for a fetch that is underway.

    Attributes:
        key: Key being fetched
        future: Shared result handle, resolved once by the driver
        waiters: Callers currently attached (the driver included)
    """

    key: str
    future: Future = field(default_factory=Future)
    waiters: int = 0


class RequestCoalescer:
    """Thread-safe per-key request coalescer."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._in_flight: dict[str, InFlightRequest] = {}

    def run(self, key: str, func: Callable[[], T], *, timeout: float | None = None) -> T:
        """Return ``func()``'s outcome, running it at most once per key at a time.

        Args:
            key: Coalescing key
            func: Zero-argument callable that performs the fetch
            timeout: Seconds a *waiter* is willing to block (None = forever).
                The driver always runs ``func`` to completion.

        Raises:
            FetchTimeoutError: A waiter's timeout expired before the fetch ended.
            Exception: Whatever ``func`` raised, delivered to every caller.
        """
        with self._lock:
            flight = self._in_flight.get(key)
            is_driver = flight is None
            if flight is None:
                flight = InFlightRequest(key=key)
                self._in_flight[key] = flight
            flight.waiters += 1

        if is_driver:
            return self._drive(flight, func)
        return self._wait(flight, timeout)

    def in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._in_flight

    def waiters(self, key: str) -> int:
        with self._lock:
            flight = self._in_flight.get(key)
            return flight.waiters if flight is not None else 0

    def _drive(self, flight: InFlightRequest, func: Callable[[], T]) -> T:
        try:
            result = func()
        except BaseException as exc:
            self._retire(flight)
            flight.future.set_exception(exc)
            raise
        self._retire(flight)
        flight.future.set_result(result)
        return result

    def _wait(self, flight: InFlightRequest, timeout: float | None) -> Any:
        try:
            done, _ = wait_futures([flight.future], timeout=timeout)
            if not done:
                raise FetchTimeoutError(
                    f"Gave up waiting for in-flight fetch of {flight.key!r} after {timeout}s"
                ).with_context(key=flight.key)
            return flight.future.result()
        finally:
            with self._lock:
                flight.waiters -= 1

    def _retire(self, flight: InFlightRequest) -> None:
        # Remove before publishing: callers arriving after this start a new fetch.
        with self._lock:
            flight.waiters -= 1
            if self._in_flight.get(flight.key) is flight:
                del self._in_flight[flight.key]


@dataclass
class AsyncInFlightRequest:
    """Ledger entry for an in-flight asyncio fetch."""

    key: str
    task: "asyncio.Task[Any] | None" = None
    waiters: int = 0


class AsyncRequestCoalescer:
    """Per-key request coalescer for a single event loop.

    The ledger needs no lock: lookup and insert happen with no ``await`` in
    between, so no other task can interleave.
    """

    def __init__(self) -> None:
        self._in_flight: dict[str, AsyncInFlightRequest] = {}

    async def run(
        self,
        key: str,
        factory: Callable[[], Awaitable[T]],
        *,
        timeout: float | None = None,
    ) -> T:
        """Await ``factory()``'s outcome, running it at most once per key at a time.

        Raises:
            FetchTimeoutError: ``timeout`` expired before the fetch ended.
            asyncio.CancelledError: This caller was cancelled; the fetch goes on.
        """
        flight = self._in_flight.get(key)
        if flight is None:
            flight = AsyncInFlightRequest(key=key)
            flight.task = asyncio.get_running_loop().create_task(self._drive(flight, factory))
            flight.task.add_done_callback(_mark_retrieved)
            self._in_flight[key] = flight
        flight.waiters += 1

        task = flight.task
        try:
            # asyncio.wait never cancels the task, on timeout or on our own cancellation
            done, _ = await asyncio.wait({task}, timeout=timeout)
            if not done:
                raise FetchTimeoutError(
                    f"Gave up waiting for in-flight fetch of {key!r} after {timeout}s"
                ).with_context(key=key)
            return task.result()
        finally:
            flight.waiters -= 1

    def in_flight(self, key: str) -> bool:
        return key in self._in_flight

    def waiters(self, key: str) -> int:
        flight = self._in_flight.get(key)
        return flight.waiters if flight is not None else 0

    async def _drive(self, flight: AsyncInFlightRequest, factory: Callable[[], Awaitable[T]]) -> T:
        try:
            return await factory()
        finally:
            if self._in_flight.get(flight.key) is flight:
                del self._in_flight[flight.key]


def _mark_retrieved(task: "asyncio.Task[Any]") -> None:
    # Every attached caller already received the outcome; a fetch whose
    # callers all detached must not log "exception was never retrieved".
    if not task.cancelled():
        task.exception()


__all__ = [
    "AsyncInFlightRequest",
    "AsyncRequestCoalescer",
    "InFlightRequest",
    "RequestCoalescer",
]
