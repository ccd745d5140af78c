"""Clock abstraction for time-dependent components.

The circuit breaker, the retry sleeps and the in-memory cache TTLs all ask
a ``Clock`` for the time instead of calling ``time`` directly. Production code
uses ``SystemClock``; tests use ``ManualClock`` so that recovery timeouts and
expiries can be stepped through without sleeping.

Example:
    >>> from readthrough.core.clock import ManualClock
    >>> clock = ManualClock()
    >>> clock.advance(5)
    >>> clock.now()
    5.0
"""

from __future__ import annotations

import asyncio
import threading
import time
from typing import Protocol


class Clock(Protocol):
    """Source of monotonic time and of sleeping."""

    def now(self) -> float:
        """Current reading in seconds. Only differences are meaningful."""
        ...

    def sleep(self, seconds: float) -> None:
        """Block the calling thread for ``seconds``."""
        ...

    async def sleep_async(self, seconds: float) -> None:
        """Suspend the calling task for ``seconds``."""
        ...


class SystemClock:
    """Wall-independent clock backed by ``time.monotonic``."""

    def now(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        _check_duration(seconds)
        time.sleep(seconds)

    async def sleep_async(self, seconds: float) -> None:
        _check_duration(seconds)
        await asyncio.sleep(seconds)


class ManualClock:
    """Deterministic clock that only moves when told to.

    ``sleep`` and ``sleep_async`` advance the clock by the requested amount
    and return immediately. Every requested duration is appended to
    ``sleeps`` so tests can assert on backoff schedules.

    Attributes:
        sleeps: Durations passed to ``sleep``/``sleep_async``, in call order.
    """

    def __init__(self, start: float = 0.0):
        self._now = float(start)
        self._lock = threading.Lock()
        self.sleeps: list[float] = []

    def now(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> None:
        """Move the clock forward by ``seconds``."""
        _check_duration(seconds)
        with self._lock:
            self._now += seconds

    def sleep(self, seconds: float) -> None:
        _check_duration(seconds)
        with self._lock:
            self.sleeps.append(seconds)
            self._now += seconds

    async def sleep_async(self, seconds: float) -> None:
        self.sleep(seconds)
        # Still yield so other tasks get scheduled, as a real sleep would.
        await asyncio.sleep(0)


def _check_duration(seconds: float) -> None:
    if seconds < 0:
        raise ValueError(f"Duration must be non-negative, got {seconds}")


__all__ = [
    "Clock",
    "ManualClock",
    "SystemClock",
]
