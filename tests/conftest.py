"""
Shared pytest fixtures for readthrough tests.

This module provides:
- A ManualClock so breaker and TTL tests never sleep
- A counting origin whose behaviour each test scripts
- Marker auto-tagging by test location
"""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Any, Callable

import pytest
import structlog

from readthrough.core.cache import InMemoryCache
from readthrough.core.clock import ManualClock


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(__file__).parent)

        if "integration" in str(test_path):
            item.add_marker(pytest.mark.integration)

        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


@pytest.fixture(autouse=True)
def reset_structlog():
    """Undo any structlog configuration a test applied."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def cache(clock: ManualClock) -> InMemoryCache:
    return InMemoryCache(max_size=1000, default_ttl_seconds=None, clock=clock)


class ScriptedOrigin:
    """Origin loader that counts calls and follows a script.

    Each script item is either an exception (raised) or a value (returned).
    When the script runs out, ``default`` is used: a callable of the key.
    Setting ``gate`` makes every call block until the event is set.
    """

    def __init__(self, *script: Any, default: Callable[[str], Any] | None = None):
        self.script = list(script)
        self.default = default or (lambda key: f"value-for-{key}")
        self.calls: list[str] = []
        self.gate: threading.Event | None = None
        self._lock = threading.Lock()

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def __call__(self, key: str) -> Any:
        with self._lock:
            self.calls.append(key)
            step = self.script.pop(0) if self.script else None
        if self.gate is not None:
            assert self.gate.wait(timeout=5), "origin gate never opened"
        if isinstance(step, BaseException):
            raise step
        if step is not None:
            return step
        return self.default(key)


@pytest.fixture
def origin() -> ScriptedOrigin:
    return ScriptedOrigin()


@pytest.fixture
def make_origin() -> Callable[..., ScriptedOrigin]:
    """Factory for scripted origins: ``make_origin(ValueError(), "v")``."""
    return ScriptedOrigin


def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            pytest.fail("condition not reached before timeout")
        time.sleep(0.005)


@pytest.fixture
def wait_until() -> Callable[..., None]:
    """Poll (with short sleeps) until a predicate holds or fail the test."""
    return _wait_until
