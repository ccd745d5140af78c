"""Circuit breaker pattern for fault tolerance.

Prevents cascading failures by failing fast when the origin is experiencing
issues.

States:
    CLOSED: Normal operation, requests pass through
    OPEN: Failing fast, requests rejected immediately
    HALF_OPEN: One probe request tests whether the origin recovered

The OPEN → HALF_OPEN flip is lazy: it is evaluated against the injected clock
whenever the breaker is consulted, so there is no timer to schedule.

Example:
    >>> from readthrough.execution.circuit_breaker import CircuitBreaker
    >>>
    >>> breaker = CircuitBreaker(
    ...     name="users_db",
    ...     failure_threshold=5,
    ...     reset_timeout=60.0,
    ... )
    >>> user = breaker.call(load_user, "user:42")
"""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from readthrough.core.clock import Clock, SystemClock
from readthrough.core.errors import CircuitOpenError, InvalidConfigError
from readthrough.core.logging import get_logger

T = TypeVar("T")

logger = get_logger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitStats:
    """Statistics for circuit breaker monitoring."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rejected_requests: int = 0
    state_changes: int = 0
    last_failure_time: float | None = None
    last_success_time: float | None = None
    last_state_change: float | None = None

    @property
    def failure_rate(self) -> float:
        """Calculate failure rate as percentage."""
        total = self.successful_requests + self.failed_requests
        if total == 0:
            return 0.0
        return (self.failed_requests / total) * 100


@dataclass
class CircuitBreaker:
    """Circuit breaker guarding a single origin.

    Attributes:
        name: Identifier for this circuit (usually the origin name)
        failure_threshold: Consecutive failures before opening
        reset_timeout: Seconds to stay open before admitting a probe
        clock: Time source (default: SystemClock)
    """

    name: str = "default"
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    clock: Clock = field(default_factory=SystemClock)

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _consecutive_failures: int = field(default=0, init=False)
    _opened_at: float | None = field(default=None, init=False)
    _probe_in_flight: bool = field(default=False, init=False)
    _generation: int = field(default=0, init=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)
    _stats: CircuitStats = field(default_factory=CircuitStats, init=False)

    def __post_init__(self) -> None:
        if isinstance(self.failure_threshold, bool) or not isinstance(self.failure_threshold, int) \
                or self.failure_threshold < 1:
            raise InvalidConfigError("failure_threshold", self.failure_threshold,
                                     "failure_threshold must be a positive integer")
        if self.reset_timeout < 0:
            raise InvalidConfigError("reset_timeout", self.reset_timeout,
                                     "reset_timeout must not be negative")

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        with self._lock:
            self._check_state_transition()
            return self._state

    @property
    def stats(self) -> CircuitStats:
        """Get circuit statistics."""
        return self._stats

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    @property
    def opened_at(self) -> float | None:
        """Clock reading when the circuit last opened (None if never)."""
        with self._lock:
            return self._opened_at

    def retry_after(self) -> float:
        """Seconds until a probe will be admitted (0 unless OPEN)."""
        with self._lock:
            self._check_state_transition()
            if self._state != CircuitState.OPEN or self._opened_at is None:
                return 0.0
            return max(0.0, self._opened_at + self.reset_timeout - self.clock.now())

    def _check_state_transition(self) -> None:
        """Flip OPEN to HALF_OPEN once the reset timeout has elapsed."""
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if self.clock.now() - self._opened_at >= self.reset_timeout:
                self._transition_to(CircuitState.HALF_OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        now = self.clock.now()
        self._state = new_state
        self._generation += 1
        self._stats.state_changes += 1
        self._stats.last_state_change = now

        if new_state == CircuitState.CLOSED:
            self._consecutive_failures = 0
            self._probe_in_flight = False
        elif new_state == CircuitState.OPEN:
            self._opened_at = now
            self._probe_in_flight = False
        elif new_state == CircuitState.HALF_OPEN:
            self._probe_in_flight = False

        logger.info(
            "circuit_state_changed",
            circuit=self.name,
            old_state=old_state.value,
            new_state=new_state.value,
        )

    def acquire(self) -> int | None:
        """Admit a request and return its permit, or None if rejected.

        A permit is the breaker generation at admission. Pass it back to
        :meth:`record_success` / :meth:`record_failure` so that results of
        calls admitted before a state change update stats only.

        In HALF_OPEN the first caller becomes the probe; everyone else is
        rejected until the probe reports back.
        """
        with self._lock:
            self._check_state_transition()
            self._stats.total_requests += 1

            if self._state == CircuitState.CLOSED:
                return self._generation

            if self._state == CircuitState.HALF_OPEN and not self._probe_in_flight:
                self._probe_in_flight = True
                return self._generation

            self._stats.rejected_requests += 1
            return None

    def allow_request(self) -> bool:
        """Check if a request should be allowed (see :meth:`acquire`)."""
        return self.acquire() is not None

    def _owns_state(self, permit: int | None) -> bool:
        # Caller holds the lock. Only the outstanding probe may decide HALF_OPEN.
        if self._state == CircuitState.HALF_OPEN:
            return self._probe_in_flight and permit == self._generation
        return permit is None or permit == self._generation

    def record_success(self, permit: int | None = None) -> None:
        """Record a successful request."""
        with self._lock:
            self._stats.successful_requests += 1
            self._stats.last_success_time = self.clock.now()
            self._consecutive_failures = 0

            if self._state == CircuitState.HALF_OPEN and self._owns_state(permit):
                self._transition_to(CircuitState.CLOSED)

    def record_failure(self, error: Exception | None = None, permit: int | None = None) -> None:
        """Record a failed request."""
        with self._lock:
            self._stats.failed_requests += 1
            self._stats.last_failure_time = self.clock.now()
            if not self._owns_state(permit):
                return

            self._consecutive_failures += 1
            if self._state == CircuitState.CLOSED:
                if self._consecutive_failures >= self.failure_threshold:
                    self._transition_to(CircuitState.OPEN)

            elif self._state == CircuitState.HALF_OPEN:
                # A failed probe re-opens and restarts the reset timeout
                self._transition_to(CircuitState.OPEN)

    def reset(self) -> None:
        """Reset circuit to closed state."""
        with self._lock:
            self._transition_to(CircuitState.CLOSED)
            self._opened_at = None

    def force_open(self) -> None:
        """Force circuit to open state (for maintenance)."""
        with self._lock:
            self._transition_to(CircuitState.OPEN)

    def _rejection(self) -> CircuitOpenError:
        return CircuitOpenError(
            f"Circuit '{self.name}' is open, rejecting request",
            breaker=self.name,
            retry_after=self.retry_after(),
        )

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Execute a function through the circuit breaker.

        Raises:
            CircuitOpenError: If circuit is open or a probe is outstanding
        """
        permit = self.acquire()
        if permit is None:
            raise self._rejection()

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            self.record_failure(e, permit)
            raise
        except BaseException:
            # Interrupted probe: free the slot without judging the origin
            self._release_probe(permit)
            raise
        self.record_success(permit)
        return result

    async def call_async(
        self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        """Execute an async function through the circuit breaker."""
        permit = self.acquire()
        if permit is None:
            raise self._rejection()

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            self.record_failure(e, permit)
            raise
        except BaseException:
            self._release_probe(permit)
            raise
        self.record_success(permit)
        return result

    def _release_probe(self, permit: int) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN and permit == self._generation:
                self._probe_in_flight = False


__all__ = [
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
    "CircuitStats",
]
