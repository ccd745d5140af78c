"""Readthrough Execution -- the resilient read path.

ARCHITECTURE
────────────
::

    CacheAsideLoader / AsyncCacheAsideLoader
      ├── RequestCoalescer   ─ one in-flight origin fetch per key
      ├── RetryContext       ─ linear / exponential / constant backoff
      ├── CircuitBreaker     ─ fail fast while the origin is unhealthy
      └── origin(key)        ─ caller-supplied loader
"""

from readthrough.execution.circuit_breaker import CircuitBreaker, CircuitState, CircuitStats
from readthrough.execution.coalesce import (
    AsyncInFlightRequest,
    AsyncRequestCoalescer,
    InFlightRequest,
    RequestCoalescer,
)
from readthrough.execution.loader import AsyncCacheAsideLoader, CacheAsideLoader
from readthrough.execution.retry import (
    ConstantBackoff,
    ExponentialBackoff,
    LinearBackoff,
    NoRetry,
    RetryContext,
    RetryStrategy,
    with_retry,
)

__all__ = [
    "AsyncCacheAsideLoader",
    "AsyncInFlightRequest",
    "AsyncRequestCoalescer",
    "CacheAsideLoader",
    "CircuitBreaker",
    "CircuitState",
    "CircuitStats",
    "ConstantBackoff",
    "ExponentialBackoff",
    "InFlightRequest",
    "LinearBackoff",
    "NoRetry",
    "RequestCoalescer",
    "RetryContext",
    "RetryStrategy",
    "with_retry",
]
