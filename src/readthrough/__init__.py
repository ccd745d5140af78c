"""
readthrough - Resilient cache-aside loading.

Reads go to a cache first; misses are coalesced per key and loaded from the
origin through a retry policy and a circuit breaker, then written back with a
TTL.

    >>> from readthrough import CacheAsideLoader, InMemoryCache
    >>> loader = CacheAsideLoader(InMemoryCache(), load_user, ttl_seconds=600)
    >>> loader.fetch("user:42")
"""

__version__ = "0.1.0"

from readthrough.core import *  # noqa: F401,F403
from readthrough.execution import *  # noqa: F401,F403
from readthrough.core.settings import LoaderSettings
from readthrough.core import __all__ as _core_all
from readthrough.execution import __all__ as _execution_all

__all__ = [*_core_all, *_execution_all, "LoaderSettings", "__version__"]
