"""Distributed token semaphore coordinated through Redis.

A pool of N interchangeable tokens lives in Redis: a list of free tokens
and a hash of held ones. Independent processes acquire and release tokens
with atomic list and transaction commands, create the pool lazily, and
reclaim tokens abandoned by crashed holders under a self-expiring mutex.

Example usage (sync):

    >>> from redis import Redis
    >>> from redis_token_semaphore import Semaphore
    >>>
    >>> redis = Redis()
    >>> sem = Semaphore(key='my-resource', resources=3, redis=redis)
    >>>
    >>> with sem as token:
    ...     # Critical section with limited concurrency (max 3)
    ...     pass

Example usage (async):

    >>> import asyncio
    >>> from redis.asyncio import Redis
    >>> from redis_token_semaphore import AIOSemaphore
    >>>
    >>> async def main():
    ...     redis = Redis()
    ...     sem = AIOSemaphore(key='my-resource', resources=3, redis=redis)
    ...     async with sem as token:
    ...         # Critical section with limited concurrency
    ...         pass
    >>> asyncio.run(main())
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version
from typing import Final

from .aiosemaphore import AIOSemaphore
from .config import PoolKeys, SemaphoreConfig
from .exceptions import SemaphoreAcquireError, SemaphoreConfigError, SemaphoreError
from .mutex import AIOExpiringMutex, ExpiringMutex
from .reclaimer import AIOStaleLockReclaimer, StaleLockReclaimer
from .semaphore import Semaphore

__all__: Final[tuple[str, ...]] = (
    "AIOExpiringMutex",
    "AIOSemaphore",
    "AIOStaleLockReclaimer",
    "ExpiringMutex",
    "PoolKeys",
    "Semaphore",
    "SemaphoreAcquireError",
    "SemaphoreConfig",
    "SemaphoreConfigError",
    "SemaphoreError",
    "StaleLockReclaimer",
)

try:
    __version__ = version("redis-token-semaphore")
except PackageNotFoundError:
    __version__ = "unknown"
