"""Self-expiring mutual exclusion over a single Redis key.

The mutex follows the SETNX locking recipe from the Redis documentation:
the key holds the owner's expiry timestamp, and anyone who observes a
lapsed timestamp may take ownership with GETSET. No unlock notification is
ever needed, so a crashed owner cannot deadlock the others; its window
simply runs out.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from ._codec import decode_timestamp, encode_timestamp
from .config import Clock

if TYPE_CHECKING:
    from redis import Redis
    from redis.asyncio import Redis as AIORedis

logger = logging.getLogger(__name__)

# Seconds added on top of the ttl when claiming, and tolerated between the
# owner's expiry and now when releasing, to absorb clock drift.
DRIFT_ALLOWANCE = 1


class ExpiringMutex:
    """Distributed mutex that releases itself after ``ttl`` seconds.

    Usage:
        >>> from redis import Redis
        >>> mutex = ExpiringMutex(redis=Redis(), key='my-job', ttl=30)
        >>> with mutex as owned:
        ...     if owned:
        ...         # Only one process at a time gets here
        ...         pass

    Args:
        redis: Client for the shared store
        key: Key holding the owner's expiry timestamp
        ttl: Seconds the owner may hold the mutex before others may steal it
        clock: Returns the current time in seconds since the epoch
    """

    def __init__(
        self,
        *,
        redis: Redis,
        key: str,
        ttl: float,
        clock: Clock = time.time,
    ) -> None:
        self._redis = redis
        self._key = key
        self._ttl = ttl
        self._clock = clock
        self._expires_at: float | None = None

    @property
    def key(self) -> str:
        return self._key

    def owned(self) -> bool:
        """Return True if this instance believes it holds the mutex."""
        return self._expires_at is not None

    def acquire(self) -> bool:
        """Try once to take the mutex; never blocks.

        Returns:
            True if ownership was acquired, False if someone else holds it
        """
        now = self._clock()
        expires_at = now + self._ttl + DRIFT_ALLOWANCE
        encoded = encode_timestamp(expires_at)

        acquired = bool(self._redis.setnx(self._key, encoded))
        if not acquired:
            other_expires_at = decode_timestamp(self._redis.get(self._key))
            if other_expires_at < now:
                replaced = decode_timestamp(self._redis.getset(self._key, encoded))
                # If the value we replaced is not the one we read, a third
                # party took over in between and the mutex is theirs.
                acquired = replaced == other_expires_at

        if acquired:
            self._expires_at = expires_at
        else:
            logger.debug("Mutex %r is held by another client", self._key)
        return acquired

    def release(self) -> None:
        """Give the mutex up, unless our window already lapsed.

        Once the window has lapsed by more than the drift allowance another
        client may have claimed the key, and deleting it would drop their
        ownership instead of ours.
        """
        expires_at, self._expires_at = self._expires_at, None
        if expires_at is None:
            return
        if expires_at > self._clock() - DRIFT_ALLOWANCE:
            self._redis.delete(self._key)
        else:
            logger.debug("Mutex %r expired while held; leaving it in place", self._key)

    def __enter__(self) -> bool:
        return self.acquire()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"key={self._key!r} "
            f"ttl={self._ttl} "
            f"owned={self.owned()}>"
        )


class AIOExpiringMutex:
    """Async twin of ExpiringMutex, sharing its key format.

    Usage:
        >>> from redis.asyncio import Redis
        >>> mutex = AIOExpiringMutex(redis=Redis(), key='my-job', ttl=30)
        >>> async with mutex as owned:
        ...     if owned:
        ...         pass
    """

    def __init__(
        self,
        *,
        redis: AIORedis,
        key: str,
        ttl: float,
        clock: Clock = time.time,
    ) -> None:
        self._redis = redis
        self._key = key
        self._ttl = ttl
        self._clock = clock
        self._expires_at: float | None = None

    @property
    def key(self) -> str:
        return self._key

    def owned(self) -> bool:
        return self._expires_at is not None

    async def acquire(self) -> bool:
        """Try once to take the mutex; see ExpiringMutex.acquire."""
        now = self._clock()
        expires_at = now + self._ttl + DRIFT_ALLOWANCE
        encoded = encode_timestamp(expires_at)

        acquired = bool(await self._redis.setnx(self._key, encoded))
        if not acquired:
            other_expires_at = decode_timestamp(await self._redis.get(self._key))
            if other_expires_at < now:
                replaced = decode_timestamp(
                    await self._redis.getset(self._key, encoded)
                )
                acquired = replaced == other_expires_at

        if acquired:
            self._expires_at = expires_at
        else:
            logger.debug("Mutex %r is held by another client", self._key)
        return acquired

    async def release(self) -> None:
        expires_at, self._expires_at = self._expires_at, None
        if expires_at is None:
            return
        if expires_at > self._clock() - DRIFT_ALLOWANCE:
            await self._redis.delete(self._key)
        else:
            logger.debug("Mutex %r expired while held; leaving it in place", self._key)

    async def __aenter__(self) -> bool:
        return await self.acquire()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.release()

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"key={self._key!r} "
            f"ttl={self._ttl} "
            f"owned={self.owned()}>"
        )
