"""Requeue tokens whose holders appear to have died."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Awaitable, Callable

from ._codec import decode, decode_timestamp
from .config import Clock, PoolKeys
from .mutex import AIOExpiringMutex, ExpiringMutex

if TYPE_CHECKING:
    from redis import Redis
    from redis.asyncio import Redis as AIORedis

logger = logging.getLogger(__name__)


def _is_stale(acquired_at: float, stale_client_timeout: float, now: float) -> bool:
    return acquired_at + stale_client_timeout < now


class StaleLockReclaimer:
    """Scans the holder map and releases tokens held for too long.

    A holder that exceeds ``stale_client_timeout`` is assumed to have
    crashed. Its token goes back to the available queue through
    ``requeue``, which must perform the same atomic release as a normal
    release. The scan runs under an ExpiringMutex so at most one client
    performs it at a time; if another client holds the mutex the scan is
    skipped.

    Args:
        redis: Client for the shared store
        keys: Keys of the pool to scan
        stale_client_timeout: Seconds after which a holder is stale
        requeue: Atomically releases one token; returns it, or None if the
            token was no longer held
        clock: Returns the current time in seconds since the epoch
    """

    def __init__(
        self,
        *,
        redis: Redis,
        keys: PoolKeys,
        stale_client_timeout: float,
        requeue: Callable[[str], str | None],
        clock: Clock = time.time,
    ) -> None:
        self._redis = redis
        self._keys = keys
        self._stale_client_timeout = stale_client_timeout
        self._requeue = requeue
        self._clock = clock
        self._mutex = ExpiringMutex(
            redis=redis,
            key=keys.release_locks,
            ttl=stale_client_timeout,
            clock=clock,
        )

    def reclaim(self) -> int:
        """Requeue every stale token.

        Returns:
            The number of tokens put back on the available queue
        """
        with self._mutex as owned:
            if not owned:
                return 0

            reclaimed = 0
            grabbed = self._redis.hgetall(self._keys.grabbed)
            now = self._clock()
            for raw_token, raw_acquired_at in grabbed.items():
                acquired_at = decode_timestamp(raw_acquired_at)
                if not _is_stale(acquired_at, self._stale_client_timeout, now):
                    continue
                token = decode(raw_token)
                if self._requeue(token) is not None:
                    reclaimed += 1
                    logger.warning(
                        "Reclaimed token %s of %s held for %.1fs",
                        token,
                        self._keys.grabbed,
                        now - acquired_at,
                    )
            return reclaimed


class AIOStaleLockReclaimer:
    """Async twin of StaleLockReclaimer."""

    def __init__(
        self,
        *,
        redis: AIORedis,
        keys: PoolKeys,
        stale_client_timeout: float,
        requeue: Callable[[str], Awaitable[str | None]],
        clock: Clock = time.time,
    ) -> None:
        self._redis = redis
        self._keys = keys
        self._stale_client_timeout = stale_client_timeout
        self._requeue = requeue
        self._clock = clock
        self._mutex = AIOExpiringMutex(
            redis=redis,
            key=keys.release_locks,
            ttl=stale_client_timeout,
            clock=clock,
        )

    async def reclaim(self) -> int:
        async with self._mutex as owned:
            if not owned:
                return 0

            reclaimed = 0
            grabbed = await self._redis.hgetall(self._keys.grabbed)
            now = self._clock()
            for raw_token, raw_acquired_at in grabbed.items():
                acquired_at = decode_timestamp(raw_acquired_at)
                if not _is_stale(acquired_at, self._stale_client_timeout, now):
                    continue
                token = decode(raw_token)
                if await self._requeue(token) is not None:
                    reclaimed += 1
                    logger.warning(
                        "Reclaimed token %s of %s held for %.1fs",
                        token,
                        self._keys.grabbed,
                        now - acquired_at,
                    )
            return reclaimed
