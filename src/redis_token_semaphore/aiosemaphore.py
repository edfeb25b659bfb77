"""Async distributed token semaphore on top of redis.asyncio.

AIOSemaphore speaks exactly the same key layout and value format as
Semaphore, so sync and async clients can share one pool.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, TypeVar

from pottery import ContextTimer

from ._codec import decode, decode_optional, decode_timestamp, encode_timestamp
from .config import (
    API_VERSION,
    CREATION_TTL,
    DEFAULT_CREATE_RELEASE_INTERVAL,
    EXISTS_TOKEN,
    Clock,
    PoolKeys,
    SemaphoreConfig,
    Throttle,
)
from .exceptions import SemaphoreAcquireError
from .reclaimer import AIOStaleLockReclaimer

if TYPE_CHECKING:
    from redis.asyncio import Redis as AIORedis
    from redis.asyncio.client import Pipeline

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AIOSemaphore:
    """Async distributed Redis-powered token semaphore.

    Usage:
        >>> import asyncio
        >>> from redis.asyncio import Redis
        >>> async def main():
        ...     redis = Redis()
        ...     sem = AIOSemaphore(key='my-resource', resources=3, redis=redis)
        ...     token = await sem.acquire(timeout=5)
        ...     if token is not None:
        ...         try:
        ...             # Critical section with limited concurrency
        ...             pass
        ...         finally:
        ...             await sem.release(token)
        >>> asyncio.run(main())

        >>> # Or use as async context manager
        >>> async with sem as token:
        ...     pass

    Args:
        key: A string that identifies this semaphore
        redis: Async Redis client (default: a client for localhost)
        resources: Number of tokens in the pool (default: 1)
        expiration: Seconds to keep pool keys after each mutation
        stale_client_timeout: Seconds after which a held token is assumed
            abandoned and may be reclaimed
        create_release_interval: Minimum seconds between pool
            creation/reclamation attempts by this instance (default: 30)
        clock: Returns the current time in seconds since the epoch
    """

    def __init__(
        self,
        *,
        key: str = "",
        redis: AIORedis | None = None,
        resources: int = 1,
        expiration: float | None = None,
        stale_client_timeout: float | None = None,
        create_release_interval: float = DEFAULT_CREATE_RELEASE_INTERVAL,
        clock: Clock = time.time,
    ) -> None:
        self.config = SemaphoreConfig(
            resources=resources,
            expiration=expiration,
            stale_client_timeout=stale_client_timeout,
            create_release_interval=create_release_interval,
        )
        self._key = key
        self._keys = PoolKeys.for_name(key)
        self._clock = clock

        if redis is None:
            from redis.asyncio import Redis as AIORedisClient

            redis = AIORedisClient()
        self._redis = redis

        self._throttle = Throttle(self.config.create_release_interval, clock=clock)
        self._reclaimer: AIOStaleLockReclaimer | None = None
        if self.config.stale_client_timeout is not None:
            self._reclaimer = AIOStaleLockReclaimer(
                redis=redis,
                keys=self._keys,
                stale_client_timeout=self.config.stale_client_timeout,
                requeue=self.signal,
                clock=clock,
            )

        self._tokens: list[str] = []
        self._entered: list[str] = []

    @property
    def key(self) -> str:
        return self._key

    @property
    def keys(self) -> PoolKeys:
        return self._keys

    @property
    def redis(self) -> AIORedis:
        return self._redis

    async def exists(self) -> bool:
        return bool(await self._redis.exists(self._keys.exists))

    async def ensure_exists(self) -> bool:
        """Create the pool unless some client already did.

        Returns:
            True if this call created the pool, False if it already existed
        """
        flagged = await self._redis.set(
            self._keys.exists, EXISTS_TOKEN, nx=True, ex=CREATION_TTL
        )
        if not flagged:
            return False
        await self._create()
        return True

    async def _create(self) -> None:
        tokens = [str(index) for index in range(self.config.resources)]
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._keys.grabbed, self._keys.available)
            pipe.rpush(self._keys.available, *tokens)
            pipe.set(self._keys.version, API_VERSION)
            pipe.persist(self._keys.exists)
            self._queue_expiration(pipe)
            await pipe.execute()
        logger.debug("Created pool %r with %d tokens", self._key, len(tokens))

    def _queue_expiration(self, pipe: Pipeline) -> None:
        if self.config.expiration is None:
            return
        milliseconds = int(self.config.expiration * 1000)
        for key in self._keys.pool:
            pipe.pexpire(key, milliseconds)

    async def destroy(self) -> None:
        await self._redis.delete(*self._keys.pool, self._keys.release_locks)
        self._tokens.clear()

    async def available_count(self) -> int:
        if await self.exists():
            return await self._redis.llen(self._keys.available)
        return self.config.resources

    async def holders(self) -> dict[str, float]:
        grabbed = await self._redis.hgetall(self._keys.grabbed)
        return {decode(token): decode_timestamp(at) for token, at in grabbed.items()}

    async def version(self) -> str | None:
        return decode_optional(await self._redis.get(self._keys.version))

    async def acquire(
        self,
        *,
        blocking: bool = True,
        timeout: float | None = None,
        retry: bool = True,
    ) -> str | None:
        """Acquire a token from the pool.

        Args:
            blocking: If False, make a single non-blocking attempt
            timeout: Seconds to wait for a token; None waits forever and
                0 behaves like ``blocking=False``
            retry: Whether to try once more after (re)creating the pool and
                reclaiming stale tokens

        Returns:
            The acquired token, or None if none was available in time
        """
        if timeout is not None and timeout < 0:
            raise ValueError("timeout must be non-negative or None")
        if blocking and timeout is None:
            await self.ensure_exists()

        for _ in range(2 if retry else 1):
            token = await self._pop(blocking=blocking, timeout=timeout)
            if token is not None:
                return await self._grab(token)
            if not self._throttle.ready():
                logger.debug(
                    "No token in %r; maintenance ran within the last %ss",
                    self._key,
                    self.config.create_release_interval,
                )
                return None
            await self._maintain()
        return None

    async def _pop(self, *, blocking: bool, timeout: float | None) -> str | None:
        if not blocking or timeout == 0:
            return decode_optional(await self._redis.lpop(self._keys.available))

        with ContextTimer() as timer:
            popped = await self._redis.blpop(
                [self._keys.available], timeout=timeout or 0
            )
        if popped is None:
            logger.debug(
                "Timed out after %dms waiting on %r", timer.elapsed(), self._key
            )
            return None
        return decode(popped[1])

    async def _grab(self, token: str) -> str:
        acquired_at = encode_timestamp(self._clock())
        if self.config.expiration is None:
            await self._redis.hset(self._keys.grabbed, token, acquired_at)
        else:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(self._keys.grabbed, token, acquired_at)
                self._queue_expiration(pipe)
                await pipe.execute()
        self._tokens.append(token)
        return token

    async def _maintain(self) -> None:
        if await self.ensure_exists():
            logger.debug("Pool %r was missing and has been created", self._key)
        if self._reclaimer is not None:
            await self._reclaimer.reclaim()

    async def reclaim_stale(self) -> int:
        if self._reclaimer is None:
            return 0
        return await self._reclaimer.reclaim()

    async def signal(self, token: str) -> str | None:
        """Move ``token`` back to the available queue; see Semaphore.signal."""
        token = str(token)

        async def requeue(pipe: Pipeline) -> str | None:
            if not await pipe.hexists(self._keys.grabbed, token):
                return None
            pipe.multi()
            pipe.hdel(self._keys.grabbed, token)
            pipe.lpush(self._keys.available, token)
            self._queue_expiration(pipe)
            return token

        released = await self._redis.transaction(
            requeue, self._keys.grabbed, value_from_callable=True
        )
        if token in self._tokens:
            self._tokens.remove(token)
        return released

    async def release(self, token: str | None = None) -> str | None:
        if token is None:
            token = await self._held_token()
            if token is None:
                return None
        return await self.signal(token)

    async def _held_token(self) -> str | None:
        for token in reversed(list(self._tokens)):
            if await self.locked(token):
                return token
            self._tokens.remove(token)
        return None

    async def locked(self, token: str | None = None) -> bool:
        if token is not None:
            return bool(await self._redis.hexists(self._keys.grabbed, str(token)))
        for held in list(self._tokens):
            if await self.locked(held):
                return True
        return False

    @asynccontextmanager
    async def hold(
        self, *, blocking: bool = True, timeout: float | None = None
    ) -> AsyncIterator[str | None]:
        """Hold a token for the duration of an ``async with`` block.

        Yields the token, or None if it could not be acquired.
        """
        token = await self.acquire(blocking=blocking, timeout=timeout)
        try:
            yield token
        finally:
            if token is not None:
                await self.signal(token)

    async def run(
        self,
        func: Callable[[str], Awaitable[T]],
        *,
        blocking: bool = True,
        timeout: float | None = None,
    ) -> T | None:
        """Await ``func(token)`` while holding a token."""
        async with self.hold(blocking=blocking, timeout=timeout) as token:
            if token is None:
                return None
            return await func(token)

    async def __aenter__(self) -> str:
        """Enter async context manager, waiting until a token is acquired."""
        token = await self.acquire()
        if token is None:
            raise SemaphoreAcquireError(self._key)
        self._entered.append(token)
        return token

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context manager, releasing the token."""
        await self.signal(self._entered.pop())

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"key={self._key!r} "
            f"resources={self.config.resources}>"
        )
