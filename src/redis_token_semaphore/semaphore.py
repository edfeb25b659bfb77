"""Distributed token semaphore on top of Redis lists and hashes.

The pool is a Redis list of free tokens plus a hash of held tokens mapped
to the time they were taken. Acquiring pops a token (blocking with BLPOP
when asked to wait), releasing moves it back in one MULTI/EXEC
transaction. The pool is created lazily by whichever client first finds
it missing, and tokens held by crashed clients can be reclaimed once they
exceed a staleness timeout.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
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
from .reclaimer import StaleLockReclaimer

if TYPE_CHECKING:
    from redis import Redis
    from redis.client import Pipeline

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Semaphore:
    """Distributed Redis-powered token semaphore.

    Each of the ``resources`` slots is a token (``"0"``, ``"1"``, ...). A
    client holds at most the tokens it acquired, and every token is at all
    times either waiting in the available queue or recorded as grabbed.

    Usage:
        >>> from redis import Redis
        >>> redis = Redis()
        >>> sem = Semaphore(key='my-resource', resources=3, redis=redis)
        >>> token = sem.acquire(timeout=5)
        >>> if token is not None:
        ...     try:
        ...         # Critical section with limited concurrency (max 3)
        ...         pass
        ...     finally:
        ...         sem.release(token)

        >>> # Or use as context manager, blocking until a token is free
        >>> with sem as token:
        ...     pass

        >>> # Or give up after a timeout
        >>> with sem.hold(timeout=1) as token:
        ...     if token is None:
        ...         pass  # nothing free within a second

    Args:
        key: A string that identifies this semaphore
        redis: Redis client (default: a client for localhost)
        resources: Number of tokens in the pool (default: 1)
        expiration: Seconds to keep pool keys after each mutation (default:
            keep forever)
        stale_client_timeout: Seconds after which a held token is assumed
            abandoned and may be reclaimed (default: never)
        create_release_interval: Minimum seconds between pool
            creation/reclamation attempts by this instance (default: 30)
        clock: Returns the current time in seconds since the epoch
    """

    def __init__(
        self,
        *,
        key: str = "",
        redis: Redis | None = None,
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
            from redis import Redis as RedisClient

            redis = RedisClient()
        self._redis = redis

        self._throttle = Throttle(self.config.create_release_interval, clock=clock)
        self._reclaimer: StaleLockReclaimer | None = None
        if self.config.stale_client_timeout is not None:
            self._reclaimer = StaleLockReclaimer(
                redis=redis,
                keys=self._keys,
                stale_client_timeout=self.config.stale_client_timeout,
                requeue=self.signal,
                clock=clock,
            )

        # Tokens this instance acquired, oldest first. Only used to answer
        # "do I hold anything"; the GRABBED hash is authoritative.
        self._tokens: list[str] = []
        self._entered: list[str] = []

    @property
    def key(self) -> str:
        return self._key

    @property
    def keys(self) -> PoolKeys:
        return self._keys

    @property
    def redis(self) -> Redis:
        return self._redis

    def exists(self) -> bool:
        """Return True if the pool has been created."""
        return bool(self._redis.exists(self._keys.exists))

    def ensure_exists(self) -> bool:
        """Create the pool unless some client already did.

        Flagging existence is a single SET NX, so exactly one client wins
        the race and populates the pool. The flag expires after a few
        seconds if the winner dies before populating.

        Returns:
            True if this call created the pool, False if it already existed
        """
        flagged = self._redis.set(
            self._keys.exists, EXISTS_TOKEN, nx=True, ex=CREATION_TTL
        )
        if not flagged:
            return False
        self._create()
        return True

    def _create(self) -> None:
        tokens = [str(index) for index in range(self.config.resources)]
        with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._keys.grabbed, self._keys.available)
            pipe.rpush(self._keys.available, *tokens)
            pipe.set(self._keys.version, API_VERSION)
            pipe.persist(self._keys.exists)
            self._queue_expiration(pipe)
            pipe.execute()
        logger.debug("Created pool %r with %d tokens", self._key, len(tokens))

    def _queue_expiration(self, pipe: Pipeline) -> None:
        if self.config.expiration is None:
            return
        milliseconds = int(self.config.expiration * 1000)
        for key in self._keys.pool:
            pipe.pexpire(key, milliseconds)

    def destroy(self) -> None:
        """Delete every key of the pool. Safe to call repeatedly."""
        self._redis.delete(*self._keys.pool, self._keys.release_locks)
        self._tokens.clear()

    def available_count(self) -> int:
        """Return the number of free tokens.

        Before the pool is created this is its nominal size.
        """
        if self.exists():
            return self._redis.llen(self._keys.available)
        return self.config.resources

    def holders(self) -> dict[str, float]:
        """Return the held tokens mapped to when they were acquired."""
        grabbed = self._redis.hgetall(self._keys.grabbed)
        return {decode(token): decode_timestamp(at) for token, at in grabbed.items()}

    def version(self) -> str | None:
        return decode_optional(self._redis.get(self._keys.version))

    def acquire(
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
            # BLPOP on a pool nobody created yet would never return.
            self.ensure_exists()

        for _ in range(2 if retry else 1):
            token = self._pop(blocking=blocking, timeout=timeout)
            if token is not None:
                return self._grab(token)
            if not self._throttle.ready():
                logger.debug(
                    "No token in %r; maintenance ran within the last %ss",
                    self._key,
                    self.config.create_release_interval,
                )
                return None
            self._maintain()
        return None

    def _pop(self, *, blocking: bool, timeout: float | None) -> str | None:
        if not blocking or timeout == 0:
            return decode_optional(self._redis.lpop(self._keys.available))

        with ContextTimer() as timer:
            popped = self._redis.blpop([self._keys.available], timeout=timeout or 0)
        if popped is None:
            logger.debug(
                "Timed out after %dms waiting on %r", timer.elapsed(), self._key
            )
            return None
        return decode(popped[1])

    def _grab(self, token: str) -> str:
        acquired_at = encode_timestamp(self._clock())
        if self.config.expiration is None:
            self._redis.hset(self._keys.grabbed, token, acquired_at)
        else:
            with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(self._keys.grabbed, token, acquired_at)
                self._queue_expiration(pipe)
                pipe.execute()
        self._tokens.append(token)
        return token

    def _maintain(self) -> None:
        if self.ensure_exists():
            logger.debug("Pool %r was missing and has been created", self._key)
        if self._reclaimer is not None:
            self._reclaimer.reclaim()

    def reclaim_stale(self) -> int:
        """Return abandoned tokens to the pool.

        Returns:
            The number of tokens reclaimed; always 0 when no
            ``stale_client_timeout`` is configured or another client is
            already reclaiming
        """
        if self._reclaimer is None:
            return 0
        return self._reclaimer.reclaim()

    def signal(self, token: str) -> str | None:
        """Move ``token`` from the grabbed hash back to the available queue.

        Membership is checked under WATCH and the move runs in one
        MULTI/EXEC, so a token can never be queued twice.

        Returns:
            The token, or None if it was not held
        """
        token = str(token)

        def requeue(pipe: Pipeline) -> str | None:
            if not pipe.hexists(self._keys.grabbed, token):
                return None
            pipe.multi()
            pipe.hdel(self._keys.grabbed, token)
            pipe.lpush(self._keys.available, token)
            self._queue_expiration(pipe)
            return token

        released = self._redis.transaction(
            requeue, self._keys.grabbed, value_from_callable=True
        )
        if token in self._tokens:
            self._tokens.remove(token)
        return released

    def release(self, token: str | None = None) -> str | None:
        """Release a token back to the pool.

        Args:
            token: The token to release (default: the most recent token this
                instance acquired and still holds)

        Returns:
            The released token, or None if it was not held
        """
        if token is None:
            token = self._held_token()
            if token is None:
                return None
        return self.signal(token)

    def _held_token(self) -> str | None:
        for token in reversed(list(self._tokens)):
            if self.locked(token):
                return token
            # Reclaimed from under us; forget it.
            self._tokens.remove(token)
        return None

    def locked(self, token: str | None = None) -> bool:
        """Report whether a token is held.

        Args:
            token: Check this token in the shared holder map. Without it,
                check whether this instance holds any token.
        """
        if token is not None:
            return bool(self._redis.hexists(self._keys.grabbed, str(token)))
        return any(self.locked(held) for held in list(self._tokens))

    @contextmanager
    def hold(
        self, *, blocking: bool = True, timeout: float | None = None
    ) -> Iterator[str | None]:
        """Hold a token for the duration of a ``with`` block.

        Yields the token, or None if it could not be acquired. An acquired
        token is released on every exit path.
        """
        token = self.acquire(blocking=blocking, timeout=timeout)
        try:
            yield token
        finally:
            if token is not None:
                self.signal(token)

    def run(
        self,
        func: Callable[[str], T],
        *,
        blocking: bool = True,
        timeout: float | None = None,
    ) -> T | None:
        """Call ``func(token)`` while holding a token.

        Returns:
            Whatever ``func`` returns, or None without calling it if no
            token could be acquired
        """
        with self.hold(blocking=blocking, timeout=timeout) as token:
            if token is None:
                return None
            return func(token)

    def __enter__(self) -> str:
        """Enter context manager, blocking until a token is acquired."""
        token = self.acquire()
        if token is None:
            raise SemaphoreAcquireError(self._key)
        self._entered.append(token)
        return token

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit context manager, releasing the token."""
        self.signal(self._entered.pop())

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"key={self._key!r} "
            f"available={self.available_count()}/{self.config.resources}>"
        )
