"""Unit tests for ExpiringMutex and AIOExpiringMutex."""

from __future__ import annotations

from typing import TYPE_CHECKING
from unittest.mock import MagicMock

from redis_token_semaphore import AIOExpiringMutex, ExpiringMutex
from tests.conftest import FakeClock

if TYPE_CHECKING:
    from redis import Redis
    from redis.asyncio import Redis as AIORedis

KEY = "SEMAPHORE:test:release_locks"


class TestExpiringMutex:
    """ExpiringMutex against an in-memory Redis."""

    def test_acquire_free_mutex(self, fake_redis: Redis, clock: FakeClock) -> None:
        mutex = ExpiringMutex(redis=fake_redis, key=KEY, ttl=5, clock=clock)
        assert mutex.acquire()
        assert mutex.owned()
        # The stored expiry covers the ttl plus one second of drift.
        assert float(fake_redis.get(KEY)) == clock.now + 6

    def test_live_mutex_is_not_shared(
        self, fake_redis: Redis, clock: FakeClock
    ) -> None:
        first = ExpiringMutex(redis=fake_redis, key=KEY, ttl=5, clock=clock)
        second = ExpiringMutex(redis=fake_redis, key=KEY, ttl=5, clock=clock)
        assert first.acquire()
        clock.advance(5)
        assert not second.acquire()
        assert not second.owned()

    def test_lapsed_mutex_can_be_taken_over(
        self, fake_redis: Redis, clock: FakeClock
    ) -> None:
        first = ExpiringMutex(redis=fake_redis, key=KEY, ttl=5, clock=clock)
        second = ExpiringMutex(redis=fake_redis, key=KEY, ttl=5, clock=clock)
        assert first.acquire()
        clock.advance(7)
        assert second.acquire()
        assert float(fake_redis.get(KEY)) == clock.now + 6

    def test_concurrent_takeover_is_detected(self, clock: FakeClock) -> None:
        redis = MagicMock()
        redis.setnx.return_value = False
        redis.get.return_value = repr(clock.now - 10).encode()
        # A third client replaced the lapsed value before our GETSET.
        redis.getset.return_value = repr(clock.now + 20).encode()

        mutex = ExpiringMutex(redis=redis, key=KEY, ttl=5, clock=clock)
        assert not mutex.acquire()
        assert not mutex.owned()

    def test_key_vanishing_mid_acquire_counts_as_free(self, clock: FakeClock) -> None:
        redis = MagicMock()
        redis.setnx.return_value = False
        redis.get.return_value = None
        redis.getset.return_value = None

        mutex = ExpiringMutex(redis=redis, key=KEY, ttl=5, clock=clock)
        assert mutex.acquire()

    def test_release_deletes_key(self, fake_redis: Redis, clock: FakeClock) -> None:
        mutex = ExpiringMutex(redis=fake_redis, key=KEY, ttl=5, clock=clock)
        mutex.acquire()
        clock.advance(3)
        mutex.release()
        assert not mutex.owned()
        assert fake_redis.get(KEY) is None

    def test_release_within_drift_allowance_deletes_key(
        self, fake_redis: Redis, clock: FakeClock
    ) -> None:
        mutex = ExpiringMutex(redis=fake_redis, key=KEY, ttl=5, clock=clock)
        mutex.acquire()
        # Expiry is now + 6; half a second past it is still within the grace.
        clock.advance(6.5)
        mutex.release()
        assert fake_redis.get(KEY) is None

    def test_release_after_lapse_keeps_key(
        self, fake_redis: Redis, clock: FakeClock
    ) -> None:
        mutex = ExpiringMutex(redis=fake_redis, key=KEY, ttl=5, clock=clock)
        mutex.acquire()
        clock.advance(8)
        mutex.release()
        assert fake_redis.get(KEY) is not None

    def test_release_without_ownership_is_noop(
        self, fake_redis: Redis, clock: FakeClock
    ) -> None:
        holder = ExpiringMutex(redis=fake_redis, key=KEY, ttl=5, clock=clock)
        other = ExpiringMutex(redis=fake_redis, key=KEY, ttl=5, clock=clock)
        holder.acquire()
        assert not other.acquire()
        other.release()
        assert fake_redis.get(KEY) is not None

    def test_context_manager(self, fake_redis: Redis, clock: FakeClock) -> None:
        mutex = ExpiringMutex(redis=fake_redis, key=KEY, ttl=5, clock=clock)
        other = ExpiringMutex(redis=fake_redis, key=KEY, ttl=5, clock=clock)

        with mutex as owned:
            assert owned
            with other as other_owned:
                assert not other_owned
            # The loser leaving its block must not free the mutex.
            assert fake_redis.get(KEY) is not None

        assert fake_redis.get(KEY) is None

    def test_gracefully_expires_stale_owner(
        self, fake_redis: Redis, clock: FakeClock
    ) -> None:
        crashed = ExpiringMutex(redis=fake_redis, key=KEY, ttl=1, clock=clock)
        survivor = ExpiringMutex(redis=fake_redis, key=KEY, ttl=1, clock=clock)
        assert crashed.acquire()

        clock.advance(1.5)
        assert not survivor.acquire()

        clock.advance(1)
        assert survivor.acquire()

    def test_repr(self, fake_redis: Redis, clock: FakeClock) -> None:
        mutex = ExpiringMutex(redis=fake_redis, key=KEY, ttl=5, clock=clock)
        assert "owned=False" in repr(mutex)
        mutex.acquire()
        assert "owned=True" in repr(mutex)
        assert KEY in repr(mutex)


class TestAIOExpiringMutex:
    """AIOExpiringMutex against an in-memory Redis."""

    async def test_acquire_and_release(
        self, fake_aioredis: AIORedis, clock: FakeClock
    ) -> None:
        mutex = AIOExpiringMutex(redis=fake_aioredis, key=KEY, ttl=5, clock=clock)
        assert await mutex.acquire()
        assert float(await fake_aioredis.get(KEY)) == clock.now + 6
        await mutex.release()
        assert await fake_aioredis.get(KEY) is None

    async def test_live_mutex_is_not_shared(
        self, fake_aioredis: AIORedis, clock: FakeClock
    ) -> None:
        first = AIOExpiringMutex(redis=fake_aioredis, key=KEY, ttl=5, clock=clock)
        second = AIOExpiringMutex(redis=fake_aioredis, key=KEY, ttl=5, clock=clock)
        assert await first.acquire()
        assert not await second.acquire()

    async def test_lapsed_mutex_can_be_taken_over(
        self, fake_aioredis: AIORedis, clock: FakeClock
    ) -> None:
        first = AIOExpiringMutex(redis=fake_aioredis, key=KEY, ttl=5, clock=clock)
        second = AIOExpiringMutex(redis=fake_aioredis, key=KEY, ttl=5, clock=clock)
        assert await first.acquire()
        clock.advance(7)
        assert await second.acquire()

        # The first owner's window lapsed long ago; it must not delete the
        # key now owned by the second.
        clock.advance(1)
        await first.release()
        assert await fake_aioredis.get(KEY) is not None

    async def test_async_context_manager(
        self, fake_aioredis: AIORedis, clock: FakeClock
    ) -> None:
        mutex = AIOExpiringMutex(redis=fake_aioredis, key=KEY, ttl=5, clock=clock)
        async with mutex as owned:
            assert owned
        assert await fake_aioredis.get(KEY) is None

    async def test_sync_and_async_share_the_key(
        self,
        fake_redis: Redis,
        fake_aioredis: AIORedis,
        clock: FakeClock,
    ) -> None:
        sync_mutex = ExpiringMutex(redis=fake_redis, key=KEY, ttl=5, clock=clock)
        async_mutex = AIOExpiringMutex(
            redis=fake_aioredis, key=KEY, ttl=5, clock=clock
        )
        assert sync_mutex.acquire()
        assert not await async_mutex.acquire()
