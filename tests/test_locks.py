"""
Ride lock tests.

1. Local keyed locks serialise holders of the same ride and clean up.
2. Distributed lock logic against a mocked Redis.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from ride_dispatch.domain.errors import RideBusy
from ride_dispatch.infrastructure.locks import (
    DistributedLock,
    LocalRideLocks,
    RedisRideLocks,
)


class TestLocalRideLocks:
    @pytest.mark.asyncio
    async def test_same_ride_is_serialised(self):
        locks = LocalRideLocks()
        inside = 0
        peak = 0

        async def worker():
            nonlocal inside, peak
            async with locks.hold(1):
                inside += 1
                peak = max(peak, inside)
                await asyncio.sleep(0.01)
                inside -= 1

        await asyncio.gather(*(worker() for _ in range(5)))
        assert peak == 1

    @pytest.mark.asyncio
    async def test_different_rides_do_not_block(self):
        locks = LocalRideLocks()
        async with locks.hold(1):
            await asyncio.wait_for(_enter(locks, 2), timeout=0.5)

    @pytest.mark.asyncio
    async def test_entries_dropped_when_idle(self):
        locks = LocalRideLocks()
        async with locks.hold(1):
            assert len(locks) == 1
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        locks = LocalRideLocks()
        with pytest.raises(ValueError):
            async with locks.hold(1):
                raise ValueError("boom")
        await asyncio.wait_for(_enter(locks, 1), timeout=0.5)


async def _enter(locks, ride_id):
    async with locks.hold(ride_id):
        pass


class TestDistributedLock:
    """Tests the Redis distributed lock logic (mocked Redis)."""

    @pytest.mark.asyncio
    async def test_acquire_succeeds(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)

        lock = DistributedLock(mock_redis, "ride:1", ttl_seconds=10)
        assert await lock.acquire() is True
        mock_redis.set.assert_called_once_with("lock:ride:1", lock.token, nx=True, ex=10)

    @pytest.mark.asyncio
    async def test_acquire_fails_if_held(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=None)

        lock = DistributedLock(mock_redis, "ride:1", ttl_seconds=10)
        assert await lock.acquire() is False

    @pytest.mark.asyncio
    async def test_acquire_blocking_retries(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(side_effect=[None, None, True])

        lock = DistributedLock(mock_redis, "ride:1")
        assert await lock.acquire_blocking(timeout=1.0, poll_interval=0.001) is True
        assert mock_redis.set.call_count == 3

    @pytest.mark.asyncio
    async def test_release_calls_eval(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)
        mock_redis.eval = AsyncMock(return_value=1)

        lock = DistributedLock(mock_redis, "ride:1", ttl_seconds=10)
        await lock.acquire()
        await lock.release()

        mock_redis.eval.assert_called_once()
        assert mock_redis.eval.call_args.args[1:] == (1, "lock:ride:1", lock.token)

    @pytest.mark.asyncio
    async def test_context_manager_acquire_fail_raises(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=False)

        lock = DistributedLock(mock_redis, "ride:1", ttl_seconds=10)
        with pytest.raises(RideBusy, match="try again"):
            async with lock:
                pass
        assert mock_redis.set.call_count == 1

    @pytest.mark.asyncio
    async def test_context_manager_waits_then_releases(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(side_effect=[False, True])
        mock_redis.eval = AsyncMock(return_value=1)

        async with DistributedLock(
            mock_redis, "ride:1", ttl_seconds=10, wait_seconds=1.0
        ) as lock:
            assert mock_redis.set.call_count == 2
            mock_redis.eval.assert_not_called()
        assert mock_redis.eval.call_args.args[1:] == (1, "lock:ride:1", lock.token)


class TestRedisRideLocks:
    @pytest.mark.asyncio
    async def test_hold_acquires_and_releases(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)
        mock_redis.eval = AsyncMock(return_value=1)

        locks = RedisRideLocks(mock_redis, ttl_seconds=30, timeout_seconds=0.1)
        async with locks.hold(42):
            mock_redis.eval.assert_not_called()
        mock_redis.eval.assert_called_once()
        assert mock_redis.set.call_args.args[0] == "lock:ride:42"

    @pytest.mark.asyncio
    async def test_timeout_raises_ride_busy(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=False)

        locks = RedisRideLocks(mock_redis, ttl_seconds=30, timeout_seconds=0.05)
        with pytest.raises(RideBusy):
            async with locks.hold(42):
                pass
        mock_redis.eval.assert_not_called()

    @pytest.mark.asyncio
    async def test_released_when_body_raises(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)
        mock_redis.eval = AsyncMock(return_value=1)

        locks = RedisRideLocks(mock_redis, ttl_seconds=30, timeout_seconds=0.1)
        with pytest.raises(RuntimeError):
            async with locks.hold(7):
                raise RuntimeError("boom")
        mock_redis.eval.assert_called_once()
        assert mock_redis.eval.call_args.args[2] == "lock:ride:7"
