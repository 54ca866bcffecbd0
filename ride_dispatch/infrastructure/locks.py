"""
Ride-scoped locks.

Every ride mutation runs under one lock per ride id, taken *before* the
row is read.  Two backends share the ``RideLocks`` interface:

* ``LocalRideLocks`` -- keyed ``asyncio.Lock`` for a single process.
* ``RedisRideLocks`` -- ``DistributedLock`` (SET NX EX + Lua release) for
  several API processes sharing one database.

Either way the database row lock (``SELECT ... FOR UPDATE``) still
guards the write; the ride lock only serialises the read-check-write
sequence inside this service so losers see the committed status.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Protocol

import redis.asyncio as aioredis

from ride_dispatch.domain.errors import RideBusy

logger = logging.getLogger(__name__)


class DistributedLock:
    def __init__(
        self,
        client: aioredis.Redis,
        key: str,
        ttl_seconds: int = 30,
        wait_seconds: float = 0.0,
    ):
        self.redis = client
        self.key = f"lock:{key}"
        self.ttl = ttl_seconds
        self.wait = wait_seconds
        self.token = str(uuid.uuid4())

    async def acquire(self) -> bool:
        """Try to acquire once. Returns True on success."""
        return bool(
            await self.redis.set(self.key, self.token, nx=True, ex=self.ttl)
        )

    async def acquire_blocking(
        self, timeout: float, poll_interval: float = 0.05
    ) -> bool:
        """Retry ``acquire`` until *timeout* seconds have passed."""
        deadline = time.monotonic() + timeout
        while True:
            if await self.acquire():
                return True
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(poll_interval)

    async def release(self) -> None:
        """Release only if we still own the lock (atomic via Lua)."""
        lua = """
        if redis.call("get", KEYS[1]) == ARGV[1] then
            return redis.call("del", KEYS[1])
        else
            return 0
        end
        """
        await self.redis.eval(lua, 1, self.key, self.token)

    # context-manager support; waits up to ``wait_seconds`` before giving up
    async def __aenter__(self):
        if self.wait > 0:
            acquired = await self.acquire_blocking(self.wait)
        else:
            acquired = await self.acquire()
        if not acquired:
            logger.warning("Could not acquire %s within %.2fs", self.key, self.wait)
            raise RideBusy()
        return self

    async def __aexit__(self, *args):
        await self.release()


class RideLocks(Protocol):
    def hold(self, ride_id: int): ...


class LocalRideLocks:
    """In-process keyed locks; entries are dropped once nobody holds or waits."""

    def __init__(self) -> None:
        self._locks: dict[int, asyncio.Lock] = {}
        self._users: dict[int, int] = {}

    @asynccontextmanager
    async def hold(self, ride_id: int) -> AsyncIterator[None]:
        lock = self._locks.setdefault(ride_id, asyncio.Lock())
        self._users[ride_id] = self._users.get(ride_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[ride_id] -= 1
            if self._users[ride_id] == 0:
                del self._users[ride_id]
                del self._locks[ride_id]

    def __len__(self) -> int:
        return len(self._locks)


class RedisRideLocks:
    def __init__(
        self,
        client: aioredis.Redis,
        ttl_seconds: int = 30,
        timeout_seconds: float = 5.0,
    ):
        self.redis = client
        self.ttl = ttl_seconds
        self.timeout = timeout_seconds

    @asynccontextmanager
    async def hold(self, ride_id: int) -> AsyncIterator[None]:
        async with DistributedLock(
            self.redis, f"ride:{ride_id}", self.ttl, wait_seconds=self.timeout
        ):
            yield
