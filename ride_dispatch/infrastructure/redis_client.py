"""Redis async connection pool (only used by the ``redis`` lock backend)."""

from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis

_pool: Optional[aioredis.ConnectionPool] = None


def get_redis(redis_url: str) -> aioredis.Redis:
    """Return a Redis client backed by the shared connection pool."""
    global _pool
    if _pool is None:
        _pool = aioredis.ConnectionPool.from_url(redis_url, decode_responses=True)
    return aioredis.Redis(connection_pool=_pool)


async def close_redis() -> None:
    global _pool
    if _pool is not None:
        await _pool.disconnect()
        _pool = None
