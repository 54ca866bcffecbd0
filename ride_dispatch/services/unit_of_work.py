"""
Ride-scoped unit of work.

Every ride mutation follows the same sequence::

    ride lock -> BEGIN -> SELECT ... FOR UPDATE -> checks -> UPDATE -> COMMIT

Any exception raised inside the block rolls the transaction back and the
ride lock is released by its context manager.  Fanout belongs *after*
the block, once the commit is durable and the lock is free.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ride_dispatch.domain.errors import RideNotFound
from ride_dispatch.infrastructure.locks import RideLocks
from ride_dispatch.infrastructure.models import RideModel
from ride_dispatch.infrastructure.repositories import RideRepository


@asynccontextmanager
async def locked_ride(
    session_factory: async_sessionmaker[AsyncSession],
    locks: RideLocks,
    ride_id: int,
) -> AsyncIterator[tuple[AsyncSession, RideModel]]:
    async with locks.hold(ride_id):
        async with session_factory() as session:
            async with session.begin():
                ride = await RideRepository(session).get_for_update(ride_id)
                if ride is None:
                    raise RideNotFound()
                yield session, ride


@asynccontextmanager
async def transaction(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Plain unit of work for writes that are not scoped to one ride."""
    async with session_factory() as session:
        async with session.begin():
            yield session
