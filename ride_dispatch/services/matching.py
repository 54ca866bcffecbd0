"""
Match Resolver
==============

The critical section that turns ``searching`` into ``accepted`` exactly
once per ride, however many candidates race for it.

Algorithm per ``accept``
------------------------
1. Take the ride-scoped lock, then ``SELECT ... FOR UPDATE`` the row.
2. Status != ``searching``       -> ``RideAlreadyTaken``.
3. Driver is the passenger       -> ``SelfMatchForbidden``.
4. Driver not in the directory   -> ``DriverNotFound``; otherwise bind the
   driver with a conditional UPDATE guarded on ``status = 'searching'``
   and read the enrichment in the same transaction.
5. Commit, release the lock, and only then fan out.

Concurrency safety
------------------
* The ride lock serialises the read-check-write so every loser observes
  the committed ``accepted`` status and fails cleanly.
* The conditional UPDATE is the last line of defence: a zero row count
  means another writer won, reported as ``StaleState``.
* Fanout failures never roll back the match.

Complexity: O(1) database round trips per attempt.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ride_dispatch.domain.entities import utcnow
from ride_dispatch.domain.enums import ActorRole, RideStatus
from ride_dispatch.domain.errors import (
    AccountBlocked,
    DriverNotFound,
    RideAlreadyTaken,
    SelfMatchForbidden,
    StaleState,
)
from ride_dispatch.infrastructure.locks import RideLocks
from ride_dispatch.infrastructure.repositories import RideRepository, UserRepository
from ride_dispatch.services.fanout import DispatchFanout
from ride_dispatch.services.unit_of_work import locked_ride
from ride_dispatch.services.views import ride_view

logger = logging.getLogger(__name__)


class MatchResolver:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: RideLocks,
        fanout: DispatchFanout,
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.fanout = fanout

    async def accept(self, ride_id: int, driver_id: int) -> dict:
        async with locked_ride(self.session_factory, self.locks, ride_id) as (
            session,
            ride,
        ):
            if RideStatus(ride.status) != RideStatus.SEARCHING:
                raise RideAlreadyTaken()
            if driver_id == ride.passenger_id:
                raise SelfMatchForbidden()

            users = UserRepository(session)
            driver = await users.get_by_id(driver_id)
            if driver is None or driver.role != ActorRole.DRIVER:
                raise DriverNotFound()
            if driver.is_blocked:
                raise AccountBlocked()

            applied = await RideRepository(session).transition(
                ride_id,
                RideStatus.SEARCHING,
                driver_id=driver_id,
                status=RideStatus.ACCEPTED,
                accepted_at=utcnow(),
                final_price=ride.initial_price,
            )
            if not applied:
                raise StaleState()

            passenger = await users.get_by_id(ride.passenger_id)
            view = ride_view(ride, passenger=passenger, driver=driver)

        logger.info("Ride %d matched to driver %d", ride_id, driver_id)
        await self.fanout.announce_match(view)
        return view
