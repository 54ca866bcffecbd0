"""
Negotiation Sub-ledger
======================

Append-only counter-offers attached to a ride.

* ``propose`` appends a ``pending`` entry; ``final_price`` is untouched.
  At most one entry is pending at a time, so a second proposal before a
  response fails with ``ProposalPending``.
* ``respond`` resolves the most recent pending entry through a
  conditional UPDATE guarded on ``status = 'pending'`` and writes
  ``final_price`` only when the offer is accepted.  A second response
  finds nothing pending and fails with ``NoPendingProposal``.

Entries are never deleted or edited after their single response.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ride_dispatch.domain.entities import utcnow
from ride_dispatch.domain.enums import (
    ActorRole,
    ProposalStatus,
    RideStatus,
    TERMINAL_STATUSES,
)
from ride_dispatch.domain.errors import (
    InvalidTransition,
    NoPendingProposal,
    NotRideParticipant,
    ProposalPending,
    RideNotFound,
    StaleState,
    ValidationFailed,
)
from ride_dispatch.infrastructure.locks import RideLocks
from ride_dispatch.infrastructure.models import RideModel, RideProposalModel
from ride_dispatch.infrastructure.repositories import (
    ProposalRepository,
    RideRepository,
    UserRepository,
)
from ride_dispatch.services.fanout import DispatchFanout
from ride_dispatch.services.unit_of_work import locked_ride
from ride_dispatch.services.views import proposal_view

logger = logging.getLogger(__name__)


def _participant_role(ride: RideModel, actor_id: int) -> ActorRole:
    if actor_id == ride.passenger_id:
        return ActorRole.PASSENGER
    if ride.driver_id is not None and actor_id == ride.driver_id:
        return ActorRole.DRIVER
    raise NotRideParticipant()


def _ensure_open(ride: RideModel) -> None:
    status = RideStatus(ride.status)
    if status in TERMINAL_STATUSES:
        raise InvalidTransition(f"Ride is already {status.value}")


class NegotiationLedger:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: RideLocks,
        fanout: DispatchFanout,
        min_price: float = 100.0,
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.fanout = fanout
        self.min_price = min_price

    async def propose(
        self,
        ride_id: int,
        actor_id: int,
        price: float,
        reason: Optional[str] = None,
    ) -> dict:
        if price < self.min_price:
            raise ValidationFailed(f"Proposed price must be at least {self.min_price:g}")

        async with locked_ride(self.session_factory, self.locks, ride_id) as (
            session,
            ride,
        ):
            _ensure_open(ride)
            role = _participant_role(ride, actor_id)

            proposals = ProposalRepository(session)
            if await proposals.latest_pending(ride_id) is not None:
                raise ProposalPending()

            proposal = await proposals.append(
                RideProposalModel(
                    ride_id=ride_id,
                    proposer_role=role,
                    proposer_id=actor_id,
                    original_price=ride.final_price,
                    proposed_price=price,
                    reason=reason,
                    status=ProposalStatus.PENDING,
                    proposed_at=utcnow(),
                )
            )
            view = proposal_view(proposal)
            counterpart = (
                ride.driver_id if role == ActorRole.PASSENGER else ride.passenger_id
            )
            counterpart_role = (
                ActorRole.DRIVER if role == ActorRole.PASSENGER else ActorRole.PASSENGER
            )

        logger.info(
            "Ride %d: %s %d proposed %.2f", ride_id, role.value, actor_id, price
        )
        if counterpart is not None:
            await self.fanout.notify_party(
                counterpart,
                "price_proposal",
                {"ride_id": ride_id, "proposal": view},
                role=counterpart_role,
            )
        return view

    async def respond(
        self,
        ride_id: int,
        actor_id: int,
        accept: bool,
        reason: Optional[str] = None,
    ) -> dict:
        async with locked_ride(self.session_factory, self.locks, ride_id) as (
            session,
            ride,
        ):
            _ensure_open(ride)
            role = _participant_role(ride, actor_id)

            proposals = ProposalRepository(session)
            pending = await proposals.latest_pending(ride_id)
            if pending is None:
                raise NoPendingProposal()
            if pending.proposer_id == actor_id:
                raise NotRideParticipant("Only the counterpart can respond")

            outcome = ProposalStatus.ACCEPTED if accept else ProposalStatus.REJECTED
            if not await proposals.resolve(pending.id, outcome, utcnow(), reason):
                raise NoPendingProposal()

            if accept:
                applied = await RideRepository(session).transition(
                    ride_id,
                    RideStatus(ride.status),
                    final_price=pending.proposed_price,
                )
                if not applied:
                    raise StaleState()
            await session.refresh(pending)
            view = proposal_view(pending)
            final_price = ride.final_price
            proposer_id = pending.proposer_id
            proposer_role = ActorRole(pending.proposer_role)

        logger.info(
            "Ride %d: proposal #%d %s by %s %d",
            ride_id,
            view["seq"],
            outcome.value,
            role.value,
            actor_id,
        )
        await self.fanout.notify_party(
            proposer_id,
            "price_proposal_response",
            {"ride_id": ride_id, "accepted": accept, "proposal": view},
            role=proposer_role,
        )
        if accept:
            await self.fanout.notify_ride_channel(
                ride_id,
                "price_updated",
                {"ride_id": ride_id, "final_price": final_price},
            )
        return {**view, "final_price": final_price}

    async def history(self, ride_id: int, actor_id: int) -> list[dict]:
        async with self.session_factory() as session:
            ride = await RideRepository(session).get_by_id(ride_id)
            if ride is None:
                raise RideNotFound()
            if actor_id not in (ride.passenger_id, ride.driver_id):
                actor = await UserRepository(session).get_by_id(actor_id)
                if actor is None or actor.role != ActorRole.ADMIN:
                    raise NotRideParticipant()
            return [proposal_view(p) for p in await ProposalRepository(session).history(ride_id)]
