"""
Ride Lifecycle
==============

Owns every ride mutation except the match itself (see ``matching``):
creation, the *arrived* marker, trip start, completion with settlement,
cancellation and rating.

Each operation follows the same shape::

    locked_ride(...)            # lock -> BEGIN -> SELECT FOR UPDATE
        guard checks            # not found -> illegal transition -> actor
        conditional UPDATE      # WHERE status = :expected, else StaleState
        enrichment read         # same transaction
    fanout                      # after commit, failures logged and dropped

Status sequence per ride is a subsequence of
``searching -> accepted -> ongoing -> completed`` or ends at ``cancelled``.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ride_dispatch.domain.distance import valid_coordinates
from ride_dispatch.domain.entities import Location, utcnow
from ride_dispatch.domain.enums import (
    ActorRole,
    PaymentMethod,
    PaymentStatus,
    RideStatus,
    RideType,
    StatusMarker,
    TERMINAL_STATUSES,
    ensure_transition,
)
from ride_dispatch.domain.errors import (
    AccountBlocked,
    InvalidTransition,
    NotRideParticipant,
    RideNotFound,
    StaleState,
    UserNotFound,
    ValidationFailed,
)
from ride_dispatch.domain.pricing import TariffTable, quote, settle_fare
from ride_dispatch.infrastructure.locks import RideLocks
from ride_dispatch.infrastructure.models import RideModel, UserModel
from ride_dispatch.infrastructure.repositories import (
    RIDE_PRICES_KEY,
    RideRepository,
    SettingsRepository,
    UserRepository,
)
from ride_dispatch.services.fanout import DispatchFanout
from ride_dispatch.services.ledger import LedgerService
from ride_dispatch.services.unit_of_work import locked_ride, transaction
from ride_dispatch.services.views import ride_view, transaction_view

logger = logging.getLogger(__name__)


async def load_tariffs(session: AsyncSession) -> TariffTable:
    """Read the tariff table on every call so admin edits apply at once."""
    raw = await SettingsRepository(session).get_value(RIDE_PRICES_KEY)
    return TariffTable.from_mapping(raw)


async def enriched_view(session: AsyncSession, ride: RideModel) -> dict:
    users = await UserRepository(session).get_many(
        [uid for uid in (ride.passenger_id, ride.driver_id) if uid is not None]
    )
    return ride_view(
        ride,
        passenger=users.get(ride.passenger_id),
        driver=users.get(ride.driver_id) if ride.driver_id else None,
    )


def _status(ride: RideModel) -> RideStatus:
    return RideStatus(ride.status)


def _require_driver(ride: RideModel, actor_id: int) -> None:
    if ride.driver_id is None or ride.driver_id != actor_id:
        raise NotRideParticipant("Only the assigned driver can do this")


class RideLifecycle:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: RideLocks,
        fanout: DispatchFanout,
        ledger: LedgerService,
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.fanout = fanout
        self.ledger = ledger

    # ── Creation ──────────────────────────────────────────────────────

    async def create_ride(
        self,
        *,
        passenger_id: int,
        origin: Location,
        destination: Location,
        ride_type: RideType = RideType.STANDARD,
        distance_km: float,
        origin_name: Optional[str] = None,
        dest_name: Optional[str] = None,
    ) -> dict:
        for point in (origin, destination):
            if not valid_coordinates(point.latitude, point.longitude):
                raise ValidationFailed("Invalid coordinates")
        if origin.is_unknown:
            raise ValidationFailed("Origin location is required")
        try:
            ride_type = RideType(ride_type)
        except ValueError as exc:
            raise ValidationFailed(f"Unknown ride type: {ride_type}") from exc

        async with transaction(self.session_factory) as session:
            passenger = await UserRepository(session).get_by_id(passenger_id)
            if passenger is None:
                raise UserNotFound()
            if passenger.is_blocked:
                raise AccountBlocked()

            price = quote(ride_type, distance_km, await load_tariffs(session))
            ride = await RideRepository(session).create(
                RideModel(
                    passenger_id=passenger_id,
                    origin_lat=origin.latitude,
                    origin_lng=origin.longitude,
                    dest_lat=destination.latitude,
                    dest_lng=destination.longitude,
                    origin_name=origin_name or "Origin",
                    dest_name=dest_name or "Destination",
                    distance_km=distance_km,
                    ride_type=ride_type,
                    initial_price=price,
                    final_price=price,
                    status=RideStatus.SEARCHING,
                )
            )
            view = ride_view(ride, passenger=passenger)

        logger.info(
            "Ride %d created for passenger %d (%s, %.2f km, price=%d)",
            ride.id,
            passenger_id,
            ride_type.value,
            distance_km,
            price,
        )
        return view

    # ── Driver progress ───────────────────────────────────────────────

    async def update_status(
        self,
        ride_id: int,
        actor_id: int,
        target: StatusMarker,
        expected_status: Optional[RideStatus] = None,
    ) -> dict:
        try:
            target = StatusMarker(target)
        except ValueError as exc:
            raise ValidationFailed(f"Unsupported status target: {target}") from exc

        now = utcnow()
        async with locked_ride(self.session_factory, self.locks, ride_id) as (
            session,
            ride,
        ):
            current = _status(ride)
            if expected_status is not None and current != RideStatus(expected_status):
                raise StaleState()

            repo = RideRepository(session)
            if target == StatusMarker.ARRIVED:
                if current in TERMINAL_STATUSES:
                    raise InvalidTransition(f"Ride is already {current.value}")
                if current != RideStatus.ACCEPTED:
                    raise InvalidTransition(
                        f"Cannot mark arrival while ride is {current.value}"
                    )
                _require_driver(ride, actor_id)
                if ride.arrived_at is not None:
                    raise InvalidTransition("Driver already marked as arrived")
                applied = await repo.transition(
                    ride_id, RideStatus.ACCEPTED, arrived_at=now
                )
                event = "driver_arrived"
            else:
                ensure_transition(current, RideStatus.ONGOING)
                _require_driver(ride, actor_id)
                applied = await repo.transition(
                    ride_id,
                    RideStatus.ACCEPTED,
                    status=RideStatus.ONGOING,
                    started_at=now,
                )
                event = "trip_started"

            if not applied:
                raise StaleState()
            view = await enriched_view(session, ride)

        logger.info("Ride %d: %s", ride_id, event)
        await self.fanout.notify_ride(
            ride_id, event, view, parties=[view["passenger_id"]]
        )
        return view

    # ── Completion ────────────────────────────────────────────────────

    async def complete(
        self,
        ride_id: int,
        driver_id: int,
        payment_method: PaymentMethod = PaymentMethod.CASH,
        actual_distance_km: Optional[float] = None,
    ) -> dict:
        """
        ``ongoing -> completed`` plus settlement, as one transaction.

        The charged price is the agreed price shifted by the re-quote for
        the actual distance, when one is reported.
        """
        try:
            method = PaymentMethod(payment_method)
        except ValueError as exc:
            raise ValidationFailed(f"Unknown payment method: {payment_method}") from exc
        if actual_distance_km is not None and actual_distance_km < 0:
            raise ValidationFailed("Actual distance must be >= 0")

        now = utcnow()
        async with locked_ride(self.session_factory, self.locks, ride_id) as (
            session,
            ride,
        ):
            ensure_transition(_status(ride), RideStatus.COMPLETED)
            _require_driver(ride, driver_id)

            corrected = None
            if actual_distance_km is not None:
                corrected = quote(
                    RideType(ride.ride_type),
                    actual_distance_km,
                    await load_tariffs(session),
                )
            amount = settle_fare(ride.initial_price, ride.final_price, corrected)

            applied = await RideRepository(session).transition(
                ride_id,
                RideStatus.ONGOING,
                status=RideStatus.COMPLETED,
                completed_at=now,
                final_price=amount,
                payment_method=method,
                payment_status=PaymentStatus.PAID,
                actual_distance_km=actual_distance_km,
            )
            if not applied:
                raise StaleState()

            entries = await self.ledger.settle(session, ride, amount, method)
            view = await enriched_view(session, ride)
            view["transactions"] = [transaction_view(e) for e in entries]

        logger.info("Ride %d completed: %.2f via %s", ride_id, amount, method.value)
        await self.fanout.notify_ride(
            ride_id,
            "ride_completed",
            view,
            parties=[view["passenger_id"], view["driver_id"]],
        )
        for entry in view["transactions"]:
            await self.fanout.notify_party(
                entry["user_id"],
                "wallet_update",
                {
                    "ride_id": ride_id,
                    "type": entry["type"],
                    "amount": entry["amount"],
                    "method": entry["method"],
                },
            )
        self.fanout.close_ride(ride_id)
        return view

    # ── Cancellation ──────────────────────────────────────────────────

    async def cancel(
        self, ride_id: int, actor_id: int, reason: Optional[str] = None
    ) -> dict:
        now = utcnow()
        async with locked_ride(self.session_factory, self.locks, ride_id) as (
            session,
            ride,
        ):
            previous = _status(ride)
            ensure_transition(previous, RideStatus.CANCELLED)
            role = await self._cancelling_role(session, ride, actor_id)

            applied = await RideRepository(session).transition(
                ride_id,
                previous,
                status=RideStatus.CANCELLED,
                cancelled_at=now,
                cancelled_by=role,
                cancellation_reason=reason,
            )
            if not applied:
                raise StaleState()
            view = await enriched_view(session, ride)

        logger.info(
            "Ride %d cancelled by %s (was %s)", ride_id, role.value, previous.value
        )
        await self.fanout.notify_ride(
            ride_id,
            "ride_cancelled",
            view,
            parties=[view["passenger_id"], view["driver_id"]],
        )
        if previous == RideStatus.SEARCHING:
            await self.fanout.withdraw(
                ride_id,
                "ride_cancelled",
                {"ride_id": ride_id, "reason": reason, "cancelled_by": role.value},
            )
        self.fanout.close_ride(ride_id)
        return view

    @staticmethod
    async def _cancelling_role(
        session: AsyncSession, ride: RideModel, actor_id: int
    ) -> ActorRole:
        if actor_id == ride.passenger_id:
            return ActorRole.PASSENGER
        if ride.driver_id is not None and actor_id == ride.driver_id:
            return ActorRole.DRIVER
        actor = await UserRepository(session).get_by_id(actor_id)
        if actor is not None and actor.role == ActorRole.ADMIN:
            return ActorRole.ADMIN
        raise NotRideParticipant()

    # ── Rating ────────────────────────────────────────────────────────

    async def rate(
        self,
        ride_id: int,
        passenger_id: int,
        rating: int,
        feedback: Optional[str] = None,
    ) -> dict:
        if not 1 <= rating <= 5:
            raise ValidationFailed("Rating must be between 1 and 5")

        async with locked_ride(self.session_factory, self.locks, ride_id) as (
            session,
            ride,
        ):
            if _status(ride) != RideStatus.COMPLETED:
                raise InvalidTransition("Only completed rides can be rated")
            if passenger_id != ride.passenger_id:
                raise NotRideParticipant("Only the passenger can rate this ride")
            if ride.rating is not None:
                raise InvalidTransition("Ride already rated")

            applied = await RideRepository(session).transition(
                ride_id, RideStatus.COMPLETED, rating=rating, feedback=feedback
            )
            if not applied:
                raise StaleState()
            await self._refresh_driver_rating(session, ride.driver_id)
            view = await enriched_view(session, ride)

        logger.info("Ride %d rated %d", ride_id, rating)
        return view

    @staticmethod
    async def _refresh_driver_rating(session: AsyncSession, driver_id: int) -> None:
        average = (
            await session.execute(
                select(func.avg(RideModel.rating)).where(
                    RideModel.driver_id == driver_id,
                    RideModel.rating.is_not(None),
                )
            )
        ).scalar()
        if average is not None:
            await session.execute(
                update(UserModel)
                .where(UserModel.id == driver_id)
                .values(rating=round(float(average), 2))
                .execution_options(synchronize_session=False)
            )

    # ── Reads ─────────────────────────────────────────────────────────

    async def get_ride(self, ride_id: int) -> dict:
        async with self.session_factory() as session:
            ride = await RideRepository(session).get_by_id(ride_id)
            if ride is None:
                raise RideNotFound()
            return await enriched_view(session, ride)

    async def list_user_rides(self, user_id: int, active_only: bool = False) -> list[dict]:
        async with self.session_factory() as session:
            if await UserRepository(session).get_by_id(user_id) is None:
                raise UserNotFound()
            rides = await RideRepository(session).list_for_user(user_id, active_only)
            return [ride_view(r) for r in rides]

    async def active_ride_ids(self, user_id: int) -> list[int]:
        async with self.session_factory() as session:
            rides = await RideRepository(session).list_for_user(user_id, active_only=True)
            return [r.id for r in rides]

    async def get_tariffs(self) -> TariffTable:
        async with self.session_factory() as session:
            return await load_tariffs(session)

    async def put_tariffs(self, raw: dict) -> TariffTable:
        table = TariffTable.from_mapping(raw)
        async with transaction(self.session_factory) as session:
            await SettingsRepository(session).put_value(
                RIDE_PRICES_KEY, table.to_dict(), "Ride tariffs"
            )
        logger.info("Tariff table updated")
        return table
