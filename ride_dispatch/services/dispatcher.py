"""
Ride Dispatcher (facade)
========================

The single entry point used by every transport.  REST routes and the
WebSocket adapter call the same coroutines; neither re-implements ride
logic.

Wiring
------
* ``PresenceRegistry``  -- driver presence, grace period, H3 index
* ``DispatchFanout``    -- subscriber maps and event delivery
* ``CandidateSelector`` -- registry + directory -> ranked candidates
* ``RideLifecycle``     -- create / arrive / start / complete / cancel / rate
* ``MatchResolver``     -- the single-winner accept
* ``NegotiationLedger`` -- counter-offers

Reverse radar
-------------
When a driver joins with a location, or gets the first GPS fix after
joining, recent ``searching`` rides within range are offered to that
driver so a late connection is not starved until the next request.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ride_dispatch.config import Settings
from ride_dispatch.domain.distance import valid_coordinates
from ride_dispatch.domain.entities import Location
from ride_dispatch.domain.enums import (
    ActorRole,
    PaymentMethod,
    RideStatus,
    RideType,
    StatusMarker,
)
from ride_dispatch.domain.errors import (
    AccountBlocked,
    DriverNotFound,
    NotRideParticipant,
    UserNotFound,
    ValidationFailed,
)
from ride_dispatch.domain.pricing import TariffTable, quote
from ride_dispatch.infrastructure.locks import LocalRideLocks, RideLocks
from ride_dispatch.infrastructure.repositories import RideRepository, UserRepository
from ride_dispatch.services.candidates import CandidateSelector
from ride_dispatch.services.fanout import Connection, DispatchFanout
from ride_dispatch.services.ledger import LedgerService, WalletLedger
from ride_dispatch.services.lifecycle import RideLifecycle
from ride_dispatch.services.matching import MatchResolver
from ride_dispatch.services.negotiation import NegotiationLedger
from ride_dispatch.services.presence import PresenceRegistry
from ride_dispatch.services.unit_of_work import transaction
from ride_dispatch.services.views import ride_view

logger = logging.getLogger(__name__)


def _location(lat: Optional[float], lng: Optional[float]) -> Optional[Location]:
    if lat is None or lng is None:
        return None
    if not valid_coordinates(lat, lng):
        raise ValidationFailed("Invalid coordinates")
    return Location(lat, lng)


class RideDispatcher:
    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        locks: Optional[RideLocks] = None,
        ledger: Optional[LedgerService] = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.locks = locks or LocalRideLocks()

        self.fanout = DispatchFanout()
        self.registry = PresenceRegistry(
            grace_seconds=settings.disconnect_grace_seconds,
            h3_resolution=settings.h3_resolution,
            on_reachability_change=self._sync_directory_online,
        )
        self.selector = CandidateSelector(
            self.registry,
            session_factory,
            radius_km=settings.candidate_radius_km,
            fallback_radius_km=settings.fallback_radius_km,
            stale_after_seconds=settings.presence_stale_seconds,
            max_candidates=settings.max_candidates,
        )
        self.lifecycle = RideLifecycle(
            session_factory, self.locks, self.fanout, ledger or WalletLedger()
        )
        self.matcher = MatchResolver(session_factory, self.locks, self.fanout)
        self.negotiation = NegotiationLedger(
            session_factory,
            self.locks,
            self.fanout,
            min_price=settings.min_proposal_price,
        )

    # ── Presence & subscriptions ──────────────────────────────────────

    async def join_as_driver(
        self,
        connection: Connection,
        driver_id: int,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        heading: Optional[float] = None,
        speed: Optional[float] = None,
    ) -> dict:
        location = _location(lat, lng)
        await self._require_user(driver_id, ActorRole.DRIVER)

        presence = await self.registry.upsert(
            driver_id, connection, location, heading=heading, speed=speed
        )
        self.fanout.subscribe_party(driver_id, ActorRole.DRIVER, connection)
        active = await self._resubscribe(connection, driver_id)
        await self.fanout.notify_all(
            "drivers_online_count", {"count": self.online_driver_count()}
        )

        offered = 0
        if not active and not presence.location.is_unknown:
            offered = await self.radar(driver_id, connection, presence.location)

        logger.info(
            "Driver %d joined (handle=%s, active_rides=%d, radar=%d)",
            driver_id,
            connection.handle_id,
            len(active),
            offered,
        )
        return {
            "driver_id": driver_id,
            "presence": presence.to_dict(),
            "active_rides": active,
            "opportunities": offered,
        }

    async def join_as_passenger(self, connection: Connection, user_id: int) -> dict:
        await self._require_user(user_id)
        self.fanout.subscribe_party(user_id, ActorRole.PASSENGER, connection)
        active = await self._resubscribe(connection, user_id)
        logger.info("Passenger %d joined (active_rides=%d)", user_id, len(active))
        return {"user_id": user_id, "active_rides": active}

    async def update_location(
        self,
        driver_id: int,
        lat: float,
        lng: float,
        *,
        heading: Optional[float] = None,
        speed: Optional[float] = None,
        accuracy: Optional[float] = None,
        ride_id: Optional[int] = None,
        connection: Optional[Connection] = None,
    ) -> dict:
        location = _location(lat, lng)
        if connection is not None and (
            self.registry.driver_for_handle(connection.handle_id) != driver_id
        ):
            raise NotRideParticipant("Connection is not registered for this driver")

        presence, first_fix = await self.registry.update_location(
            driver_id, location, heading=heading, speed=speed, accuracy=accuracy
        )

        if first_fix and presence.is_online:
            await self.radar(driver_id, presence.connection, presence.location)

        if (
            ride_id is not None
            and connection is not None
            and self.fanout.is_ride_member(ride_id, connection.handle_id)
        ):
            await self.fanout.notify_ride_channel(
                ride_id,
                "driver_location_update",
                {
                    "ride_id": ride_id,
                    "driver_id": driver_id,
                    "lat": lat,
                    "lng": lng,
                    "heading": presence.heading,
                    "speed": presence.speed,
                },
                exclude_handle=connection.handle_id,
            )
        return presence.to_dict()

    async def heartbeat(self, driver_id: int) -> Optional[dict]:
        presence = await self.registry.heartbeat(driver_id)
        return presence.to_dict() if presence else None

    async def disconnect(self, connection: Connection) -> None:
        self.fanout.unsubscribe(connection.handle_id)
        await self.registry.mark_offline(connection.handle_id)

    async def join_ride(self, connection: Connection, ride_id: int) -> dict:
        ride = await self.lifecycle.get_ride(ride_id)
        self.fanout.subscribe_ride(ride_id, connection)
        return {"ride_id": ride_id, "status": ride["status"]}

    def leave_ride(self, connection: Connection, ride_id: int) -> dict:
        self.fanout.leave_ride(ride_id, connection.handle_id)
        return {"ride_id": ride_id}

    async def send_message(
        self, connection: Connection, ride_id: int, sender_id: int, text: str
    ) -> dict:
        """Relay a chat line to the ride channel.  Nothing is persisted."""
        if not text or not text.strip():
            raise ValidationFailed("Message text is required")
        if not self.fanout.is_ride_member(ride_id, connection.handle_id):
            raise NotRideParticipant("Join the ride channel before sending messages")
        delivered = await self.fanout.notify_ride_channel(
            ride_id,
            "receive_message",
            {"ride_id": ride_id, "sender_id": sender_id, "text": text},
            exclude_handle=connection.handle_id,
        )
        return {"ride_id": ride_id, "delivered": delivered}

    # ── Ride flow ─────────────────────────────────────────────────────

    async def request_ride(
        self,
        *,
        passenger_id: int,
        origin_lat: float,
        origin_lng: float,
        dest_lat: float,
        dest_lng: float,
        distance_km: float,
        ride_type: RideType = RideType.STANDARD,
        origin_name: Optional[str] = None,
        dest_name: Optional[str] = None,
        connection: Optional[Connection] = None,
    ) -> dict:
        origin = _location(origin_lat, origin_lng)
        view = await self.lifecycle.create_ride(
            passenger_id=passenger_id,
            origin=origin,
            destination=_location(dest_lat, dest_lng),
            ride_type=ride_type,
            distance_km=distance_km,
            origin_name=origin_name,
            dest_name=dest_name,
        )
        ride_id = view["id"]

        if connection is not None:
            self.fanout.subscribe_ride(ride_id, connection)
        self.fanout.attach_parties(ride_id, [(passenger_id, ActorRole.PASSENGER)])
        await self.fanout.notify_party(
            passenger_id, "ride_requested", view, role=ActorRole.PASSENGER
        )

        candidates = await self.selector.find_with_fallback(
            origin, exclude_ids={passenger_id}
        )
        notified = await self.fanout.notify_candidates(view, candidates)
        return {
            "ride_id": ride_id,
            "price": view["initial_price"],
            "status": view["status"],
            "drivers_notified": notified,
            "ride": view,
        }

    async def accept_ride(self, ride_id: int, driver_id: int) -> dict:
        return await self.matcher.accept(ride_id, driver_id)

    async def update_status(
        self,
        ride_id: int,
        actor_id: int,
        target: StatusMarker,
        expected_status: Optional[RideStatus] = None,
    ) -> dict:
        return await self.lifecycle.update_status(
            ride_id, actor_id, target, expected_status
        )

    async def complete_ride(
        self,
        ride_id: int,
        driver_id: int,
        payment_method: PaymentMethod = PaymentMethod.CASH,
        actual_distance_km: Optional[float] = None,
    ) -> dict:
        return await self.lifecycle.complete(
            ride_id, driver_id, payment_method, actual_distance_km
        )

    async def cancel_ride(
        self, ride_id: int, actor_id: int, reason: Optional[str] = None
    ) -> dict:
        return await self.lifecycle.cancel(ride_id, actor_id, reason)

    async def rate_ride(
        self,
        ride_id: int,
        passenger_id: int,
        rating: int,
        feedback: Optional[str] = None,
    ) -> dict:
        return await self.lifecycle.rate(ride_id, passenger_id, rating, feedback)

    async def propose_price(
        self, ride_id: int, actor_id: int, price: float, reason: Optional[str] = None
    ) -> dict:
        return await self.negotiation.propose(ride_id, actor_id, price, reason)

    async def respond_to_proposal(
        self,
        ride_id: int,
        actor_id: int,
        accept: bool,
        reason: Optional[str] = None,
    ) -> dict:
        return await self.negotiation.respond(ride_id, actor_id, accept, reason)

    async def proposal_history(self, ride_id: int, actor_id: int) -> list[dict]:
        return await self.negotiation.history(ride_id, actor_id)

    async def get_ride(self, ride_id: int) -> dict:
        return await self.lifecycle.get_ride(ride_id)

    async def list_user_rides(self, user_id: int, active_only: bool = False) -> list[dict]:
        return await self.lifecycle.list_user_rides(user_id, active_only)

    # ── Queries & admin ───────────────────────────────────────────────

    def driver_presence(self, driver_id: int) -> dict:
        presence = self.registry.get(driver_id)
        if presence is None:
            raise DriverNotFound("No presence recorded for this driver")
        return {
            **presence.to_dict(),
            "online": presence.is_online,
            "fresh": presence.is_fresh(
                self.registry.now(), self.settings.presence_stale_seconds
            ),
        }

    async def nearby_drivers(
        self,
        lat: float,
        lng: float,
        radius_km: Optional[float] = None,
        include_unknown_location: bool = False,
    ) -> list[dict]:
        origin = _location(lat, lng)
        if radius_km is not None and radius_km <= 0:
            raise ValidationFailed("Radius must be positive")
        if radius_km is not None and radius_km > self.settings.max_search_radius_km:
            raise ValidationFailed(
                f"Radius must not exceed {self.settings.max_search_radius_km:g} km"
            )
        candidates = await self.selector.find_candidates(
            origin, radius_km, include_unknown_location
        )
        return [
            {
                "driver_id": c.driver_id,
                "distance_km": (
                    round(c.distance_km, 3) if c.distance_km is not None else None
                ),
            }
            for c in candidates
        ]

    def online_driver_count(self) -> int:
        """Drivers currently reachable, grace period included."""
        stats = self.registry.stats(self.settings.presence_stale_seconds)
        return stats["reachable"]

    async def broadcast_online_stats(self) -> int:
        stats = self.registry.stats(self.settings.presence_stale_seconds)
        return await self.fanout.notify_all(
            "drivers_online_update", {"count": stats["reachable"], "stats": stats}
        )

    def presence_overview(self) -> dict:
        stale = self.settings.presence_stale_seconds
        return {
            "stats": self.registry.stats(stale),
            "online": [p.to_dict() for p in self.registry.list_online(stale)],
        }

    async def get_tariffs(self) -> dict:
        return (await self.lifecycle.get_tariffs()).to_dict()

    async def put_tariffs(self, raw: dict) -> dict:
        return (await self.lifecycle.put_tariffs(raw)).to_dict()

    async def quote(self, ride_type: RideType, distance_km: float) -> dict:
        table: TariffTable = await self.lifecycle.get_tariffs()
        return {
            "ride_type": RideType(ride_type).value,
            "distance_km": distance_km,
            "price": quote(ride_type, distance_km, table),
        }

    async def expire_stale_presence(self) -> list[int]:
        return await self.registry.expire_stale(self.settings.presence_expiry_seconds)

    async def close(self) -> None:
        await self.registry.close()

    # ── Internals ─────────────────────────────────────────────────────

    async def radar(
        self, driver_id: int, connection: Any, location: Location
    ) -> int:
        """Offer recent searching rides within range to one driver."""
        since = self.registry.now() - timedelta(
            seconds=self.settings.radar_window_seconds
        )
        async with self.session_factory() as session:
            rides = await RideRepository(session).get_recent_searching(since)

        offered = 0
        for ride in rides:
            if ride.passenger_id == driver_id:
                continue
            distance = location.distance_to(Location(ride.origin_lat, ride.origin_lng))
            if distance > self.settings.candidate_radius_km:
                continue
            if await self.fanout.offer(ride_view(ride), connection, driver_id, distance):
                offered += 1
        return offered

    async def _resubscribe(self, connection: Connection, user_id: int) -> list[int]:
        ride_ids = await self.lifecycle.active_ride_ids(user_id)
        for ride_id in ride_ids:
            self.fanout.subscribe_ride(ride_id, connection)
        return ride_ids

    async def _require_user(
        self, user_id: int, role: Optional[ActorRole] = None
    ) -> None:
        async with self.session_factory() as session:
            user = await UserRepository(session).get_by_id(user_id)
        if user is None or (role is not None and user.role != role):
            raise DriverNotFound() if role == ActorRole.DRIVER else UserNotFound()
        if user.is_blocked:
            raise AccountBlocked()

    async def _sync_directory_online(self, driver_id: int, reachable: bool) -> None:
        async with transaction(self.session_factory) as session:
            await UserRepository(session).set_online(driver_id, reachable)
        if not reachable:
            logger.warning("Driver %d flagged offline in directory", driver_id)
        await self.broadcast_online_stats()
