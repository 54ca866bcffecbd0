"""
Dispatch Fanout
===============

Owns every subscriber map used to push events to live connections:

* **party**     user id -> role -> connection (one handle per role context)
* **channel**   ride id -> handle id -> connection (parties and observers)
* **offered**   ride id -> driver ids that received the opportunity
* **reverse**   handle id -> memberships, so a disconnect cleans up in O(m)

A connection is anything with a ``handle_id`` and an
``async send_event(event, data)`` method.

Delivery is fire-and-forget: one attempt per handle, failures are logged
and dropped.  Map mutations never await, so each one is atomic with
respect to the event loop; recipients are snapshotted before sending.
Absence of a subscriber is simply a no-op.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Optional, Protocol

from ride_dispatch.domain.entities import Candidate, utcnow
from ride_dispatch.domain.enums import ActorRole

logger = logging.getLogger(__name__)


class Connection(Protocol):
    handle_id: str

    async def send_event(self, event: str, data: dict) -> None: ...


class DispatchFanout:
    def __init__(self) -> None:
        self._parties: dict[int, dict[ActorRole, Connection]] = {}
        self._channels: dict[int, dict[str, Connection]] = {}
        self._offered: dict[int, set[int]] = {}
        self._memberships: dict[str, set[tuple]] = {}

    # ── Subscriptions ─────────────────────────────────────────────────

    def subscribe_party(
        self, user_id: int, role: ActorRole, connection: Connection
    ) -> None:
        roles = self._parties.setdefault(user_id, {})
        previous = roles.get(role)
        if previous is not None and previous.handle_id != connection.handle_id:
            self._forget(previous.handle_id, ("party", user_id, role))
        roles[role] = connection
        self._remember(connection.handle_id, ("party", user_id, role))

    def subscribe_ride(self, ride_id: int, connection: Connection) -> None:
        self._channels.setdefault(ride_id, {})[connection.handle_id] = connection
        self._remember(connection.handle_id, ("ride", ride_id))

    def attach_parties(
        self, ride_id: int, parties: Iterable[tuple[Optional[int], ActorRole]]
    ) -> None:
        """Subscribe the live party handles of a ride to its channel."""
        for user_id, role in parties:
            if user_id is None:
                continue
            connection = self._parties.get(user_id, {}).get(role)
            if connection is not None:
                self.subscribe_ride(ride_id, connection)

    def leave_ride(self, ride_id: int, handle_id: str) -> None:
        members = self._channels.get(ride_id)
        if members is not None:
            members.pop(handle_id, None)
            if not members:
                del self._channels[ride_id]
        self._forget(handle_id, ("ride", ride_id))

    def unsubscribe(self, handle_id: str) -> None:
        """Drop a connection from every party slot and ride channel."""
        for membership in self._memberships.pop(handle_id, set()):
            if membership[0] == "party":
                _, user_id, role = membership
                roles = self._parties.get(user_id, {})
                current = roles.get(role)
                if current is not None and current.handle_id == handle_id:
                    del roles[role]
                if not roles:
                    self._parties.pop(user_id, None)
            else:
                members = self._channels.get(membership[1])
                if members is not None:
                    members.pop(handle_id, None)
                    if not members:
                        del self._channels[membership[1]]

    def is_ride_member(self, ride_id: int, handle_id: str) -> bool:
        return handle_id in self._channels.get(ride_id, {})

    def is_party_connected(self, user_id: int, role: Optional[ActorRole] = None) -> bool:
        roles = self._parties.get(user_id, {})
        return role in roles if role is not None else bool(roles)

    def record_offer(self, ride_id: int, driver_id: int) -> None:
        self._offered.setdefault(ride_id, set()).add(driver_id)

    def offered_to(self, ride_id: int) -> set[int]:
        return set(self._offered.get(ride_id, ()))

    def close_ride(self, ride_id: int) -> None:
        """Forget the channel and offers of a ride that reached a terminal state."""
        self._offered.pop(ride_id, None)
        for handle_id in list(self._channels.pop(ride_id, {})):
            self._forget(handle_id, ("ride", ride_id))

    # ── Delivery ──────────────────────────────────────────────────────

    async def notify_party(
        self,
        user_id: int,
        event: str,
        payload: dict,
        role: Optional[ActorRole] = None,
    ) -> int:
        roles = self._parties.get(user_id, {})
        if role is not None:
            targets = [roles[role]] if role in roles else []
        else:
            targets = list(roles.values())
        return await self._broadcast(targets, event, payload)

    async def notify_ride_channel(
        self,
        ride_id: int,
        event: str,
        payload: dict,
        exclude_handle: Optional[str] = None,
    ) -> int:
        targets = [
            conn
            for handle_id, conn in self._channels.get(ride_id, {}).items()
            if handle_id != exclude_handle
        ]
        return await self._broadcast(targets, event, payload)

    async def notify_ride(
        self,
        ride_id: int,
        event: str,
        payload: dict,
        parties: Iterable[Optional[int]] = (),
    ) -> int:
        """Ride channel plus the parties' own handles, each handle once."""
        targets: dict[str, Connection] = dict(self._channels.get(ride_id, {}))
        for user_id in parties:
            if user_id is None:
                continue
            for conn in self._parties.get(user_id, {}).values():
                targets.setdefault(conn.handle_id, conn)
        return await self._broadcast(list(targets.values()), event, payload)

    async def notify_all(self, event: str, payload: dict) -> int:
        """Every joined party connection, each handle once."""
        targets: dict[str, Connection] = {}
        for roles in self._parties.values():
            for conn in roles.values():
                targets.setdefault(conn.handle_id, conn)
        return await self._broadcast(list(targets.values()), event, payload)

    async def notify_candidates(
        self, ride: dict, candidates: Iterable[Candidate]
    ) -> int:
        """
        Push ``ride_opportunity`` to each candidate.

        When nothing was delivered the passenger receives
        ``ride_no_drivers`` instead of silence.
        """
        ride_id = ride["id"]
        deliveries = []
        for candidate in candidates:
            self.record_offer(ride_id, candidate.driver_id)
            deliveries.append(
                self._deliver(
                    candidate.connection,
                    "ride_opportunity",
                    self._opportunity(ride, candidate.distance_km),
                )
            )
        delivered = sum(await asyncio.gather(*deliveries))

        if delivered == 0:
            await self.notify_party(
                ride["passenger_id"],
                "ride_no_drivers",
                {
                    "ride_id": ride_id,
                    "message": "No drivers available nearby right now",
                },
                role=ActorRole.PASSENGER,
            )
        logger.info("Ride %d offered to %d driver(s)", ride_id, delivered)
        return delivered

    async def offer(
        self,
        ride: dict,
        connection: Connection,
        driver_id: int,
        distance_km: Optional[float],
    ) -> bool:
        self.record_offer(ride["id"], driver_id)
        return bool(
            await self._deliver(
                connection, "ride_opportunity", self._opportunity(ride, distance_km)
            )
        )

    async def announce_match(self, ride: dict) -> None:
        ride_id = ride["id"]
        driver_id = ride["driver_id"]
        losers = self._offered.pop(ride_id, set()) - {driver_id}
        self.attach_parties(
            ride_id,
            [(ride["passenger_id"], ActorRole.PASSENGER), (driver_id, ActorRole.DRIVER)],
        )

        await self.notify_party(
            ride["passenger_id"], "ride_accepted", ride, role=ActorRole.PASSENGER
        )
        await self.notify_party(driver_id, "ride_accepted", ride, role=ActorRole.DRIVER)
        await self.notify_ride_channel(ride_id, "match_found", ride)

        taken = {"ride_id": ride_id, "message": "This ride was taken by another driver"}
        await asyncio.gather(
            *(
                self.notify_party(d, "ride_taken", taken, role=ActorRole.DRIVER)
                for d in sorted(losers)
            )
        )

    async def withdraw(
        self,
        ride_id: int,
        event: str,
        payload: dict,
        exclude: Iterable[int] = (),
    ) -> int:
        """Tell every offered candidate (except *exclude*) the opportunity is gone."""
        drivers = self._offered.pop(ride_id, set()) - set(exclude)
        counts = await asyncio.gather(
            *(
                self.notify_party(d, event, payload, role=ActorRole.DRIVER)
                for d in sorted(drivers)
            )
        )
        return sum(counts)

    # ── Internals ─────────────────────────────────────────────────────

    @staticmethod
    def _opportunity(ride: dict, distance_km: Optional[float]) -> dict:
        return {
            **ride,
            "distance_to_pickup": (
                round(distance_km, 2) if distance_km is not None else None
            ),
        }

    async def _broadcast(
        self, targets: list[Connection], event: str, payload: dict
    ) -> int:
        if not targets:
            return 0
        results = await asyncio.gather(
            *(self._deliver(conn, event, payload) for conn in targets)
        )
        return sum(results)

    async def _deliver(self, connection: Any, event: str, payload: dict) -> int:
        if connection is None:
            return 0
        data = {**payload, "timestamp": utcnow().isoformat()}
        try:
            await connection.send_event(event, data)
        except Exception as exc:
            logger.warning(
                "Dropped %s for handle %s: %s",
                event,
                getattr(connection, "handle_id", "?"),
                exc,
            )
            return 0
        return 1

    def _remember(self, handle_id: str, membership: tuple) -> None:
        self._memberships.setdefault(handle_id, set()).add(membership)

    def _forget(self, handle_id: str, membership: tuple) -> None:
        memberships = self._memberships.get(handle_id)
        if memberships is not None:
            memberships.discard(membership)
            if not memberships:
                del self._memberships[handle_id]
