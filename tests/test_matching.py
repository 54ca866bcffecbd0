"""
Match resolution tests.

Demonstrates:
1. N concurrent ``accept_ride`` calls produce exactly one winner.
2. Guard order: taken -> self-match -> unknown driver -> blocked.
3. Losing candidates are told the ride is gone; the winner's channel is live.
"""

from __future__ import annotations

import asyncio

import pytest

from ride_dispatch.domain.errors import (
    AccountBlocked,
    DriverNotFound,
    RideAlreadyTaken,
    RideNotFound,
    SelfMatchForbidden,
)
from tests.conftest import DESTINATION, NEAR, ORIGIN, RecordingConnection


async def _request(dispatcher, passenger_id, connection=None, distance_km=10.0):
    return await dispatcher.request_ride(
        passenger_id=passenger_id,
        origin_lat=ORIGIN[0],
        origin_lng=ORIGIN[1],
        dest_lat=DESTINATION[0],
        dest_lng=DESTINATION[1],
        distance_km=distance_km,
        connection=connection,
    )


class TestConcurrentAccept:
    @pytest.mark.asyncio
    async def test_two_drivers_exactly_one_wins(self, dispatcher, users):
        ride = await _request(dispatcher, users["passenger"])
        ride_id = ride["ride_id"]

        results = await asyncio.gather(
            dispatcher.accept_ride(ride_id, users["driver"]),
            dispatcher.accept_ride(ride_id, users["driver2"]),
            return_exceptions=True,
        )

        winners = [r for r in results if isinstance(r, dict)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], RideAlreadyTaken)

        stored = await dispatcher.get_ride(ride_id)
        assert stored["status"] == "accepted"
        assert stored["driver_id"] == winners[0]["driver_id"]

    @pytest.mark.asyncio
    async def test_many_concurrent_accepts(self, dispatcher, users):
        ride = await _request(dispatcher, users["passenger"])
        drivers = [users["driver"], users["driver2"], users["driver3"]] * 4

        results = await asyncio.gather(
            *(dispatcher.accept_ride(ride["ride_id"], d) for d in drivers),
            return_exceptions=True,
        )
        assert sum(isinstance(r, dict) for r in results) == 1
        assert all(
            isinstance(r, (dict, RideAlreadyTaken)) for r in results
        ), results

    @pytest.mark.asyncio
    async def test_accept_after_win_is_taken(self, dispatcher, users):
        ride = await _request(dispatcher, users["passenger"])
        await dispatcher.accept_ride(ride["ride_id"], users["driver"])

        with pytest.raises(RideAlreadyTaken):
            await dispatcher.accept_ride(ride["ride_id"], users["driver"])


class TestAcceptGuards:
    @pytest.mark.asyncio
    async def test_unknown_ride(self, dispatcher, users):
        with pytest.raises(RideNotFound):
            await dispatcher.accept_ride(9999, users["driver"])

    @pytest.mark.asyncio
    async def test_self_match_forbidden(self, dispatcher, users):
        ride = await _request(dispatcher, users["passenger"])
        with pytest.raises(SelfMatchForbidden):
            await dispatcher.accept_ride(ride["ride_id"], users["passenger"])

    @pytest.mark.asyncio
    async def test_non_driver_rejected(self, dispatcher, users):
        ride = await _request(dispatcher, users["passenger"])
        with pytest.raises(DriverNotFound):
            await dispatcher.accept_ride(ride["ride_id"], users["admin"])
        with pytest.raises(DriverNotFound):
            await dispatcher.accept_ride(ride["ride_id"], 9999)

    @pytest.mark.asyncio
    async def test_blocked_driver_rejected(self, dispatcher, users):
        ride = await _request(dispatcher, users["passenger"])
        with pytest.raises(AccountBlocked):
            await dispatcher.accept_ride(ride["ride_id"], users["blocked_driver"])
        assert (await dispatcher.get_ride(ride["ride_id"]))["status"] == "searching"

    @pytest.mark.asyncio
    async def test_taken_checked_before_self_match(self, dispatcher, users):
        ride = await _request(dispatcher, users["passenger"])
        await dispatcher.accept_ride(ride["ride_id"], users["driver"])
        with pytest.raises(RideAlreadyTaken):
            await dispatcher.accept_ride(ride["ride_id"], users["passenger"])


class TestMatchNotifications:
    @pytest.mark.asyncio
    async def test_winner_passenger_and_losers_notified(self, dispatcher, users):
        d1, d2 = RecordingConnection(), RecordingConnection()
        await dispatcher.join_as_driver(d1, users["driver"], *NEAR)
        await dispatcher.join_as_driver(d2, users["driver2"], *NEAR)
        passenger = RecordingConnection()
        await dispatcher.join_as_passenger(passenger, users["passenger"])

        ride = await _request(dispatcher, users["passenger"], connection=passenger)
        assert ride["drivers_notified"] == 2

        view = await dispatcher.accept_ride(ride["ride_id"], users["driver"])
        assert view["driver"]["vehicle_details"]["plate"] == "DK-1021-A"
        assert view["passenger"]["name"] == "Awa Diop"
        assert view["final_price"] == view["initial_price"]

        assert "ride_accepted" in d1.names()
        assert d2.names()[-1] == "ride_taken"
        assert "ride_accepted" in passenger.names()
        assert "match_found" in passenger.names()
        assert dispatcher.fanout.is_ride_member(ride["ride_id"], d1.handle_id)
        assert not dispatcher.fanout.is_ride_member(ride["ride_id"], d2.handle_id)

    @pytest.mark.asyncio
    async def test_match_survives_disconnected_subscribers(self, dispatcher, users):
        broken = RecordingConnection(fail=True)
        await dispatcher.join_as_driver(broken, users["driver"], *NEAR)
        ride = await _request(dispatcher, users["passenger"])

        view = await dispatcher.accept_ride(ride["ride_id"], users["driver"])
        assert view["status"] == "accepted"
