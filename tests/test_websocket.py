"""
WebSocket adapter tests (``/ws``).

Uses Starlette's ``TestClient`` so the lifespan runs and several sockets
share one event loop.  The database is a SQLite file seeded up front.
"""

from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient

from ride_dispatch.api.app import create_app
from ride_dispatch.config import Settings
from ride_dispatch.domain.enums import ActorRole
from ride_dispatch.infrastructure.database import (
    build_engine,
    build_session_factory,
    create_schema,
)
from ride_dispatch.infrastructure.models import UserModel
from tests.conftest import DESTINATION, NEAR, ORIGIN


def _seed(database_url: str) -> dict[str, int]:
    async def run() -> dict[str, int]:
        engine = build_engine(database_url)
        await create_schema(engine)
        rows = {
            "passenger": UserModel(
                name="Awa Diop", phone="+221700000001", role=ActorRole.PASSENGER, balance=10000
            ),
            "driver": UserModel(name="Ousmane Sy", phone="+221710000001", role=ActorRole.DRIVER),
            "driver2": UserModel(name="Mamadou Kane", phone="+221710000002", role=ActorRole.DRIVER),
        }
        async with build_session_factory(engine)() as session:
            session.add_all(rows.values())
            await session.commit()
            ids = {key: user.id for key, user in rows.items()}
        await engine.dispose()
        return ids

    return asyncio.run(run())


@pytest.fixture
def ws_users(database_url) -> dict[str, int]:
    return _seed(database_url)


@pytest.fixture
def client(database_url, ws_users):
    app = create_app(
        Settings(
            database_url=database_url,
            create_schema_on_startup=False,
            ride_lock_backend="local",
            disconnect_grace_seconds=30,
            run_presence_monitor=False,
            rate_limit_enabled=False,
        )
    )
    with TestClient(app) as test_client:
        yield test_client


# ── Helpers ───────────────────────────────────────────────────────────


def receive_until(ws, predicate, limit: int = 20) -> dict:
    for _ in range(limit):
        frame = ws.receive_json()
        if predicate(frame):
            return frame
    raise AssertionError("expected frame never arrived")


def call(ws, event: str, data: dict | None = None, ref: int = 1) -> dict:
    ws.send_json({"event": event, "data": data or {}, "ref": ref})
    return receive_until(ws, lambda f: f["type"] == "reply" and f["ref"] == ref)


def event_named(name: str):
    return lambda f: f["type"] == "event" and f["event"] == name


def _ride_data() -> dict:
    return {
        "origin_lat": ORIGIN[0],
        "origin_lng": ORIGIN[1],
        "dest_lat": DESTINATION[0],
        "dest_lng": DESTINATION[1],
        "distance_km": 10,
    }


# ── Framing ───────────────────────────────────────────────────────────


class TestFraming:
    def test_malformed_json(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_text("{not json")
            frame = ws.receive_json()
        assert frame["type"] == "reply"
        assert frame["event"] is None
        assert frame["ok"] is False
        assert frame["error"]["code"] == "ValidationFailed"

    def test_unknown_event(self, client):
        with client.websocket_connect("/ws") as ws:
            reply = call(ws, "teleport", ref="abc")
        assert reply["ref"] == "abc"
        assert reply["event"] == "teleport"
        assert reply["error"]["code"] == "ValidationFailed"

    def test_domain_error_envelope(self, client, ws_users):
        with client.websocket_connect("/ws") as ws:
            call(ws, "join_as_driver", {"driver_id": ws_users["driver"]})
            reply = call(ws, "accept_ride", {"ride_id": 9999}, ref=2)
        assert reply["ok"] is False
        assert reply["error"] == {"code": "RideNotFound", "message": "Ride not found"}

    def test_update_location_gets_no_reply(self, client, ws_users):
        with client.websocket_connect("/ws") as ws:
            call(ws, "join_as_driver", {"driver_id": ws_users["driver"]})
            ws.send_json(
                {"event": "update_location", "data": {"lat": NEAR[0], "lng": NEAR[1]}, "ref": 2}
            )
            ws.send_json({"event": "heartbeat", "data": {}, "ref": 3})
            frame = ws.receive_json()
        # the very next frame answers the heartbeat
        assert frame["type"] == "reply"
        assert frame["ref"] == 3
        assert frame["data"]["presence"]["lat"] == NEAR[0]


# ── Presence ──────────────────────────────────────────────────────────


class TestPresence:
    def test_join_and_disconnect(self, client, ws_users):
        driver_id = ws_users["driver"]
        with client.websocket_connect("/ws") as ws:
            reply = call(ws, "join_as_driver", {"driver_id": driver_id, "lat": NEAR[0], "lng": NEAR[1]})
            assert reply["ok"] is True
            assert reply["data"]["presence"]["status"] == "online"

            presence = client.get(f"/api/v1/drivers/{driver_id}/presence").json()
            assert presence["online"] is True
            assert presence["reachable"] is True

        presence = client.get(f"/api/v1/drivers/{driver_id}/presence").json()
        assert presence["online"] is False
        # still inside the grace period
        assert presence["reachable"] is True

    def test_join_unknown_driver(self, client, ws_users):
        with client.websocket_connect("/ws") as ws:
            reply = call(ws, "join_as_driver", {"driver_id": ws_users["passenger"]})
        assert reply["error"]["code"] == "DriverNotFound"

    def test_online_count_broadcast(self, client, ws_users):
        with client.websocket_connect("/ws") as passenger, client.websocket_connect(
            "/ws"
        ) as driver:
            call(passenger, "join_as_passenger", {"user_id": ws_users["passenger"]})
            call(driver, "join_as_driver", {"driver_id": ws_users["driver"], "lat": NEAR[0], "lng": NEAR[1]})

            update = receive_until(passenger, event_named("drivers_online_update"))
            assert update["data"]["count"] == 1
            assert update["data"]["stats"]["reachable"] == 1
            count = receive_until(passenger, event_named("drivers_online_count"))
            assert count["data"]["count"] == 1

    def test_get_nearby_drivers(self, client, ws_users):
        with client.websocket_connect("/ws") as driver, client.websocket_connect(
            "/ws"
        ) as passenger:
            call(driver, "join_as_driver", {"driver_id": ws_users["driver"], "lat": NEAR[0], "lng": NEAR[1]})
            call(passenger, "join_as_passenger", {"user_id": ws_users["passenger"]})

            origin = {"lat": ORIGIN[0], "lng": ORIGIN[1]}
            reply = call(passenger, "get_nearby_drivers", {**origin, "radius": 5}, ref=2)
            assert reply["ok"] is True
            assert reply["data"]["count"] == 1
            assert reply["data"]["drivers"][0]["driver_id"] == ws_users["driver"]
            assert reply["data"]["drivers"][0]["distance_km"] == pytest.approx(0.9, abs=0.2)

            too_wide = call(passenger, "get_nearby_drivers", {**origin, "radius_km": 5000}, ref=3)
            assert too_wide["error"]["code"] == "ValidationFailed"
            missing = call(passenger, "get_nearby_drivers", {"lat": ORIGIN[0]}, ref=4)
            assert missing["error"]["code"] == "ValidationFailed"


# ── Ride flow ─────────────────────────────────────────────────────────


class TestRideFlow:
    def test_request_offer_accept(self, client, ws_users):
        with client.websocket_connect("/ws") as driver, client.websocket_connect(
            "/ws"
        ) as loser, client.websocket_connect("/ws") as passenger:
            call(driver, "join_as_driver", {"driver_id": ws_users["driver"], "lat": NEAR[0], "lng": NEAR[1]})
            call(loser, "join_as_driver", {"driver_id": ws_users["driver2"], "lat": NEAR[0], "lng": NEAR[1]})
            call(passenger, "join_as_passenger", {"user_id": ws_users["passenger"]})

            passenger.send_json({"event": "request_ride", "data": _ride_data(), "ref": 10})
            requested = receive_until(passenger, event_named("ride_requested"))
            reply = receive_until(passenger, lambda f: f["type"] == "reply")
            assert reply["data"]["price"] == 3600
            assert reply["data"]["drivers_notified"] == 2
            assert requested["data"]["id"] == reply["data"]["ride_id"]
            ride_id = reply["data"]["ride_id"]

            offer = receive_until(driver, event_named("ride_opportunity"))
            assert offer["data"]["id"] == ride_id
            assert offer["data"]["distance_to_pickup"] == pytest.approx(0.9, abs=0.2)
            assert "timestamp" in offer["data"]
            receive_until(loser, event_named("ride_opportunity"))

            # actor id defaults to the identity the socket joined with
            accepted = call(driver, "accept_ride", {"ride_id": ride_id}, ref=11)
            assert accepted["ok"] is True
            assert accepted["data"]["driver_id"] == ws_users["driver"]

            assert receive_until(passenger, event_named("ride_accepted"))["data"]["id"] == ride_id
            receive_until(passenger, event_named("match_found"))
            taken = receive_until(loser, event_named("ride_taken"))
            assert taken["data"]["ride_id"] == ride_id

            late = call(loser, "accept_ride", {"ride_id": ride_id}, ref=12)
            assert late["error"]["code"] == "RideAlreadyTaken"

    def test_chat_and_location_relay(self, client, ws_users):
        with client.websocket_connect("/ws") as driver, client.websocket_connect(
            "/ws"
        ) as passenger:
            call(driver, "join_as_driver", {"driver_id": ws_users["driver"], "lat": NEAR[0], "lng": NEAR[1]})
            call(passenger, "join_as_passenger", {"user_id": ws_users["passenger"]})
            ride_id = call(passenger, "request_ride", _ride_data(), ref=2)["data"]["ride_id"]
            call(driver, "accept_ride", {"ride_id": ride_id}, ref=3)

            sent = call(driver, "send_message", {"ride_id": ride_id, "text": "Two minutes away"}, ref=4)
            assert sent["data"]["delivered"] == 1
            message = receive_until(passenger, event_named("receive_message"))
            assert message["data"]["text"] == "Two minutes away"
            assert message["data"]["sender_id"] == ws_users["driver"]

            driver.send_json(
                {
                    "event": "update_location",
                    "data": {"lat": ORIGIN[0], "lng": ORIGIN[1], "ride_id": ride_id},
                }
            )
            moved = receive_until(passenger, event_named("driver_location_update"))
            assert moved["data"]["lat"] == ORIGIN[0]

    def test_full_trip_with_negotiation(self, client, ws_users):
        with client.websocket_connect("/ws") as driver, client.websocket_connect(
            "/ws"
        ) as passenger:
            call(driver, "join_as_driver", {"driver_id": ws_users["driver"], "lat": NEAR[0], "lng": NEAR[1]})
            call(passenger, "join_as_passenger", {"user_id": ws_users["passenger"]})
            ride_id = call(passenger, "request_ride", _ride_data(), ref=2)["data"]["ride_id"]
            call(driver, "accept_ride", {"ride_id": ride_id}, ref=3)

            proposal = call(passenger, "propose_price", {"ride_id": ride_id, "price": 3000}, ref=4)
            assert proposal["data"]["status"] == "pending"
            receive_until(driver, event_named("price_proposal"))
            answer = call(driver, "respond_to_proposal", {"ride_id": ride_id, "accept": True}, ref=5)
            assert answer["data"]["final_price"] == 3000

            assert call(driver, "update_status", {"ride_id": ride_id, "status": "arrived"}, ref=6)["ok"]
            receive_until(passenger, event_named("driver_arrived"))
            assert call(driver, "update_status", {"ride_id": ride_id, "status": "ongoing"}, ref=7)["ok"]
            receive_until(passenger, event_named("trip_started"))

            done = call(driver, "complete_ride", {"ride_id": ride_id, "payment_method": "wallet"}, ref=8)
            assert done["data"]["status"] == "completed"
            assert done["data"]["final_price"] == 3000
            receive_until(passenger, event_named("ride_completed"))

            rated = call(passenger, "rate_ride", {"ride_id": ride_id, "rating": 4}, ref=9)
            assert rated["data"]["rating"] == 4
