"""
WebSocket adapter  (``/ws``)
============================

Thin transport over ``RideDispatcher``; no ride logic lives here.

Frames
------
* client -> server  ``{"event": name, "data": {...}, "ref": any}``
* reply             ``{"type": "reply", "event", "ref", "ok": true, "data"}``
                    ``{"type": "reply", "event", "ref", "ok": false,
                      "error": {"code", "message"}}``
* broadcast         ``{"type": "event", "event", "data"}``

``update_location`` is fire-and-forget and never gets a reply.  Actor ids
default to the identity the connection joined with.  On disconnect the
connection leaves every channel and its presence goes through the grace
period.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Awaitable, Callable, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, ValidationError

from ride_dispatch.api.schemas import (
    CompleteRideRequest,
    LocationUpdateRequest,
    NearbyDriversRequest,
    ProposalReplyRequest,
    ProposalRequest,
    RatingRequest,
    RideCreateRequest,
    StatusUpdateRequest,
)
from ride_dispatch.domain.errors import DispatchError, ValidationFailed
from ride_dispatch.services.dispatcher import RideDispatcher

logger = logging.getLogger(__name__)

router = APIRouter()

NO_REPLY = frozenset({"update_location"})


class WebSocketConnection:
    """A live socket as seen by the fanout: a handle id plus ``send_event``."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.handle_id = uuid.uuid4().hex
        self.user_id: Optional[int] = None
        self._send_lock = asyncio.Lock()

    async def send_event(self, event: str, data: dict) -> None:
        await self._send({"type": "event", "event": event, "data": data})

    async def reply(
        self,
        event: Optional[str],
        ref: Any,
        data: Any = None,
        error: Optional[dict] = None,
    ) -> None:
        message = {"type": "reply", "event": event, "ref": ref, "ok": error is None}
        if error is None:
            message["data"] = data
        else:
            message["error"] = error
        await self._send(message)

    async def _send(self, message: dict) -> None:
        async with self._send_lock:
            await self.websocket.send_json(jsonable_encoder(message))


# ── Payload helpers ───────────────────────────────────────────────────


def _parse(model: type[BaseModel], data: dict) -> Any:
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ())) or "payload"
        raise ValidationFailed(f"{field}: {first.get('msg', 'invalid')}") from exc


def _int(data: dict, key: str, default: Optional[int] = None) -> int:
    value = data.get(key, default)
    if value is None:
        raise ValidationFailed(f"{key} is required")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationFailed(f"{key} must be an integer") from exc


def _actor(conn: WebSocketConnection, data: dict, key: str) -> dict:
    if data.get(key) is None and conn.user_id is not None:
        return {**data, key: conn.user_id}
    return data


# ── Event handlers ────────────────────────────────────────────────────

Handler = Callable[[RideDispatcher, WebSocketConnection, dict], Awaitable[Any]]


async def _join_as_driver(d: RideDispatcher, conn: WebSocketConnection, data: dict):
    driver_id = _int(data, "driver_id")
    result = await d.join_as_driver(
        conn,
        driver_id,
        data.get("lat"),
        data.get("lng"),
        heading=data.get("heading"),
        speed=data.get("speed"),
    )
    conn.user_id = driver_id
    return result


async def _join_as_passenger(d: RideDispatcher, conn: WebSocketConnection, data: dict):
    user_id = _int(data, "user_id", data.get("passenger_id"))
    result = await d.join_as_passenger(conn, user_id)
    conn.user_id = user_id
    return result


async def _update_location(d: RideDispatcher, conn: WebSocketConnection, data: dict):
    body = _parse(LocationUpdateRequest, data)
    return await d.update_location(
        _int(data, "driver_id", conn.user_id),
        body.lat,
        body.lng,
        heading=body.heading,
        speed=body.speed,
        accuracy=body.accuracy,
        ride_id=body.ride_id,
        connection=conn,
    )


async def _heartbeat(d: RideDispatcher, conn: WebSocketConnection, data: dict):
    return {"presence": await d.heartbeat(_int(data, "driver_id", conn.user_id))}


async def _get_nearby_drivers(d: RideDispatcher, conn: WebSocketConnection, data: dict):
    if data.get("radius_km") is None and data.get("radius") is not None:
        data = {**data, "radius_km": data["radius"]}
    body = _parse(NearbyDriversRequest, data)
    drivers = await d.nearby_drivers(
        body.lat, body.lng, body.radius_km, body.include_unknown_location
    )
    return {"drivers": drivers, "count": len(drivers)}


async def _request_ride(d: RideDispatcher, conn: WebSocketConnection, data: dict):
    body = _parse(RideCreateRequest, _actor(conn, data, "passenger_id"))
    result = await d.request_ride(**body.model_dump(), connection=conn)
    return {k: result[k] for k in ("ride_id", "price", "status", "drivers_notified")}


async def _accept_ride(d: RideDispatcher, conn: WebSocketConnection, data: dict):
    return await d.accept_ride(
        _int(data, "ride_id"), _int(data, "driver_id", conn.user_id)
    )


async def _update_status(d: RideDispatcher, conn: WebSocketConnection, data: dict):
    body = _parse(StatusUpdateRequest, _actor(conn, data, "actor_id"))
    return await d.update_status(
        _int(data, "ride_id"), body.actor_id, body.status, body.expected_status
    )


async def _complete_ride(d: RideDispatcher, conn: WebSocketConnection, data: dict):
    body = _parse(CompleteRideRequest, _actor(conn, data, "driver_id"))
    return await d.complete_ride(
        _int(data, "ride_id"),
        body.driver_id,
        body.payment_method,
        body.actual_distance_km,
    )


async def _cancel_ride(d: RideDispatcher, conn: WebSocketConnection, data: dict):
    return await d.cancel_ride(
        _int(data, "ride_id"),
        _int(data, "actor_id", conn.user_id),
        data.get("reason"),
    )


async def _propose_price(d: RideDispatcher, conn: WebSocketConnection, data: dict):
    body = _parse(ProposalRequest, _actor(conn, data, "actor_id"))
    return await d.propose_price(
        _int(data, "ride_id"), body.actor_id, body.price, body.reason
    )


async def _respond_to_proposal(
    d: RideDispatcher, conn: WebSocketConnection, data: dict
):
    body = _parse(ProposalReplyRequest, _actor(conn, data, "actor_id"))
    return await d.respond_to_proposal(
        _int(data, "ride_id"), body.actor_id, body.accept, body.reason
    )


async def _rate_ride(d: RideDispatcher, conn: WebSocketConnection, data: dict):
    body = _parse(RatingRequest, _actor(conn, data, "passenger_id"))
    return await d.rate_ride(
        _int(data, "ride_id"), body.passenger_id, body.rating, body.feedback
    )


async def _join_ride(d: RideDispatcher, conn: WebSocketConnection, data: dict):
    return await d.join_ride(conn, _int(data, "ride_id"))


async def _leave_ride(d: RideDispatcher, conn: WebSocketConnection, data: dict):
    return d.leave_ride(conn, _int(data, "ride_id"))


async def _send_message(d: RideDispatcher, conn: WebSocketConnection, data: dict):
    return await d.send_message(
        conn,
        _int(data, "ride_id"),
        _int(data, "sender_id", conn.user_id),
        str(data.get("text", "")),
    )


HANDLERS: dict[str, Handler] = {
    "join_as_driver": _join_as_driver,
    "join_as_passenger": _join_as_passenger,
    "update_location": _update_location,
    "heartbeat": _heartbeat,
    "get_nearby_drivers": _get_nearby_drivers,
    "request_ride": _request_ride,
    "accept_ride": _accept_ride,
    "update_status": _update_status,
    "complete_ride": _complete_ride,
    "cancel_ride": _cancel_ride,
    "propose_price": _propose_price,
    "respond_to_proposal": _respond_to_proposal,
    "rate_ride": _rate_ride,
    "join_ride": _join_ride,
    "leave_ride": _leave_ride,
    "send_message": _send_message,
}


# ── Dispatch loop ─────────────────────────────────────────────────────


async def handle_frame(
    dispatcher: RideDispatcher, conn: WebSocketConnection, raw: str
) -> None:
    try:
        message = json.loads(raw)
    except json.JSONDecodeError:
        await conn.reply(None, None, error=ValidationFailed("Malformed JSON").to_dict())
        return
    if not isinstance(message, dict):
        await conn.reply(None, None, error=ValidationFailed("Frame must be an object").to_dict())
        return

    event = message.get("event")
    ref = message.get("ref")
    data = message.get("data") or {}
    handler = HANDLERS.get(event)
    if handler is None or not isinstance(data, dict):
        await conn.reply(
            event, ref, error=ValidationFailed(f"Unknown event: {event}").to_dict()
        )
        return

    try:
        result = await handler(dispatcher, conn, data)
    except DispatchError as exc:
        if event in NO_REPLY:
            logger.warning("%s from %s rejected: %s", event, conn.handle_id, exc.message)
            return
        await conn.reply(event, ref, error=exc.to_dict())
        return
    except Exception:
        logger.exception("Unhandled error in socket event %s", event)
        if event not in NO_REPLY:
            await conn.reply(
                event,
                ref,
                error={"code": "InternalError", "message": "Internal server error"},
            )
        return

    if event not in NO_REPLY:
        await conn.reply(event, ref, data=result)


@router.websocket("/ws")
async def ride_socket(websocket: WebSocket):
    dispatcher: RideDispatcher = websocket.app.state.dispatcher
    await websocket.accept()
    conn = WebSocketConnection(websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            await handle_frame(dispatcher, conn, raw)
    except WebSocketDisconnect:
        logger.info("Socket %s disconnected", conn.handle_id)
    finally:
        await dispatcher.disconnect(conn)
