"""
Driver presence & user endpoints
================================

POST /api/v1/drivers/{driver_id}/location -- presence location ping
GET  /api/v1/drivers/{driver_id}/presence -- current presence record
GET  /api/v1/drivers/nearby               -- ranked candidates around a point
GET  /api/v1/users/{user_id}/rides        -- ride history (``?active=true``)
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from ride_dispatch.api.dependencies import get_dispatcher
from ride_dispatch.api.middleware import limiter
from ride_dispatch.api.schemas import (
    LocationUpdateRequest,
    NearbyDriver,
    PresenceResponse,
    RideResponse,
)
from ride_dispatch.config import settings
from ride_dispatch.services.dispatcher import RideDispatcher

router = APIRouter(tags=["drivers"])


@router.post(
    "/drivers/{driver_id}/location",
    response_model=PresenceResponse,
    summary="Report a driver location",
)
@limiter.limit(settings.rate_limit)
async def update_location(
    request: Request,
    driver_id: int,
    body: LocationUpdateRequest,
    dispatcher: RideDispatcher = Depends(get_dispatcher),
):
    return await dispatcher.update_location(
        driver_id,
        body.lat,
        body.lng,
        heading=body.heading,
        speed=body.speed,
        accuracy=body.accuracy,
    )


@router.get(
    "/drivers/nearby",
    response_model=list[NearbyDriver],
    summary="Eligible drivers around a point",
)
@limiter.limit(settings.rate_limit)
async def nearby_drivers(
    request: Request,
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius_km: Optional[float] = Query(None, gt=0, le=settings.max_search_radius_km),
    include_unknown_location: bool = False,
    dispatcher: RideDispatcher = Depends(get_dispatcher),
):
    return await dispatcher.nearby_drivers(
        lat, lng, radius_km, include_unknown_location
    )


@router.get(
    "/drivers/{driver_id}/presence",
    response_model=PresenceResponse,
    summary="Driver presence record",
)
@limiter.limit(settings.rate_limit)
async def driver_presence(
    request: Request,
    driver_id: int,
    dispatcher: RideDispatcher = Depends(get_dispatcher),
):
    return dispatcher.driver_presence(driver_id)


@router.get(
    "/users/{user_id}/rides",
    response_model=list[RideResponse],
    summary="Rides of a passenger or driver",
)
@limiter.limit(settings.rate_limit)
async def user_rides(
    request: Request,
    user_id: int,
    active: bool = False,
    dispatcher: RideDispatcher = Depends(get_dispatcher),
):
    return await dispatcher.list_user_rides(user_id, active_only=active)
