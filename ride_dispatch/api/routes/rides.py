"""
Ride endpoints
==============

POST  /api/v1/rides                   -- request a ride (201, candidates notified)
GET   /api/v1/rides/{ride_id}         -- enriched ride details
POST  /api/v1/rides/{ride_id}/accept  -- driver accepts (single winner)
POST  /api/v1/rides/{ride_id}/status  -- arrived marker / trip start
POST  /api/v1/rides/{ride_id}/complete -- finish and settle
PATCH /api/v1/rides/{ride_id}/cancel  -- cancel from any active status
POST  /api/v1/rides/{ride_id}/rating  -- passenger rating, once
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from ride_dispatch.api.dependencies import get_dispatcher
from ride_dispatch.api.middleware import limiter
from ride_dispatch.api.schemas import (
    AcceptRideRequest,
    CancelRideRequest,
    CompleteRideRequest,
    ErrorResponse,
    RatingRequest,
    RideCreatedResponse,
    RideCreateRequest,
    RideResponse,
    StatusUpdateRequest,
)
from ride_dispatch.config import settings
from ride_dispatch.services.dispatcher import RideDispatcher

router = APIRouter(prefix="/rides", tags=["rides"])

CONFLICT = {409: {"model": ErrorResponse}, 404: {"model": ErrorResponse}}


@router.post(
    "",
    status_code=201,
    response_model=RideCreatedResponse,
    summary="Request a ride",
    responses={201: {"description": "Ride created in `searching`; drivers notified."}},
)
@limiter.limit(settings.rate_limit)
async def create_ride(
    request: Request,
    body: RideCreateRequest,
    dispatcher: RideDispatcher = Depends(get_dispatcher),
):
    return await dispatcher.request_ride(**body.model_dump())


@router.get("/{ride_id}", response_model=RideResponse, summary="Get ride details")
@limiter.limit(settings.rate_limit)
async def get_ride(
    request: Request,
    ride_id: int,
    dispatcher: RideDispatcher = Depends(get_dispatcher),
):
    return await dispatcher.get_ride(ride_id)


@router.post(
    "/{ride_id}/accept",
    response_model=RideResponse,
    summary="Accept a ride",
    description=(
        "Exactly one concurrent caller wins; the others receive "
        "`RideAlreadyTaken` (409)."
    ),
    responses={**CONFLICT, 403: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit)
async def accept_ride(
    request: Request,
    ride_id: int,
    body: AcceptRideRequest,
    dispatcher: RideDispatcher = Depends(get_dispatcher),
):
    return await dispatcher.accept_ride(ride_id, body.driver_id)


@router.post(
    "/{ride_id}/status",
    response_model=RideResponse,
    summary="Mark arrival or start the trip",
    responses=CONFLICT,
)
@limiter.limit(settings.rate_limit)
async def update_status(
    request: Request,
    ride_id: int,
    body: StatusUpdateRequest,
    dispatcher: RideDispatcher = Depends(get_dispatcher),
):
    return await dispatcher.update_status(
        ride_id, body.actor_id, body.status, body.expected_status
    )


@router.post(
    "/{ride_id}/complete",
    response_model=RideResponse,
    summary="Complete a ride and settle payment",
    responses={**CONFLICT, 402: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit)
async def complete_ride(
    request: Request,
    ride_id: int,
    body: CompleteRideRequest,
    dispatcher: RideDispatcher = Depends(get_dispatcher),
):
    return await dispatcher.complete_ride(
        ride_id, body.driver_id, body.payment_method, body.actual_distance_km
    )


@router.patch(
    "/{ride_id}/cancel",
    response_model=RideResponse,
    summary="Cancel a ride",
    description=(
        "Transitions a `searching`, `accepted` or `ongoing` ride to "
        "`cancelled`.  Offered candidates of a searching ride are told the "
        "opportunity is gone."
    ),
    responses={**CONFLICT, 403: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit)
async def cancel_ride(
    request: Request,
    ride_id: int,
    body: CancelRideRequest,
    dispatcher: RideDispatcher = Depends(get_dispatcher),
):
    return await dispatcher.cancel_ride(ride_id, body.actor_id, body.reason)


@router.post(
    "/{ride_id}/rating",
    response_model=RideResponse,
    summary="Rate a completed ride",
    responses=CONFLICT,
)
@limiter.limit(settings.rate_limit)
async def rate_ride(
    request: Request,
    ride_id: int,
    body: RatingRequest,
    dispatcher: RideDispatcher = Depends(get_dispatcher),
):
    return await dispatcher.rate_ride(
        ride_id, body.passenger_id, body.rating, body.feedback
    )
