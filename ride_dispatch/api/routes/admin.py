"""
Admin / observability endpoints
===============================

GET /api/v1/admin/health   -- database round trip + ride counts per status
GET /api/v1/admin/presence -- registry stats and the online drivers
GET /api/v1/admin/tariffs  -- current tariff table
PUT /api/v1/admin/tariffs  -- replace the tariff table (applies to the next quote)
GET /api/v1/admin/quote    -- price for a ride type and distance
"""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ride_dispatch.api.dependencies import get_db, get_dispatcher
from ride_dispatch.api.middleware import limiter
from ride_dispatch.api.schemas import (
    HealthResponse,
    PresenceOverview,
    QuoteResponse,
    TariffTableRequest,
)
from ride_dispatch.config import settings
from ride_dispatch.domain.enums import RideType
from ride_dispatch.infrastructure.repositories import RideRepository
from ride_dispatch.services.dispatcher import RideDispatcher

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health(db: AsyncSession = Depends(get_db)):
    await db.execute(text("SELECT 1"))
    return HealthResponse(rides=await RideRepository(db).count_by_status())


@router.get(
    "/presence",
    response_model=PresenceOverview,
    summary="Presence registry overview",
)
@limiter.limit(settings.rate_limit)
async def presence_overview(
    request: Request,
    dispatcher: RideDispatcher = Depends(get_dispatcher),
):
    return dispatcher.presence_overview()


@router.get("/tariffs", summary="Current tariff table")
@limiter.limit(settings.rate_limit)
async def get_tariffs(
    request: Request,
    dispatcher: RideDispatcher = Depends(get_dispatcher),
):
    return await dispatcher.get_tariffs()


@router.put("/tariffs", summary="Replace the tariff table")
@limiter.limit(settings.rate_limit)
async def put_tariffs(
    request: Request,
    body: TariffTableRequest,
    dispatcher: RideDispatcher = Depends(get_dispatcher),
):
    return await dispatcher.put_tariffs(body.model_dump(mode="json"))


@router.get("/quote", response_model=QuoteResponse, summary="Quote a fare")
@limiter.limit(settings.rate_limit)
async def quote(
    request: Request,
    ride_type: RideType = RideType.STANDARD,
    distance_km: float = Query(..., ge=0),
    dispatcher: RideDispatcher = Depends(get_dispatcher),
):
    return await dispatcher.quote(ride_type, distance_km)
