"""Pydantic request / response schemas shared by REST and the socket adapter."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from ride_dispatch.domain.enums import (
    PaymentMethod,
    RideStatus,
    RideType,
    StatusMarker,
)


# ── Requests ──────────────────────────────────────────────────────────


class RideCreateRequest(BaseModel):
    passenger_id: int
    origin_lat: float = Field(..., ge=-90, le=90)
    origin_lng: float = Field(..., ge=-180, le=180)
    dest_lat: float = Field(..., ge=-90, le=90)
    dest_lng: float = Field(..., ge=-180, le=180)
    origin_name: Optional[str] = Field(None, max_length=255)
    dest_name: Optional[str] = Field(None, max_length=255)
    ride_type: RideType = RideType.STANDARD
    distance_km: float = Field(..., ge=0, description="Client route estimate.")


class AcceptRideRequest(BaseModel):
    driver_id: int


class StatusUpdateRequest(BaseModel):
    actor_id: int
    status: StatusMarker
    expected_status: Optional[RideStatus] = Field(
        None,
        description="Fail with StaleState unless the ride is still in this status.",
    )


class CompleteRideRequest(BaseModel):
    driver_id: int
    payment_method: PaymentMethod = PaymentMethod.CASH
    actual_distance_km: Optional[float] = Field(None, ge=0)


class CancelRideRequest(BaseModel):
    actor_id: int
    reason: Optional[str] = Field(None, max_length=500)


class RatingRequest(BaseModel):
    passenger_id: int
    rating: int = Field(..., ge=1, le=5)
    feedback: Optional[str] = Field(None, max_length=1000)


class ProposalRequest(BaseModel):
    actor_id: int
    price: float = Field(..., gt=0)
    reason: Optional[str] = Field(None, max_length=500)


class ProposalReplyRequest(BaseModel):
    actor_id: int
    accept: bool
    reason: Optional[str] = Field(None, max_length=500)


class LocationUpdateRequest(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    heading: Optional[float] = None
    speed: Optional[float] = Field(None, ge=0)
    accuracy: Optional[float] = Field(None, ge=0)
    ride_id: Optional[int] = None


class NearbyDriversRequest(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    radius_km: Optional[float] = Field(None, gt=0)
    include_unknown_location: bool = False


class TariffEntry(BaseModel):
    base: float = Field(..., ge=0)
    per_km: float = Field(..., ge=0)


class TariffTableRequest(BaseModel):
    tariffs: dict[RideType, TariffEntry]
    rounding: float = Field(50, gt=0)
    minimum_fare: float = Field(500, ge=0)


# ── Responses ─────────────────────────────────────────────────────────


class PlaceView(BaseModel):
    lat: float
    lng: float
    name: Optional[str] = None


class PartyView(BaseModel):
    id: int
    name: str
    phone: Optional[str] = None
    photo: Optional[str] = None
    rating: Optional[float] = None
    vehicle_details: Optional[dict[str, Any]] = None


class TransactionView(BaseModel):
    reference: str
    user_id: int
    ride_id: Optional[int] = None
    amount: float
    type: str
    method: str
    status: str
    description: Optional[str] = None


class RideResponse(BaseModel):
    id: int
    passenger_id: int
    driver_id: Optional[int] = None
    status: RideStatus
    ride_type: RideType
    origin: PlaceView
    destination: PlaceView
    distance_km: float
    actual_distance_km: Optional[float] = None
    initial_price: float
    final_price: float
    payment_method: Optional[PaymentMethod] = None
    payment_status: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    rating: Optional[int] = None
    feedback: Optional[str] = None
    created_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    passenger: Optional[PartyView] = None
    driver: Optional[PartyView] = None
    transactions: Optional[list[TransactionView]] = None


class RideCreatedResponse(BaseModel):
    ride_id: int
    price: float
    status: RideStatus
    drivers_notified: int


class ProposalResponse(BaseModel):
    id: int
    ride_id: int
    seq: int
    proposer_role: str
    proposer_id: int
    original_price: float
    proposed_price: float
    reason: Optional[str] = None
    status: str
    proposed_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    response_reason: Optional[str] = None
    final_price: Optional[float] = None


class PresenceResponse(BaseModel):
    driver_id: int
    lat: float
    lng: float
    heading: float
    speed: float
    accuracy: float
    status: str
    reachable: bool
    last_update: datetime
    online: Optional[bool] = None
    fresh: Optional[bool] = None


class NearbyDriver(BaseModel):
    driver_id: int
    distance_km: Optional[float] = None


class PresenceOverview(BaseModel):
    stats: dict[str, int]
    online: list[PresenceResponse]


class QuoteResponse(BaseModel):
    ride_type: RideType
    distance_km: float
    price: int


class HealthResponse(BaseModel):
    status: str = "ok"
    database: str = "ok"
    rides: dict[str, int] = {}


class ErrorBody(BaseModel):
    code: str
    message: str


class ErrorResponse(BaseModel):
    error: ErrorBody
