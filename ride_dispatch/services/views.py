"""Plain-dict payloads shared by the REST responses and socket events."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from ride_dispatch.infrastructure.models import (
    RideModel,
    RideProposalModel,
    UserModel,
    WalletTransactionModel,
)


def _value(v: Any) -> Any:
    return v.value if hasattr(v, "value") else v


def _ts(v: Optional[datetime]) -> Optional[str]:
    return v.isoformat() if v else None


def user_summary(user: Optional[UserModel]) -> Optional[dict]:
    if user is None:
        return None
    summary = {
        "id": user.id,
        "name": user.name,
        "phone": user.phone,
        "photo": user.photo,
        "rating": user.rating,
    }
    if _value(user.role) == "driver":
        summary["vehicle_details"] = user.vehicle_details or {}
    return summary


def ride_view(
    ride: RideModel,
    passenger: Optional[UserModel] = None,
    driver: Optional[UserModel] = None,
) -> dict:
    view = {
        "id": ride.id,
        "passenger_id": ride.passenger_id,
        "driver_id": ride.driver_id,
        "status": _value(ride.status),
        "ride_type": _value(ride.ride_type),
        "origin": {
            "lat": ride.origin_lat,
            "lng": ride.origin_lng,
            "name": ride.origin_name,
        },
        "destination": {
            "lat": ride.dest_lat,
            "lng": ride.dest_lng,
            "name": ride.dest_name,
        },
        "distance_km": ride.distance_km,
        "actual_distance_km": ride.actual_distance_km,
        "initial_price": ride.initial_price,
        "final_price": ride.final_price,
        "payment_method": _value(ride.payment_method),
        "payment_status": _value(ride.payment_status),
        "cancelled_by": _value(ride.cancelled_by),
        "cancellation_reason": ride.cancellation_reason,
        "rating": ride.rating,
        "feedback": ride.feedback,
        "created_at": _ts(ride.created_at),
        "accepted_at": _ts(ride.accepted_at),
        "arrived_at": _ts(ride.arrived_at),
        "started_at": _ts(ride.started_at),
        "completed_at": _ts(ride.completed_at),
        "cancelled_at": _ts(ride.cancelled_at),
    }
    if passenger is not None:
        view["passenger"] = user_summary(passenger)
    if driver is not None:
        view["driver"] = user_summary(driver)
    return view


def proposal_view(proposal: RideProposalModel) -> dict:
    return {
        "id": proposal.id,
        "ride_id": proposal.ride_id,
        "seq": proposal.seq,
        "proposer_role": _value(proposal.proposer_role),
        "proposer_id": proposal.proposer_id,
        "original_price": proposal.original_price,
        "proposed_price": proposal.proposed_price,
        "reason": proposal.reason,
        "status": _value(proposal.status),
        "proposed_at": _ts(proposal.proposed_at),
        "responded_at": _ts(proposal.responded_at),
        "response_reason": proposal.response_reason,
    }


def transaction_view(entry: WalletTransactionModel) -> dict:
    return {
        "reference": entry.reference,
        "user_id": entry.user_id,
        "ride_id": entry.ride_id,
        "amount": entry.amount,
        "type": entry.type,
        "method": _value(entry.method),
        "status": entry.status,
        "description": entry.description,
    }
