"""
Negotiation endpoints
=====================

POST /api/v1/rides/{ride_id}/negotiation/proposals -- propose a price
POST /api/v1/rides/{ride_id}/negotiation/response  -- accept / reject the pending one
GET  /api/v1/rides/{ride_id}/negotiation           -- full proposal history
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from ride_dispatch.api.dependencies import get_dispatcher
from ride_dispatch.api.middleware import limiter
from ride_dispatch.api.schemas import (
    ProposalReplyRequest,
    ProposalRequest,
    ProposalResponse,
)
from ride_dispatch.config import settings
from ride_dispatch.services.dispatcher import RideDispatcher

router = APIRouter(prefix="/rides/{ride_id}/negotiation", tags=["negotiation"])


@router.post(
    "/proposals",
    status_code=201,
    response_model=ProposalResponse,
    summary="Propose a new price",
)
@limiter.limit(settings.rate_limit)
async def propose_price(
    request: Request,
    ride_id: int,
    body: ProposalRequest,
    dispatcher: RideDispatcher = Depends(get_dispatcher),
):
    return await dispatcher.propose_price(
        ride_id, body.actor_id, body.price, body.reason
    )


@router.post(
    "/response",
    response_model=ProposalResponse,
    summary="Respond to the pending proposal",
)
@limiter.limit(settings.rate_limit)
async def respond_to_proposal(
    request: Request,
    ride_id: int,
    body: ProposalReplyRequest,
    dispatcher: RideDispatcher = Depends(get_dispatcher),
):
    return await dispatcher.respond_to_proposal(
        ride_id, body.actor_id, body.accept, body.reason
    )


@router.get("", response_model=list[ProposalResponse], summary="Proposal history")
@limiter.limit(settings.rate_limit)
async def proposal_history(
    request: Request,
    ride_id: int,
    actor_id: int = Query(..., description="Participant or admin asking."),
    dispatcher: RideDispatcher = Depends(get_dispatcher),
):
    return await dispatcher.proposal_history(ride_id, actor_id)
