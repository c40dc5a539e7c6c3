"""Offer REST API routes.

The acting party is named explicitly in every request (authentication is
handled upstream). Domain errors are translated by ErrorHandlerMiddleware.

Routes:
    POST   /api/v1/offers                  — Buyer makes an offer
    GET    /api/v1/offers/{id}             — Offer details
    GET    /api/v1/offers/{id}/actions     — Events an actor may fire now
    GET    /api/v1/offers?buyer_id=|seller_id= — List offers for a party
    POST   /api/v1/offers/{id}/revise      — Buyer changes a pending offer's amount
    POST   /api/v1/offers/{id}/pay         — Buyer initiates payment
    POST   /api/v1/offers/{id}/confirm-payment — Processor confirmation / poll
    POST   /api/v1/offers/{id}/accept      — Seller accepts (creates the order)
    POST   /api/v1/offers/{id}/reject      — Seller rejects (refunds the buyer)
    POST   /api/v1/offers/{id}/cancel      — Buyer cancels
    POST   /api/v1/offers/expire           — Scheduled expiry sweep
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query

from marketplace_escrow.api.deps import get_offer_service
from marketplace_escrow.schemas.common import ActorRequest, ReasonRequest
from marketplace_escrow.schemas.offers import (
    CreateOfferRequest,
    ExpireSweepResponse,
    OfferActionsResponse,
    OfferResponse,
    ReviseOfferRequest,
)
from marketplace_escrow.services.offer_service import OfferService

router = APIRouter(prefix="/api/v1/offers", tags=["Offers"])


# ---------------------------------------------------------------------------
# Create & read
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=OfferResponse,
    status_code=201,
    summary="Make an offer on a listing",
)
async def create_offer(
    request: CreateOfferRequest,
    svc: OfferService = Depends(get_offer_service),
) -> OfferResponse:
    offer = await svc.create_offer(
        buyer_id=request.buyer_id,
        seller_id=request.seller_id,
        listing_id=request.listing_id,
        amount=request.amount,
        fee_tier=request.fee_tier,
        message=request.message,
        requirements=request.requirements,
        expected_delivery=request.expected_delivery,
        currency=request.currency,
        expires_at=request.expires_at,
        idempotency_key=request.idempotency_key,
    )
    return OfferResponse.model_validate(offer)


@router.get("", response_model=list[OfferResponse], summary="List offers for a buyer or seller")
async def list_offers(
    buyer_id: str | None = Query(default=None),
    seller_id: str | None = Query(default=None),
    svc: OfferService = Depends(get_offer_service),
) -> list[OfferResponse]:
    if (buyer_id is None) == (seller_id is None):
        raise HTTPException(status_code=400, detail="Pass exactly one of buyer_id or seller_id")
    offers = (
        await svc.list_for_buyer(buyer_id) if buyer_id else await svc.list_for_seller(seller_id)
    )
    return [OfferResponse.model_validate(o) for o in offers]


@router.get("/{offer_id}", response_model=OfferResponse, summary="Get offer details")
async def get_offer(
    offer_id: uuid.UUID,
    svc: OfferService = Depends(get_offer_service),
) -> OfferResponse:
    return OfferResponse.model_validate(await svc.get_offer(offer_id))


@router.get(
    "/{offer_id}/actions",
    response_model=OfferActionsResponse,
    summary="Events the actor may fire on this offer",
)
async def offer_actions(
    offer_id: uuid.UUID,
    actor: str = Query(..., min_length=1),
    svc: OfferService = Depends(get_offer_service),
) -> OfferActionsResponse:
    return OfferActionsResponse(**await svc.available_actions(offer_id, actor))


# ---------------------------------------------------------------------------
# Buyer actions
# ---------------------------------------------------------------------------


@router.post("/{offer_id}/revise", response_model=OfferResponse, summary="Revise a pending offer")
async def revise_offer(
    offer_id: uuid.UUID,
    request: ReviseOfferRequest,
    svc: OfferService = Depends(get_offer_service),
) -> OfferResponse:
    offer = await svc.revise_amount(offer_id, request.actor, request.amount)
    return OfferResponse.model_validate(offer)


@router.post("/{offer_id}/pay", response_model=OfferResponse, summary="Pay for an offer")
async def pay_offer(
    offer_id: uuid.UUID,
    request: ActorRequest,
    svc: OfferService = Depends(get_offer_service),
) -> OfferResponse:
    return OfferResponse.model_validate(await svc.pay_offer(offer_id, request.actor))


@router.post(
    "/{offer_id}/confirm-payment",
    response_model=OfferResponse,
    summary="Confirm payment against the processor's status",
)
async def confirm_offer_payment(
    offer_id: uuid.UUID,
    request: ActorRequest,
    svc: OfferService = Depends(get_offer_service),
) -> OfferResponse:
    return OfferResponse.model_validate(await svc.confirm_offer_payment(offer_id, request.actor))


@router.post("/{offer_id}/cancel", response_model=OfferResponse, summary="Cancel an offer")
async def cancel_offer(
    offer_id: uuid.UUID,
    request: ReasonRequest,
    svc: OfferService = Depends(get_offer_service),
) -> OfferResponse:
    offer = await svc.cancel_offer(offer_id, request.actor, request.reason)
    return OfferResponse.model_validate(offer)


# ---------------------------------------------------------------------------
# Seller actions
# ---------------------------------------------------------------------------


@router.post("/{offer_id}/accept", response_model=OfferResponse, summary="Accept a paid offer")
async def accept_offer(
    offer_id: uuid.UUID,
    request: ActorRequest,
    svc: OfferService = Depends(get_offer_service),
) -> OfferResponse:
    return OfferResponse.model_validate(await svc.accept_offer(offer_id, request.actor))


@router.post("/{offer_id}/reject", response_model=OfferResponse, summary="Reject a paid offer")
async def reject_offer(
    offer_id: uuid.UUID,
    request: ReasonRequest,
    svc: OfferService = Depends(get_offer_service),
) -> OfferResponse:
    offer = await svc.reject_offer(offer_id, request.actor, request.reason)
    return OfferResponse.model_validate(offer)


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


@router.post("/expire", response_model=ExpireSweepResponse, summary="Expire stale offers")
async def expire_offers(svc: OfferService = Depends(get_offer_service)) -> ExpireSweepResponse:
    expired = await svc.expire_stale_offers()
    return ExpireSweepResponse(expired=[o.id for o in expired])
