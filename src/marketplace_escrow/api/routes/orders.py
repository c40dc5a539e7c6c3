"""Order REST API routes.

The acting party is named explicitly in every request (authentication is
handled upstream). Domain errors are translated by ErrorHandlerMiddleware.

Routes:
    POST   /api/v1/orders                       — Direct purchase (authorizes payment)
    GET    /api/v1/orders/{id}                  — Order details
    GET    /api/v1/orders/{id}/actions          — Events an actor may fire now
    GET    /api/v1/orders/{id}/timeline         — Audit trail
    GET    /api/v1/orders/{id}/timeline/verify  — Replay the timeline against the order
    GET    /api/v1/orders?buyer_id=|seller_id=  — List orders for a party
    GET    /api/v1/orders/summary/buyer/{id}    — Buyer dashboard figures
    GET    /api/v1/orders/summary/seller/{id}   — Seller dashboard figures
    POST   /api/v1/orders/{id}/retry-authorization
    POST   /api/v1/orders/{id}/confirm-payment
    POST   /api/v1/orders/{id}/start-processing
    POST   /api/v1/orders/{id}/start-work
    POST   /api/v1/orders/{id}/deliver
    POST   /api/v1/orders/{id}/accept
    POST   /api/v1/orders/{id}/request-revision
    POST   /api/v1/orders/{id}/cancel
    POST   /api/v1/orders/{id}/dispute
    POST   /api/v1/orders/{id}/admin-cancel
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query

from marketplace_escrow.api.deps import get_order_service
from marketplace_escrow.schemas.common import ActorRequest, ReasonRequest
from marketplace_escrow.schemas.orders import (
    AdminCancelRequest,
    BuyerSummaryResponse,
    CreateOrderRequest,
    DeliverRequest,
    DisputeRequest,
    OrderActionsResponse,
    OrderResponse,
    RevisionRequest,
    SellerSummaryResponse,
    TimelineEventResponse,
    TimelineVerificationResponse,
)
from marketplace_escrow.services.order_service import OrderService

router = APIRouter(prefix="/api/v1/orders", tags=["Orders"])


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=OrderResponse,
    status_code=201,
    summary="Buy a listing directly",
)
async def create_order(
    request: CreateOrderRequest,
    svc: OrderService = Depends(get_order_service),
) -> OrderResponse:
    """Create the order and authorize payment.

    A declined authorization returns 402; the order is kept in
    pending_payment and can be retried.
    """
    order = await svc.create_order(
        buyer_id=request.buyer_id,
        seller_id=request.seller_id,
        listing_id=request.listing_id,
        amount=request.amount,
        fee_tier=request.fee_tier,
        currency=request.currency,
        requirements=request.requirements,
        expected_delivery=request.expected_delivery,
        max_revisions=request.max_revisions,
        payout_destination=request.payout_destination,
        idempotency_key=request.idempotency_key,
    )
    return OrderResponse.model_validate(order)


# ---------------------------------------------------------------------------
# Read
# ---------------------------------------------------------------------------


@router.get("", response_model=list[OrderResponse], summary="List orders for a buyer or seller")
async def list_orders(
    buyer_id: str | None = Query(default=None),
    seller_id: str | None = Query(default=None),
    svc: OrderService = Depends(get_order_service),
) -> list[OrderResponse]:
    if (buyer_id is None) == (seller_id is None):
        raise HTTPException(status_code=400, detail="Pass exactly one of buyer_id or seller_id")
    orders = (
        await svc.list_for_buyer(buyer_id) if buyer_id else await svc.list_for_seller(seller_id)
    )
    return [OrderResponse.model_validate(o) for o in orders]


@router.get(
    "/summary/buyer/{buyer_id}",
    response_model=BuyerSummaryResponse,
    summary="Buyer order counts and spend",
)
async def buyer_summary(
    buyer_id: str,
    svc: OrderService = Depends(get_order_service),
) -> BuyerSummaryResponse:
    return BuyerSummaryResponse(**await svc.buyer_summary(buyer_id))


@router.get(
    "/summary/seller/{seller_id}",
    response_model=SellerSummaryResponse,
    summary="Seller order counts and earnings",
)
async def seller_summary(
    seller_id: str,
    svc: OrderService = Depends(get_order_service),
) -> SellerSummaryResponse:
    return SellerSummaryResponse(**await svc.seller_summary(seller_id))


@router.get("/{order_id}", response_model=OrderResponse, summary="Get order details")
async def get_order(
    order_id: uuid.UUID,
    svc: OrderService = Depends(get_order_service),
) -> OrderResponse:
    return OrderResponse.model_validate(await svc.get_order(order_id))


@router.get(
    "/{order_id}/actions",
    response_model=OrderActionsResponse,
    summary="Events the actor may fire on this order",
)
async def order_actions(
    order_id: uuid.UUID,
    actor: str = Query(..., min_length=1),
    svc: OrderService = Depends(get_order_service),
) -> OrderActionsResponse:
    return OrderActionsResponse(**await svc.available_actions(order_id, actor))


@router.get(
    "/{order_id}/timeline",
    response_model=list[TimelineEventResponse],
    summary="Get the order's timeline",
)
async def get_timeline(
    order_id: uuid.UUID,
    svc: OrderService = Depends(get_order_service),
) -> list[TimelineEventResponse]:
    events = await svc.get_timeline(order_id)
    return [TimelineEventResponse.model_validate(e) for e in events]


@router.get(
    "/{order_id}/timeline/verify",
    response_model=TimelineVerificationResponse,
    summary="Replay the timeline and compare it with the order",
)
async def verify_timeline(
    order_id: uuid.UUID,
    svc: OrderService = Depends(get_order_service),
) -> TimelineVerificationResponse:
    projection = await svc.verify_timeline(order_id)
    return TimelineVerificationResponse(
        order_id=order_id,
        consistent=True,
        status=projection.status.value,
        revisions=projection.revisions,
        payment_released=projection.payment_released,
        captured=projection.captured,
        transferred=projection.transferred,
        refunded=projection.refunded,
    )


# ---------------------------------------------------------------------------
# Payment
# ---------------------------------------------------------------------------


@router.post("/{order_id}/retry-authorization", response_model=OrderResponse)
async def retry_authorization(
    order_id: uuid.UUID,
    request: ActorRequest,
    svc: OrderService = Depends(get_order_service),
) -> OrderResponse:
    return OrderResponse.model_validate(await svc.retry_authorization(order_id, request.actor))


@router.post("/{order_id}/confirm-payment", response_model=OrderResponse)
async def confirm_payment(
    order_id: uuid.UUID,
    request: ActorRequest,
    svc: OrderService = Depends(get_order_service),
) -> OrderResponse:
    return OrderResponse.model_validate(await svc.confirm_payment(order_id, request.actor))


# ---------------------------------------------------------------------------
# Work
# ---------------------------------------------------------------------------


@router.post("/{order_id}/start-processing", response_model=OrderResponse)
async def start_processing(
    order_id: uuid.UUID,
    request: ActorRequest,
    svc: OrderService = Depends(get_order_service),
) -> OrderResponse:
    return OrderResponse.model_validate(await svc.start_processing(order_id, request.actor))


@router.post("/{order_id}/start-work", response_model=OrderResponse)
async def start_work(
    order_id: uuid.UUID,
    request: ActorRequest,
    svc: OrderService = Depends(get_order_service),
) -> OrderResponse:
    return OrderResponse.model_validate(await svc.start_work(order_id, request.actor))


@router.post("/{order_id}/deliver", response_model=OrderResponse)
async def deliver(
    order_id: uuid.UUID,
    request: DeliverRequest,
    svc: OrderService = Depends(get_order_service),
) -> OrderResponse:
    order = await svc.deliver(order_id, request.actor, request.message, request.files)
    return OrderResponse.model_validate(order)


# ---------------------------------------------------------------------------
# Buyer review
# ---------------------------------------------------------------------------


@router.post("/{order_id}/accept", response_model=OrderResponse)
async def accept_delivery(
    order_id: uuid.UUID,
    request: ActorRequest,
    svc: OrderService = Depends(get_order_service),
) -> OrderResponse:
    return OrderResponse.model_validate(await svc.accept_delivery(order_id, request.actor))


@router.post("/{order_id}/request-revision", response_model=OrderResponse)
async def request_revision(
    order_id: uuid.UUID,
    request: RevisionRequest,
    svc: OrderService = Depends(get_order_service),
) -> OrderResponse:
    order = await svc.request_revision(order_id, request.actor, request.notes)
    return OrderResponse.model_validate(order)


# ---------------------------------------------------------------------------
# Cancellation & disputes
# ---------------------------------------------------------------------------


@router.post("/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: uuid.UUID,
    request: ReasonRequest,
    svc: OrderService = Depends(get_order_service),
) -> OrderResponse:
    order = await svc.cancel_order(order_id, request.actor, request.reason)
    return OrderResponse.model_validate(order)


@router.post("/{order_id}/dispute", response_model=OrderResponse)
async def open_dispute(
    order_id: uuid.UUID,
    request: DisputeRequest,
    svc: OrderService = Depends(get_order_service),
) -> OrderResponse:
    order = await svc.open_dispute(order_id, request.actor, request.reason)
    return OrderResponse.model_validate(order)


@router.post("/{order_id}/admin-cancel", response_model=OrderResponse)
async def admin_cancel(
    order_id: uuid.UUID,
    request: AdminCancelRequest,
    svc: OrderService = Depends(get_order_service),
) -> OrderResponse:
    return OrderResponse.model_validate(await svc.admin_cancel(order_id, request.reason))
