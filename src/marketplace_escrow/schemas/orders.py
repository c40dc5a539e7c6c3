"""Pydantic schemas for the Order API.

Amounts are integers in minor currency units (cents) on the wire; the
platform fee and seller amount always sum to the order amount.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from marketplace_escrow.domain.enums import FeeTier
from marketplace_escrow.schemas.common import ActorRequest, AllowedActionsResponse

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CreateOrderRequest(BaseModel):
    """Request body for a direct purchase of a listing."""

    buyer_id: str = Field(..., min_length=1, max_length=64, examples=["user_buyer_1"])
    seller_id: str = Field(..., min_length=1, max_length=64, examples=["user_seller_1"])
    listing_id: str = Field(..., min_length=1, max_length=64, examples=["listing_42"])
    amount: int = Field(
        ...,
        gt=0,
        description="Listing price in minor units (cents)",
        examples=[10000],
    )
    fee_tier: FeeTier = FeeTier.STANDARD
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    requirements: str = Field(default="", max_length=5000)
    expected_delivery: datetime | None = None
    max_revisions: int | None = Field(default=None, ge=0, le=20)
    payout_destination: str | None = Field(
        default=None,
        max_length=128,
        description="Processor account receiving the seller's share; defaults to seller_id",
    )
    idempotency_key: str | None = Field(
        default=None,
        max_length=128,
        description="Optional idempotency key to prevent duplicate order creation",
    )


class DeliverRequest(ActorRequest):
    """Request body for a seller delivering (or redelivering) work."""

    message: str = Field(..., max_length=10_000, description="Delivery message (required)")
    files: list[str] = Field(
        default_factory=list,
        description="References to delivered files (upload happens elsewhere)",
    )


class RevisionRequest(ActorRequest):
    """Request body for a buyer sending a delivery back."""

    notes: str = Field(default="", max_length=5000)


class DisputeRequest(ActorRequest):
    """Request body for opening a dispute."""

    reason: str = Field(..., min_length=1, max_length=2000)


class AdminCancelRequest(BaseModel):
    """Request body for an administrative cancel after dispute resolution."""

    reason: str = Field(..., min_length=1, max_length=2000)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class OrderResponse(BaseModel):
    """Response schema for an order."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    buyer_id: str
    seller_id: str
    listing_id: str
    offer_id: uuid.UUID | None
    order_type: str
    amount: int
    platform_fee: int
    seller_amount: int
    currency: str
    fee_tier: str
    status: str
    revisions: int
    max_revisions: int
    revisions_left: int
    revision_notes: str | None
    requirements: str
    delivery_message: str | None
    delivery_files: list[str] | None
    expected_delivery: datetime | None
    payment_intent_ref: str | None
    payment_released: bool
    transfer_ref: str | None
    cancellation_reason: str | None
    dispute_reason: str | None
    created_at: datetime
    paid_at: datetime | None
    delivered_at: datetime | None
    completed_at: datetime | None
    cancelled_at: datetime | None
    disputed_at: datetime | None
    updated_at: datetime


class TimelineEventResponse(BaseModel):
    """Response schema for one timeline event."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    order_id: uuid.UUID
    sequence: int
    event_type: str
    old_status: str | None
    new_status: str
    performed_by: str
    event_data: dict | None
    created_at: datetime


class TimelineVerificationResponse(BaseModel):
    """Result of replaying an order's timeline against the stored order."""

    order_id: uuid.UUID
    consistent: bool
    status: str
    revisions: int
    payment_released: bool
    captured: bool
    transferred: bool
    refunded: bool


class OrderActionsResponse(AllowedActionsResponse):
    order_id: uuid.UUID
    revisions: int
    max_revisions: int
    revisions_left: int


class BuyerSummaryResponse(BaseModel):
    buyer_id: str
    total_orders: int
    by_status: dict[str, int]
    completed_orders: int
    total_spent: int
    in_escrow: int


class SellerSummaryResponse(BaseModel):
    seller_id: str
    total_orders: int
    by_status: dict[str, int]
    completed_orders: int
    total_earnings: int
    pending_earnings: int
    platform_fees: int
