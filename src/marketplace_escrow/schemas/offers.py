"""Pydantic schemas for the Offer API.

Amounts are integers in minor currency units (cents) on the wire.
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


class CreateOfferRequest(BaseModel):
    """Request body for a buyer making an offer on a listing."""

    buyer_id: str = Field(..., min_length=1, max_length=64, examples=["user_buyer_1"])
    seller_id: str = Field(..., min_length=1, max_length=64, examples=["user_seller_1"])
    listing_id: str = Field(..., min_length=1, max_length=64, examples=["listing_42"])
    amount: int = Field(
        ...,
        gt=0,
        description="Offered price in minor units (cents)",
        examples=[5000],
    )
    fee_tier: FeeTier = FeeTier.STANDARD
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    message: str = Field(default="", max_length=5000)
    requirements: str = Field(default="", max_length=5000)
    expected_delivery: datetime | None = None
    expires_at: datetime | None = Field(
        default=None,
        description="Offer deadline; defaults to now + OFFER_TTL_SECONDS",
    )
    idempotency_key: str | None = Field(
        default=None,
        max_length=128,
        description="Optional idempotency key to prevent duplicate offer creation",
    )


class ReviseOfferRequest(ActorRequest):
    """Request body for the buyer changing a pending offer's amount."""

    amount: int = Field(..., gt=0, description="New price in minor units (cents)")


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class OfferResponse(BaseModel):
    """Response schema for an offer."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    listing_id: str
    buyer_id: str
    seller_id: str
    amount: int
    currency: str
    fee_tier: str
    message: str
    requirements: str
    expected_delivery: datetime | None
    status: str
    payment_intent_ref: str | None
    order_id: uuid.UUID | None
    expires_at: datetime
    paid_at: datetime | None
    responded_at: datetime | None
    created_at: datetime
    updated_at: datetime


class OfferActionsResponse(AllowedActionsResponse):
    offer_id: uuid.UUID
    expired: bool


class ExpireSweepResponse(BaseModel):
    """Result of a scheduled expiry sweep."""

    expired: list[uuid.UUID]
