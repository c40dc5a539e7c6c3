"""Pydantic API schemas."""

from marketplace_escrow.schemas.common import (
    ActorRequest,
    AllowedActionsResponse,
    HealthResponse,
    ReasonRequest,
)
from marketplace_escrow.schemas.offers import (
    CreateOfferRequest,
    ExpireSweepResponse,
    OfferActionsResponse,
    OfferResponse,
    ReviseOfferRequest,
)
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

__all__ = [
    "ActorRequest",
    "AdminCancelRequest",
    "AllowedActionsResponse",
    "BuyerSummaryResponse",
    "CreateOfferRequest",
    "CreateOrderRequest",
    "DeliverRequest",
    "DisputeRequest",
    "ExpireSweepResponse",
    "HealthResponse",
    "OfferActionsResponse",
    "OfferResponse",
    "OrderActionsResponse",
    "OrderResponse",
    "ReasonRequest",
    "ReviseOfferRequest",
    "RevisionRequest",
    "SellerSummaryResponse",
    "TimelineEventResponse",
    "TimelineVerificationResponse",
]
