"""Domain layer — pure business logic with zero framework dependencies."""

from marketplace_escrow.domain.enums import (
    SYSTEM_ACTOR,
    ActorRole,
    EventType,
    FeeTier,
    IntentStatus,
    OfferStatus,
    OrderStatus,
    OrderType,
)
from marketplace_escrow.domain.exceptions import (
    InvalidAmountError,
    InvalidTransitionError,
    MarketplaceError,
    OfferExpiredError,
    PaymentAuthorizationFailedError,
    PaymentReconciliationAmbiguousError,
    RevisionLimitExceededError,
    UnauthorizedActionError,
)
from marketplace_escrow.domain.fees import FeeBreakdown, compute_fees
from marketplace_escrow.domain.payment_protocol import (
    IntentSnapshot,
    PaymentProcessor,
    TransferReceipt,
)
from marketplace_escrow.domain.state_machine import (
    OfferStateMachine,
    OrderStateMachine,
    allowed_events_for,
    validate_transition,
)
from marketplace_escrow.domain.timeline import OrderProjection, TimelineEntry, replay

__all__ = [
    "SYSTEM_ACTOR",
    "ActorRole",
    "EventType",
    "FeeTier",
    "IntentStatus",
    "OfferStatus",
    "OrderStatus",
    "OrderType",
    "InvalidAmountError",
    "InvalidTransitionError",
    "MarketplaceError",
    "OfferExpiredError",
    "PaymentAuthorizationFailedError",
    "PaymentReconciliationAmbiguousError",
    "RevisionLimitExceededError",
    "UnauthorizedActionError",
    "FeeBreakdown",
    "compute_fees",
    "IntentSnapshot",
    "PaymentProcessor",
    "TransferReceipt",
    "OfferStateMachine",
    "OrderStateMachine",
    "allowed_events_for",
    "validate_transition",
    "OrderProjection",
    "TimelineEntry",
    "replay",
]
