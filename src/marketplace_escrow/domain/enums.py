"""Domain enumerations for the marketplace escrow core.

These enums define the closed set of states and types used throughout the
system. They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum

SYSTEM_ACTOR = "system"


class OfferStatus(enum.StrEnum):
    """Lifecycle states of an offer.

    Transitions are enforced by OfferStateMachine (domain/state_machine.py).
    """

    PENDING = "pending"
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in _OFFER_TERMINAL


_OFFER_TERMINAL = frozenset(
    {OfferStatus.ACCEPTED, OfferStatus.REJECTED, OfferStatus.CANCELLED, OfferStatus.EXPIRED}
)


class OrderStatus(enum.StrEnum):
    """Lifecycle states of a funded order.

    Transitions are enforced by OrderStateMachine (domain/state_machine.py).
    DISPUTED only leaves through an administrative cancel.
    """

    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    PROCESSING = "processing"
    IN_PROGRESS = "in_progress"
    DELIVERED = "delivered"
    IN_REVISION = "in_revision"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.COMPLETED, OrderStatus.CANCELLED)


class OrderType(enum.StrEnum):
    """How an order came into existence."""

    DIRECT_PURCHASE = "direct_purchase"
    ACCEPTED_OFFER = "accepted_offer"


class FeeTier(enum.StrEnum):
    """Platform fee categories. Rates are configured in Settings."""

    STANDARD = "standard"
    PREMIUM = "premium"
    EXCLUSIVE = "exclusive"
    HYPE = "hype"


class ActorRole(enum.StrEnum):
    """Role an actor plays relative to one offer or order."""

    BUYER = "buyer"
    SELLER = "seller"
    SYSTEM = "system"


class IntentStatus(enum.StrEnum):
    """Processor-side status of a payment intent.

    PENDING     — created, buyer has not authorized a payment method yet.
    AUTHORIZED  — funds held on the buyer's payment method, not captured.
    CAPTURED    — funds captured (escrow).
    REFUNDED    — captured funds returned to the buyer.
    CANCELED    — authorization released without capture.
    """

    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    REFUNDED = "refunded"
    CANCELED = "canceled"

    @property
    def holds_funds(self) -> bool:
        return self in (IntentStatus.AUTHORIZED, IntentStatus.CAPTURED)


class EventType(enum.StrEnum):
    """Types of timeline events recorded in the timeline_events table.

    Every order transition produces exactly one status-changing event.
    Settlement facts (intent created, capture, transfer, refund) are recorded
    alongside without changing the status.
    """

    # Lifecycle events
    ORDER_CREATED = "ORDER_CREATED"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    PROCESSING_STARTED = "PROCESSING_STARTED"
    WORK_STARTED = "WORK_STARTED"
    WORK_DELIVERED = "WORK_DELIVERED"
    REVISION_REQUESTED = "REVISION_REQUESTED"
    DELIVERY_ACCEPTED = "DELIVERY_ACCEPTED"

    # Cancellation & dispute events
    ORDER_CANCELLED = "ORDER_CANCELLED"
    DISPUTE_OPENED = "DISPUTE_OPENED"
    SETTLEMENT_FAILED = "SETTLEMENT_FAILED"
    ADMIN_CANCELLED = "ADMIN_CANCELLED"

    # Settlement facts
    PAYMENT_INTENT_CREATED = "PAYMENT_INTENT_CREATED"
    PAYMENT_AUTHORIZATION_FAILED = "PAYMENT_AUTHORIZATION_FAILED"
    PAYMENT_CAPTURED = "PAYMENT_CAPTURED"
    FUNDS_TRANSFERRED = "FUNDS_TRANSFERRED"
    REFUND_ISSUED = "REFUND_ISSUED"
