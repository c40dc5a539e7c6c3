"""Domain exceptions for the marketplace escrow core.

These exceptions are framework-agnostic and represent business rule violations.
They are caught and translated to HTTP responses by the API layer's middleware.

Every rejection raised by a state machine names the state the entity is in
and the events that are currently legal from it, so the caller can retry,
surface it to the user, or escalate.
"""

from __future__ import annotations

from collections.abc import Iterable


def _legal(allowed_events: Iterable[str]) -> str:
    events = sorted(allowed_events)
    return ", ".join(events) if events else "none (terminal state)"


class MarketplaceError(Exception):
    """Base exception for all domain errors."""

    retryable: bool = False

    def __init__(self, message: str, code: str = "MARKETPLACE_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, "retryable": self.retryable}


# --- State Machine Errors ---


class InvalidTransitionError(MarketplaceError):
    """Raised when an event is not legal from the entity's current state.

    Example: delivered order receiving seller_starts_work.
    """

    def __init__(
        self,
        current_state: str,
        attempted_event: str,
        allowed_events: Iterable[str] = (),
        entity: str = "order",
    ) -> None:
        self.current_state = str(current_state)
        self.attempted_event = attempted_event
        self.allowed_events = sorted(allowed_events)
        self.entity = entity
        super().__init__(
            message=(
                f"Cannot {attempted_event} {entity} in state '{self.current_state}'. "
                f"Legal events: {_legal(self.allowed_events)}"
            ),
            code="INVALID_TRANSITION",
        )

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "current_state": self.current_state,
            "attempted_event": self.attempted_event,
            "allowed_events": self.allowed_events,
        }


class UnauthorizedActionError(MarketplaceError):
    """Raised when the actor does not play the role the event requires."""

    def __init__(
        self,
        actor: str,
        attempted_event: str,
        current_state: str,
        allowed_events: Iterable[str] = (),
        entity: str = "order",
    ) -> None:
        self.actor = actor
        self.attempted_event = attempted_event
        self.current_state = str(current_state)
        self.allowed_events = sorted(allowed_events)
        super().__init__(
            message=(
                f"Actor '{actor}' may not {attempted_event} this {entity} "
                f"(state '{self.current_state}'). "
                f"Legal events for this actor: {_legal(self.allowed_events)}"
            ),
            code="UNAUTHORIZED",
        )

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "current_state": self.current_state,
            "attempted_event": self.attempted_event,
            "allowed_events": self.allowed_events,
        }


class RevisionLimitExceededError(MarketplaceError):
    """Raised when a revision is requested with no revisions left."""

    def __init__(self, order_id: str, revisions: int, max_revisions: int) -> None:
        super().__init__(
            message=(
                f"Order {order_id} has used {revisions} of {max_revisions} revisions; "
                "the delivery can only be accepted or disputed"
            ),
            code="REVISION_LIMIT_EXCEEDED",
        )
        self.order_id = order_id
        self.revisions = revisions
        self.max_revisions = max_revisions


class OfferExpiredError(MarketplaceError):
    """Raised when acting on an offer whose expiry has elapsed."""

    def __init__(self, offer_id: str, expires_at: str) -> None:
        super().__init__(
            message=f"Offer {offer_id} expired at {expires_at}",
            code="OFFER_EXPIRED",
        )
        self.offer_id = offer_id
        self.expires_at = expires_at


# --- Validation Errors ---


class InvalidAmountError(MarketplaceError):
    """Raised when an amount is not a positive integer of minor units."""

    def __init__(self, amount: object) -> None:
        super().__init__(
            message=f"Amount must be a positive integer in minor units, got {amount!r}",
            code="INVALID_AMOUNT",
        )
        self.amount = amount


class InvalidRequestError(MarketplaceError):
    """Raised when a request payload breaks a business rule (not a state rule)."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="INVALID_REQUEST")


# --- Lookup Errors ---


class OrderNotFoundError(MarketplaceError):
    """Raised when an order ID does not exist."""

    def __init__(self, order_id: str) -> None:
        super().__init__(message=f"Order not found: {order_id}", code="ORDER_NOT_FOUND")
        self.order_id = order_id


class OfferNotFoundError(MarketplaceError):
    """Raised when an offer ID does not exist."""

    def __init__(self, offer_id: str) -> None:
        super().__init__(message=f"Offer not found: {offer_id}", code="OFFER_NOT_FOUND")
        self.offer_id = offer_id


# --- Ledger Errors ---


class LedgerInconsistencyError(MarketplaceError):
    """Raised when replaying an order's timeline does not reproduce its state."""

    def __init__(self, order_id: str, detail: str) -> None:
        super().__init__(
            message=f"Timeline of order {order_id} is inconsistent: {detail}",
            code="LEDGER_INCONSISTENT",
        )
        self.order_id = order_id
        self.detail = detail


# --- Payment Errors ---


class PaymentError(MarketplaceError):
    """Base exception for payment-side failures."""

    def __init__(
        self,
        message: str,
        code: str = "PAYMENT_ERROR",
        intent_ref: str | None = None,
    ) -> None:
        super().__init__(message=message, code=code)
        self.intent_ref = intent_ref


class PaymentAuthorizationFailedError(PaymentError):
    """Raised when funds could not be authorized. No funds moved; buyer may retry."""

    retryable = True

    def __init__(self, entity_id: str, reason: str, intent_ref: str | None = None) -> None:
        super().__init__(
            message=f"Payment authorization failed for {entity_id}: {reason}",
            code="PAYMENT_AUTHORIZATION_FAILED",
            intent_ref=intent_ref,
        )
        self.entity_id = entity_id
        self.reason = reason


class PaymentReconciliationAmbiguousError(PaymentError):
    """Raised when a processor call timed out and a status re-query did not settle it.

    The outcome is unknown: resolve by re-querying the processor, never by
    blindly repeating the operation.
    """

    def __init__(self, operation: str, intent_ref: str | None = None, detail: str = "") -> None:
        super().__init__(
            message=(
                f"Outcome of '{operation}' is unknown"
                + (f" for intent {intent_ref}" if intent_ref else "")
                + (f": {detail}" if detail else "")
            ),
            code="PAYMENT_RECONCILIATION_AMBIGUOUS",
            intent_ref=intent_ref,
        )
        self.operation = operation
        self.detail = detail


class PaymentSettlementFailedError(PaymentError):
    """Raised when funds were captured but the seller transfer failed.

    The order has been moved to DISPUTED for administrative resolution.
    """

    def __init__(self, order_id: str, reason: str, intent_ref: str | None = None) -> None:
        super().__init__(
            message=(
                f"Funds for order {order_id} were captured but could not be transferred "
                f"to the seller ({reason}); the order is now disputed"
            ),
            code="PAYMENT_SETTLEMENT_FAILED",
            intent_ref=intent_ref,
        )
        self.order_id = order_id
        self.reason = reason


class PaymentProcessorError(PaymentError):
    """Raised by processor adapters for permanent failures (declines, bad requests)."""

    def __init__(self, message: str, intent_ref: str | None = None) -> None:
        super().__init__(message=message, code="PAYMENT_PROCESSOR_ERROR", intent_ref=intent_ref)


class ProcessorUnavailableError(PaymentError):
    """Raised by processor adapters for transient failures worth retrying."""

    retryable = True

    def __init__(self, message: str, intent_ref: str | None = None) -> None:
        super().__init__(message=message, code="PROCESSOR_UNAVAILABLE", intent_ref=intent_ref)


# --- Idempotency Errors ---


class DuplicateOperationError(MarketplaceError):
    """Raised when the request holding an idempotency key never committed its entity."""

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(
            message=f"Request with idempotency key '{idempotency_key}' is still in flight or failed",
            code="DUPLICATE_OPERATION",
        )
        self.idempotency_key = idempotency_key
