"""Payment Processor Protocol.

Defines the capability the settlement coordinator consumes from an external
payment processor. This is a Protocol (structural subtyping) so adapters do
not need to inherit from a base class, they just need to match the shape.

The domain layer has ZERO imports from Stripe or any other processor SDK.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from marketplace_escrow.domain.enums import IntentStatus


@dataclass(frozen=True)
class IntentSnapshot:
    """Processor-confirmed view of a payment intent.

    Attributes:
        intent_ref: Processor identifier of the intent.
        status: Current processor-side status.
        amount: Authorized amount in minor units.
        currency: ISO currency code, lower-case.
        amount_captured: Captured amount in minor units.
        amount_refunded: Refunded amount in minor units.
    """

    intent_ref: str
    status: IntentStatus
    amount: int
    currency: str
    amount_captured: int = 0
    amount_refunded: int = 0


@dataclass(frozen=True)
class TransferReceipt:
    """Result of moving captured funds to a seller."""

    transfer_ref: str
    intent_ref: str
    destination: str
    amount: int
    metadata: dict = field(default_factory=dict)


@runtime_checkable
class PaymentProcessor(Protocol):
    """Protocol that all processor adapters must satisfy.

    Implementations:
        - payments/simulated.py        (in-memory, used in development and tests)
        - payments/stripe_processor.py (Stripe manual-capture intents + Connect)

    Adapters raise ProcessorUnavailableError for transient failures and
    PaymentProcessorError for permanent ones.
    """

    async def create_intent(
        self,
        amount: int,
        currency: str,
        *,
        idempotency_key: str,
        metadata: dict | None = None,
    ) -> str:
        """Create a manual-capture intent and return its reference.

        Calling again with the same idempotency_key returns the same intent.
        """
        ...

    async def confirm(self, intent_ref: str) -> IntentSnapshot:
        """Return the processor-confirmed status of an intent."""
        ...

    async def capture(self, intent_ref: str) -> IntentSnapshot:
        """Capture an authorized intent."""
        ...

    async def refund(self, intent_ref: str) -> IntentSnapshot:
        """Return all held funds: release an authorization or refund a capture."""
        ...

    async def transfer(
        self,
        intent_ref: str,
        destination: str,
        amount: int,
        *,
        idempotency_key: str,
    ) -> TransferReceipt:
        """Move captured funds to a seller's payout destination.

        Calling again with the same idempotency_key returns the original receipt.
        """
        ...
