"""Payment processor adapters and factory.

Two backends:
    - SimulatedPaymentProcessor: in-memory, no network (development, tests)
    - StripePaymentProcessor:    Stripe manual-capture intents + Connect transfers

The backend is chosen by Settings.payment_backend.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from marketplace_escrow.config import get_settings
from marketplace_escrow.domain.payment_protocol import (
    IntentSnapshot,
    PaymentProcessor,
    TransferReceipt,
)
from marketplace_escrow.payments.simulated import SimulatedPaymentProcessor
from marketplace_escrow.payments.stripe_processor import StripePaymentProcessor

if TYPE_CHECKING:
    from marketplace_escrow.config import Settings

_registry: dict[str, type] = {
    "simulated": SimulatedPaymentProcessor,
    "stripe": StripePaymentProcessor,
}

_processor: PaymentProcessor | None = None


def create_payment_processor(settings: Settings | None = None) -> PaymentProcessor:
    """Create a processor for the configured backend.

    Raises:
        ValueError: If the backend is unknown.
    """
    settings = settings or get_settings()
    backend = settings.payment_backend
    processor_class = _registry.get(backend)
    if processor_class is None:
        raise ValueError(
            f"Unknown payment backend: '{backend}'. Valid backends: {list(_registry)}"
        )
    if processor_class is StripePaymentProcessor:
        return StripePaymentProcessor(api_key=settings.stripe_api_key)
    return processor_class()


def get_payment_processor() -> PaymentProcessor:
    """Process-wide processor instance (the simulated backend keeps state in memory)."""
    global _processor
    if _processor is None:
        _processor = create_payment_processor()
    return _processor


__all__ = [
    "IntentSnapshot",
    "PaymentProcessor",
    "SimulatedPaymentProcessor",
    "StripePaymentProcessor",
    "TransferReceipt",
    "create_payment_processor",
    "get_payment_processor",
]
