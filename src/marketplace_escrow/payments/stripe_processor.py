"""StripePaymentProcessor — PaymentProcessor backed by Stripe.

Mapping:
    create_intent -> PaymentIntent (capture_method=manual)
    confirm       -> PaymentIntent.retrieve (latest_charge expanded)
    capture       -> PaymentIntent.capture
    refund        -> PaymentIntent.cancel while uncaptured, Refund otherwise
    transfer      -> Connect Transfer from the intent's charge

The Stripe SDK is synchronous; calls run in a worker thread so the event
loop (and the caller's timeout) stay responsive. Stripe errors are mapped
to ProcessorUnavailableError (transient) or PaymentProcessorError.
"""

from __future__ import annotations

import asyncio
from typing import Any

import stripe

from marketplace_escrow.config import get_settings
from marketplace_escrow.domain.enums import IntentStatus
from marketplace_escrow.domain.exceptions import (
    PaymentProcessorError,
    ProcessorUnavailableError,
)
from marketplace_escrow.domain.payment_protocol import IntentSnapshot, TransferReceipt
from marketplace_escrow.logging_config import get_logger

logger = get_logger(__name__)

_PENDING_STATUSES = frozenset(
    {"requires_payment_method", "requires_confirmation", "requires_action", "processing"}
)


def _charge_of(intent: Any) -> Any:
    charge = getattr(intent, "latest_charge", None)
    return None if isinstance(charge, str) else charge


def to_snapshot(intent: Any) -> IntentSnapshot:
    """Translate a Stripe PaymentIntent into an IntentSnapshot."""
    charge = _charge_of(intent)
    amount_captured = int(getattr(intent, "amount_received", 0) or 0)
    amount_refunded = int(getattr(charge, "amount_refunded", 0) or 0) if charge else 0

    if intent.status == "requires_capture":
        status = IntentStatus.AUTHORIZED
    elif intent.status == "succeeded":
        refunded = amount_captured > 0 and amount_refunded >= amount_captured
        status = IntentStatus.REFUNDED if refunded else IntentStatus.CAPTURED
    elif intent.status == "canceled":
        status = IntentStatus.CANCELED
    elif intent.status in _PENDING_STATUSES:
        status = IntentStatus.PENDING
    else:
        raise PaymentProcessorError(f"Unexpected intent status '{intent.status}'", intent.id)

    return IntentSnapshot(
        intent_ref=intent.id,
        status=status,
        amount=int(intent.amount),
        currency=str(intent.currency),
        amount_captured=amount_captured,
        amount_refunded=amount_refunded,
    )


class StripePaymentProcessor:
    """PaymentProcessor adapter over the Stripe API."""

    def __init__(self, api_key: str | None = None) -> None:
        self._api_key = api_key if api_key is not None else get_settings().stripe_api_key
        if not self._api_key:
            raise ValueError("Stripe API key not configured (STRIPE_API_KEY).")

    async def _call(self, operation: str, fn, *args: Any, **kwargs: Any) -> Any:  # noqa: ANN001
        kwargs["api_key"] = self._api_key
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            logger.warning("processor.stripe.transient_error", operation=operation, error=str(exc))
            raise ProcessorUnavailableError(f"Stripe {operation} unavailable: {exc}") from exc
        except stripe.APIError as exc:
            logger.warning("processor.stripe.api_error", operation=operation, error=str(exc))
            raise ProcessorUnavailableError(f"Stripe {operation} failed: {exc}") from exc
        except stripe.StripeError as exc:
            logger.error("processor.stripe.error", operation=operation, error=str(exc))
            raise PaymentProcessorError(f"Stripe {operation} rejected: {exc}") from exc

    async def create_intent(
        self,
        amount: int,
        currency: str,
        *,
        idempotency_key: str,
        metadata: dict | None = None,
    ) -> str:
        intent = await self._call(
            "create_intent",
            stripe.PaymentIntent.create,
            amount=amount,
            currency=currency,
            capture_method="manual",
            metadata=metadata or {},
            idempotency_key=idempotency_key,
        )
        logger.info("processor.stripe.intent_created", intent_ref=intent.id, amount=amount)
        return intent.id

    async def confirm(self, intent_ref: str) -> IntentSnapshot:
        intent = await self._call(
            "confirm", stripe.PaymentIntent.retrieve, intent_ref, expand=["latest_charge"]
        )
        return to_snapshot(intent)

    async def capture(self, intent_ref: str) -> IntentSnapshot:
        await self._call(
            "capture",
            stripe.PaymentIntent.capture,
            intent_ref,
            idempotency_key=f"capture-{intent_ref}",
        )
        return await self.confirm(intent_ref)

    async def refund(self, intent_ref: str) -> IntentSnapshot:
        current = await self.confirm(intent_ref)
        if current.status is IntentStatus.AUTHORIZED:
            await self._call(
                "refund",
                stripe.PaymentIntent.cancel,
                intent_ref,
                idempotency_key=f"cancel-{intent_ref}",
            )
        elif current.status is IntentStatus.CAPTURED:
            await self._call(
                "refund",
                stripe.Refund.create,
                payment_intent=intent_ref,
                idempotency_key=f"refund-{intent_ref}",
            )
        else:
            raise PaymentProcessorError(
                f"Nothing to refund for intent in status {current.status.value}", intent_ref
            )
        return await self.confirm(intent_ref)

    async def transfer(
        self,
        intent_ref: str,
        destination: str,
        amount: int,
        *,
        idempotency_key: str,
    ) -> TransferReceipt:
        intent = await self._call(
            "transfer", stripe.PaymentIntent.retrieve, intent_ref, expand=["latest_charge"]
        )
        charge = _charge_of(intent)
        transfer = await self._call(
            "transfer",
            stripe.Transfer.create,
            amount=amount,
            currency=intent.currency,
            destination=destination,
            source_transaction=charge.id if charge is not None else None,
            transfer_group=intent_ref,
            idempotency_key=idempotency_key,
        )
        logger.info(
            "processor.stripe.transferred",
            intent_ref=intent_ref,
            transfer_ref=transfer.id,
            amount=amount,
        )
        return TransferReceipt(
            transfer_ref=transfer.id,
            intent_ref=intent_ref,
            destination=destination,
            amount=amount,
        )
