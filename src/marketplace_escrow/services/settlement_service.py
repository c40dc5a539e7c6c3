"""Settlement Coordinator — mediates between orders/offers and the payment processor.

Responsibilities:
    - authorize:  create the processor intent for an offer or order and store
                  its reference (the only writer of payment_intent_ref).
    - confirm:    require a processor-confirmed status before funds are
                  treated as held. Client-reported success is never trusted.
    - capture:    idempotent; skipped when the ledger or the processor already
                  shows the intent captured.
    - transfer:   move the seller's share to the payout destination.
    - refund:     always full; skipped when no funds are held.

Every processor call runs under asyncio.wait_for. Transient failures are
retried with tenacity. A timeout is an ambiguous outcome: the coordinator
re-queries the processor and raises PaymentReconciliationAmbiguousError only
if the status still does not settle it.

Settlement facts are appended to the order timeline through the caller's
TimelineRepository so they commit in the same transaction as the order
transition they belong to.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, TypeVar

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from marketplace_escrow.config import get_settings
from marketplace_escrow.domain.enums import SYSTEM_ACTOR, EventType, IntentStatus, OrderStatus
from marketplace_escrow.domain.exceptions import (
    PaymentAuthorizationFailedError,
    PaymentProcessorError,
    PaymentReconciliationAmbiguousError,
    ProcessorUnavailableError,
)
from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from marketplace_escrow.config import Settings
    from marketplace_escrow.domain.payment_protocol import (
        IntentSnapshot,
        PaymentProcessor,
        TransferReceipt,
    )
    from marketplace_escrow.infrastructure.database.orm_models import Offer, Order
    from marketplace_escrow.infrastructure.database.repositories import TimelineRepository

logger = get_logger(__name__)

T = TypeVar("T")


class SettlementCoordinator:
    """Drives the payment processor on behalf of the offer and order services."""

    def __init__(self, processor: PaymentProcessor, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        self._processor = processor
        self._timeout = settings.processor_timeout_seconds
        self._max_attempts = settings.processor_max_attempts
        self._backoff = settings.processor_retry_backoff_seconds

    @property
    def processor(self) -> PaymentProcessor:
        return self._processor

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    async def authorize(
        self,
        entity: Offer | Order,
        *,
        idempotency_key: str,
        timeline: TimelineRepository | None = None,
        actor: str = SYSTEM_ACTOR,
    ) -> IntentSnapshot:
        """Create the intent for entity if it has none, and return its status.

        Raises:
            PaymentAuthorizationFailedError: the processor declined or could
                not be reached. No funds moved.
            PaymentReconciliationAmbiguousError: intent creation timed out twice.
        """
        entity_id = str(entity.id)
        if entity.payment_intent_ref is None:
            metadata = {"entity_id": entity_id, "buyer_id": entity.buyer_id}

            async def create() -> str:
                return await self._processor.create_intent(
                    entity.amount,
                    entity.currency,
                    idempotency_key=idempotency_key,
                    metadata=metadata,
                )

            try:
                try:
                    intent_ref = await self._invoke("create_intent", create)
                except TimeoutError:
                    # Same key: the processor returns the intent a lost call created.
                    logger.warning("settlement.create_intent_timeout", entity_id=entity_id)
                    try:
                        intent_ref = await self._invoke("create_intent", create)
                    except TimeoutError as exc:
                        raise PaymentReconciliationAmbiguousError(
                            "create_intent", detail=f"entity {entity_id}"
                        ) from exc
            except (PaymentProcessorError, ProcessorUnavailableError) as exc:
                logger.warning(
                    "settlement.authorization_failed", entity_id=entity_id, error=exc.message
                )
                raise PaymentAuthorizationFailedError(entity_id, exc.message) from exc

            entity.payment_intent_ref = intent_ref
            logger.info("settlement.intent_created", entity_id=entity_id, intent_ref=intent_ref)
            if timeline is not None:
                await self._record(
                    timeline,
                    entity,
                    EventType.PAYMENT_INTENT_CREATED,
                    actor,
                    {"intent_ref": intent_ref, "amount": entity.amount},
                )

        return await self.query(entity.payment_intent_ref)

    async def link_intent(
        self,
        order: Order,
        intent_ref: str,
        timeline: TimelineRepository,
        actor: str = SYSTEM_ACTOR,
        source: dict | None = None,
    ) -> None:
        """Attach an intent created for an offer to the order it became."""
        order.payment_intent_ref = intent_ref
        await self._record(
            timeline,
            order,
            EventType.PAYMENT_INTENT_CREATED,
            actor,
            {"intent_ref": intent_ref, "amount": order.amount, **(source or {})},
        )

    async def confirm_authorization(self, entity: Offer | Order) -> IntentSnapshot:
        """Return the processor status, requiring the funds to be held.

        Raises:
            PaymentAuthorizationFailedError: no intent, the intent does not
                hold funds, or it holds a different amount.
        """
        entity_id = str(entity.id)
        if entity.payment_intent_ref is None:
            raise PaymentAuthorizationFailedError(entity_id, "no payment intent exists")

        snapshot = await self.query(entity.payment_intent_ref)
        if not snapshot.status.holds_funds:
            raise PaymentAuthorizationFailedError(
                entity_id,
                f"processor reports intent {snapshot.status.value}",
                intent_ref=snapshot.intent_ref,
            )
        if snapshot.amount != entity.amount:
            raise PaymentAuthorizationFailedError(
                entity_id,
                f"processor holds {snapshot.amount}, expected {entity.amount}",
                intent_ref=snapshot.intent_ref,
            )
        logger.info(
            "settlement.authorization_confirmed",
            entity_id=entity_id,
            intent_ref=snapshot.intent_ref,
            status=snapshot.status.value,
        )
        return snapshot

    async def query(self, intent_ref: str) -> IntentSnapshot:
        """Processor-confirmed status of an intent, re-queried once on timeout."""

        async def confirm() -> IntentSnapshot:
            return await self._processor.confirm(intent_ref)

        try:
            return await self._invoke("confirm", confirm)
        except TimeoutError:
            logger.warning("settlement.confirm_timeout", intent_ref=intent_ref)
        try:
            return await self._invoke("confirm", confirm)
        except TimeoutError as exc:
            raise PaymentReconciliationAmbiguousError(
                "confirm", intent_ref=intent_ref, detail="status query timed out"
            ) from exc

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def capture(
        self,
        order: Order,
        timeline: TimelineRepository,
        actor: str = SYSTEM_ACTOR,
    ) -> IntentSnapshot:
        """Capture the order's funds. A second call is a no-op."""
        order_id = str(order.id)
        intent_ref = order.payment_intent_ref
        if intent_ref is None:
            raise PaymentProcessorError(f"Order {order_id} has no payment intent to capture")

        if await timeline.count_by_type(order.id, EventType.PAYMENT_CAPTURED):
            logger.info("settlement.capture_skipped", order_id=order_id, reason="already_recorded")
            return await self.query(intent_ref)

        snapshot = await self.query(intent_ref)
        if snapshot.status is IntentStatus.CAPTURED:
            # Captured by an attempt whose ledger write never landed.
            logger.info("settlement.capture_skipped", order_id=order_id, reason="already_captured")
        else:

            async def capture() -> IntentSnapshot:
                return await self._processor.capture(intent_ref)

            try:
                snapshot = await self._invoke("capture", capture)
            except TimeoutError as exc:
                logger.warning("settlement.capture_timeout", order_id=order_id)
                snapshot = await self.query(intent_ref)
                if snapshot.status is not IntentStatus.CAPTURED:
                    raise PaymentReconciliationAmbiguousError(
                        "capture", intent_ref=intent_ref, detail=f"intent is {snapshot.status.value}"
                    ) from exc

        await self._record(
            timeline,
            order,
            EventType.PAYMENT_CAPTURED,
            actor,
            {"intent_ref": intent_ref, "amount": snapshot.amount_captured or order.amount},
        )
        logger.info("settlement.captured", order_id=order_id, intent_ref=intent_ref)
        return snapshot

    async def transfer(
        self,
        order: Order,
        timeline: TimelineRepository,
        actor: str = SYSTEM_ACTOR,
    ) -> TransferReceipt:
        """Transfer the seller's share of a captured order."""
        order_id = str(order.id)
        intent_ref = order.payment_intent_ref
        if intent_ref is None:
            raise PaymentProcessorError(f"Order {order_id} has no payment intent to transfer from")

        async def transfer() -> TransferReceipt:
            return await self._processor.transfer(
                intent_ref,
                order.payout_destination,
                order.seller_amount,
                idempotency_key=f"transfer-{order_id}",
            )

        try:
            receipt = await self._invoke("transfer", transfer)
        except TimeoutError:
            # Keyed by order id, so repeating cannot pay the seller twice.
            logger.warning("settlement.transfer_timeout", order_id=order_id)
            try:
                receipt = await self._invoke("transfer", transfer)
            except TimeoutError as exc:
                raise PaymentReconciliationAmbiguousError(
                    "transfer", intent_ref=intent_ref, detail="transfer timed out twice"
                ) from exc

        order.transfer_ref = receipt.transfer_ref
        await self._record(
            timeline,
            order,
            EventType.FUNDS_TRANSFERRED,
            actor,
            {
                "transfer_ref": receipt.transfer_ref,
                "destination": receipt.destination,
                "amount": receipt.amount,
                "platform_fee": order.platform_fee,
            },
        )
        logger.info(
            "settlement.transferred",
            order_id=order_id,
            transfer_ref=receipt.transfer_ref,
            amount=receipt.amount,
        )
        return receipt

    # ------------------------------------------------------------------
    # Refund
    # ------------------------------------------------------------------

    async def refund(
        self,
        entity: Offer | Order,
        reason: str,
        timeline: TimelineRepository | None = None,
        actor: str = SYSTEM_ACTOR,
    ) -> IntentSnapshot | None:
        """Return all held funds to the buyer.

        Returns None without calling refund when nothing is held: no intent,
        an intent the buyer never authorized, or one already returned.
        """
        entity_id = str(entity.id)
        intent_ref = entity.payment_intent_ref
        if intent_ref is None:
            logger.info("settlement.refund_skipped", entity_id=entity_id, reason="no_intent")
            return None

        snapshot = await self.query(intent_ref)
        if not snapshot.status.holds_funds:
            logger.info(
                "settlement.refund_skipped",
                entity_id=entity_id,
                reason="no_funds_held",
                intent_status=snapshot.status.value,
            )
            return None

        held = snapshot.amount_captured or snapshot.amount

        async def refund() -> IntentSnapshot:
            return await self._processor.refund(intent_ref)

        try:
            snapshot = await self._invoke("refund", refund)
        except TimeoutError as exc:
            logger.warning("settlement.refund_timeout", entity_id=entity_id)
            snapshot = await self.query(intent_ref)
            if snapshot.status.holds_funds:
                raise PaymentReconciliationAmbiguousError(
                    "refund", intent_ref=intent_ref, detail=f"intent is {snapshot.status.value}"
                ) from exc

        if timeline is not None:
            await self._record(
                timeline,
                entity,
                EventType.REFUND_ISSUED,
                actor,
                {"intent_ref": intent_ref, "amount": held, "reason": reason},
            )
        logger.info(
            "settlement.refunded",
            entity_id=entity_id,
            intent_ref=intent_ref,
            amount=held,
            reason=reason,
        )
        return snapshot

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _invoke(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """Run call with a timeout, retrying transient processor errors.

        Raises TimeoutError unchanged so the caller can reconcile.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._backoff, max=10),
            retry=retry_if_exception_type(ProcessorUnavailableError),
            before_sleep=lambda state: logger.warning(
                "settlement.processor_retry",
                operation=operation,
                attempt=state.attempt_number,
            ),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                result = await asyncio.wait_for(call(), timeout=self._timeout)
        return result

    @staticmethod
    async def _record(
        timeline: TimelineRepository,
        entity: Offer | Order,
        event_type: EventType,
        actor: str,
        data: dict,
    ) -> None:
        status = OrderStatus(entity.status)
        await timeline.append(
            order_id=entity.id,
            event_type=event_type,
            old_status=status,
            new_status=status,
            performed_by=actor,
            event_data=data,
        )
