"""SimulatedPaymentProcessor — an in-memory processor for development and tests.

Behaves like a manual-capture card processor:
    create_intent -> pending (or authorized when auto_authorize is on)
    authorize     -> authorized          (the buyer completing card entry)
    capture       -> captured            (only from authorized)
    refund        -> canceled / refunded (releases or returns held funds)
    transfer      -> receipt             (only from captured, idempotent by key)

Every call is recorded in `calls`. Faults can be queued per operation to
exercise declines, transient outages and timeouts without a network.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass, field

from marketplace_escrow.domain.enums import IntentStatus
from marketplace_escrow.domain.exceptions import PaymentProcessorError
from marketplace_escrow.domain.payment_protocol import IntentSnapshot, TransferReceipt
from marketplace_escrow.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class _Intent:
    ref: str
    amount: int
    currency: str
    status: IntentStatus
    metadata: dict = field(default_factory=dict)
    amount_captured: int = 0
    amount_refunded: int = 0

    def snapshot(self) -> IntentSnapshot:
        return IntentSnapshot(
            intent_ref=self.ref,
            status=self.status,
            amount=self.amount,
            currency=self.currency,
            amount_captured=self.amount_captured,
            amount_refunded=self.amount_refunded,
        )


@dataclass(frozen=True)
class _Fault:
    error: Exception | None = None
    delay: float = 0.0
    # When True the operation takes effect before the delay, so a caller that
    # times out has still caused it (lost response).
    effect_before_delay: bool = True


class SimulatedPaymentProcessor:
    """In-memory PaymentProcessor."""

    def __init__(self, auto_authorize: bool = True) -> None:
        self.auto_authorize = auto_authorize
        self.intents: dict[str, _Intent] = {}
        self.transfers: dict[str, TransferReceipt] = {}
        self.calls: list[tuple[str, str]] = []
        self._intent_keys: dict[str, str] = {}
        self._faults: dict[str, deque[_Fault]] = defaultdict(deque)

    # ------------------------------------------------------------------
    # Fault injection
    # ------------------------------------------------------------------

    def fail_next(self, operation: str, error: Exception) -> None:
        """Make the next call to operation raise error without taking effect."""
        self._faults[operation].append(_Fault(error=error))

    def delay_next(self, operation: str, seconds: float, effect_before_delay: bool = True) -> None:
        """Make the next call to operation take seconds to answer."""
        self._faults[operation].append(
            _Fault(delay=seconds, effect_before_delay=effect_before_delay)
        )

    def authorize(self, intent_ref: str) -> None:
        """Simulate the buyer authorizing a payment method on a pending intent."""
        intent = self._get(intent_ref)
        if intent.status is IntentStatus.PENDING:
            intent.status = IntentStatus.AUTHORIZED

    def calls_for(self, operation: str) -> list[str]:
        """Intent refs passed to every call of operation, in order."""
        return [ref for op, ref in self.calls if op == operation]

    # ------------------------------------------------------------------
    # PaymentProcessor protocol
    # ------------------------------------------------------------------

    async def create_intent(
        self,
        amount: int,
        currency: str,
        *,
        idempotency_key: str,
        metadata: dict | None = None,
    ) -> str:
        def effect() -> str:
            existing = self._intent_keys.get(idempotency_key)
            if existing is not None:
                return existing
            ref = "pi_sim_" + uuid.uuid4().hex[:24]
            status = IntentStatus.AUTHORIZED if self.auto_authorize else IntentStatus.PENDING
            self.intents[ref] = _Intent(
                ref=ref,
                amount=amount,
                currency=currency,
                status=status,
                metadata=dict(metadata or {}),
            )
            self._intent_keys[idempotency_key] = ref
            logger.info("processor.simulated.intent_created", intent_ref=ref, amount=amount)
            return ref

        return await self._run("create_intent", idempotency_key, effect)

    async def confirm(self, intent_ref: str) -> IntentSnapshot:
        return await self._run("confirm", intent_ref, lambda: self._get(intent_ref).snapshot())

    async def capture(self, intent_ref: str) -> IntentSnapshot:
        def effect() -> IntentSnapshot:
            intent = self._get(intent_ref)
            if intent.status is not IntentStatus.AUTHORIZED:
                raise PaymentProcessorError(
                    f"Cannot capture intent in status {intent.status.value}", intent_ref
                )
            intent.status = IntentStatus.CAPTURED
            intent.amount_captured = intent.amount
            logger.info("processor.simulated.captured", intent_ref=intent_ref, amount=intent.amount)
            return intent.snapshot()

        return await self._run("capture", intent_ref, effect)

    async def refund(self, intent_ref: str) -> IntentSnapshot:
        def effect() -> IntentSnapshot:
            intent = self._get(intent_ref)
            if intent.status is IntentStatus.AUTHORIZED:
                intent.status = IntentStatus.CANCELED
            elif intent.status is IntentStatus.CAPTURED:
                intent.status = IntentStatus.REFUNDED
                intent.amount_refunded = intent.amount_captured
            else:
                raise PaymentProcessorError(
                    f"Nothing to refund for intent in status {intent.status.value}", intent_ref
                )
            logger.info("processor.simulated.refunded", intent_ref=intent_ref, amount=intent.amount)
            return intent.snapshot()

        return await self._run("refund", intent_ref, effect)

    async def transfer(
        self,
        intent_ref: str,
        destination: str,
        amount: int,
        *,
        idempotency_key: str,
    ) -> TransferReceipt:
        def effect() -> TransferReceipt:
            existing = self.transfers.get(idempotency_key)
            if existing is not None:
                return existing
            intent = self._get(intent_ref)
            if intent.status is not IntentStatus.CAPTURED:
                raise PaymentProcessorError(
                    f"Cannot transfer from intent in status {intent.status.value}", intent_ref
                )
            if amount > intent.amount_captured:
                raise PaymentProcessorError(
                    f"Transfer of {amount} exceeds captured {intent.amount_captured}", intent_ref
                )
            receipt = TransferReceipt(
                transfer_ref="tr_sim_" + uuid.uuid4().hex[:24],
                intent_ref=intent_ref,
                destination=destination,
                amount=amount,
            )
            self.transfers[idempotency_key] = receipt
            logger.info(
                "processor.simulated.transferred",
                intent_ref=intent_ref,
                destination=destination,
                amount=amount,
            )
            return receipt

        return await self._run("transfer", intent_ref, effect)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _get(self, intent_ref: str) -> _Intent:
        intent = self.intents.get(intent_ref)
        if intent is None:
            raise PaymentProcessorError(f"No such intent: {intent_ref}", intent_ref)
        return intent

    async def _run(self, operation: str, ref: str, effect):  # noqa: ANN001, ANN202
        self.calls.append((operation, ref))
        fault = self._faults[operation].popleft() if self._faults[operation] else None
        if fault is None:
            return effect()
        if fault.error is not None:
            raise fault.error
        if fault.effect_before_delay:
            result = effect()
            await asyncio.sleep(fault.delay)
            return result
        await asyncio.sleep(fault.delay)
        return effect()
