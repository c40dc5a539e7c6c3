"""Order Service — core business logic for the order lifecycle.

This is the application layer that coordinates between:
    - Domain state machine (transition and role guard)
    - Settlement coordinator (authorize, capture, transfer, refund)
    - Repositories (data access)
    - Timeline (append-only ledger)

Every transition runs under the order's lock in its own transaction:
load -> guard -> settle -> mutate -> append ledger -> commit. The lock is
released only after the commit, so the ledger never lags the visible state.
REST routes call into this service; it is the sole writer of status,
revisions and payment_released.
"""

from __future__ import annotations

import uuid
from collections import Counter
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from marketplace_escrow.config import get_settings
from marketplace_escrow.domain.enums import (
    SYSTEM_ACTOR,
    ActorRole,
    EventType,
    FeeTier,
    OrderStatus,
    OrderType,
)
from marketplace_escrow.domain.exceptions import (
    InvalidRequestError,
    InvalidTransitionError,
    OrderNotFoundError,
    PaymentAuthorizationFailedError,
    PaymentError,
    PaymentSettlementFailedError,
    RevisionLimitExceededError,
    UnauthorizedActionError,
)
from marketplace_escrow.domain.fees import (
    FeeBreakdown,
    compute_fees,
    normalize_currency,
    validate_amount,
)
from marketplace_escrow.domain.state_machine import (
    ORDER_EVENT_ROLES,
    allowed_events_for,
    resolve_role,
    validate_transition,
)
from marketplace_escrow.domain.timeline import EVENT_FOR_TRANSITION
from marketplace_escrow.infrastructure.database.orm_models import Order
from marketplace_escrow.infrastructure.database.repositories import (
    OrderRepository,
    TimelineRepository,
)
from marketplace_escrow.infrastructure.locks import get_lock_registry
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.ledger_service import LedgerService

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from marketplace_escrow.config import Settings
    from marketplace_escrow.domain.timeline import OrderProjection
    from marketplace_escrow.infrastructure.database.orm_models import Offer, TimelineEvent
    from marketplace_escrow.infrastructure.locks import EntityLockRegistry
    from marketplace_escrow.infrastructure.redis_client import IdempotencyStore
    from marketplace_escrow.services.settlement_service import SettlementCoordinator

logger = get_logger(__name__)

# Statuses in which the buyer's money is held for the order.
FUNDED_STATUSES = frozenset(
    {
        OrderStatus.PAID,
        OrderStatus.PROCESSING,
        OrderStatus.IN_PROGRESS,
        OrderStatus.DELIVERED,
        OrderStatus.IN_REVISION,
        OrderStatus.DISPUTED,
    }
)


def _now() -> datetime:
    return datetime.now(UTC)


class OrderService:
    """Manages the order lifecycle."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settlement: SettlementCoordinator,
        locks: EntityLockRegistry | None = None,
        settings: Settings | None = None,
        idempotency: IdempotencyStore | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settlement = settlement
        self._locks = locks or get_lock_registry()
        self._settings = settings or get_settings()
        self._idempotency = idempotency
        self.ledger = LedgerService(session_factory)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_order(
        self,
        buyer_id: str,
        seller_id: str,
        listing_id: str,
        amount: int,
        fee_tier: FeeTier | str = FeeTier.STANDARD,
        *,
        currency: str | None = None,
        requirements: str = "",
        expected_delivery: datetime | None = None,
        max_revisions: int | None = None,
        payout_destination: str | None = None,
        idempotency_key: str | None = None,
    ) -> Order:
        """Create a direct-purchase order and authorize its payment.

        The order is committed in pending_payment before the processor is
        called. It moves to paid only once the processor confirms the funds
        are held.

        With an idempotency_key, only the first request creates an order; a
        repeat, concurrent or not, returns that order.

        Raises:
            PaymentAuthorizationFailedError: the order exists but stays in
                pending_payment; the buyer may retry_authorization.
        """
        fees = self._fees(amount, fee_tier)
        self._check_parties(buyer_id, seller_id)
        order = self._new_order(
            buyer_id=buyer_id,
            seller_id=seller_id,
            listing_id=listing_id,
            fees=fees,
            fee_tier=FeeTier(fee_tier),
            order_type=OrderType.DIRECT_PURCHASE,
            currency=currency,
            requirements=requirements,
            expected_delivery=expected_delivery,
            max_revisions=max_revisions,
            payout_destination=payout_destination,
        )

        if idempotency_key and self._idempotency is not None:
            owner = await self._idempotency.claim("order", idempotency_key, str(order.id))
            if owner != str(order.id):
                logger.info("order.create_replayed", order_id=owner, key=idempotency_key)
                return await self._idempotency.replay(
                    idempotency_key, lambda: self._find_order(uuid.UUID(owner))
                )

        try:
            async with self._session_factory() as session, session.begin():
                await self._insert(session, order, buyer_id)
        except Exception:
            if idempotency_key and self._idempotency is not None:
                await self._idempotency.release("order", idempotency_key, str(order.id))
            raise

        logger.info(
            "order.created",
            order_id=str(order.id),
            buyer_id=buyer_id,
            seller_id=seller_id,
            amount=order.amount,
            platform_fee=order.platform_fee,
        )
        return await self._authorize(order.id, buyer_id, strict=False)

    async def materialize_from_offer(
        self,
        session: AsyncSession,
        offer: Offer,
        actor: str,
    ) -> Order:
        """Create the order for an accepted offer inside the caller's transaction.

        The offer's intent is already authorized, so the order is confirmed
        to paid straight away against the processor's status.
        """
        fees = self._fees(offer.amount, offer.fee_tier)
        order = self._new_order(
            buyer_id=offer.buyer_id,
            seller_id=offer.seller_id,
            listing_id=offer.listing_id,
            fees=fees,
            fee_tier=FeeTier(offer.fee_tier),
            order_type=OrderType.ACCEPTED_OFFER,
            currency=offer.currency,
            requirements=offer.requirements,
            expected_delivery=offer.expected_delivery,
            offer_id=offer.id,
        )
        await self._insert(session, order, actor)

        timeline = TimelineRepository(session)
        await self._settlement.link_intent(
            order,
            offer.payment_intent_ref,
            timeline,
            source={"offer_id": str(offer.id)},
        )
        snapshot = await self._settlement.confirm_authorization(order)
        order.paid_at = _now()
        await self._record(
            session,
            order,
            OrderStatus.PENDING_PAYMENT,
            OrderStatus.PAID,
            "payment_confirmed",
            SYSTEM_ACTOR,
            {"intent_ref": snapshot.intent_ref, "intent_status": snapshot.status.value},
        )
        logger.info(
            "order.created_from_offer",
            order_id=str(order.id),
            offer_id=str(offer.id),
            amount=order.amount,
        )
        return order

    # ------------------------------------------------------------------
    # Funding
    # ------------------------------------------------------------------

    async def retry_authorization(self, order_id: uuid.UUID, actor: str) -> Order:
        """Buyer retries payment after a failed authorization."""
        async with self._session_factory() as session:
            order = await self._get_order_or_raise(session, order_id)
        if resolve_role(actor, order.buyer_id, order.seller_id) is not ActorRole.BUYER:
            raise UnauthorizedActionError(
                actor, "retry_authorization", order.status, entity="order"
            )
        return await self._authorize(order_id, actor, strict=True)

    async def confirm_payment(self, order_id: uuid.UUID, actor: str = SYSTEM_ACTOR) -> Order:
        """Processor callback / poll: pending_payment -> paid on confirmed status."""
        return await self._authorize(order_id, actor, strict=True)

    async def _authorize(self, order_id: uuid.UUID, actor: str, *, strict: bool) -> Order:
        failure: PaymentAuthorizationFailedError | None = None
        async with self._locked(order_id) as (session, order):
            current, new = self._guard(order, actor, "payment_confirmed")
            timeline = TimelineRepository(session)
            try:
                snapshot = await self._settlement.authorize(
                    order,
                    idempotency_key=f"order-{order.id}",
                    timeline=timeline,
                    actor=actor,
                )
                if strict or snapshot.status.holds_funds:
                    snapshot = await self._settlement.confirm_authorization(order)
            except PaymentAuthorizationFailedError as exc:
                await timeline.append(
                    order.id,
                    EventType.PAYMENT_AUTHORIZATION_FAILED,
                    current,
                    current,
                    performed_by=actor,
                    event_data={"reason": exc.reason, "intent_ref": exc.intent_ref},
                )
                failure = exc
            else:
                if snapshot.status.holds_funds:
                    order.paid_at = _now()
                    await self._record(
                        session,
                        order,
                        current,
                        new,
                        "payment_confirmed",
                        actor,
                        {"intent_ref": snapshot.intent_ref, "intent_status": snapshot.status.value},
                    )

        if failure is not None:
            logger.warning("order.authorization_failed", order_id=str(order_id), reason=failure.reason)
            raise failure
        if order.status == OrderStatus.PAID:
            logger.info("order.paid", order_id=str(order_id), intent_ref=order.payment_intent_ref)
        else:
            logger.info("order.awaiting_authorization", order_id=str(order_id))
        return order

    # ------------------------------------------------------------------
    # Work
    # ------------------------------------------------------------------

    async def start_processing(self, order_id: uuid.UUID, actor: str) -> Order:
        """Seller acknowledges a paid order."""
        async with self._locked(order_id) as (session, order):
            current, new = self._guard(order, actor, "seller_acknowledges")
            await self._record(session, order, current, new, "seller_acknowledges", actor)
        logger.info("order.processing", order_id=str(order_id))
        return order

    async def start_work(self, order_id: uuid.UUID, actor: str) -> Order:
        """Seller starts work (from paid or processing)."""
        async with self._locked(order_id) as (session, order):
            current, new = self._guard(order, actor, "seller_starts_work")
            await self._record(session, order, current, new, "seller_starts_work", actor)
        logger.info("order.in_progress", order_id=str(order_id))
        return order

    async def deliver(
        self,
        order_id: uuid.UUID,
        actor: str,
        message: str,
        files: list[str] | None = None,
    ) -> Order:
        """Seller delivers (or redelivers after a revision request)."""
        async with self._locked(order_id) as (session, order):
            current, new = self._guard(order, actor, "seller_delivers")
            if not message or not message.strip():
                raise InvalidRequestError("A delivery requires a non-empty message")

            order.delivery_message = message.strip()
            order.delivery_files = list(files or [])
            order.delivered_at = _now()
            await self._record(
                session,
                order,
                current,
                new,
                "seller_delivers",
                actor,
                {
                    "message": order.delivery_message,
                    "files": order.delivery_files,
                    "redelivery": current is OrderStatus.IN_REVISION,
                },
            )
        logger.info(
            "order.delivered",
            order_id=str(order_id),
            files=len(order.delivery_files or []),
            revisions=order.revisions,
        )
        return order

    # ------------------------------------------------------------------
    # Buyer review
    # ------------------------------------------------------------------

    async def accept_delivery(self, order_id: uuid.UUID, actor: str) -> Order:
        """Buyer accepts the delivery: capture, transfer, complete.

        completed and payment_released are written in the same flush. If the
        transfer fails after the capture, the order moves to disputed and
        PaymentSettlementFailedError is raised after the commit.
        """
        failure: PaymentSettlementFailedError | None = None
        async with self._locked(order_id) as (session, order):
            current, new = self._guard(order, actor, "buyer_accepts")
            timeline = TimelineRepository(session)
            await self._settlement.capture(order, timeline)
            try:
                receipt = await self._settlement.transfer(order, timeline)
            except PaymentError as exc:
                order.dispute_reason = f"settlement failed: {exc.message}"
                order.disputed_at = _now()
                await self._record(
                    session,
                    order,
                    current,
                    OrderStatus.DISPUTED,
                    "settlement_failed",
                    SYSTEM_ACTOR,
                    {"reason": exc.message, "intent_ref": order.payment_intent_ref},
                )
                failure = PaymentSettlementFailedError(
                    str(order.id), exc.message, order.payment_intent_ref
                )
            else:
                order.payment_released = True
                order.completed_at = _now()
                await self._record(
                    session,
                    order,
                    current,
                    new,
                    "buyer_accepts",
                    actor,
                    {
                        "transfer_ref": receipt.transfer_ref,
                        "seller_amount": order.seller_amount,
                        "platform_fee": order.platform_fee,
                    },
                )

        if failure is not None:
            logger.error("order.settlement_failed", order_id=str(order_id), reason=failure.reason)
            raise failure
        logger.info(
            "order.completed",
            order_id=str(order_id),
            seller_amount=order.seller_amount,
            platform_fee=order.platform_fee,
        )
        return order

    async def request_revision(self, order_id: uuid.UUID, actor: str, notes: str = "") -> Order:
        """Buyer sends a delivery back. Rejected once the revision bound is reached."""
        async with self._locked(order_id) as (session, order):
            current, new = self._guard(order, actor, "buyer_requests_revision")
            if order.revisions >= order.max_revisions:
                raise RevisionLimitExceededError(str(order.id), order.revisions, order.max_revisions)

            order.revisions += 1
            order.revision_notes = notes or None
            await self._record(
                session,
                order,
                current,
                new,
                "buyer_requests_revision",
                actor,
                {"revision": order.revisions, "max_revisions": order.max_revisions, "notes": notes},
            )
        logger.info(
            "order.revision_requested",
            order_id=str(order_id),
            revision=order.revisions,
            revisions_left=order.revisions_left,
        )
        return order

    # ------------------------------------------------------------------
    # Cancellation & disputes
    # ------------------------------------------------------------------

    async def cancel_order(self, order_id: uuid.UUID, actor: str, reason: str = "") -> Order:
        """Buyer cancels an unpaid order. Held funds, if any, are refunded once."""
        async with self._locked(order_id) as (session, order):
            current, new = self._guard(order, actor, "buyer_cancels")
            await self._settlement.refund(
                order, reason or "cancelled by buyer", TimelineRepository(session)
            )
            order.cancellation_reason = reason or None
            order.cancelled_at = _now()
            await self._record(session, order, current, new, "buyer_cancels", actor, {"reason": reason})
        logger.info("order.cancelled", order_id=str(order_id), by=actor)
        return order

    async def open_dispute(self, order_id: uuid.UUID, actor: str, reason: str) -> Order:
        """Either party freezes a funded order pending external resolution."""
        async with self._locked(order_id) as (session, order):
            current, new = self._guard(order, actor, "party_disputes")
            if not reason or not reason.strip():
                raise InvalidRequestError("A dispute requires a reason")

            order.dispute_reason = reason.strip()
            order.disputed_at = _now()
            await self._record(
                session, order, current, new, "party_disputes", actor, {"reason": order.dispute_reason}
            )
        logger.info("order.disputed", order_id=str(order_id), by=actor)
        return order

    async def admin_cancel(self, order_id: uuid.UUID, reason: str) -> Order:
        """Administrative cancel of any non-terminal order, refunding held funds."""
        async with self._locked(order_id) as (session, order):
            current, new = self._guard(order, SYSTEM_ACTOR, "admin_cancels")
            await self._settlement.refund(order, reason or "administrative cancel", TimelineRepository(session))
            order.cancellation_reason = reason or None
            order.cancelled_at = _now()
            await self._record(
                session, order, current, new, "admin_cancels", SYSTEM_ACTOR, {"reason": reason}
            )
        logger.info("order.admin_cancelled", order_id=str(order_id), previous=current.value)
        return order

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_order(self, order_id: uuid.UUID) -> Order:
        """Get an order or raise."""
        async with self._session_factory() as session:
            return await self._get_order_or_raise(session, order_id)

    async def _find_order(self, order_id: uuid.UUID) -> Order | None:
        async with self._session_factory() as session:
            return await OrderRepository(session).get_by_id(order_id)

    async def list_for_buyer(self, buyer_id: str) -> list[Order]:
        async with self._session_factory() as session:
            return await OrderRepository(session).get_by_buyer(buyer_id)

    async def list_for_seller(self, seller_id: str) -> list[Order]:
        async with self._session_factory() as session:
            return await OrderRepository(session).get_by_seller(seller_id)

    async def available_actions(self, order_id: uuid.UUID, actor: str) -> dict:
        """Events actor may fire on the order right now."""
        order = await self.get_order(order_id)
        role = resolve_role(actor, order.buyer_id, order.seller_id)
        events = allowed_events_for(order.status, role)
        if order.revisions_left <= 0 and "buyer_requests_revision" in events:
            events.remove("buyer_requests_revision")
        return {
            "order_id": str(order.id),
            "status": order.status,
            "role": role.value if role else None,
            "allowed_events": events,
            "revisions": order.revisions,
            "max_revisions": order.max_revisions,
            "revisions_left": order.revisions_left,
        }

    async def get_timeline(self, order_id: uuid.UUID) -> list[TimelineEvent]:
        """Audit trail."""
        return await self.ledger.history(order_id)

    async def verify_timeline(self, order_id: uuid.UUID) -> OrderProjection:
        return await self.ledger.verify(order_id)

    async def buyer_summary(self, buyer_id: str) -> dict:
        """Order counts and spend for a buyer, from the stored orders."""
        orders = await self.list_for_buyer(buyer_id)
        completed = [o for o in orders if o.status == OrderStatus.COMPLETED]
        return {
            "buyer_id": buyer_id,
            "total_orders": len(orders),
            "by_status": dict(Counter(o.status for o in orders)),
            "completed_orders": len(completed),
            "total_spent": sum(o.amount for o in completed),
            "in_escrow": sum(o.amount for o in orders if o.status in FUNDED_STATUSES),
        }

    async def seller_summary(self, seller_id: str) -> dict:
        """Order counts and earnings for a seller, from the stored orders."""
        orders = await self.list_for_seller(seller_id)
        completed = [o for o in orders if o.status == OrderStatus.COMPLETED]
        return {
            "seller_id": seller_id,
            "total_orders": len(orders),
            "by_status": dict(Counter(o.status for o in orders)),
            "completed_orders": len(completed),
            "total_earnings": sum(o.seller_amount for o in completed),
            "pending_earnings": sum(
                o.seller_amount for o in orders if o.status in FUNDED_STATUSES
            ),
            "platform_fees": sum(o.platform_fee for o in completed),
        }

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _locked(self, order_id: uuid.UUID) -> AsyncIterator[tuple[AsyncSession, Order]]:
        """Hold the order lock and a transaction that commits on clean exit."""
        async with self._locks.hold(order_id):
            async with self._session_factory() as session, session.begin():
                order = await self._get_order_or_raise(session, order_id)
                yield session, order

    @staticmethod
    async def _get_order_or_raise(session: AsyncSession, order_id: uuid.UUID) -> Order:
        order = await OrderRepository(session).get_by_id(order_id)
        if order is None:
            raise OrderNotFoundError(str(order_id))
        return order

    @staticmethod
    def _guard(order: Order, actor: str, event_name: str) -> tuple[OrderStatus, OrderStatus]:
        """Check role, then state. Returns (current, target) status.

        Raises UnauthorizedActionError or InvalidTransitionError; both name
        the current state and the events this actor may fire from it.
        """
        current = OrderStatus(order.status)
        role = resolve_role(actor, order.buyer_id, order.seller_id)
        if role is None or role not in ORDER_EVENT_ROLES[event_name]:
            raise UnauthorizedActionError(
                actor, event_name, current, allowed_events_for(current, role)
            )
        try:
            target = validate_transition(current, event_name)
        except InvalidTransitionError as err:
            raise InvalidTransitionError(
                current, event_name, allowed_events_for(current, role)
            ) from err
        return current, OrderStatus(target)

    @staticmethod
    async def _record(
        session: AsyncSession,
        order: Order,
        current: OrderStatus,
        new: OrderStatus,
        event_name: str,
        actor: str,
        data: dict | None = None,
    ) -> None:
        """Write the new status and its timeline event."""
        await OrderRepository(session).update_status(order, new)
        await TimelineRepository(session).append(
            order.id,
            EVENT_FOR_TRANSITION[event_name],
            current,
            new,
            performed_by=actor,
            event_data=data,
        )

    async def _insert(self, session: AsyncSession, order: Order, actor: str) -> None:
        await OrderRepository(session).create(order)
        await TimelineRepository(session).append(
            order.id,
            EventType.ORDER_CREATED,
            None,
            OrderStatus.PENDING_PAYMENT,
            performed_by=actor,
            event_data={
                "order_type": order.order_type,
                "amount": order.amount,
                "platform_fee": order.platform_fee,
                "seller_amount": order.seller_amount,
                "fee_tier": order.fee_tier,
                "offer_id": str(order.offer_id) if order.offer_id else None,
            },
        )

    def _new_order(
        self,
        *,
        buyer_id: str,
        seller_id: str,
        listing_id: str,
        fees: FeeBreakdown,
        fee_tier: FeeTier,
        order_type: OrderType,
        currency: str | None = None,
        requirements: str = "",
        expected_delivery: datetime | None = None,
        max_revisions: int | None = None,
        payout_destination: str | None = None,
        offer_id: uuid.UUID | None = None,
    ) -> Order:
        if max_revisions is None:
            max_revisions = self._settings.default_max_revisions
        if max_revisions < 0:
            raise InvalidRequestError("max_revisions cannot be negative")
        return Order(
            id=uuid.uuid4(),
            buyer_id=buyer_id,
            seller_id=seller_id,
            listing_id=listing_id,
            offer_id=offer_id,
            order_type=order_type.value,
            amount=fees.amount,
            platform_fee=fees.platform_fee,
            seller_amount=fees.seller_amount,
            currency=normalize_currency(currency, self._settings.default_currency),
            fee_tier=fee_tier.value,
            status=OrderStatus.PENDING_PAYMENT.value,
            revisions=0,
            max_revisions=max_revisions,
            requirements=requirements or "",
            expected_delivery=expected_delivery,
            payout_destination=payout_destination or seller_id,
            payment_released=False,
        )

    def _fees(self, amount: int, fee_tier: FeeTier | str) -> FeeBreakdown:
        validate_amount(amount)
        try:
            tier = FeeTier(fee_tier)
        except ValueError:
            valid = ", ".join(t.value for t in FeeTier)
            raise InvalidRequestError(f"Unknown fee tier '{fee_tier}'. Valid tiers: {valid}") from None
        return compute_fees(amount, tier, self._settings.fee_rates_bps)

    @staticmethod
    def _check_parties(buyer_id: str, seller_id: str) -> None:
        if not buyer_id or not seller_id:
            raise InvalidRequestError("Both buyer_id and seller_id are required")
        if buyer_id == seller_id:
            raise InvalidRequestError("A buyer cannot purchase from themselves")
