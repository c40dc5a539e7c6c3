"""Offer Service — negotiation of a price before an order exists.

Flow:
    create_offer -> pay_offer -> (processor confirms) -> accept_offer -> Order
                                                      -> reject_offer -> refund
    cancel_offer / expiry from pending or pending_payment, refunding held funds.

Every action first checks the offer's expiry: an elapsed offer is marked
expired (refunding anything held), committed, and OfferExpiredError raised.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from marketplace_escrow.config import get_settings
from marketplace_escrow.domain.enums import SYSTEM_ACTOR, FeeTier, OfferStatus
from marketplace_escrow.domain.exceptions import (
    InvalidRequestError,
    InvalidTransitionError,
    OfferExpiredError,
    OfferNotFoundError,
    PaymentError,
    UnauthorizedActionError,
)
from marketplace_escrow.domain.fees import normalize_currency, validate_amount
from marketplace_escrow.domain.state_machine import (
    OFFER_EVENT_ROLES,
    allowed_events_for,
    resolve_role,
    validate_transition,
)
from marketplace_escrow.infrastructure.database.orm_models import Offer
from marketplace_escrow.infrastructure.database.repositories import OfferRepository
from marketplace_escrow.infrastructure.locks import get_lock_registry
from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from marketplace_escrow.config import Settings
    from marketplace_escrow.infrastructure.locks import EntityLockRegistry
    from marketplace_escrow.infrastructure.redis_client import IdempotencyStore
    from marketplace_escrow.services.order_service import OrderService
    from marketplace_escrow.services.settlement_service import SettlementCoordinator

    _Apply = Callable[[AsyncSession, Offer, OfferStatus, OfferStatus], Awaitable[None]]

logger = get_logger(__name__)

EXPIRABLE_STATUSES = (OfferStatus.PENDING, OfferStatus.PENDING_PAYMENT)


def _now() -> datetime:
    return datetime.now(UTC)


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; every stored timestamp is UTC.
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


class OfferService:
    """Manages the offer lifecycle."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settlement: SettlementCoordinator,
        orders: OrderService,
        locks: EntityLockRegistry | None = None,
        settings: Settings | None = None,
        idempotency: IdempotencyStore | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settlement = settlement
        self._orders = orders
        self._locks = locks or get_lock_registry()
        self._settings = settings or get_settings()
        self._idempotency = idempotency

    # ------------------------------------------------------------------
    # Creation & negotiation
    # ------------------------------------------------------------------

    async def create_offer(
        self,
        buyer_id: str,
        seller_id: str,
        listing_id: str,
        amount: int,
        fee_tier: FeeTier | str = FeeTier.STANDARD,
        *,
        message: str = "",
        requirements: str = "",
        expected_delivery: datetime | None = None,
        currency: str | None = None,
        expires_at: datetime | None = None,
        idempotency_key: str | None = None,
    ) -> Offer:
        """Create a pending offer from a buyer to a seller.

        A repeated idempotency_key returns the offer made by the first request.
        """
        validate_amount(amount)
        try:
            tier = FeeTier(fee_tier)
        except ValueError:
            raise InvalidRequestError(f"Unknown fee tier '{fee_tier}'") from None
        if not buyer_id or not seller_id:
            raise InvalidRequestError("Both buyer_id and seller_id are required")
        if buyer_id == seller_id:
            raise InvalidRequestError("A buyer cannot make an offer to themselves")

        now = _now()
        expires_at = _aware(expires_at) if expires_at else now + timedelta(
            seconds=self._settings.offer_ttl_seconds
        )
        if expires_at <= now:
            raise InvalidRequestError("An offer must expire in the future")

        offer = Offer(
            id=uuid.uuid4(),
            listing_id=listing_id,
            buyer_id=buyer_id,
            seller_id=seller_id,
            amount=amount,
            currency=normalize_currency(currency, self._settings.default_currency),
            fee_tier=tier.value,
            message=message or "",
            requirements=requirements or "",
            expected_delivery=expected_delivery,
            status=OfferStatus.PENDING.value,
            expires_at=expires_at,
        )

        if idempotency_key and self._idempotency is not None:
            owner = await self._idempotency.claim("offer", idempotency_key, str(offer.id))
            if owner != str(offer.id):
                logger.info("offer.create_replayed", offer_id=owner, key=idempotency_key)
                return await self._idempotency.replay(
                    idempotency_key, lambda: self._find_offer(uuid.UUID(owner))
                )

        try:
            async with self._session_factory() as session, session.begin():
                await OfferRepository(session).create(offer)
        except Exception:
            if idempotency_key and self._idempotency is not None:
                await self._idempotency.release("offer", idempotency_key, str(offer.id))
            raise

        logger.info(
            "offer.created",
            offer_id=str(offer.id),
            buyer_id=buyer_id,
            seller_id=seller_id,
            amount=amount,
            expires_at=expires_at.isoformat(),
        )
        return offer

    async def revise_amount(self, offer_id: uuid.UUID, actor: str, amount: int) -> Offer:
        """Buyer changes the price while the offer is still pending."""
        validate_amount(amount)

        async def apply(session: AsyncSession, offer: Offer, current: OfferStatus, new: OfferStatus) -> None:
            previous = offer.amount
            offer.amount = amount
            await OfferRepository(session).update_status(offer, new)
            logger.info("offer.amount_revised", offer_id=str(offer.id), old=previous, new=amount)

        return await self._transition(offer_id, actor, "buyer_revises_amount", apply)

    # ------------------------------------------------------------------
    # Payment
    # ------------------------------------------------------------------

    async def pay_offer(self, offer_id: uuid.UUID, actor: str) -> Offer:
        """Buyer initiates payment; the amount is frozen from here on.

        The offer reaches paid only when the processor confirms the funds
        are held. A pending intent leaves it in pending_payment until
        confirm_offer_payment.
        """

        async def apply(session: AsyncSession, offer: Offer, current: OfferStatus, new: OfferStatus) -> None:
            snapshot = await self._settlement.authorize(
                offer, idempotency_key=f"offer-{offer.id}", actor=actor
            )
            await OfferRepository(session).update_status(offer, new)
            if snapshot.status.holds_funds:
                await self._mark_paid(session, offer)

        offer = await self._transition(offer_id, actor, "buyer_initiates_payment", apply)
        logger.info("offer.payment_initiated", offer_id=str(offer_id), status=offer.status)
        return offer

    async def confirm_offer_payment(self, offer_id: uuid.UUID, actor: str = SYSTEM_ACTOR) -> Offer:
        """Processor callback / poll: pending_payment -> paid on confirmed status."""

        async def apply(session: AsyncSession, offer: Offer, current: OfferStatus, new: OfferStatus) -> None:
            await self._mark_paid(session, offer)

        return await self._transition(offer_id, actor, "payment_authorized", apply)

    async def _mark_paid(self, session: AsyncSession, offer: Offer) -> None:
        await self._settlement.confirm_authorization(offer)
        new = OfferStatus(validate_transition(offer.status, "payment_authorized", entity="offer"))
        offer.paid_at = _now()
        await OfferRepository(session).update_status(offer, new)
        logger.info("offer.paid", offer_id=str(offer.id), intent_ref=offer.payment_intent_ref)

    # ------------------------------------------------------------------
    # Seller decision
    # ------------------------------------------------------------------

    async def accept_offer(self, offer_id: uuid.UUID, actor: str) -> Offer:
        """Seller accepts a paid offer; the order is created in the same transaction."""

        async def apply(session: AsyncSession, offer: Offer, current: OfferStatus, new: OfferStatus) -> None:
            offer.responded_at = _now()
            await OfferRepository(session).update_status(offer, new)
            order = await self._orders.materialize_from_offer(session, offer, actor)
            offer.order_id = order.id
            await session.flush()

        offer = await self._transition(offer_id, actor, "seller_accepts", apply)
        logger.info("offer.accepted", offer_id=str(offer_id), order_id=str(offer.order_id))
        return offer

    async def reject_offer(self, offer_id: uuid.UUID, actor: str, reason: str = "") -> Offer:
        """Seller declines a paid offer; the buyer is refunded in full."""

        async def apply(session: AsyncSession, offer: Offer, current: OfferStatus, new: OfferStatus) -> None:
            await self._settlement.refund(offer, reason or "offer rejected by seller")
            offer.responded_at = _now()
            await OfferRepository(session).update_status(offer, new)

        offer = await self._transition(offer_id, actor, "seller_rejects", apply)
        logger.info("offer.rejected", offer_id=str(offer_id), amount=offer.amount)
        return offer

    async def cancel_offer(self, offer_id: uuid.UUID, actor: str, reason: str = "") -> Offer:
        """Buyer withdraws an offer that has not been paid yet."""

        async def apply(session: AsyncSession, offer: Offer, current: OfferStatus, new: OfferStatus) -> None:
            await self._settlement.refund(offer, reason or "offer cancelled by buyer")
            await OfferRepository(session).update_status(offer, new)

        offer = await self._transition(offer_id, actor, "buyer_cancels", apply)
        logger.info("offer.cancelled", offer_id=str(offer_id))
        return offer

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    async def expire_stale_offers(self, now: datetime | None = None) -> list[Offer]:
        """Scheduled sweep: expire every pending offer whose deadline passed."""
        now = now or _now()
        async with self._session_factory() as session:
            candidates = await OfferRepository(session).get_expirable_ids(list(EXPIRABLE_STATUSES), now)

        expired: list[Offer] = []
        for offer_id in candidates:
            try:
                async with self._locks.hold(offer_id):
                    async with self._session_factory() as session, session.begin():
                        offer = await OfferRepository(session).get_by_id(offer_id)
                        if offer is None or not self._elapsed(offer, now):
                            continue
                        await self._expire(session, offer)
            except PaymentError as exc:
                logger.error("offer.expire_failed", offer_id=str(offer_id), error=exc.message)
                continue
            expired.append(offer)

        logger.info("offer.sweep_completed", candidates=len(candidates), expired=len(expired))
        return expired

    async def _expire(self, session: AsyncSession, offer: Offer) -> None:
        new = OfferStatus(validate_transition(offer.status, "deadline_passed", entity="offer"))
        await self._settlement.refund(offer, "offer expired")
        await OfferRepository(session).update_status(offer, new)
        logger.info("offer.expired", offer_id=str(offer.id), expires_at=str(offer.expires_at))

    @staticmethod
    def _elapsed(offer: Offer, now: datetime | None = None) -> bool:
        return offer.status in EXPIRABLE_STATUSES and _aware(offer.expires_at) <= (now or _now())

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_offer(self, offer_id: uuid.UUID) -> Offer:
        async with self._session_factory() as session:
            return await self._get_offer_or_raise(session, offer_id)

    async def _find_offer(self, offer_id: uuid.UUID) -> Offer | None:
        async with self._session_factory() as session:
            return await OfferRepository(session).get_by_id(offer_id)

    async def list_for_buyer(self, buyer_id: str) -> list[Offer]:
        async with self._session_factory() as session:
            return await OfferRepository(session).get_by_buyer(buyer_id)

    async def list_for_seller(self, seller_id: str) -> list[Offer]:
        async with self._session_factory() as session:
            return await OfferRepository(session).get_by_seller(seller_id)

    async def available_actions(self, offer_id: uuid.UUID, actor: str) -> dict:
        """Events actor may fire on the offer right now."""
        offer = await self.get_offer(offer_id)
        role = resolve_role(actor, offer.buyer_id, offer.seller_id)
        elapsed = self._elapsed(offer)
        events = allowed_events_for(offer.status, role, entity="offer")
        if elapsed:
            events = [e for e in events if e == "deadline_passed"]
        return {
            "offer_id": str(offer.id),
            "status": offer.status,
            "role": role.value if role else None,
            "allowed_events": events,
            "expired": elapsed,
        }

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _transition(
        self,
        offer_id: uuid.UUID,
        actor: str,
        event_name: str,
        apply: _Apply,
    ) -> Offer:
        """Lock, expire if due, guard, apply, commit."""
        expired = False
        async with self._locks.hold(offer_id):
            async with self._session_factory() as session, session.begin():
                offer = await self._get_offer_or_raise(session, offer_id)
                if self._elapsed(offer):
                    await self._expire(session, offer)
                    expired = True
                else:
                    current, new = self._guard(offer, actor, event_name)
                    await apply(session, offer, current, new)

        if expired:
            raise OfferExpiredError(str(offer.id), _aware(offer.expires_at).isoformat())
        return offer

    @staticmethod
    def _guard(offer: Offer, actor: str, event_name: str) -> tuple[OfferStatus, OfferStatus]:
        current = OfferStatus(offer.status)
        role = resolve_role(actor, offer.buyer_id, offer.seller_id)
        if role is None or role not in OFFER_EVENT_ROLES[event_name]:
            raise UnauthorizedActionError(
                actor,
                event_name,
                current,
                allowed_events_for(current, role, entity="offer"),
                entity="offer",
            )
        try:
            target = validate_transition(current, event_name, entity="offer")
        except InvalidTransitionError as err:
            raise InvalidTransitionError(
                current,
                event_name,
                allowed_events_for(current, role, entity="offer"),
                entity="offer",
            ) from err
        return current, OfferStatus(target)

    @staticmethod
    async def _get_offer_or_raise(session: AsyncSession, offer_id: uuid.UUID) -> Offer:
        offer = await OfferRepository(session).get_by_id(offer_id)
        if offer is None:
            raise OfferNotFoundError(str(offer_id))
        return offer
