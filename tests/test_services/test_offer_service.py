"""Tests for the OfferService negotiation lifecycle."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from marketplace_escrow.domain.enums import EventType, IntentStatus, OfferStatus, OrderStatus
from marketplace_escrow.domain.exceptions import (
    InvalidAmountError,
    InvalidRequestError,
    InvalidTransitionError,
    OfferExpiredError,
    PaymentAuthorizationFailedError,
    ProcessorUnavailableError,
    UnauthorizedActionError,
)

BUYER = "buyer-1"
SELLER = "seller-1"


class TestCreateAndRevise:
    @pytest.mark.asyncio
    async def test_create_defaults(self, offer_service, settings) -> None:
        before = datetime.now(UTC)
        offer = await offer_service.create_offer(BUYER, SELLER, "listing-1", 5000)
        assert offer.status == OfferStatus.PENDING
        assert offer.currency == "usd"
        assert offer.payment_intent_ref is None
        assert offer.expires_at >= before + timedelta(seconds=settings.offer_ttl_seconds)

    @pytest.mark.asyncio
    async def test_expiry_must_be_in_the_future(self, offer_service) -> None:
        with pytest.raises(InvalidRequestError):
            await offer_service.create_offer(
                BUYER, SELLER, "listing-1", 5000,
                expires_at=datetime.now(UTC) - timedelta(minutes=1),
            )

    @pytest.mark.asyncio
    async def test_rejects_bad_amount(self, offer_service) -> None:
        with pytest.raises(InvalidAmountError):
            await offer_service.create_offer(BUYER, SELLER, "listing-1", 0)

    @pytest.mark.asyncio
    async def test_buyer_revises_pending_offer(self, make_offer, offer_service) -> None:
        offer = await make_offer(5000)
        offer = await offer_service.revise_amount(offer.id, BUYER, 5500)
        assert offer.amount == 5500
        assert offer.status == OfferStatus.PENDING

    @pytest.mark.asyncio
    async def test_amount_frozen_once_paid(self, make_offer, offer_service) -> None:
        offer = await make_offer(5000, paid=True)
        with pytest.raises(InvalidTransitionError):
            await offer_service.revise_amount(offer.id, BUYER, 100)

    @pytest.mark.asyncio
    async def test_seller_cannot_revise(self, make_offer, offer_service) -> None:
        offer = await make_offer(5000)
        with pytest.raises(UnauthorizedActionError):
            await offer_service.revise_amount(offer.id, SELLER, 9999)

    @pytest.mark.asyncio
    async def test_idempotent_create(self, offer_service) -> None:
        first = await offer_service.create_offer(
            BUYER, SELLER, "listing-1", 5000, idempotency_key="offer-abc"
        )
        second = await offer_service.create_offer(
            BUYER, SELLER, "listing-1", 5000, idempotency_key="offer-abc"
        )
        assert first.id == second.id
        assert len(await offer_service.list_for_buyer(BUYER)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_retries_create_one_offer(self, offer_service) -> None:
        results = await asyncio.gather(
            offer_service.create_offer(
                BUYER, SELLER, "listing-1", 5000, idempotency_key="offer-xyz"
            ),
            offer_service.create_offer(
                BUYER, SELLER, "listing-1", 5000, idempotency_key="offer-xyz"
            ),
        )
        assert results[0].id == results[1].id
        assert len(await offer_service.list_for_buyer(BUYER)) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("currency", ["dollars", "u$d"])
    async def test_bad_currency_rejected_before_payment(
        self, offer_service, processor, currency: str
    ) -> None:
        with pytest.raises(InvalidRequestError, match="currency"):
            await offer_service.create_offer(
                BUYER, SELLER, "listing-1", 5000, currency=currency
            )
        assert await offer_service.list_for_buyer(BUYER) == []
        assert processor.intents == {}

    @pytest.mark.asyncio
    async def test_currency_is_normalized(
        self, make_offer, offer_service, order_service
    ) -> None:
        offer = await make_offer(5000, paid=True, currency="EUR")
        assert offer.currency == "eur"

        offer = await offer_service.accept_offer(offer.id, SELLER)
        order = await order_service.get_order(offer.order_id)
        assert order.currency == "eur"


class TestPayment:
    @pytest.mark.asyncio
    async def test_pay_reaches_paid_when_funds_held(self, make_offer, processor) -> None:
        offer = await make_offer(5000, paid=True)
        assert offer.status == OfferStatus.PAID
        assert offer.paid_at is not None
        assert processor.intents[offer.payment_intent_ref].status is IntentStatus.AUTHORIZED

    @pytest.mark.asyncio
    async def test_pending_intent_waits_for_confirmation(
        self, make_offer, offer_service, processor
    ) -> None:
        processor.auto_authorize = False
        offer = await make_offer(5000, paid=True)
        assert offer.status == OfferStatus.PENDING_PAYMENT

        with pytest.raises(PaymentAuthorizationFailedError):
            await offer_service.confirm_offer_payment(offer.id)

        processor.authorize(offer.payment_intent_ref)
        offer = await offer_service.confirm_offer_payment(offer.id)
        assert offer.status == OfferStatus.PAID

    @pytest.mark.asyncio
    async def test_failed_authorization_leaves_offer_pending(
        self, make_offer, offer_service, processor, settings
    ) -> None:
        offer = await make_offer(5000)
        for _ in range(settings.processor_max_attempts):
            processor.fail_next("create_intent", ProcessorUnavailableError("processor down"))

        with pytest.raises(PaymentAuthorizationFailedError):
            await offer_service.pay_offer(offer.id, BUYER)

        offer = await offer_service.get_offer(offer.id)
        assert offer.status == OfferStatus.PENDING
        assert offer.payment_intent_ref is None


class TestSellerDecision:
    @pytest.mark.asyncio
    async def test_reject_refunds_in_full_and_creates_no_order(
        self, make_offer, offer_service, order_service, processor
    ) -> None:
        offer = await make_offer(5000, paid=True)
        offer = await offer_service.reject_offer(offer.id, SELLER, "too low")

        assert offer.status == OfferStatus.REJECTED
        assert offer.responded_at is not None
        assert offer.order_id is None
        assert processor.calls_for("refund") == [offer.payment_intent_ref]
        intent = processor.intents[offer.payment_intent_ref]
        assert intent.status is IntentStatus.CANCELED
        assert intent.amount == 5000
        assert await order_service.list_for_buyer(BUYER) == []

    @pytest.mark.asyncio
    async def test_accept_creates_paid_order(
        self, make_offer, offer_service, order_service, processor
    ) -> None:
        offer = await make_offer(5000, paid=True)
        offer = await offer_service.accept_offer(offer.id, SELLER)

        assert offer.status == OfferStatus.ACCEPTED
        assert offer.order_id is not None

        order = await order_service.get_order(offer.order_id)
        assert order.status == OrderStatus.PAID
        assert order.order_type == "accepted_offer"
        assert order.offer_id == offer.id
        assert order.payment_intent_ref == offer.payment_intent_ref
        assert order.platform_fee == 1500
        assert order.seller_amount == 3500
        # The offer's authorization carries over; no second intent.
        assert len(processor.intents) == 1

        types = [e.event_type for e in await order_service.get_timeline(order.id)]
        assert types == [
            EventType.ORDER_CREATED,
            EventType.PAYMENT_INTENT_CREATED,
            EventType.PAYMENT_CONFIRMED,
        ]
        projection = await order_service.verify_timeline(order.id)
        assert projection.status is OrderStatus.PAID

    @pytest.mark.asyncio
    async def test_accepted_offer_order_completes(
        self, make_offer, offer_service, order_service
    ) -> None:
        offer = await offer_service.accept_offer((await make_offer(5000, paid=True)).id, SELLER)
        order_id = offer.order_id
        await order_service.start_work(order_id, SELLER)
        await order_service.deliver(order_id, SELLER, "done")
        order = await order_service.accept_delivery(order_id, BUYER)
        assert order.status == OrderStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cannot_accept_unpaid_offer(self, make_offer, offer_service) -> None:
        offer = await make_offer(5000)
        with pytest.raises(InvalidTransitionError) as exc_info:
            await offer_service.accept_offer(offer.id, SELLER)
        assert exc_info.value.allowed_events == []

    @pytest.mark.asyncio
    async def test_buyer_cannot_accept_own_offer(self, make_offer, offer_service) -> None:
        offer = await make_offer(5000, paid=True)
        with pytest.raises(UnauthorizedActionError):
            await offer_service.accept_offer(offer.id, BUYER)


class TestCancelAndExpire:
    @pytest.mark.asyncio
    async def test_cancel_pending_offer(self, make_offer, offer_service, processor) -> None:
        offer = await make_offer(5000)
        offer = await offer_service.cancel_offer(offer.id, BUYER)
        assert offer.status == OfferStatus.CANCELLED
        assert processor.calls == []

    @pytest.mark.asyncio
    async def test_paid_offer_cannot_be_cancelled(self, make_offer, offer_service) -> None:
        offer = await make_offer(5000, paid=True)
        with pytest.raises(InvalidTransitionError):
            await offer_service.cancel_offer(offer.id, BUYER)

    @pytest.mark.asyncio
    async def test_cancel_refunds_authorization_that_landed_late(
        self, make_offer, offer_service, processor
    ) -> None:
        processor.auto_authorize = False
        offer = await make_offer(5000, paid=True)
        processor.authorize(offer.payment_intent_ref)

        offer = await offer_service.cancel_offer(offer.id, BUYER)
        assert offer.status == OfferStatus.CANCELLED
        assert processor.calls_for("refund") == [offer.payment_intent_ref]

    @pytest.mark.asyncio
    async def test_sweep_expires_stale_offers(self, make_offer, offer_service) -> None:
        stale = await make_offer(5000)
        later = datetime.now(UTC) + timedelta(days=30)

        expired = await offer_service.expire_stale_offers(now=later)
        assert [o.id for o in expired] == [stale.id]
        offer = await offer_service.get_offer(stale.id)
        assert offer.status == OfferStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_sweep_includes_offer_expiring_exactly_now(
        self, make_offer, offer_service
    ) -> None:
        offer = await make_offer(5000)
        deadline = offer.expires_at
        if deadline.tzinfo is None:
            deadline = deadline.replace(tzinfo=UTC)

        expired = await offer_service.expire_stale_offers(now=deadline)
        assert [o.id for o in expired] == [offer.id]

    @pytest.mark.asyncio
    async def test_sweep_ignores_live_and_paid_offers(self, make_offer, offer_service) -> None:
        await make_offer(5000)
        await make_offer(6000, paid=True)
        assert await offer_service.expire_stale_offers() == []

    @pytest.mark.asyncio
    async def test_acting_on_elapsed_offer_expires_it(
        self, make_offer, offer_service, session_factory
    ) -> None:
        offer = await make_offer(5000)
        async with session_factory() as session, session.begin():
            stored = await session.get(type(offer), offer.id)
            stored.expires_at = datetime.now(UTC) - timedelta(seconds=1)

        with pytest.raises(OfferExpiredError):
            await offer_service.pay_offer(offer.id, BUYER)

        offer = await offer_service.get_offer(offer.id)
        assert offer.status == OfferStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_available_actions_on_elapsed_offer(
        self, make_offer, offer_service, session_factory
    ) -> None:
        offer = await make_offer(5000)
        actions = await offer_service.available_actions(offer.id, BUYER)
        assert actions["allowed_events"] == [
            "buyer_cancels",
            "buyer_initiates_payment",
            "buyer_revises_amount",
        ]

        async with session_factory() as session, session.begin():
            stored = await session.get(type(offer), offer.id)
            stored.expires_at = datetime.now(UTC) - timedelta(seconds=1)

        actions = await offer_service.available_actions(offer.id, BUYER)
        assert actions["expired"] is True
        assert actions["allowed_events"] == []
