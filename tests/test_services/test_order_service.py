"""Tests for the OrderService lifecycle against SQLite and the simulated processor."""

from __future__ import annotations

import asyncio
import uuid

import pytest

from marketplace_escrow.domain.enums import EventType, IntentStatus, OrderStatus
from marketplace_escrow.domain.exceptions import (
    DuplicateOperationError,
    InvalidAmountError,
    InvalidRequestError,
    InvalidTransitionError,
    OrderNotFoundError,
    PaymentAuthorizationFailedError,
    PaymentProcessorError,
    RevisionLimitExceededError,
    UnauthorizedActionError,
)

BUYER = "buyer-1"
SELLER = "seller-1"
STRANGER = "someone-else"


async def _event_types(order_service, order_id) -> list[str]:
    return [e.event_type for e in await order_service.get_timeline(order_id)]


class TestCreateOrder:
    @pytest.mark.asyncio
    async def test_standard_fee_split(self, order_service) -> None:
        order = await order_service.create_order(BUYER, SELLER, "listing-1", 10000)
        assert order.platform_fee == 3000
        assert order.seller_amount == 7000
        assert order.status == OrderStatus.PAID
        assert order.payment_intent_ref is not None
        assert order.payment_released is False

    @pytest.mark.asyncio
    async def test_timeline_records_creation_and_funding(self, order_service) -> None:
        order = await order_service.create_order(BUYER, SELLER, "listing-1", 10000)
        assert await _event_types(order_service, order.id) == [
            EventType.ORDER_CREATED,
            EventType.PAYMENT_INTENT_CREATED,
            EventType.PAYMENT_CONFIRMED,
        ]

    @pytest.mark.asyncio
    async def test_pending_intent_leaves_order_unpaid(self, order_service, processor) -> None:
        processor.auto_authorize = False
        order = await order_service.create_order(BUYER, SELLER, "listing-1", 10000)
        assert order.status == OrderStatus.PENDING_PAYMENT
        assert order.payment_intent_ref is not None

    @pytest.mark.asyncio
    async def test_confirm_payment_after_buyer_authorizes(self, order_service, processor) -> None:
        processor.auto_authorize = False
        order = await order_service.create_order(BUYER, SELLER, "listing-1", 10000)
        processor.authorize(order.payment_intent_ref)

        order = await order_service.confirm_payment(order.id)
        assert order.status == OrderStatus.PAID
        assert order.paid_at is not None

    @pytest.mark.asyncio
    async def test_confirm_payment_requires_processor_confirmation(
        self, order_service, processor
    ) -> None:
        processor.auto_authorize = False
        order = await order_service.create_order(BUYER, SELLER, "listing-1", 10000)

        with pytest.raises(PaymentAuthorizationFailedError, match="pending"):
            await order_service.confirm_payment(order.id)

        order = await order_service.get_order(order.id)
        assert order.status == OrderStatus.PENDING_PAYMENT
        assert EventType.PAYMENT_AUTHORIZATION_FAILED in await _event_types(order_service, order.id)

    @pytest.mark.asyncio
    async def test_declined_authorization_then_retry(self, order_service, processor) -> None:
        processor.fail_next("create_intent", PaymentProcessorError("card declined"))
        with pytest.raises(PaymentAuthorizationFailedError) as exc_info:
            await order_service.create_order(BUYER, SELLER, "listing-1", 10000)
        assert exc_info.value.retryable

        [order] = await order_service.list_for_buyer(BUYER)
        assert order.status == OrderStatus.PENDING_PAYMENT
        assert order.payment_intent_ref is None

        order = await order_service.retry_authorization(order.id, BUYER)
        assert order.status == OrderStatus.PAID

    @pytest.mark.asyncio
    async def test_only_buyer_may_retry_authorization(self, order_service, processor) -> None:
        processor.auto_authorize = False
        order = await order_service.create_order(BUYER, SELLER, "listing-1", 10000)
        with pytest.raises(UnauthorizedActionError):
            await order_service.retry_authorization(order.id, SELLER)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -500])
    async def test_rejects_non_positive_amount(self, order_service, amount: int) -> None:
        with pytest.raises(InvalidAmountError):
            await order_service.create_order(BUYER, SELLER, "listing-1", amount)

    @pytest.mark.asyncio
    async def test_rejects_self_purchase(self, order_service) -> None:
        with pytest.raises(InvalidRequestError):
            await order_service.create_order(BUYER, BUYER, "listing-1", 1000)

    @pytest.mark.asyncio
    async def test_rejects_unknown_fee_tier(self, order_service) -> None:
        with pytest.raises(InvalidRequestError, match="fee tier"):
            await order_service.create_order(BUYER, SELLER, "listing-1", 1000, "gold")

    @pytest.mark.asyncio
    async def test_payout_destination_defaults_to_seller(self, order_service) -> None:
        order = await order_service.create_order(BUYER, SELLER, "listing-1", 1000)
        assert order.payout_destination == SELLER

    @pytest.mark.asyncio
    async def test_idempotent_create(self, order_service, processor) -> None:
        first = await order_service.create_order(
            BUYER, SELLER, "listing-1", 1000, idempotency_key="checkout-42"
        )
        second = await order_service.create_order(
            BUYER, SELLER, "listing-1", 1000, idempotency_key="checkout-42"
        )
        assert first.id == second.id
        assert len(await order_service.list_for_buyer(BUYER)) == 1
        assert len(processor.intents) == 1

    @pytest.mark.asyncio
    async def test_concurrent_retries_create_one_order(self, order_service, processor) -> None:
        results = await asyncio.gather(
            order_service.create_order(
                BUYER, SELLER, "listing-1", 1000, idempotency_key="checkout-77"
            ),
            order_service.create_order(
                BUYER, SELLER, "listing-1", 1000, idempotency_key="checkout-77"
            ),
        )
        assert results[0].id == results[1].id
        assert len(await order_service.list_for_buyer(BUYER)) == 1
        assert len(processor.intents) == 1
        assert len(processor.calls_for("create_intent")) == 1

    @pytest.mark.asyncio
    async def test_key_held_by_unfinished_request(
        self, order_service, idempotency, processor
    ) -> None:
        await idempotency.claim("order", "checkout-99", str(uuid.uuid4()))
        with pytest.raises(DuplicateOperationError):
            await order_service.create_order(
                BUYER, SELLER, "listing-1", 1000, idempotency_key="checkout-99"
            )
        assert await order_service.list_for_buyer(BUYER) == []
        assert processor.intents == {}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("currency", ["dollars", "u$d", "us"])
    async def test_rejects_bad_currency(self, order_service, currency: str) -> None:
        with pytest.raises(InvalidRequestError, match="currency"):
            await order_service.create_order(
                BUYER, SELLER, "listing-1", 1000, currency=currency
            )


class TestWorkAndDelivery:
    @pytest.mark.asyncio
    async def test_seller_flow(self, make_order, order_service) -> None:
        order = await make_order("processing")
        assert order.status == OrderStatus.PROCESSING

        order = await order_service.start_work(order.id, SELLER)
        assert order.status == OrderStatus.IN_PROGRESS

        order = await order_service.deliver(order.id, SELLER, "done", ["a.zip", "b.zip"])
        assert order.status == OrderStatus.DELIVERED
        assert order.delivery_files == ["a.zip", "b.zip"]
        assert order.delivered_at is not None

    @pytest.mark.asyncio
    async def test_buyer_cannot_deliver(self, make_order, order_service) -> None:
        order = await make_order("in_progress")
        with pytest.raises(UnauthorizedActionError) as exc_info:
            await order_service.deliver(order.id, BUYER, "done")
        assert exc_info.value.current_state == "in_progress"
        assert exc_info.value.allowed_events == ["party_disputes"]

    @pytest.mark.asyncio
    async def test_stranger_is_rejected(self, make_order, order_service) -> None:
        order = await make_order("paid")
        with pytest.raises(UnauthorizedActionError) as exc_info:
            await order_service.start_work(order.id, STRANGER)
        assert exc_info.value.allowed_events == []

    @pytest.mark.asyncio
    async def test_role_is_checked_before_state(self, make_order, order_service) -> None:
        order = await make_order("delivered")
        with pytest.raises(UnauthorizedActionError):
            await order_service.start_work(order.id, BUYER)

    @pytest.mark.asyncio
    async def test_empty_delivery_message(self, make_order, order_service) -> None:
        order = await make_order("in_progress")
        with pytest.raises(InvalidRequestError):
            await order_service.deliver(order.id, SELLER, "   ")
        order = await order_service.get_order(order.id)
        assert order.status == OrderStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_delivered_order_cannot_start_work(self, make_order, order_service) -> None:
        order = await make_order("delivered")
        with pytest.raises(InvalidTransitionError) as exc_info:
            await order_service.start_work(order.id, SELLER)
        assert exc_info.value.current_state == "delivered"
        assert exc_info.value.allowed_events == []

    @pytest.mark.asyncio
    async def test_unknown_order(self, order_service) -> None:
        with pytest.raises(OrderNotFoundError):
            await order_service.start_work(uuid.uuid4(), SELLER)


class TestRevisions:
    @pytest.mark.asyncio
    async def test_revision_loop(self, make_order, order_service) -> None:
        order = await make_order("in_revision")
        assert order.status == OrderStatus.IN_REVISION
        assert order.revisions == 1
        assert order.revision_notes == "brighter please"

        order = await order_service.deliver(order.id, SELLER, "second draft")
        assert order.status == OrderStatus.DELIVERED
        assert order.revisions == 1

    @pytest.mark.asyncio
    async def test_revision_limit(self, make_order, order_service) -> None:
        order = await make_order("delivered", max_revisions=3)
        for _ in range(3):
            await order_service.request_revision(order.id, BUYER, "again")
            await order_service.deliver(order.id, SELLER, "another draft")

        with pytest.raises(RevisionLimitExceededError):
            await order_service.request_revision(order.id, BUYER, "one more")

        order = await order_service.get_order(order.id)
        assert order.status == OrderStatus.DELIVERED
        assert order.revisions == 3
        assert order.revisions_left == 0

    @pytest.mark.asyncio
    async def test_zero_revisions_allowed(self, make_order, order_service) -> None:
        order = await make_order("delivered", max_revisions=0)
        with pytest.raises(RevisionLimitExceededError):
            await order_service.request_revision(order.id, BUYER)

        actions = await order_service.available_actions(order.id, BUYER)
        assert actions["allowed_events"] == ["buyer_accepts"]

    @pytest.mark.asyncio
    async def test_negative_max_revisions_rejected(self, order_service) -> None:
        with pytest.raises(InvalidRequestError):
            await order_service.create_order(BUYER, SELLER, "l", 1000, max_revisions=-1)


class TestAcceptDelivery:
    @pytest.mark.asyncio
    async def test_accept_captures_and_transfers_once(
        self, make_order, order_service, processor
    ) -> None:
        order = await make_order("delivered")
        order = await order_service.accept_delivery(order.id, BUYER)

        assert order.status == OrderStatus.COMPLETED
        assert order.payment_released is True
        assert order.completed_at is not None
        assert order.transfer_ref is not None

        types = await _event_types(order_service, order.id)
        assert types.count(EventType.PAYMENT_CAPTURED) == 1
        assert types.count(EventType.FUNDS_TRANSFERRED) == 1
        assert types[-1] == EventType.DELIVERY_ACCEPTED

        assert processor.calls_for("capture") == [order.payment_intent_ref]
        [receipt] = processor.transfers.values()
        assert receipt.amount == 7000
        assert receipt.destination == SELLER

    @pytest.mark.asyncio
    async def test_second_accept_is_rejected(self, make_order, order_service, processor) -> None:
        order = await make_order("delivered")
        await order_service.accept_delivery(order.id, BUYER)

        with pytest.raises(InvalidTransitionError):
            await order_service.accept_delivery(order.id, BUYER)
        assert len(processor.calls_for("capture")) == 1

    @pytest.mark.asyncio
    async def test_seller_cannot_accept(self, make_order, order_service) -> None:
        order = await make_order("delivered")
        with pytest.raises(UnauthorizedActionError):
            await order_service.accept_delivery(order.id, SELLER)

    @pytest.mark.asyncio
    async def test_cannot_accept_before_delivery(self, make_order, order_service) -> None:
        order = await make_order("in_progress")
        with pytest.raises(InvalidTransitionError):
            await order_service.accept_delivery(order.id, BUYER)


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_without_authorization_makes_no_payment_calls(
        self, order_service, processor
    ) -> None:
        processor.auto_authorize = False
        order = await order_service.create_order(BUYER, SELLER, "listing-1", 2500)

        order = await order_service.cancel_order(order.id, BUYER, "changed my mind")
        assert order.status == OrderStatus.CANCELLED
        assert processor.calls_for("capture") == []
        assert processor.calls_for("refund") == []

    @pytest.mark.asyncio
    async def test_cancel_after_authorization_refunds_once(self, order_service, processor) -> None:
        processor.auto_authorize = False
        order = await order_service.create_order(BUYER, SELLER, "listing-1", 2500)
        processor.authorize(order.payment_intent_ref)

        order = await order_service.cancel_order(order.id, BUYER)
        assert order.status == OrderStatus.CANCELLED
        assert processor.calls_for("refund") == [order.payment_intent_ref]
        assert processor.intents[order.payment_intent_ref].status is IntentStatus.CANCELED

        events = await order_service.get_timeline(order.id)
        [refund] = [e for e in events if e.event_type == EventType.REFUND_ISSUED]
        assert refund.event_data["amount"] == 2500

    @pytest.mark.asyncio
    async def test_buyer_cannot_cancel_paid_order(self, make_order, order_service) -> None:
        order = await make_order("paid")
        with pytest.raises(InvalidTransitionError) as exc_info:
            await order_service.cancel_order(order.id, BUYER)
        assert "party_disputes" in exc_info.value.allowed_events

    @pytest.mark.asyncio
    async def test_admin_cancel_refunds_held_funds(
        self, make_order, order_service, processor
    ) -> None:
        order = await make_order("in_progress")
        order = await order_service.admin_cancel(order.id, "seller unreachable")

        assert order.status == OrderStatus.CANCELLED
        assert order.cancellation_reason == "seller unreachable"
        assert processor.calls_for("refund") == [order.payment_intent_ref]
        assert order.payment_released is False

    @pytest.mark.asyncio
    async def test_admin_cancel_of_completed_order_rejected(self, make_order, order_service) -> None:
        order = await make_order("delivered")
        await order_service.accept_delivery(order.id, BUYER)
        with pytest.raises(InvalidTransitionError):
            await order_service.admin_cancel(order.id, "too late")


class TestDisputes:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("actor", [BUYER, SELLER])
    async def test_either_party_disputes(self, make_order, order_service, actor: str) -> None:
        order = await make_order("in_progress")
        order = await order_service.open_dispute(order.id, actor, "scope disagreement")
        assert order.status == OrderStatus.DISPUTED
        assert order.dispute_reason == "scope disagreement"

    @pytest.mark.asyncio
    async def test_dispute_requires_reason(self, make_order, order_service) -> None:
        order = await make_order("paid")
        with pytest.raises(InvalidRequestError):
            await order_service.open_dispute(order.id, BUYER, "")

    @pytest.mark.asyncio
    async def test_disputed_order_is_frozen(self, make_order, order_service) -> None:
        order = await make_order("paid")
        await order_service.open_dispute(order.id, SELLER, "buyer vanished")

        with pytest.raises(InvalidTransitionError):
            await order_service.start_work(order.id, SELLER)
        actions = await order_service.available_actions(order.id, BUYER)
        assert actions["allowed_events"] == []

        order = await order_service.admin_cancel(order.id, "resolved for buyer")
        assert order.status == OrderStatus.CANCELLED


class TestReadModels:
    @pytest.mark.asyncio
    async def test_available_actions(self, make_order, order_service) -> None:
        order = await make_order("delivered")
        actions = await order_service.available_actions(order.id, BUYER)
        assert actions["role"] == "buyer"
        assert actions["allowed_events"] == ["buyer_accepts", "buyer_requests_revision"]
        assert actions["revisions_left"] == 3

        actions = await order_service.available_actions(order.id, STRANGER)
        assert actions["role"] is None
        assert actions["allowed_events"] == []

    @pytest.mark.asyncio
    async def test_summaries(self, make_order, order_service) -> None:
        done = await make_order("delivered", amount=10000)
        await order_service.accept_delivery(done.id, BUYER)
        await make_order("in_progress", amount=2000)

        buyer = await order_service.buyer_summary(BUYER)
        assert buyer["total_orders"] == 2
        assert buyer["completed_orders"] == 1
        assert buyer["total_spent"] == 10000
        assert buyer["in_escrow"] == 2000

        seller = await order_service.seller_summary(SELLER)
        assert seller["total_earnings"] == 7000
        assert seller["pending_earnings"] == 1400
        assert seller["platform_fees"] == 3000


class TestTimelineConsistency:
    @pytest.mark.asyncio
    async def test_replay_matches_completed_order(self, make_order, order_service) -> None:
        order = await make_order("in_revision")
        await order_service.deliver(order.id, SELLER, "v2")
        await order_service.accept_delivery(order.id, BUYER)

        projection = await order_service.verify_timeline(order.id)
        assert projection.status is OrderStatus.COMPLETED
        assert projection.revisions == 1
        assert projection.payment_released
        assert projection.captured and projection.transferred

    @pytest.mark.asyncio
    async def test_sequences_are_gapless(self, make_order, order_service) -> None:
        order = await make_order("delivered")
        events = await order_service.get_timeline(order.id)
        assert [e.sequence for e in events] == list(range(1, len(events) + 1))

    @pytest.mark.asyncio
    async def test_every_status_change_has_one_event(self, make_order, order_service) -> None:
        order = await make_order("delivered")
        events = await order_service.get_timeline(order.id)
        changes = [e for e in events if e.old_status != e.new_status]
        assert [e.new_status for e in changes] == [
            "pending_payment",
            "paid",
            "in_progress",
            "delivered",
        ]
