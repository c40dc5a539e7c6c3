"""Tests for domain enumerations."""

from __future__ import annotations

from marketplace_escrow.domain.enums import (
    EventType,
    FeeTier,
    IntentStatus,
    OfferStatus,
    OrderStatus,
)


class TestOfferStatus:
    def test_all_statuses_exist(self) -> None:
        expected = {
            "pending", "pending_payment", "paid", "accepted",
            "rejected", "cancelled", "expired",
        }
        actual = {s.value for s in OfferStatus}
        assert actual == expected

    def test_terminal_statuses(self) -> None:
        terminal = {s for s in OfferStatus if s.is_terminal}
        assert terminal == {
            OfferStatus.ACCEPTED,
            OfferStatus.REJECTED,
            OfferStatus.CANCELLED,
            OfferStatus.EXPIRED,
        }


class TestOrderStatus:
    def test_all_statuses_exist(self) -> None:
        expected = {
            "pending_payment", "paid", "processing", "in_progress", "delivered",
            "in_revision", "completed", "cancelled", "disputed",
        }
        actual = {s.value for s in OrderStatus}
        assert actual == expected

    def test_status_is_str_enum(self) -> None:
        assert isinstance(OrderStatus.PAID, str)
        assert OrderStatus.PAID == "paid"

    def test_disputed_is_not_terminal(self) -> None:
        assert not OrderStatus.DISPUTED.is_terminal
        assert OrderStatus.COMPLETED.is_terminal
        assert OrderStatus.CANCELLED.is_terminal


class TestIntentStatus:
    def test_holds_funds(self) -> None:
        holding = {s for s in IntentStatus if s.holds_funds}
        assert holding == {IntentStatus.AUTHORIZED, IntentStatus.CAPTURED}


class TestEventType:
    def test_all_event_types_exist(self) -> None:
        # 7 lifecycle + 4 cancellation/dispute + 5 settlement facts
        assert len(EventType) == 16

    def test_event_type_is_str_enum(self) -> None:
        assert isinstance(EventType.ORDER_CREATED, str)


class TestFeeTier:
    def test_fee_tiers(self) -> None:
        assert FeeTier.STANDARD == "standard"
        assert FeeTier.PREMIUM == "premium"
        assert FeeTier.EXCLUSIVE == "exclusive"
        assert FeeTier.HYPE == "hype"
