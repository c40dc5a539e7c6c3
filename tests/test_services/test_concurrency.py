"""Tests for per-entity serialization of transitions."""

from __future__ import annotations

import asyncio

import pytest

from marketplace_escrow.domain.enums import EventType, OrderStatus
from marketplace_escrow.domain.exceptions import InvalidTransitionError
from marketplace_escrow.infrastructure.locks import EntityLockRegistry

BUYER = "buyer-1"


class TestEntityLockRegistry:
    @pytest.mark.asyncio
    async def test_same_id_is_serialized(self) -> None:
        registry = EntityLockRegistry()
        order: list[str] = []

        async def worker(name: str) -> None:
            async with registry.hold("order-1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order in (
            ["a-in", "a-out", "b-in", "b-out"],
            ["b-in", "b-out", "a-in", "a-out"],
        )

    @pytest.mark.asyncio
    async def test_different_ids_do_not_contend(self) -> None:
        registry = EntityLockRegistry()
        async with registry.hold("order-1"):
            assert registry.is_locked("order-1")
            assert not registry.is_locked("order-2")
            async with registry.hold("order-2"):
                assert registry.is_locked("order-2")

    @pytest.mark.asyncio
    async def test_released_locks_are_dropped(self) -> None:
        registry = EntityLockRegistry()
        async with registry.hold("order-1"):
            assert len(registry) == 1
        assert len(registry) == 0


class TestConcurrentTransitions:
    @pytest.mark.asyncio
    async def test_double_accept_settles_once(self, make_order, order_service, processor) -> None:
        order = await make_order("delivered")

        results = await asyncio.gather(
            order_service.accept_delivery(order.id, BUYER),
            order_service.accept_delivery(order.id, BUYER),
            return_exceptions=True,
        )

        completed = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, InvalidTransitionError)]
        assert len(completed) == 1
        assert len(rejected) == 1
        assert completed[0].status == OrderStatus.COMPLETED

        assert len(processor.calls_for("capture")) == 1
        assert len(processor.transfers) == 1
        types = [e.event_type for e in await order_service.get_timeline(order.id)]
        assert types.count(EventType.PAYMENT_CAPTURED) == 1
        assert types.count(EventType.FUNDS_TRANSFERRED) == 1

    @pytest.mark.asyncio
    async def test_accept_races_revision(self, make_order, order_service) -> None:
        order = await make_order("delivered")

        results = await asyncio.gather(
            order_service.accept_delivery(order.id, BUYER),
            order_service.request_revision(order.id, BUYER, "wait"),
            return_exceptions=True,
        )
        assert sum(isinstance(r, InvalidTransitionError) for r in results) == 1

        projection = await order_service.verify_timeline(order.id)
        stored = await order_service.get_order(order.id)
        assert projection.status.value == stored.status
