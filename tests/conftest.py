"""Shared test fixtures for the marketplace escrow test suite.

Provides:
    - A throwaway SQLite database per test (aiosqlite)
    - The in-memory payment processor and services wired to it
    - A fakeredis-backed idempotency store
    - Factories that drive orders and offers to a given state
"""

from __future__ import annotations

import uuid

import fakeredis.aioredis
import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from marketplace_escrow.config import Settings
from marketplace_escrow.infrastructure.database.engine import build_session_factory
from marketplace_escrow.infrastructure.database.orm_models import Base
from marketplace_escrow.infrastructure.locks import EntityLockRegistry
from marketplace_escrow.infrastructure.redis_client import IdempotencyStore
from marketplace_escrow.payments import SimulatedPaymentProcessor
from marketplace_escrow.services import OfferService, OrderService, SettlementCoordinator

BUYER = "buyer-1"
SELLER = "seller-1"
STRANGER = "someone-else"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Settings with fast processor timeouts and no retry backoff."""
    return Settings(
        _env_file=None,
        processor_timeout_seconds=0.2,
        processor_max_attempts=3,
        processor_retry_backoff_seconds=0,
        default_max_revisions=3,
        payment_backend="simulated",
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


# ---------------------------------------------------------------------------
# Payments & infrastructure
# ---------------------------------------------------------------------------


@pytest.fixture
def processor() -> SimulatedPaymentProcessor:
    return SimulatedPaymentProcessor(auto_authorize=True)


@pytest.fixture
def locks() -> EntityLockRegistry:
    return EntityLockRegistry()


@pytest.fixture
async def redis():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def idempotency(redis) -> IdempotencyStore:
    return IdempotencyStore(redis, ttl_seconds=60, wait_seconds=0.5)


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@pytest.fixture
def settlement(processor, settings) -> SettlementCoordinator:
    return SettlementCoordinator(processor, settings)


@pytest.fixture
def order_service(session_factory, settlement, locks, settings, idempotency) -> OrderService:
    return OrderService(
        session_factory,
        settlement,
        locks=locks,
        settings=settings,
        idempotency=idempotency,
    )


@pytest.fixture
def offer_service(
    session_factory, settlement, order_service, locks, settings, idempotency
) -> OfferService:
    return OfferService(
        session_factory,
        settlement,
        order_service,
        locks=locks,
        settings=settings,
        idempotency=idempotency,
    )


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_order(order_service):
    """Create a direct-purchase order and drive it to the requested status."""

    async def _make(status: str = "paid", amount: int = 10000, **kwargs):  # noqa: ANN003, ANN202
        order = await order_service.create_order(
            BUYER,
            SELLER,
            "listing-" + uuid.uuid4().hex[:6],
            amount,
            **kwargs,
        )
        if status == "pending_payment":
            return order
        if status in ("processing",):
            return await order_service.start_processing(order.id, SELLER)
        if status in ("in_progress", "delivered", "in_revision"):
            order = await order_service.start_work(order.id, SELLER)
        if status in ("delivered", "in_revision"):
            order = await order_service.deliver(order.id, SELLER, "first draft", ["draft.png"])
        if status == "in_revision":
            order = await order_service.request_revision(order.id, BUYER, "brighter please")
        return order

    return _make


@pytest.fixture
def make_offer(offer_service):
    """Create an offer, optionally paid."""

    async def _make(amount: int = 5000, paid: bool = False, **kwargs):  # noqa: ANN003, ANN202
        offer = await offer_service.create_offer(
            BUYER,
            SELLER,
            "listing-" + uuid.uuid4().hex[:6],
            amount,
            message="Would you take this?",
            **kwargs,
        )
        if paid:
            offer = await offer_service.pay_offer(offer.id, BUYER)
        return offer

    return _make
