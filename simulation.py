#!/usr/bin/env python3
"""Marketplace Escrow — End-to-End Simulation.

Drives offers and orders through the services with BuyerBot and SellerBot
against the in-memory payment processor:

    Scenario 1: Fee split
        - Buyer orders a $100.00 standard-tier listing
        - Platform fee 3000, seller amount 7000

    Scenario 2: Revision limit
        - Seller delivers, buyer requests every allowed revision
        - One more request is rejected; the order stays delivered

    Scenario 3: Rejected offer
        - Buyer offers $50.00 and pays
        - Seller rejects -> full refund, no order created

    Scenario 4: Cancel before payment
        - Buyer cancels while the intent is still pending -> no refund call
        - Buyer cancels after an authorization -> exactly one refund

    Scenario 5: Accept delivery
        - Buyer accepts -> completed, payment released,
          one capture and one transfer in the ledger

Usage:
    # Option A: With Docker (PostgreSQL):
    docker compose up -d
    uv run python simulation.py

    # Option B: Without Docker (SQLite in-memory):
    uv run python simulation.py --sqlite

    # Run a specific scenario:
    uv run python simulation.py --sqlite --scenario 3
"""

from __future__ import annotations

import argparse
import asyncio
import uuid
from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from marketplace_escrow.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

from marketplace_escrow.domain.enums import EventType  # noqa: E402
from marketplace_escrow.domain.exceptions import RevisionLimitExceededError  # noqa: E402
from marketplace_escrow.infrastructure.locks import EntityLockRegistry  # noqa: E402
from marketplace_escrow.payments import SimulatedPaymentProcessor  # noqa: E402
from marketplace_escrow.services import (  # noqa: E402
    OfferService,
    OrderService,
    SettlementCoordinator,
)

# Module-level state
_sqlite_engine = None
_session_factory = None


# ---------------------------------------------------------------------------
# Database lifecycle helpers
# ---------------------------------------------------------------------------
async def init_database(use_sqlite: bool = False):
    """Initialize database engine and create tables."""
    global _sqlite_engine, _session_factory

    if use_sqlite:
        from sqlalchemy.ext.asyncio import create_async_engine
        from sqlalchemy.pool import StaticPool

        from marketplace_escrow.infrastructure.database.engine import build_session_factory
        from marketplace_escrow.infrastructure.database.orm_models import Base

        _sqlite_engine = create_async_engine(
            "sqlite+aiosqlite:///:memory:",
            echo=False,
            poolclass=StaticPool,
        )
        _session_factory = build_session_factory(_sqlite_engine)

        async with _sqlite_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database.sqlite_initialized")
    else:
        from marketplace_escrow.infrastructure.database.engine import (
            get_session_factory,
            init_db,
        )
        await init_db()
        _session_factory = get_session_factory()


async def shutdown_database():
    """Close database connections."""
    global _sqlite_engine, _session_factory

    if _sqlite_engine is not None:
        await _sqlite_engine.dispose()
        _sqlite_engine = None
    else:
        from marketplace_escrow.infrastructure.database.engine import close_db
        await close_db()
    _session_factory = None


@dataclass
class Marketplace:
    """Services wired to one simulated processor."""

    processor: SimulatedPaymentProcessor
    orders: OrderService
    offers: OfferService


def build_marketplace(auto_authorize: bool = True) -> Marketplace:
    processor = SimulatedPaymentProcessor(auto_authorize=auto_authorize)
    settlement = SettlementCoordinator(processor)
    locks = EntityLockRegistry()
    orders = OrderService(_session_factory, settlement, locks=locks)
    offers = OfferService(_session_factory, settlement, orders, locks=locks)
    return Marketplace(processor=processor, orders=orders, offers=offers)


# ---------------------------------------------------------------------------
# Bot Agents
# ---------------------------------------------------------------------------
@dataclass
class BuyerBot:
    """Simulated buyer that places orders and offers."""

    market: Marketplace
    user_id: str = field(default_factory=lambda: "buyer-" + uuid.uuid4().hex[:8])

    async def order(self, seller: SellerBot, amount: int, **kwargs) -> uuid.UUID:  # noqa: ANN003
        order = await self.market.orders.create_order(
            buyer_id=self.user_id,
            seller_id=seller.user_id,
            listing_id="listing-" + uuid.uuid4().hex[:6],
            amount=amount,
            **kwargs,
        )
        logger.info(
            "🔵 BUYER: Order placed",
            order_id=str(order.id),
            status=order.status,
            amount=order.amount,
        )
        return order.id

    async def make_offer(self, seller: SellerBot, amount: int) -> uuid.UUID:
        offer = await self.market.offers.create_offer(
            buyer_id=self.user_id,
            seller_id=seller.user_id,
            listing_id="listing-" + uuid.uuid4().hex[:6],
            amount=amount,
            message="Would you take this?",
        )
        logger.info("🔵 BUYER: Offer made", offer_id=str(offer.id), amount=amount)
        return offer.id

    async def pay_offer(self, offer_id: uuid.UUID) -> None:
        offer = await self.market.offers.pay_offer(offer_id, self.user_id)
        logger.info("🔵 BUYER: Offer paid", offer_id=str(offer_id), status=offer.status)

    async def accept(self, order_id: uuid.UUID) -> None:
        order = await self.market.orders.accept_delivery(order_id, self.user_id)
        logger.info(
            "🔵 BUYER: Delivery accepted",
            order_id=str(order_id),
            status=order.status,
            released=order.payment_released,
        )

    async def request_revision(self, order_id: uuid.UUID, notes: str) -> None:
        order = await self.market.orders.request_revision(order_id, self.user_id, notes)
        logger.info(
            "🔵 BUYER: Revision requested",
            order_id=str(order_id),
            revisions=order.revisions,
            left=order.revisions_left,
        )

    async def cancel(self, order_id: uuid.UUID) -> None:
        order = await self.market.orders.cancel_order(order_id, self.user_id, "changed my mind")
        logger.info("🔵 BUYER: Order cancelled", order_id=str(order_id), status=order.status)


@dataclass
class SellerBot:
    """Simulated seller that works orders and answers offers."""

    market: Marketplace
    user_id: str = field(default_factory=lambda: "seller-" + uuid.uuid4().hex[:8])

    async def work_and_deliver(self, order_id: uuid.UUID) -> None:
        await self.market.orders.start_processing(order_id, self.user_id)
        await self.market.orders.start_work(order_id, self.user_id)
        await self.deliver(order_id)

    async def deliver(self, order_id: uuid.UUID) -> None:
        order = await self.market.orders.deliver(
            order_id, self.user_id, "Here is the finished work", ["artwork.png"]
        )
        logger.info("🟢 SELLER: Delivered", order_id=str(order_id), revisions=order.revisions)

    async def reject(self, offer_id: uuid.UUID) -> None:
        offer = await self.market.offers.reject_offer(offer_id, self.user_id, "price too low")
        logger.info("🟢 SELLER: Offer rejected", offer_id=str(offer_id), status=offer.status)


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    """Print a prominent banner."""
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    """Print a section header."""
    print(f"\n--- {text} ---\n")


def check(label: str, passed: bool) -> None:
    status_icon = "✅" if passed else "❌"
    print(f"  {status_icon} {label}")


async def print_timeline(market: Marketplace, order_id: uuid.UUID) -> None:
    """Print the full timeline for an order."""
    events = await market.orders.get_timeline(order_id)
    print("\n  📜 Timeline:")
    for evt in events:
        old = evt.old_status or "—"
        print(
            f"    {evt.sequence}. [{evt.event_type}] {old} → {evt.new_status} "
            f"(by {evt.performed_by})"
        )
    projection = await market.orders.verify_timeline(order_id)
    print(f"  Replay: status={projection.status.value} revisions={projection.revisions}")
    print()


# ===========================================================================
# Scenario 1: Fee split
# ===========================================================================
async def scenario_1_fee_split() -> None:
    """Standard tier takes 30% of a $100.00 order."""
    banner("SCENARIO 1: Fee split — $100.00 at the standard tier")
    market = build_marketplace()
    buyer, seller = BuyerBot(market), SellerBot(market)

    section("Step 1: Buyer places order")
    order_id = await buyer.order(seller, 10000, fee_tier="standard")

    section("Step 2: Inspect the split")
    order = await market.orders.get_order(order_id)
    print(f"  Amount: {order.amount}  Fee: {order.platform_fee}  Seller: {order.seller_amount}")
    check("platform fee is 3000", order.platform_fee == 3000)
    check("seller amount is 7000", order.seller_amount == 7000)
    check("order is paid", order.status == "paid")

    await print_timeline(market, order_id)


# ===========================================================================
# Scenario 2: Revision limit
# ===========================================================================
async def scenario_2_revision_limit() -> None:
    """A buyer cannot request more revisions than the order allows."""
    banner("SCENARIO 2: Revision limit")
    market = build_marketplace()
    buyer, seller = BuyerBot(market), SellerBot(market)

    order_id = await buyer.order(seller, 4500, max_revisions=3)

    section("Step 1: Seller works and delivers")
    await seller.work_and_deliver(order_id)

    section("Step 2: Buyer uses every revision")
    for n in range(1, 4):
        await buyer.request_revision(order_id, f"round {n}: adjust the colours")
        await seller.deliver(order_id)

    section("Step 3: Buyer asks once more")
    try:
        await buyer.request_revision(order_id, "one more please")
        check("fourth revision rejected", False)
    except RevisionLimitExceededError as exc:
        print(f"  Rejected: {exc.message}")
        check("fourth revision rejected", True)

    order = await market.orders.get_order(order_id)
    check("order still delivered", order.status == "delivered")
    check("revisions == 3", order.revisions == 3)

    await print_timeline(market, order_id)


# ===========================================================================
# Scenario 3: Rejected offer
# ===========================================================================
async def scenario_3_rejected_offer() -> None:
    """Seller rejects a paid offer; the buyer gets everything back."""
    banner("SCENARIO 3: Rejected offer — full refund, no order")
    market = build_marketplace()
    buyer, seller = BuyerBot(market), SellerBot(market)

    section("Step 1: Buyer offers $50.00 and pays")
    offer_id = await buyer.make_offer(seller, 5000)
    await buyer.pay_offer(offer_id)

    section("Step 2: Seller rejects")
    await seller.reject(offer_id)

    offer = await market.offers.get_offer(offer_id)
    intent = market.processor.intents[offer.payment_intent_ref]
    check("offer rejected", offer.status == "rejected")
    check("exactly one refund", len(market.processor.calls_for("refund")) == 1)
    check("5000 returned", intent.amount == 5000 and intent.status.value == "canceled")
    check("no order created", offer.order_id is None)
    orders = await market.orders.list_for_buyer(buyer.user_id)
    check("buyer has no orders", not orders)


# ===========================================================================
# Scenario 4: Cancel before payment
# ===========================================================================
async def scenario_4_cancel_unpaid() -> None:
    """Cancelling with nothing held makes no refund; with a hold, exactly one."""
    banner("SCENARIO 4: Cancel in pending_payment")

    section("Case A: buyer never authorized")
    market = build_marketplace(auto_authorize=False)
    buyer, seller = BuyerBot(market), SellerBot(market)
    order_id = await buyer.order(seller, 2500)
    await buyer.cancel(order_id)
    order = await market.orders.get_order(order_id)
    check("order cancelled", order.status == "cancelled")
    check("no capture call", not market.processor.calls_for("capture"))
    check("no refund call", not market.processor.calls_for("refund"))

    section("Case B: authorization landed before the cancel")
    market = build_marketplace(auto_authorize=False)
    buyer, seller = BuyerBot(market), SellerBot(market)
    order_id = await buyer.order(seller, 2500)
    order = await market.orders.get_order(order_id)
    market.processor.authorize(order.payment_intent_ref)
    await buyer.cancel(order_id)
    order = await market.orders.get_order(order_id)
    check("order cancelled", order.status == "cancelled")
    check("exactly one refund", market.processor.calls_for("refund") == [order.payment_intent_ref])

    await print_timeline(market, order_id)


# ===========================================================================
# Scenario 5: Accept delivery
# ===========================================================================
async def scenario_5_accept_delivery() -> None:
    """Buyer accepts; funds are captured once and transferred once."""
    banner("SCENARIO 5: Accept delivery — capture and transfer")
    market = build_marketplace()
    buyer, seller = BuyerBot(market), SellerBot(market)

    order_id = await buyer.order(seller, 10000)
    await seller.work_and_deliver(order_id)

    section("Step 1: Buyer accepts")
    await buyer.accept(order_id)

    order = await market.orders.get_order(order_id)
    events = await market.orders.get_timeline(order_id)
    types = [e.event_type for e in events]
    check("order completed", order.status == "completed")
    check("payment released", order.payment_released)
    check("one capture in the ledger", types.count(EventType.PAYMENT_CAPTURED) == 1)
    check("one transfer in the ledger", types.count(EventType.FUNDS_TRANSFERRED) == 1)
    receipt = next(iter(market.processor.transfers.values()))
    check("seller received 7000", receipt.amount == 7000)

    await print_timeline(market, order_id)


# ===========================================================================
# Main
# ===========================================================================
SCENARIOS = {
    1: scenario_1_fee_split,
    2: scenario_2_revision_limit,
    3: scenario_3_rejected_offer,
    4: scenario_4_cancel_unpaid,
    5: scenario_5_accept_delivery,
}


async def run_all(use_sqlite: bool = False) -> None:
    """Run all scenarios sequentially."""
    await init_database(use_sqlite=use_sqlite)

    try:
        print("\n" + "🚀" * 35)
        print("  MARKETPLACE ESCROW — SIMULATION")
        db_type = "SQLite (in-memory)" if use_sqlite else "PostgreSQL"
        print(f"  Database: {db_type}")
        print("  Processor: simulated (in-memory)")
        print("🚀" * 35 + "\n")

        for scenario in SCENARIOS.values():
            await scenario()

        print("\n" + "=" * 70)
        print("  ✅ ALL SCENARIOS COMPLETED")
        print("=" * 70 + "\n")

    finally:
        await shutdown_database()


async def run_scenario(num: int, use_sqlite: bool = False) -> None:
    """Run a specific scenario."""
    await init_database(use_sqlite=use_sqlite)

    try:
        if num not in SCENARIOS:
            print(f"Unknown scenario {num}. Available: {', '.join(map(str, SCENARIOS))}")
            return
        await SCENARIOS[num]()
    finally:
        await shutdown_database()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Marketplace Escrow Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        help="Run a specific scenario (1-5). Default: run all.",
    )
    parser.add_argument(
        "--sqlite",
        action="store_true",
        help="Use SQLite in-memory instead of PostgreSQL (no Docker needed).",
    )
    args = parser.parse_args()

    if args.scenario == 0:
        asyncio.run(run_all(use_sqlite=args.sqlite))
    else:
        asyncio.run(run_scenario(args.scenario, use_sqlite=args.sqlite))
