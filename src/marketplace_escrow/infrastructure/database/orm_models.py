"""SQLAlchemy 2.0 ORM models for the marketplace escrow core.

Three tables:
    1. offers           — Proposed transactions before an order exists.
    2. orders           — Funded transactions and their escrow state.
    3. timeline_events  — Append-only ledger of every order transition.

Design decisions:
    - UUIDs as primary keys (no sequential leakage).
    - Integer minor units for every amount; no floating point anywhere.
    - CHECK constraints mirror the domain invariants (fee split sums to the
      amount, revisions within bound, release flag iff completed).
    - timeline_events is append-only: a mapper listener rejects UPDATE and
      DELETE, and (order_id, sequence) is unique so that the fold order is
      total.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# Helper: auto-set updated_at on flush
# ---------------------------------------------------------------------------
def _set_updated_at(mapper, connection, target):  # noqa: ANN001
    """SQLAlchemy event listener that updates `updated_at` before flush."""
    if hasattr(target, "updated_at"):
        target.updated_at = _utcnow()


def _reject_mutation(mapper, connection, target):  # noqa: ANN001
    """Timeline rows are facts; they are never edited or removed."""
    raise PermissionError(
        f"timeline_events is append-only (order={target.order_id}, seq={target.sequence})"
    )


# ---------------------------------------------------------------------------
# 1. offers
# ---------------------------------------------------------------------------
class Offer(Base):
    """A buyer's proposed price for a listing."""

    __tablename__ = "offers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # --- Participants ---
    listing_id: Mapped[str] = mapped_column(String(64), nullable=False)
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # --- Terms ---
    amount: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Offered price in minor units; frozen once payment is initiated",
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    fee_tier: Mapped[str] = mapped_column(String(16), nullable=False, default="standard")
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    requirements: Mapped[str] = mapped_column(Text, nullable=False, default="")
    expected_delivery: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )

    # --- Status (Enum-guarded) ---
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="pending",
        comment="Current lifecycle state (guarded by OfferStateMachine)",
    )

    # --- Payment ---
    payment_intent_ref: Mapped[str | None] = mapped_column(
        String(128), nullable=True, default=None
    )
    order_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        nullable=True,
        default=None,
        comment="Order materialized when the seller accepted",
    )

    # --- Timestamps ---
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'pending_payment', 'paid', 'accepted', "
            "'rejected', 'cancelled', 'expired')",
            name="ck_offer_valid_status",
        ),
        CheckConstraint("amount > 0", name="ck_offer_positive_amount"),
        Index("idx_offer_status_expires", "status", "expires_at"),
        Index("idx_offer_buyer", "buyer_id"),
        Index("idx_offer_seller", "seller_id"),
        Index("idx_offer_listing", "listing_id"),
    )

    def __repr__(self) -> str:
        return f"<Offer id={self.id} status={self.status} amount={self.amount}>"


# ---------------------------------------------------------------------------
# 2. orders
# ---------------------------------------------------------------------------
class Order(Base):
    """A funded transaction between a buyer and a seller."""

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # --- Participants ---
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)
    listing_id: Mapped[str] = mapped_column(String(64), nullable=False)
    offer_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("offers.id"), nullable=True, default=None
    )
    order_type: Mapped[str] = mapped_column(String(20), nullable=False, default="direct_purchase")

    # --- Financials (minor units) ---
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_fee: Mapped[int] = mapped_column(Integer, nullable=False)
    seller_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    fee_tier: Mapped[str] = mapped_column(String(16), nullable=False, default="standard")

    # --- Status (Enum-guarded) ---
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="pending_payment",
        comment="Current lifecycle state (guarded by OrderStateMachine)",
    )

    # --- Revisions ---
    revisions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_revisions: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    revision_notes: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)

    # --- Work ---
    requirements: Mapped[str] = mapped_column(Text, nullable=False, default="")
    delivery_message: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    delivery_files: Mapped[list | None] = mapped_column(JSONType, nullable=True, default=None)
    expected_delivery: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )

    # --- Payment & Escrow ---
    payment_intent_ref: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        default=None,
        comment="Processor intent; written only by the settlement coordinator",
    )
    payout_destination: Mapped[str] = mapped_column(String(128), nullable=False)
    payment_released: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    transfer_ref: Mapped[str | None] = mapped_column(String(128), nullable=True, default=None)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    dispute_reason: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    disputed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    # --- Relationships ---
    events: Mapped[list[TimelineEvent]] = relationship(
        "TimelineEvent",
        back_populates="order",
        order_by="TimelineEvent.sequence.asc()",
        lazy="raise",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending_payment', 'paid', 'processing', 'in_progress', "
            "'delivered', 'in_revision', 'completed', 'cancelled', 'disputed')",
            name="ck_order_valid_status",
        ),
        CheckConstraint("amount > 0", name="ck_order_positive_amount"),
        CheckConstraint(
            "platform_fee >= 0 AND seller_amount >= 0 AND platform_fee + seller_amount = amount",
            name="ck_order_fee_split",
        ),
        CheckConstraint(
            "revisions >= 0 AND revisions <= max_revisions",
            name="ck_order_revision_bounds",
        ),
        CheckConstraint(
            "(status = 'completed' AND payment_released) "
            "OR (status <> 'completed' AND NOT payment_released)",
            name="ck_order_release_iff_completed",
        ),
        Index("idx_order_buyer_status", "buyer_id", "status"),
        Index("idx_order_seller_status", "seller_id", "status"),
        Index("idx_order_intent", "payment_intent_ref"),
        Index("idx_order_created_at", "created_at"),
    )

    @property
    def revisions_left(self) -> int:
        return self.max_revisions - self.revisions

    def __repr__(self) -> str:
        return f"<Order id={self.id} status={self.status} amount={self.amount}>"


# ---------------------------------------------------------------------------
# 3. timeline_events (Append-Only Ledger)
# ---------------------------------------------------------------------------
class TimelineEvent(Base):
    """Immutable record of one order transition or settlement fact."""

    __tablename__ = "timeline_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=False
    )
    sequence: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="1-based position in the order's timeline",
    )

    # --- Event Details ---
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    old_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)
    performed_by: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="system",
        comment="User id of the actor, or 'system'",
    )
    event_data: Mapped[dict | None] = mapped_column(JSONType, nullable=True, default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    order: Mapped[Order] = relationship("Order", back_populates="events")

    __table_args__ = (
        UniqueConstraint("order_id", "sequence", name="uq_timeline_order_sequence"),
        Index("idx_timeline_event_type", "event_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<TimelineEvent order={self.order_id} seq={self.sequence} "
            f"type={self.event_type} {self.old_status}->{self.new_status}>"
        )


event.listen(Offer, "before_update", _set_updated_at)
event.listen(Order, "before_update", _set_updated_at)
event.listen(TimelineEvent, "before_update", _reject_mutation)
event.listen(TimelineEvent, "before_delete", _reject_mutation)
