"""initial schema: offers, orders, timeline_events

Revision ID: 0001
Revises:
Create Date: 2026-10-18 09:00:00
"""
from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "offers",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("listing_id", sa.String(64), nullable=False),
        sa.Column("buyer_id", sa.String(64), nullable=False),
        sa.Column("seller_id", sa.String(64), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("fee_tier", sa.String(16), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("requirements", sa.Text(), nullable=False),
        sa.Column("expected_delivery", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("payment_intent_ref", sa.String(128), nullable=True),
        sa.Column("order_id", sa.Uuid(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "status IN ('pending', 'pending_payment', 'paid', 'accepted', "
            "'rejected', 'cancelled', 'expired')",
            name="ck_offer_valid_status",
        ),
        sa.CheckConstraint("amount > 0", name="ck_offer_positive_amount"),
    )
    op.create_index("idx_offer_status_expires", "offers", ["status", "expires_at"])
    op.create_index("idx_offer_buyer", "offers", ["buyer_id"])
    op.create_index("idx_offer_seller", "offers", ["seller_id"])
    op.create_index("idx_offer_listing", "offers", ["listing_id"])

    op.create_table(
        "orders",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("buyer_id", sa.String(64), nullable=False),
        sa.Column("seller_id", sa.String(64), nullable=False),
        sa.Column("listing_id", sa.String(64), nullable=False),
        sa.Column("offer_id", sa.Uuid(), sa.ForeignKey("offers.id"), nullable=True),
        sa.Column("order_type", sa.String(20), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("platform_fee", sa.Integer(), nullable=False),
        sa.Column("seller_amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("fee_tier", sa.String(16), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("revisions", sa.Integer(), nullable=False),
        sa.Column("max_revisions", sa.Integer(), nullable=False),
        sa.Column("revision_notes", sa.Text(), nullable=True),
        sa.Column("requirements", sa.Text(), nullable=False),
        sa.Column("delivery_message", sa.Text(), nullable=True),
        sa.Column("delivery_files", JSONType, nullable=True),
        sa.Column("expected_delivery", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_intent_ref", sa.String(128), nullable=True),
        sa.Column("payout_destination", sa.String(128), nullable=False),
        sa.Column("payment_released", sa.Boolean(), nullable=False),
        sa.Column("transfer_ref", sa.String(128), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("dispute_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("disputed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "status IN ('pending_payment', 'paid', 'processing', 'in_progress', "
            "'delivered', 'in_revision', 'completed', 'cancelled', 'disputed')",
            name="ck_order_valid_status",
        ),
        sa.CheckConstraint("amount > 0", name="ck_order_positive_amount"),
        sa.CheckConstraint(
            "platform_fee >= 0 AND seller_amount >= 0 AND platform_fee + seller_amount = amount",
            name="ck_order_fee_split",
        ),
        sa.CheckConstraint(
            "revisions >= 0 AND revisions <= max_revisions",
            name="ck_order_revision_bounds",
        ),
        sa.CheckConstraint(
            "(status = 'completed' AND payment_released) "
            "OR (status <> 'completed' AND NOT payment_released)",
            name="ck_order_release_iff_completed",
        ),
    )
    op.create_index("idx_order_buyer_status", "orders", ["buyer_id", "status"])
    op.create_index("idx_order_seller_status", "orders", ["seller_id", "status"])
    op.create_index("idx_order_intent", "orders", ["payment_intent_ref"])
    op.create_index("idx_order_created_at", "orders", ["created_at"])

    op.create_table(
        "timeline_events",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("order_id", sa.Uuid(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(40), nullable=False),
        sa.Column("old_status", sa.String(20), nullable=True),
        sa.Column("new_status", sa.String(20), nullable=False),
        sa.Column("performed_by", sa.String(64), nullable=False),
        sa.Column("event_data", JSONType, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_id", "sequence", name="uq_timeline_order_sequence"),
    )
    op.create_index("idx_timeline_event_type", "timeline_events", ["event_type"])


def downgrade() -> None:
    op.drop_index("idx_timeline_event_type", table_name="timeline_events")
    op.drop_table("timeline_events")
    for name in (
        "idx_order_created_at",
        "idx_order_intent",
        "idx_order_seller_status",
        "idx_order_buyer_status",
    ):
        op.drop_index(name, table_name="orders")
    op.drop_table("orders")
    for name in ("idx_offer_listing", "idx_offer_seller", "idx_offer_buyer", "idx_offer_status_expires"):
        op.drop_index(name, table_name="offers")
    op.drop_table("offers")
