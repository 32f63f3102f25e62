"""initial marketpay schema

Revision ID: 0001_marketpay
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_marketpay"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "profiles",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("payment_provider", sa.String(), nullable=True),
        sa.Column("stripe_connected_account_id", sa.String(), nullable=True),
        sa.Column("square_merchant_id", sa.String(), nullable=True),
        sa.Column("square_access_token", sa.String(), nullable=True),
        sa.Column("square_refresh_token", sa.String(), nullable=True),
        sa.Column("square_token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("square_location_id", sa.String(), nullable=True),
        sa.Column("square_device_id", sa.String(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_profiles_payment_provider", "profiles", ["payment_provider"])

    op.create_table(
        "seller_sessions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("seller_id", sa.String(), nullable=False),
        sa.Column("market_id", sa.String(), nullable=True),
        sa.ForeignKeyConstraint(["seller_id"], ["profiles.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_seller_sessions_seller_id", "seller_sessions", ["seller_id"])
    op.create_index("ix_seller_sessions_market_id", "seller_sessions", ["market_id"])

    op.create_table(
        "listings",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("seller_session_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("unit", sa.String(), nullable=True),
        sa.Column("price_cents", sa.Integer(), nullable=False),
        sa.Column("qty_available", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("qty_reserved", sa.Integer(), nullable=False, server_default="0"),
        sa.CheckConstraint("qty_available >= 0", name="ck_listings_available_non_negative"),
        sa.CheckConstraint("qty_reserved >= 0", name="ck_listings_reserved_non_negative"),
        sa.ForeignKeyConstraint(["seller_session_id"], ["seller_sessions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_listings_seller_session_id", "listings", ["seller_session_id"])

    op.create_table(
        "orders",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("seller_session_id", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("total_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_provider", sa.String(), nullable=True),
        sa.Column("payment_session_id", sa.String(), nullable=True),
        sa.Column("payment_intent_id", sa.String(), nullable=True),
        sa.Column("terminal_checkout_id", sa.String(), nullable=True),
        sa.Column("state_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["seller_session_id"], ["seller_sessions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_orders_seller_session_id", "orders", ["seller_session_id"])
    op.create_index("ix_orders_customer_id", "orders", ["customer_id"])
    op.create_index("ix_orders_status", "orders", ["status"])
    op.create_index("ix_orders_payment_session_id", "orders", ["payment_session_id"])
    op.create_index("ix_orders_payment_intent_id", "orders", ["payment_intent_id"])
    op.create_index("ix_orders_terminal_checkout_id", "orders", ["terminal_checkout_id"])
    # Sweeper scans pending orders by expiry.
    op.create_index(
        "ix_orders_pending_expires_at",
        "orders",
        ["expires_at"],
        postgresql_where=sa.text("status = 'PENDING_PAYMENT'"),
    )

    op.create_table(
        "order_items",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("order_id", sa.String(), nullable=False),
        sa.Column("listing_id", sa.String(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price_cents", sa.Integer(), nullable=False),
        sa.Column("line_total_cents", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["listing_id"], ["listings.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])
    op.create_index("ix_order_items_listing_id", "order_items", ["listing_id"])

    op.create_table(
        "order_timeline",
        sa.Column("timeline_id", sa.String(), nullable=False),
        sa.Column("order_id", sa.String(), nullable=False),
        sa.Column("from_state", sa.String(), nullable=True),
        sa.Column("to_state", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("timeline_id"),
    )
    op.create_index("ix_order_timeline_order_id", "order_timeline", ["order_id"])

    op.create_table(
        "webhook_events",
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("provider", "event_id"),
    )

    op.create_table(
        "outbox_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("aggregate_type", sa.String(), nullable=False),
        sa.Column("aggregate_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("topic", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_outbox_events_aggregate_id", "outbox_events", ["aggregate_id"])
    op.create_index("ix_outbox_events_event_type", "outbox_events", ["event_type"])
    op.create_index("ix_outbox_events_status", "outbox_events", ["status"])
    op.create_index(
        "ix_outbox_events_pending_created_at",
        "outbox_events",
        ["created_at"],
        postgresql_where=sa.text("status = 'PENDING'"),
    )


def downgrade() -> None:
    op.drop_index("ix_outbox_events_pending_created_at", table_name="outbox_events")
    op.drop_index("ix_outbox_events_status", table_name="outbox_events")
    op.drop_index("ix_outbox_events_event_type", table_name="outbox_events")
    op.drop_index("ix_outbox_events_aggregate_id", table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_table("webhook_events")
    op.drop_index("ix_order_timeline_order_id", table_name="order_timeline")
    op.drop_table("order_timeline")
    op.drop_index("ix_order_items_listing_id", table_name="order_items")
    op.drop_index("ix_order_items_order_id", table_name="order_items")
    op.drop_table("order_items")
    op.drop_index("ix_orders_pending_expires_at", table_name="orders")
    op.drop_index("ix_orders_terminal_checkout_id", table_name="orders")
    op.drop_index("ix_orders_payment_intent_id", table_name="orders")
    op.drop_index("ix_orders_payment_session_id", table_name="orders")
    op.drop_index("ix_orders_status", table_name="orders")
    op.drop_index("ix_orders_customer_id", table_name="orders")
    op.drop_index("ix_orders_seller_session_id", table_name="orders")
    op.drop_table("orders")
    op.drop_index("ix_listings_seller_session_id", table_name="listings")
    op.drop_table("listings")
    op.drop_index("ix_seller_sessions_market_id", table_name="seller_sessions")
    op.drop_index("ix_seller_sessions_seller_id", table_name="seller_sessions")
    op.drop_table("seller_sessions")
    op.drop_index("ix_profiles_payment_provider", table_name="profiles")
    op.drop_table("profiles")
