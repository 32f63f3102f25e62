"""Marketplace database models.

Orders, their items, and the listings they reserve are the only rows the
payment core reasons about directly. Seller profiles are read to assemble a
seller's payment configuration; `webhook_events` is the append-only
idempotency ledger and `outbox_events` feeds the reconciler.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import JSON, CheckConstraint, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketpay.common.db import Base

JsonPayload = JSON().with_variant(JSONB(), "postgresql")


class SellerProfile(Base):
    """Seller payment settings and linked provider credentials."""

    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    display_name: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_provider: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    stripe_connected_account_id: Mapped[str | None] = mapped_column(String, nullable=True)
    square_merchant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    square_access_token: Mapped[str | None] = mapped_column(String, nullable=True)
    square_refresh_token: Mapped[str | None] = mapped_column(String, nullable=True)
    square_token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    square_location_id: Mapped[str | None] = mapped_column(String, nullable=True)
    square_device_id: Mapped[str | None] = mapped_column(String, nullable=True)


class SellerSession(Base):
    """A seller's presence at one market day; listings and orders hang off it."""

    __tablename__ = "seller_sessions"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    seller_id: Mapped[str] = mapped_column(ForeignKey("profiles.id"), index=True)
    market_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)


class Listing(Base):
    """Sellable stock for one seller session."""

    __tablename__ = "listings"
    __table_args__ = (
        CheckConstraint("qty_available >= 0", name="ck_listings_available_non_negative"),
        CheckConstraint("qty_reserved >= 0", name="ck_listings_reserved_non_negative"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    seller_session_id: Mapped[str] = mapped_column(ForeignKey("seller_sessions.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    unit: Mapped[str | None] = mapped_column(String, nullable=True)
    price_cents: Mapped[int] = mapped_column(Integer)
    qty_available: Mapped[int] = mapped_column(Integer, default=0)
    qty_reserved: Mapped[int] = mapped_column(Integer, default=0)


class Order(Base):
    """Current state of an order aggregate."""

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    seller_session_id: Mapped[str] = mapped_column(ForeignKey("seller_sessions.id"), index=True)
    customer_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    status: Mapped[str] = mapped_column(String, index=True)
    total_cents: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_provider: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_session_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    payment_intent_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    terminal_checkout_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    items: Mapped[list["OrderItem"]] = relationship(back_populates="order", lazy="selectin")
    seller_session: Mapped[SellerSession] = relationship(lazy="joined")


class OrderItem(Base):
    """Immutable line item captured at reservation time."""

    __tablename__ = "order_items"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), index=True)
    listing_id: Mapped[str] = mapped_column(ForeignKey("listings.id"), index=True)
    quantity: Mapped[int] = mapped_column(Integer)
    unit_price_cents: Mapped[int] = mapped_column(Integer)
    line_total_cents: Mapped[int] = mapped_column(Integer)

    order: Mapped[Order] = relationship(back_populates="items")
    listing: Mapped[Listing] = relationship(lazy="joined")


class OrderTimeline(Base):
    """Immutable audit trail of every order status transition."""

    __tablename__ = "order_timeline"

    timeline_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), index=True)
    from_state: Mapped[str | None] = mapped_column(String, nullable=True)
    to_state: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String)
    source: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class WebhookEvent(Base):
    """Idempotency ledger of provider event ids already accepted."""

    __tablename__ = "webhook_events"

    provider: Mapped[str] = mapped_column(String, primary_key=True)
    event_id: Mapped[str] = mapped_column(String, primary_key=True)
    event_type: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JsonPayload)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class OutboxEvent(Base):
    """Events waiting to be published to Kafka for the reconciler."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JsonPayload)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
