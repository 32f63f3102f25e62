"""Order state transitions.

Writers are spread across webhook correlation, status polling, terminal
polling, cash and native-SDK confirmation, with no shared transaction. Every
transition is therefore a compare-and-set on `(id, status)`; a writer whose
update matches no row re-reads the order and treats "already paid" as success.
"""

import time
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import or_, select, update

from marketpay.common.clock import as_utc, isoformat, utcnow
from marketpay.common.errors import Expired, NotFound, StateConflict, ValidationError
from marketpay.common.logging import logger
from marketpay.common.metrics import orders_completed_total, orders_paid_total
from marketpay.common.state_machine import (
    COMPLETED,
    PAID,
    PAID_OR_LATER,
    PENDING_PAYMENT,
    validate_transition,
)
from marketpay.services.orders.models import Order, OrderTimeline, SellerSession


@dataclass
class MarkPaidResult:
    order_id: str
    status: str
    applied: bool


@dataclass
class CashPayment:
    status: str
    payment_method: str
    cash_received_cents: int
    change_cents: int


def format_dollars(cents: int) -> str:
    return f"${cents / 100:.2f}"


def is_expired(order: Order, now: datetime | None = None) -> bool:
    expires_at = as_utc(order.expires_at)
    return expires_at is not None and expires_at < (now or utcnow())


class OrderService:
    """Owns order lookups and every guarded status write."""

    def __init__(self, session_factory, service_name: str = "marketpay-api") -> None:
        self.session_factory = session_factory
        self.service_name = service_name

    def get_order(self, order_id: str) -> Order:
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise NotFound("Order not found.")
            # Touch relationships while the session is open.
            _ = order.items, order.seller_session
            return order

    def status_snapshot(self, order_id: str) -> dict:
        order = self.get_order(order_id)
        return {"status": order.status, "totalCents": order.total_cents, "paidAt": isoformat(order.paid_at)}

    def get_seller_id_for_order(self, order_id: str) -> str | None:
        """Resolve order -> seller session -> seller id."""

        with self.session_factory() as db:
            return db.execute(
                select(SellerSession.seller_id)
                .join(Order, Order.seller_session_id == SellerSession.id)
                .where(Order.id == order_id)
            ).scalar_one_or_none()

    def order_exists(self, order_id: str) -> bool:
        with self.session_factory() as db:
            return db.get(Order, order_id) is not None

    def find_by_payment_intent(self, provider_payment_id: str) -> str | None:
        with self.session_factory() as db:
            return db.execute(
                select(Order.id).where(Order.payment_intent_id == provider_payment_id).limit(1)
            ).scalar_one_or_none()

    def find_by_session(self, session_id: str, provider: str | None = None) -> str | None:
        """Match the current session or the last terminal checkout pushed for the order."""

        query = select(Order.id).where(
            or_(Order.payment_session_id == session_id, Order.terminal_checkout_id == session_id)
        )
        if provider is not None:
            query = query.where(Order.payment_provider == provider)
        with self.session_factory() as db:
            return db.execute(query.limit(1)).scalar_one_or_none()

    def attach_payment_session(self, order_id: str, provider: str, session_id: str, terminal: bool = False) -> bool:
        """Record which provider session belongs to a pending order.

        Returns False instead of raising: the buyer already holds a usable
        session, and webhook/poll paths re-derive state without this row.
        """

        values = {"payment_provider": provider, "payment_session_id": session_id, "updated_at": utcnow()}
        if terminal:
            values["terminal_checkout_id"] = session_id
        try:
            with self.session_factory() as db:
                result = db.execute(
                    update(Order)
                    .where(Order.id == order_id, Order.status == PENDING_PAYMENT)
                    .values(**values)
                )
                db.commit()
                if result.rowcount != 1:
                    logger.warning("payment session not attached order_id=%s (order no longer pending)", order_id)
                    return False
                return True
        except Exception as exc:
            logger.error("failed to save payment session order_id=%s session_id=%s: %s", order_id, session_id, exc)
            return False

    def _transition(
        self,
        db,
        order_id: str,
        expected: str,
        new: str,
        reason: str,
        source: str,
        values: dict | None = None,
    ) -> bool:
        """Apply one validated transition only if the order is still in `expected`."""

        validate_transition(expected, new)
        result = db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == expected)
            .values(status=new, state_version=Order.state_version + 1, updated_at=utcnow(), **(values or {}))
        )
        if result.rowcount != 1:
            return False
        db.add(OrderTimeline(order_id=order_id, from_state=expected, to_state=new, reason=reason, source=source))
        return True

    def _current_status(self, db, order_id: str) -> str:
        return db.execute(select(Order.status).where(Order.id == order_id)).scalar_one()

    def mark_paid(
        self,
        order_id: str,
        source: str,
        provider: str | None = None,
        provider_payment_id: str | None = None,
        reason: str = "payment_confirmed",
    ) -> MarkPaidResult:
        """Idempotent PENDING_PAYMENT -> PAID.

        Exactly one concurrent caller applies the write; the rest see PAID or
        COMPLETED and return `applied=False`. Other statuses are conflicts.
        """

        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise NotFound("Order not found.")
            if order.status in PAID_OR_LATER:
                return MarkPaidResult(order_id, order.status, applied=False)
            if order.status != PENDING_PAYMENT:
                raise StateConflict(f"Order is not awaiting payment (status: {order.status}).")

            values: dict = {"paid_at": utcnow()}
            if provider_payment_id:
                values["payment_intent_id"] = provider_payment_id
            if provider:
                values["payment_provider"] = provider
            if not self._transition(db, order_id, PENDING_PAYMENT, PAID, reason, source, values):
                db.rollback()
                current = self._current_status(db, order_id)
                if current in PAID_OR_LATER:
                    logger.info("mark paid lost race order_id=%s source=%s status=%s", order_id, source, current)
                    return MarkPaidResult(order_id, current, applied=False)
                raise StateConflict(f"Order is not awaiting payment (status: {current}).")
            db.commit()

        orders_paid_total.labels(service=self.service_name, source=source).inc()
        logger.info(
            "order marked paid order_id=%s source=%s provider=%s payment_id=%s",
            order_id,
            source,
            provider,
            provider_payment_id,
        )
        return MarkPaidResult(order_id, PAID, applied=True)

    def complete_order(self, order_id: str) -> str:
        """Seller confirms pickup: PAID -> COMPLETED, idempotent on COMPLETED."""

        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise NotFound("Order not found.")
            if order.status == COMPLETED:
                return COMPLETED
            if order.status != PAID:
                raise StateConflict(f"Order must be PAID before completing (current status: {order.status}).")
            if not self._transition(db, order_id, PAID, COMPLETED, "pickup_confirmed", "seller"):
                db.rollback()
                current = self._current_status(db, order_id)
                if current == COMPLETED:
                    return COMPLETED
                raise StateConflict(f"Order must be PAID before completing (current status: {current}).")
            db.commit()
        orders_completed_total.labels(service=self.service_name).inc()
        logger.info("order completed order_id=%s", order_id)
        return COMPLETED

    def pay_cash(self, order_id: str, cash_received_cents) -> CashPayment:
        """Take cash at the stall and mark the order paid in the same call."""

        if (
            isinstance(cash_received_cents, bool)
            or not isinstance(cash_received_cents, int)
            or cash_received_cents <= 0
        ):
            raise ValidationError("cashReceivedCents must be a positive number.")

        order = self.get_order(order_id)
        if order.status in PAID_OR_LATER:
            raise StateConflict(f"Order is already {order.status.lower()}.")
        if order.status != PENDING_PAYMENT:
            raise StateConflict(f"Order cannot be paid (current status: {order.status}).")
        if is_expired(order):
            raise Expired("This order has expired.")
        if cash_received_cents < order.total_cents:
            raise ValidationError(
                f"Cash received ({format_dollars(cash_received_cents)}) is less than "
                f"total ({format_dollars(order.total_cents)})."
            )

        result = self.mark_paid(
            order_id,
            source="cash",
            provider="cash",
            provider_payment_id=f"cash-{order_id}-{int(time.time() * 1000)}",
            reason="cash_received",
        )
        if not result.applied:
            raise StateConflict(f"Order is already {result.status.lower()}.")
        return CashPayment(
            status=PAID,
            payment_method="cash",
            cash_received_cents=cash_received_cents,
            change_cents=cash_received_cents - order.total_cents,
        )

    def complete_native_payment(self, order_id: str, provider_payment_id: str) -> str:
        """Record a payment already taken by the on-device Square SDK."""

        result = self.mark_paid(
            order_id,
            source="native_sdk",
            provider="square",
            provider_payment_id=provider_payment_id,
            reason="native_payment_completed",
        )
        return result.status
