"""Inventory reservation engine and expiry sweeper.

Both operations run as one database transaction each. Stock moves through
guarded `UPDATE`s (`qty_available >= :qty`, `status = 'PENDING_PAYMENT'`), so
concurrent reservations and sweeps never oversell or release twice, and a
failed line item rolls back the whole order.
"""

from datetime import timedelta

from sqlalchemy import case, select, update

from marketpay.common.clock import utcnow
from marketpay.common.errors import InsufficientInventory, NotFound, ValidationError
from marketpay.common.logging import logger
from marketpay.common.metrics import orders_created_total, orders_expired_total
from marketpay.common.state_machine import EXPIRED, PENDING_PAYMENT, validate_transition
from marketpay.services.orders.models import Listing, Order, OrderItem, OrderTimeline, SellerSession


class InventoryEngine:
    """Atomic reserve/release of listing stock around an order's lifetime."""

    def __init__(
        self,
        session_factory,
        reservation_ttl_seconds: int,
        currency: str,
        service_name: str = "marketpay-api",
    ) -> None:
        self.session_factory = session_factory
        self.reservation_ttl = timedelta(seconds=reservation_ttl_seconds)
        self.currency = currency
        self.service_name = service_name

    def reserve(self, seller_session_id: str, items: list[tuple[str, int]], customer_id: str | None = None) -> Order:
        """Reserve stock for every line and create a `PENDING_PAYMENT` order.

        Quantities for a repeated listing are merged before reserving.
        """

        quantities: dict[str, int] = {}
        for listing_id, quantity in items:
            if quantity <= 0:
                raise ValidationError("quantity must be a positive integer")
            quantities[listing_id] = quantities.get(listing_id, 0) + quantity
        if not quantities:
            raise ValidationError("items must be a non-empty array")

        with self.session_factory() as db:
            if db.get(SellerSession, seller_session_id) is None:
                raise NotFound("Seller session not found.")

            # Stable lock order keeps concurrent reservations from deadlocking.
            listings = db.execute(
                select(Listing).where(Listing.id.in_(sorted(quantities))).order_by(Listing.id).with_for_update()
            ).scalars().all()
            by_id = {listing.id: listing for listing in listings}
            missing = sorted(set(quantities) - set(by_id))
            if missing:
                raise NotFound(f"Listing not found: {missing[0]}")

            now = utcnow()
            order = Order(
                seller_session_id=seller_session_id,
                customer_id=customer_id,
                status=PENDING_PAYMENT,
                total_cents=0,
                currency=self.currency,
                expires_at=now + self.reservation_ttl,
            )
            db.add(order)
            db.flush()

            total = 0
            for listing_id in sorted(quantities):
                listing = by_id[listing_id]
                quantity = quantities[listing_id]
                if listing.seller_session_id != seller_session_id:
                    raise ValidationError(f"Listing {listing_id} does not belong to this seller session.")
                result = db.execute(
                    update(Listing)
                    .where(Listing.id == listing_id, Listing.qty_available >= quantity)
                    .values(
                        qty_available=Listing.qty_available - quantity,
                        qty_reserved=Listing.qty_reserved + quantity,
                    )
                )
                if result.rowcount != 1:
                    db.rollback()
                    logger.info(
                        "reservation rejected listing_id=%s requested=%s available=%s",
                        listing_id,
                        quantity,
                        listing.qty_available,
                    )
                    raise InsufficientInventory("Insufficient inventory for one or more listings.")
                line_total = listing.price_cents * quantity
                total += line_total
                db.add(
                    OrderItem(
                        order_id=order.id,
                        listing_id=listing_id,
                        quantity=quantity,
                        unit_price_cents=listing.price_cents,
                        line_total_cents=line_total,
                    )
                )

            order.total_cents = total
            db.add(
                OrderTimeline(
                    order_id=order.id,
                    from_state=None,
                    to_state=PENDING_PAYMENT,
                    reason="inventory_reserved",
                    source="reservation",
                )
            )
            db.commit()
            db.refresh(order)
        orders_created_total.labels(service=self.service_name).inc()
        logger.info("order reserved order_id=%s total_cents=%s lines=%s", order.id, total, len(quantities))
        return order

    def release_expired(self, now=None) -> int:
        """Expire stale pending orders and return their stock in one transaction."""

        now = now or utcnow()
        validate_transition(PENDING_PAYMENT, EXPIRED)
        released = 0
        with self.session_factory() as db:
            stale = db.execute(
                select(Order)
                .where(
                    Order.status == PENDING_PAYMENT,
                    Order.expires_at.is_not(None),
                    Order.expires_at < now,
                )
                .order_by(Order.id)
                .with_for_update(skip_locked=True)
            ).scalars().all()
            for order in stale:
                result = db.execute(
                    update(Order)
                    .where(Order.id == order.id, Order.status == PENDING_PAYMENT)
                    .values(status=EXPIRED, state_version=Order.state_version + 1, updated_at=now)
                )
                if result.rowcount != 1:
                    continue
                for item in order.items:
                    db.execute(
                        update(Listing)
                        .where(Listing.id == item.listing_id)
                        .values(
                            qty_available=Listing.qty_available + item.quantity,
                            qty_reserved=case(
                                (Listing.qty_reserved >= item.quantity, Listing.qty_reserved - item.quantity),
                                else_=0,
                            ),
                        )
                    )
                db.add(
                    OrderTimeline(
                        order_id=order.id,
                        from_state=PENDING_PAYMENT,
                        to_state=EXPIRED,
                        reason="reservation_expired",
                        source="sweeper",
                    )
                )
                released += 1
            db.commit()
        if released:
            orders_expired_total.labels(service=self.service_name).inc(released)
        logger.info("expired orders released count=%s", released)
        return released
