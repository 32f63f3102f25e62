"""Reservation and expiry sweeper behaviour."""

from datetime import timedelta

import pytest

from marketpay.common.clock import utcnow
from marketpay.common.errors import InsufficientInventory, NotFound, ValidationError
from marketpay.services.orders.models import Order, OrderTimeline


def test_reserve_moves_stock_and_prices_order(market):
    ids = market.seed()
    order = market.order(ids)

    assert order.status == "PENDING_PAYMENT"
    assert order.total_cents == 2500
    assert order.currency == "aud"
    assert order.expires_at is not None
    assert len(order.items) == 2
    apples = market.listing(ids["apples"])
    assert (apples.qty_available, apples.qty_reserved) == (8, 2)


def test_reserve_merges_repeated_listing(market):
    ids = market.seed()
    order = market.order(ids, [(ids["apples"], 1), (ids["apples"], 2)])

    assert order.total_cents == 1500
    assert [item.quantity for item in order.items] == [3]


def test_insufficient_stock_rolls_back_whole_order(market, session_factory):
    ids = market.seed()
    with pytest.raises(InsufficientInventory) as exc:
        market.order(ids, [(ids["apples"], 1), (ids["honey"], 3)])

    assert exc.value.message == "Insufficient inventory for one or more listings."
    assert market.listing(ids["apples"]).qty_available == 10
    with session_factory() as db:
        assert db.query(Order).count() == 0


def test_reserve_rejects_unknown_listing_and_session(market):
    ids = market.seed()
    with pytest.raises(NotFound):
        market.inventory.reserve(ids["seller_session_id"], [("missing", 1)])
    with pytest.raises(NotFound):
        market.inventory.reserve("missing-session", [(ids["apples"], 1)])


def test_reserve_rejects_non_positive_quantity(market):
    ids = market.seed()
    with pytest.raises(ValidationError):
        market.order(ids, [(ids["apples"], 0)])


def test_release_expired_restores_stock_once(market, session_factory):
    ids = market.seed()
    stale = market.order(ids)
    fresh = market.order(ids, [(ids["apples"], 1)])
    market.expire(stale.id)

    assert market.inventory.release_expired() == 1
    assert market.inventory.release_expired() == 0

    assert market.orders.get_order(stale.id).status == "EXPIRED"
    assert market.orders.get_order(fresh.id).status == "PENDING_PAYMENT"
    apples = market.listing(ids["apples"])
    assert (apples.qty_available, apples.qty_reserved) == (9, 1)
    assert market.listing(ids["honey"]).qty_available == 2
    with session_factory() as db:
        sources = [row.source for row in db.query(OrderTimeline).filter_by(order_id=stale.id, to_state="EXPIRED")]
    assert sources == ["sweeper"]


def test_release_expired_never_touches_paid_orders(market):
    ids = market.seed()
    order = market.order(ids)
    market.orders.mark_paid(order.id, source="webhook")
    market.set_order(order.id, expires_at=utcnow() - timedelta(hours=1))

    assert market.inventory.release_expired() == 0
    assert market.orders.get_order(order.id).status == "PAID"
    assert market.listing(ids["apples"]).qty_available == 8
