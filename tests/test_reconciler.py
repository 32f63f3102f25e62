"""Correlation strategies and the webhook consumer."""

import asyncio
from datetime import timedelta

import pytest

from marketpay.common.clock import utcnow
from marketpay.common.events import EventEnvelope
from marketpay.services.reconciler.correlation import Correlator
from marketpay.services.reconciler.service import ReconcilerService
from marketpay.services.webhooks.parsing import PAYMENT_COMPLETED, TERMINAL_CHECKOUT_COMPLETED, NormalizedPaymentEvent


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def correlator(market, sellers, tokens, fake_square):
    return Correlator.default(
        market.orders,
        sellers,
        tokens,
        square_client_factory=fake_square.client_factory,
        platform_access_token="platform-token",
    )


@pytest.fixture
def reconciler(market, correlator):
    return ReconcilerService(market.orders, correlator, service_name="marketpay-reconciler")


def square_event(**fields) -> NormalizedPaymentEvent:
    defaults = {"provider": "square", "event_id": "evt-1", "event_type": "payment.updated", "kind": PAYMENT_COMPLETED}
    return NormalizedPaymentEvent(**{**defaults, **fields})


def envelope(event: NormalizedPaymentEvent) -> EventEnvelope:
    return EventEnvelope(
        event_type=f"webhook.{event.kind}",
        aggregate_id=event.event_id or "x",
        payload=event.model_dump(mode="json"),
    )


def test_provider_payment_id_wins_first(market, correlator):
    ids = market.seed()
    order = market.order(ids)
    market.set_order(order.id, payment_intent_id="PAY1")

    assert run(correlator.correlate(square_event(provider_payment_id="PAY1"))) == (order.id, "provider_payment_id")


def test_reference_id_must_name_an_existing_order(market, correlator):
    ids = market.seed()
    order = market.order(ids)

    assert run(correlator.correlate(square_event(reference_id=order.id))) == (order.id, "reference_id")
    assert run(correlator.correlate(square_event(reference_id="ghost"))) == (None, None)


def test_remote_order_metadata_through_platform_token(market, correlator, fake_square):
    ids = market.seed()
    order = market.order(ids)
    fake_square.add("GET", "/v2/orders/SQO1", {"order": {"id": "SQO1", "metadata": {"orderId": order.id}}})

    assert run(correlator.correlate(square_event(provider_order_id="SQO1"))) == (order.id, "remote_order_metadata")
    assert fake_square.calls("/v2/orders/SQO1")[0].headers["Authorization"] == "Bearer platform-token"


def test_payment_session_prefers_matching_provider(market, correlator):
    ids = market.seed()
    stripe_order = market.order(ids, [(ids["apples"], 1)])
    square_order = market.order(ids, [(ids["apples"], 1)])
    market.orders.attach_payment_session(stripe_order.id, "platform", "SHARED")
    market.orders.attach_payment_session(square_order.id, "square", "SHARED")

    assert run(correlator.correlate(square_event(session_ids=["SHARED"]))) == (square_order.id, "payment_session_id")


def test_payment_session_falls_back_to_any_provider(market, correlator):
    ids = market.seed()
    order = market.order(ids)
    market.orders.attach_payment_session(order.id, "platform", "PL1")

    assert run(correlator.correlate(square_event(session_ids=["PL1"]))) == (order.id, "payment_session_id")


def test_seller_account_scan_is_last_resort(market, correlator, fake_square, square_fields):
    ids = market.seed()
    order = market.order(ids)
    market.seed(provider="square", **square_fields(square_access_token="seller-a"))
    market.seed(provider="square", **square_fields(square_access_token="seller-b"))

    def remote_order(request):
        if request.headers["Authorization"] == "Bearer seller-b":
            return {"order": {"id": "SQO9", "metadata": {"orderId": order.id}}}
        return 404, {"errors": [{"detail": "Not found"}]}

    fake_square.add("GET", "/v2/orders/SQO9", remote_order)

    assert run(correlator.correlate(square_event(provider_order_id="SQO9"))) == (order.id, "seller_account_scan")
    tokens_tried = [request.headers["Authorization"] for request in fake_square.calls("/v2/orders/SQO9")]
    assert tokens_tried[0] == "Bearer platform-token"
    assert "Bearer seller-b" in tokens_tried


def test_seller_scan_skips_sellers_with_dead_tokens(market, correlator, fake_square, square_fields):
    market.seed(
        provider="square",
        **square_fields(square_token_expires_at=utcnow() - timedelta(days=1), square_refresh_token=None),
    )
    fake_square.add("GET", "/v2/orders/SQO9", (404, {"errors": [{"detail": "Not found"}]}))

    assert run(correlator.correlate(square_event(provider_order_id="SQO9"))) == (None, None)
    assert len(fake_square.calls("/v2/orders/SQO9")) == 1


def test_terminal_events_only_use_checkout_id(market, correlator):
    ids = market.seed()
    order = market.order(ids)
    market.orders.attach_payment_session(order.id, "square", "TC1")
    other = market.order(ids, [(ids["apples"], 1)])

    event = square_event(kind=TERMINAL_CHECKOUT_COMPLETED, session_ids=["TC1"], reference_id=other.id)
    assert run(correlator.correlate(event)) == (order.id, "payment_session_id")

    unmatched = square_event(kind=TERMINAL_CHECKOUT_COMPLETED, session_ids=["TC-other"], reference_id=other.id)
    assert run(correlator.correlate(unmatched)) == (None, None)


def test_late_terminal_event_matches_after_hosted_link(market, correlator):
    ids = market.seed()
    order = market.order(ids)
    market.orders.attach_payment_session(order.id, "square", "TC1", terminal=True)
    market.orders.attach_payment_session(order.id, "platform", "cs_1")

    event = square_event(kind=TERMINAL_CHECKOUT_COMPLETED, session_ids=["TC1"])
    assert run(correlator.correlate(event)) == (order.id, "payment_session_id")


def test_reconciler_marks_paid_and_absorbs_redelivery(market, reconciler):
    ids = market.seed(provider="platform")
    order = market.order(ids)
    market.orders.attach_payment_session(order.id, "platform", "PL1")
    event = square_event(session_ids=["PL1"], provider_payment_id="PAY1")

    first = run(reconciler.handle_webhook_received(envelope(event)))
    second = run(reconciler.handle_webhook_received(envelope(event)))

    assert (first.applied, second.applied) == (True, False)
    stored = market.orders.get_order(order.id)
    assert (stored.status, stored.payment_provider, stored.payment_intent_id) == ("PAID", "square", "PAY1")


def test_reconciler_keeps_stripe_provider(market, reconciler):
    ids = market.seed(provider="stripe", stripe_connected_account_id="acct_1")
    order = market.order(ids)
    market.orders.attach_payment_session(order.id, "stripe", "cs_1")
    event = NormalizedPaymentEvent(
        provider="stripe",
        event_id="evt_s",
        event_type="checkout.session.completed",
        kind=PAYMENT_COMPLETED,
        provider_payment_id="pi_1",
        reference_id=order.id,
        session_ids=["cs_1"],
    )

    run(reconciler.handle_webhook_received(envelope(event)))

    stored = market.orders.get_order(order.id)
    assert (stored.status, stored.payment_provider, stored.payment_intent_id) == ("PAID", "stripe", "pi_1")


def test_uncorrelated_event_is_logged_not_raised(market, reconciler, caplog):
    event = square_event(provider_payment_id="nobody", raw={"type": "payment.updated", "marker": "full-payload"})

    with caplog.at_level("ERROR", logger="marketpay"):
        assert run(reconciler.handle_webhook_received(envelope(event))) is None

    assert any("full-payload" in record.getMessage() for record in caplog.records)


def test_reconciler_ignores_expired_order(market, reconciler):
    ids = market.seed()
    order = market.order(ids)
    market.expire(order.id)
    market.inventory.release_expired()

    assert run(reconciler.handle_webhook_received(envelope(square_event(reference_id=order.id)))) is None
    assert market.orders.get_order(order.id).status == "EXPIRED"
