"""Webhook intake: signature gate, normalization, ledger and outbox."""

import hashlib
import hmac
import json
import time

import pytest

from marketpay.common.errors import SignatureVerificationFailure, ValidationError, WebhookNotConfigured
from marketpay.services.orders.models import OutboxEvent, WebhookEvent
from marketpay.services.webhooks.parsing import (
    IGNORED,
    PAYMENT_COMPLETED,
    TERMINAL_CHECKOUT_COMPLETED,
    parse_square_event,
    parse_stripe_event,
)
from marketpay.services.webhooks.service import WebhookIntakeService
from marketpay.services.webhooks.signatures import square_signature

SQUARE_KEY = "sq-signature-key"
NOTIFICATION_URL = "https://market.test/api/square/webhook"
STRIPE_SECRET = "whsec_test"


@pytest.fixture
def intake(session_factory):
    return WebhookIntakeService(
        session_factory,
        square_signature_key=SQUARE_KEY,
        square_notification_url=NOTIFICATION_URL,
        stripe_webhook_secret=STRIPE_SECRET,
    )


def square_payment_event(event_id="evt-1", **payment) -> bytes:
    payment = {"id": "PAY1", "order_id": "SQO1", "status": "COMPLETED", **payment}
    return json.dumps(
        {"event_id": event_id, "type": "payment.updated", "data": {"object": {"payment": payment}}}
    ).encode()


def stripe_signature_header(body: bytes, secret: str = STRIPE_SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{body.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def rows(session_factory, model):
    with session_factory() as db:
        return db.query(model).all()


def test_square_event_is_recorded_and_enqueued(intake, session_factory):
    body = square_payment_event()

    result = intake.accept_square(body, square_signature(body, NOTIFICATION_URL, SQUARE_KEY), "http://internal/x")

    assert result == {"received": True}
    ledger = rows(session_factory, WebhookEvent)
    assert [(row.provider, row.event_id) for row in ledger] == [("square", "evt-1")]
    outbox = rows(session_factory, OutboxEvent)
    assert len(outbox) == 1
    assert outbox[0].topic == "payments.webhook.received"
    assert outbox[0].event_type == "webhook.payment_completed"
    assert outbox[0].payload["payload"]["provider_payment_id"] == "PAY1"
    assert outbox[0].payload["payload"]["provider_order_id"] == "SQO1"


def test_duplicate_event_id_has_no_second_effect(intake, session_factory):
    body = square_payment_event()
    signature = square_signature(body, NOTIFICATION_URL, SQUARE_KEY)

    intake.accept_square(body, signature, NOTIFICATION_URL)
    result = intake.accept_square(body, signature, NOTIFICATION_URL)

    assert result == {"received": True, "duplicate": True}
    assert len(rows(session_factory, WebhookEvent)) == 1
    assert len(rows(session_factory, OutboxEvent)) == 1


@pytest.mark.parametrize("signature", [None, "", "bm90LXRoZS1zaWduYXR1cmU="])
def test_bad_square_signature_is_rejected_before_anything(intake, session_factory, signature):
    with pytest.raises(SignatureVerificationFailure) as exc:
        intake.accept_square(square_payment_event(), signature, NOTIFICATION_URL)

    assert exc.value.status_code == 400
    assert rows(session_factory, WebhookEvent) == []
    assert rows(session_factory, OutboxEvent) == []


def test_square_signature_covers_notification_url(intake):
    body = square_payment_event()
    signed_for_other_url = square_signature(body, "https://elsewhere.test/hook", SQUARE_KEY)

    with pytest.raises(SignatureVerificationFailure):
        intake.accept_square(body, signed_for_other_url, "https://elsewhere.test/hook")


def test_request_url_used_when_notification_url_unset(session_factory):
    intake = WebhookIntakeService(session_factory, square_signature_key=SQUARE_KEY, square_notification_url="")
    body = square_payment_event()

    result = intake.accept_square(body, square_signature(body, "https://tunnel.test/hook", SQUARE_KEY), "https://tunnel.test/hook")
    assert result == {"received": True}


def test_unconfigured_secret_is_a_server_error(session_factory):
    intake = WebhookIntakeService(
        session_factory, square_signature_key="", square_notification_url="", stripe_webhook_secret=""
    )

    with pytest.raises(WebhookNotConfigured) as exc:
        intake.accept_square(b"{}", "sig", NOTIFICATION_URL)
    assert exc.value.status_code == 500
    assert exc.value.message == "Webhook secret not configured."
    with pytest.raises(WebhookNotConfigured):
        intake.accept_stripe(b"{}", "sig")


def test_signed_but_malformed_body(intake):
    body = b"not json"
    with pytest.raises(ValidationError) as exc:
        intake.accept_square(body, square_signature(body, NOTIFICATION_URL, SQUARE_KEY), NOTIFICATION_URL)
    assert exc.value.message == "Invalid JSON body."


def test_ignored_square_event_is_acknowledged_without_outbox(intake, session_factory):
    body = json.dumps({"event_id": "evt-2", "type": "customer.created", "data": {"object": {}}}).encode()

    assert intake.accept_square(body, square_signature(body, NOTIFICATION_URL, SQUARE_KEY), NOTIFICATION_URL) == {
        "received": True
    }
    assert len(rows(session_factory, WebhookEvent)) == 1
    assert rows(session_factory, OutboxEvent) == []


def test_stripe_event_verified_and_enqueued(intake, session_factory):
    body = json.dumps(
        {
            "id": "evt_stripe_1",
            "object": "event",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_test_1",
                    "object": "checkout.session",
                    "payment_intent": "pi_1",
                    "payment_status": "paid",
                    "metadata": {"orderId": "order-1"},
                }
            },
        }
    ).encode()

    assert intake.accept_stripe(body, stripe_signature_header(body)) == {"received": True}
    payload = rows(session_factory, OutboxEvent)[0].payload["payload"]
    assert payload["reference_id"] == "order-1"
    assert payload["session_ids"] == ["cs_test_1"]


def test_stripe_signature_with_wrong_secret(intake, session_factory):
    body = json.dumps({"id": "evt_stripe_2", "object": "event", "type": "payment_intent.succeeded"}).encode()

    with pytest.raises(SignatureVerificationFailure):
        intake.accept_stripe(body, stripe_signature_header(body, secret="whsec_other"))
    with pytest.raises(SignatureVerificationFailure) as exc:
        intake.accept_stripe(body, None)
    assert exc.value.message == "Missing stripe-signature header."
    assert rows(session_factory, WebhookEvent) == []


def test_parse_square_payment_note_reference():
    event = parse_square_event(
        {
            "event_id": "e1",
            "type": "payment.completed",
            "data": {"object": {"payment": {"id": "P1", "note": "Market order orderId:abc-123", "status": "COMPLETED"}}},
        }
    )
    assert event.kind == PAYMENT_COMPLETED
    assert event.reference_id == "abc-123"


def test_parse_square_pending_payment_is_ignored():
    event = parse_square_event(
        {"event_id": "e2", "type": "payment.updated", "data": {"object": {"payment": {"id": "P1", "status": "APPROVED"}}}}
    )
    assert event.kind == IGNORED
    assert not event.actionable


@pytest.mark.parametrize(
    "obj",
    [
        {"checkout": {"id": "TC1", "status": "COMPLETED", "reference_id": "o1", "payment_ids": ["P1"]}},
        {"id": "TC1", "status": "COMPLETED", "reference_id": "o1", "payment_ids": ["P1"]},
    ],
)
def test_parse_square_terminal_checkout(obj):
    event = parse_square_event({"event_id": "e3", "type": "terminal.checkout.updated", "data": {"object": obj}})
    assert event.kind == TERMINAL_CHECKOUT_COMPLETED
    assert event.session_ids == ["TC1"]
    assert event.provider_payment_id == "P1"


def test_parse_stripe_unpaid_async_session_is_ignored():
    event = parse_stripe_event(
        {
            "id": "evt_3",
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_1", "payment_status": "unpaid", "metadata": {"orderId": "o1"}}},
        }
    )
    assert event.kind == IGNORED


def test_parse_stripe_payment_intent():
    event = parse_stripe_event(
        {
            "id": "evt_4",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_9", "status": "succeeded", "metadata": {"orderId": "o9"}}},
        }
    )
    assert (event.kind, event.provider_payment_id, event.reference_id) == (PAYMENT_COMPLETED, "pi_9", "o9")


def test_non_ascii_square_signature_is_a_mismatch(intake, session_factory):
    with pytest.raises(SignatureVerificationFailure) as exc:
        intake.accept_square(square_payment_event(), "\xe9bad", NOTIFICATION_URL)

    assert exc.value.status_code == 400
    assert rows(session_factory, WebhookEvent) == []
