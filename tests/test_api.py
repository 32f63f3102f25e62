"""End-to-end request handling through the FastAPI app."""

import json

import pytest
from fastapi.testclient import TestClient

from marketpay.services.api.main import build_services, create_app
from marketpay.services.webhooks.signatures import square_signature

SQUARE_KEY = "sq-signature-key"
NOTIFICATION_URL = "https://market.test/api/square/webhook"


@pytest.fixture
def client(session_factory, fake_square):
    services = build_services(
        session_factory,
        square_client_factory=fake_square.client_factory,
        stripe_api_key="sk_test_dummy",
        confirm_retry_delays=[],
        cron_secret="cron-123",
        square_webhook_signature_key=SQUARE_KEY,
        square_webhook_notification_url=NOTIFICATION_URL,
        stripe_webhook_secret="whsec_test",
    )
    return TestClient(create_app(services, run_outbox_relay=False))


def open_order(client, market) -> str:
    ids = market.seed()
    resp = client.post(
        "/api/seller/checkout",
        json={
            "sellerSessionId": ids["seller_session_id"],
            "items": [{"listingId": ids["apples"], "quantity": 2}, {"listingId": ids["honey"], "quantity": 1}],
        },
    )
    assert resp.status_code == 200
    return resp.json()["orderId"]


def test_seller_checkout_creates_pending_order(client, market):
    ids = market.seed()

    resp = client.post(
        "/api/seller/checkout",
        json={"sellerSessionId": ids["seller_session_id"], "items": [{"listingId": ids["honey"], "quantity": 2}]},
    )

    body = resp.json()
    assert resp.status_code == 200
    assert body["totalCents"] == 3000
    assert body["payUrl"].endswith(f"/pay/{body['orderId']}")
    assert body["expiresAt"]


def test_seller_checkout_rejects_oversell_and_missing_fields(client, market):
    ids = market.seed()

    oversell = client.post(
        "/api/seller/checkout",
        json={"sellerSessionId": ids["seller_session_id"], "items": [{"listingId": ids["honey"], "quantity": 3}]},
    )
    missing = client.post("/api/seller/checkout", json={"items": [{"listingId": ids["honey"], "quantity": 1}]})

    assert oversell.status_code == 409
    assert oversell.json() == {"error": "Insufficient inventory for one or more listings."}
    assert missing.status_code == 400
    assert missing.json() == {"error": "sellerSessionId is required."}


def test_cash_payment_with_change(client, market):
    order_id = open_order(client, market)

    resp = client.post("/api/orders/pay-cash", json={"orderId": order_id, "cashReceivedCents": 3000})

    assert resp.status_code == 200
    assert resp.json() == {"status": "PAID", "paymentMethod": "cash", "cashReceivedCents": 3000, "changeCents": 500}
    status = client.get("/api/orders/status", params={"orderId": order_id}).json()
    assert status["status"] == "PAID"
    assert status["paidAt"]


def test_cash_payment_short(client, market):
    order_id = open_order(client, market)

    resp = client.post("/api/orders/pay-cash", json={"orderId": order_id, "cashReceivedCents": 2000})

    assert resp.status_code == 400
    assert "$20.00" in resp.json()["error"]
    assert "$25.00" in resp.json()["error"]


def test_malformed_json_body(client):
    resp = client.post("/api/orders/pay-cash", content=b"{not json", headers={"content-type": "application/json"})

    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid JSON body."}


def test_complete_requires_payment(client, market):
    order_id = open_order(client, market)

    resp = client.post("/api/orders/complete", json={"orderId": order_id})

    assert resp.status_code == 409
    assert resp.json() == {"error": "Order must be PAID before completing (current status: PENDING_PAYMENT)."}


def test_complete_after_payment_then_checkout_conflicts(client, market):
    order_id = open_order(client, market)
    client.post("/api/orders/pay-cash", json={"orderId": order_id, "cashReceivedCents": 2500})

    complete = client.post("/api/orders/complete", json={"orderId": order_id})
    checkout = client.post("/api/payments/create-checkout-session", json={"orderId": order_id})

    assert complete.json() == {"status": "COMPLETED"}
    assert checkout.status_code == 409


def test_native_payment(client, market):
    order_id = open_order(client, market)

    resp = client.post("/api/orders/complete-native-payment", json={"orderId": order_id, "squarePaymentId": "sq-1"})

    assert resp.json() == {"status": "PAID"}


def test_status_errors(client):
    assert client.get("/api/orders/status").json() == {"error": "orderId is required."}
    missing = client.get("/api/orders/status", params={"orderId": "nope"})
    assert missing.status_code == 404
    assert missing.json() == {"error": "Order not found."}


def test_status_of_pending_order(client, market):
    order_id = open_order(client, market)

    resp = client.get("/api/orders/status", params={"orderId": order_id})

    assert resp.json() == {"status": "PENDING_PAYMENT", "totalCents": 2500, "paidAt": None}


def test_release_expired_requires_cron_secret(client, market):
    order_id = open_order(client, market)
    market.expire(order_id)

    denied = client.post("/api/orders/release-expired")
    wrong = client.post("/api/orders/release-expired", headers={"Authorization": "Bearer nope"})
    allowed = client.post("/api/orders/release-expired", headers={"Authorization": "Bearer cron-123"})

    assert (denied.status_code, wrong.status_code) == (401, 401)
    assert denied.json() == {"error": "Unauthorized."}
    assert allowed.json() == {"released": 1}
    assert client.get("/api/orders/status", params={"orderId": order_id}).json()["status"] == "EXPIRED"


def test_expired_order_blocks_checkout_and_terminal(client, market):
    order_id = open_order(client, market)
    market.expire(order_id)

    checkout = client.post("/api/payments/create-checkout-session", json={"orderId": order_id})
    terminal = client.post("/api/square/terminal/checkout", json={"orderId": order_id})

    assert checkout.status_code == 410
    assert checkout.json() == {"error": "This order has expired. Please ask the seller to create a new one."}
    assert terminal.status_code == 410


def test_square_webhook_gate_and_duplicates(client):
    body = json.dumps(
        {
            "event_id": "evt-http-1",
            "type": "payment.updated",
            "data": {"object": {"payment": {"id": "PAY1", "status": "COMPLETED"}}},
        }
    ).encode()
    headers = {"x-square-hmacsha256-signature": square_signature(body, NOTIFICATION_URL, SQUARE_KEY)}

    rejected = client.post("/api/square/webhook", content=body, headers={"x-square-hmacsha256-signature": "bad"})
    non_ascii = client.post("/api/square/webhook", content=body, headers={"x-square-hmacsha256-signature": b"\xe9bad"})
    first = client.post("/api/square/webhook", content=body, headers=headers)
    second = client.post("/api/square/webhook", content=body, headers=headers)

    assert rejected.status_code == 400
    assert non_ascii.status_code == 400
    assert non_ascii.json() == {"error": "Signature verification failed."}
    assert first.json() == {"received": True}
    assert second.json() == {"received": True, "duplicate": True}


def test_stripe_webhook_without_signature(client):
    resp = client.post("/api/stripe/webhook", content=b"{}")

    assert resp.status_code == 400
    assert resp.json() == {"error": "Missing stripe-signature header."}


def test_terminal_status_requires_ids(client):
    resp = client.get("/api/square/terminal/status", params={"orderId": "x"})

    assert resp.status_code == 400
    assert resp.json() == {"error": "checkoutId and orderId are required."}


def test_health_and_metrics(client):
    assert client.get("/health").json() == {"ok": True}
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert b"http_requests_total" in metrics.content


def test_fractional_cash_is_rejected(client, market):
    order_id = open_order(client, market)

    resp = client.post("/api/orders/pay-cash", json={"orderId": order_id, "cashReceivedCents": 2500.5})

    assert resp.status_code == 400
    assert client.get("/api/orders/status", params={"orderId": order_id}).json()["status"] == "PENDING_PAYMENT"


def test_terminal_pairing_round_trip(client, market, fake_square, square_fields):
    ids = market.seed(provider="square", **square_fields(square_device_id=None))
    fake_square.add("POST", "/v2/devices/codes", {"device_code": {"id": "DC1", "code": "ABCDEF", "status": "UNPAIRED"}})
    fake_square.add(
        "GET",
        "/v2/devices/codes/DC1",
        {"device_code": {"id": "DC1", "code": "ABCDEF", "status": "PAIRED", "device_id": "device-9"}},
    )

    created = client.post("/api/square/terminal/pair", json={"sellerId": ids["seller_id"]})
    polled = client.get("/api/square/terminal/pair", params={"sellerId": ids["seller_id"], "deviceCodeId": "DC1"})

    assert created.status_code == 200
    assert created.json()["pairingCode"] == "ABCDEF"
    assert polled.json() == {"status": "PAIRED", "deviceId": "device-9", "pairingCode": "ABCDEF"}


def test_terminal_pairing_requires_ids(client):
    missing_seller = client.post("/api/square/terminal/pair", json={})
    missing_code = client.get("/api/square/terminal/pair", params={"sellerId": "seller-1"})

    assert missing_seller.status_code == 400
    assert missing_seller.json() == {"error": "sellerId is required."}
    assert missing_code.status_code == 400
    assert missing_code.json() == {"error": "deviceCodeId is required."}
