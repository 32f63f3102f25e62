"""Shared fixtures: in-memory database, seeded market data, fake Square API."""

import os

os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("SITE_URL", "https://market.test")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")

from datetime import timedelta

import httpx
import pytest

from marketpay.common.clock import utcnow
from marketpay.common.db import Base, make_engine, make_session_factory
from marketpay.services.orders.inventory import InventoryEngine
from marketpay.services.orders.models import Listing, Order, SellerProfile, SellerSession
from marketpay.services.orders.service import OrderService
from marketpay.services.payments.sellers import SellerDirectory, SquareTokenManager
from marketpay.services.payments.square import SquareClient


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield make_session_factory(engine)
    engine.dispose()


class Market:
    """Seeds one seller with a session and two listings."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory
        self.inventory = InventoryEngine(session_factory, reservation_ttl_seconds=900, currency="aud")
        self.orders = OrderService(session_factory)

    def seed(self, provider: str | None = "platform", **profile_fields) -> dict:
        with self.session_factory() as db:
            profile = SellerProfile(display_name="Hillside Farm", payment_provider=provider, **profile_fields)
            db.add(profile)
            db.flush()
            seller_session = SellerSession(seller_id=profile.id, market_id="market-1")
            db.add(seller_session)
            db.flush()
            apples = Listing(
                seller_session_id=seller_session.id, name="Apples", unit="kg", price_cents=500, qty_available=10
            )
            honey = Listing(
                seller_session_id=seller_session.id, name="Honey", unit="jar", price_cents=1500, qty_available=2
            )
            db.add_all([apples, honey])
            db.commit()
            return {
                "seller_id": profile.id,
                "seller_session_id": seller_session.id,
                "apples": apples.id,
                "honey": honey.id,
            }

    def order(self, ids: dict, items: list[tuple[str, int]] | None = None) -> Order:
        """2 kg apples + 1 jar of honey = 2500 cents unless told otherwise."""

        items = items or [(ids["apples"], 2), (ids["honey"], 1)]
        return self.inventory.reserve(ids["seller_session_id"], items)

    def set_order(self, order_id: str, **values) -> None:
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            for key, value in values.items():
                setattr(order, key, value)
            db.commit()

    def expire(self, order_id: str) -> None:
        self.set_order(order_id, expires_at=utcnow() - timedelta(minutes=1))

    def listing(self, listing_id: str) -> Listing:
        with self.session_factory() as db:
            return db.get(Listing, listing_id)


@pytest.fixture
def market(session_factory):
    return Market(session_factory)


@pytest.fixture
def file_market(tmp_path):
    """Market on a file database so racing writers use separate connections."""

    engine = make_engine(f"sqlite:///{tmp_path / 'market.db'}")
    Base.metadata.create_all(engine)
    yield Market(make_session_factory(engine))
    engine.dispose()


class FakeSquare:
    """Routes Square REST calls to canned responses and records requests."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], object] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, response) -> None:
        """`response` is a JSON dict, an `(status, dict)` tuple, or a callable taking the request."""

        self.routes[(method, path)] = response

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.routes.get((request.method, request.url.path))
        if response is None:
            return httpx.Response(404, json={"errors": [{"code": "NOT_FOUND", "detail": "Resource not found."}]})
        if callable(response):
            response = response(request)
        if isinstance(response, tuple):
            status, body = response
            return httpx.Response(status, json=body)
        return httpx.Response(200, json=response)

    def client_factory(self, access_token: str) -> SquareClient:
        return SquareClient(
            access_token,
            base_url="https://square.test",
            api_version="2025-01-23",
            timeout=5.0,
            transport=httpx.MockTransport(self.handler),
        )

    def calls(self, path: str) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path == path]


@pytest.fixture
def fake_square():
    return FakeSquare()


@pytest.fixture
def sellers(session_factory):
    return SellerDirectory(session_factory)


@pytest.fixture
def tokens(session_factory, fake_square):
    return SquareTokenManager(
        session_factory,
        fake_square.client_factory,
        expiry_buffer_seconds=300,
        application_id="sq-app",
        client_secret="sq-secret",
        platform_access_token="platform-token",
    )


def square_seller_fields(**overrides) -> dict:
    fields = {
        "square_merchant_id": "merchant-1",
        "square_access_token": "seller-token",
        "square_refresh_token": "seller-refresh",
        "square_token_expires_at": utcnow() + timedelta(days=20),
        "square_location_id": "LOC1",
        "square_device_id": "device-1",
    }
    fields.update(overrides)
    return fields


@pytest.fixture
def square_fields():
    return square_seller_fields
