"""Hosted-checkout payment providers.

The checkout orchestrator only talks to `PaymentProvider`. Terminal (card
present) and cash payments complete through different channels and are kept
out of this interface on purpose; see `CheckoutService` and `OrderService`.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime

import stripe
from pydantic import BaseModel

from marketpay.common.clock import as_utc
from marketpay.common.config import settings
from marketpay.common.errors import ProviderConfigurationError, ProviderFailure
from marketpay.common.logging import logger
from marketpay.common.metrics import provider_failures_total
from marketpay.services.payments.sellers import SellerPaymentConfig
from marketpay.services.payments.square import SquareClient, default_square_client_factory


class LineItem(BaseModel):
    name: str
    unit_price_cents: int
    quantity: int


class CheckoutParams(BaseModel):
    order_id: str
    total_cents: int
    currency: str
    line_items: list[LineItem]
    success_url: str
    cancel_url: str
    email: str | None = None
    expires_at: datetime | None = None


class CheckoutResult(BaseModel):
    redirect_url: str
    session_id: str


class PaymentProvider(ABC):
    """Uniform interface over hosted-checkout backends."""

    provider_type: str

    @abstractmethod
    async def create_checkout_session(self, params: CheckoutParams) -> CheckoutResult:
        """Create a hosted checkout page for the order and return where to send the buyer."""

    @abstractmethod
    async def retrieve_open_session(self, session_id: str) -> CheckoutResult | None:
        """Return the existing session if the buyer can still pay through it."""


class StripeCheckoutProvider(PaymentProvider):
    """Stripe Checkout on the platform account, optionally routed to a Connect account."""

    def __init__(
        self,
        api_key: str,
        connected_account_id: str | None = None,
        min_session_ttl_seconds: int = 30 * 60,
    ) -> None:
        self.api_key = api_key
        self.connected_account_id = connected_account_id
        self.min_session_ttl_seconds = min_session_ttl_seconds
        self.provider_type = "stripe" if connected_account_id else "platform"

    def _require_key(self) -> None:
        if not self.api_key:
            raise ProviderFailure("Stripe is not configured (missing STRIPE_SECRET_KEY).", provider="stripe")

    def session_expiry(self, order_expires_at: datetime | None, now: float | None = None) -> int | None:
        """Stripe rejects sessions shorter than 30 minutes, so the order expiry is floored."""

        if order_expires_at is None:
            return None
        now = time.time() if now is None else now
        return max(int(as_utc(order_expires_at).timestamp()), int(now) + self.min_session_ttl_seconds)

    def build_session_params(self, params: CheckoutParams) -> dict:
        session_params: dict = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": params.currency,
                        "unit_amount": item.unit_price_cents,
                        "product_data": {"name": item.name},
                    },
                    "quantity": item.quantity,
                }
                for item in params.line_items
            ],
            "metadata": {"orderId": params.order_id},
            "success_url": params.success_url,
            "cancel_url": params.cancel_url,
        }
        if params.email:
            session_params["customer_email"] = params.email
        expires_at = self.session_expiry(params.expires_at)
        if expires_at is not None:
            session_params["expires_at"] = expires_at
        if self.connected_account_id:
            session_params["payment_intent_data"] = {
                "transfer_data": {"destination": self.connected_account_id},
                "metadata": {"orderId": params.order_id},
            }
        else:
            session_params["payment_intent_data"] = {"metadata": {"orderId": params.order_id}}
        return session_params

    async def create_checkout_session(self, params: CheckoutParams) -> CheckoutResult:
        self._require_key()
        session_params = self.build_session_params(params)
        try:
            session = await asyncio.to_thread(stripe.checkout.Session.create, api_key=self.api_key, **session_params)
        except stripe.StripeError as exc:
            provider_failures_total.labels(
                service=settings.service_name, provider="stripe", operation="create_checkout_session"
            ).inc()
            raise ProviderFailure(exc.user_message or str(exc), provider="stripe") from exc
        if not session.url:
            raise ProviderFailure("Stripe did not return a checkout URL.", provider="stripe")
        return CheckoutResult(redirect_url=session.url, session_id=session.id)

    async def retrieve_open_session(self, session_id: str) -> CheckoutResult | None:
        self._require_key()
        try:
            session = await asyncio.to_thread(stripe.checkout.Session.retrieve, session_id, api_key=self.api_key)
        except stripe.StripeError as exc:
            logger.info("stripe session %s not reusable: %s", session_id, exc)
            return None
        if session.url and session.status == "open":
            return CheckoutResult(redirect_url=session.url, session_id=session.id)
        return None


class SquarePaymentLinkProvider(PaymentProvider):
    """Square payment links on a seller's linked Square account."""

    provider_type = "square"

    def __init__(self, client: SquareClient, location_id: str | None = None) -> None:
        self.client = client
        self.location_id = location_id

    async def resolve_location_id(self) -> str:
        if self.location_id:
            return self.location_id
        locations = await self.client.list_locations()
        if not locations:
            raise ProviderConfigurationError(
                "No Square locations found. Please configure a location in your Square account."
            )
        active = next((loc for loc in locations if loc.get("status") == "ACTIVE" and loc.get("id")), None)
        if active is None:
            raise ProviderConfigurationError("No active Square location found.")
        return active["id"]

    async def create_checkout_session(self, params: CheckoutParams) -> CheckoutResult:
        currency = params.currency.upper()
        line_items = [
            {
                "name": item.name,
                "quantity": str(item.quantity),
                "base_price_money": {"amount": item.unit_price_cents, "currency": currency},
            }
            for item in params.line_items
        ]
        location_id = await self.resolve_location_id()
        link = await self.client.create_payment_link(
            location_id=location_id,
            line_items=line_items,
            metadata={"orderId": params.order_id},
            redirect_url=params.success_url,
        )
        if not link.get("url") or not link.get("id"):
            raise ProviderFailure("Square did not return a checkout URL.", provider="square")
        return CheckoutResult(redirect_url=link["url"], session_id=link["id"])

    async def retrieve_open_session(self, session_id: str) -> CheckoutResult | None:
        try:
            link = await self.client.get_payment_link(session_id)
            if not link.get("url") or not link.get("order_id"):
                return None
            remote_order = await self.client.get_order(link["order_id"])
        except ProviderFailure as exc:
            logger.info("square payment link %s not reusable: %s", session_id, exc)
            return None
        if remote_order.get("state") == "OPEN" and not remote_order.get("tenders"):
            return CheckoutResult(redirect_url=link["url"], session_id=link.get("id") or session_id)
        return None


class ProviderFactory:
    """Builds a provider from explicit seller credentials."""

    def __init__(
        self,
        stripe_api_key: str | None = None,
        square_client_factory=default_square_client_factory,
        min_session_ttl_seconds: int | None = None,
    ) -> None:
        self.stripe_api_key = settings.stripe_secret_key if stripe_api_key is None else stripe_api_key
        self.square_client_factory = square_client_factory
        self.min_session_ttl_seconds = (
            settings.checkout_session_min_ttl_seconds if min_session_ttl_seconds is None else min_session_ttl_seconds
        )

    def for_config(self, config: SellerPaymentConfig, square_access_token: str | None = None) -> PaymentProvider:
        """platform -> Stripe platform account, stripe -> Stripe Connect, square -> seller Square account."""

        if config.payment_provider == "square":
            token = square_access_token or config.square_access_token
            if not token:
                raise ProviderConfigurationError("Seller has no Square account connected.")
            return SquarePaymentLinkProvider(self.square_client_factory(token), config.square_location_id)
        if config.payment_provider == "stripe":
            return StripeCheckoutProvider(
                self.stripe_api_key, config.stripe_connected_account_id, self.min_session_ttl_seconds
            )
        return StripeCheckoutProvider(self.stripe_api_key, None, self.min_session_ttl_seconds)
