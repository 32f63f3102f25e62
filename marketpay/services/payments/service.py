"""Checkout orchestration: hosted sessions and Square Terminal checkouts."""

from marketpay.common.clock import utcnow
from marketpay.common.config import settings
from marketpay.common.errors import (
    Expired,
    NoSellerRoute,
    NotFound,
    ProviderConfigurationError,
    ProviderFailure,
    StateConflict,
    UnprocessableOrder,
    ValidationError,
)
from marketpay.common.logging import logger
from marketpay.common.metrics import checkout_sessions_total
from marketpay.common.state_machine import PAID_OR_LATER, PENDING_PAYMENT
from marketpay.services.orders.models import Order
from marketpay.services.orders.service import OrderService, is_expired
from marketpay.services.payments.providers import CheckoutParams, LineItem, ProviderFactory
from marketpay.services.payments.sellers import SellerDirectory, SellerPaymentConfig, SquareTokenManager
from marketpay.services.payments.square import default_square_client_factory


class CheckoutService:
    """Selects a seller's provider and creates (or reuses) a payment session."""

    def __init__(
        self,
        orders: OrderService,
        sellers: SellerDirectory,
        tokens: SquareTokenManager,
        provider_factory: ProviderFactory,
        square_client_factory=default_square_client_factory,
        site_url: str | None = None,
        currency: str | None = None,
        service_name: str = "marketpay-api",
    ) -> None:
        self.orders = orders
        self.sellers = sellers
        self.tokens = tokens
        self.provider_factory = provider_factory
        self.square_client_factory = square_client_factory
        self.site_url = (site_url or settings.site_url).rstrip("/")
        self.currency = currency or settings.currency
        self.service_name = service_name

    def _require_payable(self, order: Order, expired_message: str) -> None:
        if order.status != PENDING_PAYMENT:
            raise StateConflict(f"Order is not awaiting payment (status: {order.status}).")
        if is_expired(order):
            raise Expired(expired_message)

    def _seller_id(self, order: Order) -> str:
        seller_id = order.seller_session.seller_id if order.seller_session else None
        if not seller_id:
            raise NoSellerRoute("Could not determine seller.")
        return seller_id

    async def _square_token(self, config: SellerPaymentConfig | None, expired_message: str) -> str:
        if config is None or not config.square_access_token:
            raise ProviderConfigurationError("Seller has no Square account connected.")
        token = await self.tokens.get_valid_access_token(config)
        if not token:
            raise ProviderConfigurationError(expired_message)
        return token

    async def create_or_get_checkout_session(self, order_id: str, email: str | None = None) -> str:
        """Return a hosted checkout URL for a pending order."""

        order = self.orders.get_order(order_id)
        self._require_payable(order, "This order has expired. Please ask the seller to create a new one.")
        if not order.items:
            raise UnprocessableOrder("Order has no items.")

        config = self.sellers.get_payment_config(self._seller_id(order))
        square_token = None
        if config.payment_provider == "square":
            square_token = await self._square_token(
                config, "Square token expired. Seller should reconnect Square in payment settings."
            )
        provider = self.provider_factory.for_config(config, square_token)

        if (
            order.payment_session_id
            and order.payment_provider == provider.provider_type
            and order.payment_session_id != order.terminal_checkout_id
        ):
            existing = await provider.retrieve_open_session(order.payment_session_id)
            if existing is not None:
                checkout_sessions_total.labels(
                    service=self.service_name, provider=provider.provider_type, outcome="reused"
                ).inc()
                logger.info("reusing checkout session order_id=%s session_id=%s", order.id, existing.session_id)
                return existing.redirect_url

        params = CheckoutParams(
            order_id=order.id,
            total_cents=order.total_cents,
            currency=self.currency,
            line_items=[
                LineItem(
                    name=(item.listing.name if item.listing else None) or "Market item",
                    unit_price_cents=item.unit_price_cents,
                    quantity=item.quantity,
                )
                for item in order.items
            ],
            success_url=f"{self.site_url}/pay/success?orderId={order.id}",
            cancel_url=f"{self.site_url}/pay/{order.id}",
            email=email,
            expires_at=order.expires_at,
        )
        try:
            result = await provider.create_checkout_session(params)
        except ProviderFailure:
            checkout_sessions_total.labels(
                service=self.service_name, provider=provider.provider_type, outcome="failed"
            ).inc()
            logger.exception("checkout session creation failed order_id=%s", order.id)
            raise

        self.orders.attach_payment_session(order.id, provider.provider_type, result.session_id)
        checkout_sessions_total.labels(service=self.service_name, provider=provider.provider_type, outcome="created").inc()
        logger.info(
            "checkout session created order_id=%s provider=%s session_id=%s",
            order.id,
            provider.provider_type,
            result.session_id,
        )
        return result.redirect_url

    async def create_terminal_checkout(self, order_id: str) -> dict:
        """Push the order total to the seller's paired Square Terminal."""

        order = self.orders.get_order(order_id)
        self._require_payable(order, "This order has expired.")
        config = self.sellers.get_profile_config(self._seller_id(order))
        token = await self._square_token(
            config, "Square token expired. Seller should reconnect Square in payment settings."
        )
        if not config.square_device_id:
            raise ProviderConfigurationError(
                "Seller has no Square Terminal paired. Pair a terminal in Settings > Payments."
            )

        client = self.square_client_factory(token)
        checkout = await client.create_terminal_checkout(
            device_id=config.square_device_id,
            amount_cents=order.total_cents,
            currency=self.currency,
            reference_id=order.id,
            note=f"Market order {order.id[:8]}",
        )
        if not checkout.get("id"):
            raise ProviderFailure("Square did not return a terminal checkout.", provider="square")

        self.orders.attach_payment_session(order.id, "square", checkout["id"], terminal=True)
        logger.info("terminal checkout created order_id=%s checkout_id=%s", order.id, checkout["id"])
        return {"checkoutId": checkout["id"], "status": checkout.get("status")}

    async def get_terminal_status(self, checkout_id: str, order_id: str) -> dict:
        """Poll a terminal checkout and mark the order paid once it completes."""

        if not checkout_id or not order_id:
            raise ValidationError("checkoutId and orderId are required.")
        order = self.orders.get_order(order_id)
        if order.status in PAID_OR_LATER:
            return {"status": "COMPLETED", "orderStatus": order.status}

        config = self.sellers.get_profile_config(self._seller_id(order))
        token = await self._square_token(config, "Square token expired. Please reconnect Square in payment settings.")
        client = self.square_client_factory(token)
        try:
            checkout = await client.get_terminal_checkout(checkout_id)
        except ProviderFailure as exc:
            if exc.upstream_status == 404:
                raise NotFound("Terminal checkout not found.") from exc
            raise
        if not checkout:
            raise NotFound("Terminal checkout not found.")
        reference_id = checkout.get("reference_id")
        if reference_id and reference_id != order.id:
            raise ValidationError("Terminal checkout does not belong to this order.")

        status = checkout.get("status")
        order_status = order.status
        if status == "COMPLETED" and order.status == PENDING_PAYMENT:
            payment_ids = checkout.get("payment_ids") or []
            try:
                result = self.orders.mark_paid(
                    order.id,
                    source="terminal_poll",
                    provider="square",
                    provider_payment_id=payment_ids[0] if payment_ids else None,
                    reason="terminal_checkout_completed",
                )
                order_status = result.status
            except StateConflict as exc:
                logger.warning("terminal checkout completed but order not payable order_id=%s: %s", order.id, exc)
                order_status = self.orders.get_order(order.id).status
        return {"status": status, "orderStatus": order_status}

    async def pair_terminal(self, seller_id: str) -> dict:
        """Ask Square for a device code the seller types into their Terminal."""

        config = self.sellers.get_profile_config(seller_id)
        if config is None:
            raise NotFound("Profile not found.")
        if not config.square_access_token:
            raise ProviderConfigurationError("Square account not connected. Please connect Square first.")
        token = await self.tokens.get_valid_access_token(config)
        if not token:
            raise ProviderConfigurationError("Square token expired. Please reconnect Square in payment settings.")

        client = self.square_client_factory(token)
        location_id = config.square_location_id
        if not location_id:
            locations = await client.list_locations()
            active = next((loc for loc in locations if loc.get("status") == "ACTIVE" and loc.get("id")), None)
            if active is None:
                raise ProviderConfigurationError("No active Square location found.")
            location_id = active["id"]

        code = await client.create_device_code(
            location_id=location_id,
            name=f"Market Terminal - {seller_id[:8]}",
            idempotency_key=f"pair-{seller_id}-{int(utcnow().timestamp() * 1000)}",
        )
        if not code.get("id"):
            raise ProviderFailure("Square did not return a device code.", provider="square")
        logger.info("terminal pairing started seller_id=%s device_code_id=%s", seller_id, code["id"])
        return {
            "pairingCode": code.get("code"),
            "deviceCodeId": code["id"],
            "status": code.get("status"),
            "expiresAt": code.get("pair_by"),
        }

    async def get_pairing_status(self, seller_id: str, device_code_id: str) -> dict:
        """Poll a device code; a PAIRED code stores the device on the seller profile."""

        if not device_code_id:
            raise ValidationError("deviceCodeId is required.")
        config = self.sellers.get_profile_config(seller_id)
        if config is None or not config.square_access_token:
            raise ProviderConfigurationError("Square not connected.")
        token = await self.tokens.get_valid_access_token(config)
        if not token:
            raise ProviderConfigurationError("Square token expired. Reconnect Square in payment settings.")

        client = self.square_client_factory(token)
        try:
            code = await client.get_device_code(device_code_id)
        except ProviderFailure as exc:
            if exc.upstream_status == 404:
                raise NotFound("Device code not found.") from exc
            raise
        if not code:
            raise NotFound("Device code not found.")

        status = code.get("status")
        device_id = code.get("device_id")
        if status == "PAIRED" and device_id:
            self.sellers.set_device_id(seller_id, device_id)
            logger.info("terminal paired seller_id=%s device_id=%s", seller_id, device_id)
        return {"status": status, "deviceId": device_id, "pairingCode": code.get("code")}
