"""Public HTTP surface: seller checkout, buyer payment, webhooks, terminal.

Handlers stay thin: they validate presence of request fields, bind log
context, and delegate to the order/payment services. Webhook correlation is
not done here; intake enqueues to the outbox and the relay task publishes it
for the reconciler.
"""

import asyncio
import hmac
from contextlib import asynccontextmanager
from dataclasses import dataclass
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, Request

from marketpay.common.clock import isoformat
from marketpay.common.config import settings
from marketpay.common.db import SessionLocal
from marketpay.common.errors import MarketPayError, Unauthorized, ValidationError, register_error_handlers
from marketpay.common.events import KafkaBus
from marketpay.common.logging import configure_logging, logger, order_id_ctx, trace_id_ctx
from marketpay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from marketpay.common.outbox import OutboxRelay
from marketpay.common.startup import log_startup_config
from marketpay.common.tracing import instrument_app, setup_tracing
from marketpay.services.api.schemas import (
    CompleteNativePaymentRequest,
    CreateCheckoutSessionRequest,
    OrderRequest,
    PayCashRequest,
    SellerCheckoutRequest,
    SellerCheckoutResponse,
    TerminalPairRequest,
)
from marketpay.services.orders.inventory import InventoryEngine
from marketpay.services.orders.models import OutboxEvent
from marketpay.services.orders.service import OrderService
from marketpay.services.payments.confirmation import SquarePaymentConfirmer
from marketpay.services.payments.providers import ProviderFactory
from marketpay.services.payments.sellers import SellerDirectory, SquareTokenManager
from marketpay.services.payments.service import CheckoutService
from marketpay.services.payments.square import default_square_client_factory
from marketpay.services.webhooks.service import WebhookIntakeService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "KAFKA_BOOTSTRAP_SERVERS",
        "SITE_URL",
        "SQUARE_ENVIRONMENT",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "SQUARE_WEBHOOK_SIGNATURE_KEY",
        "CRON_SECRET",
        "STATUS_CONFIRM_ON_READ",
    ],
)


@dataclass
class ApiServices:
    """Everything the handlers need, built around one session factory."""

    session_factory: object
    inventory: InventoryEngine
    orders: OrderService
    checkout: CheckoutService
    confirmer: SquarePaymentConfirmer
    webhooks: WebhookIntakeService
    site_url: str
    cron_secret: str = ""


def build_services(
    session_factory,
    square_client_factory=default_square_client_factory,
    stripe_api_key: str | None = None,
    confirm_retry_delays: list[float] | None = None,
    cron_secret: str | None = None,
    square_webhook_signature_key: str | None = None,
    square_webhook_notification_url: str | None = None,
    stripe_webhook_secret: str | None = None,
) -> ApiServices:
    service_name = settings.service_name
    orders = OrderService(session_factory, service_name)
    sellers = SellerDirectory(session_factory, service_name)
    tokens = SquareTokenManager(session_factory, square_client_factory)
    return ApiServices(
        session_factory=session_factory,
        inventory=InventoryEngine(
            session_factory,
            reservation_ttl_seconds=settings.order_reservation_ttl_seconds,
            currency=settings.currency,
            service_name=service_name,
        ),
        orders=orders,
        checkout=CheckoutService(
            orders,
            sellers,
            tokens,
            ProviderFactory(stripe_api_key=stripe_api_key, square_client_factory=square_client_factory),
            square_client_factory=square_client_factory,
            service_name=service_name,
        ),
        confirmer=SquarePaymentConfirmer(
            orders,
            sellers,
            tokens,
            square_client_factory=square_client_factory,
            retry_delays=confirm_retry_delays,
        ),
        webhooks=WebhookIntakeService(
            session_factory,
            square_signature_key=square_webhook_signature_key,
            square_notification_url=square_webhook_notification_url,
            stripe_webhook_secret=stripe_webhook_secret,
            service_name=service_name,
        ),
        site_url=settings.site_url.rstrip("/"),
        cron_secret=settings.cron_secret if cron_secret is None else cron_secret,
    )


def _require(value, field: str):
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{field} is required.")
    return value


def create_app(services: ApiServices | None = None, run_outbox_relay: bool = True) -> FastAPI:
    services = services or build_services(SessionLocal)
    bus = KafkaBus()
    relay = OutboxRelay(services.session_factory, OutboxEvent, bus, settings.service_name)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        """Run the outbox relay with the app lifecycle."""

        relay_task = asyncio.create_task(relay.run()) if run_outbox_relay else None
        yield
        if relay_task is not None:
            relay_task.cancel()
        await bus.close()

    app = FastAPI(title="MarketPay API", lifespan=lifespan)
    instrument_app(app)
    register_error_handlers(app)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency; bind a trace id for the request."""

        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        trace_token = trace_id_ctx.set(request.headers.get("x-trace-id") or str(uuid4()))
        order_token = order_id_ctx.set("")
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=settings.service_name,
                route=route,
                method=method,
            ).observe(elapsed)
            http_requests_total.labels(
                service=settings.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()
            trace_id_ctx.reset(trace_token)
            order_id_ctx.reset(order_token)

    @app.post("/api/seller/checkout")
    def seller_checkout(req: SellerCheckoutRequest):
        """Reserve stock and open a pending order for the buyer to pay."""

        seller_session_id = _require(req.seller_session_id, "sellerSessionId")
        if not req.items:
            raise ValidationError("items must be a non-empty array")
        lines = []
        for item in req.items:
            lines.append((_require(item.listing_id, "listingId"), _require(item.quantity, "quantity")))
        order = services.inventory.reserve(seller_session_id, lines, customer_id=req.customer_id)
        order_id_ctx.set(order.id)
        return SellerCheckoutResponse(
            order_id=order.id,
            total_cents=order.total_cents,
            expires_at=isoformat(order.expires_at),
            pay_url=f"{services.site_url}/pay/{order.id}",
        ).model_dump(by_alias=True)

    @app.post("/api/payments/create-checkout-session")
    async def create_checkout_session(req: CreateCheckoutSessionRequest):
        """Create or reuse a hosted checkout session for a pending order."""

        order_id = _require(req.order_id, "orderId")
        order_id_ctx.set(order_id)
        url = await services.checkout.create_or_get_checkout_session(order_id, email=req.email)
        return {"url": url}

    @app.post("/api/orders/pay-cash")
    def pay_cash(req: PayCashRequest):
        order_id = _require(req.order_id, "orderId")
        order_id_ctx.set(order_id)
        payment = services.orders.pay_cash(order_id, req.cash_received_cents)
        return {
            "status": payment.status,
            "paymentMethod": payment.payment_method,
            "cashReceivedCents": payment.cash_received_cents,
            "changeCents": payment.change_cents,
        }

    @app.post("/api/orders/complete-native-payment")
    def complete_native_payment(req: CompleteNativePaymentRequest):
        order_id = _require(req.order_id, "orderId")
        payment_id = _require(req.square_payment_id, "squarePaymentId")
        order_id_ctx.set(order_id)
        return {"status": services.orders.complete_native_payment(order_id, payment_id)}

    @app.post("/api/orders/complete")
    def complete_order(req: OrderRequest):
        """Seller confirms the buyer picked up a paid order."""

        order_id = _require(req.order_id, "orderId")
        order_id_ctx.set(order_id)
        return {"status": services.orders.complete_order(order_id)}

    @app.get("/api/orders/status")
    async def order_status(orderId: str | None = None):
        """Order status for the buyer's success page, confirming Square payments on read."""

        order_id = _require(orderId, "orderId")
        order_id_ctx.set(order_id)
        services.orders.get_order(order_id)
        await services.confirmer.confirm_if_paid(order_id)
        return services.orders.status_snapshot(order_id)

    @app.post("/api/orders/release-expired")
    def release_expired(authorization: str | None = Header(default=None)):
        """Scheduler hook for the expiry sweeper."""

        if services.cron_secret:
            expected = f"Bearer {services.cron_secret}"
            if not authorization or not hmac.compare_digest(authorization.encode(), expected.encode()):
                raise Unauthorized("Unauthorized.")
        try:
            released = services.inventory.release_expired()
        except Exception as exc:
            logger.exception("release expired orders failed")
            raise MarketPayError("Failed to release expired orders.") from exc
        return {"released": released}

    @app.post("/api/square/webhook")
    async def square_webhook(request: Request, x_square_hmacsha256_signature: str | None = Header(default=None)):
        body = await request.body()
        return services.webhooks.accept_square(
            body,
            x_square_hmacsha256_signature,
            str(request.url),
            trace_id=trace_id_ctx.get(),
        )

    @app.post("/api/stripe/webhook")
    async def stripe_webhook(request: Request, stripe_signature: str | None = Header(default=None)):
        body = await request.body()
        return services.webhooks.accept_stripe(body, stripe_signature, trace_id=trace_id_ctx.get())

    @app.post("/api/square/terminal/checkout")
    async def terminal_checkout(req: OrderRequest):
        """Push a pending order's total to the seller's paired Square Terminal."""

        order_id = _require(req.order_id, "orderId")
        order_id_ctx.set(order_id)
        return await services.checkout.create_terminal_checkout(order_id)

    @app.get("/api/square/terminal/status")
    async def terminal_status(checkoutId: str | None = None, orderId: str | None = None):
        if orderId:
            order_id_ctx.set(orderId)
        return await services.checkout.get_terminal_status(checkoutId or "", orderId or "")

    @app.post("/api/square/terminal/pair")
    async def terminal_pair(req: TerminalPairRequest):
        """Create a Square device code for the seller to enter on their Terminal."""

        return await services.checkout.pair_terminal(_require(req.seller_id, "sellerId"))

    @app.get("/api/square/terminal/pair")
    async def terminal_pair_status(sellerId: str | None = None, deviceCodeId: str | None = None):
        return await services.checkout.get_pairing_status(_require(sellerId, "sellerId"), deviceCodeId or "")

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health check endpoint."""

        return {"ok": True}

    return app


app = create_app()
