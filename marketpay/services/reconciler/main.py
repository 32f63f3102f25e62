"""Reconciler process: consumes normalized webhook events from Kafka."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

from marketpay.common.config import settings
from marketpay.common.db import SessionLocal
from marketpay.common.logging import configure_logging
from marketpay.common.metrics import metrics_response
from marketpay.common.startup import log_startup_config
from marketpay.common.tracing import instrument_app, setup_tracing
from marketpay.services.orders.service import OrderService
from marketpay.services.payments.sellers import SellerDirectory, SquareTokenManager
from marketpay.services.reconciler.correlation import Correlator
from marketpay.services.reconciler.service import ReconcilerService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    ["SERVICE_NAME", "POSTGRES_DSN", "KAFKA_BOOTSTRAP_SERVERS", "SQUARE_ENVIRONMENT", "SQUARE_ACCESS_TOKEN"],
)
orders = OrderService(SessionLocal, settings.service_name)
sellers = SellerDirectory(SessionLocal, settings.service_name)
tokens = SquareTokenManager(SessionLocal)
service = ReconcilerService(
    orders,
    Correlator.default(orders, sellers, tokens, service_name=settings.service_name),
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the webhook consumer with the app lifecycle."""

    consumer_task = asyncio.create_task(service.start_consumers())
    yield
    consumer_task.cancel()


app = FastAPI(title="MarketPay Reconciler", lifespan=lifespan)
instrument_app(app)


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health check endpoint."""

    return {"ok": True}
