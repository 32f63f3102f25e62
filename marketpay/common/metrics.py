"""Prometheus metric definitions shared by the API and reconciler."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
orders_created_total = Counter("orders_created_total", "Orders created with reserved inventory", ["service"])
orders_paid_total = Counter(
    "orders_paid_total",
    "PENDING_PAYMENT -> PAID transitions applied, by confirming path",
    ["service", "source"],
)
orders_completed_total = Counter("orders_completed_total", "Orders moved to COMPLETED", ["service"])
orders_expired_total = Counter("orders_expired_total", "Orders expired by the sweeper", ["service"])
checkout_sessions_total = Counter(
    "checkout_sessions_total",
    "Hosted checkout sessions by provider and outcome",
    ["service", "provider", "outcome"],
)
provider_failures_total = Counter(
    "provider_failures_total",
    "Payment provider API failures",
    ["service", "provider", "operation"],
)
webhook_events_total = Counter(
    "webhook_events_total",
    "Webhook deliveries by provider and intake outcome",
    ["service", "provider", "outcome"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Webhook deliveries skipped by the idempotency ledger",
    ["service", "provider"],
)
correlation_total = Counter(
    "correlation_total",
    "Webhook correlation results by resolving strategy",
    ["service", "provider", "strategy"],
)
seller_config_fallback_total = Counter(
    "seller_config_fallback_total",
    "Checkouts that fell back to platform payments because no seller profile was found",
    ["service"],
)
event_queue_delay_seconds = Histogram(
    "event_queue_delay_seconds",
    "Event queue delay seconds between occurred_at and consume time",
    ["service", "topic"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
