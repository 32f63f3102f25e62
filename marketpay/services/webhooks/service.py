"""Webhook intake: verify, dedupe, enqueue, acknowledge.

The HTTP response must go out within the provider's timeout, so intake does
no correlation itself. Actionable events are written to the outbox in the
same transaction as the ledger row; the reconciler picks them up from Kafka.
If the ledger insert commits, the work is guaranteed to be enqueued.
"""

import json
from uuid import uuid4

from sqlalchemy.exc import IntegrityError

from marketpay.common.config import settings
from marketpay.common.errors import ValidationError, WebhookNotConfigured
from marketpay.common.events import WEBHOOK_RECEIVED_TOPIC, EventEnvelope
from marketpay.common.logging import event_id_ctx, logger
from marketpay.common.metrics import duplicate_events_skipped_total, webhook_events_total
from marketpay.services.orders.models import OutboxEvent, WebhookEvent
from marketpay.services.webhooks.parsing import NormalizedPaymentEvent, parse_square_event, parse_stripe_event
from marketpay.services.webhooks.signatures import verify_square_signature, verify_stripe_signature


class WebhookIntakeService:
    def __init__(
        self,
        session_factory,
        square_signature_key: str | None = None,
        square_notification_url: str | None = None,
        stripe_webhook_secret: str | None = None,
        service_name: str = "marketpay-api",
    ) -> None:
        self.session_factory = session_factory
        self.square_signature_key = (
            settings.square_webhook_signature_key if square_signature_key is None else square_signature_key
        )
        self.square_notification_url = (
            settings.square_webhook_notification_url if square_notification_url is None else square_notification_url
        ).strip()
        self.stripe_webhook_secret = (
            settings.stripe_webhook_secret if stripe_webhook_secret is None else stripe_webhook_secret
        )
        self.service_name = service_name

    def accept_square(self, body: bytes, signature: str | None, request_url: str, trace_id: str = "") -> dict:
        if not self.square_signature_key:
            logger.error("SQUARE_WEBHOOK_SIGNATURE_KEY is not set; cannot verify webhook")
            raise WebhookNotConfigured("Webhook secret not configured.")
        # Square signs the URL registered in its dashboard, which differs from
        # request.url behind a proxy or tunnel.
        notification_url = self.square_notification_url or request_url
        try:
            verify_square_signature(body, signature, notification_url, self.square_signature_key)
        except Exception:
            webhook_events_total.labels(service=self.service_name, provider="square", outcome="bad_signature").inc()
            logger.warning("square webhook signature verification failed")
            raise
        event = parse_square_event(_load_json(body))
        return self.record(event, trace_id)

    def accept_stripe(self, body: bytes, signature: str | None, trace_id: str = "") -> dict:
        if not self.stripe_webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET is not set; cannot verify webhook")
            raise WebhookNotConfigured("Webhook secret not configured.")
        try:
            verify_stripe_signature(body, signature, self.stripe_webhook_secret)
        except Exception:
            webhook_events_total.labels(service=self.service_name, provider="stripe", outcome="bad_signature").inc()
            logger.warning("stripe webhook signature verification failed")
            raise
        event = parse_stripe_event(_load_json(body))
        return self.record(event, trace_id)

    def record(self, event: NormalizedPaymentEvent, trace_id: str = "") -> dict:
        """Insert into the idempotency ledger and enqueue actionable events.

        A primary-key conflict on the ledger is the duplicate signal.
        """

        if event.event_id:
            event_id_ctx.set(event.event_id)
        with self.session_factory() as db:
            if event.event_id:
                db.add(
                    WebhookEvent(
                        provider=event.provider,
                        event_id=event.event_id,
                        event_type=event.event_type,
                        payload=event.raw,
                    )
                )
                try:
                    db.flush()
                except IntegrityError:
                    db.rollback()
                    duplicate_events_skipped_total.labels(service=self.service_name, provider=event.provider).inc()
                    webhook_events_total.labels(service=self.service_name, provider=event.provider, outcome="duplicate").inc()
                    logger.info("duplicate webhook skipped provider=%s event_id=%s", event.provider, event.event_id)
                    return {"received": True, "duplicate": True}
            else:
                logger.warning("webhook without event id provider=%s type=%s; ledger bypassed", event.provider, event.event_type)

            if event.actionable:
                envelope = EventEnvelope(
                    event_type=f"webhook.{event.kind}",
                    aggregate_id=event.event_id or str(uuid4()),
                    trace_id=trace_id,
                    payload=event.model_dump(mode="json"),
                )
                db.add(
                    OutboxEvent(
                        aggregate_type="webhook",
                        aggregate_id=envelope.aggregate_id,
                        event_type=envelope.event_type,
                        topic=WEBHOOK_RECEIVED_TOPIC,
                        payload=envelope.model_dump(),
                    )
                )
            db.commit()

        outcome = "enqueued" if event.actionable else "ignored"
        webhook_events_total.labels(service=self.service_name, provider=event.provider, outcome=outcome).inc()
        logger.info(
            "webhook accepted provider=%s type=%s kind=%s event_id=%s",
            event.provider,
            event.event_type,
            event.kind,
            event.event_id,
        )
        return {"received": True}


def _load_json(body: bytes) -> dict:
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise ValidationError("Invalid JSON body.") from exc
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON body.")
    return payload
