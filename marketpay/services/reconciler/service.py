"""Consumer side of webhook reconciliation."""

import asyncio
import json

from marketpay.common.config import settings
from marketpay.common.errors import NotFound, StateConflict
from marketpay.common.events import WEBHOOK_RECEIVED_TOPIC, EventEnvelope, consume_forever
from marketpay.common.logging import logger, order_id_ctx
from marketpay.services.orders.service import MarkPaidResult, OrderService
from marketpay.services.reconciler.correlation import Correlator
from marketpay.services.webhooks.parsing import NormalizedPaymentEvent


class ReconcilerService:
    def __init__(self, orders: OrderService, correlator: Correlator, service_name: str | None = None) -> None:
        self.orders = orders
        self.correlator = correlator
        self.service_name = service_name or settings.service_name

    async def handle_webhook_received(self, envelope: EventEnvelope) -> MarkPaidResult | None:
        """Correlate one normalized event and apply the paid transition.

        Redelivered envelopes land on an order that is already PAID and are
        no-ops. Events that match no order are logged in full and dropped.
        """

        event = NormalizedPaymentEvent(**envelope.payload)
        order_id, strategy = await self.correlator.correlate(event)
        if not order_id:
            logger.error(
                "webhook event could not be correlated provider=%s type=%s event_id=%s payload=%s",
                event.provider,
                event.event_type,
                event.event_id,
                json.dumps(event.raw, default=str),
            )
            return None

        order_id_ctx.set(order_id)
        logger.info(
            "webhook correlated provider=%s event_id=%s order_id=%s strategy=%s",
            event.provider,
            event.event_id,
            order_id,
            strategy,
        )
        try:
            result = self.orders.mark_paid(
                order_id,
                source="webhook",
                provider="square" if event.provider == "square" else None,
                provider_payment_id=event.provider_payment_id,
                reason=event.event_type,
            )
        except (NotFound, StateConflict) as exc:
            logger.warning("webhook payment not applied order_id=%s event_id=%s: %s", order_id, event.event_id, exc)
            return None
        if not result.applied:
            logger.info("order already %s order_id=%s event_id=%s", result.status, order_id, event.event_id)
        return result

    async def start_consumers(self) -> None:
        await asyncio.gather(
            consume_forever(WEBHOOK_RECEIVED_TOPIC, "reconciler-webhook-received", self.handle_webhook_received),
        )
