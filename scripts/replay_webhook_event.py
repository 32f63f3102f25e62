"""Re-publish a recorded webhook event to the reconciler topic.

For manual reconciliation after fixing a seller's configuration: the ledger
row keeps the raw payload, so the event can be normalized again and sent
through the same correlation path without the provider resending it.
"""

import argparse
import asyncio
import json
import os
from datetime import datetime, timezone
from uuid import uuid4

from aiokafka import AIOKafkaProducer
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from marketpay.common.events import WEBHOOK_RECEIVED_TOPIC
from marketpay.services.orders.models import WebhookEvent
from marketpay.services.webhooks.parsing import parse_square_event, parse_stripe_event

PARSERS = {"square": parse_square_event, "stripe": parse_stripe_event}


def load_event(dsn: str, provider: str, event_id: str) -> dict:
    engine = create_engine(dsn)
    with Session(engine) as db:
        row = db.execute(
            select(WebhookEvent).where(WebhookEvent.provider == provider, WebhookEvent.event_id == event_id)
        ).scalar_one_or_none()
        if row is None:
            raise SystemExit(f"No recorded event provider={provider} event_id={event_id}")
        return row.payload


async def publish(bootstrap_servers: str, envelope: dict) -> None:
    """Open producer, publish one envelope, close producer."""

    producer = AIOKafkaProducer(bootstrap_servers=bootstrap_servers)
    await producer.start()
    try:
        await producer.send_and_wait(
            WEBHOOK_RECEIVED_TOPIC,
            json.dumps(envelope).encode("utf-8"),
            key=envelope["aggregate_id"].encode("utf-8"),
        )
    finally:
        await producer.stop()


def main() -> None:
    parser = argparse.ArgumentParser(description="Replay a recorded webhook event through reconciliation.")
    parser.add_argument("--provider", choices=sorted(PARSERS), required=True)
    parser.add_argument("--event-id", required=True)
    parser.add_argument("--postgres-dsn", default=os.environ.get("POSTGRES_DSN", ""))
    parser.add_argument("--bootstrap-servers", default=os.environ.get("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092"))
    args = parser.parse_args()

    if not args.postgres_dsn:
        raise SystemExit("Provide --postgres-dsn or set POSTGRES_DSN")

    event = PARSERS[args.provider](load_event(args.postgres_dsn, args.provider, args.event_id))
    if not event.actionable:
        raise SystemExit(f"Event type {event.event_type} is not actionable; nothing to replay")
    envelope = {
        "event_id": str(uuid4()),
        "event_type": f"webhook.{event.kind}",
        "aggregate_id": args.event_id,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "trace_id": f"replay-{args.event_id}",
        "payload": event.model_dump(mode="json"),
    }
    asyncio.run(publish(args.bootstrap_servers, envelope))
    print(f"Replayed provider={args.provider} event_id={args.event_id} to topic={WEBHOOK_RECEIVED_TOPIC}")


if __name__ == "__main__":
    main()
