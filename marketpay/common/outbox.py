"""Transactional outbox relay.

Writers add rows to `outbox_events` inside their own transaction; the relay
claims pending (or stale in-flight) rows, publishes them, and marks them sent.
A crash between publish and mark re-publishes the row later, so consumers see
each event at least once.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_, select, update

from marketpay.common.events import EventEnvelope, KafkaBus
from marketpay.common.logging import logger
from marketpay.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total


class OutboxRelay:
    """Publishes one service's outbox table to Kafka."""

    def __init__(
        self,
        session_factory,
        outbox_model,
        bus: KafkaBus,
        service_name: str,
        batch_size: int = 100,
        processing_timeout_seconds: int = 30,
        poll_interval_seconds: float = 0.5,
    ) -> None:
        self.session_factory = session_factory
        self.table = outbox_model.__table__
        self.bus = bus
        self.service_name = service_name
        self.batch_size = batch_size
        self.processing_timeout_seconds = processing_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds

    def claim_batch(self, db) -> list[dict]:
        """Atomically claim a batch of pending/stale rows for publishing."""

        table = self.table
        now = datetime.now(timezone.utc)
        stale_before = now - timedelta(seconds=self.processing_timeout_seconds)
        claim_ids = (
            select(table.c.id)
            .where(
                or_(
                    table.c.status == "PENDING",
                    (table.c.status == "PROCESSING") & (table.c.sent_at.is_not(None)) & (table.c.sent_at < stale_before),
                )
            )
            .order_by(table.c.created_at)
            .limit(self.batch_size)
            .with_for_update(skip_locked=True)
            .cte("claim_ids")
        )
        rows = db.execute(
            update(table)
            .where(table.c.id.in_(select(claim_ids.c.id)))
            .values(status="PROCESSING", sent_at=now)
            .returning(table.c.id, table.c.topic, table.c.payload)
        ).all()
        return [{"id": row.id, "topic": row.topic, "payload": row.payload} for row in rows]

    def mark_sent(self, db, row_id: str) -> None:
        db.execute(
            update(self.table)
            .where(self.table.c.id == row_id, self.table.c.status == "PROCESSING")
            .values(status="SENT", sent_at=datetime.now(timezone.utc))
        )

    def requeue(self, db, row_id: str) -> None:
        db.execute(
            update(self.table)
            .where(self.table.c.id == row_id, self.table.c.status == "PROCESSING")
            .values(status="PENDING", sent_at=None)
        )

    def update_backlog_metrics(self, db) -> None:
        """Update gauges for pending outbox depth and oldest age."""

        table = self.table
        pending = table.c.status.in_(("PENDING", "PROCESSING"))
        pending_count = db.execute(select(func.count()).select_from(table).where(pending)).scalar_one()
        oldest_pending = db.execute(select(func.min(table.c.created_at)).where(pending)).scalar_one()
        age_seconds = 0.0
        if oldest_pending is not None:
            if oldest_pending.tzinfo is None:
                oldest_pending = oldest_pending.replace(tzinfo=timezone.utc)
            age_seconds = max(0.0, (datetime.now(timezone.utc) - oldest_pending).total_seconds())
        outbox_pending_total.labels(service=self.service_name).set(float(pending_count))
        outbox_oldest_pending_age_seconds.labels(service=self.service_name).set(age_seconds)

    async def publish_batch(self) -> int:
        """Claim and publish one batch; returns how many rows were published."""

        with self.session_factory() as db:
            rows = self.claim_batch(db)
            self.update_backlog_metrics(db)
            db.commit()
        published = 0
        for row in rows:
            try:
                await self.bus.publish(row["topic"], EventEnvelope(**row["payload"]))
            except Exception as exc:
                logger.exception("outbox publish failed id=%s: %s", row["id"], exc)
                with self.session_factory() as db:
                    self.requeue(db, row["id"])
                    db.commit()
                continue
            with self.session_factory() as db:
                self.mark_sent(db, row["id"])
                db.commit()
            published += 1
        return published

    async def run(self) -> None:
        """Publish forever until cancelled."""

        while True:
            try:
                await self.publish_batch()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("outbox_relay_error service=%s error=%s", self.service_name, exc)
            await asyncio.sleep(self.poll_interval_seconds)
