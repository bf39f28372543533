"""Transactional outbox: enqueue domain events with state changes, publish later.

`OutboxStore` is bound to one outbox model (any table with the
`id/aggregate_type/aggregate_id/event_type/topic/payload/status/created_at/sent_at`
columns). Settlement code calls `enqueue` inside its own transaction;
`OutboxPublisher` drains the table to Kafka in the background.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import func, or_, select, update

from paysettle.common.events import EventEnvelope, KafkaBus, topic_for
from paysettle.common.logging import logger, trace_id_ctx
from paysettle.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total


class OutboxStore:
    """Claim/ack/requeue helpers for one outbox table."""

    def __init__(self, outbox_model, service_name: str) -> None:
        self.model = outbox_model
        self.service_name = service_name

    def enqueue(self, db, event_type: str, aggregate_type: str, aggregate_id: str, payload: dict[str, Any]):
        """Stage one event in the caller's transaction."""

        envelope = EventEnvelope(
            event_type=event_type,
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            source=self.service_name,
            trace_id=trace_id_ctx.get() or str(uuid4()),
            payload=payload,
        )
        row = self.model(
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            event_type=event_type,
            topic=topic_for(event_type),
            payload=envelope.model_dump(),
        )
        db.add(row)
        return row

    def claim_batch(self, db, limit: int = 100, processing_timeout_seconds: int = 30) -> list[dict]:
        """Atomically claim pending rows plus rows stuck in PROCESSING too long."""

        table = self.model.__table__
        now = datetime.now(timezone.utc)
        stale_before = now - timedelta(seconds=processing_timeout_seconds)
        claim_ids = (
            select(table.c.id)
            .where(
                or_(
                    table.c.status == "PENDING",
                    (table.c.status == "PROCESSING") & (table.c.sent_at < stale_before),
                )
            )
            .order_by(table.c.created_at)
            .limit(limit)
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

    def mark_sent(self, db, event_id: str) -> None:
        table = self.model.__table__
        db.execute(
            update(table)
            .where(table.c.id == event_id, table.c.status == "PROCESSING")
            .values(status="SENT", sent_at=datetime.now(timezone.utc))
        )

    def requeue(self, db, event_id: str) -> None:
        """Return a claimed row to `PENDING` so the next sweep retries it."""

        table = self.model.__table__
        db.execute(
            update(table)
            .where(table.c.id == event_id, table.c.status == "PROCESSING")
            .values(status="PENDING", sent_at=None)
        )

    def refresh_backlog_metrics(self, db) -> None:
        table = self.model.__table__
        pending_statuses = ("PENDING", "PROCESSING")
        pending_count = db.execute(
            select(func.count()).select_from(table).where(table.c.status.in_(pending_statuses))
        ).scalar_one()
        oldest_pending = db.execute(
            select(func.min(table.c.created_at)).where(table.c.status.in_(pending_statuses))
        ).scalar_one()
        age_seconds = 0.0
        if oldest_pending is not None:
            if oldest_pending.tzinfo is None:
                oldest_pending = oldest_pending.replace(tzinfo=timezone.utc)
            age_seconds = max(0.0, (datetime.now(timezone.utc) - oldest_pending).total_seconds())
        outbox_pending_total.labels(service=self.service_name).set(float(pending_count))
        outbox_oldest_pending_age_seconds.labels(service=self.service_name).set(age_seconds)


class OutboxPublisher:
    """Background loop that drains an outbox table to Kafka."""

    def __init__(self, session_factory, store: OutboxStore, kafka: KafkaBus | None = None) -> None:
        self.session_factory = session_factory
        self.store = store
        self.kafka = kafka or KafkaBus()

    async def publish_pending(self) -> int:
        """Publish one claimed batch; failed rows go back to PENDING."""

        with self.session_factory() as db:
            rows = self.store.claim_batch(db)
            self.store.refresh_backlog_metrics(db)
            db.commit()
        for row in rows:
            try:
                await self.kafka.publish(row["topic"], EventEnvelope(**row["payload"]))
            except Exception as exc:
                logger.exception("outbox publish failed id=%s: %s", row["id"], exc)
                with self.session_factory() as db:
                    self.store.requeue(db, row["id"])
                    db.commit()
                continue
            with self.session_factory() as db:
                self.store.mark_sent(db, row["id"])
                db.commit()
        return len(rows)

    async def run(self, interval_seconds: float = 0.5) -> None:
        """Continuously publish and ack pending outbox events."""

        while True:
            await self.publish_pending()
            await asyncio.sleep(interval_seconds)

    async def close(self) -> None:
        await self.kafka.close()
