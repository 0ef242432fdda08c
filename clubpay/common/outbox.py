"""Transactional outbox: enqueue inside business transactions, publish later.

Rows are written with the same session that commits the state change, so an
event exists if and only if the change it describes was committed. The
publisher claims rows with `SKIP LOCKED`, so several service instances can run
it side by side.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_, select, update

from clubpay.common.events import EventEnvelope, KafkaBus
from clubpay.common.logging import logger, trace_id_ctx
from clubpay.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total


def enqueue_event(db, outbox_model, topic: str, aggregate_type: str, aggregate_id: str, payload: dict) -> None:
    """Add one outbox row to the caller's open transaction."""

    envelope = EventEnvelope(
        event_type=topic,
        aggregate_id=aggregate_id,
        trace_id=trace_id_ctx.get(),
        payload=payload,
    )
    db.add(
        outbox_model(
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            event_type=topic,
            topic=topic,
            payload=envelope.model_dump(),
        )
    )


def claim_outbox_batch(db, outbox_model, limit: int = 100, processing_timeout_seconds: int = 30) -> list[dict]:
    """Atomically claim a batch of pending/stale rows for publishing."""

    table = outbox_model.__table__
    now = datetime.now(timezone.utc)
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    claim_ids = (
        select(table.c.id)
        .where(
            or_(
                table.c.status == "PENDING",
                (table.c.status == "PROCESSING") & (table.c.sent_at.is_not(None)) & (table.c.sent_at < stale_before),
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


def mark_outbox_sent(db, outbox_model, event_id: str) -> None:
    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == "PROCESSING")
        .values(status="SENT", sent_at=datetime.now(timezone.utc))
    )


def requeue_outbox_event(db, outbox_model, event_id: str) -> None:
    """Return a claimed row to `PENDING` so it can be retried."""

    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == "PROCESSING")
        .values(status="PENDING", sent_at=None)
    )


def update_outbox_backlog_metrics(db, outbox_model, service_name: str) -> None:
    """Update gauges for pending outbox depth and oldest age."""

    table = outbox_model.__table__
    now = datetime.now(timezone.utc)
    pending_statuses = ("PENDING", "PROCESSING")
    pending_count = (
        db.execute(select(func.count()).select_from(table).where(table.c.status.in_(pending_statuses))).scalar_one()
    )
    oldest_pending = db.execute(
        select(func.min(table.c.created_at)).where(table.c.status.in_(pending_statuses))
    ).scalar_one()
    age_seconds = 0.0
    if oldest_pending is not None:
        if oldest_pending.tzinfo is None:
            oldest_pending = oldest_pending.replace(tzinfo=timezone.utc)
        age_seconds = max(0.0, (now - oldest_pending).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(pending_count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)


class OutboxPublisher:
    """Background loop relaying outbox rows to Kafka."""

    def __init__(self, session_factory, outbox_model, service_name: str, bus: KafkaBus | None = None) -> None:
        self.session_factory = session_factory
        self.outbox_model = outbox_model
        self.service_name = service_name
        self.kafka = bus or KafkaBus()

    async def publish_pending(self) -> int:
        """Claim and publish one batch; returns the number of rows claimed."""

        with self.session_factory() as db:
            rows = claim_outbox_batch(db, self.outbox_model, limit=100)
            update_outbox_backlog_metrics(db, self.outbox_model, self.service_name)
            db.commit()
        for row in rows:
            try:
                await self.kafka.publish(row["topic"], EventEnvelope(**row["payload"]))
                with self.session_factory() as db:
                    mark_outbox_sent(db, self.outbox_model, row["id"])
                    db.commit()
            except Exception as exc:
                logger.exception("outbox publish failed event_id=%s error=%s", row["id"], exc)
                with self.session_factory() as db:
                    requeue_outbox_event(db, self.outbox_model, row["id"])
                    db.commit()
        return len(rows)

    async def run_forever(self, interval_seconds: float = 0.5) -> None:
        while True:
            try:
                await self.publish_pending()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("outbox_loop_error service=%s error=%s", self.service_name, exc)
                await asyncio.sleep(2)
            await asyncio.sleep(interval_seconds)
