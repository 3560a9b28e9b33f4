"""Transactional outbox helpers.

Lifecycle events are written in the same transaction as the ledger/session
change that caused them and published to Kafka afterwards, so a broker outage
never rolls back a credit movement. The helpers take the outbox model as an
argument and only rely on its table columns.
"""

import asyncio
from datetime import timedelta

from sqlalchemy import func, or_, select, update

from skillswap.common.db import as_utc, utcnow
from skillswap.common.events import EventEnvelope, KafkaBus
from skillswap.common.logging import logger
from skillswap.common.metrics import (
    outbox_oldest_pending_age_seconds,
    outbox_pending_total,
    outbox_publish_failures_total,
)

PENDING = "PENDING"
PROCESSING = "PROCESSING"
SENT = "SENT"


def enqueue_event(
    db,
    outbox_model,
    *,
    aggregate_type: str,
    aggregate_id: str,
    event_type: str,
    payload: dict,
    trace_id: str = "",
) -> None:
    """Stage one event row; the topic is the event type."""

    envelope = EventEnvelope(
        event_type=event_type,
        aggregate_id=aggregate_id,
        trace_id=trace_id,
        payload=payload,
    )
    db.add(
        outbox_model(
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            event_type=event_type,
            topic=event_type,
            payload=envelope.model_dump(),
            status=PENDING,
        )
    )


def claim_outbox_batch(db, outbox_model, limit: int = 100, processing_timeout_seconds: int = 30) -> list[dict]:
    """Atomically claim a batch of pending/stale rows for publishing."""

    table = outbox_model.__table__
    now = utcnow()
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    claim_ids = (
        select(table.c.id)
        .where(
            or_(
                table.c.status == PENDING,
                (table.c.status == PROCESSING) & (table.c.sent_at.is_not(None)) & (table.c.sent_at < stale_before),
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
        .values(status=PROCESSING, sent_at=now)
        .returning(table.c.id, table.c.topic, table.c.payload)
    ).all()
    return [{"id": row.id, "topic": row.topic, "payload": row.payload} for row in rows]


def mark_outbox_sent(db, outbox_model, event_id: str) -> None:
    """Mark one claimed outbox row as delivered."""

    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == PROCESSING)
        .values(status=SENT, sent_at=utcnow())
    )


def requeue_outbox_event(db, outbox_model, event_id: str) -> None:
    """Return a claimed row to `PENDING` so it can be retried."""

    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == PROCESSING)
        .values(status=PENDING, sent_at=None)
    )


def update_outbox_backlog_metrics(db, outbox_model, service_name: str) -> None:
    """Update gauges for pending outbox depth and oldest age."""

    table = outbox_model.__table__
    pending_statuses = (PENDING, PROCESSING)
    pending_count = (
        db.execute(select(func.count()).select_from(table).where(table.c.status.in_(pending_statuses))).scalar_one()
    )
    oldest_pending = db.execute(
        select(func.min(table.c.created_at)).where(table.c.status.in_(pending_statuses))
    ).scalar_one()
    age_seconds = 0.0
    if oldest_pending is not None:
        age_seconds = max(0.0, (utcnow() - as_utc(oldest_pending)).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(pending_count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)


async def run_outbox_publisher(
    session_factory,
    outbox_model,
    bus: KafkaBus,
    service_name: str,
    poll_interval: float = 0.5,
) -> None:
    """Continuously publish and ack pending outbox rows."""

    while True:
        with session_factory() as db:
            rows = claim_outbox_batch(db, outbox_model, limit=100)
            update_outbox_backlog_metrics(db, outbox_model, service_name)
            db.commit()
        for row in rows:
            try:
                await bus.publish(row["topic"], EventEnvelope(**row["payload"]))
                with session_factory() as db:
                    mark_outbox_sent(db, outbox_model, row["id"])
                    db.commit()
            except Exception as exc:
                logger.exception("outbox publish failed topic=%s id=%s: %s", row["topic"], row["id"], exc)
                outbox_publish_failures_total.labels(service=service_name, topic=row["topic"]).inc()
                with session_factory() as db:
                    requeue_outbox_event(db, outbox_model, row["id"])
                    db.commit()
        await asyncio.sleep(poll_interval)
