"""Transactional outbox helpers.

Domain events are added to `outbox_events` in the same transaction as the
status change that produced them; the publisher loop claims, publishes and
acks them afterwards.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_, select, update

from fundiconnect.common.events import EventEnvelope
from fundiconnect.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total

PENDING = "PENDING"
PROCESSING = "PROCESSING"
SENT = "SENT"


def enqueue_event(db, outbox_model, booking_id: str, event_type: str, payload: dict, trace_id: str = "") -> None:
    """Stage one booking event; the topic is the event type."""

    envelope = EventEnvelope(
        event_type=event_type,
        aggregate_id=booking_id,
        trace_id=trace_id,
        payload=payload,
    )
    db.add(
        outbox_model(
            aggregate_type="booking",
            aggregate_id=booking_id,
            event_type=event_type,
            topic=event_type,
            payload=envelope.model_dump(),
        )
    )


def claim_outbox_batch(db, outbox_model, limit: int = 100, processing_timeout_seconds: int = 30) -> list[dict]:
    """Atomically claim pending rows, plus rows stuck in PROCESSING past the timeout."""

    table = outbox_model.__table__
    now = datetime.now(timezone.utc)
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
    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == PROCESSING)
        .values(status=SENT, sent_at=datetime.now(timezone.utc))
    )


def requeue_outbox_event(db, outbox_model, event_id: str) -> None:
    """Return a claimed row to PENDING so the next poll retries it."""

    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == PROCESSING)
        .values(status=PENDING, sent_at=None)
    )


def update_outbox_backlog_metrics(db, outbox_model, service_name: str) -> None:
    table = outbox_model.__table__
    now = datetime.now(timezone.utc)
    waiting = (PENDING, PROCESSING)
    pending_count = db.execute(select(func.count()).select_from(table).where(table.c.status.in_(waiting))).scalar_one()
    oldest_pending = db.execute(select(func.min(table.c.created_at)).where(table.c.status.in_(waiting))).scalar_one()
    age_seconds = 0.0
    if oldest_pending is not None:
        if oldest_pending.tzinfo is None:
            oldest_pending = oldest_pending.replace(tzinfo=timezone.utc)
        age_seconds = max(0.0, (now - oldest_pending).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(pending_count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)
