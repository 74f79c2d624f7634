"""Notification ledger: append-only rows, one per outbound message attempt.

Status writes are conditional on the prior status so a late delivery receipt
cannot resurrect an expired notification and vice versa.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import or_, select, update

from fundiconnect.services.bookings.models import Booking, Notification

NOTIFICATION_TYPES = {
    "booking_created",
    "booking_accepted",
    "booking_rejected",
    "booking_expired",
    "payment_reminder",
}


def record(db, booking_id: str, recipient_id: str, notification_type: str) -> Notification:
    """Stage a `pending` notification in the caller's transaction."""

    if notification_type not in NOTIFICATION_TYPES:
        raise ValueError(f"unknown notification type: {notification_type}")
    notification = Notification(
        booking_id=booking_id,
        recipient_id=recipient_id,
        type=notification_type,
        status="pending",
    )
    db.add(notification)
    db.flush()
    return notification


def mark_sent(
    db,
    notification_id: str,
    provider: str,
    provider_message_id: str | None,
    message_content: str,
    expires_at: datetime | None,
) -> bool:
    result = db.execute(
        update(Notification)
        .where(Notification.id == notification_id, Notification.status.in_(("pending", "failed")))
        .values(
            status="sent",
            provider=provider,
            provider_message_id=provider_message_id,
            message_content=message_content,
            expires_at=expires_at,
            error_message=None,
            updated_at=datetime.now(timezone.utc),
        )
    )
    return result.rowcount == 1


def mark_failed(db, notification_id: str, provider: str | None, error_message: str) -> bool:
    result = db.execute(
        update(Notification)
        .where(Notification.id == notification_id, Notification.status == "pending")
        .values(
            status="failed",
            provider=provider,
            error_message=error_message[:500],
            updated_at=datetime.now(timezone.utc),
        )
    )
    return result.rowcount == 1


def mark_delivered(db, booking_id: str, notification_type: str = "booking_created") -> int:
    """Flag the fundi's request as answered once a reply has been applied."""

    result = db.execute(
        update(Notification)
        .where(
            Notification.booking_id == booking_id,
            Notification.type == notification_type,
            Notification.status == "sent",
        )
        .values(status="delivered", updated_at=datetime.now(timezone.utc))
    )
    return result.rowcount


def mark_expired(db, notification_id: str) -> bool:
    result = db.execute(
        update(Notification)
        .where(Notification.id == notification_id, Notification.status == "sent")
        .values(status="expired", updated_at=datetime.now(timezone.utc))
    )
    return result.rowcount == 1


def find_expirable(db, now: datetime | None = None) -> list[tuple[str, str]]:
    """Return `(notification_id, booking_id)` for unanswered, overdue booking requests."""

    now = now or datetime.now(timezone.utc)
    rows = db.execute(
        select(Notification.id, Notification.booking_id)
        .join(Booking, Booking.id == Notification.booking_id)
        .where(
            Notification.type == "booking_created",
            Notification.status == "sent",
            Notification.expires_at < now,
            Booking.status == "pending",
        )
        .order_by(Notification.expires_at)
    ).all()
    return [(row.id, row.booking_id) for row in rows]


def claim_stale_pending(db, older_than_seconds: int, lease_seconds: int = 300, limit: int = 50) -> list[str]:
    """Claim notifications that were staged but never handed to a provider.

    A claim stamps `claimed_at`; a row is claimable again only once its lease
    has run out, so concurrent redelivery passes never send the same row twice.
    Callers must commit before sending.
    """

    now = datetime.now(timezone.utc)
    cutoff = now - timedelta(seconds=older_than_seconds)
    lease_cutoff = now - timedelta(seconds=lease_seconds)
    unclaimed = or_(Notification.claimed_at.is_(None), Notification.claimed_at < lease_cutoff)
    candidates = db.execute(
        select(Notification.id)
        .where(Notification.status == "pending", Notification.created_at < cutoff, unclaimed)
        .order_by(Notification.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
    ).scalars().all()

    claimed = []
    for notification_id in candidates:
        result = db.execute(
            update(Notification)
            .where(Notification.id == notification_id, Notification.status == "pending", unclaimed)
            .values(claimed_at=now)
        )
        if result.rowcount == 1:
            claimed.append(notification_id)
    return claimed
