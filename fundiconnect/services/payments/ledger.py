"""Payment attempt ledger.

An attempt row is reserved in `pending` before the provider is called (the
unique `(booking_id, attempt_number)` constraint makes concurrent reservations
collide), then finalized exactly once to `success` or `failed`. A finalized
row is never touched again; a retry reserves a new number.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from fundiconnect.common.errors import Conflict
from fundiconnect.services.bookings.models import PaymentAttempt


def attempts_used(db, booking_id: str) -> int:
    """Highest attempt number for the booking, across every payment method."""

    highest = db.execute(
        select(func.max(PaymentAttempt.attempt_number)).where(PaymentAttempt.booking_id == booking_id)
    ).scalar_one()
    return int(highest or 0)


def reserve(db, booking_id: str, payment_method: str, attempt_number: int) -> PaymentAttempt:
    attempt = PaymentAttempt(
        booking_id=booking_id,
        payment_method=payment_method,
        attempt_number=attempt_number,
        status="pending",
    )
    db.add(attempt)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise Conflict("another payment attempt is already in progress", attempt_number=attempt_number) from exc
    return attempt


def finalize(
    db,
    attempt_id: str,
    status: str,
    payment_reference: str | None = None,
    error_message: str | None = None,
) -> bool:
    if status not in ("success", "failed"):
        raise ValueError(f"attempts finalize to success or failed, not {status}")
    result = db.execute(
        update(PaymentAttempt)
        .where(PaymentAttempt.id == attempt_id, PaymentAttempt.status == "pending")
        .values(
            status=status,
            payment_reference=payment_reference,
            error_message=error_message[:500] if error_message else None,
        )
    )
    return result.rowcount == 1


def find_by_reference(db, payment_reference: str) -> PaymentAttempt | None:
    return db.execute(
        select(PaymentAttempt).where(PaymentAttempt.payment_reference == payment_reference)
    ).scalar_one_or_none()


def find_stale(db, older_than_seconds: int) -> list[PaymentAttempt]:
    """Attempts still `pending` long after any provider call would have timed out."""

    cutoff = datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)
    return list(
        db.execute(
            select(PaymentAttempt)
            .where(PaymentAttempt.status == "pending", PaymentAttempt.created_at < cutoff)
            .order_by(PaymentAttempt.created_at)
        )
        .scalars()
        .all()
    )
