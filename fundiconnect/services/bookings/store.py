"""Booking store: row-level CRUD plus the guarded status writes.

Status columns are never written through `update`; every transition goes
through `compare_and_swap_status` / `compare_and_swap_payment_status`, which
validate the edge and then issue `UPDATE ... WHERE id = :id AND status = :expected`.
Zero rows affected means another invocation won the race and is reported as
`False`, not as an error.
"""

from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from fundiconnect.common.config import settings
from fundiconnect.common.errors import Conflict, ValidationFailed
from fundiconnect.common.logging import logger
from fundiconnect.common.metrics import booking_transitions_total, transition_noops_total
from fundiconnect.common.state_machine import BOOKING_TRANSITIONS, PAYMENT_TRANSITIONS, validate_transition
from fundiconnect.services.bookings.models import Booking, BookingTimeline

GUARDED_FIELDS = {"status", "payment_status"}


def get(db, booking_id: str) -> Booking | None:
    return db.get(Booking, booking_id)


def insert(db, **fields) -> Booking:
    """Insert a new booking in `pending`; duplicate ids surface as Conflict."""

    if fields.get("status", "pending") != "pending":
        raise ValidationFailed("new bookings must start in pending")
    booking = Booking(status="pending", payment_status="pending", **{k: v for k, v in fields.items() if k != "status"})
    db.add(booking)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise Conflict("booking already exists") from exc
    db.add(BookingTimeline(booking_id=booking.id, field="status", from_state=None, to_state="pending", reason="created"))
    return booking


def update_fields(db, booking_id: str, fields: dict, expected_status: str | None = None) -> bool:
    """Update non-status columns, optionally guarded by the current lifecycle status."""

    guarded = GUARDED_FIELDS.intersection(fields)
    if guarded:
        raise ValidationFailed(f"status columns must use compare-and-swap: {sorted(guarded)}")
    stmt = update(Booking).where(Booking.id == booking_id)
    if expected_status is not None:
        stmt = stmt.where(Booking.status == expected_status)
    result = db.execute(stmt.values(updated_at=datetime.now(timezone.utc), **fields))
    return result.rowcount == 1


def query(db, filters: dict | None = None, order_by=None, limit: int | None = None) -> list[Booking]:
    """Equality-filtered select over bookings."""

    stmt = select(Booking)
    for column, value in (filters or {}).items():
        stmt = stmt.where(getattr(Booking, column) == value)
    if order_by is not None:
        stmt = stmt.order_by(order_by)
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(db.execute(stmt).unique().scalars().all())


def _compare_and_swap(
    db,
    column,
    field: str,
    graph: dict[str, set[str]],
    booking_id: str,
    expected: str | tuple[str, ...],
    new: str,
    reason: str,
    extra: dict | None,
) -> bool:
    expected_states = (expected,) if isinstance(expected, str) else tuple(expected)
    for state in expected_states:
        validate_transition(state, new, graph)

    current = db.execute(select(column).where(Booking.id == booking_id)).scalar_one_or_none()
    result = db.execute(
        update(Booking)
        .where(Booking.id == booking_id, column.in_(expected_states))
        .values({field: new, "updated_at": datetime.now(timezone.utc), **(extra or {})})
    )
    if result.rowcount != 1:
        transition_noops_total.labels(service=settings.service_name, field=field, reason=reason).inc()
        logger.info(
            "guarded write skipped booking_id=%s field=%s expected=%s new=%s current=%s",
            booking_id,
            field,
            "|".join(expected_states),
            new,
            current,
        )
        return False

    db.add(BookingTimeline(booking_id=booking_id, field=field, from_state=current, to_state=new, reason=reason))
    booking_transitions_total.labels(
        service=settings.service_name, field=field, from_state=current or "", to_state=new
    ).inc()
    logger.info("booking transition booking_id=%s field=%s from=%s to=%s reason=%s", booking_id, field, current, new, reason)
    return True


def compare_and_swap_status(
    db, booking_id: str, expected: str | tuple[str, ...], new: str, reason: str, **extra
) -> bool:
    """Move `Booking.status` from `expected` to `new` iff it is still `expected`."""

    return _compare_and_swap(db, Booking.status, "status", BOOKING_TRANSITIONS, booking_id, expected, new, reason, extra)


def compare_and_swap_payment_status(
    db, booking_id: str, expected: str | tuple[str, ...], new: str, reason: str, **extra
) -> bool:
    """Move `Booking.payment_status` from `expected` to `new` iff it is still `expected`."""

    return _compare_and_swap(
        db, Booking.payment_status, "payment_status", PAYMENT_TRANSITIONS, booking_id, expected, new, reason, extra
    )
