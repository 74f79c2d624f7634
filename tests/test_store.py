"""Booking store: plain writes, queries and the guarded status columns."""

from datetime import datetime, timezone

import pytest
from conftest import CLIENT_ID, FUNDI_ID, OTHER_FUNDI_ID, get_booking, make_booking
from sqlalchemy import select

from fundiconnect.common.errors import Conflict, InvalidTransition, ValidationFailed
from fundiconnect.services.bookings import store
from fundiconnect.services.bookings.models import Booking, BookingTimeline


def test_insert_rejects_non_pending_and_duplicate_ids(session_factory):
    make_booking(session_factory, booking_id="b-dup")
    with session_factory() as db:
        with pytest.raises(ValidationFailed):
            store.insert(db, client_id=CLIENT_ID, fundi_id=FUNDI_ID, status="accepted")
    with pytest.raises(Conflict):
        make_booking(session_factory, booking_id="b-dup")


def test_update_fields_refuses_status_columns(session_factory):
    booking_id = make_booking(session_factory)
    with session_factory() as db:
        with pytest.raises(ValidationFailed):
            store.update_fields(db, booking_id, {"status": "accepted"})
        with pytest.raises(ValidationFailed):
            store.update_fields(db, booking_id, {"payment_status": "paid", "location": "Westlands"})


def test_update_fields_respects_expected_status(session_factory):
    booking_id = make_booking(session_factory)
    with session_factory() as db:
        assert store.update_fields(db, booking_id, {"location": "Westlands"}, expected_status="pending")
        assert not store.update_fields(db, booking_id, {"location": "Lavington"}, expected_status="accepted")
        db.commit()
    assert get_booking(session_factory, booking_id).location == "Westlands"


def test_query_filters_orders_and_limits(session_factory):
    first = make_booking(session_factory, created_at=datetime(2026, 10, 1, 8, 0, tzinfo=timezone.utc))
    second = make_booking(session_factory, created_at=datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc))
    make_booking(session_factory, fundi_id=OTHER_FUNDI_ID)
    with session_factory() as db:
        rows = store.query(db, {"fundi_id": FUNDI_ID, "status": "pending"}, order_by=Booking.created_at)
        assert [row.id for row in rows] == [first, second]
        assert len(store.query(db, {"client_id": CLIENT_ID}, limit=2)) == 2
        assert store.query(db, {"status": "accepted"}) == []


def test_compare_and_swap_records_timeline(session_factory):
    booking_id = make_booking(session_factory)
    with session_factory() as db:
        assert store.compare_and_swap_status(db, booking_id, "pending", "accepted", reason="fundi_reply")
        assert not store.compare_and_swap_status(db, booking_id, "pending", "rejected", reason="fundi_reply")
        db.commit()
        history = db.execute(
            select(BookingTimeline.from_state, BookingTimeline.to_state)
            .where(BookingTimeline.booking_id == booking_id)
        ).all()
    assert sorted(tuple(row) for row in history if row.from_state) == [("pending", "accepted")]
    assert len(history) == 2


def test_compare_and_swap_validates_edge_before_writing(session_factory):
    booking_id = make_booking(session_factory)
    with session_factory() as db:
        with pytest.raises(InvalidTransition):
            store.compare_and_swap_status(db, booking_id, "pending", "completed", reason="skip_ahead")
        with pytest.raises(InvalidTransition):
            store.compare_and_swap_payment_status(db, booking_id, "paid", "pending", reason="reopen")
    assert get_booking(session_factory, booking_id).status == "pending"
