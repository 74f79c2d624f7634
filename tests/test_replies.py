"""Fundi replies: accept/reject resolution, sender checks and at-most-once application."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from conftest import (
    CLIENT_ID,
    FUNDI_PHONE,
    OTHER_FUNDI_ID,
    RecordingBackend,
    add_sent_request,
    get_booking,
    make_booking,
    notifications_for,
    outbox_types,
)

from fundiconnect.common.errors import ProviderUnavailable
from fundiconnect.services.bookings.models import Notification
from fundiconnect.services.messaging import ledger
from fundiconnect.services.messaging.inbound import InboundMessage


def button(booking_id, intent="accept", message_id="wamid.R1", sender=FUNDI_PHONE):
    return InboundMessage(
        message_id=message_id, sender=sender, booking_ref=booking_id, ref_kind="full", intent=intent, source="meta"
    )


def text(suffix, intent="accept", message_id="SM1", sender=FUNDI_PHONE):
    return InboundMessage(
        message_id=message_id, sender=sender, booking_ref=suffix, ref_kind="suffix", intent=intent, source="twilio"
    )


@pytest.mark.asyncio
async def test_button_accept_then_identical_press_is_noop(ctx, session_factory, messaging_backend):
    booking_id = make_booking(session_factory)
    request_id = add_sent_request(session_factory, booking_id)

    first = await ctx.coordinator.handle_inbound(button(booking_id, message_id="wamid.R1"))
    second = await ctx.coordinator.handle_inbound(button(booking_id, message_id="wamid.R2"))

    assert first.result == "applied"
    assert second.result == "already_resolved"
    assert get_booking(session_factory, booking_id).status == "accepted"
    accepted = notifications_for(session_factory, booking_id, "booking_accepted")
    assert len(accepted) == 1
    assert accepted[0].status == "sent"
    assert len(messaging_backend.sent) == 1
    [request] = notifications_for(session_factory, booking_id, "booking_created")
    assert request.id == request_id
    assert request.status == "delivered"
    assert outbox_types(session_factory, booking_id).count("booking.accepted") == 1


@pytest.mark.asyncio
async def test_redelivered_webhook_message_is_skipped(ctx, session_factory, messaging_backend):
    booking_id = make_booking(session_factory)
    message = button(booking_id, intent="reject", message_id="wamid.DUP")

    assert (await ctx.coordinator.handle_inbound(message)).result == "applied"
    assert (await ctx.coordinator.handle_inbound(message)).result == "duplicate"

    assert get_booking(session_factory, booking_id).status == "rejected"
    assert len(notifications_for(session_factory, booking_id, "booking_rejected")) == 1
    assert len(messaging_backend.sent) == 1


@pytest.mark.asyncio
async def test_reply_from_another_phone_is_dropped(ctx, session_factory, messaging_backend):
    booking_id = make_booking(session_factory)

    outcome = await ctx.coordinator.handle_inbound(button(booking_id, sender="254799999999"))

    assert outcome.result == "sender_mismatch"
    assert get_booking(session_factory, booking_id).status == "pending"
    assert notifications_for(session_factory, booking_id) == []
    assert messaging_backend.sent == []


@pytest.mark.asyncio
async def test_text_suffix_resolves_against_senders_pending_bookings(ctx, session_factory):
    booking_id = make_booking(session_factory)
    suffix = booking_id[-8:].lower()

    outcome = await ctx.coordinator.handle_inbound(text(suffix, intent="reject"))

    assert outcome.result == "applied"
    assert outcome.booking_id == booking_id
    assert get_booking(session_factory, booking_id).status == "rejected"


@pytest.mark.asyncio
async def test_suffix_collision_picks_the_senders_booking(ctx, session_factory):
    other = make_booking(session_factory, fundi_id=OTHER_FUNDI_ID, booking_id="00000000-0000-4000-8000-00000000abcd")
    mine = make_booking(session_factory, booking_id="11111111-1111-4111-8111-11110000abcd")

    outcome = await ctx.coordinator.handle_inbound(text("0000abcd"))

    assert outcome.booking_id == mine
    assert get_booking(session_factory, mine).status == "accepted"
    assert get_booking(session_factory, other).status == "pending"


@pytest.mark.asyncio
async def test_suffix_for_unknown_booking(ctx, session_factory):
    make_booking(session_factory)
    outcome = await ctx.coordinator.handle_inbound(text("zzzzzzzz"))
    assert outcome.result == "not_found"


@pytest.mark.asyncio
async def test_non_actionable_message_is_ignored(ctx, session_factory):
    message = InboundMessage(message_id="wamid.H", sender=FUNDI_PHONE, booking_ref=None, ref_kind=None, intent="none", source="meta")
    assert (await ctx.coordinator.handle_inbound(message)).result == "ignored"


@pytest.mark.asyncio
async def test_accept_survives_client_notification_failure(ctx, session_factory, messaging_backend):
    booking_id = make_booking(session_factory)
    messaging_backend.fail_with = ProviderUnavailable("meta timed out")

    outcome = await ctx.coordinator.handle_inbound(button(booking_id))

    assert outcome.result == "applied"
    assert get_booking(session_factory, booking_id).status == "accepted"
    [notice] = notifications_for(session_factory, booking_id, "booking_accepted")
    assert notice.status == "failed"


@pytest.mark.asyncio
async def test_staged_notification_is_redelivered(ctx, session_factory, messaging_backend):
    booking_id = make_booking(session_factory, status="accepted")
    with session_factory() as db:
        staged = ledger.record(db, booking_id, CLIENT_ID, "booking_accepted")
        staged.created_at = datetime.now(timezone.utc) - timedelta(minutes=10)
        fresh = ledger.record(db, booking_id, CLIENT_ID, "payment_reminder")
        db.commit()
        staged_id, fresh_id = staged.id, fresh.id

    assert await ctx.coordinator.redeliver_pending(older_than_seconds=120) == 1

    statuses = {n.id: n.status for n in notifications_for(session_factory, booking_id)}
    assert statuses == {staged_id: "sent", fresh_id: "pending"}
    assert len(messaging_backend.sent) == 1
    assert await ctx.coordinator.redeliver_pending(older_than_seconds=120) == 0


class SlowBackend(RecordingBackend):
    async def send(self, message):
        await asyncio.sleep(0.05)
        return await super().send(message)


@pytest.mark.asyncio
async def test_overlapping_redelivery_sends_each_row_once(ctx, session_factory):
    backend = SlowBackend()
    ctx.messaging.backend = backend
    booking_id = make_booking(session_factory, status="accepted")
    with session_factory() as db:
        staged = ledger.record(db, booking_id, CLIENT_ID, "booking_accepted")
        staged.created_at = datetime.now(timezone.utc) - timedelta(minutes=10)
        db.commit()

    counts = await asyncio.gather(
        ctx.coordinator.redeliver_pending(older_than_seconds=-1),
        ctx.coordinator.redeliver_pending(older_than_seconds=-1),
    )

    assert sorted(counts) == [0, 1]
    assert len(backend.sent) == 1
    [row] = notifications_for(session_factory, booking_id)
    assert row.status == "sent"


@pytest.mark.asyncio
async def test_expired_claim_is_reclaimed(ctx, session_factory, messaging_backend):
    booking_id = make_booking(session_factory, status="accepted")
    with session_factory() as db:
        staged = ledger.record(db, booking_id, CLIENT_ID, "booking_accepted")
        staged.created_at = datetime.now(timezone.utc) - timedelta(minutes=30)
        staged.claimed_at = datetime.now(timezone.utc) - timedelta(minutes=1)
        db.commit()

    assert await ctx.coordinator.redeliver_pending(older_than_seconds=120) == 0

    with session_factory() as db:
        db.get(Notification, staged.id).claimed_at = datetime.now(timezone.utc) - timedelta(minutes=20)
        db.commit()
    assert await ctx.coordinator.redeliver_pending(older_than_seconds=120) == 1
    assert len(messaging_backend.sent) == 1


@pytest.mark.asyncio
async def test_reply_can_leave_client_notice_to_the_caller(ctx, session_factory, messaging_backend):
    booking_id = make_booking(session_factory)
    add_sent_request(session_factory, booking_id)

    outcome = await ctx.coordinator.handle_inbound(button(booking_id), deliver=False)

    assert outcome.result == "applied"
    assert messaging_backend.sent == []
    [notice] = notifications_for(session_factory, booking_id, "booking_accepted")
    assert (notice.id, notice.status) == (outcome.notification_id, "pending")

    await ctx.coordinator.deliver(outcome.notification_id)
    assert len(messaging_backend.sent) == 1
