"""Booking lifecycle coordination.

The coordinator is the only writer of `Booking.status` and
`Booking.payment_status`. Every change it makes is a guarded compare-and-swap
in the same transaction as its ledger rows and outbox events; provider calls
happen only after that transaction has committed.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from fundiconnect.common.errors import (
    Conflict,
    NotAuthorized,
    NotFound,
    PipelineError,
    RetryCeilingExceeded,
    ValidationFailed,
)
from fundiconnect.common.events import EventEnvelope, KafkaBus
from fundiconnect.common.logging import booking_id_ctx, logger, trace_id_ctx
from fundiconnect.common.metrics import (
    duplicate_events_skipped_total,
    inbound_messages_total,
    payment_initiations_total,
)
from fundiconnect.common.outbox import (
    claim_outbox_batch,
    enqueue_event,
    mark_outbox_sent,
    requeue_outbox_event,
    update_outbox_backlog_metrics,
)
from fundiconnect.common.phone import normalize_phone
from fundiconnect.services.bookings import store
from fundiconnect.services.bookings.models import Booking, InboxEvent, OutboxEvent, Profile
from fundiconnect.services.messaging import ledger as notifications
from fundiconnect.services.messaging.gateway import MessagingGateway
from fundiconnect.services.messaging.inbound import InboundMessage
from fundiconnect.services.payments import ledger as attempts
from fundiconnect.services.payments.backends import WebhookOutcome
from fundiconnect.services.payments.gateway import PaymentGateway

RETRY_NEXT_STEPS = "Please try again or use a different payment method"
EXHAUSTED_NEXT_STEPS = "Please use a different payment method or contact support"
INITIABLE_STATUSES = {"accepted", "completed"}


@dataclass(frozen=True)
class Caller:
    """Authenticated identity forwarded by the upstream auth proxy."""

    id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass
class ReplyOutcome:
    message_id: str | None
    booking_id: str | None
    result: str  # applied, duplicate, ignored, not_found, sender_mismatch, already_resolved
    status: str | None = None
    notification_id: str | None = None


class BookingCoordinator:
    """Applies replies, payment outcomes and caller actions to bookings."""

    def __init__(
        self,
        session_factory,
        messaging: MessagingGateway,
        payments: PaymentGateway,
        kafka: KafkaBus | None = None,
        max_payment_attempts: int = 3,
        country_code: str = "254",
        service_name: str = "booking-pipeline",
        redelivery_lease_seconds: int = 300,
    ) -> None:
        self.session_factory = session_factory
        self.redelivery_lease_seconds = redelivery_lease_seconds
        self.messaging = messaging
        self.payments = payments
        self.kafka = kafka
        self.max_payment_attempts = max_payment_attempts
        self.country_code = country_code
        self.service_name = service_name

    # Loading and authorization

    def _load(self, db, booking_id: str) -> Booking:
        booking = store.get(db, booking_id)
        if booking is None:
            raise NotFound(f"booking {booking_id} not found")
        booking_id_ctx.set(booking.id)
        return booking

    @staticmethod
    def _authorize(booking: Booking, caller: Caller, *, client: bool = False, fundi: bool = False) -> None:
        if caller.is_admin:
            return
        if client and caller.id == booking.client_id:
            return
        if fundi and caller.id == booking.fundi_id:
            return
        raise NotAuthorized("caller is not allowed to act on this booking")

    def _event(self, db, booking: Booking, event_type: str, **payload) -> None:
        enqueue_event(
            db,
            OutboxEvent,
            booking.id,
            event_type,
            {"client_id": booking.client_id, "fundi_id": booking.fundi_id, **payload},
            trace_id=trace_id_ctx.get(),
        )

    async def deliver(self, notification_id: str | None) -> None:
        """Send a committed notification; a failure is already on its row."""

        if notification_id is None:
            return
        try:
            await self.messaging.send(notification_id)
        except PipelineError as exc:
            logger.warning("client notification not delivered notification_id=%s code=%s", notification_id, exc.code)

    # Booking lifecycle

    async def create_booking(self, caller: Caller, req) -> tuple[Booking, str]:
        """Create a pending booking priced from the fundi's hourly rate and notify the fundi."""

        if caller.role != "client" and not caller.is_admin:
            raise NotAuthorized("only clients can create bookings")
        with self.session_factory() as db:
            fundi = db.get(Profile, req.fundi_id)
            if fundi is None or fundi.role != "fundi":
                raise NotFound(f"fundi {req.fundi_id} not found")
            if not fundi.hourly_rate:
                raise ValidationFailed("fundi has no hourly rate set")
            client_id = req.client_id if caller.is_admin and req.client_id else caller.id
            if db.get(Profile, client_id) is None:
                raise NotFound(f"client {client_id} not found")
            booking = store.insert(
                db,
                client_id=client_id,
                fundi_id=fundi.id,
                service=req.service,
                description=req.description,
                scheduled_date=req.scheduled_date,
                scheduled_time=req.scheduled_time,
                location=req.location,
                total_amount=fundi.hourly_rate * req.estimated_hours,
            )
            self._event(db, booking, "booking.created", total_amount=booking.total_amount)
            db.commit()
            booking_id = booking.id
        booking_id_ctx.set(booking_id)
        logger.info("booking created booking_id=%s total_amount=%s", booking_id, booking.total_amount)

        notification_status = "sent"
        try:
            await self.messaging.notify(booking_id, "booking_created")
        except PipelineError as exc:
            notification_status = "failed"
            logger.warning("fundi notification failed booking_id=%s code=%s", booking_id, exc.code)
        with self.session_factory() as db:
            return self._load(db, booking_id), notification_status

    def get_booking(self, caller: Caller, booking_id: str) -> Booking:
        with self.session_factory() as db:
            booking = self._load(db, booking_id)
            self._authorize(booking, caller, client=True, fundi=True)
            return booking

    def complete(self, caller: Caller, booking_id: str) -> Booking:
        with self.session_factory() as db:
            booking = self._load(db, booking_id)
            self._authorize(booking, caller, fundi=True)
            if not store.compare_and_swap_status(db, booking.id, "accepted", "completed", reason="work_completed"):
                raise Conflict("only accepted bookings can be completed", status=booking.status)
            # Loyalty accrual consumes this event downstream.
            self._event(db, booking, "booking.completed", total_amount=booking.total_amount)
            db.commit()
            return self._load(db, booking_id)

    def cancel(self, caller: Caller, booking_id: str, reason: str | None = None) -> Booking:
        with self.session_factory() as db:
            booking = self._load(db, booking_id)
            self._authorize(booking, caller, client=True, fundi=True)
            if not store.compare_and_swap_status(
                db, booking.id, ("pending", "accepted"), "cancelled", reason=f"cancelled_by_{caller.role}"
            ):
                raise Conflict("booking can no longer be cancelled", status=booking.status)
            self._event(db, booking, "booking.cancelled", cancelled_by=caller.id, reason=reason)
            db.commit()
            return self._load(db, booking_id)

    def refund(self, caller: Caller, booking_id: str, reason: str | None = None) -> Booking:
        """Dispute resolution outcome: move a paid booking to refunded."""

        if not caller.is_admin:
            raise NotAuthorized("only admins can refund bookings")
        with self.session_factory() as db:
            booking = self._load(db, booking_id)
            if not store.compare_and_swap_payment_status(db, booking.id, "paid", "refunded", reason="dispute_refund"):
                raise Conflict("only paid bookings can be refunded", payment_status=booking.payment_status)
            self._event(db, booking, "payment.refunded", amount=booking.total_amount, reason=reason)
            db.commit()
            return self._load(db, booking_id)

    # Inbound replies

    def _resolve(self, db, message: InboundMessage) -> Booking | None:
        if message.ref_kind == "full":
            return store.get(db, message.booking_ref)
        # A suffix collision between two pending bookings of the same fundi resolves to the oldest.
        candidates = db.execute(
            select(Booking)
            .where(Booking.status == "pending", Booking.id.like(f"%{message.booking_ref}"))
            .order_by(Booking.created_at)
        ).unique().scalars().all()
        for candidate in candidates:
            if normalize_phone(candidate.fundi.phone, self.country_code) == message.sender:
                return candidate
        return None

    def _claim_inbox(self, db, message: InboundMessage) -> bool:
        if not message.message_id:
            return True
        event_id = f"{message.source}:{message.message_id}"
        seen = db.execute(
            select(InboxEvent).where(
                InboxEvent.event_id == event_id, InboxEvent.consumed_by_service == self.service_name
            )
        ).scalar_one_or_none()
        if seen is not None:
            return False
        db.add(InboxEvent(event_id=event_id, consumed_by_service=self.service_name))
        return True

    def _duplicate(self, message: InboundMessage) -> ReplyOutcome:
        duplicate_events_skipped_total.labels(service=self.service_name, source=message.source).inc()
        logger.info("duplicate inbound message skipped source=%s message_id=%s", message.source, message.message_id)
        return ReplyOutcome(message.message_id, None, "duplicate")

    async def handle_inbound(self, message: InboundMessage, deliver: bool = True) -> ReplyOutcome:
        """Apply one normalized fundi reply at most once.

        With `deliver=False` the client notification is committed but left for the
        caller to send with `deliver`; redelivery picks it up if that never happens.
        """

        inbound_messages_total.labels(service=self.service_name, source=message.source, intent=message.intent).inc()
        if not message.actionable:
            logger.info("inbound message ignored source=%s message_id=%s", message.source, message.message_id)
            return ReplyOutcome(message.message_id, None, "ignored")

        new_status = "accepted" if message.intent == "accept" else "rejected"
        notification_id = None
        with self.session_factory() as db:
            if not self._claim_inbox(db, message):
                return self._duplicate(message)
            booking = self._resolve(db, message)
            if booking is None:
                db.commit()
                logger.info("inbound reply matched no booking ref=%s kind=%s", message.booking_ref, message.ref_kind)
                return ReplyOutcome(message.message_id, None, "not_found")
            booking_id_ctx.set(booking.id)
            if normalize_phone(booking.fundi.phone, self.country_code) != message.sender:
                db.commit()
                logger.warning("inbound reply sender does not match fundi booking_id=%s", booking.id)
                return ReplyOutcome(message.message_id, booking.id, "sender_mismatch")
            if booking.status != "pending" or not store.compare_and_swap_status(
                db, booking.id, "pending", new_status, reason=f"fundi_{message.intent}_{message.source}"
            ):
                db.commit()
                return ReplyOutcome(message.message_id, booking.id, "already_resolved", booking.status)

            notifications.mark_delivered(db, booking.id)
            notification = notifications.record(db, booking.id, booking.client_id, f"booking_{new_status}")
            notification_id = notification.id
            self._event(db, booking, f"booking.{new_status}", source=message.source)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return self._duplicate(message)

        if deliver:
            await self.deliver(notification_id)
        return ReplyOutcome(message.message_id, booking.id, "applied", new_status, notification_id)

    # Payments

    def _payment_failure(self, exc: PipelineError, attempt_number: int) -> PipelineError:
        can_retry = exc.retryable and attempt_number < self.max_payment_attempts
        return type(exc)(
            exc.message,
            attempt_number=attempt_number,
            max_retries=self.max_payment_attempts,
            can_retry=can_retry,
            next_steps=RETRY_NEXT_STEPS if can_retry else EXHAUSTED_NEXT_STEPS,
        )

    async def initiate_payment(self, caller: Caller, booking_id: str, method: str, callback_url: str | None = None) -> dict:
        """Start one payment attempt; at most one is in flight per booking."""

        with self.session_factory() as db:
            booking = self._load(db, booking_id)
            self._authorize(booking, caller, client=True)
            if booking.payment_status == "paid":
                return {
                    "status": "success",
                    "booking_id": booking.id,
                    "payment_status": "paid",
                    "message": "Booking is already paid",
                }
            if booking.status not in INITIABLE_STATUSES:
                raise Conflict("payment is only possible for accepted bookings", status=booking.status)

            used = attempts.attempts_used(db, booking.id)
            if used >= self.max_payment_attempts:
                payment_initiations_total.labels(service=self.service_name, method=method, result="ceiling").inc()
                raise RetryCeilingExceeded(
                    "Maximum payment attempts reached",
                    attempt_number=used,
                    max_retries=self.max_payment_attempts,
                    can_retry=False,
                    next_steps=EXHAUSTED_NEXT_STEPS,
                )
            attempt_number = used + 1
            try:
                self.payments.backend_for(method)
            except PipelineError as exc:
                payment_initiations_total.labels(service=self.service_name, method=method, result=exc.code).inc()
                raise self._payment_failure(exc, attempt_number) from exc

            if not store.compare_and_swap_payment_status(
                db, booking.id, ("pending", "failed"), "processing", reason=f"initiate_{method}"
            ):
                raise Conflict(
                    "a payment attempt is already in progress",
                    payment_status=booking.payment_status,
                    attempt_number=used,
                    max_retries=self.max_payment_attempts,
                )
            attempt = attempts.reserve(db, booking.id, method, attempt_number)
            db.commit()
            attempt_id = attempt.id

        try:
            result = await self.payments.initiate(booking, method, attempt_number, callback_url)
        except PipelineError as exc:
            with self.session_factory() as db:
                attempts.finalize(db, attempt_id, "failed", error_message=exc.message)
                store.compare_and_swap_payment_status(db, booking_id, "processing", "pending", reason="initiation_failed")
                db.commit()
            payment_initiations_total.labels(service=self.service_name, method=method, result=exc.code).inc()
            logger.warning(
                "payment initiation failed booking_id=%s method=%s attempt=%s code=%s",
                booking_id,
                method,
                attempt_number,
                exc.code,
            )
            raise self._payment_failure(exc, attempt_number) from exc

        with self.session_factory() as db:
            attempts.finalize(db, attempt_id, "success", payment_reference=result.reference)
            stored = store.compare_and_swap_payment_status(
                db,
                booking_id,
                "processing",
                "pending",
                reason="awaiting_webhook",
                payment_method=method,
                payment_reference=result.reference,
            )
            db.commit()
        if not stored:
            logger.info("payment settled during initiation booking_id=%s reference=%s", booking_id, result.reference)
        payment_initiations_total.labels(service=self.service_name, method=method, result="success").inc()
        return {
            "status": "success",
            "booking_id": booking_id,
            "payment_url": result.payment_url,
            "reference": result.reference,
            "payment_method": method,
            "payment_status": "pending",
            "attempt_number": attempt_number,
            "max_retries": self.max_payment_attempts,
            "can_retry": attempt_number < self.max_payment_attempts,
        }

    def _booking_for_reference(self, db, outcome: WebhookOutcome) -> tuple[Booking | None, bool]:
        """Return the booking and whether the reference is its current one."""

        booking = db.execute(
            select(Booking).where(Booking.payment_reference == outcome.reference)
        ).unique().scalar_one_or_none()
        if booking is not None:
            return booking, True
        attempt = attempts.find_by_reference(db, outcome.reference)
        if attempt is None:
            return None, False
        return store.get(db, attempt.booking_id), False

    def apply_payment_outcome(self, outcome: WebhookOutcome) -> str:
        """Apply a normalized webhook; replays and unknown references are no-ops."""

        with self.session_factory() as db:
            booking, current = self._booking_for_reference(db, outcome)
            if booking is None:
                logger.warning("payment webhook for unknown reference provider=%s reference=%s", outcome.provider, outcome.reference)
                return "unknown_reference"
            booking_id_ctx.set(booking.id)
            if outcome.booking_hint and outcome.booking_hint != booking.id:
                logger.error(
                    "payment webhook booking mismatch reference=%s hint=%s booking_id=%s",
                    outcome.reference,
                    outcome.booking_hint,
                    booking.id,
                )
                return "booking_mismatch"
            if booking.payment_status in ("paid", "refunded"):
                logger.info("payment webhook replay ignored booking_id=%s reference=%s", booking.id, outcome.reference)
                return "noop"

            if outcome.outcome == "paid":
                applied = store.compare_and_swap_payment_status(
                    db,
                    booking.id,
                    ("pending", "processing", "failed"),
                    "paid",
                    reason=f"{outcome.provider}_webhook",
                    payment_reference=outcome.reference,
                    payment_method=outcome.provider,
                    payment_completed_at=datetime.now(timezone.utc),
                )
                if applied:
                    self._event(
                        db,
                        booking,
                        "payment.paid",
                        amount=booking.total_amount,
                        payment_method=outcome.provider,
                        payment_reference=outcome.reference,
                        **(outcome.detail or {}),
                    )
            else:
                if not current:
                    logger.info("failure for superseded reference ignored booking_id=%s reference=%s", booking.id, outcome.reference)
                    return "superseded"
                applied = store.compare_and_swap_payment_status(
                    db, booking.id, "pending", "failed", reason=f"{outcome.provider}_webhook"
                )
                if applied:
                    self._event(
                        db, booking, "payment.failed", payment_reference=outcome.reference, **(outcome.detail or {})
                    )
            db.commit()
        return "applied" if applied else "noop"

    def handle_payment_webhook(self, provider: str, payload, raw_body: bytes, headers) -> str:
        outcome = self.payments.handle_webhook(provider, payload, raw_body, headers)
        if outcome is None:
            return "discarded"
        return self.apply_payment_outcome(outcome)

    async def send_payment_reminder(self, booking_id: str) -> dict:
        with self.session_factory() as db:
            booking = self._load(db, booking_id)
            if booking.status != "accepted" or booking.payment_status in ("paid", "refunded"):
                raise Conflict(
                    "reminders are only sent for accepted, unpaid bookings",
                    status=booking.status,
                    payment_status=booking.payment_status,
                )
        result = await self.messaging.notify(booking_id, "payment_reminder")
        return {"status": "success", "notification_id": result.notification_id, "provider": result.provider}

    # Background workers

    async def redeliver_pending(self, older_than_seconds: int) -> int:
        """Resend notifications committed but never handed to a provider."""

        with self.session_factory() as db:
            stale = notifications.claim_stale_pending(db, older_than_seconds, self.redelivery_lease_seconds)
            db.commit()
        for notification_id in stale:
            await self.deliver(notification_id)
        if stale:
            logger.info("redelivered stale notifications count=%s", len(stale))
        return len(stale)

    async def redelivery_loop(self, interval_seconds: float, older_than_seconds: int) -> None:
        while True:
            try:
                await self.redeliver_pending(older_than_seconds)
            except Exception as exc:
                logger.exception("notification redelivery failed: %s", exc)
            await asyncio.sleep(interval_seconds)

    async def outbox_publisher(self, poll_seconds: float = 0.5) -> None:
        """Continuously publish and ack pending outbox events."""

        while True:
            with self.session_factory() as db:
                rows = claim_outbox_batch(db, OutboxEvent, limit=100)
                update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
                db.commit()
            for row in rows:
                try:
                    await self.kafka.publish(row["topic"], EventEnvelope(**row["payload"]))
                    with self.session_factory() as db:
                        mark_outbox_sent(db, OutboxEvent, row["id"])
                        db.commit()
                except Exception as exc:
                    logger.exception("outbox publish failed: %s", exc)
                    with self.session_factory() as db:
                        requeue_outbox_event(db, OutboxEvent, row["id"])
                        db.commit()
            await asyncio.sleep(poll_seconds)
