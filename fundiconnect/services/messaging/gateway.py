"""Messaging gateway: renders, delivers and records booking notifications.

Every `send` updates exactly one Notification row, to `sent` or `failed`.
Provider errors are recorded on the row first and then re-raised, so a caller
that retries can tell what happened without re-reading the ledger.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fundiconnect.common.errors import NotFound, PipelineError, ProviderUnavailable, RecipientUnreachable
from fundiconnect.common.logging import logger
from fundiconnect.common.metrics import notification_failures_total, notifications_sent_total
from fundiconnect.common.phone import normalize_phone
from fundiconnect.common.tracing import tracer
from fundiconnect.services.bookings.models import Booking, Notification
from fundiconnect.services.messaging import inbound, ledger, templates
from fundiconnect.services.messaging.backends import MessagingBackend, OutboundMessage, ReplyButton
from fundiconnect.services.messaging.inbound import InboundMessage


@dataclass
class SendResult:
    notification_id: str
    provider: str
    provider_message_id: str | None
    rendered_body: str


def recipient_for(booking: Booking, notification_type: str):
    """Booking requests go to the fundi; every other update goes to the client."""

    return booking.fundi if notification_type == "booking_created" else booking.client


class MessagingGateway:
    """Sends booking notifications through the backend chosen at startup."""

    def __init__(
        self,
        session_factory,
        backend: MessagingBackend | None,
        response_window_minutes: int = 60,
        country_code: str = "254",
        service_name: str = "booking-pipeline",
        verify_token: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.verify_token = verify_token
        self.backend = backend
        self.response_window = timedelta(minutes=response_window_minutes)
        self.country_code = country_code
        self.service_name = service_name

    @property
    def provider_name(self) -> str | None:
        return self.backend.name if self.backend else None

    def compose(self, booking: Booking, notification_type: str, to: str) -> OutboundMessage:
        window = int(self.response_window.total_seconds() // 60)
        body = templates.render(booking, notification_type, window)
        if notification_type != "booking_created":
            return OutboundMessage(to=to, body=body)
        if self.backend is not None and self.backend.supports_buttons:
            return OutboundMessage(
                to=to,
                body=body,
                header="New Booking Request",
                footer=f"FundiConnect - Respond within {window} minutes",
                buttons=[
                    ReplyButton(id=f"accept_{booking.id}", title="Accept"),
                    ReplyButton(id=f"reject_{booking.id}", title="Reject"),
                ],
            )
        return OutboundMessage(to=to, body=body + templates.reply_instructions(booking, window))

    def _fail(self, notification_id: str, error: PipelineError) -> None:
        with self.session_factory() as db:
            ledger.mark_failed(db, notification_id, self.provider_name, error.message)
            db.commit()
        notification_failures_total.labels(
            service=self.service_name, provider=self.provider_name or "none", error_type=error.code
        ).inc()
        logger.warning(
            "notification failed notification_id=%s provider=%s code=%s error=%s",
            notification_id,
            self.provider_name,
            error.code,
            error.message,
        )

    async def send(self, notification_id: str) -> SendResult:
        """Deliver one staged notification and record the outcome on its row."""

        with self.session_factory() as db:
            notification = db.get(Notification, notification_id)
            if notification is None:
                raise NotFound(f"notification {notification_id} not found")
            booking = db.get(Booking, notification.booking_id)
        notification_type = notification.type

        if self.backend is None:
            error = ProviderUnavailable("No WhatsApp service configured")
            self._fail(notification_id, error)
            raise error

        recipient = recipient_for(booking, notification_type)
        to = normalize_phone(recipient.phone if recipient else None, self.country_code)
        if not to:
            error = RecipientUnreachable(f"{notification_type} recipient has no usable phone number")
            self._fail(notification_id, error)
            raise error

        message = self.compose(booking, notification_type, to)
        with tracer.start_as_current_span("messaging.send") as span:
            span.set_attribute("messaging.provider", self.backend.name)
            span.set_attribute("notification.type", notification_type)
            try:
                sent = await self.backend.send(message)
            except PipelineError as exc:
                self._fail(notification_id, exc)
                raise

        expires_at = None
        if notification_type == "booking_created":
            expires_at = datetime.now(timezone.utc) + self.response_window
        with self.session_factory() as db:
            ledger.mark_sent(db, notification_id, self.backend.name, sent.provider_message_id, sent.body, expires_at)
            db.commit()
        notifications_sent_total.labels(
            service=self.service_name, provider=self.backend.name, notification_type=notification_type
        ).inc()
        logger.info(
            "notification sent notification_id=%s booking_id=%s type=%s provider=%s message_id=%s",
            notification_id,
            booking.id,
            notification_type,
            self.backend.name,
            sent.provider_message_id,
        )
        return SendResult(
            notification_id=notification_id,
            provider=self.backend.name,
            provider_message_id=sent.provider_message_id,
            rendered_body=sent.body,
        )

    async def notify(self, booking_id: str, notification_type: str) -> SendResult:
        """Record a new notification for the booking and send it."""

        with self.session_factory() as db:
            booking = db.get(Booking, booking_id)
            if booking is None:
                raise NotFound(f"booking {booking_id} not found")
            recipient_id = booking.fundi_id if notification_type == "booking_created" else booking.client_id
            notification = ledger.record(db, booking_id, recipient_id, notification_type)
            db.commit()
        return await self.send(notification.id)

    def verify_subscription(self, mode: str | None, token: str | None, challenge: str | None) -> str | None:
        """Meta webhook handshake: echo the challenge only for a matching token."""

        if mode == "subscribe" and self.verify_token and token == self.verify_token and challenge is not None:
            logger.info("whatsapp webhook verified")
            return challenge
        logger.warning("whatsapp webhook verification failed mode=%s", mode)
        return None

    def parse_inbound_meta(self, payload) -> list[InboundMessage]:
        return inbound.parse_meta_payload(payload, self.country_code)

    def parse_inbound_twilio(self, form) -> list[InboundMessage]:
        return inbound.parse_twilio_form(form, self.country_code)
