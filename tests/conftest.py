"""Shared fixtures: in-memory store, seeded profiles and scripted provider backends."""

import os

os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("RUN_BACKGROUND_WORKERS", "false")

from datetime import date, datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.pool import StaticPool

from fundiconnect.common.config import CommonSettings
from fundiconnect.common.db import Base, make_session_factory
from fundiconnect.common.errors import ProviderUnavailable
from fundiconnect.services.bookings import store
from fundiconnect.services.bookings.context import build_context
from fundiconnect.services.bookings.models import Booking, Notification, OutboxEvent, PaymentAttempt, Profile
from fundiconnect.services.messaging.backends import MessagingBackend, SentMessage
from fundiconnect.services.payments.backends import InitiationResult, PaymentBackend, PaystackBackend

CLIENT_ID = "client-1"
FUNDI_ID = "fundi-1"
OTHER_FUNDI_ID = "fundi-2"
ADMIN_ID = "admin-1"
FUNDI_PHONE = "254712000002"
PAYSTACK_SECRET = "sk_test_secret"


class RecordingBackend(MessagingBackend):
    """Messaging backend that records outbound messages instead of calling a provider."""

    name = "meta"
    supports_buttons = True

    def __init__(self) -> None:
        super().__init__(client=None, timeout=1.0, service_name="test")
        self.sent = []
        self.fail_with = None

    async def send(self, message):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(message)
        return SentMessage(provider_message_id=f"wamid.{len(self.sent)}", body=message.body)


class ScriptedPaymentBackend(PaymentBackend):
    """Returns queued results (or raises queued errors) for successive initiations."""

    method = "paystack"

    def __init__(self, results=None) -> None:
        super().__init__(client=None, timeout=1.0, service_name="test")
        self.results = list(results or [])
        self.calls = []

    @property
    def configured(self) -> bool:
        return True

    async def initiate(self, booking, attempt_number, callback_url):
        self.calls.append((booking.id, attempt_number))
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def parse_webhook(self, payload):
        return PaystackBackend.parse_webhook(self, payload)


@pytest.fixture
def config():
    return CommonSettings(
        _env_file=None,
        tracing_enabled=False,
        run_background_workers=False,
        api_key="test-key",
        paystack_secret_key=PAYSTACK_SECRET,
        whatsapp_webhook_verify_token="verify-me",
    )


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = make_session_factory(engine)
    with factory() as db:
        db.add_all(
            [
                Profile(id=CLIENT_ID, role="client", full_name="Amina Client", phone="0712000001", email="amina@example.com"),
                Profile(id=FUNDI_ID, role="fundi", full_name="Juma Fundi", phone="+254 712 000 002", hourly_rate=500),
                Profile(id=OTHER_FUNDI_ID, role="fundi", full_name="Otieno Fundi", phone="0712000003", hourly_rate=800),
                Profile(id=ADMIN_ID, role="admin", full_name="Support Admin"),
            ]
        )
        db.commit()
    yield factory
    engine.dispose()


@pytest.fixture
def messaging_backend():
    return RecordingBackend()


@pytest.fixture
def payment_backend():
    return ScriptedPaymentBackend()


@pytest.fixture
def ctx(config, session_factory, messaging_backend, payment_backend):
    service_ctx = build_context(
        config,
        session_factory=session_factory,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500))),
    )
    service_ctx.messaging.backend = messaging_backend
    service_ctx.payments.backends["paystack"] = payment_backend
    return service_ctx


def make_booking(session_factory, status="pending", fundi_id=FUNDI_ID, booking_id=None, **fields) -> str:
    values = dict(
        client_id=CLIENT_ID,
        fundi_id=fundi_id,
        service="Plumbing",
        description="Leaking kitchen sink",
        scheduled_date=date(2026, 11, 2),
        scheduled_time="10:30",
        location="Kilimani, Nairobi",
        total_amount=1000,
    )
    if booking_id:
        values["id"] = booking_id
    values.update(fields)
    with session_factory() as db:
        booking = store.insert(db, **values)
        db.commit()
        booking_id = booking.id
    if status == "accepted":
        with session_factory() as db:
            assert store.compare_and_swap_status(db, booking_id, "pending", "accepted", reason="test_setup")
            db.commit()
    return booking_id


def add_sent_request(session_factory, booking_id, expires_in_minutes=60) -> str:
    """A `booking_created` notification already handed to the provider."""

    with session_factory() as db:
        notification = Notification(
            booking_id=booking_id,
            recipient_id=FUNDI_ID,
            type="booking_created",
            status="sent",
            provider="meta",
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=expires_in_minutes),
        )
        db.add(notification)
        db.commit()
        return notification.id


def get_booking(session_factory, booking_id) -> Booking:
    with session_factory() as db:
        return db.get(Booking, booking_id)


def notifications_for(session_factory, booking_id, notification_type=None) -> list[Notification]:
    with session_factory() as db:
        stmt = select(Notification).where(Notification.booking_id == booking_id).order_by(Notification.created_at)
        if notification_type:
            stmt = stmt.where(Notification.type == notification_type)
        return list(db.execute(stmt).scalars().all())


def attempts_for(session_factory, booking_id) -> list[PaymentAttempt]:
    with session_factory() as db:
        return list(
            db.execute(
                select(PaymentAttempt)
                .where(PaymentAttempt.booking_id == booking_id)
                .order_by(PaymentAttempt.attempt_number)
            )
            .scalars()
            .all()
        )


def outbox_types(session_factory, booking_id) -> list[str]:
    with session_factory() as db:
        return list(
            db.execute(select(OutboxEvent.event_type).where(OutboxEvent.aggregate_id == booking_id)).scalars().all()
        )


def initiation(reference="fundi_ref_1"):
    return InitiationResult(payment_url=f"https://checkout.paystack.com/{reference}", reference=reference)


def transient_error():
    return ProviderUnavailable("paystack returned HTTP 502")
