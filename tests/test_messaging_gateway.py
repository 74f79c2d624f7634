"""Messaging gateway: one ledger row per send, backend-specific rendering."""

import json
from datetime import date, datetime, timezone

import httpx
import pytest
from conftest import CLIENT_ID, FUNDI_ID, FUNDI_PHONE, make_booking, notifications_for

from fundiconnect.common.config import CommonSettings
from fundiconnect.common.errors import ProviderError, ProviderUnavailable, RecipientUnreachable
from fundiconnect.services.bookings.coordinator import Caller
from fundiconnect.services.bookings.models import Profile
from fundiconnect.services.bookings.schemas import BookingCreateRequest
from fundiconnect.services.messaging.backends import (
    MetaWhatsAppBackend,
    OutboundMessage,
    ReplyButton,
    TwilioWhatsAppBackend,
    select_backend,
)
from fundiconnect.services.messaging.gateway import MessagingGateway


def meta_backend(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MetaWhatsAppBackend(client, 5.0, "test", access_token="token", phone_number_id="123", api_url="https://graph.test/v18.0")


def twilio_backend(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TwilioWhatsAppBackend(
        client, 5.0, "test", account_sid="AC1", auth_token="secret", from_number="+14155238886", api_url="https://twilio.test"
    )


@pytest.mark.asyncio
async def test_booking_created_uses_reply_buttons_on_meta(session_factory):
    booking_id = make_booking(session_factory)
    captured = {}

    def handler(request):
        captured["url"] = str(request.url)
        captured["auth"] = request.headers["authorization"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"messages": [{"id": "wamid.OUT1"}]})

    gateway = MessagingGateway(session_factory, meta_backend(handler))
    result = await gateway.notify(booking_id, "booking_created")

    assert captured["url"] == "https://graph.test/v18.0/123/messages"
    assert captured["auth"] == "Bearer token"
    body = captured["body"]
    assert body["to"] == FUNDI_PHONE
    assert body["type"] == "interactive"
    buttons = [b["reply"]["id"] for b in body["interactive"]["action"]["buttons"]]
    assert buttons == [f"accept_{booking_id}", f"reject_{booking_id}"]
    assert "KSH 1,000" in body["interactive"]["body"]["text"]

    [row] = notifications_for(session_factory, booking_id)
    assert row.id == result.notification_id
    assert row.status == "sent"
    assert row.provider == "meta"
    assert row.provider_message_id == "wamid.OUT1"
    expires_at = row.expires_at.replace(tzinfo=timezone.utc)
    remaining = (expires_at - datetime.now(timezone.utc)).total_seconds()
    assert 3500 < remaining <= 3600


@pytest.mark.asyncio
async def test_booking_created_uses_text_commands_on_twilio(session_factory):
    booking_id = make_booking(session_factory)
    captured = {}

    def handler(request):
        captured["form"] = dict(httpx.QueryParams(request.content.decode()))
        return httpx.Response(201, json={"sid": "SM42"})

    gateway = MessagingGateway(session_factory, twilio_backend(handler))
    result = await gateway.notify(booking_id, "booking_created")

    suffix = booking_id[-8:].upper()
    assert captured["form"]["To"] == f"whatsapp:+{FUNDI_PHONE}"
    assert captured["form"]["From"] == "whatsapp:+14155238886"
    assert f'"ACCEPT {suffix}"' in captured["form"]["Body"]
    assert f'"REJECT {suffix}"' in captured["form"]["Body"]
    assert result.provider_message_id == "SM42"


@pytest.mark.asyncio
async def test_client_updates_go_to_the_client(session_factory, messaging_backend):
    booking_id = make_booking(session_factory, status="accepted")
    gateway = MessagingGateway(session_factory, messaging_backend)

    await gateway.notify(booking_id, "booking_accepted")

    [message] = messaging_backend.sent
    assert message.to == "254712000001"
    assert not message.buttons
    [row] = notifications_for(session_factory, booking_id)
    assert row.recipient_id == CLIENT_ID
    assert row.expires_at is None


@pytest.mark.asyncio
async def test_non_2xx_marks_row_failed(session_factory):
    booking_id = make_booking(session_factory)
    gateway = MessagingGateway(session_factory, meta_backend(lambda request: httpx.Response(400, json={"error": {}})))

    with pytest.raises(ProviderError):
        await gateway.notify(booking_id, "booking_created")

    [row] = notifications_for(session_factory, booking_id)
    assert row.status == "failed"
    assert "HTTP 400" in row.error_message


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, text="OK"),
        httpx.Response(200, content=b""),
        httpx.Response(200, json={"messages": ["wamid.BARE"]}),
        httpx.Response(200, json=[{"id": "wamid.LIST"}]),
    ],
)
async def test_unparsable_2xx_body_still_marks_row_sent(session_factory, response):
    booking_id = make_booking(session_factory)
    gateway = MessagingGateway(session_factory, meta_backend(lambda request: response))

    result = await gateway.notify(booking_id, "booking_created")

    assert result.provider_message_id is None
    [row] = notifications_for(session_factory, booking_id)
    assert row.status == "sent"
    assert row.expires_at is not None


@pytest.mark.asyncio
async def test_twilio_non_json_2xx_marks_row_sent(session_factory):
    booking_id = make_booking(session_factory)
    gateway = MessagingGateway(session_factory, twilio_backend(lambda request: httpx.Response(201, text="<ok/>")))

    await gateway.notify(booking_id, "booking_created")

    [row] = notifications_for(session_factory, booking_id)
    assert (row.status, row.provider, row.provider_message_id) == ("sent", "twilio", None)


@pytest.mark.asyncio
async def test_create_booking_survives_non_json_provider_reply(ctx, session_factory):
    ctx.messaging.backend = meta_backend(lambda request: httpx.Response(200, text="OK"))
    request = BookingCreateRequest(
        fundi_id=FUNDI_ID,
        service="Plumbing",
        scheduled_date=date(2026, 11, 2),
        scheduled_time="10:30",
        location="Kilimani",
        estimated_hours=2,
    )

    booking, notification_status = await ctx.coordinator.create_booking(Caller(CLIENT_ID, "client"), request)

    assert notification_status == "sent"
    assert [row.status for row in notifications_for(session_factory, booking.id)] == ["sent"]


@pytest.mark.asyncio
async def test_timeout_marks_row_failed(session_factory):
    booking_id = make_booking(session_factory)

    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    gateway = MessagingGateway(session_factory, meta_backend(handler))
    with pytest.raises(ProviderUnavailable):
        await gateway.notify(booking_id, "booking_created")
    [row] = notifications_for(session_factory, booking_id)
    assert row.status == "failed"


@pytest.mark.asyncio
async def test_no_backend_configured(session_factory):
    booking_id = make_booking(session_factory)
    gateway = MessagingGateway(session_factory, None)

    with pytest.raises(ProviderUnavailable, match="No WhatsApp service configured"):
        await gateway.notify(booking_id, "booking_created")
    [row] = notifications_for(session_factory, booking_id)
    assert row.status == "failed"


@pytest.mark.asyncio
async def test_recipient_without_phone(session_factory, messaging_backend):
    booking_id = make_booking(session_factory)
    with session_factory() as db:
        db.get(Profile, "fundi-1").phone = None
        db.commit()
    gateway = MessagingGateway(session_factory, messaging_backend)

    with pytest.raises(RecipientUnreachable):
        await gateway.notify(booking_id, "booking_created")
    assert messaging_backend.sent == []
    [row] = notifications_for(session_factory, booking_id)
    assert row.status == "failed"


def test_meta_preferred_over_twilio():
    config = CommonSettings(
        _env_file=None,
        whatsapp_access_token="t",
        whatsapp_phone_number_id="1",
        twilio_account_sid="AC",
        twilio_auth_token="x",
        twilio_whatsapp_number="+1",
    )
    assert isinstance(select_backend(config, httpx.AsyncClient()), MetaWhatsAppBackend)

    twilio_only = CommonSettings(_env_file=None, twilio_account_sid="AC", twilio_auth_token="x", twilio_whatsapp_number="+1")
    assert isinstance(select_backend(twilio_only, httpx.AsyncClient()), TwilioWhatsAppBackend)
    assert select_backend(CommonSettings(_env_file=None), httpx.AsyncClient()) is None


def test_meta_plain_text_payload():
    backend = meta_backend(lambda request: httpx.Response(200))
    payload = backend._payload(OutboundMessage(to="254700000000", body="hi"))
    assert payload == {"messaging_product": "whatsapp", "to": "254700000000", "type": "text", "text": {"body": "hi"}}
    payload = backend._payload(
        OutboundMessage(to="254700000000", body="hi", header="H", buttons=[ReplyButton(id="accept_1", title="Accept")])
    )
    assert payload["interactive"]["header"] == {"type": "text", "text": "H"}


def test_verify_subscription(session_factory):
    gateway = MessagingGateway(session_factory, None, verify_token="verify-me")
    assert gateway.verify_subscription("subscribe", "verify-me", "12345") == "12345"
    assert gateway.verify_subscription("subscribe", "wrong", "12345") is None
    assert MessagingGateway(session_factory, None).verify_subscription("subscribe", None, "1") is None
