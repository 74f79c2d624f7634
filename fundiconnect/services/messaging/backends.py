"""WhatsApp delivery backends.

Both backends expose the same `send` coroutine; which one is used is decided
once by `select_backend` when the service context is built.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import httpx

from fundiconnect.common.config import CommonSettings
from fundiconnect.common.errors import ProviderError, ProviderUnavailable
from fundiconnect.common.logging import logger
from fundiconnect.common.metrics import provider_latency_seconds


@dataclass
class ReplyButton:
    id: str
    title: str


@dataclass
class SentMessage:
    provider_message_id: str | None
    body: str


@dataclass
class OutboundMessage:
    to: str
    body: str
    header: str | None = None
    footer: str | None = None
    buttons: list[ReplyButton] = field(default_factory=list)


class MessagingBackend(ABC):
    """One chat provider able to deliver a rendered message to a phone number."""

    name: str = "unknown"
    supports_buttons: bool = False

    def __init__(self, client: httpx.AsyncClient, timeout: float, service_name: str) -> None:
        self.client = client
        self.timeout = timeout
        self.service_name = service_name

    async def _post(self, url: str, **kwargs) -> httpx.Response:
        """POST with the provider timeout; transport failures become ProviderUnavailable."""

        start = time.perf_counter()
        try:
            response = await self.client.post(url, timeout=self.timeout, **kwargs)
        except httpx.TimeoutException as exc:
            raise ProviderUnavailable(f"{self.name} timed out after {self.timeout}s") from exc
        except httpx.TransportError as exc:
            raise ProviderUnavailable(f"{self.name} unreachable: {exc}") from exc
        finally:
            provider_latency_seconds.labels(
                service=self.service_name, provider=self.name, operation="send"
            ).observe(time.perf_counter() - start)
        if response.status_code >= 300:
            logger.warning("%s send rejected status=%s body=%s", self.name, response.status_code, response.text[:300])
            raise ProviderError(f"{self.name} API error: HTTP {response.status_code}")
        return response

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        try:
            body = response.json()
        except ValueError:
            logger.warning("provider response is not JSON status=%s body=%s", response.status_code, response.text[:300])
            return {}
        return body if isinstance(body, dict) else {}

    @abstractmethod
    async def send(self, message: OutboundMessage) -> SentMessage:
        raise NotImplementedError


class MetaWhatsAppBackend(MessagingBackend):
    """WhatsApp Cloud API; supports interactive reply buttons."""

    name = "meta"
    supports_buttons = True

    def __init__(self, client, timeout, service_name, access_token: str, phone_number_id: str, api_url: str) -> None:
        super().__init__(client, timeout, service_name)
        self.access_token = access_token
        self.messages_url = f"{api_url.rstrip('/')}/{phone_number_id}/messages"

    def _payload(self, message: OutboundMessage) -> dict:
        if not message.buttons:
            return {
                "messaging_product": "whatsapp",
                "to": message.to,
                "type": "text",
                "text": {"body": message.body},
            }
        interactive = {
            "type": "button",
            "body": {"text": message.body},
            "action": {
                "buttons": [
                    {"type": "reply", "reply": {"id": button.id, "title": button.title}}
                    for button in message.buttons
                ]
            },
        }
        if message.header:
            interactive["header"] = {"type": "text", "text": message.header}
        if message.footer:
            interactive["footer"] = {"text": message.footer}
        return {
            "messaging_product": "whatsapp",
            "to": message.to,
            "type": "interactive",
            "interactive": interactive,
        }

    async def send(self, message: OutboundMessage) -> SentMessage:
        response = await self._post(
            self.messages_url,
            headers={"Authorization": f"Bearer {self.access_token}"},
            json=self._payload(message),
        )
        messages = self._json(response).get("messages") or [{}]
        first = messages[0] if isinstance(messages, list) and isinstance(messages[0], dict) else {}
        return SentMessage(provider_message_id=first.get("id"), body=message.body)


class TwilioWhatsAppBackend(MessagingBackend):
    """Twilio Messages API over the WhatsApp channel; plain text only."""

    name = "twilio"
    supports_buttons = False

    def __init__(self, client, timeout, service_name, account_sid: str, auth_token: str, from_number: str, api_url: str) -> None:
        super().__init__(client, timeout, service_name)
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.messages_url = f"{api_url.rstrip('/')}/Accounts/{account_sid}/Messages.json"

    @staticmethod
    def _address(phone: str) -> str:
        return f"whatsapp:+{phone.lstrip('+')}"

    async def send(self, message: OutboundMessage) -> SentMessage:
        response = await self._post(
            self.messages_url,
            auth=(self.account_sid, self.auth_token),
            data={
                "From": self._address(self.from_number),
                "To": self._address(message.to),
                "Body": message.body,
            },
        )
        return SentMessage(provider_message_id=self._json(response).get("sid"), body=message.body)


def select_backend(config: CommonSettings, client: httpx.AsyncClient) -> MessagingBackend | None:
    """Pick the primary backend when configured, else the secondary, else none."""

    timeout = config.provider_timeout_seconds
    if config.whatsapp_access_token and config.whatsapp_phone_number_id:
        return MetaWhatsAppBackend(
            client,
            timeout,
            config.service_name,
            access_token=config.whatsapp_access_token,
            phone_number_id=config.whatsapp_phone_number_id,
            api_url=config.whatsapp_api_url,
        )
    if config.twilio_account_sid and config.twilio_auth_token and config.twilio_whatsapp_number:
        return TwilioWhatsAppBackend(
            client,
            timeout,
            config.service_name,
            account_sid=config.twilio_account_sid,
            auth_token=config.twilio_auth_token,
            from_number=config.twilio_whatsapp_number,
            api_url=config.twilio_api_url,
        )
    return None
