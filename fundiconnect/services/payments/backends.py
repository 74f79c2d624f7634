"""Payment rails behind one interface.

Paystack is a redirect checkout, M-Pesa is an STK push prompt on the payer's
phone. The coordinator only ever sees `initiate` and `parse_webhook`.
"""

import base64
import hashlib
import hmac
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping
from uuid import uuid4

import httpx

from fundiconnect.common.config import CommonSettings
from fundiconnect.common.errors import ConfigurationMissing, ProviderRejected, ProviderUnavailable
from fundiconnect.common.logging import logger
from fundiconnect.common.metrics import provider_latency_seconds
from fundiconnect.common.phone import normalize_phone
from fundiconnect.services.bookings.models import Booking


@dataclass
class InitiationResult:
    payment_url: str
    reference: str


@dataclass
class WebhookOutcome:
    provider: str
    reference: str
    outcome: str  # "paid" or "failed"
    booking_hint: str | None = None
    detail: dict | None = None


class PaymentBackend(ABC):
    method: str = "unknown"

    def __init__(self, client: httpx.AsyncClient, timeout: float, service_name: str) -> None:
        self.client = client
        self.timeout = timeout
        self.service_name = service_name

    @property
    @abstractmethod
    def configured(self) -> bool:
        raise NotImplementedError

    async def _request(self, method: str, url: str, operation: str, **kwargs) -> httpx.Response:
        """Issue one provider call with timeout and error classification."""

        start = time.perf_counter()
        try:
            response = await self.client.request(method, url, timeout=self.timeout, **kwargs)
        except httpx.TimeoutException as exc:
            raise ProviderUnavailable(f"{self.method} timed out after {self.timeout}s") from exc
        except httpx.TransportError as exc:
            raise ProviderUnavailable(f"{self.method} unreachable: {exc}") from exc
        finally:
            provider_latency_seconds.labels(
                service=self.service_name, provider=self.method, operation=operation
            ).observe(time.perf_counter() - start)
        if response.status_code >= 500:
            raise ProviderUnavailable(f"{self.method} returned HTTP {response.status_code}")
        return response

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    @abstractmethod
    async def initiate(
        self, booking: Booking, attempt_number: int, callback_url: str | None
    ) -> InitiationResult:
        raise NotImplementedError

    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        return True

    @abstractmethod
    def parse_webhook(self, payload: Any) -> WebhookOutcome | None:
        raise NotImplementedError


class PaystackBackend(PaymentBackend):
    method = "paystack"

    def __init__(self, client, timeout, service_name, secret_key: str | None, api_url: str, default_callback_url: str) -> None:
        super().__init__(client, timeout, service_name)
        self.secret_key = secret_key
        self.api_url = api_url.rstrip("/")
        self.default_callback_url = default_callback_url

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    @staticmethod
    def make_reference(booking_id: str, attempt_number: int) -> str:
        return f"fundi_{booking_id}_{attempt_number}_{uuid4().hex[:8]}"

    async def initiate(self, booking, attempt_number, callback_url):
        if not self.configured:
            raise ConfigurationMissing("Paystack configuration missing")
        reference = self.make_reference(booking.id, attempt_number)
        email = booking.client.email or f"client_{booking.client_id}@fundiconnect.com"
        response = await self._request(
            "POST",
            f"{self.api_url}/transaction/initialize",
            "initiate",
            headers={"Authorization": f"Bearer {self.secret_key}"},
            json={
                "email": email,
                # Paystack amounts are in the minor unit.
                "amount": booking.total_amount * 100,
                "reference": reference,
                "callback_url": callback_url or self.default_callback_url,
                "metadata": {
                    "booking_id": booking.id,
                    "client_id": booking.client_id,
                    "fundi_id": booking.fundi_id,
                    "service": booking.service,
                },
            },
        )
        result = self._json(response)
        data = result.get("data") or {}
        if response.status_code >= 400 or not result.get("status") or not data.get("authorization_url"):
            raise ProviderRejected(result.get("message") or "Paystack payment initialization failed")
        return InitiationResult(payment_url=data["authorization_url"], reference=data.get("reference") or reference)

    def verify_signature(self, raw_body, headers):
        signature = headers.get("x-paystack-signature")
        if not self.secret_key or not signature:
            return False
        expected = hmac.new(self.secret_key.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected, signature)

    def parse_webhook(self, payload):
        if not isinstance(payload, Mapping):
            return None
        event = payload.get("event")
        data = payload.get("data") or {}
        if event == "charge.success":
            outcome = "paid"
        elif event == "charge.failed":
            outcome = "failed"
        else:
            logger.info("paystack event ignored event=%s", event)
            return None
        reference = data.get("reference")
        metadata = data.get("metadata") or {}
        if not reference:
            logger.error("paystack webhook without reference event=%s", event)
            return None
        return WebhookOutcome(
            provider=self.method,
            reference=reference,
            outcome=outcome,
            booking_hint=metadata.get("booking_id") if isinstance(metadata, Mapping) else None,
            detail={"gateway_response": data.get("gateway_response"), "channel": data.get("channel")},
        )


class MpesaBackend(PaymentBackend):
    method = "mpesa"

    def __init__(
        self,
        client,
        timeout,
        service_name,
        consumer_key: str | None,
        consumer_secret: str | None,
        shortcode: str | None,
        passkey: str | None,
        api_url: str,
        default_callback_url: str,
        country_code: str = "254",
    ) -> None:
        super().__init__(client, timeout, service_name)
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.shortcode = shortcode
        self.passkey = passkey
        self.api_url = api_url.rstrip("/")
        self.default_callback_url = default_callback_url
        self.country_code = country_code

    @property
    def configured(self) -> bool:
        return bool(self.consumer_key and self.consumer_secret and self.shortcode and self.passkey)

    async def _access_token(self) -> str:
        response = await self._request(
            "GET",
            f"{self.api_url}/oauth/v1/generate",
            "oauth",
            params={"grant_type": "client_credentials"},
            auth=(self.consumer_key, self.consumer_secret),
        )
        token = self._json(response).get("access_token")
        if response.status_code >= 400 or not token:
            raise ProviderRejected("Failed to get M-Pesa access token")
        return token

    def _password(self, timestamp: str) -> str:
        return base64.b64encode(f"{self.shortcode}{self.passkey}{timestamp}".encode("utf-8")).decode("utf-8")

    async def initiate(self, booking, attempt_number, callback_url):
        if not self.configured:
            raise ConfigurationMissing("M-Pesa configuration missing")
        payer = normalize_phone(booking.client.phone, self.country_code)
        if not payer:
            raise ProviderRejected("Client phone number is required for M-Pesa payments")

        token = await self._access_token()
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        account_reference = f"FUNDI{booking.short_ref}{attempt_number}"
        response = await self._request(
            "POST",
            f"{self.api_url}/mpesa/stkpush/v1/processrequest",
            "initiate",
            headers={"Authorization": f"Bearer {token}"},
            json={
                "BusinessShortCode": self.shortcode,
                "Password": self._password(timestamp),
                "Timestamp": timestamp,
                "TransactionType": "CustomerPayBillOnline",
                "Amount": booking.total_amount,
                "PartyA": payer,
                "PartyB": self.shortcode,
                "PhoneNumber": payer,
                "CallBackURL": callback_url or self.default_callback_url,
                "AccountReference": account_reference,
                "TransactionDesc": f"Payment for {booking.service} - FundiConnect",
            },
        )
        result = self._json(response)
        checkout_id = result.get("CheckoutRequestID")
        if response.status_code >= 400 or str(result.get("ResponseCode")) != "0" or not checkout_id:
            raise ProviderRejected(
                result.get("ResponseDescription") or result.get("errorMessage") or "M-Pesa STK push failed"
            )
        return InitiationResult(
            payment_url=f"mpesa://pay?phone={payer}&amount={booking.total_amount}&reference={account_reference}",
            reference=checkout_id,
        )

    def parse_webhook(self, payload):
        if not isinstance(payload, Mapping):
            return None
        callback = (payload.get("Body") or {}).get("stkCallback")
        if not isinstance(callback, Mapping):
            logger.info("mpesa webhook without stkCallback ignored")
            return None
        reference = callback.get("CheckoutRequestID")
        if not reference:
            logger.error("mpesa callback without CheckoutRequestID")
            return None
        items = (callback.get("CallbackMetadata") or {}).get("Item") or []
        receipt = next((item.get("Value") for item in items if item.get("Name") == "MpesaReceiptNumber"), None)
        outcome = "paid" if str(callback.get("ResultCode")) == "0" else "failed"
        return WebhookOutcome(
            provider=self.method,
            reference=reference,
            outcome=outcome,
            detail={"receipt": receipt, "result_desc": callback.get("ResultDesc")},
        )


def build_backends(config: CommonSettings, client: httpx.AsyncClient) -> dict[str, PaymentBackend]:
    """Both rails are always registered; unconfigured ones raise ConfigurationMissing."""

    timeout = config.provider_timeout_seconds
    base = config.public_base_url.rstrip("/")
    return {
        "paystack": PaystackBackend(
            client,
            timeout,
            config.service_name,
            secret_key=config.paystack_secret_key,
            api_url=config.paystack_api_url,
            default_callback_url=f"{base}/webhooks/paystack",
        ),
        "mpesa": MpesaBackend(
            client,
            timeout,
            config.service_name,
            consumer_key=config.mpesa_consumer_key,
            consumer_secret=config.mpesa_consumer_secret,
            shortcode=config.mpesa_shortcode,
            passkey=config.mpesa_passkey,
            api_url=config.mpesa_api_url,
            default_callback_url=f"{base}/webhooks/mpesa",
            country_code=config.default_country_code,
        ),
    }
