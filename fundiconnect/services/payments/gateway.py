"""Payment gateway: one `initiate` / `handle_webhook` surface over both rails."""

from typing import Any, Mapping

from fundiconnect.common.errors import ConfigurationMissing, ValidationFailed
from fundiconnect.common.logging import logger
from fundiconnect.common.metrics import payment_webhooks_total
from fundiconnect.common.tracing import tracer
from fundiconnect.services.bookings.models import Booking
from fundiconnect.services.payments.backends import InitiationResult, PaymentBackend, WebhookOutcome

OFFLINE_METHODS = {"cash"}


class PaymentGateway:
    def __init__(self, backends: dict[str, PaymentBackend], service_name: str = "booking-pipeline") -> None:
        self.backends = backends
        self.service_name = service_name

    def backend_for(self, method: str) -> PaymentBackend:
        """Resolve a configured backend or raise before anything is recorded."""

        if method in OFFLINE_METHODS:
            raise ValidationFailed(f"{method} payments are settled offline", payment_method=method)
        backend = self.backends.get(method)
        if backend is None:
            raise ValidationFailed(f"unsupported payment method: {method}", payment_method=method)
        if not backend.configured:
            raise ConfigurationMissing(f"{method} payments are not configured", payment_method=method)
        return backend

    async def initiate(
        self, booking: Booking, method: str, attempt_number: int, callback_url: str | None = None
    ) -> InitiationResult:
        backend = self.backend_for(method)
        with tracer.start_as_current_span("payments.initiate") as span:
            span.set_attribute("payment.method", method)
            span.set_attribute("payment.attempt_number", attempt_number)
            result = await backend.initiate(booking, attempt_number, callback_url)
        logger.info(
            "payment initiated booking_id=%s method=%s attempt=%s reference=%s",
            booking.id,
            method,
            attempt_number,
            result.reference,
        )
        return result

    def handle_webhook(
        self, provider: str, payload: Any, raw_body: bytes = b"", headers: Mapping[str, str] | None = None
    ) -> WebhookOutcome | None:
        """Normalize one provider callback; `None` means discard."""

        backend = self.backends.get(provider)
        if backend is None:
            logger.error("webhook for unknown payment provider=%s", provider)
            return None
        if not backend.verify_signature(raw_body, headers or {}):
            payment_webhooks_total.labels(service=self.service_name, provider=provider, outcome="bad_signature").inc()
            logger.warning("payment webhook signature rejected provider=%s", provider)
            return None
        outcome = backend.parse_webhook(payload)
        payment_webhooks_total.labels(
            service=self.service_name, provider=provider, outcome=outcome.outcome if outcome else "ignored"
        ).inc()
        return outcome
