"""Process-wide dependencies, built once at startup and torn down on shutdown."""

from dataclasses import dataclass

import httpx

from fundiconnect.common.config import CommonSettings
from fundiconnect.common.db import make_engine, make_session_factory
from fundiconnect.common.events import KafkaBus
from fundiconnect.services.bookings.coordinator import BookingCoordinator
from fundiconnect.services.bookings.sweeper import ExpirationSweeper
from fundiconnect.services.messaging.backends import select_backend
from fundiconnect.services.messaging.gateway import MessagingGateway
from fundiconnect.services.payments.backends import build_backends
from fundiconnect.services.payments.gateway import PaymentGateway


@dataclass
class ServiceContext:
    config: CommonSettings
    session_factory: object
    http_client: httpx.AsyncClient
    kafka: KafkaBus
    messaging: MessagingGateway
    payments: PaymentGateway
    coordinator: BookingCoordinator
    sweeper: ExpirationSweeper

    async def aclose(self) -> None:
        await self.http_client.aclose()
        await self.kafka.close()


def build_context(
    config: CommonSettings,
    session_factory=None,
    http_client: httpx.AsyncClient | None = None,
) -> ServiceContext:
    """Wire gateways, coordinator and sweeper around one store and one HTTP client."""

    if session_factory is None:
        session_factory = make_session_factory(make_engine(config.postgres_dsn))
    if http_client is None:
        http_client = httpx.AsyncClient(timeout=config.provider_timeout_seconds)
    kafka = KafkaBus(config.kafka_bootstrap_servers)

    messaging = MessagingGateway(
        session_factory,
        select_backend(config, http_client),
        response_window_minutes=config.booking_response_window_minutes,
        country_code=config.default_country_code,
        service_name=config.service_name,
        verify_token=config.whatsapp_webhook_verify_token,
    )
    payments = PaymentGateway(build_backends(config, http_client), service_name=config.service_name)
    coordinator = BookingCoordinator(
        session_factory,
        messaging,
        payments,
        kafka=kafka,
        max_payment_attempts=config.max_payment_attempts,
        country_code=config.default_country_code,
        service_name=config.service_name,
        redelivery_lease_seconds=config.notification_claim_lease_seconds,
    )
    sweeper = ExpirationSweeper(
        session_factory,
        messaging,
        stale_payment_seconds=config.stale_payment_attempt_seconds,
        service_name=config.service_name,
    )
    return ServiceContext(
        config=config,
        session_factory=session_factory,
        http_client=http_client,
        kafka=kafka,
        messaging=messaging,
        payments=payments,
        coordinator=coordinator,
        sweeper=sweeper,
    )
