"""HTTP surface for the booking pipeline: caller actions, provider webhooks, ops.

Provider webhooks always answer with the provider's success shape; failures are
logged and never propagated, so providers do not amplify load with retries.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse, Response

from fundiconnect.common.config import CommonSettings, settings
from fundiconnect.common.errors import register_error_handlers
from fundiconnect.common.logging import booking_id_ctx, configure_logging, logger, trace_id_ctx
from fundiconnect.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from fundiconnect.common.startup import log_startup_config
from fundiconnect.common.tracing import instrument_app, setup_tracing
from fundiconnect.services.bookings.context import ServiceContext, build_context
from fundiconnect.services.bookings.coordinator import Caller
from fundiconnect.services.bookings.schemas import (
    BookingCreatedResponse,
    BookingCreateRequest,
    BookingResponse,
    CancelRequest,
    PaymentInitiateRequest,
    PaymentInitiationResponse,
    RefundRequest,
    SweepResponse,
)

CALLER_ROLES = {"client", "fundi", "admin"}
PAYSTACK_ACK = {"status": "success"}
MPESA_ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}
EMPTY_TWIML = "<?xml version=\"1.0\" encoding=\"UTF-8\"?><Response></Response>"


def get_ctx(request: Request) -> ServiceContext:
    return request.app.state.ctx


def require_api_key(request: Request, x_api_key: str | None = Header(default=None)) -> None:
    """Reject requests that do not provide the configured API key."""

    expected = request.app.state.ctx.config.api_key
    if expected and x_api_key != expected:
        raise HTTPException(status_code=401, detail="invalid API key")


def get_caller(
    x_caller_id: str | None = Header(default=None),
    x_caller_role: str | None = Header(default=None),
) -> Caller:
    """Identity set by the upstream auth proxy."""

    if not x_caller_id or x_caller_role not in CALLER_ROLES:
        raise HTTPException(status_code=401, detail="missing or invalid caller identity")
    return Caller(id=x_caller_id, role=x_caller_role)


def create_app(
    ctx: ServiceContext | None = None,
    config: CommonSettings | None = None,
    start_workers: bool | None = None,
) -> FastAPI:
    """Build the app; a prebuilt context is used as-is and not closed on shutdown."""

    config = ctx.config if ctx is not None else (config or settings)
    run_workers = config.run_background_workers if start_workers is None else start_workers
    owns_context = ctx is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run outbox publisher, expiration sweeper and redelivery loops with the app."""

        if app.state.ctx is None:
            app.state.ctx = build_context(config)
        service_ctx = app.state.ctx
        tasks = []
        if run_workers:
            tasks = [
                asyncio.create_task(service_ctx.coordinator.outbox_publisher(config.outbox_poll_seconds)),
                asyncio.create_task(service_ctx.sweeper.run_periodically(config.sweep_interval_seconds)),
                asyncio.create_task(
                    service_ctx.coordinator.redelivery_loop(
                        config.redelivery_interval_seconds, config.stale_notification_seconds
                    )
                ),
            ]
        yield
        for task in tasks:
            task.cancel()
        if owns_context:
            await service_ctx.aclose()

    app = FastAPI(title="FundiConnect Booking Pipeline", lifespan=lifespan)
    app.state.ctx = ctx
    instrument_app(app)
    register_error_handlers(app)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency, and bind a trace id for log correlation."""

        trace_id_ctx.set(request.headers.get("x-trace-id") or str(uuid4()))
        booking_id_ctx.set("")
        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(service=config.service_name, route=route, method=method).observe(elapsed)
            http_requests_total.labels(
                service=config.service_name, route=route, method=method, status_code=str(status_code)
            ).inc()

    # Caller actions

    @app.post("/bookings", status_code=201, response_model=BookingCreatedResponse, dependencies=[Depends(require_api_key)])
    async def create_booking(
        req: BookingCreateRequest,
        caller: Caller = Depends(get_caller),
        service_ctx: ServiceContext = Depends(get_ctx),
    ):
        """Create a pending booking and send the request to the fundi."""

        booking, notification_status = await service_ctx.coordinator.create_booking(caller, req)
        return BookingCreatedResponse(
            booking=BookingResponse.model_validate(booking), notification_status=notification_status
        )

    @app.get("/bookings/{booking_id}", response_model=BookingResponse, dependencies=[Depends(require_api_key)])
    def get_booking(
        booking_id: str, caller: Caller = Depends(get_caller), service_ctx: ServiceContext = Depends(get_ctx)
    ):
        return BookingResponse.model_validate(service_ctx.coordinator.get_booking(caller, booking_id))

    @app.post("/bookings/{booking_id}/complete", response_model=BookingResponse, dependencies=[Depends(require_api_key)])
    def complete_booking(
        booking_id: str, caller: Caller = Depends(get_caller), service_ctx: ServiceContext = Depends(get_ctx)
    ):
        return BookingResponse.model_validate(service_ctx.coordinator.complete(caller, booking_id))

    @app.post("/bookings/{booking_id}/cancel", response_model=BookingResponse, dependencies=[Depends(require_api_key)])
    def cancel_booking(
        booking_id: str,
        req: CancelRequest | None = None,
        caller: Caller = Depends(get_caller),
        service_ctx: ServiceContext = Depends(get_ctx),
    ):
        reason = req.reason if req else None
        return BookingResponse.model_validate(service_ctx.coordinator.cancel(caller, booking_id, reason))

    @app.post("/bookings/{booking_id}/refund", response_model=BookingResponse, dependencies=[Depends(require_api_key)])
    def refund_booking(
        booking_id: str,
        req: RefundRequest | None = None,
        caller: Caller = Depends(get_caller),
        service_ctx: ServiceContext = Depends(get_ctx),
    ):
        """Dispute-resolution trigger: paid -> refunded."""

        reason = req.reason if req else None
        return BookingResponse.model_validate(service_ctx.coordinator.refund(caller, booking_id, reason))

    @app.post(
        "/bookings/{booking_id}/payments",
        response_model=PaymentInitiationResponse,
        response_model_exclude_none=True,
        dependencies=[Depends(require_api_key)],
    )
    async def initiate_payment(
        booking_id: str,
        req: PaymentInitiateRequest,
        caller: Caller = Depends(get_caller),
        service_ctx: ServiceContext = Depends(get_ctx),
    ):
        """Start a payment attempt; failures report attempt count and whether a retry is possible."""

        return await service_ctx.coordinator.initiate_payment(caller, booking_id, req.payment_method, req.callback_url)

    # Internal triggers

    @app.post("/bookings/{booking_id}/payment-reminder", dependencies=[Depends(require_api_key)])
    async def payment_reminder(booking_id: str, service_ctx: ServiceContext = Depends(get_ctx)):
        return await service_ctx.coordinator.send_payment_reminder(booking_id)

    @app.post("/internal/sweeps/expired", response_model=SweepResponse, dependencies=[Depends(require_api_key)])
    async def sweep_expired(service_ctx: ServiceContext = Depends(get_ctx)):
        """Run one expiration sweep; safe to call from an external scheduler."""

        report = await service_ctx.sweeper.sweep_expired()
        return SweepResponse(
            processed=report.processed,
            total_found=report.total_found,
            released_payments=report.released_payments,
            results=report.results,
        )

    # Messaging webhooks

    @app.get("/webhooks/whatsapp")
    def verify_whatsapp(
        mode: str | None = Query(default=None, alias="hub.mode"),
        token: str | None = Query(default=None, alias="hub.verify_token"),
        challenge: str | None = Query(default=None, alias="hub.challenge"),
        service_ctx: ServiceContext = Depends(get_ctx),
    ):
        echoed = service_ctx.messaging.verify_subscription(mode, token, challenge)
        if echoed is None:
            return PlainTextResponse("Forbidden", status_code=403)
        return PlainTextResponse(echoed)

    async def _apply_replies(service_ctx: ServiceContext, messages, background_tasks: BackgroundTasks) -> None:
        """Apply replies now; client notifications go out after the provider is acknowledged."""

        for message in messages:
            try:
                outcome = await service_ctx.coordinator.handle_inbound(message, deliver=False)
            except Exception as exc:
                logger.exception("inbound reply processing failed message_id=%s error=%s", message.message_id, exc)
                continue
            if outcome.notification_id:
                background_tasks.add_task(service_ctx.coordinator.deliver, outcome.notification_id)

    @app.post("/webhooks/whatsapp")
    async def whatsapp_inbound(
        request: Request, background_tasks: BackgroundTasks, service_ctx: ServiceContext = Depends(get_ctx)
    ):
        try:
            payload = await request.json()
        except ValueError:
            logger.warning("whatsapp webhook body is not JSON")
            return {"status": "ok"}
        await _apply_replies(service_ctx, service_ctx.messaging.parse_inbound_meta(payload), background_tasks)
        return {"status": "ok"}

    @app.post("/webhooks/twilio")
    async def twilio_inbound(
        request: Request, background_tasks: BackgroundTasks, service_ctx: ServiceContext = Depends(get_ctx)
    ):
        form = await request.form()
        await _apply_replies(service_ctx, service_ctx.messaging.parse_inbound_twilio(dict(form)), background_tasks)
        return Response(content=EMPTY_TWIML, media_type="application/xml")

    # Payment webhooks

    async def _apply_payment_webhook(request: Request, service_ctx: ServiceContext, provider: str) -> None:
        raw_body = await request.body()
        try:
            payload = json.loads(raw_body)
        except ValueError:
            logger.warning("payment webhook body is not JSON provider=%s", provider)
            return
        try:
            result = service_ctx.coordinator.handle_payment_webhook(provider, payload, raw_body, request.headers)
            logger.info("payment webhook processed provider=%s result=%s", provider, result)
        except Exception as exc:
            logger.exception("payment webhook processing failed provider=%s error=%s", provider, exc)

    @app.post("/webhooks/paystack")
    async def paystack_webhook(request: Request, service_ctx: ServiceContext = Depends(get_ctx)):
        await _apply_payment_webhook(request, service_ctx, "paystack")
        return PAYSTACK_ACK

    @app.post("/webhooks/mpesa")
    async def mpesa_webhook(request: Request, service_ctx: ServiceContext = Depends(get_ctx)):
        await _apply_payment_webhook(request, service_ctx, "mpesa")
        return MPESA_ACK

    # Ops

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True}

    return app


configure_logging()
setup_tracing(settings)
log_startup_config(
    settings,
    [
        "service_name",
        "postgres_dsn",
        "kafka_bootstrap_servers",
        "public_base_url",
        "booking_response_window_minutes",
        "max_payment_attempts",
        "run_background_workers",
    ],
)
app = create_app()
