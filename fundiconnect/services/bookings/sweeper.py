"""Expiration sweeper.

Ages out booking requests the fundi never answered. Each candidate is handled
in its own transaction so one bad row cannot abort the rest of the sweep, and
the `pending -> expired` write is guarded so a reply that lands first wins.
"""

import asyncio
from dataclasses import dataclass, field

from fundiconnect.common.errors import PipelineError
from fundiconnect.common.logging import booking_id_ctx, logger, trace_id_ctx
from fundiconnect.common.metrics import sweep_errors_total, sweep_expired_total
from fundiconnect.common.outbox import enqueue_event
from fundiconnect.services.bookings import store
from fundiconnect.services.bookings.models import OutboxEvent
from fundiconnect.services.messaging import ledger as notifications
from fundiconnect.services.messaging.gateway import MessagingGateway
from fundiconnect.services.payments import ledger as attempts


@dataclass
class SweepReport:
    processed: int = 0
    total_found: int = 0
    results: list[dict] = field(default_factory=list)
    released_payments: int = 0


class ExpirationSweeper:
    def __init__(
        self,
        session_factory,
        messaging: MessagingGateway,
        stale_payment_seconds: int = 300,
        service_name: str = "booking-pipeline",
    ) -> None:
        self.session_factory = session_factory
        self.messaging = messaging
        self.stale_payment_seconds = stale_payment_seconds
        self.service_name = service_name

    def _find_candidates(self) -> list[tuple[str, str]]:
        with self.session_factory() as db:
            return notifications.find_expirable(db)

    def _expire_one(self, notification_id: str, booking_id: str) -> str | None:
        """Expire one booking; returns the client notification id when it won the race."""

        with self.session_factory() as db:
            booking = store.get(db, booking_id)
            if booking is None or not store.compare_and_swap_status(
                db, booking_id, "pending", "expired", reason="response_window_elapsed"
            ):
                db.commit()
                return None
            notifications.mark_expired(db, notification_id)
            expired_notice = notifications.record(db, booking_id, booking.client_id, "booking_expired")
            enqueue_event(
                db,
                OutboxEvent,
                booking_id,
                "booking.expired",
                {"client_id": booking.client_id, "fundi_id": booking.fundi_id, "notification_id": notification_id},
                trace_id=trace_id_ctx.get(),
            )
            db.commit()
            return expired_notice.id

    async def _expire_candidates(self, candidates: list[tuple[str, str]]) -> SweepReport:
        report = SweepReport(total_found=len(candidates))
        for notification_id, booking_id in candidates:
            booking_id_ctx.set(booking_id)
            entry = {"booking_id": booking_id, "notification_id": notification_id}
            try:
                notice_id = self._expire_one(notification_id, booking_id)
            except Exception as exc:
                sweep_errors_total.labels(service=self.service_name).inc()
                logger.exception("sweep item failed booking_id=%s error=%s", booking_id, exc)
                report.results.append({**entry, "status": "error", "error": str(exc)})
                continue
            if notice_id is None:
                report.results.append({**entry, "status": "skipped"})
                continue

            report.processed += 1
            sweep_expired_total.labels(service=self.service_name).inc()
            entry["status"] = "expired"
            try:
                await self.messaging.send(notice_id)
            except PipelineError as exc:
                entry["notification_error"] = exc.code
            report.results.append(entry)
        booking_id_ctx.set("")
        return report

    def release_stale_payments(self) -> int:
        """Fail attempts that never finalized and let the booking start a new one."""

        released = 0
        with self.session_factory() as db:
            stale = attempts.find_stale(db, self.stale_payment_seconds)
        for attempt in stale:
            with self.session_factory() as db:
                if not attempts.finalize(db, attempt.id, "failed", error_message="No provider response before timeout"):
                    continue
                store.compare_and_swap_payment_status(
                    db, attempt.booking_id, "processing", "pending", reason="stale_attempt_released"
                )
                db.commit()
            released += 1
            logger.warning("stale payment attempt released booking_id=%s attempt=%s", attempt.booking_id, attempt.attempt_number)
        return released

    async def sweep_expired(self) -> SweepReport:
        """One idempotent sweep over overdue booking requests."""

        candidates = self._find_candidates()
        report = await self._expire_candidates(candidates)
        report.released_payments = self.release_stale_payments()
        logger.info(
            "sweep finished found=%s expired=%s released_payments=%s",
            report.total_found,
            report.processed,
            report.released_payments,
        )
        return report

    async def run_periodically(self, interval_seconds: float) -> None:
        while True:
            try:
                await self.sweep_expired()
            except Exception as exc:
                logger.exception("expiration sweep failed: %s", exc)
            await asyncio.sleep(interval_seconds)
