"""
Reconciles provider end-of-call reports with call logs and customer state.

Providers deliver webhooks at least once. Each event is handled under a
transaction-scoped advisory lock on its provider call id. A call log that
already holds an outcome marks the event as seen, so a redelivery never
counts the call twice; only a transcript meaningfully longer than the stored
one is applied again. When that later transcript shows a call first reported
as missed was in fact answered, the missed-call retry is withdrawn.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Literal

import psycopg

from app.config import Settings, settings
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger, log_call_event
from app.models.api.webhook_request import CallEndedEvent
from app.models.domain.call_domain import CallKind, CallLogEntry, CallTarget
from app.repositories.call_log_repository import CallLogRepository
from app.repositories.call_queue_repository import CallQueueRepository
from app.repositories.customer_repository import CustomerRepository
from app.services.calls.queue_processor import TransactionFactory
from app.services.scheduling.call_scheduler import CallScheduler, CallSchedulerError
from app.services.scheduling.time_math import ensure_utc, local_cutoff_utc, utc_today

logger = get_logger(__name__)

ReconcileStatus = Literal["ignored", "duplicate", "processed"]


@dataclass(slots=True)
class ReconcileResult:
    status: ReconcileStatus
    provider_call_id: str | None = None
    customer_id: int | None = None
    kind: CallKind | None = None
    answered: bool = False
    retry_at: datetime | None = None
    redelivery: bool = False
    became_answered: bool = False

    @property
    def should_enrich(self) -> bool:
        """
        Context extraction runs once per answered call: on its first report,
        or on the redelivery that first shows it was answered.
        """
        if self.status != "processed" or not self.answered:
            return False
        return not self.redelivery or self.became_answered


class WebhookReconciler:
    """Applies end-of-call reports exactly once per provider call id."""

    def __init__(
        self,
        config: Settings = settings,
        *,
        transaction_factory: TransactionFactory | None = None,
        customers: type[CustomerRepository] = CustomerRepository,
        queue: type[CallQueueRepository] = CallQueueRepository,
        call_logs: type[CallLogRepository] = CallLogRepository,
        scheduler: CallScheduler | None = None,
    ):
        self.config = config
        self.customers = customers
        self.queue = queue
        self.call_logs = call_logs
        self.scheduler = scheduler or CallScheduler(config, customers=customers, queue=queue)
        self._transaction = transaction_factory or db_pool.transaction

    def is_answered(self, duration_seconds: int, transcript: str | None) -> bool:
        """A real conversation, as opposed to voicemail or silence."""
        return (
            duration_seconds > self.config.ANSWERED_MIN_DURATION_SECONDS
            and len((transcript or "").strip()) > self.config.ANSWERED_MIN_TRANSCRIPT_CHARS
        )

    def _is_duplicate(self, existing: CallLogEntry | None, transcript: str | None) -> bool:
        if existing is None or not existing.is_finalized:
            return False
        improvement = len(transcript or "") - len(existing.transcript or "")
        return improvement <= self.config.TRANSCRIPT_IMPROVEMENT_CHARS

    async def _resolve_customer(
        self,
        provider_call_id: str,
        existing: CallLogEntry | None,
        conn: psycopg.AsyncConnection,
    ) -> tuple[CallTarget, CallKind] | None:
        if existing is not None:
            target = await self.customers.get_call_target(existing.customer_id, connection=conn)
            if target is not None:
                return target, existing.kind

        target = await self.customers.find_by_last_call_id(provider_call_id, connection=conn)
        if target is None:
            return None
        return target, "daily" if target.welcome_call_done else "welcome"

    async def reconcile(self, event: CallEndedEvent, now: datetime | None = None) -> ReconcileResult:
        """
        Apply one end-of-call report.

        Raises:
            DatabaseError: persistence failed; the route still acknowledges
        """
        provider_call_id = event.call_id
        if not event.is_end_of_call or not provider_call_id:
            return ReconcileResult(status="ignored", provider_call_id=provider_call_id)

        now = ensure_utc(now or datetime.now(UTC))
        transcript = event.transcript or None
        duration = event.duration_seconds

        async with self._transaction() as conn:
            await self.call_logs.lock_call(provider_call_id, conn)
            existing = await self.call_logs.get_latest_for_call(provider_call_id, connection=conn)

            if self._is_duplicate(existing, transcript):
                logger.info(
                    "Webhook already processed, skipping duplicate",
                    provider_call_id=provider_call_id,
                    existing_transcript_length=len(existing.transcript or ""),
                    new_transcript_length=len(transcript or ""),
                )
                return ReconcileResult(
                    status="duplicate",
                    provider_call_id=provider_call_id,
                    customer_id=existing.customer_id,
                    kind=existing.kind,
                )

            resolved = await self._resolve_customer(provider_call_id, existing, conn)
            if resolved is None:
                logger.warning("No customer found for call", provider_call_id=provider_call_id)
                return ReconcileResult(status="ignored", provider_call_id=provider_call_id)

            target, kind = resolved
            redelivery = existing is not None and existing.is_finalized
            answered = self.is_answered(duration, transcript)
            result = ReconcileResult(
                status="processed",
                provider_call_id=provider_call_id,
                customer_id=target.id,
                kind=kind,
                answered=answered,
                redelivery=redelivery,
            )

            await self.call_logs.update_outcome(
                provider_call_id,
                customer_id=target.id,
                kind=kind,
                status="completed" if answered else "no_answer",
                transcript=transcript,
                duration_seconds=duration or None,
                connection=conn,
            )
            await self.customers.record_call_outcome(
                target.id,
                provider_call_id=provider_call_id,
                transcript=transcript,
                duration_seconds=duration or None,
                increment_total=not redelivery,
                connection=conn,
            )

            if redelivery:
                result.became_answered = answered and existing.status != "completed"
                if not result.became_answered:
                    logger.info(
                        "Updated call with richer transcript",
                        provider_call_id=provider_call_id,
                        customer_id=target.id,
                        transcript_length=len(transcript or ""),
                    )
                    return result

                logger.info(
                    "Late transcript shows missed call was answered",
                    provider_call_id=provider_call_id,
                    customer_id=target.id,
                    previous_status=existing.status,
                )

            if kind == "daily":
                result.retry_at = await self._settle_daily_call(target, answered, now, conn)
            elif not answered:
                log_call_event(
                    "welcome_missed",
                    target.id,
                    kind,
                    call_id=provider_call_id,
                    level="warning",
                    duration_seconds=duration,
                )

        log_call_event(
            "reconciled",
            target.id,
            kind,
            call_id=provider_call_id,
            answered=answered,
            duration_seconds=duration,
            retry_at=result.retry_at.isoformat() if result.retry_at else None,
        )
        return result

    async def _settle_daily_call(
        self,
        target: CallTarget,
        answered: bool,
        now: datetime,
        conn: psycopg.AsyncConnection,
    ) -> datetime | None:
        """
        Missed before the evening cutoff: reopen today and queue a retry.
        Otherwise today's call counts as made and the schedule rolls forward.

        Returns the retry time when one was queued.
        """
        if not answered:
            retry_at = now + timedelta(hours=self.config.MISSED_CALL_RETRY_HOURS)
            cutoff = local_cutoff_utc(now, target.timezone, self.config.MISSED_CALL_CUTOFF_HOUR)

            if retry_at < cutoff:
                await self.customers.clear_last_call_date(target.id, connection=conn)
                await self.customers.set_next_call_at(target.id, retry_at, connection=conn)
                queued = await self.queue.enqueue(
                    target.id,
                    "daily",
                    retry_at,
                    max_attempts=self.config.QUEUE_MAX_ATTEMPTS,
                    connection=conn,
                )
                logger.info(
                    "Missed call retry scheduled",
                    customer_id=target.id,
                    retry_at=retry_at.isoformat(),
                    queued=queued,
                )
                return retry_at

            logger.info(
                "Missed call - too late to retry today",
                customer_id=target.id,
                retry_at=retry_at.isoformat(),
                cutoff=cutoff.isoformat(),
            )

        await self.customers.stamp_last_call_date(target.id, utc_today(now), connection=conn)
        cancelled = await self.queue.cancel_waiting(
            target.id, "daily", note="Superseded: today's call already happened", connection=conn
        )
        if cancelled:
            logger.info("Cancelled queued daily retry", customer_id=target.id, count=cancelled)
        try:
            await self.scheduler.schedule_next_daily_call(
                target.id, now=now, after_call=True, connection=conn
            )
        except CallSchedulerError as e:
            logger.warning("Could not roll schedule forward", customer_id=target.id, error=str(e))
        return None


# Singleton instance for application use
webhook_reconciler = WebhookReconciler()
