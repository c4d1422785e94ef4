"""
Call queue processor.

Drains due queue items safely under concurrent invocation:

- items are claimed with ``FOR UPDATE SKIP LOCKED`` inside one transaction,
  so overlapping drains never see the same row
- daily calls stamp ``last_call_date`` with a conditional update *before*
  dialing, so a second worker holding a different item for the same
  customer backs off
- each item runs in its own savepoint; a failure in one item is recorded on
  that item and the batch continues
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager
from datetime import UTC, datetime, timedelta
from typing import Protocol

import psycopg

from app.config import Settings, settings
from app.db.helpers import DatabaseError
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger, log_call_event
from app.models.domain.call_domain import (
    BILLABLE_PAYMENT_STATES,
    BLOCKED_CALL_STATES,
    CallSpec,
    CallTarget,
    DailyCallReservation,
    ItemResult,
    PlaceCallResult,
    QueueItem,
)
from app.repositories.call_log_repository import CallLogRepository
from app.repositories.call_queue_repository import CallQueueRepository
from app.repositories.customer_context_repository import CustomerContextRepository
from app.repositories.customer_repository import CustomerRepository
from app.services.calls.call_prompts import build_call_spec
from app.services.calls.vapi_client import vapi_client
from app.services.scheduling.call_scheduler import CallScheduler, CallSchedulerError
from app.services.scheduling.time_math import due_window, ensure_utc, utc_today

logger = get_logger(__name__)

TransactionFactory = Callable[[], AbstractAsyncContextManager[psycopg.AsyncConnection]]
ContextSummaryLoader = Callable[[int], Awaitable[str]]


class CallProvider(Protocol):
    async def place_call(self, spec: CallSpec) -> PlaceCallResult: ...


class QueueProcessorError(Exception):
    """Raised when batch bookkeeping itself cannot be completed."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class DrainMetrics:
    """Metrics tracking for one drain cycle."""

    def __init__(self):
        self.reset()

    def reset(self):
        """Reset all metrics for a new drain."""
        self.start_time = datetime.now(UTC)
        self.processed = 0
        self.succeeded = 0
        self.skipped = 0
        self.retried = 0
        self.permanently_failed = 0
        self.expired = 0
        self.deferred = 0
        self.total_duration_seconds = 0.0
        self.errors: list[dict] = []

    def record(self, result: ItemResult):
        """Fold one item result into the counters."""
        self.processed += 1

        if result.outcome == "completed":
            self.succeeded += 1
        elif result.outcome == "skipped":
            self.skipped += 1
        elif result.outcome == "retrying":
            self.retried += 1
        else:
            self.permanently_failed += 1

        if result.error:
            self.errors.append(
                {
                    "queue_item_id": result.queue_item_id,
                    "customer_id": result.customer_id,
                    "outcome": result.outcome,
                    "error": result.error,
                }
            )

    @property
    def failed(self) -> int:
        return self.retried + self.permanently_failed

    def finalize(self):
        self.total_duration_seconds = (datetime.now(UTC) - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        return {
            "job_run": "call_queue_drain",
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "retried": self.retried,
            "permanently_failed": self.permanently_failed,
            "expired": self.expired,
            "deferred": self.deferred,
            "errors_count": len(self.errors),
        }


class _ItemAttempt:
    """Mutable per-item state that must survive a savepoint rollback."""

    __slots__ = ("item", "provider_call_id")

    def __init__(self, item: QueueItem):
        self.item = item
        self.provider_call_id: str | None = None


class QueueProcessor:
    """Claims due queue items, places the calls, and records each outcome."""

    def __init__(
        self,
        provider: CallProvider | None = None,
        *,
        config: Settings = settings,
        transaction_factory: TransactionFactory | None = None,
        customers: type[CustomerRepository] = CustomerRepository,
        queue: type[CallQueueRepository] = CallQueueRepository,
        call_logs: type[CallLogRepository] = CallLogRepository,
        scheduler: CallScheduler | None = None,
        context_summary: ContextSummaryLoader | None = None,
    ):
        self.provider = provider or vapi_client
        self.config = config
        self.customers = customers
        self.queue = queue
        self.call_logs = call_logs
        self.scheduler = scheduler or CallScheduler(config, customers=customers, queue=queue)
        self._transaction = transaction_factory or db_pool.transaction
        self._context_summary = context_summary or CustomerContextRepository.get_context_summary

        self.batch_size = config.QUEUE_BATCH_SIZE
        self.lookahead_minutes = config.DUE_WINDOW_LOOKAHEAD_MINUTES
        self.backoff_step_minutes = config.QUEUE_BACKOFF_STEP_MINUTES
        self.provider_timeout = config.PROVIDER_CALL_TIMEOUT_SECONDS
        self.breaker_threshold = config.CIRCUIT_BREAKER_THRESHOLD

    async def drain(self, now: datetime | None = None, *, deadline: float | None = None) -> dict:
        """
        Run one drain cycle.

        Args:
            now: reference instant (defaults to the current time)
            deadline: ``time.monotonic()`` value after which remaining claimed
                items are left untouched for the next cycle

        Returns:
            Dict of drain metrics
        """
        now = ensure_utc(now or datetime.now(UTC))
        metrics = DrainMetrics()
        window_start, window_end = due_window(now, self.lookahead_minutes)

        async with self._transaction() as conn:
            metrics.expired = await self.queue.expire_stale_items(window_start, connection=conn)

            items = await self.queue.claim_due_batch(
                conn,
                window_start=window_start,
                window_end=window_end,
                now=now,
                limit=self.batch_size,
            )
            if items:
                logger.info("Claimed queue items", count=len(items))

            for index, item in enumerate(items):
                if deadline is not None and time.monotonic() > deadline:
                    metrics.deferred = len(items) - index
                    logger.warning("Drain budget spent, deferring items", deferred=metrics.deferred)
                    break

                result = await self._process_item_safely(conn, item, now)
                metrics.record(result)

        metrics.finalize()
        summary = metrics.to_dict()
        if metrics.processed or metrics.expired:
            logger.info("Call queue drain completed", **summary)
        return summary

    async def _process_item_safely(
        self, conn: psycopg.AsyncConnection, item: QueueItem, now: datetime
    ) -> ItemResult:
        attempt = _ItemAttempt(item)
        try:
            async with conn.transaction():
                return await self._process_item(conn, attempt, now)

        except Exception as e:
            logger.error(
                "Queue item processing error",
                queue_item_id=item.id,
                customer_id=item.customer_id,
                call_kind=item.kind,
                provider_call_id=attempt.provider_call_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            try:
                if attempt.provider_call_id:
                    return await self._recover_after_dial(conn, attempt, now, str(e))
                return await self._handle_failure(
                    conn, item, None, f"Processing error: {e}", now
                )
            except DatabaseError as bookkeeping_error:
                raise QueueProcessorError(
                    f"Could not record outcome for queue item {item.id}: {bookkeeping_error}",
                    operation="process_item",
                    recoverable=False,
                ) from bookkeeping_error

    def _skip_reason(self, item: QueueItem, target: CallTarget | None, now: datetime) -> str | None:
        """Why this item should no longer be dialed, or None when it still should."""
        if target is None:
            return "customer not found"
        if target.call_state in BLOCKED_CALL_STATES:
            return f"calling {target.call_state}"
        if target.payment_state not in BILLABLE_PAYMENT_STATES or not target.phone_validated:
            return "customer no longer eligible"
        if item.kind == "welcome" and target.welcome_call_done:
            return "welcome call already done"
        if item.kind == "daily":
            if not target.welcome_call_done:
                return "welcome call not done yet"
            if target.last_call_date is not None and target.last_call_date >= utc_today(now):
                return "already called today"
        return None

    async def _process_item(
        self, conn: psycopg.AsyncConnection, attempt: _ItemAttempt, now: datetime
    ) -> ItemResult:
        item = attempt.item
        target = await self.customers.get_call_target(item.customer_id, connection=conn)

        skip_reason = self._skip_reason(item, target, now)
        reservation: DailyCallReservation | None = None
        if skip_reason is None and item.kind == "daily":
            reservation = await self.customers.reserve_daily_call(
                item.customer_id, utc_today(now), connection=conn
            )
            if reservation is None:
                skip_reason = "already called today"

        if skip_reason:
            await self.queue.mark_completed(
                item.id, note=f"Skipped: {skip_reason}", connection=conn
            )
            logger.info(
                "Queue item skipped",
                queue_item_id=item.id,
                customer_id=item.customer_id,
                call_kind=item.kind,
                reason=skip_reason,
            )
            return ItemResult(
                queue_item_id=item.id,
                customer_id=item.customer_id,
                kind=item.kind,
                outcome="skipped",
                reason=skip_reason,
                attempts=item.attempts,
            )

        await self.queue.mark_processing(item.id, connection=conn)

        spec = build_call_spec(
            target,
            item.kind,
            context_summary=await self._context_summary(target.id),
            now=now,
            config=self.config,
        )
        result = await self._place_call_with_timeout(spec)

        if result.accepted:
            attempt.provider_call_id = result.provider_call_id
            return await self._handle_accepted(conn, item, reservation, result.provider_call_id, now)

        return await self._handle_failure(
            conn, item, reservation, result.error or result.outcome, now
        )

    async def _place_call_with_timeout(self, spec: CallSpec) -> PlaceCallResult:
        """Bound the provider call; a timeout is an ordinary failure."""
        try:
            return await asyncio.wait_for(
                self.provider.place_call(spec), timeout=self.provider_timeout
            )
        except TimeoutError:
            return PlaceCallResult.transient(
                f"Provider did not respond within {self.provider_timeout}s"
            )
        except Exception as e:
            logger.error(
                "Call provider raised", customer_id=spec.customer_id, error=str(e)
            )
            return PlaceCallResult.transient(f"Provider error: {e}")

    async def _handle_accepted(
        self,
        conn: psycopg.AsyncConnection,
        item: QueueItem,
        reservation: DailyCallReservation | None,
        provider_call_id: str,
        now: datetime,
    ) -> ItemResult:
        await self.call_logs.log_call(
            item.customer_id,
            item.kind,
            "initiated",
            provider_call_id=provider_call_id,
            metadata={"queue_item_id": item.id, "attempt": item.attempts + 1},
            connection=conn,
        )

        if item.kind == "welcome":
            if not await self.customers.mark_welcome_done(item.customer_id, connection=conn):
                raise QueueProcessorError(
                    f"welcome_call_done did not persist for customer {item.customer_id}",
                    operation="mark_welcome_done",
                )
        else:
            call_date = reservation.call_date if reservation else utc_today(now)
            if await self.customers.stamp_last_call_date(
                item.customer_id, call_date, connection=conn
            ):
                logger.warning(
                    "last_call_date missing after dial, re-stamped",
                    customer_id=item.customer_id,
                    queue_item_id=item.id,
                )

        await self.customers.record_dial_success(
            item.customer_id, provider_call_id, connection=conn
        )
        await self.scheduler.schedule_next_daily_call(
            item.customer_id, now=now, after_call=True, connection=conn
        )
        await self.queue.mark_completed(
            item.id, provider_call_id=provider_call_id, connection=conn
        )

        log_call_event("dialed", item.customer_id, item.kind, call_id=provider_call_id)
        return ItemResult(
            queue_item_id=item.id,
            customer_id=item.customer_id,
            kind=item.kind,
            outcome="completed",
            provider_call_id=provider_call_id,
            attempts=item.attempts + 1,
        )

    async def _handle_failure(
        self,
        conn: psycopg.AsyncConnection,
        item: QueueItem,
        reservation: DailyCallReservation | None,
        error: str,
        now: datetime,
    ) -> ItemResult:
        attempts = item.attempts + 1

        await self.call_logs.log_call(
            item.customer_id,
            item.kind,
            "failed",
            error_message=error,
            metadata={"queue_item_id": item.id, "attempt": attempts},
            connection=conn,
        )

        if attempts < item.max_attempts:
            retry_at = now + timedelta(minutes=attempts * self.backoff_step_minutes)
            await self.queue.mark_retrying(
                item.id, attempts=attempts, retry_at=retry_at, error_message=error, connection=conn
            )
            if reservation is not None:
                await self.customers.release_daily_call(reservation, connection=conn)

            log_call_event(
                "retry_scheduled",
                item.customer_id,
                item.kind,
                level="warning",
                attempts=attempts,
                retry_at=retry_at.isoformat(),
                error=error,
            )
            return ItemResult(
                queue_item_id=item.id,
                customer_id=item.customer_id,
                kind=item.kind,
                outcome="retrying",
                error=error,
                attempts=attempts,
            )

        await self.queue.mark_failed(
            item.id, attempts=attempts, error_message=error, connection=conn
        )
        failures, call_state = await self.customers.record_permanent_failure(
            item.customer_id, self.breaker_threshold, connection=conn
        )

        if item.kind == "daily":
            # The day's attempt is spent: keep the stamp and move to tomorrow
            if reservation is None:
                await self.customers.stamp_last_call_date(
                    item.customer_id, utc_today(now), connection=conn
                )
            try:
                await self.scheduler.schedule_next_daily_call(
                    item.customer_id, now=now, after_call=True, connection=conn
                )
            except CallSchedulerError as e:
                logger.warning("Could not reschedule after failure", customer_id=item.customer_id, error=str(e))

        log_call_event(
            "failed",
            item.customer_id,
            item.kind,
            level="error",
            attempts=attempts,
            consecutive_failures=failures,
            call_state=call_state,
            error=error,
        )
        if call_state == "disabled":
            logger.warning(
                "Calling disabled by circuit breaker",
                customer_id=item.customer_id,
                consecutive_failures=failures,
            )

        return ItemResult(
            queue_item_id=item.id,
            customer_id=item.customer_id,
            kind=item.kind,
            outcome="failed",
            error=error,
            attempts=attempts,
        )

    async def _recover_after_dial(
        self, conn: psycopg.AsyncConnection, attempt: _ItemAttempt, now: datetime, error: str
    ) -> ItemResult:
        """
        The provider accepted the call but bookkeeping failed and the savepoint
        rolled back. Re-record the minimum that stops the customer from being
        dialed again.
        """
        item = attempt.item
        await self.queue.mark_completed(
            item.id,
            provider_call_id=attempt.provider_call_id,
            note=f"Dialed; bookkeeping error: {error}"[:500],
            connection=conn,
        )
        if item.kind == "welcome":
            await self.customers.mark_welcome_done(item.customer_id, connection=conn)
        else:
            await self.customers.stamp_last_call_date(
                item.customer_id, utc_today(now), connection=conn
            )

        return ItemResult(
            queue_item_id=item.id,
            customer_id=item.customer_id,
            kind=item.kind,
            outcome="completed",
            provider_call_id=attempt.provider_call_id,
            error=error,
            attempts=item.attempts + 1,
        )


# Singleton instance for application use
queue_processor = QueueProcessor()
