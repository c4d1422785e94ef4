"""
Call dispatch job.

One dispatch cycle enqueues every customer whose call is due and then drains
the call queue once. The same cycle backs the ``POST /calls/process`` cron
route and the long-running worker loop; overlapping cycles (two cron hits,
cron plus worker) are safe because all exclusion lives in the database.
"""

import asyncio
import time
from datetime import UTC, datetime, timedelta

from app.config import settings
from app.db.helpers import DatabaseError
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger
from app.services.calls.queue_processor import QueueProcessor, QueueProcessorError, queue_processor
from app.services.scheduling.call_scheduler import CallScheduler, call_scheduler

logger = get_logger(__name__)


class CallDispatchJobError(Exception):
    """Custom exception for call dispatch job operations."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


async def dispatch_due_calls(
    *,
    scheduler: CallScheduler | None = None,
    processor: QueueProcessor | None = None,
    budget_seconds: float | None = None,
    now: datetime | None = None,
) -> dict:
    """
    Enqueue due customers, then drain the queue once.

    Enqueueing stops when the execution budget is spent, and the drain is
    skipped entirely if nothing is left of it. A drain failure is reported in
    the result rather than raised, so queued work is still acknowledged.

    Raises:
        CallDispatchJobError: due customers could not be read
    """
    scheduler = scheduler or call_scheduler
    processor = processor or queue_processor
    budget = settings.CRON_EXECUTION_BUDGET_SECONDS if budget_seconds is None else budget_seconds

    start = time.monotonic()
    deadline = start + budget

    try:
        enqueued = await scheduler.enqueue_due_customers(now, deadline=deadline)
    except DatabaseError as e:
        raise CallDispatchJobError(
            f"Failed to enqueue due customers: {e}", operation="enqueue_due_customers"
        ) from e

    result = {
        "due": enqueued["due"],
        "queued": enqueued["queued"],
        "skipped": enqueued["due"] - enqueued["queued"],
        "enqueue_errors": enqueued["errors"],
        "processed": 0,
        "succeeded": 0,
        "failed": 0,
    }

    if time.monotonic() < deadline:
        try:
            drained = await processor.drain(now, deadline=deadline)
            result.update(
                {
                    "processed": drained["processed"],
                    "succeeded": drained["succeeded"],
                    "failed": drained["failed"],
                    "skipped_items": drained["skipped"],
                    "expired": drained["expired"],
                    "deferred": drained["deferred"],
                }
            )
        except (QueueProcessorError, DatabaseError) as e:
            logger.error("Error processing call queue", error=str(e), error_type=type(e).__name__)
            result["drain_error"] = str(e)
    else:
        logger.warning("Skipping queue processing due to time limit")

    result["execution_time_ms"] = round((time.monotonic() - start) * 1000, 1)
    return result


class CallDispatchJob:
    """
    Background job that runs dispatch cycles on a fixed interval.

    Used when no external cron is hitting ``/calls/process``.
    """

    def __init__(
        self,
        scheduler: CallScheduler | None = None,
        processor: QueueProcessor | None = None,
        interval_seconds: int | None = None,
    ):
        self.scheduler = scheduler or call_scheduler
        self.processor = processor or queue_processor
        self.interval_seconds = interval_seconds or settings.DISPATCH_INTERVAL_SECONDS
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.last_metrics: dict | None = None
        self.runs_completed = 0
        self.runs_failed = 0

    async def run_once(self) -> dict:
        """
        Run a single dispatch cycle.

        Returns:
            Dict: cycle counts, or ``{"skipped": True}`` when a cycle is
            already running in this process

        Raises:
            CallDispatchJobError: If the cycle fails due to system errors
        """
        if self.is_running:
            logger.warning("Call dispatch job already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        try:
            self.is_running = True
            started = datetime.now(UTC)

            metrics = await dispatch_due_calls(
                scheduler=self.scheduler,
                processor=self.processor,
                budget_seconds=self.interval_seconds,
            )

            metrics["job_run"] = "call_dispatch"
            metrics["start_time"] = started.isoformat()
            self.last_run_time = datetime.now(UTC)
            self.last_metrics = metrics
            self.runs_completed += 1

            logger.info("Call dispatch job completed", **metrics)
            return metrics

        except CallDispatchJobError:
            self.runs_failed += 1
            raise
        except Exception as e:
            self.runs_failed += 1
            logger.error("Call dispatch job failed", error=str(e), error_type=type(e).__name__)
            raise CallDispatchJobError(f"Call dispatch job failed: {e}", operation="run_once") from e

        finally:
            self.is_running = False

    def get_job_status(self) -> dict:
        return {
            "job_name": "call_dispatch",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "interval_seconds": self.interval_seconds,
            "runs_completed": self.runs_completed,
            "runs_failed": self.runs_failed,
            "last_run_metrics": self.last_metrics,
        }

    def health_check(self, now: datetime | None = None) -> dict:
        """Unhealthy when the last run is older than twice the interval."""
        now = now or datetime.now(UTC)
        overdue_threshold = timedelta(seconds=self.interval_seconds * 2)
        is_overdue = self.last_run_time is not None and (now - self.last_run_time) > overdue_threshold

        health_status = {
            "healthy": not is_overdue,
            "service": "call_dispatch_job",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "is_overdue": is_overdue,
            "configuration": {
                "interval_seconds": self.interval_seconds,
                "batch_size": settings.QUEUE_BATCH_SIZE,
                "max_attempts": settings.QUEUE_MAX_ATTEMPTS,
            },
        }

        if is_overdue:
            health_status["warning"] = (
                f"Job overdue by {(now - self.last_run_time).total_seconds() / 60:.1f} minutes"
            )

        return health_status


# Singleton instance for application use
call_dispatch_job = CallDispatchJob()


async def run_call_dispatch_job() -> dict:
    """Run a single dispatch cycle."""
    return await call_dispatch_job.run_once()


async def start_call_dispatch_scheduler() -> None:
    """
    Run dispatch cycles forever at the configured interval.

    Meant for a dedicated worker process (``python -m app.jobs.worker``).
    """
    logger.info(
        "Starting call dispatch scheduler", interval_seconds=call_dispatch_job.interval_seconds
    )
    if not db_pool.is_initialized:
        await db_pool.initialize()

    try:
        while True:
            try:
                await run_call_dispatch_job()
                await asyncio.sleep(call_dispatch_job.interval_seconds)
            except CallDispatchJobError as e:
                logger.error(
                    "Error in call dispatch scheduler",
                    error=str(e),
                    operation=e.operation,
                    recoverable=e.recoverable,
                )
                # Back off before retrying to avoid tight error loops
                await asyncio.sleep(60)
    finally:
        await db_pool.close()
