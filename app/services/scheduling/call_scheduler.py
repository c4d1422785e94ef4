"""
Call scheduling policy.

Decides when each customer's next daily call happens and which customers
are due right now, then feeds the due ones into the call queue.
"""

import time
from datetime import UTC, datetime, timedelta

import psycopg

from app.config import Settings, settings
from app.db.helpers import DatabaseError
from app.infrastructure.observability.logging import get_logger
from app.models.domain.call_domain import DueCandidate, DueCustomer
from app.repositories.call_queue_repository import CallQueueRepository
from app.repositories.customer_repository import CustomerRepository
from app.services.scheduling.time_math import (
    due_window,
    ensure_utc,
    next_occurrence_utc,
    normalize_timezone,
    parse_loose_time,
    utc_today,
)

logger = get_logger(__name__)


class CallSchedulerError(Exception):
    """Custom exception for scheduling operations."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class CallScheduler:
    """
    Owns the due-window policy and the post-call rescheduling policy.

    Due window: [start of today UTC, now + lookahead]. The lower bound picks
    up calls missed earlier today (downtime, slow drains) without reviving
    schedules from prior days; the upper bound keeps calls from firing too
    early.
    """

    def __init__(
        self,
        config: Settings = settings,
        *,
        customers: type[CustomerRepository] = CustomerRepository,
        queue: type[CallQueueRepository] = CallQueueRepository,
    ):
        self.customers = customers
        self.queue = queue
        self.lookahead_minutes = config.DUE_WINDOW_LOOKAHEAD_MINUTES
        self.welcome_grace_minutes = config.WELCOME_GRACE_MINUTES
        self.due_limit = config.DUE_CUSTOMER_LIMIT
        self.enqueue_batch_limit = config.ENQUEUE_BATCH_LIMIT
        self.max_attempts = config.QUEUE_MAX_ATTEMPTS
        self.default_time = (config.DEFAULT_CALL_HOUR, config.DEFAULT_CALL_MINUTE)

    async def _resolve_preferred_time(
        self,
        customer_id: int,
        hour: int | None,
        minute: int | None,
        description: str | None,
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> tuple[int, int]:
        """
        Stored hour/minute, else the parsed legacy description, else the
        default. A derived value is written back so this runs once.
        """
        if hour is not None and 0 <= hour <= 23:
            if minute is None or not 0 <= minute <= 59:
                minute = 0
            return hour, minute

        parsed = parse_loose_time(description)
        resolved = parsed or self.default_time
        logger.info(
            "Derived preferred call time",
            customer_id=customer_id,
            source="description" if parsed else "default",
            hour=resolved[0],
            minute=resolved[1],
        )
        await self.customers.set_preferred_time(
            customer_id, resolved[0], resolved[1], connection=connection
        )
        return resolved

    async def schedule_next_daily_call(
        self,
        customer_id: int,
        *,
        now: datetime | None = None,
        after_call: bool = False,
        connection: psycopg.AsyncConnection | None = None,
    ) -> datetime:
        """
        Compute and store ``next_call_at`` for one customer.

        Until today's call is made, the next occurrence is taken from ``now``,
        so a preferred time later today (even inside the due window) is kept.
        Once the call is made (``after_call``, or ``last_call_date`` already
        reads today) it is taken after ``now + lookahead`` instead, so the
        customer does not turn due again inside the current window.

        Raises:
            CallSchedulerError: customer does not exist
            DatabaseError: persistence failed
        """
        now = ensure_utc(now or datetime.now(UTC))
        schedule = await self.customers.get_schedule(customer_id, connection=connection)
        if schedule is None:
            raise CallSchedulerError(
                f"Customer {customer_id} not found",
                operation="schedule_next_daily_call",
                recoverable=False,
            )

        hour, minute = await self._resolve_preferred_time(
            customer_id,
            schedule.preferred_hour,
            schedule.preferred_minute,
            schedule.call_time_description,
            connection=connection,
        )
        timezone = normalize_timezone(schedule.timezone)
        called_today = (
            schedule.last_call_date is not None and schedule.last_call_date >= utc_today(now)
        )
        reference = now
        if after_call or called_today:
            reference = now + timedelta(minutes=self.lookahead_minutes)
        next_call_at = next_occurrence_utc(hour, minute, timezone, reference)

        await self.customers.set_next_call_at(customer_id, next_call_at, connection=connection)

        logger.info(
            "Next daily call scheduled",
            customer_id=customer_id,
            next_call_at=next_call_at.isoformat(),
            timezone=timezone,
            hour=hour,
            minute=minute,
            after_call=after_call or called_today,
        )
        return next_call_at

    async def _resolve_fallback(
        self, candidate: DueCandidate, window_start: datetime
    ) -> datetime | None:
        """
        On-the-fly occurrence for a daily customer with no usable schedule.

        Taken from the window start, so a time earlier today that was never
        called still counts as due.
        """
        hour = candidate.preferred_hour
        minute = candidate.preferred_minute or 0
        if hour is None or not 0 <= hour <= 23 or not 0 <= minute <= 59:
            logger.warning(
                "Skipping customer with unusable preferred time",
                customer_id=candidate.customer_id,
                hour=hour,
                minute=minute,
            )
            return None

        scheduled_for = next_occurrence_utc(
            hour, minute, candidate.timezone, window_start - timedelta(seconds=1)
        )

        try:
            await self.customers.set_next_call_at(candidate.customer_id, scheduled_for)
        except DatabaseError as e:
            logger.warning(
                "Could not persist computed schedule",
                customer_id=candidate.customer_id,
                error=str(e),
            )

        return scheduled_for

    async def get_due_customers(self, now: datetime | None = None) -> list[DueCustomer]:
        """
        Customers that should be called now, ordered by scheduled time.

        Eligible when billable, phone validated, not disabled or paused, and
        either waiting for their welcome call past the grace period or
        holding a daily schedule inside the due window with no call today.
        """
        now = ensure_utc(now or datetime.now(UTC))
        window_start, window_end = due_window(now, self.lookahead_minutes)

        candidates = await self.customers.find_due_candidates(
            window_start=window_start,
            window_end=window_end,
            welcome_cutoff=now - timedelta(minutes=self.welcome_grace_minutes),
            welcome_grace_minutes=self.welcome_grace_minutes,
            today=utc_today(now),
            limit=self.due_limit,
        )

        due: list[DueCustomer] = []
        for candidate in candidates:
            scheduled_for = candidate.scheduled_for
            if candidate.kind == "daily" and scheduled_for is None:
                scheduled_for = await self._resolve_fallback(candidate, window_start)
                if scheduled_for is None or not window_start <= scheduled_for <= window_end:
                    continue

            due.append(
                DueCustomer(
                    customer_id=candidate.customer_id,
                    name=candidate.name,
                    kind=candidate.kind,
                    scheduled_for=scheduled_for,
                )
            )

        due.sort(key=lambda customer: (customer.scheduled_for is None, customer.scheduled_for or now))

        logger.info(
            "Due customers computed",
            due_count=len(due),
            candidates=len(candidates),
            window_start=window_start.isoformat(),
            window_end=window_end.isoformat(),
        )
        return due

    async def enqueue_due_customers(
        self, now: datetime | None = None, *, deadline: float | None = None
    ) -> dict:
        """
        Enqueue up to the batch limit of due customers at their scheduled time.

        Args:
            now: reference instant (defaults to the current time)
            deadline: ``time.monotonic()`` value after which no more
                customers are enqueued

        Returns:
            Dict with queued / skipped / errors counts
        """
        now = ensure_utc(now or datetime.now(UTC))
        due = await self.get_due_customers(now)

        queued = skipped = errors = 0
        for customer in due[: self.enqueue_batch_limit]:
            if deadline is not None and time.monotonic() > deadline:
                logger.warning("Enqueue stopped early, execution budget spent", queued=queued)
                break

            try:
                inserted = await self.queue.enqueue(
                    customer.customer_id,
                    customer.kind,
                    customer.scheduled_for or now,
                    max_attempts=self.max_attempts,
                )
            except DatabaseError as e:
                errors += 1
                logger.error(
                    "Failed to enqueue due customer",
                    customer_id=customer.customer_id,
                    call_kind=customer.kind,
                    error=str(e),
                )
                continue

            if inserted:
                queued += 1
            else:
                skipped += 1

        return {"due": len(due), "queued": queued, "skipped": skipped, "errors": errors}

    async def recalculate_all_schedules(self, now: datetime | None = None) -> dict:
        """Recompute next_call_at for every daily-call customer."""
        now = ensure_utc(now or datetime.now(UTC))
        customer_ids = await self.customers.list_daily_customer_ids()

        updated = failed = 0
        for customer_id in customer_ids:
            try:
                await self.schedule_next_daily_call(customer_id, now=now)
                updated += 1
            except (CallSchedulerError, DatabaseError) as e:
                failed += 1
                logger.error("Schedule recalculation failed", customer_id=customer_id, error=str(e))

        logger.info("Schedules recalculated", total=len(customer_ids), updated=updated, failed=failed)
        return {"total": len(customer_ids), "updated": updated, "failed": failed}


# Singleton instance for application use
call_scheduler = CallScheduler()
