"""
Persistence for the scheduling fields of the customers table.

All writes that guard against concurrent dials are conditional updates so
correctness holds across processes without any in-process locking.
"""

from datetime import date, datetime

import psycopg

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one
from app.infrastructure.observability.logging import get_logger
from app.models.domain.call_domain import (
    CallTarget,
    CustomerSchedule,
    DailyCallReservation,
    DueCandidate,
)

logger = get_logger(__name__)


class CustomerRepositoryError(DatabaseError):
    """More specific exception for customer persistence failures."""


class CustomerRepository:
    """Read/update operations used by the scheduler, processor and webhook."""

    SCHEDULE_COLUMNS = """
        id, timezone, call_time_description, preferred_hour, preferred_minute,
        welcome_call_done, last_call_date, next_call_at
    """

    TARGET_COLUMNS = """
        id, name, phone, timezone, goals, payment_state, phone_validated,
        call_state, welcome_call_done, last_call_date, consecutive_failures,
        last_call_id
    """

    @classmethod
    def _row_to_schedule(cls, row: dict | None) -> CustomerSchedule | None:
        if not row:
            return None

        return CustomerSchedule(
            id=row["id"],
            timezone=row.get("timezone"),
            call_time_description=row.get("call_time_description"),
            preferred_hour=row.get("preferred_hour"),
            preferred_minute=row.get("preferred_minute"),
            welcome_call_done=bool(row.get("welcome_call_done")),
            last_call_date=row.get("last_call_date"),
            next_call_at=row.get("next_call_at"),
        )

    @classmethod
    def _row_to_target(cls, row: dict | None) -> CallTarget | None:
        if not row:
            return None

        return CallTarget(
            id=row["id"],
            name=row["name"],
            phone=row["phone"],
            timezone=row.get("timezone"),
            goals=row.get("goals"),
            payment_state=row["payment_state"],
            phone_validated=bool(row["phone_validated"]),
            call_state=row["call_state"],
            welcome_call_done=bool(row["welcome_call_done"]),
            last_call_date=row.get("last_call_date"),
            consecutive_failures=row.get("consecutive_failures") or 0,
            last_call_id=row.get("last_call_id"),
        )

    # ------------------------------------------------------------------
    # Schedule reads/writes
    # ------------------------------------------------------------------

    @classmethod
    async def get_schedule(
        cls, customer_id: int, *, connection: psycopg.AsyncConnection | None = None
    ) -> CustomerSchedule | None:
        query = f"SELECT {cls.SCHEDULE_COLUMNS} FROM customers WHERE id = %s"
        row = await fetch_one(query, (customer_id,), connection=connection)
        return cls._row_to_schedule(row)

    @classmethod
    async def set_preferred_time(
        cls,
        customer_id: int,
        hour: int,
        minute: int,
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> None:
        """Persist a resolved call time so the text fallback runs once."""
        query = """
            UPDATE customers
            SET preferred_hour = %s,
                preferred_minute = %s,
                updated_at = NOW()
            WHERE id = %s
        """
        await execute_query(query, (hour, minute, customer_id), connection=connection)

    @classmethod
    async def set_next_call_at(
        cls,
        customer_id: int,
        next_call_at: datetime,
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> None:
        query = """
            UPDATE customers
            SET next_call_at = %s,
                updated_at = NOW()
            WHERE id = %s
        """
        await execute_query(query, (next_call_at, customer_id), connection=connection)

    @classmethod
    async def find_due_candidates(
        cls,
        *,
        window_start: datetime,
        window_end: datetime,
        welcome_cutoff: datetime,
        welcome_grace_minutes: int,
        today: date,
        limit: int,
        connection: psycopg.AsyncConnection | None = None,
    ) -> list[DueCandidate]:
        """
        Customers eligible for a call now.

        Welcome rows are scheduled at signup + grace, clamped to the window
        start so an old unpaid-then-paid signup still lands inside the claim
        window. Daily rows with no stored schedule, or one left over from a
        previous day, are returned with ``scheduled_for = NULL`` for the
        caller to recompute.
        """
        query = """
            SELECT
                c.id,
                c.name,
                c.timezone,
                c.preferred_hour,
                c.preferred_minute,
                CASE WHEN c.welcome_call_done THEN 'daily' ELSE 'welcome' END AS call_type,
                CASE
                    WHEN c.welcome_call_done AND c.next_call_at >= %(window_start)s
                        THEN c.next_call_at
                    WHEN c.welcome_call_done THEN NULL
                    ELSE GREATEST(
                        c.created_at + make_interval(mins => %(grace)s),
                        %(window_start)s
                    )
                END AS scheduled_for
            FROM customers c
            WHERE c.payment_state IN ('Paid', 'Partner')
              AND c.phone_validated = true
              AND c.call_state NOT IN ('disabled', 'paused')
              AND (
                    (c.welcome_call_done = false AND c.created_at < %(welcome_cutoff)s)
                 OR (
                        c.welcome_call_done = true
                    AND (c.last_call_date IS NULL OR c.last_call_date < %(today)s)
                    AND (
                            (c.next_call_at >= %(window_start)s
                             AND c.next_call_at <= %(window_end)s)
                         OR ((c.next_call_at IS NULL OR c.next_call_at < %(window_start)s)
                             AND c.preferred_hour IS NOT NULL
                             AND c.timezone IS NOT NULL)
                    )
                 )
              )
            ORDER BY scheduled_for ASC NULLS LAST, c.id ASC
            LIMIT %(limit)s
        """
        params = {
            "grace": welcome_grace_minutes,
            "window_start": window_start,
            "window_end": window_end,
            "welcome_cutoff": welcome_cutoff,
            "today": today,
            "limit": limit,
        }
        rows = await fetch_all(query, params, connection=connection)
        return [
            DueCandidate(
                customer_id=row["id"],
                name=row["name"],
                kind=row["call_type"],
                scheduled_for=row.get("scheduled_for"),
                timezone=row.get("timezone"),
                preferred_hour=row.get("preferred_hour"),
                preferred_minute=row.get("preferred_minute"),
            )
            for row in rows
        ]

    @classmethod
    async def list_daily_customer_ids(
        cls, *, connection: psycopg.AsyncConnection | None = None
    ) -> list[int]:
        """Customers whose welcome call is done and who are not disabled."""
        query = """
            SELECT id
            FROM customers
            WHERE welcome_call_done = true
              AND payment_state IN ('Paid', 'Partner')
              AND call_state <> 'disabled'
            ORDER BY id
        """
        rows = await fetch_all(query, connection=connection)
        return [row["id"] for row in rows]

    # ------------------------------------------------------------------
    # Dial-time reads/writes
    # ------------------------------------------------------------------

    @classmethod
    async def get_call_target(
        cls, customer_id: int, *, connection: psycopg.AsyncConnection | None = None
    ) -> CallTarget | None:
        query = f"SELECT {cls.TARGET_COLUMNS} FROM customers WHERE id = %s"
        row = await fetch_one(query, (customer_id,), connection=connection)
        return cls._row_to_target(row)

    @classmethod
    async def reserve_daily_call(
        cls,
        customer_id: int,
        today: date,
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> DailyCallReservation | None:
        """
        Stamp ``last_call_date = today`` unless some other worker already did.

        Returns the reservation (with the prior value) when this caller won,
        None when the customer was already called today.
        """
        query = """
            UPDATE customers AS c
            SET last_call_date = %(today)s,
                updated_at = NOW()
            FROM (
                SELECT id, last_call_date AS previous_date
                FROM customers
                WHERE id = %(customer_id)s
                FOR UPDATE
            ) AS prev
            WHERE c.id = prev.id
              AND (c.last_call_date IS NULL OR c.last_call_date < %(today)s)
            RETURNING prev.previous_date
        """
        row = await fetch_one(
            query, {"customer_id": customer_id, "today": today}, connection=connection
        )
        if row is None:
            return None

        return DailyCallReservation(
            customer_id=customer_id,
            call_date=today,
            previous_date=row.get("previous_date"),
        )

    @classmethod
    async def release_daily_call(
        cls,
        reservation: DailyCallReservation,
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> bool:
        """Undo a reservation so a retry later today is still eligible."""
        query = """
            UPDATE customers
            SET last_call_date = %s,
                updated_at = NOW()
            WHERE id = %s
              AND last_call_date = %s
        """
        updated = await execute_query(
            query,
            (reservation.previous_date, reservation.customer_id, reservation.call_date),
            connection=connection,
        )
        return updated > 0

    @classmethod
    async def stamp_last_call_date(
        cls,
        customer_id: int,
        today: date,
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> bool:
        """
        Conditionally set ``last_call_date = today``.

        Returns True when the stamp had to be written (it was missing or
        older), False when it already read today or later.
        """
        query = """
            UPDATE customers
            SET last_call_date = %s,
                updated_at = NOW()
            WHERE id = %s
              AND (last_call_date IS NULL OR last_call_date < %s)
        """
        updated = await execute_query(query, (today, customer_id, today), connection=connection)
        return updated > 0

    @classmethod
    async def clear_last_call_date(
        cls, customer_id: int, *, connection: psycopg.AsyncConnection | None = None
    ) -> None:
        """Allow one more daily call today (missed-call retry)."""
        query = """
            UPDATE customers
            SET last_call_date = NULL,
                updated_at = NOW()
            WHERE id = %s
        """
        await execute_query(query, (customer_id,), connection=connection)

    @classmethod
    async def mark_welcome_done(
        cls, customer_id: int, *, connection: psycopg.AsyncConnection | None = None
    ) -> bool:
        """Set welcome_call_done and confirm the write took effect."""
        query = """
            UPDATE customers
            SET welcome_call_done = true,
                updated_at = NOW()
            WHERE id = %s
            RETURNING welcome_call_done
        """
        row = await fetch_one(query, (customer_id,), connection=connection)
        return bool(row and row["welcome_call_done"])

    @classmethod
    async def record_dial_success(
        cls,
        customer_id: int,
        provider_call_id: str,
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> None:
        """Provider accepted the dial: reset the breaker and remember the call id."""
        query = """
            UPDATE customers
            SET consecutive_failures = 0,
                call_state = 'active',
                last_call_id = %s,
                updated_at = NOW()
            WHERE id = %s
        """
        await execute_query(query, (provider_call_id, customer_id), connection=connection)

    @classmethod
    async def record_permanent_failure(
        cls,
        customer_id: int,
        breaker_threshold: int,
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> tuple[int, str]:
        """
        Count one more exhausted queue item for the customer.

        Sets call_state to 'disabled' once the count reaches the threshold,
        otherwise 'failed'. Returns (consecutive_failures, call_state).
        """
        query = """
            UPDATE customers
            SET consecutive_failures = COALESCE(consecutive_failures, 0) + 1,
                call_state = CASE
                    WHEN COALESCE(consecutive_failures, 0) + 1 >= %(threshold)s THEN 'disabled'
                    ELSE 'failed'
                END,
                updated_at = NOW()
            WHERE id = %(customer_id)s
            RETURNING consecutive_failures, call_state
        """
        row = await fetch_one(
            query,
            {"customer_id": customer_id, "threshold": breaker_threshold},
            connection=connection,
        )
        if not row:
            raise CustomerRepositoryError(
                f"Customer {customer_id} not found", operation="record_permanent_failure"
            )
        return row["consecutive_failures"], row["call_state"]

    @classmethod
    async def enable_calling(
        cls, customer_id: int, *, connection: psycopg.AsyncConnection | None = None
    ) -> bool:
        """Operator reset after the circuit breaker tripped."""
        query = """
            UPDATE customers
            SET call_state = 'active',
                consecutive_failures = 0,
                updated_at = NOW()
            WHERE id = %s
        """
        updated = await execute_query(query, (customer_id,), connection=connection)
        return updated > 0

    # ------------------------------------------------------------------
    # Webhook reads/writes
    # ------------------------------------------------------------------

    @classmethod
    async def find_by_last_call_id(
        cls, provider_call_id: str, *, connection: psycopg.AsyncConnection | None = None
    ) -> CallTarget | None:
        query = f"""
            SELECT {cls.TARGET_COLUMNS}
            FROM customers
            WHERE last_call_id = %s
            ORDER BY updated_at DESC
            LIMIT 1
        """
        row = await fetch_one(query, (provider_call_id,), connection=connection)
        return cls._row_to_target(row)

    @classmethod
    async def record_call_outcome(
        cls,
        customer_id: int,
        *,
        provider_call_id: str,
        transcript: str | None,
        duration_seconds: int | None,
        increment_total: bool,
        connection: psycopg.AsyncConnection | None = None,
    ) -> None:
        """Update the denormalized last-call fields on the customer."""
        query = """
            UPDATE customers
            SET last_call_id = %(provider_call_id)s,
                last_call_transcript = %(transcript)s,
                last_call_duration = %(duration)s,
                total_calls_made = COALESCE(total_calls_made, 0)
                    + CASE WHEN %(increment)s THEN 1 ELSE 0 END,
                updated_at = NOW()
            WHERE id = %(customer_id)s
        """
        await execute_query(
            query,
            {
                "provider_call_id": provider_call_id,
                "transcript": transcript,
                "duration": duration_seconds,
                "increment": increment_total,
                "customer_id": customer_id,
            },
            connection=connection,
        )
