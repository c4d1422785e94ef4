"""
Durable call work queue.

At most one active (pending/retrying/processing) row may exist per
(customer_id, call_type). The partial unique index
``unique_customer_call_active`` enforces it and enqueue relies on
``ON CONFLICT DO NOTHING``, so concurrent enqueues collapse to one row.
"""

from datetime import datetime

import psycopg

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one
from app.infrastructure.observability.logging import get_logger
from app.models.domain.call_domain import CallKind, QueueItem

logger = get_logger(__name__)


class CallQueueRepositoryError(DatabaseError):
    """More specific exception for call queue failures."""


class CallQueueRepository:
    """Persistence helpers backing the queue processor."""

    ITEM_COLUMNS = """
        id, customer_id, call_type, scheduled_for, status, attempts,
        max_attempts, error_message, provider_call_id,
        created_at, updated_at, processed_at
    """

    @classmethod
    def _row_to_item(cls, row: dict | None) -> QueueItem | None:
        if not row:
            return None

        return QueueItem(
            id=row["id"],
            customer_id=row["customer_id"],
            kind=row["call_type"],
            scheduled_for=row["scheduled_for"],
            status=row["status"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            error_message=row.get("error_message"),
            provider_call_id=row.get("provider_call_id"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
            processed_at=row.get("processed_at"),
        )

    @classmethod
    async def enqueue(
        cls,
        customer_id: int,
        kind: CallKind,
        scheduled_for: datetime,
        *,
        max_attempts: int = 3,
        connection: psycopg.AsyncConnection | None = None,
    ) -> bool:
        """
        Insert a pending item unless one is already active for the customer.

        Returns True when a row was inserted, False when the insert was a
        no-op because an active item already exists.
        """
        query = """
            INSERT INTO call_queue (
                customer_id, call_type, scheduled_for, status, attempts, max_attempts
            )
            VALUES (%s, %s, %s, 'pending', 0, %s)
            ON CONFLICT DO NOTHING
            RETURNING id
        """
        row = await fetch_one(
            query, (customer_id, kind, scheduled_for, max_attempts), connection=connection
        )

        if row:
            logger.info(
                "Call enqueued",
                queue_item_id=row["id"],
                customer_id=customer_id,
                call_kind=kind,
                scheduled_for=scheduled_for.isoformat(),
            )
            return True

        logger.debug("Active call already queued", customer_id=customer_id, call_kind=kind)
        return False

    @classmethod
    async def claim_due_batch(
        cls,
        connection: psycopg.AsyncConnection,
        *,
        window_start: datetime,
        window_end: datetime,
        now: datetime,
        limit: int,
    ) -> list[QueueItem]:
        """
        Lock a batch of due items for this transaction.

        Pending items are due anywhere in the window; retrying items only
        once their backoff has elapsed. Rows locked by a concurrent drain are
        skipped, not waited on. Must be called inside a transaction on
        ``connection``; the locks are held until it ends.
        """
        query = f"""
            SELECT {cls.ITEM_COLUMNS}
            FROM call_queue
            WHERE status IN ('pending', 'retrying')
              AND scheduled_for >= %(window_start)s
              AND scheduled_for <= %(window_end)s
              AND (status = 'pending' OR scheduled_for <= %(now)s)
              AND attempts < max_attempts
            ORDER BY scheduled_for ASC, id ASC
            LIMIT %(limit)s
            FOR UPDATE SKIP LOCKED
        """
        rows = await fetch_all(
            query,
            {
                "window_start": window_start,
                "window_end": window_end,
                "now": now,
                "limit": limit,
            },
            connection=connection,
        )
        return [cls._row_to_item(row) for row in rows]

    @classmethod
    async def expire_stale_items(
        cls,
        window_start: datetime,
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> int:
        """
        Fail waiting items scheduled before the claim window.

        Such rows can never be claimed again and would otherwise keep the
        (customer, kind) slot occupied forever.
        """
        query = """
            UPDATE call_queue
            SET status = 'failed',
                error_message = 'Expired: scheduled before the current due window',
                processed_at = NOW(),
                updated_at = NOW()
            WHERE status IN ('pending', 'retrying')
              AND scheduled_for < %s
        """
        expired = await execute_query(query, (window_start,), connection=connection)
        if expired:
            logger.warning("Expired stale queue items", count=expired)
        return expired

    @classmethod
    async def mark_processing(
        cls, item_id: int, *, connection: psycopg.AsyncConnection | None = None
    ) -> None:
        query = """
            UPDATE call_queue
            SET status = 'processing',
                updated_at = NOW()
            WHERE id = %s
        """
        updated = await execute_query(query, (item_id,), connection=connection)
        if not updated:
            raise CallQueueRepositoryError(
                f"Queue item {item_id} vanished after claim", operation="mark_processing"
            )

    @classmethod
    async def mark_completed(
        cls,
        item_id: int,
        *,
        provider_call_id: str | None = None,
        note: str | None = None,
        connection: psycopg.AsyncConnection | None = None,
    ) -> None:
        """Terminal success, or a skip when ``note`` explains why no call was made."""
        query = """
            UPDATE call_queue
            SET status = 'completed',
                provider_call_id = %s,
                error_message = %s,
                processed_at = NOW(),
                updated_at = NOW()
            WHERE id = %s
        """
        await execute_query(query, (provider_call_id, note, item_id), connection=connection)

    @classmethod
    async def mark_retrying(
        cls,
        item_id: int,
        *,
        attempts: int,
        retry_at: datetime,
        error_message: str,
        connection: psycopg.AsyncConnection | None = None,
    ) -> None:
        query = """
            UPDATE call_queue
            SET status = 'retrying',
                attempts = %s,
                scheduled_for = %s,
                error_message = %s,
                updated_at = NOW()
            WHERE id = %s
        """
        await execute_query(
            query,
            (attempts, retry_at, (error_message or "")[:500], item_id),
            connection=connection,
        )

    @classmethod
    async def mark_failed(
        cls,
        item_id: int,
        *,
        attempts: int,
        error_message: str,
        connection: psycopg.AsyncConnection | None = None,
    ) -> None:
        query = """
            UPDATE call_queue
            SET status = 'failed',
                attempts = %s,
                error_message = %s,
                processed_at = NOW(),
                updated_at = NOW()
            WHERE id = %s
        """
        await execute_query(
            query, (attempts, (error_message or "")[:500], item_id), connection=connection
        )

    @classmethod
    async def cancel_waiting(
        cls,
        customer_id: int,
        kind: CallKind,
        *,
        note: str,
        connection: psycopg.AsyncConnection | None = None,
    ) -> int:
        """
        Complete the customer's pending/retrying rows of one kind without dialing.

        Rows already claimed (``processing``) are left to their drain.
        """
        query = """
            UPDATE call_queue
            SET status = 'completed',
                error_message = %s,
                processed_at = NOW(),
                updated_at = NOW()
            WHERE customer_id = %s
              AND call_type = %s
              AND status IN ('pending', 'retrying')
        """
        return await execute_query(query, (note, customer_id, kind), connection=connection)

    @classmethod
    async def count_by_status(
        cls, *, connection: psycopg.AsyncConnection | None = None
    ) -> dict[str, int]:
        """Row counts per status, for readiness output."""
        query = "SELECT status, COUNT(*) AS total FROM call_queue GROUP BY status"
        rows = await fetch_all(query, connection=connection)
        return {row["status"]: row["total"] for row in rows}
