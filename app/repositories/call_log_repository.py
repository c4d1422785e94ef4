"""
Append-mostly call history keyed by the provider's call id.
"""

import psycopg
from psycopg.types.json import Jsonb

from app.db.helpers import DatabaseError, execute_query, fetch_one, fetch_val
from app.infrastructure.observability.logging import get_logger
from app.models.domain.call_domain import CallKind, CallLogEntry

logger = get_logger(__name__)


class CallLogRepositoryError(DatabaseError):
    """More specific exception for call log failures."""


class CallLogRepository:
    LOG_COLUMNS = """
        id, customer_id, call_type, provider_call_id, status,
        duration_seconds, transcript, error_message, created_at, updated_at
    """

    @classmethod
    def _row_to_entry(cls, row: dict | None) -> CallLogEntry | None:
        if not row:
            return None

        return CallLogEntry(
            id=row["id"],
            customer_id=row["customer_id"],
            kind=row["call_type"],
            provider_call_id=row.get("provider_call_id"),
            status=row["status"],
            duration_seconds=row.get("duration_seconds"),
            transcript=row.get("transcript"),
            error_message=row.get("error_message"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    @classmethod
    async def lock_call(cls, provider_call_id: str, connection: psycopg.AsyncConnection) -> None:
        """
        Serialize webhook handling for one provider call id.

        Transaction-scoped advisory lock; released on commit or rollback.
        """
        await execute_query(
            "SELECT pg_advisory_xact_lock(hashtext(%s))",
            (provider_call_id,),
            connection=connection,
        )

    @classmethod
    async def get_latest_for_call(
        cls, provider_call_id: str, *, connection: psycopg.AsyncConnection | None = None
    ) -> CallLogEntry | None:
        query = f"""
            SELECT {cls.LOG_COLUMNS}
            FROM call_logs
            WHERE provider_call_id = %s
            ORDER BY updated_at DESC, id DESC
            LIMIT 1
        """
        row = await fetch_one(query, (provider_call_id,), connection=connection)
        return cls._row_to_entry(row)

    @classmethod
    async def log_call(
        cls,
        customer_id: int,
        kind: CallKind,
        status: str,
        *,
        provider_call_id: str | None = None,
        error_message: str | None = None,
        metadata: dict | None = None,
        connection: psycopg.AsyncConnection | None = None,
    ) -> int:
        """Insert a call log row and return its id."""
        query = """
            INSERT INTO call_logs (
                customer_id, call_type, provider_call_id, status, error_message, metadata
            )
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING id
        """
        log_id = await fetch_val(
            query,
            (
                customer_id,
                kind,
                provider_call_id,
                status,
                error_message[:500] if error_message else None,
                Jsonb(metadata or {}),
            ),
            connection=connection,
        )
        if log_id is None:
            raise CallLogRepositoryError("Failed to insert call log", operation="log_call")
        return log_id

    @classmethod
    async def update_outcome(
        cls,
        provider_call_id: str,
        *,
        customer_id: int,
        kind: CallKind,
        status: str,
        transcript: str | None,
        duration_seconds: int | None,
        connection: psycopg.AsyncConnection | None = None,
    ) -> None:
        """
        Write the webhook outcome onto the log rows for this call id,
        inserting a row when the dial was never logged.
        """
        update_query = """
            UPDATE call_logs
            SET status = %s,
                transcript = %s,
                duration_seconds = %s,
                updated_at = NOW()
            WHERE provider_call_id = %s
        """
        updated = await execute_query(
            update_query,
            (status, transcript, duration_seconds, provider_call_id),
            connection=connection,
        )
        if updated:
            return

        insert_query = """
            INSERT INTO call_logs (
                customer_id, call_type, provider_call_id, status, transcript, duration_seconds
            )
            VALUES (%s, %s, %s, %s, %s, %s)
        """
        await execute_query(
            insert_query,
            (customer_id, kind, provider_call_id, status, transcript, duration_seconds),
            connection=connection,
        )
        logger.info(
            "Call log created from webhook",
            provider_call_id=provider_call_id,
            customer_id=customer_id,
        )
