# app/db/helpers.py
"""
Database helper functions for the repository layer.

Params may be a tuple (``%s`` placeholders) or a dict (``%(name)s``
placeholders). Every helper accepts an optional ``connection`` so callers can
run several statements inside one transaction or savepoint; without one a
pooled connection is borrowed for the single statement.
"""

from collections.abc import AsyncGenerator, Mapping, Sequence
from contextlib import asynccontextmanager
from typing import Any

import psycopg

from app.db.pool import get_db_connection
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

QueryParams = Sequence[Any] | Mapping[str, Any]


class DatabaseError(Exception):
    """Custom exception for database operations."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


@asynccontextmanager
async def _cursor(
    connection: psycopg.AsyncConnection | None,
) -> AsyncGenerator[psycopg.AsyncCursor, None]:
    if connection is not None:
        async with connection.cursor() as cur:
            yield cur
        return

    async with await get_db_connection() as conn:
        async with conn.cursor() as cur:
            yield cur


def _wrap_error(e: psycopg.Error, query: str, operation: str) -> DatabaseError:
    logger.error(f"Database {operation} error", query=query[:100], error=str(e))
    return DatabaseError(f"Query failed: {e}", operation=operation)


async def fetch_one(
    query: str, params: QueryParams = (), *, connection: psycopg.AsyncConnection | None = None
) -> dict[str, Any] | None:
    """
    Execute query and return single row as dict.

    Args:
        query: SQL query with placeholders
        params: Query parameters
        connection: Optional existing connection

    Returns:
        Dict with row data or None if no results
    """
    try:
        async with _cursor(connection) as cur:
            await cur.execute(query, params)
            return await cur.fetchone()
    except psycopg.Error as e:
        raise _wrap_error(e, query, "fetch_one") from e


async def fetch_all(
    query: str, params: QueryParams = (), *, connection: psycopg.AsyncConnection | None = None
) -> list[dict[str, Any]]:
    """Execute query and return all rows as list of dicts."""
    try:
        async with _cursor(connection) as cur:
            await cur.execute(query, params)
            return await cur.fetchall()
    except psycopg.Error as e:
        raise _wrap_error(e, query, "fetch_all") from e


async def fetch_val(
    query: str, params: QueryParams = (), *, connection: psycopg.AsyncConnection | None = None
) -> Any:
    """First column of the first row, or None."""
    row = await fetch_one(query, params, connection=connection)
    return next(iter(row.values())) if row else None


async def execute_query(
    query: str, params: QueryParams = (), *, connection: psycopg.AsyncConnection | None = None
) -> int:
    """Execute query and return number of affected rows."""
    try:
        async with _cursor(connection) as cur:
            await cur.execute(query, params)
            return cur.rowcount
    except psycopg.Error as e:
        raise _wrap_error(e, query, "execute") from e
