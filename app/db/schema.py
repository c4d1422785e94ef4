# app/db/schema.py
"""
Idempotent schema setup for the call scheduler tables.

Safe to run on every deploy: tables and columns use IF NOT EXISTS, and the
active-call uniqueness index is only created after any duplicate active queue
rows left behind by older code have been collapsed.
"""

from app.db.helpers import DatabaseError, execute_query
from app.db.pool import db_pool, get_db_transaction
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

ACTIVE_QUEUE_STATUSES = ("pending", "retrying", "processing")

TABLE_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS customers (
        id SERIAL PRIMARY KEY,
        name VARCHAR(255) NOT NULL,
        email VARCHAR(255) UNIQUE,
        phone VARCHAR(50) NOT NULL,
        timezone VARCHAR(100),
        call_time_description VARCHAR(100),
        goals TEXT,
        payment_state VARCHAR(20) NOT NULL DEFAULT 'Pending',
        phone_validated BOOLEAN NOT NULL DEFAULT false,
        call_state VARCHAR(20) NOT NULL DEFAULT 'active',
        preferred_hour INTEGER CHECK (preferred_hour BETWEEN 0 AND 23),
        preferred_minute INTEGER CHECK (preferred_minute BETWEEN 0 AND 59),
        welcome_call_done BOOLEAN NOT NULL DEFAULT false,
        last_call_date DATE,
        next_call_at TIMESTAMPTZ,
        consecutive_failures INTEGER NOT NULL DEFAULT 0,
        total_calls_made INTEGER NOT NULL DEFAULT 0,
        last_call_id VARCHAR(255),
        last_call_transcript TEXT,
        last_call_duration INTEGER,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS call_queue (
        id SERIAL PRIMARY KEY,
        customer_id INTEGER NOT NULL REFERENCES customers(id) ON DELETE CASCADE,
        call_type VARCHAR(20) NOT NULL,
        scheduled_for TIMESTAMPTZ NOT NULL,
        status VARCHAR(20) NOT NULL DEFAULT 'pending',
        attempts INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 3,
        error_message TEXT,
        provider_call_id VARCHAR(255),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        processed_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS call_logs (
        id SERIAL PRIMARY KEY,
        customer_id INTEGER NOT NULL REFERENCES customers(id) ON DELETE CASCADE,
        call_type VARCHAR(20) NOT NULL,
        provider_call_id VARCHAR(255),
        status VARCHAR(20) NOT NULL,
        duration_seconds INTEGER,
        transcript TEXT,
        error_message TEXT,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS customer_context (
        id SERIAL PRIMARY KEY,
        customer_id INTEGER NOT NULL UNIQUE REFERENCES customers(id) ON DELETE CASCADE,
        context_data JSONB NOT NULL DEFAULT '{}'::jsonb,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
]

# Keep the oldest active row per (customer, kind); the rest become failed
DEDUPE_ACTIVE_QUEUE_ROWS = """
    UPDATE call_queue AS q
    SET status = 'failed',
        error_message = 'Duplicate active queue entry collapsed during migration',
        updated_at = NOW()
    FROM (
        SELECT id,
               ROW_NUMBER() OVER (
                   PARTITION BY customer_id, call_type
                   ORDER BY created_at ASC, id ASC
               ) AS rn
        FROM call_queue
        WHERE status IN ('pending', 'retrying', 'processing')
    ) AS ranked
    WHERE q.id = ranked.id
      AND ranked.rn > 1
"""

INDEX_STATEMENTS = [
    """
    CREATE UNIQUE INDEX IF NOT EXISTS unique_customer_call_active
    ON call_queue (customer_id, call_type)
    WHERE status IN ('pending', 'retrying', 'processing')
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_call_queue_scheduled
    ON call_queue (scheduled_for, status)
    WHERE status IN ('pending', 'retrying')
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_call_logs_customer
    ON call_logs (customer_id, created_at DESC)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_call_logs_provider_call_id
    ON call_logs (provider_call_id)
    WHERE provider_call_id IS NOT NULL
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_customers_call_schedule
    ON customers (next_call_at, payment_state, call_state)
    WHERE payment_state IN ('Paid', 'Partner')
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_customers_last_call_id
    ON customers (last_call_id)
    WHERE last_call_id IS NOT NULL
    """,
]


async def apply_schema() -> dict:
    """
    Create or upgrade all call scheduler tables and indexes in one transaction.

    Returns:
        dict with the number of duplicate active queue rows collapsed
    """
    logger.info("Applying call scheduler schema")

    try:
        async with await get_db_transaction() as conn:
            for statement in TABLE_STATEMENTS:
                await execute_query(statement, connection=conn)

            collapsed = await execute_query(DEDUPE_ACTIVE_QUEUE_ROWS, connection=conn)
            if collapsed:
                logger.warning("Collapsed duplicate active queue rows", rows=collapsed)

            for statement in INDEX_STATEMENTS:
                await execute_query(statement, connection=conn)

    except DatabaseError:
        logger.error("Schema application failed")
        raise

    logger.info("Call scheduler schema applied", duplicates_collapsed=collapsed)
    return {"duplicates_collapsed": collapsed}


async def run_apply_schema() -> None:
    """Worker entrypoint: open the pool, apply the schema, close the pool."""
    await db_pool.initialize()
    try:
        await apply_schema()
    finally:
        await db_pool.close()
