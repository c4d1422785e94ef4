import asyncio
import itertools
from contextlib import asynccontextmanager
from datetime import UTC, date, datetime, timedelta

import pytest

from app.auth.verify import cron_auth_dependency
from app.config import Settings
from app.models.domain.call_domain import (
    ACTIVE_QUEUE_STATUSES,
    BILLABLE_PAYMENT_STATES,
    BLOCKED_CALL_STATES,
    CallLogEntry,
    CallSpec,
    CallTarget,
    CustomerSchedule,
    DailyCallReservation,
    DueCandidate,
    PlaceCallResult,
    QueueItem,
)


class FakeCallStore:
    """
    In-memory stand-in for the customers, call_queue and call_logs tables.

    Emulates the database guarantees the call pipeline relies on:
    row locks with SKIP LOCKED claiming, the partial unique index on active
    queue rows, and the conditional last_call_date stamp.
    """

    def __init__(self):
        self.customers: dict[int, dict] = {}
        self.queue: dict[int, dict] = {}
        self.logs: list[dict] = []
        self.locks: dict[int, object] = {}
        self._queue_ids = itertools.count(1)
        self._log_ids = itertools.count(1)

    def add_customer(self, customer_id: int, **fields) -> dict:
        row = {
            "id": customer_id,
            "name": f"Customer {customer_id}",
            "phone": "+15555550100",
            "timezone": "America/New_York",
            "call_time_description": None,
            "goals": "Run a half marathon",
            "payment_state": "Paid",
            "phone_validated": True,
            "call_state": "active",
            "preferred_hour": 7,
            "preferred_minute": 0,
            "welcome_call_done": True,
            "last_call_date": None,
            "next_call_at": None,
            "consecutive_failures": 0,
            "total_calls_made": 0,
            "last_call_id": None,
            "last_call_transcript": None,
            "last_call_duration": None,
            "created_at": datetime(2024, 1, 1, tzinfo=UTC),
        }
        row.update(fields)
        self.customers[customer_id] = row
        return row

    def add_queue_item(self, customer_id: int, kind: str, scheduled_for: datetime, **fields) -> dict:
        """Insert a queue row directly, bypassing the active-row uniqueness check."""
        item_id = next(self._queue_ids)
        row = {
            "id": item_id,
            "customer_id": customer_id,
            "call_type": kind,
            "scheduled_for": scheduled_for,
            "status": "pending",
            "attempts": 0,
            "max_attempts": 3,
            "error_message": None,
            "provider_call_id": None,
            "processed_at": None,
        }
        row.update(fields)
        self.queue[item_id] = row
        return row

    def add_log(
        self, customer_id: int, kind: str, status: str, provider_call_id: str | None = None, **fields
    ) -> dict:
        row = {
            "id": next(self._log_ids),
            "customer_id": customer_id,
            "call_type": kind,
            "provider_call_id": provider_call_id,
            "status": status,
            "duration_seconds": None,
            "transcript": None,
            "error_message": None,
            "metadata": {},
        }
        row.update(fields)
        self.logs.append(row)
        return row

    def active_items(self, customer_id: int, kind: str | None = None) -> list[dict]:
        return [
            row
            for row in self.queue.values()
            if row["customer_id"] == customer_id
            and row["status"] in ACTIVE_QUEUE_STATUSES
            and (kind is None or row["call_type"] == kind)
        ]

    @asynccontextmanager
    async def transaction(self):
        conn = FakeConnection(self)
        try:
            yield conn
        finally:
            for item_id, owner in list(self.locks.items()):
                if owner is conn:
                    del self.locks[item_id]


class FakeConnection:
    """Connection whose nested transactions (savepoints) are no-ops."""

    def __init__(self, store: FakeCallStore):
        self.store = store

    @asynccontextmanager
    async def transaction(self):
        yield self


class FakeCustomerRepository:
    def __init__(self, store: FakeCallStore):
        self.store = store
        self.fail_on: set[str] = set()

    def _row(self, customer_id: int) -> dict | None:
        return self.store.customers.get(customer_id)

    def _target(self, row: dict | None) -> CallTarget | None:
        if row is None:
            return None
        return CallTarget(
            id=row["id"],
            name=row["name"],
            phone=row["phone"],
            timezone=row["timezone"],
            goals=row["goals"],
            payment_state=row["payment_state"],
            phone_validated=row["phone_validated"],
            call_state=row["call_state"],
            welcome_call_done=row["welcome_call_done"],
            last_call_date=row["last_call_date"],
            consecutive_failures=row["consecutive_failures"],
            last_call_id=row["last_call_id"],
        )

    async def get_schedule(self, customer_id, *, connection=None):
        row = self._row(customer_id)
        if row is None:
            return None
        return CustomerSchedule(
            id=row["id"],
            timezone=row["timezone"],
            call_time_description=row["call_time_description"],
            preferred_hour=row["preferred_hour"],
            preferred_minute=row["preferred_minute"],
            welcome_call_done=row["welcome_call_done"],
            last_call_date=row["last_call_date"],
            next_call_at=row["next_call_at"],
        )

    async def set_preferred_time(self, customer_id, hour, minute, *, connection=None):
        self.store.customers[customer_id].update(preferred_hour=hour, preferred_minute=minute)

    async def set_next_call_at(self, customer_id, next_call_at, *, connection=None):
        self.store.customers[customer_id]["next_call_at"] = next_call_at

    async def find_due_candidates(
        self,
        *,
        window_start,
        window_end,
        welcome_cutoff,
        welcome_grace_minutes,
        today,
        limit,
        connection=None,
    ):
        candidates = []
        for row in self.store.customers.values():
            if (
                row["payment_state"] not in BILLABLE_PAYMENT_STATES
                or not row["phone_validated"]
                or row["call_state"] in BLOCKED_CALL_STATES
            ):
                continue

            next_call_at = row["next_call_at"]
            if not row["welcome_call_done"]:
                if row["created_at"] >= welcome_cutoff:
                    continue
                kind = "welcome"
                scheduled_for = max(
                    row["created_at"] + timedelta(minutes=welcome_grace_minutes), window_start
                )
            else:
                if row["last_call_date"] is not None and row["last_call_date"] >= today:
                    continue
                in_window = next_call_at is not None and window_start <= next_call_at <= window_end
                needs_schedule = (
                    (next_call_at is None or next_call_at < window_start)
                    and row["preferred_hour"] is not None
                    and row["timezone"] is not None
                )
                if not (in_window or needs_schedule):
                    continue
                kind = "daily"
                scheduled_for = next_call_at if in_window else None

            candidates.append(
                DueCandidate(
                    customer_id=row["id"],
                    name=row["name"],
                    kind=kind,
                    scheduled_for=scheduled_for,
                    timezone=row["timezone"],
                    preferred_hour=row["preferred_hour"],
                    preferred_minute=row["preferred_minute"],
                )
            )

        candidates.sort(
            key=lambda c: (c.scheduled_for is None, c.scheduled_for or window_start, c.customer_id)
        )
        return candidates[:limit]

    async def list_daily_customer_ids(self, *, connection=None):
        return sorted(
            row["id"]
            for row in self.store.customers.values()
            if row["welcome_call_done"]
            and row["payment_state"] in BILLABLE_PAYMENT_STATES
            and row["call_state"] != "disabled"
        )

    async def get_call_target(self, customer_id, *, connection=None):
        return self._target(self._row(customer_id))

    async def reserve_daily_call(self, customer_id, today, *, connection=None):
        row = self._row(customer_id)
        if row is None:
            return None
        previous = row["last_call_date"]
        if previous is not None and previous >= today:
            return None
        row["last_call_date"] = today
        return DailyCallReservation(customer_id=customer_id, call_date=today, previous_date=previous)

    async def release_daily_call(self, reservation, *, connection=None):
        row = self._row(reservation.customer_id)
        if row is None or row["last_call_date"] != reservation.call_date:
            return False
        row["last_call_date"] = reservation.previous_date
        return True

    async def stamp_last_call_date(self, customer_id, today, *, connection=None):
        row = self._row(customer_id)
        if row is None or (row["last_call_date"] is not None and row["last_call_date"] >= today):
            return False
        row["last_call_date"] = today
        return True

    async def clear_last_call_date(self, customer_id, *, connection=None):
        self.store.customers[customer_id]["last_call_date"] = None

    async def mark_welcome_done(self, customer_id, *, connection=None):
        if "mark_welcome_done" in self.fail_on:
            return False
        row = self._row(customer_id)
        if row is None:
            return False
        row["welcome_call_done"] = True
        return True

    async def record_dial_success(self, customer_id, provider_call_id, *, connection=None):
        if "record_dial_success" in self.fail_on:
            raise RuntimeError("record_dial_success exploded")
        self.store.customers[customer_id].update(
            consecutive_failures=0, call_state="active", last_call_id=provider_call_id
        )

    async def record_permanent_failure(self, customer_id, breaker_threshold, *, connection=None):
        row = self.store.customers[customer_id]
        row["consecutive_failures"] += 1
        row["call_state"] = (
            "disabled" if row["consecutive_failures"] >= breaker_threshold else "failed"
        )
        return row["consecutive_failures"], row["call_state"]

    async def enable_calling(self, customer_id, *, connection=None):
        row = self._row(customer_id)
        if row is None:
            return False
        row.update(call_state="active", consecutive_failures=0)
        return True

    async def find_by_last_call_id(self, provider_call_id, *, connection=None):
        for row in self.store.customers.values():
            if row["last_call_id"] == provider_call_id:
                return self._target(row)
        return None

    async def record_call_outcome(
        self,
        customer_id,
        *,
        provider_call_id,
        transcript,
        duration_seconds,
        increment_total,
        connection=None,
    ):
        row = self.store.customers[customer_id]
        row.update(
            last_call_id=provider_call_id,
            last_call_transcript=transcript,
            last_call_duration=duration_seconds,
        )
        if increment_total:
            row["total_calls_made"] += 1


class FakeCallQueueRepository:
    def __init__(self, store: FakeCallStore):
        self.store = store

    def _item(self, row: dict) -> QueueItem:
        return QueueItem(
            id=row["id"],
            customer_id=row["customer_id"],
            kind=row["call_type"],
            scheduled_for=row["scheduled_for"],
            status=row["status"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            error_message=row["error_message"],
            provider_call_id=row["provider_call_id"],
        )

    async def enqueue(self, customer_id, kind, scheduled_for, *, max_attempts=3, connection=None):
        if self.store.active_items(customer_id, kind):
            return False
        self.store.add_queue_item(customer_id, kind, scheduled_for, max_attempts=max_attempts)
        return True

    async def claim_due_batch(self, connection, *, window_start, window_end, now, limit):
        due = sorted(
            (
                row
                for row in self.store.queue.values()
                if row["status"] in ("pending", "retrying")
                and window_start <= row["scheduled_for"] <= window_end
                and (row["status"] == "pending" or row["scheduled_for"] <= now)
                and row["attempts"] < row["max_attempts"]
                and row["id"] not in self.store.locks
            ),
            key=lambda row: (row["scheduled_for"], row["id"]),
        )[:limit]
        for row in due:
            self.store.locks[row["id"]] = connection
        # Yield so overlapping drains interleave like separate sessions
        await asyncio.sleep(0)
        return [self._item(row) for row in due]

    async def expire_stale_items(self, window_start, *, connection=None):
        expired = 0
        for row in self.store.queue.values():
            if (
                row["status"] in ("pending", "retrying")
                and row["scheduled_for"] < window_start
                and row["id"] not in self.store.locks
            ):
                row.update(status="failed", error_message="Expired")
                expired += 1
        return expired

    async def mark_processing(self, item_id, *, connection=None):
        self.store.queue[item_id]["status"] = "processing"

    async def mark_completed(self, item_id, *, provider_call_id=None, note=None, connection=None):
        self.store.queue[item_id].update(
            status="completed", provider_call_id=provider_call_id, error_message=note
        )

    async def mark_retrying(self, item_id, *, attempts, retry_at, error_message, connection=None):
        self.store.queue[item_id].update(
            status="retrying", attempts=attempts, scheduled_for=retry_at, error_message=error_message
        )

    async def mark_failed(self, item_id, *, attempts, error_message, connection=None):
        self.store.queue[item_id].update(
            status="failed", attempts=attempts, error_message=error_message
        )

    async def cancel_waiting(self, customer_id, kind, *, note, connection=None):
        cancelled = 0
        for row in self.store.active_items(customer_id, kind):
            if row["status"] in ("pending", "retrying"):
                row.update(status="completed", error_message=note)
                cancelled += 1
        return cancelled

    async def count_by_status(self, *, connection=None):
        counts: dict[str, int] = {}
        for row in self.store.queue.values():
            counts[row["status"]] = counts.get(row["status"], 0) + 1
        return counts


class FakeCallLogRepository:
    def __init__(self, store: FakeCallStore):
        self.store = store
        self.locked_calls: list[str] = []

    async def lock_call(self, provider_call_id, connection):
        self.locked_calls.append(provider_call_id)

    async def get_latest_for_call(self, provider_call_id, *, connection=None):
        rows = [row for row in self.store.logs if row["provider_call_id"] == provider_call_id]
        if not rows:
            return None
        row = rows[-1]
        return CallLogEntry(
            id=row["id"],
            customer_id=row["customer_id"],
            kind=row["call_type"],
            provider_call_id=row["provider_call_id"],
            status=row["status"],
            duration_seconds=row["duration_seconds"],
            transcript=row["transcript"],
            error_message=row["error_message"],
        )

    async def log_call(
        self,
        customer_id,
        kind,
        status,
        *,
        provider_call_id=None,
        error_message=None,
        metadata=None,
        connection=None,
    ):
        row = self.store.add_log(
            customer_id,
            kind,
            status,
            provider_call_id,
            error_message=error_message,
            metadata=metadata or {},
        )
        return row["id"]

    async def update_outcome(
        self,
        provider_call_id,
        *,
        customer_id,
        kind,
        status,
        transcript,
        duration_seconds,
        connection=None,
    ):
        rows = [row for row in self.store.logs if row["provider_call_id"] == provider_call_id]
        if not rows:
            await self.log_call(customer_id, kind, status, provider_call_id=provider_call_id)
            rows = [self.store.logs[-1]]
        for row in rows:
            row.update(status=status, transcript=transcript, duration_seconds=duration_seconds)


class StubCallProvider:
    """Call provider double that counts dial attempts."""

    def __init__(self, results: list[PlaceCallResult] | None = None):
        self.results = list(results or [])
        self.specs: list[CallSpec] = []
        self._ids = itertools.count(1)

    @property
    def call_count(self) -> int:
        return len(self.specs)

    async def place_call(self, spec: CallSpec) -> PlaceCallResult:
        self.specs.append(spec)
        # Let concurrent drains run while this "request" is in flight
        await asyncio.sleep(0)
        if self.results:
            return self.results.pop(0)
        return PlaceCallResult.ok(f"call-{next(self._ids)}", 201)


async def no_context_summary(customer_id: int) -> str:
    return ""


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        DEFAULT_TIMEZONE="America/New_York",
        VAPI_API_KEY="test-key",
        VAPI_PHONE_NUMBER_ID="phone-123",
        CRON_SECRET="cron-secret",
    )


@pytest.fixture
def call_store():
    return FakeCallStore()


@pytest.fixture
def fake_customers(call_store):
    return FakeCustomerRepository(call_store)


@pytest.fixture
def fake_queue(call_store):
    return FakeCallQueueRepository(call_store)


@pytest.fixture
def fake_call_logs(call_store):
    return FakeCallLogRepository(call_store)


@pytest.fixture
def stub_provider():
    return StubCallProvider()


@pytest.fixture
def cron_auth_override():
    def _apply(app):
        app.dependency_overrides[cron_auth_dependency] = lambda: None

    return _apply


def utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=UTC)


def today_of(moment: datetime) -> date:
    return moment.astimezone(UTC).date()
