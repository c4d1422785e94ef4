"""
Tests for the call queue processor.

Repositories are in-memory fakes that emulate the database guarantees the
processor relies on (SKIP LOCKED claiming, conditional last_call_date stamp).
"""

import asyncio
import time
from datetime import date, timedelta

import pytest
from conftest import StubCallProvider, no_context_summary, utc

from app.db.helpers import DatabaseError
from app.models.domain.call_domain import PlaceCallResult
from app.services.calls.queue_processor import DrainMetrics, QueueProcessor
from app.services.scheduling.call_scheduler import CallScheduler

NOW = utc(2024, 6, 3, 11, 5)  # 07:05 in New York
TODAY = date(2024, 6, 3)


def make_processor(settings, store, customers, queue, call_logs, provider):
    return QueueProcessor(
        provider,
        config=settings,
        transaction_factory=store.transaction,
        customers=customers,
        queue=queue,
        call_logs=call_logs,
        scheduler=CallScheduler(settings, customers=customers, queue=queue),
        context_summary=no_context_summary,
    )


@pytest.fixture
def processor(test_settings, call_store, fake_customers, fake_queue, fake_call_logs, stub_provider):
    return make_processor(
        test_settings, call_store, fake_customers, fake_queue, fake_call_logs, stub_provider
    )


class TestDrainSuccess:
    @pytest.mark.asyncio
    async def test_daily_call_marks_day_and_reschedules(self, processor, call_store, stub_provider):
        customer = call_store.add_customer(1)
        item = call_store.add_queue_item(1, "daily", utc(2024, 6, 3, 11, 0))

        metrics = await processor.drain(NOW)

        assert metrics["processed"] == 1
        assert metrics["succeeded"] == 1
        assert stub_provider.call_count == 1
        assert customer["last_call_date"] == TODAY
        assert customer["next_call_at"] == utc(2024, 6, 4, 11, 0)
        assert customer["last_call_id"] == "call-1"
        assert item["status"] == "completed"
        assert item["provider_call_id"] == "call-1"
        assert [(log["status"], log["provider_call_id"]) for log in call_store.logs] == [
            ("initiated", "call-1")
        ]

    @pytest.mark.asyncio
    async def test_welcome_call_marks_welcome_done(self, processor, call_store, stub_provider):
        customer = call_store.add_customer(2, welcome_call_done=False)
        call_store.add_queue_item(2, "welcome", utc(2024, 6, 3, 11, 0))

        await processor.drain(NOW)

        assert customer["welcome_call_done"] is True
        assert customer["last_call_date"] is None
        assert customer["next_call_at"] == utc(2024, 6, 4, 11, 0)
        spec = stub_provider.specs[0]
        assert spec.kind == "welcome"
        assert spec.max_duration_seconds == 60

    @pytest.mark.asyncio
    async def test_successful_dial_resets_failure_counter(self, processor, call_store):
        customer = call_store.add_customer(1, consecutive_failures=2, call_state="failed")
        call_store.add_queue_item(1, "daily", utc(2024, 6, 3, 11, 0))

        await processor.drain(NOW)

        assert customer["consecutive_failures"] == 0
        assert customer["call_state"] == "active"

    @pytest.mark.asyncio
    async def test_items_outside_window_are_left_alone(self, processor, call_store, stub_provider):
        call_store.add_customer(1)
        later = call_store.add_queue_item(1, "daily", utc(2024, 6, 3, 13, 0))

        metrics = await processor.drain(NOW)

        assert metrics["processed"] == 0
        assert later["status"] == "pending"
        assert stub_provider.call_count == 0


class TestConcurrentDrains:
    @pytest.mark.asyncio
    async def test_overlapping_drains_dial_once(self, processor, call_store, stub_provider):
        call_store.add_customer(1)
        call_store.add_queue_item(1, "daily", utc(2024, 6, 3, 11, 0))

        first, second = await asyncio.gather(processor.drain(NOW), processor.drain(NOW))

        assert stub_provider.call_count == 1
        assert sorted([first["processed"], second["processed"]]) == [0, 1]

    @pytest.mark.asyncio
    async def test_duplicate_rows_for_one_customer_dial_once(
        self, test_settings, call_store, fake_customers, fake_queue, fake_call_logs, stub_provider
    ):
        customer = call_store.add_customer(1)
        first_item = call_store.add_queue_item(1, "daily", utc(2024, 6, 3, 11, 0))
        second_item = call_store.add_queue_item(1, "daily", utc(2024, 6, 3, 11, 1))
        drains = [
            make_processor(
                test_settings, call_store, fake_customers, fake_queue, fake_call_logs, stub_provider
            )
            for _ in range(2)
        ]
        for drain in drains:
            drain.batch_size = 1

        await asyncio.gather(*(drain.drain(NOW) for drain in drains))

        assert stub_provider.call_count == 1
        assert customer["last_call_date"] == TODAY
        statuses = {first_item["status"], second_item["status"]}
        assert statuses == {"completed"}
        skipped = [row for row in (first_item, second_item) if row["provider_call_id"] is None]
        assert len(skipped) == 1
        assert skipped[0]["error_message"] == "Skipped: already called today"


class TestSkips:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kind,fields,reason",
        [
            ("daily", {"last_call_date": TODAY}, "already called today"),
            ("daily", {"welcome_call_done": False}, "welcome call not done yet"),
            ("welcome", {"welcome_call_done": True}, "welcome call already done"),
            ("daily", {"call_state": "disabled"}, "calling disabled"),
            ("daily", {"payment_state": "Refunded"}, "customer no longer eligible"),
            ("daily", {"phone_validated": False}, "customer no longer eligible"),
        ],
    )
    async def test_ineligible_item_is_completed_without_dialing(
        self, processor, call_store, stub_provider, kind, fields, reason
    ):
        call_store.add_customer(1, **fields)
        item = call_store.add_queue_item(1, kind, utc(2024, 6, 3, 11, 0))

        metrics = await processor.drain(NOW)

        assert stub_provider.call_count == 0
        assert metrics["skipped"] == 1
        assert item["status"] == "completed"
        assert item["error_message"] == f"Skipped: {reason}"

    @pytest.mark.asyncio
    async def test_missing_customer_is_skipped(self, processor, call_store, stub_provider):
        item = call_store.add_queue_item(99, "daily", utc(2024, 6, 3, 11, 0))

        await processor.drain(NOW)

        assert item["status"] == "completed"
        assert stub_provider.call_count == 0


class TestFailures:
    @pytest.mark.asyncio
    async def test_transient_failure_schedules_retry_and_releases_day(
        self, processor, call_store, stub_provider
    ):
        customer = call_store.add_customer(1, last_call_date=date(2024, 6, 2))
        item = call_store.add_queue_item(1, "daily", utc(2024, 6, 3, 11, 0))
        stub_provider.results = [PlaceCallResult.transient("Vapi API error 503", 503)]

        metrics = await processor.drain(NOW)

        assert metrics["retried"] == 1
        assert item["status"] == "retrying"
        assert item["attempts"] == 1
        assert item["scheduled_for"] == NOW + timedelta(minutes=15)
        assert customer["last_call_date"] == date(2024, 6, 2)
        assert call_store.logs[-1]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_backoff_ladder_then_permanent_failure(self, processor, call_store, stub_provider):
        customer = call_store.add_customer(1)
        item = call_store.add_queue_item(1, "daily", utc(2024, 6, 3, 11, 0))
        stub_provider.results = [PlaceCallResult.transient("timeout")] * 3

        await processor.drain(NOW)
        assert item["scheduled_for"] == NOW + timedelta(minutes=15)

        # Not yet due: the backoff has not elapsed
        early = await processor.drain(NOW + timedelta(minutes=5))
        assert early["processed"] == 0

        second_run = NOW + timedelta(minutes=15)
        await processor.drain(second_run)
        assert item["attempts"] == 2
        assert item["scheduled_for"] == second_run + timedelta(minutes=30)

        third_run = second_run + timedelta(minutes=30)
        metrics = await processor.drain(third_run)

        assert metrics["permanently_failed"] == 1
        assert item["status"] == "failed"
        assert item["attempts"] == 3
        assert stub_provider.call_count == 3
        assert customer["consecutive_failures"] == 1
        assert customer["call_state"] == "failed"
        assert customer["last_call_date"] == TODAY
        assert customer["next_call_at"] == utc(2024, 6, 4, 11, 0)

    @pytest.mark.asyncio
    async def test_circuit_breaker_disables_customer(self, processor, call_store, stub_provider):
        customer = call_store.add_customer(1, consecutive_failures=3, call_state="failed")
        call_store.add_queue_item(1, "daily", utc(2024, 6, 3, 11, 0), attempts=2)
        stub_provider.results = [PlaceCallResult.permanent("Vapi API error 400", 400)]

        await processor.drain(NOW)

        assert customer["consecutive_failures"] == 4
        assert customer["call_state"] == "disabled"

    @pytest.mark.asyncio
    async def test_welcome_failure_does_not_touch_schedule(self, processor, call_store, stub_provider):
        customer = call_store.add_customer(2, welcome_call_done=False)
        call_store.add_queue_item(2, "welcome", utc(2024, 6, 3, 11, 0), attempts=2)
        stub_provider.results = [PlaceCallResult.permanent("invalid number", 400)]

        await processor.drain(NOW)

        assert customer["welcome_call_done"] is False
        assert customer["next_call_at"] is None
        assert customer["last_call_date"] is None

    @pytest.mark.asyncio
    async def test_slow_provider_counts_as_failure(self, processor, call_store):
        class SlowProvider(StubCallProvider):
            async def place_call(self, spec):
                self.specs.append(spec)
                await asyncio.sleep(1)
                return PlaceCallResult.ok("late-call")

        processor.provider = SlowProvider()
        processor.provider_timeout = 0.01
        call_store.add_customer(1)
        item = call_store.add_queue_item(1, "daily", utc(2024, 6, 3, 11, 0))

        await processor.drain(NOW)

        assert item["status"] == "retrying"
        assert "did not respond" in item["error_message"]

    @pytest.mark.asyncio
    async def test_provider_exception_counts_as_failure(self, processor, call_store):
        class BrokenProvider(StubCallProvider):
            async def place_call(self, spec):
                raise RuntimeError("socket closed")

        processor.provider = BrokenProvider()
        call_store.add_customer(1)
        item = call_store.add_queue_item(1, "daily", utc(2024, 6, 3, 11, 0))

        await processor.drain(NOW)

        assert item["status"] == "retrying"
        assert "socket closed" in item["error_message"]


class TestItemIsolation:
    @pytest.mark.asyncio
    async def test_error_before_dial_is_recorded_and_batch_continues(
        self, processor, call_store, fake_customers, stub_provider
    ):
        call_store.add_customer(1)
        call_store.add_customer(2)
        broken = call_store.add_queue_item(1, "daily", utc(2024, 6, 3, 11, 0))
        healthy = call_store.add_queue_item(2, "daily", utc(2024, 6, 3, 11, 1))
        original_get = fake_customers.get_call_target

        async def flaky_get_call_target(customer_id, *, connection=None):
            if customer_id == 1:
                raise DatabaseError("deadlock detected", operation="fetch_one")
            return await original_get(customer_id, connection=connection)

        fake_customers.get_call_target = flaky_get_call_target

        metrics = await processor.drain(NOW)

        assert metrics["processed"] == 2
        assert broken["status"] == "retrying"
        assert "deadlock detected" in broken["error_message"]
        assert healthy["status"] == "completed"
        assert stub_provider.call_count == 1

    @pytest.mark.asyncio
    async def test_error_after_dial_still_blocks_redial(
        self, processor, call_store, fake_customers, stub_provider
    ):
        customer = call_store.add_customer(1)
        item = call_store.add_queue_item(1, "daily", utc(2024, 6, 3, 11, 0))
        fake_customers.fail_on.add("record_dial_success")

        metrics = await processor.drain(NOW)

        assert metrics["succeeded"] == 1
        assert item["status"] == "completed"
        assert item["provider_call_id"] == "call-1"
        assert customer["last_call_date"] == TODAY

        await processor.drain(NOW + timedelta(minutes=5))
        assert stub_provider.call_count == 1

    @pytest.mark.asyncio
    async def test_welcome_flag_not_persisting_is_reported(
        self, processor, call_store, fake_customers
    ):
        call_store.add_customer(2, welcome_call_done=False)
        item = call_store.add_queue_item(2, "welcome", utc(2024, 6, 3, 11, 0))
        fake_customers.fail_on.add("mark_welcome_done")

        metrics = await processor.drain(NOW)

        assert item["status"] == "completed"
        assert "welcome_call_done did not persist" in item["error_message"]
        assert metrics["errors_count"] == 1


class TestDrainHousekeeping:
    @pytest.mark.asyncio
    async def test_stale_items_are_expired_and_free_the_slot(self, processor, call_store, fake_queue):
        call_store.add_customer(1, next_call_at=utc(2024, 6, 4, 11, 0))
        stale = call_store.add_queue_item(1, "daily", utc(2024, 6, 2, 11, 0))

        metrics = await processor.drain(NOW)

        assert metrics["expired"] == 1
        assert stale["status"] == "failed"
        assert await fake_queue.enqueue(1, "daily", utc(2024, 6, 4, 11, 0)) is True

    @pytest.mark.asyncio
    async def test_spent_budget_defers_claimed_items(self, processor, call_store, stub_provider):
        call_store.add_customer(1)
        item = call_store.add_queue_item(1, "daily", utc(2024, 6, 3, 11, 0))

        metrics = await processor.drain(NOW, deadline=time.monotonic() - 1)

        assert metrics["deferred"] == 1
        assert metrics["processed"] == 0
        assert item["status"] == "pending"
        assert call_store.locks == {}
        assert stub_provider.call_count == 0


class TestDrainMetrics:
    def test_to_dict_reports_failed_as_retried_plus_permanent(self):
        metrics = DrainMetrics()
        metrics.retried = 2
        metrics.permanently_failed = 1
        metrics.finalize()

        summary = metrics.to_dict()

        assert summary["failed"] == 3
        assert summary["job_run"] == "call_queue_drain"
        assert summary["total_duration_seconds"] >= 0
