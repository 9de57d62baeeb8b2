"""Tests for src/core/tasks/scheduler.py.

Covers:
- CronSchedule matching and next-run calculation
- Interval normalization
- Recurring enqueue with skip-if-active and per-entry failure isolation
- Scheduler lifecycle
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from src.core.job_queue.backends import InMemoryJobStore
from src.core.job_queue.core import JobValidationError, StorageError, utcnow
from src.core.job_queue.queue import JobQueue
from src.core.tasks.scheduler import (
    CronSchedule,
    IntervalSchedule,
    RecurringJobScheduler,
    ScheduleType,
)


class TestCronSchedule:
    """Tests for CronSchedule."""

    def test_every_minute_matches_anything(self):
        assert CronSchedule.every_minute().matches(datetime(2026, 3, 4, 5, 6, tzinfo=timezone.utc))

    def test_fields(self):
        schedule = CronSchedule(minute="*/15", hour="9-17", day_of_week="0,2,4")
        monday_10_30 = datetime(2026, 3, 2, 10, 30, tzinfo=timezone.utc)

        assert schedule.matches(monday_10_30)
        assert not schedule.matches(monday_10_30.replace(minute=31))
        assert not schedule.matches(monday_10_30.replace(hour=18))
        assert not schedule.matches(monday_10_30 + timedelta(days=1))

    def test_next_after(self):
        schedule = CronSchedule.daily(hour=3, minute=0)
        now = datetime(2026, 3, 2, 10, 30, 15, tzinfo=timezone.utc)

        assert schedule.next_after(now) == datetime(2026, 3, 3, 3, 0, tzinfo=timezone.utc)

    def test_every_hour(self):
        now = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
        assert CronSchedule.every_hour().next_after(now) == now + timedelta(hours=1)

    def test_range_with_step(self):
        schedule = CronSchedule(minute="0-30/10")
        base = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)

        matching = [m for m in range(60) if schedule.matches(base.replace(minute=m))]

        assert matching == [0, 10, 20, 30]

    def test_start_with_step(self):
        schedule = CronSchedule(minute="5/20")
        base = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)

        matching = [m for m in range(60) if schedule.matches(base.replace(minute=m))]

        assert matching == [5, 25, 45]

    @pytest.mark.parametrize(
        "fields",
        [
            {"minute": "*/0"},
            {"minute": "30-10"},
            {"hour": "9-"},
            {"hour": "0,x"},
            {"day_of_week": "mon"},
            {"month": "1-12/"},
        ],
    )
    def test_invalid_fields_rejected_at_construction(self, fields):
        with pytest.raises(ValueError, match="Invalid cron field"):
            CronSchedule(**fields)


class TestIntervalSchedule:
    def test_total_seconds(self):
        assert IntervalSchedule(seconds=5, minutes=1, hours=1).total_seconds == 3665


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def queue(store):
    return JobQueue(store, default_max_attempts=3)


@pytest.fixture
def scheduler(queue):
    return RecurringJobScheduler(queue)


class TestScheduleRecurring:
    """Tests for schedule_recurring and schedule management."""

    def test_interval_forms(self, scheduler):
        """Test seconds, timedelta and schedule objects are all accepted."""
        a = scheduler.schedule_recurring("check_usage_limits", {}, 3600, name="a")
        b = scheduler.schedule_recurring("check_usage_limits", {}, timedelta(minutes=5), name="b")
        c = scheduler.schedule_recurring("cleanup_old_backups", {}, CronSchedule.daily(), name="c")

        assert scheduler.get_schedule(a).schedule.total_seconds == 3600
        assert scheduler.get_schedule(b).schedule.total_seconds == 300
        assert scheduler.get_schedule(c).schedule_type == ScheduleType.CRON
        assert len(scheduler.list_schedules()) == 3

    @pytest.mark.parametrize("interval", [0, -5, timedelta(0), IntervalSchedule()])
    def test_non_positive_interval(self, scheduler, interval):
        with pytest.raises(ValueError):
            scheduler.schedule_recurring("check_usage_limits", {}, interval)

    def test_bad_interval_type(self, scheduler):
        with pytest.raises(TypeError):
            scheduler.schedule_recurring("check_usage_limits", {}, "hourly")

    def test_invalid_job_type(self, scheduler):
        with pytest.raises(JobValidationError):
            scheduler.schedule_recurring("bad type", {}, 60)

    @pytest.mark.parametrize("options", [{"max_attempts": 0}, {"max_attempts": 101}, {"priority": -1}])
    def test_invalid_enqueue_options(self, scheduler, options):
        """Test options the queue would refuse are rejected at registration."""
        with pytest.raises(JobValidationError, match="Invalid enqueue options"):
            scheduler.schedule_recurring("check_usage_limits", {}, 60, **options)
        assert scheduler.list_schedules() == []

    def test_duplicate_name(self, scheduler):
        scheduler.schedule_recurring("check_usage_limits", {}, 60)

        with pytest.raises(ValueError, match="already exists"):
            scheduler.schedule_recurring("check_usage_limits", {}, 120)

    def test_unschedule(self, scheduler):
        schedule_id = scheduler.schedule_recurring("check_usage_limits", {}, 60)

        assert scheduler.unschedule(schedule_id) is True
        assert scheduler.unschedule(schedule_id) is False
        assert scheduler.list_schedules() == []

    def test_idempotency_key(self, scheduler):
        schedule_id = scheduler.schedule_recurring("check_usage_limits", {}, 60, name="usage")
        assert scheduler.get_schedule(schedule_id).idempotency_key == "recurring:usage"


class TestFireDue:
    """Tests for fire_due."""

    @pytest.mark.asyncio
    async def test_enqueues_when_due(self, scheduler, store):
        now = utcnow()
        schedule_id = scheduler.schedule_recurring(
            "check_usage_limits", {"scope": "all"}, 60, max_attempts=1, priority=4
        )

        assert await scheduler.fire_due(now + timedelta(seconds=30)) == []
        enqueued = await scheduler.fire_due(now + timedelta(seconds=61))

        assert len(enqueued) == 1
        job = await store.get_by_id(enqueued[0])
        assert job.type == "check_usage_limits"
        assert job.payload == {"scope": "all"}
        assert job.max_attempts == 1
        assert job.priority == 4
        assert job.idempotency_key == "recurring:check_usage_limits"
        assert scheduler.get_schedule(schedule_id).run_count == 1

    @pytest.mark.asyncio
    async def test_skips_while_previous_job_active(self, scheduler, store):
        """Test no second job is enqueued while the first is pending or running."""
        now = utcnow()
        schedule_id = scheduler.schedule_recurring("check_usage_limits", {}, 60)

        first = await scheduler.fire_due(now + timedelta(seconds=61))
        second = await scheduler.fire_due(now + timedelta(seconds=122))

        assert len(first) == 1
        assert second == []
        assert scheduler.get_schedule(schedule_id).skipped_count == 1

        claim_at = now + timedelta(seconds=130)
        await store.claim_batch(1, claim_at)
        await store.mark_completed(first[0], now=claim_at)

        third = await scheduler.fire_due(now + timedelta(seconds=183))
        assert len(third) == 1

    @pytest.mark.asyncio
    async def test_overlap_allowed_when_disabled(self, scheduler):
        now = utcnow()
        scheduler.schedule_recurring("check_usage_limits", {}, 60, skip_if_active=False)

        first = await scheduler.fire_due(now + timedelta(seconds=61))
        second = await scheduler.fire_due(now + timedelta(seconds=122))

        assert len(first) == len(second) == 1

    @pytest.mark.asyncio
    async def test_run_immediately(self, scheduler):
        scheduler.schedule_recurring("check_usage_limits", {}, 3600, run_immediately=True)

        assert len(await scheduler.fire_due()) == 1

    @pytest.mark.asyncio
    async def test_disabled_schedule_not_fired(self, scheduler):
        schedule_id = scheduler.schedule_recurring(
            "check_usage_limits", {}, 60, run_immediately=True
        )
        scheduler.disable(schedule_id)

        assert await scheduler.fire_due() == []
        scheduler.enable(schedule_id)
        assert len(await scheduler.fire_due()) == 1

    @pytest.mark.asyncio
    async def test_storage_error_is_not_fatal(self, queue):
        """Test a failed enqueue is logged and the schedule advances."""
        queue.enqueue = AsyncMock(side_effect=StorageError("Failed to insert job"))
        scheduler = RecurringJobScheduler(queue)
        now = utcnow()
        schedule_id = scheduler.schedule_recurring("check_usage_limits", {}, 60)

        assert await scheduler.fire_due(now + timedelta(seconds=61)) == []
        entry = scheduler.get_schedule(schedule_id)
        assert entry.run_count == 0
        assert entry.next_run > now + timedelta(seconds=61)

    @pytest.mark.asyncio
    async def test_broken_schedule_does_not_block_others(self, scheduler, store):
        """Test an entry whose enqueue is rejected still advances and later entries fire."""
        now = utcnow()
        broken_id = scheduler.schedule_recurring(
            "check_usage_limits", {}, 60, name="broken", run_immediately=True
        )
        healthy_id = scheduler.schedule_recurring(
            "check_usage_limits", {}, 60, name="healthy", run_immediately=True
        )
        scheduler.get_schedule(broken_id).max_attempts = 0

        enqueued = []
        for offset in (1, 62, 123):
            enqueued += await scheduler.fire_due(now + timedelta(seconds=offset))

        broken = scheduler.get_schedule(broken_id)
        healthy = scheduler.get_schedule(healthy_id)
        assert broken.run_count == 0
        assert broken.next_run > now + timedelta(seconds=123)
        assert healthy.run_count == 1
        assert healthy.skipped_count == 2
        assert enqueued == [(await store.find_active("check_usage_limits", "recurring:healthy")).id]
        assert (await store.count_by_status())["pending"] == 1


class TestSchedulerLifecycle:
    """Tests for start and stop."""

    @pytest.mark.asyncio
    async def test_loop_fires_due_jobs(self, queue, store):
        scheduler = RecurringJobScheduler(queue, tick_seconds=0.01)
        scheduler.schedule_recurring("check_usage_limits", {}, 3600, run_immediately=True)

        await scheduler.start()
        for _ in range(200):
            if (await store.count_by_status())["pending"]:
                break
            await asyncio.sleep(0.005)
        await scheduler.stop()

        assert (await store.count_by_status())["pending"] == 1

    @pytest.mark.asyncio
    async def test_stop_clears_timers(self, scheduler):
        scheduler.schedule_recurring("check_usage_limits", {}, 60)
        await scheduler.start()
        assert scheduler.is_running

        await scheduler.stop()

        assert not scheduler.is_running
        assert scheduler.list_schedules() == []
