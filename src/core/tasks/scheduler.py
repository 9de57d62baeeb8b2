"""Recurring job scheduler.

Enqueues jobs on cron-based or interval-based schedules, e.g. hourly usage
limit checks. Timers are process-local; the jobs they produce go through the
shared queue like any other job.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from src.core.job_queue.core import (
    JobQueueError,
    utcnow,
    validate_job_type,
    validate_payload,
)
from src.core.job_queue.queue import JobQueue, coerce_options
from src.utils.metrics import recurring_jobs_skipped_total

logger = logging.getLogger(__name__)


@dataclass
class CronSchedule:
    """Cron-like schedule definition.

    Supports: minute, hour, day_of_month, month, day_of_week
    """

    minute: str = "*"
    hour: str = "*"
    day_of_month: str = "*"
    month: str = "*"
    day_of_week: str = "*"

    def __post_init__(self) -> None:
        for name in ("minute", "hour", "day_of_month", "month", "day_of_week"):
            pattern = str(getattr(self, name)).strip()
            setattr(self, name, pattern)
            try:
                for part in pattern.split(","):
                    self._matches_field(part, 0)
            except ValueError as e:
                raise ValueError(f"Invalid cron field {name}={pattern!r}: {e}") from e

    def matches(self, dt: datetime) -> bool:
        """Check if datetime matches the schedule."""
        if not self._matches_field(self.minute, dt.minute):
            return False
        if not self._matches_field(self.hour, dt.hour):
            return False
        if not self._matches_field(self.day_of_month, dt.day):
            return False
        if not self._matches_field(self.month, dt.month):
            return False
        if not self._matches_field(self.day_of_week, dt.weekday()):
            return False
        return True

    def _matches_field(self, pattern: str, value: int) -> bool:
        """Check if a value matches a cron pattern."""
        if pattern == "*":
            return True

        # Lists like "1,3,5" (items may be ranges)
        if "," in pattern:
            return any(self._matches_field(part, value) for part in pattern.split(","))

        # Steps like "*/5", "0-30/10" or "5/15"
        base, has_step, step_text = pattern.partition("/")
        step = int(step_text) if has_step else 1
        if step <= 0:
            raise ValueError("step must be positive")

        if base == "*":
            start, end = 0, value
        elif "-" in base:
            low, high = base.split("-", 1)
            start, end = int(low), int(high)
            if start > end:
                raise ValueError("range start is after its end")
        else:
            start = int(base)
            end = value if has_step else start

        return start <= value <= end and (value - start) % step == 0

    def next_after(self, dt: datetime) -> Optional[datetime]:
        """First matching minute strictly after ``dt`` (searches 31 days)."""
        next_time = dt.replace(second=0, microsecond=0)
        for _ in range(60 * 24 * 31):
            next_time += timedelta(minutes=1)
            if self.matches(next_time):
                return next_time
        return None

    @classmethod
    def every_minute(cls) -> "CronSchedule":
        return cls()

    @classmethod
    def every_hour(cls) -> "CronSchedule":
        return cls(minute="0")

    @classmethod
    def daily(cls, hour: int = 0, minute: int = 0) -> "CronSchedule":
        return cls(minute=str(minute), hour=str(hour))

    @classmethod
    def weekly(cls, day_of_week: int = 0, hour: int = 0) -> "CronSchedule":
        return cls(minute="0", hour=str(hour), day_of_week=str(day_of_week))


@dataclass
class IntervalSchedule:
    """Interval-based schedule definition."""

    seconds: float = 0
    minutes: int = 0
    hours: int = 0
    days: int = 0

    @property
    def total_seconds(self) -> float:
        return self.seconds + self.minutes * 60 + self.hours * 3600 + self.days * 86400

    @classmethod
    def every(cls, **kwargs: Any) -> "IntervalSchedule":
        return cls(**kwargs)


class ScheduleType(str, Enum):
    """Type of schedule."""

    CRON = "cron"
    INTERVAL = "interval"


Schedule = Union[CronSchedule, IntervalSchedule]
IntervalArg = Union[CronSchedule, IntervalSchedule, timedelta, int, float]


def _to_schedule(interval: IntervalArg) -> Schedule:
    if isinstance(interval, (CronSchedule, IntervalSchedule)):
        schedule = interval
    elif isinstance(interval, timedelta):
        schedule = IntervalSchedule(seconds=interval.total_seconds())
    elif isinstance(interval, (int, float)) and not isinstance(interval, bool):
        schedule = IntervalSchedule(seconds=float(interval))
    else:
        raise TypeError(f"Unsupported schedule: {interval!r}")

    if isinstance(schedule, IntervalSchedule) and schedule.total_seconds <= 0:
        raise ValueError("Interval must be positive")
    return schedule


@dataclass
class RecurringJob:
    """A recurring job definition."""

    schedule_id: str
    name: str
    job_type: str
    payload: Dict[str, Any]
    schedule: Schedule
    max_attempts: Optional[int] = None
    priority: int = 0
    skip_if_active: bool = True
    enabled: bool = True
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    run_count: int = 0
    skipped_count: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def schedule_type(self) -> ScheduleType:
        if isinstance(self.schedule, CronSchedule):
            return ScheduleType.CRON
        return ScheduleType.INTERVAL

    @property
    def idempotency_key(self) -> str:
        return f"recurring:{self.name}"


class RecurringJobScheduler:
    """Enqueues jobs on a timer.

    Before each enqueue the scheduler checks for a pending or running job
    from the same schedule and skips the run if one exists, so a slow job
    cannot pile up copies of itself. The store's unique index on active
    idempotency keys closes the race between two scheduler processes.
    """

    def __init__(
        self,
        queue: JobQueue,
        tick_seconds: float = 1.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._queue = queue
        self._tick = tick_seconds
        self._clock = clock
        self._schedules: Dict[str, RecurringJob] = {}
        self._running = False
        self._scheduler_task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    def schedule_recurring(
        self,
        job_type: str,
        payload: Optional[Dict[str, Any]],
        interval: IntervalArg,
        *,
        name: Optional[str] = None,
        max_attempts: Optional[int] = None,
        priority: int = 0,
        skip_if_active: bool = True,
        run_immediately: bool = False,
    ) -> str:
        """Register a recurring job.

        Args:
            job_type: Handler type of the produced jobs
            payload: Payload of every produced job
            interval: Seconds, timedelta, IntervalSchedule or CronSchedule
            name: Unique schedule name (defaults to job_type)
            max_attempts: Retry budget of produced jobs
            priority: Priority of produced jobs
            skip_if_active: Skip a run while a previous job is pending/running
            run_immediately: First run on the next tick instead of after one interval

        Returns:
            Schedule ID
        """
        validate_job_type(job_type)
        clean_payload = validate_payload(payload)
        coerce_options({"max_attempts": max_attempts, "priority": priority})
        schedule = _to_schedule(interval)
        name = name or job_type

        if any(entry.name == name for entry in self._schedules.values()):
            raise ValueError(f"A recurring schedule named '{name}' already exists")

        entry = RecurringJob(
            schedule_id=str(uuid.uuid4()),
            name=name,
            job_type=job_type,
            payload=clean_payload,
            schedule=schedule,
            max_attempts=max_attempts,
            priority=priority,
            skip_if_active=skip_if_active,
        )
        now = self._clock()
        entry.next_run = now if run_immediately else self._calculate_next_run(entry, now)

        self._schedules[entry.schedule_id] = entry
        logger.info(f"Scheduled recurring job '{name}' ({job_type}), next run: {entry.next_run}")
        return entry.schedule_id

    def _calculate_next_run(self, entry: RecurringJob, now: datetime) -> Optional[datetime]:
        if isinstance(entry.schedule, IntervalSchedule):
            base = entry.last_run or now
            return base + timedelta(seconds=entry.schedule.total_seconds)
        return entry.schedule.next_after(now)

    def unschedule(self, schedule_id: str) -> bool:
        if schedule_id in self._schedules:
            del self._schedules[schedule_id]
            logger.info(f"Unscheduled recurring job {schedule_id}")
            return True
        return False

    def get_schedule(self, schedule_id: str) -> Optional[RecurringJob]:
        return self._schedules.get(schedule_id)

    def list_schedules(self) -> List[RecurringJob]:
        return list(self._schedules.values())

    def enable(self, schedule_id: str) -> bool:
        entry = self._schedules.get(schedule_id)
        if entry:
            entry.enabled = True
            return True
        return False

    def disable(self, schedule_id: str) -> bool:
        entry = self._schedules.get(schedule_id)
        if entry:
            entry.enabled = False
            return True
        return False

    async def start(self) -> None:
        """Start the scheduler loop."""
        if self._running:
            return

        self._running = True
        self._scheduler_task = asyncio.create_task(self._run_loop())
        logger.info("Recurring job scheduler started")

    async def stop(self) -> None:
        """Stop the loop and clear every timer."""
        self._running = False

        if self._scheduler_task:
            self._scheduler_task.cancel()
            try:
                await self._scheduler_task
            except asyncio.CancelledError:
                pass
            self._scheduler_task = None

        self._schedules.clear()
        logger.info("Recurring job scheduler stopped")

    async def fire_due(self, now: Optional[datetime] = None) -> List[str]:
        """Enqueue every due schedule. Returns the ids of enqueued jobs."""
        now = now or self._clock()
        due = [
            entry for entry in self._schedules.values()
            if entry.enabled and entry.next_run and entry.next_run <= now
        ]

        enqueued = []
        for entry in due:
            try:
                job_id = await self._fire(entry)
            except (JobQueueError, ValueError) as e:
                logger.error(f"Recurring job '{entry.name}' failed to fire: {e}")
                job_id = None
            entry.last_run = now
            entry.next_run = self._calculate_next_run(entry, now)
            if job_id:
                enqueued.append(job_id)
        return enqueued

    async def _fire(self, entry: RecurringJob) -> Optional[str]:
        if entry.skip_if_active:
            active = await self._queue.store.find_active(entry.job_type, entry.idempotency_key)
            if active is not None:
                entry.skipped_count += 1
                recurring_jobs_skipped_total.labels(type=entry.job_type).inc()
                logger.info(
                    f"Skipping recurring job '{entry.name}': job {active.id} is still "
                    f"{active.status.value}"
                )
                return None

        options: Dict[str, Any] = {"priority": entry.priority}
        if entry.max_attempts is not None:
            options["max_attempts"] = entry.max_attempts
        if entry.skip_if_active:
            options["idempotency_key"] = entry.idempotency_key

        job_id = await self._queue.enqueue(entry.job_type, entry.payload, options)

        entry.run_count += 1
        return job_id

    async def _run_loop(self) -> None:
        """Main scheduler loop."""
        while self._running:
            try:
                await self.fire_due()
                await asyncio.sleep(self._tick)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Scheduler error: {e}")
                await asyncio.sleep(5)
