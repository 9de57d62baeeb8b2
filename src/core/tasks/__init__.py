"""Timed producers for the job queue."""

from src.core.tasks.scheduler import (
    CronSchedule,
    IntervalSchedule,
    RecurringJob,
    RecurringJobScheduler,
    ScheduleType,
)

__all__ = [
    "CronSchedule",
    "IntervalSchedule",
    "RecurringJob",
    "RecurringJobScheduler",
    "ScheduleType",
]
