"""Retry and backoff policy for failed jobs."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from src.core.config import Settings, get_settings
from src.core.job_queue.core import Job, JobOutcome, JobStore
from src.utils.metrics import (
    job_stale_outcomes_total,
    jobs_failed_total,
    jobs_retried_total,
)

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """Capped exponential backoff.

    Jitter only ever lengthens a delay, so the delay after ``n`` failures is
    never shorter than the un-jittered delay after ``n - 1`` failures.
    """

    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 300.0
    multiplier: float = 2.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        if self.base_delay_seconds <= 0:
            raise ValueError("base_delay_seconds must be positive")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        if self.multiplier <= 1:
            raise ValueError("multiplier must be greater than 1")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "RetryPolicy":
        settings = settings or get_settings()
        return cls(
            base_delay_seconds=settings.JOB_RETRY_BASE_DELAY_SECONDS,
            max_delay_seconds=settings.JOB_RETRY_MAX_DELAY_SECONDS,
            multiplier=settings.JOB_RETRY_MULTIPLIER,
            jitter=settings.JOB_RETRY_JITTER,
        )

    def base_delay(self, attempts: int) -> float:
        """Delay without jitter after ``attempts`` executions."""
        exponent = max(0, attempts - 1)
        try:
            delay = self.base_delay_seconds * (self.multiplier ** exponent)
        except OverflowError:
            return self.max_delay_seconds
        return min(delay, self.max_delay_seconds)

    def compute_delay(self, attempts: int, rng: Callable[[], float] = random.random) -> float:
        delay = self.base_delay(attempts)
        if self.jitter:
            delay += delay * self.jitter * rng()
        return min(delay, self.max_delay_seconds)

    def next_scheduled_at(self, attempts: int, now: datetime) -> datetime:
        return now + timedelta(seconds=self.compute_delay(attempts))


class RetryController:
    """Decides between rescheduling and terminal failure."""

    def __init__(self, store: JobStore, policy: Optional[RetryPolicy] = None):
        self._store = store
        self._policy = policy or RetryPolicy()

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def handle_failure(self, job: Job, error: str, now: datetime) -> JobOutcome:
        """Record a failed attempt of a claimed job.

        ``job.attempts`` already counts the attempt that just failed. Returns
        ``JobOutcome.STALE`` when the row was no longer running (for example
        reset by the reaper) and nothing was written.
        """
        if job.attempts >= job.max_attempts:
            if not await self._store.mark_failed(job.id, error, None, now=now):
                return stale_outcome(job)
            jobs_failed_total.labels(type=job.type, terminal="true").inc()
            logger.warning(
                f"Job {job.id} ({job.type}) failed permanently after "
                f"{job.attempts}/{job.max_attempts} attempt(s)"
            )
            return JobOutcome.FAILED

        next_at = self._policy.next_scheduled_at(job.attempts, now)
        if not await self._store.mark_failed(job.id, error, next_at, now=now):
            return stale_outcome(job)
        jobs_failed_total.labels(type=job.type, terminal="false").inc()
        jobs_retried_total.labels(type=job.type).inc()
        logger.info(
            f"Job {job.id} ({job.type}) attempt {job.attempts}/{job.max_attempts} "
            f"failed, retrying at {next_at.isoformat()}"
        )
        return JobOutcome.RETRY_SCHEDULED


def stale_outcome(job: Job) -> JobOutcome:
    """Meter a failure that could not be written because the row moved on."""
    job_stale_outcomes_total.labels(type=job.type).inc()
    logger.warning(
        f"Job {job.id} ({job.type}) was no longer running; failure of attempt "
        f"{job.attempts} discarded"
    )
    return JobOutcome.STALE
