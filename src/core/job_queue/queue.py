"""Enqueue and query API used by request handlers and the scheduler.

Example:
    >>> queue = JobQueue(store)
    >>> job_id = await queue.enqueue("rotate_key", {"key_id": "k1"}, {"max_attempts": 1})
    >>> status = await queue.get_job(job_id)
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional, Union

from pydantic import ValidationError

from src.core.config import get_settings
from src.core.job_queue.core import (
    MAX_SCHEDULE_AHEAD,
    EnqueueOptions,
    Job,
    JobPage,
    JobQuery,
    JobStore,
    JobValidationError,
    create_job,
    utcnow,
)
from src.utils.metrics import jobs_enqueued_total

logger = logging.getLogger(__name__)

OptionsArg = Union[EnqueueOptions, Mapping[str, Any], None]


def coerce_options(options: OptionsArg) -> EnqueueOptions:
    if options is None:
        return EnqueueOptions()
    if isinstance(options, EnqueueOptions):
        return options
    try:
        return EnqueueOptions.model_validate(dict(options))
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise JobValidationError(f"Invalid enqueue options: {problems}") from e


class JobQueue:
    """Producer-side facade over a ``JobStore``.

    Enqueueing never waits for execution; workers pick jobs up asynchronously.
    """

    def __init__(
        self,
        store: JobStore,
        default_max_attempts: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._default_max_attempts = (
            default_max_attempts or get_settings().JOB_DEFAULT_MAX_ATTEMPTS
        )
        self._clock = clock

    @property
    def store(self) -> JobStore:
        return self._store

    async def enqueue(
        self,
        job_type: str,
        payload: Optional[Dict[str, Any]] = None,
        options: OptionsArg = None,
    ) -> str:
        """Insert one pending job and return its id.

        Raises:
            JobValidationError: bad type, payload or options; nothing is stored.
            StorageError: the store rejected the insert.
        """
        opts = coerce_options(options)
        job = create_job(
            job_type,
            payload,
            opts,
            now=self._clock(),
            default_max_attempts=self._default_max_attempts,
        )
        return await self._insert(job)

    async def schedule(
        self,
        job_type: str,
        run_at: datetime,
        payload: Optional[Dict[str, Any]] = None,
        options: OptionsArg = None,
    ) -> str:
        """Insert a job that becomes due at ``run_at``."""
        opts = coerce_options(options)
        if opts.delay_seconds:
            raise JobValidationError("delay_seconds cannot be combined with run_at")
        if run_at.tzinfo is None:
            raise JobValidationError("run_at must be timezone-aware")

        now = self._clock()
        if run_at > now + MAX_SCHEDULE_AHEAD:
            raise JobValidationError("Cannot schedule jobs more than 1 year in the future")

        job = create_job(
            job_type,
            payload,
            opts,
            scheduled_at=run_at,
            now=now,
            default_max_attempts=self._default_max_attempts,
        )
        return await self._insert(job)

    async def _insert(self, job: Job) -> str:
        job_id = await self._store.insert(job)
        jobs_enqueued_total.labels(type=job.type).inc()
        logger.info(
            f"Enqueued job {job_id} ({job.type}) scheduled at {job.scheduled_at.isoformat()}",
            extra={"extra_fields": {"job_id": job_id, "job_type": job.type}},
        )
        return job_id

    async def get_job(self, job_id: str) -> Dict[str, Any]:
        """Status view of a job. Raises ``JobNotFoundError``."""
        job = await self._store.get_by_id(job_id)
        return job.to_status_dict()

    async def list_jobs(self, query: Optional[JobQuery] = None) -> JobPage:
        return await self._store.list_jobs(query or JobQuery())

    async def retry_job(self, job_id: str, reset_attempts: bool = True) -> Job:
        """Operator retry of a terminally failed job.

        Raises:
            JobNotFoundError: unknown id.
            JobNotRetryableError: job is not ``failed``, or attempts are
                exhausted and ``reset_attempts`` is False.
        """
        job = await self._store.retry(job_id, reset_attempts, self._clock())
        logger.info(f"Job {job_id} ({job.type}) re-queued by operator")
        return job

    async def stats(self) -> Dict[str, int]:
        return await self._store.count_by_status()
