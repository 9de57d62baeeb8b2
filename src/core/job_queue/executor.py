"""Job executor.

Runs one claimed job: resolves its handler, enforces the timeout and records
the outcome through the store and the retry controller.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from datetime import datetime
from typing import Any, Callable, Optional

from src.core.errors import ErrorCode, format_error
from src.core.job_queue.core import (
    HandlerRegistry,
    Job,
    JobExecutionError,
    JobExecutionResult,
    JobOutcome,
    JobStore,
    JobTimeoutError,
    UnknownJobTypeError,
    utcnow,
)
from src.core.job_queue.retry import RetryController, stale_outcome
from src.core.logging.structured import job_context
from src.utils.metrics import jobs_completed_total, jobs_failed_total, job_duration_seconds

logger = logging.getLogger(__name__)


def summarize_error(error: BaseException) -> str:
    """Short persisted summary of a handler failure."""
    if isinstance(error, JobTimeoutError):
        return format_error(ErrorCode.EXECUTION_TIMEOUT, str(error) or "execution timed out")
    if isinstance(error, JobExecutionError):
        return format_error(ErrorCode.HANDLER_REPORTED_FAILURE, str(error) or "handler reported failure")
    message = str(error) or "no message"
    return format_error(ErrorCode.HANDLER_ERROR, f"{type(error).__name__}: {message}")


class JobExecutor:
    """Executes claimed jobs."""

    def __init__(
        self,
        store: JobStore,
        registry: HandlerRegistry,
        retry_controller: RetryController,
        default_timeout_seconds: Optional[float] = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._registry = registry
        self._retry = retry_controller
        self._default_timeout = default_timeout_seconds
        self._clock = clock

    def timeout_for(self, job: Job) -> Optional[float]:
        return self._registry.timeout_for(job.type) or self._default_timeout

    async def execute(self, job: Job) -> JobOutcome:
        """Run the job's handler and persist the result.

        Handler failures never propagate out of this method. Store errors do,
        and cancellation (worker shutdown) leaves the row untouched.
        """
        with job_context(job):
            try:
                handler = self._registry.resolve(job.type)
            except UnknownJobTypeError:
                error = format_error(
                    ErrorCode.UNKNOWN_JOB_TYPE, f"unknown job type '{job.type}'"
                )
                if not await self._store.mark_failed(job.id, error, None, now=self._clock()):
                    return stale_outcome(job)
                self._record(job, JobOutcome.FAILED, 0.0, error)
                jobs_failed_total.labels(type=job.type, terminal="true").inc()
                return JobOutcome.FAILED

            timeout = self.timeout_for(job)
            start = time.perf_counter()
            error: Optional[str] = None
            result: Any = None

            try:
                # Handlers get a private copy; the stored payload is immutable.
                call = handler.handle(copy.deepcopy(job.payload))
                if timeout:
                    result = await asyncio.wait_for(call, timeout=timeout)
                else:
                    result = await call
                if isinstance(result, JobExecutionResult):
                    if not result.success:
                        raise JobExecutionError(result.error or "handler reported failure")
                    result = result.data
            except asyncio.TimeoutError:
                error = summarize_error(JobTimeoutError(f"execution timed out after {timeout}s"))
                logger.warning(f"Job {job.id} ({job.type}) timed out after {timeout}s")
            except asyncio.CancelledError:
                logger.warning(f"Job {job.id} ({job.type}) abandoned during shutdown")
                raise
            except Exception as e:
                error = summarize_error(e)
                logger.error(f"Job {job.id} ({job.type}) handler raised", exc_info=True)

            duration = time.perf_counter() - start

            if error is None:
                await self._store.mark_completed(job.id, result, now=self._clock())
                jobs_completed_total.labels(type=job.type).inc()
                self._record(job, JobOutcome.COMPLETED, duration)
                return JobOutcome.COMPLETED

            outcome = await self._retry.handle_failure(job, error, self._clock())
            self._record(job, outcome, duration, error)
            return outcome

    def _record(
        self,
        job: Job,
        outcome: JobOutcome,
        duration: float,
        error: Optional[str] = None,
    ) -> None:
        """Log and meter an outcome. Never raises."""
        try:
            job_duration_seconds.labels(type=job.type).observe(duration)
            logger.info(
                f"Job {job.id} ({job.type}) {outcome.value} in {duration * 1000:.1f}ms",
                extra={
                    "extra_fields": {
                        "job_id": job.id,
                        "job_type": job.type,
                        "attempt": job.attempts,
                        "max_attempts": job.max_attempts,
                        "duration_ms": round(duration * 1000, 2),
                        "outcome": outcome.value,
                        "error": error,
                    }
                },
            )
        except Exception as e:  # outcome already persisted
            logger.debug(f"Failed to record outcome of job {job.id}: {e}")
