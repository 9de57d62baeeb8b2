"""Tests for src/core/job_queue/executor.py.

Covers:
- Successful handler, result persistence
- Handler exception, JobExecutionResult failure
- Unknown job type
- Timeout
- Payload isolation
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from src.core.errors import ErrorCode
from src.core.job_queue.backends import InMemoryJobStore
from src.core.job_queue.core import (
    EnqueueOptions,
    HandlerRegistry,
    JobExecutionError,
    JobExecutionResult,
    JobOutcome,
    JobStatus,
    JobTimeoutError,
    create_job,
    utcnow,
)
from src.core.job_queue.executor import JobExecutor, summarize_error
from src.core.job_queue.retry import RetryController, RetryPolicy


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def registry():
    return HandlerRegistry()


@pytest.fixture
def executor(store, registry):
    return JobExecutor(
        store,
        registry,
        RetryController(store, RetryPolicy(base_delay_seconds=1, jitter=0)),
        default_timeout_seconds=5,
    )


async def _claimed(store, job_type="rotate_key", payload=None, max_attempts=3):
    now = utcnow()
    await store.insert(
        create_job(job_type, payload or {}, EnqueueOptions(max_attempts=max_attempts), now=now)
    )
    (job,) = await store.claim_batch(1, now)
    return job


class TestJobExecutor:
    """Tests for JobExecutor.execute."""

    @pytest.mark.asyncio
    async def test_success_marks_completed(self, store, registry, executor):
        async def rotate(payload):
            return {"rotated": payload["key_id"]}

        registry.register("rotate_key", rotate)
        job = await _claimed(store, payload={"key_id": "k1"})

        outcome = await executor.execute(job)

        assert outcome == JobOutcome.COMPLETED
        stored = await store.get_by_id(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.result == {"rotated": "k1"}
        assert stored.attempts == 1

    @pytest.mark.asyncio
    async def test_exception_schedules_retry(self, store, registry, executor):
        async def rotate(payload):
            raise RuntimeError("key service down")

        registry.register("rotate_key", rotate)
        job = await _claimed(store)

        outcome = await executor.execute(job)

        assert outcome == JobOutcome.RETRY_SCHEDULED
        stored = await store.get_by_id(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.last_error == "HANDLER_ERROR: RuntimeError: key service down"
        assert stored.scheduled_at > job.started_at

    @pytest.mark.asyncio
    async def test_result_failure_counts_as_failed_attempt(self, store, registry, executor):
        """Test JobExecutionResult(success=False) is treated as a failure."""
        async def rotate(payload):
            return JobExecutionResult(success=False, error="key not found")

        registry.register("rotate_key", rotate)
        job = await _claimed(store, max_attempts=1)

        outcome = await executor.execute(job)

        assert outcome == JobOutcome.FAILED
        stored = await store.get_by_id(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.last_error == "HANDLER_REPORTED_FAILURE: key not found"

    @pytest.mark.asyncio
    async def test_result_success_stores_data(self, store, registry, executor):
        async def rotate(payload):
            return JobExecutionResult(success=True, data={"new_key": "k2"})

        registry.register("rotate_key", rotate)
        job = await _claimed(store)

        await executor.execute(job)

        assert (await store.get_by_id(job.id)).result == {"new_key": "k2"}

    @pytest.mark.asyncio
    async def test_unknown_type_fails_terminally(self, store, executor):
        """Test a job with no handler fails without retries."""
        job = await _claimed(store, job_type="mystery", max_attempts=5)

        outcome = await executor.execute(job)

        assert outcome == JobOutcome.FAILED
        stored = await store.get_by_id(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.attempts == 1
        assert stored.last_error == "UNKNOWN_JOB_TYPE: unknown job type 'mystery'"

    @pytest.mark.asyncio
    async def test_timeout(self, store, registry, executor):
        async def slow(payload):
            await asyncio.sleep(10)

        registry.register("rotate_key", slow, timeout_seconds=0.05)
        job = await _claimed(store, max_attempts=1)

        outcome = await executor.execute(job)

        assert outcome == JobOutcome.FAILED
        stored = await store.get_by_id(job.id)
        assert stored.last_error == "EXECUTION_TIMEOUT: execution timed out after 0.05s"

    @pytest.mark.asyncio
    async def test_handler_cannot_mutate_stored_payload(self, store, registry, executor):
        async def mutate(payload):
            payload["key_id"] = "changed"
            raise RuntimeError("retry me")

        registry.register("rotate_key", mutate)
        job = await _claimed(store, payload={"key_id": "k1"})

        await executor.execute(job)

        assert job.payload == {"key_id": "k1"}
        assert (await store.get_by_id(job.id)).payload == {"key_id": "k1"}

    @pytest.mark.asyncio
    async def test_sync_handler(self, store, registry, executor):
        registry.register("rotate_key", lambda payload: {"sync": True})
        job = await _claimed(store)

        assert await executor.execute(job) == JobOutcome.COMPLETED

    @pytest.mark.asyncio
    async def test_cancellation_leaves_row_running(self, store, registry, executor):
        """Test a cancelled execution does not record an outcome."""
        started = asyncio.Event()

        async def slow(payload):
            started.set()
            await asyncio.sleep(10)

        registry.register("rotate_key", slow)
        job = await _claimed(store)

        task = asyncio.create_task(executor.execute(job))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert (await store.get_by_id(job.id)).status == JobStatus.RUNNING

    @pytest.mark.asyncio
    async def test_failure_after_reap_is_stale(self, store, registry, executor):
        """Test a failure is not recorded once the reaper has reset the row."""
        async def reaped_midway(payload):
            now = utcnow()
            await store.reset_stale(now + timedelta(hours=1), now, "WORKER_LOST: reaped")
            raise RuntimeError("too late")

        registry.register("rotate_key", reaped_midway)
        job = await _claimed(store)

        outcome = await executor.execute(job)

        assert outcome == JobOutcome.STALE
        stored = await store.get_by_id(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.last_error == "WORKER_LOST: reaped"


class TestSummarizeError:
    """Tests for summarize_error."""

    def test_execution_error(self):
        assert summarize_error(JobExecutionError("HTTP 500")) == "HANDLER_REPORTED_FAILURE: HTTP 500"

    def test_timeout_error(self):
        assert summarize_error(JobTimeoutError("upstream deadline")) == "EXECUTION_TIMEOUT: upstream deadline"

    def test_generic_error(self):
        assert summarize_error(ValueError("bad")) == "HANDLER_ERROR: ValueError: bad"

    def test_truncated(self):
        summary = summarize_error(RuntimeError("x" * 5000))
        assert len(summary) <= 1000
        assert summary.endswith("...")

    def test_persisted_codes(self):
        """Test every error code is one the executor or reaper writes."""
        assert {code.value for code in ErrorCode} == {
            "UNKNOWN_JOB_TYPE",
            "EXECUTION_TIMEOUT",
            "HANDLER_ERROR",
            "HANDLER_REPORTED_FAILURE",
            "WORKER_LOST",
        }
