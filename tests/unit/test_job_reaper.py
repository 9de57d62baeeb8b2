"""Tests for src/core/job_queue/reaper.py."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.core.config import Settings
from src.core.job_queue.backends import InMemoryJobStore
from src.core.job_queue.core import (
    EnqueueOptions,
    JobStatus,
    StorageError,
    create_job,
    utcnow,
)
from src.core.job_queue.reaper import StaleJobReaper


async def _running_job(store, now, max_attempts=3):
    job_id = await store.insert(
        create_job("export_backup", {}, EnqueueOptions(max_attempts=max_attempts), now=now)
    )
    await store.claim_batch(1, now)
    return job_id


class TestStaleJobReaper:
    """Tests for StaleJobReaper."""

    @pytest.mark.asyncio
    async def test_requeues_stale_job(self):
        store = InMemoryJobStore()
        now = utcnow()
        job_id = await _running_job(store, now)
        reaper = StaleJobReaper(store, stale_after_seconds=60)

        result = await reaper.reap_once(now + timedelta(seconds=120))

        assert result.requeued == [job_id]
        assert result.total == 1
        job = await store.get_by_id(job_id)
        assert job.status == JobStatus.PENDING
        assert job.attempts == 1
        assert job.last_error == "WORKER_LOST: no heartbeat for more than 60s"

    @pytest.mark.asyncio
    async def test_fails_stale_job_without_attempts(self):
        store = InMemoryJobStore()
        now = utcnow()
        job_id = await _running_job(store, now, max_attempts=1)
        reaper = StaleJobReaper(store, stale_after_seconds=60)

        result = await reaper.reap_once(now + timedelta(seconds=120))

        assert result.failed == [job_id]
        assert (await store.get_by_id(job_id)).status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_fresh_jobs_untouched(self):
        store = InMemoryJobStore()
        now = utcnow()
        job_id = await _running_job(store, now)
        reaper = StaleJobReaper(store, stale_after_seconds=600)

        result = await reaper.reap_once(now + timedelta(seconds=30))

        assert result.total == 0
        assert (await store.get_by_id(job_id)).status == JobStatus.RUNNING

    def test_rejects_non_positive_threshold(self):
        with pytest.raises(ValueError):
            StaleJobReaper(InMemoryJobStore(), stale_after_seconds=0)

    def test_from_settings(self):
        settings = Settings(JOB_STALE_AFTER_SECONDS=42, JOB_REAPER_INTERVAL_SECONDS=7)

        reaper = StaleJobReaper.from_settings(InMemoryJobStore(), settings)

        assert reaper._stale_after == timedelta(seconds=42)
        assert reaper._interval == 7

    @pytest.mark.asyncio
    async def test_loop_survives_storage_errors(self):
        """Test a failing pass is logged and the loop keeps running."""
        store = MagicMock()
        store.reset_stale = AsyncMock(side_effect=[StorageError("down"), ([], [])] + [([], [])] * 100)
        reaper = StaleJobReaper(store, stale_after_seconds=60, interval_seconds=0.01)

        await reaper.start()
        for _ in range(200):
            if store.reset_stale.await_count >= 2:
                break
            await asyncio.sleep(0.005)
        await reaper.stop()

        assert store.reset_stale.await_count >= 2
        assert not reaper.is_running
