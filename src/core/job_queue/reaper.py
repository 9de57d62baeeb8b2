"""Recovery of jobs whose worker disappeared mid-execution.

A worker that crashes (or is killed after its shutdown grace period) leaves
its jobs ``running``. Live workers refresh ``heartbeat_at`` on a timer; the
reaper returns rows whose heartbeat is older than the staleness threshold to
``pending``, or fails them when no attempts remain. The attempt charged by
the lost claim is not refunded.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from src.core.config import Settings, get_settings
from src.core.errors import ErrorCode, format_error
from src.core.job_queue.core import JobStore, StorageError, utcnow
from src.utils.metrics import jobs_reaped_total

logger = logging.getLogger(__name__)


@dataclass
class ReapResult:
    requeued: List[str]
    failed: List[str]

    @property
    def total(self) -> int:
        return len(self.requeued) + len(self.failed)


class StaleJobReaper:
    """Periodically resets running jobs that stopped heartbeating."""

    def __init__(
        self,
        store: JobStore,
        stale_after_seconds: float = 600.0,
        interval_seconds: float = 60.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        if stale_after_seconds <= 0:
            raise ValueError("stale_after_seconds must be positive")
        self._store = store
        self._stale_after = timedelta(seconds=stale_after_seconds)
        self._interval = interval_seconds
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @classmethod
    def from_settings(cls, store: JobStore, settings: Optional[Settings] = None) -> "StaleJobReaper":
        settings = settings or get_settings()
        return cls(
            store,
            stale_after_seconds=settings.JOB_STALE_AFTER_SECONDS,
            interval_seconds=settings.JOB_REAPER_INTERVAL_SECONDS,
        )

    @property
    def is_running(self) -> bool:
        return self._running

    async def reap_once(self, now: Optional[datetime] = None) -> ReapResult:
        now = now or self._clock()
        error = format_error(
            ErrorCode.WORKER_LOST,
            f"no heartbeat for more than {int(self._stale_after.total_seconds())}s",
        )
        requeued, failed = await self._store.reset_stale(now - self._stale_after, now, error)

        if requeued:
            jobs_reaped_total.labels(outcome="requeued").inc(len(requeued))
            logger.warning(f"Requeued {len(requeued)} stale job(s): {', '.join(requeued)}")
        if failed:
            jobs_reaped_total.labels(outcome="failed").inc(len(failed))
            logger.warning(f"Failed {len(failed)} stale job(s) with no attempts left: {', '.join(failed)}")

        return ReapResult(requeued=requeued, failed=failed)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Stale job reaper started")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Stale job reaper stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.reap_once()
            except asyncio.CancelledError:
                break
            except StorageError as e:
                logger.error(f"Reaper pass failed: {e}")
            await asyncio.sleep(self._interval)
