"""Job Queue Worker.

Provides worker implementation:
- Claim/poll loop with bounded concurrency
- Heartbeats for in-flight jobs
- Graceful shutdown
"""

from __future__ import annotations

import asyncio
import logging
import os
import secrets
import signal
import socket
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from src.core.config import Settings, get_settings
from src.core.job_queue.core import (
    HandlerRegistry,
    Job,
    JobOutcome,
    JobStore,
    StorageError,
    utcnow,
)
from src.core.job_queue.executor import JobExecutor
from src.core.job_queue.retry import RetryController, RetryPolicy
from src.core.logging.structured import worker_id_var
from src.utils.metrics import job_poll_errors_total, jobs_claimed_total, jobs_in_flight

logger = logging.getLogger(__name__)


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{secrets.token_hex(3)}"


@dataclass
class WorkerConfig:
    """Worker configuration."""
    concurrency: int = 5
    poll_interval_seconds: float = 5.0
    job_timeout_seconds: Optional[float] = 300.0
    shutdown_grace_seconds: float = 30.0
    heartbeat_interval_seconds: float = 15.0
    worker_id: str = field(default_factory=_default_worker_id)

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be positive")

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "WorkerConfig":
        settings = settings or get_settings()
        return cls(
            concurrency=settings.JOB_CONCURRENCY,
            poll_interval_seconds=settings.JOB_POLL_INTERVAL_SECONDS,
            job_timeout_seconds=settings.JOB_TIMEOUT_SECONDS,
            shutdown_grace_seconds=settings.JOB_SHUTDOWN_GRACE_SECONDS,
            heartbeat_interval_seconds=settings.JOB_HEARTBEAT_INTERVAL_SECONDS,
        )


@dataclass
class WorkerStats:
    """Worker statistics."""
    started_at: datetime
    jobs_claimed: int = 0
    jobs_succeeded: int = 0
    jobs_failed: int = 0
    jobs_retried: int = 0
    jobs_stale: int = 0
    poll_errors: int = 0
    current_jobs: int = 0

    @property
    def uptime_seconds(self) -> float:
        return (utcnow() - self.started_at).total_seconds()


class WorkerState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    DISPATCHING = "dispatching"
    DRAINING = "draining"
    STOPPED = "stopped"


class Worker:
    """Claims due jobs from the store and executes them concurrently."""

    def __init__(
        self,
        store: JobStore,
        registry: HandlerRegistry,
        config: Optional[WorkerConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._registry = registry
        self._config = config or WorkerConfig()
        self._clock = clock
        self._executor = JobExecutor(
            store,
            registry,
            RetryController(store, retry_policy),
            default_timeout_seconds=self._config.job_timeout_seconds,
            clock=clock,
        )

        self._running = False
        self._draining = False
        self._state = WorkerState.IDLE
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._wakeup: Optional[asyncio.Event] = None
        self._stopped: Optional[asyncio.Event] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._stats = WorkerStats(started_at=utcnow())

    @property
    def config(self) -> WorkerConfig:
        return self._config

    @property
    def stats(self) -> WorkerStats:
        return self._stats

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_draining(self) -> bool:
        return self._draining

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    @property
    def in_flight_ids(self) -> List[str]:
        return list(self._in_flight)

    def _get_wakeup(self) -> asyncio.Event:
        if self._wakeup is None:
            self._wakeup = asyncio.Event()
        return self._wakeup

    async def start(self) -> None:
        """Run the worker until ``stop`` completes."""
        if self._running:
            return

        self._running = True
        self._draining = False
        self._stopped = asyncio.Event()
        self._stats = WorkerStats(started_at=utcnow())
        worker_id_var.set(self._config.worker_id)

        logger.info(
            f"Starting worker {self._config.worker_id} "
            f"(concurrency={self._config.concurrency}, "
            f"poll_interval={self._config.poll_interval_seconds}s)"
        )

        self._loop_task = asyncio.create_task(self._poll_loop())
        if self._config.heartbeat_interval_seconds > 0:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

        await self._stopped.wait()

    async def stop(self, grace_seconds: Optional[float] = None) -> None:
        """Stop claiming, then wait (bounded) for in-flight jobs to settle.

        Jobs still running when the grace period ends are abandoned: their
        asyncio tasks are cancelled and their rows stay ``running`` until the
        stale-job reaper recovers them.
        """
        if not self._running or self._draining:
            return

        grace = self._config.shutdown_grace_seconds if grace_seconds is None else grace_seconds
        logger.info("Stopping worker...")
        self._draining = True
        self._state = WorkerState.DRAINING
        self._get_wakeup().set()

        if self._loop_task:
            await self._loop_task
            self._loop_task = None

        pending: Set[asyncio.Task] = set(self._in_flight.values())
        if pending:
            logger.info(f"Waiting up to {grace}s for {len(pending)} in-flight job(s)")
            _, still_running = await asyncio.wait(pending, timeout=grace)
            if still_running:
                abandoned = [jid for jid, t in self._in_flight.items() if t in still_running]
                logger.warning(
                    f"Shutdown grace period elapsed, abandoning {len(abandoned)} "
                    f"running job(s): {', '.join(abandoned)}"
                )
                for task in still_running:
                    task.cancel()
                await asyncio.gather(*still_running, return_exceptions=True)

        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        self._running = False
        self._state = WorkerState.STOPPED
        if self._stopped:
            self._stopped.set()

        logger.info("Worker stopped")

    async def run_once(self) -> int:
        """One poll tick: claim up to the free capacity and dispatch.

        Returns the number of jobs dispatched.
        """
        if self._draining:
            return 0

        capacity = self._config.concurrency - len(self._in_flight)
        if capacity <= 0:
            return 0

        self._state = WorkerState.POLLING
        try:
            jobs = await self._store.claim_batch(capacity, self._clock())
        except StorageError as e:
            # Infrastructure fault; no job was claimed so no attempts are charged.
            self._stats.poll_errors += 1
            job_poll_errors_total.inc()
            logger.error(f"Failed to claim jobs, retrying next tick: {e}")
            self._state = WorkerState.IDLE
            return 0

        self._state = WorkerState.DISPATCHING
        for job in jobs:
            self._dispatch(job)
        self._state = WorkerState.IDLE
        return len(jobs)

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until no job is in flight. Returns False on timeout."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        while self._in_flight:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return False
            await asyncio.wait(set(self._in_flight.values()), timeout=remaining)
        return True

    async def _poll_loop(self) -> None:
        """Main processing loop."""
        while not self._draining:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Poll loop error: {e}", exc_info=True)

            if self._draining:
                break
            await self._sleep_until_next_tick()

    async def _sleep_until_next_tick(self) -> None:
        """Sleep for one poll interval or until woken by a finished job or stop."""
        wakeup = self._get_wakeup()
        try:
            await asyncio.wait_for(wakeup.wait(), timeout=self._config.poll_interval_seconds)
        except asyncio.TimeoutError:
            pass
        wakeup.clear()

    def _dispatch(self, job: Job) -> None:
        task = asyncio.create_task(self._run_job(job), name=f"job-{job.id}")
        self._in_flight[job.id] = task
        self._stats.jobs_claimed += 1
        self._stats.current_jobs = len(self._in_flight)
        jobs_claimed_total.inc()
        jobs_in_flight.set(len(self._in_flight))
        task.add_done_callback(lambda t, job_id=job.id: self._on_job_done(job_id, t))

    async def _run_job(self, job: Job) -> JobOutcome:
        outcome = await self._executor.execute(job)
        if outcome == JobOutcome.COMPLETED:
            self._stats.jobs_succeeded += 1
        elif outcome == JobOutcome.RETRY_SCHEDULED:
            self._stats.jobs_retried += 1
        elif outcome == JobOutcome.STALE:
            self._stats.jobs_stale += 1
        else:
            self._stats.jobs_failed += 1
        return outcome

    def _on_job_done(self, job_id: str, task: asyncio.Task) -> None:
        self._in_flight.pop(job_id, None)
        self._stats.current_jobs = len(self._in_flight)
        jobs_in_flight.set(len(self._in_flight))

        if not task.cancelled():
            error = task.exception()
            if error is not None:
                # Status could not be recorded; the row stays running until reaped.
                logger.error(f"Job {job_id} outcome not recorded: {error}")

        # Freed capacity: let the poll loop claim again without waiting a full tick.
        if self._wakeup is not None and not self._draining:
            self._wakeup.set()

    async def _heartbeat_loop(self) -> None:
        """Periodically refresh heartbeat_at of in-flight jobs."""
        while self._running:
            try:
                await asyncio.sleep(self._config.heartbeat_interval_seconds)
                if self._in_flight:
                    await self._store.heartbeat(list(self._in_flight), self._clock())
            except asyncio.CancelledError:
                break
            except StorageError as e:
                logger.warning(f"Heartbeat failed: {e}")


async def shutdown(
    worker: Worker,
    scheduler: Optional[Any] = None,
    reaper: Optional[Any] = None,
) -> None:
    """Stop timers first so nothing new is enqueued, then drain the worker."""
    if scheduler is not None:
        await scheduler.stop()
    if reaper is not None:
        await reaper.stop()
    await worker.stop()


_shutdown_tasks: Set[asyncio.Task] = set()


def setup_signal_handlers(
    worker: Worker,
    scheduler: Optional[Any] = None,
    reaper: Optional[Any] = None,
) -> None:
    """Setup signal handlers for graceful shutdown."""
    loop = asyncio.get_running_loop()

    def signal_handler():
        if worker.is_draining:
            logger.info("Shutdown already in progress")
            return
        logger.info("Received shutdown signal")
        task = asyncio.create_task(shutdown(worker, scheduler, reaper))
        _shutdown_tasks.add(task)
        task.add_done_callback(_shutdown_tasks.discard)

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass
