"""Job Queue Backends.

Provides store implementations:
- In-memory store (testing, single process)
- PostgreSQL store (production, shared by many worker processes)
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import uuid
from collections import Counter
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple

import asyncpg

from src.core.job_queue.core import (
    Job,
    JobNotFoundError,
    JobNotRetryableError,
    JobPage,
    JobQuery,
    JobStatus,
    JobStore,
    StorageError,
    utcnow,
)
from src.core.job_queue.schema import validate_table_name

logger = logging.getLogger(__name__)

_ACTIVE = (JobStatus.PENDING, JobStatus.RUNNING)


def _claim_order(job: Job) -> tuple:
    return (-job.priority, job.scheduled_at, job.created_at)


class InMemoryJobStore(JobStore):
    """In-memory job store.

    A single asyncio lock stands in for row locking: every claim checks and
    flips ``status`` under the lock, which gives the same compare-and-swap
    guarantee as a conditional update.
    """

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._lock: Optional[asyncio.Lock] = None

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _check_idempotency(self, job: Job) -> None:
        if not job.idempotency_key:
            return
        for other in self._jobs.values():
            if (
                other.id != job.id
                and other.type == job.type
                and other.idempotency_key == job.idempotency_key
                and other.status in _ACTIVE
            ):
                raise StorageError(
                    f"Active job already exists for key {job.idempotency_key!r}"
                )

    async def insert(self, job: Job) -> str:
        async with self._get_lock():
            if job.id in self._jobs:
                raise StorageError(f"Duplicate job id: {job.id}")
            if job.max_attempts <= 0 or not 0 <= job.attempts <= job.max_attempts:
                raise StorageError("Job violates attempts constraints")
            self._check_idempotency(job)

            stored = copy.deepcopy(job)
            stored.status = JobStatus.PENDING
            self._jobs[stored.id] = stored

            logger.debug(f"Inserted job {job.id} ({job.type})")
            return stored.id

    async def claim_batch(self, limit: int, now: datetime) -> List[Job]:
        if limit <= 0:
            return []

        async with self._get_lock():
            due = sorted(
                (
                    job for job in self._jobs.values()
                    if job.status == JobStatus.PENDING
                    and job.scheduled_at <= now
                    and job.attempts < job.max_attempts
                ),
                key=_claim_order,
            )[:limit]

            claimed = []
            for job in due:
                job.status = JobStatus.RUNNING
                job.started_at = now
                job.heartbeat_at = now
                job.attempts += 1
                claimed.append(copy.deepcopy(job))

            if claimed:
                logger.debug(f"Claimed {len(claimed)} job(s)")
            return claimed

    async def mark_completed(
        self, job_id: str, result: Any = None, now: Optional[datetime] = None
    ) -> None:
        async with self._get_lock():
            job = self._require(job_id)

            if job.status == JobStatus.COMPLETED:
                logger.debug(f"Job {job_id} already completed")
                return
            if job.status != JobStatus.RUNNING:
                logger.warning(
                    f"Ignoring completion of job {job_id} in state {job.status.value}"
                )
                return

            job.status = JobStatus.COMPLETED
            job.completed_at = now or utcnow()
            job.result = copy.deepcopy(result)
            job.heartbeat_at = None

    async def mark_failed(
        self,
        job_id: str,
        error: str,
        next_scheduled_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        async with self._get_lock():
            job = self._require(job_id)

            if job.status != JobStatus.RUNNING:
                logger.warning(
                    f"Ignoring failure of job {job_id} in state {job.status.value}"
                )
                return False

            job.last_error = error
            job.heartbeat_at = None
            if next_scheduled_at is not None:
                job.status = JobStatus.PENDING
                job.scheduled_at = next_scheduled_at
            else:
                job.status = JobStatus.FAILED
                job.completed_at = now or utcnow()
            return True

    async def get_by_id(self, job_id: str) -> Job:
        async with self._get_lock():
            return copy.deepcopy(self._require(job_id))

    async def heartbeat(self, job_ids: Iterable[str], now: datetime) -> int:
        touched = 0
        async with self._get_lock():
            for job_id in job_ids:
                job = self._jobs.get(job_id)
                if job and job.status == JobStatus.RUNNING:
                    job.heartbeat_at = now
                    touched += 1
        return touched

    async def reset_stale(
        self, stale_before: datetime, now: datetime, error: str
    ) -> Tuple[List[str], List[str]]:
        requeued: List[str] = []
        failed: List[str] = []

        async with self._get_lock():
            for job in self._jobs.values():
                if job.status != JobStatus.RUNNING:
                    continue
                last_seen = job.heartbeat_at or job.started_at
                if last_seen is None or last_seen >= stale_before:
                    continue

                job.last_error = error
                job.heartbeat_at = None
                if job.attempts < job.max_attempts:
                    job.status = JobStatus.PENDING
                    job.scheduled_at = now
                    requeued.append(job.id)
                else:
                    job.status = JobStatus.FAILED
                    job.completed_at = now
                    failed.append(job.id)

        return requeued, failed

    async def find_active(
        self, job_type: str, idempotency_key: Optional[str] = None
    ) -> Optional[Job]:
        async with self._get_lock():
            active = [
                job for job in self._jobs.values()
                if job.type == job_type
                and job.status in _ACTIVE
                and (idempotency_key is None or job.idempotency_key == idempotency_key)
            ]
            if not active:
                return None
            return copy.deepcopy(min(active, key=lambda j: j.created_at))

    async def list_jobs(self, query: JobQuery) -> JobPage:
        async with self._get_lock():
            matched = sorted(
                (job for job in self._jobs.values() if query.matches(job)),
                key=lambda j: j.created_at,
                reverse=True,
            )
            page = matched[query.offset:query.offset + query.limit]
            return JobPage(
                data=[copy.deepcopy(j) for j in page],
                total=len(matched),
                limit=query.limit,
                offset=query.offset,
            )

    async def retry(self, job_id: str, reset_attempts: bool, now: datetime) -> Job:
        async with self._get_lock():
            job = self._require(job_id)

            if job.status != JobStatus.FAILED:
                raise JobNotRetryableError(
                    f"Only failed jobs can be retried (job is {job.status.value})"
                )
            if not reset_attempts and job.attempts >= job.max_attempts:
                raise JobNotRetryableError("Maximum retry attempts reached")
            self._check_idempotency(job)

            job.status = JobStatus.PENDING
            if reset_attempts:
                job.attempts = 0
            job.scheduled_at = now
            job.started_at = None
            job.completed_at = None
            job.heartbeat_at = None
            job.last_error = None
            job.result = None
            return copy.deepcopy(job)

    async def count_by_status(self) -> Dict[str, int]:
        async with self._get_lock():
            counts = Counter(job.status.value for job in self._jobs.values())
            return {status.value: counts.get(status.value, 0) for status in JobStatus}


_COLUMNS = (
    "id, type, payload, status, attempts, max_attempts, priority, project_id, "
    "idempotency_key, last_error, result, scheduled_at, started_at, "
    "completed_at, heartbeat_at, created_at"
)

_DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


def _loads(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


def _row_to_job(row: Any) -> Job:
    return Job(
        id=str(row["id"]),
        type=row["type"],
        payload=_loads(row["payload"]) or {},
        status=JobStatus(row["status"]),
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        priority=row["priority"],
        project_id=row["project_id"] or "",
        idempotency_key=row["idempotency_key"],
        last_error=row["last_error"],
        result=_loads(row["result"]),
        scheduled_at=row["scheduled_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        heartbeat_at=row["heartbeat_at"],
        created_at=row["created_at"],
    )


def _as_uuid(job_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(job_id))
    except ValueError:
        raise JobNotFoundError(job_id) from None


def _rowcount(status: str) -> int:
    # asyncpg returns the command tag, e.g. "UPDATE 3"
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


class PostgresJobStore(JobStore):
    """PostgreSQL job store on an asyncpg pool.

    Claims use ``FOR UPDATE SKIP LOCKED`` so concurrent workers each lock a
    disjoint set of rows without blocking one another.
    """

    def __init__(self, pool: Any, table: str = "control_plane.jobs"):
        self._pool = pool
        self._table = validate_table_name(table)

    @property
    def table(self) -> str:
        return self._table

    @asynccontextmanager
    async def _connection(self, operation: str) -> AsyncIterator[Any]:
        """Acquire a connection and translate driver errors to ``StorageError``."""
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except _DB_ERRORS as e:
            logger.error(f"Job store {operation} failed: {type(e).__name__}: {e}")
            raise StorageError(f"Failed to {operation}") from e

    async def insert(self, job: Job) -> str:
        async with self._connection("insert job") as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO {self._table} (
                    id, type, payload, status, attempts, max_attempts, priority,
                    project_id, idempotency_key, scheduled_at, created_at
                ) VALUES ($1, $2, $3::jsonb, 'pending', $4, $5, $6, $7, $8, $9, $10)
                RETURNING id
                """,
                _as_uuid(job.id),
                job.type,
                json.dumps(job.payload),
                job.attempts,
                job.max_attempts,
                job.priority,
                job.project_id,
                job.idempotency_key,
                job.scheduled_at,
                job.created_at,
            )
        if row is None:
            raise StorageError("Failed to insert job")
        logger.debug(f"Inserted job {job.id} ({job.type})")
        return str(row["id"])

    async def claim_batch(self, limit: int, now: datetime) -> List[Job]:
        if limit <= 0:
            return []

        async with self._connection("claim jobs") as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    f"""
                    UPDATE {self._table} AS j
                    SET status = 'running',
                        started_at = $2,
                        heartbeat_at = $2,
                        attempts = j.attempts + 1
                    FROM (
                        SELECT id FROM {self._table}
                        WHERE status = 'pending'
                          AND scheduled_at <= $2
                          AND attempts < max_attempts
                        ORDER BY priority DESC, scheduled_at ASC, created_at ASC
                        LIMIT $1
                        FOR UPDATE SKIP LOCKED
                    ) AS due
                    WHERE j.id = due.id
                    RETURNING j.*
                    """,
                    limit,
                    now,
                )

        # RETURNING does not preserve the subquery order.
        jobs = sorted((_row_to_job(r) for r in rows), key=_claim_order)
        if jobs:
            logger.debug(f"Claimed {len(jobs)} job(s)")
        return jobs

    async def mark_completed(
        self, job_id: str, result: Any = None, now: Optional[datetime] = None
    ) -> None:
        job_uuid = _as_uuid(job_id)
        async with self._connection("complete job") as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE {self._table}
                SET status = 'completed', completed_at = $2, result = $3::jsonb,
                    heartbeat_at = NULL
                WHERE id = $1 AND status = 'running'
                RETURNING id
                """,
                job_uuid,
                now or utcnow(),
                json.dumps(result, default=str) if result is not None else None,
            )
            if row is not None:
                return

            current = await conn.fetchval(
                f"SELECT status FROM {self._table} WHERE id = $1", job_uuid
            )

        if current is None:
            raise JobNotFoundError(job_id)
        if current == JobStatus.COMPLETED.value:
            logger.debug(f"Job {job_id} already completed")
        else:
            logger.warning(f"Ignoring completion of job {job_id} in state {current}")

    async def mark_failed(
        self,
        job_id: str,
        error: str,
        next_scheduled_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        job_uuid = _as_uuid(job_id)
        async with self._connection("fail job") as conn:
            if next_scheduled_at is not None:
                row = await conn.fetchrow(
                    f"""
                    UPDATE {self._table}
                    SET status = 'pending', scheduled_at = $3, last_error = $2,
                        heartbeat_at = NULL
                    WHERE id = $1 AND status = 'running'
                    RETURNING id
                    """,
                    job_uuid,
                    error,
                    next_scheduled_at,
                )
            else:
                row = await conn.fetchrow(
                    f"""
                    UPDATE {self._table}
                    SET status = 'failed', completed_at = $3, last_error = $2,
                        heartbeat_at = NULL
                    WHERE id = $1 AND status = 'running'
                    RETURNING id
                    """,
                    job_uuid,
                    error,
                    now or utcnow(),
                )

        if row is None:
            logger.warning(f"Ignoring failure of job {job_id}: not running")
            return False
        return True

    async def get_by_id(self, job_id: str) -> Job:
        job_uuid = _as_uuid(job_id)
        async with self._connection("retrieve job") as conn:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM {self._table} WHERE id = $1", job_uuid
            )
        if row is None:
            raise JobNotFoundError(job_id)
        return _row_to_job(row)

    async def heartbeat(self, job_ids: Iterable[str], now: datetime) -> int:
        ids = [_as_uuid(j) for j in job_ids]
        if not ids:
            return 0
        async with self._connection("record heartbeat") as conn:
            status = await conn.execute(
                f"""
                UPDATE {self._table} SET heartbeat_at = $2
                WHERE id = ANY($1::uuid[]) AND status = 'running'
                """,
                ids,
                now,
            )
        return _rowcount(status)

    async def reset_stale(
        self, stale_before: datetime, now: datetime, error: str
    ) -> Tuple[List[str], List[str]]:
        async with self._connection("reset stale jobs") as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    f"""
                    WITH stale AS (
                        SELECT id FROM {self._table}
                        WHERE status = 'running'
                          AND COALESCE(heartbeat_at, started_at) < $1
                        FOR UPDATE SKIP LOCKED
                    )
                    UPDATE {self._table} AS j
                    SET status = CASE WHEN j.attempts < j.max_attempts
                                      THEN 'pending' ELSE 'failed' END,
                        scheduled_at = CASE WHEN j.attempts < j.max_attempts
                                            THEN $2 ELSE j.scheduled_at END,
                        completed_at = CASE WHEN j.attempts < j.max_attempts
                                            THEN NULL ELSE $2 END,
                        last_error = $3,
                        heartbeat_at = NULL
                    FROM stale
                    WHERE j.id = stale.id
                    RETURNING j.id, j.status
                    """,
                    stale_before,
                    now,
                    error,
                )

        requeued = [str(r["id"]) for r in rows if r["status"] == JobStatus.PENDING.value]
        failed = [str(r["id"]) for r in rows if r["status"] == JobStatus.FAILED.value]
        return requeued, failed

    async def find_active(
        self, job_type: str, idempotency_key: Optional[str] = None
    ) -> Optional[Job]:
        sql = (
            f"SELECT {_COLUMNS} FROM {self._table} "
            f"WHERE type = $1 AND status IN ('pending', 'running')"
        )
        args: List[Any] = [job_type]
        if idempotency_key is not None:
            sql += " AND idempotency_key = $2"
            args.append(idempotency_key)
        sql += " ORDER BY created_at ASC LIMIT 1"

        async with self._connection("find active job") as conn:
            row = await conn.fetchrow(sql, *args)
        return _row_to_job(row) if row else None

    async def list_jobs(self, query: JobQuery) -> JobPage:
        clauses: List[str] = []
        args: List[Any] = []

        def add(clause: str, value: Any) -> None:
            args.append(value)
            clauses.append(clause.format(n=len(args)))

        if query.type is not None:
            add("type = ${n}", query.type)
        if query.status is not None:
            add("status = ${n}", query.status.value)
        if query.project_id is not None:
            add("project_id = ${n}", query.project_id)
        if query.scheduled_before is not None:
            add("scheduled_at < ${n}", query.scheduled_before)
        if query.scheduled_after is not None:
            add("scheduled_at > ${n}", query.scheduled_after)
        if query.created_before is not None:
            add("created_at < ${n}", query.created_before)
        if query.created_after is not None:
            add("created_at > ${n}", query.created_after)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        n = len(args)

        async with self._connection("list jobs") as conn:
            total = await conn.fetchval(
                f"SELECT COUNT(*) FROM {self._table} {where}", *args
            )
            rows = await conn.fetch(
                f"""
                SELECT {_COLUMNS} FROM {self._table} {where}
                ORDER BY created_at DESC
                LIMIT ${n + 1} OFFSET ${n + 2}
                """,
                *args,
                query.limit,
                query.offset,
            )

        return JobPage(
            data=[_row_to_job(r) for r in rows],
            total=int(total or 0),
            limit=query.limit,
            offset=query.offset,
        )

    async def retry(self, job_id: str, reset_attempts: bool, now: datetime) -> Job:
        job_uuid = _as_uuid(job_id)
        async with self._connection("retry job") as conn:
            async with conn.transaction():
                current = await conn.fetchrow(
                    f"SELECT status, attempts, max_attempts FROM {self._table} "
                    f"WHERE id = $1 FOR UPDATE",
                    job_uuid,
                )
                if current is None:
                    raise JobNotFoundError(job_id)
                if current["status"] != JobStatus.FAILED.value:
                    raise JobNotRetryableError(
                        f"Only failed jobs can be retried (job is {current['status']})"
                    )
                if not reset_attempts and current["attempts"] >= current["max_attempts"]:
                    raise JobNotRetryableError("Maximum retry attempts reached")

                row = await conn.fetchrow(
                    f"""
                    UPDATE {self._table}
                    SET status = 'pending',
                        attempts = CASE WHEN $2 THEN 0 ELSE attempts END,
                        scheduled_at = $3,
                        started_at = NULL,
                        completed_at = NULL,
                        heartbeat_at = NULL,
                        last_error = NULL,
                        result = NULL
                    WHERE id = $1
                    RETURNING {_COLUMNS}
                    """,
                    job_uuid,
                    reset_attempts,
                    now,
                )
        return _row_to_job(row)

    async def count_by_status(self) -> Dict[str, int]:
        async with self._connection("count jobs") as conn:
            rows = await conn.fetch(
                f"SELECT status, COUNT(*) AS count FROM {self._table} GROUP BY status"
            )
        counts = {status.value: 0 for status in JobStatus}
        for row in rows:
            counts[row["status"]] = int(row["count"])
        return counts
