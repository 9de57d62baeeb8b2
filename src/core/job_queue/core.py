"""Job Queue Core.

Provides job queue primitives:
- Job definition and lifecycle states
- Enqueue validation
- Storage interface
- Handler registry
"""

from __future__ import annotations

import asyncio
import json
import re
import uuid
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Union

import anyio
from pydantic import BaseModel, ConfigDict, Field

# Validation limits
MAX_TYPE_LENGTH = 100
MAX_PAYLOAD_BYTES = 1024 * 1024
MIN_MAX_ATTEMPTS = 1
MAX_MAX_ATTEMPTS = 100
MAX_DELAY_SECONDS = 24 * 60 * 60
MAX_PRIORITY = 1000
MAX_SCHEDULE_AHEAD = timedelta(days=365)
DEFAULT_MAX_ATTEMPTS = 3
MAX_PAGE_SIZE = 100

_JOB_TYPE_RE = re.compile(r"^[a-zA-Z0-9_-]+$")


def utcnow() -> datetime:
    """Timezone-aware current time; the store compares against timestamptz."""
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """State of a job."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobType(str, Enum):
    """Job types known to the control plane. Custom strings are also accepted."""
    PROVISION_PROJECT = "provision_project"
    SUSPEND_PROJECT = "suspend_project"
    DELETE_PROJECT = "delete_project"
    ROTATE_KEY = "rotate_key"
    REVOKE_KEY = "revoke_key"
    DELIVER_WEBHOOK = "deliver_webhook"
    EXPORT_BACKUP = "export_backup"
    CLEANUP_OLD_BACKUPS = "cleanup_old_backups"
    CHECK_USAGE_LIMITS = "check_usage_limits"
    AUTO_SUSPEND = "auto_suspend"
    SEND_NOTIFICATION = "send_notification"


class JobOutcome(str, Enum):
    """What the executor did with a claimed job."""
    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    STALE = "stale"  # row left running state before the outcome was written


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class JobQueueError(Exception):
    """Base class for job queue errors."""


class StorageError(JobQueueError):
    """The job store could not complete an operation."""


class JobNotFoundError(JobQueueError):
    """No job exists with the given id."""

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class JobValidationError(JobQueueError, ValueError):
    """Rejected enqueue input. No row is created."""


class DuplicateHandlerError(JobQueueError):
    """A handler is already registered for the job type."""

    def __init__(self, job_type: str):
        super().__init__(f"Handler already registered for job type: {job_type}")
        self.job_type = job_type


class UnknownJobTypeError(JobQueueError):
    """No handler is registered for the job type."""

    def __init__(self, job_type: str):
        super().__init__(f"No handler registered for job type: {job_type}")
        self.job_type = job_type


class JobNotRetryableError(JobQueueError):
    """Operator retry requested for a job that is not in a retryable state."""


class JobExecutionError(JobQueueError):
    """Raised by handlers (or derived from their result) to signal failure."""


class JobTimeoutError(JobQueueError):
    """Handler did not finish within its timeout."""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_job_type(job_type: Any) -> str:
    if not isinstance(job_type, str):
        raise JobValidationError("Job type must be a string")
    if not job_type.strip():
        raise JobValidationError("Job type cannot be empty")
    if len(job_type) > MAX_TYPE_LENGTH:
        raise JobValidationError(f"Job type cannot exceed {MAX_TYPE_LENGTH} characters")
    if not _JOB_TYPE_RE.match(job_type):
        raise JobValidationError(
            "Job type can only contain alphanumeric characters, underscores, and hyphens"
        )
    return job_type


def validate_payload(payload: Any) -> Dict[str, Any]:
    """Check that the payload is a JSON-serializable mapping within size limits."""
    if payload is None:
        return {}
    if not isinstance(payload, Mapping):
        raise JobValidationError("Job payload must be an object")
    try:
        serialized = json.dumps(payload, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise JobValidationError(f"Job payload is not JSON serializable: {e}") from e
    if len(serialized.encode("utf-8")) > MAX_PAYLOAD_BYTES:
        raise JobValidationError("Job payload size cannot exceed 1MB")
    # Round-trip so the stored payload is detached from the caller's objects.
    return json.loads(serialized)


class EnqueueOptions(BaseModel):
    """Options accepted by ``JobQueue.enqueue``."""

    model_config = ConfigDict(extra="forbid")

    delay_seconds: float = Field(0.0, ge=0, le=MAX_DELAY_SECONDS)
    max_attempts: Optional[int] = Field(None, ge=MIN_MAX_ATTEMPTS, le=MAX_MAX_ATTEMPTS)
    priority: int = Field(0, ge=0, le=MAX_PRIORITY)
    project_id: str = ""
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=255)


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class Job:
    """A row of the jobs table."""
    id: str
    type: str
    payload: Dict[str, Any]
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    priority: int = 0
    project_id: str = ""
    scheduled_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    heartbeat_at: Optional[datetime] = None
    last_error: Optional[str] = None
    result: Any = None
    idempotency_key: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts)

    def to_status_dict(self) -> Dict[str, Any]:
        """Fields exposed by the job status endpoint."""
        return {
            "id": self.id,
            "type": self.type,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "last_error": self.last_error,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.to_status_dict()
        data.update({
            "payload": self.payload,
            "priority": self.priority,
            "project_id": self.project_id,
            "scheduled_at": _iso(self.scheduled_at),
            "heartbeat_at": _iso(self.heartbeat_at),
            "result": self.result,
            "idempotency_key": self.idempotency_key,
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(
            id=str(data["id"]),
            type=data["type"],
            payload=data.get("payload") or {},
            status=JobStatus(data.get("status", "pending")),
            attempts=data.get("attempts", 0),
            max_attempts=data.get("max_attempts", DEFAULT_MAX_ATTEMPTS),
            priority=data.get("priority", 0),
            project_id=data.get("project_id") or "",
            scheduled_at=_parse_dt(data.get("scheduled_at")) or utcnow(),
            started_at=_parse_dt(data.get("started_at")),
            completed_at=_parse_dt(data.get("completed_at")),
            heartbeat_at=_parse_dt(data.get("heartbeat_at")),
            last_error=data.get("last_error"),
            result=data.get("result"),
            idempotency_key=data.get("idempotency_key"),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
        )


def create_job(
    job_type: str,
    payload: Optional[Dict[str, Any]] = None,
    options: Optional[EnqueueOptions] = None,
    scheduled_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
    default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> Job:
    """Validate input and build a new pending job."""
    validate_job_type(job_type)
    clean_payload = validate_payload(payload)
    options = options or EnqueueOptions()
    now = now or utcnow()

    if scheduled_at is None:
        scheduled_at = now + timedelta(seconds=options.delay_seconds)

    return Job(
        id=str(uuid.uuid4()),
        type=job_type,
        payload=clean_payload,
        status=JobStatus.PENDING,
        attempts=0,
        max_attempts=options.max_attempts or default_max_attempts,
        priority=options.priority,
        project_id=options.project_id,
        scheduled_at=scheduled_at,
        idempotency_key=options.idempotency_key,
        created_at=now,
    )


@dataclass
class JobExecutionResult:
    """Optional structured return value for handlers.

    A result with ``success=False`` counts as a failed attempt.
    """
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


@dataclass
class JobQuery:
    """Filters for listing jobs."""
    type: Optional[str] = None
    status: Optional[JobStatus] = None
    project_id: Optional[str] = None
    scheduled_before: Optional[datetime] = None
    scheduled_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    created_after: Optional[datetime] = None
    limit: int = 50
    offset: int = 0

    def __post_init__(self) -> None:
        if self.limit < 1 or self.limit > MAX_PAGE_SIZE:
            raise JobValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if self.offset < 0:
            raise JobValidationError("offset cannot be negative")
        if isinstance(self.status, str):
            self.status = JobStatus(self.status)

    def matches(self, job: Job) -> bool:
        if self.type is not None and job.type != self.type:
            return False
        if self.status is not None and job.status != self.status:
            return False
        if self.project_id is not None and job.project_id != self.project_id:
            return False
        if self.scheduled_before is not None and job.scheduled_at >= self.scheduled_before:
            return False
        if self.scheduled_after is not None and job.scheduled_at <= self.scheduled_after:
            return False
        if self.created_before is not None and job.created_at >= self.created_before:
            return False
        if self.created_after is not None and job.created_at <= self.created_after:
            return False
        return True


@dataclass
class JobPage:
    """A page of jobs."""
    data: List[Job]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.data) < self.total


# ---------------------------------------------------------------------------
# Storage interface
# ---------------------------------------------------------------------------


class JobStore(ABC):
    """Durable job storage with exclusive claiming."""

    @abstractmethod
    async def insert(self, job: Job) -> str:
        """Insert a pending job and return its id."""

    @abstractmethod
    async def claim_batch(self, limit: int, now: datetime) -> List[Job]:
        """Lock, mark running and return up to ``limit`` due pending jobs.

        Selection, locking, the attempts increment and the status change
        happen in a single atomic step; concurrent callers never receive the
        same job.
        """

    @abstractmethod
    async def mark_completed(
        self, job_id: str, result: Any = None, now: Optional[datetime] = None
    ) -> None:
        """Mark a running job completed. No-op if it is already completed."""

    @abstractmethod
    async def mark_failed(
        self,
        job_id: str,
        error: str,
        next_scheduled_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Reschedule (``next_scheduled_at`` given) or terminally fail a running job.

        Returns False if the job was no longer running.
        """

    @abstractmethod
    async def get_by_id(self, job_id: str) -> Job:
        """Return the job or raise ``JobNotFoundError``."""

    @abstractmethod
    async def heartbeat(self, job_ids: Iterable[str], now: datetime) -> int:
        """Refresh ``heartbeat_at`` of running jobs. Returns rows touched."""

    @abstractmethod
    async def reset_stale(
        self, stale_before: datetime, now: datetime, error: str
    ) -> Tuple[List[str], List[str]]:
        """Recover running jobs whose last heartbeat is older than ``stale_before``.

        Returns ``(requeued_ids, failed_ids)``.
        """

    @abstractmethod
    async def find_active(
        self, job_type: str, idempotency_key: Optional[str] = None
    ) -> Optional[Job]:
        """Return a pending or running job of this type (and key), if any."""

    @abstractmethod
    async def list_jobs(self, query: JobQuery) -> JobPage:
        """List jobs newest first."""

    @abstractmethod
    async def retry(self, job_id: str, reset_attempts: bool, now: datetime) -> Job:
        """Move a failed job back to pending."""

    @abstractmethod
    async def count_by_status(self) -> Dict[str, int]:
        """Number of jobs per status."""


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

HandlerFunc = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]


class JobHandler(ABC):
    """Abstract base class for job handlers."""

    timeout_seconds: Optional[float] = None

    @property
    @abstractmethod
    def name(self) -> str:
        """Job type this handler processes."""

    @abstractmethod
    async def handle(self, payload: Dict[str, Any]) -> Any:
        """Process one job payload."""


class FunctionHandler(JobHandler):
    """Job handler from a function.

    Plain functions run in a worker thread so they cannot stall the event loop.
    """

    def __init__(
        self,
        handler_name: str,
        func: HandlerFunc,
        timeout_seconds: Optional[float] = None,
    ):
        self._name = handler_name
        self._func = func
        self.timeout_seconds = timeout_seconds

    @property
    def name(self) -> str:
        return self._name

    async def handle(self, payload: Dict[str, Any]) -> Any:
        if asyncio.iscoroutinefunction(self._func):
            return await self._func(payload)
        return await anyio.to_thread.run_sync(self._func, payload)


class HandlerRegistry:
    """Maps job type names to handlers."""

    def __init__(self):
        self._handlers: Dict[str, JobHandler] = {}

    def register(
        self,
        job_type: str,
        handler: Union[JobHandler, HandlerFunc],
        timeout_seconds: Optional[float] = None,
    ) -> JobHandler:
        """Register a handler. Re-registering a type is an error."""
        validate_job_type(job_type)
        if job_type in self._handlers:
            raise DuplicateHandlerError(job_type)

        if isinstance(handler, JobHandler):
            if timeout_seconds is not None:
                handler.timeout_seconds = timeout_seconds
            entry = handler
        elif callable(handler):
            entry = FunctionHandler(job_type, handler, timeout_seconds)
        else:
            raise TypeError(f"Handler for {job_type} must be callable")

        self._handlers[job_type] = entry
        return entry

    def resolve(self, job_type: str) -> JobHandler:
        handler = self._handlers.get(job_type)
        if handler is None:
            raise UnknownJobTypeError(job_type)
        return handler

    def has(self, job_type: str) -> bool:
        return job_type in self._handlers

    def timeout_for(self, job_type: str) -> Optional[float]:
        handler = self._handlers.get(job_type)
        return handler.timeout_seconds if handler else None

    def handler(self, job_type: str, timeout_seconds: Optional[float] = None):
        """Decorator to register a function as handler."""
        def decorator(func: HandlerFunc) -> HandlerFunc:
            self.register(job_type, func, timeout_seconds=timeout_seconds)
            return func
        return decorator

    def validate_required(self, job_types: Iterable[str]) -> None:
        missing = [t for t in job_types if t not in self._handlers]
        if missing:
            raise UnknownJobTypeError(", ".join(missing))

    @property
    def job_types(self) -> List[str]:
        return list(self._handlers)
