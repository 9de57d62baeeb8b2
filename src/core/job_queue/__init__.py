"""Job Queue Module.

Provides a database-backed background job queue:
- Durable job records with exclusive (SKIP LOCKED) claiming
- Retry with exponential backoff
- Bounded-concurrency workers with graceful shutdown
- Recovery of jobs abandoned by lost workers
"""

from src.core.job_queue.core import (
    JobStatus,
    JobType,
    JobOutcome,
    EnqueueOptions,
    Job,
    JobExecutionResult,
    JobQuery,
    JobPage,
    create_job,
    JobStore,
    JobHandler,
    FunctionHandler,
    HandlerRegistry,
    JobQueueError,
    StorageError,
    JobNotFoundError,
    JobValidationError,
    DuplicateHandlerError,
    UnknownJobTypeError,
    JobNotRetryableError,
    JobExecutionError,
    JobTimeoutError,
)
from src.core.job_queue.backends import (
    InMemoryJobStore,
    PostgresJobStore,
)
from src.core.job_queue.queue import JobQueue
from src.core.job_queue.retry import RetryController, RetryPolicy
from src.core.job_queue.executor import JobExecutor
from src.core.job_queue.reaper import ReapResult, StaleJobReaper
from src.core.job_queue.worker import (
    WorkerConfig,
    WorkerStats,
    WorkerState,
    Worker,
    shutdown,
    setup_signal_handlers,
)

__all__ = [
    # Core
    "JobStatus",
    "JobType",
    "JobOutcome",
    "EnqueueOptions",
    "Job",
    "JobExecutionResult",
    "JobQuery",
    "JobPage",
    "create_job",
    "JobStore",
    "JobHandler",
    "FunctionHandler",
    "HandlerRegistry",
    # Errors
    "JobQueueError",
    "StorageError",
    "JobNotFoundError",
    "JobValidationError",
    "DuplicateHandlerError",
    "UnknownJobTypeError",
    "JobNotRetryableError",
    "JobExecutionError",
    "JobTimeoutError",
    # Backends
    "InMemoryJobStore",
    "PostgresJobStore",
    # Producer
    "JobQueue",
    # Execution
    "RetryController",
    "RetryPolicy",
    "JobExecutor",
    "ReapResult",
    "StaleJobReaper",
    # Worker
    "WorkerConfig",
    "WorkerStats",
    "WorkerState",
    "Worker",
    "shutdown",
    "setup_signal_handlers",
]
