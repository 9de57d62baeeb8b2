"""Structured logging configuration.

Features:
- JSON formatted logs for aggregation
- Job correlation fields (job id, job type, worker id)
- Error tracking
"""

from __future__ import annotations

import json
import logging
import sys
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Iterator, Optional

if TYPE_CHECKING:
    from src.core.job_queue.core import Job

# Context variables for job tracking. Each dispatched job runs in its own
# asyncio task, so values set here never leak into sibling jobs.
job_id_var: ContextVar[Optional[str]] = ContextVar("job_id", default=None)
job_type_var: ContextVar[Optional[str]] = ContextVar("job_type", default=None)
worker_id_var: ContextVar[Optional[str]] = ContextVar("worker_id", default=None)


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(
        self,
        service_name: str = "control-plane-jobs",
        environment: str = "production",
        include_stack_trace: bool = True,
    ):
        super().__init__()
        self.service_name = service_name
        self.environment = environment
        self.include_stack_trace = include_stack_trace

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": self.environment,
        }

        log_entry["location"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
        }

        if job_id := job_id_var.get():
            log_entry["job_id"] = job_id
        if job_type := job_type_var.get():
            log_entry["job_type"] = job_type
        if worker_id := worker_id_var.get():
            log_entry["worker_id"] = worker_id

        if hasattr(record, "extra_fields"):
            log_entry["extra"] = record.extra_fields

        if record.exc_info and self.include_stack_trace:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "stacktrace": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(log_entry, default=str)


@contextmanager
def job_context(job: "Job") -> Iterator[None]:
    """Bind the job's id and type to every log line emitted inside the block."""
    id_token = job_id_var.set(job.id)
    type_token = job_type_var.set(job.type)
    try:
        yield
    finally:
        job_id_var.reset(id_token)
        job_type_var.reset(type_token)


def setup_logging(
    level: str = "INFO",
    fmt: str = "json",
    service_name: str = "control-plane-jobs",
    environment: str = "production",
) -> None:
    """Configure root logging for a worker process."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)

    if fmt == "json":
        formatter: logging.Formatter = StructuredFormatter(
            service_name=service_name,
            environment=environment,
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)
