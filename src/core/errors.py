"""Shared error codes for persisted job failures.

Every ``last_error`` written by the worker starts with one of these codes so
operators can group failures without parsing free-form messages.
"""

from __future__ import annotations

from enum import Enum

MAX_ERROR_LENGTH = 1000


class ErrorCode(str, Enum):
    UNKNOWN_JOB_TYPE = "UNKNOWN_JOB_TYPE"
    EXECUTION_TIMEOUT = "EXECUTION_TIMEOUT"
    HANDLER_ERROR = "HANDLER_ERROR"
    HANDLER_REPORTED_FAILURE = "HANDLER_REPORTED_FAILURE"  # success=False result
    WORKER_LOST = "WORKER_LOST"  # reaped after missing heartbeats


def format_error(code: ErrorCode, message: str) -> str:
    """Build the persisted ``last_error`` summary, bounded in length."""
    text = f"{code.value}: {message}".strip()
    if len(text) > MAX_ERROR_LENGTH:
        text = text[: MAX_ERROR_LENGTH - 3] + "..."
    return text


__all__ = ["ErrorCode", "MAX_ERROR_LENGTH", "format_error"]
