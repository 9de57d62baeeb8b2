import os
import pytest


# List of environment variables that may be modified by tests
_ENV_VARS_TO_ISOLATE = [
    "LOG_LEVEL",
    "LOG_FORMAT",
    "DATABASE_URL",
    "JOBS_TABLE",
    "JOB_POLL_INTERVAL_SECONDS",
    "JOB_CONCURRENCY",
    "JOB_TIMEOUT_SECONDS",
    "JOB_SHUTDOWN_GRACE_SECONDS",
    "JOB_DEFAULT_MAX_ATTEMPTS",
    "JOB_RETRY_BASE_DELAY_SECONDS",
    "JOB_RETRY_MAX_DELAY_SECONDS",
    "JOB_RETRY_MULTIPLIER",
    "JOB_RETRY_JITTER",
    "JOB_STALE_AFTER_SECONDS",
    "WEBHOOK_TIMEOUT_SECONDS",
    "WEBHOOK_SIGNING_SECRET",
]


@pytest.fixture(autouse=True)
def env_isolation():
    """Isolate environment variables between tests."""
    backup = {k: os.environ.get(k) for k in _ENV_VARS_TO_ISOLATE}
    try:
        yield
    finally:
        for k, v in backup.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


@pytest.fixture(autouse=True)
def settings_isolation():
    """Drop cached settings so env changes in one test do not leak."""
    from src.core.config import reset_settings

    reset_settings()
    try:
        yield
    finally:
        reset_settings()
