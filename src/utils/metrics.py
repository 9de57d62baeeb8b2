"""Prometheus metrics registration for the job queue.

All metric objects are defined at import time and shared by every worker
component in the process.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

jobs_enqueued_total = Counter(
    "jobs_enqueued_total",
    "Jobs inserted into the queue",
    ["type"],
)
jobs_claimed_total = Counter(
    "jobs_claimed_total",
    "Jobs claimed by this worker",
)
jobs_completed_total = Counter(
    "jobs_completed_total",
    "Jobs that finished successfully",
    ["type"],
)
jobs_failed_total = Counter(
    "jobs_failed_total",
    "Job executions that failed",
    ["type", "terminal"],
)
jobs_retried_total = Counter(
    "jobs_retried_total",
    "Failed jobs rescheduled for another attempt",
    ["type"],
)
job_duration_seconds = Histogram(
    "job_duration_seconds",
    "Handler execution time",
    ["type"],
    buckets=[0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0],
)
jobs_in_flight = Gauge(
    "jobs_in_flight",
    "Jobs currently executing in this worker",
)
job_poll_errors_total = Counter(
    "job_poll_errors_total",
    "Claim attempts that failed due to storage errors",
)
jobs_reaped_total = Counter(
    "jobs_reaped_total",
    "Stale running jobs reset by the reaper",
    ["outcome"],
)
recurring_jobs_skipped_total = Counter(
    "recurring_jobs_skipped_total",
    "Recurring enqueues skipped because an identical job was active",
    ["type"],
)
job_stale_outcomes_total = Counter(
    "job_stale_outcomes_total",
    "Failure outcomes discarded because the job was no longer running",
    ["type"],
)
