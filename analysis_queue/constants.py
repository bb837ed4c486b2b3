"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - PENDING -> CLAIMED (lease acquired)
    - CLAIMED -> CLONING/ANALYZING/GATHERING/RUNNING (heartbeat sub-state)
    - active -> COMPLETED (success)
    - active -> PENDING (retry with backoff, or lease expired)
    - active -> DEAD (max attempts exceeded)
    - PENDING/active -> CANCELED (cancellation)
    """

    PENDING = "pending"
    CLAIMED = "claimed"
    CLONING = "cloning"
    ANALYZING = "analyzing"
    GATHERING = "gathering"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"
    DEAD = "dead"


class LogLevel(StrEnum):
    """Severity of a job log entry."""

    INFO = "info"
    ERROR = "error"


# States in which a worker holds the lease
LEASED_STATUSES: frozenset[JobStatus] = frozenset(
    {
        JobStatus.CLAIMED,
        JobStatus.CLONING,
        JobStatus.ANALYZING,
        JobStatus.GATHERING,
        JobStatus.RUNNING,
    }
)

# Sub-states a worker may report through heartbeat
WORKER_SUB_STATES: frozenset[JobStatus] = LEASED_STATUSES - {JobStatus.CLAIMED}

ACTIVE_STATUSES: frozenset[JobStatus] = LEASED_STATUSES | {JobStatus.PENDING}

# Default values
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_TOTAL_STEPS = 6
INITIAL_PROGRESS = "Initializing..."
LEASE_EXPIRED_ERROR = "Lease expired - worker likely crashed"
CANCELED_BY_USER_ERROR = "Job cancelled by user"
CANCELED_BY_USER_PROGRESS = "Job was cancelled by user request"
RECENT_ACTIVITY_WINDOW_SECONDS = 60 * 60

# API constants
API_V1_PREFIX = "/v1"
OWNER_ID_HEADER = "X-Owner-ID"
CALLBACK_TOKEN_HEADER = "X-Callback-Token"

# Metrics names
METRIC_QUEUE_DEPTH = "analysis_queue_jobs"
METRIC_JOBS_ENQUEUED = "jobs_enqueued_total"
METRIC_JOB_OUTCOMES = "job_outcomes_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_LEASE_RECLAIMED = "lease_reclaimed_total"
METRIC_LEASE_ACQUIRED = "lease_acquired_total"
METRIC_API_REQUESTS = "api_requests_total"
METRIC_API_LATENCY = "api_request_latency_seconds"

# Trace span names
SPAN_EXECUTE_JOB = "execute_job"
SPAN_RECLAIM = "reclaim_expired_leases"
