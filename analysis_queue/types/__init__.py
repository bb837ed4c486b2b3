"""
Type definitions for the analysis queue.
Contains input/output type definitions, grouped by module.
"""

from analysis_queue.types.api import (
    AppendLogRequest,
    ClaimedJobResponse,
    ClaimRequest,
    ClaimResponse,
    CompleteRequest,
    EnqueueRequest,
    EnqueueResponse,
    ErrorResponse,
    FailRequest,
    HealthResponse,
    HeartbeatRequest,
    HeartbeatResponse,
    JobListResponse,
    JobResponse,
    LogEntryResponse,
    LogListResponse,
    MetricsResponse,
    ProgressRequest,
    ReclaimResponse,
    RegenerateRequest,
    RetryResponse,
)
from analysis_queue.types.job import (
    ClaimedJob,
    JobResult,
    QueueMetrics,
    ReclaimOutcome,
    RegenerateOutcome,
    RetryOutcome,
)

__all__ = [
    # API types
    "EnqueueRequest",
    "EnqueueResponse",
    "JobResponse",
    "JobListResponse",
    "LogEntryResponse",
    "LogListResponse",
    "ClaimRequest",
    "ClaimResponse",
    "ClaimedJobResponse",
    "HeartbeatRequest",
    "HeartbeatResponse",
    "CompleteRequest",
    "FailRequest",
    "RetryResponse",
    "AppendLogRequest",
    "ProgressRequest",
    "RegenerateRequest",
    "ReclaimResponse",
    "MetricsResponse",
    "HealthResponse",
    "ErrorResponse",
    # Job types
    "ClaimedJob",
    "JobResult",
    "RetryOutcome",
    "ReclaimOutcome",
    "RegenerateOutcome",
    "QueueMetrics",
]
