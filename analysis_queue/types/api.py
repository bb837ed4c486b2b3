"""
API request and response type definitions.
"""

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from analysis_queue.constants import JobStatus, LogLevel


class EnqueueRequest(BaseModel):
    """Request body for submitting a new job."""

    target_id: str = Field(..., min_length=1, max_length=255, description="Target resource id")
    prompt: str = Field(..., min_length=1, description="Opaque task payload")
    max_attempts: int | None = Field(default=None, ge=1, le=50, description="Retry ceiling")


class EnqueueResponse(BaseModel):
    """Response body after submitting a job."""

    id: UUID
    status: JobStatus
    duplicate: bool
    callback_token: str | None = Field(
        default=None,
        description="Progress callback capability; only returned to the job's owner",
    )
    created_at: datetime
    message: str = "Job created successfully"


class JobResponse(BaseModel):
    """Full job details response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    owner_id: str
    target_id: str
    status: JobStatus
    prompt: str
    run_at: datetime
    attempts: int
    max_attempts: int
    locked_by: str | None
    lease_until: datetime | None
    dedupe_key: str | None
    last_error: str | None
    current_step: int | None
    total_steps: int | None
    progress: str | None
    result: Any | None
    result_count: int | None
    error: str | None
    cancel_requested: bool
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None


class JobListResponse(BaseModel):
    """Paginated list of jobs."""

    jobs: list[JobResponse]
    total: int
    page: int
    page_size: int
    has_next: bool


class LogEntryResponse(BaseModel):
    """One job log entry."""

    model_config = ConfigDict(from_attributes=True)

    seq: int
    ts: datetime
    level: LogLevel
    msg: str


class LogListResponse(BaseModel):
    """Job log entries in ascending seq order."""

    job_id: UUID
    entries: list[LogEntryResponse]


class ClaimRequest(BaseModel):
    """Worker request to claim the next ready job."""

    worker_id: str = Field(..., min_length=1, max_length=255)
    lease_seconds: float | None = Field(default=None, gt=0)


class ClaimResponse(BaseModel):
    """A claimed job, or an empty claim when the queue has nothing ready."""

    job: "ClaimedJobResponse | None" = None


class ClaimedJobResponse(BaseModel):
    """Fields a worker needs to execute a claimed job."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    target_id: str
    owner_id: str
    prompt: str
    callback_token: str
    attempts: int
    max_attempts: int
    lease_until: datetime


class HeartbeatRequest(BaseModel):
    """Worker lease extension with optional progress."""

    worker_id: str = Field(..., min_length=1, max_length=255)
    sub_state: JobStatus | None = None
    progress: str | None = None
    current_step: int | None = Field(default=None, ge=0)
    total_steps: int | None = Field(default=None, ge=0)
    lease_seconds: float | None = Field(default=None, gt=0)


class HeartbeatResponse(BaseModel):
    """Lease extension result."""

    id: UUID
    status: JobStatus
    lease_until: datetime | None
    cancel_requested: bool


class CompleteRequest(BaseModel):
    """Worker request to mark a job completed."""

    worker_id: str = Field(..., min_length=1, max_length=255)
    result: Any | None = None
    result_count: int | None = Field(default=None, ge=0)


class FailRequest(BaseModel):
    """Worker report of a failed attempt."""

    worker_id: str = Field(..., min_length=1, max_length=255)
    error: str = Field(..., min_length=1)


class RetryResponse(BaseModel):
    """Outcome of a failed attempt."""

    id: UUID
    status: Literal["retrying", "dead"]
    attempts: int
    next_run_at: datetime | None = None


class AppendLogRequest(BaseModel):
    """Request body for appending a job log entry."""

    level: LogLevel = LogLevel.INFO
    msg: str = Field(..., min_length=1)


class ProgressRequest(BaseModel):
    """Out-of-process progress report authorized by the callback token."""

    sub_state: JobStatus | None = None
    progress: str | None = None
    current_step: int | None = Field(default=None, ge=0)
    total_steps: int | None = Field(default=None, ge=0)


class RegenerateRequest(BaseModel):
    """Cancel the active job for a target and submit a fresh one."""

    target_id: str = Field(..., min_length=1, max_length=255)
    prompt: str | None = None


class ReclaimResponse(BaseModel):
    """Result of one lease reclaim sweep."""

    reclaimed: int
    dead: int
    checked: int


class MetricsResponse(BaseModel):
    """Aggregate queue counts."""

    counts: dict[str, int]
    recent_total: int
    recent_completed: int
    recent_failed: int
    timestamp: datetime


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
    job_id: UUID | None = None


ClaimResponse.model_rebuild()
