"""
Job-related type definitions for internal use.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Literal
from uuid import UUID

from pydantic import BaseModel

if TYPE_CHECKING:
    from analysis_queue.db.models import Job


class JobResult(BaseModel):
    """
    Result of running the opaque work for a job.
    Returned by worker handlers after processing.
    """

    success: bool
    output: Any = None
    result_count: int | None = None
    error: str | None = None


@dataclass
class ClaimedJob:
    """
    Everything a worker needs to start work on a freshly claimed job.
    """

    id: UUID
    target_id: str
    owner_id: str
    prompt: str
    callback_token: str
    attempts: int
    max_attempts: int
    lease_until: datetime


@dataclass
class RetryOutcome:
    """Outcome of reporting a failed attempt."""

    status: Literal["retrying", "dead"]
    attempts: int
    next_run_at: datetime | None = None


@dataclass
class ReclaimOutcome:
    """Outcome of one lease reclaim sweep."""

    reclaimed: int
    dead: int
    checked: int


@dataclass
class QueueMetrics:
    """Aggregate queue counts."""

    counts: dict[str, int]
    recent_total: int
    recent_completed: int
    recent_failed: int
    timestamp: datetime


@dataclass
class RegenerateOutcome:
    """Outcome of regenerating a target."""

    job: "Job"
    duplicate: bool
    canceled: list[UUID] = field(default_factory=list)
