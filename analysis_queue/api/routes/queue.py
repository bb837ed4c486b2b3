"""
Worker-facing queue routes.

Remote workers drive the job lifecycle through these endpoints: claim,
heartbeat, complete, fail and log. Ownership is checked against the
worker_id sent in each request body.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, status

from analysis_queue.api.dependencies import SessionDep
from analysis_queue.constants import API_V1_PREFIX
from analysis_queue.db.logs import JobLogRepository
from analysis_queue.db.repository import JobRepository
from analysis_queue.observability.metrics import get_metrics
from analysis_queue.types.api import (
    AppendLogRequest,
    ClaimedJobResponse,
    ClaimRequest,
    ClaimResponse,
    CompleteRequest,
    FailRequest,
    HeartbeatRequest,
    HeartbeatResponse,
    JobResponse,
    LogEntryResponse,
    MetricsResponse,
    ReclaimResponse,
    RetryResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/queue", tags=["Queue"])


@router.post(
    "/claim",
    response_model=ClaimResponse,
    summary="Claim the next job",
    description="Lease the oldest ready pending job. Returns an empty claim when none is ready.",
)
async def claim(request: ClaimRequest, session: SessionDep) -> ClaimResponse:
    repo = JobRepository(session)
    claimed = await repo.claim(request.worker_id, lease_seconds=request.lease_seconds)
    await session.commit()

    if claimed is None:
        return ClaimResponse(job=None)

    get_metrics().record_lease_acquired(request.worker_id)
    return ClaimResponse(job=ClaimedJobResponse.model_validate(claimed))


@router.post(
    "/jobs/{job_id}/heartbeat",
    response_model=HeartbeatResponse,
    summary="Extend a lease",
)
async def heartbeat(
    job_id: UUID,
    request: HeartbeatRequest,
    session: SessionDep,
) -> HeartbeatResponse:
    """
    Extend the worker's lease and record progress.

    A 409 response means the worker lost the lease and must abandon the job.
    """
    repo = JobRepository(session)
    job = await repo.heartbeat(
        job_id,
        request.worker_id,
        sub_state=request.sub_state,
        progress=request.progress,
        current_step=request.current_step,
        total_steps=request.total_steps,
        lease_seconds=request.lease_seconds,
    )
    await session.commit()

    return HeartbeatResponse(
        id=job.id,
        status=job.status,
        lease_until=job.lease_until,
        cancel_requested=job.cancel_requested,
    )


@router.post(
    "/jobs/{job_id}/complete",
    response_model=JobResponse,
    summary="Complete a job",
)
async def complete(
    job_id: UUID,
    request: CompleteRequest,
    session: SessionDep,
) -> JobResponse:
    repo = JobRepository(session)
    job = await repo.complete(
        job_id,
        request.worker_id,
        result=request.result,
        result_count=request.result_count,
    )
    await session.commit()

    get_metrics().record_outcome("completed")
    return JobResponse.model_validate(job)


@router.post(
    "/jobs/{job_id}/fail",
    response_model=RetryResponse,
    summary="Report a failed attempt",
    description="Re-queue the job with backoff, or dead-letter it once attempts are exhausted.",
)
async def fail(
    job_id: UUID,
    request: FailRequest,
    session: SessionDep,
) -> RetryResponse:
    repo = JobRepository(session)
    outcome = await repo.retry_or_fail(job_id, request.worker_id, request.error)
    await session.commit()

    get_metrics().record_outcome(outcome.status)
    return RetryResponse(
        id=job_id,
        status=outcome.status,
        attempts=outcome.attempts,
        next_run_at=outcome.next_run_at,
    )


@router.post(
    "/jobs/{job_id}/logs",
    response_model=LogEntryResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Append a job log entry",
)
async def append_log(
    job_id: UUID,
    request: AppendLogRequest,
    session: SessionDep,
) -> LogEntryResponse:
    entry = await JobLogRepository(session).append(job_id, request.level, request.msg)
    await session.commit()
    return LogEntryResponse.model_validate(entry)


@router.post(
    "/reclaim",
    response_model=ReclaimResponse,
    summary="Reclaim expired leases",
    description="Run one reclaim sweep. Normally done by the reclaimer process.",
)
async def reclaim(session: SessionDep) -> ReclaimResponse:
    repo = JobRepository(session)
    outcome = await repo.reclaim_expired()
    await session.commit()

    get_metrics().record_reclaimed(outcome.reclaimed, outcome.dead)
    return ReclaimResponse(
        reclaimed=outcome.reclaimed,
        dead=outcome.dead,
        checked=outcome.checked,
    )


@router.get(
    "/metrics",
    response_model=MetricsResponse,
    summary="Queue metrics",
    description="Job counts by status plus activity over the last hour.",
)
async def queue_metrics(session: SessionDep) -> MetricsResponse:
    repo = JobRepository(session)
    snapshot = await repo.get_metrics()

    get_metrics().update_queue_depth(snapshot.counts)
    return MetricsResponse(
        counts=snapshot.counts,
        recent_total=snapshot.recent_total,
        recent_completed=snapshot.recent_completed,
        recent_failed=snapshot.recent_failed,
        timestamp=snapshot.timestamp,
    )
