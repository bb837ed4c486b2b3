"""
Job submission and observation routes.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from analysis_queue.api.dependencies import CallbackToken, OwnerId, SessionDep
from analysis_queue.constants import API_V1_PREFIX, JobStatus
from analysis_queue.db.logs import JobLogRepository
from analysis_queue.db.models import Job
from analysis_queue.db.repository import JobRepository, target_dedupe_key
from analysis_queue.observability.metrics import get_metrics
from analysis_queue.types.api import (
    EnqueueRequest,
    EnqueueResponse,
    JobListResponse,
    JobResponse,
    LogEntryResponse,
    LogListResponse,
    ProgressRequest,
    RegenerateRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/jobs", tags=["Jobs"])


def _enqueue_response(job: Job, duplicate: bool, owner_id: str) -> EnqueueResponse:
    # The callback token only goes to the job's own submitter
    return EnqueueResponse(
        id=job.id,
        status=job.status,
        duplicate=duplicate,
        callback_token=job.callback_token if job.owner_id == owner_id else None,
        created_at=job.created_at,
        message="Job already active (duplicate)" if duplicate else "Job created successfully",
    )


async def _get_owned_job(repo: JobRepository, job_id: UUID, owner_id: str) -> Job:
    job = await repo.get_job(job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )
    if job.owner_id != owner_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access denied",
        )
    return job


@router.post(
    "",
    response_model=EnqueueResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a job",
    description=(
        "Submit a new analysis job. Only one job per target may be active; "
        "a submission for a busy target returns the active job as a duplicate."
    ),
)
async def create_job(
    request: EnqueueRequest,
    owner_id: OwnerId,
    session: SessionDep,
) -> EnqueueResponse:
    """
    Submit a job.

    If the target already has an active job it is returned with
    duplicate=True and nothing new is queued. The callback token is only
    included when the caller owns the returned job.

    Args:
        request: Job submission request.
        owner_id: Submitting owner.
        session: Database session.

    Returns:
        EnqueueResponse with the (new or existing) job.
    """
    repo = JobRepository(session)
    job, duplicate = await repo.enqueue(
        owner_id=owner_id,
        target_id=request.target_id,
        prompt=request.prompt,
        dedupe_key=target_dedupe_key(request.target_id),
        max_attempts=request.max_attempts,
    )
    await session.commit()

    get_metrics().record_enqueued(duplicate)
    return _enqueue_response(job, duplicate, owner_id)


@router.get(
    "",
    response_model=JobListResponse,
    summary="List jobs",
    description="List the owner's jobs, newest first, with optional filtering.",
)
async def list_jobs(
    owner_id: OwnerId,
    session: SessionDep,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    status: JobStatus | None = Query(default=None),
    target_id: str | None = Query(default=None),
) -> JobListResponse:
    """
    List jobs for the calling owner.

    Args:
        owner_id: Calling owner.
        session: Database session.
        page: Page number (1-indexed).
        page_size: Number of items per page.
        status: Optional status filter.
        target_id: Optional target filter.

    Returns:
        JobListResponse with paginated jobs.
    """
    repo = JobRepository(session)
    jobs, total = await repo.list_jobs(
        owner_id=owner_id,
        status=status,
        target_id=target_id,
        limit=page_size,
        offset=(page - 1) * page_size,
    )

    return JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        total=total,
        page=page,
        page_size=page_size,
        has_next=(page * page_size) < total,
    )


@router.post(
    "/regenerate",
    response_model=EnqueueResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Regenerate a target",
    description=(
        "Cancel every active job for a target and submit a fresh one. "
        "Refused when another owner's job is active on the target."
    ),
)
async def regenerate(
    request: RegenerateRequest,
    owner_id: OwnerId,
    session: SessionDep,
) -> EnqueueResponse:
    repo = JobRepository(session)
    outcome = await repo.regenerate(
        owner_id=owner_id,
        target_id=request.target_id,
        prompt=request.prompt,
    )
    await session.commit()

    metrics = get_metrics()
    for _ in outcome.canceled:
        metrics.record_outcome("canceled")
    metrics.record_enqueued(outcome.duplicate)

    logger.info(
        "Regeneration requested",
        extra={
            "job_id": str(outcome.job.id),
            "target_id": request.target_id,
            "canceled": [str(job_id) for job_id in outcome.canceled],
        },
    )
    return _enqueue_response(outcome.job, outcome.duplicate, owner_id)


@router.get(
    "/targets/{target_id}/latest",
    response_model=JobResponse,
    summary="Latest job for a target",
)
async def latest_for_target(
    target_id: str,
    owner_id: OwnerId,
    session: SessionDep,
    completed_only: bool = Query(default=False),
) -> JobResponse:
    """
    Get the caller's newest job for a target.

    Args:
        target_id: Target resource id.
        owner_id: Calling owner.
        session: Database session.
        completed_only: Only consider completed jobs.

    Returns:
        JobResponse for the newest matching job.
    """
    repo = JobRepository(session)
    job = await repo.latest_for_target(
        target_id,
        owner_id=owner_id,
        status=JobStatus.COMPLETED if completed_only else None,
    )
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No job found for target",
        )
    return JobResponse.model_validate(job)


@router.get(
    "/{job_id}",
    response_model=JobResponse,
    summary="Get job details",
)
async def get_job(
    job_id: UUID,
    owner_id: OwnerId,
    session: SessionDep,
) -> JobResponse:
    """
    Get job details by ID.

    Raises:
        HTTPException: If the job is not found or belongs to another owner.
    """
    repo = JobRepository(session)
    job = await _get_owned_job(repo, job_id, owner_id)
    return JobResponse.model_validate(job)


@router.get(
    "/{job_id}/logs",
    response_model=LogListResponse,
    summary="Read job logs",
    description="Log entries in ascending sequence order, optionally after a given seq.",
)
async def get_job_logs(
    job_id: UUID,
    owner_id: OwnerId,
    session: SessionDep,
    after_seq: int | None = Query(default=None, ge=0),
    limit: int | None = Query(default=None, ge=1, le=1000),
) -> LogListResponse:
    repo = JobRepository(session)
    await _get_owned_job(repo, job_id, owner_id)

    entries = await JobLogRepository(session).list_after(job_id, after_seq=after_seq, limit=limit)
    return LogListResponse(
        job_id=job_id,
        entries=[LogEntryResponse.model_validate(entry) for entry in entries],
    )


@router.post(
    "/{job_id}/cancel",
    response_model=JobResponse,
    summary="Cancel a job",
)
async def cancel_job(
    job_id: UUID,
    owner_id: OwnerId,
    session: SessionDep,
) -> JobResponse:
    """
    Cancel a pending or running job owned by the caller.

    The worker holding the job loses its lease and stops at its next
    cancellation check or heartbeat.
    """
    repo = JobRepository(session)
    job = await repo.cancel(job_id, owner_id)
    await session.commit()

    get_metrics().record_outcome("canceled")
    return JobResponse.model_validate(job)


@router.post(
    "/{job_id}/request-cancel",
    response_model=JobResponse,
    summary="Request cooperative cancellation",
)
async def request_cancel(
    job_id: UUID,
    owner_id: OwnerId,
    session: SessionDep,
) -> JobResponse:
    repo = JobRepository(session)
    await _get_owned_job(repo, job_id, owner_id)
    job = await repo.request_cancel(job_id)
    await session.commit()

    get_metrics().record_outcome("canceled")
    return JobResponse.model_validate(job)


@router.post(
    "/{job_id}/resubmit",
    response_model=EnqueueResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Resubmit a finished job",
    description="Submit a new job with the target and prompt of a finished (e.g. dead) job.",
)
async def resubmit_job(
    job_id: UUID,
    owner_id: OwnerId,
    session: SessionDep,
) -> EnqueueResponse:
    repo = JobRepository(session)
    job, duplicate = await repo.resubmit(job_id, owner_id)
    await session.commit()

    get_metrics().record_enqueued(duplicate)
    return _enqueue_response(job, duplicate, owner_id)


@router.post(
    "/{job_id}/progress",
    response_model=JobResponse,
    summary="Report progress",
    description="Progress report from an out-of-process reporter holding the callback token.",
)
async def report_progress(
    job_id: UUID,
    request: ProgressRequest,
    callback_token: CallbackToken,
    session: SessionDep,
) -> JobResponse:
    repo = JobRepository(session)
    job = await repo.report_progress(
        job_id,
        callback_token,
        sub_state=request.sub_state,
        progress=request.progress,
        current_step=request.current_step,
        total_steps=request.total_steps,
    )
    await session.commit()
    return JobResponse.model_validate(job)
