"""
Job repository for database operations.
Implements the queue transitions as single-row atomic updates.
"""

import logging
import random
import secrets
from datetime import UTC, datetime, timedelta
from typing import Any, Sequence
from uuid import UUID, uuid4

from sqlalchemy import and_, func, select, text, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.dml import Update

from analysis_queue.backoff import compute_backoff_seconds
from analysis_queue.config import Settings, get_settings
from analysis_queue.constants import (
    ACTIVE_STATUSES,
    CANCELED_BY_USER_ERROR,
    CANCELED_BY_USER_PROGRESS,
    DEFAULT_TOTAL_STEPS,
    INITIAL_PROGRESS,
    LEASE_EXPIRED_ERROR,
    LEASED_STATUSES,
    RECENT_ACTIVITY_WINDOW_SECONDS,
    WORKER_SUB_STATES,
    JobStatus,
)
from analysis_queue.db.models import ACTIVE_STATUS_PREDICATE, Job
from analysis_queue.exceptions import (
    InvalidTransitionError,
    JobNotFoundError,
    OwnershipError,
    PermissionDeniedError,
)
from analysis_queue.types.job import (
    ClaimedJob,
    QueueMetrics,
    ReclaimOutcome,
    RegenerateOutcome,
    RetryOutcome,
)

logger = logging.getLogger(__name__)

_LEASED = list(LEASED_STATUSES)
_ACTIVE = list(ACTIVE_STATUSES)

# Lookup-then-insert rounds before a contended dedupe key is reported
_ENQUEUE_ATTEMPTS = 3

REGENERATE_PROMPT = "Regenerate course documentation"


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form stored in the database."""
    return datetime.now(UTC).replace(tzinfo=None)


def target_dedupe_key(target_id: str) -> str:
    """Dedupe key that allows one active job per target."""
    return f"target:{target_id}"


def new_callback_token() -> str:
    """Generate a fresh callback capability token."""
    return secrets.token_hex(16)


class JobRepository:
    """
    Repository for job database operations.

    Every mutating method is one read-verify-write against a single job row:
    the write is a conditional UPDATE whose WHERE clause repeats the
    precondition (status, lease owner, attempt count), so a concurrent
    transition makes it match zero rows instead of clobbering state.

    The caller owns the transaction and commits it.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        rng: random.Random | None = None,
    ):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
            settings: Optional settings override.
            rng: Optional random source for backoff jitter.
        """
        self._session = session
        self._settings = settings or get_settings()
        self._rng = rng

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_job(self, job_id: UUID) -> Job | None:
        """
        Get a job by ID.

        Args:
            job_id: The job UUID.

        Returns:
            The Job or None if not found.
        """
        stmt = (
            select(Job)
            .where(Job.id == job_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def require_job(self, job_id: UUID) -> Job:
        """Get a job by ID or raise JobNotFoundError."""
        job = await self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def get_active_by_dedupe_key(self, dedupe_key: str) -> Job | None:
        """Get the active job holding a dedupe key, if any."""
        stmt = (
            select(Job)
            .where(
                and_(
                    Job.dedupe_key == dedupe_key,
                    Job.status.in_(_ACTIVE),
                )
            )
            .order_by(Job.created_at.asc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_active_for_target(self, target_id: str) -> Sequence[Job]:
        """List every active job for a target, oldest first."""
        stmt = (
            select(Job)
            .where(
                and_(
                    Job.target_id == target_id,
                    Job.status.in_(_ACTIVE),
                )
            )
            .order_by(Job.created_at.asc())
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def latest_for_target(
        self,
        target_id: str,
        owner_id: str | None = None,
        status: JobStatus | None = None,
    ) -> Job | None:
        """
        Get the most recently created job for a target.

        Args:
            target_id: The target resource identifier.
            owner_id: Only consider jobs of this owner.
            status: Optional status filter (e.g. COMPLETED).

        Returns:
            The newest matching Job or None.
        """
        filters = [Job.target_id == target_id]
        if owner_id is not None:
            filters.append(Job.owner_id == owner_id)
        if status is not None:
            filters.append(Job.status == status)

        stmt = (
            select(Job)
            .where(and_(*filters))
            .order_by(Job.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_jobs(
        self,
        owner_id: str,
        status: JobStatus | None = None,
        target_id: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        """
        List jobs for an owner with optional filtering.

        Args:
            owner_id: The submitting owner.
            status: Optional status filter.
            target_id: Optional target filter.
            limit: Maximum number of jobs to return.
            offset: Offset for pagination.

        Returns:
            Tuple of (jobs, total_count), newest first.
        """
        filters = [Job.owner_id == owner_id]
        if status is not None:
            filters.append(Job.status == status)
        if target_id is not None:
            filters.append(Job.target_id == target_id)
        base_filter = and_(*filters)

        count_stmt = select(func.count()).select_from(Job).where(base_filter)
        count_result = await self._session.execute(count_stmt)
        total = count_result.scalar() or 0

        stmt = (
            select(Job)
            .where(base_filter)
            .order_by(Job.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all(), total

    async def list_jobs_for_owner(self, owner_id: str) -> Sequence[Job]:
        """List every job of an owner, newest first."""
        stmt = (
            select(Job)
            .where(Job.owner_id == owner_id)
            .order_by(Job.created_at.desc())
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def is_cancel_requested(self, job_id: UUID) -> bool:
        """Read the cooperative cancellation flag of a job."""
        stmt = select(Job.cancel_requested).where(Job.id == job_id)
        result = await self._session.execute(stmt)
        flag = result.scalar_one_or_none()
        if flag is None:
            raise JobNotFoundError(job_id)
        return bool(flag)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def _insert_job(self, values: dict[str, Any]) -> Job | None:
        """
        Insert a job unless an active job already holds its dedupe key.

        The conflict is resolved inside the statement, so the surrounding
        transaction is left intact.

        Returns:
            The inserted Job, or None if the dedupe key was taken.
        """
        dialect = self._session.get_bind().dialect.name
        insert = postgresql_insert if dialect == "postgresql" else sqlite_insert

        stmt = (
            insert(Job)
            .values(**values)
            .on_conflict_do_nothing(
                index_elements=["dedupe_key"],
                index_where=text(ACTIVE_STATUS_PREDICATE),
            )
            .returning(Job)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def enqueue(
        self,
        owner_id: str,
        target_id: str,
        prompt: str,
        dedupe_key: str | None = None,
        max_attempts: int | None = None,
    ) -> tuple[Job, bool]:
        """
        Submit a new job, deduplicating on dedupe_key.

        If an active job already holds the dedupe key it is returned and
        nothing is written. A concurrent submission that slips past the
        lookup is absorbed by the partial unique index and also resolves to
        the existing job.

        Args:
            owner_id: The submitting owner.
            target_id: The target resource (repository) identifier.
            prompt: Opaque task payload.
            dedupe_key: Optional idempotency key.
            max_attempts: Retry ceiling. Defaults to the configured value.

        Returns:
            Tuple of (Job, duplicate) where duplicate is True if an existing
            active job was returned.

        Raises:
            InvalidTransitionError: If the dedupe key stays contended.
        """
        for _ in range(_ENQUEUE_ATTEMPTS):
            if dedupe_key is not None:
                existing = await self.get_active_by_dedupe_key(dedupe_key)
                if existing is not None:
                    logger.info(
                        "Returned existing job (duplicate)",
                        extra={"job_id": str(existing.id), "dedupe_key": dedupe_key},
                    )
                    return existing, True

            now = utcnow()
            job = await self._insert_job(
                {
                    "id": uuid4(),
                    "owner_id": owner_id,
                    "target_id": target_id,
                    "prompt": prompt,
                    "callback_token": new_callback_token(),
                    "dedupe_key": dedupe_key,
                    "status": JobStatus.PENDING,
                    "run_at": now,
                    "attempts": 0,
                    "max_attempts": max_attempts or self._settings.default_max_attempts,
                    "current_step": 0,
                    "total_steps": DEFAULT_TOTAL_STEPS,
                    "progress": INITIAL_PROGRESS,
                    "cancel_requested": False,
                    "log_seq": 0,
                    "created_at": now,
                    "updated_at": now,
                }
            )
            if job is not None:
                logger.info(
                    "Enqueued job",
                    extra={"job_id": str(job.id), "owner_id": owner_id, "target_id": target_id},
                )
                return job, False

            logger.info(
                "Insert conflicted on dedupe key",
                extra={"dedupe_key": dedupe_key, "target_id": target_id},
            )

        raise InvalidTransitionError(f"Dedupe key {dedupe_key} is contended, try again")

    async def regenerate(
        self,
        owner_id: str,
        target_id: str,
        prompt: str | None = None,
    ) -> RegenerateOutcome:
        """
        Cancel every active job for a target and enqueue a fresh one.

        Cancels and insert share the caller's transaction.

        Args:
            owner_id: The submitting owner.
            target_id: The target resource identifier.
            prompt: Optional prompt; defaults to a regeneration prompt.

        Returns:
            RegenerateOutcome with the enqueued (or concurrently enqueued)
            job and the ids of the cancelled jobs.

        Raises:
            PermissionDeniedError: If an active job for the target belongs
                to another owner.
        """
        active = await self.list_active_for_target(target_id)
        for job in active:
            if job.owner_id != owner_id:
                raise PermissionDeniedError(
                    "Unauthorized - the target has an active job of another owner",
                    job_id=job.id,
                )

        canceled = []
        for job in active:
            await self._cancel_active(job, reason="Job cancelled for regeneration")
            canceled.append(job.id)

        job, duplicate = await self.enqueue(
            owner_id=owner_id,
            target_id=target_id,
            prompt=prompt or REGENERATE_PROMPT,
            dedupe_key=target_dedupe_key(target_id),
        )
        return RegenerateOutcome(job=job, duplicate=duplicate, canceled=canceled)

    async def resubmit(self, job_id: UUID, owner_id: str) -> tuple[Job, bool]:
        """
        Submit a new job copying a finished job's target and prompt.

        This is the only way back from DEAD: the dead job itself stays dead.

        Args:
            job_id: The finished job to copy.
            owner_id: The caller; must own the job.

        Returns:
            Tuple of (Job, duplicate) as returned by enqueue.
        """
        job = await self.require_job(job_id)
        if job.owner_id != owner_id:
            raise PermissionDeniedError(
                "Unauthorized - you can only resubmit your own jobs",
                job_id=job_id,
            )
        if job.is_active:
            raise InvalidTransitionError(
                f"Job is still {job.status} and cannot be resubmitted",
                job_id=job_id,
            )

        return await self.enqueue(
            owner_id=job.owner_id,
            target_id=job.target_id,
            prompt=job.prompt,
            dedupe_key=job.dedupe_key,
            max_attempts=job.max_attempts,
        )

    # ------------------------------------------------------------------
    # Worker transitions
    # ------------------------------------------------------------------

    async def _apply(self, stmt: Update) -> Job | None:
        """Run a conditional UPDATE and return the updated row, if it matched."""
        result = await self._session.execute(
            stmt.returning(Job).execution_options(
                synchronize_session=False,
                populate_existing=True,
            )
        )
        return result.scalar_one_or_none()

    async def _raise_not_owned(self, job_id: UUID, worker_id: str) -> None:
        """Raise the error explaining why an owned transition matched nothing."""
        job = await self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        logger.warning(
            "Worker doesn't own job lease",
            extra={
                "job_id": str(job_id),
                "worker_id": worker_id,
                "locked_by": job.locked_by,
                "status": job.status.value,
            },
        )
        raise OwnershipError(job_id, worker_id)

    def _lease_delta(self, lease_seconds: float | None) -> timedelta:
        if lease_seconds is None:
            lease_seconds = self._settings.worker_lease_duration_seconds
        return timedelta(seconds=lease_seconds)

    async def claim(
        self,
        worker_id: str,
        lease_seconds: float | None = None,
    ) -> ClaimedJob | None:
        """
        Claim the oldest ready pending job.

        Selects the candidate with FOR UPDATE SKIP LOCKED (where the backend
        supports row locks), then flips it to CLAIMED with an UPDATE guarded
        by status == PENDING. If another worker got there first the guard
        matches nothing and no job is returned.

        Args:
            worker_id: The worker identifier.
            lease_seconds: Lease duration. Defaults to the configured value.

        Returns:
            The claimed job, or None when the queue is empty or the race was lost.
        """
        now = utcnow()
        lease_until = now + self._lease_delta(lease_seconds)

        candidate_stmt = (
            select(Job.id)
            .where(
                and_(
                    Job.status == JobStatus.PENDING,
                    Job.run_at <= now,
                )
            )
            .order_by(Job.created_at.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        result = await self._session.execute(candidate_stmt)
        candidate_id = result.scalar_one_or_none()
        if candidate_id is None:
            return None

        job = await self._apply(
            update(Job)
            .where(
                and_(
                    Job.id == candidate_id,
                    Job.status == JobStatus.PENDING,
                )
            )
            .values(
                status=JobStatus.CLAIMED,
                locked_by=worker_id,
                lease_until=lease_until,
                updated_at=now,
            )
        )

        if job is None:
            logger.debug(
                "Lost claim race",
                extra={"job_id": str(candidate_id), "worker_id": worker_id},
            )
            return None

        logger.info(
            "Claimed job",
            extra={
                "job_id": str(job.id),
                "worker_id": worker_id,
                "attempts": job.attempts,
            },
        )

        return ClaimedJob(
            id=job.id,
            target_id=job.target_id,
            owner_id=job.owner_id,
            prompt=job.prompt,
            callback_token=job.callback_token,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            lease_until=lease_until,
        )

    async def heartbeat(
        self,
        job_id: UUID,
        worker_id: str,
        sub_state: JobStatus | None = None,
        progress: str | None = None,
        current_step: int | None = None,
        total_steps: int | None = None,
        lease_seconds: float | None = None,
    ) -> Job:
        """
        Extend the lease on a job and record progress.

        Args:
            job_id: The job UUID.
            worker_id: The worker identifier (must hold the lease).
            sub_state: Optional descriptive active sub-state.
            progress: Optional free-text progress.
            current_step: Optional current step number.
            total_steps: Optional total step count.
            lease_seconds: Lease extension. Defaults to the configured value.

        Returns:
            The updated Job. Workers should check cancel_requested on it.

        Raises:
            JobNotFoundError: If the job does not exist.
            OwnershipError: If the worker no longer holds the lease.
            InvalidTransitionError: If sub_state is not an active sub-state.
        """
        if sub_state is not None and sub_state not in WORKER_SUB_STATES:
            raise InvalidTransitionError(
                f"{sub_state} is not a worker sub-state",
                job_id=job_id,
            )

        now = utcnow()
        values: dict[str, Any] = {
            "lease_until": now + self._lease_delta(lease_seconds),
            "updated_at": now,
        }
        if sub_state is not None:
            values["status"] = sub_state
        if progress is not None:
            values["progress"] = progress
        if current_step is not None:
            values["current_step"] = current_step
        if total_steps is not None:
            values["total_steps"] = total_steps

        job = await self._apply(
            update(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.locked_by == worker_id,
                    Job.status.in_(_LEASED),
                )
            )
            .values(**values)
        )
        if job is None:
            await self._raise_not_owned(job_id, worker_id)

        logger.debug(
            "Extended lease",
            extra={"job_id": str(job_id), "worker_id": worker_id, "status": job.status.value},
        )
        return job

    async def complete(
        self,
        job_id: UUID,
        worker_id: str,
        result: Any = None,
        result_count: int | None = None,
    ) -> Job:
        """
        Mark a leased job as successfully completed.

        Args:
            job_id: The job UUID.
            worker_id: The worker identifier (must hold the lease).
            result: Optional opaque result payload.
            result_count: Optional count metric (e.g. documents produced).

        Returns:
            The completed Job.

        Raises:
            JobNotFoundError: If the job does not exist.
            OwnershipError: If the worker no longer holds the lease.
        """
        now = utcnow()
        values: dict[str, Any] = {
            "status": JobStatus.COMPLETED,
            "completed_at": now,
            "updated_at": now,
            "locked_by": None,
            "lease_until": None,
        }
        if result is not None:
            values["result"] = result
        if result_count is not None:
            values["result_count"] = result_count

        job = await self._apply(
            update(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.locked_by == worker_id,
                    Job.status.in_(_LEASED),
                )
            )
            .values(**values)
        )
        if job is None:
            await self._raise_not_owned(job_id, worker_id)

        logger.info("Job completed successfully", extra={"job_id": str(job_id)})
        return job

    async def retry_or_fail(
        self,
        job_id: UUID,
        worker_id: str,
        error: str,
    ) -> RetryOutcome:
        """
        Record a failed attempt. Either re-queue with backoff or dead-letter.

        Args:
            job_id: The job UUID.
            worker_id: The worker identifier (must hold the lease).
            error: Error message of the failed attempt.

        Returns:
            RetryOutcome with the new status, attempt count and next run time.

        Raises:
            JobNotFoundError: If the job does not exist.
            OwnershipError: If the worker no longer holds the lease.
        """
        job = await self.require_job(job_id)
        if job.locked_by != worker_id or job.status not in LEASED_STATUSES:
            await self._raise_not_owned(job_id, worker_id)

        now = utcnow()
        attempts = job.attempts + 1
        values: dict[str, Any] = {
            "attempts": attempts,
            "last_error": error,
            "updated_at": now,
            "locked_by": None,
            "lease_until": None,
        }

        if attempts >= job.max_attempts:
            values.update(
                status=JobStatus.DEAD,
                error=error,
                completed_at=now,
            )
            outcome = RetryOutcome(status="dead", attempts=attempts)
        else:
            delay = compute_backoff_seconds(
                attempts,
                base_seconds=self._settings.backoff_base_seconds,
                max_seconds=self._settings.backoff_max_seconds,
                jitter_seconds=self._settings.backoff_jitter_seconds,
                rng=self._rng,
            )
            next_run_at = now + timedelta(seconds=delay)
            values.update(status=JobStatus.PENDING, run_at=next_run_at)
            outcome = RetryOutcome(
                status="retrying",
                attempts=attempts,
                next_run_at=next_run_at,
            )

        updated = await self._apply(
            update(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.locked_by == worker_id,
                    Job.status.in_(_LEASED),
                    Job.attempts == job.attempts,
                )
            )
            .values(**values)
        )
        if updated is None:
            await self._raise_not_owned(job_id, worker_id)

        if outcome.status == "dead":
            logger.warning(
                f"Job moved to dead letter after {attempts} attempts",
                extra={"job_id": str(job_id), "error": error},
            )
        else:
            logger.info(
                "Job queued for retry",
                extra={
                    "job_id": str(job_id),
                    "attempts": attempts,
                    "next_run_at": outcome.next_run_at.isoformat(),
                },
            )
        return outcome

    # ------------------------------------------------------------------
    # Crash recovery
    # ------------------------------------------------------------------

    async def reclaim_expired(self) -> ReclaimOutcome:
        """
        Return jobs whose lease expired while active to the queue.

        An expired lease counts as a failed attempt. Jobs that finished
        between the scan and the update are left alone. A job whose
        attempts reach the ceiling this way is dead-lettered.

        Returns:
            ReclaimOutcome with counts of reclaimed, dead-lettered and scanned jobs.
        """
        now = utcnow()
        stmt = (
            select(Job)
            .where(Job.lease_until <= now)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        expired = result.scalars().all()

        reclaimed = 0
        dead = 0
        for job in expired:
            if job.status not in LEASED_STATUSES:
                continue

            attempts = job.attempts + 1
            values: dict[str, Any] = {
                "attempts": attempts,
                "last_error": LEASE_EXPIRED_ERROR,
                "updated_at": now,
                "locked_by": None,
                "lease_until": None,
            }
            if attempts >= job.max_attempts:
                values.update(
                    status=JobStatus.DEAD,
                    error=LEASE_EXPIRED_ERROR,
                    completed_at=now,
                )
            else:
                values.update(status=JobStatus.PENDING, run_at=now)

            updated = await self._apply(
                update(Job)
                .where(
                    and_(
                        Job.id == job.id,
                        Job.status.in_(_LEASED),
                        Job.lease_until <= now,
                        Job.attempts == job.attempts,
                    )
                )
                .values(**values)
            )
            if updated is None:
                continue

            if updated.status == JobStatus.DEAD:
                dead += 1
            else:
                reclaimed += 1

            logger.warning(
                "Reclaimed job with expired lease",
                extra={
                    "job_id": str(job.id),
                    "locked_by": job.locked_by,
                    "attempts": attempts,
                    "status": updated.status.value,
                },
            )

        if reclaimed or dead:
            logger.info(
                f"Recovered {reclaimed + dead} jobs with expired leases",
                extra={"reclaimed": reclaimed, "dead": dead},
            )

        return ReclaimOutcome(reclaimed=reclaimed, dead=dead, checked=len(expired))

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def _cancel_active(
        self,
        job: Job,
        reason: str,
        progress: str | None = None,
    ) -> Job:
        if not job.is_active:
            raise InvalidTransitionError(
                f"Job is {job.status} and cannot be cancelled",
                job_id=job.id,
            )

        now = utcnow()
        values: dict[str, Any] = {
            "status": JobStatus.CANCELED,
            "cancel_requested": True,
            "error": reason,
            "completed_at": now,
            "updated_at": now,
            "locked_by": None,
            "lease_until": None,
        }
        if progress is not None:
            values["progress"] = progress

        updated = await self._apply(
            update(Job)
            .where(
                and_(
                    Job.id == job.id,
                    Job.status.in_(_ACTIVE),
                )
            )
            .values(**values)
        )
        if updated is None:
            raise InvalidTransitionError(
                "Job finished before it could be cancelled",
                job_id=job.id,
            )

        logger.info(
            "Job cancelled",
            extra={"job_id": str(job.id), "previous_status": job.status.value},
        )
        return updated

    async def cancel(self, job_id: UUID, owner_id: str) -> Job:
        """
        Owner-initiated cancellation of a pending or running job.

        Args:
            job_id: The job UUID.
            owner_id: The caller; must own the job.

        Returns:
            The cancelled Job.

        Raises:
            JobNotFoundError: If the job does not exist.
            PermissionDeniedError: If the caller does not own the job.
            InvalidTransitionError: If the job already finished.
        """
        job = await self.require_job(job_id)
        if job.owner_id != owner_id:
            raise PermissionDeniedError(
                "Unauthorized - you can only cancel your own jobs",
                job_id=job_id,
            )
        return await self._cancel_active(
            job,
            reason=CANCELED_BY_USER_ERROR,
            progress=CANCELED_BY_USER_PROGRESS,
        )

    async def request_cancel(self, job_id: UUID) -> Job:
        """
        Cooperative cancellation.

        Sets cancel_requested and releases the lease. The worker sees the flag
        on its next poll and its next heartbeat fails with OwnershipError.

        Raises:
            JobNotFoundError: If the job does not exist.
            InvalidTransitionError: If the job already finished.
        """
        job = await self.require_job(job_id)
        return await self._cancel_active(job, reason=CANCELED_BY_USER_ERROR)

    # ------------------------------------------------------------------
    # Out-of-process progress reports
    # ------------------------------------------------------------------

    async def report_progress(
        self,
        job_id: UUID,
        callback_token: str,
        sub_state: JobStatus | None = None,
        progress: str | None = None,
        current_step: int | None = None,
        total_steps: int | None = None,
    ) -> Job:
        """
        Record progress authorized by the job's callback token.

        Never touches the lease and never moves a job to a terminal state.

        Raises:
            JobNotFoundError: If the job does not exist.
            PermissionDeniedError: If the token does not match.
            InvalidTransitionError: If the job is finished, or a sub-state is
                reported for a job no worker holds.
        """
        job = await self.require_job(job_id)
        if not secrets.compare_digest(job.callback_token, callback_token):
            raise PermissionDeniedError("Invalid callback token", job_id=job_id)

        if sub_state is not None and sub_state not in WORKER_SUB_STATES:
            raise InvalidTransitionError(
                f"{sub_state} is not a worker sub-state",
                job_id=job_id,
            )

        allowed = _LEASED if sub_state is not None else _ACTIVE
        values: dict[str, Any] = {"updated_at": utcnow()}
        if sub_state is not None:
            values["status"] = sub_state
        if progress is not None:
            values["progress"] = progress
        if current_step is not None:
            values["current_step"] = current_step
        if total_steps is not None:
            values["total_steps"] = total_steps

        updated = await self._apply(
            update(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.status.in_(allowed),
                )
            )
            .values(**values)
        )
        if updated is None:
            raise InvalidTransitionError(
                f"Job is {job.status} and does not accept progress updates",
                job_id=job_id,
            )
        return updated

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    async def get_job_stats(self, owner_id: str | None = None) -> dict[str, int]:
        """
        Get job counts by status, with every status present.

        Args:
            owner_id: Optional owner filter.

        Returns:
            Dictionary of status -> count.
        """
        stmt = select(Job.status, func.count()).group_by(Job.status)
        if owner_id is not None:
            stmt = stmt.where(Job.owner_id == owner_id)

        result = await self._session.execute(stmt)
        counts = {status.value: 0 for status in JobStatus}
        for status, count in result.all():
            counts[JobStatus(status).value] = count
        return counts

    async def get_metrics(self) -> QueueMetrics:
        """
        Get queue-wide counts by status plus activity in the last hour.

        Returns:
            QueueMetrics snapshot.
        """
        now = utcnow()
        counts = await self.get_job_stats()

        cutoff = now - timedelta(seconds=RECENT_ACTIVITY_WINDOW_SECONDS)
        stmt = (
            select(Job.status, func.count())
            .where(Job.updated_at >= cutoff)
            .group_by(Job.status)
        )
        result = await self._session.execute(stmt)
        recent = {JobStatus(status): count for status, count in result.all()}

        return QueueMetrics(
            counts=counts,
            recent_total=sum(recent.values()),
            recent_completed=recent.get(JobStatus.COMPLETED, 0),
            recent_failed=recent.get(JobStatus.FAILED, 0) + recent.get(JobStatus.DEAD, 0),
            timestamp=now,
        )
