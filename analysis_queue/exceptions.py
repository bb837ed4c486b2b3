"""
Queue error taxonomy.

Every error carries the HTTP status the API layer should answer with.
Retry exhaustion is not an error: it surfaces as the DEAD status.
"""

from uuid import UUID


class QueueError(Exception):
    """Base class for job queue errors."""

    status_code: int = 400

    def __init__(self, message: str, job_id: UUID | None = None):
        super().__init__(message)
        self.job_id = job_id


class JobNotFoundError(QueueError):
    """The job id does not resolve to a job."""

    status_code = 404

    def __init__(self, job_id: UUID):
        super().__init__(f"Job {job_id} not found", job_id=job_id)


class OwnershipError(QueueError):
    """
    The caller no longer holds the job's lease.

    Raised to a worker whose lease was reclaimed or released. The worker
    must stop working on the job; the queue never retries this.
    """

    status_code = 409

    def __init__(self, job_id: UUID, worker_id: str):
        super().__init__(
            f"Job {job_id} not owned by worker {worker_id}",
            job_id=job_id,
        )
        self.worker_id = worker_id


class InvalidTransitionError(QueueError):
    """The requested transition is not allowed from the job's current status."""

    status_code = 409


class PermissionDeniedError(QueueError):
    """The caller is not allowed to act on this job."""

    status_code = 403
