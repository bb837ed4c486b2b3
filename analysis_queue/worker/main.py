"""
Worker process for executing jobs.

The worker claims jobs from the queue, runs the configured handler while a
heartbeat keeps the lease alive, and reports success or failure back.
"""

import asyncio
import logging
import os
import signal
import time
from contextlib import suppress
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from analysis_queue.config import get_settings
from analysis_queue.constants import SPAN_EXECUTE_JOB, LogLevel
from analysis_queue.db import close_db, get_session_context, init_db
from analysis_queue.db.logs import JobLogRepository
from analysis_queue.db.repository import JobRepository
from analysis_queue.exceptions import JobNotFoundError, OwnershipError
from analysis_queue.observability.logging import job_log_context, setup_logging
from analysis_queue.observability.metrics import get_metrics
from analysis_queue.observability.tracing import get_tracer, setup_tracing
from analysis_queue.types.job import ClaimedJob, JobResult
from analysis_queue.worker.handlers import WorkContext, execute_job, get_handler

logger = logging.getLogger(__name__)


class Worker:
    """
    Job worker that polls for and executes jobs.

    Features:
    - Atomic claiming through the queue (one holder per job)
    - Per-job heartbeat extending the lease while the handler runs
    - Lost lease cancels the handler and abandons the job
    - Graceful shutdown on SIGTERM/SIGINT
    """

    def __init__(
        self,
        worker_id: str | None = None,
        handler: str | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        lease_seconds: float | None = None,
        heartbeat_interval: float | None = None,
        poll_interval: float | None = None,
        max_concurrent_jobs: int | None = None,
    ):
        """
        Initialize the worker.

        Args:
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            handler: Registered handler name to run jobs with.
            session_factory: Session factory. Defaults to the one set up by init_db().
            lease_seconds: Lease duration requested on claim and heartbeat.
            heartbeat_interval: Seconds between lease extensions.
            poll_interval: Seconds between polls when the queue is empty.
            max_concurrent_jobs: Number of jobs run at once.
        """
        settings = get_settings()

        self.worker_id = worker_id or settings.worker_id or f"{os.uname().nodename}-{os.getpid()}"
        self.handler = handler or settings.worker_handler
        self.lease_seconds = lease_seconds or settings.worker_lease_duration_seconds
        self.heartbeat_interval = heartbeat_interval or settings.worker_heartbeat_interval_seconds
        self.poll_interval = poll_interval or settings.worker_poll_interval_seconds
        self.max_concurrent_jobs = max_concurrent_jobs or settings.worker_max_concurrent_jobs

        self._session_factory = session_factory
        self._running = False
        self._current_jobs: dict[UUID, asyncio.Task] = {}
        self._metrics = get_metrics()

        if get_handler(self.handler) is None:
            raise ValueError(f"No handler registered: {self.handler}")

    async def start(self) -> None:
        """Run the polling loop until stop() is called."""
        logger.info(
            "Worker starting",
            extra={
                "worker_id": self.worker_id,
                "handler": self.handler,
                "max_concurrent_jobs": self.max_concurrent_jobs,
            },
        )

        self._running = True

        while self._running:
            if len(self._current_jobs) >= self.max_concurrent_jobs:
                await asyncio.wait(
                    list(self._current_jobs.values()),
                    return_when=asyncio.FIRST_COMPLETED,
                )
                continue

            try:
                claimed = await self._claim()
            except SQLAlchemyError as e:
                logger.exception(
                    f"Error claiming job: {e}",
                    extra={"worker_id": self.worker_id},
                )
                await asyncio.sleep(self.poll_interval)
                continue

            if claimed is None:
                await asyncio.sleep(self.poll_interval)
                continue

            task = asyncio.create_task(self._process(claimed))
            self._current_jobs[claimed.id] = task
            task.add_done_callback(lambda _, job_id=claimed.id: self._current_jobs.pop(job_id, None))

        if self._current_jobs:
            logger.info(f"Waiting for {len(self._current_jobs)} jobs to complete")
            await asyncio.gather(*self._current_jobs.values(), return_exceptions=True)

        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._running = False

    async def run_once(self) -> bool:
        """
        Claim and fully process at most one job.

        Returns:
            True if a job was claimed.
        """
        claimed = await self._claim()
        if claimed is None:
            return False
        await self._process(claimed)
        return True

    async def _claim(self) -> ClaimedJob | None:
        async with get_session_context(self._session_factory) as session:
            claimed = await JobRepository(session).claim(
                self.worker_id,
                lease_seconds=self.lease_seconds,
            )

        if claimed is not None:
            self._metrics.record_lease_acquired(self.worker_id)
        return claimed

    async def _process(self, claimed: ClaimedJob) -> None:
        """
        Execute a claimed job and report the outcome.

        Args:
            claimed: The job as returned by claim.
        """
        with job_log_context(claimed.id, self.worker_id):
            start_time = time.monotonic()
            lease_lost = asyncio.Event()

            context = WorkContext(
                job=claimed,
                worker_id=self.worker_id,
                session_factory=self._session_factory,
                lease_seconds=self.lease_seconds,
            )

            logger.info(
                "Executing job",
                extra={"target_id": claimed.target_id, "attempt": claimed.attempts + 1},
            )

            with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
                span.set_attribute("job_id", str(claimed.id))
                span.set_attribute("target_id", claimed.target_id)
                span.set_attribute("attempt", claimed.attempts + 1)

                handler_task = asyncio.create_task(execute_job(self.handler, context))
                heartbeat_task = asyncio.create_task(
                    self._heartbeat_loop(claimed.id, handler_task, lease_lost)
                )
                try:
                    result = await handler_task
                except asyncio.CancelledError:
                    if not lease_lost.is_set():
                        raise
                    result = None
                finally:
                    heartbeat_task.cancel()
                    with suppress(asyncio.CancelledError):
                        await heartbeat_task

            duration = time.monotonic() - start_time

            if result is None:
                logger.warning("Lease lost, job abandoned")
                self._metrics.record_outcome("lost", duration)
                return

            await self._report(claimed, result, duration)

    async def _report(self, claimed: ClaimedJob, result: JobResult, duration: float) -> None:
        """Complete or fail the attempt. A lost lease means the job is no longer ours."""
        try:
            async with get_session_context(self._session_factory) as session:
                repo = JobRepository(session)

                if result.success:
                    await repo.complete(
                        claimed.id,
                        self.worker_id,
                        result=result.output,
                        result_count=result.result_count,
                    )
                    outcome = "completed"
                    logger.info(
                        "Job completed successfully",
                        extra={"duration": f"{duration:.2f}s"},
                    )
                else:
                    error = result.error or "Unknown error"
                    await JobLogRepository(session).append(
                        claimed.id,
                        LogLevel.ERROR,
                        f"Attempt {claimed.attempts + 1} failed: {error}",
                    )
                    retry = await repo.retry_or_fail(claimed.id, self.worker_id, error)
                    outcome = retry.status
                    logger.warning(
                        "Job attempt failed",
                        extra={"error": error, "outcome": outcome, "attempts": retry.attempts},
                    )
        except (OwnershipError, JobNotFoundError):
            logger.warning("Lease lost before reporting outcome, job abandoned")
            outcome = "lost"

        self._metrics.record_outcome(outcome, duration)

    async def _heartbeat_loop(
        self,
        job_id: UUID,
        handler_task: asyncio.Task,
        lease_lost: asyncio.Event,
    ) -> None:
        """
        Extend the lease until cancelled.

        When the queue says the lease is gone, cancel the handler.
        """
        while True:
            await asyncio.sleep(self.heartbeat_interval)

            try:
                async with get_session_context(self._session_factory) as session:
                    await JobRepository(session).heartbeat(
                        job_id,
                        self.worker_id,
                        lease_seconds=self.lease_seconds,
                    )
            except (OwnershipError, JobNotFoundError):
                logger.warning("Heartbeat rejected, cancelling handler")
                lease_lost.set()
                handler_task.cancel()
                return
            except SQLAlchemyError:
                logger.exception("Heartbeat failed, retrying on next interval")
                continue

            logger.debug("Extended lease")


async def run_async() -> None:
    """Run the worker asynchronously."""
    setup_logging(service="worker")
    setup_tracing()
    await init_db()

    worker = Worker()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(worker.stop()))

    try:
        await worker.start()
    finally:
        await close_db()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
