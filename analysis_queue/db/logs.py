"""
Job log repository.
Append-only diagnostic trail, ordered by a per-job sequence number.
"""

import logging
from typing import Sequence
from uuid import UUID

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from analysis_queue.constants import LogLevel
from analysis_queue.db.models import Job, JobLog
from analysis_queue.db.repository import utcnow
from analysis_queue.exceptions import JobNotFoundError

logger = logging.getLogger(__name__)


class JobLogRepository:
    """Repository for job log entries."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def append(
        self,
        job_id: UUID,
        level: LogLevel | str,
        msg: str,
    ) -> JobLog:
        """
        Append a log entry to a job.

        The sequence number is taken from the job's log_seq counter in the
        same statement that increments it, so concurrent appenders always
        get distinct, increasing numbers.

        Args:
            job_id: The job UUID.
            level: Entry severity (info or error).
            msg: Log message.

        Returns:
            The stored JobLog entry.

        Raises:
            JobNotFoundError: If the job does not exist.
        """
        level = LogLevel(level)

        stmt = (
            update(Job)
            .where(Job.id == job_id)
            .values(log_seq=Job.log_seq + 1)
            .returning(Job.log_seq)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        seq = result.scalar_one_or_none()
        if seq is None:
            raise JobNotFoundError(job_id)

        entry = JobLog(
            job_id=job_id,
            seq=seq,
            ts=utcnow(),
            level=level,
            msg=msg,
        )
        self._session.add(entry)
        await self._session.flush()

        logger.debug(
            "Appended job log",
            extra={"job_id": str(job_id), "seq": seq, "level": level.value},
        )
        return entry

    async def list_after(
        self,
        job_id: UUID,
        after_seq: int | None = None,
        limit: int | None = None,
    ) -> Sequence[JobLog]:
        """
        Read a job's log entries in ascending sequence order.

        Args:
            job_id: The job UUID.
            after_seq: Only return entries with seq greater than this.
            limit: Optional maximum number of entries.

        Returns:
            Log entries ordered by seq.
        """
        filters = [JobLog.job_id == job_id]
        if after_seq is not None:
            filters.append(JobLog.seq > after_seq)

        stmt = select(JobLog).where(and_(*filters)).order_by(JobLog.seq.asc())
        if limit is not None:
            stmt = stmt.limit(limit)

        result = await self._session.execute(stmt)
        return result.scalars().all()
