"""
SQLAlchemy database models.
Defines the jobs table and the append-only job log table.
"""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from analysis_queue.constants import (
    ACTIVE_STATUSES,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_TOTAL_STEPS,
    LEASED_STATUSES,
    JobStatus,
    LogLevel,
)

JsonType = JSON().with_variant(JSONB(), "postgresql")

_ACTIVE_VALUES = sorted(s.value for s in ACTIVE_STATUSES)
ACTIVE_STATUS_PREDICATE = "status IN ({})".format(", ".join(f"'{v}'" for v in _ACTIVE_VALUES))


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    Job model representing one analysis task in the queue.

    This is the authoritative source of truth for job state.
    All lifecycle transitions are single-row atomic updates against this table.

    Key constraints:
    - dedupe_key is unique among active jobs (partial unique index)
    - locked_by and lease_until are set together, only while leased
    - log_seq is the per-job counter handing out log sequence numbers
    """

    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )

    # Ownership and target resource
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    target_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    # Control
    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            name="job_status",
            create_constraint=True,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=JobStatus.PENDING,
    )
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    callback_token: Mapped[str] = mapped_column(String(64), nullable=False)

    # Queue management
    run_at: Mapped[datetime] = mapped_column(DateTime(), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=DEFAULT_MAX_ATTEMPTS,
    )
    locked_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lease_until: Mapped[datetime | None] = mapped_column(
        DateTime(),
        nullable=True,
        index=True,
    )
    dedupe_key: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Progress (advisory)
    current_step: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_steps: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        default=DEFAULT_TOTAL_STEPS,
    )
    progress: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Results
    result: Mapped[Any | None] = mapped_column(JsonType, nullable=True)
    result_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    # Log sequence counter
    log_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Timestamps (naive UTC)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(),
        nullable=False,
        server_default=func.now(),
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(),
        nullable=True,
    )

    __table_args__ = (
        # Claim scanning: oldest ready pending job
        Index("ix_jobs_status_run_at", "status", "run_at", "created_at"),
        # At most one active job per dedupe key
        Index(
            "uq_jobs_active_dedupe_key",
            "dedupe_key",
            unique=True,
            postgresql_where=text(ACTIVE_STATUS_PREDICATE),
            sqlite_where=text(ACTIVE_STATUS_PREDICATE),
        ),
    )

    @property
    def is_leased(self) -> bool:
        """Check if a worker currently holds the lease."""
        return self.status in LEASED_STATUSES

    @property
    def is_active(self) -> bool:
        """Check if the job is pending or leased."""
        return self.status in ACTIVE_STATUSES

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, target={self.target_id}, "
            f"status={self.status}, attempts={self.attempts}/{self.max_attempts})"
        )


class JobLog(Base):
    """
    Append-only diagnostic log entry for a job.

    seq is strictly increasing per job and is allocated from Job.log_seq,
    never from the clock.
    """

    __tablename__ = "job_logs"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    job_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    ts: Mapped[datetime] = mapped_column(DateTime(), nullable=False)
    level: Mapped[LogLevel] = mapped_column(
        Enum(
            LogLevel,
            name="job_log_level",
            create_constraint=True,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    msg: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        UniqueConstraint("job_id", "seq", name="uq_job_logs_job_seq"),
    )

    def __repr__(self) -> str:
        return f"JobLog(job_id={self.job_id}, seq={self.seq}, level={self.level})"
