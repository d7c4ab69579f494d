"""
SQLAlchemy database models.
Defines the job queue and worker lease tables.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from image_queue.constants import JobStatus


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime column.

    Backends without native timezone support (SQLite) hand back naive values;
    those are stored in UTC, so they are re-tagged as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        if value is not None:
            value = value.astimezone(UTC)
        return value

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    One pipeline stage applied to one subject.

    This is the authoritative source of truth for job state. Rows are only
    mutated through the JobStore claim/complete/fail primitives.

    Key constraints:
    - at most one pending/running job per (subject_key, job_type)
    - the pending -> running transition is a single conditional UPDATE
    - attempts only ever grows (incremented at claim time)
    """

    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )

    job_type: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )
    subject_key: Mapped[str] = mapped_column(
        String(1024),
        nullable=False,
        index=True,
    )

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
    priority: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    # Retry tracking
    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    last_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    # Scheduling
    scheduled_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )
    started_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )
    finished_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )

    __table_args__ = (
        # Eligibility poll: pending rows in claim order
        Index(
            "ix_jobs_queue_poll",
            "status",
            "priority",
            "scheduled_at",
            "created_at",
        ),
        # Duplicate guard for concurrent enqueues of the same stage
        Index(
            "uq_jobs_outstanding_subject_type",
            "subject_key",
            "job_type",
            unique=True,
            postgresql_where=text("status IN ('pending', 'running')"),
            sqlite_where=text("status IN ('pending', 'running')"),
        ),
    )

    @property
    def is_finished(self) -> bool:
        """Check if the job reached a terminal state."""
        return self.status in (JobStatus.SUCCEEDED, JobStatus.FAILED)

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, type={self.job_type}, subject={self.subject_key}, "
            f"status={self.status}, attempts={self.attempts})"
        )


class WorkerLease(Base):
    """
    Named, renewable, time-bounded exclusive claim on a resource.

    At most one non-expired row exists per name. Rows are written only by
    the LeaseCoordinator through single atomic statements.
    """

    __tablename__ = "worker_leases"

    name: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
    )
    owner: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    expires_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
    )
    heartbeat_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
    )

    @property
    def is_expired(self) -> bool:
        """Check if the lease has expired."""
        return utcnow() >= self.expires_at

    def __repr__(self) -> str:
        return f"WorkerLease(name={self.name}, owner={self.owner}, expires_at={self.expires_at})"
