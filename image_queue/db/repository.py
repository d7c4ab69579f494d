"""
Job store for database operations.
Implements the atomic claim/complete/fail primitives of the queue.
"""

import logging
import traceback
from datetime import datetime, timedelta
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from image_queue.constants import (
    CLAIM_OVERFETCH_FACTOR,
    CLAIM_OVERFETCH_MIN,
    LAST_ERROR_MAX_LENGTH,
    LIST_JOBS_MAX_LIMIT,
    OUTSTANDING_STATUSES,
    JobStatus,
)
from image_queue.db.models import Job, utcnow

logger = logging.getLogger(__name__)

jobs_table = Job.__table__


def format_error(error: BaseException | str) -> str:
    """
    Render an error as diagnostic text, truncated for storage.

    Args:
        error: An exception or a preformatted message.

    Returns:
        "<Type>: <message>" followed by the traceback when available,
        cut to LAST_ERROR_MAX_LENGTH characters.
    """
    if isinstance(error, BaseException):
        message = f"{type(error).__name__}: {error}"
        if error.__traceback__ is not None:
            tb = "".join(traceback.format_tb(error.__traceback__))
            message = f"{message}\n{tb}"
    else:
        message = str(error)
    return message[:LAST_ERROR_MAX_LENGTH]


def _row_to_job(row: Any) -> Job:
    """Build a detached Job snapshot from a RETURNING row."""
    return Job(
        id=row.id,
        job_type=row.job_type,
        subject_key=row.subject_key,
        status=JobStatus(row.status),
        priority=row.priority,
        attempts=row.attempts,
        last_error=row.last_error,
        scheduled_at=row.scheduled_at,
        started_at=row.started_at,
        finished_at=row.finished_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class JobStore:
    """
    Persistent job table with atomic claim/complete/fail primitives.

    The store is policy-agnostic: callers decide retry limits and backoff.
    The only exclusivity mechanism is the conditional pending -> running
    UPDATE in claim_batch; no other locking is needed in or across processes.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the store with a database session.

        Args:
            session: The async database session.
        """
        self._session = session

    async def create_job(
        self,
        subject_key: str,
        job_type: str,
        priority: int = 0,
        scheduled_at: datetime | None = None,
    ) -> Job:
        """
        Insert a new pending job.

        Duplicate detection is the Enqueuer's concern; the unique index on
        outstanding (subject_key, job_type) raises IntegrityError on flush.

        Args:
            subject_key: Identifier of the content being processed.
            job_type: Pipeline stage tag.
            priority: Numeric priority, higher first.
            scheduled_at: Optional earliest eligibility time.

        Returns:
            The created Job.
        """
        now = utcnow()
        job = Job(
            subject_key=subject_key,
            job_type=str(job_type),
            priority=priority,
            status=JobStatus.PENDING,
            attempts=0,
            scheduled_at=scheduled_at,
            created_at=now,
            updated_at=now,
        )
        self._session.add(job)
        await self._session.flush()

        logger.info(
            "Created job",
            extra={
                "job_id": str(job.id),
                "job_type": job.job_type,
                "subject_key": subject_key,
                "priority": priority,
            },
        )
        return job

    async def get_job(self, job_id: UUID) -> Job | None:
        """
        Get a job by ID, refreshed from the database.

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

    async def find_outstanding(self, subject_key: str, job_type: str) -> Job | None:
        """
        Find a pending or running job for the same subject and stage.

        Args:
            subject_key: The subject identifier.
            job_type: The pipeline stage.

        Returns:
            The outstanding Job or None.
        """
        stmt = (
            select(Job)
            .where(
                and_(
                    Job.subject_key == subject_key,
                    Job.job_type == str(job_type),
                    Job.status.in_(OUTSTANDING_STATUSES),
                )
            )
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_jobs(
        self,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> Sequence[Job]:
        """
        List unfinished jobs in claim order.

        Args:
            status: Optional status filter.
            limit: Maximum number of jobs, capped at LIST_JOBS_MAX_LIMIT.

        Returns:
            Jobs ordered by priority desc, scheduled_at asc, created_at asc.
        """
        filters = [Job.finished_at.is_(None)]
        if status is not None:
            filters.append(Job.status == status)

        stmt = (
            select(Job)
            .where(and_(*filters))
            .order_by(
                Job.priority.desc(),
                Job.scheduled_at.asc().nulls_last(),
                Job.created_at.asc(),
            )
            .limit(max(1, min(limit, LIST_JOBS_MAX_LIMIT)))
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def claim_batch(self, limit: int) -> list[Job]:
        """
        Claim up to `limit` eligible jobs.

        Candidates are read in claim order and over-fetched, since concurrent
        claimers will win some of them. Each candidate is then moved
        pending -> running by a conditional UPDATE; only rows where this
        caller's UPDATE matched are kept.

        Args:
            limit: Maximum number of jobs to claim.

        Returns:
            Detached snapshots of the claimed jobs, in claim order.
        """
        if limit <= 0:
            return []

        now = utcnow()
        fetch_size = max(limit * CLAIM_OVERFETCH_FACTOR, limit + CLAIM_OVERFETCH_MIN)

        candidates_stmt = (
            select(Job.id)
            .where(
                and_(
                    Job.status == JobStatus.PENDING,
                    or_(Job.scheduled_at.is_(None), Job.scheduled_at <= now),
                )
            )
            .order_by(
                Job.priority.desc(),
                Job.scheduled_at.asc().nulls_last(),
                Job.created_at.asc(),
            )
            .limit(fetch_size)
        )
        result = await self._session.execute(candidates_stmt)
        candidate_ids = result.scalars().all()

        claimed: list[Job] = []
        for job_id in candidate_ids:
            if len(claimed) >= limit:
                break

            stmt = (
                update(jobs_table)
                .where(
                    and_(
                        jobs_table.c.id == job_id,
                        jobs_table.c.status == JobStatus.PENDING,
                    )
                )
                .values(
                    status=JobStatus.RUNNING,
                    attempts=jobs_table.c.attempts + 1,
                    started_at=now,
                    updated_at=now,
                )
                .returning(*jobs_table.c)
            )
            row = (await self._session.execute(stmt)).first()

            # Another claimer won this row
            if row is None:
                continue

            claimed.append(_row_to_job(row))

        if claimed:
            logger.info(
                f"Claimed {len(claimed)} jobs",
                extra={"job_count": len(claimed), "candidates": len(candidate_ids)},
            )

        return claimed

    async def mark_done(self, job_id: UUID) -> bool:
        """
        Mark a job as succeeded.

        Args:
            job_id: The job UUID.

        Returns:
            True if a row was updated.
        """
        now = utcnow()
        stmt = (
            update(jobs_table)
            .where(jobs_table.c.id == job_id)
            .values(
                status=JobStatus.SUCCEEDED,
                finished_at=now,
                updated_at=now,
                last_error=None,
            )
        )
        result = await self._session.execute(stmt)

        logger.info("Job succeeded", extra={"job_id": str(job_id)})
        return result.rowcount > 0

    async def mark_failed(
        self,
        job_id: UUID,
        error: BaseException | str,
        backoff_seconds: float,
    ) -> bool:
        """
        Return a failed job to the eligible pool after a delay.

        Attempts are left untouched; they were counted at claim time.

        Args:
            job_id: The job UUID.
            error: The failure, stored as truncated diagnostic text.
            backoff_seconds: Delay before the job is eligible again.

        Returns:
            True if a row was updated.
        """
        now = utcnow()
        stmt = (
            update(jobs_table)
            .where(jobs_table.c.id == job_id)
            .values(
                status=JobStatus.PENDING,
                last_error=format_error(error),
                scheduled_at=now + timedelta(seconds=backoff_seconds),
                started_at=None,
                finished_at=None,
                updated_at=now,
            )
        )
        result = await self._session.execute(stmt)

        logger.info(
            "Job scheduled for retry",
            extra={"job_id": str(job_id), "backoff_seconds": backoff_seconds},
        )
        return result.rowcount > 0

    async def mark_failed_terminal(
        self,
        job_id: UUID,
        error: BaseException | str,
    ) -> bool:
        """
        Mark a job as permanently failed. It never becomes eligible again.

        Args:
            job_id: The job UUID.
            error: The failure, stored as truncated diagnostic text.

        Returns:
            True if a row was updated.
        """
        now = utcnow()
        stmt = (
            update(jobs_table)
            .where(jobs_table.c.id == job_id)
            .values(
                status=JobStatus.FAILED,
                last_error=format_error(error),
                finished_at=now,
                updated_at=now,
            )
        )
        result = await self._session.execute(stmt)

        logger.warning("Job failed permanently", extra={"job_id": str(job_id)})
        return result.rowcount > 0

    async def get_queue_depth(self) -> int:
        """
        Get the number of pending jobs.

        Returns:
            Number of pending jobs.
        """
        stmt = select(func.count()).select_from(Job).where(Job.status == JobStatus.PENDING)
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def get_job_stats(self) -> dict[str, int]:
        """
        Get job counts by status.

        Returns:
            Dictionary of status -> count.
        """
        stmt = select(Job.status, func.count()).group_by(Job.status)
        result = await self._session.execute(stmt)
        return {JobStatus(status).value: count for status, count in result.all()}
