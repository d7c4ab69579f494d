"""
Job management routes.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from image_queue.constants import API_V1_PREFIX, FIRST_STAGE, LIST_JOBS_MAX_LIMIT, JobStatus
from image_queue.db import JobStore, get_async_session
from image_queue.queue import Enqueuer, priority_from_source
from image_queue.types.api import (
    EnqueueJobRequest,
    EnqueueJobResponse,
    JobListResponse,
    JobResponse,
    JobStatsResponse,
)
from image_queue.worker.burst import kick_burst_worker
from image_queue.worker.handlers import default_registry

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/jobs", tags=["Jobs"])


def get_enqueuer() -> Enqueuer:
    """
    Enqueuer for API submissions.

    Enqueues kick a burst worker only when this process can run every stage;
    otherwise the worker service picks the jobs up.
    """
    wake = kick_burst_worker if not default_registry.missing_stages() else None
    return Enqueuer(wake=wake)


@router.post(
    "",
    response_model=EnqueueJobResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Enqueue a job",
    description=(
        "Enqueue a pipeline job for a subject. Duplicate submissions for a subject "
        "with outstanding work of the same stage are not enqueued."
    ),
)
async def enqueue_job(
    request: EnqueueJobRequest,
    enqueuer: Enqueuer = Depends(get_enqueuer),
) -> EnqueueJobResponse:
    """
    Enqueue a job.

    With only `source`, the first stage is enqueued at the source's priority.

    Args:
        request: Enqueue request.
        enqueuer: Job submitter.

    Returns:
        EnqueueJobResponse; `enqueued` is False for duplicates.
    """
    job_type = request.job_type or FIRST_STAGE
    priority = request.priority
    if priority is None:
        priority = priority_from_source(request.source)

    result = await enqueuer.enqueue(
        request.subject_key,
        job_type,
        priority=priority,
        scheduled_at=request.scheduled_at,
        source=request.source,
    )

    if result.reason == "invalid":
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="subject_key must not be blank",
        )

    return EnqueueJobResponse(
        enqueued=result.enqueued,
        job_id=result.job_id,
        reason=result.reason,
    )


@router.get(
    "",
    response_model=JobListResponse,
    summary="List jobs",
    description="List unfinished jobs in claim order.",
)
async def list_jobs(
    status: JobStatus | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=LIST_JOBS_MAX_LIMIT),
    session: AsyncSession = Depends(get_async_session),
) -> JobListResponse:
    """
    List unfinished jobs.

    Args:
        status: Optional status filter.
        limit: Maximum number of jobs.
        session: Database session.

    Returns:
        JobListResponse ordered as the worker would claim them.
    """
    jobs = await JobStore(session).list_jobs(status=status, limit=limit)
    return JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        count=len(jobs),
    )


@router.get(
    "/stats/summary",
    response_model=JobStatsResponse,
    summary="Get job statistics",
    description="Get job counts by status and the current queue depth.",
)
async def get_job_stats(
    session: AsyncSession = Depends(get_async_session),
) -> JobStatsResponse:
    """
    Get job statistics.

    Args:
        session: Database session.

    Returns:
        Status counts and the number of pending jobs.
    """
    store = JobStore(session)
    return JobStatsResponse(
        stats=await store.get_job_stats(),
        queue_depth=await store.get_queue_depth(),
    )


@router.get(
    "/{job_id}",
    response_model=JobResponse,
    summary="Get job details",
    description="Get detailed information about a specific job.",
)
async def get_job(
    job_id: UUID,
    session: AsyncSession = Depends(get_async_session),
) -> JobResponse:
    """
    Get job details by ID.

    Args:
        job_id: The job UUID.
        session: Database session.

    Returns:
        JobResponse with full job details.

    Raises:
        HTTPException: If the job does not exist.
    """
    job = await JobStore(session).get_job(job_id)

    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )

    return JobResponse.model_validate(job)
