"""
API request and response type definitions.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from image_queue.constants import DrainStatus, JobStatus, JobType, QueueSource


class EnqueueJobRequest(BaseModel):
    """
    Request body for enqueueing a job.

    Either `source` (first pipeline stage, priority from the source) or an
    explicit `job_type` must be given.
    """

    subject_key: str = Field(..., min_length=1, max_length=1024, description="Content identifier")
    source: QueueSource | None = Field(default=None, description="Origin of the work")
    job_type: JobType | None = Field(default=None, description="Pipeline stage to run")
    priority: int | None = Field(default=None, description="Explicit priority, higher first")
    scheduled_at: datetime | None = Field(
        default=None, description="Do not run before this instant"
    )

    @model_validator(mode="after")
    def _require_source_or_type(self) -> "EnqueueJobRequest":
        if self.source is None and self.job_type is None:
            raise ValueError("Either source or job_type is required")
        return self


class EnqueueJobResponse(BaseModel):
    """Response body after an enqueue request."""

    enqueued: bool
    job_id: UUID | None = None
    reason: str | None = None


class JobResponse(BaseModel):
    """Full job details response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    job_type: str
    subject_key: str
    status: JobStatus
    priority: int
    attempts: int
    last_error: str | None
    scheduled_at: datetime | None
    started_at: datetime | None
    finished_at: datetime | None
    created_at: datetime
    updated_at: datetime


class JobListResponse(BaseModel):
    """List of unfinished jobs in claim order."""

    jobs: list[JobResponse]
    count: int


class JobStatsResponse(BaseModel):
    """Job counts by status."""

    stats: dict[str, int]
    queue_depth: int


class WorkerKickoffResponse(BaseModel):
    """Coarse status of an administrative worker trigger."""

    ok: bool = True
    status: DrainStatus


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    timestamp: datetime
