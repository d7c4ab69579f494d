"""
Type definitions for the image queue.
Contains input/output type definitions, grouped by module.
"""

from image_queue.types.api import (
    EnqueueJobRequest,
    EnqueueJobResponse,
    HealthResponse,
    JobListResponse,
    JobResponse,
    JobStatsResponse,
    WorkerKickoffResponse,
)
from image_queue.types.job import (
    DrainResult,
    EnqueueResult,
    JobContext,
    JobOutcome,
)

__all__ = [
    # API types
    "EnqueueJobRequest",
    "EnqueueJobResponse",
    "JobResponse",
    "JobListResponse",
    "JobStatsResponse",
    "WorkerKickoffResponse",
    "HealthResponse",
    # Job types
    "JobContext",
    "JobOutcome",
    "EnqueueResult",
    "DrainResult",
]
