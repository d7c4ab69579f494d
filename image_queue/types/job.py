"""
Job-related type definitions for internal use.
"""

from dataclasses import dataclass
from enum import StrEnum
from uuid import UUID

from image_queue.constants import JobType


@dataclass(frozen=True)
class JobContext:
    """
    Context passed to stage handlers during execution.

    Handlers that continue the pipeline enqueue the next stage for the same
    subject_key; returning without doing so ends the pipeline.
    """

    job_id: UUID
    job_type: JobType
    subject_key: str
    attempts: int
    priority: int
    max_retries: int

    @property
    def is_last_attempt(self) -> bool:
        """Check if a failure now would be terminal."""
        return self.attempts >= self.max_retries


class JobOutcome(StrEnum):
    """What happened to a claimed job after dispatch."""

    SUCCEEDED = "succeeded"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"


@dataclass(frozen=True)
class EnqueueResult:
    """Result of an enqueue request."""

    enqueued: bool
    job_id: UUID | None = None
    reason: str | None = None


@dataclass(frozen=True)
class DrainResult:
    """Summary of one single-shot drain."""

    processed: int
    succeeded: int
    retried: int
    failed: int
