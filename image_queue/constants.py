"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - PENDING -> RUNNING (claimed, attempts incremented)
    - RUNNING -> SUCCEEDED (handler returned)
    - RUNNING -> PENDING (handler raised, retry scheduled with backoff)
    - RUNNING -> FAILED (fatal error or retries exhausted)
    """

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# Statuses that block a duplicate enqueue for the same subject and stage
OUTSTANDING_STATUSES: tuple[JobStatus, ...] = (JobStatus.PENDING, JobStatus.RUNNING)


class JobType(StrEnum):
    """Image pipeline stages, in pipeline order."""

    HASH = "HASH"
    SAFETY = "SAFETY"
    EMBED = "EMBED"


PIPELINE_STAGES: tuple[JobType, ...] = (JobType.HASH, JobType.SAFETY, JobType.EMBED)
FIRST_STAGE = PIPELINE_STAGES[0]


class QueueSource(StrEnum):
    """Where a piece of work originated. Drives its priority."""

    RECOGNITION_USER = "recognition_user"
    GYM_MANAGER = "gym_manager"
    GYM_EQUIPMENT = "gym_equipment"
    ADMIN = "admin"
    BACKFILL = "backfill"


# Priority weights (higher = processed first)
SOURCE_PRIORITIES: dict[QueueSource, int] = {
    QueueSource.RECOGNITION_USER: 100,
    QueueSource.GYM_MANAGER: 80,
    QueueSource.GYM_EQUIPMENT: 80,
    QueueSource.ADMIN: 20,
    QueueSource.BACKFILL: 20,
}
LOWEST_PRIORITY = 0


class DrainStatus(StrEnum):
    """Coarse status reported by the administrative drain trigger."""

    STARTED = "started"
    ALREADY_RUNNING = "already-running"


# JobStore constants
LAST_ERROR_MAX_LENGTH = 3000
CLAIM_OVERFETCH_FACTOR = 3
CLAIM_OVERFETCH_MIN = 5
LIST_JOBS_MAX_LIMIT = 200

# API constants
API_V1_PREFIX = "/v1"

# Metrics names
METRIC_QUEUE_DEPTH = "image_queue_depth"
METRIC_JOBS_ENQUEUED = "image_jobs_enqueued_total"
METRIC_JOBS_CLAIMED = "image_jobs_claimed_total"
METRIC_JOBS_COMPLETED = "image_jobs_completed_total"
METRIC_JOB_DURATION = "image_job_duration_seconds"
METRIC_LEASE_ACQUIRE = "worker_lease_acquire_total"
METRIC_LEASE_LOST = "worker_lease_lost_total"
METRIC_BURST_EXITS = "burst_worker_exits_total"

# Trace span names
SPAN_CLAIM_BATCH = "claim_batch"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_BURST_RUN = "burst_run"
