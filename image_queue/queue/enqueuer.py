"""
Idempotent job submission and pipeline stage chaining.
"""

import inspect
import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from image_queue.constants import FIRST_STAGE, PIPELINE_STAGES, JobType, QueueSource
from image_queue.db import JobStore, get_session_context
from image_queue.observability.metrics import get_metrics
from image_queue.queue.priority import priority_from_source
from image_queue.types.job import EnqueueResult, JobContext

logger = logging.getLogger(__name__)

SessionContextFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]
# Synchronous and fire-and-forget; coroutines are never awaited
WakeSignal = Callable[[], object]


def next_stage(job_type: JobType | str) -> JobType | None:
    """
    The pipeline stage that follows `job_type`.

    Returns:
        The next JobType, or None after the last stage.
    """
    index = PIPELINE_STAGES.index(JobType(job_type))
    if index + 1 < len(PIPELINE_STAGES):
        return PIPELINE_STAGES[index + 1]
    return None


class Enqueuer:
    """
    Submits jobs without creating duplicates for outstanding work.

    A job is a duplicate when a pending or running job exists for the same
    subject_key and job_type. Stages of one subject never block each other,
    since a handler enqueues the next stage while its own job is running.
    """

    def __init__(
        self,
        session_context: SessionContextFactory = get_session_context,
        wake: WakeSignal | None = None,
    ):
        """
        Initialize the enqueuer.

        Args:
            session_context: Factory for short-lived database sessions.
            wake: Fire-and-forget signal asking a burst worker to start soon.

        Raises:
            TypeError: If `wake` is a coroutine function.
        """
        if inspect.iscoroutinefunction(wake):
            raise TypeError("wake must be a synchronous callable, e.g. kick_burst_worker")
        self._session_context = session_context
        self._wake = wake
        self._metrics = get_metrics()

    async def enqueue(
        self,
        subject_key: str | None,
        job_type: JobType,
        priority: int = 0,
        scheduled_at: datetime | None = None,
        wake: bool | None = None,
        source: QueueSource | str | None = None,
    ) -> EnqueueResult:
        """
        Enqueue a job unless an equivalent one is outstanding.

        Args:
            subject_key: Identifier of the content to process.
            job_type: Pipeline stage.
            priority: Numeric priority, higher first.
            scheduled_at: Optional earliest eligibility time.
            wake: Send the wake signal. Defaults to first-stage enqueues only.
            source: Origin of the work, for metrics.

        Returns:
            EnqueueResult; `enqueued` is False for duplicates or blank keys.
        """
        key = (subject_key or "").strip()
        if not key:
            return EnqueueResult(enqueued=False, reason="invalid")

        job_type = JobType(job_type)

        try:
            async with self._session_context() as session:
                store = JobStore(session)

                existing = await store.find_outstanding(key, job_type)
                if existing is not None:
                    logger.info(
                        "Job not enqueued (duplicate outstanding)",
                        extra={
                            "job_id": str(existing.id),
                            "job_type": job_type.value,
                            "subject_key": key,
                        },
                    )
                    return EnqueueResult(
                        enqueued=False, job_id=existing.id, reason="duplicate"
                    )

                job = await store.create_job(
                    subject_key=key,
                    job_type=job_type,
                    priority=priority,
                    scheduled_at=scheduled_at,
                )
                job_id = job.id
        except IntegrityError:
            # Lost a race against a concurrent enqueue of the same stage
            logger.info(
                "Job not enqueued (concurrent duplicate)",
                extra={"job_type": job_type.value, "subject_key": key},
            )
            return EnqueueResult(enqueued=False, reason="duplicate")

        self._metrics.record_job_enqueued(
            job_type=job_type.value,
            source=str(source) if source is not None else "direct",
        )

        should_wake = wake if wake is not None else job_type == FIRST_STAGE
        if should_wake:
            self._send_wake()

        return EnqueueResult(enqueued=True, job_id=job_id)

    async def enqueue_subject(
        self,
        subject_key: str | None,
        source: QueueSource | str,
    ) -> EnqueueResult:
        """
        Start the pipeline for a subject with priority derived from its source.

        Args:
            subject_key: Identifier of the content to process.
            source: Origin of the work.

        Returns:
            EnqueueResult for the first-stage job.
        """
        return await self.enqueue(
            subject_key,
            FIRST_STAGE,
            priority=priority_from_source(source),
            source=source,
        )

    async def chain(
        self,
        context: JobContext,
        next_type: JobType | None = None,
    ) -> EnqueueResult | None:
        """
        Enqueue the stage after the one in `context`, keeping its priority.

        Handlers call this on success to continue the pipeline.

        Args:
            context: The context of the job that just succeeded.
            next_type: Override for the following stage.

        Returns:
            The EnqueueResult, or None when the pipeline is complete.
        """
        target = next_type or next_stage(context.job_type)
        if target is None:
            return None
        return await self.enqueue(
            context.subject_key,
            target,
            priority=context.priority,
        )

    def _send_wake(self) -> None:
        """Deliver the wake signal. Failures are logged, never raised."""
        if self._wake is None:
            return
        try:
            result = self._wake()
        except Exception:
            logger.exception("Failed to send worker wake signal")
            return
        if inspect.iscoroutine(result):
            result.close()
            logger.error("Worker wake signal returned a coroutine, nothing was started")
