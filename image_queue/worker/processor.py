"""
Claim, dispatch and settle jobs.

Shared by the leased burst worker and the single-shot drain so both loops
apply the same retry policy.
"""

import logging
import time
from collections.abc import Sequence

from image_queue.constants import SPAN_CLAIM_BATCH, SPAN_EXECUTE_JOB
from image_queue.db import Job, JobStore, get_session_context
from image_queue.exceptions import FatalJobError
from image_queue.observability.logging import log_context
from image_queue.observability.metrics import get_metrics
from image_queue.observability.tracing import get_tracer
from image_queue.queue.enqueuer import SessionContextFactory
from image_queue.types.job import JobContext, JobOutcome
from image_queue.worker.handlers import HandlerRegistry, parse_job_type
from image_queue.worker.retry import BackoffPolicy

logger = logging.getLogger(__name__)


class JobProcessor:
    """
    Runs claimed jobs through the handler registry and records the result.

    Handler exceptions are contained per job. JobStore exceptions propagate:
    if the store is unreachable, processing stops.
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        backoff: BackoffPolicy,
        session_context: SessionContextFactory = get_session_context,
    ):
        """
        Initialize the processor.

        Args:
            registry: Stage handlers.
            backoff: Retry policy.
            session_context: Factory for short-lived database sessions.
        """
        self.registry = registry
        self.backoff = backoff
        self._session_context = session_context
        self._metrics = get_metrics()

    async def claim(self, limit: int) -> list[Job]:
        """
        Claim up to `limit` eligible jobs in their own transaction.

        Args:
            limit: Maximum number of jobs.

        Returns:
            The claimed job snapshots.
        """
        with get_tracer().start_as_current_span(SPAN_CLAIM_BATCH) as span:
            span.set_attribute("limit", limit)
            async with self._session_context() as session:
                jobs = await JobStore(session).claim_batch(limit)
            span.set_attribute("claimed", len(jobs))

        for job in jobs:
            self._metrics.record_jobs_claimed(job.job_type)
        return jobs

    async def process_batch(self, jobs: Sequence[Job]) -> list[JobOutcome]:
        """Process claimed jobs one after another."""
        return [await self.process(job) for job in jobs]

    async def process(self, job: Job) -> JobOutcome:
        """
        Dispatch one claimed job and settle it.

        Args:
            job: A snapshot returned by claim().

        Returns:
            The recorded outcome.
        """
        start_time = time.monotonic()

        with log_context(job_id=str(job.id), job_type=job.job_type):
            error: Exception | None = None
            try:
                context = JobContext(
                    job_id=job.id,
                    job_type=parse_job_type(job.job_type),
                    subject_key=job.subject_key,
                    attempts=job.attempts,
                    priority=job.priority,
                    max_retries=self.backoff.max_retries,
                )

                logger.info(
                    "Executing job",
                    extra={"subject_key": job.subject_key, "attempts": job.attempts},
                )

                with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
                    span.set_attribute("job_id", str(job.id))
                    span.set_attribute("job_type", job.job_type)
                    span.set_attribute("attempts", job.attempts)

                    await self.registry.dispatch(context)

            except Exception as e:
                error = e

            outcome = await self._settle(job, error)

        self._metrics.record_job_completed(
            job_type=job.job_type,
            outcome=outcome.value,
            duration_seconds=time.monotonic() - start_time,
        )
        return outcome

    async def _settle(self, job: Job, error: Exception | None) -> JobOutcome:
        """Record success, a scheduled retry, or a terminal failure."""
        async with self._session_context() as session:
            store = JobStore(session)

            if error is None:
                await store.mark_done(job.id)
                return JobOutcome.SUCCEEDED

            if isinstance(error, FatalJobError) or self.backoff.is_exhausted(job.attempts):
                await store.mark_failed_terminal(job.id, error)
                logger.warning(
                    "Handler failed, no retries left",
                    exc_info=error,
                    extra={"attempts": job.attempts},
                )
                return JobOutcome.FAILED

            delay = self.backoff.delay_for(job.attempts)
            await store.mark_failed(job.id, error, delay)
            logger.warning(
                "Handler failed, retry scheduled",
                exc_info=error,
                extra={"attempts": job.attempts, "backoff_seconds": delay},
            )
            return JobOutcome.RETRY_SCHEDULED
