"""
Single-shot drain.

Processes up to `max` jobs once and returns, without the worker lease.
Meant for manual or administrative triggers. Overlapping drains in the same
process are rejected by a compare-and-set guard; cross-process overlap is
tolerated because claims are atomic.
"""

import asyncio
import logging
import threading

from image_queue.config import Settings, get_settings
from image_queue.constants import DrainStatus
from image_queue.types.job import DrainResult, JobOutcome
from image_queue.worker.background import spawn
from image_queue.worker.processor import JobProcessor

logger = logging.getLogger(__name__)


class DrainGuard:
    """Per-process flag ensuring one drain at a time."""

    def __init__(self):
        self._lock = threading.Lock()

    def try_enter(self) -> bool:
        """Set the flag if it is clear. Never blocks."""
        return self._lock.acquire(blocking=False)

    def leave(self) -> None:
        self._lock.release()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()


# Shared by every SingleShotDrain in this process
process_drain_guard = DrainGuard()


class SingleShotDrain:
    """
    Drains the queue once, up to a maximum number of jobs.

    Claims are sized `min(concurrency, max - processed)`, so the drain never
    claims more than `max` jobs in total.
    """

    def __init__(
        self,
        processor: JobProcessor,
        concurrency: int | None = None,
        guard: DrainGuard | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize the drain.

        Args:
            processor: Claims, dispatches and settles jobs.
            concurrency: Jobs claimed per round. Defaults to worker_concurrency.
            guard: Overlap guard. Defaults to the process-wide guard.
            settings: Source of defaults and limits.
        """
        settings = settings or get_settings()

        self.processor = processor
        self.concurrency = max(1, concurrency or settings.worker_concurrency)
        self.default_max = settings.drain_default_max
        self.max_limit = settings.drain_max_limit
        self.current_task: asyncio.Task | None = None

        self._guard = guard or process_drain_guard

    @property
    def is_running(self) -> bool:
        return self._guard.is_running

    def clamp_max(self, max_jobs: int | None) -> int:
        """Bound a requested maximum to [1, drain_max_limit]."""
        if max_jobs is None:
            max_jobs = self.default_max
        return max(1, min(int(max_jobs), self.max_limit))

    async def run(self, max_jobs: int | None = None) -> DrainResult | None:
        """
        Drain in the foreground.

        Args:
            max_jobs: Upper bound on jobs processed.

        Returns:
            The DrainResult, or None if a drain was already running.
        """
        if not self._guard.try_enter():
            logger.info("Drain already running")
            return None
        try:
            return await self._drain(max_jobs)
        finally:
            self._guard.leave()

    def start(self, max_jobs: int | None = None) -> DrainStatus:
        """
        Start a drain in the background and return immediately.

        Must be called from a running event loop.

        Args:
            max_jobs: Upper bound on jobs processed.

        Returns:
            DrainStatus.STARTED, or DrainStatus.ALREADY_RUNNING if a drain
            is in progress in this process.
        """
        if not self._guard.try_enter():
            logger.info("Drain already running")
            return DrainStatus.ALREADY_RUNNING
        try:
            self.current_task = spawn(self._drain_then_leave(max_jobs), name="single-shot-drain")
        except Exception:
            self._guard.leave()
            raise
        return DrainStatus.STARTED

    async def _drain_then_leave(self, max_jobs: int | None) -> DrainResult:
        try:
            return await self._drain(max_jobs)
        finally:
            self._guard.leave()

    async def _drain(self, max_jobs: int | None) -> DrainResult:
        limit = self.clamp_max(max_jobs)
        counts = {outcome: 0 for outcome in JobOutcome}
        processed = 0

        logger.info("Drain started", extra={"max": limit, "concurrency": self.concurrency})

        while processed < limit:
            jobs = await self.processor.claim(min(self.concurrency, limit - processed))
            if not jobs:
                break

            for outcome in await self.processor.process_batch(jobs):
                counts[outcome] += 1
            processed += len(jobs)

        result = DrainResult(
            processed=processed,
            succeeded=counts[JobOutcome.SUCCEEDED],
            retried=counts[JobOutcome.RETRY_SCHEDULED],
            failed=counts[JobOutcome.FAILED],
        )
        logger.info(
            "Drain finished",
            extra={
                "processed": result.processed,
                "succeeded": result.succeeded,
                "retried": result.retried,
                "failed": result.failed,
            },
        )
        return result
