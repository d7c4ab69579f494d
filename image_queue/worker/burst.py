"""
Leased burst worker.

A burst is a short-lived loop started on demand (typically by the wake
signal after an enqueue). It takes the named worker lease so that at most
one burst runs across all processes, drains the queue, and exits once the
queue has been idle for `idle_exit_ms` or `max_runtime_ms` has elapsed.
"""

import asyncio
import logging
import os
import socket
import time
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import Any
from uuid import uuid4

from image_queue.config import Settings, get_settings
from image_queue.constants import SPAN_BURST_RUN
from image_queue.db import LeaseCoordinator, get_session_context
from image_queue.observability.logging import log_context
from image_queue.observability.metrics import get_metrics
from image_queue.observability.tracing import get_tracer
from image_queue.queue.enqueuer import SessionContextFactory
from image_queue.worker.background import spawn
from image_queue.worker.handlers import HandlerRegistry, default_registry
from image_queue.worker.processor import JobProcessor
from image_queue.worker.retry import BackoffPolicy

logger = logging.getLogger(__name__)


class BurstState(StrEnum):
    """Lifecycle of one burst run."""

    IDLE = "idle"
    ACQUIRING = "acquiring"
    RUNNING = "running"
    DRAINING = "draining"
    EXITING = "exiting"
    RELEASED = "released"


class BurstExit(StrEnum):
    """Why a burst run ended."""

    LEASE_BUSY = "lease_busy"
    IDLE = "idle"
    DEADLINE = "deadline"
    LEASE_LOST = "lease_lost"
    ERROR = "error"


@dataclass(frozen=True)
class BurstConfig:
    """Tuning knobs of a burst run."""

    lease_name: str = "image-runner"
    lease_ttl_seconds: float = 30.0
    batch_size: int = 1
    poll_interval_ms: int = 1000
    idle_exit_ms: int = 4000
    max_runtime_ms: int = 300_000
    abort_on_lease_loss: bool = False
    renew_interval_seconds: float | None = None

    @property
    def renew_interval(self) -> float:
        """Seconds between heartbeat renewals, a third of the ttl unless set."""
        if self.renew_interval_seconds is not None:
            return self.renew_interval_seconds
        return self.lease_ttl_seconds / 3

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **overrides: Any) -> "BurstConfig":
        settings = settings or get_settings()
        config = cls(
            lease_name=settings.worker_lease_name,
            lease_ttl_seconds=settings.worker_lease_ttl_seconds,
            batch_size=settings.worker_batch_size,
            poll_interval_ms=settings.worker_poll_interval_ms,
            idle_exit_ms=settings.worker_idle_exit_ms,
            max_runtime_ms=settings.worker_max_runtime_ms,
            abort_on_lease_loss=settings.worker_abort_on_lease_loss,
            renew_interval_seconds=settings.worker_lease_renew_interval_seconds,
        )
        return replace(config, **overrides)


def make_owner_id() -> str:
    """Identifier unique to this process and run."""
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"


class BurstWorker:
    """
    One leased burst over the queue.

    Features:
    - Cross-process mutual exclusion through the named worker lease
    - Lease renewal on every iteration and from a heartbeat task, so slow
      handlers do not let the lease expire
    - Idle exit and a hard runtime deadline
    - Lease release on every exit path
    """

    def __init__(
        self,
        processor: JobProcessor,
        config: BurstConfig | None = None,
        session_context: SessionContextFactory = get_session_context,
        owner: str | None = None,
    ):
        """
        Initialize the burst worker.

        Args:
            processor: Claims, dispatches and settles jobs.
            config: Burst tuning. Defaults to the configured settings.
            session_context: Factory for short-lived database sessions.
            owner: Lease owner identifier. Defaults to hostname, PID and a nonce.
        """
        self.processor = processor
        self.config = config or BurstConfig.from_settings()
        self.owner = owner or make_owner_id()
        self.state = BurstState.IDLE
        self.processed = 0
        self.lease_losses = 0

        self._session_context = session_context
        self._metrics = get_metrics()
        self._lease_lost = False
        self._heartbeat_task: asyncio.Task | None = None

    async def run(self) -> BurstExit:
        """
        Run one burst.

        Returns:
            The reason the burst ended.

        Raises:
            Exception: JobStore errors propagate after the lease is released.
        """
        self.state = BurstState.ACQUIRING
        acquired = await self._try_acquire()
        self._metrics.record_lease_acquire(self.config.lease_name, acquired)

        if not acquired:
            logger.info(
                "Worker lease busy, skipping burst",
                extra={"lease": self.config.lease_name, "owner": self.owner},
            )
            self.state = BurstState.IDLE
            self._metrics.record_burst_exit(BurstExit.LEASE_BUSY.value)
            return BurstExit.LEASE_BUSY

        reason = BurstExit.ERROR
        with log_context(lease=self.config.lease_name, lease_owner=self.owner):
            logger.info("Burst started")
            try:
                self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
                with get_tracer().start_as_current_span(SPAN_BURST_RUN) as span:
                    span.set_attribute("owner", self.owner)
                    reason = await self._loop()
                    span.set_attribute("exit_reason", reason.value)
            finally:
                self.state = BurstState.EXITING
                await self._stop_heartbeat()
                await self._release()
                self.state = BurstState.RELEASED
                self._metrics.record_burst_exit(reason.value)
                logger.info(
                    "Burst finished",
                    extra={"reason": reason.value, "processed": self.processed},
                )

        return reason

    async def _loop(self) -> BurstExit:
        config = self.config
        started = time.monotonic()
        deadline = started + config.max_runtime_ms / 1000
        last_work = started

        self.state = BurstState.RUNNING
        while time.monotonic() < deadline:
            if not await self._renew():
                self._note_lease_lost()
            if self._lease_lost and config.abort_on_lease_loss:
                return BurstExit.LEASE_LOST

            jobs = await self.processor.claim(config.batch_size)

            if not jobs:
                idle_ms = (time.monotonic() - last_work) * 1000
                if idle_ms >= config.idle_exit_ms:
                    return BurstExit.IDLE
                remaining = deadline - time.monotonic()
                await asyncio.sleep(max(0.0, min(config.poll_interval_ms / 1000, remaining)))
                continue

            self.state = BurstState.DRAINING
            await self.processor.process_batch(jobs)
            self.processed += len(jobs)
            last_work = time.monotonic()
            self.state = BurstState.RUNNING

        return BurstExit.DEADLINE

    async def _heartbeat_loop(self) -> None:
        """Renew the lease for the whole burst, including while handlers run."""
        interval = self.config.renew_interval
        while True:
            await asyncio.sleep(interval)
            if not await self._renew():
                self._note_lease_lost()

    async def _stop_heartbeat(self) -> None:
        if self._heartbeat_task is None:
            return
        self._heartbeat_task.cancel()
        try:
            await self._heartbeat_task
        except asyncio.CancelledError:
            pass
        self._heartbeat_task = None

    def _note_lease_lost(self) -> None:
        self._lease_lost = True
        self.lease_losses += 1
        self._metrics.record_lease_lost(self.config.lease_name)
        logger.warning("Worker lease lost")

    async def _try_acquire(self) -> bool:
        try:
            async with self._session_context() as session:
                lease = LeaseCoordinator(session, self.config.lease_name)
                return await lease.try_acquire_lease(self.owner, self.config.lease_ttl_seconds)
        except Exception:
            logger.exception(
                "Failed to acquire worker lease",
                extra={"lease": self.config.lease_name, "owner": self.owner},
            )
            return False

    async def _renew(self) -> bool:
        try:
            async with self._session_context() as session:
                lease = LeaseCoordinator(session, self.config.lease_name)
                return await lease.renew_lease(self.owner, self.config.lease_ttl_seconds)
        except Exception:
            logger.exception("Failed to renew worker lease")
            return False

    async def _release(self) -> None:
        try:
            async with self._session_context() as session:
                await LeaseCoordinator(session, self.config.lease_name).release_lease(self.owner)
        except Exception:
            logger.exception("Failed to release worker lease")


def build_processor(
    registry: HandlerRegistry | None = None,
    settings: Settings | None = None,
) -> JobProcessor:
    """Processor over `registry` (default_registry if omitted) with the configured backoff."""
    return JobProcessor(
        registry=registry or default_registry,
        backoff=BackoffPolicy.from_settings(settings),
    )


def kick_burst_worker(
    registry: HandlerRegistry | None = None,
    **overrides: Any,
) -> asyncio.Task:
    """
    Start a burst in the background and return immediately.

    If another burst already holds the lease, the new one exits with
    BurstExit.LEASE_BUSY after a single acquire attempt.

    Args:
        registry: Stage handlers. Defaults to default_registry.
        **overrides: BurstConfig fields to override.

    Returns:
        The background task running the burst.
    """
    worker = BurstWorker(
        processor=build_processor(registry),
        config=BurstConfig.from_settings(**overrides),
    )
    return spawn(worker.run(), name=f"burst-worker-{worker.owner}")
