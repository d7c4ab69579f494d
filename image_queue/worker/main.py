"""
Worker process.

Runs leased bursts back to back, sleeping `worker_service_interval_seconds`
between them. This picks up work whose wake signal was missed (e.g. jobs
scheduled for a later time, or enqueues from a process without a burst
worker). Bursts from other processes are excluded by the worker lease.
"""

import asyncio
import logging
import signal

from image_queue.config import get_settings
from image_queue.db import close_db, init_db
from image_queue.observability.logging import setup_logging
from image_queue.observability.metrics import setup_metrics
from image_queue.observability.tracing import setup_tracing
from image_queue.worker.burst import BurstConfig, BurstWorker, build_processor
from image_queue.worker.drain import SingleShotDrain
from image_queue.worker.handlers import HandlerRegistry, default_registry, load_handler_modules

logger = logging.getLogger(__name__)


class WorkerService:
    """
    Long-running worker that repeats burst runs.

    Features:
    - One burst at a time across all processes (worker lease)
    - Graceful shutdown on SIGTERM/SIGINT
    - Refuses to start unless every pipeline stage has a handler
    """

    def __init__(
        self,
        registry: HandlerRegistry | None = None,
        interval_seconds: float | None = None,
        config: BurstConfig | None = None,
    ):
        """
        Initialize the worker service.

        Args:
            registry: Stage handlers. Defaults to default_registry.
            interval_seconds: Pause between bursts.
            config: Burst tuning.
        """
        settings = get_settings()

        self.registry = registry or default_registry
        self.interval_seconds = (
            interval_seconds
            if interval_seconds is not None
            else settings.worker_service_interval_seconds
        )
        self.config = config or BurstConfig.from_settings(settings)
        self.processor = build_processor(self.registry, settings)

        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        """Run bursts until stopped."""
        self.registry.ensure_complete()

        logger.info(
            "Worker starting",
            extra={
                "lease": self.config.lease_name,
                "interval_seconds": self.interval_seconds,
                "handlers": self.registry.list_handlers(),
            },
        )

        while not self._stop_event.is_set():
            try:
                await BurstWorker(self.processor, self.config).run()
            except Exception as e:
                logger.exception(f"Error in burst run: {e}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except TimeoutError:
                pass

        logger.info("Worker stopped")

    async def stop(self) -> None:
        """Stop after the current burst."""
        logger.info("Worker stopping")
        self._stop_event.set()


def _bootstrap() -> None:
    settings = get_settings()
    setup_logging()
    setup_metrics()
    setup_tracing()
    load_handler_modules(settings.handler_modules)


async def run_async() -> None:
    """Run the worker asynchronously."""
    _bootstrap()
    await init_db()

    worker = WorkerService()

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(worker.stop())
        )

    try:
        await worker.start()
    finally:
        await close_db()


async def drain_once_async(max_jobs: int | None = None) -> None:
    """Run one single-shot drain and exit."""
    _bootstrap()
    await init_db()

    default_registry.ensure_complete()

    try:
        result = await SingleShotDrain(build_processor()).run(max_jobs)
        if result is None:
            logger.info("Drain already running, nothing to do")
    finally:
        await close_db()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


def drain_once() -> None:
    """
    Drain the queue once with the configured defaults.

    The console script takes no arguments. The per-run maximum comes from
    DRAIN_DEFAULT_MAX (clamped to DRAIN_MAX_LIMIT); use POST
    /v1/worker/run-once?max=N for a one-off bound.
    """
    asyncio.run(drain_once_async())


if __name__ == "__main__":
    run()
