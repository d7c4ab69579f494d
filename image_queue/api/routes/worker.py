"""
Administrative worker triggers.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from image_queue.constants import API_V1_PREFIX, DrainStatus
from image_queue.types.api import WorkerKickoffResponse
from image_queue.worker.burst import build_processor, kick_burst_worker
from image_queue.worker.drain import SingleShotDrain
from image_queue.worker.handlers import default_registry

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/worker", tags=["Worker"])

_drain: SingleShotDrain | None = None


def get_drain() -> SingleShotDrain:
    """The process-wide single-shot drain."""
    global _drain
    if _drain is None:
        _drain = SingleShotDrain(build_processor())
    return _drain


def require_handlers() -> None:
    """Reject triggers while a pipeline stage has no handler in this process."""
    if default_registry.missing_stages():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Worker handlers are not loaded",
        )


@router.post(
    "/run-once",
    response_model=WorkerKickoffResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Drain the queue once",
    description="Process up to `max` jobs in the background without the worker lease.",
    dependencies=[Depends(require_handlers)],
)
async def run_once(
    max_jobs: int | None = Query(default=None, ge=1, alias="max"),
    drain: SingleShotDrain = Depends(get_drain),
) -> WorkerKickoffResponse:
    """
    Start a single-shot drain.

    Only a coarse status is exposed; results go to the logs and metrics.

    Args:
        max_jobs: Upper bound on jobs processed (clamped to the configured limit).
        drain: The drain runner.

    Returns:
        Whether the drain started or one was already running.
    """
    drain_status = drain.start(max_jobs)
    logger.info("Drain requested", extra={"max": max_jobs, "status": drain_status.value})
    return WorkerKickoffResponse(status=drain_status)


@router.post(
    "/kick",
    response_model=WorkerKickoffResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a burst worker",
    description="Start a leased burst. It exits immediately if another burst holds the lease.",
    dependencies=[Depends(require_handlers)],
)
async def kick() -> WorkerKickoffResponse:
    """
    Start a leased burst worker in the background.

    Returns:
        Always `started`; lease contention is resolved by the burst itself.
    """
    kick_burst_worker()
    return WorkerKickoffResponse(status=DrainStatus.STARTED)
