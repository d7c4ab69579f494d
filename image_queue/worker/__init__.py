"""
Worker module.
Contains the handler registry, the leased burst worker and the single-shot drain.
"""

from image_queue.worker.burst import BurstConfig, BurstExit, BurstWorker, kick_burst_worker
from image_queue.worker.drain import DrainGuard, SingleShotDrain
from image_queue.worker.handlers import HandlerRegistry, default_registry, register_handler
from image_queue.worker.processor import JobProcessor
from image_queue.worker.retry import BackoffPolicy

__all__ = [
    "BackoffPolicy",
    "BurstConfig",
    "BurstExit",
    "BurstWorker",
    "DrainGuard",
    "HandlerRegistry",
    "JobProcessor",
    "SingleShotDrain",
    "default_registry",
    "kick_burst_worker",
    "register_handler",
]
