"""
Queue module.
Contains the scheduling policy and the enqueuer.
"""

from image_queue.queue.enqueuer import Enqueuer, next_stage
from image_queue.queue.priority import priority_from_source

__all__ = ["Enqueuer", "next_stage", "priority_from_source"]
