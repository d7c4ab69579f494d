"""
Scheduling policy: maps where work came from to a numeric priority.
"""

from image_queue.constants import LOWEST_PRIORITY, SOURCE_PRIORITIES, QueueSource


def priority_from_source(source: QueueSource | str | None) -> int:
    """
    Priority for work originating from `source`.

    Interactive recognition work outranks manager uploads, which outrank
    admin/backfill work. Unknown sources get the lowest priority.

    Args:
        source: A QueueSource or its string value.

    Returns:
        The priority, higher = more urgent.
    """
    try:
        return SOURCE_PRIORITIES[QueueSource(source)]
    except (ValueError, KeyError):
        return LOWEST_PRIORITY
