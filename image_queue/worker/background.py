"""
Fire-and-forget background task submission.

Tasks are kept referenced until they finish so the event loop cannot
garbage-collect them mid-flight, and failures are routed to the log.
"""

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)

_background_tasks: set[asyncio.Task] = set()


def _on_task_done(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task failed",
            exc_info=exc,
            extra={"task": task.get_name()},
        )


def spawn(coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task:
    """
    Schedule `coro` on the running loop without awaiting it.

    Args:
        coro: The coroutine to run.
        name: Optional task name used in logs.

    Returns:
        The created task.
    """
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_on_task_done)
    return task


def pending_tasks() -> set[asyncio.Task]:
    """Background tasks that have not finished yet."""
    return {task for task in _background_tasks if not task.done()}


async def drain_background_tasks() -> None:
    """Wait for every outstanding background task. Used on shutdown."""
    tasks = pending_tasks()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
