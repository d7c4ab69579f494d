"""
Stage handler registry.

Handlers are supplied by the content modules (hashing, safety, embedding)
and registered per pipeline stage. They must be idempotent: a job may be
handled more than once if a worker dies mid-job or two burst loops overlap.
"""

import importlib
import logging
from collections.abc import Awaitable, Callable, Iterable

from image_queue.constants import PIPELINE_STAGES, JobType
from image_queue.exceptions import HandlerRegistryError, UnknownJobTypeError
from image_queue.types.job import JobContext

logger = logging.getLogger(__name__)

# Handlers raise to signal failure; returning means success
StageHandler = Callable[[JobContext], Awaitable[None]]


def parse_job_type(job_type: str) -> JobType:
    """
    Map a stored job type tag onto the closed set of stages.

    Raises:
        UnknownJobTypeError: If no stage matches.
    """
    try:
        return JobType(job_type)
    except ValueError:
        raise UnknownJobTypeError(job_type) from None


class HandlerRegistry:
    """
    Maps each pipeline stage to exactly one handler.

    Example:
        registry = HandlerRegistry()

        @registry.register(JobType.HASH)
        async def handle_hash(context: JobContext) -> None:
            ...
    """

    def __init__(self):
        self._handlers: dict[JobType, StageHandler] = {}

    def register(self, job_type: JobType | str) -> Callable[[StageHandler], StageHandler]:
        """
        Decorator to register the handler of a stage.

        Args:
            job_type: The stage this handler processes.

        Raises:
            HandlerRegistryError: If the stage already has a handler.
        """
        stage = parse_job_type(job_type)

        def decorator(handler: StageHandler) -> StageHandler:
            if stage in self._handlers:
                raise HandlerRegistryError(f"Handler already registered for {stage.value}")
            self._handlers[stage] = handler
            logger.info(f"Registered handler for job type: {stage.value}")
            return handler

        return decorator

    def get_handler(self, job_type: JobType | str) -> StageHandler | None:
        """Get the handler for a stage, or None."""
        try:
            return self._handlers.get(parse_job_type(job_type))
        except UnknownJobTypeError:
            return None

    def list_handlers(self) -> list[str]:
        """List all stages that have a handler."""
        return [stage.value for stage in self._handlers]

    def missing_stages(self) -> list[JobType]:
        """Stages of the pipeline without a handler."""
        return [stage for stage in PIPELINE_STAGES if stage not in self._handlers]

    def ensure_complete(self) -> None:
        """
        Verify that every pipeline stage has a handler.

        Raises:
            HandlerRegistryError: Listing the stages without handlers.
        """
        missing = self.missing_stages()
        if missing:
            names = ", ".join(stage.value for stage in missing)
            raise HandlerRegistryError(f"No handler registered for stages: {names}")

    async def dispatch(self, context: JobContext) -> None:
        """
        Run the handler for `context.job_type`.

        Raises:
            UnknownJobTypeError: If the stage has no handler.
            Exception: Whatever the handler raises.
        """
        handler = self._handlers.get(context.job_type)
        if handler is None:
            raise UnknownJobTypeError(context.job_type.value)
        await handler(context)


# Process-wide registry that content modules register into
default_registry = HandlerRegistry()
register_handler = default_registry.register


def load_handler_modules(module_paths: Iterable[str]) -> None:
    """
    Import modules whose import registers handlers into default_registry.

    Args:
        module_paths: Dotted module paths.
    """
    for path in module_paths:
        importlib.import_module(path)
        logger.info("Loaded handler module", extra={"handler_module": path})
