"""
Unit tests for the stage handler registry.
"""

from uuid import uuid4

import pytest

from image_queue.constants import JobType
from image_queue.exceptions import FatalJobError, HandlerRegistryError, UnknownJobTypeError
from image_queue.types.job import JobContext
from image_queue.worker.handlers import HandlerRegistry, parse_job_type


class TestHandlerRegistry:
    """Tests for HandlerRegistry."""

    @pytest.fixture
    def job_context(self) -> JobContext:
        """Create a test job context."""
        return JobContext(
            job_id=uuid4(),
            job_type=JobType.HASH,
            subject_key="images/a.jpg",
            attempts=1,
            priority=100,
            max_retries=3,
        )

    def test_register_and_get_handler(self, registry: HandlerRegistry):
        """Test getting a registered handler."""

        @registry.register(JobType.HASH)
        async def handle_hash(context: JobContext) -> None:
            pass

        assert registry.get_handler(JobType.HASH) is handle_hash
        assert registry.get_handler("HASH") is handle_hash
        assert registry.list_handlers() == ["HASH"]

    def test_get_handler_not_exists(self, registry: HandlerRegistry):
        """Test getting a missing or unknown handler."""
        assert registry.get_handler(JobType.SAFETY) is None
        assert registry.get_handler("RESIZE") is None

    def test_duplicate_registration_rejected(self, registry: HandlerRegistry):
        """Test a stage has at most one handler."""

        @registry.register(JobType.HASH)
        async def first(context: JobContext) -> None:
            pass

        with pytest.raises(HandlerRegistryError):

            @registry.register(JobType.HASH)
            async def second(context: JobContext) -> None:
                pass

    def test_register_unknown_stage_rejected(self, registry: HandlerRegistry):
        """Test only pipeline stages can be registered."""
        with pytest.raises(UnknownJobTypeError):
            registry.register("RESIZE")

    def test_missing_stages(self, registry: HandlerRegistry):
        """Test incomplete registries are reported."""

        @registry.register(JobType.SAFETY)
        async def handle_safety(context: JobContext) -> None:
            pass

        assert registry.missing_stages() == [JobType.HASH, JobType.EMBED]
        with pytest.raises(HandlerRegistryError, match="HASH, EMBED"):
            registry.ensure_complete()

    def test_complete_registry(self, registry: HandlerRegistry):
        for stage in JobType:
            registry.register(stage)(self._noop)

        registry.ensure_complete()
        assert registry.missing_stages() == []

    async def test_dispatch_calls_handler(self, registry: HandlerRegistry, job_context: JobContext):
        """Test dispatch passes the context to the stage's handler."""
        seen = []

        @registry.register(JobType.HASH)
        async def handle_hash(context: JobContext) -> None:
            seen.append(context)

        await registry.dispatch(job_context)

        assert seen == [job_context]

    async def test_dispatch_propagates_handler_errors(
        self,
        registry: HandlerRegistry,
        job_context: JobContext,
    ):
        @registry.register(JobType.HASH)
        async def handle_hash(context: JobContext) -> None:
            raise ValueError("corrupt image")

        with pytest.raises(ValueError, match="corrupt image"):
            await registry.dispatch(job_context)

    async def test_dispatch_without_handler_is_fatal(
        self,
        registry: HandlerRegistry,
        job_context: JobContext,
    ):
        """Test a stage without a handler cannot be retried into success."""
        with pytest.raises(FatalJobError):
            await registry.dispatch(job_context)

    @staticmethod
    async def _noop(context: JobContext) -> None:
        pass


class TestParseJobType:
    """Tests for parse_job_type."""

    def test_known(self):
        assert parse_job_type("EMBED") is JobType.EMBED

    def test_unknown(self):
        with pytest.raises(UnknownJobTypeError) as exc_info:
            parse_job_type("RESIZE")

        assert exc_info.value.job_type == "RESIZE"
