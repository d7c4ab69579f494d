"""
Integration tests for the leased burst worker.
"""

import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest
from sqlalchemy import delete, select, update

from image_queue.constants import JobStatus, JobType
from image_queue.db import Job, JobStore, LeaseCoordinator, WorkerLease, get_session_context
from image_queue.db.models import utcnow
from image_queue.exceptions import FatalJobError
from image_queue.queue import Enqueuer
from image_queue.types.job import JobContext
from image_queue.worker.burst import BurstConfig, BurstExit, BurstState, BurstWorker
from image_queue.worker.handlers import HandlerRegistry
from image_queue.worker.processor import JobProcessor


async def jobs_for(subject_key: str) -> dict[str, Job]:
    """Jobs of a subject keyed by job type."""
    async with get_session_context() as session:
        result = await session.execute(select(Job).where(Job.subject_key == subject_key))
        return {job.job_type: job for job in result.scalars()}


async def make_due(job_id) -> None:
    """Move a retry's scheduled_at into the past."""
    async with get_session_context() as session:
        await session.execute(
            update(Job).where(Job.id == job_id).values(scheduled_at=utcnow() - timedelta(seconds=1))
        )


async def current_lease(name: str) -> WorkerLease | None:
    async with get_session_context() as session:
        return await LeaseCoordinator(session, name).get_lease()


class TestBurstPipeline:
    """End-to-end pipeline runs through the burst worker."""

    @pytest.mark.asyncio
    async def test_pipeline_runs_all_stages(
        self,
        registry: HandlerRegistry,
        processor: JobProcessor,
        enqueuer: Enqueuer,
        burst_config: BurstConfig,
    ):
        """Test HASH -> SAFETY -> EMBED chain to completion in one burst."""
        seen = []

        @registry.register(JobType.HASH)
        async def handle_hash(context: JobContext) -> None:
            seen.append(context.job_type)
            await enqueuer.chain(context)

        @registry.register(JobType.SAFETY)
        async def handle_safety(context: JobContext) -> None:
            seen.append(context.job_type)
            await enqueuer.chain(context)

        @registry.register(JobType.EMBED)
        async def handle_embed(context: JobContext) -> None:
            seen.append(context.job_type)

        await enqueuer.enqueue("images/a.jpg", JobType.HASH, priority=100)

        worker = BurstWorker(processor, burst_config)
        reason = await worker.run()

        assert reason == BurstExit.IDLE
        assert worker.processed == 3
        assert seen == [JobType.HASH, JobType.SAFETY, JobType.EMBED]

        jobs = await jobs_for("images/a.jpg")
        assert {t: j.status for t, j in jobs.items()} == {
            "HASH": JobStatus.SUCCEEDED,
            "SAFETY": JobStatus.SUCCEEDED,
            "EMBED": JobStatus.SUCCEEDED,
        }
        assert all(j.priority == 100 for j in jobs.values())

    @pytest.mark.asyncio
    async def test_failing_stage_retries_with_backoff_then_fails(
        self,
        registry: HandlerRegistry,
        processor: JobProcessor,
        enqueuer: Enqueuer,
        burst_config: BurstConfig,
    ):
        """Test SAFETY failing three times with three retries ends failed without EMBED."""
        last_attempt_flags = []

        @registry.register(JobType.HASH)
        async def handle_hash(context: JobContext) -> None:
            await enqueuer.chain(context)

        @registry.register(JobType.SAFETY)
        async def handle_safety(context: JobContext) -> None:
            last_attempt_flags.append(context.is_last_attempt)
            raise RuntimeError("classifier unavailable")

        @registry.register(JobType.EMBED)
        async def handle_embed(context: JobContext) -> None:
            pass

        await enqueuer.enqueue("images/a.jpg", JobType.HASH)

        # Run 1: HASH succeeds, SAFETY fails once
        await BurstWorker(processor, burst_config).run()
        jobs = await jobs_for("images/a.jpg")
        assert jobs["HASH"].status == JobStatus.SUCCEEDED
        safety = jobs["SAFETY"]
        assert safety.status == JobStatus.PENDING
        assert safety.attempts == 1
        assert "classifier unavailable" in safety.last_error
        first_delay = safety.scheduled_at - safety.updated_at
        assert first_delay == timedelta(seconds=10)

        # Run 2: retry fails again with a longer delay
        await make_due(safety.id)
        await BurstWorker(processor, burst_config).run()
        safety = (await jobs_for("images/a.jpg"))["SAFETY"]
        assert safety.status == JobStatus.PENDING
        assert safety.attempts == 2
        second_delay = safety.scheduled_at - safety.updated_at
        assert second_delay == timedelta(seconds=20)
        assert second_delay > first_delay

        # Run 3: retries exhausted
        await make_due(safety.id)
        await BurstWorker(processor, burst_config).run()
        jobs = await jobs_for("images/a.jpg")
        assert jobs["SAFETY"].status == JobStatus.FAILED
        assert jobs["SAFETY"].attempts == 3
        assert jobs["SAFETY"].finished_at is not None
        assert "EMBED" not in jobs
        assert last_attempt_flags == [False, False, True]

    @pytest.mark.asyncio
    async def test_fatal_error_fails_on_first_attempt(
        self,
        registry: HandlerRegistry,
        processor: JobProcessor,
        enqueuer: Enqueuer,
        burst_config: BurstConfig,
    ):
        """Test FatalJobError skips remaining retries."""

        @registry.register(JobType.HASH)
        async def handle_hash(context: JobContext) -> None:
            raise FatalJobError("not an image")

        await enqueuer.enqueue("images/a.txt", JobType.HASH)
        await BurstWorker(processor, burst_config).run()

        job = (await jobs_for("images/a.txt"))["HASH"]
        assert job.status == JobStatus.FAILED
        assert job.attempts == 1
        assert "not an image" in job.last_error

    @pytest.mark.asyncio
    async def test_unknown_job_type_fails_terminally(
        self,
        db,
        processor: JobProcessor,
        burst_config: BurstConfig,
    ):
        """Test a job whose type matches no stage is not retried."""
        async with get_session_context() as session:
            await JobStore(session).create_job("images/a.jpg", "RESIZE")

        await BurstWorker(processor, burst_config).run()

        job = (await jobs_for("images/a.jpg"))["RESIZE"]
        assert job.status == JobStatus.FAILED
        assert job.attempts == 1
        assert "RESIZE" in job.last_error


class TestBurstLease:
    """Lease handling of the burst worker."""

    @pytest.mark.asyncio
    async def test_lease_busy_exits_without_processing(
        self,
        db,
        registry: HandlerRegistry,
        processor: JobProcessor,
        enqueuer: Enqueuer,
        burst_config: BurstConfig,
    ):
        """Test a burst does nothing while another owner holds the lease."""
        calls = []

        @registry.register(JobType.HASH)
        async def handle_hash(context: JobContext) -> None:
            calls.append(context)

        async with get_session_context() as session:
            lease = LeaseCoordinator(session, burst_config.lease_name)
            assert await lease.try_acquire_lease("other-process", 30.0)

        await enqueuer.enqueue("images/a.jpg", JobType.HASH)

        worker = BurstWorker(processor, burst_config)
        reason = await worker.run()

        assert reason == BurstExit.LEASE_BUSY
        assert calls == []
        assert (await current_lease(burst_config.lease_name)).owner == "other-process"

    @pytest.mark.asyncio
    async def test_lease_released_on_idle_exit(
        self,
        db,
        processor: JobProcessor,
        burst_config: BurstConfig,
    ):
        """Test the lease is released after an empty burst."""
        worker = BurstWorker(processor, burst_config)

        assert await worker.run() == BurstExit.IDLE
        assert worker.state == BurstState.RELEASED
        assert await current_lease(burst_config.lease_name) is None

    @pytest.mark.asyncio
    async def test_idle_exit_waits_for_idle_window(
        self,
        db,
        processor: JobProcessor,
        burst_config: BurstConfig,
    ):
        """Test the burst keeps polling until idle_exit_ms has elapsed."""
        config = replace(burst_config, idle_exit_ms=50)
        worker = BurstWorker(processor, config)

        assert await worker.run() == BurstExit.IDLE

    @pytest.mark.asyncio
    async def test_deadline_exit(
        self,
        registry: HandlerRegistry,
        processor: JobProcessor,
        enqueuer: Enqueuer,
        burst_config: BurstConfig,
    ):
        """Test the burst stops at max_runtime_ms even with work left."""

        @registry.register(JobType.HASH)
        async def handle_hash(context: JobContext) -> None:
            pass

        config = replace(burst_config, max_runtime_ms=0, idle_exit_ms=10_000)
        await enqueuer.enqueue("images/a.jpg", JobType.HASH)

        worker = BurstWorker(processor, config)

        assert await worker.run() == BurstExit.DEADLINE
        assert worker.processed == 0
        assert await current_lease(config.lease_name) is None

    @pytest.mark.asyncio
    async def test_store_error_propagates_after_release(
        self,
        db,
        registry: HandlerRegistry,
        burst_config: BurstConfig,
        backoff,
    ):
        """Test a JobStore failure ends the burst and the lease is still released."""

        class BrokenProcessor(JobProcessor):
            async def claim(self, limit: int):
                raise ConnectionError("database gone")

        worker = BurstWorker(BrokenProcessor(registry, backoff), burst_config)

        with pytest.raises(ConnectionError):
            await worker.run()

        assert worker.state == BurstState.RELEASED
        assert await current_lease(burst_config.lease_name) is None

    @pytest.mark.asyncio
    async def test_lease_loss_tolerated_by_default(
        self,
        registry: HandlerRegistry,
        processor: JobProcessor,
        enqueuer: Enqueuer,
        burst_config: BurstConfig,
    ):
        """Test a burst keeps draining after its lease disappears."""

        @registry.register(JobType.HASH)
        async def handle_hash(context: JobContext) -> None:
            async with get_session_context() as session:
                await session.execute(
                    delete(WorkerLease).where(WorkerLease.name == burst_config.lease_name)
                )

        await enqueuer.enqueue("images/a.jpg", JobType.HASH)
        await enqueuer.enqueue("images/b.jpg", JobType.HASH)

        worker = BurstWorker(processor, burst_config)
        reason = await worker.run()

        assert reason == BurstExit.IDLE
        assert worker.processed == 2
        assert worker.lease_losses >= 1

    @pytest.mark.asyncio
    async def test_lease_loss_aborts_when_configured(
        self,
        registry: HandlerRegistry,
        processor: JobProcessor,
        enqueuer: Enqueuer,
        burst_config: BurstConfig,
    ):
        """Test abort_on_lease_loss stops the burst at the next renewal."""

        @registry.register(JobType.HASH)
        async def handle_hash(context: JobContext) -> None:
            async with get_session_context() as session:
                await session.execute(
                    delete(WorkerLease).where(WorkerLease.name == burst_config.lease_name)
                )

        await enqueuer.enqueue("images/a.jpg", JobType.HASH, priority=10)
        await enqueuer.enqueue("images/b.jpg", JobType.HASH)

        config = replace(burst_config, abort_on_lease_loss=True)
        worker = BurstWorker(processor, config)
        reason = await worker.run()

        assert reason == BurstExit.LEASE_LOST
        assert worker.processed == 1

    @pytest.mark.asyncio
    async def test_heartbeat_keeps_lease_during_slow_handler(
        self,
        registry: HandlerRegistry,
        processor: JobProcessor,
        enqueuer: Enqueuer,
        burst_config: BurstConfig,
    ):
        """Test a handler slower than the ttl does not let another owner take the lease."""
        config = replace(burst_config, lease_ttl_seconds=0.3)
        rival_acquired = []

        @registry.register(JobType.HASH)
        async def handle_hash(context: JobContext) -> None:
            await asyncio.sleep(0.6)
            async with get_session_context() as session:
                lease = LeaseCoordinator(session, config.lease_name)
                rival_acquired.append(await lease.try_acquire_lease("rival", 30.0))

        await enqueuer.enqueue("images/a.jpg", JobType.HASH)

        worker = BurstWorker(processor, config)
        reason = await worker.run()

        assert reason == BurstExit.IDLE
        assert rival_acquired == [False]
        assert worker.lease_losses == 0
        assert await current_lease(config.lease_name) is None

    @pytest.mark.asyncio
    async def test_heartbeat_stopped_on_exit(
        self,
        db,
        processor: JobProcessor,
        burst_config: BurstConfig,
    ):
        worker = BurstWorker(processor, burst_config)

        await worker.run()

        assert worker._heartbeat_task is None

    def test_renew_interval_defaults_to_third_of_ttl(self, burst_config: BurstConfig):
        assert replace(burst_config, lease_ttl_seconds=30.0).renew_interval == 10.0
        assert replace(burst_config, renew_interval_seconds=2.5).renew_interval == 2.5
