"""
Unit tests for worker leases.
"""

import asyncio
from datetime import timedelta

from sqlalchemy import update

from image_queue.db import LeaseCoordinator, WorkerLease, get_session_context
from image_queue.db.models import utcnow

LEASE = "test-runner"


async def acquire(owner: str, ttl: float = 30.0) -> bool:
    async with get_session_context() as session:
        return await LeaseCoordinator(session, LEASE).try_acquire_lease(owner, ttl)


async def renew(owner: str, ttl: float = 30.0) -> bool:
    async with get_session_context() as session:
        return await LeaseCoordinator(session, LEASE).renew_lease(owner, ttl)


async def release(owner: str) -> None:
    async with get_session_context() as session:
        await LeaseCoordinator(session, LEASE).release_lease(owner)


async def current_lease() -> WorkerLease | None:
    async with get_session_context() as session:
        return await LeaseCoordinator(session, LEASE).get_lease()


async def expire_lease() -> None:
    async with get_session_context() as session:
        await session.execute(
            update(WorkerLease)
            .where(WorkerLease.name == LEASE)
            .values(expires_at=utcnow() - timedelta(seconds=1))
        )


class TestLeaseCoordinator:
    """Tests for LeaseCoordinator."""

    async def test_acquire_free_lease(self, db):
        """Test acquiring a lease nobody holds."""
        assert await acquire("worker-a") is True

        lease = await current_lease()
        assert lease is not None
        assert lease.owner == "worker-a"
        assert lease.expires_at > utcnow()
        assert not lease.is_expired

    async def test_acquire_held_lease_fails(self, db):
        """Test a second owner cannot take an unexpired lease."""
        assert await acquire("worker-a") is True
        assert await acquire("worker-b") is False

        lease = await current_lease()
        assert lease.owner == "worker-a"

    async def test_acquire_expired_lease(self, db):
        """Test an expired lease can be taken over."""
        assert await acquire("worker-a") is True
        await expire_lease()

        assert await acquire("worker-b") is True
        lease = await current_lease()
        assert lease.owner == "worker-b"

    async def test_concurrent_acquire_single_winner(self, db):
        """Test exactly one of several concurrent acquirers wins."""
        results = await asyncio.gather(*(acquire(f"worker-{i}") for i in range(5)))

        assert results.count(True) == 1

    async def test_acquire_after_release(self, db):
        """Test a released lease is free again."""
        assert await acquire("worker-a") is True
        await release("worker-a")

        assert await current_lease() is None
        assert await acquire("worker-b") is True


class TestLeaseRenewal:
    """Tests for renew and release."""

    async def test_renew_extends_expiry(self, db):
        """Test the holder can renew its lease."""
        assert await acquire("worker-a", ttl=5.0) is True
        before = (await current_lease()).expires_at

        assert await renew("worker-a", ttl=60.0) is True

        after = (await current_lease()).expires_at
        assert after > before

    async def test_renew_by_other_owner_fails(self, db):
        """Test only the holder can renew."""
        assert await acquire("worker-a") is True

        assert await renew("worker-b") is False

    async def test_renew_after_expiry_fails(self, db):
        """Test an expired lease cannot be renewed."""
        assert await acquire("worker-a") is True
        await expire_lease()

        assert await renew("worker-a") is False

    async def test_renew_after_takeover_fails(self, db):
        """Test the previous holder cannot renew a lease taken over by another owner."""
        assert await acquire("worker-a") is True
        await expire_lease()
        assert await acquire("worker-b") is True

        assert await renew("worker-a") is False
        assert await renew("worker-b") is True

    async def test_renew_after_release_fails(self, db):
        """Test renewing a deleted lease reports loss."""
        assert await acquire("worker-a") is True
        await release("worker-a")

        assert await renew("worker-a") is False

    async def test_release_by_other_owner_keeps_lease(self, db):
        """Test release only deletes the caller's own lease."""
        assert await acquire("worker-a") is True
        await release("worker-b")

        lease = await current_lease()
        assert lease is not None
        assert lease.owner == "worker-a"

    async def test_release_without_lease(self, db):
        """Test releasing a lease that does not exist is a no-op."""
        await release("worker-a")

        assert await current_lease() is None
