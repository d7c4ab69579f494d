"""
Named worker leases for cross-process mutual exclusion.
"""

import logging
from datetime import timedelta

from sqlalchemy import and_, delete, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from image_queue.db.models import WorkerLease, utcnow

logger = logging.getLogger(__name__)

DEFAULT_LEASE_NAME = "image-runner"

leases_table = WorkerLease.__table__


class LeaseCoordinator:
    """
    Renewable, time-bounded exclusive claim on a named resource.

    Every check-and-write is a single statement, so for one lease name at
    most one owner holds an unexpired lease at any instant (modulo clock
    skew between application hosts).
    """

    def __init__(self, session: AsyncSession, name: str = DEFAULT_LEASE_NAME):
        """
        Initialize the coordinator.

        Args:
            session: The async database session.
            name: Lease (resource) name.
        """
        self._session = session
        self.name = name

    def _insert(self):
        """Dialect-specific INSERT supporting ON CONFLICT."""
        dialect = self._session.bind.dialect.name
        if dialect == "postgresql":
            return postgresql.insert(leases_table)
        if dialect == "sqlite":
            return sqlite.insert(leases_table)
        raise NotImplementedError(f"Leases are not supported on dialect {dialect!r}")

    async def try_acquire_lease(self, owner: str, ttl_seconds: float) -> bool:
        """
        Take the lease if nobody holds it or the current holder expired.

        Insert-or-replace-if-expired in one statement; never read-then-write.

        Args:
            owner: Opaque identifier of the caller.
            ttl_seconds: Lease duration.

        Returns:
            True if the lease is now held by `owner`, False on contention.
        """
        now = utcnow()
        expires_at = now + timedelta(seconds=ttl_seconds)

        stmt = self._insert().values(
            name=self.name,
            owner=owner,
            expires_at=expires_at,
            heartbeat_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[leases_table.c.name],
            set_={
                "owner": stmt.excluded.owner,
                "expires_at": stmt.excluded.expires_at,
                "heartbeat_at": stmt.excluded.heartbeat_at,
            },
            where=leases_table.c.expires_at <= now,
        )

        result = await self._session.execute(stmt)
        acquired = result.rowcount > 0

        logger.debug(
            "Lease acquire attempted",
            extra={"lease": self.name, "owner": owner, "acquired": acquired},
        )
        return acquired

    async def renew_lease(self, owner: str, ttl_seconds: float) -> bool:
        """
        Extend the lease if `owner` still holds it and it has not expired.

        Args:
            owner: Identifier used at acquisition.
            ttl_seconds: New lease duration from now.

        Returns:
            False if the lease was lost (expired or taken by another owner).
        """
        now = utcnow()
        stmt = (
            update(leases_table)
            .where(
                and_(
                    leases_table.c.name == self.name,
                    leases_table.c.owner == owner,
                    leases_table.c.expires_at > now,
                )
            )
            .values(
                expires_at=now + timedelta(seconds=ttl_seconds),
                heartbeat_at=now,
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def release_lease(self, owner: str) -> None:
        """
        Best-effort delete of the lease held by `owner`.

        Errors are logged and swallowed; the ttl is the fallback.

        Args:
            owner: Identifier used at acquisition.
        """
        try:
            stmt = delete(leases_table).where(
                and_(
                    leases_table.c.name == self.name,
                    leases_table.c.owner == owner,
                )
            )
            await self._session.execute(stmt)
        except Exception:
            logger.exception(
                "Failed to release lease",
                extra={"lease": self.name, "owner": owner},
            )

    async def get_lease(self) -> WorkerLease | None:
        """
        Get the current lease row, expired or not.

        Returns:
            The WorkerLease or None if no row exists.
        """
        stmt = (
            select(WorkerLease)
            .where(WorkerLease.name == self.name)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()
