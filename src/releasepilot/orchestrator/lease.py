"""Per-release lease over the CronJob row.

A lease is the only mutual-exclusion primitive of the orchestrator. It is
acquired with a single conditional UPDATE that succeeds when the row is
unlocked or the previous lease has expired, and committed on its own so
other holders observe it immediately. Contention never blocks: the caller
gets LockContention and tries again on the next tick.

Expiry is a pure function of the stored expiry time and the current time;
there is no background reaper.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from releasepilot.database.models.base import as_utc, utcnow
from releasepilot.database.models.cron_job import CronJob
from releasepilot.database.queries.cron_job import release_lock, renew_lock, try_acquire_lock
from releasepilot.errors import LockContention

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Lease:
    """Token proving exclusive, time-bounded ownership of a cron job.

    Attributes:
        cron_job_id: Locked cron job.
        holder_id: Identity of the owner.
        acquired_at: When the lease was taken.
        expires_at: When the lease becomes reclaimable.
    """

    cron_job_id: UUID
    holder_id: str
    acquired_at: datetime
    expires_at: datetime

    def is_valid(self, now: datetime) -> bool:
        return not lease_expired(self.expires_at, now)


def lease_expired(expires_at: datetime | None, now: datetime) -> bool:
    """Whether a lease expiring at ``expires_at`` is reclaimable at ``now``.

    A missing expiry counts as expired.
    """
    if expires_at is None:
        return True
    return as_utc(expires_at) <= as_utc(now)


def ensure_lease(lease: Lease, cron_job: CronJob, now: datetime) -> None:
    """Raise LockContention unless ``lease`` still owns ``cron_job``.

    Called before an orchestrator pass commits its changes.
    """
    if cron_job.id != lease.cron_job_id:
        raise LockContention(str(cron_job.id), cron_job.lock_holder)
    if cron_job.lock_holder != lease.holder_id or lease_expired(cron_job.lock_expires_at, now):
        raise LockContention(str(cron_job.id), cron_job.lock_holder)
    # Same holder, newer lease
    if as_utc(cron_job.lock_acquired_at) != as_utc(lease.acquired_at):
        raise LockContention(str(cron_job.id), cron_job.lock_holder)


class LeaseManager:
    """Acquires, renews and releases cron job leases.

    Each call runs in its own short transaction so the lease row is never
    held open across an orchestrator pass.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        timeout_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.timeout_seconds = timeout_seconds
        self.clock = clock
        self.logger = logger.bind(component="LeaseManager")

    async def acquire(
        self,
        cron_job_id: UUID,
        holder_id: str,
        timeout_seconds: int | None = None,
    ) -> Lease:
        """Acquire the lease of a cron job.

        Args:
            cron_job_id: Cron job to lock.
            holder_id: Identity of the caller.
            timeout_seconds: Lease duration; defaults to the manager timeout.

        Returns:
            The acquired Lease.

        Raises:
            LockContention: If another holder owns an unexpired lease.
        """
        now = self.clock()
        expires_at = now + timedelta(seconds=timeout_seconds or self.timeout_seconds)

        async with self.session_factory() as session, session.begin():
            acquired = await try_acquire_lock(session, cron_job_id, holder_id, now, expires_at)

        if not acquired:
            self.logger.debug("lease_contended", cron_job_id=str(cron_job_id), holder_id=holder_id)
            raise LockContention(str(cron_job_id))

        self.logger.debug(
            "lease_acquired",
            cron_job_id=str(cron_job_id),
            holder_id=holder_id,
            expires_at=expires_at.isoformat(),
        )
        return Lease(
            cron_job_id=cron_job_id,
            holder_id=holder_id,
            acquired_at=now,
            expires_at=expires_at,
        )

    async def renew(self, lease: Lease, timeout_seconds: int | None = None) -> Lease:
        """Extend an unexpired lease.

        Raises:
            LockContention: If the lease expired or was reclaimed.
        """
        now = self.clock()
        expires_at = now + timedelta(seconds=timeout_seconds or self.timeout_seconds)

        async with self.session_factory() as session, session.begin():
            renewed = await renew_lock(
                session, lease.cron_job_id, lease.holder_id, lease.acquired_at, now, expires_at
            )

        if not renewed:
            raise LockContention(str(lease.cron_job_id), lease.holder_id)
        return replace(lease, expires_at=expires_at)

    async def release(self, lease: Lease) -> bool:
        """Release a lease. Returns False if it was already reclaimed."""
        async with self.session_factory() as session, session.begin():
            released = await release_lock(session, lease.cron_job_id, lease.holder_id, lease.acquired_at)

        if not released:
            self.logger.warning(
                "lease_release_missed",
                cron_job_id=str(lease.cron_job_id),
                holder_id=lease.holder_id,
            )
        return released

    @asynccontextmanager
    async def hold(self, cron_job_id: UUID, holder_id: str) -> AsyncIterator[Lease]:
        """Acquire a lease for the duration of the block, then release it."""
        lease = await self.acquire(cron_job_id, holder_id)
        try:
            yield lease
        finally:
            await self.release(lease)
