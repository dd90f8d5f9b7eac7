"""Cron job query functions for ReleasePilot.

Besides plain CRUD, this module holds the conditional UPDATE statements
behind the per-release lease. Each lease statement touches exactly one
row and reports success through the affected row count, so two holders
racing for the same cron job can never both win.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from releasepilot.database.models.cron_job import CronJob, CronStatus

logger = structlog.get_logger(__name__)


async def create_cron_job(
    session: AsyncSession,
    release_id: UUID,
    cron_config: dict[str, Any] | None = None,
    integrations: list[str] | None = None,
    upcoming_regressions: list[dict[str, Any]] | None = None,
    auto_transition_to_stage2: bool = True,
    auto_transition_to_stage3: bool = False,
    stage_data: dict[str, Any] | None = None,
) -> CronJob:
    """Create the cron job of a release.

    Args:
        session: Active async database session.
        release_id: Owning release.
        cron_config: Optional-task flags.
        integrations: Configured integration kinds.
        upcoming_regressions: Regression slots, each {date, config}.
        auto_transition_to_stage2: Start REGRESSION automatically.
        auto_transition_to_stage3: Start POST_REGRESSION automatically.
        stage_data: Initial stage data.

    Returns:
        The newly created CronJob instance.
    """
    cron_job = CronJob(
        release_id=release_id,
        cron_status=CronStatus.PENDING,
        cron_config=dict(cron_config or {}),
        integrations=list(integrations or []),
        upcoming_regressions=list(upcoming_regressions or []),
        auto_transition_to_stage2=auto_transition_to_stage2,
        auto_transition_to_stage3=auto_transition_to_stage3,
        stage_data=dict(stage_data or {}),
    )
    session.add(cron_job)
    await session.flush()

    logger.info(
        "cron_job_created",
        cron_job_id=str(cron_job.id),
        release_id=str(release_id),
        upcoming_regressions=len(cron_job.upcoming_regressions),
    )
    return cron_job


async def get_cron_job(session: AsyncSession, cron_job_id: UUID) -> CronJob | None:
    """Retrieve a cron job by ID."""
    result = await session.execute(select(CronJob).where(CronJob.id == cron_job_id))
    return result.scalar_one_or_none()


async def get_cron_job_for_release(session: AsyncSession, release_id: UUID) -> CronJob | None:
    """Retrieve the cron job of a release."""
    result = await session.execute(select(CronJob).where(CronJob.release_id == release_id))
    return result.scalar_one_or_none()


async def list_cron_jobs_by_status(
    session: AsyncSession,
    cron_status: CronStatus,
) -> list[CronJob]:
    """List cron jobs with the given overall status, oldest first."""
    stmt = (
        select(CronJob)
        .where(CronJob.cron_status == cron_status)
        .order_by(CronJob.created_at.asc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def try_acquire_lock(
    session: AsyncSession,
    cron_job_id: UUID,
    holder_id: str,
    now: datetime,
    expires_at: datetime,
) -> bool:
    """Atomically take the lease if the row is unlocked or its lease expired.

    Args:
        session: Active async database session.
        cron_job_id: Cron job to lock.
        holder_id: Identity of the new holder.
        now: Current time, used both as acquisition time and expiry cutoff.
        expires_at: Expiry of the new lease.

    Returns:
        True if this holder now owns the lease.
    """
    stmt = (
        update(CronJob)
        .where(
            CronJob.id == cron_job_id,
            or_(
                CronJob.lock_holder.is_(None),
                CronJob.lock_expires_at.is_(None),
                CronJob.lock_expires_at <= now,
            ),
        )
        .values(
            lock_holder=holder_id,
            lock_acquired_at=now,
            lock_expires_at=expires_at,
            version=CronJob.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def renew_lock(
    session: AsyncSession,
    cron_job_id: UUID,
    holder_id: str,
    acquired_at: datetime,
    now: datetime,
    expires_at: datetime,
) -> bool:
    """Extend the unexpired lease ``holder_id`` took at ``acquired_at``."""
    stmt = (
        update(CronJob)
        .where(
            CronJob.id == cron_job_id,
            CronJob.lock_holder == holder_id,
            CronJob.lock_acquired_at == acquired_at,
            CronJob.lock_expires_at > now,
        )
        .values(lock_expires_at=expires_at, version=CronJob.version + 1)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def release_lock(
    session: AsyncSession,
    cron_job_id: UUID,
    holder_id: str,
    acquired_at: datetime,
) -> bool:
    """Clear the lease ``holder_id`` took at ``acquired_at``.

    A lease that expired and was taken again, even by the same holder, is
    a different lease and stays in place.
    """
    stmt = (
        update(CronJob)
        .where(
            CronJob.id == cron_job_id,
            CronJob.lock_holder == holder_id,
            CronJob.lock_acquired_at == acquired_at,
        )
        .values(
            lock_holder=None,
            lock_acquired_at=None,
            lock_expires_at=None,
            version=CronJob.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1
