"""Release query functions for ReleasePilot."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from releasepilot.database.models.release import (
    Release,
    ReleaseStage,
    ReleaseStatus,
    ReleaseType,
)

logger = structlog.get_logger(__name__)


async def create_release(
    session: AsyncSession,
    tenant_id: str,
    release_key: str,
    release_type: ReleaseType,
    platform_targets: list[dict[str, Any]],
    base_branch: str = "main",
    branch: str | None = None,
    kickoff_date: datetime | None = None,
    target_release_date: datetime | None = None,
    release_pilot_id: str | None = None,
    created_by: str | None = None,
    has_manual_build_upload: bool = False,
) -> Release:
    """Create a new release in PENDING status.

    Args:
        session: Active async database session.
        tenant_id: Owning tenant.
        release_key: User-facing key, unique per tenant.
        release_type: HOTFIX, MINOR or MAJOR.
        platform_targets: List of {platform, target, version} mappings.
        base_branch: Branch to fork from.
        branch: Release branch name; derived by the fork task when None.
        kickoff_date: Planned kickoff time.
        target_release_date: Planned store release date.
        release_pilot_id: User steering the release.
        created_by: Requesting user.
        has_manual_build_upload: Release-scoped build mode.

    Returns:
        The newly created Release instance.
    """
    release = Release(
        tenant_id=tenant_id,
        release_key=release_key,
        release_type=release_type,
        status=ReleaseStatus.PENDING,
        current_stage=ReleaseStage.KICKOFF,
        platform_targets=list(platform_targets),
        base_branch=base_branch,
        branch=branch,
        kickoff_date=kickoff_date,
        target_release_date=target_release_date,
        release_pilot_id=release_pilot_id,
        created_by=created_by,
        has_manual_build_upload=has_manual_build_upload,
    )
    session.add(release)
    await session.flush()

    logger.info(
        "release_created",
        release_id=str(release.id),
        tenant_id=tenant_id,
        release_key=release_key,
        release_type=release_type.value,
    )
    return release


async def get_release(session: AsyncSession, release_id: UUID) -> Release | None:
    """Retrieve a release by ID."""
    result = await session.execute(select(Release).where(Release.id == release_id))
    return result.scalar_one_or_none()


async def get_release_by_key(
    session: AsyncSession,
    tenant_id: str,
    release_key: str,
) -> Release | None:
    """Retrieve a release by its tenant-scoped key."""
    stmt = select(Release).where(
        Release.tenant_id == tenant_id,
        Release.release_key == release_key,
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_releases(
    session: AsyncSession,
    tenant_id: str | None = None,
    status_filter: ReleaseStatus | None = None,
    include_archived: bool = True,
) -> list[Release]:
    """List releases, newest first.

    Args:
        session: Active async database session.
        tenant_id: Optional tenant to filter by.
        status_filter: Optional status to filter by.
        include_archived: When False, ARCHIVED releases are excluded.

    Returns:
        List of Release instances.
    """
    stmt = select(Release)
    if tenant_id is not None:
        stmt = stmt.where(Release.tenant_id == tenant_id)
    if status_filter is not None:
        stmt = stmt.where(Release.status == status_filter)
    if not include_archived:
        stmt = stmt.where(Release.status != ReleaseStatus.ARCHIVED)
    stmt = stmt.order_by(Release.created_at.desc())

    result = await session.execute(stmt)
    return list(result.scalars().all())
