"""Build query functions for ReleasePilot."""

from __future__ import annotations

from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from releasepilot.database.models.build import (
    Build,
    BuildSource,
    BuildStage,
    WorkflowStatus,
)
from releasepilot.database.models.release import Platform

logger = structlog.get_logger(__name__)


async def create_build(
    session: AsyncSession,
    release_id: UUID,
    platform: Platform,
    build_stage: BuildStage,
    source: BuildSource,
    artifact_path: str | None = None,
    testflight_number: str | None = None,
    internal_track_link: str | None = None,
    version_code: str | None = None,
    workflow_status: WorkflowStatus | None = None,
    job_url: str | None = None,
    regression_cycle_id: UUID | None = None,
) -> Build:
    """Create a staged (unconsumed) build record."""
    build = Build(
        release_id=release_id,
        platform=platform,
        build_stage=build_stage,
        source=source,
        artifact_path=artifact_path,
        testflight_number=testflight_number,
        internal_track_link=internal_track_link,
        version_code=version_code,
        workflow_status=workflow_status,
        job_url=job_url,
        regression_cycle_id=regression_cycle_id,
    )
    session.add(build)
    await session.flush()

    logger.info(
        "build_created",
        build_id=str(build.id),
        release_id=str(release_id),
        platform=platform.value,
        build_stage=build_stage.value,
        source=source.value,
    )
    return build


async def get_build(session: AsyncSession, build_id: UUID) -> Build | None:
    """Retrieve a build by ID."""
    result = await session.execute(select(Build).where(Build.id == build_id))
    return result.scalar_one_or_none()


async def list_builds(
    session: AsyncSession,
    release_id: UUID,
    build_stage: BuildStage | None = None,
    platform: Platform | None = None,
    task_id: UUID | None = None,
    staged_only: bool = False,
) -> list[Build]:
    """List a release's builds, oldest first, with optional filters."""
    stmt = select(Build).where(Build.release_id == release_id)
    if build_stage is not None:
        stmt = stmt.where(Build.build_stage == build_stage)
    if platform is not None:
        stmt = stmt.where(Build.platform == platform)
    if task_id is not None:
        stmt = stmt.where(Build.task_id == task_id)
    if staged_only:
        stmt = stmt.where(Build.task_id.is_(None))
    stmt = stmt.order_by(Build.created_at.asc())

    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_build_by_job_url(session: AsyncSession, release_id: UUID, job_url: str) -> Build | None:
    """Retrieve the build reported by a CI/CD job, if already recorded."""
    stmt = select(Build).where(Build.release_id == release_id, Build.job_url == job_url)
    result = await session.execute(stmt)
    return result.scalars().first()
