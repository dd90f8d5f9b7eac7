"""Store submission query functions for ReleasePilot."""

from __future__ import annotations

from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from releasepilot.database.models.release import Platform
from releasepilot.database.models.submission import Submission, SubmissionStatus

logger = structlog.get_logger(__name__)


async def create_submission(
    session: AsyncSession,
    release_id: UUID,
    platform: Platform,
    phased_release: bool = False,
    version_code: str | None = None,
    build_id: UUID | None = None,
) -> Submission:
    """Create an active PENDING submission at 0% rollout."""
    submission = Submission(
        release_id=release_id,
        platform=platform,
        status=SubmissionStatus.PENDING,
        rollout_percentage=0.0,
        phased_release=phased_release,
        version_code=version_code,
        build_id=build_id,
        is_active=True,
        action_history=[],
    )
    session.add(submission)
    await session.flush()

    logger.info(
        "submission_created",
        submission_id=str(submission.id),
        release_id=str(release_id),
        platform=platform.value,
        phased_release=phased_release,
    )
    return submission


async def get_submission(session: AsyncSession, submission_id: UUID) -> Submission | None:
    """Retrieve a submission by ID."""
    result = await session.execute(select(Submission).where(Submission.id == submission_id))
    return result.scalar_one_or_none()


async def get_active_submission(
    session: AsyncSession,
    release_id: UUID,
    platform: Platform,
) -> Submission | None:
    """Retrieve the active submission of a (release, platform) pair."""
    stmt = select(Submission).where(
        Submission.release_id == release_id,
        Submission.platform == platform,
        Submission.is_active.is_(True),
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_submissions(
    session: AsyncSession,
    release_id: UUID,
    active_only: bool = False,
) -> list[Submission]:
    """List a release's submissions, oldest first."""
    stmt = select(Submission).where(Submission.release_id == release_id)
    if active_only:
        stmt = stmt.where(Submission.is_active.is_(True))
    stmt = stmt.order_by(Submission.created_at.asc())

    result = await session.execute(stmt)
    return list(result.scalars().all())
