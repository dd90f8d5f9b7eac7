"""Activity log query functions for ReleasePilot.

The activity log is append only: this module offers a writer and readers,
never an update or delete.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from releasepilot.database.models.activity_log import ActivityLog

logger = structlog.get_logger(__name__)


async def record_activity(
    session: AsyncSession,
    release_id: UUID,
    entity_type: str,
    entity_id: Any,
    action: str,
    previous_value: dict[str, Any] | None = None,
    new_value: dict[str, Any] | None = None,
    actor: str = "system",
    details: dict[str, Any] | None = None,
) -> ActivityLog:
    """Append an audit entry.

    Args:
        session: Active async database session.
        release_id: Release the change belongs to.
        entity_type: Kind of record that changed.
        entity_id: Identifier of the record that changed.
        action: Snake-case operation name.
        previous_value: State before the change.
        new_value: State after the change.
        actor: Who made the change.
        details: Additional context.

    Returns:
        The persisted ActivityLog entry.
    """
    entry = ActivityLog(
        release_id=release_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        previous_value=previous_value,
        new_value=new_value,
        actor=actor,
        details=details,
    )
    session.add(entry)
    await session.flush()

    logger.debug(
        "activity_recorded",
        release_id=str(release_id),
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor,
    )
    return entry


async def list_activity(
    session: AsyncSession,
    release_id: UUID,
    entity_type: str | None = None,
    action: str | None = None,
    limit: int | None = None,
) -> list[ActivityLog]:
    """List a release's activity entries, oldest first."""
    stmt = select(ActivityLog).where(ActivityLog.release_id == release_id)
    if entity_type is not None:
        stmt = stmt.where(ActivityLog.entity_type == entity_type)
    if action is not None:
        stmt = stmt.where(ActivityLog.action == action)
    stmt = stmt.order_by(ActivityLog.created_at.asc())
    if limit is not None:
        stmt = stmt.limit(limit)

    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_activity(
    session: AsyncSession,
    release_id: UUID,
    action: str | None = None,
) -> int:
    """Count a release's activity entries, optionally for one action."""
    stmt = select(func.count()).select_from(ActivityLog).where(ActivityLog.release_id == release_id)
    if action is not None:
        stmt = stmt.where(ActivityLog.action == action)
    result = await session.execute(stmt)
    return int(result.scalar_one())
