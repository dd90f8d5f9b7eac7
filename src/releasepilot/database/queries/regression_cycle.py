"""Regression cycle query functions for ReleasePilot."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from releasepilot.database.models.regression_cycle import CycleStatus, RegressionCycle

logger = structlog.get_logger(__name__)


async def create_cycle(
    session: AsyncSession,
    release_id: UUID,
    cycle_number: int,
    cycle_tag: str | None,
    scheduled_at: datetime | None = None,
    slot_config: dict[str, Any] | None = None,
) -> RegressionCycle:
    """Create a NOT_STARTED cycle flagged as latest."""
    cycle = RegressionCycle(
        release_id=release_id,
        cycle_number=cycle_number,
        cycle_tag=cycle_tag,
        status=CycleStatus.NOT_STARTED,
        is_latest=True,
        scheduled_at=scheduled_at,
        slot_config=dict(slot_config or {}),
    )
    session.add(cycle)
    await session.flush()

    logger.info(
        "regression_cycle_created",
        cycle_id=str(cycle.id),
        release_id=str(release_id),
        cycle_tag=cycle_tag,
    )
    return cycle


async def get_cycle(session: AsyncSession, cycle_id: UUID) -> RegressionCycle | None:
    """Retrieve a cycle by ID."""
    result = await session.execute(select(RegressionCycle).where(RegressionCycle.id == cycle_id))
    return result.scalar_one_or_none()


async def get_latest_cycle(session: AsyncSession, release_id: UUID) -> RegressionCycle | None:
    """Retrieve the cycle flagged latest for a release."""
    stmt = (
        select(RegressionCycle)
        .where(
            RegressionCycle.release_id == release_id,
            RegressionCycle.is_latest.is_(True),
        )
        .order_by(RegressionCycle.cycle_number.desc())
    )
    result = await session.execute(stmt)
    return result.scalars().first()


async def list_cycles(session: AsyncSession, release_id: UUID) -> list[RegressionCycle]:
    """List a release's cycles in creation order."""
    stmt = (
        select(RegressionCycle)
        .where(RegressionCycle.release_id == release_id)
        .order_by(RegressionCycle.cycle_number.asc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_cycles(session: AsyncSession, release_id: UUID) -> int:
    """Count every cycle ever created for a release."""
    stmt = select(func.count()).select_from(RegressionCycle).where(
        RegressionCycle.release_id == release_id
    )
    result = await session.execute(stmt)
    return int(result.scalar_one())
