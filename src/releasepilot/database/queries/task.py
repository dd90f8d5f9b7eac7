"""Release task query functions for ReleasePilot.

Provides async functions for creating and reading ReleaseTask records in
declared stage order.
"""

from __future__ import annotations

from collections.abc import Iterable
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from releasepilot.database.models.release import ReleaseStage
from releasepilot.database.models.task import ReleaseTask, TaskStatus, TaskType

logger = structlog.get_logger(__name__)


async def create_task(
    session: AsyncSession,
    release_id: UUID,
    task_type: TaskType,
    stage: ReleaseStage,
    sequence: int,
    regression_cycle_id: UUID | None = None,
) -> ReleaseTask:
    """Create a task in PENDING status with no conclusion and no output.

    Args:
        session: Active async database session.
        release_id: Owning release.
        task_type: Task type.
        stage: Stage the task belongs to.
        sequence: Declared order within the stage or cycle.
        regression_cycle_id: Cycle for regression tasks.

    Returns:
        The newly created ReleaseTask instance.
    """
    task = ReleaseTask(
        release_id=release_id,
        task_type=task_type,
        stage=stage,
        sequence=sequence,
        status=TaskStatus.PENDING,
        conclusion=None,
        output=None,
        regression_cycle_id=regression_cycle_id,
        retry_count=0,
    )
    session.add(task)
    await session.flush()

    logger.debug(
        "task_created",
        task_id=str(task.id),
        release_id=str(release_id),
        task_type=task_type.value,
        stage=stage.value,
        sequence=sequence,
    )
    return task


async def get_task(session: AsyncSession, task_id: UUID) -> ReleaseTask | None:
    """Retrieve a task by ID."""
    result = await session.execute(select(ReleaseTask).where(ReleaseTask.id == task_id))
    return result.scalar_one_or_none()


async def list_tasks(
    session: AsyncSession,
    release_id: UUID,
    stage: ReleaseStage | None = None,
    regression_cycle_id: UUID | None = None,
    statuses: Iterable[TaskStatus] | None = None,
) -> list[ReleaseTask]:
    """List a release's tasks in declared order.

    Args:
        session: Active async database session.
        release_id: Owning release.
        stage: Optional stage filter.
        regression_cycle_id: Optional cycle filter.
        statuses: Optional set of statuses to keep.

    Returns:
        Tasks ordered by stage then sequence.
    """
    stmt = select(ReleaseTask).where(ReleaseTask.release_id == release_id)
    if stage is not None:
        stmt = stmt.where(ReleaseTask.stage == stage)
    if regression_cycle_id is not None:
        stmt = stmt.where(ReleaseTask.regression_cycle_id == regression_cycle_id)
    if statuses is not None:
        stmt = stmt.where(ReleaseTask.status.in_(list(statuses)))
    stmt = stmt.order_by(ReleaseTask.sequence.asc())

    result = await session.execute(stmt)
    tasks = list(result.scalars().all())
    # Enum columns sort by name in SQL, so order stages here
    return sorted(tasks, key=lambda t: (t.stage.number, t.sequence))


async def find_task(
    session: AsyncSession,
    release_id: UUID,
    task_types: Iterable[TaskType],
    statuses: Iterable[TaskStatus],
) -> ReleaseTask | None:
    """Return the earliest task of the given types in one of the given statuses."""
    stmt = (
        select(ReleaseTask)
        .where(
            ReleaseTask.release_id == release_id,
            ReleaseTask.task_type.in_(list(task_types)),
            ReleaseTask.status.in_(list(statuses)),
        )
        .order_by(ReleaseTask.sequence.asc())
    )
    result = await session.execute(stmt)
    tasks = list(result.scalars().all())
    if not tasks:
        return None
    return min(tasks, key=lambda t: (t.stage.number, t.sequence))
