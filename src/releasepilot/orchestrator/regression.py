"""Regression cycle management.

Regression runs as a sequence of cycles inside the REGRESSION stage. The
manager starts, completes, abandons and activates cycles and consumes the
scheduled regression slots stored on the cron job. A slot is a dict of
the form ``{"date": <ISO-8601>, "config": {...}}``; slots are consumed
earliest first, and consuming one creates a new latest cycle while
demoting the previous one.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from releasepilot.database.models.base import as_utc, utcnow
from releasepilot.database.models.cron_job import CronJob
from releasepilot.database.models.regression_cycle import CycleStatus, RegressionCycle
from releasepilot.database.models.release import Release, ReleaseStage
from releasepilot.database.models.task import ReleaseTask, TaskStatus
from releasepilot.database.queries.activity_log import record_activity
from releasepilot.database.queries.regression_cycle import (
    count_cycles,
    create_cycle,
    get_cycle,
    get_latest_cycle,
)
from releasepilot.database.queries.task import list_tasks
from releasepilot.errors import CycleAlreadyActive, InvalidTransition, ValidationError
from releasepilot.orchestrator.task_catalog import create_stage_tasks
from releasepilot.orchestrator.task_lifecycle import TaskLifecycle

logger = structlog.get_logger(__name__)


def parse_slot_date(slot: dict[str, Any]) -> datetime:
    """Return the aware UTC start time of a regression slot.

    Raises:
        ValidationError: If the slot has no parseable date.
    """
    raw = slot.get("date")
    if isinstance(raw, datetime):
        return as_utc(raw)
    try:
        return as_utc(datetime.fromisoformat(str(raw)))
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid regression slot date: {raw!r}") from exc


def sorted_slots(slots: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
    """Order regression slots by start time."""
    return sorted(slots or [], key=parse_slot_date)


def cycle_tag(cycle_number: int) -> str:
    return f"RC{cycle_number}"


class RegressionCycleManager:
    """Owns the regression cycle lifecycle of a release.

    Methods flush but never commit; the caller owns the transaction.
    """

    def __init__(
        self,
        lifecycle: TaskLifecycle | None = None,
        clock: Callable[[], datetime] = utcnow,
        slot_window_seconds: int = 60,
    ) -> None:
        self.lifecycle = lifecycle or TaskLifecycle(clock=clock)
        self.clock = clock
        self.slot_window = timedelta(seconds=slot_window_seconds)
        self.logger = logger.bind(component="RegressionCycleManager")

    async def start_cycle(
        self,
        session: AsyncSession,
        release: Release,
        cron_job: CronJob,
        scheduled_at: datetime | None = None,
        slot_config: dict[str, Any] | None = None,
        actor: str = "system",
    ) -> RegressionCycle:
        """Create a new latest cycle with its tasks.

        The cycle starts IN_PROGRESS unless it is scheduled beyond the slot
        window, in which case it waits as NOT_STARTED.

        Raises:
            CycleAlreadyActive: If the latest cycle is NOT_STARTED or IN_PROGRESS.
        """
        latest = await get_latest_cycle(session, release.id)
        if latest is not None and latest.status.is_active:
            raise CycleAlreadyActive(str(release.id), str(latest.id))
        if latest is not None:
            latest.is_latest = False

        number = await count_cycles(session, release.id) + 1
        cycle = await create_cycle(
            session,
            release_id=release.id,
            cycle_number=number,
            cycle_tag=cycle_tag(number),
            scheduled_at=scheduled_at,
            slot_config=slot_config,
        )

        now = self.clock()
        if scheduled_at is None or as_utc(scheduled_at) <= now + self.slot_window:
            cycle.status = CycleStatus.IN_PROGRESS
            cycle.started_at = now

        await create_stage_tasks(
            session, self.lifecycle, release, cron_job, ReleaseStage.REGRESSION, cycle
        )
        await record_activity(
            session,
            release_id=release.id,
            entity_type="regression_cycle",
            entity_id=cycle.id,
            action="regression_cycle_created",
            previous_value={"latest_cycle_id": str(latest.id)} if latest is not None else None,
            new_value={"status": cycle.status.value, "cycle_tag": cycle.cycle_tag},
            actor=actor,
            details={"scheduled_at": scheduled_at.isoformat() if scheduled_at else None},
        )
        await session.flush()

        self.logger.info(
            "regression_cycle_started",
            release_id=str(release.id),
            cycle_id=str(cycle.id),
            cycle_tag=cycle.cycle_tag,
            status=cycle.status.value,
        )
        return cycle

    async def complete_cycle(
        self,
        session: AsyncSession,
        release: Release,
        cron_job: CronJob,
        cycle: RegressionCycle,
        actor: str = "system",
    ) -> RegressionCycle | None:
        """Mark an IN_PROGRESS cycle DONE and consume the next slot if any.

        Returns:
            The newly created cycle when a slot was consumed, otherwise None
            (the cycle stays latest and the stage may advance).

        Raises:
            InvalidTransition: If the cycle is not IN_PROGRESS.
        """
        if cycle.status != CycleStatus.IN_PROGRESS:
            raise InvalidTransition(
                "regression_cycle", cycle.status, CycleStatus.DONE, str(cycle.id)
            )

        cycle.status = CycleStatus.DONE
        cycle.completed_at = self.clock()
        await record_activity(
            session,
            release_id=release.id,
            entity_type="regression_cycle",
            entity_id=cycle.id,
            action="regression_cycle_completed",
            previous_value={"status": CycleStatus.IN_PROGRESS.value},
            new_value={"status": CycleStatus.DONE.value},
            actor=actor,
        )
        self.logger.info(
            "regression_cycle_completed",
            release_id=str(release.id),
            cycle_id=str(cycle.id),
            remaining_slots=len(cron_job.upcoming_regressions or []),
        )

        if not cron_job.upcoming_regressions:
            await session.flush()
            return None
        return await self._consume_next_slot(session, release, cron_job, actor)

    async def abandon_cycle(
        self,
        session: AsyncSession,
        release: Release,
        cycle: RegressionCycle,
        reason: str,
        actor: str = "system",
    ) -> RegressionCycle:
        """Discard a NOT_STARTED or IN_PROGRESS cycle and skip its pending tasks.

        Raises:
            ValidationError: If no reason is given.
            InvalidTransition: If the cycle is already finished.
        """
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to abandon a regression cycle")
        if not cycle.status.is_active:
            raise InvalidTransition(
                "regression_cycle", cycle.status, CycleStatus.ABANDONED, str(cycle.id)
            )

        previous = cycle.status
        cycle.status = CycleStatus.ABANDONED
        cycle.completed_at = self.clock()
        cycle.abandoned_reason = reason

        tasks = await list_tasks(
            session, release.id, regression_cycle_id=cycle.id, statuses=[TaskStatus.PENDING]
        )
        for task in tasks:
            await self.lifecycle.skip(task, f"cycle abandoned: {reason}", session, actor=actor)

        await record_activity(
            session,
            release_id=release.id,
            entity_type="regression_cycle",
            entity_id=cycle.id,
            action="regression_cycle_abandoned",
            previous_value={"status": previous.value},
            new_value={"status": CycleStatus.ABANDONED.value},
            actor=actor,
            details={"reason": reason, "skipped_tasks": len(tasks)},
        )
        await session.flush()
        self.logger.info("regression_cycle_abandoned", cycle_id=str(cycle.id), reason=reason)
        return cycle

    async def activate_due_cycle(
        self,
        session: AsyncSession,
        release: Release,
        cron_job: CronJob,
    ) -> RegressionCycle | None:
        """Bring the latest cycle up to date with the clock.

        Starts a NOT_STARTED latest cycle whose scheduled time is due, and
        consumes the earliest due slot when no cycle is active. When the
        stage has no cycle and no slots at all, an immediate cycle starts.

        Returns:
            The latest cycle after activation, or None if none exists yet.
        """
        latest = await get_latest_cycle(session, release.id)
        now = self.clock()

        if latest is not None and latest.status == CycleStatus.NOT_STARTED:
            if latest.scheduled_at is None or as_utc(latest.scheduled_at) <= now + self.slot_window:
                latest.status = CycleStatus.IN_PROGRESS
                latest.started_at = now
                await record_activity(
                    session,
                    release_id=release.id,
                    entity_type="regression_cycle",
                    entity_id=latest.id,
                    action="regression_cycle_activated",
                    previous_value={"status": CycleStatus.NOT_STARTED.value},
                    new_value={"status": CycleStatus.IN_PROGRESS.value},
                )
                await session.flush()
            return latest

        if latest is not None and latest.status == CycleStatus.IN_PROGRESS:
            return latest

        slots = sorted_slots(cron_job.upcoming_regressions)
        if latest is None and not slots:
            return await self.start_cycle(session, release, cron_job)
        if slots and parse_slot_date(slots[0]) <= now + self.slot_window:
            return await self._consume_next_slot(session, release, cron_job, "system")
        return latest

    async def get_mutable_cycle(self, session: AsyncSession, task: ReleaseTask) -> RegressionCycle | None:
        """Return the task's cycle, rejecting activity on immutable cycles.

        Raises:
            InvalidTransition: If the cycle is finished or no longer latest.
        """
        if task.regression_cycle_id is None:
            return None
        cycle = await get_cycle(session, task.regression_cycle_id)
        if cycle is None:
            return None
        if cycle.status.is_finished or not cycle.is_latest:
            raise InvalidTransition(
                "task", task.status, "updated", str(task.id),
                reason=f"regression cycle {cycle.cycle_tag} is {cycle.status.value.lower()}"
                + ("" if cycle.is_latest else " and superseded"),
            )
        return cycle

    def stage_complete(self, latest: RegressionCycle | None, cron_job: CronJob) -> bool:
        """Whether the REGRESSION stage has nothing left to run."""
        if latest is None or latest.status != CycleStatus.DONE:
            return False
        return not cron_job.upcoming_regressions

    async def _consume_next_slot(
        self,
        session: AsyncSession,
        release: Release,
        cron_job: CronJob,
        actor: str,
    ) -> RegressionCycle:
        slots = sorted_slots(cron_job.upcoming_regressions)
        slot, remaining = slots[0], slots[1:]
        # Reassign so the JSON column change is tracked
        cron_job.upcoming_regressions = remaining
        self.logger.info(
            "regression_slot_consumed",
            release_id=str(release.id),
            slot_date=slot.get("date"),
            remaining_slots=len(remaining),
        )
        return await self.start_cycle(
            session,
            release,
            cron_job,
            scheduled_at=parse_slot_date(slot),
            slot_config=slot.get("config") or {},
            actor=actor,
        )
