"""Release task state machine.

This module implements the per-task lifecycle: start, wait for external
input, complete, fail, retry, and skip. Every transition is validated
against ``VALID_TRANSITIONS`` and written to the activity log.

Waiting for external input is a single state with two sources: a CI/CD
callback (AWAITING_CALLBACK) or a human build upload
(AWAITING_MANUAL_BUILD). The source is fixed per release by
``Release.has_manual_build_upload``.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from releasepilot.database.models.base import utcnow
from releasepilot.database.models.task import ReleaseTask, TaskStatus
from releasepilot.database.queries.activity_log import record_activity
from releasepilot.errors import DuplicateCompletionConflict, InvalidTransition
from releasepilot.orchestrator.task_outputs import TaskOutput, validate_output

logger = structlog.get_logger(__name__)


VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.IN_PROGRESS, TaskStatus.SKIPPED, TaskStatus.FAILED},
    TaskStatus.IN_PROGRESS: {
        TaskStatus.AWAITING_CALLBACK,
        TaskStatus.AWAITING_MANUAL_BUILD,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
    },
    TaskStatus.AWAITING_CALLBACK: {TaskStatus.COMPLETED, TaskStatus.FAILED},
    TaskStatus.AWAITING_MANUAL_BUILD: {TaskStatus.COMPLETED, TaskStatus.FAILED},
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: {TaskStatus.PENDING},
    TaskStatus.SKIPPED: set(),
}


def validate_transition(current: TaskStatus, target: TaskStatus) -> bool:
    """Validate if a task state transition is allowed.

    Args:
        current: Current task status.
        target: Target task status.

    Returns:
        True if the transition is valid according to VALID_TRANSITIONS.
    """
    return target in VALID_TRANSITIONS.get(current, set())


def awaiting_status(manual_build_upload: bool) -> TaskStatus:
    """Map the release build mode to its awaiting state."""
    if manual_build_upload:
        return TaskStatus.AWAITING_MANUAL_BUILD
    return TaskStatus.AWAITING_CALLBACK


class TaskLifecycle:
    """Applies validated transitions to ReleaseTask records.

    Methods flush but never commit; the caller owns the transaction.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self.clock = clock
        self.logger = logger.bind(component="TaskLifecycle")

    def _transition(self, task: ReleaseTask, target: TaskStatus, reason: str | None = None) -> TaskStatus:
        current = task.status
        if not validate_transition(current, target):
            raise InvalidTransition("task", current, target, str(task.id), reason=reason)
        task.status = target
        self.logger.info(
            "task_transition",
            task_id=str(task.id),
            task_type=task.task_type.value,
            from_status=current.value,
            to_status=target.value,
        )
        return current

    async def _audit(
        self,
        session: AsyncSession,
        task: ReleaseTask,
        action: str,
        previous: TaskStatus,
        actor: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        await record_activity(
            session,
            release_id=task.release_id,
            entity_type="task",
            entity_id=task.id,
            action=action,
            previous_value={"status": previous.value},
            new_value={"status": task.status.value},
            actor=actor,
            details={"task_type": task.task_type.value, **(details or {})},
        )

    async def start(self, task: ReleaseTask, session: AsyncSession, actor: str = "system") -> ReleaseTask:
        """Move a PENDING task to IN_PROGRESS."""
        previous = self._transition(task, TaskStatus.IN_PROGRESS)
        task.started_at = self.clock()
        await self._audit(session, task, "task_started", previous, actor)
        await session.flush()
        return task

    async def await_external(
        self,
        task: ReleaseTask,
        manual_build_upload: bool,
        session: AsyncSession,
        external_id: str | None = None,
        actor: str = "system",
    ) -> ReleaseTask:
        """Park an IN_PROGRESS task until external input arrives.

        Args:
            task: Task to park.
            manual_build_upload: Release build mode; selects the awaiting state.
            session: Database session for the transaction.
            external_id: Correlation id of the external job, if known.
            actor: Who made the change.

        Returns:
            The updated task.
        """
        previous = self._transition(task, awaiting_status(manual_build_upload))
        if external_id is not None:
            task.external_id = external_id
        await self._audit(
            session, task, "task_awaiting_input", previous, actor,
            {"external_id": task.external_id},
        )
        await session.flush()
        return task

    async def complete(
        self,
        task: ReleaseTask,
        output: TaskOutput | dict[str, Any],
        session: AsyncSession,
        actor: str = "system",
    ) -> bool:
        """Complete a task with its type-specific output.

        A second completion with an identical output is a no-op.

        Args:
            task: Task to complete.
            output: Output payload, validated against the task type.
            session: Database session for the transaction.
            actor: Who made the change.

        Returns:
            True if the task changed, False for an idempotent repeat.

        Raises:
            DuplicateCompletionConflict: If the task is already completed
                with a different output.
            InvalidTransition: If the task is not in a completable state.
            ValidationError: If the output does not match the task type.
        """
        normalized = validate_output(task.task_type, output)

        if task.status == TaskStatus.COMPLETED:
            if task.output == normalized:
                self.logger.debug("task_completion_repeated", task_id=str(task.id))
                return False
            self.logger.warning("task_completion_conflict", task_id=str(task.id))
            raise DuplicateCompletionConflict(str(task.id))

        previous = self._transition(task, TaskStatus.COMPLETED)
        task.output = normalized
        task.completed_at = self.clock()
        await self._audit(session, task, "task_completed", previous, actor, {"output": normalized})
        await session.flush()
        return True

    async def fail(
        self,
        task: ReleaseTask,
        reason: str,
        session: AsyncSession,
        actor: str = "system",
    ) -> ReleaseTask:
        """Mark a task FAILED from any status except COMPLETED or SKIPPED."""
        if task.status == TaskStatus.FAILED:
            return task
        previous = self._transition(task, TaskStatus.FAILED, reason=reason)
        task.conclusion = reason
        await self._audit(session, task, "task_failed", previous, actor, {"reason": reason})
        await session.flush()
        return task

    async def retry(self, task: ReleaseTask, session: AsyncSession, actor: str = "system") -> ReleaseTask:
        """Reset a FAILED task to PENDING and clear its conclusion.

        Raises:
            InvalidTransition: If the task is not FAILED.
        """
        if task.status != TaskStatus.FAILED:
            raise InvalidTransition(
                "task", task.status, TaskStatus.PENDING, str(task.id),
                reason="only failed tasks can be retried",
            )
        previous_conclusion = task.conclusion
        previous = self._transition(task, TaskStatus.PENDING)
        task.conclusion = None
        task.external_id = None
        task.started_at = None
        task.retry_count += 1
        await self._audit(
            session, task, "task_retried", previous, actor,
            {"previous_conclusion": previous_conclusion, "retry_count": task.retry_count},
        )
        await session.flush()
        return task

    async def skip(
        self,
        task: ReleaseTask,
        reason: str,
        session: AsyncSession,
        actor: str = "system",
    ) -> ReleaseTask:
        """Skip a PENDING task that does not apply; SKIPPED is terminal."""
        previous = self._transition(task, TaskStatus.SKIPPED, reason=reason)
        task.conclusion = reason
        task.output = None
        task.completed_at = self.clock()
        await self._audit(session, task, "task_skipped", previous, actor, {"reason": reason})
        await session.flush()
        return task
