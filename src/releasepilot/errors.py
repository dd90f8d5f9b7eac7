"""Domain error taxonomy for ReleasePilot.

Every failure the orchestration core raises is a ReleasePilotError. The web
layer maps each class to an HTTP status through ``status_code``; the cron
orchestrator uses ``audited`` to decide whether a failed state change is
written to the activity log (transient lock contention never is).
"""

from __future__ import annotations

from typing import Any


class ReleasePilotError(Exception):
    """Base class for all domain errors.

    Attributes:
        message: Human-readable description.
        details: Structured context for API responses and logs.
    """

    status_code: int = 400
    audited: bool = True

    def __init__(self, message: str, **details: Any) -> None:
        self.message = message
        self.details = details
        super().__init__(message)

    @property
    def code(self) -> str:
        """Stable error identifier used in API payloads."""
        return type(self).__name__


class ValidationError(ReleasePilotError):
    """Malformed input, such as a rollout percentage outside [0, 100]."""

    status_code = 422


class InvalidTransition(ReleasePilotError):
    """An operation was attempted from a state that does not permit it."""

    status_code = 409

    def __init__(
        self,
        entity: str,
        current: Any,
        target: Any,
        entity_id: str | None = None,
        reason: str | None = None,
    ) -> None:
        self.entity = entity
        self.current = current
        self.target = target
        self.entity_id = entity_id
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        msg = f"Invalid {entity} transition from {current_value} to {target_value}"
        if entity_id:
            msg += f" for {entity} {entity_id}"
        if reason:
            msg += f": {reason}"
        super().__init__(
            msg,
            entity=entity,
            current=current_value,
            target=target_value,
            entity_id=entity_id,
        )


class LockContention(ReleasePilotError):
    """Another holder owns the cron job lease. Retried on the next tick."""

    status_code = 409
    audited = False

    def __init__(self, cron_job_id: str, holder_id: str | None = None) -> None:
        self.cron_job_id = cron_job_id
        self.holder_id = holder_id
        super().__init__(
            f"Cron job {cron_job_id} is locked by another holder",
            cron_job_id=cron_job_id,
            holder_id=holder_id,
        )


class TaskFailure(ReleasePilotError):
    """An external job reported failure; the release is halted until retried."""

    status_code = 409

    def __init__(self, task_id: str, reason: str) -> None:
        self.task_id = task_id
        self.reason = reason
        super().__init__(f"Task {task_id} failed: {reason}", task_id=task_id, reason=reason)


class InvalidPlatformOperation(ReleasePilotError):
    """A rollout action is not supported for the platform or release mode."""

    status_code = 400

    def __init__(self, platform: Any, action: str, reason: str) -> None:
        self.platform = platform
        self.action = action
        platform_value = getattr(platform, "value", platform)
        super().__init__(
            f"{action} is not permitted on {platform_value}: {reason}",
            platform=platform_value,
            action=action,
        )


class DuplicateCompletionConflict(ReleasePilotError):
    """A completed task received a second completion with a different output."""

    status_code = 409

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(
            f"Task {task_id} is already completed with a different output",
            task_id=task_id,
        )


class NotFound(ReleasePilotError):
    """The referenced record does not exist."""

    status_code = 404
    audited = False

    def __init__(self, entity: str, entity_id: Any) -> None:
        self.entity = entity
        self.entity_id = str(entity_id)
        super().__init__(f"{entity} {entity_id} not found", entity=entity, entity_id=str(entity_id))


class Forbidden(ReleasePilotError):
    """The actor's role does not permit the operation."""

    status_code = 403


class CycleAlreadyActive(ReleasePilotError):
    """A regression cycle is already NOT_STARTED or IN_PROGRESS."""

    status_code = 409

    def __init__(self, release_id: str, cycle_id: str) -> None:
        self.release_id = release_id
        self.cycle_id = cycle_id
        super().__init__(
            f"Release {release_id} already has an active regression cycle {cycle_id}",
            release_id=release_id,
            cycle_id=cycle_id,
        )
