"""Task output payload models.

A task's output shape is determined solely by its task type. Each task
type maps to one pydantic model in ``TASK_OUTPUT_MODELS``; completing a
task validates the submitted payload against that model and stores the
normalized JSON form.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from releasepilot.database.models.release import Platform
from releasepilot.database.models.task import TaskType
from releasepilot.errors import ValidationError


class TaskOutput(BaseModel):
    """Base class for task output payloads."""

    model_config = ConfigDict(extra="forbid")


class NotificationOutput(TaskOutput):
    """Reminders and release messages."""

    channel: str | None = None
    message_id: str | None = None
    recipients: list[str] = Field(default_factory=list)


class ForkBranchOutput(TaskOutput):
    branch_name: str = Field(..., min_length=1)
    base_branch: str | None = None
    branch_url: str | None = None


class TicketOutput(TaskOutput):
    ticket_id: str = Field(..., min_length=1)
    ticket_url: str | None = None


class TestSuiteOutput(TaskOutput):
    test_suite_id: str = Field(..., min_length=1)
    test_suite_url: str | None = None


class BuildReference(BaseModel):
    """One platform build consumed by a build task."""

    model_config = ConfigDict(extra="forbid")

    platform: Platform
    build_id: str
    artifact_path: str | None = None
    job_url: str | None = None
    testflight_number: str | None = None
    internal_track_link: str | None = None


class BuildTaskOutput(TaskOutput):
    builds: list[BuildReference] = Field(..., min_length=1)


class TagOutput(TaskOutput):
    tag_name: str = Field(..., min_length=1)
    tag_url: str | None = None


class ReleaseNotesOutput(TaskOutput):
    tag_name: str | None = None
    notes_url: str | None = None
    notes: str | None = None


class AutomationRunOutput(TaskOutput):
    run_ids: list[str] = Field(default_factory=list)
    passed: bool | None = None


class ApprovalCheckOutput(TaskOutput):
    approved: bool
    ticket_id: str | None = None


class SubmissionReference(BaseModel):
    """One store submission opened by the distribution stage."""

    model_config = ConfigDict(extra="forbid")

    platform: Platform
    target: str
    submission_id: str | None = None


class SubmitToTargetOutput(TaskOutput):
    submissions: list[SubmissionReference] = Field(default_factory=list)


TASK_OUTPUT_MODELS: dict[TaskType, type[TaskOutput]] = {
    TaskType.PRE_KICK_OFF_REMINDER: NotificationOutput,
    TaskType.FORK_BRANCH: ForkBranchOutput,
    TaskType.CREATE_PROJECT_MANAGEMENT_TICKET: TicketOutput,
    TaskType.CREATE_TEST_SUITE: TestSuiteOutput,
    TaskType.TRIGGER_PRE_REGRESSION_BUILDS: BuildTaskOutput,
    TaskType.RESET_TEST_SUITE: TestSuiteOutput,
    TaskType.CREATE_RC_TAG: TagOutput,
    TaskType.CREATE_RELEASE_NOTES: ReleaseNotesOutput,
    TaskType.TRIGGER_REGRESSION_BUILDS: BuildTaskOutput,
    TaskType.TRIGGER_AUTOMATION_RUNS: AutomationRunOutput,
    TaskType.AUTOMATION_RUNS: AutomationRunOutput,
    TaskType.SEND_REGRESSION_BUILD_MESSAGE: NotificationOutput,
    TaskType.PRE_RELEASE_CHERRY_PICKS_REMINDER: NotificationOutput,
    TaskType.CREATE_RELEASE_TAG: TagOutput,
    TaskType.CREATE_FINAL_RELEASE_NOTES: ReleaseNotesOutput,
    TaskType.TRIGGER_TEST_FLIGHT_BUILD: BuildTaskOutput,
    TaskType.CREATE_AAB_BUILD: BuildTaskOutput,
    TaskType.SEND_POST_REGRESSION_MESSAGE: NotificationOutput,
    TaskType.CHECK_PROJECT_RELEASE_APPROVAL: ApprovalCheckOutput,
    TaskType.SUBMIT_TO_TARGET: SubmitToTargetOutput,
}


def validate_output(task_type: TaskType, output: TaskOutput | dict[str, Any]) -> dict[str, Any]:
    """Validate an output payload for a task type and return its JSON form.

    Args:
        task_type: Type of the task being completed.
        output: Payload as a model instance or a plain dict.

    Returns:
        The normalized payload, suitable for the JSON output column.

    Raises:
        ValidationError: If the payload does not match the task type's model.
    """
    model = TASK_OUTPUT_MODELS[task_type]
    if isinstance(output, TaskOutput) and not isinstance(output, model):
        raise ValidationError(
            f"{type(output).__name__} is not a valid output for {task_type.value}",
            task_type=task_type.value,
        )
    try:
        parsed = model.model_validate(
            output.model_dump() if isinstance(output, TaskOutput) else output
        )
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Invalid output for {task_type.value}",
            task_type=task_type.value,
            errors=[
                {"loc": [str(part) for part in err["loc"]], "msg": err["msg"]}
                for err in exc.errors()
            ],
        ) from exc
    return parsed.model_dump(mode="json")
