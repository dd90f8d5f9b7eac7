"""SQLAlchemy ORM models for ReleasePilot.

This module defines the persisted state of the orchestration core:
releases, cron jobs, release tasks, regression cycles, builds, store
submissions, and the activity log.

All models use SQLAlchemy 2.0 declarative style with Mapped[] type annotations.
"""

from releasepilot.database.models.activity_log import ActivityLog
from releasepilot.database.models.base import Base, TimestampMixin, as_utc, utcnow
from releasepilot.database.models.build import Build, BuildSource, BuildStage, WorkflowStatus
from releasepilot.database.models.cron_job import (
    CronJob,
    CronStatus,
    IntegrationKind,
    PauseType,
    StageStatus,
)
from releasepilot.database.models.regression_cycle import CycleStatus, RegressionCycle
from releasepilot.database.models.release import (
    DistributionTarget,
    Platform,
    Release,
    ReleaseStage,
    ReleaseStatus,
    ReleaseType,
)
from releasepilot.database.models.submission import Submission, SubmissionStatus
from releasepilot.database.models.task import ReleaseTask, TaskStatus, TaskType

__all__ = [
    "Base",
    "TimestampMixin",
    "as_utc",
    "utcnow",
    "ActivityLog",
    "Build",
    "BuildSource",
    "BuildStage",
    "WorkflowStatus",
    "CronJob",
    "CronStatus",
    "IntegrationKind",
    "PauseType",
    "StageStatus",
    "CycleStatus",
    "RegressionCycle",
    "DistributionTarget",
    "Platform",
    "Release",
    "ReleaseStage",
    "ReleaseStatus",
    "ReleaseType",
    "Submission",
    "SubmissionStatus",
    "ReleaseTask",
    "TaskStatus",
    "TaskType",
]
