"""Initial schema for ReleasePilot.

Creates the release orchestration tables: releases, cron_jobs,
regression_cycles, release_tasks, builds, submissions and activity_logs,
plus the enumerated types they share.

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import ENUM, JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Type names match SQLAlchemy's defaults for the mapped enum classes
ENUMS: dict[str, tuple[str, ...]] = {
    "releasetype": ("HOTFIX", "MINOR", "MAJOR"),
    "releasestatus": ("PENDING", "IN_PROGRESS", "PAUSED", "SUBMITTED", "COMPLETED", "ARCHIVED"),
    "releasestage": ("KICKOFF", "REGRESSION", "POST_REGRESSION", "DISTRIBUTION"),
    "platform": ("ANDROID", "IOS", "WEB"),
    "stagestatus": ("PENDING", "IN_PROGRESS", "COMPLETED"),
    "cronstatus": ("PENDING", "RUNNING", "PAUSED", "COMPLETED"),
    "pausetype": ("NONE", "AWAITING_STAGE_TRIGGER", "USER_REQUESTED", "TASK_FAILURE"),
    "cyclestatus": ("NOT_STARTED", "IN_PROGRESS", "DONE", "ABANDONED"),
    "tasktype": (
        "PRE_KICK_OFF_REMINDER", "FORK_BRANCH", "CREATE_PROJECT_MANAGEMENT_TICKET",
        "CREATE_TEST_SUITE", "TRIGGER_PRE_REGRESSION_BUILDS", "RESET_TEST_SUITE",
        "CREATE_RC_TAG", "CREATE_RELEASE_NOTES", "TRIGGER_REGRESSION_BUILDS",
        "TRIGGER_AUTOMATION_RUNS", "AUTOMATION_RUNS", "SEND_REGRESSION_BUILD_MESSAGE",
        "PRE_RELEASE_CHERRY_PICKS_REMINDER", "CREATE_RELEASE_TAG", "CREATE_FINAL_RELEASE_NOTES",
        "TRIGGER_TEST_FLIGHT_BUILD", "CREATE_AAB_BUILD", "SEND_POST_REGRESSION_MESSAGE",
        "CHECK_PROJECT_RELEASE_APPROVAL", "SUBMIT_TO_TARGET",
    ),
    "taskstatus": (
        "PENDING", "IN_PROGRESS", "AWAITING_CALLBACK", "AWAITING_MANUAL_BUILD",
        "COMPLETED", "FAILED", "SKIPPED",
    ),
    "buildstage": ("KICKOFF", "PRE_REGRESSION", "REGRESSION", "PRE_RELEASE"),
    "buildsource": ("CI_CD", "MANUAL"),
    "workflowstatus": ("QUEUED", "RUNNING", "COMPLETED", "FAILED"),
    "submissionstatus": (
        "PENDING", "IN_REVIEW", "APPROVED", "LIVE", "PAUSED", "HALTED", "REJECTED", "CANCELLED",
    ),
}


def enum(name: str) -> ENUM:
    """Column type for an enum created up front in upgrade()."""
    return ENUM(*ENUMS[name], name=name, create_type=False)


def timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    # --sql runs have nothing to inspect
    checkfirst = not op.get_context().as_sql
    for name, values in ENUMS.items():
        ENUM(*values, name=name).create(bind, checkfirst=checkfirst)

    # Releases
    op.create_table(
        "releases",
        sa.Column("id", sa.Uuid(), server_default=sa.text("gen_random_uuid()"), primary_key=True),
        sa.Column("tenant_id", sa.Text(), nullable=False),
        sa.Column("release_key", sa.Text(), nullable=False),
        sa.Column("release_type", enum("releasetype"), nullable=False, server_default="MINOR"),
        sa.Column("status", enum("releasestatus"), nullable=False, server_default="PENDING"),
        sa.Column("current_stage", enum("releasestage"), nullable=False, server_default="KICKOFF"),
        sa.Column("branch", sa.Text(), nullable=True),
        sa.Column("base_branch", sa.Text(), nullable=False, server_default="main"),
        sa.Column("kickoff_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("target_release_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("platform_targets", JSONB(), nullable=False, server_default="[]"),
        sa.Column("release_pilot_id", sa.Text(), nullable=True),
        sa.Column("created_by", sa.Text(), nullable=True),
        sa.Column("has_manual_build_upload", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *timestamps(),
        sa.UniqueConstraint("tenant_id", "release_key", name="uq_releases_tenant_key"),
    )
    op.create_index("idx_releases_status", "releases", ["status"])

    # Cron jobs, one per release
    op.create_table(
        "cron_jobs",
        sa.Column("id", sa.Uuid(), server_default=sa.text("gen_random_uuid()"), primary_key=True),
        sa.Column("release_id", sa.Uuid(), sa.ForeignKey("releases.id"), nullable=False, unique=True),
        sa.Column("stage1_status", enum("stagestatus"), nullable=False, server_default="PENDING"),
        sa.Column("stage2_status", enum("stagestatus"), nullable=False, server_default="PENDING"),
        sa.Column("stage3_status", enum("stagestatus"), nullable=False, server_default="PENDING"),
        sa.Column("stage4_status", enum("stagestatus"), nullable=False, server_default="PENDING"),
        sa.Column("cron_status", enum("cronstatus"), nullable=False, server_default="PENDING"),
        sa.Column("pause_type", enum("pausetype"), nullable=False, server_default="NONE"),
        sa.Column("lock_holder", sa.Text(), nullable=True),
        sa.Column("lock_acquired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lock_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stage_data", JSONB(), nullable=False, server_default="{}"),
        sa.Column("auto_transition_to_stage2", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("auto_transition_to_stage3", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("upcoming_regressions", JSONB(), nullable=False, server_default="[]"),
        sa.Column("cron_config", JSONB(), nullable=False, server_default="{}"),
        sa.Column("integrations", JSONB(), nullable=False, server_default="[]"),
        sa.Column("version", sa.Integer(), nullable=False),
        *timestamps(),
    )
    op.create_index("idx_cron_jobs_cron_status", "cron_jobs", ["cron_status"])

    # Regression cycles
    op.create_table(
        "regression_cycles",
        sa.Column("id", sa.Uuid(), server_default=sa.text("gen_random_uuid()"), primary_key=True),
        sa.Column("release_id", sa.Uuid(), sa.ForeignKey("releases.id"), nullable=False),
        sa.Column("cycle_number", sa.Integer(), nullable=False),
        sa.Column("cycle_tag", sa.Text(), nullable=True),
        sa.Column("status", enum("cyclestatus"), nullable=False, server_default="NOT_STARTED"),
        sa.Column("is_latest", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("slot_config", JSONB(), nullable=False, server_default="{}"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("abandoned_reason", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *timestamps(),
    )
    op.create_index(
        "idx_regression_cycles_release_latest", "regression_cycles", ["release_id", "is_latest"]
    )

    # Release tasks
    op.create_table(
        "release_tasks",
        sa.Column("id", sa.Uuid(), server_default=sa.text("gen_random_uuid()"), primary_key=True),
        sa.Column("release_id", sa.Uuid(), sa.ForeignKey("releases.id"), nullable=False),
        sa.Column("task_type", enum("tasktype"), nullable=False),
        sa.Column("stage", enum("releasestage"), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", enum("taskstatus"), nullable=False, server_default="PENDING"),
        sa.Column("conclusion", sa.Text(), nullable=True),
        sa.Column("external_id", sa.Text(), nullable=True),
        sa.Column("output", JSONB(), nullable=True),
        sa.Column(
            "regression_cycle_id", sa.Uuid(), sa.ForeignKey("regression_cycles.id"), nullable=True
        ),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *timestamps(),
    )
    op.create_index("idx_release_tasks_release_stage", "release_tasks", ["release_id", "stage"])
    op.create_index("idx_release_tasks_cycle", "release_tasks", ["regression_cycle_id"])

    # Builds
    op.create_table(
        "builds",
        sa.Column("id", sa.Uuid(), server_default=sa.text("gen_random_uuid()"), primary_key=True),
        sa.Column("release_id", sa.Uuid(), sa.ForeignKey("releases.id"), nullable=False),
        sa.Column("platform", enum("platform"), nullable=False),
        sa.Column("build_stage", enum("buildstage"), nullable=False),
        sa.Column("source", enum("buildsource"), nullable=False, server_default="CI_CD"),
        sa.Column("artifact_path", sa.Text(), nullable=True),
        sa.Column("testflight_number", sa.Text(), nullable=True),
        sa.Column("internal_track_link", sa.Text(), nullable=True),
        sa.Column("version_code", sa.Text(), nullable=True),
        sa.Column("workflow_status", enum("workflowstatus"), nullable=True),
        sa.Column("job_url", sa.Text(), nullable=True),
        sa.Column("task_id", sa.Uuid(), sa.ForeignKey("release_tasks.id"), nullable=True),
        sa.Column(
            "regression_cycle_id", sa.Uuid(), sa.ForeignKey("regression_cycles.id"), nullable=True
        ),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *timestamps(),
    )
    op.create_index("idx_builds_release_stage", "builds", ["release_id", "build_stage"])
    op.create_index("idx_builds_task", "builds", ["task_id"])

    # Store submissions; one active row per release and platform
    op.create_table(
        "submissions",
        sa.Column("id", sa.Uuid(), server_default=sa.text("gen_random_uuid()"), primary_key=True),
        sa.Column("release_id", sa.Uuid(), sa.ForeignKey("releases.id"), nullable=False),
        sa.Column("platform", enum("platform"), nullable=False),
        sa.Column("status", enum("submissionstatus"), nullable=False, server_default="PENDING"),
        sa.Column("rollout_percentage", sa.Float(), nullable=False, server_default="0"),
        sa.Column("phased_release", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("version_code", sa.Text(), nullable=True),
        sa.Column("build_id", sa.Uuid(), sa.ForeignKey("builds.id"), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("action_history", JSONB(), nullable=False, server_default="[]"),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *timestamps(),
    )
    op.create_index(
        "uq_submissions_active_platform",
        "submissions",
        ["release_id", "platform"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )

    # Append-only audit trail
    op.create_table(
        "activity_logs",
        sa.Column("id", sa.Uuid(), server_default=sa.text("gen_random_uuid()"), primary_key=True),
        sa.Column("release_id", sa.Uuid(), sa.ForeignKey("releases.id"), nullable=False),
        sa.Column("entity_type", sa.Text(), nullable=False),
        sa.Column("entity_id", sa.Text(), nullable=False),
        sa.Column("action", sa.Text(), nullable=False),
        sa.Column("previous_value", JSONB(), nullable=True),
        sa.Column("new_value", JSONB(), nullable=True),
        sa.Column("actor", sa.Text(), nullable=False, server_default="system"),
        sa.Column("details", JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        "idx_activity_logs_release_created", "activity_logs", ["release_id", "created_at"]
    )


def downgrade() -> None:
    op.drop_table("activity_logs")
    op.drop_table("submissions")
    op.drop_table("builds")
    op.drop_table("release_tasks")
    op.drop_table("regression_cycles")
    op.drop_table("cron_jobs")
    op.drop_table("releases")

    bind = op.get_bind()
    checkfirst = not op.get_context().as_sql
    for name in reversed(list(ENUMS)):
        ENUM(name=name).drop(bind, checkfirst=checkfirst)
