"""Approval gate for stage transitions.

Two checks live here:

- ``evaluate_approval`` decides whether REGRESSION may hand over to
  POST_REGRESSION. It needs three independent requirements to hold: the
  test run passed its threshold, no cherry-picks are pending, and no
  regression cycle is active or scheduled.
- ``check_promotion_readiness`` answers "can this release go to
  distribution" with a list of issues, each ERROR or WARNING. Only ERROR
  issues block.

External signals (test management results, cherry-pick drift, project
management approval) are read through a ``ReleaseSignals`` provider so a
host can plug in live integrations. The default provider reads them from
``CronJob.stage_data``.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Protocol

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from releasepilot.actors import Actor
from releasepilot.database.models.build import BuildStage
from releasepilot.database.models.cron_job import CronJob, IntegrationKind, StageStatus
from releasepilot.database.models.release import Platform, Release, ReleaseStage
from releasepilot.database.queries.build import list_builds
from releasepilot.database.queries.regression_cycle import get_latest_cycle
from releasepilot.errors import Forbidden

logger = structlog.get_logger(__name__)

STORE_PLATFORMS = (Platform.ANDROID, Platform.IOS)


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------


class ReleaseSignals(Protocol):
    """Source of external approval signals for a release."""

    async def test_run_passed(self, release: Release, cron_job: CronJob) -> bool: ...

    async def pending_cherry_picks(self, release: Release, cron_job: CronJob) -> int: ...

    async def project_release_approved(self, release: Release, cron_job: CronJob) -> bool: ...


class StageDataSignals:
    """Reads approval signals from ``CronJob.stage_data``.

    Recognised keys::

        {
            "test_management": {"passed": true}
                or {"pass_percentage": 96.5, "threshold": 95},
            "cherry_picks": {"pending": 0},
            "project_management": {"approved": true}
        }

    A release without a TEST_MANAGEMENT integration has nothing to wait
    for and always passes the test requirement.
    """

    async def test_run_passed(self, release: Release, cron_job: CronJob) -> bool:
        if not cron_job.has_integration(IntegrationKind.TEST_MANAGEMENT):
            return True
        data: dict[str, Any] = (cron_job.stage_data or {}).get("test_management") or {}
        if "passed" in data:
            return bool(data["passed"])
        percentage = data.get("pass_percentage")
        threshold = data.get("threshold", 100)
        if percentage is None:
            return False
        return float(percentage) >= float(threshold)

    async def pending_cherry_picks(self, release: Release, cron_job: CronJob) -> int:
        data = (cron_job.stage_data or {}).get("cherry_picks") or {}
        return int(data.get("pending", 0))

    async def project_release_approved(self, release: Release, cron_job: CronJob) -> bool:
        data = (cron_job.stage_data or {}).get("project_management") or {}
        return bool(data.get("approved", False))


# ---------------------------------------------------------------------------
# Result models
# ---------------------------------------------------------------------------


class ApprovalRequirements(BaseModel):
    """The three independent requirements of the regression approval.

    Attributes:
        test_management_passed: Test run met its pass threshold.
        no_pending_cherry_picks: No cherry-pick drift since the last cycle.
        no_active_or_upcoming_cycles: No cycle is running or scheduled.
    """

    test_management_passed: bool
    no_pending_cherry_picks: bool
    no_active_or_upcoming_cycles: bool


class ApprovalResult(BaseModel):
    can_approve: bool
    requirements: ApprovalRequirements


class IssueSeverity(str, Enum):
    ERROR = "ERROR"
    WARNING = "WARNING"


class PromotionIssue(BaseModel):
    code: str
    severity: IssueSeverity
    message: str
    platform: Platform | None = None


class PromotionReadiness(BaseModel):
    """Outcome of the distribution readiness check.

    Attributes:
        can_promote: True when no ERROR issue was found.
        issues: Every issue found, blocking or not.
    """

    can_promote: bool
    issues: list[PromotionIssue] = Field(default_factory=list)

    @property
    def blocking_issues(self) -> list[PromotionIssue]:
        return [issue for issue in self.issues if issue.severity == IssueSeverity.ERROR]


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


class ApprovalGate:
    """Evaluates the regression approval and distribution readiness."""

    def __init__(self, signals: ReleaseSignals | None = None) -> None:
        self.signals: ReleaseSignals = signals or StageDataSignals()
        self.logger = logger.bind(component="ApprovalGate")

    async def evaluate_approval(
        self,
        session: AsyncSession,
        release: Release,
        cron_job: CronJob,
    ) -> ApprovalResult:
        """Check whether REGRESSION may complete into POST_REGRESSION."""
        latest = await get_latest_cycle(session, release.id)
        cycles_idle = (latest is None or not latest.status.is_active) and not (
            cron_job.upcoming_regressions
        )

        requirements = ApprovalRequirements(
            test_management_passed=await self.signals.test_run_passed(release, cron_job),
            no_pending_cherry_picks=await self.signals.pending_cherry_picks(release, cron_job) == 0,
            no_active_or_upcoming_cycles=cycles_idle,
        )
        result = ApprovalResult(
            can_approve=all(requirements.model_dump().values()),
            requirements=requirements,
        )
        self.logger.debug(
            "approval_evaluated",
            release_id=str(release.id),
            can_approve=result.can_approve,
            **requirements.model_dump(),
        )
        return result

    def authorize_force(self, actor: Actor) -> None:
        """Reject a forced approval from a non-privileged actor.

        Raises:
            Forbidden: If the actor's role is not ADMIN or RELEASE_PILOT.
        """
        if not actor.role.is_privileged:
            raise Forbidden(
                f"Role {actor.role.value} may not force the regression approval",
                actor=actor.id,
                role=actor.role.value,
            )

    async def check_promotion_readiness(
        self,
        session: AsyncSession,
        release: Release,
        cron_job: CronJob,
    ) -> PromotionReadiness:
        """List the issues standing between the release and distribution."""
        issues: list[PromotionIssue] = []

        builds = await list_builds(session, release.id, build_stage=BuildStage.PRE_RELEASE)
        built_platforms = {build.platform for build in builds if build.task_id is not None}
        for platform in release.platforms:
            if platform in STORE_PLATFORMS and platform not in built_platforms:
                issues.append(
                    PromotionIssue(
                        code="missing_build",
                        severity=IssueSeverity.ERROR,
                        message=f"No pre-release build for {platform.value}",
                        platform=platform,
                    )
                )

        if cron_job.has_integration(IntegrationKind.PROJECT_MANAGEMENT):
            if not await self.signals.project_release_approved(release, cron_job):
                issues.append(
                    PromotionIssue(
                        code="project_approval_missing",
                        severity=IssueSeverity.ERROR,
                        message="Release is not approved in project management",
                    )
                )

        pending = await self.signals.pending_cherry_picks(release, cron_job)
        if pending:
            issues.append(
                PromotionIssue(
                    code="pending_cherry_picks",
                    severity=IssueSeverity.WARNING,
                    message=f"{pending} cherry-pick(s) not yet in the release branch",
                )
            )

        if cron_job.stage_status(ReleaseStage.POST_REGRESSION) != StageStatus.COMPLETED:
            issues.append(
                PromotionIssue(
                    code="post_regression_incomplete",
                    severity=IssueSeverity.ERROR,
                    message="Post-regression stage has not completed",
                )
            )

        readiness = PromotionReadiness(
            can_promote=not any(issue.severity == IssueSeverity.ERROR for issue in issues),
            issues=issues,
        )
        self.logger.debug(
            "promotion_readiness_checked",
            release_id=str(release.id),
            can_promote=readiness.can_promote,
            issue_count=len(issues),
        )
        return readiness
