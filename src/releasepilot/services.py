"""Service wiring shared by the web application and the CLI."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from releasepilot.config import ReleasePilotConfig
from releasepilot.distribution.rollout import RolloutController
from releasepilot.distribution.submissions import SubmissionService
from releasepilot.integrations.callbacks import CallbackService
from releasepilot.integrations.webhooks import WebhookDispatcher
from releasepilot.orchestrator.cron import CronOrchestrator
from releasepilot.orchestrator.executor import TaskExecutor
from releasepilot.orchestrator.lease import LeaseManager
from releasepilot.orchestrator.scheduler import GlobalScheduler


@dataclass
class Services:
    """The long-lived services of one process."""

    session_factory: async_sessionmaker[AsyncSession]
    orchestrator: CronOrchestrator
    submissions: SubmissionService
    callbacks: CallbackService
    scheduler: GlobalScheduler
    notifier: WebhookDispatcher

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.notifier.close()


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    config: ReleasePilotConfig,
) -> Services:
    """Wire every service from one session factory and configuration."""
    notifier = WebhookDispatcher.from_config(config.notifications)
    controller = RolloutController(
        android_initial_percentage=config.rollout.android_initial_percentage,
        ios_phased_initial_percentage=config.rollout.ios_phased_initial_percentage,
    )
    leases = LeaseManager(session_factory, timeout_seconds=config.scheduler.lock_timeout_seconds)
    orchestrator = CronOrchestrator(
        session_factory,
        leases=leases,
        executor=TaskExecutor(controller),
        notifier=notifier,
        holder_id=config.scheduler.holder_id,
        slot_window_seconds=config.scheduler.slot_window_seconds,
        controller=controller,
    )
    scheduler = GlobalScheduler(
        orchestrator,
        session_factory,
        interval_seconds=config.scheduler.interval_seconds,
        min_interval_seconds=config.scheduler.min_interval_seconds,
        max_concurrent=config.scheduler.max_concurrent_releases,
    )
    return Services(
        session_factory=session_factory,
        orchestrator=orchestrator,
        submissions=SubmissionService(session_factory, controller, notifier),
        callbacks=CallbackService(session_factory, notifier, leases=leases),
        scheduler=scheduler,
        notifier=notifier,
    )
