"""Global scheduler loop for ReleasePilot.

The scheduler periodically lists the releases whose cron job can advance
(PENDING or RUNNING) and ticks each of them through the cron orchestrator.
Releases are processed concurrently, bounded by a semaphore; a failure in
one release is logged and never stops the others. A release whose lease is
held elsewhere is skipped until the next round.

Rounds never overlap: a round that starts while the previous one is still
running is skipped.
"""

from __future__ import annotations

import asyncio
import time
from uuid import UUID

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from releasepilot.database.models.cron_job import CronStatus
from releasepilot.database.queries.cron_job import list_cron_jobs_by_status
from releasepilot.errors import LockContention
from releasepilot.orchestrator.cron import CronOrchestrator

logger = structlog.get_logger(__name__)

ACTIVE_CRON_STATUSES = (CronStatus.PENDING, CronStatus.RUNNING)


class TickError(BaseModel):
    release_id: str
    error: str


class TickReport(BaseModel):
    """Outcome of one scheduler round.

    Attributes:
        processed_count: Releases ticked successfully.
        skipped: Releases skipped because their lease was held elsewhere.
        errors: Releases whose tick raised.
        duration_ms: Wall time of the round.
        overlapped: True if the round was skipped because another was running.
    """

    processed_count: int = 0
    skipped: list[str] = Field(default_factory=list)
    errors: list[TickError] = Field(default_factory=list)
    duration_ms: int = 0
    overlapped: bool = False


class GlobalScheduler:
    """Drives every active release on a fixed interval.

    Attributes:
        orchestrator: Cron orchestrator used to tick releases.
        session_factory: Factory for read sessions listing candidates.
        interval_seconds: Seconds between rounds.
        max_concurrent: Upper bound on releases ticked in parallel.
    """

    def __init__(
        self,
        orchestrator: CronOrchestrator,
        session_factory: async_sessionmaker[AsyncSession],
        interval_seconds: int = 60,
        min_interval_seconds: int = 10,
        max_concurrent: int = 5,
    ) -> None:
        self.orchestrator = orchestrator
        self.session_factory = session_factory
        self.interval_seconds = max(interval_seconds, min_interval_seconds)
        self.max_concurrent = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._round_lock = asyncio.Lock()
        self._running: bool = False
        self._loop_task: asyncio.Task[None] | None = None
        self._logger = logger.bind(component="GlobalScheduler")

    @property
    def is_running(self) -> bool:
        """Whether the scheduler loop is active."""
        return self._running

    async def start(self) -> None:
        """Start the scheduler loop as a background task.

        Raises:
            RuntimeError: If the scheduler is already running.
        """
        if self._running:
            raise RuntimeError("Scheduler is already running")

        self._running = True
        self._logger.info("scheduler_starting", interval_seconds=self.interval_seconds)
        self._loop_task = asyncio.create_task(self._loop(), name="releasepilot-scheduler")

    async def stop(self) -> None:
        """Stop the loop after the current round. Safe to call when stopped."""
        if not self._running:
            self._logger.debug("scheduler_stop_noop", reason="not running")
            return

        self._logger.info("scheduler_stopping")
        self._running = False

        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            finally:
                self._loop_task = None

        self._logger.info("scheduler_stopped")

    async def _loop(self) -> None:
        self._logger.info("scheduler_loop_started")
        while self._running:
            try:
                await self.run_once()
            except Exception:
                self._logger.exception("scheduler_round_error")

            if self._running:
                await asyncio.sleep(self.interval_seconds)
        self._logger.info("scheduler_loop_exited")

    async def _candidates(self) -> list[UUID]:
        async with self.session_factory() as session:
            release_ids: list[UUID] = []
            for status in ACTIVE_CRON_STATUSES:
                release_ids.extend(job.release_id for job in await list_cron_jobs_by_status(session, status))
            return release_ids

    async def run_once(self) -> TickReport:
        """Tick every active release once.

        Returns:
            A report of the round; ``overlapped`` is set if another round
            was still running and nothing was done.
        """
        if self._round_lock.locked():
            self._logger.warning("scheduler_round_overlapped")
            return TickReport(overlapped=True)

        async with self._round_lock:
            started = time.monotonic()
            report = TickReport()
            release_ids = await self._candidates()

            results = await asyncio.gather(*(self._tick_one(release_id) for release_id in release_ids))
            for release_id, outcome in zip(release_ids, results):
                if outcome is None:
                    report.processed_count += 1
                elif outcome == "skipped":
                    report.skipped.append(str(release_id))
                else:
                    report.errors.append(TickError(release_id=str(release_id), error=outcome))

            report.duration_ms = int((time.monotonic() - started) * 1000)
            self._logger.info(
                "scheduler_round_finished",
                candidates=len(release_ids),
                processed_count=report.processed_count,
                skipped=len(report.skipped),
                errors=len(report.errors),
                duration_ms=report.duration_ms,
            )
            return report

    async def _tick_one(self, release_id: UUID) -> str | None:
        """Tick one release; returns None on success, "skipped", or an error text."""
        async with self._semaphore:
            try:
                await self.orchestrator.tick(release_id)
            except LockContention:
                self._logger.debug("release_tick_skipped", release_id=str(release_id))
                return "skipped"
            except Exception as e:
                self._logger.exception("release_tick_error", release_id=str(release_id))
                return f"{type(e).__name__}: {e}"
            return None
