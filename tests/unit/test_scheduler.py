"""Unit tests for the global scheduler loop."""

from __future__ import annotations

import asyncio
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from releasepilot.errors import LockContention
from releasepilot.orchestrator.scheduler import GlobalScheduler


@pytest.fixture
def orchestrator() -> MagicMock:
    orchestrator = MagicMock()
    orchestrator.tick = AsyncMock()
    return orchestrator


@pytest.fixture
def scheduler(orchestrator: MagicMock) -> GlobalScheduler:
    return GlobalScheduler(orchestrator, MagicMock(), interval_seconds=60, max_concurrent=2)


def with_candidates(scheduler: GlobalScheduler, release_ids: list[uuid.UUID]):
    return patch.object(scheduler, "_candidates", new=AsyncMock(return_value=release_ids))


class TestRunOnce:
    async def test_ticks_every_candidate(self, scheduler: GlobalScheduler, orchestrator: MagicMock) -> None:
        release_ids = [uuid.uuid4(), uuid.uuid4(), uuid.uuid4()]

        with with_candidates(scheduler, release_ids):
            report = await scheduler.run_once()

        assert report.processed_count == 3
        assert report.skipped == []
        assert report.errors == []
        assert report.overlapped is False
        assert {call.args[0] for call in orchestrator.tick.await_args_list} == set(release_ids)

    async def test_contended_release_is_skipped(
        self, scheduler: GlobalScheduler, orchestrator: MagicMock
    ) -> None:
        busy, free = uuid.uuid4(), uuid.uuid4()

        async def tick(release_id: uuid.UUID) -> None:
            if release_id == busy:
                raise LockContention("cron-1", "other-holder")

        orchestrator.tick.side_effect = tick
        with with_candidates(scheduler, [busy, free]):
            report = await scheduler.run_once()

        assert report.processed_count == 1
        assert report.skipped == [str(busy)]
        assert report.errors == []

    async def test_failure_does_not_stop_others(
        self, scheduler: GlobalScheduler, orchestrator: MagicMock
    ) -> None:
        broken, healthy = uuid.uuid4(), uuid.uuid4()

        async def tick(release_id: uuid.UUID) -> None:
            if release_id == broken:
                raise RuntimeError("database went away")

        orchestrator.tick.side_effect = tick
        with with_candidates(scheduler, [broken, healthy]):
            report = await scheduler.run_once()

        assert report.processed_count == 1
        assert len(report.errors) == 1
        assert report.errors[0].release_id == str(broken)
        assert "database went away" in report.errors[0].error

    async def test_overlapping_round_is_skipped(
        self, scheduler: GlobalScheduler, orchestrator: MagicMock
    ) -> None:
        with with_candidates(scheduler, [uuid.uuid4()]):
            async with scheduler._round_lock:
                report = await scheduler.run_once()

        assert report.overlapped is True
        orchestrator.tick.assert_not_awaited()

    async def test_concurrency_is_bounded(self, scheduler: GlobalScheduler, orchestrator: MagicMock) -> None:
        active = 0
        peak = 0

        async def tick(release_id: uuid.UUID) -> None:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

        orchestrator.tick.side_effect = tick
        with with_candidates(scheduler, [uuid.uuid4() for _ in range(5)]):
            report = await scheduler.run_once()

        assert report.processed_count == 5
        assert peak <= 2


class TestLifecycle:
    def test_interval_floor(self, orchestrator: MagicMock) -> None:
        scheduler = GlobalScheduler(orchestrator, MagicMock(), interval_seconds=1, min_interval_seconds=10)
        assert scheduler.interval_seconds == 10

    async def test_start_and_stop(self, scheduler: GlobalScheduler) -> None:
        with with_candidates(scheduler, []):
            await scheduler.start()
            assert scheduler.is_running is True
            with pytest.raises(RuntimeError):
                await scheduler.start()
            await scheduler.stop()

        assert scheduler.is_running is False

    async def test_stop_when_not_running(self, scheduler: GlobalScheduler) -> None:
        await scheduler.stop()
        assert scheduler.is_running is False
