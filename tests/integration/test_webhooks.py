"""Integration tests for the release event webhook dispatcher.

HTTP traffic is intercepted with respx; backoff sleeps are patched out
where a test only cares about the retry schedule.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
from typing import Any
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import httpx
import pytest
import respx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from releasepilot.actors import Actor, ActorRole
from releasepilot.config import NotificationsConfig, ReleasePilotConfig, WebhookEndpointConfig
from releasepilot.database.models.cron_job import PauseType
from releasepilot.integrations.webhooks import (
    ReleaseEvent,
    WebhookDispatcher,
    release_paused_event,
    signature_for,
    stage_completed_event,
    submission_event,
    task_failed_event,
)
from releasepilot.services import build_services

HOOK_URL = "https://hooks.example.com/releases"


@pytest.fixture
def endpoint() -> WebhookEndpointConfig:
    return WebhookEndpointConfig(url=HOOK_URL, secret="test-secret", retry_count=2, timeout_seconds=5)


@pytest.fixture
async def dispatcher(endpoint: WebhookEndpointConfig):
    dispatcher = WebhookDispatcher([endpoint])
    yield dispatcher
    await dispatcher.close()


@pytest.fixture
def no_sleep():
    with patch("releasepilot.integrations.webhooks.asyncio.sleep", new=AsyncMock()) as sleep:
        yield sleep


def blocking_send(gate: asyncio.Event, delivered: list[ReleaseEvent]):
    """A send() replacement that waits for ``gate`` before reporting delivery."""

    async def send(event: ReleaseEvent, data: dict[str, Any]) -> bool:
        await gate.wait()
        delivered.append(event)
        return True

    return send


class TestDelivery:
    @respx.mock
    async def test_delivers_signed_payload(self, dispatcher: WebhookDispatcher) -> None:
        route = respx.post(HOOK_URL).mock(return_value=httpx.Response(200))
        release_id = uuid4()

        assert await dispatcher.send(*stage_completed_event(release_id, "REGRESSION")) is True

        request = route.calls.last.request
        body = request.content.decode()
        payload = json.loads(body)
        assert payload["event"] == "stage.completed"
        assert payload["data"]["release_id"] == str(release_id)
        assert payload["data"]["stage"] == "REGRESSION"
        assert request.headers["X-ReleasePilot-Event"] == "stage.completed"

        expected = hmac.new(b"test-secret", body.encode(), hashlib.sha256).hexdigest()
        assert request.headers["X-ReleasePilot-Signature"] == expected
        assert signature_for(body, "test-secret") == expected

    @respx.mock
    async def test_unsigned_endpoint_has_no_signature(self) -> None:
        route = respx.post(HOOK_URL).mock(return_value=httpx.Response(204))
        dispatcher = WebhookDispatcher([WebhookEndpointConfig(url=HOOK_URL)])
        try:
            await dispatcher.send(ReleaseEvent.RELEASE_COMPLETED, {"release_id": "r-1"})
        finally:
            await dispatcher.close()

        assert "X-ReleasePilot-Signature" not in route.calls.last.request.headers

    @respx.mock
    async def test_retries_then_succeeds(self, dispatcher: WebhookDispatcher, no_sleep: AsyncMock) -> None:
        route = respx.post(HOOK_URL).mock(
            side_effect=[httpx.Response(503), httpx.ConnectError("refused"), httpx.Response(200)]
        )

        assert await dispatcher.send(ReleaseEvent.TASK_FAILED, {"task_id": "t-1"}) is True

        assert route.call_count == 3
        assert [call.args[0] for call in no_sleep.await_args_list] == [1, 2]

    @respx.mock
    async def test_gives_up_after_retry_budget(self, dispatcher: WebhookDispatcher, no_sleep: AsyncMock) -> None:
        route = respx.post(HOOK_URL).mock(return_value=httpx.Response(500))

        assert await dispatcher.send(ReleaseEvent.TASK_FAILED, {"task_id": "t-1"}) is False
        assert route.call_count == 3

    @respx.mock
    async def test_disabled_endpoint_is_skipped(self) -> None:
        route = respx.post(HOOK_URL).mock(return_value=httpx.Response(200))
        dispatcher = WebhookDispatcher([WebhookEndpointConfig(url=HOOK_URL, enabled=False)])
        try:
            assert await dispatcher.send(ReleaseEvent.RELEASE_COMPLETED, {}) is True
        finally:
            await dispatcher.close()

        assert route.call_count == 0

    async def test_no_endpoints_is_a_noop(self) -> None:
        dispatcher = WebhookDispatcher.from_config(NotificationsConfig())
        assert dispatcher.endpoints == []
        assert await dispatcher.send(ReleaseEvent.RELEASE_COMPLETED, {}) is True

        await dispatcher.publish([stage_completed_event(uuid4(), "KICKOFF")])

        assert dispatcher.pending == 0
        await dispatcher.close()


class TestBackgroundQueue:
    @respx.mock
    async def test_publish_delivers_events_in_order(self, dispatcher: WebhookDispatcher) -> None:
        route = respx.post(HOOK_URL).mock(return_value=httpx.Response(200))
        release_id = uuid4()

        await dispatcher.publish(
            [
                stage_completed_event(release_id, "KICKOFF"),
                release_paused_event(release_id, "AWAITING_STAGE_TRIGGER"),
                submission_event(release_id, uuid4(), "ANDROID", "LIVE", 10.0, "STORE_STATUS"),
            ]
        )

        assert await dispatcher.drain(timeout=5) is True
        events = [json.loads(call.request.content)["event"] for call in route.calls]
        assert events == ["stage.completed", "release.paused", "submission.status_changed"]

    async def test_publish_returns_before_delivery(self, endpoint: WebhookEndpointConfig) -> None:
        gate = asyncio.Event()
        delivered: list[ReleaseEvent] = []
        dispatcher = WebhookDispatcher([endpoint])
        release_id = uuid4()

        with patch.object(dispatcher, "send", side_effect=blocking_send(gate, delivered)):
            await asyncio.wait_for(
                dispatcher.publish(
                    [
                        task_failed_event(release_id, uuid4(), "TRIGGER_REGRESSION_BUILDS", "gradle failed"),
                        stage_completed_event(release_id, "REGRESSION"),
                    ]
                ),
                timeout=1,
            )
            assert delivered == []

            gate.set()
            assert await dispatcher.drain(timeout=1) is True

        assert delivered == [ReleaseEvent.TASK_FAILED, ReleaseEvent.STAGE_COMPLETED]
        await dispatcher.close()

    async def test_slow_event_does_not_hold_up_the_next(self, endpoint: WebhookEndpointConfig) -> None:
        dispatcher = WebhookDispatcher([endpoint], event_timeout_seconds=0.05)
        hung = asyncio.Event()
        delivered: list[ReleaseEvent] = []

        async def send(event: ReleaseEvent, data: dict[str, Any]) -> bool:
            if event == ReleaseEvent.TASK_FAILED:
                await hung.wait()
            delivered.append(event)
            return True

        with patch.object(dispatcher, "send", side_effect=send):
            await dispatcher.publish(
                [
                    (ReleaseEvent.TASK_FAILED, {"release_id": "r-1"}),
                    (ReleaseEvent.RELEASE_PAUSED, {"release_id": "r-1"}),
                ]
            )
            assert await dispatcher.drain(timeout=2) is True

        assert delivered == [ReleaseEvent.RELEASE_PAUSED]
        await dispatcher.close()

    async def test_close_is_bounded_by_drain_timeout(self, endpoint: WebhookEndpointConfig) -> None:
        dispatcher = WebhookDispatcher([endpoint], drain_timeout_seconds=0.05)
        gate = asyncio.Event()
        delivered: list[ReleaseEvent] = []

        with patch.object(dispatcher, "send", side_effect=blocking_send(gate, delivered)):
            await dispatcher.publish([(ReleaseEvent.RELEASE_COMPLETED, {"release_id": "r-1"})])
            await asyncio.wait_for(dispatcher.close(), timeout=2)

        assert delivered == []
        assert dispatcher.pending == 0

    async def test_overflow_is_dropped(self, endpoint: WebhookEndpointConfig) -> None:
        dispatcher = WebhookDispatcher([endpoint], queue_size=1, drain_timeout_seconds=0)
        gate = asyncio.Event()
        delivered: list[ReleaseEvent] = []

        with patch.object(dispatcher, "send", side_effect=blocking_send(gate, delivered)):
            await dispatcher.publish(
                [
                    (ReleaseEvent.STAGE_COMPLETED, {"release_id": "r-1"}),
                    (ReleaseEvent.RELEASE_PAUSED, {"release_id": "r-1"}),
                    (ReleaseEvent.RELEASE_COMPLETED, {"release_id": "r-1"}),
                ]
            )
            assert dispatcher.pending == 1
            await dispatcher.close()

        assert delivered == []


@respx.mock
async def test_pause_returns_while_endpoint_is_down(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    route = respx.post(HOOK_URL).mock(side_effect=httpx.ConnectError("connection refused"))
    config = ReleasePilotConfig(
        notifications=NotificationsConfig(
            webhooks=[WebhookEndpointConfig(url=HOOK_URL, retry_count=3)],
            drain_timeout_seconds=0.1,
        )
    )
    services = build_services(session_factory, config)
    try:
        release = await services.orchestrator.create_release(
            tenant_id="acme",
            release_key="1.2.0",
            platform_targets=[{"platform": "ANDROID", "version": "1.2.0"}],
        )

        view = await asyncio.wait_for(
            services.orchestrator.pause(release.id, Actor("pilot-1", ActorRole.RELEASE_PILOT), reason="freeze"),
            timeout=1,
        )

        assert view.pause_type == PauseType.USER_REQUESTED
    finally:
        await asyncio.wait_for(services.close(), timeout=2)

    # The first attempt may or may not have run before shutdown; retries never did
    assert route.call_count <= 1
