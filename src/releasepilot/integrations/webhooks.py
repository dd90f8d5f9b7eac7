"""Webhook notifications for ReleasePilot release events.

Release lifecycle events are posted to external services (chat bots, CI
pipelines, dashboards). Services collect events while a transaction runs
and hand them to the dispatcher once it commits:

    await dispatcher.publish(events)

publish() only queues. A single background worker owned by the dispatcher
sends queued events in order, each to every enabled endpoint, with
per-endpoint retries and exponential backoff. A dead endpoint therefore
slows the worker, never the API request or scheduler pass that produced
the event. Each event gets at most ``event_timeout_seconds`` across all
endpoints and retries; close() waits up to ``drain_timeout_seconds`` for
the queue to empty and then stops the worker.

Payloads are signed with HMAC-SHA256 when the endpoint has a secret.
Delivery failures are logged and never touch orchestration state.

Supported event types:
- BUILD_REQUESTED: A build task asks CI/CD to start a workflow
- TASK_FAILED: A task failed and the release is paused
- STAGE_COMPLETED: A pipeline stage finished
- RELEASE_PAUSED: A release stopped advancing
- RELEASE_COMPLETED: Distribution finished
- SUBMISSION_STATUS_CHANGED: A store submission moved or its rollout changed
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from uuid import UUID

    from releasepilot.config import NotificationsConfig, WebhookEndpointConfig

logger = structlog.get_logger(__name__)


class ReleaseEvent(str, Enum):
    """Types of webhook events that can be dispatched."""

    BUILD_REQUESTED = "build.requested"
    TASK_FAILED = "task.failed"
    STAGE_COMPLETED = "stage.completed"
    RELEASE_PAUSED = "release.paused"
    RELEASE_COMPLETED = "release.completed"
    SUBMISSION_STATUS_CHANGED = "submission.status_changed"


# An event waiting for its transaction to commit
PendingEvent = tuple[ReleaseEvent, dict[str, Any]]


class WebhookPayload(BaseModel):
    """Body posted to every endpoint.

    Attributes:
        event: The type of event being delivered.
        timestamp: ISO 8601 timestamp when the event was sent.
        data: Event-specific data payload.
    """

    event: ReleaseEvent = Field(..., description="The webhook event type")
    timestamp: str = Field(..., description="ISO 8601 timestamp of the event")
    data: dict[str, Any] = Field(default_factory=dict, description="Event-specific data")


def signature_for(body: str, secret: str) -> str:
    """HMAC-SHA256 hex digest a receiver recomputes to authenticate ``body``."""
    return hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()


class WebhookDispatcher:
    """Queues release events and delivers them from a background worker.

    Attributes:
        endpoints: Configured webhook endpoints.
        queue_size: Events that may wait for delivery before new ones are dropped.
        event_timeout_seconds: Upper bound on delivering one event.
        drain_timeout_seconds: How long close() waits for queued events.
    """

    def __init__(
        self,
        endpoints: list[WebhookEndpointConfig] | None = None,
        queue_size: int = 1000,
        event_timeout_seconds: float = 60.0,
        drain_timeout_seconds: float = 10.0,
    ) -> None:
        self.endpoints = endpoints or []
        self.queue_size = queue_size
        self.event_timeout_seconds = event_timeout_seconds
        self.drain_timeout_seconds = drain_timeout_seconds
        self.logger = logger.bind(component="webhook_dispatcher")
        self._client: httpx.AsyncClient | None = None
        self._queue: asyncio.Queue[PendingEvent] | None = None
        self._worker: asyncio.Task[None] | None = None

    @classmethod
    def from_config(cls, config: NotificationsConfig) -> WebhookDispatcher:
        return cls(
            endpoints=list(config.webhooks),
            queue_size=config.queue_size,
            event_timeout_seconds=config.event_timeout_seconds,
            drain_timeout_seconds=config.drain_timeout_seconds,
        )

    @property
    def pending(self) -> int:
        """Events queued and not yet picked up by the worker."""
        return self._queue.qsize() if self._queue is not None else 0

    # ------------------------------------------------------------------
    # Queueing
    # ------------------------------------------------------------------

    async def publish(self, events: list[PendingEvent]) -> None:
        """Queue events collected during a committed transaction.

        Returns as soon as the events are queued. When the queue is full
        the overflow is logged and dropped.
        """
        if not self.endpoints or not events:
            return

        queue = self._ensure_worker()
        for event, data in events:
            try:
                queue.put_nowait((event, data))
            except asyncio.QueueFull:
                self.logger.error(
                    "webhook_queue_full",
                    event_type=event.value,
                    queue_size=self.queue_size,
                    release_id=data.get("release_id"),
                )

    def _ensure_worker(self) -> asyncio.Queue[PendingEvent]:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self.queue_size)
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._delivery_loop(self._queue))
            self.logger.info("webhook_worker_started", endpoints=len(self.endpoints))
        return self._queue

    async def _delivery_loop(self, queue: asyncio.Queue[PendingEvent]) -> None:
        while True:
            event, data = await queue.get()
            try:
                async with asyncio.timeout(self.event_timeout_seconds):
                    await self.send(event, data)
            except TimeoutError:
                self.logger.error(
                    "webhook_event_timeout",
                    event_type=event.value,
                    timeout_seconds=self.event_timeout_seconds,
                    release_id=data.get("release_id"),
                )
            except Exception as e:
                # Keep delivering later events
                self.logger.error("webhook_worker_error", event_type=event.value, error=str(e), exc_info=True)
            finally:
                queue.task_done()

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait until every queued event was handled.

        Returns:
            False if events were still pending when the timeout ran out.
        """
        if self._queue is None or self._worker is None or self._worker.done():
            return self.pending == 0
        try:
            async with asyncio.timeout(timeout if timeout is not None else self.drain_timeout_seconds):
                await self._queue.join()
        except TimeoutError:
            self.logger.warning("webhook_drain_timeout", pending=self.pending)
            return False
        return True

    async def close(self) -> None:
        """Deliver what the drain timeout allows, stop the worker and close the client."""
        await self.drain()

        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            if self.pending:
                self.logger.warning("webhook_events_dropped", pending=self.pending)
            self._worker = None
            self._queue = None

        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def send(self, event: ReleaseEvent, data: dict[str, Any]) -> bool:
        """Deliver one event to every endpoint now.

        Returns:
            True if every enabled endpoint accepted the event.
        """
        if not self.endpoints:
            return True

        payload = WebhookPayload(event=event, timestamp=_now(), data=data)
        outcomes = await asyncio.gather(
            *(self._deliver(endpoint, payload) for endpoint in self.endpoints),
            return_exceptions=True,
        )

        delivered = True
        for endpoint, outcome in zip(self.endpoints, outcomes):
            if isinstance(outcome, Exception):
                self.logger.error("webhook_unexpected_error", url=endpoint.url, error=str(outcome))
                delivered = False
            elif outcome is not True:
                delivered = False
        return delivered

    async def _deliver(self, endpoint: WebhookEndpointConfig, payload: WebhookPayload) -> bool:
        """Post a payload to one endpoint, retrying with 1s, 2s, 4s... backoff."""
        event_type = payload.event.value
        if not endpoint.enabled:
            self.logger.debug("webhook_endpoint_disabled", url=endpoint.url, event_type=event_type)
            return True

        body = payload.model_dump_json()
        headers = {
            "Content-Type": "application/json",
            "X-ReleasePilot-Event": event_type,
            "X-ReleasePilot-Timestamp": str(int(datetime.now(timezone.utc).timestamp())),
        }
        if endpoint.secret:
            headers["X-ReleasePilot-Signature"] = signature_for(body, endpoint.secret)

        client = self._get_client()
        attempts = endpoint.retry_count + 1
        failure: str | None = None
        for attempt in range(1, attempts + 1):
            failure = await self._post(client, endpoint, body, headers)
            if failure is None:
                self.logger.info("webhook_delivered", url=endpoint.url, event_type=event_type, attempt=attempt)
                return True

            self.logger.warning(
                "webhook_attempt_failed",
                url=endpoint.url,
                event_type=event_type,
                attempt=attempt,
                reason=failure,
            )
            if attempt < attempts:
                await asyncio.sleep(2 ** (attempt - 1))

        self.logger.error(
            "webhook_delivery_exhausted",
            url=endpoint.url,
            event_type=event_type,
            attempts=attempts,
            reason=failure,
        )
        return False

    async def _post(
        self,
        client: httpx.AsyncClient,
        endpoint: WebhookEndpointConfig,
        body: str,
        headers: dict[str, str],
    ) -> str | None:
        """One delivery attempt. Returns None on success, else why it failed."""
        try:
            response = await client.post(
                endpoint.url, content=body, headers=headers, timeout=endpoint.timeout_seconds
            )
        except httpx.TimeoutException as e:
            return f"timeout: {e}"
        except httpx.RequestError as e:
            return f"request error: {e}"
        if response.is_success:
            return None
        return f"HTTP {response.status_code}"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient()
        return self._client


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_requested_event(
    release_id: UUID,
    task_id: UUID,
    task_type: str,
    platforms: list[str],
    external_id: str,
    branch: str | None,
) -> PendingEvent:
    return ReleaseEvent.BUILD_REQUESTED, {
        "release_id": str(release_id),
        "task_id": str(task_id),
        "task_type": task_type,
        "platforms": platforms,
        "external_id": external_id,
        "branch": branch,
        "requested_at": _now(),
    }


def task_failed_event(release_id: UUID, task_id: UUID, task_type: str, reason: str) -> PendingEvent:
    return ReleaseEvent.TASK_FAILED, {
        "release_id": str(release_id),
        "task_id": str(task_id),
        "task_type": task_type,
        "reason": reason,
        "failed_at": _now(),
    }


def stage_completed_event(release_id: UUID, stage: str) -> PendingEvent:
    return ReleaseEvent.STAGE_COMPLETED, {
        "release_id": str(release_id),
        "stage": stage,
        "completed_at": _now(),
    }


def release_paused_event(release_id: UUID, pause_type: str, reason: str | None = None) -> PendingEvent:
    return ReleaseEvent.RELEASE_PAUSED, {
        "release_id": str(release_id),
        "pause_type": pause_type,
        "reason": reason,
        "paused_at": _now(),
    }


def release_completed_event(release_id: UUID) -> PendingEvent:
    return ReleaseEvent.RELEASE_COMPLETED, {
        "release_id": str(release_id),
        "completed_at": _now(),
    }


def submission_event(
    release_id: UUID,
    submission_id: UUID,
    platform: str,
    status: str,
    rollout_percentage: float,
    action: str,
) -> PendingEvent:
    return ReleaseEvent.SUBMISSION_STATUS_CHANGED, {
        "release_id": str(release_id),
        "submission_id": str(submission_id),
        "platform": platform,
        "status": status,
        "rollout_percentage": rollout_percentage,
        "action": action,
        "changed_at": _now(),
    }
