"""FastAPI dependencies resolving services and the calling actor.

Services live on ``app.state.services`` (see ``releasepilot.services``).
Authentication happens upstream; the host forwards the actor through the
``X-Actor-Id`` and ``X-Actor-Role`` headers.
"""

from __future__ import annotations

from fastapi import Header, Request

from releasepilot.actors import Actor, ActorRole
from releasepilot.distribution.submissions import SubmissionService
from releasepilot.errors import ValidationError
from releasepilot.integrations.callbacks import CallbackService
from releasepilot.orchestrator.cron import CronOrchestrator
from releasepilot.services import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_orchestrator(request: Request) -> CronOrchestrator:
    return get_services(request).orchestrator


def get_submission_service(request: Request) -> SubmissionService:
    return get_services(request).submissions


def get_callback_service(request: Request) -> CallbackService:
    return get_services(request).callbacks


def get_actor(
    x_actor_id: str | None = Header(default=None),
    x_actor_role: str | None = Header(default=None),
) -> Actor:
    """Build the Actor of a request from its headers.

    Raises:
        ValidationError: If the role header names an unknown role.
    """
    role = ActorRole.MEMBER
    if x_actor_role:
        try:
            role = ActorRole(x_actor_role.upper())
        except ValueError as exc:
            raise ValidationError(f"Unknown actor role: {x_actor_role}", role=x_actor_role) from exc
    return Actor(id=x_actor_id or "anonymous", role=role)
