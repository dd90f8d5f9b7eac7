"""Actor identity passed in by the host system.

Authentication is handled outside ReleasePilot; callers hand the core an
Actor carrying an opaque id and a role. Only the role is interpreted, to
restrict privileged operations such as forced approvals.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass


class ActorRole(str, enum.Enum):
    """Roles recognised by the orchestration core."""

    ADMIN = "ADMIN"
    RELEASE_PILOT = "RELEASE_PILOT"
    MEMBER = "MEMBER"
    SYSTEM = "SYSTEM"

    @property
    def is_privileged(self) -> bool:
        return self in (ActorRole.ADMIN, ActorRole.RELEASE_PILOT)


@dataclass(frozen=True)
class Actor:
    """Who is performing an operation.

    Attributes:
        id: Opaque user or component identifier.
        role: Role used for authorization checks.
    """

    id: str
    role: ActorRole = ActorRole.MEMBER

    def __str__(self) -> str:
        return self.id


SYSTEM_ACTOR = Actor(id="system", role=ActorRole.SYSTEM)
