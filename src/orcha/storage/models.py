"""Persistent records shared across Orcha CLI invocations."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..sessions.models import Session, SessionMode

REGISTRY_VERSION = 1
STORE_VERSION = 1


class _Record(BaseModel):
    """Records are stored with camelCase keys and accept either spelling on load."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class InstanceInfo(_Record):
    """A running orchestrator instance bound to one repository."""

    instance_id: str = Field(..., description="Stable id derived from the repository path.")
    repo_path: str = Field(..., description="Absolute repository path.")
    pane_group: str = Field(..., description="Pane group (tmux session) hosting the workers.")
    pid: int = Field(..., description="Process that registered the instance; not a liveness signal.")
    started_at: str
    session_count: int = 0


class SessionMetadata(_Record):
    """The durable part of a session, used to survive CLI restarts."""

    id: str
    display_id: int
    branch: str | None = None
    mode: SessionMode = SessionMode.CLAUDE
    workspace_path: str | None = None
    created_at: str

    @classmethod
    def from_session(cls, session: Session) -> "SessionMetadata":
        return cls(
            id=session.id,
            display_id=session.display_id,
            branch=session.branch,
            mode=session.mode,
            workspace_path=str(session.workspace_path) if session.workspace_path else None,
            created_at=session.created_at.isoformat(),
        )


__all__ = ["InstanceInfo", "REGISTRY_VERSION", "STORE_VERSION", "SessionMetadata"]
