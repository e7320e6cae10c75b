"""Schema of the per-session status files agents write about themselves."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ..sessions.models import SessionState, SessionStatus

ReportedState = Literal["idle", "working", "needs_input", "finished", "error"]

# Agents speak the external vocabulary; internal names are accepted for files
# written by the monitor itself or by older tooling.
EXTERNAL_TO_INTERNAL: dict[str, SessionState] = {
    "idle": SessionState.IDLE,
    "working": SessionState.WORKING,
    "needs_input": SessionState.WAITING,
    "finished": SessionState.DONE,
    "error": SessionState.ERROR,
}
INTERNAL_TO_EXTERNAL: dict[SessionState, str] = {
    SessionState.INITIALIZING: "idle",
    SessionState.IDLE: "idle",
    SessionState.WORKING: "working",
    SessionState.WAITING: "needs_input",
    SessionState.DONE: "finished",
    SessionState.ERROR: "error",
}


def parse_state(value: str) -> SessionState:
    normalized = value.strip().lower()
    if normalized in EXTERNAL_TO_INTERNAL:
        return EXTERNAL_TO_INTERNAL[normalized]
    return SessionState(normalized)


class StatusReport(BaseModel):
    """One status file: ``{agentId, state, message, timestamp, needsInputPrompt?, progress?}``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    agent_id: str
    state: SessionState
    message: str = ""
    timestamp: datetime
    needs_input_prompt: str | None = None
    progress: float | None = Field(default=None, ge=0, le=100)

    @field_validator("state", mode="before")
    @classmethod
    def _map_state(cls, value: Any) -> SessionState:
        if isinstance(value, SessionState):
            return value
        if not isinstance(value, str):
            raise ValueError("state must be a string")
        return parse_state(value)

    @field_validator("timestamp")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def to_status(self) -> SessionStatus:
        return SessionStatus(
            state=self.state,
            message=self.message,
            last_activity=self.timestamp,
            needs_input=self.needs_input_prompt,
            progress=self.progress,
        )

    def to_document(self) -> dict[str, Any]:
        document = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        document["state"] = INTERNAL_TO_EXTERNAL[self.state]
        return document

    @classmethod
    def from_status(cls, session_id: str, status: SessionStatus) -> "StatusReport":
        return cls(
            agent_id=session_id,
            state=status.state,
            message=status.message,
            timestamp=status.last_activity,
            needs_input_prompt=status.needs_input,
            progress=status.progress,
        )


__all__ = [
    "EXTERNAL_TO_INTERNAL",
    "INTERNAL_TO_EXTERNAL",
    "ReportedState",
    "StatusReport",
    "parse_state",
]
