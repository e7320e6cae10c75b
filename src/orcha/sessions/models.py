"""Session data models and listener interfaces."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Protocol


class SessionState(str, Enum):
    INITIALIZING = "initializing"
    IDLE = "idle"
    WORKING = "working"
    WAITING = "waiting"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.DONE, SessionState.ERROR)


class SessionMode(str, Enum):
    """Kinds of worker Orcha can launch."""

    CLAUDE = "claude"
    GEMINI = "gemini"
    CODEX = "codex"
    SHELL = "shell"

    def launch_command(self) -> tuple[str, list[str]]:
        """Return the executable and arguments that start a worker of this mode."""

        if self is SessionMode.SHELL:
            return os.environ.get("SHELL") or "bash", []
        return _MODE_COMMANDS[self], []


_MODE_COMMANDS: dict[SessionMode, str] = {
    SessionMode.CLAUDE: "claude",
    SessionMode.GEMINI: "gemini",
    SessionMode.CODEX: "codex",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class SessionStatus:
    state: SessionState
    message: str = ""
    last_activity: datetime = field(default_factory=utcnow)
    needs_input: str | None = None
    progress: float | None = None

    def snapshot(self) -> "SessionStatus":
        return replace(self)


@dataclass(slots=True)
class Session:
    id: str
    display_id: int
    mode: SessionMode
    status: SessionStatus
    repo_path: Path
    branch: str | None = None
    workspace_path: Path | None = None
    pid: int | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class StatusEvent:
    """A state transition observed by the status monitor."""

    session_id: str
    status: SessionStatus
    previous_state: SessionState | None
    timestamp: datetime


class StatusListener(Protocol):
    def on_status_change(self, event: StatusEvent) -> None:
        ...

    def on_needs_input(self, session_id: str, prompt: str) -> None:
        ...

    def on_error(self, session_id: str, message: str) -> None:
        ...

    def on_done(self, session_id: str) -> None:
        ...


class ProcessListener(Protocol):
    def on_process_spawned(self, session_id: str, pid: int) -> None:
        ...

    def on_process_exit(self, session_id: str, code: int | None, signal_name: str | None) -> None:
        ...

    def on_process_error(self, session_id: str, error: BaseException) -> None:
        ...


class SessionListener(Protocol):
    def on_session_created(self, session: Session) -> None:
        ...

    def on_session_updated(self, session: Session) -> None:
        ...

    def on_session_destroyed(self, session_id: str) -> None:
        ...


__all__ = [
    "ProcessListener",
    "Session",
    "SessionListener",
    "SessionMode",
    "SessionState",
    "SessionStatus",
    "StatusEvent",
    "StatusListener",
    "utcnow",
]
