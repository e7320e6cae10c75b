"""Session lifecycle: creation with rollback, teardown and event forwarding."""

from __future__ import annotations

import contextlib
import logging
import secrets
import string
import time
from dataclasses import dataclass, field
from pathlib import Path

from ..config import OrchaSettings, get_settings
from ..processes.registry import ProcessRegistry
from ..processes.utils import build_session_environment
from ..status.monitor import StatusMonitor
from ..storage.models import SessionMetadata
from ..storage.sessions import SessionStore
from ..workspaces.manager import WorkspaceError, WorktreeManager
from .models import (
    Session,
    SessionListener,
    SessionMode,
    SessionState,
    StatusEvent,
)

logger = logging.getLogger(__name__)

READY_MESSAGE = "Ready"
_BASE36 = string.digits + string.ascii_lowercase


class SessionCreationError(RuntimeError):
    """Raised when a session could not be brought up; the partial session has been rolled back."""

    def __init__(self, message: str, *, session_id: str) -> None:
        super().__init__(message)
        self.session_id = session_id


@dataclass(slots=True)
class CleanupReport:
    workspaces: list[str] = field(default_factory=list)
    processes: int = 0


def _base36(value: int) -> str:
    digits = ""
    while value:
        value, remainder = divmod(value, 36)
        digits = _BASE36[remainder] + digits
    return digits or "0"


def generate_session_id() -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(4))
    return f"session-{_base36(int(time.time() * 1000))}-{suffix}"


class SessionManager:
    """Owns session identity and composes the process, workspace and status components."""

    def __init__(
        self,
        repo_path: Path,
        *,
        settings: OrchaSettings | None = None,
        instance_id: str | None = None,
        monitor: StatusMonitor | None = None,
        processes: ProcessRegistry | None = None,
        worktrees: WorktreeManager | None = None,
        store: SessionStore | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self.repo_path = Path(repo_path).expanduser().resolve()
        self.instance_id = instance_id

        self.status = monitor or StatusMonitor(
            self._settings.status_dir(instance_id),
            idle_timeout=self._settings.idle_timeout,
            poll_interval=self._settings.poll_interval,
        )
        self.processes = processes or ProcessRegistry()
        self.worktrees = worktrees or WorktreeManager(self.repo_path, base_dir=self._settings.worktree_dir)
        self.store = store

        self._sessions: dict[str, Session] = {}
        self._next_display_id = 1
        self._listeners: list[SessionListener] = []

        self.status.add_listener(self)
        self.processes.add_listener(self)

    def add_listener(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: SessionListener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    async def start(self) -> None:
        await self.status.start()
        self.processes.install_exit_handlers()

    async def stop(self) -> None:
        await self.processes.kill_all()
        self.processes.remove_signal_handlers()
        await self.status.stop()

    # ------------------------------------------------------------------
    # Lifecycle

    async def create_session(
        self,
        mode: SessionMode = SessionMode.CLAUDE,
        working_dir: Path | None = None,
        repo_path: Path | None = None,
        branch: str | None = None,
    ) -> Session:
        """Bring up a worker; on any failure everything created so far is torn down."""

        session_id = generate_session_id()
        if repo_path is not None and Path(repo_path).expanduser().resolve() != self.repo_path:
            raise SessionCreationError(
                f"Session repository {repo_path} differs from the managed repository {self.repo_path}",
                session_id=session_id,
            )

        display_id = self._next_display_id
        self._next_display_id += 1

        status = self.status.register_session(session_id)
        session = Session(
            id=session_id,
            display_id=display_id,
            mode=mode,
            status=status,
            repo_path=self.repo_path,
            branch=branch,
        )
        self._sessions[session_id] = session
        self._notify("on_session_created", session)

        try:
            if branch:
                session.workspace_path = await self.worktrees.create(session_id, branch)

            work_dir = session.workspace_path or Path(working_dir or session.repo_path)
            command, args = mode.launch_command()
            env = build_session_environment(
                {
                    "ORCHA_SESSION_ID": session_id,
                    "ORCHA_DISPLAY_ID": str(display_id),
                    "ORCHA_STATUS_DIR": str(self.status.status_dir),
                }
            )
            info = await self.processes.spawn(session_id, command, args, cwd=work_dir, env=env)
            session.pid = info.pid

            self.status.update_status(session_id, state=SessionState.IDLE, message=READY_MESSAGE)
            if self.store is not None:
                self.store.add(SessionMetadata.from_session(session))
        except Exception as exc:
            logger.warning(
                "Session creation failed, rolling back",
                extra={"session_id": session_id, "error": str(exc)},
            )
            await self.destroy_session(session_id)
            raise SessionCreationError(
                f"Failed to create session #{display_id}: {exc}", session_id=session_id
            ) from exc

        logger.info(
            "Created session",
            extra={"session_id": session_id, "display_id": display_id, "mode": mode.value, "branch": branch},
        )
        self._notify("on_session_updated", session)
        return session

    async def destroy_session(self, session_id: str) -> bool:
        """Tear a session down; unknown ids are a no-op."""

        session = self._sessions.get(session_id)
        if session is None:
            return False

        await self.processes.kill(session_id)

        if session.workspace_path is not None:
            try:
                await self.worktrees.remove(session_id)
            except WorkspaceError as exc:
                logger.warning(
                    "Leaving worktree for later cleanup",
                    extra={"session_id": session_id, "error": str(exc)},
                )

        self.status.unregister_session(session_id)
        del self._sessions[session_id]

        if self.store is not None:
            try:
                self.store.remove(session_id)
            except OSError as exc:
                logger.warning("Unable to update session store", extra={"session_id": session_id, "error": str(exc)})

        logger.info("Destroyed session", extra={"session_id": session_id})
        self._notify("on_session_destroyed", session_id)
        return True

    async def cleanup(self) -> CleanupReport:
        """Remove orphaned worktrees and forget processes that already exited."""

        workspaces = await self.worktrees.cleanup(set(self._sessions))
        return CleanupReport(workspaces=workspaces, processes=self.processes.prune())

    # ------------------------------------------------------------------
    # Queries

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def get_session_by_display_id(self, display_id: int) -> Session | None:
        return next((s for s in self._sessions.values() if s.display_id == display_id), None)

    def list_sessions(self) -> list[Session]:
        return sorted(self._sessions.values(), key=lambda s: s.display_id)

    def active_count(self) -> int:
        return len(self._sessions)

    def waiting_sessions(self) -> list[Session]:
        return [s for s in self.list_sessions() if s.status.state is SessionState.WAITING]

    def sessions_by_state(self) -> dict[SessionState, list[Session]]:
        grouped: dict[SessionState, list[Session]] = {state: [] for state in SessionState}
        for session in self.list_sessions():
            grouped[session.status.state].append(session)
        return grouped

    async def send_input(self, session_id: str, text: str) -> bool:
        return await self.processes.send_input(session_id, text)

    async def send_input_by_display_id(self, display_id: int, text: str) -> bool:
        session = self.get_session_by_display_id(display_id)
        if session is None:
            return False
        return await self.send_input(session.id, text)

    # ------------------------------------------------------------------
    # StatusListener

    def on_status_change(self, event: StatusEvent) -> None:
        session = self._sessions.get(event.session_id)
        if session is not None:
            self._notify("on_session_updated", session)

    def on_needs_input(self, session_id: str, prompt: str) -> None:
        logger.info("Session needs input", extra={"session_id": session_id, "prompt": prompt})

    def on_error(self, session_id: str, message: str) -> None:
        logger.warning("Session reported an error", extra={"session_id": session_id, "status_message": message})

    def on_done(self, session_id: str) -> None:
        logger.info("Session finished", extra={"session_id": session_id})

    # ------------------------------------------------------------------
    # ProcessListener

    def on_process_spawned(self, session_id: str, pid: int) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.pid = pid

    def on_process_exit(self, session_id: str, code: int | None, signal_name: str | None) -> None:
        if session_id not in self._sessions:
            return
        if code == 0:
            self.status.update_status(session_id, state=SessionState.DONE, message="Process exited")
        elif code is None:
            self.status.update_status(
                session_id, state=SessionState.ERROR, message=f"Process terminated by {signal_name}"
            )
        else:
            self.status.update_status(
                session_id, state=SessionState.ERROR, message=f"Process exited with code {code}"
            )

    def on_process_error(self, session_id: str, error: BaseException) -> None:
        if session_id in self._sessions:
            self.status.update_status(session_id, state=SessionState.ERROR, message=str(error))

    def _notify(self, method: str, *args: object) -> None:
        for listener in list(self._listeners):
            try:
                getattr(listener, method)(*args)
            except Exception:
                logger.exception("Session listener failed", extra={"event": method})


__all__ = [
    "CleanupReport",
    "READY_MESSAGE",
    "SessionCreationError",
    "SessionManager",
    "generate_session_id",
]
