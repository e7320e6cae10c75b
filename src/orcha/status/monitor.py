"""Per-session status aggregation from self-report files, pane heuristics and idle timeouts."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from ..sessions.models import (
    SessionState,
    SessionStatus,
    StatusEvent,
    StatusListener,
)
from ..storage.files import atomic_write_json
from .detector import Detection
from .models import StatusReport

logger = logging.getLogger(__name__)

IDLE_TIMEOUT_MESSAGE = "Idle (no recent activity)"
SOURCE_LOST_MESSAGE = "Status source lost"
STARTING_MESSAGE = "Starting up..."

_HEURISTIC_OVERRIDABLE = (SessionState.IDLE, SessionState.INITIALIZING)


class StatusSource(str, Enum):
    """Which signal last wrote a session's status."""

    INTERNAL = "internal"
    SELF_REPORT = "self_report"
    HEURISTIC = "heuristic"
    TIMEOUT = "timeout"


@dataclass(slots=True)
class _Entry:
    status: SessionStatus
    source: StatusSource
    updated_at: datetime


class StatusMonitor:
    """Owns every session's :class:`SessionStatus` and emits transition events.

    Status files in ``status_dir`` (``<session-id>.json``) are polled for changes
    every ``poll_interval`` seconds while the monitor is running. Each update
    re-arms a per-session idle timer; a session still ``working`` when its timer
    fires is moved to ``idle`` without touching ``last_activity``. The same check
    also runs as a sweep on every poll so timers lost to suspension are caught.
    """

    def __init__(
        self,
        status_dir: Path,
        *,
        idle_timeout: float = 30.0,
        poll_interval: float = 1.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._status_dir = Path(status_dir)
        self._idle_timeout = idle_timeout
        self._poll_interval = poll_interval
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._entries: dict[str, _Entry] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._signatures: dict[Path, tuple[int, int]] = {}
        self._listeners: list[StatusListener] = []
        self._poll_task: asyncio.Task[None] | None = None

    @property
    def status_dir(self) -> Path:
        return self._status_dir

    @property
    def idle_timeout(self) -> float:
        return self._idle_timeout

    @property
    def running(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StatusListener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    async def start(self) -> None:
        if self.running:
            return
        self._status_dir.mkdir(parents=True, exist_ok=True)
        self.scan()
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.debug("Status monitor started", extra={"status_dir": str(self._status_dir)})

    async def stop(self) -> None:
        if self._poll_task is None:
            return
        self._poll_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._poll_task
        self._poll_task = None
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            try:
                self.scan()
                self.check_idle_timeouts()
            except Exception:
                logger.exception("Status poll failed", extra={"status_dir": str(self._status_dir)})

    # ------------------------------------------------------------------
    # Queries

    def get_status(self, session_id: str) -> SessionStatus | None:
        entry = self._entries.get(session_id)
        return entry.status if entry else None

    def get_source(self, session_id: str) -> StatusSource | None:
        entry = self._entries.get(session_id)
        return entry.source if entry else None

    def all_statuses(self) -> dict[str, SessionStatus]:
        return {session_id: entry.status for session_id, entry in self._entries.items()}

    # ------------------------------------------------------------------
    # Writers

    def register_session(self, session_id: str) -> SessionStatus:
        """Start tracking a session in ``initializing``; repeated calls change nothing."""

        existing = self._entries.get(session_id)
        if existing is not None:
            return existing.status

        status = SessionStatus(
            state=SessionState.INITIALIZING,
            message=STARTING_MESSAGE,
            last_activity=self._clock(),
        )
        self._entries[session_id] = _Entry(status, StatusSource.INTERNAL, self._clock())
        self._emit_transition(session_id, status, None)
        self._reset_idle_timer(session_id)
        return status

    def update_status(
        self,
        session_id: str,
        *,
        state: SessionState | None = None,
        message: str | None = None,
        needs_input: str | None = None,
        progress: float | None = None,
    ) -> SessionStatus:
        """Merge the given fields into the session's status and stamp activity now."""

        current = self.get_status(session_id)
        new_state = state or (current.state if current else SessionState.IDLE)
        if needs_input is None and current is not None and new_state is SessionState.WAITING:
            needs_input = current.needs_input
        if progress is None and current is not None:
            progress = current.progress

        update = SessionStatus(
            state=new_state,
            message=message if message is not None else (current.message if current else ""),
            last_activity=self._clock(),
            needs_input=needs_input,
            progress=progress,
        )
        return self._apply(session_id, update, StatusSource.INTERNAL)

    def apply_detection(self, session_id: str, detection: Detection | None) -> bool:
        """Apply a pane-heuristic guess if it may override the recorded state.

        Heuristics only lift sessions out of ``idle``/``initializing`` or revise
        a state they set themselves; self-reports and process outcomes win.
        """

        entry = self._entries.get(session_id)
        if entry is None or detection is None:
            return False

        current = entry.status
        if current.state in _HEURISTIC_OVERRIDABLE:
            if detection.state is SessionState.IDLE:
                return False
        elif entry.source is not StatusSource.HEURISTIC:
            return False

        if detection.state is current.state and detection.message == current.message:
            return False

        update = SessionStatus(
            state=detection.state,
            message=detection.message,
            last_activity=self._clock(),
            progress=current.progress,
        )
        self._apply(session_id, update, StatusSource.HEURISTIC)
        return True

    def unregister_session(self, session_id: str) -> None:
        timer = self._timers.pop(session_id, None)
        if timer is not None:
            timer.cancel()
        self._entries.pop(session_id, None)

        path = self.status_file_path(session_id)
        self._signatures.pop(path, None)
        path.unlink(missing_ok=True)

    def write_status_file(self, session_id: str, status: SessionStatus) -> Path:
        path = self.status_file_path(session_id)
        atomic_write_json(path, StatusReport.from_status(session_id, status).to_document())
        return path

    def status_file_path(self, session_id: str) -> Path:
        return self._status_dir / f"{session_id}.json"

    # ------------------------------------------------------------------
    # File ingestion

    def scan(self) -> None:
        """Ingest status files that appeared or changed since the previous scan."""

        seen: dict[Path, tuple[int, int]] = {}
        for path in sorted(self._status_dir.glob("*.json")):
            try:
                stat = path.stat()
            except FileNotFoundError:
                continue
            signature = (stat.st_mtime_ns, stat.st_size)
            seen[path] = signature
            if self._signatures.get(path) != signature:
                self._signatures[path] = signature
                self.ingest_file(path)

        for path in [path for path in self._signatures if path not in seen]:
            del self._signatures[path]
            self.handle_file_removed(path)

    def ingest_file(self, path: Path) -> bool:
        session_id = path.stem
        try:
            report = StatusReport.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.debug(
                "Ignoring unreadable status file",
                extra={"path": str(path), "error": str(exc)},
            )
            return False

        self._apply(session_id, report.to_status(), StatusSource.SELF_REPORT)
        return True

    def handle_file_removed(self, path: Path) -> None:
        # A vanished file does not mean the session died.
        entry = self._entries.get(path.stem)
        if entry is not None:
            entry.status.message = SOURCE_LOST_MESSAGE

    # ------------------------------------------------------------------
    # Idle timeout

    def check_idle_timeouts(self) -> list[str]:
        """Sweep for ``working`` sessions silent for at least ``idle_timeout`` seconds."""

        now = self._clock()
        expired: list[str] = []
        for session_id in list(self._entries):
            status = self._entries[session_id].status
            if status.state is not SessionState.WORKING:
                continue
            if (now - status.last_activity).total_seconds() >= self._idle_timeout:
                self._handle_idle_timeout(session_id)
                expired.append(session_id)
        return expired

    def _reset_idle_timer(self, session_id: str) -> None:
        existing = self._timers.pop(session_id, None)
        if existing is not None:
            existing.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Outside an event loop the periodic sweep is the only timeout source.
            return
        self._timers[session_id] = loop.call_later(
            self._idle_timeout, self._handle_idle_timeout, session_id
        )

    def _handle_idle_timeout(self, session_id: str) -> None:
        self._timers.pop(session_id, None)
        entry = self._entries.get(session_id)
        if entry is None or entry.status.state is not SessionState.WORKING:
            return

        update = SessionStatus(
            state=SessionState.IDLE,
            message=IDLE_TIMEOUT_MESSAGE,
            last_activity=entry.status.last_activity,
            progress=entry.status.progress,
        )
        logger.debug("Idle timeout reached", extra={"session_id": session_id})
        self._apply(session_id, update, StatusSource.TIMEOUT)

    # ------------------------------------------------------------------
    # Transition core

    def _apply(self, session_id: str, update: SessionStatus, source: StatusSource) -> SessionStatus:
        if update.state is not SessionState.WAITING:
            update.needs_input = None

        entry = self._entries.get(session_id)
        if entry is None:
            previous_state = None
            status = update
            self._entries[session_id] = _Entry(status, source, self._clock())
        else:
            previous_state = entry.status.state
            status = entry.status
            status.state = update.state
            status.message = update.message
            status.last_activity = max(status.last_activity, update.last_activity)
            status.needs_input = update.needs_input
            status.progress = update.progress
            entry.source = source
            entry.updated_at = self._clock()

        self._reset_idle_timer(session_id)

        if previous_state is not status.state:
            self._emit_transition(session_id, status, previous_state)
        return status

    def _emit_transition(
        self,
        session_id: str,
        status: SessionStatus,
        previous_state: SessionState | None,
    ) -> None:
        event = StatusEvent(
            session_id=session_id,
            status=status.snapshot(),
            previous_state=previous_state,
            timestamp=self._clock(),
        )
        for listener in list(self._listeners):
            self._guard(listener.on_status_change, event)

        if status.state is SessionState.WAITING and status.needs_input:
            for listener in list(self._listeners):
                self._guard(listener.on_needs_input, session_id, status.needs_input)
        elif status.state is SessionState.ERROR:
            for listener in list(self._listeners):
                self._guard(listener.on_error, session_id, status.message)
        elif status.state is SessionState.DONE:
            for listener in list(self._listeners):
                self._guard(listener.on_done, session_id)

    @staticmethod
    def _guard(callback: Callable[..., Any], *args: Any) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception("Status listener failed", extra={"callback": getattr(callback, "__qualname__", None)})


__all__ = [
    "IDLE_TIMEOUT_MESSAGE",
    "SOURCE_LOST_MESSAGE",
    "StatusMonitor",
    "StatusSource",
]
