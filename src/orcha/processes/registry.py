"""Tracks worker processes per session and tears down their process trees."""

from __future__ import annotations

import asyncio
import atexit
import contextlib
import logging
import signal
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

from ..sessions.models import ProcessListener
from .utils import signal_name, signal_process_tree

logger = logging.getLogger(__name__)

OUTPUT_TAIL_LINES = 200
_EXIT_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ProcessRegistryError(RuntimeError):
    """Base class for process registry errors."""


class ProcessSpawnError(ProcessRegistryError):
    """Raised when a worker process cannot be started."""


@dataclass(slots=True)
class ProcessEntry:
    session_id: str
    pid: int
    command_line: tuple[str, ...]
    started_at: datetime
    process: asyncio.subprocess.Process = field(repr=False)
    exit_code: int | None = None
    signal_name: str | None = None
    exited: bool = False
    output: deque[str] = field(default_factory=lambda: deque(maxlen=OUTPUT_TAIL_LINES), repr=False)
    waiter: asyncio.Task[None] | None = field(default=None, repr=False)


@dataclass(slots=True)
class ProcessInfo:
    """Read-only view of a tracked process."""

    session_id: str
    pid: int
    command_line: tuple[str, ...]
    started_at: datetime
    exit_code: int | None
    signal_name: str | None
    exited: bool

    @classmethod
    def from_entry(cls, entry: ProcessEntry) -> "ProcessInfo":
        return cls(
            session_id=entry.session_id,
            pid=entry.pid,
            command_line=entry.command_line,
            started_at=entry.started_at,
            exit_code=entry.exit_code,
            signal_name=entry.signal_name,
            exited=entry.exited,
        )


class ProcessRegistry:
    """One worker process per session id, with exit observed in the background."""

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._entries: dict[str, ProcessEntry] = {}
        self._listeners: list[ProcessListener] = []
        self._signal_loop: asyncio.AbstractEventLoop | None = None
        self._atexit_installed = False

    def add_listener(self, listener: ProcessListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ProcessListener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    async def spawn(
        self,
        session_id: str,
        command: str,
        args: Sequence[str] = (),
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ProcessInfo:
        existing = self._entries.get(session_id)
        if existing is not None and not existing.exited:
            raise ProcessSpawnError(
                f"Session {session_id} already has an active process (pid {existing.pid})"
            )

        command_line = (command, *args)
        try:
            process = await asyncio.create_subprocess_exec(
                *command_line,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd is not None else None,
                env=dict(env) if env is not None else None,
            )
        except OSError as exc:
            raise ProcessSpawnError(f"Failed to start {command}: {exc}") from exc

        entry = ProcessEntry(
            session_id=session_id,
            pid=process.pid,
            command_line=command_line,
            started_at=self._clock(),
            process=process,
        )
        self._entries[session_id] = entry
        entry.waiter = asyncio.create_task(self._watch(entry))

        logger.info(
            "Spawned worker process",
            extra={"session_id": session_id, "pid": process.pid, "command": " ".join(command_line)},
        )
        for listener in list(self._listeners):
            self._guard(listener.on_process_spawned, session_id, process.pid)
        return ProcessInfo.from_entry(entry)

    async def _watch(self, entry: ProcessEntry) -> None:
        process = entry.process
        drains = [
            asyncio.create_task(self._drain(process.stdout, entry)),
            asyncio.create_task(self._drain(process.stderr, entry)),
        ]
        try:
            returncode = await process.wait()
            # Grandchildren may keep the pipes open; give readers a moment, not forever.
            await asyncio.wait(drains, timeout=1.0)
        except asyncio.CancelledError:
            for task in drains:
                task.cancel()
            raise
        except Exception as exc:
            logger.exception("Lost track of worker process", extra={"session_id": entry.session_id})
            for listener in list(self._listeners):
                self._guard(listener.on_process_error, entry.session_id, exc)
            return

        self._record_exit(entry, returncode)

    @staticmethod
    async def _drain(stream: asyncio.StreamReader | None, entry: ProcessEntry) -> None:
        # Unread pipes would eventually block the worker on a full buffer.
        if stream is None:
            return
        async for raw in stream:
            entry.output.append(raw.decode("utf-8", errors="replace").rstrip("\n"))

    def _record_exit(self, entry: ProcessEntry, returncode: int) -> None:
        if entry.exited:
            return
        entry.exited = True
        if returncode < 0:
            entry.signal_name = signal_name(-returncode)
        else:
            entry.exit_code = returncode

        logger.info(
            "Worker process exited",
            extra={
                "session_id": entry.session_id,
                "pid": entry.pid,
                "exit_code": entry.exit_code,
                "signal": entry.signal_name,
            },
        )
        for listener in list(self._listeners):
            self._guard(listener.on_process_exit, entry.session_id, entry.exit_code, entry.signal_name)

    # ------------------------------------------------------------------
    # Signalling

    async def kill(self, session_id: str, sig: int = signal.SIGTERM) -> bool:
        """Signal the session's process tree; True only if a live process was signalled."""

        entry = self._entries.get(session_id)
        if entry is None or entry.exited:
            return False
        signalled = await asyncio.to_thread(signal_process_tree, entry.pid, sig)
        logger.debug(
            "Signalled process tree",
            extra={"session_id": session_id, "pid": entry.pid, "signal": signal_name(sig), "ok": signalled},
        )
        return signalled

    async def kill_all(self, sig: int = signal.SIGTERM) -> int:
        """Signal every active process concurrently; returns once every attempt has finished."""

        targets = [entry.session_id for entry in self.active()]
        results = await asyncio.gather(*(self.kill(session_id, sig) for session_id in targets))
        return sum(1 for ok in results if ok)

    async def wait(self, session_id: str, timeout: float | None = None) -> ProcessInfo | None:
        """Wait until the session's exit has been recorded."""

        entry = self._entries.get(session_id)
        if entry is None:
            return None
        if entry.waiter is not None and not entry.exited:
            await asyncio.wait_for(asyncio.shield(entry.waiter), timeout)
        return ProcessInfo.from_entry(entry)

    def force_kill_all(self) -> None:
        """SIGKILL every live process tree synchronously."""

        for entry in self.active():
            signal_process_tree(entry.pid, signal.SIGKILL)

    def install_exit_handlers(self) -> None:
        """Kill tracked processes when the interpreter exits or receives SIGINT/SIGTERM."""

        if not self._atexit_installed:
            atexit.register(self.force_kill_all)
            self._atexit_installed = True

        if self._signal_loop is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        for signum in _EXIT_SIGNALS:
            try:
                loop.add_signal_handler(signum, self._handle_exit_signal, signum)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handlers unavailable", extra={"signal": signal_name(signum)})
                return
        self._signal_loop = loop

    def remove_signal_handlers(self) -> None:
        """Restore default SIGINT/SIGTERM handling; the atexit hook stays armed."""

        if self._signal_loop is not None:
            for signum in _EXIT_SIGNALS:
                self._signal_loop.remove_signal_handler(signum)
            self._signal_loop = None

    def _handle_exit_signal(self, signum: int) -> None:
        logger.info("Received exit signal, killing workers", extra={"signal": signal_name(signum)})
        self.force_kill_all()
        raise SystemExit(128 + signum)

    # ------------------------------------------------------------------
    # Bookkeeping

    async def send_input(self, session_id: str, text: str) -> bool:
        """Write ``text`` and a newline to the worker's stdin."""

        entry = self._entries.get(session_id)
        if entry is None or entry.exited or entry.process.stdin is None:
            return False
        try:
            entry.process.stdin.write((text + "\n").encode("utf-8"))
            await entry.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            return False
        return True

    def output_tail(self, session_id: str, lines: int = 20) -> list[str]:
        entry = self._entries.get(session_id)
        if entry is None:
            return []
        return list(entry.output)[-lines:]

    def get(self, session_id: str) -> ProcessInfo | None:
        entry = self._entries.get(session_id)
        return ProcessInfo.from_entry(entry) if entry else None

    def all(self) -> list[ProcessInfo]:
        return [ProcessInfo.from_entry(entry) for entry in self._entries.values()]

    def active(self) -> list[ProcessInfo]:
        return [ProcessInfo.from_entry(entry) for entry in self._entries.values() if not entry.exited]

    def is_active(self, session_id: str) -> bool:
        entry = self._entries.get(session_id)
        return entry is not None and not entry.exited

    def unregister(self, session_id: str) -> bool:
        return self._entries.pop(session_id, None) is not None

    def active_count(self) -> int:
        return sum(1 for entry in self._entries.values() if not entry.exited)

    def total_count(self) -> int:
        return len(self._entries)

    def prune(self) -> int:
        """Drop exited entries and return how many were removed."""

        exited = [session_id for session_id, entry in self._entries.items() if entry.exited]
        for session_id in exited:
            del self._entries[session_id]
        return len(exited)

    @staticmethod
    def _guard(callback: Callable[..., Any], *args: Any) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception("Process listener failed", extra={"callback": getattr(callback, "__qualname__", None)})


__all__ = [
    "ProcessEntry",
    "ProcessInfo",
    "ProcessRegistry",
    "ProcessRegistryError",
    "ProcessSpawnError",
]
