"""tmux-backed pane driver built on libtmux."""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import libtmux
from libtmux.exc import LibTmuxException

logger = logging.getLogger(__name__)


class PaneDriverError(RuntimeError):
    """Raised when a pane operation fails."""


class PaneDriverUnavailableError(PaneDriverError):
    """Raised when the tmux executable cannot be located."""


@dataclass(frozen=True, slots=True)
class PaneInfo:
    index: int
    title: str
    pane_id: str


class PaneDriver(Protocol):
    """Operations Orcha needs from a terminal multiplexer."""

    group: str

    def create_group(self, working_dir: Path | None = None) -> None:
        ...

    def group_exists(self, group: str | None = None) -> bool:
        ...

    def kill_group(self) -> None:
        ...

    def create_pane(self, session_id: str, working_dir: Path) -> str:
        ...

    def run_in_pane(self, session_id: str, command: str) -> None:
        ...

    def send_input(self, session_id: str, text: str) -> None:
        ...

    def kill_pane(self, session_id: str) -> None:
        ...

    def capture(self, session_id: str, lines: int = 50) -> str:
        ...

    def capture_pane(self, pane_id: str, lines: int = 50) -> str:
        ...

    def list_panes(self) -> list[PaneInfo]:
        ...

    def attach(self) -> None:
        ...


class TmuxPaneDriver:
    """Drives one tmux session (the pane group) holding one pane per Orcha session."""

    def __init__(self, group: str, *, server: Any | None = None) -> None:
        self.group = group
        self._server = server
        self._panes: dict[str, str] = {}

    @staticmethod
    def is_available() -> bool:
        return shutil.which("tmux") is not None

    @staticmethod
    def ensure_available() -> None:
        if not TmuxPaneDriver.is_available():
            raise PaneDriverUnavailableError(
                "tmux is not installed or not on PATH (apt install tmux / brew install tmux)"
            )

    @staticmethod
    def inside_tmux() -> bool:
        return bool(os.environ.get("TMUX"))

    @property
    def server(self) -> Any:
        if self._server is None:
            self._server = libtmux.Server()
        return self._server

    def _cmd(self, *args: str) -> list[str]:
        result = self.server.cmd(*args)
        if result.stderr:
            raise PaneDriverError(f"tmux {args[0]} failed: {' '.join(result.stderr)}")
        return list(result.stdout or [])

    # ------------------------------------------------------------------
    # Pane group

    def group_exists(self, group: str | None = None) -> bool:
        try:
            return bool(self.server.has_session(group or self.group))
        except LibTmuxException:
            return False

    def create_group(self, working_dir: Path | None = None) -> None:
        if self.group_exists():
            raise PaneDriverError(f"tmux session '{self.group}' already exists")
        args = ["new-session", "-d", "-s", self.group, "-x", "200", "-y", "50"]
        if working_dir is not None:
            args.extend(["-c", str(working_dir)])
        self._cmd(*args)
        logger.debug("Created pane group", extra={"group": self.group})

    def kill_group(self) -> None:
        if self.group_exists():
            self._cmd("kill-session", "-t", self.group)
        self._panes.clear()

    def attach(self) -> None:
        if not self.group_exists():
            raise PaneDriverError(f"tmux session '{self.group}' does not exist")
        if self.inside_tmux():
            self._cmd("switch-client", "-t", self.group)
        else:
            subprocess.run(["tmux", "attach-session", "-t", self.group], check=False)

    # ------------------------------------------------------------------
    # Panes

    def list_panes(self) -> list[PaneInfo]:
        try:
            lines = self._cmd(
                "list-panes", "-t", self.group, "-F", "#{pane_index}\t#{pane_title}\t#{pane_id}"
            )
        except PaneDriverError:
            return []

        panes: list[PaneInfo] = []
        for line in lines:
            index, _, rest = line.partition("\t")
            title, _, pane_id = rest.partition("\t")
            if index.isdigit():
                panes.append(PaneInfo(index=int(index), title=title, pane_id=pane_id))
        return panes

    def create_pane(self, session_id: str, working_dir: Path) -> str:
        if not self.group_exists():
            self.create_group(working_dir)
            pane_id = self.list_panes()[0].pane_id
        else:
            existing = self.list_panes()
            if len(existing) == 1 and not self._panes:
                pane_id = existing[0].pane_id
                self._cmd("send-keys", "-t", pane_id, f"cd {shlex.quote(str(working_dir))}", "Enter")
            else:
                split = "-v" if len(existing) % 2 == 0 else "-h"
                pane_id = self._cmd(
                    "split-window", split, "-t", self.group, "-c", str(working_dir),
                    "-P", "-F", "#{pane_id}",
                )[0]

        self._cmd("select-pane", "-t", pane_id, "-T", session_id)
        self._cmd("select-layout", "-t", self.group, "tiled")
        self._panes[session_id] = pane_id
        return pane_id

    def pane_id(self, session_id: str) -> str:
        """Return the pane for a session, falling back to pane titles set by earlier runs."""

        if session_id in self._panes:
            return self._panes[session_id]
        for pane in self.list_panes():
            if pane.title == session_id:
                self._panes[session_id] = pane.pane_id
                return pane.pane_id
        raise PaneDriverError(f"No pane found for session {session_id}")

    def run_in_pane(self, session_id: str, command: str) -> None:
        self._cmd("send-keys", "-t", self.pane_id(session_id), command, "Enter")

    def send_input(self, session_id: str, text: str) -> None:
        pane_id = self.pane_id(session_id)
        self._cmd("send-keys", "-t", pane_id, "-l", text)
        self._cmd("send-keys", "-t", pane_id, "Enter")

    def focus(self, session_id: str) -> None:
        self._cmd("select-pane", "-t", self.pane_id(session_id))

    def kill_pane(self, session_id: str) -> None:
        try:
            pane_id = self.pane_id(session_id)
            self._cmd("kill-pane", "-t", pane_id)
        except PaneDriverError as exc:
            logger.debug("Pane already gone", extra={"session_id": session_id, "error": str(exc)})
        self._panes.pop(session_id, None)

        if self._panes and self.group_exists():
            self._cmd("select-layout", "-t", self.group, "tiled")

    def capture(self, session_id: str, lines: int = 50) -> str:
        try:
            return "\n".join(self._cmd("capture-pane", "-p", "-t", self.pane_id(session_id), "-S", f"-{lines}"))
        except PaneDriverError:
            return ""

    def capture_pane(self, pane_id: str, lines: int = 50) -> str:
        try:
            return "\n".join(self._cmd("capture-pane", "-p", "-t", pane_id, "-S", f"-{lines}"))
        except PaneDriverError:
            return ""


__all__ = [
    "PaneDriver",
    "PaneDriverError",
    "PaneDriverUnavailableError",
    "PaneInfo",
    "TmuxPaneDriver",
]
