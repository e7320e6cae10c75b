"""Feeds pane-text heuristics into the status monitor."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Callable, Iterable, Sequence

from ..panes.tmux import PaneDriver, PaneInfo
from .detector import StatusDetector
from .monitor import StatusMonitor

logger = logging.getLogger(__name__)


class StatusReconciler:
    """Captures each session's pane and offers the detected state to the monitor.

    Panes are matched to sessions by title (the session id). Panes created
    outside Orcha keep their shell title, so unmatched sessions fall back to the
    remaining untitled panes in index order. ``sessions`` supplies the ids to
    refresh; without it every session the monitor tracks is refreshed.
    """

    def __init__(
        self,
        monitor: StatusMonitor,
        driver: PaneDriver,
        detector: StatusDetector,
        *,
        capture_lines: int = 30,
        interval: float = 2.0,
        sessions: Callable[[], Iterable[str]] | None = None,
    ) -> None:
        self._monitor = monitor
        self._driver = driver
        self._detector = detector
        self._capture_lines = capture_lines
        self._interval = interval
        self._sessions = sessions
        self._task: asyncio.Task[None] | None = None

    @staticmethod
    def match_panes(session_ids: Sequence[str], panes: Sequence[PaneInfo]) -> dict[str, PaneInfo]:
        """Match by title first; leftover sessions take untitled panes in index order."""

        wanted = set(session_ids)
        by_title = {pane.title: pane for pane in panes if pane.title in wanted}
        free = [pane for pane in sorted(panes, key=lambda pane: pane.index) if pane.title not in wanted]
        matched: dict[str, PaneInfo] = {}
        for session_id in session_ids:
            pane = by_title.get(session_id)
            if pane is None and free:
                pane = free.pop(0)
            if pane is not None:
                matched[session_id] = pane
        return matched

    def _capture_all(self, session_ids: Sequence[str]) -> dict[str, str]:
        matched = self.match_panes(session_ids, self._driver.list_panes())
        return {
            session_id: self._driver.capture_pane(pane.pane_id, self._capture_lines)
            for session_id, pane in matched.items()
        }

    async def refresh(self, session_ids: Sequence[str] | None = None) -> list[str]:
        """Run one detection pass and return the sessions whose status changed."""

        if session_ids is not None:
            ids = list(session_ids)
        elif self._sessions is not None:
            ids = list(self._sessions())
        else:
            ids = list(self._monitor.all_statuses())
        if not ids:
            return []

        captures = await asyncio.to_thread(self._capture_all, ids)
        changed: list[str] = []
        for session_id, text in captures.items():
            if self._monitor.apply_detection(session_id, self._detector.detect(text)):
                changed.append(session_id)
        return changed

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _loop(self) -> None:
        while True:
            try:
                await self.refresh()
            except Exception:
                logger.exception("Pane status refresh failed")
            await asyncio.sleep(self._interval)


__all__ = ["StatusReconciler"]
