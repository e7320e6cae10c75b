from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path

from orcha.panes import PaneInfo
from orcha.sessions.models import SessionState
from orcha.status.detector import NullDetector, PaneHeuristicDetector
from orcha.status.monitor import StatusMonitor, StatusSource
from orcha.status.reconcile import StatusReconciler


class StubDriver:
    def __init__(self, panes: list[PaneInfo], text: dict[str, str]) -> None:
        self.panes = panes
        self.text = text
        self.captured: list[tuple[str, int]] = []

    def list_panes(self) -> list[PaneInfo]:
        return list(self.panes)

    def capture_pane(self, pane_id: str, lines: int = 50) -> str:
        self.captured.append((pane_id, lines))
        return self.text.get(pane_id, "")


def test_refresh_matches_by_title_then_order(tmp_path: Path) -> None:
    monitor = StatusMonitor(tmp_path)
    monitor.register_session("s1")
    monitor.register_session("s2")
    driver = StubDriver(
        [PaneInfo(0, "s1", "%1"), PaneInfo(1, "zsh", "%2")],
        {"%1": "✢ Thinking…", "%2": "some output\n❯ "},
    )
    reconciler = StatusReconciler(monitor, driver, PaneHeuristicDetector(), capture_lines=40)

    changed = asyncio.run(reconciler.refresh())

    assert changed == ["s1", "s2"]
    assert monitor.get_status("s1").state is SessionState.WORKING
    assert monitor.get_status("s2").state is SessionState.WAITING
    assert monitor.get_source("s2") is StatusSource.HEURISTIC
    assert driver.captured == [("%1", 40), ("%2", 40)]


def test_match_panes_prefers_titles_over_order() -> None:
    panes = [PaneInfo(1, "b", "%2"), PaneInfo(0, "a", "%1")]

    matched = StatusReconciler.match_panes(["b", "a", "c"], panes)

    assert matched == {"b": panes[0], "a": panes[1]}


def test_self_report_is_not_overridden_by_pane_text(tmp_path: Path) -> None:
    monitor = StatusMonitor(tmp_path)
    monitor.register_session("s1")
    (tmp_path / "s1.json").write_text(
        json.dumps(
            {
                "agentId": "s1",
                "state": "working",
                "message": "running migrations",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        ),
        encoding="utf-8",
    )
    monitor.scan()
    driver = StubDriver([PaneInfo(0, "s1", "%1")], {"%1": "❯ "})
    reconciler = StatusReconciler(monitor, driver, PaneHeuristicDetector())

    changed = asyncio.run(reconciler.refresh())

    assert changed == []
    assert monitor.get_status("s1").message == "running migrations"


def test_null_detector_disables_heuristics(tmp_path: Path) -> None:
    monitor = StatusMonitor(tmp_path)
    monitor.register_session("s1")
    driver = StubDriver([PaneInfo(0, "s1", "%1")], {"%1": "✢ Thinking…"})
    reconciler = StatusReconciler(monitor, driver, NullDetector())

    assert asyncio.run(reconciler.refresh()) == []
    assert monitor.get_status("s1").state is SessionState.INITIALIZING


def test_refresh_without_sessions_skips_capture(tmp_path: Path) -> None:
    driver = StubDriver([PaneInfo(0, "zsh", "%1")], {})
    reconciler = StatusReconciler(StatusMonitor(tmp_path), driver, PaneHeuristicDetector())

    assert asyncio.run(reconciler.refresh()) == []
    assert driver.captured == []


def test_order_fallback_skips_panes_claimed_by_title() -> None:
    panes = [PaneInfo(0, "b", "%0"), PaneInfo(1, "zsh", "%1")]

    matched = StatusReconciler.match_panes(["a", "b"], panes)

    assert matched == {"a": panes[1], "b": panes[0]}


def test_refresh_uses_supplied_session_ids(tmp_path: Path) -> None:
    monitor = StatusMonitor(tmp_path)
    monitor.register_session("s1")
    monitor.register_session("stray")
    driver = StubDriver([PaneInfo(0, "zsh", "%1")], {"%1": "✢ Thinking…"})
    reconciler = StatusReconciler(monitor, driver, PaneHeuristicDetector(), sessions=lambda: ["s1"])

    changed = asyncio.run(reconciler.refresh())

    assert changed == ["s1"]
    assert monitor.get_status("stray").state is SessionState.INITIALIZING
