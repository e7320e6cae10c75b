from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

from orcha.sessions.models import SessionState, StatusEvent
from orcha.status.detector import Detection
from orcha.status.models import StatusReport
from orcha.status.monitor import (
    IDLE_TIMEOUT_MESSAGE,
    SOURCE_LOST_MESSAGE,
    StatusMonitor,
    StatusSource,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingListener:
    def __init__(self) -> None:
        self.changes: list[StatusEvent] = []
        self.needs_input: list[tuple[str, str]] = []
        self.errors: list[tuple[str, str]] = []
        self.done: list[str] = []

    def on_status_change(self, event: StatusEvent) -> None:
        self.changes.append(event)

    def on_needs_input(self, session_id: str, prompt: str) -> None:
        self.needs_input.append((session_id, prompt))

    def on_error(self, session_id: str, message: str) -> None:
        self.errors.append((session_id, message))

    def on_done(self, session_id: str) -> None:
        self.done.append(session_id)


class ExplodingListener(RecordingListener):
    def on_status_change(self, event: StatusEvent) -> None:
        raise RuntimeError("listener bug")


def _monitor(tmp_path: Path, clock: FakeClock, **kwargs) -> tuple[StatusMonitor, RecordingListener]:
    monitor = StatusMonitor(tmp_path, clock=clock, **kwargs)
    listener = RecordingListener()
    monitor.add_listener(listener)
    return monitor, listener


def _write_report(directory: Path, session_id: str, **fields) -> Path:
    payload = {"agentId": session_id, "message": "", **fields}
    path = directory / f"{session_id}.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_register_session_is_idempotent(tmp_path: Path) -> None:
    clock = FakeClock()
    monitor, listener = _monitor(tmp_path, clock)

    first = monitor.register_session("s1")
    monitor.update_status("s1", state=SessionState.WORKING, message="busy")
    second = monitor.register_session("s1")

    assert second is first
    assert second.state is SessionState.WORKING
    assert second.message == "busy"
    assert [event.previous_state for event in listener.changes] == [None, SessionState.INITIALIZING]


def test_register_session_starts_initializing(tmp_path: Path) -> None:
    monitor, listener = _monitor(tmp_path, FakeClock())

    status = monitor.register_session("s1")

    assert status.state is SessionState.INITIALIZING
    assert status.message == "Starting up..."
    assert listener.changes[0].previous_state is None


def test_working_self_report_after_idle_emits_single_change(tmp_path: Path) -> None:
    clock = FakeClock()
    monitor, listener = _monitor(tmp_path, clock)
    monitor.register_session("s1")
    monitor.update_status("s1", state=SessionState.IDLE, message="Ready")
    listener.changes.clear()

    clock.advance(5)
    _write_report(tmp_path, "s1", state="working", message="compiling", timestamp=clock().isoformat())
    monitor.scan()
    monitor.scan()

    status = monitor.get_status("s1")
    assert status is not None
    assert status.state is SessionState.WORKING
    assert status.message == "compiling"
    assert len(listener.changes) == 1
    assert listener.changes[0].previous_state is SessionState.IDLE
    assert monitor.get_source("s1") is StatusSource.SELF_REPORT


def test_idle_timeout_preserves_last_activity(tmp_path: Path) -> None:
    clock = FakeClock()
    monitor, listener = _monitor(tmp_path, clock, idle_timeout=30)
    monitor.register_session("s1")
    monitor.update_status("s1", state=SessionState.WORKING, message="busy")
    last_real_update = monitor.get_status("s1").last_activity

    clock.advance(29)
    assert monitor.check_idle_timeouts() == []

    clock.advance(1)
    assert monitor.check_idle_timeouts() == ["s1"]

    status = monitor.get_status("s1")
    assert status.state is SessionState.IDLE
    assert status.message == IDLE_TIMEOUT_MESSAGE
    assert status.last_activity == last_real_update
    assert monitor.get_source("s1") is StatusSource.TIMEOUT
    assert listener.changes[-1].previous_state is SessionState.WORKING


def test_terminal_states_survive_idle_sweep(tmp_path: Path) -> None:
    clock = FakeClock()
    monitor, _ = _monitor(tmp_path, clock, idle_timeout=1)
    monitor.register_session("done")
    monitor.register_session("failed")
    monitor.update_status("done", state=SessionState.DONE, message="finished")
    monitor.update_status("failed", state=SessionState.ERROR, message="boom")

    clock.advance(3600)

    assert monitor.check_idle_timeouts() == []
    assert monitor.get_status("done").state is SessionState.DONE
    assert monitor.get_status("failed").state is SessionState.ERROR


def test_malformed_status_file_is_ignored_until_it_changes(tmp_path: Path) -> None:
    clock = FakeClock()
    monitor, listener = _monitor(tmp_path, clock)
    monitor.register_session("s1")
    monitor.update_status("s1", state=SessionState.WORKING, message="busy")
    listener.changes.clear()

    broken = tmp_path / "s1.json"
    broken.write_text("{not json", encoding="utf-8")
    monitor.scan()

    assert monitor.get_status("s1").message == "busy"
    assert listener.changes == []

    _write_report(tmp_path, "s1", state="finished", message="all done", timestamp=clock().isoformat())
    monitor.scan()

    assert monitor.get_status("s1").state is SessionState.DONE
    assert listener.done == ["s1"]


def test_removed_status_file_marks_source_lost(tmp_path: Path) -> None:
    clock = FakeClock()
    monitor, _ = _monitor(tmp_path, clock)
    monitor.register_session("s1")
    path = _write_report(tmp_path, "s1", state="working", message="compiling", timestamp=clock().isoformat())
    monitor.scan()

    path.unlink()
    monitor.scan()

    status = monitor.get_status("s1")
    assert status.state is SessionState.WORKING
    assert status.message == SOURCE_LOST_MESSAGE


def test_needs_input_event_and_clearing(tmp_path: Path) -> None:
    clock = FakeClock()
    monitor, listener = _monitor(tmp_path, clock)
    monitor.register_session("s1")

    _write_report(
        tmp_path,
        "s1",
        state="needs_input",
        message="blocked",
        needsInputPrompt="Apply migration?",
        timestamp=clock().isoformat(),
    )
    monitor.scan()

    assert listener.needs_input == [("s1", "Apply migration?")]
    assert monitor.get_status("s1").needs_input == "Apply migration?"

    monitor.update_status("s1", state=SessionState.WORKING, message="migrating")
    assert monitor.get_status("s1").needs_input is None


def test_terminal_events_fire_once_per_transition(tmp_path: Path) -> None:
    monitor, listener = _monitor(tmp_path, FakeClock())
    monitor.register_session("s1")

    monitor.update_status("s1", state=SessionState.ERROR, message="first")
    monitor.update_status("s1", state=SessionState.ERROR, message="second")
    monitor.update_status("s1", state=SessionState.DONE, message="recovered")
    monitor.update_status("s1", state=SessionState.DONE)

    assert listener.errors == [("s1", "first")]
    assert listener.done == ["s1"]


def test_last_activity_never_moves_backwards(tmp_path: Path) -> None:
    clock = FakeClock()
    monitor, _ = _monitor(tmp_path, clock)
    monitor.register_session("s1")
    stale = clock()
    clock.advance(10)
    monitor.update_status("s1", state=SessionState.WORKING)
    fresh = monitor.get_status("s1").last_activity

    _write_report(tmp_path, "s1", state="working", message="late file", timestamp=stale.isoformat())
    monitor.scan()

    status = monitor.get_status("s1")
    assert status.message == "late file"
    assert status.last_activity == fresh


def test_listener_failures_do_not_propagate(tmp_path: Path) -> None:
    monitor = StatusMonitor(tmp_path, clock=FakeClock())
    healthy = RecordingListener()
    monitor.add_listener(ExplodingListener())
    monitor.add_listener(healthy)

    monitor.register_session("s1")

    assert len(healthy.changes) == 1


def test_heuristics_only_lift_idle_or_revise_their_own_state(tmp_path: Path) -> None:
    clock = FakeClock()
    monitor, _ = _monitor(tmp_path, clock)
    monitor.register_session("s1")

    assert monitor.apply_detection("s1", Detection(SessionState.IDLE, "Idle")) is False
    assert monitor.apply_detection("s1", Detection(SessionState.WORKING, "Computing...")) is True
    assert monitor.get_source("s1") is StatusSource.HEURISTIC
    assert monitor.apply_detection("s1", Detection(SessionState.WAITING, "Awaiting input")) is True
    assert monitor.get_status("s1").state is SessionState.WAITING

    _write_report(tmp_path, "s1", state="working", message="self reported", timestamp=clock().isoformat())
    monitor.scan()

    assert monitor.apply_detection("s1", Detection(SessionState.WAITING, "Awaiting input")) is False
    assert monitor.get_status("s1").message == "self reported"


def test_heuristics_never_touch_terminal_states(tmp_path: Path) -> None:
    monitor, _ = _monitor(tmp_path, FakeClock())
    monitor.register_session("s1")
    monitor.update_status("s1", state=SessionState.DONE, message="Process exited")

    assert monitor.apply_detection("s1", Detection(SessionState.WORKING, "Computing...")) is False
    assert monitor.apply_detection("unknown", Detection(SessionState.WORKING, "Computing...")) is False


def test_write_status_file_uses_external_vocabulary(tmp_path: Path) -> None:
    monitor, _ = _monitor(tmp_path, FakeClock())
    status = monitor.update_status("s1", state=SessionState.WAITING, message="blocked", needs_input="Proceed?")

    path = monitor.write_status_file("s1", status)
    payload = json.loads(path.read_text(encoding="utf-8"))

    assert payload["agentId"] == "s1"
    assert payload["state"] == "needs_input"
    assert payload["needsInputPrompt"] == "Proceed?"


def test_unregister_session_removes_status_file(tmp_path: Path) -> None:
    monitor, _ = _monitor(tmp_path, FakeClock())
    status = monitor.register_session("s1")
    path = monitor.write_status_file("s1", status)

    monitor.unregister_session("s1")

    assert not path.exists()
    assert monitor.get_status("s1") is None
    assert monitor.all_statuses() == {}


def test_status_report_accepts_both_vocabularies() -> None:
    external = StatusReport.model_validate(
        {"agentId": "s1", "state": "finished", "timestamp": "2025-01-01T00:00:00"}
    )
    internal = StatusReport.model_validate(
        {"agentId": "s1", "state": "waiting", "timestamp": "2025-01-01T00:00:00Z"}
    )

    assert external.state is SessionState.DONE
    assert external.timestamp.tzinfo is not None
    assert internal.state is SessionState.WAITING


def test_idle_timer_fires_inside_event_loop(tmp_path: Path) -> None:
    async def scenario() -> SessionState:
        monitor = StatusMonitor(tmp_path, idle_timeout=0.05, poll_interval=10)
        monitor.register_session("s1")
        monitor.update_status("s1", state=SessionState.WORKING, message="busy")
        await asyncio.sleep(0.3)
        return monitor.get_status("s1").state

    assert asyncio.run(scenario()) is SessionState.IDLE


def test_start_loads_existing_status_files(tmp_path: Path) -> None:
    status_dir = tmp_path / "agents"
    status_dir.mkdir()
    _write_report(
        status_dir,
        "s1",
        state="working",
        message="resumed",
        timestamp=datetime.now(timezone.utc).isoformat(),
    )

    async def scenario() -> StatusMonitor:
        monitor = StatusMonitor(status_dir, poll_interval=0.05)
        await monitor.start()
        assert monitor.running
        await monitor.stop()
        return monitor

    monitor = asyncio.run(scenario())

    assert monitor.get_status("s1").message == "resumed"
    assert not monitor.running


def test_poll_loop_picks_up_new_files(tmp_path: Path) -> None:
    async def scenario() -> StatusMonitor:
        monitor = StatusMonitor(tmp_path, poll_interval=0.02)
        await monitor.start()
        monitor.register_session("s1")
        _write_report(
            tmp_path,
            "s1",
            state="working",
            message="from agent",
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        await asyncio.sleep(0.2)
        await monitor.stop()
        return monitor

    monitor = asyncio.run(scenario())

    assert monitor.get_status("s1").message == "from agent"


def test_undecodable_and_mistyped_files_are_ignored(tmp_path: Path) -> None:
    clock = FakeClock()
    monitor, listener = _monitor(tmp_path, clock)
    monitor.register_session("s1")
    monitor.register_session("s2")
    listener.changes.clear()

    (tmp_path / "s1.json").write_bytes(b'{"agentId": "s1", "message": "\xff\xfe"}')
    _write_report(tmp_path, "s2", state=5, timestamp=clock().isoformat())
    monitor.scan()

    assert monitor.get_status("s1").state is SessionState.INITIALIZING
    assert monitor.get_status("s2").state is SessionState.INITIALIZING
    assert listener.changes == []


def test_poll_loop_survives_a_bad_status_file(tmp_path: Path) -> None:
    async def scenario() -> StatusMonitor:
        monitor = StatusMonitor(tmp_path, poll_interval=0.02)
        await monitor.start()
        monitor.register_session("s1")
        (tmp_path / "bad.json").write_bytes(b"\xff\xff")
        await asyncio.sleep(0.1)
        _write_report(
            tmp_path,
            "s1",
            state="working",
            message="still listening",
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        await asyncio.sleep(0.2)
        assert monitor.running
        await monitor.stop()
        return monitor

    monitor = asyncio.run(scenario())

    assert monitor.get_status("s1").state is SessionState.WORKING
    assert monitor.get_status("s1").message == "still listening"
