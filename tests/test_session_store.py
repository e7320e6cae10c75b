from __future__ import annotations

import json
from pathlib import Path

from orcha.sessions.models import SessionMode
from orcha.storage import SessionMetadata, SessionStore


def _meta(session_id: str, display_id: int, **overrides) -> SessionMetadata:
    fields = {
        "id": session_id,
        "display_id": display_id,
        "branch": f"feature/{display_id}",
        "mode": SessionMode.CLAUDE,
        "workspace_path": f"/tmp/worktrees/{session_id}",
        "created_at": "2025-01-01T00:00:00+00:00",
    }
    fields.update(overrides)
    return SessionMetadata(**fields)


def test_add_get_and_remove(tmp_path: Path) -> None:
    store = SessionStore(tmp_path / "orcha-project" / "sessions.json")

    store.add(_meta("session-a", 1))
    store.add(_meta("session-b", 2, mode=SessionMode.SHELL, branch=None))

    assert store.get("session-a").branch == "feature/1"
    assert store.get_by_display_id(2).mode is SessionMode.SHELL
    assert store.get("missing") is None

    store.remove("session-a")
    assert [meta.id for meta in store.load()] == ["session-b"]


def test_add_replaces_existing_entry(tmp_path: Path) -> None:
    store = SessionStore(tmp_path / "sessions.json")

    store.add(_meta("session-a", 1))
    store.add(_meta("session-a", 1, branch="feature/renamed"))

    sessions = store.load()
    assert len(sessions) == 1
    assert sessions[0].branch == "feature/renamed"


def test_document_layout(tmp_path: Path) -> None:
    store = SessionStore(tmp_path / "sessions.json")
    store.add(_meta("session-a", 1))

    document = json.loads(store.path.read_text(encoding="utf-8"))

    assert document["version"] == 1
    assert document["sessions"][0] == {
        "id": "session-a",
        "displayId": 1,
        "branch": "feature/1",
        "mode": "claude",
        "workspacePath": "/tmp/worktrees/session-a",
        "createdAt": "2025-01-01T00:00:00+00:00",
    }


def test_missing_or_corrupt_file_reads_as_empty(tmp_path: Path) -> None:
    store = SessionStore(tmp_path / "sessions.json")
    assert store.load() == []

    store.path.write_text("not json at all", encoding="utf-8")
    assert store.load() == []


def test_clear_removes_file(tmp_path: Path) -> None:
    store = SessionStore(tmp_path / "sessions.json")
    store.add(_meta("session-a", 1))

    store.clear()
    store.clear()

    assert not store.path.exists()
    assert store.load() == []
