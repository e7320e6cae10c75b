"""Per-instance session metadata that outlives a single CLI invocation."""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import ValidationError

from .files import atomic_write_json, read_json
from .models import STORE_VERSION, SessionMetadata

logger = logging.getLogger(__name__)


class SessionStore:
    """Stores session metadata separately from status files so agent updates never clobber it."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> list[SessionMetadata]:
        document = read_json(self._path)
        if not isinstance(document, dict):
            return []

        sessions: list[SessionMetadata] = []
        for payload in document.get("sessions") or []:
            try:
                sessions.append(SessionMetadata.model_validate(payload))
            except ValidationError as exc:
                logger.warning("Dropping malformed session metadata", extra={"error": str(exc)})
        return sessions

    def save(self, sessions: list[SessionMetadata]) -> None:
        atomic_write_json(
            self._path,
            {"version": STORE_VERSION, "sessions": [meta.to_document() for meta in sessions]},
        )

    def add(self, metadata: SessionMetadata) -> None:
        sessions = [meta for meta in self.load() if meta.id != metadata.id]
        sessions.append(metadata)
        self.save(sessions)

    def remove(self, session_id: str) -> None:
        sessions = self.load()
        remaining = [meta for meta in sessions if meta.id != session_id]
        if len(remaining) != len(sessions):
            self.save(remaining)

    def clear(self) -> None:
        self._path.unlink(missing_ok=True)

    def get(self, session_id: str) -> SessionMetadata | None:
        return next((meta for meta in self.load() if meta.id == session_id), None)

    def get_by_display_id(self, display_id: int) -> SessionMetadata | None:
        return next((meta for meta in self.load() if meta.display_id == display_id), None)


__all__ = ["SessionStore"]
