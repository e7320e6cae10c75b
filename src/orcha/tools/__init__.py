"""MCP tools agents use to report their own status to Orcha."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

from fastmcp import Context, FastMCP

from ..config import OrchaSettings
from ..status.models import INTERNAL_TO_EXTERNAL, ReportedState, StatusReport
from ..storage.files import atomic_write_json

logger = logging.getLogger(__name__)

MISSING_SESSION_WARNING = "ORCHA_SESSION_ID not set. Status not recorded."


@dataclass(slots=True)
class ToolHandles:
    orcha_status: Any
    status_dir: Path


def resolve_status_dir(settings: OrchaSettings, environ: Mapping[str, str]) -> Path:
    """Status directory handed to the worker at spawn time, else the configured default."""

    explicit = environ.get("ORCHA_STATUS_DIR")
    if explicit:
        return Path(explicit).expanduser()
    return settings.status_dir()


def read_status_snapshot(status_dir: Path) -> list[dict[str, Any]]:
    """Summarize every readable status file in ``status_dir``."""

    if not status_dir.is_dir():
        return []

    snapshot: list[dict[str, Any]] = []
    for path in sorted(status_dir.glob("*.json")):
        try:
            report = StatusReport.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            snapshot.append({"session_id": path.stem, "error": str(exc).splitlines()[0]})
            continue
        snapshot.append(
            {
                "session_id": path.stem,
                "state": INTERNAL_TO_EXTERNAL[report.state],
                "message": report.message,
                "timestamp": report.timestamp.isoformat(),
                "needs_input_prompt": report.needs_input_prompt,
                "progress": report.progress,
            }
        )
    return snapshot


def register_tools(
    server: FastMCP,
    *,
    settings: OrchaSettings,
    environ: Mapping[str, str] | None = None,
) -> ToolHandles:
    """Register Orcha's MCP tools on the server."""

    env = environ if environ is not None else os.environ
    status_dir = resolve_status_dir(settings, env)

    def _orcha_status(
        state: ReportedState,
        message: str,
        needs_input_prompt: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Record the calling agent's status for the orchestrator."""

        session_id = env.get("ORCHA_SESSION_ID")
        if not session_id:
            _emit_log(context, "warning", MISSING_SESSION_WARNING, extra={"state": state})
            return {"recorded": False, "warning": MISSING_SESSION_WARNING}

        report = StatusReport(
            agent_id=session_id,
            state=state,
            message=message,
            timestamp=datetime.now(timezone.utc),
            needs_input_prompt=needs_input_prompt,
        )
        path = status_dir / f"{session_id}.json"
        atomic_write_json(path, report.to_document())

        _emit_log(
            context,
            "debug",
            "Recorded agent status",
            extra={"session_id": session_id, "state": state, "path": str(path)},
        )
        return {
            "recorded": True,
            "session_id": session_id,
            "state": state,
            "path": str(path),
            "summary": f"Status updated: {state} - {message}",
        }

    tool_status = server.tool(
        name="orcha_status",
        description=(
            "Report your current status to the Orcha orchestrator. Use needs_input with "
            "needs_input_prompt when you are blocked on a question for the user."
        ),
    )(_orcha_status)

    return ToolHandles(orcha_status=tool_status, status_dir=status_dir)


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Log through the MCP context logger when the request carries one."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        log_method = getattr(ctx_logger, level, None) if ctx_logger is not None else None
        if callable(log_method):
            log_method(message, extra=payload)
            return

    getattr(logger, level, logger.info)(message, extra=payload)


__all__ = [
    "MISSING_SESSION_WARNING",
    "ToolHandles",
    "read_status_snapshot",
    "register_tools",
    "resolve_status_dir",
]
