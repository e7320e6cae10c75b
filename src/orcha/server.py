"""FastMCP server bootstrap for the Orcha agent self-report channel."""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Mapping, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .config import OrchaSettings, get_settings
from .tools import read_status_snapshot, register_tools


def configure_logging(level: str) -> None:
    """Configure root logging for Orcha processes."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def create_server(
    settings: Optional[OrchaSettings] = None,
    environ: Mapping[str, str] | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with the status tool and resource."""

    settings = settings or get_settings()
    env = environ if environ is not None else os.environ

    server = FastMCP(
        name="Orcha MCP",
        version=__version__,
        instructions=(
            "Orcha runs several coding agents side by side. Call orcha_status whenever "
            "you start working, finish, hit an error, or need input from the user."
        ),
    )

    handles = register_tools(server, settings=settings, environ=env)

    @server.resource(
        "resource://orcha/status",
        name="orcha_status_snapshot",
        title="Orcha Agent Status",
        description="Current self-reported status of every agent in this status directory.",
        mime_type="application/json",
        tags={"status"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string with every agent status file in the directory."""

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "session_id": env.get("ORCHA_SESSION_ID"),
            "status_dir": str(handles.status_dir),
            "agents": read_status_snapshot(handles.status_dir),
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the Orcha MCP server over stdio."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching Orcha MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "status_dir": str(getattr(server, "tool_handles").status_dir),
            "session_id": os.environ.get("ORCHA_SESSION_ID"),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
