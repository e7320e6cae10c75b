"""Isolated per-session workspaces."""

from .manager import WorkspaceError, WorkspaceInfo, WorktreeManager

__all__ = ["WorkspaceError", "WorkspaceInfo", "WorktreeManager"]
