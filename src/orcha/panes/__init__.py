"""Terminal pane drivers."""

from .tmux import (
    PaneDriver,
    PaneDriverError,
    PaneDriverUnavailableError,
    PaneInfo,
    TmuxPaneDriver,
)

__all__ = [
    "PaneDriver",
    "PaneDriverError",
    "PaneDriverUnavailableError",
    "PaneInfo",
    "TmuxPaneDriver",
]
