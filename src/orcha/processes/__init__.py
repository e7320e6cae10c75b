"""Worker process tracking."""

from .registry import (
    ProcessEntry,
    ProcessInfo,
    ProcessRegistry,
    ProcessRegistryError,
    ProcessSpawnError,
)
from .utils import build_session_environment, signal_process_tree

__all__ = [
    "ProcessEntry",
    "ProcessInfo",
    "ProcessRegistry",
    "ProcessRegistryError",
    "ProcessSpawnError",
    "build_session_environment",
    "signal_process_tree",
]
