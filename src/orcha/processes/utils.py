"""Helpers for launching and signalling worker processes."""

from __future__ import annotations

import logging
import os
import signal
from typing import Mapping

import psutil

logger = logging.getLogger(__name__)

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}


def build_session_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return the inherited environment without interpreter leakage, plus ``additional``."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def signal_name(signum: int) -> str | None:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return None


def signal_process_tree(pid: int, sig: int = signal.SIGTERM) -> bool:
    """Send ``sig`` to every descendant of ``pid`` and then to ``pid`` itself.

    Returns False when the root process is already gone or cannot be signalled.
    """

    try:
        root = psutil.Process(pid)
        children = root.children(recursive=True)
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        logger.warning("Access denied walking process tree", extra={"pid": pid})
        return False

    for child in children:
        try:
            child.send_signal(sig)
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            logger.warning("Access denied signalling child", extra={"pid": child.pid, "parent": pid})

    try:
        root.send_signal(sig)
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        logger.warning("Access denied signalling process", extra={"pid": pid})
        return False
    return True


__all__ = ["build_session_environment", "signal_name", "signal_process_tree"]
