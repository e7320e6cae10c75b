"""Session model and lifecycle management.

The manager lives in :mod:`orcha.sessions.manager`; it is not re-exported here
because the status and storage layers import these models.
"""

from .models import (
    ProcessListener,
    Session,
    SessionListener,
    SessionMode,
    SessionState,
    SessionStatus,
    StatusEvent,
    StatusListener,
    utcnow,
)

__all__ = [
    "ProcessListener",
    "Session",
    "SessionListener",
    "SessionMode",
    "SessionState",
    "SessionStatus",
    "StatusEvent",
    "StatusListener",
    "utcnow",
]
