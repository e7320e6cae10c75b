"""Status aggregation for Orcha sessions."""

from .detector import (
    DEFAULT_TIERS,
    Detection,
    NullDetector,
    PaneHeuristicDetector,
    PaneRule,
    StatusDetector,
)
from .models import StatusReport, parse_state
from .monitor import StatusMonitor, StatusSource
from .reconcile import StatusReconciler

__all__ = [
    "DEFAULT_TIERS",
    "Detection",
    "NullDetector",
    "PaneHeuristicDetector",
    "PaneRule",
    "StatusDetector",
    "StatusMonitor",
    "StatusReconciler",
    "StatusReport",
    "StatusSource",
    "parse_state",
]
