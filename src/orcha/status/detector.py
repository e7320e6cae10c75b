"""Pane-text heuristics used when an agent has not reported its own status.

The patterns are tuned to the Claude Code terminal UI. They sit behind the
:class:`StatusDetector` protocol so the rule set can be swapped or disabled
without touching the status monitor.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Protocol, Sequence

from ..sessions.models import SessionState

RECENT_LINES = 15
MESSAGE_LIMIT = 40

_GLYPHS = re.compile(r"^[●○◐◌✓✗✢\s]+")


@dataclass(frozen=True, slots=True)
class Detection:
    state: SessionState
    message: str


def _clean(line: str, fallback: str) -> str:
    return _GLYPHS.sub("", line).strip()[:MESSAGE_LIMIT] or fallback


@dataclass(frozen=True, slots=True)
class PaneRule:
    """Maps one line pattern to a state; ``describe`` returns None to decline the line."""

    name: str
    state: SessionState
    pattern: re.Pattern[str]
    describe: Callable[[re.Match[str], str], str | None]

    def apply(self, line: str) -> Detection | None:
        match = self.pattern.search(line)
        if match is None:
            return None
        message = self.describe(match, line)
        if message is None:
            return None
        return Detection(self.state, message)


def _fixed(message: str) -> Callable[[re.Match[str], str], str]:
    return lambda _match, _line: message


def _thinking(_match: re.Match[str], line: str) -> str:
    thought = re.search(r"\(thought for (\d+s)\)", line)
    return f"Thinking ({thought.group(1)})" if thought else "Computing..."


def _agents(_match: re.Match[str], line: str) -> str | None:
    if "agent" not in line:
        return None
    count = re.search(r"Running (\d+) .* agents?", line)
    return f"Running {count.group(1)} agents" if count else "Running agents"


def _bullet(_match: re.Match[str], line: str) -> str | None:
    if "finished" in line or "completed" in line:
        return None
    message = _GLYPHS.sub("", line).strip()[:MESSAGE_LIMIT]
    if not message or message.startswith("Background"):
        return None
    return message


def _activity(_match: re.Match[str], line: str) -> str:
    return _clean(line, "Working...")


def _error(_match: re.Match[str], line: str) -> str:
    return _clean(line, "Error occurred")


def _completed(_match: re.Match[str], line: str) -> str | None:
    if "✓ " not in line and "Undo" in line:
        return None
    return "Task complete"


# Tiers are checked in order; inside a tier lines are scanned newest first and
# the first matching rule wins. Active computation outranks everything so a
# spinner above a prompt still reads as working.
DEFAULT_TIERS: tuple[tuple[PaneRule, ...], ...] = (
    (
        PaneRule("spinner", SessionState.WORKING, re.compile(r"✢ "), _thinking),
        PaneRule("subagents", SessionState.WORKING, re.compile(r"Running"), _agents),
    ),
    (
        PaneRule("bullet", SessionState.WORKING, re.compile(r"● "), _bullet),
        PaneRule(
            "tool-activity",
            SessionState.WORKING,
            re.compile(r"Searching|Reading|Writing|Editing|Moseying|Pondering|Analyzing|Exploring"),
            _activity,
        ),
        PaneRule("error", SessionState.ERROR, re.compile(r"Error:|error:|✗ "), _error),
    ),
    (
        PaneRule("plan-mode", SessionState.WAITING, re.compile(r"plan mode on"), _fixed("Plan mode - awaiting input")),
        PaneRule("menu", SessionState.WAITING, re.compile(r"❯\s+\d+\.\s+"), _fixed("Menu selection")),
        PaneRule("empty-prompt", SessionState.WAITING, re.compile(r"^(❯|>)\s*$"), _fixed("Awaiting input")),
        PaneRule("typed-prompt", SessionState.WAITING, re.compile(r"^❯\s+\S"), _fixed("At prompt")),
    ),
    (PaneRule("done", SessionState.DONE, re.compile(r"✓ |Done"), _completed),),
)


class StatusDetector(Protocol):
    def detect(self, text: str) -> Detection | None:
        ...


class PaneHeuristicDetector:
    """Classifies the most recent lines of a pane into a session state."""

    def __init__(
        self,
        tiers: Sequence[Sequence[PaneRule]] = DEFAULT_TIERS,
        *,
        recent_lines: int = RECENT_LINES,
    ) -> None:
        self._tiers = tuple(tuple(tier) for tier in tiers)
        self._recent_lines = recent_lines

    def detect(self, text: str) -> Detection | None:
        if not text:
            return None

        lines = text.splitlines()[-self._recent_lines :]
        newest_first = list(reversed(lines))
        for tier in self._tiers:
            for line in newest_first:
                for rule in tier:
                    detection = rule.apply(line)
                    if detection is not None:
                        return detection
        return None


class NullDetector:
    """Disables pane heuristics."""

    def detect(self, text: str) -> Detection | None:
        return None


__all__ = [
    "DEFAULT_TIERS",
    "Detection",
    "NullDetector",
    "PaneHeuristicDetector",
    "PaneRule",
    "StatusDetector",
]
