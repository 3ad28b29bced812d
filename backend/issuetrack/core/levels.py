from __future__ import annotations

from enum import Enum


class ErrorLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return _RANKS[self]


_RANKS = {
    ErrorLevel.DEBUG: 0,
    ErrorLevel.INFO: 1,
    ErrorLevel.WARNING: 2,
    ErrorLevel.ERROR: 3,
}


class IssueStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"
    CLOSED = "closed"


def higher_level(current: ErrorLevel | str, new: ErrorLevel | str) -> ErrorLevel:
    """Return the more severe of two levels; ties keep the current one."""
    current, new = ErrorLevel(current), ErrorLevel(new)
    return new if new.rank > current.rank else current


def meets_threshold(level: ErrorLevel | str, minimum: ErrorLevel | str) -> bool:
    return ErrorLevel(level).rank >= ErrorLevel(minimum).rank


def priority_for_level(level: ErrorLevel | str) -> str:
    level = ErrorLevel(level)
    if level is ErrorLevel.ERROR:
        return "urgent"
    if level is ErrorLevel.WARNING:
        return "high"
    return "normal"
