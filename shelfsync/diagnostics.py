"""Bounded diagnostic log for the collection schema manager.

Every entry is also emitted on the ``shelfsync.schema`` logger; the
ring buffer keeps the most recent entries so an operator surface (the
``setup`` CLI command) can show what happened without scraping logs.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field

from .models import utc_now_iso

logger = logging.getLogger("shelfsync.schema")

DIAGNOSTIC_LOG_LIMIT = 200

_LEVELS = {
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass(frozen=True)
class DiagnosticEntry:
    level: str
    message: str
    timestamp: str = field(default_factory=utc_now_iso)


class DiagnosticLog:
    """Ring buffer of diagnostic entries; oldest evicted past ``limit``."""

    def __init__(self, limit: int = DIAGNOSTIC_LOG_LIMIT) -> None:
        self._entries: deque[DiagnosticEntry] = deque(maxlen=limit)

    def push(self, level: str, message: str) -> DiagnosticEntry:
        if level not in _LEVELS:
            raise ValueError(f"Unknown diagnostic level: {level}")
        entry = DiagnosticEntry(level=level, message=message)
        self._entries.append(entry)
        logger.log(_LEVELS[level], "%s", message)
        return entry

    def info(self, message: str) -> None:
        self.push("info", message)

    def warn(self, message: str) -> None:
        self.push("warn", message)

    def error(self, message: str) -> None:
        self.push("error", message)

    def entries(self) -> list[DiagnosticEntry]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def describe_error(error: BaseException | str | None) -> str:
    if error is None:
        return "Unknown error"
    if isinstance(error, str):
        return error
    return str(error) or type(error).__name__
