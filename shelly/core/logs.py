"""Bounded in-memory log of recent events."""

from collections import deque
from dataclasses import dataclass, asdict
from typing import Any, Deque, Dict, List, Optional

from shelly.utils import now_ms

LEVELS = ("info", "warn", "error")


@dataclass
class LogEntry:
    ts: int
    level: str
    message: str
    session: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class LogRing:
    """
    Holds the most recent `max_entries` log entries; older ones are dropped.

    Not thread-safe. Everything that writes to it runs on one event loop.
    """

    def __init__(self, max_entries: int = 10000):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self._entries: Deque[LogEntry] = deque(maxlen=max_entries)

    def __len__(self) -> int:
        return len(self._entries)

    def log(self, message: str, level: str = "info", session: Optional[str] = None) -> LogEntry:
        if level not in LEVELS:
            raise ValueError(f"Unknown log level: {level}")
        entry = LogEntry(ts=now_ms(), level=level, message=message, session=session)
        self._entries.append(entry)
        return entry

    def get_logs(
        self,
        level: Optional[str] = None,
        since: Optional[int] = None,
        session: Optional[str] = None,
    ) -> List[LogEntry]:
        result = list(self._entries)
        if level:
            result = [e for e in result if e.level == level]
        if since is not None:
            result = [e for e in result if e.ts >= since]
        if session is not None:
            result = [e for e in result if e.session == session]
        return result

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

