"""Per-session log records collected from log:entry events."""

from typing import Any, Dict, List

from shelly.core.logs import LEVELS, LogEntry
from shelly.plugins.pipeline import LOG_ENTRY, SESSION_CREATED, SESSION_DELETED, PluginDescriptor
from shelly.utils import now_ms


class LoggingPlugin:
    name = "logging"
    version = "1.0.0"

    def __init__(self, **_context: Any):
        self.session_logs: Dict[str, List[LogEntry]] = {}

    def descriptor(self) -> PluginDescriptor:
        return PluginDescriptor(
            name=self.name,
            version=self.version,
            hook_bindings=[
                (SESSION_CREATED, self.init_session_logs),
                (SESSION_DELETED, self.delete_session_logs),
                (LOG_ENTRY, self.record_log),
            ],
        )

    async def init_session_logs(self, data: Dict[str, Any]) -> Dict[str, Any]:
        self.session_logs[data["id"]] = []
        return data

    async def delete_session_logs(self, data: Dict[str, Any]) -> Dict[str, Any]:
        self.session_logs.pop(data["id"], None)
        return data

    async def record_log(self, data: Dict[str, Any]) -> Dict[str, Any]:
        level = data.get("level") or "info"
        if level not in LEVELS:
            level = "info"
        session_id = data.get("sessionId")
        entry = LogEntry(ts=now_ms(), level=level, message=str(data.get("message", "")), session=session_id)
        self.session_logs.setdefault(session_id, []).append(entry)
        return data

    def get_session_logs(self, session_id: str) -> List[LogEntry]:
        return list(self.session_logs.get(session_id, []))

    def clear_session_logs(self, session_id: str) -> None:
        self.session_logs[session_id] = []
