"""Per-session ordered buffer of received output chunks."""

from typing import Any, Dict, List

from shelly.plugins.pipeline import (
    BUFFER_CLEAR,
    BUFFER_GET,
    DATA_RECEIVED,
    SESSION_CREATED,
    SESSION_DELETED,
    PluginDescriptor,
)


class BufferPlugin:
    name = "buffer"
    version = "1.0.0"

    def __init__(self, **_context: Any):
        self.buffers: Dict[str, List[str]] = {}

    def descriptor(self) -> PluginDescriptor:
        return PluginDescriptor(
            name=self.name,
            version=self.version,
            hook_bindings=[
                (SESSION_CREATED, self.create_buffer),
                (SESSION_DELETED, self.delete_buffer),
                (DATA_RECEIVED, self.append_data),
                (BUFFER_GET, self.get_buffer),
                (BUFFER_CLEAR, self.clear_buffer),
            ],
        )

    async def create_buffer(self, data: Dict[str, Any]) -> Dict[str, Any]:
        self.buffers[data["id"]] = []
        return data

    async def delete_buffer(self, data: Dict[str, Any]) -> Dict[str, Any]:
        self.buffers.pop(data["id"], None)
        return data

    async def append_data(self, data: Dict[str, Any]) -> Dict[str, Any]:
        self.buffers.setdefault(data["sessionId"], []).append(data["content"])
        return data

    async def get_buffer(self, data: Dict[str, Any]) -> Dict[str, Any]:
        chunks = self.buffers.get(data["sessionId"], [])
        return {**data, "content": "".join(chunks)}

    async def clear_buffer(self, data: Dict[str, Any]) -> Dict[str, Any]:
        count = len(self.buffers.get(data["sessionId"], []))
        self.buffers[data["sessionId"]] = []
        return {**data, "cleared": count}

    def get_session_buffer(self, session_id: str) -> List[str]:
        return list(self.buffers.get(session_id, []))

    def unload(self) -> None:
        self.buffers.clear()
