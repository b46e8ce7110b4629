"""Session gatekeeping: argument checks before connect, state checks before send."""

from typing import Any, Dict

from shelly.core.logs import LogRing
from shelly.core.sessions import CONNECTED, SessionRegistry
from shelly.errors import StateError, ValidationError
from shelly.plugins.pipeline import (
    POST_CONNECT,
    POST_SEND,
    PRE_CONNECT,
    PRE_DISCONNECT,
    PRE_SEND,
    PluginDescriptor,
)


class SessionPlugin:
    name = "session"
    version = "1.0.0"

    def __init__(self, registry: SessionRegistry, ring: LogRing):
        self.registry = registry
        self.ring = ring

    def descriptor(self) -> PluginDescriptor:
        return PluginDescriptor(
            name=self.name,
            version=self.version,
            hook_bindings=[
                (PRE_CONNECT, self.validate_seed),
                (POST_CONNECT, self.record_connection),
                (PRE_SEND, self.validate_state),
                (POST_SEND, self.record_activity),
                (PRE_DISCONNECT, self.cleanup),
            ],
        )

    async def validate_seed(self, data: Dict[str, Any]) -> Dict[str, Any]:
        seed = data.get("seed")
        user = data.get("user")
        if not isinstance(seed, str) or not seed:
            raise ValidationError("Invalid seed: must be non-empty string")
        if not isinstance(user, str) or not user:
            raise ValidationError("Invalid user: must be non-empty string")
        return data

    async def record_connection(self, data: Dict[str, Any]) -> Dict[str, Any]:
        session_id = data.get("sessionId")
        self.ring.log(f"Session {session_id} connection recorded", session=session_id)
        return data

    async def validate_state(self, data: Dict[str, Any]) -> Dict[str, Any]:
        session_id = data.get("sessionId")
        record = self.registry.get(session_id)
        if record is None:
            raise StateError(f"Session {session_id} not found")
        if record.state != CONNECTED:
            raise StateError(f"Session {session_id} not in connected state")
        return data

    async def record_activity(self, data: Dict[str, Any]) -> Dict[str, Any]:
        record = self.registry.get(data.get("sessionId"))
        if record is not None:
            record.touch()
        return data

    async def cleanup(self, data: Dict[str, Any]) -> Dict[str, Any]:
        session_id = data.get("sessionId")
        self.ring.log(f"Cleaning up session {session_id}", session=session_id)
        return data
