"""In-process session tracking.

SessionRegistry holds the state of every session this process knows about.
Seed-mode operations track their seed there (id == seed) so hook components
can check state; the multi-session variant additionally owns a live
interactive child per session through SessionManager.
"""

import asyncio
from dataclasses import dataclass, field
import logging
import shlex
from typing import Any, Dict, List, Optional

from shelly.core.logs import LogRing
from shelly.errors import StateError, ValidationError
from shelly.plugins.pipeline import DATA_RECEIVED, SESSION_CREATED, SESSION_DELETED, HookPipeline
from shelly.utils import now_ms

logger = logging.getLogger(__name__)

DISCONNECTED = "disconnected"
CONNECTING = "connecting"
CONNECTED = "connected"

READ_CHUNK = 4096


@dataclass
class SessionRecord:
    id: str
    seed: str
    user: Optional[str]
    state: str = DISCONNECTED
    created_at: int = field(default_factory=now_ms)
    last_activity: int = field(default_factory=now_ms)
    errors: List[str] = field(default_factory=list)
    process: Optional[asyncio.subprocess.Process] = None

    def touch(self) -> None:
        self.last_activity = now_ms()

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "seed": self.seed,
            "user": self.user,
            "state": self.state,
            "createdAt": self.created_at,
            "lastActivity": self.last_activity,
            "errorCount": len(self.errors),
            "pid": self.process.pid if self.process else None,
        }


class SessionRegistry:
    """Session id -> SessionRecord. Not thread-safe; one event loop owns it."""

    def __init__(self) -> None:
        self._sessions: Dict[str, SessionRecord] = {}

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def create(self, session_id: str, seed: str, user: Optional[str]) -> SessionRecord:
        record = SessionRecord(id=session_id, seed=seed, user=user)
        self._sessions[session_id] = record
        return record

    def get(self, session_id: str) -> Optional[SessionRecord]:
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> SessionRecord:
        record = self._sessions.get(session_id)
        if record is None:
            raise StateError(f"Session {session_id} not found")
        return record

    def track(self, session_id: str, seed: str, user: Optional[str], state: str) -> SessionRecord:
        """Create or update a record to mirror externally known state."""
        record = self._sessions.get(session_id) or self.create(session_id, seed, user)
        record.user = user
        record.state = state
        return record

    def delete(self, session_id: str) -> Optional[SessionRecord]:
        return self._sessions.pop(session_id, None)

    def list(self) -> List[SessionRecord]:
        return list(self._sessions.values())


class SessionManager:
    """
    Owns interactive remote-shell children, one per session.

    Output chunks are published as data:received events so the buffer
    component collects them; stderr lines are kept as session errors.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        pipeline: HookPipeline,
        ring: LogRing,
        remote_shell_command: str = "npx hyperssh",
    ):
        self.registry = registry
        self.pipeline = pipeline
        self.ring = ring
        self.tool = shlex.split(remote_shell_command)
        self._readers: Dict[str, List[asyncio.Task]] = {}

    async def connect(self, seed: str, user: str, session_id: Optional[str] = None) -> SessionRecord:
        """Spawn an interactive child for a new session."""
        session_id = session_id or f"sess_{now_ms()}"
        existing = self.registry.get(session_id)
        if existing is not None and existing.state != DISCONNECTED:
            raise StateError(f"Session {session_id} already exists")

        record = self.registry.create(session_id, seed, user)
        await self.pipeline.dispatch(SESSION_CREATED, {"id": session_id, "seed": seed, "user": user})

        args = [*self.tool, "-s", seed, "-u", user]
        record.state = CONNECTING
        self.ring.log(f"Session {session_id} connecting to {seed[:16]}...", session=session_id)
        try:
            record.process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            record.state = DISCONNECTED
            record.errors.append(str(e))
            self.ring.log(f"Failed to connect: {e}", "error", session_id)
            raise StateError(f"Failed to connect session {session_id}: {e}")

        self._readers[session_id] = [
            asyncio.create_task(self._pump_stdout(record)),
            asyncio.create_task(self._pump_stderr(record)),
        ]
        record.state = CONNECTED
        record.touch()
        self.ring.log(f"Session {session_id} connected", session=session_id)
        return record

    async def send(self, session_id: str, data: str) -> SessionRecord:
        record = self.registry.require(session_id)
        process = record.process
        if record.state != CONNECTED or process is None or process.returncode is not None:
            raise StateError(f"Session {session_id} not connected")
        if not isinstance(data, str):
            raise ValidationError("Data content must be string")

        try:
            process.stdin.write(data.encode("utf-8"))
            await process.stdin.drain()
        except ConnectionError as e:
            record.errors.append(str(e))
            raise StateError(f"Session {session_id} not connected: {e}")

        record.touch()
        self.ring.log(f"Sent to {session_id}: {data[:100]}", session=session_id)
        return record

    async def disconnect(self, session_id: str) -> SessionRecord:
        record = self.registry.require(session_id)
        process = record.process
        if process is not None and process.returncode is None:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=2.0)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()

        tasks = self._readers.pop(session_id, [])
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=2.0)
            for task in pending:
                task.cancel()

        record.state = DISCONNECTED
        self.ring.log(f"Session {session_id} disconnected", session=session_id)
        return record

    async def delete(self, session_id: str) -> SessionRecord:
        record = self.registry.require(session_id)
        if record.state != DISCONNECTED:
            await self.disconnect(session_id)
        self.registry.delete(session_id)
        await self.pipeline.dispatch(SESSION_DELETED, {"id": session_id, "seed": record.seed})
        return record

    def list_sessions(self) -> List[Dict[str, Any]]:
        return [record.summary() for record in self.registry.list()]

    async def _pump_stdout(self, record: SessionRecord) -> None:
        stream = record.process.stdout
        while True:
            chunk = await stream.read(READ_CHUNK)
            if not chunk:
                break
            content = chunk.decode("utf-8", errors="replace")
            record.touch()
            try:
                await self.pipeline.dispatch(
                    DATA_RECEIVED, {"sessionId": record.id, "content": content}
                )
            except Exception as e:
                # Keep reading; a failing hook must not stall the child's pipe
                logger.exception(f"data:received hook failed for {record.id}: {e}")
                record.errors.append(str(e))

        code = await record.process.wait()
        if record.state != DISCONNECTED:
            record.state = DISCONNECTED
            self.ring.log(f"Session {record.id} closed with code {code}", session=record.id)

    async def _pump_stderr(self, record: SessionRecord) -> None:
        stream = record.process.stderr
        while True:
            line = await stream.readline()
            if not line:
                break
            message = line.decode("utf-8", errors="replace").rstrip("\n")
            record.errors.append(message)
            self.ring.log(message, "error", record.id)
