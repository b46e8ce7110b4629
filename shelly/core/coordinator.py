"""Client-facing façade over daemons, hooks and persisted context.

Every public operation follows the same shape:
    load context -> pre-hook -> effect -> post-hook -> mutate + persist
and returns a dict with "status": "success" | "error". Expected failures
(ShellyError) never escape; they become
{"status": "error", "error": ..., "seed": ..., "command": ...}.
"""

from datetime import datetime, timezone
import getpass
import json
import logging
import random
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from shelly.core.configs import Settings, get_settings
from shelly.core.context import ContextStore, SeedContext, validate_seed
from shelly.core.logs import LogRing
from shelly.core.sessions import CONNECTED, DISCONNECTED, SessionManager, SessionRegistry
from shelly.daemon.health import HealthMonitor
from shelly.daemon.protocol import STATUS_SUCCESS, send_request
from shelly.daemon.supervisor import DaemonSupervisor
from shelly.daemon.transport import ChannelTransport
from shelly.errors import RemoteExecutionError, ShellyError, StateError, ValidationError
from shelly.plugins.builtin import builtin_components
from shelly.plugins.pipeline import (
    BUFFER_CLEAR,
    BUFFER_GET,
    DATA_RECEIVED,
    LOG_ENTRY,
    POST_CONNECT,
    POST_SEND,
    PRE_CONNECT,
    PRE_DISCONNECT,
    PRE_SEND,
    HookPipeline,
    PluginManager,
)
from shelly.tools.remote_shell import derive_seed_material
from shelly.tools.tunnel import TunnelServer
from shelly.utils import best_effort_unlink, now_ms

logger = logging.getLogger(__name__)

NOT_CONNECTED = "Not connected. Call connect first"


def _stale_connection(seed: str) -> str:
    return (
        "Daemon is not responding. Stale connection detected. "
        f'Run "connect --seed {seed}" to reconnect'
    )


def _iso(ms: Optional[int]) -> Optional[str]:
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def read_current_seed(settings: Settings) -> Optional[str]:
    """Seed of the most recent connect, if its daemon has not drained since."""
    try:
        seed = settings.current_seed_path.read_text().strip()
    except OSError:
        return None
    return seed or None


class SessionCoordinator:
    """
    Sequences connect/send/disconnect/serve/stop/status for seeds, plus the
    multi-session variant backed by in-process children.

    All collaborators are constructor arguments; build_coordinator() wires the
    defaults.
    """

    def __init__(
        self,
        settings: Settings,
        store: ContextStore,
        pipeline: HookPipeline,
        plugins: PluginManager,
        supervisor: DaemonSupervisor,
        health: HealthMonitor,
        transport: ChannelTransport,
        tunnel: TunnelServer,
        registry: SessionRegistry,
        sessions: SessionManager,
        ring: LogRing,
    ):
        self.settings = settings
        self.store = store
        self.pipeline = pipeline
        self.plugins = plugins
        self.supervisor = supervisor
        self.health = health
        self.transport = transport
        self.tunnel = tunnel
        self.registry = registry
        self.sessions = sessions
        self.ring = ring

    # ------------------------------------------------------------------
    # Shared plumbing
    # ------------------------------------------------------------------

    async def _run(
        self,
        command: str,
        ident: Dict[str, Any],
        operation: Callable[[], Awaitable[Dict[str, Any]]],
    ) -> Dict[str, Any]:
        try:
            return await operation()
        except ShellyError as e:
            logger.info(f"{command} failed: {e}")
            self.ring.log(f"{command} failed: {e}", "error", ident.get("seed") or ident.get("sessionId"))
            return {"status": "error", "error": str(e), **ident, "command": command}

    async def _note(self, session: Optional[str], message: str, level: str = "info") -> None:
        self.ring.log(message, level, session)
        await self.pipeline.dispatch(
            LOG_ENTRY, {"sessionId": session, "level": level, "message": message}
        )

    def _check(self, **fields: Any) -> None:
        validator = self.plugins.get_plugin("validation")
        if validator is not None and hasattr(validator, "check"):
            for field, value in fields.items():
                validator.check(field, value)

    def _load(self, seed: str) -> SeedContext:
        ctx = self.store.load(validate_seed(seed))
        self.registry.track(seed, seed, ctx.user, CONNECTED if ctx.connected else DISCONNECTED)
        return ctx

    def _mark_disconnected(self, ctx: SeedContext) -> None:
        ctx.reset_connection()
        self.registry.track(ctx.seed, ctx.seed, None, DISCONNECTED)

    def _write_current_seed(self, seed: str) -> None:
        self.settings.base_dir.mkdir(parents=True, exist_ok=True)
        self.settings.current_seed_path.write_text(seed)

    def _clear_current_seed(self, seed: str) -> None:
        if read_current_seed(self.settings) == seed:
            best_effort_unlink(self.settings.current_seed_path)

    # ------------------------------------------------------------------
    # Seed operations
    # ------------------------------------------------------------------

    async def connect(
        self,
        seed: str,
        user: Optional[str] = None,
        hyperssh_seed: Optional[str] = None,
    ) -> Dict[str, Any]:
        async def operation():
            name = user or getpass.getuser()
            validate_seed(seed)
            self._check(user=name)
            ctx = self._load(seed)

            payload = await self.pipeline.dispatch(
                PRE_CONNECT, {"seed": seed, "user": name, "sessionId": seed}
            )

            remote = hyperssh_seed or seed
            endpoint = self.settings.endpoint_path(seed)
            if endpoint.exists():
                if not await self.health.is_reachable(seed):
                    # Left behind by a daemon that died without draining
                    logger.warning(f"Removing stale endpoint {endpoint}")
                    best_effort_unlink(endpoint)
                elif ctx.connected and (ctx.user, ctx.hyperssh_seed) != (name, remote):
                    # The running daemon is bound to the old user and remote seed
                    logger.info(f"Restarting daemon for seed {seed[:16]} as {name}")
                    await self.supervisor.stop(seed)

            handle = await self.supervisor.ensure_running(seed, name, derive_seed_material(remote))
            self.registry.track(seed, seed, name, CONNECTED)

            await self.pipeline.dispatch(POST_CONNECT, {**payload, "pid": handle.pid})

            ctx.connected = True
            ctx.hyperssh_seed = remote
            ctx.user = name
            ctx.connected_at = now_ms()
            if handle.pid is not None:
                ctx.daemon_pid = handle.pid
            ctx.record_command("connect", {"user": name, "hypersshSeed": remote})
            self.store.save(ctx)
            self._write_current_seed(seed)

            await self._note(seed, f"Session {seed[:16]} connected")
            return {"status": "success", "message": "Connected", "seed": seed, "user": name}

        return await self._run("connect", {"seed": seed}, operation)

    async def send(self, seed: str, text: str) -> Dict[str, Any]:
        async def operation():
            ctx = self._load(seed)
            if not ctx.connected:
                raise StateError(NOT_CONNECTED)
            if not text:
                raise ValidationError("text required")
            self._check(data=text)

            payload = await self.pipeline.dispatch(PRE_SEND, {"sessionId": seed, "data": text})

            if not await self.health.is_reachable(seed):
                self._mark_disconnected(ctx)
                self.store.save(ctx)
                raise StateError(_stale_connection(seed))

            response = await self.transport.request(
                self.settings.endpoint_path(seed), send_request(text)
            )
            if response.get("status") != STATUS_SUCCESS:
                raise RemoteExecutionError(response.get("error") or "Daemon reported an error")
            output = response.get("output") or ""

            await self.pipeline.dispatch(DATA_RECEIVED, {"sessionId": seed, "content": output})
            await self.pipeline.dispatch(POST_SEND, {**payload, "output": output})

            result = {
                "status": "success",
                "message": "Sent and received",
                "seed": seed,
                "command": text,
                "output": output,
            }
            if response.get("connectionLost"):
                # The daemon drains itself after this response
                self._mark_disconnected(ctx)
                result["warning"] = (
                    "Remote connection lost; the daemon has shut down. "
                    f'Run "connect --seed {seed}" to reconnect'
                )
                await self._note(seed, "Remote connection lost", "warn")

            ctx.record_command("send", {"text": text})
            self.store.save(ctx)
            return result

        return await self._run("send", {"seed": seed}, operation)

    async def receive(self, seed: str) -> Dict[str, Any]:
        """Return and clear output collected for the seed in this process."""

        async def operation():
            ctx = self._load(seed)
            if not ctx.connected:
                raise StateError(NOT_CONNECTED)
            data = (await self.pipeline.dispatch(BUFFER_GET, {"sessionId": seed})).get("content", "")
            await self.pipeline.dispatch(BUFFER_CLEAR, {"sessionId": seed})
            message = "Buffered output" if data else "No buffered output (send returns output immediately)"
            return {"status": "success", "message": message, "seed": seed, "data": data}

        return await self._run("receive", {"seed": seed}, operation)

    async def disconnect(self, seed: str) -> Dict[str, Any]:
        async def operation():
            ctx = self._load(seed)
            await self.pipeline.dispatch(PRE_DISCONNECT, {"sessionId": seed})

            if ctx.connected or self.settings.endpoint_path(seed).exists():
                await self.supervisor.stop(seed)

            self._mark_disconnected(ctx)
            ctx.record_command("disconnect")
            self.store.save(ctx)
            self._clear_current_seed(seed)

            await self._note(seed, f"Session {seed[:16]} disconnected")
            return {"status": "success", "message": "Disconnected", "seed": seed}

        return await self._run("disconnect", {"seed": seed}, operation)

    async def serve(self, seed: str, port: Optional[int] = None) -> Dict[str, Any]:
        async def operation():
            ctx = self._load(seed)
            if ctx.serving and ctx.server_pid:
                if self.health.is_process_alive(ctx.server_pid):
                    raise StateError("Already serving on this seed")
                ctx.reset_serving()

            chosen = port if port else 9000 + random.randrange(1000)
            if not isinstance(chosen, int) or not 0 < chosen < 65536:
                raise ValidationError(f"Invalid port: {port!r}")

            user = getpass.getuser()
            pid = self.tunnel.start(seed, chosen)

            ctx.serving = True
            ctx.server_port = chosen
            ctx.server_pid = pid
            ctx.user = user
            ctx.record_command("serve", {"port": chosen})
            self.store.save(ctx)

            await self._note(seed, f"Serving seed {seed[:16]} on port {chosen} (pid {pid})")
            return {
                "status": "success",
                "message": "Server started",
                "seed": seed,
                "port": chosen,
                "user": user,
                "pid": pid,
                "connectWith": f"shelly connect --seed {seed}",
            }

        return await self._run("serve", {"seed": seed}, operation)

    async def stop(self, seed: str) -> Dict[str, Any]:
        async def operation():
            ctx = self._load(seed)
            if not ctx.serving or not ctx.server_pid:
                raise StateError("No server running")

            if not self.health.is_process_alive(ctx.server_pid):
                ctx.reset_serving()
                self.store.save(ctx)
                raise StateError("Server process is not running. Already stopped")

            self.tunnel.stop(ctx.server_pid)
            ctx.reset_serving()
            ctx.record_command("stop")
            self.store.save(ctx)

            await self._note(seed, f"Stopped serving seed {seed[:16]}")
            return {"status": "success", "message": "Server stopped", "seed": seed}

        return await self._run("stop", {"seed": seed}, operation)

    async def status(self, seed: str) -> Dict[str, Any]:
        """
        Report the seed's state after reconciling it with live probes.

        Flags that the probes contradict are reset and the downgrade persisted,
        with a warning in the result.
        """

        async def operation():
            ctx = self._load(seed)
            result: Dict[str, Any] = {
                "status": "success",
                "seed": seed,
                "createdAt": _iso(ctx.created_at),
                "lastCmd": ctx.last_cmd,
                "connected": False,
                "serving": False,
            }
            warnings: List[str] = []
            changed = False

            if ctx.serving or ctx.server_pid:
                if self.health.is_process_alive(ctx.server_pid):
                    result.update(serving=True, serverPort=ctx.server_port, serverPid=ctx.server_pid)
                else:
                    warnings.append(
                        f'Server process is not running. Call "serve --seed {seed}" to restart'
                    )
                    ctx.reset_serving()
                    changed = True

            if ctx.connected:
                if await self.health.is_reachable(seed):
                    result.update(
                        connected=True,
                        hypersshSeed=ctx.hyperssh_seed,
                        connectedAt=_iso(ctx.connected_at),
                    )
                else:
                    warnings.append(_stale_connection(seed))
                    self._mark_disconnected(ctx)
                    changed = True

            result["user"] = ctx.user
            if warnings:
                result["warning"] = " ".join(warnings)
                await self._note(seed, result["warning"], "warn")
            if changed:
                self.store.save(ctx)
            return result

        return await self._run("status", {"seed": seed}, operation)

    async def export(self, seed: str) -> Dict[str, Any]:
        async def operation():
            validate_seed(seed)
            return {"status": "success", "seed": seed, "data": self.store.export(seed)}

        return await self._run("export", {"seed": seed}, operation)

    async def import_context(self, seed: str, data: Union[str, Dict[str, Any]]) -> Dict[str, Any]:
        async def operation():
            record = data
            if isinstance(data, str):
                try:
                    record = json.loads(data)
                except json.JSONDecodeError as e:
                    raise ValidationError(f"Invalid import data: {e}")
            self.store.import_record(seed, record)
            return {"status": "success", "message": "Imported", "seed": seed}

        return await self._run("import", {"seed": seed}, operation)

    # ------------------------------------------------------------------
    # Multi-session variant
    # ------------------------------------------------------------------

    async def open_session(
        self, seed: str, user: str, session_id: Optional[str] = None
    ) -> Dict[str, Any]:
        async def operation():
            self._check(seed=seed, user=user)
            if session_id is not None:
                self._check(session_id=session_id)
            payload = await self.pipeline.dispatch(
                PRE_CONNECT, {"seed": seed, "user": user, "sessionId": session_id}
            )
            record = await self.sessions.connect(seed, user, session_id)
            await self.pipeline.dispatch(POST_CONNECT, {**payload, "sessionId": record.id})
            return {"status": "success", "message": "Connected", **record.summary(), "sessionId": record.id}

        return await self._run("open_session", {"sessionId": session_id}, operation)

    async def send_session(self, session_id: str, data: str) -> Dict[str, Any]:
        async def operation():
            self._check(session_id=session_id, data=data)
            payload = await self.pipeline.dispatch(PRE_SEND, {"sessionId": session_id, "data": data})
            await self.sessions.send(session_id, data)
            await self.pipeline.dispatch(POST_SEND, payload)
            return {"status": "success", "message": "Sent", "sessionId": session_id}

        return await self._run("send_session", {"sessionId": session_id}, operation)

    async def close_session(self, session_id: str) -> Dict[str, Any]:
        async def operation():
            self.registry.require(session_id)
            await self.pipeline.dispatch(PRE_DISCONNECT, {"sessionId": session_id})
            record = await self.sessions.disconnect(session_id)
            return {"status": "success", "message": "Disconnected", "sessionId": record.id}

        return await self._run("close_session", {"sessionId": session_id}, operation)

    async def delete_session(self, session_id: str) -> Dict[str, Any]:
        async def operation():
            await self.sessions.delete(session_id)
            return {"status": "success", "message": "Deleted", "sessionId": session_id}

        return await self._run("delete_session", {"sessionId": session_id}, operation)

    async def get_buffer(self, session_id: str) -> Dict[str, Any]:
        async def operation():
            self.registry.require(session_id)
            payload = await self.pipeline.dispatch(BUFFER_GET, {"sessionId": session_id})
            return {"status": "success", "sessionId": session_id, "content": payload.get("content", "")}

        return await self._run("get_buffer", {"sessionId": session_id}, operation)

    async def clear_buffer(self, session_id: str) -> Dict[str, Any]:
        async def operation():
            self.registry.require(session_id)
            payload = await self.pipeline.dispatch(BUFFER_CLEAR, {"sessionId": session_id})
            return {"status": "success", "sessionId": session_id, "cleared": payload.get("cleared", 0)}

        return await self._run("clear_buffer", {"sessionId": session_id}, operation)

    def list_sessions(self) -> List[Dict[str, Any]]:
        return self.sessions.list_sessions()

    def list_plugins(self) -> List[Dict[str, Any]]:
        return self.plugins.list_plugins()

    def get_logs(self, level: Optional[str] = None, since: Optional[int] = None) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in self.ring.get_logs(level=level, since=since)]

    def clear_logs(self) -> int:
        return self.ring.clear()


def build_coordinator(settings: Optional[Settings] = None) -> SessionCoordinator:
    """Wire a coordinator with default collaborators, built-in and manifest plugins."""
    settings = settings or get_settings()

    ring = LogRing(settings.max_log_entries)
    registry = SessionRegistry()
    pipeline = HookPipeline()
    plugins = PluginManager(pipeline)
    for component in builtin_components(registry=registry, ring=ring):
        plugins.load_component(component)
    if settings.plugins:
        plugins.load_manifest(settings.plugins, registry=registry, ring=ring)

    transport = ChannelTransport(timeout=settings.request_timeout)
    return SessionCoordinator(
        settings=settings,
        store=ContextStore(settings.state_dir),
        pipeline=pipeline,
        plugins=plugins,
        supervisor=DaemonSupervisor(settings, transport),
        health=HealthMonitor(settings.endpoint_path, probe_timeout=settings.probe_timeout),
        transport=transport,
        tunnel=TunnelServer(settings.tunnel_command),
        registry=registry,
        sessions=SessionManager(registry, pipeline, ring, settings.remote_shell_command),
        ring=ring,
    )
