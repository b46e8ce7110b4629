"""
Tests for SessionCoordinator sequencing.

Daemon-facing collaborators are replaced with fakes so each test controls
reachability, process liveness and daemon responses directly.
"""

import asyncio
import json
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from shelly.core.configs import Settings
from shelly.core.context import ContextStore
from shelly.core.coordinator import SessionCoordinator, build_coordinator, read_current_seed
from shelly.core.logs import LogRing
from shelly.core.sessions import SessionManager, SessionRegistry
from shelly.daemon.supervisor import DaemonHandle
from shelly.errors import DaemonTimeoutError, StateError
from shelly.plugins import HookPipeline, PluginManager
from shelly.plugins.builtin import builtin_components
from shelly.plugins.pipeline import PRE_SEND
from shelly.tools.remote_shell import derive_seed_material

from stubs import remote_shell_command


class FakeSupervisor:
    def __init__(self, settings):
        self.settings = settings
        self.started = []
        self.stopped = []

    async def ensure_running(self, seed, user, remote_seed=None):
        self.started.append((seed, user, remote_seed))
        endpoint = self.settings.endpoint_path(seed)
        endpoint.parent.mkdir(parents=True, exist_ok=True)
        endpoint.touch()
        return DaemonHandle(pid=111, endpoint_path=endpoint, seed=seed, user=user)

    async def stop(self, seed):
        self.stopped.append(seed)
        self.settings.endpoint_path(seed).unlink(missing_ok=True)


class FakeHealth:
    def __init__(self):
        self.reachable = True
        self.alive = set()

    async def is_reachable(self, seed):
        return self.reachable

    def is_process_alive(self, pid):
        return pid in self.alive


class FakeTransport:
    def __init__(self):
        self.requests = []
        self.responses = []

    async def request(self, endpoint_path, message, timeout=None):
        self.requests.append(message)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeTunnel:
    def __init__(self):
        self.started = []
        self.stopped = []

    def start(self, seed, port):
        self.started.append((seed, port))
        return 5555

    def stop(self, pid):
        self.stopped.append(pid)


class TestSessionCoordinator(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.settings = Settings(base_dir=Path(self.temp_dir))
        self.registry = SessionRegistry()
        self.ring = LogRing()
        self.pipeline = HookPipeline()
        self.plugins = PluginManager(self.pipeline)
        for component in builtin_components(registry=self.registry, ring=self.ring):
            self.plugins.load_component(component)

        self.supervisor = FakeSupervisor(self.settings)
        self.health = FakeHealth()
        self.transport = FakeTransport()
        self.tunnel = FakeTunnel()
        self.store = ContextStore(self.settings.state_dir)
        self.coordinator = SessionCoordinator(
            settings=self.settings,
            store=self.store,
            pipeline=self.pipeline,
            plugins=self.plugins,
            supervisor=self.supervisor,
            health=self.health,
            transport=self.transport,
            tunnel=self.tunnel,
            registry=self.registry,
            sessions=SessionManager(
                self.registry, self.pipeline, self.ring, remote_shell_command(Path(self.temp_dir))
            ),
            ring=self.ring,
        )

    async def asyncTearDown(self):
        for session in self.coordinator.list_sessions():
            if session["pid"] is not None and session["state"] != "disconnected":
                await self.coordinator.close_session(session["id"])
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _persisted(self, seed="abc"):
        return ContextStore(self.settings.state_dir).load(seed)

    async def _connect(self, seed="abc"):
        result = await self.coordinator.connect(seed, "alice")
        self.assertEqual(result["status"], "success", result)
        return result

    # -- connect -----------------------------------------------------------

    async def test_connect(self):
        result = await self._connect()

        self.assertEqual(
            result, {"status": "success", "message": "Connected", "seed": "abc", "user": "alice"}
        )
        self.assertEqual(self.supervisor.started, [("abc", "alice", derive_seed_material("abc"))])

        ctx = self._persisted()
        self.assertTrue(ctx.connected)
        self.assertEqual(ctx.user, "alice")
        self.assertEqual(ctx.hyperssh_seed, "abc")
        self.assertEqual(ctx.daemon_pid, 111)
        self.assertEqual(ctx.last_cmd["name"], "connect")
        self.assertEqual(read_current_seed(self.settings), "abc")

    async def test_connect_with_remote_seed(self):
        await self.coordinator.connect("abc", "alice", hyperssh_seed="server-seed")
        self.assertEqual(self.supervisor.started[0][2], derive_seed_material("server-seed"))
        self.assertEqual(self._persisted().hyperssh_seed, "server-seed")

    async def test_connect_defaults_to_local_user(self):
        with patch("shelly.core.coordinator.getpass.getuser", return_value="localuser"):
            result = await self.coordinator.connect("abc")
        self.assertEqual(result["user"], "localuser")

    async def test_connect_rejects_bad_user_before_spawning(self):
        result = await self.coordinator.connect("abc", "bad user")

        self.assertEqual(result["status"], "error")
        self.assertEqual(result["command"], "connect")
        self.assertEqual(result["seed"], "abc")
        self.assertEqual(self.supervisor.started, [])
        self.assertFalse(self._persisted().connected)

    async def test_connect_removes_unreachable_endpoint(self):
        endpoint = self.settings.endpoint_path("abc")
        endpoint.parent.mkdir(parents=True, exist_ok=True)
        endpoint.write_text("stale")
        self.health.reachable = False

        await self._connect()
        # The fake supervisor recreates it empty
        self.assertEqual(endpoint.read_text(), "")

    async def test_connect_accepts_any_seed_characters(self):
        for seed in ("my seed", "séed", "ключ/🔑"):
            result = await self._connect(seed)
            self.assertEqual(result["seed"], seed)
            self.assertTrue(self._persisted(seed).connected)

    async def test_connect_rejects_oversized_seed(self):
        result = await self.coordinator.connect("x" * 1025, "alice")
        self.assertEqual(result["status"], "error")
        self.assertEqual(self.supervisor.started, [])

    async def test_connect_defaults_to_domain_user(self):
        with patch("shelly.core.coordinator.getpass.getuser", return_value="alice@corp.example"):
            result = await self.coordinator.connect("abc")
        self.assertEqual(result["status"], "success", result)
        self.assertEqual(self._persisted().user, "alice@corp.example")

    async def test_reconnect_with_same_identity_keeps_daemon(self):
        await self._connect()
        await self._connect()
        self.assertEqual(self.supervisor.stopped, [])

    async def test_reconnect_as_other_user_restarts_daemon(self):
        await self._connect()

        result = await self.coordinator.connect("abc", "bob")

        self.assertEqual(result["status"], "success", result)
        self.assertEqual(self.supervisor.stopped, ["abc"])
        self.assertEqual(self.supervisor.started[-1], ("abc", "bob", derive_seed_material("abc")))
        self.assertEqual(self._persisted().user, "bob")

    async def test_reconnect_to_other_remote_seed_restarts_daemon(self):
        await self._connect()

        await self.coordinator.connect("abc", "alice", hyperssh_seed="server-seed")

        self.assertEqual(self.supervisor.stopped, ["abc"])
        self.assertEqual(self.supervisor.started[-1][2], derive_seed_material("server-seed"))

    # -- send / receive ----------------------------------------------------

    async def test_send_requires_connect(self):
        result = await self.coordinator.send("abc", "ls")

        self.assertEqual(result["status"], "error")
        self.assertEqual(result["error"], "Not connected. Call connect first")
        self.assertEqual(self.transport.requests, [])

    async def test_send_returns_output(self):
        await self._connect()
        self.transport.responses.append({"status": "success", "output": "hi\n"})

        result = await self.coordinator.send("abc", "echo hi")

        self.assertEqual(
            result,
            {
                "status": "success",
                "message": "Sent and received",
                "seed": "abc",
                "command": "echo hi",
                "output": "hi\n",
            },
        )
        self.assertEqual(self.transport.requests, [{"type": "send", "text": "echo hi"}])
        self.assertEqual(self._persisted().last_cmd["name"], "send")

    async def test_receive_drains_buffer(self):
        await self._connect()
        self.transport.responses.append({"status": "success", "output": "hi\n"})
        await self.coordinator.send("abc", "echo hi")

        first = await self.coordinator.receive("abc")
        second = await self.coordinator.receive("abc")
        self.assertEqual(first["data"], "hi\n")
        self.assertEqual(second["data"], "")

    async def test_send_to_unreachable_daemon_downgrades(self):
        await self._connect()
        self.health.reachable = False

        result = await self.coordinator.send("abc", "ls")

        self.assertEqual(result["status"], "error")
        self.assertIn("Stale connection detected", result["error"])
        self.assertIn('connect --seed abc', result["error"])
        self.assertEqual(self.transport.requests, [])
        self.assertFalse(self._persisted().connected)

    async def test_connection_lost_output_downgrades_with_warning(self):
        await self._connect()
        self.transport.responses.append(
            {
                "status": "success",
                "output": "ERROR: Command failed: x\nConnection reset by peer\n",
                "connectionLost": True,
            }
        )

        result = await self.coordinator.send("abc", "ls")

        self.assertEqual(result["status"], "success")
        self.assertIn("warning", result)
        self.assertFalse(self._persisted().connected)

    async def test_recoverable_error_output_keeps_connection(self):
        await self._connect()
        self.transport.responses.append({"status": "success", "output": "ERROR: exit code 1\n"})

        result = await self.coordinator.send("abc", "false")

        self.assertNotIn("warning", result)
        self.assertTrue(self._persisted().connected)

    async def test_daemon_error_response(self):
        await self._connect()
        self.transport.responses.append({"status": "error", "error": "Unknown command"})

        result = await self.coordinator.send("abc", "ls")
        self.assertEqual(result["status"], "error")
        self.assertEqual(result["error"], "Unknown command")

    async def test_transport_timeout_is_reported(self):
        await self._connect()
        self.transport.responses.append(DaemonTimeoutError("Daemon timeout after 5000 ms"))

        result = await self.coordinator.send("abc", "ls")
        self.assertEqual(result, {
            "status": "error",
            "error": "Daemon timeout after 5000 ms",
            "seed": "abc",
            "command": "send",
        })

    async def test_pre_send_hook_can_veto(self):
        await self._connect()

        async def veto(data):
            if "rm -rf" in data["data"]:
                raise StateError("Refusing destructive command")

        self.pipeline.register(PRE_SEND, veto)
        result = await self.coordinator.send("abc", "rm -rf /")

        self.assertEqual(result["error"], "Refusing destructive command")
        self.assertEqual(self.transport.requests, [])

    async def test_empty_text_rejected(self):
        await self._connect()
        result = await self.coordinator.send("abc", "")
        self.assertEqual(result["status"], "error")

    # -- disconnect --------------------------------------------------------

    async def test_disconnect(self):
        await self._connect()
        result = await self.coordinator.disconnect("abc")

        self.assertEqual(result, {"status": "success", "message": "Disconnected", "seed": "abc"})
        self.assertEqual(self.supervisor.stopped, ["abc"])
        self.assertFalse(self._persisted().connected)
        self.assertIsNone(read_current_seed(self.settings))

    async def test_disconnect_when_not_connected(self):
        result = await self.coordinator.disconnect("abc")
        self.assertEqual(result["status"], "success")
        self.assertEqual(self.supervisor.stopped, [])

    async def test_disconnect_keeps_pointer_for_other_seed(self):
        await self._connect("abc")
        await self._connect("other")
        await self.coordinator.disconnect("abc")
        self.assertEqual(read_current_seed(self.settings), "other")

    # -- serve / stop ------------------------------------------------------

    async def test_serve(self):
        result = await self.coordinator.serve("abc", 9123)

        self.assertEqual(result["status"], "success")
        self.assertEqual(result["port"], 9123)
        self.assertEqual(result["pid"], 5555)
        self.assertEqual(result["connectWith"], "shelly connect --seed abc")
        ctx = self._persisted()
        self.assertTrue(ctx.serving)
        self.assertEqual(ctx.server_pid, 5555)

    async def test_serve_picks_random_port(self):
        result = await self.coordinator.serve("abc")
        self.assertTrue(9000 <= result["port"] < 10000)

    async def test_serve_twice(self):
        await self.coordinator.serve("abc", 9123)
        self.health.alive.add(5555)

        result = await self.coordinator.serve("abc", 9124)
        self.assertEqual(result["status"], "error")
        self.assertIn("Already serving", result["error"])

    async def test_serve_again_after_tunnel_died(self):
        await self.coordinator.serve("abc", 9123)
        result = await self.coordinator.serve("abc", 9124)
        self.assertEqual(result["status"], "success")
        self.assertEqual(len(self.tunnel.started), 2)

    async def test_serve_invalid_port(self):
        result = await self.coordinator.serve("abc", 70000)
        self.assertEqual(result["status"], "error")
        self.assertEqual(self.tunnel.started, [])

    async def test_stop_without_server(self):
        result = await self.coordinator.stop("abc")
        self.assertEqual(result["error"], "No server running")

    async def test_stop_dead_server(self):
        await self.coordinator.serve("abc", 9123)
        result = await self.coordinator.stop("abc")

        self.assertEqual(result["error"], "Server process is not running. Already stopped")
        self.assertFalse(self._persisted().serving)

    async def test_stop(self):
        await self.coordinator.serve("abc", 9123)
        self.health.alive.add(5555)

        result = await self.coordinator.stop("abc")
        self.assertEqual(result, {"status": "success", "message": "Server stopped", "seed": "abc"})
        self.assertEqual(self.tunnel.stopped, [5555])
        self.assertFalse(self._persisted().serving)

    # -- status ------------------------------------------------------------

    async def test_status_of_fresh_seed(self):
        result = await self.coordinator.status("abc")

        self.assertEqual(result["status"], "success")
        self.assertFalse(result["connected"])
        self.assertFalse(result["serving"])
        self.assertTrue(result["createdAt"].endswith("Z"))
        self.assertNotIn("warning", result)

    async def test_status_live(self):
        await self._connect()
        await self.coordinator.serve("abc", 9123)
        self.health.alive.add(5555)

        result = await self.coordinator.status("abc")
        self.assertTrue(result["connected"])
        self.assertTrue(result["serving"])
        self.assertEqual(result["serverPort"], 9123)
        self.assertEqual(result["lastCmd"]["name"], "serve")

    async def test_status_repairs_stale_flags(self):
        await self._connect()
        await self.coordinator.serve("abc", 9123)
        self.health.reachable = False

        result = await self.coordinator.status("abc")

        self.assertFalse(result["connected"])
        self.assertFalse(result["serving"])
        self.assertIn("Stale connection detected", result["warning"])
        self.assertIn("Server process is not running", result["warning"])
        ctx = self._persisted()
        self.assertFalse(ctx.connected)
        self.assertFalse(ctx.serving)

    # -- export / import ---------------------------------------------------

    async def test_export_import(self):
        await self.coordinator.serve("abc", 9123)
        exported = await self.coordinator.export("abc")
        self.assertEqual(exported["data"]["serverPort"], 9123)

        shutil.rmtree(self.settings.state_dir)
        self.store._cache.clear()
        result = await self.coordinator.import_context("abc", json.dumps(exported["data"]))

        self.assertEqual(result["status"], "success")
        self.assertEqual(self._persisted().server_port, 9123)

    async def test_import_mismatch(self):
        exported = await self.coordinator.export("abc")
        result = await self.coordinator.import_context("xyz", exported["data"])

        self.assertEqual(result["status"], "error")
        self.assertEqual(result["error"], "Seed mismatch on import")
        self.assertEqual(result["command"], "import")

    async def test_import_invalid_json(self):
        result = await self.coordinator.import_context("abc", "{broken")
        self.assertEqual(result["status"], "error")

    async def test_import_badly_typed_record_leaves_status_working(self):
        result = await self.coordinator.import_context("abc", {"seed": "abc", "createdAt": "yesterday"})
        self.assertEqual(result["status"], "error")
        self.assertIn("createdAt", result["error"])

        status = await self.coordinator.status("abc")
        self.assertEqual(status["status"], "success")

    async def test_status_with_undecodable_record(self):
        self.settings.state_dir.mkdir(parents=True, exist_ok=True)
        self.store.path_for("abc").write_bytes(b'{"seed": "abc\xff"}')

        status = await self.coordinator.status("abc")
        self.assertEqual(status["status"], "success")
        self.assertFalse(status["connected"])

    # -- multi-session -----------------------------------------------------

    async def test_multi_session_flow(self):
        opened = await self.coordinator.open_session("abc", "alice", "s1")
        self.assertEqual(opened["status"], "success")
        self.assertEqual(opened["sessionId"], "s1")

        sent = await self.coordinator.send_session("s1", "hello\n")
        self.assertEqual(sent["status"], "success")

        content = ""
        for _ in range(150):
            content = (await self.coordinator.get_buffer("s1"))["content"]
            if content:
                break
            await asyncio.sleep(0.02)
        self.assertEqual(content, "echo: hello\n")

        cleared = await self.coordinator.clear_buffer("s1")
        self.assertGreaterEqual(cleared["cleared"], 1)

        closed = await self.coordinator.close_session("s1")
        self.assertEqual(closed["status"], "success")

        result = await self.coordinator.send_session("s1", "again\n")
        self.assertEqual(result["status"], "error")

        deleted = await self.coordinator.delete_session("s1")
        self.assertEqual(deleted["status"], "success")
        self.assertEqual(self.coordinator.list_sessions(), [])

    async def test_unknown_session(self):
        result = await self.coordinator.get_buffer("ghost")
        self.assertEqual(result["status"], "error")
        self.assertEqual(result["sessionId"], "ghost")

    # -- logs --------------------------------------------------------------

    async def test_operations_are_logged(self):
        await self._connect()
        await self.coordinator.send("abc", "")

        messages = [entry["message"] for entry in self.coordinator.get_logs()]
        self.assertTrue(any("connected" in m for m in messages))
        self.assertTrue(self.coordinator.get_logs(level="error"))

        logging_plugin = self.plugins.get_plugin("logging")
        self.assertTrue(logging_plugin.get_session_logs("abc"))

        self.assertGreater(self.coordinator.clear_logs(), 0)
        self.assertEqual(self.coordinator.get_logs(), [])


class TestBuildCoordinator(unittest.TestCase):

    def test_wires_builtin_plugins(self):
        temp_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, temp_dir, True)

        coordinator = build_coordinator(Settings(base_dir=Path(temp_dir)))
        names = [p["name"] for p in coordinator.list_plugins()]
        self.assertEqual(names, ["session", "buffer", "logging", "validation"])
        self.assertEqual(coordinator.store.state_dir, Path(temp_dir) / "seeds")


if __name__ == "__main__":
    unittest.main()
