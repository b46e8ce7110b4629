"""Tests for the in-process multi-session manager, using an echoing stub child."""

import asyncio
import shutil
import tempfile
import unittest
from pathlib import Path

from shelly.core.logs import LogRing
from shelly.core.sessions import CONNECTED, DISCONNECTED, SessionManager, SessionRegistry
from shelly.errors import StateError
from shelly.plugins import HookPipeline, PluginManager
from shelly.plugins.builtin import BufferPlugin
from shelly.plugins.pipeline import DATA_RECEIVED

from stubs import remote_shell_command, write_stub


class TestSessionRegistry(unittest.TestCase):

    def test_track_creates_then_updates(self):
        registry = SessionRegistry()
        record = registry.track("s1", "abc", "alice", CONNECTED)
        self.assertIn("s1", registry)

        same = registry.track("s1", "abc", None, DISCONNECTED)
        self.assertIs(record, same)
        self.assertEqual(same.state, DISCONNECTED)

    def test_require_missing(self):
        with self.assertRaises(StateError) as context:
            SessionRegistry().require("ghost")
        self.assertEqual(str(context.exception), "Session ghost not found")


class TestSessionManager(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.registry = SessionRegistry()
        self.ring = LogRing()
        self.pipeline = HookPipeline()
        self.buffer = PluginManager(self.pipeline).load_component(BufferPlugin())
        self.manager = SessionManager(
            self.registry, self.pipeline, self.ring, remote_shell_command(Path(self.temp_dir))
        )

    async def asyncTearDown(self):
        for record in self.registry.list():
            if record.state != DISCONNECTED:
                await self.manager.disconnect(record.id)
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    async def _wait_for(self, predicate, timeout=3.0):
        for _ in range(int(timeout / 0.02)):
            if predicate():
                return
            await asyncio.sleep(0.02)
        self.fail("condition not reached")

    async def test_send_streams_output_into_buffer(self):
        record = await self.manager.connect("abc", "alice", "s1")
        self.assertEqual(record.state, CONNECTED)
        self.assertIsNotNone(record.process)

        await self.manager.send("s1", "hello\n")
        await self._wait_for(lambda: "".join(self.buffer.get_session_buffer("s1")) == "echo: hello\n")

    async def test_generated_session_id(self):
        record = await self.manager.connect("abc", "alice")
        self.assertTrue(record.id.startswith("sess_"))
        self.assertEqual(self.manager.list_sessions()[0]["id"], record.id)

    async def test_duplicate_live_session_rejected(self):
        await self.manager.connect("abc", "alice", "s1")
        with self.assertRaises(StateError):
            await self.manager.connect("abc", "alice", "s1")

    async def test_disconnect_then_send_fails(self):
        await self.manager.connect("abc", "alice", "s1")
        record = await self.manager.disconnect("s1")
        self.assertEqual(record.state, DISCONNECTED)

        with self.assertRaises(StateError):
            await self.manager.send("s1", "late\n")

    async def test_delete_removes_session_and_buffer(self):
        await self.manager.connect("abc", "alice", "s1")
        await self.manager.delete("s1")

        self.assertNotIn("s1", self.registry)
        self.assertNotIn("s1", self.buffer.buffers)
        with self.assertRaises(StateError):
            await self.manager.delete("s1")

    async def test_stderr_is_recorded(self):
        noisy = write_stub(
            Path(self.temp_dir),
            "noisy.py",
            "import sys\nsys.stderr.write('host key mismatch\\n')\nsys.exit(1)\n",
        )
        manager = SessionManager(self.registry, self.pipeline, self.ring, noisy)
        record = await manager.connect("abc", "alice", "s2")

        await self._wait_for(lambda: record.state == DISCONNECTED and record.errors)
        self.assertEqual(record.errors, ["host key mismatch"])
        self.assertEqual(self.ring.get_logs(level="error", session="s2")[0].message, "host key mismatch")

    async def test_failing_data_hook_does_not_stop_reading(self):
        async def reject(data):
            raise ValueError("hook broke")

        self.pipeline.register(DATA_RECEIVED, reject)
        record = await self.manager.connect("abc", "alice", "s1")
        await self.manager.send("s1", "one\n")

        await self._wait_for(lambda: "hook broke" in record.errors)
        self.assertEqual(record.state, CONNECTED)

    async def test_missing_tool(self):
        manager = SessionManager(
            self.registry, self.pipeline, self.ring, str(Path(self.temp_dir) / "missing-tool")
        )
        with self.assertRaises(StateError):
            await manager.connect("abc", "alice", "s3")
        self.assertEqual(self.registry.get("s3").state, DISCONNECTED)


if __name__ == "__main__":
    unittest.main()
