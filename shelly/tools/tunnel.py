"""Spawning and stopping the external tunnel-server tool.

`<tool> -l <port> --seed <material> --private` runs until killed. It is
started in its own session so the whole process group can be signalled.
"""

import logging
import os
import shlex
import signal
import subprocess
from typing import Dict, List

from shelly.errors import StateError
from shelly.tools.remote_shell import derive_seed_material

logger = logging.getLogger(__name__)


class TunnelServer:
    """Starts tunnel processes detached from the caller and stops them by pid."""

    def __init__(self, command: str = "npx hypertele-server"):
        self.tool = shlex.split(command)
        if not self.tool:
            raise ValueError("Tunnel command must not be empty")
        # Children spawned by this process, reaped on stop()
        self._children: Dict[int, subprocess.Popen] = {}

    def build_args(self, seed: str, port: int) -> List[str]:
        return [*self.tool, "-l", str(port), "--seed", derive_seed_material(seed), "--private"]

    def start(self, seed: str, port: int) -> int:
        """Spawn the tunnel server and return its pid immediately."""
        args = self.build_args(seed, port)
        try:
            process = subprocess.Popen(
                args,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            raise StateError(f"Failed to start tunnel server: {e}")

        self._children[process.pid] = process
        logger.info(f"Tunnel server for port {port} started with pid {process.pid}")
        return process.pid

    def stop(self, pid: int) -> None:
        """SIGTERM the tunnel's process group. A vanished process is not an error."""
        try:
            os.killpg(pid, signal.SIGTERM)
        except ProcessLookupError:
            logger.info(f"Tunnel process group {pid} already gone")
        except PermissionError as e:
            raise StateError(f"Not allowed to stop tunnel server {pid}: {e}")

        process = self._children.pop(pid, None)
        if process is not None:
            try:
                process.wait(timeout=2.0)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
