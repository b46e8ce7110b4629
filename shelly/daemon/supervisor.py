"""Spawning and stopping per-seed daemons.

The supervisor only looks at endpoint files. Whether a daemon behind an
existing endpoint is actually alive is HealthMonitor's question.
"""

import asyncio
from dataclasses import dataclass
import logging
from pathlib import Path
import subprocess
import sys
from typing import Callable, List, Optional

from shelly.core.configs import Settings
from shelly.daemon.protocol import disconnect_request
from shelly.daemon.transport import ChannelTransport
from shelly.errors import DaemonStartError, TransportError
from shelly.utils import best_effort_unlink

logger = logging.getLogger(__name__)


@dataclass
class DaemonHandle:
    """In-memory view of one daemon. pid is None when it was already running."""
    pid: Optional[int]
    endpoint_path: Path
    seed: str
    user: str


class DaemonSupervisor:
    """
    Ensures a daemon exists for a seed and shuts it down on request.

    Usage:
        supervisor = DaemonSupervisor(settings, transport)
        handle = await supervisor.ensure_running("abc", "alice")
        ...
        await supervisor.stop("abc")
    """

    def __init__(
        self,
        settings: Settings,
        transport: ChannelTransport,
        spawner: Optional[Callable[[List[str], Path], subprocess.Popen]] = None,
    ):
        """
        Args:
            settings: Paths, collaborator commands and timing constants
            transport: Channel used for the shutdown handshake
            spawner: Replaces the detached Popen call (tests)
        """
        self.settings = settings
        self.transport = transport
        self.spawner = spawner or _spawn_detached

    def daemon_args(self, seed: str, user: str, remote_seed: Optional[str] = None) -> List[str]:
        args = [
            sys.executable,
            "-m",
            "shelly.daemon.server",
            seed,
            "--user",
            user,
            "--base-dir",
            str(self.settings.base_dir),
            "--remote-shell",
            self.settings.remote_shell_command,
            "--exec-timeout",
            str(self.settings.exec_timeout),
            "--grace",
            str(self.settings.drain_grace),
        ]
        if remote_seed:
            args += ["--remote-seed", remote_seed]
        return args

    async def ensure_running(
        self,
        seed: str,
        user: str,
        remote_seed: Optional[str] = None,
    ) -> DaemonHandle:
        """
        Return a handle for the seed's daemon, spawning one if no endpoint exists.

        Raises:
            DaemonStartError: The endpoint never appeared within the polling budget
        """
        endpoint_path = self.settings.endpoint_path(seed)
        if endpoint_path.exists():
            logger.debug(f"Endpoint {endpoint_path} exists, not spawning")
            return DaemonHandle(pid=None, endpoint_path=endpoint_path, seed=seed, user=user)

        self.settings.base_dir.mkdir(parents=True, exist_ok=True)
        try:
            process = self.spawner(
                self.daemon_args(seed, user, remote_seed),
                self.settings.daemon_log_path(seed),
            )
        except OSError as e:
            raise DaemonStartError(f"Daemon failed to start: {e}")
        logger.info(f"Spawned daemon for seed {seed[:16]} with pid {process.pid}")

        for _ in range(self.settings.spawn_poll_attempts):
            if endpoint_path.exists():
                return DaemonHandle(
                    pid=process.pid, endpoint_path=endpoint_path, seed=seed, user=user
                )
            exit_code = process.poll()
            if exit_code is not None:
                raise DaemonStartError(f"Daemon failed to start (exit code {exit_code})")
            await asyncio.sleep(self.settings.spawn_poll_interval)

        if endpoint_path.exists():
            return DaemonHandle(pid=process.pid, endpoint_path=endpoint_path, seed=seed, user=user)
        raise DaemonStartError("Daemon failed to start")

    async def stop(self, seed: str) -> None:
        """
        Ask the daemon to disconnect, then make sure its endpoint is gone.

        Failure of the handshake is logged, not raised: after the settle delay
        the endpoint file is removed regardless, so a wedged daemon cannot block
        future ensure_running calls.
        """
        endpoint_path = self.settings.endpoint_path(seed)
        try:
            await self.transport.request(endpoint_path, disconnect_request())
        except TransportError as e:
            logger.warning(f"Disconnect handshake for seed {seed[:16]} failed: {e}")

        await asyncio.sleep(self.settings.stop_settle_delay)
        if best_effort_unlink(endpoint_path):
            logger.warning(f"Removed leftover endpoint {endpoint_path}")


def _spawn_detached(args: List[str], log_path: Path) -> subprocess.Popen:
    """Start a process in its own session so it outlives the caller."""
    with open(log_path, "a") as log_file:
        return subprocess.Popen(
            args,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=log_file,
            start_new_session=True,
        )
