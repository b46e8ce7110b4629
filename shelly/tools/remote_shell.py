"""Invocation of the external remote-shell tool.

The tool is opaque: `<tool> -s <seed> -u <user> -e <command>` prints the
command's output on stdout, or exits non-zero with a reason on stderr.
"""

import asyncio
import hashlib
import logging
import re
import shlex
from typing import List

from shelly.errors import RemoteExecutionError

logger = logging.getLogger(__name__)

# Error text that means the remote connection itself is gone, as opposed to
# the remote command failing.
CONNECTION_LOST_PATTERNS = [
    r'Connection reset',
    r'Connection refused',
    r'Connection closed by',
    r'Broken pipe',
    r'EPIPE',
    r'ECONNRESET',
    r'ECONNREFUSED',
    r'ETIMEDOUT',
    r'timed out',
    r'kex_exchange_identification',
]

_CONNECTION_LOST = re.compile('|'.join(CONNECTION_LOST_PATTERNS), re.IGNORECASE)


def is_connection_lost(text: str) -> bool:
    """
    Classify error text as connection-fatal.

    Example:
        >>> is_connection_lost("read: Connection reset by peer")
        True
        >>> is_connection_lost("ls: cannot access 'x': No such file or directory")
        False
    """
    return bool(_CONNECTION_LOST.search(text or ""))


def derive_seed_material(seed: str) -> str:
    """Seed material handed to the remote tools: sha256 hex of the seed."""
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()


class RemoteShell:
    """Runs one command at a time through the remote-shell tool."""

    def __init__(self, command: str = "npx hyperssh", timeout: float = 30.0):
        """
        Args:
            command: Tool command line, split with shlex (e.g. "npx hyperssh")
            timeout: Hard limit in seconds for one invocation
        """
        self.tool = shlex.split(command)
        if not self.tool:
            raise ValueError("Remote-shell command must not be empty")
        self.timeout = timeout

    def build_args(self, seed: str, user: str, text: str) -> List[str]:
        return [*self.tool, "-s", seed, "-u", user, "-e", text]

    async def run(self, seed: str, user: str, text: str) -> str:
        """
        Execute `text` remotely and return stdout.

        The child is exec'd without a shell, so `text` reaches the tool as a
        single argument; shlex.join is only used for the log line.

        Raises:
            RemoteExecutionError: Non-zero exit (stderr in `detail`),
                tool missing, or timeout
        """
        args = self.build_args(seed, user, text)
        logger.info(f"Running {shlex.join(args)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise RemoteExecutionError(f"Command failed: {shlex.join(args)}\n{e}", detail=str(e))

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise RemoteExecutionError(
                f"Command timed out after {self.timeout * 1000:.0f} ms: {shlex.join(args)}",
                detail="timed out",
            )

        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace")
            raise RemoteExecutionError(
                f"Command failed with exit code {process.returncode}: "
                f"{shlex.join(args)}\n{detail}",
                detail=detail,
            )

        return stdout.decode("utf-8", errors="replace")
