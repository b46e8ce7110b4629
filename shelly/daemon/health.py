"""Liveness probes for daemons and tunnel processes.

Probes never raise: every failure resolves to False so callers can downgrade
stale state instead of crashing.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Callable, Optional, Union

logger = logging.getLogger(__name__)


class HealthMonitor:
    """
    Answers "is the daemon for this seed accepting connections" and
    "is this pid still running".
    """

    def __init__(self, endpoint_for: Callable[[str], Path], probe_timeout: float = 1.0):
        """
        Args:
            endpoint_for: Maps a seed to its endpoint path
            probe_timeout: Budget in seconds for one reachability probe
        """
        self.endpoint_for = endpoint_for
        self.probe_timeout = probe_timeout

    async def is_reachable(self, seed: str) -> bool:
        """
        Connect to the seed's endpoint and immediately close.

        True only if the connection was accepted and the daemon closed its side
        cleanly within the probe timeout.
        """
        endpoint_path = self.endpoint_for(seed)
        if not endpoint_path.exists():
            return False

        try:
            return await asyncio.wait_for(self._probe(endpoint_path), self.probe_timeout)
        except (asyncio.TimeoutError, OSError, asyncio.IncompleteReadError) as e:
            logger.debug(f"Health probe for {endpoint_path} failed: {e!r}")
            return False

    async def _probe(self, endpoint_path: Union[str, Path]) -> bool:
        reader, writer = await asyncio.open_unix_connection(str(endpoint_path))
        try:
            writer.write_eof()
            # The daemon treats an empty request as a probe and just closes.
            await reader.read()
            return True
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError as e:
                logger.debug(f"Error closing channel to {endpoint_path}: {e}")

    @staticmethod
    def is_process_alive(pid: Optional[int]) -> bool:
        """Zero-signal probe. Any failure, including a missing pid, means not alive."""
        if not pid:
            return False
        try:
            os.kill(int(pid), 0)
        except (OSError, ValueError, TypeError):
            return False
        return True
