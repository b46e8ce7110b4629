"""Client side of the daemon channel.

One logical request = one connection: open, write the request line, read
until a newline arrives, parse, close. There is no multiplexing; concurrent
callers against the same seed must serialize themselves.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

from shelly.daemon.protocol import DELIMITER, decode_message, encode_message
from shelly.errors import (
    DaemonNotRunningError,
    DaemonTimeoutError,
    InvalidResponseError,
    TransportError,
)

logger = logging.getLogger(__name__)

READ_CHUNK = 65536


class ChannelTransport:
    """
    Sends single requests to a daemon over its Unix socket.

    Usage:
        transport = ChannelTransport(timeout=5.0)
        response = await transport.request(path, {"type": "send", "text": "ls"})
    """

    def __init__(self, timeout: float = 5.0):
        """
        Args:
            timeout: Overall budget in seconds for connect + write + response
        """
        self.timeout = timeout

    async def request(
        self,
        endpoint_path: Union[str, Path],
        message: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Send `message` and return the daemon's response.

        Raises:
            DaemonNotRunningError: Endpoint file does not exist (no connect attempted)
            DaemonTimeoutError: No newline-terminated response within the timeout
            InvalidResponseError: Response is not a JSON object
            TransportError: Connect refused or other socket failure
        """
        endpoint_path = Path(endpoint_path)
        if not endpoint_path.exists():
            raise DaemonNotRunningError(f"Daemon not running (no endpoint at {endpoint_path})")

        budget = self.timeout if timeout is None else timeout
        try:
            raw = await asyncio.wait_for(self._exchange(endpoint_path, message), budget)
        except asyncio.TimeoutError:
            raise DaemonTimeoutError(f"Daemon timeout after {budget * 1000:.0f} ms")
        except OSError as e:
            raise TransportError(f"Daemon connection failed: {e}")

        try:
            return decode_message(raw)
        except ValueError:
            raise InvalidResponseError(f"Invalid response: {raw!r}", raw=raw)

    async def _exchange(self, endpoint_path: Path, message: Dict[str, Any]) -> bytes:
        reader, writer = await asyncio.open_unix_connection(str(endpoint_path))
        try:
            writer.write(encode_message(message))
            await writer.drain()

            chunks = []
            while True:
                chunk = await reader.read(READ_CHUNK)
                if not chunk:
                    break
                chunks.append(chunk)
                if DELIMITER in chunk:
                    break

            data = b"".join(chunks)
            line, _, _ = data.partition(DELIMITER)
            return line
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError as e:
                logger.debug(f"Error closing channel to {endpoint_path}: {e}")
