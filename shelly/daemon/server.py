"""Per-seed daemon: owns the remote connection and answers channel requests.

Lifecycle:
    starting  - remove any stale endpoint file, bind the Unix socket
    serving   - one request per connection, requests serialized
    draining  - stop accepting, remove endpoint (and current-seed pointer),
                short grace delay so the last response reaches the client
    terminated

The daemon drains on an explicit disconnect, on SIGTERM/SIGINT, and after a
send whose error text says the remote connection is gone. SIGHUP is ignored
because daemons outlive the terminal that spawned them.

Usage:
    python -m shelly.daemon.server SEED --user USER [--base-dir DIR]
"""

import argparse
import asyncio
import logging
import os
from pathlib import Path
import signal
import sys
from typing import Any, Dict, Optional, Tuple

import setproctitle

from shelly.daemon.protocol import (
    MSG_DISCONNECT,
    MSG_SEND,
    decode_message,
    encode_message,
    error_response,
    success_response,
)
from shelly.errors import RemoteExecutionError
from shelly.tools.remote_shell import RemoteShell, derive_seed_material, is_connection_lost
from shelly.utils import best_effort_unlink

logger = logging.getLogger(__name__)

STARTING = "starting"
SERVING = "serving"
DRAINING = "draining"
TERMINATED = "terminated"

# Largest request line accepted (payload data is capped at 1 MiB upstream).
MAX_LINE = 4 * 1024 * 1024
# How long a connected client may take to send its request line.
READ_TIMEOUT = 30.0


class DaemonServer:
    """
    Async Unix socket server for one seed.

    Connections are handled by asyncio, but remote executions are serialized
    with a lock: the remote session is a single resource.
    """

    def __init__(
        self,
        seed: str,
        user: str,
        endpoint_path: Path,
        shell: RemoteShell,
        remote_seed: Optional[str] = None,
        current_seed_path: Optional[Path] = None,
        grace: float = 0.1,
    ):
        """
        Args:
            seed: Seed this daemon owns
            user: Remote user passed to the remote-shell tool
            endpoint_path: Unix socket path to bind
            shell: Remote-shell tool wrapper
            remote_seed: Seed material for the tool (default: sha256 of seed)
            current_seed_path: Pointer file removed on drain if it names this seed
            grace: Seconds to wait after cleanup before exiting
        """
        self.seed = seed
        self.user = user
        self.endpoint_path = Path(endpoint_path)
        self.shell = shell
        self.remote_seed = remote_seed or derive_seed_material(seed)
        self.current_seed_path = current_seed_path
        self.grace = grace

        self.state = STARTING
        self.server: Optional[asyncio.AbstractServer] = None
        self._lock = asyncio.Lock()
        self._shutdown_event = asyncio.Event()
        self.shutdown_reason: Optional[str] = None

    async def serve(self, install_signal_handlers: bool = False) -> int:
        """
        Run until drained. Returns the process exit code.

        Args:
            install_signal_handlers: Route SIGTERM/SIGINT into the drain path
                (only possible from the main thread)
        """
        logger.info(f"Starting daemon for seed {self.seed[:16]} (pid {os.getpid()})")

        if install_signal_handlers:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)

        try:
            self.endpoint_path.parent.mkdir(parents=True, exist_ok=True)
            # A previous unclean exit can leave the socket file behind
            best_effort_unlink(self.endpoint_path)
            self.server = await asyncio.start_unix_server(
                self._handle_client,
                path=str(self.endpoint_path),
                limit=MAX_LINE,
            )
            os.chmod(self.endpoint_path, 0o600)
        except OSError as e:
            logger.error(f"Failed to bind {self.endpoint_path}: {e}")
            self.state = TERMINATED
            return 1

        self.state = SERVING
        logger.info(f"Daemon listening on {self.endpoint_path}")

        await self._shutdown_event.wait()
        await self._drain()
        return 0

    def request_shutdown(self, reason: str) -> None:
        """Begin draining. Safe to call more than once."""
        if self.shutdown_reason is None:
            logger.info(f"Shutdown requested: {reason}")
            self.shutdown_reason = reason
        self._shutdown_event.set()

    async def _drain(self) -> None:
        self.state = DRAINING

        if self.server:
            self.server.close()

        best_effort_unlink(self.endpoint_path)
        self._remove_current_seed_pointer()

        # Let the final response flush before the process disappears
        await asyncio.sleep(self.grace)
        self.state = TERMINATED
        logger.info("Daemon stopped")

    def _remove_current_seed_pointer(self) -> None:
        if self.current_seed_path is None:
            return
        try:
            current = self.current_seed_path.read_text().strip()
        except OSError:
            return
        if current == self.seed:
            best_effort_unlink(self.current_seed_path)

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle a single client connection: one line in, one line out."""
        drain_reason: Optional[str] = None
        try:
            try:
                line = await asyncio.wait_for(reader.readline(), timeout=READ_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("Client connection timed out")
                return
            except ValueError:
                response = error_response("Request too large")
                writer.write(encode_message(response))
                await writer.drain()
                return

            if not line.strip():
                # Health probe: connect and close without a request
                return

            try:
                request = decode_message(line)
            except ValueError as e:
                response = error_response(f"Invalid JSON: {e}")
            else:
                response, drain_reason = await self._dispatch(request)

            writer.write(encode_message(response))
            await writer.drain()

        except ConnectionError as e:
            logger.warning(f"Client went away before the response was written: {e}")
        except Exception as e:
            logger.exception(f"Error handling client: {e}")
            try:
                writer.write(encode_message(error_response(str(e))))
                await writer.drain()
            except ConnectionError:
                logger.debug("Client gone, error response dropped")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                logger.debug("Client reset the connection while closing")
            if drain_reason:
                self.request_shutdown(drain_reason)

    async def _dispatch(self, request: Dict[str, Any]) -> Tuple[Dict[str, Any], Optional[str]]:
        """
        Route a request. Returns (response, drain_reason); a truthy reason
        means the daemon drains once the response is written.
        """
        kind = request.get("type")

        if kind == MSG_SEND:
            return await self._handle_send(request)
        if kind == MSG_DISCONNECT:
            logger.info("Disconnect requested via socket")
            return success_response(), "disconnect"

        return error_response("Unknown command"), None

    async def _handle_send(self, request: Dict[str, Any]) -> Tuple[Dict[str, Any], Optional[str]]:
        text = request.get("text")
        if not isinstance(text, str) or not text:
            return error_response("text required"), None

        async with self._lock:
            if self.state != SERVING:
                return success_response("ERROR: Daemon shutting down\n"), None
            try:
                output = await self.shell.run(self.remote_seed, self.user, text)
            except RemoteExecutionError as e:
                message = str(e)
                if is_connection_lost(e.detail if e.detail is not None else message):
                    logger.error(f"Remote connection lost: {message}")
                    # Stop taking new work before the response goes out
                    self.state = DRAINING
                    return success_response(f"ERROR: {message}\n", connection_lost=True), "connection lost"
                return success_response(f"ERROR: {message}\n"), None

        return success_response(output), None


def run_daemon(
    seed: str,
    user: str,
    base_dir: Optional[str] = None,
    remote_seed: Optional[str] = None,
    remote_shell: str = "npx hyperssh",
    exec_timeout: float = 30.0,
    grace: float = 0.1,
) -> int:
    """
    Run the daemon in the current process until it drains.

    Returns the exit code (0 after a drain, 1 if the endpoint could not be bound).
    """
    from shelly.core.configs import Settings

    settings = Settings(base_dir=Path(base_dir)) if base_dir else Settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Detached daemons must survive their terminal going away
    signal.signal(signal.SIGHUP, signal.SIG_IGN)
    setproctitle.setproctitle(f"shelly-daemon [{seed[:16]}]")

    server = DaemonServer(
        seed=seed,
        user=user,
        endpoint_path=settings.endpoint_path(seed),
        shell=RemoteShell(remote_shell, timeout=exec_timeout),
        remote_seed=remote_seed,
        current_seed_path=settings.current_seed_path,
        grace=grace,
    )
    return asyncio.run(server.serve(install_signal_handlers=True))


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="shelly per-seed daemon")
    parser.add_argument("seed", help="Seed this daemon owns")
    parser.add_argument("--user", required=True, help="Remote user")
    parser.add_argument("--base-dir", help="Directory holding endpoint files")
    parser.add_argument("--remote-seed", help="Seed material for the remote-shell tool")
    parser.add_argument("--remote-shell", default="npx hyperssh", help="Remote-shell tool command")
    parser.add_argument("--exec-timeout", type=float, default=30.0, help="Per-command timeout (s)")
    parser.add_argument("--grace", type=float, default=0.1, help="Delay before exit after draining (s)")

    args = parser.parse_args(argv)

    sys.exit(
        run_daemon(
            seed=args.seed,
            user=args.user,
            base_dir=args.base_dir,
            remote_seed=args.remote_seed,
            remote_shell=args.remote_shell,
            exec_timeout=args.exec_timeout,
            grace=args.grace,
        )
    )


if __name__ == "__main__":
    main()
