"""Error taxonomy for shelly.

Every error the coordinator is expected to turn into a
``{"status": "error"}`` result derives from ShellyError. Anything else is a
bug and is allowed to propagate.
"""

from typing import Optional


class ShellyError(Exception):
    """Base class for all expected shelly failures."""


class ValidationError(ShellyError):
    """Malformed or missing input, rejected before any side effect."""


class StateError(ShellyError):
    """Operation not allowed in the current state (not connected, already serving...)."""


class TransportError(ShellyError):
    """The local channel to a daemon failed."""


class DaemonNotRunningError(TransportError):
    """No endpoint file exists for the seed."""


class DaemonTimeoutError(TransportError):
    """The daemon accepted the connection but never answered."""


class InvalidResponseError(TransportError):
    """The daemon answered with something that is not a JSON object."""

    def __init__(self, message: str, raw: Optional[bytes] = None):
        super().__init__(message)
        self.raw = raw


class DaemonStartError(TransportError):
    """A freshly spawned daemon never created its endpoint."""


class RemoteExecutionError(ShellyError):
    """The remote-shell tool exited non-zero or timed out.

    `detail` is the tool's own error text (stderr), without the command line.
    """

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.detail = detail


class SeedMismatchError(ShellyError):
    """Persisted state belongs to a different seed."""


class PluginError(ShellyError):
    """Plugin load/unload failure."""
