"""Per-seed daemon architecture.

Architecture:
- DaemonServer: asyncio Unix socket server that owns one remote session
- DaemonSupervisor: spawns daemons detached and stops them over the channel
- ChannelTransport: one connection per request, newline-delimited JSON
- HealthMonitor: endpoint reachability and pid liveness probes
"""

from shelly.daemon.health import HealthMonitor
from shelly.daemon.supervisor import DaemonHandle, DaemonSupervisor
from shelly.daemon.transport import ChannelTransport

__all__ = ["ChannelTransport", "DaemonHandle", "DaemonSupervisor", "HealthMonitor"]
