"""Context persistence, logging ring, sessions and the coordinator façade.

Import the coordinator from shelly.core.coordinator directly; it pulls in the
daemon and plugin packages.
"""

from shelly.core.configs import Settings, get_settings
from shelly.core.context import ContextStore, SeedContext
from shelly.core.logs import LogEntry, LogRing

__all__ = ["ContextStore", "LogEntry", "LogRing", "SeedContext", "Settings", "get_settings"]
