"""Built-in plugin components.

BUILTIN_PLUGINS is the explicit, ordered registration list. Every entry is a
class constructed with keyword context (registry, ring) that exposes
descriptor().
"""

from typing import Any, List

from shelly.plugins.builtin.buffer import BufferPlugin
from shelly.plugins.builtin.logs import LoggingPlugin
from shelly.plugins.builtin.session import SessionPlugin
from shelly.plugins.builtin.validation import ValidationPlugin, ValidationRule

BUILTIN_PLUGINS = (SessionPlugin, BufferPlugin, LoggingPlugin, ValidationPlugin)


def builtin_components(**context: Any) -> List[Any]:
    return [plugin_cls(**context) for plugin_cls in BUILTIN_PLUGINS]


__all__ = [
    "BUILTIN_PLUGINS",
    "BufferPlugin",
    "LoggingPlugin",
    "SessionPlugin",
    "ValidationPlugin",
    "ValidationRule",
    "builtin_components",
]
