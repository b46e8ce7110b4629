"""Hook pipeline and plugin management."""

from shelly.plugins.pipeline import HookPipeline, PluginDescriptor, PluginManager

__all__ = ["HookPipeline", "PluginDescriptor", "PluginManager"]
