"""Ordered, failable event hooks and the plugins that contribute them.

A handler receives a payload dict and returns the payload for the next
handler (returning None passes its input through unchanged). Handlers may be
plain functions or coroutines. The first exception stops the dispatch and
propagates to the caller.
"""

from dataclasses import dataclass, field
import importlib
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from shelly.errors import PluginError

logger = logging.getLogger(__name__)

Payload = Dict[str, Any]
Handler = Callable[[Payload], Union[Optional[Payload], Awaitable[Optional[Payload]]]]
Middleware = Callable[[str, Payload], Union[Optional[Payload], Awaitable[Optional[Payload]]]]

# Built-in event names
PRE_CONNECT = "session:pre-connect"
POST_CONNECT = "session:post-connect"
PRE_SEND = "session:pre-send"
POST_SEND = "session:post-send"
PRE_DISCONNECT = "session:pre-disconnect"
SESSION_CREATED = "session:created"
SESSION_DELETED = "session:deleted"
DATA_RECEIVED = "data:received"
BUFFER_GET = "buffer:get"
BUFFER_CLEAR = "buffer:clear"
LOG_ENTRY = "log:entry"


@dataclass
class PluginDescriptor:
    """What a plugin contributes: hook bindings and optional middleware."""
    name: str
    version: str = "1.0.0"
    hook_bindings: List[Tuple[str, Handler]] = field(default_factory=list)
    middleware: Optional[Middleware] = None


async def _call(func: Callable, *args: Any) -> Any:
    result = func(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class HookPipeline:
    """Named-event dispatcher with per-event ordered handler lists."""

    def __init__(self) -> None:
        self._hooks: Dict[str, List[Handler]] = {}
        self._middleware: List[Middleware] = []

    def register(self, event: str, handler: Handler) -> None:
        self._hooks.setdefault(event, []).append(handler)

    def unregister(self, event: str, handler: Handler) -> bool:
        handlers = self._hooks.get(event, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def handlers(self, event: str) -> List[Handler]:
        return list(self._hooks.get(event, []))

    def events(self) -> List[str]:
        return [event for event, handlers in self._hooks.items() if handlers]

    def add_middleware(self, middleware: Middleware) -> None:
        self._middleware.append(middleware)

    def remove_middleware(self, middleware: Middleware) -> None:
        if middleware in self._middleware:
            self._middleware.remove(middleware)

    async def dispatch(self, event: str, payload: Optional[Payload] = None) -> Payload:
        """
        Run middleware, then every handler for `event` in registration order.

        Returns the payload produced by the last handler.
        """
        result: Payload = dict(payload or {})

        for middleware in list(self._middleware):
            returned = await _call(middleware, event, result)
            if returned is not None:
                result = returned

        for handler in self.handlers(event):
            try:
                returned = await _call(handler, result)
            except Exception as e:
                logger.error(f"Hook {event} error: {e}")
                raise
            if returned is not None:
                result = returned

        return result


class PluginManager:
    """
    Loads plugin descriptors into a HookPipeline and keeps track of them.

    Plugins come from an explicit list (see shelly.plugins.builtin) or from a
    manifest of "module:factory" entries; directories are never scanned.
    """

    def __init__(self, pipeline: HookPipeline):
        self.pipeline = pipeline
        self._plugins: Dict[str, PluginDescriptor] = {}
        self._instances: Dict[str, Any] = {}

    def load(self, descriptor: PluginDescriptor, instance: Any = None) -> PluginDescriptor:
        """Bind a plugin's hooks. Raises PluginError if the name is taken."""
        if descriptor.name in self._plugins:
            raise PluginError(f"Plugin {descriptor.name} already loaded")

        for event, handler in descriptor.hook_bindings:
            self.pipeline.register(event, handler)
        if descriptor.middleware is not None:
            self.pipeline.add_middleware(descriptor.middleware)

        self._plugins[descriptor.name] = descriptor
        if instance is not None:
            self._instances[descriptor.name] = instance
        logger.info(f"Loaded plugin: {descriptor.name}")
        return descriptor

    def load_component(self, component: Any) -> Any:
        """Load an object exposing descriptor(); returns the object."""
        self.load(component.descriptor(), instance=component)
        return component

    def unload(self, name: str) -> None:
        """Remove a plugin's hooks and middleware. Raises PluginError if unknown."""
        descriptor = self._plugins.pop(name, None)
        if descriptor is None:
            raise PluginError(f"Plugin {name} not found")

        for event, handler in descriptor.hook_bindings:
            self.pipeline.unregister(event, handler)
        if descriptor.middleware is not None:
            self.pipeline.remove_middleware(descriptor.middleware)

        instance = self._instances.pop(name, None)
        if instance is not None and hasattr(instance, "unload"):
            instance.unload()
        logger.info(f"Unloaded plugin: {name}")

    def get_plugin(self, name: str) -> Any:
        """The component instance if one was registered, else the descriptor."""
        if name in self._instances:
            return self._instances[name]
        return self._plugins.get(name)

    def list_plugins(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": d.name,
                "version": d.version,
                "hooks": [event for event, _ in d.hook_bindings],
                "middleware": d.middleware is not None,
            }
            for d in self._plugins.values()
        ]

    def load_manifest(self, entries: List[str], **context: Any) -> List[Any]:
        """
        Import and load "package.module:factory" entries.

        The factory is called with `context` as keyword arguments and must
        return a PluginDescriptor or an object with descriptor().
        """
        loaded = []
        for entry in entries:
            module_name, _, attr = entry.partition(":")
            if not module_name or not attr:
                raise PluginError(f"Invalid plugin entry {entry!r}, expected 'module:factory'")
            try:
                factory = getattr(importlib.import_module(module_name), attr)
            except (ImportError, AttributeError) as e:
                raise PluginError(f"Failed to load plugin {entry}: {e}")

            plugin = factory(**context)
            if isinstance(plugin, PluginDescriptor):
                self.load(plugin)
            else:
                self.load_component(plugin)
            loaded.append(plugin)
        return loaded
