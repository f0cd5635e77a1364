"""
Plugin Registry for the Workflow Engine.

The registry maps node type identifiers to plugin descriptors. It is
populated at startup and read on every node execution; the supervisor
receives it as a dependency instead of reaching for a global.
"""

from typing import Any, Callable, Dict, Iterator, List, Optional
import logging

from portflow.engine.ports import PluginDescriptor, PluginRun, define_plugin


logger = logging.getLogger(__name__)


class PluginRegistry:
    """
    Registry of node type plugins.

    Registration is last-write-wins: registering a descriptor under an id
    that is already taken replaces it and logs a warning.

    Usage:
        registry = PluginRegistry()

        @registry.plugin(id="echo", inputs=[PortDescriptor("input")],
                         outputs=[PortDescriptor("output")])
        async def echo(inputs, context):
            return {"output": inputs.get("input")}

        registry.get("echo")
    """

    def __init__(self):
        self._plugins: Dict[str, PluginDescriptor] = {}

    def register(self, descriptor: PluginDescriptor) -> PluginDescriptor:
        """
        Insert or overwrite a plugin by its id.

        Port lists are not validated here; a malformed plugin surfaces as
        a node error when its ``run`` is invoked.

        Raises:
            ValueError: If the descriptor has no id
        """
        if not descriptor.id:
            raise ValueError("Plugin id cannot be empty")

        if descriptor.id in self._plugins:
            logger.warning(f"Plugin with id '{descriptor.id}' is already registered. Overwriting.")

        self._plugins[descriptor.id] = descriptor
        logger.debug(f"Registered plugin: {descriptor.name} (id: {descriptor.id})")
        return descriptor

    def plugin(self, id: str, **kwargs: Any) -> Callable[[PluginRun], PluginDescriptor]:
        """
        Decorator that defines a plugin from a run function and registers it.

        Accepts the same keyword arguments as ``define_plugin``.
        """
        def decorator(func: PluginRun) -> PluginDescriptor:
            return self.register(define_plugin(id, **kwargs)(func))

        return decorator

    def get(self, plugin_id: str) -> Optional[PluginDescriptor]:
        """Get a plugin by node type id."""
        return self._plugins.get(plugin_id)

    def get_all(self) -> List[PluginDescriptor]:
        """Snapshot of all registered plugins."""
        return list(self._plugins.values())

    def get_by_category(self, category: str) -> List[PluginDescriptor]:
        """All plugins in the given category."""
        return [p for p in self._plugins.values() if p.category == category]

    def remove(self, plugin_id: str) -> bool:
        """Remove a plugin from the registry."""
        if plugin_id in self._plugins:
            del self._plugins[plugin_id]
            return True
        return False

    def has(self, plugin_id: str) -> bool:
        """Check if a plugin is registered."""
        return plugin_id in self._plugins

    def __contains__(self, plugin_id: str) -> bool:
        return self.has(plugin_id)

    def __len__(self) -> int:
        return len(self._plugins)

    def __iter__(self) -> Iterator[PluginDescriptor]:
        return iter(self._plugins.values())


# Default registry used by the HTTP application
plugin_registry = PluginRegistry()
