"""Plugin registry for discovering and managing available plugins."""

from __future__ import annotations

from octo_bot.errors import UnknownPluginError
from octo_bot.log import get_logger
from octo_bot.plugins.base import Plugin

logger = get_logger(__name__)


class PluginRegistry:
    """Registry of all available plugins, keyed case-insensitively by id."""

    def __init__(self) -> None:
        self._plugins: dict[str, Plugin] = {}

    def register(self, plugin: Plugin) -> None:
        key = plugin.metadata.id.lower()
        if key in self._plugins:
            logger.warning("plugin_already_registered", plugin_id=plugin.metadata.id)
            return
        self._plugins[key] = plugin
        logger.info("plugin_registered", plugin_id=plugin.metadata.id)

    def get(self, plugin_id: str) -> Plugin | None:
        return self._plugins.get(plugin_id.lower())

    def resolve(self, plugin_id: str) -> Plugin:
        plugin = self.get(plugin_id)
        if plugin is None:
            raise UnknownPluginError(f"No plugin registered with id '{plugin_id}'")
        return plugin

    def has(self, plugin_id: str) -> bool:
        return plugin_id.lower() in self._plugins

    def all_plugins(self) -> list[Plugin]:
        return list(self._plugins.values())

    def discover_and_register(self) -> None:
        """Import and register all built-in plugins."""
        from octo_bot.plugins.datetime_plugin import DateTimePlugin
        from octo_bot.plugins.math_plugin import MathPlugin
        from octo_bot.plugins.websearch import WebSearchPlugin

        self.register(DateTimePlugin())
        self.register(MathPlugin())
        self.register(WebSearchPlugin())

    async def initialize_all(self) -> None:
        for plugin in self._plugins.values():
            await plugin.initialize()

    async def shutdown_all(self) -> None:
        for plugin in self._plugins.values():
            try:
                await plugin.shutdown()
            except Exception as e:
                logger.error("plugin_shutdown_error", plugin_id=plugin.metadata.id, error=str(e))
