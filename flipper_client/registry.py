"""
Plugin registry.

Holds every registered plugin keyed by id, plus the connections of the plugins
the host has activated. A connection exists if and only if its plugin is active.
The registry is not thread-safe; FlipperClient only touches it from its worker.
"""

import logging
from typing import Dict, Iterable, List, Optional

from flipper_client.connection import FlipperConnection, MessageBus
from flipper_client.plugin import FlipperPlugin

logger = logging.getLogger(__name__)


class PluginRegistry:

    def __init__(self, plugins: Iterable[FlipperPlugin] = ()):
        self._plugins: Dict[str, FlipperPlugin] = {}
        self._connections: Dict[str, FlipperConnection] = {}
        for plugin in plugins:
            self.register(plugin)

    def register(self, plugin: FlipperPlugin) -> Optional[FlipperPlugin]:
        """
        Add a plugin, replacing any plugin registered under the same id.

        If the replaced plugin was active its connection is torn down first,
        so the new plugin starts inactive until the host sends ``init``.

        Returns:
            The replaced plugin, or None if the id was new
        """
        previous = self._plugins.get(plugin.id)
        if previous is not None:
            logger.info(f"Re-registering plugin '{plugin.id}'")
            self.deactivate(previous)
        self._plugins[plugin.id] = plugin
        return previous

    def get(self, plugin_id: str) -> Optional[FlipperPlugin]:
        return self._plugins.get(plugin_id)

    def plugin_ids(self) -> List[str]:
        return list(self._plugins)

    def background_plugin_ids(self) -> List[str]:
        return [plugin_id for plugin_id, plugin in self._plugins.items()
                if getattr(plugin, "run_in_background", False)]

    @property
    def plugins(self) -> List[FlipperPlugin]:
        return list(self._plugins.values())

    # --- Connections ---

    def connection(self, plugin_id: str) -> Optional[FlipperConnection]:
        return self._connections.get(plugin_id)

    def active_plugin_ids(self) -> List[str]:
        return list(self._connections)

    def activate(self, plugin: FlipperPlugin, bus: MessageBus) -> FlipperConnection:
        """
        Create a fresh connection for ``plugin`` and hand it to the plugin.

        Activating an already active plugin replaces its connection and calls
        ``did_connect`` again.
        """
        connection = FlipperConnection(plugin.id, bus)
        self._connections[plugin.id] = connection
        logger.info(f"Activating plugin '{plugin.id}'")
        plugin.did_connect(connection)
        return connection

    def deactivate(self, plugin: FlipperPlugin) -> bool:
        """
        Tear down the plugin's connection. No-op for inactive plugins.

        Returns:
            True if a connection was removed
        """
        if plugin.id not in self._connections:
            return False
        logger.info(f"Deactivating plugin '{plugin.id}'")
        try:
            plugin.did_disconnect()
        finally:
            self._connections.pop(plugin.id, None)
        return True

    def deactivate_all(self) -> None:
        for plugin_id in list(self._connections):
            plugin = self._plugins.get(plugin_id)
            if plugin is None:
                self._connections.pop(plugin_id, None)
                continue
            self._safe_deactivate(plugin)

    def notify_all_disconnected(self) -> None:
        """
        Tell every registered plugin, active or not, that the session ended,
        then drop all connections.
        """
        for plugin in list(self._plugins.values()):
            try:
                plugin.did_disconnect()
            except Exception as e:
                logger.error(f"Plugin '{plugin.id}' failed in did_disconnect: {e}", exc_info=True)
        self._connections.clear()

    def _safe_deactivate(self, plugin: FlipperPlugin) -> None:
        try:
            self.deactivate(plugin)
        except Exception as e:
            logger.error(f"Plugin '{plugin.id}' failed in did_disconnect: {e}", exc_info=True)

    def __contains__(self, plugin_id: str) -> bool:
        return plugin_id in self._plugins

    def __len__(self) -> int:
        return len(self._plugins)
