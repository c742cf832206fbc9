"""
Request router.

Dispatches decoded requests against the plugin registry and the active
connections. Every request is answered through a FlipperResponder bound to the
request id; lookup failures are reported to the host as structured errors.
"""

import logging
from typing import Union

from flipper_client.connection import FlipperResponder, MessageBus
from flipper_client.envelope import HostRequest, PluginRequest
from flipper_client.errors import (
    ConnectionNotFoundError,
    PluginNotFoundError,
)
from flipper_client.registry import PluginRegistry

logger = logging.getLogger(__name__)


class RequestRouter:

    def __init__(self, registry: PluginRegistry, bus: MessageBus):
        self.registry = registry
        self.bus = bus

    async def route(self, request: Union[HostRequest, PluginRequest]) -> None:
        """Handle one request and send its response (if it expects one)."""
        if isinstance(request, HostRequest):
            self.handle_host_request(request)
        else:
            await self.handle_plugin_request(request)

    def handle_host_request(self, request: HostRequest) -> None:
        responder = FlipperResponder(request.id, self.bus)
        if request.method == "getPlugins":
            responder.success(self.registry.plugin_ids())
        elif request.method == "getBackgroundPlugins":
            responder.success(self.registry.background_plugin_ids())

    async def handle_plugin_request(self, request: PluginRequest) -> None:
        responder = FlipperResponder(request.id, self.bus)
        logger.debug(f"Plugin request {request.id}: {request.method} {request.params}")

        if request.method in ("init", "deinit"):
            plugin = self.registry.get(request.plugin)
            if plugin is None:
                responder.error(PluginNotFoundError(request.plugin, request.method))
                return
            try:
                if request.method == "init":
                    self.registry.activate(plugin, self.bus)
                else:
                    self.registry.deactivate(plugin)
            except Exception as e:
                logger.error(f"Plugin '{plugin.id}' failed during {request.method}: {e}", exc_info=True)
                responder.error(e)
                return
            responder.success({})
            return

        connection = self.registry.connection(request.api)
        if connection is None:
            responder.error(ConnectionNotFoundError(request.api))
            return

        if request.method == "isMethodSupported":
            responder.success(connection.has_receiver(request.target_method))
            return

        # execute
        try:
            result = await connection.call(request.target_method, request.call_params)
        except Exception as e:
            logger.warning(f"'{request.api}.{request.target_method}' failed: {e}")
            responder.error(e)
            return
        responder.success(result)
