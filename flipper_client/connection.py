"""
Per-plugin connection channel.

Each active plugin owns exactly one FlipperConnection. The connection keeps the
plugin's method receivers and forwards outbound events to the message bus (the
FlipperClient), which drops them while the session is offline.
"""

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Union

from flipper_client import envelope
from flipper_client.errors import MethodNotFoundError, payload_for_exception

logger = logging.getLogger(__name__)

Receiver = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]


class MessageBus(Protocol):
    """Anything able to push an outbound message to the host."""

    @property
    def is_connected(self) -> bool:
        ...

    def send_message(self, message: Dict[str, Any]) -> None:
        ...


class FlipperConnection:
    """Logical channel between one plugin and the host."""

    def __init__(self, plugin_id: str, bus: MessageBus):
        self.plugin_id = plugin_id
        self._bus = bus
        self._receivers: Dict[str, Receiver] = {}

    def receive(self, method: str, receiver: Receiver) -> None:
        """
        Register a handler for ``method``. A later registration for the same
        name replaces the earlier one.

        Receivers run while the client handles the request, and may call back
        into the client (add_plugin, send), also from tasks they spawn and await.

        Args:
            method: Method name the host will call through ``execute``
            receiver: Callable (plain or coroutine function) taking the params
                mapping; its return value becomes the success payload
        """
        if method in self._receivers:
            logger.debug(f"Replacing receiver '{method}' on plugin '{self.plugin_id}'")
        self._receivers[method] = receiver

    def has_receiver(self, method: str) -> bool:
        return method in self._receivers

    async def call(self, method: str, params: Dict[str, Any]) -> Any:
        """
        Invoke the receiver registered for ``method``.

        Raises:
            MethodNotFoundError: If no receiver is registered for ``method``
        """
        receiver = self._receivers.get(method)
        if receiver is None:
            raise MethodNotFoundError(self.plugin_id, method)
        result = receiver(params)
        if inspect.isawaitable(result):
            result = await result
        return result

    def send(self, payload: Dict[str, Any]) -> None:
        """Push an unsolicited event to the host. Dropped while disconnected."""
        if not self._bus.is_connected:
            logger.debug(f"Dropping event from plugin '{self.plugin_id}': not connected")
            return
        self._bus.send_message(envelope.plugin_event(self.plugin_id, payload))

    def __repr__(self) -> str:
        return f"FlipperConnection(plugin_id={self.plugin_id!r}, receivers={sorted(self._receivers)!r})"


class FlipperResponder:
    """
    Sends the single response belonging to one inbound request.

    Requests without an id (the host sends ``init``/``deinit`` that way) expect
    no answer, so both methods are no-ops for them.
    """

    def __init__(self, responder_id: Optional[int], bus: MessageBus):
        self.responder_id = responder_id
        self._bus = bus

    def success(self, payload: Any) -> None:
        if self.responder_id is None:
            return
        self._bus.send_message(envelope.success_response(self.responder_id, payload))

    def error(self, error: Union[BaseException, Dict[str, Any]]) -> None:
        if isinstance(error, BaseException):
            error = payload_for_exception(error)
        if self.responder_id is None:
            logger.warning(f"Dropping error for request without id: {error}")
            return
        self._bus.send_message(envelope.error_response(self.responder_id, error))
