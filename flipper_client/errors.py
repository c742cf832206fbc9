"""
Error taxonomy for the Flipper client.

Errors that the host can observe (unknown plugin, missing connection, missing
method) carry the wire-level ``error_name`` used in the error response
envelope. The remaining errors never leave the process: they are logged and
the offending frame or send is dropped.
"""

import traceback
from typing import Any, Dict, Optional


class FlipperError(Exception):
    """Base class for all errors raised by the client."""

    error_name: str = "FlipperError"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def to_payload(self, include_stacktrace: bool = False) -> Dict[str, Any]:
        """Build the ``error`` body of a response envelope."""
        return error_payload(self.error_name, self.message,
                             format_stacktrace(self) if include_stacktrace else None)


class SerializationError(FlipperError):
    """An outbound payload could not be turned into wire text."""

    error_name = "SerializationError"


class DeserializationError(FlipperError):
    """An inbound frame did not match any known request shape."""

    error_name = "DeserializationError"


class PluginNotFoundError(FlipperError):
    error_name = "PluginNotFound"

    def __init__(self, plugin_id: str, method: str):
        super().__init__(f"{plugin_id} not found for method {method}")
        self.plugin_id = plugin_id
        self.method = method


class ConnectionNotFoundError(FlipperError):
    error_name = "ConnectionNotFound"

    def __init__(self, plugin_id: str):
        super().__init__(f"Connection {plugin_id} not found for plugin identifier")
        self.plugin_id = plugin_id


class MethodNotFoundError(FlipperError):
    error_name = "MethodNotFound"

    def __init__(self, plugin_id: str, method: str):
        super().__init__(f"Receiver {method} not found for plugin {plugin_id}")
        self.plugin_id = plugin_id
        self.method = method


class TransportError(FlipperError):
    """
    The WebSocket transport failed.

    ``cause`` holds the underlying aiohttp/OS exception (if any) so that the
    reconnect policy can classify it.
    """

    error_name = "TransportError"

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


def error_payload(name: str, message: str, stacktrace: Optional[str] = None) -> Dict[str, Any]:
    payload = {"message": message, "name": name}
    if stacktrace:
        payload["stacktrace"] = stacktrace
    return payload


def format_stacktrace(exc: BaseException) -> Optional[str]:
    if exc.__traceback__ is None:
        return None
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


def payload_for_exception(exc: BaseException) -> Dict[str, Any]:
    """
    Convert an arbitrary exception into an error body.

    Client errors keep their wire name; anything else raised by a plugin
    handler is reported under its class name with the formatted traceback.
    """
    if isinstance(exc, FlipperError):
        return exc.to_payload()
    return error_payload(type(exc).__name__, str(exc), format_stacktrace(exc))
