"""
Envelope codec.

Inbound frames are JSON text. Each frame is classified as a host request
(``getPlugins``/``getBackgroundPlugins``), a plugin request (``init``,
``deinit``, ``execute``, ``isMethodSupported``) or an unrecognized frame. The
last arm is a normal result: hosts of a newer version may send methods this
client does not know, and those frames are logged and dropped.

Outbound messages are plain dicts. Binary values are turned into text before
serialization since the host only accepts text frames.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError

from flipper_client.errors import DeserializationError, SerializationError

logger = logging.getLogger(__name__)

REFRESH_PLUGINS = "refreshPlugins"


class HostRequest(BaseModel):
    """Request addressed to the client itself."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: StrictInt
    method: Literal["getPlugins", "getBackgroundPlugins"]


class PluginRequest(BaseModel):
    """
    Request addressed to one plugin.

    ``id`` is optional: the host sends ``init``/``deinit`` as fire-and-forget
    messages and expects no response to them.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: Optional[StrictInt] = None
    method: Literal["init", "deinit", "execute", "isMethodSupported"]
    params: Dict[str, Any] = Field(default_factory=dict)

    @property
    def plugin(self) -> str:
        """Target plugin of ``init``/``deinit``."""
        return _as_str(self.params.get("plugin"))

    @property
    def api(self) -> str:
        """Target plugin of ``execute``/``isMethodSupported``."""
        return _as_str(self.params.get("api"))

    @property
    def target_method(self) -> str:
        return _as_str(self.params.get("method"))

    @property
    def call_params(self) -> Dict[str, Any]:
        params = self.params.get("params")
        return params if isinstance(params, dict) else {}


@dataclass(frozen=True)
class UnrecognizedFrame:
    raw: str
    reason: str


InboundFrame = Union[HostRequest, PluginRequest, UnrecognizedFrame]


def _as_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


# --- Decoding ---

def _load_object(text: str) -> Dict[str, Any]:
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as e:
        raise DeserializationError(f"Frame is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise DeserializationError(f"Frame is not a JSON object: {type(data).__name__}")
    return data


def parse_host_request(text: str) -> HostRequest:
    """
    Raises:
        DeserializationError: If ``text`` is not a host request
    """
    data = _load_object(text)
    try:
        return HostRequest.model_validate(data)
    except ValidationError as e:
        raise DeserializationError(f"Not a host request: {e.error_count()} validation error(s)") from e


def parse_plugin_request(text: str) -> PluginRequest:
    """
    Raises:
        DeserializationError: If ``text`` is not a plugin request
    """
    data = _load_object(text)
    try:
        return PluginRequest.model_validate(data)
    except ValidationError as e:
        raise DeserializationError(f"Not a plugin request: {e.error_count()} validation error(s)") from e


def decode_frame(text: str) -> InboundFrame:
    """
    Classify an inbound text frame. Never raises.

    Args:
        text: Raw frame text as received from the transport

    Returns:
        HostRequest, PluginRequest, or UnrecognizedFrame with the reason
    """
    try:
        data = _load_object(text)
    except DeserializationError as e:
        return UnrecognizedFrame(raw=text, reason=e.message)

    try:
        return HostRequest.model_validate(data)
    except ValidationError:
        pass
    try:
        return PluginRequest.model_validate(data)
    except ValidationError:
        pass

    method = data.get("method")
    return UnrecognizedFrame(raw=text, reason=f"Unsupported message shape (method={method!r})")


# --- Encoding ---

def normalize(value: Any) -> Any:
    """
    Recursively replace binary values with text.

    Bytes that are not valid UTF-8 become an empty string; mappings and
    sequences are rebuilt, everything else is returned unchanged.
    """
    if isinstance(value, (bytes, bytearray, memoryview)):
        try:
            return bytes(value).decode("utf-8")
        except UnicodeDecodeError:
            return ""
    if isinstance(value, dict):
        return {key: normalize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [normalize(item) for item in value]
    return value


def encode_message(message: Dict[str, Any]) -> str:
    """
    Serialize an outbound message to a JSON text frame.

    Raises:
        SerializationError: If the message holds values JSON cannot represent,
            NaN and infinities included
    """
    try:
        return json.dumps(normalize(message), allow_nan=False)
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Couldn't serialize message to JSON: {e}") from e


def success_response(request_id: int, payload: Any) -> Dict[str, Any]:
    return {"id": request_id, "success": payload}


def error_response(request_id: int, error: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": request_id, "error": error}


def refresh_plugins_message() -> Dict[str, Any]:
    return {"method": REFRESH_PLUGINS}


def plugin_event(plugin_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    return {"method": plugin_id, "params": payload}
