"""
Flipper client

Keeps a WebSocket session with a Flipper desktop host and multiplexes one
channel per registered plugin over it.
"""

from flipper_client.client import ConnectionState, FlipperClient
from flipper_client.config import ClientSettings, load_settings
from flipper_client.connection import FlipperConnection, FlipperResponder
from flipper_client.errors import (
    ConnectionNotFoundError,
    DeserializationError,
    FlipperError,
    MethodNotFoundError,
    PluginNotFoundError,
    SerializationError,
    TransportError,
)
from flipper_client.metadata import DeviceMetadata
from flipper_client.plugin import FlipperPlugin
from flipper_client.registry import PluginRegistry
from flipper_client.retry import ReconnectPolicy

__version__ = "0.1.0"
