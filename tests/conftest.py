"""
Shared fixtures: sample plugins, an in-memory transport and a recording bus.
"""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

import pytest
from aiohttp import WSMessage, WSMsgType
from unittest.mock import MagicMock

from flipper_client.config import ClientSettings
from flipper_client.errors import TransportError
from flipper_client.metadata import DeviceMetadata


class SamplePlugin:
    """Minimal plugin that records lifecycle calls and registers given receivers."""

    def __init__(self, plugin_id: str, run_in_background: bool = False,
                 receivers: Optional[Dict[str, Callable]] = None):
        self.id = plugin_id
        self.run_in_background = run_in_background
        self.receivers = receivers or {}
        self.connections: List[Any] = []
        self.disconnect_count = 0

    @property
    def connection(self):
        return self.connections[-1] if self.connections else None

    def did_connect(self, connection):
        self.connections.append(connection)
        for method, receiver in self.receivers.items():
            connection.receive(method, receiver)

    def did_disconnect(self):
        self.disconnect_count += 1


class FakeTransport:
    """In-memory stand-in for WebSocketTransport."""

    def __init__(self, url, headers, fail_open: Optional[BaseException] = None):
        self.url = url
        self.headers = headers
        self.fail_open = fail_open
        self.sent: List[str] = []
        self.running = False
        self.close_codes: List[int] = []
        self._inbox: asyncio.Queue = asyncio.Queue()

    @property
    def is_running(self) -> bool:
        return self.running

    async def open(self) -> None:
        if self.fail_open is not None:
            raise TransportError(f"open failed: {self.fail_open}", cause=self.fail_open)
        self.running = True

    async def receive(self) -> WSMessage:
        item = await self._inbox.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def send_str(self, text: str) -> None:
        self.sent.append(text)

    async def close(self, code: int = 1000) -> None:
        self.close_codes.append(code)
        self.running = False
        self._inbox.put_nowait(WSMessage(WSMsgType.CLOSED, None, None))

    # --- test helpers ---

    def feed_text(self, payload: Any) -> None:
        text = payload if isinstance(payload, str) else json.dumps(payload)
        self._inbox.put_nowait(WSMessage(WSMsgType.TEXT, text, None))

    def feed(self, msg_type: WSMsgType, data: Any = None) -> None:
        self._inbox.put_nowait(WSMessage(msg_type, data, None))

    def fail_receive(self, error: BaseException) -> None:
        """Make the next receive() raise ``error``."""
        self._inbox.put_nowait(error)

    def host_closes(self) -> None:
        self.running = False
        self._inbox.put_nowait(WSMessage(WSMsgType.CLOSE, 1001, ""))

    @property
    def sent_json(self) -> List[Dict[str, Any]]:
        return [json.loads(text) for text in self.sent]


class FakeTransportFactory:
    """Creates FakeTransports; ``failures`` lists open errors for successive attempts."""

    def __init__(self):
        self.transports: List[FakeTransport] = []
        self.failures: List[Optional[BaseException]] = []
        self.fail_always: Optional[BaseException] = None

    def __call__(self, url, headers) -> FakeTransport:
        if self.failures:
            failure = self.failures.pop(0)
        else:
            failure = self.fail_always
        transport = FakeTransport(url, headers, fail_open=failure)
        self.transports.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.transports[-1]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def settings():
    return ClientSettings(
        _env_file=None,
        url_base="localhost:8333",
        reconnect_interval=0,
        max_retry_attempts=3,
    )


@pytest.fixture
def metadata():
    return DeviceMetadata(os="MacOS", app="SampleApp", device="TestDevice", device_id="1.0device-1")


@pytest.fixture
def transport_factory():
    return FakeTransportFactory()


@pytest.fixture
def logger_plugin():
    return SamplePlugin("Logger", run_in_background=False,
                        receivers={"log": lambda params: {"logged": params.get("message")}})


@pytest.fixture
def network_plugin():
    return SamplePlugin("Network", run_in_background=True)


@pytest.fixture
def bus():
    """MessageBus double that records every outbound message."""
    mock_bus = MagicMock()
    mock_bus.is_connected = True
    mock_bus.sent = []
    mock_bus.send_message.side_effect = mock_bus.sent.append
    return mock_bus
