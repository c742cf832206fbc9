"""
Tests for the FlipperClient session state machine, using an in-memory transport.
"""

import asyncio
import logging

import pytest
from aiohttp import WSMsgType

from conftest import SamplePlugin, wait_until

from flipper_client.client import ConnectionState, FlipperClient
from flipper_client.retry import ReconnectPolicy


@pytest.fixture
def make_client(settings, metadata, transport_factory, logger_plugin, network_plugin):
    def factory(plugins=None, **kwargs):
        if plugins is None:
            plugins = [logger_plugin, network_plugin]
        return FlipperClient(settings, plugins=plugins, metadata=metadata,
                             transport_factory=transport_factory, **kwargs)
    return factory


async def connected_client(make_client, transport_factory, **kwargs):
    client = make_client(**kwargs)
    await client.connect()
    await wait_until(lambda: client.state == ConnectionState.CONNECTED)
    return client, transport_factory.last


@pytest.mark.asyncio
async def test_connect_builds_url_and_origin(make_client, transport_factory):
    client, transport = await connected_client(make_client, transport_factory)
    try:
        assert transport.url.scheme == "ws"
        assert transport.url.host == "localhost"
        assert transport.url.port == 8333
        assert dict(transport.url.query) == {
            "os": "MacOS", "app": "SampleApp", "device": "TestDevice", "device_id": "1.0device-1"}
        assert transport.headers == {"Origin": "localhost:"}
        assert client.is_connected
        assert client.retry_attempts == 0
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_connect_when_connected_is_noop(make_client, transport_factory):
    client, _ = await connected_client(make_client, transport_factory)
    try:
        await client.connect()
        assert len(transport_factory.transports) == 1
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_get_background_plugins(make_client, transport_factory):
    client, transport = await connected_client(make_client, transport_factory)
    try:
        transport.feed_text({"id": 1, "method": "getBackgroundPlugins"})
        await wait_until(lambda: transport.sent)
        assert transport.sent_json == [{"id": 1, "success": ["Network"]}]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_init_unregistered_plugin(make_client, transport_factory):
    client, transport = await connected_client(make_client, transport_factory, plugins=[])
    try:
        transport.feed_text({"id": 2, "method": "init", "params": {"plugin": "Logger"}})
        await wait_until(lambda: transport.sent)
        assert transport.sent_json == [
            {"id": 2, "error": {"name": "PluginNotFound", "message": "Logger not found for method init"}}]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_activate_then_query_and_execute(make_client, transport_factory):
    client, transport = await connected_client(make_client, transport_factory)
    try:
        transport.feed_text({"method": "init", "params": {"plugin": "Logger"}})
        transport.feed_text({"id": 3, "method": "isMethodSupported", "params": {"api": "Logger", "method": "log"}})
        transport.feed_text({"id": 4, "method": "execute",
                             "params": {"api": "Logger", "method": "log", "params": {"message": "hi"}}})
        await wait_until(lambda: len(transport.sent) == 2)
        assert transport.sent_json == [
            {"id": 3, "success": True},
            {"id": 4, "success": {"logged": "hi"}},
        ]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_unrecognized_and_binary_frames_keep_connection(make_client, transport_factory, caplog):
    client, transport = await connected_client(make_client, transport_factory)
    try:
        with caplog.at_level(logging.ERROR, logger="flipper_client.client"):
            transport.feed_text("definitely not json")
            transport.feed_text({"id": 5, "method": "fromTheFuture"})
            transport.feed(WSMsgType.BINARY, b"\x00\x01")
            transport.feed_text({"id": 6, "method": "getPlugins"})
            await wait_until(lambda: transport.sent)

        assert transport.sent_json == [{"id": 6, "success": ["Logger", "Network"]}]
        assert client.state == ConnectionState.CONNECTED
        assert "Unhandled message" in caplog.text
        assert "Binary frames are not supported" in caplog.text
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_error_while_running_rearms_listener(make_client, transport_factory):
    client, transport = await connected_client(make_client, transport_factory)
    try:
        transport.feed(WSMsgType.ERROR, RuntimeError("bad frame"))
        transport.feed_text({"id": 7, "method": "getPlugins"})
        await wait_until(lambda: transport.sent)
        assert client.state == ConnectionState.CONNECTED
        assert len(transport_factory.transports) == 1
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_receive_failure_while_running_rearms_listener(make_client, transport_factory, caplog):
    client, transport = await connected_client(make_client, transport_factory)
    try:
        with caplog.at_level(logging.ERROR, logger="flipper_client.client"):
            transport.fail_receive(RuntimeError("glitch"))
            transport.feed_text({"id": 8, "method": "getPlugins"})
            await wait_until(lambda: transport.sent)
        assert transport.sent_json == [{"id": 8, "success": ["Logger", "Network"]}]
        assert client.state == ConnectionState.CONNECTED
        assert len(transport_factory.transports) == 1
        assert "Error while receiving a frame: glitch" in caplog.text
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_receive_failure_on_dead_transport_reconnects(make_client, transport_factory):
    client, transport = await connected_client(make_client, transport_factory)
    transport.running = False
    transport.fail_receive(ConnectionResetError("reset by peer"))

    await wait_until(lambda: len(transport_factory.transports) == 2
                     and client.state == ConnectionState.CONNECTED)
    assert transport.close_codes == [1001]
    await client.close()


@pytest.mark.asyncio
async def test_plugin_events_flow_to_host(make_client, transport_factory, logger_plugin):
    client, transport = await connected_client(make_client, transport_factory)
    try:
        transport.feed_text({"method": "init", "params": {"plugin": "Logger"}})
        await wait_until(lambda: logger_plugin.connection is not None)
        logger_plugin.connection.send({"line": b"started"})
        await wait_until(lambda: transport.sent)
        assert transport.sent_json == [{"method": "Logger", "params": {"line": "started"}}]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_unserializable_result_is_dropped(make_client, transport_factory, caplog):
    plugin = SamplePlugin("Odd", receivers={"get": lambda params: {"value": object()}})
    client, transport = await connected_client(make_client, transport_factory, plugins=[plugin])
    try:
        with caplog.at_level(logging.ERROR, logger="flipper_client.client"):
            transport.feed_text({"method": "init", "params": {"plugin": "Odd"}})
            transport.feed_text({"id": 1, "method": "execute", "params": {"api": "Odd", "method": "get"}})
            transport.feed_text({"id": 2, "method": "getPlugins"})
            await wait_until(lambda: transport.sent)
        assert transport.sent_json == [{"id": 2, "success": ["Odd"]}]
        assert "Couldn't serialize message" in caplog.text
        assert client.is_connected
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_disconnect_notifies_every_plugin(make_client, transport_factory, logger_plugin, network_plugin):
    client, transport = await connected_client(make_client, transport_factory)
    transport.feed_text({"method": "init", "params": {"plugin": "Logger"}})
    await wait_until(lambda: logger_plugin.connection is not None)

    await client.disconnect()

    assert transport.close_codes == [1000]
    assert logger_plugin.disconnect_count == 1
    assert network_plugin.disconnect_count == 1
    assert client.registry.active_plugin_ids() == []
    assert client.state == ConnectionState.DISCONNECTED
    assert not client.is_connected
    assert not client.reconnect_scheduled

    # The session can be started again.
    await client.connect()
    await wait_until(lambda: client.state == ConnectionState.CONNECTED)
    assert len(transport_factory.transports) == 2
    await client.close()


@pytest.mark.asyncio
async def test_send_after_disconnect_is_dropped(make_client, transport_factory, logger_plugin):
    client, transport = await connected_client(make_client, transport_factory)
    transport.feed_text({"method": "init", "params": {"plugin": "Logger"}})
    await wait_until(lambda: logger_plugin.connection is not None)
    connection = logger_plugin.connection
    await client.disconnect()

    connection.send({"late": True})
    client.send_message({"method": "anything"})
    await asyncio.sleep(0.01)
    assert transport.sent == []
    await client.close()


@pytest.mark.asyncio
async def test_add_plugin_while_connected_refreshes_host(make_client, transport_factory):
    client, transport = await connected_client(make_client, transport_factory, plugins=[])
    try:
        await client.add_plugin(SamplePlugin("Database"))
        await wait_until(lambda: transport.sent)
        assert transport.sent_json == [{"method": "refreshPlugins"}]
        assert client.registry.plugin_ids() == ["Database"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_add_plugin_while_disconnected(make_client):
    client = make_client(plugins=[])
    await client.add_plugin(SamplePlugin("Database"))
    assert [plugin.id for plugin in client.plugins] == ["Database"]
    await client.close()


@pytest.mark.asyncio
async def test_receiver_may_call_client_from_child_task(make_client, transport_factory):
    holder = {}

    async def spawn(params):
        await asyncio.gather(holder["client"].add_plugin(SamplePlugin("Extra")))
        return "spawned"

    plugin = SamplePlugin("Spawner", receivers={"spawn": spawn})
    client, transport = await connected_client(make_client, transport_factory, plugins=[plugin])
    holder["client"] = client
    try:
        transport.feed_text({"method": "init", "params": {"plugin": "Spawner"}})
        transport.feed_text({"id": 9, "method": "execute", "params": {"api": "Spawner", "method": "spawn"}})
        await wait_until(lambda: {"id": 9, "success": "spawned"} in transport.sent_json)
        assert {"method": "refreshPlugins"} in transport.sent_json
        assert client.registry.plugin_ids() == ["Spawner", "Extra"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_close_flushes_pending_sends(make_client, transport_factory):
    client, transport = await connected_client(make_client, transport_factory)

    async def slow_send(text):
        await asyncio.sleep(0.02)
        if not transport.running:
            raise ConnectionResetError("socket closed")
        transport.sent.append(text)

    transport.send_str = slow_send
    client.send_message({"method": "goodbye"})
    await client.close()

    assert transport.sent_json == [{"method": "goodbye"}]
    assert transport.close_codes == [1000]


@pytest.mark.asyncio
async def test_reconnect_gives_up_after_max_attempts(make_client, transport_factory, settings):
    transport_factory.fail_always = ConnectionRefusedError("refused")
    client = make_client()
    await client.connect()

    expected = 1 + settings.max_retry_attempts
    await wait_until(lambda: len(transport_factory.transports) == expected
                     and client.state == ConnectionState.DISCONNECTED
                     and not client.reconnect_scheduled)
    await asyncio.sleep(0.05)

    assert len(transport_factory.transports) == expected
    assert client.retry_attempts == settings.max_retry_attempts
    await client.close()


@pytest.mark.asyncio
async def test_successful_connection_resets_attempts(make_client, transport_factory):
    transport_factory.failures = [ConnectionRefusedError("refused"), ConnectionRefusedError("refused")]
    client = make_client()
    await client.connect()

    await wait_until(lambda: client.state == ConnectionState.CONNECTED)

    assert len(transport_factory.transports) == 3
    assert client.retry_attempts == 0
    await client.close()


@pytest.mark.asyncio
async def test_lost_connection_always_reconnects(make_client, transport_factory, logger_plugin):
    client, transport = await connected_client(make_client, transport_factory)
    transport.feed_text({"method": "init", "params": {"plugin": "Logger"}})
    await wait_until(lambda: logger_plugin.connection is not None)

    transport.host_closes()

    await wait_until(lambda: len(transport_factory.transports) == 2
                     and client.state == ConnectionState.CONNECTED)
    assert logger_plugin.disconnect_count == 1
    assert client.registry.connection("Logger") is None
    assert client.retry_attempts == 0
    await client.close()


@pytest.mark.asyncio
async def test_connect_replaces_dead_transport(make_client, transport_factory, logger_plugin):
    client, old = await connected_client(make_client, transport_factory)
    old.feed_text({"method": "init", "params": {"plugin": "Logger"}})
    await wait_until(lambda: logger_plugin.connection is not None)

    # The socket died but its close notification is still in flight.
    old.running = False
    await client.connect()
    old.feed(WSMsgType.CLOSE, 1006)
    await wait_until(lambda: len(transport_factory.transports) == 2
                     and client.state == ConnectionState.CONNECTED)
    await asyncio.sleep(0.02)

    assert old.close_codes == [1001]
    assert client.registry.active_plugin_ids() == []
    assert logger_plugin.disconnect_count == 1
    assert client.is_connected
    assert len(transport_factory.transports) == 2
    await client.close()


@pytest.mark.asyncio
async def test_disconnect_cancels_pending_reconnect(make_client, transport_factory, settings, metadata):
    transport_factory.fail_always = ConnectionRefusedError("refused")
    client = FlipperClient(settings, metadata=metadata, transport_factory=transport_factory,
                           policy=ReconnectPolicy(interval=60, max_attempts=5))
    await client.connect()
    await wait_until(lambda: client.reconnect_scheduled)
    assert client.state == ConnectionState.RECONNECT_PENDING

    await client.disconnect()

    assert not client.reconnect_scheduled
    assert client.state == ConnectionState.DISCONNECTED
    assert len(transport_factory.transports) == 1
    await client.close()


@pytest.mark.asyncio
async def test_context_manager(make_client, transport_factory):
    async with make_client() as client:
        await wait_until(lambda: client.is_connected)
    assert not client.is_connected
    assert transport_factory.last.close_codes == [1000]


def test_default_transport_factory(mocker, settings, metadata):
    transport_cls = mocker.patch("flipper_client.client.WebSocketTransport")
    client = FlipperClient(settings, metadata=metadata)

    transport = client._create_transport(client.url, {"Origin": "localhost:"})

    transport_cls.assert_called_once_with(client.url, headers={"Origin": "localhost:"},
                                          connect_timeout=settings.connect_timeout)
    assert transport is transport_cls.return_value


def test_initial_state(make_client):
    client = make_client()
    assert client.state == ConnectionState.DISCONNECTED
    assert not client.is_connected
    assert client.retry_attempts == 0
    assert [plugin.id for plugin in client.plugins] == ["Logger", "Network"]
