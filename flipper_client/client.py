"""
Flipper client - session/connection manager.

Owns the single WebSocket connection to the host and runs the connection
state machine:

    DISCONNECTED --connect()--> CONNECTING --open--> CONNECTED
    CONNECTED --disconnect()--> DISCONNECTED
    CONNECTING/CONNECTED --transport lost--> RECONNECT_PENDING --timer--> CONNECTING

Every state change runs on one worker task that drains a command queue, one
command at a time. Public entry points (connect, disconnect, add_plugin) and
transport notifications (opened, frame received, failed, closed) are all
submitted to that queue, so the registry, the connections and the transport
handle are never mutated concurrently. The listener task only does I/O.
"""

import asyncio
import contextvars
import functools
import inspect
import logging
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Set, Tuple

import aiohttp
from yarl import URL

from flipper_client import envelope
from flipper_client.config import ClientSettings
from flipper_client.envelope import UnrecognizedFrame, decode_frame, encode_message
from flipper_client.errors import SerializationError, TransportError
from flipper_client.metadata import DeviceMetadata
from flipper_client.observability import get_tracer
from flipper_client.plugin import FlipperPlugin
from flipper_client.registry import PluginRegistry
from flipper_client.retry import ReconnectPolicy
from flipper_client.router import RequestRouter
from flipper_client.transport import GOING_AWAY, NORMAL_CLOSURE, WebSocketTransport

tracer = get_tracer(__name__)

logger = logging.getLogger(__name__)

_CLOSE_TYPES = (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED)

# Token of the worker command running in this context, if any.
_running_command = contextvars.ContextVar(
    "flipper_running_command", default=None)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECT_PENDING = "reconnect_pending"


class Transport(Protocol):
    """Surface of WebSocketTransport the client relies on."""

    @property
    def is_running(self) -> bool:
        ...

    async def open(self) -> None:
        ...

    async def receive(self) -> aiohttp.WSMessage:
        ...

    async def send_str(self, text: str) -> None:
        ...

    async def close(self, code: int = NORMAL_CLOSURE) -> None:
        ...


TransportFactory = Callable[[URL, Dict[str, str]], Transport]


class FlipperClient:
    """
    Client side of a Flipper session.

    Example:
        client = FlipperClient(load_settings(), plugins=[LoggerPlugin()])
        await client.connect()
        ...
        await client.close()
    """

    def __init__(self,
                 settings: Optional[ClientSettings] = None,
                 plugins: Iterable[FlipperPlugin] = (),
                 *,
                 metadata: Optional[DeviceMetadata] = None,
                 policy: Optional[ReconnectPolicy] = None,
                 transport_factory: Optional[TransportFactory] = None):
        self.settings = settings or ClientSettings()
        self.metadata = metadata or DeviceMetadata.detect(
            app_name=self.settings.app_name,
            app_version=self.settings.app_version,
            device_name=self.settings.device_name,
            device_id=self.settings.device_id,
            os_name=self.settings.os_name,
        )
        self.policy = policy or ReconnectPolicy(
            interval=self.settings.reconnect_interval,
            max_attempts=self.settings.max_retry_attempts,
        )
        self.registry = PluginRegistry(plugins)
        self.router = RequestRouter(self.registry, self)
        self._transport_factory = transport_factory or self._create_transport

        self._state = ConnectionState.DISCONNECTED
        self._transport: Optional[Transport] = None
        self._listener: Optional[asyncio.Task] = None
        self._retry_attempts = 0
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None

        self._commands: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._send_tasks: Set[asyncio.Task] = set()
        self._running_command: Optional[object] = None

        logger.info(f"FlipperClient initialized with {len(self.registry)} plugin(s), host {self.settings.url_base}")

    # --- Read-only views ---

    @property
    def is_connected(self) -> bool:
        return self._transport is not None and self._transport.is_running

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def retry_attempts(self) -> int:
        return self._retry_attempts

    @property
    def reconnect_scheduled(self) -> bool:
        return self._reconnect_handle is not None

    @property
    def plugins(self) -> List[FlipperPlugin]:
        return self.registry.plugins

    @property
    def url(self) -> URL:
        return URL(f"ws://{self.settings.url_base}").with_query(self.metadata.query_items())

    # --- Public entry points ---

    async def connect(self) -> None:
        """Start connecting to the host. Returns once the attempt is under way."""
        await self._run(self._connect_requested)

    async def disconnect(self) -> None:
        """Close the connection with a normal closure and notify every plugin."""
        await self._run(self._disconnect, NORMAL_CLOSURE)

    async def add_plugin(self, plugin: FlipperPlugin) -> None:
        """Register a plugin; a connected host is told to refresh its plugin list."""
        await self._run(self._add_plugin, plugin)

    async def close(self) -> None:
        """Flush pending sends, disconnect and stop the worker. The client can be reconnected later."""
        if self._send_tasks:
            await asyncio.gather(*list(self._send_tasks), return_exceptions=True)
        await self.disconnect()
        worker, self._worker = self._worker, None
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        self._commands = None

    async def __aenter__(self) -> "FlipperClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def send_message(self, message: Dict[str, Any]) -> None:
        """
        Send a message to the host without blocking the caller.

        Dropped while disconnected. Serialization and send failures are
        logged and never raised.
        """
        transport = self._transport
        if transport is None or not transport.is_running:
            return
        try:
            text = encode_message(message)
        except SerializationError as e:
            logger.error(f"Couldn't serialize message to JSON representation: {message!r} because of: {e}")
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error("send_message called outside of the event loop; message dropped")
            return
        task = loop.create_task(self._send_text(transport, text))
        self._send_tasks.add(task)
        task.add_done_callback(self._send_tasks.discard)

    def refresh_plugins(self) -> None:
        self.send_message(envelope.refresh_plugins_message())

    # --- Serialized execution ---

    def _ensure_worker(self) -> asyncio.Queue:
        if self._commands is None:
            self._commands = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._process_commands())
        return self._commands

    def _enqueue(self, func: Callable[..., Any], *args: Any, wait: bool = True) -> Optional[asyncio.Future]:
        commands = self._ensure_worker()
        future = asyncio.get_running_loop().create_future() if wait else None
        commands.put_nowait((func, args, future))
        return future

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        """
        Run ``func`` on the worker and wait for its result.

        Calls made while a command is running (a plugin handler calling
        add_plugin, also from tasks it spawns) run inline, since the worker
        is busy awaiting that handler.
        """
        token = _running_command.get()
        if token is not None and token is self._running_command:
            return await self._call(func, args)
        return await self._enqueue(func, *args)

    @staticmethod
    async def _call(func: Callable[..., Any], args: Tuple[Any, ...]) -> Any:
        result = func(*args)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _process_commands(self) -> None:
        commands = self._commands
        while True:
            func, args, future = await commands.get()
            # Tasks spawned while this command runs inherit the token.
            token = object()
            self._running_command = token
            _running_command.set(token)
            try:
                result = await self._call(func, args)
            except asyncio.CancelledError:
                if future is not None and not future.done():
                    future.cancel()
                raise
            except Exception as e:
                logger.exception(f"Error while running {getattr(func, '__name__', func)}")
                if future is not None and not future.done():
                    future.set_exception(e)
            else:
                if future is not None and not future.done():
                    future.set_result(result)
            finally:
                self._running_command = None
                commands.task_done()

    # --- Commands (run on the worker only) ---

    async def _connect_requested(self) -> None:
        # An explicit connect starts a fresh retry budget.
        if not self.is_connected and self._state != ConnectionState.CONNECTING:
            self._retry_attempts = 0
        await self._initiate_connect()

    async def _initiate_connect(self) -> None:
        if self.is_connected or self._state == ConnectionState.CONNECTING:
            logger.debug(f"connect() ignored in state {self._state.value}")
            return
        self._cancel_reconnect()
        if self._transport is not None:
            # Died before its listener reported it.
            logger.info("Dropping a dead transport before connecting")
            await self._teardown(self._transport)
        try:
            url = self.url
        except ValueError as e:
            logger.error(f"Failed to initialize the Flipper client as URL could not be constructed. "
                         f"URL base: {self.settings.url_base}, query items: {self.metadata.query_items()}: {e}")
            self._state = ConnectionState.DISCONNECTED
            return

        transport = self._transport_factory(url, {"Origin": self.settings.origin})
        self._transport = transport
        self._state = ConnectionState.CONNECTING
        logger.info(f"Connecting to Flipper host at {url}")
        self._listener = asyncio.get_running_loop().create_task(self._listen(transport))

    def _on_open(self, transport: Transport) -> None:
        if transport is not self._transport:
            return
        self._state = ConnectionState.CONNECTED
        self._retry_attempts = 0
        logger.info(f"Connected to Flipper host {self.settings.url_base}")

    async def _handle_text(self, transport: Transport, text: str) -> None:
        if transport is not self._transport:
            logger.debug("Dropping frame from a stale transport")
            return
        frame = decode_frame(text)
        if isinstance(frame, UnrecognizedFrame):
            logger.error(f"Unhandled message from host ({frame.reason}): {frame.raw[:500]}")
            return
        with tracer.start_as_current_span("flipper_client.handle_frame") as span:
            span.set_attribute("flipper.method", frame.method)
            if frame.id is not None:
                span.set_attribute("flipper.request_id", frame.id)
            await self.router.route(frame)

    async def _on_transport_failure(self, transport: Transport, error: TransportError) -> None:
        if transport is not self._transport:
            return
        logger.error(f"Failed to connect to the Flipper host: {error}")
        await self._teardown(transport)
        self._schedule_reconnect(error)

    async def _disconnect(self, code: int) -> None:
        self._cancel_reconnect()
        transport, self._transport = self._transport, None
        listener, self._listener = self._listener, None
        if transport is not None:
            try:
                await transport.close(code)
            except Exception as e:
                logger.error(f"Error while closing the WebSocket: {e}", exc_info=True)
        if listener is not None:
            listener.cancel()
        self.registry.notify_all_disconnected()
        self._state = ConnectionState.DISCONNECTED
        logger.info("Disconnected from Flipper host")

    def _add_plugin(self, plugin: FlipperPlugin) -> None:
        self.registry.register(plugin)
        if self.is_connected:
            self.refresh_plugins()

    async def _reconnect(self) -> None:
        self._reconnect_handle = None
        if self._state != ConnectionState.RECONNECT_PENDING:
            return
        logger.info(f"Reconnecting to Flipper host (attempt {self._retry_attempts}/{self.policy.max_attempts})")
        self._state = ConnectionState.DISCONNECTED
        await self._initiate_connect()

    # --- Helpers ---

    async def _teardown(self, transport: Transport) -> None:
        """Drop a dead transport and the connections that lived on it."""
        self._transport = None
        listener, self._listener = self._listener, None
        if listener is not None and listener is not asyncio.current_task():
            listener.cancel()
        self.registry.deactivate_all()
        try:
            await transport.close(GOING_AWAY)
        except Exception as e:
            logger.debug(f"Error while closing a failed transport: {e}")
        self._state = ConnectionState.DISCONNECTED

    def _schedule_reconnect(self, error: Optional[BaseException]) -> None:
        retry, counts_as_attempt = self.policy.should_retry(error, self._retry_attempts)
        if not retry:
            logger.warning(f"Giving up on the Flipper host after {self._retry_attempts} reconnect attempt(s)")
            self._state = ConnectionState.DISCONNECTED
            return
        if counts_as_attempt:
            self._retry_attempts += 1
        self._cancel_reconnect()
        self._state = ConnectionState.RECONNECT_PENDING
        logger.info(f"Reconnect scheduled in {self.policy.interval}s")
        self._reconnect_handle = asyncio.get_running_loop().call_later(
            self.policy.interval, functools.partial(self._enqueue, self._reconnect, wait=False))

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _create_transport(self, url: URL, headers: Dict[str, str]) -> Transport:
        return WebSocketTransport(url, headers=headers, connect_timeout=self.settings.connect_timeout)

    async def _send_text(self, transport: Transport, text: str) -> None:
        try:
            await transport.send_str(text)
        except Exception as e:
            logger.error(f"Flipper WebSocket couldn't send message: {text[:500]} because of: {e}")

    # --- Listener (I/O only; everything else goes through the worker) ---

    async def _listen(self, transport: Transport) -> None:
        # Spawned from the worker; its submissions must go through the queue.
        _running_command.set(None)
        try:
            await transport.open()
        except TransportError as e:
            await self._run(self._on_transport_failure, transport, e)
            return
        await self._run(self._on_open, transport)

        while True:
            try:
                message = await transport.receive()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if transport.is_running:
                    logger.error(f"Error while receiving a frame: {e}")
                    continue
                error = e if isinstance(e, TransportError) else TransportError(f"Receive failed: {e}", cause=e)
                await self._run(self._on_transport_failure, transport, error)
                return

            if message.type == aiohttp.WSMsgType.TEXT:
                await self._run(self._handle_text, transport, message.data)
            elif message.type == aiohttp.WSMsgType.BINARY:
                logger.error(f"Binary frames are not supported; dropped {len(message.data)} byte(s)")
            elif message.type == aiohttp.WSMsgType.ERROR:
                if transport.is_running:
                    logger.error(f"Error while processing frames: {message.data}")
                    continue
                cause = message.data if isinstance(message.data, BaseException) else None
                await self._run(self._on_transport_failure, transport,
                                TransportError(f"WebSocket error: {message.data}", cause=cause))
                return
            elif message.type in _CLOSE_TYPES:
                lost = ConnectionResetError(f"connection closed by host (code={message.data})")
                await self._run(self._on_transport_failure, transport,
                                TransportError(str(lost), cause=lost))
                return
            else:
                logger.debug(f"Ignoring WebSocket message of type {message.type}")
