"""
WebSocket transport built on aiohttp.

A thin wrapper that the session manager drives one call at a time: open the
socket, receive one message, send one text frame, close. Keeping it this small
lets tests substitute an in-memory fake with the same surface.
"""

import asyncio
import logging
from typing import Dict, Optional

import aiohttp
from yarl import URL

from flipper_client.errors import TransportError

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = aiohttp.WSCloseCode.OK
GOING_AWAY = aiohttp.WSCloseCode.GOING_AWAY


class WebSocketTransport:
    """Single outbound WebSocket connection to the host."""

    def __init__(self, url: URL, headers: Optional[Dict[str, str]] = None,
                 connect_timeout: float = 10.0,
                 session: Optional[aiohttp.ClientSession] = None):
        self.url = url
        self.headers = dict(headers or {})
        self.connect_timeout = connect_timeout
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

    @property
    def is_running(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def open(self) -> None:
        """
        Perform the WebSocket handshake.

        Raises:
            TransportError: If the host cannot be reached or refuses the upgrade
        """
        if self._session is None:
            self._session = aiohttp.ClientSession()
        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(self.url, headers=self.headers, autoping=True),
                timeout=self.connect_timeout,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            await self._release_session()
            raise TransportError(f"Failed to connect to {self.url}: {e}", cause=e) from e
        logger.debug(f"WebSocket open: {self.url}")

    async def receive(self) -> aiohttp.WSMessage:
        """Wait for the next message. Errors and closes arrive as messages."""
        if self._ws is None:
            raise TransportError("receive() on a transport that is not open")
        return await self._ws.receive()

    async def send_str(self, text: str) -> None:
        if self._ws is None or self._ws.closed:
            raise TransportError("send on a closed transport")
        try:
            await self._ws.send_str(text)
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            raise TransportError(f"Send failed: {e}", cause=e) from e

    async def close(self, code: int = NORMAL_CLOSURE) -> None:
        ws, self._ws = self._ws, None
        try:
            if ws is not None and not ws.closed:
                await ws.close(code=code)
        finally:
            await self._release_session()

    async def _release_session(self) -> None:
        if self._owns_session and self._session is not None:
            session, self._session = self._session, None
            await session.close()
