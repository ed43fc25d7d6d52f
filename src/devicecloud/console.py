"""Serial console byte stream over a WebSocket.

Usage:
    async with await instance.console() as stream:
        await stream.send(b"ls\\n")
        async for chunk in stream:
            sys.stdout.buffer.write(chunk)
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Self

import aiohttp

from devicecloud import constants
from devicecloud._logging import get_logger
from devicecloud.exceptions import ChannelClosedError, ChannelConnectError

logger = get_logger(__name__)


class ConsoleStream:
    """Bidirectional byte stream to a device console.

    `opened` and `closed` are events signalling the lifecycle of the socket.
    """

    def __init__(
        self,
        url: str,
        session: aiohttp.ClientSession,
        *,
        protocol: str = constants.CONSOLE_PROTOCOL,
        connect_timeout: float = constants.CHANNEL_CONNECT_TIMEOUT_SECONDS,
    ) -> None:
        self._url = url
        self._session = session
        self._protocol = protocol
        self._connect_timeout = connect_timeout
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self.opened = asyncio.Event()
        self.closed = asyncio.Event()

    @property
    def url(self) -> str:
        return self._url

    async def open(self) -> Self:
        """Connect the socket.

        Raises:
            ChannelConnectError: Connection failed or timed out.
        """
        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(self._url, protocols=(self._protocol,)),
                timeout=self._connect_timeout,
            )
        except (aiohttp.ClientError, TimeoutError) as e:
            raise ChannelConnectError(f"console connection failed: {e}", {"url": self._url}) from e
        self.opened.set()
        return self

    async def close(self) -> None:
        """Close the socket.  Idempotent."""
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self.closed.set()

    async def send(self, data: bytes) -> None:
        if self._ws is None or self._ws.closed:
            raise ChannelClosedError("console stream is not open", {"url": self._url})
        await self._ws.send_bytes(data)

    async def __aiter__(self) -> AsyncIterator[bytes]:
        if self._ws is None:
            raise ChannelClosedError("console stream is not open", {"url": self._url})
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.BINARY:
                    yield msg.data
                elif msg.type == aiohttp.WSMsgType.TEXT:
                    yield msg.data.encode()
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    break
        finally:
            self.closed.set()

    async def __aenter__(self) -> Self:
        if self._ws is None:
            await self.open()
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.close()
