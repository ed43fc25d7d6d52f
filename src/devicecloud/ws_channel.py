"""JSON request/response channel over a WebSocket.

Base for the hypervisor and agent channels.  Every request carries an
integer "id"; a background reader task routes each reply to the future
registered under the same id.  Messages without a matching id go to
_on_unsolicited().  When the socket closes, every pending request fails
with ChannelClosedError and the channel reports itself inactive.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
from typing import Any, ClassVar, Self

import aiohttp

from devicecloud import constants
from devicecloud._logging import get_logger
from devicecloud.exceptions import ChannelClosedError, ChannelConnectError, ChannelError

logger = get_logger(__name__)


class WebSocketChannel:
    """Persistent WebSocket connection with id-correlated JSON replies.

    Not usable until connect() succeeds; use open() to construct and
    connect in one step.

    Attributes:
        endpoint: URL the channel connects to.
    """

    kind: ClassVar[str] = "channel"

    def __init__(
        self,
        endpoint: str,
        session: aiohttp.ClientSession,
        *,
        headers: dict[str, str] | None = None,
        connect_timeout: float = constants.CHANNEL_CONNECT_TIMEOUT_SECONDS,
        request_timeout: float = constants.COMMAND_TIMEOUT_SECONDS,
    ) -> None:
        self._endpoint = endpoint
        self._session = session
        self._headers = headers or {}
        self._connect_timeout = connect_timeout
        self._request_timeout = request_timeout
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._ids = itertools.count(1)
        self._closed = False

    @classmethod
    async def open(cls, endpoint: str, session: aiohttp.ClientSession, **kwargs: Any) -> Self:
        """Construct and connect a channel.

        Raises:
            ChannelConnectError: Connection failed or timed out.
        """
        channel = cls(endpoint, session, **kwargs)
        await channel.connect()
        return channel

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def active(self) -> bool:
        """True while connected and not disconnected."""
        return not self._closed and self._ws is not None and not self._ws.closed

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the WebSocket and start the reader task.

        Raises:
            ChannelConnectError: Connection failed or timed out.
        """
        if self._closed:
            raise ChannelClosedError(f"{self.kind} channel already disconnected", {"endpoint": self._endpoint})
        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(self._endpoint, headers=self._headers),
                timeout=self._connect_timeout,
            )
        except TimeoutError as e:
            msg = f"{self.kind} connection timed out after {self._connect_timeout}s"
            raise ChannelConnectError(msg, {"endpoint": self._endpoint}) from e
        except aiohttp.ClientError as e:
            msg = f"{self.kind} connection failed: {e}"
            raise ChannelConnectError(msg, {"endpoint": self._endpoint}) from e

        self._reader_task = asyncio.create_task(self._read_loop(), name=f"devicecloud-{self.kind}-reader")
        logger.debug("Channel connected", extra={"kind": self.kind, "endpoint": self._endpoint})

    async def disconnect(self) -> None:
        """Close the socket and fail pending requests.  Safe to call multiple times."""
        if self._closed:
            return
        self._closed = True

        if self._reader_task is not None:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
            self._reader_task = None

        if self._ws is not None:
            try:
                await self._ws.close()
            except (aiohttp.ClientError, OSError):
                logger.debug("WebSocket close error (ignored)", exc_info=True)

        self._fail_pending(ChannelClosedError(f"{self.kind} channel disconnected", {"endpoint": self._endpoint}))
        logger.debug("Channel disconnected", extra={"kind": self.kind, "endpoint": self._endpoint})

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.disconnect()

    # -------------------------------------------------------------------------
    # Request / reply
    # -------------------------------------------------------------------------

    async def _request(self, message: dict[str, Any], timeout: float | None = None) -> dict[str, Any]:
        """Send one message and wait for the reply with the same id.

        Raises:
            ChannelClosedError: Channel not active or closed while waiting.
            ChannelError: No reply within the timeout.
        """
        if not self.active or self._ws is None:
            raise ChannelClosedError(f"{self.kind} channel is not connected", {"endpoint": self._endpoint})

        request_id = next(self._ids)
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        timeout = timeout if timeout is not None else self._request_timeout
        try:
            try:
                await self._ws.send_json({"id": request_id, **message})
            except (aiohttp.ClientError, ConnectionError) as e:
                raise ChannelClosedError(f"{self.kind} send failed: {e}", {"endpoint": self._endpoint}) from e
            try:
                return await asyncio.wait_for(future, timeout=timeout)
            except TimeoutError as e:
                msg = f"{self.kind} request timed out after {timeout}s"
                raise ChannelError(msg, {"endpoint": self._endpoint, "request_id": request_id}) from e
        finally:
            self._pending.pop(request_id, None)

    async def _read_loop(self) -> None:
        assert self._ws is not None  # noqa: S101
        try:
            async for msg in self._ws:
                if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    try:
                        data = json.loads(msg.data)
                    except ValueError:
                        logger.warning(
                            "Discarding undecodable channel message",
                            extra={"kind": self.kind, "raw": str(msg.data)[:200]},
                        )
                        continue
                    self._dispatch(data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.debug("Channel socket error", extra={"kind": self.kind, "error": str(self._ws.exception())})
                    break
        finally:
            self._fail_pending(ChannelClosedError(f"{self.kind} channel closed", {"endpoint": self._endpoint}))

    def _dispatch(self, data: Any) -> None:
        request_id = data.get("id") if isinstance(data, dict) else None
        future = self._pending.get(request_id) if isinstance(request_id, int) else None
        if future is not None and not future.done():
            future.set_result(data)
        else:
            self._on_unsolicited(data)

    def _on_unsolicited(self, data: Any) -> None:
        """Handle a message that answers no pending request."""
        logger.debug("Discarding unsolicited channel message", extra={"kind": self.kind})

    def _fail_pending(self, error: ChannelError) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()
