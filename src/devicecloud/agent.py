"""Agent channel: connection to the agent process running inside the device.

Only readiness and a generic request primitive live here; file transfer,
app lifecycle and instrumentation are requests of a given type/op built
on top of request().

Replies have the shape {"id": n, "success": true, ...} or
{"id": n, "success": false, "error": {...}}.
"""

from __future__ import annotations

import logging
from typing import Any, ClassVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_delay,
    wait_random_exponential,
)

from devicecloud import constants
from devicecloud._logging import get_logger
from devicecloud.exceptions import AgentError
from devicecloud.ws_channel import WebSocketChannel

logger = get_logger(__name__)


class AgentChannel(WebSocketChannel):
    """Persistent connection to the in-device agent."""

    kind: ClassVar[str] = "agent"

    @property
    def connected(self) -> bool:
        return self.active

    async def request(self, type_: str, op: str, **params: Any) -> dict[str, Any]:
        """Send one agent request and return the reply.

        Raises:
            AgentError: The agent answered with success=false.
            ChannelClosedError: Channel not connected or closed mid-request.
        """
        reply = await self._request({"type": type_, "op": op, **params})
        if not reply.get("success", False):
            error = reply.get("error") or {}
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise AgentError(f"Agent {type_}/{op} failed: {message or 'unknown error'}", reply)
        return reply

    async def ready(self, timeout: float = constants.AGENT_READY_TIMEOUT_SECONDS) -> None:
        """Block until the agent reports it can serve requests.

        Probes until success; an AgentError reply means "still starting".

        Raises:
            AgentError: Agent still not ready when the timeout elapsed.
        """
        async for attempt in AsyncRetrying(
            stop=stop_after_delay(timeout),
            wait=wait_random_exponential(
                min=constants.AGENT_READY_RETRY_MIN_SECONDS,
                max=constants.AGENT_READY_RETRY_MAX_SECONDS,
            ),
            retry=retry_if_exception_type(AgentError),
            before_sleep=before_sleep_log(logger, logging.DEBUG),
            reraise=True,
        ):
            with attempt:
                await self.request("app", "ready")

    async def app_list(self) -> list[dict[str, Any]]:
        """List installed applications."""
        reply = await self.request("app", "list")
        apps = reply.get("apps")
        return apps if isinstance(apps, list) else []
