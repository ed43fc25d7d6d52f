"""Connection multiplexing for persistent per-instance channels.

An instance owns at most one live channel of each kind (hypervisor, agent).
ChannelSlot hands out that channel:

1. wait until the state fields the endpoint depends on exist
2. derive the endpoint from the current cached state
3. reuse the stored channel if it is active and its endpoint still matches
4. otherwise disconnect the stored channel (exactly once) and drop it
5. open a new channel against the endpoint, store it, return it

Steps 2-5 run under an asyncio lock so two concurrent callers can never
both open a channel of the same kind.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Generic, Protocol, TypeVar, runtime_checkable

from devicecloud._logging import get_logger
from devicecloud.state import StateSnapshot
from devicecloud.waiter import ConditionWaiter, Predicate

logger = get_logger(__name__)


@runtime_checkable
class Channel(Protocol):
    """Liveness contract shared by hypervisor and agent channels.

    Uses structural typing (Protocol) instead of inheritance.
    """

    @property
    def endpoint(self) -> str:
        """Endpoint the channel was opened against."""
        ...

    @property
    def active(self) -> bool:
        """True while the underlying connection is usable."""
        ...

    async def disconnect(self) -> None:
        """Close the connection.  Safe to call more than once."""
        ...


ChannelT = TypeVar("ChannelT", bound=Channel)


class ChannelSlot(Generic[ChannelT]):
    """Holds the single live channel of one kind for one instance.

    Args:
        kind: Label for logs ("hypervisor", "agent").
        waiter: Condition waiter of the owning instance.
        ready: Predicate telling whether the endpoint can be derived yet.
        endpoint_for: Derives the endpoint from a state snapshot.
        factory: Opens a connected channel for an endpoint.  Connection
            failures propagate to the caller of get().
    """

    def __init__(
        self,
        kind: str,
        waiter: ConditionWaiter,
        *,
        ready: Predicate,
        endpoint_for: Callable[[StateSnapshot], str],
        factory: Callable[[str], Awaitable[ChannelT]],
    ) -> None:
        self._kind = kind
        self._waiter = waiter
        self._ready = ready
        self._endpoint_for = endpoint_for
        self._factory = factory
        self._channel: ChannelT | None = None
        self._lock = asyncio.Lock()

    @property
    def current(self) -> ChannelT | None:
        """Stored channel, if any (may have gone inactive since)."""
        return self._channel

    async def get(self) -> ChannelT:
        """Return the live channel, opening or replacing it as needed.

        Waits without bound until the endpoint can be derived.
        """
        await self._waiter.wait_for(self._ready)

        async with self._lock:
            endpoint = self._endpoint_for(self._waiter.tracker.state)
            current = self._channel
            if current is not None:
                if current.active and current.endpoint == endpoint:
                    return current
                logger.debug(
                    "Replacing channel",
                    extra={
                        "kind": self._kind,
                        "old_endpoint": current.endpoint,
                        "new_endpoint": endpoint,
                        "was_active": current.active,
                    },
                )
                self._channel = None
                await current.disconnect()

            channel = await self._factory(endpoint)
            self._channel = channel
            logger.debug("Channel opened", extra={"kind": self._kind, "endpoint": endpoint})
            return channel

    async def close(self) -> None:
        """Disconnect and drop the stored channel, if any."""
        async with self._lock:
            channel, self._channel = self._channel, None
            if channel is not None:
                await channel.disconnect()
