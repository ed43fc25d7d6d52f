"""Instance - client-side handle for one remote virtual device.

The platform owns the device and changes its state on its own schedule;
the handle only issues commands and observes.  Commands never touch the
cached state: call refresh() or wait for the state you expect.

Example:
    ```python
    instance = await project.get_instance(instance_id)
    await instance.start()
    async with asyncio.timeout(120):
        await instance.wait_for_state("on")
    print(await instance.console_log())
    ```

Background activity:
    Nothing runs in the background until something observes the instance
    (subscribe(), wait_for(), or a channel waiting for its endpoint).  The
    observer keeps a 1-second polling loop alive; the loop stops one cycle
    after the last observer goes away.

Channels:
    hypervisor() and agent() return the single live channel of their kind,
    reconnecting when the endpoint derived from the state changes.  They
    wait, without bound, until the state carries what the endpoint needs.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Self

from devicecloud import constants
from devicecloud._logging import get_logger
from devicecloud.agent import AgentChannel
from devicecloud.channels import ChannelSlot
from devicecloud.console import ConsoleStream
from devicecloud.hypervisor import HypervisorChannel
from devicecloud.snapshot import Snapshot
from devicecloud.state import (
    ErrorCallback,
    StateCallback,
    StateEvent,
    StateSnapshot,
    StateTracker,
    Subscription,
)
from devicecloud.waiter import ConditionWaiter, Predicate, StateWaiter

if TYPE_CHECKING:
    from devicecloud.api import ApiClient

logger = get_logger(__name__)


def _vpn_ready(state: StateSnapshot) -> bool:
    # KeyError/TypeError while the network is unassigned count as "not yet"
    return bool(state["services"]["vpn"]["ip"])


def _agent_ready(state: StateSnapshot) -> bool:
    return bool(state.get("agent"))


class Instance:
    """Handle for one remote device.

    Attributes:
        id: Remote identifier, fixed for the handle's lifetime.
    """

    def __init__(self, api: ApiClient, info: StateSnapshot, *, project_id: str | None = None) -> None:
        self._api = api
        self.id: str = info["id"]
        self.project_id = project_id or info.get("project")
        self._tracker = StateTracker(
            self._fetch_info,
            info,
            poll_interval=api.config.poll_interval_seconds,
            name=self.id,
        )
        self._waiter = ConditionWaiter(self._tracker)
        self._hypervisor: ChannelSlot[HypervisorChannel] = ChannelSlot(
            "hypervisor",
            self._waiter,
            ready=_vpn_ready,
            endpoint_for=self._hypervisor_endpoint,
            factory=self._open_hypervisor,
        )
        self._agent: ChannelSlot[AgentChannel] = ChannelSlot(
            "agent",
            self._waiter,
            ready=_agent_ready,
            endpoint_for=self._agent_endpoint,
            factory=self._open_agent,
        )

    def __repr__(self) -> str:
        return f"Instance(id={self.id!r}, name={self.name!r}, state={self.state!r})"

    # -------------------------------------------------------------------------
    # Read-only projections of the cached state
    # -------------------------------------------------------------------------

    @property
    def info(self) -> StateSnapshot:
        """Last fetched state snapshot.  May be stale until the next refresh."""
        return self._tracker.state

    @property
    def name(self) -> str | None:
        return self.info.get("name")

    @property
    def state(self) -> str | None:
        return self.info.get("state")

    @property
    def flavor(self) -> str | None:
        return self.info.get("flavor")

    @property
    def panicked(self) -> bool:
        return bool(self.info.get("panicked"))

    @property
    def tracker(self) -> StateTracker:
        return self._tracker

    # -------------------------------------------------------------------------
    # State observation
    # -------------------------------------------------------------------------

    async def refresh(self) -> bool:
        """Fetch the remote state; returns True if the cached state changed.

        Raises:
            ApiError: The fetch failed.
        """
        return await self._tracker.refresh()

    async def update(self) -> bool:
        """Alias of refresh()."""
        return await self._tracker.refresh()

    def subscribe(
        self,
        callback: StateCallback,
        *,
        event: StateEvent | str = StateEvent.CHANGE,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        """Observe state changes ("change") or newly entered panics ("panic").

        Starts background polling; unsubscribe() to let it stop.
        """
        return self._tracker.subscribe(callback, event=StateEvent(event), on_error=on_error)

    def wait_for(self, predicate: Predicate) -> StateWaiter:
        """Await the returned waiter until ``predicate(info)`` is truthy."""
        return self._waiter.wait_for(predicate)

    def wait_for_state(self, state: str) -> StateWaiter:
        """Await the returned waiter until the instance reports ``state``."""
        return self._waiter.wait_for_state(state)

    async def finish_restore(self) -> None:
        """Wait until the instance has left the "creating" state."""
        await self._waiter.wait_for(lambda info: info["state"] != constants.STATE_CREATING)

    # -------------------------------------------------------------------------
    # Lifecycle commands (fire-and-forget)
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        await self._call("/start", method="POST")

    async def stop(self) -> None:
        await self._call("/stop", method="POST")

    async def reboot(self) -> None:
        await self._call("/reboot", method="POST")

    async def pause(self) -> None:
        await self._call("/pause", method="POST")

    async def unpause(self) -> None:
        await self._call("/unpause", method="POST")

    async def rename(self, name: str) -> None:
        await self._call("", method="PATCH", json={"name": name})

    async def destroy(self) -> None:
        """Delete the instance.  The state eventually becomes "deleted"."""
        await self._call("", method="DELETE")

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    async def snapshots(self) -> list[Snapshot]:
        records = await self._call("/snapshots")
        return [Snapshot(self._api, self.id, record) for record in records or []]

    async def take_snapshot(self, name: str | None = None) -> Snapshot:
        body = {"name": name} if name is not None else {}
        record = await self._call("/snapshots", method="POST", json=body)
        return Snapshot(self._api, self.id, record)

    # -------------------------------------------------------------------------
    # Hypervisor channel and operations
    # -------------------------------------------------------------------------

    async def hypervisor(self) -> HypervisorChannel:
        """Live hypervisor channel; waits for the instance network first.

        Raises:
            ChannelConnectError: A new channel could not be opened.
        """
        return await self._hypervisor.get()

    def _hypervisor_endpoint(self, state: StateSnapshot) -> str:
        return f"{self._api.config.ws_url}/c3po/{state['c3po']}"

    async def _open_hypervisor(self, endpoint: str) -> HypervisorChannel:
        config = self._api.config
        return await HypervisorChannel.open(
            endpoint,
            await self._api.session(),
            headers=self._api.headers,
            connect_timeout=config.channel_connect_timeout_seconds,
            request_timeout=config.command_timeout_seconds,
        )

    async def _hypervisor_command(self, payload: dict[str, Any]) -> dict[str, Any]:
        hypervisor = await self.hypervisor()
        key = bytes.fromhex(self.info["key"])
        return await hypervisor.command(hypervisor.signed_command(self.id, key, payload))

    async def console_log(self) -> str | None:
        """Buffered serial console output."""
        result = await self._hypervisor_command({"type": "console", "op": "get"})
        return result.get("log")

    async def panics(self) -> list[Any]:
        """Panic records collected by the hypervisor."""
        result = await self._hypervisor_command({"type": "panic", "op": "get"})
        return result.get("panics") or []

    async def clear_panics(self) -> dict[str, Any]:
        return await self._hypervisor_command({"type": "panic", "op": "clear"})

    # -------------------------------------------------------------------------
    # Agent channel
    # -------------------------------------------------------------------------

    async def agent(self) -> AgentChannel:
        """Live agent channel; waits until the platform announces an agent.

        Raises:
            ChannelConnectError: A new channel could not be opened.
        """
        return await self._agent.get()

    async def new_agent(self) -> AgentChannel:
        """Open an extra agent channel owned by the caller (not multiplexed).

        The caller must disconnect() it.
        """
        await self._waiter.wait_for(_agent_ready)
        return await self._open_agent(self._agent_endpoint(self.info))

    async def wait_for_agent_ready(self) -> AgentChannel:
        """Wait for the agent descriptor, connect, and wait until it answers."""
        agent = await self.agent()
        await agent.ready(timeout=self._api.config.agent_ready_timeout_seconds)
        return agent

    def _agent_endpoint(self, state: StateSnapshot) -> str:
        return f"{self._api.config.ws_url}/agent/{state['agent']['info']}"

    async def _open_agent(self, endpoint: str) -> AgentChannel:
        config = self._api.config
        return await AgentChannel.open(
            endpoint,
            await self._api.session(),
            headers=self._api.headers,
            connect_timeout=config.channel_connect_timeout_seconds,
            request_timeout=config.command_timeout_seconds,
        )

    # -------------------------------------------------------------------------
    # Console stream and screenshot
    # -------------------------------------------------------------------------

    async def console(self) -> ConsoleStream:
        """Open the serial console as a byte stream."""
        reply = await self._call("/console")
        stream = ConsoleStream(
            reply["url"],
            await self._api.session(),
            connect_timeout=self._api.config.channel_connect_timeout_seconds,
        )
        return await stream.open()

    async def take_screenshot(self) -> bytes:
        """Current screen as PNG bytes."""
        return await self._call("/screenshot.png", raw=True)

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Cancel pending waits, stop polling and disconnect channels.  Idempotent."""
        cancelled = self._waiter.cancel_all()
        await self._tracker.stop()
        await self._hypervisor.close()
        await self._agent.close()
        logger.debug("Instance handle closed", extra={"instance": self.id, "cancelled_waits": cancelled})

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Remote access
    # -------------------------------------------------------------------------

    async def _fetch_info(self) -> StateSnapshot:
        return await self._call("")

    async def _call(self, path: str = "", **options: Any) -> Any:
        return await self._api.call(f"/instances/{self.id}{path}", **options)
