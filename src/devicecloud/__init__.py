"""devicecloud: async client handles for remote virtual devices.

The platform owns each device and changes its state on its own; an
Instance handle observes that state by polling only while somebody is
watching, lets callers wait for a state predicate, and keeps at most one
live hypervisor channel and one live agent channel per device.

Quick Start:
    ```python
    import asyncio
    from devicecloud import Client, ClientConfig

    async def main():
        config = ClientConfig(endpoint="https://cloud.example.com")
        async with Client(config, api_token="...") as client:
            project = await client.get_project("Default Project")
            instance = await project.create_instance("iphone6", name="test", os="12.0")
            await instance.finish_restore()
            await instance.start()
            async with asyncio.timeout(300):
                await instance.wait_for_state("on")
            print(await instance.console_log())
            await instance.close()

    asyncio.run(main())
    ```

Observing state:
    ```python
    sub = instance.subscribe(lambda info: print("now", info["state"]))
    ...
    sub.unsubscribe()  # polling stops about one interval later
    ```
"""

from devicecloud.agent import AgentChannel
from devicecloud.api import ApiClient
from devicecloud.channels import Channel, ChannelSlot
from devicecloud.client import Client
from devicecloud.config import ClientConfig
from devicecloud.console import ConsoleStream
from devicecloud.exceptions import (
    AgentError,
    ApiError,
    ApiPermanentError,
    ApiTransientError,
    AuthenticationError,
    ChannelClosedError,
    ChannelConnectError,
    ChannelError,
    DeviceCloudError,
    HypervisorCommandError,
    PermanentError,
    ProjectNotFoundError,
    StatePollError,
    TransientError,
)
from devicecloud.hypervisor import HypervisorChannel, SignedCommand
from devicecloud.instance import Instance
from devicecloud.models import InstanceState, PowerAction
from devicecloud.project import Project
from devicecloud.snapshot import Snapshot
from devicecloud.state import StateEvent, StateTracker, Subscription
from devicecloud.waiter import ConditionWaiter, StateWaiter

__all__ = [
    "AgentChannel",
    "AgentError",
    "ApiClient",
    "ApiError",
    "ApiPermanentError",
    "ApiTransientError",
    "AuthenticationError",
    "Channel",
    "ChannelClosedError",
    "ChannelConnectError",
    "ChannelError",
    "ChannelSlot",
    "Client",
    "ClientConfig",
    "ConditionWaiter",
    "ConsoleStream",
    "DeviceCloudError",
    "HypervisorChannel",
    "HypervisorCommandError",
    "Instance",
    "InstanceState",
    "PermanentError",
    "PowerAction",
    "Project",
    "ProjectNotFoundError",
    "SignedCommand",
    "Snapshot",
    "StateEvent",
    "StatePollError",
    "StateTracker",
    "StateWaiter",
    "Subscription",
    "TransientError",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("devicecloud")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
