"""Data models for devicecloud."""

from enum import Enum

from pydantic import BaseModel, Field


class InstanceState(str, Enum):
    """Instance states reported by the platform."""

    CREATING = "creating"
    ON = "on"
    OFF = "off"
    PAUSED = "paused"
    BOOTING = "booting"
    REBOOTING = "rebooting"
    DELETING = "deleting"
    DELETED = "deleted"
    ERROR = "error"


class PowerAction(str, Enum):
    """Fire-and-forget lifecycle commands and the state each one leads to."""

    START = "start"
    STOP = "stop"
    REBOOT = "reboot"
    PAUSE = "pause"
    UNPAUSE = "unpause"

    @property
    def target_state(self) -> InstanceState:
        """State the platform eventually reports after this action completes."""
        return {
            PowerAction.START: InstanceState.ON,
            PowerAction.STOP: InstanceState.OFF,
            PowerAction.REBOOT: InstanceState.ON,
            PowerAction.PAUSE: InstanceState.PAUSED,
            PowerAction.UNPAUSE: InstanceState.ON,
        }[self]

    @property
    def cycles(self) -> bool:
        """True when the instance leaves its current state even if it ends up back in it."""
        return self is PowerAction.REBOOT


class InstanceCreateRequest(BaseModel):
    """Body of POST /instances."""

    project: str = Field(description="Owning project id")
    flavor: str = Field(min_length=1, description="Device model, e.g. 'iphone6'")
    name: str | None = Field(default=None, description="Display name")
    os: str | None = Field(default=None, description="Firmware version to install")
    osbuild: str | None = Field(default=None, description="Specific firmware build")
    snapshot: str | None = Field(default=None, description="Snapshot to restore from")
    patches: list[str] | None = Field(default=None, description="Kernel patch set names")


class Token(BaseModel):
    """API token returned by POST /tokens."""

    token: str
    expiration: str | None = None
