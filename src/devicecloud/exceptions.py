"""Exception hierarchy for devicecloud.

All exceptions inherit from DeviceCloudError.

Hierarchy:
    DeviceCloudError (base)
    ├── TransientError (retryable marker base)
    │   ├── ApiTransientError          ← network failure, 5xx, 429
    │   └── ChannelConnectError        ← hypervisor/agent connect failed
    ├── PermanentError (non-retryable marker base)
    │   ├── ApiPermanentError          ← other non-success HTTP status
    │   │   └── AuthenticationError    ← 401/403 or login rejected
    │   └── ProjectNotFoundError       ← no project matches name/id
    ├── ChannelError                   ← channel protocol failures
    │   ├── ChannelClosedError         ← channel used after disconnect
    │   ├── HypervisorCommandError     ← hypervisor rejected a command
    │   └── AgentError                 ← agent returned an error reply
    └── StatePollError                 ← background refresh failed

ApiError is the common base of ApiTransientError and ApiPermanentError so
callers can catch every failed remote call with one handler.
"""

from __future__ import annotations

from typing import Any


class DeviceCloudError(Exception):
    """Base exception for all devicecloud errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(DeviceCloudError):
    """Base for transient errors that may succeed on retry."""


class PermanentError(DeviceCloudError):
    """Base for permanent errors that won't succeed on retry."""


# =============================================================================
# Remote API Errors
# =============================================================================


class ApiError(DeviceCloudError):
    """A remote API call failed.

    Attributes:
        status: HTTP status code, or None for network-level failures
        path: Resource path of the failed call
        body: Decoded error body returned by the platform (if any)
    """

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        path: str = "",
        body: Any = None,
        context: dict[str, Any] | None = None,
    ):
        ctx = context or {}
        ctx.update({"status": status, "path": path})
        super().__init__(message, ctx)
        self.status = status
        self.path = path
        self.body = body


class ApiTransientError(ApiError, TransientError):
    """Network failure, timeout, 5xx or 429 -- may succeed on retry."""


class ApiPermanentError(ApiError, PermanentError):
    """Non-success HTTP status that will not change on retry (4xx)."""


class AuthenticationError(ApiPermanentError):
    """Login was rejected or the token is no longer accepted."""


class ProjectNotFoundError(PermanentError):
    """No project matches the requested name or identifier."""


# =============================================================================
# Channel Errors
# =============================================================================


class ChannelError(DeviceCloudError):
    """Failure on a persistent hypervisor or agent channel."""


class ChannelConnectError(ChannelError, TransientError):
    """Establishing a hypervisor or agent channel failed.

    Propagates to the caller of Instance.hypervisor() / Instance.agent().
    """


class ChannelClosedError(ChannelError):
    """The channel was disconnected while a request was pending or before it was sent."""


class HypervisorCommandError(ChannelError):
    """The hypervisor answered a signed command with an error.

    Attributes:
        response: Raw decoded response
    """

    def __init__(self, message: str, response: dict[str, Any]):
        super().__init__(message, context={"response": response})
        self.response = response


class AgentError(ChannelError):
    """The in-device agent answered a request with an error.

    Attributes:
        response: Raw decoded response
    """

    def __init__(self, message: str, response: dict[str, Any]):
        super().__init__(message, context={"response": response})
        self.response = response


# =============================================================================
# State Tracking Errors
# =============================================================================


class StatePollError(DeviceCloudError):
    """The background polling loop stopped because a refresh failed.

    Delivered to every pending waiter so none of them hangs on a loop that
    is no longer advancing.  The original failure is chained as __cause__.
    """
