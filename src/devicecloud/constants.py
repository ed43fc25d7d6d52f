"""Constants for devicecloud configuration and limits."""

from typing import Final

# ============================================================================
# State Polling
# ============================================================================

POLL_INTERVAL_SECONDS: Final[float] = 1.0
"""Fixed delay between background refreshes while someone observes the instance."""

# ============================================================================
# Remote API
# ============================================================================

API_PREFIX: Final[str] = "/api/v1"
"""Path prefix appended to the platform endpoint for REST calls."""

REQUEST_TIMEOUT_SECONDS: Final[float] = 30.0
"""Total timeout for a single REST call."""

API_MAX_ATTEMPTS: Final[int] = 3
"""Attempts for idempotent REST calls failing with a transient error."""

API_RETRY_MIN_SECONDS: Final[float] = 0.1
"""Minimum backoff between transient REST retries."""

API_RETRY_MAX_SECONDS: Final[float] = 2.0
"""Maximum backoff between transient REST retries."""

IDEMPOTENT_METHODS: Final[frozenset[str]] = frozenset({"GET", "HEAD", "PUT", "DELETE", "OPTIONS"})
"""HTTP methods the accessor may safely retry."""

# ============================================================================
# Channels
# ============================================================================

CHANNEL_CONNECT_TIMEOUT_SECONDS: Final[float] = 10.0
"""Timeout for establishing a hypervisor or agent WebSocket."""

COMMAND_TIMEOUT_SECONDS: Final[float] = 30.0
"""Timeout for one hypervisor command or agent request round trip."""

AGENT_READY_TIMEOUT_SECONDS: Final[float] = 120.0
"""Upper bound for agent.ready() polling after the agent descriptor appears."""

AGENT_READY_RETRY_MIN_SECONDS: Final[float] = 0.2
"""Minimum wait between agent readiness probes."""

AGENT_READY_RETRY_MAX_SECONDS: Final[float] = 2.0
"""Maximum wait between agent readiness probes."""

CONSOLE_PROTOCOL: Final[str] = "binary"
"""WebSocket subprotocol tag for the serial console stream."""

# ============================================================================
# Instance States
# ============================================================================

STATE_CREATING: Final[str] = "creating"
STATE_ON: Final[str] = "on"
STATE_OFF: Final[str] = "off"
STATE_PAUSED: Final[str] = "paused"
STATE_DELETED: Final[str] = "deleted"
