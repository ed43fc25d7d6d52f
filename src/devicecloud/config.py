"""Client configuration for devicecloud.

ClientConfig carries everything a Client needs to reach the platform:
the endpoint, polling cadence, and timeouts for REST calls and channels.

Example:
    ```python
    from devicecloud import Client, ClientConfig

    config = ClientConfig(endpoint="https://cloud.example.com", poll_interval_seconds=2.0)
    async with Client(config, api_token="...") as client:
        project = await client.get_project("Default Project")
    ```
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator

from devicecloud import constants


class ClientConfig(BaseModel):
    """Configuration for Client and the handles it creates.

    Attributes:
        endpoint: Base URL of the platform (scheme + host, no trailing slash).
        poll_interval_seconds: Delay between background refreshes while an
            instance is observed. Default: 1.0.
        request_timeout_seconds: Total timeout for one REST call. Default: 30.
        api_max_attempts: Attempts for idempotent REST calls that fail with a
            transient error (1 disables retries). Default: 3.
        channel_connect_timeout_seconds: Timeout for opening a hypervisor or
            agent channel. Default: 10.
        command_timeout_seconds: Timeout for one channel round trip. Default: 30.
        agent_ready_timeout_seconds: Upper bound for agent readiness probing.
            Default: 120.
        verify_tls: Verify the platform's TLS certificate. Default: True.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    endpoint: str = Field(description="Platform base URL, e.g. https://cloud.example.com")

    poll_interval_seconds: float = Field(
        default=constants.POLL_INTERVAL_SECONDS,
        gt=0,
        le=60,
        description="Delay between background refreshes",
    )

    request_timeout_seconds: float = Field(
        default=constants.REQUEST_TIMEOUT_SECONDS,
        gt=0,
        le=600,
        description="Total timeout for one REST call",
    )
    api_max_attempts: int = Field(
        default=constants.API_MAX_ATTEMPTS,
        ge=1,
        le=10,
        description="Attempts for idempotent REST calls on transient errors",
    )

    channel_connect_timeout_seconds: float = Field(
        default=constants.CHANNEL_CONNECT_TIMEOUT_SECONDS,
        gt=0,
        le=300,
        description="Timeout for opening a hypervisor or agent channel",
    )
    command_timeout_seconds: float = Field(
        default=constants.COMMAND_TIMEOUT_SECONDS,
        gt=0,
        le=600,
        description="Timeout for one channel round trip",
    )
    agent_ready_timeout_seconds: float = Field(
        default=constants.AGENT_READY_TIMEOUT_SECONDS,
        gt=0,
        description="Upper bound for agent readiness probing",
    )

    verify_tls: bool = Field(default=True, description="Verify the platform's TLS certificate")

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint(cls, v: str) -> str:
        """Require an http(s) URL and drop trailing slashes."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("endpoint must start with http:// or https://")
        return v.rstrip("/")

    @property
    def api_url(self) -> str:
        """REST base URL (endpoint + API prefix)."""
        return self.endpoint + constants.API_PREFIX

    @property
    def ws_url(self) -> str:
        """WebSocket base URL matching the REST base URL."""
        if self.api_url.startswith("https://"):
            return "wss://" + self.api_url.removeprefix("https://")
        return "ws://" + self.api_url.removeprefix("http://")
