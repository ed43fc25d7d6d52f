"""Runtime configuration from environment variables."""

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from devicecloud import constants
from devicecloud.config import ClientConfig


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with DEVICECLOUD_ prefix.
    Example: DEVICECLOUD_ENDPOINT=https://cloud.example.com
    """

    model_config = SettingsConfigDict(
        env_prefix="DEVICECLOUD_",
        extra="ignore",
    )

    endpoint: str | None = None

    # Credentials: either a token or username + password
    api_token: SecretStr | None = None
    username: str | None = None
    password: SecretStr | None = None

    # Project used by the CLI when none is given on the command line
    project: str | None = None

    poll_interval_seconds: float = constants.POLL_INTERVAL_SECONDS
    request_timeout_seconds: float = constants.REQUEST_TIMEOUT_SECONDS
    verify_tls: bool = True

    def client_config(self, endpoint: str | None = None) -> ClientConfig:
        """Build a ClientConfig, preferring an explicit endpoint over the env var.

        Raises:
            ValueError: No endpoint configured
        """
        resolved = endpoint or self.endpoint
        if not resolved:
            raise ValueError("No endpoint configured. Set DEVICECLOUD_ENDPOINT or pass --endpoint.")
        return ClientConfig(
            endpoint=resolved,
            poll_interval_seconds=self.poll_interval_seconds,
            request_timeout_seconds=self.request_timeout_seconds,
            verify_tls=self.verify_tls,
        )
