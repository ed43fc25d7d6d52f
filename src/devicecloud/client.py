"""Client - authenticated entry point to the platform.

Example:
    ```python
    from devicecloud import Client, ClientConfig

    config = ClientConfig(endpoint="https://cloud.example.com")
    async with Client(config, username="me", password="secret") as client:
        project = await client.get_project("Default Project")
        for instance in await project.instances():
            print(instance.name, instance.state)
    ```
"""

from __future__ import annotations

from typing import Self

import aiohttp

from devicecloud._logging import get_logger
from devicecloud.api import ApiClient
from devicecloud.config import ClientConfig
from devicecloud.exceptions import AuthenticationError, ProjectNotFoundError
from devicecloud.models import Token
from devicecloud.project import Project

logger = get_logger(__name__)


class Client:
    """Authenticated session against the platform.

    Authenticates with an API token when one is given, otherwise exchanges
    username/password for a token on login().
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        api_token: str | None = None,
        username: str | None = None,
        password: str | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._config = config
        self._username = username
        self._password = password
        self._api = ApiClient(config, session=session, token=api_token)

    @property
    def api(self) -> ApiClient:
        return self._api

    @property
    def config(self) -> ClientConfig:
        return self._config

    async def login(self) -> None:
        """Obtain a token unless one was supplied.

        Raises:
            AuthenticationError: No credentials, or the platform rejected them.
        """
        if self._api.token:
            return
        if not self._username or not self._password:
            raise AuthenticationError("No API token and no username/password configured")
        reply = await self._api.call(
            "/tokens",
            method="POST",
            json={"username": self._username, "password": self._password},
        )
        self._api.token = Token.model_validate(reply).token
        logger.debug("Logged in", extra={"username": self._username})

    async def projects(self) -> list[Project]:
        records = await self._api.call("/projects")
        return [Project(self._api, record) for record in records or []]

    async def get_project(self, name_or_id: str) -> Project:
        """Find a project by id or, failing that, by name.

        Raises:
            ProjectNotFoundError: No project matches.
        """
        for project in await self.projects():
            if name_or_id in (project.id, project.name):
                return project
        raise ProjectNotFoundError(f"No project named or identified by {name_or_id!r}", {"project": name_or_id})

    async def close(self) -> None:
        await self._api.close()

    async def __aenter__(self) -> Self:
        try:
            await self.login()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.close()
