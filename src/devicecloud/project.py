"""Project - lookup and creation of instance handles."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from devicecloud._logging import get_logger
from devicecloud.instance import Instance
from devicecloud.models import InstanceCreateRequest

if TYPE_CHECKING:
    from devicecloud.api import ApiClient

logger = get_logger(__name__)


class Project:
    """A project groups instances and their quotas."""

    def __init__(self, api: ApiClient, info: dict[str, Any]) -> None:
        self._api = api
        self.info = info
        self.id: str = info["id"]

    def __repr__(self) -> str:
        return f"Project(id={self.id!r}, name={self.name!r})"

    @property
    def name(self) -> str | None:
        return self.info.get("name")

    @property
    def quotas(self) -> dict[str, Any]:
        return self.info.get("quotas") or {}

    @property
    def quotas_used(self) -> dict[str, Any]:
        return self.info.get("quotasUsed") or {}

    async def refresh(self) -> None:
        self.info = await self._api.call(f"/projects/{self.id}")

    async def instances(self) -> list[Instance]:
        records = await self._api.call(f"/projects/{self.id}/instances")
        return [Instance(self._api, record, project_id=self.id) for record in records or []]

    async def get_instance(self, instance_id: str) -> Instance:
        """Fetch one instance and wrap it in a handle with its current state."""
        info = await self._api.call(f"/instances/{instance_id}")
        return Instance(self._api, info, project_id=self.id)

    async def create_instance(
        self,
        flavor: str,
        *,
        name: str | None = None,
        os: str | None = None,
        osbuild: str | None = None,
        snapshot: str | None = None,
        patches: list[str] | None = None,
    ) -> Instance:
        """Create an instance and return a handle for it.

        The handle starts in whatever state the platform reports, usually
        "creating"; use Instance.finish_restore() to wait for it to settle.
        """
        request = InstanceCreateRequest(
            project=self.id,
            flavor=flavor,
            name=name,
            os=os,
            osbuild=osbuild,
            snapshot=snapshot,
            patches=patches,
        )
        created = await self._api.call("/instances", method="POST", json=request.model_dump(exclude_none=True))
        logger.info("Instance created", extra={"project": self.id, "instance": created["id"], "flavor": flavor})
        return await self.get_instance(created["id"])
