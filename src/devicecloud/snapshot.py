"""Snapshot value objects (saved restore points of a device).

A Snapshot wraps the record the platform returned; it is never refreshed
and never cached on the owning instance.  restore() and delete() are plain
remote calls; observe their effect through the instance state.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from devicecloud.api import ApiClient


class Snapshot:
    """One saved restore point of an instance."""

    def __init__(self, api: ApiClient, instance_id: str, info: dict[str, Any]) -> None:
        self._api = api
        self._instance_id = instance_id
        self.info = info

    def __repr__(self) -> str:
        return f"Snapshot(id={self.id!r}, name={self.name!r}, instance={self._instance_id!r})"

    @property
    def id(self) -> str:
        return str(self.info["id"])

    @property
    def name(self) -> str | None:
        return self.info.get("name")

    @property
    def fresh(self) -> bool:
        """True for the snapshot the platform took right after creation."""
        return bool(self.info.get("fresh"))

    @property
    def status(self) -> dict[str, Any]:
        status = self.info.get("status")
        return status if isinstance(status, dict) else {}

    async def restore(self) -> None:
        """Restore the instance to this snapshot."""
        await self._api.call(f"/instances/{self._instance_id}/snapshots/{self.id}/restore", method="POST")

    async def delete(self) -> None:
        await self._api.call(f"/instances/{self._instance_id}/snapshots/{self.id}", method="DELETE")
