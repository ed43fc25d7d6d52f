"""Hypervisor channel: signed low-level commands to the virtualization layer.

Commands are signed with the per-instance key the platform hands out in the
instance state ("key", hex encoded).  The signature is HMAC-SHA256 over the
canonical JSON of instance id, nonce, issue time and payload, so the
hypervisor can reject replayed or forged commands.

Usage:
    channel = await HypervisorChannel.open(endpoint, session)
    signed = channel.signed_command(instance_id, key, {"type": "console", "op": "get"})
    reply = await channel.command(signed)
"""

from __future__ import annotations

import hashlib
import hmac
import json
import secrets
import time
from typing import Any, ClassVar

from pydantic import BaseModel, Field

from devicecloud.exceptions import HypervisorCommandError
from devicecloud.ws_channel import WebSocketChannel


def _canonical(document: dict[str, Any]) -> bytes:
    return json.dumps(document, sort_keys=True, separators=(",", ":")).encode()


class SignedCommand(BaseModel):
    """Hypervisor command with its authentication tag."""

    instance: str = Field(description="Instance the command targets")
    nonce: str = Field(description="Random per-command value (replay protection)")
    issued_at: int = Field(description="Unix time in milliseconds")
    payload: dict[str, Any] = Field(description="Command body, e.g. {'type': 'panic', 'op': 'get'}")
    signature: str = Field(description="Hex HMAC-SHA256 over the other fields")

    def signed_document(self) -> dict[str, Any]:
        """Fields covered by the signature."""
        return {
            "instance": self.instance,
            "nonce": self.nonce,
            "issued_at": self.issued_at,
            "payload": self.payload,
        }

    def verify(self, key: bytes) -> bool:
        expected = hmac.new(key, _canonical(self.signed_document()), hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, self.signature)


class HypervisorChannel(WebSocketChannel):
    """Persistent connection for signed hypervisor commands.

    Replies have the shape {"id": n, "result": {...}} on success and
    {"id": n, "error": "..."} on failure.
    """

    kind: ClassVar[str] = "hypervisor"

    def signed_command(self, instance_id: str, key: bytes, payload: dict[str, Any]) -> SignedCommand:
        """Sign a command payload for one instance."""
        document = {
            "instance": instance_id,
            "nonce": secrets.token_hex(16),
            "issued_at": int(time.time() * 1000),
            "payload": payload,
        }
        signature = hmac.new(key, _canonical(document), hashlib.sha256).hexdigest()
        return SignedCommand(signature=signature, **document)

    async def command(self, signed: SignedCommand) -> dict[str, Any]:
        """Send a signed command and return the decoded result.

        Raises:
            HypervisorCommandError: The hypervisor rejected the command.
            ChannelClosedError: Channel not connected or closed mid-request.
            ChannelError: No reply within the command timeout.
        """
        reply = await self._request({"command": signed.model_dump()})
        if reply.get("error"):
            raise HypervisorCommandError(f"Hypervisor rejected command: {reply['error']}", reply)
        result = reply.get("result")
        return result if isinstance(result, dict) else {}
