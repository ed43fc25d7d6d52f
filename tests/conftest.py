"""Shared pytest fixtures for devicecloud tests.

The fakes stand in at the remote boundary only: FakeFetch and FakeApi
serve scripted platform state, everything above them (tracker, waiter,
channel slots, instance facade) runs for real on the test's event loop.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest

from devicecloud.config import ClientConfig
from devicecloud.state import StateSnapshot, StateTracker

POLL_INTERVAL = 0.01
INSTANCE_ID = "inst-1"


def make_state(state: str = "off", **fields: Any) -> StateSnapshot:
    """Instance record as the platform reports it."""
    return {"id": INSTANCE_ID, "name": "test-device", "flavor": "iphone6", "state": state, **fields}


async def eventually(condition: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the loop until condition() holds."""
    async with asyncio.timeout(timeout):
        while not condition():
            await asyncio.sleep(POLL_INTERVAL / 2)


# ============================================================================
# Remote fakes
# ============================================================================


class FakeFetch:
    """Scripted remote state for a StateTracker.

    Returns a copy of `remote` on every call, or raises `error` when set.
    """

    def __init__(self, remote: StateSnapshot) -> None:
        self.remote = remote
        self.error: Exception | None = None
        self.calls = 0

    async def __call__(self) -> StateSnapshot:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return copy.deepcopy(self.remote)


class FakeApi:
    """Drop-in for ApiClient.  Records calls, serves the instance record and scripted replies."""

    def __init__(self, config: ClientConfig, state: StateSnapshot) -> None:
        self.config = config
        self.headers = {"Authorization": "Bearer test-token"}
        self.state = state
        self.replies: dict[tuple[str, str], Any] = {}
        self.calls: list[dict[str, Any]] = []

    async def session(self) -> None:
        return None

    async def call(
        self,
        path: str,
        *,
        method: str = "GET",
        json: Any = None,
        params: dict[str, str] | None = None,
        raw: bool = False,
    ) -> Any:
        self.calls.append({"method": method, "path": path, "json": json, "raw": raw})
        reply = self.replies.get((method, path))
        if isinstance(reply, BaseException):
            raise reply
        if reply is not None:
            return copy.deepcopy(reply)
        if method == "GET" and path == f"/instances/{self.state['id']}":
            return copy.deepcopy(self.state)
        return None

    def paths(self, method: str) -> list[str]:
        return [c["path"] for c in self.calls if c["method"] == method]


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def config() -> ClientConfig:
    return ClientConfig(endpoint="https://cloud.test", poll_interval_seconds=POLL_INTERVAL)


@pytest.fixture
def fetch() -> FakeFetch:
    return FakeFetch(make_state("off"))


@pytest.fixture
async def tracker(fetch: FakeFetch) -> AsyncGenerator[StateTracker, None]:
    tracker = StateTracker(fetch, make_state("off"), poll_interval=POLL_INTERVAL, name=INSTANCE_ID)
    yield tracker
    await tracker.stop()


@pytest.fixture
def api(config: ClientConfig) -> FakeApi:
    return FakeApi(config, make_state("off"))
