"""State tracking for a remote instance.

The platform never pushes state changes, so the tracker keeps the last
fetched snapshot and refreshes it on demand.  A background polling task
runs only while at least one observer is subscribed:

    subscribe()  ─► observer count 0→1 ─► poll task starts
    poll task:   refresh() ─► sleep(interval) ─► observers left? ─► repeat / stop

The loop checks the observer count once per cycle, right after the sleep,
so dropping the last observer stops polling after at most one further
refresh-and-sleep cycle.  An explicit refresh() is not serialized against
the loop's own refresh: whichever completes last wins.

Change detection is a type-aware structural comparison of the decoded JSON,
independent of mapping key order.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from devicecloud import constants
from devicecloud._logging import get_logger
from devicecloud.exceptions import ApiError, StatePollError

logger = get_logger(__name__)

StateSnapshot = dict[str, Any]
StateCallback = Callable[[StateSnapshot], None]
ErrorCallback = Callable[[BaseException], None]


class StateEvent(str, Enum):
    """Notifications emitted by StateTracker.refresh()."""

    CHANGE = "change"
    PANIC = "panic"


def snapshots_equal(a: Any, b: Any) -> bool:
    """Structural equality for decoded JSON values.

    Mappings compare by key set and per-key value regardless of key order,
    sequences compare element-wise in order.  Unlike ``==`` this keeps JSON
    types apart: ``true`` is not ``1`` and ``1`` is not ``1.0``.
    """
    if isinstance(a, dict) and isinstance(b, dict):
        if a.keys() != b.keys():
            return False
        return all(snapshots_equal(a[key], b[key]) for key in a)
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return len(a) == len(b) and all(snapshots_equal(x, y) for x, y in zip(a, b, strict=True))
    if type(a) is not type(b):
        return False
    return bool(a == b)


def _panicked(state: StateSnapshot | None) -> bool:
    return bool(state and state.get("panicked"))


class Subscription:
    """Handle for one registered observer.

    Attributes:
        event: Which notification the callback receives.
        callback: Called with the new snapshot.
        on_error: Called with StatePollError if the polling loop dies.
    """

    __slots__ = ("_active", "_tracker", "callback", "event", "on_error")

    def __init__(
        self,
        tracker: StateTracker,
        event: StateEvent,
        callback: StateCallback,
        on_error: ErrorCallback | None,
    ) -> None:
        self._tracker = tracker
        self._active = True
        self.event = event
        self.callback = callback
        self.on_error = on_error

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        """Remove the observer.  Safe to call more than once."""
        if self._active:
            self._active = False
            self._tracker._remove(self)  # noqa: SLF001


class StateTracker:
    """Cached state snapshot with lazy background polling.

    Args:
        fetch: Coroutine function returning the current remote snapshot.
            Failures propagate to whoever called refresh().
        initial: Snapshot the handle was created with.
        poll_interval: Fixed delay between background refreshes.
        name: Label used in log records.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[StateSnapshot]],
        initial: StateSnapshot,
        *,
        poll_interval: float = constants.POLL_INTERVAL_SECONDS,
        name: str = "",
    ) -> None:
        self._fetch = fetch
        self._state = initial
        self._poll_interval = poll_interval
        self._name = name
        self._subscriptions: list[Subscription] = []
        self._poll_active = False
        self._poll_task: asyncio.Task[None] | None = None

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def state(self) -> StateSnapshot:
        """Last successfully fetched snapshot."""
        return self._state

    @property
    def observer_count(self) -> int:
        return len(self._subscriptions)

    @property
    def poll_active(self) -> bool:
        """True while a polling task is scheduled for this tracker."""
        return self._poll_active

    # -------------------------------------------------------------------------
    # Refresh
    # -------------------------------------------------------------------------

    async def refresh(self) -> bool:
        """Fetch the remote snapshot and replace the cached one if it differs.

        Emits CHANGE when the snapshot differs, and additionally PANIC when
        the new snapshot reports a panic the previous one did not.

        Returns:
            True if the cached snapshot was replaced.

        Raises:
            ApiError: The accessor returned something other than a record
        """
        fresh = await self._fetch()
        if not isinstance(fresh, dict):
            raise ApiError(
                f"Expected an instance record, got {type(fresh).__name__}",
                context={"instance": self._name},
            )
        if snapshots_equal(fresh, self._state):
            return False

        previous = self._state
        self._state = fresh
        logger.debug(
            "Instance state changed",
            extra={"instance": self._name, "state": fresh.get("state"), "previous": previous.get("state")},
        )
        self._emit(StateEvent.CHANGE, fresh)
        if _panicked(fresh) and not _panicked(previous):
            logger.warning("Instance panicked", extra={"instance": self._name})
            self._emit(StateEvent.PANIC, fresh)
        return True

    def _emit(self, event: StateEvent, state: StateSnapshot) -> None:
        # Copy: callbacks unsubscribe themselves while we iterate
        for sub in list(self._subscriptions):
            if sub.event is not event or not sub.active:
                continue
            try:
                sub.callback(state)
            except Exception:
                logger.exception(
                    "State observer raised",
                    extra={"instance": self._name, "event": event.value},
                )

    # -------------------------------------------------------------------------
    # Observer registry
    # -------------------------------------------------------------------------

    def subscribe(
        self,
        callback: StateCallback,
        *,
        event: StateEvent = StateEvent.CHANGE,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        """Register an observer and make sure polling runs.

        Must be called from a running event loop.
        """
        sub = Subscription(self, StateEvent(event), callback, on_error)
        self._subscriptions.append(sub)
        self._ensure_polling()
        return sub

    def _remove(self, sub: Subscription) -> None:
        with contextlib.suppress(ValueError):
            self._subscriptions.remove(sub)

    # -------------------------------------------------------------------------
    # Background polling
    # -------------------------------------------------------------------------

    def _ensure_polling(self) -> None:
        if self._poll_active:
            return
        self._poll_active = True
        self._poll_task = asyncio.create_task(self._poll_loop(), name=f"devicecloud-poll-{self._name}")

    async def _poll_loop(self) -> None:
        logger.debug("State polling started", extra={"instance": self._name})
        error: Exception | None = None
        try:
            while True:
                await self.refresh()
                await asyncio.sleep(self._poll_interval)
                if self.observer_count <= 0:
                    break
        except Exception as e:  # noqa: BLE001 - handed to observers below
            error = e
        finally:
            self._poll_active = False
            self._poll_task = None

        if error is None:
            logger.debug("State polling stopped", extra={"instance": self._name})
            return

        logger.warning(
            "State refresh failed, polling stopped",
            extra={"instance": self._name, "error": str(error)},
        )
        poll_error = StatePollError(f"Background refresh failed: {error}", {"instance": self._name})
        poll_error.__cause__ = error
        for sub in list(self._subscriptions):
            if sub.on_error is None or not sub.active:
                continue
            try:
                sub.on_error(poll_error)
            except Exception:
                logger.exception(
                    "State error observer raised",
                    extra={"instance": self._name, "error": str(error)},
                )

    async def stop(self) -> None:
        """Cancel the polling task, if any, and wait for it to finish."""
        task = self._poll_task
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
