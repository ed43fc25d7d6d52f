"""Wait until a predicate over the cached instance state holds.

A StateWaiter evaluates its predicate once immediately.  If that fails it
subscribes to change notifications (which starts background polling) and
re-evaluates on every change; the first truthy evaluation unsubscribes and
resolves.  A predicate that raises counts as "not yet".

There is no internal timeout.  Bound a wait from outside:

    async with asyncio.timeout(60):
        await instance.wait_for_state("on")

Cancelling the awaiting task (as asyncio.timeout does) cancels the waiter
and removes its subscription, so an abandoned wait never keeps polling
alive.  StateWaiter.cancel() and ConditionWaiter.cancel_all() tear waits
down explicitly, e.g. when the handle is closed.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Generator
from typing import Any

from devicecloud._logging import get_logger
from devicecloud.state import StateSnapshot, StateTracker, Subscription

logger = get_logger(__name__)

Predicate = Callable[[StateSnapshot], Any]


class StateWaiter:
    """Deferred result of ConditionWaiter.wait_for().

    Await it to get the snapshot that first satisfied the predicate.  If the
    background polling loop dies, awaiting raises StatePollError.
    """

    __slots__ = ("_future", "_predicate", "_subscription", "_tracker")

    def __init__(self, tracker: StateTracker, predicate: Predicate) -> None:
        self._tracker = tracker
        self._predicate = predicate
        self._subscription: Subscription | None = None
        self._future: asyncio.Future[StateSnapshot] = asyncio.get_running_loop().create_future()
        self._future.add_done_callback(self._detach)

    def _start(self) -> None:
        state = self._tracker.state
        if self._evaluate(state):
            self._future.set_result(state)
            return
        self._subscription = self._tracker.subscribe(self._on_change, on_error=self._on_error)

    def _evaluate(self, state: StateSnapshot) -> bool:
        try:
            return bool(self._predicate(state))
        except Exception:  # noqa: BLE001 - a failing predicate means "not yet"
            logger.debug("Wait predicate raised, treating as unsatisfied", exc_info=True)
            return False

    def _on_change(self, state: StateSnapshot) -> None:
        if not self._future.done() and self._evaluate(state):
            self._future.set_result(state)
            self._detach()

    def _on_error(self, error: BaseException) -> None:
        if not self._future.done():
            self._future.set_exception(error)
            self._detach()

    def _detach(self, _future: asyncio.Future[StateSnapshot] | None = None) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def done(self) -> bool:
        return self._future.done()

    def cancel(self) -> bool:
        """Abandon the wait; awaiting it raises asyncio.CancelledError."""
        cancelled = self._future.cancel()
        self._detach()
        return cancelled

    def add_done_callback(self, fn: Callable[[asyncio.Future[StateSnapshot]], None]) -> None:
        self._future.add_done_callback(fn)

    def __await__(self) -> Generator[Any, None, StateSnapshot]:
        return self._future.__await__()


class ConditionWaiter:
    """Creates StateWaiters for one tracker and keeps the pending ones.

    Multiple concurrent waits are independent and may resolve in any order.
    """

    def __init__(self, tracker: StateTracker) -> None:
        self._tracker = tracker
        self._pending: set[StateWaiter] = set()

    @property
    def tracker(self) -> StateTracker:
        return self._tracker

    @property
    def pending(self) -> int:
        """Number of waits not yet resolved, failed or cancelled."""
        return sum(1 for waiter in self._pending if not waiter.done())

    def wait_for(self, predicate: Predicate) -> StateWaiter:
        """Return a waiter resolving when ``predicate(state)`` is truthy.

        Must be called from a running event loop.
        """
        waiter = StateWaiter(self._tracker, predicate)
        self._pending.add(waiter)
        waiter.add_done_callback(lambda _f: self._pending.discard(waiter))
        waiter._start()  # noqa: SLF001
        return waiter

    def wait_for_state(self, name: str) -> StateWaiter:
        """Return a waiter resolving when the reported state equals ``name``."""
        return self.wait_for(lambda state: state["state"] == name)

    def cancel_all(self) -> int:
        """Cancel every pending wait.

        Returns:
            Number of waits cancelled.
        """
        waiters = list(self._pending)
        for waiter in waiters:
            waiter.cancel()
        return len(waiters)
