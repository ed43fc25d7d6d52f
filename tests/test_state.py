"""Tests for StateTracker: change detection, notifications and lazy polling.

Uses a scripted fetch coroutine; the polling task runs on the real event
loop with a 10ms interval.
"""

from __future__ import annotations

import asyncio
import logging

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from devicecloud.exceptions import ApiError, ApiTransientError, StatePollError
from devicecloud.state import StateEvent, StateTracker, snapshots_equal
from devicecloud.waiter import ConditionWaiter
from tests.conftest import POLL_INTERVAL, FakeFetch, eventually, make_state

# ============================================================================
# Structural comparison
# ============================================================================


class TestSnapshotsEqual:
    """Tests for the JSON-aware structural comparison."""

    def test_key_order_ignored(self) -> None:
        a = {"state": "on", "services": {"vpn": {"ip": "10.0.0.2", "port": 1}}}
        b = {"services": {"vpn": {"port": 1, "ip": "10.0.0.2"}}, "state": "on"}
        assert snapshots_equal(a, b)

    def test_list_order_matters(self) -> None:
        assert not snapshots_equal({"patches": ["a", "b"]}, {"patches": ["b", "a"]})

    def test_missing_key_differs(self) -> None:
        assert not snapshots_equal({"state": "on"}, {"state": "on", "panicked": False})

    def test_bool_and_int_are_distinct(self) -> None:
        """JSON true is not the number 1."""
        assert not snapshots_equal({"panicked": True}, {"panicked": 1})

    def test_int_and_float_are_distinct(self) -> None:
        assert not snapshots_equal({"cores": 1}, {"cores": 1.0})

    def test_null_equals_null(self) -> None:
        assert snapshots_equal({"agent": None}, {"agent": None})

    @given(
        snapshot=st.recursive(
            st.none() | st.booleans() | st.integers() | st.text(max_size=8),
            lambda children: (
                st.lists(children, max_size=4) | st.dictionaries(st.text(max_size=6), children, max_size=4)
            ),
            max_leaves=20,
        )
    )
    @settings(max_examples=200)
    def test_reordered_keys_always_equal(self, snapshot: object) -> None:
        """Reversing key order at every level never registers as a change."""

        def reorder(value: object) -> object:
            if isinstance(value, dict):
                return {k: reorder(value[k]) for k in reversed(list(value))}
            if isinstance(value, list):
                return [reorder(v) for v in value]
            return value

        assert snapshots_equal(snapshot, reorder(snapshot))


# ============================================================================
# refresh()
# ============================================================================


class TestRefresh:
    """Tests for explicit refresh() and the notifications it emits."""

    async def test_unchanged_state_does_not_notify(self, tracker: StateTracker) -> None:
        """Refreshing an identical snapshot returns False and notifies nobody."""
        seen: list[dict] = []
        sub = tracker.subscribe(seen.append)

        assert await tracker.refresh() is False
        assert seen == []
        sub.unsubscribe()

    async def test_changed_state_replaces_cache_and_notifies_once(
        self, tracker: StateTracker, fetch: FakeFetch
    ) -> None:
        seen: list[dict] = []
        sub = tracker.subscribe(seen.append)
        fetch.remote = make_state("on")

        assert await tracker.refresh() is True
        assert tracker.state["state"] == "on"
        assert len(seen) == 1
        assert seen[0]["state"] == "on"
        sub.unsubscribe()

    async def test_reordered_keys_are_not_a_change(self, tracker: StateTracker, fetch: FakeFetch) -> None:
        fetch.remote = dict(reversed(list(make_state("off").items())))
        assert await tracker.refresh() is False

    async def test_refresh_without_observers_updates_cache(self, tracker: StateTracker, fetch: FakeFetch) -> None:
        """refresh() works with no observers and does not start polling."""
        fetch.remote = make_state("on")
        assert await tracker.refresh() is True
        assert tracker.state["state"] == "on"
        assert tracker.poll_active is False

    async def test_fetch_error_propagates_and_keeps_cache(self, tracker: StateTracker, fetch: FakeFetch) -> None:
        fetch.error = ApiTransientError("503 Service Unavailable", status=503, path="/instances/inst-1")
        with pytest.raises(ApiTransientError):
            await tracker.refresh()
        assert tracker.state["state"] == "off"

    async def test_empty_body_rejected_and_cache_kept(self, tracker: StateTracker, fetch: FakeFetch) -> None:
        """A reply that is not a record never replaces the cached snapshot."""
        fetch.remote = None

        with pytest.raises(ApiError, match="NoneType"):
            await tracker.refresh()

        assert tracker.state == make_state("off")

    async def test_panic_emitted_only_on_transition(self, tracker: StateTracker, fetch: FakeFetch) -> None:
        """PANIC fires when panicked flips to true, not on later changes while still panicked."""
        panics: list[dict] = []
        changes: list[dict] = []
        panic_sub = tracker.subscribe(panics.append, event=StateEvent.PANIC)
        change_sub = tracker.subscribe(changes.append)

        fetch.remote = make_state("on", panicked=True)
        await tracker.refresh()
        fetch.remote = make_state("rebooting", panicked=True)
        await tracker.refresh()

        assert len(panics) == 1
        assert len(changes) == 2
        panic_sub.unsubscribe()
        change_sub.unsubscribe()

    async def test_raising_observer_does_not_block_others(
        self, tracker: StateTracker, fetch: FakeFetch, caplog: pytest.LogCaptureFixture
    ) -> None:
        def broken(_state: dict) -> None:
            raise RuntimeError("observer bug")

        seen: list[dict] = []
        subs = [tracker.subscribe(broken), tracker.subscribe(seen.append)]
        fetch.remote = make_state("on")

        with caplog.at_level(logging.ERROR, logger="devicecloud"):
            assert await tracker.refresh() is True

        assert len(seen) == 1
        assert "State observer raised" in caplog.text
        for sub in subs:
            sub.unsubscribe()

    async def test_observer_may_unsubscribe_during_notification(
        self, tracker: StateTracker, fetch: FakeFetch
    ) -> None:
        calls: list[dict] = []

        def once(state: dict) -> None:
            calls.append(state)
            sub.unsubscribe()

        sub = tracker.subscribe(once)
        fetch.remote = make_state("on")
        await tracker.refresh()
        fetch.remote = make_state("off")
        await tracker.refresh()

        assert len(calls) == 1
        assert tracker.observer_count == 0


# ============================================================================
# Lazy polling
# ============================================================================


class TestLazyPolling:
    """Polling runs only while observers exist."""

    async def test_no_observers_no_polling(self, tracker: StateTracker, fetch: FakeFetch) -> None:
        await asyncio.sleep(POLL_INTERVAL * 5)
        assert tracker.poll_active is False
        assert fetch.calls == 0

    async def test_first_observer_starts_polling(self, tracker: StateTracker, fetch: FakeFetch) -> None:
        sub = tracker.subscribe(lambda _s: None)
        assert tracker.observer_count == 1
        assert tracker.poll_active is True

        await eventually(lambda: fetch.calls >= 2)
        sub.unsubscribe()

    async def test_second_observer_reuses_loop(self, tracker: StateTracker) -> None:
        """Exactly one polling task regardless of observer count."""
        first = tracker.subscribe(lambda _s: None)
        task = tracker._poll_task
        second = tracker.subscribe(lambda _s: None, event=StateEvent.PANIC)

        assert tracker.observer_count == 2
        assert tracker._poll_task is task
        first.unsubscribe()
        second.unsubscribe()

    async def test_polling_delivers_remote_changes(self, tracker: StateTracker, fetch: FakeFetch) -> None:
        seen: list[str] = []
        sub = tracker.subscribe(lambda s: seen.append(s["state"]))

        fetch.remote = make_state("booting")
        await eventually(lambda: seen == ["booting"])
        fetch.remote = make_state("on")
        await eventually(lambda: seen == ["booting", "on"])
        sub.unsubscribe()

    async def test_stops_within_one_cycle_after_last_unsubscribe(
        self, tracker: StateTracker, fetch: FakeFetch
    ) -> None:
        sub = tracker.subscribe(lambda _s: None)
        await eventually(lambda: fetch.calls >= 1)

        sub.unsubscribe()
        calls_at_unsubscribe = fetch.calls
        assert tracker.poll_active is True
        await eventually(lambda: not tracker.poll_active)
        await asyncio.sleep(POLL_INTERVAL * 5)

        assert tracker.observer_count == 0
        assert fetch.calls - calls_at_unsubscribe <= 1

    async def test_unsubscribe_is_idempotent(self, tracker: StateTracker) -> None:
        sub = tracker.subscribe(lambda _s: None)
        other = tracker.subscribe(lambda _s: None)

        sub.unsubscribe()
        sub.unsubscribe()

        assert sub.active is False
        assert tracker.observer_count == 1
        other.unsubscribe()

    async def test_resubscribe_after_stop_starts_new_loop(self, tracker: StateTracker, fetch: FakeFetch) -> None:
        sub = tracker.subscribe(lambda _s: None)
        sub.unsubscribe()
        await eventually(lambda: not tracker.poll_active)

        calls = fetch.calls
        sub = tracker.subscribe(lambda _s: None)
        assert tracker.poll_active is True
        await eventually(lambda: fetch.calls > calls)
        sub.unsubscribe()

    async def test_stop_cancels_loop(self, tracker: StateTracker) -> None:
        tracker.subscribe(lambda _s: None)
        await tracker.stop()
        assert tracker.poll_active is False


# ============================================================================
# Polling failures
# ============================================================================


class TestPollingFailure:
    """A failed background refresh stops the loop and reaches observers."""

    async def test_error_delivered_to_observers(self, tracker: StateTracker, fetch: FakeFetch) -> None:
        cause = ApiTransientError("connection reset", path="/instances/inst-1")
        fetch.error = cause
        errors: list[BaseException] = []
        sub = tracker.subscribe(lambda _s: None, on_error=errors.append)

        await eventually(lambda: len(errors) == 1)

        assert isinstance(errors[0], StatePollError)
        assert errors[0].__cause__ is cause
        assert tracker.poll_active is False
        sub.unsubscribe()

    async def test_next_subscribe_rearms_polling(self, tracker: StateTracker, fetch: FakeFetch) -> None:
        fetch.error = ApiTransientError("connection reset")
        errors: list[BaseException] = []
        first = tracker.subscribe(lambda _s: None, on_error=errors.append)
        await eventually(lambda: not tracker.poll_active and errors)

        fetch.error = None
        fetch.remote = make_state("on")
        seen: list[dict] = []
        second = tracker.subscribe(seen.append)

        assert tracker.poll_active is True
        await eventually(lambda: len(seen) == 1)
        first.unsubscribe()
        second.unsubscribe()

    async def test_raising_error_observer_does_not_strand_waiters(
        self, tracker: StateTracker, fetch: FakeFetch, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Every pending waiter fails even when an earlier on_error callback raises."""

        def broken(_error: BaseException) -> None:
            raise RuntimeError("error observer bug")

        fetch.error = ApiTransientError("connection reset")
        first = tracker.subscribe(lambda _s: None, on_error=broken)
        pending = ConditionWaiter(tracker).wait_for_state("on")

        with caplog.at_level(logging.ERROR, logger="devicecloud"):
            with pytest.raises(StatePollError):
                async with asyncio.timeout(1):
                    await pending

        assert "State error observer raised" in caplog.text
        assert tracker.poll_active is False
        first.unsubscribe()
