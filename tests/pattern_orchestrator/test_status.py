"""Tests for the status store and the clock / cancellation primitives."""

from __future__ import annotations

import asyncio
import threading

import pytest

from src.pattern_orchestrator.clock import CancelSignal, SystemClock, format_duration
from src.pattern_orchestrator.models import LifecycleState
from src.pattern_orchestrator.status import StatusStore
from tests.pattern_orchestrator.conftest import FakeClock


class TestStatusStore:
    def test_default_is_pending(self) -> None:
        clock = FakeClock()
        store = StatusStore(clock)
        record = store.get_status("vault-app")
        assert record.state is LifecycleState.PENDING
        assert record.since == clock.now()

    def test_since_only_moves_on_state_change(self) -> None:
        clock = FakeClock()
        store = StatusStore(clock)
        first = store.update_status("keycloak-app", LifecycleState.SYNCING, "Sync: OutOfSync, Health: Missing")
        clock.t = 30
        second = store.update_status("keycloak-app", LifecycleState.SYNCING, "Sync: OutOfSync, Health: Progressing")
        assert second.since == first.since
        assert second.detail.endswith("Progressing")
        clock.t = 45
        third = store.update_status("keycloak-app", LifecycleState.SUCCESS, "Synced and Healthy")
        assert third.since == clock.now()

    def test_history_records_distinct_transitions(self) -> None:
        store = StatusStore(FakeClock())
        for state in (
            LifecycleState.WAITING,
            LifecycleState.WAITING,
            LifecycleState.INSTALLING,
            LifecycleState.SUCCESS,
        ):
            store.update_status("cert-manager-op", state)
        assert store.history("cert-manager-op") == [
            LifecycleState.WAITING,
            LifecycleState.INSTALLING,
            LifecycleState.SUCCESS,
        ]

    def test_snapshot_fills_missing_ids(self) -> None:
        store = StatusStore(FakeClock())
        store.update_status("a", LifecycleState.SUCCESS)
        snap = store.snapshot(["a", "b"])
        assert snap["a"].state is LifecycleState.SUCCESS
        assert snap["b"].state is LifecycleState.PENDING
        assert list(store.snapshot()) == ["a"]

    def test_mark_aborted_skips_terminal(self) -> None:
        store = StatusStore(FakeClock())
        store.update_status("done", LifecycleState.SUCCESS)
        store.update_status("busy", LifecycleState.SYNCING)
        aborted = store.mark_aborted(["done", "busy", "untouched"], "Aborted: operators failed")
        assert aborted == ["busy", "untouched"]
        assert store.get_status("done").state is LifecycleState.SUCCESS
        assert store.get_status("untouched").detail == "Aborted: operators failed"
        assert store.all_terminal(["done", "busy", "untouched"])

    def test_mark_failed_skips_terminal(self) -> None:
        store = StatusStore(FakeClock())
        store.update_status("aborted", LifecycleState.ABORTED, "Aborted: run cancelled")
        store.update_status("waiting", LifecycleState.WAITING, "Rendering hashicorp/vault")
        failed = store.mark_failed(["aborted", "waiting"], "Stage error: boom")
        assert failed == ["waiting"]
        assert store.get_status("waiting").state is LifecycleState.FAILED
        assert store.get_status("waiting").detail == "Stage error: boom"
        assert store.history("waiting") == [LifecycleState.WAITING, LifecycleState.FAILED]
        assert store.get_status("aborted").detail == "Aborted: run cancelled"

    def test_concurrent_writers(self) -> None:
        store = StatusStore(FakeClock())

        def writer(n: int) -> None:
            for i in range(200):
                store.update_status(f"c{n}", LifecycleState.INSTALLING, f"attempt {i}")

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        snap = store.snapshot()
        assert len(snap) == 8
        assert all(r.detail == "attempt 199" for r in snap.values())


class TestCancelSignal:
    def test_parent_fires_children(self) -> None:
        parent = CancelSignal()
        child = parent.child()
        parent.set("Interrupted by signal")
        assert child.is_set()
        assert child.reason == "Interrupted by signal"

    def test_child_does_not_fire_parent(self) -> None:
        parent = CancelSignal()
        child = parent.child()
        child.set("ceiling")
        assert not parent.is_set()

    def test_child_of_fired_parent_starts_fired(self) -> None:
        parent = CancelSignal()
        parent.set("done")
        assert parent.child().is_set()

    def test_first_reason_wins(self) -> None:
        signal = CancelSignal()
        signal.set("first")
        signal.set("second")
        assert signal.reason == "first"


class TestSystemClock:
    async def test_sleep_wakes_on_cancel(self) -> None:
        clock = SystemClock()
        cancel = CancelSignal()
        asyncio.get_running_loop().call_later(0.01, cancel.set, "stop")
        assert await clock.sleep(30, cancel) is True

    async def test_sleep_times_out(self) -> None:
        assert await SystemClock().sleep(0.01, CancelSignal()) is False

    async def test_sleep_already_cancelled(self) -> None:
        cancel = CancelSignal()
        cancel.set()
        assert await SystemClock().sleep(30, cancel) is True


@pytest.mark.parametrize(
    "seconds,expected",
    [(0, "00:00"), (59.9, "00:59"), (61, "01:01"), (1800, "30:00"), (-3, "00:00")],
)
def test_format_duration(seconds: float, expected: str) -> None:
    assert format_duration(seconds) == expected
