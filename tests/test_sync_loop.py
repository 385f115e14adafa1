"""
Tests for the synchronization loop: cache replacement, failure handling,
heartbeat ordering, in-flight guard and stop semantics.
"""

import asyncio
import functools

import pytest

from tablecall.domain import CallStatus, CallType, CustomerProfile
from tablecall.engine import LifecycleController, SessionSubject, SnapshotCache, SyncLoop
from tests.fixtures import FakeClock


def async_test(coro):
    """Decorator to run async tests with asyncio.run."""

    @functools.wraps(coro)
    def wrapper(*args, **kwargs):
        return asyncio.run(coro(*args, **kwargs))

    return wrapper


class RecordingSource:
    """Wraps a store, records calls and can hold snapshot reads at a gate."""

    def __init__(self, store, gated: bool = False, read_before_gate: bool = False):
        self.store = store
        self.log = []
        self.fetches = 0
        self.gate = asyncio.Event() if gated else None
        self.read_before_gate = read_before_gate
        self.read_done = asyncio.Event()

    async def get_establishment_snapshot(self, establishment_id):
        self.fetches += 1
        self.log.append(("snapshot", establishment_id))
        snapshot = None
        if self.read_before_gate:
            snapshot = await self.store.get_establishment_snapshot(establishment_id)
            self.read_done.set()
        if self.gate is not None:
            await self.gate.wait()
        if snapshot is None:
            snapshot = await self.store.get_establishment_snapshot(establishment_id)
        return snapshot

    async def set_heartbeat(self, establishment_id, is_open, at=None):
        self.log.append(("heartbeat", establishment_id))
        await self.store.set_heartbeat(establishment_id, is_open, at=at)


class TestSessionSubject:

    def test_owner(self):
        assert SessionSubject.owner("E1").establishments_of_interest() == ("E1",)

    def test_customer_favorites(self):
        profile = CustomerProfile("c1", ("E1", "E2"))
        subject = SessionSubject.for_customer(profile)
        assert subject.owned_establishment_id is None
        assert subject.establishments_of_interest() == ("E1", "E2")

    def test_no_duplicates(self):
        subject = SessionSubject(owned_establishment_id="E1", favorite_establishment_ids=("E1", "E2"))
        assert subject.establishments_of_interest() == ("E1", "E2")


class TestSnapshotCache:

    @async_test
    async def test_replace_swaps_whole_mapping(self, store, establishment_id):
        cache = SnapshotCache()
        first = await store.get_establishment_snapshot(establishment_id)
        cache.replace(first)
        held = cache.entries

        second = await store.get_establishment_snapshot(establishment_id)
        cache.replace(second)

        assert held[establishment_id] is first
        assert cache.get(establishment_id) is second
        assert len(cache) == 1

    def test_entries_are_read_only(self):
        cache = SnapshotCache()
        with pytest.raises(TypeError):
            cache.entries["E1"] = None

    @async_test
    async def test_discard_and_clear(self, store, establishment_id):
        cache = SnapshotCache()
        cache.replace(await store.get_establishment_snapshot(establishment_id))
        cache.discard("unknown")
        assert establishment_id in cache
        cache.discard(establishment_id)
        assert establishment_id not in cache
        cache.replace(await store.get_establishment_snapshot(establishment_id))
        cache.clear()
        assert len(cache) == 0


class TestRefresh:

    @async_test
    async def test_refresh_fills_cache(self, store, clock, establishment_id):
        await store.insert_call(establishment_id, "7", CallType.WAITER, CallStatus.SENT, clock.now())
        loop = SyncLoop(store, clock=clock)

        snapshot = await loop.refresh(establishment_id)

        assert snapshot is loop.cache.get(establishment_id)
        assert snapshot.fetched_at == clock.now()
        assert len(snapshot.tables["7"].active_calls) == 1
        assert not loop.sync_issue

    @async_test
    async def test_failed_fetch_keeps_cached_snapshot(self, store, clock, establishment_id):
        await store.insert_call(establishment_id, "7", CallType.WAITER, CallStatus.SENT, clock.now())
        loop = SyncLoop(store, clock=clock)
        before = await loop.refresh(establishment_id)

        await store.insert_call(establishment_id, "8", CallType.BILL, CallStatus.SENT, clock.now())
        store.inject_failures(1)
        result = await loop.refresh(establishment_id)

        assert result is None
        assert loop.cache.get(establishment_id) is before
        assert loop.cache.get(establishment_id).tables["8"].active_calls == ()
        assert loop.sync_issue
        assert "Simulated store failure" in loop.last_error

        after = await loop.refresh(establishment_id)
        assert after is not None
        assert len(after.tables["8"].active_calls) == 1
        assert not loop.sync_issue

    @async_test
    async def test_unknown_establishment_is_a_sync_issue(self, store, clock):
        loop = SyncLoop(store, clock=clock)
        assert await loop.refresh("missing") is None
        assert loop.sync_issue
        assert "missing" not in loop.cache

    @async_test
    async def test_late_callers_share_one_follow_up_fetch(self, store, clock, establishment_id):
        source = RecordingSource(store, gated=True)
        loop = SyncLoop(source, clock=clock)

        first = asyncio.ensure_future(loop.refresh(establishment_id))
        second = asyncio.ensure_future(loop.refresh(establishment_id))
        third = asyncio.ensure_future(loop.refresh(establishment_id))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert loop.is_updating
        assert source.fetches == 1
        source.gate.set()
        a, b, c = await asyncio.gather(first, second, third)

        assert source.fetches == 2
        assert b is c
        assert a is not None and b is not None
        assert a is not b

    @async_test
    async def test_cycle_reads_join_the_fetch_in_flight(self, store, clock, establishment_id):
        source = RecordingSource(store, gated=True)
        loop = SyncLoop(source, clock=clock)
        loop._subject = SessionSubject(favorite_establishment_ids=(establishment_id,))

        pending = asyncio.ensure_future(loop.refresh(establishment_id))
        await asyncio.sleep(0)
        cycle = asyncio.ensure_future(loop.run_cycle())
        await asyncio.sleep(0)
        source.gate.set()

        snapshot = await pending
        assert await cycle == {establishment_id: True}
        assert source.fetches == 1
        assert loop.cache.get(establishment_id) is snapshot

    @async_test
    async def test_refresh_after_write_sees_the_write(self, store, clock, establishment_id):
        await store.insert_call(establishment_id, "7", CallType.WAITER, CallStatus.SENT, clock.now())
        source = RecordingSource(store, gated=True, read_before_gate=True)
        loop = SyncLoop(source, clock=clock)

        async def refresh_then_release(est_id):
            pending = asyncio.ensure_future(loop.refresh(est_id))
            await asyncio.sleep(0)
            source.gate.set()
            return await pending

        controller = LifecycleController(store, clock=clock, refresh=refresh_then_release)

        # A periodic read takes its snapshot before the staff action
        periodic = asyncio.ensure_future(loop.refresh(establishment_id))
        await source.read_done.wait()
        attended = await controller.attend_oldest_call_by_type(establishment_id, "7", CallType.WAITER)
        stale = await periodic

        assert attended.status == CallStatus.ATTENDED
        assert len(stale.tables["7"].active_calls) == 1
        assert source.fetches == 2
        assert loop.cache.get(establishment_id).tables["7"].active_calls == ()
        assert await store.list_active_calls(establishment_id) == []

    @async_test
    async def test_refresh_after_stop_does_not_join_discarded_fetch(self, store, clock, establishment_id):
        source = RecordingSource(store, gated=True)
        loop = SyncLoop(source, clock=clock)

        old = asyncio.ensure_future(loop.refresh(establishment_id))
        await asyncio.sleep(0)
        loop.stop()
        new = asyncio.ensure_future(loop.refresh(establishment_id))
        await asyncio.sleep(0)
        source.gate.set()

        assert await old is None
        snapshot = await new
        assert snapshot is not None
        assert source.fetches == 2
        assert loop.cache.get(establishment_id) is snapshot
        assert not loop.sync_issue

    @async_test
    async def test_failure_after_stop_is_reported_by_new_generation(self, store, clock, establishment_id):
        source = RecordingSource(store, gated=True)
        loop = SyncLoop(source, clock=clock)

        old = asyncio.ensure_future(loop.refresh(establishment_id))
        await asyncio.sleep(0)
        loop.stop()
        store.inject_failures(2)
        new = asyncio.ensure_future(loop.refresh(establishment_id))
        await asyncio.sleep(0)
        source.gate.set()

        assert await old is None
        assert await new is None
        assert loop.sync_issue

    @async_test
    async def test_new_fetch_after_previous_completes(self, store, clock, establishment_id):
        source = RecordingSource(store)
        loop = SyncLoop(source, clock=clock)

        await loop.refresh(establishment_id)
        await loop.refresh(establishment_id)

        assert source.fetches == 2

    @async_test
    async def test_stop_discards_in_flight_result(self, store, clock, establishment_id):
        source = RecordingSource(store, gated=True)
        loop = SyncLoop(source, clock=clock)

        pending = asyncio.ensure_future(loop.refresh(establishment_id))
        await asyncio.sleep(0)
        loop.stop()
        source.gate.set()

        assert await pending is None
        assert establishment_id not in loop.cache

    @async_test
    async def test_updating_indicator_lasts_at_least_a_second(self, store, establishment_id):
        clock = FakeClock()
        loop = SyncLoop(store, clock=clock, indicator_min_seconds=1.0)
        assert not loop.is_updating

        await loop.refresh(establishment_id)
        assert loop.is_updating
        clock.advance(0.9)
        assert loop.is_updating
        clock.advance(0.2)
        assert not loop.is_updating


class TestScheduledLoop:

    @async_test
    async def test_owner_cycle_sends_heartbeat_before_reading(self, store, establishment_id):
        source = RecordingSource(store)
        loop = SyncLoop(source, interval_seconds=3600)

        loop.start(SessionSubject.owner(establishment_id))
        try:
            await asyncio.sleep(0.2)
            assert loop.is_running
            assert source.log[:2] == [("heartbeat", establishment_id), ("snapshot", establishment_id)]
            assert establishment_id in loop.cache
        finally:
            loop.stop()

        assert not loop.is_running
        assert loop.subject is None

    @async_test
    async def test_customer_cycle_reads_favorites_without_heartbeat(self, store, establishment_id):
        other = await store.create_establishment("Bistro", "555-0202")
        source = RecordingSource(store)
        loop = SyncLoop(source, interval_seconds=3600)

        loop.start(SessionSubject.for_customer(CustomerProfile("c1", (establishment_id, other))))
        try:
            await asyncio.sleep(0.2)
        finally:
            loop.stop()

        assert all(kind == "snapshot" for kind, _ in source.log)
        assert {establishment_id, other} <= set(loop.cache.entries)

    @async_test
    async def test_heartbeat_failure_does_not_block_read(self, store, establishment_id):
        store.inject_failures(1)
        loop = SyncLoop(store, interval_seconds=3600)

        loop.start(SessionSubject.owner(establishment_id))
        try:
            await asyncio.sleep(0.2)
        finally:
            loop.stop()

        assert establishment_id in loop.cache
        assert loop.last_error.startswith("heartbeat")

    @async_test
    async def test_run_cycle_reports_per_establishment(self, store, establishment_id):
        loop = SyncLoop(store, interval_seconds=3600)
        loop.start(SessionSubject(
            owned_establishment_id=establishment_id,
            favorite_establishment_ids=("missing",),
        ))
        try:
            await asyncio.sleep(0.2)
            results = await loop.run_cycle()
        finally:
            loop.stop()

        assert results == {establishment_id: True, "missing": False}

    @async_test
    async def test_change_subject_restarts(self, store, establishment_id):
        other = await store.create_establishment("Bistro", "555-0202")
        loop = SyncLoop(store, interval_seconds=3600)

        loop.start(SessionSubject.owner(establishment_id))
        loop.change_subject(SessionSubject.owner(other))
        try:
            await asyncio.sleep(0.2)
            assert loop.subject.owned_establishment_id == other
            assert other in loop.cache
        finally:
            loop.stop(clear_cache=True)

        assert len(loop.cache) == 0

    @async_test
    async def test_run_cycle_without_subject(self, store):
        loop = SyncLoop(store)
        assert await loop.run_cycle() == {}
