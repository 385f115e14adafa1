"""
Tests for SQLAlchemyCallStore against SQLite (aiosqlite).

Each test builds its own engine on a temporary database file and runs the
same contract the in-memory store follows.
"""

import asyncio

import pytest

from tablecall.database import build_engine, build_session_maker, init_db
from tablecall.domain import (
    ACTIVE_STATUSES,
    CallStatus,
    CallType,
    EstablishmentPresence,
    EstablishmentSettings,
    EventLogItem,
    EventLogType,
)
from tablecall.engine import LifecycleController
from tablecall.services.store import EstablishmentNotFoundError, StoreError
from tablecall.services.store.sql import SQLAlchemyCallStore
from tests.fixtures import T0, FakeClock


def sql_test(coro):
    """Run an async test with a fresh SQL store as ``store`` keyword."""

    def wrapper(self, tmp_path):
        async def run():
            engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'tablecall.db'}")
            await init_db(engine)
            try:
                store = SQLAlchemyCallStore(build_session_maker(engine))
                return await coro(self, store=store)
            finally:
                await engine.dispose()

        return asyncio.run(run())

    # Exposes (self, tmp_path) to pytest instead of the wrapped signature
    wrapper.__name__ = coro.__name__
    wrapper.__qualname__ = coro.__qualname__
    wrapper.__doc__ = coro.__doc__
    return wrapper


class TestCalls:

    @sql_test
    async def test_insert_and_list_in_creation_order(self, store):
        est = await store.create_establishment("Pizzaria", "555-0101")
        late = await store.insert_call(est, "7", CallType.WAITER, CallStatus.SENT, T0 + 10)
        early = await store.insert_call(est, "7", CallType.WAITER, CallStatus.SENT, T0)
        tie = await store.insert_call(est, "7", CallType.BILL, CallStatus.SENT, T0)

        calls = await store.list_active_calls(est, table_number="7")
        assert [c.id for c in calls] == [early, tie, late]

        waiters = await store.list_active_calls(est, table_number="7", call_type=CallType.WAITER)
        assert [c.id for c in waiters] == [early, late]

    @sql_test
    async def test_update_is_conditional(self, store):
        est = await store.create_establishment("Pizzaria", "555-0101")
        call_id = await store.insert_call(est, "1", CallType.MENU, CallStatus.SENT, T0)

        assert await store.update_call_status(call_id, CallStatus.VIEWED) is True
        assert await store.update_call_status(call_id, CallStatus.VIEWED) is False
        assert await store.update_call_status(call_id, CallStatus.ATTENDED) is True
        assert await store.update_call_status(call_id, CallStatus.CANCELED) is False

        [call] = await store.list_calls(est)
        assert call.status == CallStatus.ATTENDED

    @sql_test
    async def test_update_unknown_call(self, store):
        assert await store.update_call_status("999", CallStatus.ATTENDED) is False
        assert await store.update_call_status("not-a-number", CallStatus.ATTENDED) is False

    @sql_test
    async def test_concurrent_updates_resolve_once(self, store):
        est = await store.create_establishment("Pizzaria", "555-0101")
        call_id = await store.insert_call(est, "1", CallType.MENU, CallStatus.SENT, T0)

        results = await asyncio.gather(
            store.update_call_status(call_id, CallStatus.ATTENDED),
            store.update_call_status(call_id, CallStatus.CANCELED),
        )

        assert sorted(results) == [False, True]

    @sql_test
    async def test_bulk_update_respects_table_and_sources(self, store):
        est = await store.create_establishment("Pizzaria", "555-0101")
        await store.insert_call(est, "1", CallType.WAITER, CallStatus.SENT, T0)
        await store.insert_call(est, "1", CallType.BILL, CallStatus.SENT, T0)
        await store.insert_call(est, "2", CallType.WAITER, CallStatus.SENT, T0)

        assert await store.bulk_update_status(est, CallStatus.VIEWED, [CallStatus.SENT], table_number="1") == 2
        assert await store.bulk_update_status(est, CallStatus.VIEWED, [CallStatus.SENT], table_number="1") == 0
        assert await store.bulk_update_status(est, CallStatus.CANCELED, ACTIVE_STATUSES) == 3
        assert await store.list_active_calls(est) == []

    @sql_test
    async def test_list_calls_unknown_establishment(self, store):
        with pytest.raises(EstablishmentNotFoundError):
            await store.list_calls("missing")
        with pytest.raises(EstablishmentNotFoundError):
            await store.insert_call("missing", "1", CallType.WAITER, CallStatus.SENT, T0)


class TestEstablishments:

    @sql_test
    async def test_snapshot(self, store):
        est = await store.create_establishment("Pizzaria", "(555) 0101")
        await store.update_settings(est, EstablishmentSettings(total_tables=4))
        await store.insert_call(est, "2", CallType.BILL, CallStatus.SENT, T0)
        resolved = await store.insert_call(est, "3", CallType.BILL, CallStatus.SENT, T0)
        await store.update_call_status(resolved, CallStatus.ATTENDED)
        await store.set_heartbeat(est, True, at=T0)

        snapshot = await store.get_establishment_snapshot(est)

        assert snapshot.name == "Pizzaria"
        assert snapshot.phone == "5550101"
        assert snapshot.is_open is True
        assert snapshot.heartbeat_at == T0
        assert list(snapshot.tables) == ["1", "2", "3", "4"]
        assert len(snapshot.tables["2"].active_calls) == 1
        assert snapshot.tables["3"].active_calls == ()

    @sql_test
    async def test_presence(self, store):
        est = await store.create_establishment("Pizzaria", "555-0101")
        await store.set_heartbeat(est, True, at=T0)

        presence = await store.get_presence(est)

        assert presence == EstablishmentPresence(est, "Pizzaria", True, T0)
        with pytest.raises(EstablishmentNotFoundError):
            await store.get_presence("missing")

    @sql_test
    async def test_unknown_snapshot(self, store):
        with pytest.raises(EstablishmentNotFoundError):
            await store.get_establishment_snapshot("missing")

    @sql_test
    async def test_find_by_phone(self, store):
        est = await store.create_establishment("Pizzaria", "555-0101")
        assert await store.find_establishment_by_phone("555 0101") == est
        assert await store.find_establishment_by_phone("555-9999") is None
        assert await store.find_establishment_by_phone("") is None

    @sql_test
    async def test_closing_keeps_last_heartbeat(self, store):
        est = await store.create_establishment("Pizzaria", "555-0101")
        await store.set_heartbeat(est, True, at=T0)
        await store.set_heartbeat(est, False)

        snapshot = await store.get_establishment_snapshot(est)
        assert snapshot.is_open is False
        assert snapshot.heartbeat_at == T0

    @sql_test
    async def test_settings_round_trip(self, store):
        est = await store.create_establishment("Pizzaria", "555-0101")
        assert await store.get_settings(est) == EstablishmentSettings()

        custom = EstablishmentSettings(30, 90, 1, 3, 12)
        await store.update_settings(est, custom)
        assert await store.get_settings(est) == custom


class TestEventsAndFavorites:

    @sql_test
    async def test_event_log_since(self, store):
        est = await store.create_establishment("Pizzaria", "555-0101")
        await store.append_event(est, EventLogItem(T0, EventLogType.TABLE_CLOSED, table_number="1"))
        await store.append_event(est, EventLogItem(T0 + 60, EventLogType.CALL_ATTENDED, CallType.BILL, "2"))

        events = await store.list_events(est, since=T0 + 1)
        assert events == [EventLogItem(T0 + 60, EventLogType.CALL_ATTENDED, CallType.BILL, "2")]
        assert len(await store.list_events(est)) == 2

    @sql_test
    async def test_favorites(self, store):
        first = await store.create_establishment("Pizzaria", "555-0101")
        second = await store.create_establishment("Bistro", "555-0202")

        await store.add_favorite("c1", first)
        await store.add_favorite("c1", second)
        await store.add_favorite("c1", first)

        profile = await store.get_customer_profile("c1")
        assert set(profile.favorite_establishment_ids) == {first, second}
        assert len(profile.favorite_establishment_ids) == 2

        await store.remove_favorite("c1", first)
        profile = await store.get_customer_profile("c1")
        assert profile.favorite_establishment_ids == (second,)

    @sql_test
    async def test_favorite_unknown_establishment(self, store):
        with pytest.raises(EstablishmentNotFoundError):
            await store.add_favorite("c1", "missing")

    @sql_test
    async def test_health_check(self, store):
        assert await store.health_check() is True


class TestLifecycleOnSql:
    """The controller behaves the same on the SQL store."""

    @sql_test
    async def test_attend_then_close_workday(self, store):
        clock = FakeClock()
        controller = LifecycleController(store, clock=clock)
        est = await store.create_establishment("Pizzaria", "555-0101")
        await store.set_heartbeat(est, True, at=clock.now())

        await controller.add_call(est, "7", CallType.WAITER)
        clock.advance(10)
        await controller.add_call(est, "7", CallType.WAITER)
        await controller.add_call(est, "3", CallType.MENU)

        attended = await controller.attend_oldest_call_by_type(est, "7", CallType.WAITER)
        assert attended.created_at == T0
        assert await controller.attend_oldest_call_by_type(est, "3", CallType.BILL) is None

        assert await controller.close_establishment_workday(est) == 2
        snapshot = await store.get_establishment_snapshot(est)
        assert snapshot.active_calls == ()
        assert snapshot.is_open is False

        events = await store.list_events(est)
        assert [e.type for e in events] == [EventLogType.CALL_ATTENDED]


class TestStoreErrors:

    def test_unreachable_database_raises_store_error(self, tmp_path):
        async def run():
            engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'db.sqlite'}")
            try:
                store = SQLAlchemyCallStore(build_session_maker(engine))
                with pytest.raises(StoreError):
                    await store.list_active_calls("E1")
                assert await store.health_check() is False
            finally:
                await engine.dispose()

        asyncio.run(run())
