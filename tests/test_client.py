"""
Tests for TableCallClient against the ASGI app (httpx.ASGITransport), and
for feeding a SyncLoop through it.
"""

import asyncio
import functools

import httpx
import pytest

from tablecall.client import TableCallClient
from tablecall.domain import CallStatus, CallType, EstablishmentSettings
from tablecall.engine import SyncLoop
from tablecall.main import app, get_clock, get_store
from tablecall.services.store import EstablishmentNotFoundError, StoreError


def async_test(coro):
    """Decorator to run async tests with asyncio.run."""

    @functools.wraps(coro)
    def wrapper(*args, **kwargs):
        return asyncio.run(coro(*args, **kwargs))

    return wrapper


@pytest.fixture
def overrides(store, clock):
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_clock] = lambda: clock
    yield
    app.dependency_overrides.clear()


def make_client() -> TableCallClient:
    http = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")
    return TableCallClient(client=http)


class TestTableCallClient:

    @async_test
    async def test_call_round_trip(self, overrides, clock, establishment_id):
        client = make_client()

        call = await client.add_call(establishment_id, "7", CallType.WAITER)
        snapshot = await client.get_establishment_snapshot(establishment_id)

        assert call.status == CallStatus.SENT
        assert call.created_at == clock.now()
        assert snapshot.id == establishment_id
        assert snapshot.tables["7"].active_calls == (call,)
        assert len(snapshot.tables) == 20

    @async_test
    async def test_lifecycle_operations(self, overrides, establishment_id):
        client = make_client()
        await client.add_call(establishment_id, "3", CallType.MENU)
        await client.add_call(establishment_id, "3", CallType.BILL)
        await client.add_call(establishment_id, "4", CallType.WAITER)

        assert await client.view_all_calls_for_table(establishment_id, "3") == 2
        canceled = await client.cancel_oldest_call_by_type(establishment_id, "3", CallType.MENU)
        assert canceled.status == CallStatus.CANCELED
        assert await client.attend_oldest_call_by_type(establishment_id, "3", CallType.MENU) is None
        assert await client.close_table(establishment_id, "3") == 1
        assert await client.has_pending_calls(establishment_id) is True
        assert await client.close_establishment_workday(establishment_id) == 1
        assert await client.has_pending_calls(establishment_id) is False

    @async_test
    async def test_establishment_and_settings(self, overrides):
        client = make_client()
        est = await client.create_establishment("Cantina Azul", "555-0303")

        assert await client.find_establishment_by_phone("5550303") == est
        assert await client.find_establishment_by_phone("5559999") is None

        new = EstablishmentSettings(time_green_seconds=45, time_yellow_seconds=120, total_tables=5)
        assert await client.update_settings(est, new) == new

    @async_test
    async def test_favorites(self, overrides, establishment_id):
        client = make_client()
        profile = await client.add_favorite("c1", establishment_id)
        assert profile.favorite_establishment_ids == (establishment_id,)
        assert (await client.get_customer_profile("c1")) == profile

    @async_test
    async def test_unknown_establishment(self, overrides):
        client = make_client()
        with pytest.raises(EstablishmentNotFoundError):
            await client.get_establishment_snapshot("missing")

    @async_test
    async def test_server_store_failure_is_store_error(self, overrides, store, establishment_id):
        client = make_client()
        store.inject_failures(1)
        with pytest.raises(StoreError):
            await client.get_establishment_snapshot(establishment_id)

    @async_test
    async def test_closed_establishment_rejects_call(self, overrides, establishment_id):
        client = make_client()
        await client.set_heartbeat(establishment_id, False)
        with pytest.raises(httpx.HTTPStatusError) as exc_info:
            await client.add_call(establishment_id, "1", CallType.BILL)
        assert exc_info.value.response.status_code == 409

    @async_test
    async def test_transport_failure_is_store_error(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(refuse), base_url="http://test")
        async with TableCallClient(client=http) as client:
            with pytest.raises(StoreError):
                await client.get_establishment_snapshot("E1")


class TestSyncOverHttp:

    @async_test
    async def test_loop_keeps_snapshot_when_server_fails(self, overrides, store, clock, establishment_id):
        client = make_client()
        loop = SyncLoop(client, clock=clock)
        await client.add_call(establishment_id, "9", CallType.WAITER)

        before = await loop.refresh(establishment_id)
        store.inject_failures(1)
        assert await loop.refresh(establishment_id) is None

        assert loop.cache.get(establishment_id) is before
        assert len(before.tables["9"].active_calls) == 1
        assert loop.sync_issue
