"""
TableCall HTTP Client

Async client for the TableCall API, used by staff and customer terminals.
It exposes the same ``get_establishment_snapshot``/``set_heartbeat`` pair
as a call store, so it can feed a ``SyncLoop`` directly.

Usage:
    async with TableCallClient("http://localhost:8001") as client:
        loop = SyncLoop(client)
        loop.start(SessionSubject.owner(establishment_id))
        await client.add_call(establishment_id, "7", CallType.WAITER)
"""

import logging
from typing import Any, Optional

import httpx

from tablecall.core.config import get_settings
from tablecall.domain import (
    Call,
    CallType,
    CustomerProfile,
    EstablishmentSettings,
    EstablishmentSnapshot,
)
from tablecall.services.store.base import EstablishmentNotFoundError, StoreError

logger = logging.getLogger(__name__)


class TableCallClient:
    """
    Thin wrapper around ``httpx.AsyncClient``.

    Transport failures and 5xx answers raise ``StoreError`` (the sync loop
    keeps its cache and retries next cycle); 404 raises
    ``EstablishmentNotFoundError``. Other 4xx answers raise
    ``httpx.HTTPStatusError``.

    Args:
        base_url: API root (defaults to API_BASE_URL)
        client: Pre-built client, e.g. one bound to an ASGI transport
        timeout: Request timeout in seconds (defaults to STORE_TIMEOUT_SECONDS)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout if timeout is not None else settings.store_timeout_seconds,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "TableCallClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # =========================================================================
    # TRANSPORT
    # =========================================================================

    async def _request(
        self,
        method: str,
        path: str,
        establishment_id: Optional[str] = None,
        **kwargs: Any,
    ) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.debug(f"{method} {path} failed: {e}")
            raise StoreError(f"{method} {path}: {e}") from e

        if response.status_code == 404 and establishment_id is not None:
            raise EstablishmentNotFoundError(establishment_id)
        if response.status_code >= 500:
            raise StoreError(f"{method} {path}: HTTP {response.status_code} {response.text[:100]}")
        response.raise_for_status()
        return response.json()

    @staticmethod
    def _establishment_path(establishment_id: str, suffix: str = "") -> str:
        return f"/api/establishments/{establishment_id}{suffix}"

    def _table_path(self, establishment_id: str, table_number: str, suffix: str) -> str:
        return self._establishment_path(establishment_id, f"/tables/{table_number}{suffix}")

    # =========================================================================
    # SYNC SOURCE
    # =========================================================================

    async def get_establishment_snapshot(self, establishment_id: str) -> EstablishmentSnapshot:
        data = await self._request(
            "GET",
            self._establishment_path(establishment_id, "/snapshot"),
            establishment_id=establishment_id,
        )
        return EstablishmentSnapshot.from_dict(data)

    async def set_heartbeat(
        self,
        establishment_id: str,
        is_open: bool,
        at: Optional[float] = None,
    ) -> None:
        """``at`` is accepted for store compatibility; the server stamps its own time."""
        await self._request(
            "POST",
            self._establishment_path(establishment_id, "/heartbeat"),
            establishment_id=establishment_id,
            json={"is_open": is_open},
        )

    # =========================================================================
    # ESTABLISHMENTS
    # =========================================================================

    async def create_establishment(
        self,
        name: str,
        phone: str,
        owner_id: Optional[str] = None,
    ) -> str:
        data = await self._request(
            "POST",
            "/api/establishments",
            json={"name": name, "phone": phone, "owner_id": owner_id},
        )
        return data["establishment_id"]

    async def find_establishment_by_phone(self, phone: str) -> Optional[str]:
        try:
            data = await self._request(
                "GET", "/api/establishments/search", params={"phone": phone}
            )
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                return None
            raise
        return data["establishment_id"]

    async def update_settings(
        self,
        establishment_id: str,
        settings: EstablishmentSettings,
    ) -> EstablishmentSettings:
        data = await self._request(
            "PUT",
            self._establishment_path(establishment_id, "/settings"),
            establishment_id=establishment_id,
            json=settings.to_dict(),
        )
        return EstablishmentSettings.from_dict(data)

    async def has_pending_calls(self, establishment_id: str) -> bool:
        data = await self._request(
            "GET",
            self._establishment_path(establishment_id, "/pending"),
            establishment_id=establishment_id,
        )
        return data["has_pending_calls"]

    async def close_establishment_workday(self, establishment_id: str) -> int:
        data = await self._request(
            "POST",
            self._establishment_path(establishment_id, "/close-workday"),
            establishment_id=establishment_id,
        )
        return data["changed"]

    # =========================================================================
    # CALLS
    # =========================================================================

    async def add_call(
        self,
        establishment_id: str,
        table_number: str,
        call_type: CallType,
    ) -> Call:
        data = await self._request(
            "POST",
            self._establishment_path(establishment_id, "/calls"),
            establishment_id=establishment_id,
            json={"table_number": table_number, "type": CallType(call_type).value},
        )
        return Call.from_dict(data["call"])

    async def _resolve(
        self,
        establishment_id: str,
        table_number: str,
        call_type: CallType,
        action: str,
    ) -> Optional[Call]:
        data = await self._request(
            "POST",
            self._table_path(
                establishment_id,
                table_number,
                f"/calls/{CallType(call_type).value}/{action}",
            ),
            establishment_id=establishment_id,
        )
        return Call.from_dict(data["call"]) if data.get("call") else None

    async def attend_oldest_call_by_type(
        self,
        establishment_id: str,
        table_number: str,
        call_type: CallType,
    ) -> Optional[Call]:
        return await self._resolve(establishment_id, table_number, call_type, "attend")

    async def cancel_oldest_call_by_type(
        self,
        establishment_id: str,
        table_number: str,
        call_type: CallType,
    ) -> Optional[Call]:
        return await self._resolve(establishment_id, table_number, call_type, "cancel")

    async def view_all_calls_for_table(self, establishment_id: str, table_number: str) -> int:
        data = await self._request(
            "POST",
            self._table_path(establishment_id, table_number, "/view"),
            establishment_id=establishment_id,
        )
        return data["changed"]

    async def close_table(self, establishment_id: str, table_number: str) -> int:
        data = await self._request(
            "POST",
            self._table_path(establishment_id, table_number, "/close"),
            establishment_id=establishment_id,
        )
        return data["changed"]

    # =========================================================================
    # CUSTOMERS
    # =========================================================================

    async def get_customer_profile(self, customer_id: str) -> CustomerProfile:
        data = await self._request("GET", f"/api/customers/{customer_id}/favorites")
        return CustomerProfile(
            customer_id=data["customer_id"],
            favorite_establishment_ids=tuple(data["favorite_establishment_ids"]),
        )

    async def add_favorite(self, customer_id: str, establishment_id: str) -> CustomerProfile:
        data = await self._request(
            "POST",
            f"/api/customers/{customer_id}/favorites",
            establishment_id=establishment_id,
            json={"establishment_id": establishment_id},
        )
        return CustomerProfile(
            customer_id=data["customer_id"],
            favorite_establishment_ids=tuple(data["favorite_establishment_ids"]),
        )
