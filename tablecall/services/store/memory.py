"""
In-Memory Call Store Implementation

Keeps establishments, calls, favorites and the event log in process memory.
Used in development mode (ENV_MODE=development) and in tests to:
    - Run the whole API without a database
    - Simulate latency and transient failures of a remote store

Behavior:
    - Optional simulated latency before every operation
    - Optional random failure rate, plus ``inject_failures`` for
      deterministic failures in tests
    - Every operation completes between two awaits, so a snapshot is
      never built from a half-applied write
"""

import asyncio
import itertools
import logging
import random
import uuid
from dataclasses import dataclass, field, replace
from typing import Iterable, Optional

from tablecall.domain import (
    DEFAULT_SETTINGS,
    Call,
    CallStatus,
    CallType,
    CustomerProfile,
    EstablishmentPresence,
    EstablishmentSettings,
    EstablishmentSnapshot,
    EventLogItem,
    build_snapshot,
    next_status,
    sanitize_phone,
)
from tablecall.services.store.base import (
    BaseCallStore,
    EstablishmentNotFoundError,
    StoreError,
)

logger = logging.getLogger(__name__)


@dataclass
class _EstablishmentRow:
    id: str
    name: str
    phone: str
    owner_id: Optional[str]
    settings: EstablishmentSettings
    is_open: bool = False
    heartbeat_at: Optional[float] = None
    events: list = field(default_factory=list)


@dataclass
class _CallRow:
    seq: int
    establishment_id: str
    call: Call


class InMemoryCallStore(BaseCallStore):
    """
    In-memory implementation of the call store.

    Attributes:
        failure_rate: Probability of a simulated StoreError (0.0-1.0)
        min_latency: Minimum simulated response time in seconds
        max_latency: Maximum simulated response time in seconds

    Example:
        >>> store = InMemoryCallStore()
        >>> est_id = await store.create_establishment("Pizzaria", "555-0101")
        >>> await store.set_heartbeat(est_id, True, at=clock.now())
    """

    def __init__(
        self,
        failure_rate: float = 0.0,
        min_latency: float = 0.0,
        max_latency: float = 0.0,
    ):
        self.failure_rate = failure_rate
        self.min_latency = min_latency
        self.max_latency = max_latency

        self._establishments: dict[str, _EstablishmentRow] = {}
        self._calls: dict[str, _CallRow] = {}
        self._favorites: dict[str, list[str]] = {}
        self._seq = itertools.count(1)
        self._forced_failures = 0

        logger.info(
            f"InMemoryCallStore initialized (failure_rate={failure_rate:.0%}, "
            f"latency={min_latency}-{max_latency}s)"
        )

    @property
    def provider_name(self) -> str:
        return "memory"

    # =========================================================================
    # SIMULATION
    # =========================================================================

    def inject_failures(self, count: int = 1) -> None:
        """Make the next ``count`` operations fail with StoreError."""
        self._forced_failures += count

    async def _simulate_io(self, operation: str) -> None:
        if self.max_latency > 0:
            await asyncio.sleep(random.uniform(self.min_latency, self.max_latency))

        if self._forced_failures > 0:
            self._forced_failures -= 1
            raise StoreError(f"Simulated store failure during {operation}")
        if self.failure_rate and random.random() < self.failure_rate:
            logger.warning(f"Mock store failure (simulated) during {operation}")
            raise StoreError(f"Simulated store failure during {operation}")

    def _establishment(self, establishment_id: str) -> _EstablishmentRow:
        row = self._establishments.get(establishment_id)
        if row is None:
            raise EstablishmentNotFoundError(establishment_id)
        return row

    def _ordered_rows(self, establishment_id: str) -> list[_CallRow]:
        rows = [r for r in self._calls.values() if r.establishment_id == establishment_id]
        rows.sort(key=lambda r: (r.call.created_at, r.seq))
        return rows

    # =========================================================================
    # CALLS
    # =========================================================================

    async def insert_call(
        self,
        establishment_id: str,
        table_number: str,
        call_type: CallType,
        status: CallStatus,
        created_at: float,
    ) -> str:
        await self._simulate_io("insert_call")
        self._establishment(establishment_id)

        call_id = uuid.uuid4().hex
        call = Call(
            id=call_id,
            type=CallType(call_type),
            status=CallStatus(status),
            created_at=float(created_at),
            table_number=table_number,
        )
        self._calls[call_id] = _CallRow(
            seq=next(self._seq),
            establishment_id=establishment_id,
            call=call,
        )
        return call_id

    async def list_active_calls(
        self,
        establishment_id: str,
        table_number: Optional[str] = None,
        call_type: Optional[CallType] = None,
    ) -> list[Call]:
        await self._simulate_io("list_active_calls")
        calls = []
        for row in self._ordered_rows(establishment_id):
            call = row.call
            if not call.is_active:
                continue
            if table_number is not None and call.table_number != table_number:
                continue
            if call_type is not None and call.type != call_type:
                continue
            calls.append(call)
        return calls

    def _apply(self, row: _CallRow, new_status: CallStatus) -> bool:
        resolved = next_status(row.call.status, new_status)
        if resolved is None:
            return False
        row.call = replace(row.call, status=resolved)
        return True

    async def update_call_status(self, call_id: str, new_status: CallStatus) -> bool:
        await self._simulate_io("update_call_status")
        row = self._calls.get(call_id)
        if row is None:
            return False
        return self._apply(row, new_status)

    async def bulk_update_status(
        self,
        establishment_id: str,
        new_status: CallStatus,
        from_statuses: Iterable[CallStatus],
        table_number: Optional[str] = None,
    ) -> int:
        await self._simulate_io("bulk_update_status")
        sources = {CallStatus(s) for s in from_statuses}
        changed = 0
        for row in self._ordered_rows(establishment_id):
            if row.call.status not in sources:
                continue
            if table_number is not None and row.call.table_number != table_number:
                continue
            if self._apply(row, new_status):
                changed += 1
        return changed

    async def list_calls(self, establishment_id: str) -> list[Call]:
        await self._simulate_io("list_calls")
        self._establishment(establishment_id)
        return [r.call for r in self._ordered_rows(establishment_id)]

    # =========================================================================
    # ESTABLISHMENTS
    # =========================================================================

    async def create_establishment(
        self,
        name: str,
        phone: str,
        owner_id: Optional[str] = None,
        settings: Optional[EstablishmentSettings] = None,
    ) -> str:
        await self._simulate_io("create_establishment")
        establishment_id = uuid.uuid4().hex[:12]
        self._establishments[establishment_id] = _EstablishmentRow(
            id=establishment_id,
            name=name,
            phone=sanitize_phone(phone),
            owner_id=owner_id,
            settings=settings or DEFAULT_SETTINGS,
        )
        logger.info(f"Establishment {establishment_id} created ({name})")
        return establishment_id

    async def find_establishment_by_phone(self, phone: str) -> Optional[str]:
        await self._simulate_io("find_establishment_by_phone")
        wanted = sanitize_phone(phone)
        if not wanted:
            return None
        for row in self._establishments.values():
            if row.phone == wanted:
                return row.id
        return None

    async def get_establishment_snapshot(self, establishment_id: str) -> EstablishmentSnapshot:
        await self._simulate_io("get_establishment_snapshot")
        row = self._establishment(establishment_id)
        calls = [r.call for r in self._ordered_rows(establishment_id) if r.call.is_active]
        return build_snapshot(
            establishment_id=row.id,
            name=row.name,
            phone=row.phone,
            settings=row.settings,
            is_open=row.is_open,
            heartbeat_at=row.heartbeat_at,
            calls=calls,
        )

    async def get_presence(self, establishment_id: str) -> EstablishmentPresence:
        await self._simulate_io("get_presence")
        row = self._establishment(establishment_id)
        return EstablishmentPresence(
            id=row.id,
            name=row.name,
            is_open=row.is_open,
            heartbeat_at=row.heartbeat_at,
        )

    async def set_heartbeat(
        self,
        establishment_id: str,
        is_open: bool,
        at: Optional[float] = None,
    ) -> None:
        await self._simulate_io("set_heartbeat")
        row = self._establishment(establishment_id)
        row.is_open = is_open
        if at is not None:
            row.heartbeat_at = at

    async def get_settings(self, establishment_id: str) -> EstablishmentSettings:
        await self._simulate_io("get_settings")
        return self._establishment(establishment_id).settings

    async def update_settings(
        self,
        establishment_id: str,
        settings: EstablishmentSettings,
    ) -> None:
        await self._simulate_io("update_settings")
        self._establishment(establishment_id).settings = settings

    # =========================================================================
    # EVENT LOG
    # =========================================================================

    async def append_event(self, establishment_id: str, event: EventLogItem) -> None:
        await self._simulate_io("append_event")
        self._establishment(establishment_id).events.append(event)

    async def list_events(
        self,
        establishment_id: str,
        since: Optional[float] = None,
    ) -> list[EventLogItem]:
        await self._simulate_io("list_events")
        events = self._establishment(establishment_id).events
        if since is None:
            return list(events)
        return [e for e in events if e.timestamp >= since]

    # =========================================================================
    # CUSTOMERS
    # =========================================================================

    async def add_favorite(self, customer_id: str, establishment_id: str) -> None:
        await self._simulate_io("add_favorite")
        self._establishment(establishment_id)
        favorites = self._favorites.setdefault(customer_id, [])
        if establishment_id not in favorites:
            favorites.append(establishment_id)

    async def remove_favorite(self, customer_id: str, establishment_id: str) -> None:
        await self._simulate_io("remove_favorite")
        favorites = self._favorites.get(customer_id, [])
        if establishment_id in favorites:
            favorites.remove(establishment_id)

    async def get_customer_profile(self, customer_id: str) -> CustomerProfile:
        await self._simulate_io("get_customer_profile")
        return CustomerProfile(
            customer_id=customer_id,
            favorite_establishment_ids=tuple(self._favorites.get(customer_id, ())),
        )

    async def health_check(self) -> bool:
        """Mock always returns healthy."""
        return True
