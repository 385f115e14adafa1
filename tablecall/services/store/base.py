"""
Call Store Abstract Base Class

Defines the interface contract for every call store implementation.
Both InMemoryCallStore and SQLAlchemyCallStore implement these methods,
so the engine behaves the same regardless of which store is active.

Design Pattern: Strategy Pattern
    - Development runs on the in-memory store, no database needed
    - Staging/production run on PostgreSQL through SQLAlchemy
    - Tests swap stores freely

Contract notes:
    - ``list_active_calls`` orders by ``created_at``, then insertion order
    - status updates go through ``tablecall.domain.next_status``; an update
      on a resolved call changes nothing and reports it
    - calls are never deleted
"""

from abc import ABC, abstractmethod
from typing import Iterable, Optional

from tablecall.domain import (
    Call,
    CallStatus,
    CallType,
    CustomerProfile,
    EstablishmentPresence,
    EstablishmentSettings,
    EstablishmentSnapshot,
    EventLogItem,
)


class StoreError(Exception):
    """
    Transient failure talking to the store (I/O, timeout, driver error).

    Callers retry on the next natural cycle; it is never fatal.
    """


class EstablishmentNotFoundError(LookupError):
    """Raised when an establishment id is unknown to the store."""

    def __init__(self, establishment_id: str):
        super().__init__(f"Establishment {establishment_id} not found")
        self.establishment_id = establishment_id


class BaseCallStore(ABC):
    """
    Abstract base class for call stores.

    Example:
        >>> store = get_call_store()  # in-memory or SQLAlchemy
        >>> call_id = await store.insert_call(
        ...     "E1", "7", CallType.WAITER, CallStatus.SENT, created_at=1700000000.0
        ... )
        >>> calls = await store.list_active_calls("E1", table_number="7")
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the store name (e.g., "memory", "sqlalchemy")."""
        pass

    # =========================================================================
    # CALLS
    # =========================================================================

    @abstractmethod
    async def insert_call(
        self,
        establishment_id: str,
        table_number: str,
        call_type: CallType,
        status: CallStatus,
        created_at: float,
    ) -> str:
        """Insert a call and return its id."""
        pass

    @abstractmethod
    async def list_active_calls(
        self,
        establishment_id: str,
        table_number: Optional[str] = None,
        call_type: Optional[CallType] = None,
    ) -> list[Call]:
        """Active (SENT/VIEWED) calls, oldest first."""
        pass

    @abstractmethod
    async def update_call_status(self, call_id: str, new_status: CallStatus) -> bool:
        """
        Move one call to ``new_status``.

        Returns:
            True if the call changed, False if the move was not legal
            (already resolved) or the call does not exist
        """
        pass

    @abstractmethod
    async def bulk_update_status(
        self,
        establishment_id: str,
        new_status: CallStatus,
        from_statuses: Iterable[CallStatus],
        table_number: Optional[str] = None,
    ) -> int:
        """
        Move every call of the establishment (optionally one table) whose
        status is in ``from_statuses`` to ``new_status``.

        Returns:
            Number of calls changed
        """
        pass

    @abstractmethod
    async def list_calls(self, establishment_id: str) -> list[Call]:
        """Full call history of an establishment, any status, oldest first."""
        pass

    # =========================================================================
    # ESTABLISHMENTS
    # =========================================================================

    @abstractmethod
    async def create_establishment(
        self,
        name: str,
        phone: str,
        owner_id: Optional[str] = None,
        settings: Optional[EstablishmentSettings] = None,
    ) -> str:
        """Register an establishment (closed until its owner's heartbeat)."""
        pass

    @abstractmethod
    async def find_establishment_by_phone(self, phone: str) -> Optional[str]:
        """Return the id of the establishment with this (sanitized) phone."""
        pass

    @abstractmethod
    async def get_establishment_snapshot(self, establishment_id: str) -> EstablishmentSnapshot:
        """
        Settings, open flag and all active calls grouped by table.

        Raises:
            EstablishmentNotFoundError: If the id is unknown
        """
        pass

    @abstractmethod
    async def get_presence(self, establishment_id: str) -> EstablishmentPresence:
        """
        Open flag and last heartbeat only; cheaper than a full snapshot.

        Raises:
            EstablishmentNotFoundError: If the id is unknown
        """
        pass

    @abstractmethod
    async def set_heartbeat(
        self,
        establishment_id: str,
        is_open: bool,
        at: Optional[float] = None,
    ) -> None:
        """Set the open flag; ``at`` refreshes the heartbeat timestamp."""
        pass

    @abstractmethod
    async def get_settings(self, establishment_id: str) -> EstablishmentSettings:
        pass

    @abstractmethod
    async def update_settings(
        self,
        establishment_id: str,
        settings: EstablishmentSettings,
    ) -> None:
        pass

    # =========================================================================
    # EVENT LOG
    # =========================================================================

    @abstractmethod
    async def append_event(self, establishment_id: str, event: EventLogItem) -> None:
        pass

    @abstractmethod
    async def list_events(
        self,
        establishment_id: str,
        since: Optional[float] = None,
    ) -> list[EventLogItem]:
        pass

    # =========================================================================
    # CUSTOMERS
    # =========================================================================

    @abstractmethod
    async def add_favorite(self, customer_id: str, establishment_id: str) -> None:
        """Idempotent."""
        pass

    @abstractmethod
    async def remove_favorite(self, customer_id: str, establishment_id: str) -> None:
        pass

    @abstractmethod
    async def get_customer_profile(self, customer_id: str) -> CustomerProfile:
        pass

    # =========================================================================
    # HEALTH
    # =========================================================================

    @abstractmethod
    async def health_check(self) -> bool:
        """Check store connectivity."""
        pass
