"""
SQLAlchemy Call Store Implementation

Production implementation backed by PostgreSQL through the async
SQLAlchemy engine in ``tablecall.database``.
Used when ENV_MODE=production or ENV_MODE=staging.

Status changes are single conditional UPDATE statements whose WHERE
clause only matches statuses that may legally move to the target, so two
staff members attending the same call at once resolve it exactly once.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tablecall.domain import (
    ACTIVE_STATUSES,
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
from tablecall.engine.status import resolve_settings
from tablecall.models import (
    CallRecord,
    CustomerFavoriteRecord,
    EstablishmentRecord,
    EventLogRecord,
)
from tablecall.services.store.base import (
    BaseCallStore,
    EstablishmentNotFoundError,
    StoreError,
)

logger = logging.getLogger(__name__)


def _sources_for(target: CallStatus) -> list[CallStatus]:
    """Statuses from which ``target`` is a legal move."""
    return [s for s in CallStatus if next_status(s, target) is not None]


def _to_call(record: CallRecord) -> Call:
    return Call(
        id=str(record.id),
        type=CallType(record.type),
        status=CallStatus(record.status),
        created_at=record.created_at_ts,
        table_number=record.table_number,
    )


class SQLAlchemyCallStore(BaseCallStore):
    """
    Production call store on SQLAlchemy async sessions.

    Args:
        session_maker: Async session factory (``tablecall.database.async_session_maker``)

    Example:
        >>> store = SQLAlchemyCallStore(async_session_maker)
        >>> snapshot = await store.get_establishment_snapshot("a1b2c3")
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker
        logger.info("SQLAlchemyCallStore initialized")

    @property
    def provider_name(self) -> str:
        return "sqlalchemy"

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        """Open a session; driver and connection errors become StoreError."""
        try:
            async with self._session_maker() as session:
                yield session
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Store operation {operation} failed: {e}")
            raise StoreError(f"{operation} failed: {e}") from e

    async def _require_establishment(
        self,
        session: AsyncSession,
        establishment_id: str,
    ) -> EstablishmentRecord:
        record = await session.get(EstablishmentRecord, establishment_id)
        if record is None:
            raise EstablishmentNotFoundError(establishment_id)
        return record

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
        async with self._session("insert_call") as session:
            await self._require_establishment(session, establishment_id)
            record = CallRecord(
                establishment_id=establishment_id,
                table_number=table_number,
                type=CallType(call_type),
                status=CallStatus(status),
                created_at_ts=float(created_at),
            )
            session.add(record)
            await session.commit()
            await session.refresh(record)
            return str(record.id)

    async def list_active_calls(
        self,
        establishment_id: str,
        table_number: Optional[str] = None,
        call_type: Optional[CallType] = None,
    ) -> list[Call]:
        query = (
            select(CallRecord)
            .where(CallRecord.establishment_id == establishment_id)
            .where(CallRecord.status.in_(list(ACTIVE_STATUSES)))
            .order_by(CallRecord.created_at_ts.asc(), CallRecord.id.asc())
        )
        if table_number is not None:
            query = query.where(CallRecord.table_number == table_number)
        if call_type is not None:
            query = query.where(CallRecord.type == CallType(call_type))

        async with self._session("list_active_calls") as session:
            result = await session.execute(query)
            return [_to_call(r) for r in result.scalars().all()]

    async def update_call_status(self, call_id: str, new_status: CallStatus) -> bool:
        try:
            numeric_id = int(call_id)
        except (TypeError, ValueError):
            return False

        target = CallStatus(new_status)
        statement = (
            update(CallRecord)
            .where(CallRecord.id == numeric_id)
            .where(CallRecord.status.in_(_sources_for(target)))
            .values(status=target)
            .execution_options(synchronize_session=False)
        )
        async with self._session("update_call_status") as session:
            result = await session.execute(statement)
            await session.commit()
            return result.rowcount > 0

    async def bulk_update_status(
        self,
        establishment_id: str,
        new_status: CallStatus,
        from_statuses: Iterable[CallStatus],
        table_number: Optional[str] = None,
    ) -> int:
        target = CallStatus(new_status)
        sources = [s for s in _sources_for(target) if s in {CallStatus(f) for f in from_statuses}]
        if not sources:
            return 0

        statement = (
            update(CallRecord)
            .where(CallRecord.establishment_id == establishment_id)
            .where(CallRecord.status.in_(sources))
            .values(status=target)
            .execution_options(synchronize_session=False)
        )
        if table_number is not None:
            statement = statement.where(CallRecord.table_number == table_number)

        async with self._session("bulk_update_status") as session:
            result = await session.execute(statement)
            await session.commit()
            return result.rowcount or 0

    async def list_calls(self, establishment_id: str) -> list[Call]:
        async with self._session("list_calls") as session:
            await self._require_establishment(session, establishment_id)
            result = await session.execute(
                select(CallRecord)
                .where(CallRecord.establishment_id == establishment_id)
                .order_by(CallRecord.created_at_ts.asc(), CallRecord.id.asc())
            )
            return [_to_call(r) for r in result.scalars().all()]

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
        establishment_id = uuid.uuid4().hex[:12]
        async with self._session("create_establishment") as session:
            session.add(EstablishmentRecord(
                id=establishment_id,
                owner_id=owner_id,
                name=name,
                phone=sanitize_phone(phone),
                settings=(settings or DEFAULT_SETTINGS).to_dict(),
                is_open=False,
            ))
            await session.commit()
        logger.info(f"Establishment {establishment_id} created ({name})")
        return establishment_id

    async def find_establishment_by_phone(self, phone: str) -> Optional[str]:
        wanted = sanitize_phone(phone)
        if not wanted:
            return None
        async with self._session("find_establishment_by_phone") as session:
            result = await session.execute(
                select(EstablishmentRecord.id)
                .where(EstablishmentRecord.phone == wanted)
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def get_establishment_snapshot(self, establishment_id: str) -> EstablishmentSnapshot:
        async with self._session("get_establishment_snapshot") as session:
            record = await self._require_establishment(session, establishment_id)
            result = await session.execute(
                select(CallRecord)
                .where(CallRecord.establishment_id == establishment_id)
                .where(CallRecord.status.in_(list(ACTIVE_STATUSES)))
                .order_by(CallRecord.created_at_ts.asc(), CallRecord.id.asc())
            )
            calls = [_to_call(r) for r in result.scalars().all()]

            return build_snapshot(
                establishment_id=record.id,
                name=record.name,
                phone=record.phone,
                settings=resolve_settings(record.settings),
                is_open=bool(record.is_open),
                heartbeat_at=record.heartbeat_at,
                calls=calls,
            )

    async def get_presence(self, establishment_id: str) -> EstablishmentPresence:
        async with self._session("get_presence") as session:
            result = await session.execute(
                select(
                    EstablishmentRecord.id,
                    EstablishmentRecord.name,
                    EstablishmentRecord.is_open,
                    EstablishmentRecord.heartbeat_at,
                ).where(EstablishmentRecord.id == establishment_id)
            )
            row = result.one_or_none()
            if row is None:
                raise EstablishmentNotFoundError(establishment_id)
            return EstablishmentPresence(
                id=row.id,
                name=row.name,
                is_open=bool(row.is_open),
                heartbeat_at=row.heartbeat_at,
            )

    async def set_heartbeat(
        self,
        establishment_id: str,
        is_open: bool,
        at: Optional[float] = None,
    ) -> None:
        async with self._session("set_heartbeat") as session:
            record = await self._require_establishment(session, establishment_id)
            record.is_open = is_open
            if at is not None:
                record.heartbeat_at = at
            await session.commit()

    async def get_settings(self, establishment_id: str) -> EstablishmentSettings:
        async with self._session("get_settings") as session:
            record = await self._require_establishment(session, establishment_id)
            return resolve_settings(record.settings)

    async def update_settings(
        self,
        establishment_id: str,
        settings: EstablishmentSettings,
    ) -> None:
        async with self._session("update_settings") as session:
            record = await self._require_establishment(session, establishment_id)
            record.settings = settings.to_dict()
            await session.commit()

    # =========================================================================
    # EVENT LOG
    # =========================================================================

    async def append_event(self, establishment_id: str, event: EventLogItem) -> None:
        async with self._session("append_event") as session:
            session.add(EventLogRecord(
                establishment_id=establishment_id,
                timestamp=event.timestamp,
                type=event.type,
                call_type=event.call_type,
                table_number=event.table_number,
            ))
            await session.commit()

    async def list_events(
        self,
        establishment_id: str,
        since: Optional[float] = None,
    ) -> list[EventLogItem]:
        query = (
            select(EventLogRecord)
            .where(EventLogRecord.establishment_id == establishment_id)
            .order_by(EventLogRecord.timestamp.asc(), EventLogRecord.id.asc())
        )
        if since is not None:
            query = query.where(EventLogRecord.timestamp >= since)

        async with self._session("list_events") as session:
            result = await session.execute(query)
            return [
                EventLogItem(
                    timestamp=r.timestamp,
                    type=r.type,
                    call_type=r.call_type,
                    table_number=r.table_number,
                )
                for r in result.scalars().all()
            ]

    # =========================================================================
    # CUSTOMERS
    # =========================================================================

    async def add_favorite(self, customer_id: str, establishment_id: str) -> None:
        async with self._session("add_favorite") as session:
            await self._require_establishment(session, establishment_id)
            existing = await session.get(
                CustomerFavoriteRecord,
                (customer_id, establishment_id),
            )
            if existing is not None:
                return
            session.add(CustomerFavoriteRecord(
                customer_id=customer_id,
                establishment_id=establishment_id,
            ))
            try:
                await session.commit()
            except IntegrityError:
                # Inserted concurrently by another request
                await session.rollback()

    async def remove_favorite(self, customer_id: str, establishment_id: str) -> None:
        async with self._session("remove_favorite") as session:
            await session.execute(
                delete(CustomerFavoriteRecord)
                .where(CustomerFavoriteRecord.customer_id == customer_id)
                .where(CustomerFavoriteRecord.establishment_id == establishment_id)
            )
            await session.commit()

    async def get_customer_profile(self, customer_id: str) -> CustomerProfile:
        async with self._session("get_customer_profile") as session:
            result = await session.execute(
                select(CustomerFavoriteRecord.establishment_id)
                .where(CustomerFavoriteRecord.customer_id == customer_id)
                .order_by(CustomerFavoriteRecord.created_at.asc())
            )
            return CustomerProfile(
                customer_id=customer_id,
                favorite_establishment_ids=tuple(result.scalars().all()),
            )

    async def health_check(self) -> bool:
        try:
            async with self._session("health_check") as session:
                await session.execute(select(func.now()))
            return True
        except StoreError:
            return False
