"""
Call Lifecycle Controller

Executes call transitions against a call store.

Operations:
    - add_call: new SENT call (several of the same type may queue up)
    - attend_oldest_call_by_type / cancel_oldest_call_by_type: resolve the
      oldest active call of a type at a table
    - view_all_calls_for_table: SENT → VIEWED (staff acknowledgment)
    - close_table: every active call at a table → ATTENDED
    - close_establishment_workday: every active call → CANCELED, closed

Resolving a call that is already resolved, or a type that has nothing
pending, is a no-op: the caller may be acting on a stale board.

Each operation issues its writes, then awaits the optional ``refresh``
hook (usually ``SyncLoop.refresh``) for the confirmatory fetch. No lock is
held across the write and the read.
"""

import logging
from typing import Awaitable, Callable, Optional

from tablecall.domain import (
    ACTIVE_STATUSES,
    Call,
    CallStatus,
    CallType,
    EstablishmentSettings,
    EventLogItem,
    EventLogType,
    normalize_table_number,
    validate_settings,
)
from tablecall.engine.clock import Clock
from tablecall.services.store.base import BaseCallStore

logger = logging.getLogger(__name__)

RefreshHook = Callable[[str], Awaitable[object]]

_RESOLUTION_EVENTS = {
    CallStatus.ATTENDED: EventLogType.CALL_ATTENDED,
    CallStatus.CANCELED: EventLogType.CALL_CANCELED,
}


class LifecycleController:
    """
    Applies call lifecycle operations for one session.

    Args:
        store: Call store the writes go to
        clock: Time source for new calls and events
        refresh: Awaited with the establishment id after every write
    """

    def __init__(
        self,
        store: BaseCallStore,
        clock: Optional[Clock] = None,
        refresh: Optional[RefreshHook] = None,
    ):
        self.store = store
        self.clock = clock or Clock()
        self._refresh = refresh

    async def _after_write(self, establishment_id: str) -> None:
        if self._refresh is not None:
            await self._refresh(establishment_id)

    async def _log_event(
        self,
        establishment_id: str,
        event_type: EventLogType,
        call_type: Optional[CallType] = None,
        table_number: Optional[str] = None,
    ) -> None:
        await self.store.append_event(
            establishment_id,
            EventLogItem(
                timestamp=self.clock.now(),
                type=event_type,
                call_type=call_type,
                table_number=table_number,
            ),
        )

    # =========================================================================
    # CUSTOMER / STAFF OPERATIONS
    # =========================================================================

    async def add_call(
        self,
        establishment_id: str,
        table_number: str,
        call_type: CallType,
    ) -> Call:
        """Raise a new SENT call at a table."""
        table_number = normalize_table_number(table_number)
        call_type = CallType(call_type)
        created_at = self.clock.now()

        call_id = await self.store.insert_call(
            establishment_id,
            table_number,
            call_type,
            CallStatus.SENT,
            created_at,
        )
        logger.info(
            f"Call {call_id} raised: {call_type.value} at table {table_number} "
            f"({establishment_id})"
        )

        await self._after_write(establishment_id)
        return Call(
            id=call_id,
            type=call_type,
            status=CallStatus.SENT,
            created_at=created_at,
            table_number=table_number,
        )

    async def _resolve_oldest(
        self,
        establishment_id: str,
        table_number: str,
        call_type: CallType,
        target: CallStatus,
    ) -> Optional[Call]:
        table_number = normalize_table_number(table_number)
        call_type = CallType(call_type)

        pending = await self.store.list_active_calls(
            establishment_id,
            table_number=table_number,
            call_type=call_type,
        )
        if not pending:
            logger.debug(
                f"No active {call_type.value} call at table {table_number} "
                f"({establishment_id}); nothing to {target.value.lower()}"
            )
            return None

        oldest = pending[0]
        changed = await self.store.update_call_status(oldest.id, target)
        if not changed:
            # Resolved by someone else between our read and our write
            logger.debug(f"Call {oldest.id} already resolved; skipping")
            return None

        logger.info(
            f"Call {oldest.id} {target.value.lower()}: {call_type.value} "
            f"at table {table_number} ({establishment_id})"
        )
        await self._log_event(
            establishment_id,
            _RESOLUTION_EVENTS[target],
            call_type=call_type,
            table_number=table_number,
        )
        await self._after_write(establishment_id)
        return Call(
            id=oldest.id,
            type=oldest.type,
            status=target,
            created_at=oldest.created_at,
            table_number=oldest.table_number,
        )

    async def attend_oldest_call_by_type(
        self,
        establishment_id: str,
        table_number: str,
        call_type: CallType,
    ) -> Optional[Call]:
        """
        Mark the oldest active call of ``call_type`` at the table ATTENDED.

        Returns:
            The attended call, or None when there was nothing to attend
        """
        return await self._resolve_oldest(
            establishment_id, table_number, call_type, CallStatus.ATTENDED
        )

    async def cancel_oldest_call_by_type(
        self,
        establishment_id: str,
        table_number: str,
        call_type: CallType,
    ) -> Optional[Call]:
        """
        Mark the oldest active call of ``call_type`` at the table CANCELED.

        Used both by the customer withdrawing a request and by staff
        rejecting it.
        """
        return await self._resolve_oldest(
            establishment_id, table_number, call_type, CallStatus.CANCELED
        )

    async def view_all_calls_for_table(self, establishment_id: str, table_number: str) -> int:
        """Acknowledge every SENT call at the table. Returns how many changed."""
        table_number = normalize_table_number(table_number)
        changed = await self.store.bulk_update_status(
            establishment_id,
            CallStatus.VIEWED,
            from_statuses=[CallStatus.SENT],
            table_number=table_number,
        )
        if changed:
            logger.info(f"{changed} call(s) viewed at table {table_number} ({establishment_id})")
            await self._after_write(establishment_id)
        return changed

    async def close_table(self, establishment_id: str, table_number: str) -> int:
        """Attend every active call at the table. Returns how many changed."""
        table_number = normalize_table_number(table_number)
        changed = await self.store.bulk_update_status(
            establishment_id,
            CallStatus.ATTENDED,
            from_statuses=ACTIVE_STATUSES,
            table_number=table_number,
        )
        if changed:
            logger.info(f"Table {table_number} closed, {changed} call(s) attended ({establishment_id})")
            await self._log_event(
                establishment_id,
                EventLogType.TABLE_CLOSED,
                table_number=table_number,
            )
        await self._after_write(establishment_id)
        return changed

    async def close_establishment_workday(self, establishment_id: str) -> int:
        """
        End the shift: close the establishment and cancel every active call.

        Returns:
            Number of calls canceled
        """
        await self.store.set_heartbeat(establishment_id, False)
        changed = await self.store.bulk_update_status(
            establishment_id,
            CallStatus.CANCELED,
            from_statuses=ACTIVE_STATUSES,
        )
        logger.info(f"Workday closed for {establishment_id}: {changed} call(s) canceled")
        await self._after_write(establishment_id)
        return changed

    # =========================================================================
    # OWNER OPERATIONS
    # =========================================================================

    async def set_open(self, establishment_id: str, is_open: bool) -> None:
        """Heartbeat write: mark open (with a fresh timestamp) or closed."""
        await self.store.set_heartbeat(
            establishment_id,
            is_open,
            at=self.clock.now() if is_open else None,
        )
        await self._after_write(establishment_id)

    async def update_settings(
        self,
        establishment_id: str,
        settings: EstablishmentSettings,
    ) -> EstablishmentSettings:
        """
        Validate and store new thresholds.

        Raises:
            InvalidSettingsError: If the thresholds are rejected
        """
        validate_settings(settings)
        await self.store.update_settings(establishment_id, settings)
        logger.info(f"Settings updated for {establishment_id}: {settings.to_dict()}")
        await self._after_write(establishment_id)
        return settings

    async def has_pending_calls(self, establishment_id: str) -> bool:
        """Whether any call is still active (checked when the owner logs in)."""
        return bool(await self.store.list_active_calls(establishment_id))
