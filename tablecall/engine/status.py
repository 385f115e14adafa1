"""
Semaphore Status Engine

Pure functions that classify how urgent a table, or one request type at a
table, is. Nothing here is cached: callers pass the current time and
re-evaluate on every render.

Levels:
    - IDLE: no active calls
    - GREEN: oldest active call waited at most ``time_green_seconds``
    - YELLOW: waited more than green, at most ``time_yellow_seconds``
    - RED: waited more than ``time_yellow_seconds``

Per-type status has no YELLOW tier: it only tells whether the oldest
request of that type is overdue (RED) or not (GREEN).

Quantity thresholds (``qty_green``/``qty_yellow``) are configuration for
display and do not change any status computed here.
"""

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from tablecall.domain import (
    DEFAULT_SETTINGS,
    Call,
    CallType,
    EstablishmentPresence,
    EstablishmentSettings,
    EstablishmentSnapshot,
    SemaphoreStatus,
    Table,
)

logger = logging.getLogger(__name__)


# =============================================================================
# SETTINGS FALLBACK
# =============================================================================

def _non_negative_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, float) and value.is_integer() and value >= 0:
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def resolve_settings(raw: Any) -> EstablishmentSettings:
    """
    Turn whatever the store returned into usable settings. Never raises.

    Each field that is missing or malformed falls back to its default.
    If the two time ceilings end up out of order, both fall back.
    """
    if isinstance(raw, EstablishmentSettings):
        candidate = {name: getattr(raw, name) for name in EstablishmentSettings.FIELD_KEYS}
    elif isinstance(raw, Mapping):
        candidate = {}
        for name, key in EstablishmentSettings.FIELD_KEYS.items():
            candidate[name] = raw.get(key, raw.get(name))
    else:
        if raw is not None:
            logger.warning(f"Ignoring malformed settings of type {type(raw).__name__}")
        return DEFAULT_SETTINGS

    values = {}
    for name in EstablishmentSettings.FIELD_KEYS:
        parsed = _non_negative_int(candidate.get(name))
        values[name] = parsed if parsed is not None else getattr(DEFAULT_SETTINGS, name)

    if values["time_green_seconds"] >= values["time_yellow_seconds"]:
        values["time_green_seconds"] = DEFAULT_SETTINGS.time_green_seconds
        values["time_yellow_seconds"] = DEFAULT_SETTINGS.time_yellow_seconds
    if values["total_tables"] < 1:
        values["total_tables"] = DEFAULT_SETTINGS.total_tables

    return EstablishmentSettings(**values)


# =============================================================================
# CLASSIFICATION
# =============================================================================

def _elapsed(call: Call, now: float) -> float:
    return max(0.0, now - call.created_at)


def oldest_active_call(table: Table) -> Optional[Call]:
    """Active call with the smallest ``created_at``; ties keep the first inserted."""
    oldest = None
    for call in table.active_calls:
        if oldest is None or call.created_at < oldest.created_at:
            oldest = call
    return oldest


def table_status(table: Table, settings: Any, now: float) -> SemaphoreStatus:
    """Three-tier urgency of a whole table, driven by its oldest active call."""
    oldest = oldest_active_call(table)
    if oldest is None:
        return SemaphoreStatus.IDLE

    settings = resolve_settings(settings)
    elapsed = _elapsed(oldest, now)
    if elapsed > settings.time_yellow_seconds:
        return SemaphoreStatus.RED
    if elapsed > settings.time_green_seconds:
        return SemaphoreStatus.YELLOW
    return SemaphoreStatus.GREEN


def type_status(table: Table, call_type: CallType, settings: Any, now: float) -> SemaphoreStatus:
    """Binary urgency of one request type at a table (IDLE, GREEN or RED)."""
    active = [c for c in table.active_calls if c.type == call_type]
    if not active:
        return SemaphoreStatus.IDLE

    settings = resolve_settings(settings)
    # Earliest inserted, not necessarily the smallest timestamp.
    reference = active[0]
    if _elapsed(reference, now) > settings.time_yellow_seconds:
        return SemaphoreStatus.RED
    return SemaphoreStatus.GREEN


def active_count_by_type(table: Table) -> dict[CallType, int]:
    counts = {call_type: 0 for call_type in CallType}
    for call in table.active_calls:
        counts[call.type] += 1
    return counts


# =============================================================================
# BOARD
# =============================================================================

@dataclass(frozen=True)
class TableBoard:
    """What a staff terminal renders for one table."""
    number: str
    status: SemaphoreStatus
    type_statuses: Mapping[CallType, SemaphoreStatus]
    active_counts: Mapping[CallType, int]
    oldest_call_at: Optional[float]

    @property
    def is_idle(self) -> bool:
        return self.status == SemaphoreStatus.IDLE


def describe_table(table: Table, settings: Any, now: float) -> TableBoard:
    settings = resolve_settings(settings)
    oldest = oldest_active_call(table)
    return TableBoard(
        number=table.number,
        status=table_status(table, settings, now),
        type_statuses={t: type_status(table, t, settings, now) for t in CallType},
        active_counts=active_count_by_type(table),
        oldest_call_at=oldest.created_at if oldest else None,
    )


def describe_establishment(snapshot: EstablishmentSnapshot, now: float) -> list[TableBoard]:
    """Classify every table of a snapshot, in slot order."""
    return [describe_table(t, snapshot.settings, now) for t in snapshot.tables.values()]


def establishment_is_open(
    snapshot: Union[EstablishmentSnapshot, EstablishmentPresence],
    now: float,
    heartbeat_threshold: float,
) -> bool:
    """
    Whether customers should see the establishment as open.

    The owner's session sets ``is_open`` and refreshes the heartbeat every
    cycle; a session that vanished without logging out stops counting as
    open once its heartbeat is older than ``heartbeat_threshold`` seconds.
    """
    if not snapshot.is_open:
        return False
    if snapshot.heartbeat_at is None:
        return False
    return now - snapshot.heartbeat_at <= heartbeat_threshold
