"""
Domain Types

Plain, immutable value types shared by the engine, the stores and the API:
call/semaphore enums, calls, tables, establishment settings and snapshots.

The call state machine lives here as a single function, ``next_status``.
Every store applies status changes through it, so the rules are written
exactly once.
"""

import enum
import re
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Mapping, Optional


class CallType(str, enum.Enum):
    """Kind of service request a customer can raise."""
    WAITER = "WAITER"
    MENU = "MENU"
    BILL = "BILL"


class CallStatus(str, enum.Enum):
    """Call lifecycle: SENT → VIEWED → ATTENDED, or → CANCELED."""
    SENT = "SENT"
    VIEWED = "VIEWED"
    ATTENDED = "ATTENDED"
    CANCELED = "CANCELED"


class SemaphoreStatus(str, enum.Enum):
    """Urgency level shown to staff."""
    IDLE = "IDLE"
    GREEN = "GREEN"
    YELLOW = "YELLOW"
    RED = "RED"


class EventLogType(str, enum.Enum):
    """Historical events kept for statistics."""
    CALL_ATTENDED = "CALL_ATTENDED"
    CALL_CANCELED = "CALL_CANCELED"
    TABLE_CLOSED = "TABLE_CLOSED"


ACTIVE_STATUSES = frozenset({CallStatus.SENT, CallStatus.VIEWED})
TERMINAL_STATUSES = frozenset({CallStatus.ATTENDED, CallStatus.CANCELED})

_TRANSITIONS = {
    CallStatus.SENT: frozenset({CallStatus.VIEWED, CallStatus.ATTENDED, CallStatus.CANCELED}),
    CallStatus.VIEWED: frozenset({CallStatus.ATTENDED, CallStatus.CANCELED}),
    CallStatus.ATTENDED: frozenset(),
    CallStatus.CANCELED: frozenset(),
}


def next_status(current: CallStatus, target: CallStatus) -> Optional[CallStatus]:
    """
    Resolve a requested status change.

    Returns the new status when ``current → target`` is a legal move and
    ``None`` otherwise. ATTENDED and CANCELED are absorbing, so any request
    on a resolved call returns ``None`` and callers treat it as a no-op.
    """
    if target in _TRANSITIONS[CallStatus(current)]:
        return CallStatus(target)
    return None


def is_active(status: CallStatus) -> bool:
    return status in ACTIVE_STATUSES


# =============================================================================
# INPUT NORMALIZATION
# =============================================================================

MAX_TABLE_NUMBER_LENGTH = 3

_NON_ALNUM = re.compile(r"[^0-9A-Za-z]")
_NON_DIGIT = re.compile(r"\D")


def normalize_table_number(raw: Any) -> str:
    """
    Normalize a table identifier: alphanumeric only, uppercase, 1-3 chars.

    Raises:
        ValueError: If nothing is left after cleaning or the result is too long
    """
    cleaned = _NON_ALNUM.sub("", str(raw if raw is not None else "")).upper()
    if not cleaned:
        raise ValueError("Table number must contain at least one letter or digit")
    if len(cleaned) > MAX_TABLE_NUMBER_LENGTH:
        raise ValueError(
            f"Table number must have at most {MAX_TABLE_NUMBER_LENGTH} characters"
        )
    return cleaned


def sanitize_phone(phone: str) -> str:
    """Keep digits only."""
    return _NON_DIGIT.sub("", phone or "")


# =============================================================================
# SETTINGS
# =============================================================================

class InvalidSettingsError(ValueError):
    """Raised when establishment thresholds are rejected."""


@dataclass(frozen=True)
class EstablishmentSettings:
    """
    Per-establishment semaphore configuration.

    Defaults: GREEN up to 1 minute, YELLOW up to 3 minutes, 20 tables.
    Quantity thresholds are carried for display only.
    """
    time_green_seconds: int = 60
    time_yellow_seconds: int = 180
    qty_green: int = 2
    qty_yellow: int = 4
    total_tables: int = 20

    # Keys used in stored settings documents and on the wire.
    FIELD_KEYS = {
        "time_green_seconds": "timeGreen",
        "time_yellow_seconds": "timeYellow",
        "qty_green": "qtyGreen",
        "qty_yellow": "qtyYellow",
        "total_tables": "totalTables",
    }

    def to_dict(self) -> dict[str, int]:
        return {key: getattr(self, name) for name, key in self.FIELD_KEYS.items()}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EstablishmentSettings":
        """Strict parse; accepts camelCase or snake_case keys."""
        values = {}
        for name, key in cls.FIELD_KEYS.items():
            if key in data:
                values[name] = int(data[key])
            elif name in data:
                values[name] = int(data[name])
        return cls(**values)


DEFAULT_SETTINGS = EstablishmentSettings()


def validate_settings(settings: EstablishmentSettings) -> EstablishmentSettings:
    """
    Check establishment settings before they are stored.

    Raises:
        InvalidSettingsError: On negative values, green >= yellow or no tables
    """
    for name in EstablishmentSettings.FIELD_KEYS:
        value = getattr(settings, name)
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidSettingsError(f"{name} must be an integer")
        if value < 0:
            raise InvalidSettingsError(f"{name} must not be negative")
    if settings.time_green_seconds >= settings.time_yellow_seconds:
        raise InvalidSettingsError("Green time must be lower than yellow time")
    if settings.total_tables < 1:
        raise InvalidSettingsError("An establishment needs at least one table")
    return settings


# =============================================================================
# CALLS, TABLES, SNAPSHOTS
# =============================================================================

@dataclass(frozen=True)
class Call:
    """One customer service request. Only the store changes its status."""
    id: str
    type: CallType
    status: CallStatus
    created_at: float
    table_number: str = ""

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "created_at": self.created_at,
            "table_number": self.table_number,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Call":
        return cls(
            id=str(data["id"]),
            type=CallType(data["type"]),
            status=CallStatus(data["status"]),
            created_at=float(data["created_at"]),
            table_number=str(data.get("table_number", "")),
        )


@dataclass(frozen=True)
class Table:
    """A table slot and its calls, oldest first."""
    number: str
    calls: tuple[Call, ...] = ()

    @property
    def active_calls(self) -> tuple[Call, ...]:
        return tuple(c for c in self.calls if c.is_active)


@dataclass(frozen=True)
class EventLogItem:
    timestamp: float
    type: EventLogType
    call_type: Optional[CallType] = None
    table_number: Optional[str] = None


@dataclass(frozen=True)
class CustomerProfile:
    customer_id: str
    favorite_establishment_ids: tuple[str, ...] = ()


def _frozen_tables(tables: Mapping[str, Table]) -> Mapping[str, Table]:
    return MappingProxyType(dict(tables))


@dataclass(frozen=True)
class EstablishmentPresence:
    """Open flag and heartbeat of an establishment, without its calls."""
    id: str
    name: str = ""
    is_open: bool = False
    heartbeat_at: Optional[float] = None


@dataclass(frozen=True)
class EstablishmentSnapshot:
    """
    Everything a terminal needs to render one establishment.

    ``tables`` always holds the slots "1".."total_tables" (empty when idle)
    plus any other table number that currently has active calls.
    """
    id: str
    name: str = ""
    phone: str = ""
    settings: EstablishmentSettings = DEFAULT_SETTINGS
    is_open: bool = False
    heartbeat_at: Optional[float] = None
    tables: Mapping[str, Table] = field(default_factory=lambda: MappingProxyType({}))
    fetched_at: Optional[float] = None

    def __post_init__(self):
        if not isinstance(self.tables, MappingProxyType):
            object.__setattr__(self, "tables", _frozen_tables(self.tables))

    @property
    def active_calls(self) -> tuple[Call, ...]:
        return tuple(c for t in self.tables.values() for c in t.active_calls)

    def with_fetch_time(self, fetched_at: float) -> "EstablishmentSnapshot":
        return replace(self, fetched_at=fetched_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "settings": self.settings.to_dict(),
            "is_open": self.is_open,
            "heartbeat_at": self.heartbeat_at,
            "calls": [c.to_dict() for c in self.active_calls],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EstablishmentSnapshot":
        from tablecall.engine.status import resolve_settings

        settings = resolve_settings(data.get("settings"))
        calls = [Call.from_dict(c) for c in data.get("calls", [])]
        return build_snapshot(
            establishment_id=str(data["id"]),
            name=data.get("name", ""),
            phone=data.get("phone", ""),
            settings=settings,
            is_open=bool(data.get("is_open", False)),
            heartbeat_at=data.get("heartbeat_at"),
            calls=calls,
        )


def build_snapshot(
    establishment_id: str,
    settings: EstablishmentSettings,
    calls: list[Call],
    name: str = "",
    phone: str = "",
    is_open: bool = False,
    heartbeat_at: Optional[float] = None,
) -> EstablishmentSnapshot:
    """
    Group active calls into tables and pad the idle slots.

    ``calls`` must already be ordered by creation time, then insertion.
    """
    grouped: dict[str, list[Call]] = {}
    for call in calls:
        if call.is_active:
            grouped.setdefault(call.table_number, []).append(call)

    tables: dict[str, Table] = {}
    for i in range(1, settings.total_tables + 1):
        number = str(i)
        tables[number] = Table(number=number, calls=tuple(grouped.pop(number, ())))
    for number, table_calls in grouped.items():
        tables[number] = Table(number=number, calls=tuple(table_calls))

    return EstablishmentSnapshot(
        id=establishment_id,
        name=name,
        phone=phone,
        settings=settings,
        is_open=is_open,
        heartbeat_at=heartbeat_at,
        tables=tables,
    )
