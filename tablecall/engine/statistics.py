"""
Establishment statistics: live occupancy from a snapshot and historical
counts from the event log.
"""

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from tablecall.domain import (
    CallType,
    EstablishmentSnapshot,
    EventLogItem,
    EventLogType,
)


class StatisticsPeriod(str, enum.Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


@dataclass(frozen=True)
class CurrentStatistics:
    occupied_tables: int
    total_tables: int
    occupation_percentage: int
    active_calls_by_type: dict[CallType, int]


@dataclass(frozen=True)
class HistoricalStatistics:
    period: StatisticsPeriod
    since: float
    customers_served: int
    attended_by_type: dict[CallType, int]
    cancellations: int
    average_customers_per_day: Optional[float] = None
    average_calls_per_day: Optional[float] = None


def current_statistics(snapshot: EstablishmentSnapshot) -> CurrentStatistics:
    """Tables with at least one active call count as occupied."""
    total = snapshot.settings.total_tables or 1
    occupied = sum(1 for t in snapshot.tables.values() if t.active_calls)
    by_type = {call_type: 0 for call_type in CallType}
    for call in snapshot.active_calls:
        by_type[call.type] += 1

    return CurrentStatistics(
        occupied_tables=occupied,
        total_tables=total,
        occupation_percentage=round(occupied / total * 100),
        active_calls_by_type=by_type,
    )


def period_start(period: StatisticsPeriod, now: float) -> datetime:
    """Local midnight of today, of this week's Monday, or of the 1st of the month."""
    today = datetime.fromtimestamp(now).replace(hour=0, minute=0, second=0, microsecond=0)
    if period == StatisticsPeriod.WEEK:
        return today - timedelta(days=today.weekday())
    if period == StatisticsPeriod.MONTH:
        return today.replace(day=1)
    return today


def historical_statistics(
    events: Iterable[EventLogItem],
    period: StatisticsPeriod,
    now: float,
) -> HistoricalStatistics:
    """
    Count closed tables, attended calls and cancellations since the start
    of ``period``. For a week, also average them over the days elapsed so
    far (Monday = 1 day, Sunday = 7).
    """
    period = StatisticsPeriod(period)
    since = period_start(period, now).timestamp()
    window = [e for e in events if e.timestamp >= since]

    customers = sum(1 for e in window if e.type == EventLogType.TABLE_CLOSED)
    cancellations = sum(1 for e in window if e.type == EventLogType.CALL_CANCELED)
    attended = {call_type: 0 for call_type in CallType}
    for event in window:
        if event.type == EventLogType.CALL_ATTENDED and event.call_type is not None:
            attended[event.call_type] += 1

    average_customers = average_calls = None
    if period == StatisticsPeriod.WEEK:
        days_passed = datetime.fromtimestamp(now).isoweekday()
        average_customers = customers / days_passed
        average_calls = sum(attended.values()) / days_passed

    return HistoricalStatistics(
        period=period,
        since=since,
        customers_served=customers,
        attended_by_type=attended,
        cancellations=cancellations,
        average_customers_per_day=average_customers,
        average_calls_per_day=average_calls,
    )
