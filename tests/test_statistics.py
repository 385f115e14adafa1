"""Tests for occupancy and historical statistics."""

from datetime import datetime

from tablecall.domain import (
    Call,
    CallStatus,
    CallType,
    EstablishmentSettings,
    EventLogItem,
    EventLogType,
    build_snapshot,
)
from tablecall.engine.statistics import (
    StatisticsPeriod,
    current_statistics,
    historical_statistics,
    period_start,
)

# Wednesday 2024-05-15 15:00 local time
NOW = datetime(2024, 5, 15, 15, 0).timestamp()


def ts(*args) -> float:
    return datetime(*args).timestamp()


def call(call_id, table, call_type=CallType.WAITER, status=CallStatus.SENT):
    return Call(call_id, call_type, status, NOW - 30, table)


class TestCurrentStatistics:

    def test_occupancy(self):
        snapshot = build_snapshot(
            "E1",
            EstablishmentSettings(total_tables=8),
            [
                call("a", "1"),
                call("b", "1", CallType.BILL),
                call("c", "3", CallType.MENU, CallStatus.VIEWED),
            ],
        )
        stats = current_statistics(snapshot)

        assert stats.occupied_tables == 2
        assert stats.total_tables == 8
        assert stats.occupation_percentage == 25
        assert stats.active_calls_by_type == {
            CallType.WAITER: 1,
            CallType.MENU: 1,
            CallType.BILL: 1,
        }

    def test_empty(self):
        stats = current_statistics(build_snapshot("E1", EstablishmentSettings(), []))
        assert stats.occupied_tables == 0
        assert stats.occupation_percentage == 0


class TestPeriodStart:

    def test_day(self):
        assert period_start(StatisticsPeriod.DAY, NOW) == datetime(2024, 5, 15)

    def test_week_starts_monday(self):
        assert period_start(StatisticsPeriod.WEEK, NOW) == datetime(2024, 5, 13)

    def test_month(self):
        assert period_start(StatisticsPeriod.MONTH, NOW) == datetime(2024, 5, 1)


class TestHistoricalStatistics:

    EVENTS = [
        # last month
        EventLogItem(ts(2024, 4, 30, 20), EventLogType.TABLE_CLOSED, table_number="1"),
        # earlier this month, before this week
        EventLogItem(ts(2024, 5, 2, 12), EventLogType.CALL_ATTENDED, CallType.BILL, "2"),
        # Monday
        EventLogItem(ts(2024, 5, 13, 19), EventLogType.TABLE_CLOSED, table_number="4"),
        EventLogItem(ts(2024, 5, 13, 19), EventLogType.CALL_CANCELED, CallType.MENU, "4"),
        # today
        EventLogItem(ts(2024, 5, 15, 12), EventLogType.CALL_ATTENDED, CallType.WAITER, "5"),
        EventLogItem(ts(2024, 5, 15, 12), EventLogType.CALL_ATTENDED, CallType.WAITER, "5"),
        EventLogItem(ts(2024, 5, 15, 13), EventLogType.TABLE_CLOSED, table_number="5"),
    ]

    def test_day(self):
        stats = historical_statistics(self.EVENTS, StatisticsPeriod.DAY, NOW)

        assert stats.customers_served == 1
        assert stats.attended_by_type[CallType.WAITER] == 2
        assert stats.cancellations == 0
        assert stats.average_customers_per_day is None

    def test_week_has_daily_averages(self):
        stats = historical_statistics(self.EVENTS, StatisticsPeriod.WEEK, NOW)

        assert stats.customers_served == 2
        assert stats.cancellations == 1
        # Wednesday: three days into the week
        assert stats.average_customers_per_day == 2 / 3
        assert stats.average_calls_per_day == 2 / 3

    def test_month(self):
        stats = historical_statistics(self.EVENTS, StatisticsPeriod.MONTH, NOW)

        assert stats.customers_served == 2
        assert stats.attended_by_type == {
            CallType.WAITER: 2,
            CallType.MENU: 0,
            CallType.BILL: 1,
        }
        assert stats.since == ts(2024, 5, 1)

    def test_accepts_plain_period_string(self):
        stats = historical_statistics([], "week", NOW)
        assert stats.period == StatisticsPeriod.WEEK
        assert stats.customers_served == 0
