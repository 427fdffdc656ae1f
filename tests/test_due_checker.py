"""Tests for gatekeeper.core.due_checker — cadence and deadline detection."""

from datetime import datetime, timedelta

import pytest

from conftest import NOW, make_goal
from gatekeeper.core.due_checker import (
    find_approaching_deadlines,
    find_due_goals,
    is_goal_due,
    parse_timestamp,
)


class TestParseTimestamp:
    def test_naive_iso(self):
        assert parse_timestamp("2025-03-10T12:00:00") == datetime(2025, 3, 10, 12, 0)

    def test_date_only(self):
        assert parse_timestamp("2025-03-10") == datetime(2025, 3, 10)

    def test_zulu_suffix_becomes_naive(self):
        parsed = parse_timestamp("2025-03-10T12:00:00.000Z")
        assert parsed is not None
        assert parsed.tzinfo is None

    def test_empty_and_garbage(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None
        assert parse_timestamp("next tuesday") is None


class TestIsGoalDue:
    def test_daily_23h_not_due(self):
        goal = make_goal(last_checked=(NOW - timedelta(hours=23)).isoformat())
        assert is_goal_due(goal, NOW) is False

    def test_daily_25h_due(self):
        goal = make_goal(last_checked=(NOW - timedelta(hours=25)).isoformat())
        assert is_goal_due(goal, NOW) is True

    def test_daily_exactly_24h_due(self):
        goal = make_goal(last_checked=(NOW - timedelta(hours=24)).isoformat())
        assert is_goal_due(goal, NOW) is True

    @pytest.mark.parametrize("frequency,elapsed,expected", [
        ("minute", timedelta(seconds=59), False),
        ("minute", timedelta(seconds=60), True),
        ("hourly", timedelta(minutes=59), False),
        ("hourly", timedelta(hours=1), True),
        ("weekly", timedelta(days=6, hours=23), False),
        ("weekly", timedelta(days=7), True),
    ])
    def test_fixed_thresholds(self, frequency, elapsed, expected):
        goal = make_goal(frequency=frequency, last_checked=(NOW - elapsed).isoformat())
        assert is_goal_due(goal, NOW) is expected

    def test_monthly_rollover_after_one_day(self):
        goal = make_goal(frequency="monthly", last_checked="2024-01-31T09:00:00")
        assert is_goal_due(goal, datetime(2024, 2, 1, 9, 0)) is True

    def test_monthly_same_month_not_due(self):
        goal = make_goal(frequency="monthly", last_checked="2024-01-01T09:00:00")
        assert is_goal_due(goal, datetime(2024, 1, 31, 23, 0)) is False

    def test_monthly_year_change(self):
        goal = make_goal(frequency="monthly", last_checked="2024-12-15T09:00:00")
        assert is_goal_due(goal, datetime(2025, 1, 2)) is True

    def test_never_checked_is_due(self):
        assert is_goal_due(make_goal(last_checked=None), NOW) is True

    def test_completed_never_due(self):
        goal = make_goal(is_completed=True, last_checked=None)
        assert is_goal_due(goal, NOW) is False

    def test_unknown_frequency_treated_as_daily(self):
        goal = make_goal(frequency="fortnightly", last_checked=(NOW - timedelta(hours=23)).isoformat())
        assert is_goal_due(goal, NOW) is False
        goal.last_checked = (NOW - timedelta(hours=25)).isoformat()
        assert is_goal_due(goal, NOW) is True


class TestFindDueGoals:
    def test_preserves_order_and_filters(self):
        goals = [
            make_goal(id="a", last_checked=(NOW - timedelta(hours=30)).isoformat()),
            make_goal(id="b", last_checked=(NOW - timedelta(hours=1)).isoformat()),
            make_goal(id="c", last_checked=None),
            make_goal(id="d", is_completed=True, last_checked=None),
        ]
        assert [g.id for g in find_due_goals(goals, NOW)] == ["a", "c"]


class TestFindApproachingDeadlines:
    def test_within_window(self):
        goal = make_goal(end_date=(NOW + timedelta(hours=20)).isoformat())
        [item] = find_approaching_deadlines([goal], NOW)
        assert item.goal_id == "g1"
        assert item.title == "Ship v1"
        assert item.hours_remaining == pytest.approx(20)

    def test_outside_window_and_passed(self):
        goals = [
            make_goal(id="far", end_date=(NOW + timedelta(hours=49)).isoformat()),
            make_goal(id="past", end_date=(NOW - timedelta(hours=1)).isoformat()),
            make_goal(id="none", end_date=""),
        ]
        assert find_approaching_deadlines(goals, NOW) == []

    def test_completed_skipped(self):
        goal = make_goal(is_completed=True, end_date=(NOW + timedelta(hours=5)).isoformat())
        assert find_approaching_deadlines([goal], NOW) == []

    def test_custom_window(self):
        goal = make_goal(end_date=(NOW + timedelta(hours=60)).isoformat())
        assert len(find_approaching_deadlines([goal], NOW, window=timedelta(hours=72))) == 1
