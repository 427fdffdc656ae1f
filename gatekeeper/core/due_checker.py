"""
Goal Gatekeeper — Due-goal detection.

Pure functions: given goals and a clock reading, decide which goals are due
for a check-in and which deadlines are approaching. The periodic job that
calls these lives in gatekeeper.core.scheduler.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from gatekeeper.data.models import Goal

logger = logging.getLogger(__name__)

# Fixed-window cadences; "monthly" is a calendar-month rollover instead
CADENCE_THRESHOLDS: dict[str, timedelta] = {
    "minute": timedelta(seconds=60),
    "hourly": timedelta(hours=1),
    "daily": timedelta(days=1),
    "weekly": timedelta(days=7),
}

DEFAULT_DEADLINE_WINDOW = timedelta(hours=48)


@dataclass
class ApproachingDeadline:
    goal_id: str
    title: str
    hours_remaining: float
    deadline: datetime


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse a stored ISO timestamp into a naive local datetime.

    Returns None for empty or unparseable values.
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        logger.warning("Unparseable timestamp: %r", value)
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def is_goal_due(goal: Goal, now: datetime | None = None) -> bool:
    """True if the goal's cadence has elapsed since its last review.

    Completed goals are never due; a goal never reviewed is always due.
    """
    if goal.is_completed:
        return False

    last_checked = parse_timestamp(goal.last_checked)
    if last_checked is None:
        return True

    if now is None:
        now = datetime.now()

    if goal.frequency == "monthly":
        return (now.year, now.month) != (last_checked.year, last_checked.month) and now > last_checked

    threshold = CADENCE_THRESHOLDS.get(goal.frequency)
    if threshold is None:
        logger.warning("Goal %s has unknown frequency %r, treating as daily", goal.id, goal.frequency)
        threshold = CADENCE_THRESHOLDS["daily"]
    return now - last_checked >= threshold


def find_due_goals(goals: list[Goal], now: datetime | None = None) -> list[Goal]:
    """Return the due subset, preserving input order."""
    if now is None:
        now = datetime.now()
    return [g for g in goals if is_goal_due(g, now)]


def find_approaching_deadlines(
    goals: list[Goal],
    now: datetime | None = None,
    window: timedelta = DEFAULT_DEADLINE_WINDOW,
) -> list[ApproachingDeadline]:
    """Incomplete goals whose end date lies within `window` but has not passed."""
    if now is None:
        now = datetime.now()

    upcoming: list[ApproachingDeadline] = []
    for goal in goals:
        if goal.is_completed:
            continue
        deadline = parse_timestamp(goal.end_date)
        if deadline is None:
            continue
        remaining = deadline - now
        if timedelta(0) < remaining <= window:
            upcoming.append(
                ApproachingDeadline(
                    goal_id=goal.id,
                    title=goal.title,
                    hours_remaining=remaining.total_seconds() / 3600,
                    deadline=deadline,
                )
            )
    return upcoming
