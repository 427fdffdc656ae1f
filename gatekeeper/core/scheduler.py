"""
Goal Gatekeeper — Periodic jobs.

Due-goal check: every CHECK_INTERVAL_SECONDS, find incomplete goals whose
cadence has elapsed, submit them to the SessionManager and optionally push
a reminder.

Deadline scan: every DEADLINE_CHECK_INTERVAL_SECONDS, warn about goals
whose end date falls within the warning window. Advisory only: it never
queues a session or changes state.

This module is host-agnostic: it depends on the NotificationPort protocol,
not on a specific messaging provider. A missing notifier is not an error.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from gatekeeper.core.due_checker import (
    DEFAULT_DEADLINE_WINDOW,
    ApproachingDeadline,
    find_approaching_deadlines,
    find_due_goals,
)
from gatekeeper.core.errors import PersistenceFailure

if TYPE_CHECKING:
    from gatekeeper.core.session_manager import SessionManager
    from gatekeeper.data.db import GoalDB
    from gatekeeper.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)


def format_checkin_reminder(count: int) -> str:
    return f"Goal Check-in Reminder: {count} goal(s) need your attention!"


def format_deadline_warning(item: ApproachingDeadline, tz_name: str | None = None) -> str:
    when = f"{item.deadline:%Y-%m-%d %H:%M}"
    if tz_name:
        when += f" {tz_name}"
    return (
        "Goal Deadline Approaching\n"
        f'"{item.title}" is due in {round(item.hours_remaining)} hour(s) ({when}).'
    )


async def _notify(notifier: NotificationPort | None, owner_id: int | None, text: str) -> None:
    if notifier is None or owner_id is None:
        return
    try:
        await notifier.send_message(owner_id, text)
    except Exception as exc:
        logger.error("Failed to send notification to %s: %s", owner_id, exc)


async def run_due_goal_check(
    manager: SessionManager,
    goal_db: GoalDB,
    notifier: NotificationPort | None = None,
    owner_id: int | None = None,
    now: datetime | None = None,
) -> int:
    """One scheduler tick. Returns the number of due goals found."""
    if now is None:
        now = datetime.now()

    try:
        goals = goal_db.list_goals(include_completed=False)
    except PersistenceFailure as exc:
        logger.error("Due-goal check: could not load goals: %s", exc)
        return 0

    due = find_due_goals(goals, now)
    if not due:
        logger.debug("Due-goal check: nothing due")
        return 0

    logger.info("Due-goal check: %d goal(s) due", len(due))
    # Remind only when something new is waiting, before its session opens
    fresh = [
        g for g in due
        if g.id not in manager.queue and g.id != manager.active_goal_id
    ]
    if fresh:
        await _notify(notifier, owner_id, format_checkin_reminder(len(due)))
    await manager.submit_due_goals(due)
    return len(due)


async def notify_upcoming_deadlines(
    goal_db: GoalDB,
    notifier: NotificationPort | None = None,
    owner_id: int | None = None,
    now: datetime | None = None,
    window: timedelta = DEFAULT_DEADLINE_WINDOW,
    tz_name: str | None = None,
) -> list[ApproachingDeadline]:
    """Send one warning per goal whose deadline is inside `window`.

    `tz_name` labels the deadline time; stored times are wall-clock in that zone.
    """
    try:
        goals = goal_db.list_goals(include_completed=False)
    except PersistenceFailure as exc:
        logger.error("Deadline scan: could not load goals: %s", exc)
        return []

    upcoming = find_approaching_deadlines(goals, now, window)
    for item in upcoming:
        logger.info("Deadline approaching for goal %s: %.1fh left", item.goal_id, item.hours_remaining)
        await _notify(notifier, owner_id, format_deadline_warning(item, tz_name))
    return upcoming
