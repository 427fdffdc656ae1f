"""
Goal Gatekeeper — Deadline Sync.

Keeps one calendar milestone per goal deadline. The milestone is a
projection of goal state: it is created when an open goal with an end date
has none, and is re-titled and re-colored (never deleted) once the goal is
completed.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from gatekeeper.core.errors import PersistenceFailure
from gatekeeper.data.models import (
    COMPLETED_COLOR,
    MILESTONE_COLOR,
    CalendarEvent,
    Goal,
)

if TYPE_CHECKING:
    from gatekeeper.data.db import CalendarDB, Stores

logger = logging.getLogger(__name__)


def deadline_event_id(goal_id: str) -> str:
    return f"goal-deadline-{goal_id}"


def deadline_title(goal: Goal) -> str:
    return f"Deadline: {goal.title}"


def completed_title(goal: Goal) -> str:
    return f"Completed: {goal.title}"


def _is_deadline_event(event: CalendarEvent, goal: Goal) -> bool:
    return event.id == deadline_event_id(goal.id) or event.title == deadline_title(goal)


def sync_goal_deadline(goal: Goal, calendar_db: CalendarDB) -> bool:
    """Bring the goal's deadline milestone in line with the goal.

    Returns True if the calendar was modified.
    """
    events = calendar_db.list_events()

    if goal.is_completed:
        changed = False
        for event in events:
            if not _is_deadline_event(event, goal):
                continue
            if event.title == completed_title(goal) and event.color == COMPLETED_COLOR:
                continue
            calendar_db.update_event(
                event.id, title=completed_title(goal), color=COMPLETED_COLOR,
            )
            logger.info("Deadline milestone %s marked completed", event.id)
            changed = True
        return changed

    if not goal.end_date:
        return False

    existing = [ev for ev in events if _is_deadline_event(ev, goal)]
    if existing:
        return _follow_goal(goal, existing, calendar_db)

    calendar_db.add_event(
        CalendarEvent(
            id=deadline_event_id(goal.id),
            title=deadline_title(goal),
            date=goal.end_date,
            type="milestone",
            color=MILESTONE_COLOR,
            project_id=goal.project_id,
        )
    )
    logger.info("Deadline milestone created for goal %s on %s", goal.id, goal.end_date)
    return True


def _follow_goal(goal: Goal, existing: list[CalendarEvent], calendar_db: CalendarDB) -> bool:
    """Move outstanding milestones to the goal's current end date.

    The canonical milestone of a reopened goal also gets its deadline
    title and color back.
    """
    changed = False
    for event in existing:
        patch: dict[str, object] = {}
        if event.date != goal.end_date:
            patch["date"] = goal.end_date
        if event.id == deadline_event_id(goal.id) and (
            event.title != deadline_title(goal) or event.color != MILESTONE_COLOR
        ):
            patch["title"] = deadline_title(goal)
            patch["color"] = MILESTONE_COLOR
        if patch:
            calendar_db.update_event(event.id, **patch)
            logger.info("Deadline milestone %s updated: %s", event.id, sorted(patch))
            changed = True
    return changed


def sync_all_goal_deadlines(stores: Stores) -> int:
    """Startup sweep over every goal. Returns how many goals changed the calendar.

    A failure on one goal is logged and does not stop the sweep.
    """
    changed = 0
    for goal in stores.goals.list_goals():
        try:
            if sync_goal_deadline(goal, stores.calendar):
                changed += 1
        except PersistenceFailure as exc:
            logger.error("Deadline sync failed for goal %s: %s", goal.id, exc)
    if changed:
        logger.info("Deadline sweep updated %d goal(s)", changed)
    return changed
