"""Everything the Gatekeeper knows about one goal when it talks to the user."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from gatekeeper.core.errors import PersistenceFailure
from gatekeeper.data.models import (
    CalendarEvent,
    Goal,
    Task,
    TaskStatus,
    UserContext,
)

if TYPE_CHECKING:
    from gatekeeper.data.db import Stores

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (TaskStatus.BACKLOG, TaskStatus.DOING)


@dataclass
class GoalContext:
    goal: Goal
    related_tasks: list[Task] = field(default_factory=list)
    related_events: list[CalendarEvent] = field(default_factory=list)
    project_name: str | None = None
    user_context: UserContext = field(default_factory=UserContext)

    @property
    def voice(self) -> str:
        """Goal-scoped voice, falling back to the global user preference."""
        return (self.goal.voice or "").strip() or self.user_context.voice.strip()


def is_related_event(event: CalendarEvent, goal: Goal) -> bool:
    """Title mentions the goal title (case-insensitive), or the event shares its project."""
    if goal.title and goal.title.lower() in event.title.lower():
        return True
    return bool(goal.project_id) and event.project_id == goal.project_id


def load_goal_context(goal: Goal, stores: Stores) -> GoalContext:
    """Collect open tasks, related events, project name and user context for a goal.

    Store failures degrade to empty collections; the conversation must still open.
    """
    context = GoalContext(goal=goal)

    if goal.project_id:
        try:
            context.related_tasks = stores.tasks.list_tasks(
                project_id=goal.project_id, statuses=ACTIVE_STATUSES,
            )
        except PersistenceFailure as exc:
            logger.warning("Could not load tasks for goal %s: %s", goal.id, exc)
        try:
            project = stores.projects.get_project(goal.project_id)
            context.project_name = project.name if project else None
        except PersistenceFailure as exc:
            logger.warning("Could not load project %s: %s", goal.project_id, exc)

    try:
        context.related_events = [
            ev for ev in stores.calendar.list_events() if is_related_event(ev, goal)
        ]
    except PersistenceFailure as exc:
        logger.warning("Could not load calendar events for goal %s: %s", goal.id, exc)

    try:
        context.user_context = stores.user_context.get()
    except PersistenceFailure as exc:
        logger.warning("Could not load user context: %s", exc)

    return context
