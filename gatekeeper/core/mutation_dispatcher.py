"""
Goal Gatekeeper — Mutation Dispatcher.

Applies a validated GatekeeperReply to the goal, the task board and the
calendar. Every item is applied on its own: an invalid or failing item is
logged and skipped, and its siblings still run. Nothing is rolled back;
each action is idempotent, so applying the same `complete`/`update` twice
changes nothing the second time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from gatekeeper.core.deadline_sync import sync_goal_deadline
from gatekeeper.core.errors import InvalidMutation, PersistenceFailure
from gatekeeper.core.reply_processor import (
    CalendarEventAction,
    GatekeeperReply,
    TaskAction,
)
from gatekeeper.data.db import new_id
from gatekeeper.data.models import (
    EVENT_COLOR,
    EVENT_TYPES,
    MILESTONE_COLOR,
    RECURRENCE_TYPES,
    CalendarEvent,
    Goal,
    TaskStatus,
)

if TYPE_CHECKING:
    from gatekeeper.data.db import Stores

logger = logging.getLogger(__name__)

# JSON field name -> CalendarEvent attribute, for partial updates
_EVENT_PATCH_FIELDS = {
    "title": "title",
    "date": "date",
    "time": "time",
    "type": "type",
    "is_recurring": "is_recurring",
    "recurrence_type": "recurrence_type",
    "recurrence_end_date": "recurrence_end_date",
}


@dataclass
class DispatchResult:
    """What changed, per category, so the caller can refresh derived views."""

    goal: Goal | None = None
    goal_modified: bool = False
    tasks_modified: bool = False
    events_modified: bool = False
    deadline_synced: bool = False
    skipped: list[str] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return bool(self.goal and self.goal.is_completed)


def normalize_date(value: str | None, field_name: str = "date") -> str:
    """Parse a model-supplied date or datetime and return it in ISO format."""
    if not value:
        raise InvalidMutation(f"{field_name} is required")
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError as exc:
        raise InvalidMutation(f"Unparseable {field_name}: {value!r}") from exc
    return parsed.isoformat()


def default_color(event_type: str) -> str:
    return MILESTONE_COLOR if event_type == "milestone" else EVENT_COLOR


class MutationDispatcher:
    """Applies reply mutations against the stores."""

    def __init__(self, stores: Stores) -> None:
        self._stores = stores

    def apply(
        self,
        goal: Goal,
        reply: GatekeeperReply,
        now: datetime | None = None,
    ) -> DispatchResult:
        if now is None:
            now = datetime.now()
        goal = self._current(goal)
        result = DispatchResult(goal=goal)

        self._apply_goal(goal, reply, now, result)

        for action in reply.tasks:
            try:
                if self._apply_task(goal, action):
                    result.tasks_modified = True
            except (InvalidMutation, PersistenceFailure) as exc:
                logger.warning("Skipping task action %s for goal %s: %s", action.action, goal.id, exc)
                result.skipped.append(f"task {action.action}: {exc}")

        for action in reply.calendar_events:
            try:
                if self._apply_event(goal, action):
                    result.events_modified = True
            except (InvalidMutation, PersistenceFailure) as exc:
                logger.warning("Skipping event action %s for goal %s: %s", action.action, goal.id, exc)
                result.skipped.append(f"event {action.action}: {exc}")

        logger.info(
            "Mutations applied for goal %s: goal=%s tasks=%s events=%s skipped=%d",
            goal.id, result.goal_modified, result.tasks_modified,
            result.events_modified, len(result.skipped),
        )
        return result

    # ------------------------------------------------------------------
    # Goal
    # ------------------------------------------------------------------

    def _current(self, goal: Goal) -> Goal:
        """Stored copy of the goal; user edits may land while the model is thinking."""
        try:
            stored = self._stores.goals.get_goal(goal.id)
        except PersistenceFailure as exc:
            logger.warning("Could not re-read goal %s, using loaded copy: %s", goal.id, exc)
            return goal
        return stored or goal

    def _apply_goal(
        self, goal: Goal, reply: GatekeeperReply, now: datetime, result: DispatchResult,
    ) -> None:
        updates: dict[str, object] = {"last_checked": now.isoformat()}
        completion_changed = reply.is_completed and not goal.is_completed
        if completion_changed:
            updates["is_completed"] = True
        new_state = (reply.new_current_state or "").strip()
        if new_state and new_state != goal.current_state:
            updates["current_state"] = new_state

        try:
            result.goal = self._stores.goals.update_goal(goal.id, **updates)
        except (ValueError, PersistenceFailure) as exc:
            logger.error("Could not update goal %s: %s", goal.id, exc)
            result.skipped.append(f"goal update: {exc}")
            return
        result.goal_modified = len(updates) > 1

        if completion_changed:
            logger.info("Goal %s marked completed", goal.id)
            try:
                result.deadline_synced = sync_goal_deadline(result.goal, self._stores.calendar)
            except PersistenceFailure as exc:
                logger.error("Deadline sync failed for goal %s: %s", goal.id, exc)
                result.skipped.append(f"deadline sync: {exc}")
            else:
                result.events_modified = result.events_modified or result.deadline_synced

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def _apply_task(self, goal: Goal, action: TaskAction) -> bool:
        tasks = self._stores.tasks
        kind = action.action.lower()

        if kind == "create":
            if not goal.project_id:
                logger.info("Goal %s has no project; task create ignored", goal.id)
                return False
            title = (action.title or "").strip()
            if not title:
                raise InvalidMutation("create requires a title")
            tasks.add_task(title, goal.project_id)
            return True

        if kind == "complete":
            return self._set_task_status(action.task_id, TaskStatus.DONE)

        if kind == "update":
            try:
                status = TaskStatus((action.new_status or "").lower())
            except ValueError as exc:
                raise InvalidMutation(f"Unknown task status {action.new_status!r}") from exc
            return self._set_task_status(action.task_id, status)

        raise InvalidMutation(f"Unknown task action {action.action!r}")

    def _set_task_status(self, task_id: str | None, status: TaskStatus) -> bool:
        if not task_id:
            raise InvalidMutation("taskId is required")
        try:
            return self._stores.tasks.set_status(task_id, status)
        except ValueError as exc:
            raise InvalidMutation(str(exc)) from exc

    # ------------------------------------------------------------------
    # Calendar
    # ------------------------------------------------------------------

    def _apply_event(self, goal: Goal, action: CalendarEventAction) -> bool:
        kind = action.action.lower()
        if kind == "create":
            return self._create_event(goal, action)
        if kind == "update":
            return self._update_event(action)
        if kind == "delete":
            if not action.event_id:
                raise InvalidMutation("eventId is required")
            if not self._stores.calendar.delete_event(action.event_id):
                raise InvalidMutation(f"Event {action.event_id} not found")
            return True
        raise InvalidMutation(f"Unknown calendar action {action.action!r}")

    def _create_event(self, goal: Goal, action: CalendarEventAction) -> bool:
        title = (action.title or "").strip()
        if not title:
            raise InvalidMutation("create requires a title")
        event_type = (action.type or "event").lower()
        if event_type not in EVENT_TYPES:
            raise InvalidMutation(f"Unknown event type {action.type!r}")

        is_recurring = bool(action.is_recurring)
        recurrence_type = None
        recurrence_end = None
        if is_recurring:
            recurrence_type = (action.recurrence_type or "weekly").lower()
            if recurrence_type not in RECURRENCE_TYPES:
                raise InvalidMutation(f"Unknown recurrence type {action.recurrence_type!r}")
            if action.recurrence_end_date:
                recurrence_end = normalize_date(action.recurrence_end_date, "recurrenceEndDate")

        self._stores.calendar.add_event(
            CalendarEvent(
                id=new_id(),
                title=title,
                date=normalize_date(action.date),
                type=event_type,
                color=default_color(event_type),
                time=action.time or None,
                project_id=goal.project_id,
                is_recurring=is_recurring,
                recurrence_type=recurrence_type,
                recurrence_end_date=recurrence_end,
            )
        )
        return True

    def _update_event(self, action: CalendarEventAction) -> bool:
        if not action.event_id:
            raise InvalidMutation("eventId is required")

        # Only fields the model actually named are patched
        patch: dict[str, object] = {}
        for name in action.model_fields_set & _EVENT_PATCH_FIELDS.keys():
            patch[_EVENT_PATCH_FIELDS[name]] = getattr(action, name)

        if "title" in patch and not patch["title"]:
            raise InvalidMutation("title cannot be empty")
        if "date" in patch:
            patch["date"] = normalize_date(patch["date"])
        if patch.get("recurrence_end_date"):
            patch["recurrence_end_date"] = normalize_date(
                patch["recurrence_end_date"], "recurrenceEndDate",
            )
        if "type" in patch:
            if patch["type"] not in EVENT_TYPES:
                raise InvalidMutation(f"Unknown event type {patch['type']!r}")
            patch["color"] = default_color(patch["type"])
        if patch.get("recurrence_type") and patch["recurrence_type"] not in RECURRENCE_TYPES:
            raise InvalidMutation(f"Unknown recurrence type {patch['recurrence_type']!r}")
        if "is_recurring" in patch:
            patch["is_recurring"] = bool(patch["is_recurring"])

        if not patch:
            return False
        try:
            self._stores.calendar.update_event(action.event_id, **patch)
        except ValueError as exc:
            raise InvalidMutation(str(exc)) from exc
        return True
