"""
One-time import of a legacy JSON export.

The old application kept goals, tasks, calendar events, projects and the
user context as camelCase JSON blobs. They are imported into the SQLite
stores once; the `migrations` table records that the import ran, so later
starts never import (or double-write) again.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from gatekeeper.data.db import Stores, new_id
from gatekeeper.data.models import (
    EVENT_COLOR,
    FREQUENCIES,
    MILESTONE_COLOR,
    CalendarEvent,
    Goal,
    Project,
    TaskStatus,
    UserContext,
)

logger = logging.getLogger(__name__)

MIGRATION_NAME = "legacy_json_export_v1"


def _goal_from_legacy(raw: dict[str, Any]) -> Goal:
    frequency = str(raw.get("frequency") or "daily").lower()
    if frequency not in FREQUENCIES:
        frequency = "daily"
    return Goal(
        id=str(raw.get("id") or new_id()),
        title=str(raw["title"]),
        desired_goal=raw.get("desiredGoal") or "",
        start_state=raw.get("startState") or "",
        current_state=raw.get("currentState") or "",
        end_state=raw.get("endState") or "",
        frequency=frequency,
        start_date=raw.get("startDate") or "",
        end_date=raw.get("endDate") or "",
        is_completed=bool(raw.get("isCompleted", False)),
        last_checked=raw.get("lastChecked") or None,
        project_id=raw.get("projectId") or None,
        voice=raw.get("voice") or None,
    )


def _event_from_legacy(raw: dict[str, Any]) -> CalendarEvent:
    event_type = raw.get("type") or "event"
    return CalendarEvent(
        id=str(raw.get("id") or new_id()),
        title=str(raw["title"]),
        date=str(raw["date"]),
        type=event_type,
        color=raw.get("color") or (MILESTONE_COLOR if event_type == "milestone" else EVENT_COLOR),
        time=raw.get("time") or None,
        project_id=raw.get("projectId") or None,
        is_recurring=bool(raw.get("isRecurring", False)),
        recurrence_type=raw.get("recurrenceType") or None,
        recurrence_end_date=raw.get("recurrenceEndDate") or None,
    )


def _task_status(raw: dict[str, Any]) -> TaskStatus:
    """Explicit status wins; older exports only carry the `completed` flag."""
    fallback = TaskStatus.DONE if raw.get("completed") else TaskStatus.BACKLOG
    status = raw.get("status")
    if not status:
        return fallback
    try:
        return TaskStatus(status)
    except ValueError:
        return fallback


def _records(data: dict[str, Any], *keys: str) -> list[dict[str, Any]]:
    for key in keys:
        value = data.get(key)
        if isinstance(value, list):
            return [item for item in value if isinstance(item, dict)]
    return []


def import_legacy_export(path: str | Path, stores: Stores) -> dict[str, int]:
    """Import a legacy export file once.

    Returns per-collection import counts (empty if the migration already ran
    or the file does not exist). Records that fail to import are logged and
    skipped; existing ids are left untouched.
    """
    log = stores.migrations
    if log.is_applied(MIGRATION_NAME):
        logger.debug("Legacy migration already applied")
        return {}

    path = Path(path)
    if not path.exists():
        logger.info("No legacy export at %s, nothing to import", path)
        return {}

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.error("Cannot read legacy export %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.error("Legacy export %s is not a JSON object", path)
        return {}

    counts = {"projects": 0, "goals": 0, "tasks": 0, "calendar_events": 0, "user_context": 0}

    for raw in _records(data, "projects"):
        try:
            stores.projects.save_project(Project(id=str(raw["id"]), name=str(raw["name"])))
            counts["projects"] += 1
        except (KeyError, ValueError) as exc:
            logger.warning("Skipping legacy project %r: %s", raw, exc)

    for raw in _records(data, "accountability_goals", "goals"):
        try:
            goal = _goal_from_legacy(raw)
            if stores.goals.get_goal(goal.id) is None:
                stores.goals.add_goal(goal)
                counts["goals"] += 1
        except (KeyError, ValueError) as exc:
            logger.warning("Skipping legacy goal %r: %s", raw.get("id"), exc)

    for raw in _records(data, "tasks"):
        try:
            task_id = str(raw.get("id") or new_id())
            if stores.tasks.get_task(task_id) is None:
                stores.tasks.add_task(
                    str(raw["title"]),
                    str(raw.get("projectId") or "default"),
                    status=_task_status(raw),
                    task_id=task_id,
                    created_at=raw.get("createdAt"),
                )
                counts["tasks"] += 1
        except (KeyError, ValueError) as exc:
            logger.warning("Skipping legacy task %r: %s", raw.get("id"), exc)

    for raw in _records(data, "calendar_events", "calendarEvents"):
        try:
            event = _event_from_legacy(raw)
            if stores.calendar.get_event(event.id) is None:
                stores.calendar.add_event(event)
                counts["calendar_events"] += 1
        except (KeyError, ValueError) as exc:
            logger.warning("Skipping legacy event %r: %s", raw.get("id"), exc)

    user_context = data.get("userContext")
    if isinstance(user_context, dict):
        stores.user_context.save(
            UserContext(
                name=user_context.get("name") or "",
                company=user_context.get("company") or "",
                voice=user_context.get("voice") or "",
                back_story=user_context.get("backStory") or "",
                website_links=_join_links(user_context.get("websiteLinks")),
                additional_info=user_context.get("additionalInfo") or "",
            )
        )
        counts["user_context"] = 1

    log.mark_applied(MIGRATION_NAME)
    logger.info("Legacy export imported from %s: %s", path, counts)
    return counts


def _join_links(value: object) -> str:
    if isinstance(value, list):
        return ", ".join(str(v) for v in value)
    return str(value or "")
