"""
Goal Gatekeeper — Data Models.

Goals, the task board, the calendar and the per-goal chat log persist in
SQLite. The calendar's deadline milestones are a projection of goal state,
never an independent source of truth for a goal's deadline.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

FREQUENCIES = ("minute", "hourly", "daily", "weekly", "monthly")
EVENT_TYPES = ("event", "milestone")
RECURRENCE_TYPES = ("daily", "weekly", "monthly")

# Calendar colors
MILESTONE_COLOR = "#EF4444"   # red: outstanding deadline / milestone
EVENT_COLOR = "#3B82F6"       # blue: regular event
COMPLETED_COLOR = "#10B981"   # green: completed goal deadline


class TaskStatus(str, Enum):
    BACKLOG = "backlog"
    DOING = "doing"
    DONE = "done"


class Sender(str, Enum):
    USER = "user"
    GATEKEEPER = "gatekeeper"


@dataclass
class Goal:
    """A user-declared, time-bound commitment with a review cadence."""

    id: str
    title: str
    desired_goal: str = ""
    start_state: str = ""
    current_state: str = ""
    end_state: str = ""
    frequency: str = "daily"          # minute | hourly | daily | weekly | monthly
    start_date: str = ""              # ISO datetime
    end_date: str = ""                # ISO datetime, the target deadline
    is_completed: bool = False
    last_checked: str | None = None   # ISO datetime, None if never reviewed
    project_id: str | None = None
    voice: str | None = None          # goal-scoped tone directive


@dataclass
class Task:
    """An item on the task board. `completed` is true iff status is done."""

    id: str
    title: str
    project_id: str
    status: TaskStatus = TaskStatus.BACKLOG
    created_at: str = ""

    @property
    def completed(self) -> bool:
        return self.status is TaskStatus.DONE


@dataclass
class CalendarEvent:
    id: str
    title: str
    date: str                          # ISO datetime
    type: str = "event"                # event | milestone
    color: str = EVENT_COLOR
    time: str | None = None            # HH:MM
    project_id: str | None = None
    is_recurring: bool = False
    recurrence_type: str | None = None
    recurrence_end_date: str | None = None


@dataclass
class Project:
    id: str
    name: str


@dataclass
class UserContext:
    """Global tone/identity defaults, read-only for the check-in flow."""

    name: str = ""
    company: str = ""
    voice: str = ""
    back_story: str = ""
    website_links: str = ""
    additional_info: str = ""


@dataclass
class ChatMessage:
    """One entry of a goal's append-only conversation log."""

    sender: Sender
    text: str
    timestamp: str
    goal_id: str = ""
    id: int | None = field(default=None, compare=False)
