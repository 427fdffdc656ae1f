"""
Goal Gatekeeper — Goal intake and edits.

A free-text goal description is parsed once by the LLM into structured
fields; after that the goal is edited, completed or deleted directly.
Every change to title, completion or end date re-runs the deadline sync.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from gatekeeper.core.deadline_sync import sync_goal_deadline
from gatekeeper.core.due_checker import parse_timestamp
from gatekeeper.core.errors import MalformedResponse, PersistenceFailure
from gatekeeper.core.reply_processor import call_model, load_json_object
from gatekeeper.data.db import new_id
from gatekeeper.data.models import FREQUENCIES, Goal

if TYPE_CHECKING:
    from gatekeeper.core.session_manager import SessionManager
    from gatekeeper.data.db import Stores

logger = logging.getLogger(__name__)

DEFAULT_GOAL_DURATION = timedelta(days=30)

SYSTEM_PROMPT = """\
You are an AI assistant that helps users create structured goals.
Take the user's goal description and extract the following information:
1. A concise title for the goal
2. The desired goal in the user's own words
3. The current starting state
4. What the current state is (usually same as starting state initially)
5. The end state (what success looks like)
6. The appropriate check-in frequency (minute, hourly, daily, weekly, or monthly)
7. A reasonable end date (in ISO string format)
8. Optionally, suggest a tone of voice (e.g., "encouraging", "direct", "friendly")

Today's date is {today}.

Format your response as a JSON object with these fields:
{{
  "title": "string",
  "desiredGoal": "string",
  "startState": "string",
  "currentState": "string",
  "endState": "string",
  "frequency": "minute|hourly|daily|weekly|monthly",
  "endDate": "ISO date string",
  "suggestedVoice": "string (optional)"
}}
"""


class GoalDraft(BaseModel):
    """Structured goal fields extracted from a free-text description.

    JSON example:
    {"title": "Ship v1", "desiredGoal": "Release the first version",
     "startState": "Prototype", "currentState": "Prototype",
     "endState": "v1 live", "frequency": "daily",
     "endDate": "2025-04-01T00:00:00Z", "suggestedVoice": "direct"}
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str
    desired_goal: str = Field(default="", alias="desiredGoal")
    start_state: str = Field(default="", alias="startState")
    current_state: str = Field(default="", alias="currentState")
    end_state: str = Field(default="", alias="endState")
    frequency: str = "daily"
    end_date: str | None = Field(default=None, alias="endDate")
    suggested_voice: str | None = Field(default=None, alias="suggestedVoice")

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("title must not be empty")
        return v.strip()

    @field_validator("desired_goal", "start_state", "current_state", "end_state", mode="before")
    @classmethod
    def _null_is_empty(cls, v: object) -> object:
        return "" if v is None else v

    @field_validator("frequency", mode="before")
    @classmethod
    def _known_frequency(cls, v: object) -> str:
        value = str(v or "").strip().lower()
        if value not in FREQUENCIES:
            logger.warning("Invalid frequency %r from LLM, defaulting to daily", v)
            return "daily"
        return value


async def parse_goal_description(text: str, now: datetime | None = None) -> GoalDraft:
    """Ask the LLM to structure a goal description.

    Raises ProviderUnavailable or MalformedResponse.
    """
    if now is None:
        now = datetime.now()
    system = SYSTEM_PROMPT.format(today=now.date().isoformat())
    raw_text = await call_model(system, f"I want to: {text}", max_tokens=600)
    logger.debug("LLM raw goal intake: %s", raw_text)
    data = load_json_object(raw_text)
    try:
        return GoalDraft.model_validate(data)
    except ValidationError as exc:
        raise MalformedResponse(f"Goal intake does not match schema: {exc}") from exc


def _resolve_end_date(value: str | None, now: datetime) -> str:
    parsed = parse_timestamp(value)
    if parsed is None:
        if value:
            logger.warning("Invalid endDate %r, defaulting to %d days out", value, DEFAULT_GOAL_DURATION.days)
        parsed = now + DEFAULT_GOAL_DURATION
    return parsed.isoformat()


class GoalService:
    """Creation, edits, completion and deletion of goals."""

    def __init__(
        self,
        stores: Stores,
        manager: SessionManager | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._stores = stores
        self._manager = manager
        self._clock = clock

    def create_from_draft(
        self,
        draft: GoalDraft,
        project_id: str | None = None,
        voice: str | None = None,
        now: datetime | None = None,
    ) -> Goal:
        """Store a new goal and its deadline milestone."""
        if now is None:
            now = self._clock()
        stamp = now.isoformat()
        goal = Goal(
            id=new_id(),
            title=draft.title,
            desired_goal=draft.desired_goal,
            start_state=draft.start_state,
            current_state=draft.current_state or draft.start_state,
            end_state=draft.end_state,
            frequency=draft.frequency,
            start_date=stamp,
            end_date=_resolve_end_date(draft.end_date, now),
            last_checked=stamp,
            project_id=project_id,
            voice=(voice or draft.suggested_voice or "").strip() or None,
        )
        self._stores.goals.add_goal(goal)
        self._sync_deadline(goal)
        return goal

    async def create_from_text(
        self,
        text: str,
        project_id: str | None = None,
        voice: str | None = None,
        now: datetime | None = None,
    ) -> Goal:
        if now is None:
            now = self._clock()
        draft = await parse_goal_description(text, now)
        return self.create_from_draft(draft, project_id=project_id, voice=voice, now=now)

    def edit_goal(self, goal_id: str, **updates: object) -> Goal:
        """Apply direct user edits.

        Raises ValueError for unknown goals or fields, a blank title or an
        unknown frequency. Title, end date and completion changes re-run the
        deadline sync.
        """
        if "title" in updates:
            title = str(updates["title"] or "").strip()
            if not title:
                raise ValueError("title must not be empty")
            updates["title"] = title
        if "frequency" in updates:
            frequency = str(updates["frequency"] or "").strip().lower()
            if frequency not in FREQUENCIES:
                raise ValueError(f"frequency must be one of: {', '.join(FREQUENCIES)}")
            updates["frequency"] = frequency
        if "voice" in updates:
            updates["voice"] = str(updates["voice"] or "").strip() or None
        if "end_date" in updates:
            updates["end_date"] = _resolve_end_date(str(updates["end_date"] or ""), self._clock())

        goal = self._stores.goals.update_goal(goal_id, **updates)
        if updates.keys() & {"title", "end_date", "is_completed"}:
            self._sync_deadline(goal)
        return goal

    def set_completed(self, goal_id: str, completed: bool = True) -> Goal:
        """Mark a goal done (or reopen it); the completion counts as a check.

        Raises SessionBusy when completing a goal under the active session.
        """
        if completed and self._manager is not None:
            self._manager.cancel_goal(goal_id)
        return self.edit_goal(
            goal_id, is_completed=completed, last_checked=self._clock().isoformat(),
        )

    def delete_goal(self, goal_id: str) -> bool:
        """Delete a goal and its chat log.

        Raises SessionBusy while the goal is under the active session.
        """
        if self._manager is not None:
            self._manager.cancel_goal(goal_id)
        deleted = self._stores.goals.delete_goal(goal_id)
        if deleted:
            self._stores.chat_history.delete_for_goal(goal_id)
        return deleted

    def _sync_deadline(self, goal: Goal) -> None:
        try:
            sync_goal_deadline(goal, self._stores.calendar)
        except PersistenceFailure as exc:
            logger.error("Deadline sync failed for goal %s: %s", goal.id, exc)
