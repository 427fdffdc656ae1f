"""
Goal Gatekeeper — Reply Processor.

Turns a goal's context plus the user's latest message into a validated
structured result: a natural-language reply and the list of mutations the
model intends (goal state, tasks, calendar events). Also writes the opening
and follow-up check-in messages, with a deterministic local template when
the model cannot be used.

This module never mutates state: it returns values, the caller applies them.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from collections.abc import Sequence
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from gatekeeper.config import settings
from gatekeeper.core.due_checker import parse_timestamp
from gatekeeper.core.errors import MalformedResponse, ProviderTimeout, ProviderUnavailable
from gatekeeper.core.goal_context import GoalContext
from gatekeeper.core.llm import complete
from gatekeeper.data.models import ChatMessage, Sender, TaskStatus

logger = logging.getLogger(__name__)

HISTORY_WINDOW = 12

# ---------------------------------------------------------------------------
# Shared JSON contract
# ---------------------------------------------------------------------------


class TaskAction(BaseModel):
    """One task mutation requested by the model.

    JSON example:
    {"action": "update", "taskId": "a1b2", "newStatus": "doing"}
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    action: str
    title: str | None = None
    task_id: str | None = Field(default=None, alias="taskId")
    new_status: str | None = Field(default=None, alias="newStatus")


class CalendarEventAction(BaseModel):
    """One calendar mutation requested by the model.

    JSON example:
    {"action": "create", "title": "Demo rehearsal", "date": "2025-03-01",
     "time": "14:00", "type": "event"}
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    action: str
    event_id: str | None = Field(default=None, alias="eventId")
    title: str | None = None
    date: str | None = None
    time: str | None = None
    type: str | None = None
    is_recurring: bool | None = Field(default=None, alias="isRecurring")
    recurrence_type: str | None = Field(default=None, alias="recurrenceType")
    recurrence_end_date: str | None = Field(default=None, alias="recurrenceEndDate")


class GatekeeperReply(BaseModel):
    """The structured result of processing one user message."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    is_completed: bool = Field(default=False, alias="isCompleted")
    new_current_state: str | None = Field(default=None, alias="newCurrentState")
    tasks: list[TaskAction] = Field(default_factory=list)
    calendar_events: list[CalendarEventAction] = Field(default_factory=list, alias="calendarEvents")
    reply: str

    @field_validator("is_completed", mode="before")
    @classmethod
    def _null_is_false(cls, v: object) -> object:
        return False if v is None else v

    @field_validator("tasks", "calendar_events", mode="before")
    @classmethod
    def _only_dict_items(cls, v: object) -> list:
        if v is None:
            return []
        if isinstance(v, dict):
            v = [v]
        if not isinstance(v, list):
            raise ValueError(f"expected a list, got {type(v).__name__}")
        kept = [item for item in v if isinstance(item, dict)]
        if len(kept) != len(v):
            logger.warning("Skipping %d non-object mutation item(s)", len(v) - len(kept))
        return kept

    @field_validator("reply")
    @classmethod
    def _reply_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("reply must not be empty")
        return v.strip()


class CheckInMessage(BaseModel):
    """Bootstrap variant: only the message to open (or resume) the check-in."""
    message: str

    @field_validator("message")
    @classmethod
    def _message_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("message must not be empty")
        return v.strip()


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

_REPLY_PROMPT = """\
You are an AI assistant acting as an Accountability Gatekeeper.
You're checking in on the user's progress for their goal: "{title}".
{persona}
Current goal details:
- Desired goal: {desired_goal}
- Starting state: {start_state}
- Current state: {current_state}
- End state: {end_state}
- Start date: {start_date}
- Target end date: {end_date}
- {time_left}
- Check-in frequency: {frequency}
{project_line}
{tasks_section}

{events_section}
{additional_info}
Recent conversation:
{history}

Based on the user's message, determine:
1. If the user has completed their goal
2. What the new current state of the goal should be based on their update
3. An encouraging and helpful response that acknowledges their progress
4. If you need to create or update tasks related to this goal
5. If you need to create, update, or delete calendar events/reminders for this goal

When speaking to the user, address them by name if you know it, and maintain the preferred communication style.
Only reference task and event ids that appear above.

Return ONLY a JSON object with these fields:
{{
  "isCompleted": boolean,
  "newCurrentState": "string with the updated current state, or null if unchanged",
  "tasks": [
    {{
      "action": "create" | "complete" | "update",
      "title": "string (only for create)",
      "taskId": "string (only for complete or update)",
      "newStatus": "backlog" | "doing" | "done" (only for update)
    }}
  ],
  "calendarEvents": [
    {{
      "action": "create" | "update" | "delete",
      "eventId": "string (only for update or delete)",
      "title": "string (for create or update)",
      "date": "YYYY-MM-DD (for create or update)",
      "time": "HH:MM (optional)",
      "type": "event" | "milestone",
      "isRecurring": boolean (optional),
      "recurrenceType": "daily" | "weekly" | "monthly" (optional),
      "recurrenceEndDate": "YYYY-MM-DD" (optional)
    }}
  ],
  "reply": "your encouraging response to the user, mentioning any task or calendar changes you made"
}}
"""

_CHECKIN_PROMPT = """\
You are an AI assistant acting as an Accountability Gatekeeper.
{purpose}
{persona}
Goal: "{title}"
- Desired goal: {desired_goal}
- Current state: {current_state}
- End state: {end_state}
- {time_left}
- Check-in frequency: {frequency}
{tasks_section}

{events_section}
{history_section}
Keep it short (under 120 words), warm and specific to the goal. Ask one clear question about progress.
Return ONLY a JSON object: {{"message": "string"}}
"""

_OPENING_PURPOSE = "Write the first message of a check-in conversation about the user's goal."
_FOLLOW_UP_PURPOSE = (
    "The user has talked with you about this goal before. Write a follow-up "
    "check-in message that picks up from the recent conversation."
)


def _format_date(value: str | None) -> str:
    parsed = parse_timestamp(value)
    return parsed.date().isoformat() if parsed else "not set"


def days_remaining(end_date: str | None, now: datetime | None = None) -> int | None:
    """Whole days until the deadline, rounded up; negative when overdue."""
    deadline = parse_timestamp(end_date)
    if deadline is None:
        return None
    if now is None:
        now = datetime.now()
    return math.ceil((deadline - now).total_seconds() / 86400)


def describe_time_left(end_date: str | None, now: datetime | None = None) -> str:
    days = days_remaining(end_date, now)
    if days is None:
        return "No target completion date is set."
    if days < 0:
        return f"The goal is OVERDUE by {-days} day(s)."
    if days == 0:
        return "The target completion date is today."
    return f"{days} day(s) left until the target completion date."


def _persona_lines(context: GoalContext) -> str:
    uc = context.user_context
    lines = []
    if uc.name:
        lines.append(f"The user's name is {uc.name}.")
    if uc.company:
        lines.append(f"They work at {uc.company}.")
    if uc.back_story:
        lines.append(f"Background about the user: {uc.back_story}")
    if context.voice:
        lines.append(f"Preferred communication style: {context.voice}")
    return "\n".join(lines)


def _tasks_section(context: GoalContext) -> str:
    if not context.related_tasks:
        return "There are no open tasks associated with this goal yet."
    lines = [f"There are {len(context.related_tasks)} open tasks related to this goal:"]
    for i, task in enumerate(context.related_tasks, start=1):
        lines.append(f"{i}. [id: {task.id}] {task.title} (Status: {task.status.value})")
    return "\n".join(lines)


def _events_section(context: GoalContext) -> str:
    if not context.related_events:
        return "There are no calendar events associated with this goal yet."
    lines = [f"There are {len(context.related_events)} calendar events related to this goal:"]
    for i, event in enumerate(context.related_events, start=1):
        at = f" at {event.time}" if event.time else ""
        lines.append(f"{i}. [id: {event.id}] {event.title} ({_format_date(event.date)}{at})")
    return "\n".join(lines)


def _history_lines(history: Sequence[ChatMessage]) -> str:
    recent = list(history)[-HISTORY_WINDOW:]
    if not recent:
        return "(no previous messages)"
    names = {Sender.USER: "User", Sender.GATEKEEPER: "Gatekeeper"}
    return "\n".join(f"{names[Sender(m.sender)]}: {m.text}" for m in recent)


def build_reply_prompt(
    context: GoalContext,
    history: Sequence[ChatMessage] = (),
    now: datetime | None = None,
) -> str:
    """System prompt for processing one user reply."""
    goal = context.goal
    project_line = ""
    if goal.project_id:
        project_line = f'This goal is associated with the project "{context.project_name or "Unknown"}".'
    additional = ""
    if context.user_context.additional_info:
        additional = f"Additional context about the user: {context.user_context.additional_info}\n"

    return _REPLY_PROMPT.format(
        title=goal.title,
        persona=_persona_lines(context),
        desired_goal=goal.desired_goal or "(not specified)",
        start_state=goal.start_state or "(not specified)",
        current_state=goal.current_state or "(not specified)",
        end_state=goal.end_state or "(not specified)",
        start_date=_format_date(goal.start_date),
        end_date=_format_date(goal.end_date),
        time_left=describe_time_left(goal.end_date, now),
        frequency=goal.frequency,
        project_line=project_line,
        tasks_section=_tasks_section(context),
        events_section=_events_section(context),
        additional_info=additional,
        history=_history_lines(history),
    )


def build_checkin_prompt(
    context: GoalContext,
    history: Sequence[ChatMessage] = (),
    follow_up: bool = False,
    now: datetime | None = None,
) -> str:
    """System prompt for the opening or follow-up message of a check-in."""
    goal = context.goal
    history_section = ""
    if follow_up:
        history_section = f"Recent conversation:\n{_history_lines(history)}\n"
    return _CHECKIN_PROMPT.format(
        purpose=_FOLLOW_UP_PURPOSE if follow_up else _OPENING_PURPOSE,
        persona=_persona_lines(context),
        title=goal.title,
        desired_goal=goal.desired_goal or "(not specified)",
        current_state=goal.current_state or "(not specified)",
        end_state=goal.end_state or "(not specified)",
        time_left=describe_time_left(goal.end_date, now),
        frequency=goal.frequency,
        tasks_section=_tasks_section(context),
        events_section=_events_section(context),
        history_section=history_section,
    )


# ---------------------------------------------------------------------------
# Response cleaning and parsing
# ---------------------------------------------------------------------------


def _clean_llm_response(raw_text: str) -> str:
    """Remove markdown code block delimiters from LLM's raw response."""
    cleaned_text = (raw_text or "").strip()
    if cleaned_text.startswith("```json"):
        cleaned_text = cleaned_text.removeprefix("```json")
    elif cleaned_text.startswith("```"):
        cleaned_text = cleaned_text.removeprefix("```")
    if cleaned_text.endswith("```"):
        cleaned_text = cleaned_text.removesuffix("```")
    return cleaned_text.strip()


def load_json_object(raw_text: str) -> dict:
    cleaned = _clean_llm_response(raw_text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        logger.error("Failed to parse LLM response as JSON: %s — raw: '%s'", exc, cleaned[:500])
        raise MalformedResponse(f"Response is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedResponse(f"Expected a JSON object, got {type(data).__name__}")
    return data


def parse_gatekeeper_reply(raw_text: str) -> GatekeeperReply:
    """Validate a raw model response. Raises MalformedResponse."""
    data = load_json_object(raw_text)
    try:
        return GatekeeperReply.model_validate(data)
    except ValidationError as exc:
        logger.error("LLM response failed schema validation: %s", exc)
        raise MalformedResponse(f"Response does not match schema: {exc}") from exc


def parse_checkin_message(raw_text: str) -> str:
    data = load_json_object(raw_text)
    try:
        return CheckInMessage.model_validate(data).message
    except ValidationError as exc:
        raise MalformedResponse(f"Check-in message missing: {exc}") from exc


# ---------------------------------------------------------------------------
# Model calls
# ---------------------------------------------------------------------------


async def call_model(
    system: str,
    user_message: str,
    max_tokens: int,
    timeout: float | None = None,
) -> str:
    """Call the model in JSON mode, retrying once on provider errors.

    Raises ProviderTimeout if an attempt exceeds `timeout`, ProviderUnavailable
    if both attempts fail.
    """
    if timeout is None:
        timeout = settings.LLM_TIMEOUT_SECONDS

    last_exc: Exception | None = None
    for attempt in (1, 2):
        try:
            return await asyncio.wait_for(
                complete(system=system, user_message=user_message,
                         max_tokens=max_tokens, json_mode=True),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.error("LLM call timed out after %.0fs", timeout)
            raise ProviderTimeout(f"No response within {timeout:.0f}s") from exc
        except Exception as exc:
            last_exc = exc
            logger.warning("LLM call failed (attempt %d/2): %s", attempt, exc)
    raise ProviderUnavailable(str(last_exc)) from last_exc


async def process_reply(
    context: GoalContext,
    user_message: str,
    history: Sequence[ChatMessage] = (),
    now: datetime | None = None,
    timeout: float | None = None,
) -> GatekeeperReply:
    """Ask the model to interpret the user's update.

    Raises ProviderUnavailable or MalformedResponse; nothing is applied here.
    """
    system = build_reply_prompt(context, history, now)
    raw_text = await call_model(system, user_message, max_tokens=1500, timeout=timeout)
    logger.debug("LLM raw reply: %s", raw_text)
    result = parse_gatekeeper_reply(raw_text)
    logger.info(
        "Reply processed for goal %s: completed=%s, %d task action(s), %d event action(s)",
        context.goal.id, result.is_completed, len(result.tasks), len(result.calendar_events),
    )
    return result


async def generate_checkin_message(
    context: GoalContext,
    history: Sequence[ChatMessage] = (),
    follow_up: bool = False,
    now: datetime | None = None,
    timeout: float | None = None,
) -> str:
    """Opening (or follow-up) message written by the model.

    Raises ProviderUnavailable or MalformedResponse; callers fall back to
    `fallback_checkin_message`.
    """
    system = build_checkin_prompt(context, history, follow_up, now)
    instruction = "Write the follow-up check-in message." if follow_up else "Start the check-in."
    raw_text = await call_model(system, instruction, max_tokens=400, timeout=timeout)
    return parse_checkin_message(raw_text)


def fallback_checkin_message(
    context: GoalContext,
    follow_up: bool = False,
    now: datetime | None = None,
) -> str:
    """Deterministic check-in message built from local data only."""
    goal = context.goal

    tasks_section = ""
    if goal.project_id and context.related_tasks:
        tasks_section = f"\n\nYou have {len(context.related_tasks)} active tasks related to this goal:"
        for i, task in enumerate(context.related_tasks, start=1):
            label = "Backlog" if task.status is TaskStatus.BACKLOG else "In Progress"
            tasks_section += f"\n{i}. {task.title} ({label})"

    events_section = ""
    if context.related_events:
        events_section = f"\n\nYou have {len(context.related_events)} calendar events related to this goal:"
        for i, event in enumerate(context.related_events, start=1):
            at = f" at {event.time}" if event.time else ""
            events_section += f"\n{i}. {event.title} ({_format_date(event.date)}{at})"

    if follow_up:
        greeting = f'Checking in again on your goal: "{goal.title}".'
    else:
        greeting = f'Hi there! I\'m your Accountability Gatekeeper for your goal: "{goal.title}".'

    return (
        f"{greeting}\n\n"
        f'Your current status is: "{goal.current_state or "not recorded yet"}"\n\n'
        f'Your end goal is: "{goal.end_state or goal.desired_goal or goal.title}"\n\n'
        f"{describe_time_left(goal.end_date, now)}"
        f"{tasks_section}{events_section}\n\n"
        "How are you progressing on this goal? Any updates you'd like to share? "
        "I can help manage your tasks and calendar events related to this goal."
    )
