"""
Goal Gatekeeper — Session state machine.

One GatekeeperSession talks to the user about one goal:

    IDLE -> BOOTSTRAPPING -> AWAITING_REPLY -> PROCESSING -> AWAITING_REPLY ... -> CLOSED

Bootstrapping loads the goal's chat log and context and, depending on
whether there is history and whether the scheduler opened the session,
writes an opening message, a single follow-up, or nothing. A model failure
at bootstrap falls back to a local template; a model failure while
processing a reply appends an apology and changes no domain state.

The session never touches the check-in queue; SessionManager owns the lock.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from gatekeeper.core.errors import (
    MalformedResponse,
    PersistenceFailure,
    ProviderTimeout,
    ProviderUnavailable,
    SessionBusy,
)
from gatekeeper.core.goal_context import load_goal_context
from gatekeeper.core.mutation_dispatcher import DispatchResult, MutationDispatcher
from gatekeeper.core.reply_processor import (
    fallback_checkin_message,
    generate_checkin_message,
    process_reply,
)
from gatekeeper.data.models import ChatMessage, Goal, Sender

if TYPE_CHECKING:
    from gatekeeper.data.db import Stores

logger = logging.getLogger(__name__)

APOLOGY_MESSAGE = "I'm sorry, I had trouble processing your response. Can you try again?"


class SessionState(str, Enum):
    IDLE = "idle"
    BOOTSTRAPPING = "bootstrapping"
    AWAITING_REPLY = "awaiting_reply"
    PROCESSING = "processing"
    CLOSED = "closed"


@dataclass
class ReplyOutcome:
    """Result of one user reply.

    `ok` is False when the model failed and an apology was sent instead.
    `discarded` is True when the session closed while the model was thinking;
    nothing was applied and nothing should be shown.
    """

    reply: str
    ok: bool = True
    dispatch: DispatchResult | None = None
    timed_out: bool = False
    discarded: bool = False

    @property
    def completed(self) -> bool:
        return bool(self.dispatch and self.dispatch.completed)


class GatekeeperSession:
    """Conversation about a single goal."""

    def __init__(
        self,
        goal_id: str,
        stores: Stores,
        dispatcher: MutationDispatcher | None = None,
        scheduled: bool = False,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.goal_id = goal_id
        self.scheduled = scheduled
        self.state = SessionState.IDLE
        self.messages: list[ChatMessage] = []
        self._stores = stores
        self._dispatcher = dispatcher or MutationDispatcher(stores)
        self._clock = clock
        self._unsaved: list[ChatMessage] = []

    def __repr__(self) -> str:
        return f"GatekeeperSession(goal_id={self.goal_id!r}, state={self.state.value}, scheduled={self.scheduled})"

    @property
    def is_open(self) -> bool:
        return self.state not in (SessionState.IDLE, SessionState.CLOSED)

    def _load_goal(self) -> Goal:
        goal = self._stores.goals.get_goal(self.goal_id)
        if goal is None:
            raise LookupError(f"Goal {self.goal_id} not found")
        return goal

    # ------------------------------------------------------------------
    # Bootstrapping
    # ------------------------------------------------------------------

    async def bootstrap(self) -> list[ChatMessage]:
        """Open the session and return the messages it added.

        A second call while the first is still running (or after it finished)
        is dropped and returns an empty list.
        """
        if self.state is not SessionState.IDLE:
            logger.debug("Bootstrap for goal %s ignored in state %s", self.goal_id, self.state.value)
            return []
        self.state = SessionState.BOOTSTRAPPING

        try:
            goal = self._load_goal()
        except Exception:
            self.state = SessionState.IDLE
            raise

        try:
            self.messages = self._stores.chat_history.list_messages(self.goal_id)
        except PersistenceFailure as exc:
            logger.error("Could not load chat history for goal %s: %s", self.goal_id, exc)
            self.messages = []

        has_history = bool(self.messages)
        if has_history and not self.scheduled:
            logger.info("Session opened for goal %s with %d existing message(s)",
                        self.goal_id, len(self.messages))
            self.state = SessionState.AWAITING_REPLY
            return []

        follow_up = has_history
        context = load_goal_context(goal, self._stores)
        now = self._clock()
        try:
            text = await generate_checkin_message(context, self.messages, follow_up=follow_up, now=now)
        except (ProviderUnavailable, MalformedResponse) as exc:
            logger.warning("Check-in message generation failed for goal %s, using template: %s",
                           self.goal_id, exc)
            text = fallback_checkin_message(context, follow_up=follow_up, now=now)

        if self.state is SessionState.CLOSED:
            logger.info("Session for goal %s closed during bootstrap; message dropped", self.goal_id)
            return []

        message = self._append(Sender.GATEKEEPER, text)
        self.state = SessionState.AWAITING_REPLY
        logger.info("Session opened for goal %s (%s, %s)", self.goal_id,
                    "scheduled" if self.scheduled else "manual",
                    "follow-up" if follow_up else "opening")
        return [message]

    # ------------------------------------------------------------------
    # Replies
    # ------------------------------------------------------------------

    async def handle_reply(self, text: str) -> ReplyOutcome:
        """Process one user message.

        Raises SessionBusy unless the session is awaiting a reply.
        """
        if self.state is not SessionState.AWAITING_REPLY:
            raise SessionBusy(f"Session for goal {self.goal_id} is {self.state.value}")
        text = text.strip()
        if not text:
            raise ValueError("Reply text is empty")

        self.state = SessionState.PROCESSING
        history = list(self.messages)
        self._append(Sender.USER, text)

        timed_out = False
        try:
            goal = self._load_goal()
            context = load_goal_context(goal, self._stores)
            result = await process_reply(context, text, history, now=self._clock())
        except ProviderTimeout as exc:
            logger.error("Reply processing timed out for goal %s: %s", self.goal_id, exc)
            result, timed_out = None, True
        except (ProviderUnavailable, MalformedResponse, PersistenceFailure, LookupError) as exc:
            logger.error("Reply processing failed for goal %s: %s", self.goal_id, exc)
            result = None

        if self.state is SessionState.CLOSED:
            logger.info("Session for goal %s closed while processing; result discarded", self.goal_id)
            return ReplyOutcome(reply="", ok=result is not None, discarded=True)

        if result is None:
            self._append(Sender.GATEKEEPER, APOLOGY_MESSAGE)
            self.state = SessionState.AWAITING_REPLY
            return ReplyOutcome(reply=APOLOGY_MESSAGE, ok=False, timed_out=timed_out)

        self._append(Sender.GATEKEEPER, result.reply)
        dispatch = self._dispatcher.apply(goal, result, now=self._clock())
        self.state = SessionState.AWAITING_REPLY
        return ReplyOutcome(reply=result.reply, dispatch=dispatch)

    # ------------------------------------------------------------------
    # Closing
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Mark the session closed and retry any messages that failed to save."""
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        self._flush_unsaved()
        logger.info("Session closed for goal %s (%d message(s))", self.goal_id, len(self.messages))

    # ------------------------------------------------------------------
    # Chat log
    # ------------------------------------------------------------------

    def _append(self, sender: Sender, text: str) -> ChatMessage:
        message = ChatMessage(
            sender=sender,
            text=text,
            timestamp=self._clock().isoformat(),
            goal_id=self.goal_id,
        )
        self.messages.append(message)
        if self._unsaved:
            self._unsaved.append(message)
            self._flush_unsaved()
            return message
        try:
            self._stores.chat_history.append(message)
        except PersistenceFailure as exc:
            logger.error("Could not save message for goal %s: %s", self.goal_id, exc)
            self._unsaved.append(message)
        return message

    def _flush_unsaved(self) -> None:
        while self._unsaved:
            try:
                self._stores.chat_history.append(self._unsaved[0])
            except PersistenceFailure as exc:
                logger.error("Still cannot save %d message(s) for goal %s: %s",
                             len(self._unsaved), self.goal_id, exc)
                return
            self._unsaved.pop(0)
