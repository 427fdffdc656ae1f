"""
Goal Gatekeeper — Session Manager.

Owns the check-in queue and the one active GatekeeperSession. The scheduler
submits due goals here; the host routes the user's text here. Whenever the
active session ends, the next queued goal is opened.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import TYPE_CHECKING

from gatekeeper.core.checkin_queue import CheckInQueue
from gatekeeper.core.errors import PersistenceFailure, SessionBusy
from gatekeeper.core.gatekeeper import GatekeeperSession, ReplyOutcome
from gatekeeper.core.mutation_dispatcher import MutationDispatcher
from gatekeeper.data.models import ChatMessage, Goal

if TYPE_CHECKING:
    from gatekeeper.data.db import Stores
    from gatekeeper.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)


class SessionManager:
    """Single owner of the queue and the single-flight lock."""

    def __init__(
        self,
        stores: Stores,
        notifier: NotificationPort | None = None,
        owner_id: int | None = None,
        queue: CheckInQueue | None = None,
        dispatcher: MutationDispatcher | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._stores = stores
        self._notifier = notifier
        self._owner_id = owner_id
        self.queue = queue or CheckInQueue()
        self._dispatcher = dispatcher or MutationDispatcher(stores)
        self._clock = clock
        self._session: GatekeeperSession | None = None

    @property
    def active_session(self) -> GatekeeperSession | None:
        return self._session

    @property
    def active_goal_id(self) -> str | None:
        return self.queue.active_goal_id

    def _new_session(self, goal_id: str, scheduled: bool) -> GatekeeperSession:
        return GatekeeperSession(
            goal_id, self._stores, self._dispatcher, scheduled=scheduled, clock=self._clock,
        )

    # ------------------------------------------------------------------
    # Scheduler side
    # ------------------------------------------------------------------

    async def submit_due_goals(self, goals: Iterable[Goal]) -> int:
        """Queue due goals and start a session if none is active.

        Returns the number of goals newly queued.
        """
        now = self._clock()
        added = sum(1 for g in goals if self.queue.enqueue(g.id, now))
        await self._start_next()
        return added

    async def _start_next(self) -> GatekeeperSession | None:
        """Open the next queued goal's session, if the lock is free."""
        while not self.queue.is_session_active:
            entry = self.queue.dequeue()
            if entry is None:
                return None

            try:
                goal = self._stores.goals.get_goal(entry.goal_id)
            except PersistenceFailure as exc:
                logger.error("Could not load queued goal %s: %s", entry.goal_id, exc)
                continue
            if goal is None or goal.is_completed:
                logger.info("Queued goal %s no longer needs a check-in", entry.goal_id)
                continue

            self.queue.acquire(goal.id)
            session = self._new_session(goal.id, scheduled=True)
            self._session = session
            self._stamp_checked(goal.id)
            try:
                opened = await session.bootstrap()
            except (LookupError, PersistenceFailure) as exc:
                logger.error("Could not open session for goal %s: %s", goal.id, exc)
                self._session = None
                self.queue.release()
                continue

            await self._deliver_all(opened)
            return session
        return None

    def _stamp_checked(self, goal_id: str) -> None:
        """Passive review: opening a scheduled session counts as a check."""
        try:
            self._stores.goals.touch_last_checked(goal_id, self._clock().isoformat())
        except (ValueError, PersistenceFailure) as exc:
            logger.warning("Could not stamp lastChecked for goal %s: %s", goal_id, exc)

    # ------------------------------------------------------------------
    # User side
    # ------------------------------------------------------------------

    async def open_manual(self, goal_id: str) -> tuple[GatekeeperSession, list[ChatMessage]]:
        """Open a check-in the user asked for.

        Returns the session and the messages bootstrap added (empty when the
        goal already has history). Raises SessionBusy if another goal's
        session is active, LookupError if the goal does not exist.
        """
        if self._session is not None and self.queue.active_goal_id == goal_id:
            return self._session, []
        if self.queue.is_session_active:
            raise SessionBusy(
                f"A check-in for goal {self.queue.active_goal_id} is already in progress"
            )

        self.queue.acquire(goal_id)
        session = self._new_session(goal_id, scheduled=False)
        self._session = session
        try:
            opened = await session.bootstrap()
        except Exception:
            self._session = None
            self.queue.release()
            raise
        return session, opened

    async def handle_user_message(self, text: str) -> ReplyOutcome | None:
        """Route text to the active session and deliver its reply.

        Returns None if no session is open. A timed-out call or a reply that
        completes the goal ends the session, after the reply is delivered.
        """
        session = self._session
        if session is None:
            return None

        outcome = await session.handle_reply(text)
        if outcome.discarded:
            return outcome
        await self._deliver(outcome.reply)
        if outcome.timed_out or outcome.completed:
            reason = "timeout" if outcome.timed_out else "goal completed"
            logger.info("Ending session for goal %s (%s)", session.goal_id, reason)
            await self.close_active(expected=session)
        return outcome

    async def close_active(self, expected: GatekeeperSession | None = None) -> bool:
        """Close the active session, release the lock and open the next one."""
        session = self._session
        if session is None or (expected is not None and session is not expected):
            return False
        session.close()
        self._session = None
        self.queue.release()
        await self._start_next()
        return True

    def cancel_goal(self, goal_id: str) -> bool:
        """Drop a goal's pending queue entry before it is deleted or completed.

        Raises SessionBusy if the goal is under the active session.
        """
        if self.queue.active_goal_id == goal_id:
            raise SessionBusy(f"Goal {goal_id} is in an active check-in; close it first")
        return self.queue.remove(goal_id)

    async def _deliver_all(self, messages: list[ChatMessage]) -> None:
        for message in messages:
            await self._deliver(message.text)

    async def _deliver(self, text: str) -> None:
        if self._notifier is None or self._owner_id is None:
            return
        try:
            await self._notifier.send_message(self._owner_id, text)
        except Exception as exc:
            logger.error("Failed to deliver message to %s: %s", self._owner_id, exc)
