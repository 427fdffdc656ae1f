"""
Goal Gatekeeper — Check-In Queue.

FIFO of due goals awaiting a conversation, plus the single-flight lock that
allows at most one active Gatekeeper session at a time. The queue holds at
most one entry per goal id and never holds the goal currently in session.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime

logger = logging.getLogger(__name__)


@dataclass
class QueueEntry:
    goal_id: str
    enqueued_at: datetime


class CheckInQueue:
    """Ordered, de-duplicated queue guarded by a single-flight lock."""

    def __init__(self) -> None:
        self._entries: deque[QueueEntry] = deque()
        self._active_goal_id: str | None = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, goal_id: object) -> bool:
        return any(e.goal_id == goal_id for e in self._entries)

    @property
    def is_session_active(self) -> bool:
        return self._active_goal_id is not None

    @property
    def active_goal_id(self) -> str | None:
        return self._active_goal_id

    def pending_ids(self) -> list[str]:
        return [e.goal_id for e in self._entries]

    def enqueue(self, goal_id: str, enqueued_at: datetime | None = None) -> bool:
        """Append a goal unless it is already queued or in session.

        Returns True if the goal was added.
        """
        if goal_id == self._active_goal_id or goal_id in self:
            return False
        self._entries.append(QueueEntry(goal_id, enqueued_at or datetime.now()))
        logger.info("Goal %s queued for check-in (%d waiting)", goal_id, len(self._entries))
        return True

    def dequeue(self) -> QueueEntry | None:
        """Pop the oldest entry, or None if the queue is empty."""
        if not self._entries:
            return None
        return self._entries.popleft()

    def remove(self, goal_id: str) -> bool:
        """Cancel a pending entry (e.g. the goal was deleted or completed)."""
        before = len(self._entries)
        self._entries = deque(e for e in self._entries if e.goal_id != goal_id)
        removed = len(self._entries) < before
        if removed:
            logger.info("Goal %s removed from check-in queue", goal_id)
        return removed

    # ------------------------------------------------------------------
    # Single-flight lock
    # ------------------------------------------------------------------

    def acquire(self, goal_id: str) -> bool:
        """Mark a session active for `goal_id`. False if another session holds the lock."""
        if self._active_goal_id is not None:
            return self._active_goal_id == goal_id
        self._active_goal_id = goal_id
        self.remove(goal_id)
        return True

    def release(self) -> None:
        if self._active_goal_id is not None:
            logger.debug("Single-flight lock released by goal %s", self._active_goal_id)
        self._active_goal_id = None
