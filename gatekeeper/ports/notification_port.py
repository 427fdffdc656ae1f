"""Notification port — abstract interface for sending messages to the user.

Core modules depend on this protocol, never on a specific messaging provider.
Gatekeeper messages, check-in reminders and deadline warnings all go out
through it.
"""

from __future__ import annotations

from typing import Protocol


class NotificationPort(Protocol):
    """Abstract notification interface used by core modules."""

    async def send_message(self, user_id: int, text: str) -> None: ...
