"""Telegram notification adapter — implements NotificationPort.

Wraps a telegram.Bot instance to satisfy the NotificationPort protocol.
Messages longer than Telegram's limit are split on line boundaries.
"""

from __future__ import annotations

import logging

from telegram import Bot
from telegram.constants import MessageLimit

logger = logging.getLogger(__name__)


def split_message(text: str, limit: int = MessageLimit.MAX_TEXT_LENGTH) -> list[str]:
    """Split text into chunks no longer than `limit`, preferring newlines."""
    chunks: list[str] = []
    while len(text) > limit:
        cut = text.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(text[:cut])
        text = text[cut:].lstrip("\n")
    if text:
        chunks.append(text)
    return chunks


class TelegramNotifier:
    """Telegram implementation of NotificationPort."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def send_message(self, user_id: int, text: str) -> None:
        for chunk in split_message(text):
            await self._bot.send_message(chat_id=user_id, text=chunk)
        logger.debug("Sent %d char(s) to %d", len(text), user_id)
