"""
Chat Responder — sends replies back to Telegram via python-telegram-bot.

Send failures are logged and reported as False; they never propagate into
the pipeline.
"""

import asyncio
import logging
from typing import List, Optional

from telegram import Bot, LinkPreviewOptions
from telegram.constants import ChatAction
from telegram.error import TelegramError

logger = logging.getLogger(__name__)

TELEGRAM_MAX_MESSAGE = 4096


def split_message(text: str, limit: int = TELEGRAM_MAX_MESSAGE) -> List[str]:
    """Split long text on line boundaries into Telegram-sized chunks."""
    if len(text) <= limit:
        return [text]
    chunks: List[str] = []
    current = ""
    for line in text.splitlines(keepends=True):
        while len(line) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:limit])
            line = line[limit:]
        if len(current) + len(line) > limit:
            chunks.append(current)
            current = ""
        current += line
    if current:
        chunks.append(current)
    return chunks


class TelegramResponder:
    def __init__(self, bot: Optional[Bot], *, timeout_seconds: float = 10.0):
        self._bot = bot
        self._timeout = timeout_seconds

    @property
    def enabled(self) -> bool:
        return self._bot is not None

    async def send_message(self, chat_id, text: str, parse_mode: Optional[str] = None) -> bool:
        if self._bot is None:
            logger.warning("Telegram bot not configured; dropping reply to %s", chat_id)
            return False
        try:
            for chunk in split_message(text):
                await asyncio.wait_for(
                    self._bot.send_message(
                        chat_id=int(chat_id),
                        text=chunk,
                        parse_mode=parse_mode,
                        link_preview_options=LinkPreviewOptions(is_disabled=True),
                    ),
                    timeout=self._timeout,
                )
            return True
        except asyncio.TimeoutError:
            logger.error("Telegram send to %s timed out", chat_id)
        except TelegramError as e:
            logger.error(f"Telegram send to {chat_id} failed: {e}")
        return False

    async def send_typing(self, chat_id) -> None:
        if self._bot is None:
            return
        try:
            await asyncio.wait_for(
                self._bot.send_chat_action(chat_id=int(chat_id), action=ChatAction.TYPING),
                timeout=self._timeout,
            )
        except (asyncio.TimeoutError, TelegramError) as e:
            logger.debug(f"Typing indicator failed for {chat_id}: {e}")
