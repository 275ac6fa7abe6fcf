"""
Channel data objects — the normalised inbound message the pipeline works on.

Telegram updates are converted here so nothing past this point touches the
raw update payload.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from clixen.schemas import TelegramMessage, TelegramUpdate
from clixen.services.intent_classifier import Attachment


@dataclass
class InboundMessage:
    """Normalised inbound Telegram message."""

    identity: str                 # Sender's Telegram user id; the key accounts are linked to
    chat_id: str                  # Where replies go
    text: str = ""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: Optional[str] = None
    attachment: Optional[Attachment] = None

    @property
    def message_type(self) -> str:
        if self.attachment:
            return self.attachment.kind
        return "text"

    @property
    def is_command(self) -> bool:
        return self.text.startswith("/")


def _attachment_of(msg: TelegramMessage) -> Optional[Attachment]:
    if msg.document:
        return Attachment(
            kind="document",
            file_id=msg.document.file_id,
            file_name=msg.document.file_name,
            mime_type=msg.document.mime_type,
        )
    if msg.photo:
        largest = max(msg.photo, key=lambda p: p.width * p.height)
        return Attachment(kind="photo", file_id=largest.file_id)
    return None


def from_telegram_update(update: TelegramUpdate) -> Optional[InboundMessage]:
    """Extract an InboundMessage, or None for updates the bot ignores."""
    msg = update.message
    if msg is None or msg.from_user is None or msg.from_user.is_bot:
        return None
    text = (msg.text or msg.caption or "").strip()
    attachment = _attachment_of(msg)
    if not text and attachment is None:
        return None
    sender = msg.from_user
    return InboundMessage(
        identity=str(sender.id),
        chat_id=str(msg.chat.id),
        text=text,
        first_name=sender.first_name,
        last_name=sender.last_name,
        username=sender.username,
        attachment=attachment,
    )
