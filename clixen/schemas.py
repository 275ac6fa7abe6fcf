"""Pydantic schemas for the Telegram webhook and the dashboard/verification API"""

from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field


# ============ Telegram Update Schemas ============
# Only the fields the pipeline reads; everything else Telegram sends is ignored.

class TelegramUser(BaseModel):
    id: int
    is_bot: bool = False
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: Optional[str] = None


class TelegramChat(BaseModel):
    id: int
    type: str = "private"


class TelegramDocument(BaseModel):
    file_id: str
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    file_size: Optional[int] = None


class TelegramPhotoSize(BaseModel):
    file_id: str
    width: int = 0
    height: int = 0


class TelegramMessage(BaseModel):
    message_id: int
    from_user: Optional[TelegramUser] = Field(None, alias="from")
    chat: TelegramChat
    date: Optional[int] = None
    text: Optional[str] = None
    caption: Optional[str] = None
    document: Optional[TelegramDocument] = None
    photo: Optional[List[TelegramPhotoSize]] = None


class TelegramUpdate(BaseModel):
    update_id: int
    message: Optional[TelegramMessage] = None
    edited_message: Optional[TelegramMessage] = None


# ============ Linking Schemas ============

class LinkTokenResponse(BaseModel):
    token: str
    expires_at: datetime
    bot_username: Optional[str] = None
    instructions: str


class LinkStatusResponse(BaseModel):
    linked: bool
    telegram_chat_id: Optional[str] = None
    telegram_username: Optional[str] = None
    telegram_first_name: Optional[str] = None
    linked_at: Optional[datetime] = None


# ============ Access Token Verification ============

class VerifyRequest(BaseModel):
    token: str = Field(min_length=1)
    workflow: Optional[str] = None  # When set, the token must have been minted for this workflow


class VerifyResponse(BaseModel):
    valid: bool = True
    claims: Dict[str, Any]
