"""
Telegram endpoints.

- POST /telegram/webhook: inbound updates from Telegram. Always answers
  200 {"ok": true} once the sender is authenticated as Telegram, so the
  channel never retries on internal errors. Processing runs after the
  response is sent.
- /telegram/link: dashboard side of account linking (issue code, status, unlink).
"""

import hmac
import json
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request, status
from pydantic import ValidationError

from clixen.agent.channel import from_telegram_update
from clixen.agent.pipeline import ClixenRuntime
from clixen.agent.structured_logging import api_log
from clixen.api.auth import get_current_account, get_runtime
from clixen.config import settings
from clixen.db.models import UserProfile
from clixen.schemas import LinkStatusResponse, LinkTokenResponse, TelegramUpdate
from clixen.services.errors import StoreError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/telegram", tags=["telegram"])

ACK = {"ok": True}


@router.post("/webhook")
async def telegram_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_telegram_bot_api_secret_token: Optional[str] = Header(None),
):
    """Receive a Telegram update and hand it to the message pipeline."""
    expected = settings.telegram_webhook_secret
    if expected and not hmac.compare_digest(x_telegram_bot_api_secret_token or "", expected):
        api_log.warning("Rejected webhook call with bad secret token")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")

    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        api_log.warning("Ignoring webhook call with a non-JSON body")
        return ACK

    try:
        update = TelegramUpdate.model_validate(body)
    except ValidationError as e:
        api_log.warning("Ignoring malformed Telegram update", {"errors": e.error_count()})
        return ACK

    message = from_telegram_update(update)
    if message is None:
        logger.debug("Ignoring update %s without a user message", update.update_id)
        return ACK

    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        api_log.error("Dropping update received before startup completed", {"update_id": update.update_id})
        return ACK

    background_tasks.add_task(runtime.pipeline.handle, message)
    return ACK


@router.post("/link", response_model=LinkTokenResponse)
async def create_link_token(
    request: Request,
    account: UserProfile = Depends(get_current_account),
    runtime: ClixenRuntime = Depends(get_runtime),
):
    """Issue a one-time code the user sends to the bot to link their chat."""
    if account.is_linked:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Telegram account already linked",
        )
    try:
        issued = await runtime.linking.issue(account.id)
    except StoreError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not create a linking code, please retry",
        )
    minutes = settings.linking_token_ttl_minutes
    bot = getattr(request.app.state, "bot", None)
    bot_username = bot.username if bot is not None else None
    recipient = f"@{bot_username}" if bot_username else "the Clixen AI bot"
    return LinkTokenResponse(
        token=issued.token,
        expires_at=issued.expires_at,
        bot_username=bot_username,
        instructions=f"Send this code to {recipient} on Telegram within {minutes} minutes.",
    )


@router.get("/link", response_model=LinkStatusResponse)
async def get_link_status(
    account: UserProfile = Depends(get_current_account),
    runtime: ClixenRuntime = Depends(get_runtime),
):
    try:
        link = await runtime.linking.link_status(account.id)
    except StoreError:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Status unavailable")
    return LinkStatusResponse(
        linked=link.linked,
        telegram_chat_id=link.chat_id,
        telegram_username=link.username,
        telegram_first_name=link.first_name,
        linked_at=link.linked_at,
    )


@router.delete("/link")
async def unlink_telegram(
    account: UserProfile = Depends(get_current_account),
    runtime: ClixenRuntime = Depends(get_runtime),
):
    try:
        chat_id = await runtime.linking.unlink(account.id)
    except StoreError:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Unlink failed, please retry")
    if chat_id is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No Telegram account linked")
    return {"status": "unlinked"}
