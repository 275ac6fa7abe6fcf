"""
Linking Token Service — binds a Telegram chat to a Clixen account.

Flow:
1. The dashboard calls `issue(account_id)` and shows the 64-char code.
2. The user sends the code to the bot (`/start <code>` or the bare code).
3. `redeem(code, chat_id, profile)` checks-and-sets the token and attaches
   the chat to the account.

Only the SHA-256 of each token is persisted. One account maps to at most
one chat and one chat to at most one account; conflicting redemptions are
rejected rather than overwriting the existing link.
"""

import asyncio
import hashlib
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from clixen.db.models import LinkingToken, UserProfile
from clixen.services.audit_service import AuditAction, AuditLogger
from clixen.services.errors import ClixenError, StoreError
from clixen.services.user_context import ContextCache

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32  # 256 bits, rendered as 64 hex chars
TOKEN_PATTERN = re.compile(r"^[a-f0-9]{64}$")


# ── Errors ──

class LinkingError(ClixenError):
    code = "linking_error"
    user_message = "❌ Linking failed. Please generate a new code from your dashboard."


class TokenInvalid(LinkingError):
    code = "token_invalid"
    user_message = (
        "❌ Invalid linking code.\n\n"
        "Please get a new code from your dashboard and try again."
    )


class TokenExpired(LinkingError):
    code = "token_expired"
    user_message = (
        "⏰ This linking code has expired.\n\n"
        "Codes are valid for 10 minutes. Please generate a new one from your dashboard."
    )


class TokenAlreadyUsed(LinkingError):
    code = "token_already_used"
    user_message = (
        "⚠️ This linking code has already been used.\n\n"
        "Generate a new code from your dashboard if you need to link again."
    )


class AccountAlreadyLinked(LinkingError):
    code = "account_already_linked"
    user_message = (
        "⚠️ This Clixen account is already linked to another Telegram chat.\n\n"
        "Unlink it from the dashboard first, then try again."
    )


class ChatAlreadyLinked(LinkingError):
    code = "chat_already_linked"
    user_message = (
        "⚠️ This Telegram chat is already linked to a different Clixen account.\n\n"
        "Send /unlink first if you want to switch accounts."
    )


# ── Data ──

@dataclass(frozen=True)
class IssuedLinkingToken:
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class ChatProfile:
    """Display fields copied from the Telegram sender on redemption."""
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


@dataclass(frozen=True)
class LinkStatus:
    linked: bool
    chat_id: Optional[str] = None
    username: Optional[str] = None
    first_name: Optional[str] = None
    linked_at: Optional[datetime] = None


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def looks_like_token(text: Optional[str]) -> bool:
    return bool(text) and TOKEN_PATTERN.match(text.strip()) is not None


class LinkingTokenService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        audit: AuditLogger,
        *,
        ttl_minutes: int = 10,
        timeout_seconds: float = 5.0,
        cache: Optional[ContextCache] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._session_factory = session_factory
        self._audit = audit
        self._ttl = timedelta(minutes=ttl_minutes)
        self._timeout = timeout_seconds
        self._cache = cache
        self._clock = clock

    async def issue(self, account_id: str) -> IssuedLinkingToken:
        """
        Mint a new linking code for an account.

        Any outstanding unredeemed codes for the same account are discarded
        so only the most recently displayed code works.
        """
        token = secrets.token_hex(TOKEN_BYTES)
        now = self._clock()
        expires_at = now + self._ttl

        async def _issue():
            async with self._session_factory() as db:
                await db.execute(
                    delete(LinkingToken).where(
                        LinkingToken.account_id == account_id,
                        LinkingToken.redeemed_at.is_(None),
                    )
                )
                db.add(LinkingToken(
                    token_hash=hash_token(token),
                    account_id=account_id,
                    created_at=now,
                    expires_at=expires_at,
                ))
                await db.commit()

        await self._run(_issue(), "issue")
        logger.info("Issued linking token for account %s (expires %s)", account_id, expires_at.isoformat())
        return IssuedLinkingToken(token=token, expires_at=expires_at)

    async def redeem(self, token: str, chat_id, profile: Optional[ChatProfile] = None) -> str:
        """
        Redeem a linking code from a chat. Returns the linked account id.

        Raises a LinkingError subclass when the code cannot be used, or
        StoreError if the store is unavailable.
        """
        chat_id = str(chat_id)
        profile = profile or ChatProfile()
        token = (token or "").strip().lower()
        if not TOKEN_PATTERN.match(token):
            raise TokenInvalid("malformed token")

        account_id = await self._run(self._redeem(hash_token(token), chat_id, profile), "redeem")

        if self._cache:
            self._cache.invalidate(chat_id)
        await self._audit.record(
            account_id,
            chat_id,
            AuditAction.ACCOUNT_LINKED,
            "telegram_account_linked",
            {
                "telegram_username": profile.username,
                "telegram_first_name": profile.first_name,
            },
        )
        logger.info("Linked chat %s to account %s", chat_id, account_id)
        return account_id

    async def _redeem(self, token_hash: str, chat_id: str, profile: ChatProfile) -> str:
        now = self._clock()
        async with self._session_factory() as db:
            result = await db.execute(
                select(LinkingToken).where(LinkingToken.token_hash == token_hash)
            )
            record = result.scalar_one_or_none()
            if record is None:
                raise TokenInvalid("unknown token")
            if record.redeemed_at is not None:
                raise TokenAlreadyUsed()
            if now >= record.expires_at:
                raise TokenExpired()

            account = await db.get(UserProfile, record.account_id)
            if account is None:
                raise TokenInvalid("token owner no longer exists")
            if account.telegram_chat_id is not None and account.telegram_chat_id != chat_id:
                raise AccountAlreadyLinked()

            existing = await db.execute(
                select(UserProfile.id).where(
                    UserProfile.telegram_chat_id == chat_id,
                    UserProfile.id != account.id,
                )
            )
            if existing.scalar_one_or_none() is not None:
                raise ChatAlreadyLinked()

            # Check-and-set: only one concurrent redemption can flip redeemed_at
            claimed = await db.execute(
                update(LinkingToken)
                .where(
                    LinkingToken.id == record.id,
                    LinkingToken.redeemed_at.is_(None),
                    LinkingToken.expires_at > now,
                )
                .values(redeemed_at=now, redeemed_chat_id=chat_id)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                await db.rollback()
                raise TokenAlreadyUsed("lost redemption race")

            await db.execute(
                update(UserProfile)
                .where(UserProfile.id == account.id)
                .values(
                    telegram_chat_id=chat_id,
                    telegram_username=profile.username,
                    telegram_first_name=profile.first_name,
                    telegram_last_name=profile.last_name,
                    telegram_linked_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise ChatAlreadyLinked("unique chat constraint") from e
            return account.id

    async def unlink(self, account_id: str) -> Optional[str]:
        """Detach the chat from an account. Returns the chat id that was unlinked."""

        async def _unlink() -> Optional[str]:
            async with self._session_factory() as db:
                account = await db.get(UserProfile, account_id)
                if account is None or account.telegram_chat_id is None:
                    return None
                chat_id = account.telegram_chat_id
                account.telegram_chat_id = None
                account.telegram_username = None
                account.telegram_first_name = None
                account.telegram_last_name = None
                account.telegram_linked_at = None
                await db.commit()
                return chat_id

        chat_id = await self._run(_unlink(), "unlink")
        if chat_id is None:
            return None
        if self._cache:
            self._cache.invalidate(chat_id)
        await self._audit.record(account_id, chat_id, AuditAction.AUTH_EVENT, "telegram_account_unlinked")
        logger.info("Unlinked chat %s from account %s", chat_id, account_id)
        return chat_id

    async def link_status(self, account_id: str) -> LinkStatus:
        async def _status() -> LinkStatus:
            async with self._session_factory() as db:
                account = await db.get(UserProfile, account_id)
                if account is None or not account.is_linked:
                    return LinkStatus(linked=False)
                return LinkStatus(
                    linked=True,
                    chat_id=account.telegram_chat_id,
                    username=account.telegram_username,
                    first_name=account.telegram_first_name,
                    linked_at=account.telegram_linked_at,
                )

        return await self._run(_status(), "status")

    async def sweep_expired(self) -> int:
        """Delete expired, never-redeemed tokens. Returns the number removed."""
        now = self._clock()

        async def _sweep() -> int:
            async with self._session_factory() as db:
                result = await db.execute(
                    delete(LinkingToken).where(
                        LinkingToken.expires_at <= now,
                        LinkingToken.redeemed_at.is_(None),
                    )
                )
                await db.commit()
                return result.rowcount or 0

        removed = await self._run(_sweep(), "sweep")
        if removed:
            logger.info("Swept %d expired linking tokens", removed)
        return removed

    async def _run(self, coro, operation: str):
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout)
        except LinkingError:
            raise
        except asyncio.TimeoutError as e:
            raise StoreError(f"linking {operation} timed out") from e
        except Exception as e:
            raise StoreError(f"linking {operation} failed: {type(e).__name__}") from e
