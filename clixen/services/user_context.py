"""
User Context Resolver — turns an inbound Telegram identity into an
AuthorizationContext, or a definitive reason to stop.

The resolver is read-only. Activity timestamps are written by the separate
InteractionRecorder so the read and write paths stay independently testable.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, FrozenSet, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from clixen.db.models import UserProfile, UNLIMITED_QUOTA
from clixen.services.errors import StoreError
from clixen.services.tiers import Tier, parse_tier, permissions_for

logger = logging.getLogger(__name__)


class ResolutionStatus(str, Enum):
    OK = "ok"
    UNLINKED = "unlinked"
    NEEDS_UPGRADE = "needs_upgrade"
    ERROR = "error"


@dataclass(frozen=True)
class AuthorizationContext:
    """Per-request view of an account. Never persisted."""
    account_id: str
    chat_id: str
    tier: str
    permissions: FrozenSet[str]
    quota_used: int
    quota_limit: int
    trial_active: bool
    display_name: Optional[str] = None

    @property
    def is_unlimited(self) -> bool:
        return self.quota_limit == UNLIMITED_QUOTA

    @property
    def quota_remaining(self) -> Optional[int]:
        if self.is_unlimited:
            return None
        return max(self.quota_limit - self.quota_used, 0)

    def quota_display(self) -> str:
        limit = "∞" if self.is_unlimited else str(self.quota_limit)
        return f"{self.quota_used}/{limit}"


@dataclass(frozen=True)
class Resolution:
    status: ResolutionStatus
    context: Optional[AuthorizationContext] = None
    message: str = ""
    account_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is ResolutionStatus.OK


def is_trial_active(profile: UserProfile, now: datetime) -> bool:
    return bool(
        profile.trial_started_at
        and profile.trial_expires_at
        and now < profile.trial_expires_at
    )


def build_context(profile: UserProfile, chat_id: str, now: datetime) -> AuthorizationContext:
    """Snapshot a profile row into an AuthorizationContext."""
    return AuthorizationContext(
        account_id=profile.id,
        chat_id=str(chat_id),
        tier=parse_tier(profile.tier).value,
        permissions=permissions_for(profile.tier),
        quota_used=profile.quota_used or 0,
        quota_limit=profile.quota_limit if profile.quota_limit is not None else 0,
        trial_active=is_trial_active(profile, now),
        display_name=profile.telegram_first_name,
    )


class ContextCache:
    """
    Short-lived cache of resolved contexts keyed by chat identity.

    Injected into the resolver; anything that changes a profile (quota
    reservation, linking, unlinking) must call `invalidate`.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Resolution]] = {}

    def get(self, chat_id: str) -> Optional[Resolution]:
        entry = self._entries.get(chat_id)
        if entry is None:
            return None
        stored_at, resolution = entry
        if self._clock() - stored_at > self._ttl:
            self._entries.pop(chat_id, None)
            return None
        return resolution

    def put(self, chat_id: str, resolution: Resolution) -> None:
        if self._ttl > 0:
            self._entries[chat_id] = (self._clock(), resolution)

    def invalidate(self, chat_id: Optional[str] = None) -> None:
        if chat_id is None:
            self._entries.clear()
        else:
            self._entries.pop(chat_id, None)


class UserContextResolver:
    """Resolve a chat identity to an AuthorizationContext."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        *,
        app_url: str,
        timeout_seconds: float = 5.0,
        cache: Optional[ContextCache] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._session_factory = session_factory
        self._app_url = app_url.rstrip("/")
        self._timeout = timeout_seconds
        self._cache = cache
        self._clock = clock

    @property
    def cache(self) -> Optional[ContextCache]:
        return self._cache

    async def resolve(self, chat_id) -> Resolution:
        chat_id = str(chat_id)
        if self._cache:
            cached = self._cache.get(chat_id)
            if cached is not None:
                return cached

        try:
            profile = await self.load_profile(chat_id)
        except StoreError as e:
            logger.error("Profile lookup failed for chat %s: %s", chat_id, e.detail)
            return Resolution(ResolutionStatus.ERROR, message=StoreError.user_message)

        resolution = self._classify(profile, chat_id)
        if self._cache and resolution.ok:
            self._cache.put(chat_id, resolution)
        return resolution

    async def load_profile(self, chat_id: str) -> Optional[UserProfile]:
        """Fetch the profile bound to a chat; raises StoreError on failure or timeout."""
        try:
            return await asyncio.wait_for(self._fetch(chat_id), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise StoreError("profile lookup timed out") from e
        except Exception as e:
            raise StoreError(f"profile lookup failed: {type(e).__name__}") from e

    async def _fetch(self, chat_id: str) -> Optional[UserProfile]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(UserProfile).where(UserProfile.telegram_chat_id == chat_id)
            )
            return result.scalar_one_or_none()

    def _classify(self, profile: Optional[UserProfile], chat_id: str) -> Resolution:
        if profile is None:
            return Resolution(
                ResolutionStatus.UNLINKED,
                message=(
                    "🔗 Your Telegram account isn't linked yet.\n\n"
                    f"Sign up at {self._app_url}, open your dashboard and click "
                    "\"Link Telegram Account\", then send me the linking code."
                ),
            )

        ctx = build_context(profile, chat_id, self._clock())
        if ctx.tier == Tier.FREE.value and not ctx.trial_active:
            return Resolution(
                ResolutionStatus.NEEDS_UPGRADE,
                account_id=profile.id,
                message=(
                    "⏳ Your free trial has expired.\n\n"
                    f"Upgrade at {self._app_url}/subscription to keep using Clixen AI."
                ),
            )
        return Resolution(ResolutionStatus.OK, context=ctx, account_id=profile.id)


class InteractionRecorder:
    """Writes last-activity timestamps. Failures are logged, never raised."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        *,
        timeout_seconds: float = 5.0,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._session_factory = session_factory
        self._timeout = timeout_seconds
        self._clock = clock

    async def record(self, account_id: str) -> bool:
        try:
            await asyncio.wait_for(self._touch(account_id), timeout=self._timeout)
            return True
        except Exception:
            logger.warning("Could not record activity for %s", account_id, exc_info=True)
            return False

    async def _touch(self, account_id: str) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(UserProfile)
                .where(UserProfile.id == account_id)
                .values(last_activity_at=self._clock())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
