"""
Quota Service — atomic credit reservation against the profiles table.

Reservation is a single conditional UPDATE scoped to one account row, so
concurrent deliveries of the same message cannot push quota_used past
quota_limit. There is no read-then-write.
"""

import asyncio
import logging
from typing import Optional

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from clixen.db.models import UserProfile, UNLIMITED_QUOTA
from clixen.services.errors import StoreError
from clixen.services.user_context import ContextCache

logger = logging.getLogger(__name__)


class QuotaService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        *,
        timeout_seconds: float = 5.0,
        cache: Optional[ContextCache] = None,
    ):
        self._session_factory = session_factory
        self._timeout = timeout_seconds
        self._cache = cache

    async def reserve(self, account_id: str, credits: int = 1, chat_id: Optional[str] = None) -> bool:
        """
        Charge `credits` if the account has room for them.

        Returns False when the limit would be exceeded; raises StoreError
        if the store is unavailable.
        """
        if credits < 1:
            raise ValueError("credits must be positive")
        stmt = (
            update(UserProfile)
            .where(
                UserProfile.id == account_id,
                or_(
                    UserProfile.quota_limit == UNLIMITED_QUOTA,
                    UserProfile.quota_used + credits <= UserProfile.quota_limit,
                ),
            )
            .values(quota_used=UserProfile.quota_used + credits)
            .execution_options(synchronize_session=False)
        )
        reserved = await self._execute(stmt) == 1
        self._invalidate(chat_id)
        if not reserved:
            logger.info("Quota reservation refused for %s (%d credits)", account_id, credits)
        return reserved

    async def refund(self, account_id: str, credits: int = 1, chat_id: Optional[str] = None) -> bool:
        """Return previously reserved credits. Never drives quota_used below zero."""
        stmt = (
            update(UserProfile)
            .where(UserProfile.id == account_id, UserProfile.quota_used >= credits)
            .values(quota_used=UserProfile.quota_used - credits)
            .execution_options(synchronize_session=False)
        )
        refunded = await self._execute(stmt) == 1
        self._invalidate(chat_id)
        return refunded

    async def _execute(self, stmt) -> int:
        try:
            return await asyncio.wait_for(self._run(stmt), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise StoreError("quota update timed out") from e
        except Exception as e:
            raise StoreError(f"quota update failed: {type(e).__name__}") from e

    async def _run(self, stmt) -> int:
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            await db.commit()
            return result.rowcount

    def _invalidate(self, chat_id: Optional[str]) -> None:
        if self._cache and chat_id:
            self._cache.invalidate(chat_id)
