"""
Audit Logger — append-only record of every decision the pipeline makes.

Writing an audit record must never break the user-facing flow: storage
failures and timeouts are logged and reported as a False return value.
"""

import asyncio
import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from clixen.db.models import AuditRecord
from clixen.services.errors import StoreError

logger = logging.getLogger(__name__)

UNKNOWN_ACCOUNT = "unknown"
SYSTEM_ACCOUNT = "system"


class AuditAction(str, Enum):
    TELEGRAM_MESSAGE = "telegram_message"
    TELEGRAM_COMMAND = "telegram_command"
    INTENT_CLASSIFICATION = "intent_classification"
    PERMISSION_CHECK = "permission_check"
    N8N_WORKFLOW = "n8n_workflow"
    AUTH_EVENT = "auth_event"
    ACCOUNT_LINKED = "account_linked"
    QUOTA_EVENT = "quota_event"
    SYSTEM_ERROR = "system_error"


@dataclass
class AuditStats:
    """Aggregate over an account's most recent audit records."""
    total_actions: int = 0
    successful_actions: int = 0
    failed_actions: int = 0
    actions_by_type: Dict[str, int] = field(default_factory=dict)
    last_activity: Optional[datetime] = None

    @property
    def success_rate(self) -> int:
        if not self.total_actions:
            return 0
        return round(self.successful_actions * 100 / self.total_actions)


class AuditLogger:
    """Writes AuditRecord rows; one short transaction per record."""

    def __init__(self, session_factory: async_sessionmaker, *, timeout_seconds: float = 5.0):
        self._session_factory = session_factory
        self._timeout = timeout_seconds

    async def record(
        self,
        account_id: Optional[str],
        chat_id: Optional[Any],
        action_type: str,
        action_detail: str,
        context: Optional[Dict[str, Any]] = None,
        success: bool = True,
        duration_ms: Optional[int] = None,
    ) -> bool:
        """Append one audit record. Returns False (never raises) if the write failed."""
        entry = AuditRecord(
            account_id=account_id or UNKNOWN_ACCOUNT,
            chat_id=str(chat_id) if chat_id is not None else None,
            action_type=action_type.value if isinstance(action_type, AuditAction) else action_type,
            action_detail=action_detail[:255],
            context_json=json.dumps(context, default=str) if context else None,
            success=success,
            duration_ms=duration_ms,
        )
        try:
            await asyncio.wait_for(self._write(entry), timeout=self._timeout)
            return True
        except asyncio.TimeoutError:
            logger.error("Audit write timed out: %s/%s", entry.action_type, entry.action_detail)
        except Exception:
            logger.exception("Audit write failed: %s/%s", entry.action_type, entry.action_detail)
        return False

    async def _write(self, entry: AuditRecord) -> None:
        async with self._session_factory() as db:
            db.add(entry)
            await db.commit()

    async def recent(self, account_id: str, limit: int = 100) -> List[AuditRecord]:
        try:
            return await asyncio.wait_for(self._recent(account_id, limit), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise StoreError("audit read timed out") from e
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"audit read failed: {type(e).__name__}") from e

    async def _recent(self, account_id: str, limit: int) -> List[AuditRecord]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(AuditRecord)
                .where(AuditRecord.account_id == account_id)
                .order_by(AuditRecord.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def user_stats(self, account_id: str, limit: int = 100) -> Optional[AuditStats]:
        """Statistics for /status; None when the log cannot be read."""
        try:
            records = await self.recent(account_id, limit)
        except StoreError as e:
            logger.warning("Could not load audit stats for %s: %s", account_id, e)
            return None

        successful = sum(1 for r in records if r.success)
        return AuditStats(
            total_actions=len(records),
            successful_actions=successful,
            failed_actions=len(records) - successful,
            actions_by_type=dict(Counter(r.action_type for r in records)),
            last_activity=records[0].created_at if records else None,
        )
