"""
Database models for Clixen AI

Three tables back the routing pipeline:
- profiles: one row per account (tier, trial window, quota counters, linked Telegram chat)
- linking_tokens: single-use codes that bind a Telegram chat to an account
- audit_log: append-only record of every decision the pipeline makes
"""

from datetime import datetime
from typing import Optional
import uuid

from sqlalchemy import (
    String, Text, DateTime, Integer, Boolean, ForeignKey, Index, CheckConstraint
)
from sqlalchemy.orm import Mapped, mapped_column, declarative_base

Base = declarative_base()

UNLIMITED_QUOTA = -1


def _tier_quota_limit(context) -> int:
    """Column default: the plan allowance for the tier being inserted."""
    from clixen.services.tiers import quota_limit_for
    return quota_limit_for(context.get_current_parameters().get("tier"))


class UserProfile(Base):
    """Account record consulted (never computed) by the routing pipeline."""
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)

    # Linked Telegram identity (NULL until a linking token is redeemed)
    telegram_chat_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True, index=True)
    telegram_username: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    telegram_first_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    telegram_last_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    telegram_linked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Subscription (mutated only by billing events)
    tier: Mapped[str] = mapped_column(String(20), default="free", index=True)  # free | starter | pro | team_*
    trial_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    trial_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Quota for the current billing period
    quota_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    quota_limit: Mapped[int] = mapped_column(Integer, default=_tier_quota_limit, nullable=False)  # -1 = unlimited

    last_activity_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(
            "quota_limit = -1 OR quota_used <= quota_limit",
            name="ck_profiles_quota_within_limit",
        ),
        CheckConstraint("quota_used >= 0", name="ck_profiles_quota_non_negative"),
    )

    @property
    def is_linked(self) -> bool:
        return self.telegram_chat_id is not None


class LinkingToken(Base):
    """
    Single-use credential proving the holder controls both the account
    (it was shown in the dashboard) and the chat (it was sent from there).

    Only the SHA-256 of the token is stored.
    """
    __tablename__ = "linking_tokens"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    token_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    account_id: Mapped[str] = mapped_column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    redeemed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)  # NULL = not yet used
    redeemed_chat_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        Index("ix_linking_tokens_expires", "expires_at"),
    )


class AuditRecord(Base):
    """
    Append-only audit log of pipeline decisions.

    Rows are written once and never updated or deleted by the application;
    retention is handled outside the service.
    """
    __tablename__ = "audit_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    # Not a foreign key: "unknown" and "system" are valid sentinels
    account_id: Mapped[str] = mapped_column(String(36), index=True)
    chat_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    action_type: Mapped[str] = mapped_column(String(50), index=True)  # AuditAction value
    action_detail: Mapped[str] = mapped_column(String(255))
    context_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, default=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    __table_args__ = (
        Index("ix_audit_log_account_time", "account_id", "created_at"),
    )
