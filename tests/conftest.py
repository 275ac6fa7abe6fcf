"""
Shared fixtures: an isolated in-memory database per test and small fakes for
the LLM and Telegram collaborators.
"""

import json
import os
import uuid

# Configure before anything imports clixen.config
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["JWT_SECRET"] = "test-secret-for-clixen"
os.environ["ENABLE_SCHEDULER"] = "false"
os.environ["LOG_JSON"] = "false"
os.environ.pop("TELEGRAM_BOT_TOKEN", None)
os.environ.pop("TELEGRAM_WEBHOOK_SECRET", None)
os.environ.pop("ACCESS_TOKEN_SECRET", None)

import asyncio
from datetime import datetime, timedelta
from types import SimpleNamespace
from typing import Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from clixen.db.database import build_engine, build_session_maker, init_db
from clixen.db.models import UserProfile
from clixen.services.tiers import permissions_for, quota_limit_for
from clixen.services.user_context import AuthorizationContext


@pytest_asyncio.fixture
async def engine():
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return build_session_maker(engine)


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """Sessions on a file database, one connection each, for concurrency tests."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'clixen.db'}")
    await init_db(bind=engine)
    yield build_session_maker(engine)
    await engine.dispose()


async def add_profile(session_factory, **overrides) -> UserProfile:
    """Insert a profile row; quota_limit follows the tier unless given."""
    now = datetime.utcnow()
    fields = {
        "email": f"{uuid.uuid4().hex[:12]}@example.com",
        "tier": "free",
        "trial_started_at": now - timedelta(days=1),
        "trial_expires_at": now + timedelta(days=6),
        "quota_used": 0,
    }
    fields.update(overrides)
    profile = UserProfile(**fields)
    async with session_factory() as db:
        db.add(profile)
        await db.commit()
    return profile


@pytest.fixture
def make_profile(session_factory):
    """Insert a profile row; returns the stored UserProfile."""

    async def _make(**overrides) -> UserProfile:
        return await add_profile(session_factory, **overrides)

    return _make


@pytest.fixture
def fetch_profile(session_factory):
    async def _fetch(account_id: str) -> Optional[UserProfile]:
        async with session_factory() as db:
            return await db.get(UserProfile, account_id)

    return _fetch


def make_context(
    tier: str = "free",
    quota_used: int = 0,
    quota_limit: Optional[int] = None,
    trial_active: bool = True,
    account_id: str = "acct-1",
    chat_id: str = "12345",
) -> AuthorizationContext:
    return AuthorizationContext(
        account_id=account_id,
        chat_id=chat_id,
        tier=tier,
        permissions=permissions_for(tier),
        quota_used=quota_used,
        quota_limit=quota_limit if quota_limit is not None else quota_limit_for(tier),
        trial_active=trial_active,
    )


class FakeLLM:
    """Stands in for LLMService: returns canned content, or sleeps, or raises."""

    def __init__(self, content: str = "", delay: float = 0.0, error: Optional[Exception] = None):
        self.content = content
        self.delay = delay
        self.error = error
        self.calls = []

    @classmethod
    def returning(cls, **decision) -> "FakeLLM":
        return cls(content=json.dumps(decision))

    def truncate_to_tokens(self, text: str, max_tokens: int) -> str:
        return text[: max_tokens * 4]

    async def complete_with_json(self, messages, **kwargs):
        self.calls.append(messages)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return SimpleNamespace(content=self.content)


@pytest.fixture
def bot():
    """A python-telegram-bot Bot double recording outbound calls."""
    fake = AsyncMock()
    fake.send_message = AsyncMock(return_value=None)
    fake.send_chat_action = AsyncMock(return_value=None)
    fake.username = "ClixenAIBot"
    return fake


def sent_texts(bot) -> list:
    return [call.kwargs["text"] for call in bot.send_message.await_args_list]
