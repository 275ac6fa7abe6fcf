"""
User context resolver, context cache and interaction recorder tests.
"""

from datetime import datetime, timedelta

import pytest

from clixen.services.errors import StoreError
from clixen.services.user_context import (
    ContextCache,
    InteractionRecorder,
    Resolution,
    ResolutionStatus,
    UserContextResolver,
    build_context,
)
from clixen.db.models import UserProfile


def broken_session_factory():
    raise RuntimeError("connection refused: db.internal:5432")


@pytest.fixture
def resolver(session_factory):
    return UserContextResolver(session_factory, app_url="https://clixen.test")


class TestResolve:
    @pytest.mark.asyncio
    async def test_unbound_chat_is_unlinked(self, resolver):
        result = await resolver.resolve(12345)
        assert result.status is ResolutionStatus.UNLINKED
        assert result.context is None
        assert "https://clixen.test" in result.message

    @pytest.mark.asyncio
    async def test_linked_free_user_in_trial(self, resolver, make_profile):
        profile = await make_profile(telegram_chat_id="12345", quota_used=49)
        result = await resolver.resolve("12345")
        assert result.ok
        ctx = result.context
        assert ctx.account_id == profile.id
        assert ctx.chat_id == "12345"
        assert ctx.tier == "free"
        assert ctx.permissions == {"weather_check", "text_translator"}
        assert ctx.quota_used == 49
        assert ctx.quota_limit == 50
        assert ctx.trial_active

    @pytest.mark.asyncio
    async def test_expired_free_trial_needs_upgrade(self, resolver, make_profile):
        now = datetime.utcnow()
        await make_profile(
            telegram_chat_id="555",
            trial_started_at=now - timedelta(days=10),
            trial_expires_at=now - timedelta(days=3),
        )
        result = await resolver.resolve("555")
        assert result.status is ResolutionStatus.NEEDS_UPGRADE
        assert "/subscription" in result.message
        assert result.context is None

    @pytest.mark.asyncio
    async def test_free_user_without_trial_needs_upgrade(self, resolver, make_profile):
        await make_profile(telegram_chat_id="556", trial_started_at=None, trial_expires_at=None)
        result = await resolver.resolve("556")
        assert result.status is ResolutionStatus.NEEDS_UPGRADE

    @pytest.mark.asyncio
    async def test_paid_tier_with_expired_trial_is_ok(self, resolver, make_profile):
        now = datetime.utcnow()
        await make_profile(
            telegram_chat_id="777",
            tier="pro",
            quota_limit=-1,
            trial_started_at=now - timedelta(days=30),
            trial_expires_at=now - timedelta(days=23),
        )
        result = await resolver.resolve("777")
        assert result.ok
        assert not result.context.trial_active
        assert result.context.is_unlimited
        assert result.context.quota_remaining is None

    @pytest.mark.asyncio
    async def test_store_failure_is_generic_error(self):
        resolver = UserContextResolver(broken_session_factory, app_url="https://clixen.test")
        result = await resolver.resolve("12345")
        assert result.status is ResolutionStatus.ERROR
        assert result.message == StoreError.user_message
        assert "5432" not in result.message
        assert "connection refused" not in result.message

    @pytest.mark.asyncio
    async def test_resolver_does_not_write(self, resolver, make_profile, fetch_profile):
        profile = await make_profile(telegram_chat_id="12345")
        await resolver.resolve("12345")
        assert (await fetch_profile(profile.id)).last_activity_at is None


class TestBuildContext:
    def test_trial_active_requires_start(self):
        now = datetime.utcnow()
        profile = UserProfile(
            id="a", tier="free", quota_used=0, quota_limit=50,
            trial_started_at=None, trial_expires_at=now + timedelta(days=1),
        )
        assert not build_context(profile, "1", now).trial_active

    def test_unknown_tier_is_free(self):
        now = datetime.utcnow()
        profile = UserProfile(id="a", tier="legacy_gold", quota_used=0, quota_limit=50)
        ctx = build_context(profile, "1", now)
        assert ctx.tier == "free"
        assert ctx.permissions == {"weather_check", "text_translator"}


class TestContextCache:
    def test_expires_after_ttl(self):
        clock = [100.0]
        cache = ContextCache(ttl_seconds=5, clock=lambda: clock[0])
        entry = Resolution(ResolutionStatus.OK)
        cache.put("1", entry)
        assert cache.get("1") is entry
        clock[0] += 6
        assert cache.get("1") is None

    def test_invalidate(self):
        cache = ContextCache(ttl_seconds=60)
        cache.put("1", Resolution(ResolutionStatus.OK))
        cache.put("2", Resolution(ResolutionStatus.OK))
        cache.invalidate("1")
        assert cache.get("1") is None
        assert cache.get("2") is not None
        cache.invalidate()
        assert cache.get("2") is None

    def test_zero_ttl_disables_cache(self):
        cache = ContextCache(ttl_seconds=0)
        cache.put("1", Resolution(ResolutionStatus.OK))
        assert cache.get("1") is None

    @pytest.mark.asyncio
    async def test_resolver_uses_injected_cache(self, session_factory, make_profile):
        cache = ContextCache(ttl_seconds=60)
        resolver = UserContextResolver(session_factory, app_url="https://clixen.test", cache=cache)
        await make_profile(telegram_chat_id="42", quota_used=1)
        first = await resolver.resolve("42")
        assert cache.get("42") is first
        assert await resolver.resolve("42") is first

    @pytest.mark.asyncio
    async def test_unlinked_results_are_not_cached(self, session_factory):
        cache = ContextCache(ttl_seconds=60)
        resolver = UserContextResolver(session_factory, app_url="https://clixen.test", cache=cache)
        await resolver.resolve("42")
        assert cache.get("42") is None


class TestInteractionRecorder:
    @pytest.mark.asyncio
    async def test_records_last_activity(self, session_factory, make_profile, fetch_profile):
        profile = await make_profile(telegram_chat_id="12345")
        stamp = datetime(2026, 10, 19, 12, 0, 0)
        recorder = InteractionRecorder(session_factory, clock=lambda: stamp)
        assert await recorder.record(profile.id)
        assert (await fetch_profile(profile.id)).last_activity_at == stamp

    @pytest.mark.asyncio
    async def test_failure_is_swallowed(self):
        recorder = InteractionRecorder(broken_session_factory)
        assert await recorder.record("anything") is False
