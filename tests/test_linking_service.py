"""
Linking token service tests: issue, redeem, conflicts, unlink and sweep.
"""

import asyncio
import json
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from conftest import add_profile
from clixen.db.models import AuditRecord, LinkingToken, UserProfile
from clixen.services.audit_service import AuditLogger
from clixen.services.errors import StoreError
from clixen.services.linking_service import (
    AccountAlreadyLinked,
    ChatAlreadyLinked,
    ChatProfile,
    LinkingTokenService,
    TOKEN_PATTERN,
    TokenAlreadyUsed,
    TokenExpired,
    TokenInvalid,
    hash_token,
    looks_like_token,
)
from clixen.services.user_context import ContextCache, Resolution, ResolutionStatus


class Clock:
    def __init__(self):
        self.now = datetime(2026, 10, 19, 9, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def audit(session_factory):
    return AuditLogger(session_factory)


@pytest.fixture
def linking(session_factory, audit, clock):
    return LinkingTokenService(session_factory, audit, ttl_minutes=10, clock=clock)


async def count_tokens(session_factory) -> int:
    async with session_factory() as db:
        return (await db.execute(select(func.count(LinkingToken.id)))).scalar_one()


class TestIssue:
    @pytest.mark.asyncio
    async def test_token_shape_and_expiry(self, linking, make_profile, clock):
        account = await make_profile()
        issued = await linking.issue(account.id)
        assert TOKEN_PATTERN.match(issued.token)
        assert issued.expires_at == clock.now + timedelta(minutes=10)

    @pytest.mark.asyncio
    async def test_only_hash_is_stored(self, linking, make_profile, session_factory):
        account = await make_profile()
        issued = await linking.issue(account.id)
        async with session_factory() as db:
            stored = (await db.execute(select(LinkingToken))).scalar_one()
        assert stored.token_hash == hash_token(issued.token)
        assert stored.token_hash != issued.token

    @pytest.mark.asyncio
    async def test_new_token_replaces_outstanding_one(self, linking, make_profile, session_factory):
        account = await make_profile()
        first = await linking.issue(account.id)
        second = await linking.issue(account.id)
        assert await count_tokens(session_factory) == 1
        with pytest.raises(TokenInvalid):
            await linking.redeem(first.token, "12345")
        assert await linking.redeem(second.token, "12345") == account.id

    def test_looks_like_token(self):
        assert looks_like_token("a" * 64)
        assert not looks_like_token("A" * 64)
        assert not looks_like_token("a" * 63)
        assert not looks_like_token("hello")
        assert not looks_like_token(None)


class TestRedeem:
    @pytest.mark.asyncio
    async def test_binds_chat_and_profile_fields(self, linking, make_profile, fetch_profile, clock):
        account = await make_profile()
        issued = await linking.issue(account.id)
        profile = ChatProfile(username="ana", first_name="Ana", last_name="Silva")

        assert await linking.redeem(issued.token, 12345, profile) == account.id

        stored = await fetch_profile(account.id)
        assert stored.telegram_chat_id == "12345"
        assert stored.telegram_username == "ana"
        assert stored.telegram_first_name == "Ana"
        assert stored.telegram_last_name == "Silva"
        assert stored.telegram_linked_at == clock.now

    @pytest.mark.asyncio
    async def test_writes_account_linked_audit(self, linking, make_profile, session_factory):
        account = await make_profile()
        issued = await linking.issue(account.id)
        await linking.redeem(issued.token, "12345", ChatProfile(username="ana"))
        async with session_factory() as db:
            record = (await db.execute(select(AuditRecord))).scalar_one()
        assert record.action_type == "account_linked"
        assert record.account_id == account.id
        assert record.chat_id == "12345"
        assert record.success
        assert json.loads(record.context_json)["telegram_username"] == "ana"

    @pytest.mark.asyncio
    async def test_second_redemption_fails(self, linking, make_profile):
        account = await make_profile()
        issued = await linking.issue(account.id)
        await linking.redeem(issued.token, "12345")
        with pytest.raises(TokenAlreadyUsed):
            await linking.redeem(issued.token, "12345")

    @pytest.mark.asyncio
    async def test_expired_token_fails_even_if_unused(self, linking, make_profile, fetch_profile, clock):
        account = await make_profile()
        issued = await linking.issue(account.id)
        clock.advance(minutes=10, seconds=1)
        with pytest.raises(TokenExpired):
            await linking.redeem(issued.token, "12345")
        assert (await fetch_profile(account.id)).telegram_chat_id is None

    @pytest.mark.asyncio
    async def test_unknown_token(self, linking):
        with pytest.raises(TokenInvalid):
            await linking.redeem("f" * 64, "12345")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("token", ["", "short", "g" * 64, "a" * 65])
    async def test_malformed_token(self, linking, token):
        with pytest.raises(TokenInvalid):
            await linking.redeem(token, "12345")

    @pytest.mark.asyncio
    async def test_account_already_linked_elsewhere(self, linking, make_profile, fetch_profile):
        account = await make_profile(telegram_chat_id="111")
        issued = await linking.issue(account.id)
        with pytest.raises(AccountAlreadyLinked):
            await linking.redeem(issued.token, "222")
        assert (await fetch_profile(account.id)).telegram_chat_id == "111"

    @pytest.mark.asyncio
    async def test_chat_already_linked_to_other_account(self, linking, make_profile, fetch_profile):
        await make_profile(telegram_chat_id="12345")
        other = await make_profile()
        issued = await linking.issue(other.id)
        with pytest.raises(ChatAlreadyLinked):
            await linking.redeem(issued.token, "12345")
        assert (await fetch_profile(other.id)).telegram_chat_id is None

    @pytest.mark.asyncio
    async def test_conflict_leaves_token_unredeemed(self, linking, make_profile, session_factory):
        await make_profile(telegram_chat_id="12345")
        other = await make_profile()
        issued = await linking.issue(other.id)
        with pytest.raises(ChatAlreadyLinked):
            await linking.redeem(issued.token, "12345")
        assert await linking.redeem(issued.token, "999") == other.id

    @pytest.mark.asyncio
    async def test_relinking_same_chat_is_allowed(self, linking, make_profile):
        account = await make_profile(telegram_chat_id="12345")
        issued = await linking.issue(account.id)
        assert await linking.redeem(issued.token, "12345") == account.id

    @pytest.mark.asyncio
    async def test_invalidates_context_cache(self, session_factory, audit, make_profile, clock):
        cache = ContextCache(ttl_seconds=60)
        cache.put("12345", Resolution(ResolutionStatus.OK))
        linking = LinkingTokenService(session_factory, audit, cache=cache, clock=clock)
        account = await make_profile()
        issued = await linking.issue(account.id)
        await linking.redeem(issued.token, "12345")
        assert cache.get("12345") is None

    @pytest.mark.asyncio
    async def test_store_failure(self, audit):
        def broken():
            raise RuntimeError("db down")

        linking = LinkingTokenService(broken, audit)
        with pytest.raises(StoreError):
            await linking.redeem("a" * 64, "12345")


class TestConcurrentRedeem:
    @pytest.mark.asyncio
    async def test_exactly_one_chat_wins(self, file_session_factory, clock):
        linking = LinkingTokenService(file_session_factory, AuditLogger(file_session_factory), clock=clock)
        account = await add_profile(file_session_factory)
        issued = await linking.issue(account.id)

        results = await asyncio.gather(
            *[linking.redeem(issued.token, str(100 + i)) for i in range(4)],
            return_exceptions=True,
        )

        winners = [i for i, result in enumerate(results) if result == account.id]
        assert len(winners) == 1
        losers = [result for result in results if result != account.id]
        assert all(isinstance(result, TokenAlreadyUsed) for result in losers)

        async with file_session_factory() as db:
            linked = await db.get(UserProfile, account.id)
            token = (await db.execute(select(LinkingToken))).scalar_one()
        assert linked.telegram_chat_id == str(100 + winners[0])
        assert token.redeemed_chat_id == linked.telegram_chat_id


class TestUnlinkAndStatus:
    @pytest.mark.asyncio
    async def test_unlink(self, linking, make_profile, fetch_profile, session_factory):
        account = await make_profile(telegram_chat_id="12345", telegram_username="ana")
        assert await linking.unlink(account.id) == "12345"
        stored = await fetch_profile(account.id)
        assert stored.telegram_chat_id is None
        assert stored.telegram_username is None
        async with session_factory() as db:
            record = (await db.execute(select(AuditRecord))).scalar_one()
        assert record.action_type == "auth_event"
        assert record.action_detail == "telegram_account_unlinked"

    @pytest.mark.asyncio
    async def test_unlink_when_not_linked(self, linking, make_profile):
        account = await make_profile()
        assert await linking.unlink(account.id) is None

    @pytest.mark.asyncio
    async def test_link_status(self, linking, make_profile):
        linked = await make_profile(telegram_chat_id="12345", telegram_first_name="Ana")
        unlinked = await make_profile()
        status = await linking.link_status(linked.id)
        assert status.linked
        assert status.chat_id == "12345"
        assert status.first_name == "Ana"
        assert not (await linking.link_status(unlinked.id)).linked


class TestSweep:
    @pytest.mark.asyncio
    async def test_removes_only_expired_unredeemed(self, linking, make_profile, session_factory, clock):
        a = await make_profile()
        b = await make_profile()
        c = await make_profile()
        await linking.issue(a.id)
        redeemed = await linking.issue(b.id)
        await linking.redeem(redeemed.token, "200")
        clock.advance(minutes=11)
        await linking.issue(c.id)

        assert await linking.sweep_expired() == 1
        assert await count_tokens(session_factory) == 2
