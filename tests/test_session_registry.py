"""Tests for the in-process session registry.

The Redis registry runs the same operations as Lua scripts; these tests pin
the shared contract: single-use artifacts, refresh-token rotation with reuse
detection, revocation cascades, TTL expiry and token-bucket rate limits.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from vaultauth.storage.errors import InvalidRefresh, RefreshTokenReuseDetected
from vaultauth.storage.models import MfaChallenge, SessionMetadata
from vaultauth.storage.session_registry import MemorySessionRegistry


@pytest.fixture
def registry(clock):
    return MemorySessionRegistry(clock=clock)


async def _session_with_refresh(registry, user_id="user-1", jti="jti-0", ttl=3600):
    session = await registry.create_session(user_id, SessionMetadata(ip_address="10.0.0.1"), ttl)
    await registry.set_current_refresh(session.token_family, jti, ttl)
    return session


class TestSessions:
    async def test_create_and_list(self, registry):
        first = await registry.create_session("user-1", SessionMetadata(), 3600)
        second = await registry.create_session("user-1", SessionMetadata(), 3600)
        await registry.create_session("user-2", SessionMetadata(), 3600)

        sessions = await registry.list_user_sessions("user-1")
        assert {item.id for item in sessions} == {first.id, second.id}
        assert first.token_family != second.token_family
        assert await registry.is_session_active(first.id)

    async def test_session_expires_with_ttl(self, registry, clock):
        session = await registry.create_session("user-1", SessionMetadata(), 60)
        clock.advance(61)
        assert await registry.get_session(session.id) is None
        assert not await registry.is_session_active(session.id)
        assert await registry.list_user_sessions("user-1") == []

    async def test_touch_updates_last_seen(self, registry, clock):
        session = await registry.create_session("user-1", SessionMetadata(), 3600)
        clock.advance(120)
        await registry.touch_session(session.id)
        touched = await registry.get_session(session.id)
        assert touched.last_seen_at > session.last_seen_at

    async def test_revoke_session_revokes_its_family(self, registry):
        session = await _session_with_refresh(registry)
        assert await registry.revoke_session(session.id)
        assert not await registry.is_session_active(session.id)
        assert not await registry.is_refresh_current(session.token_family, "jti-0")
        assert not await registry.revoke_session(session.id)

    async def test_revoke_all_except_current(self, registry):
        keep = await registry.create_session("user-1", SessionMetadata(), 3600)
        await registry.create_session("user-1", SessionMetadata(), 3600)
        await registry.create_session("user-1", SessionMetadata(), 3600)

        revoked = await registry.revoke_all_sessions_for_user("user-1", except_session_id=keep.id)

        assert revoked == 2
        remaining = await registry.list_user_sessions("user-1")
        assert [item.id for item in remaining] == [keep.id]


class TestRefreshRotation:
    async def test_rotation_advances_current_jti(self, registry):
        session = await _session_with_refresh(registry)
        await registry.rotate_refresh_token(session.id, session.token_family, "jti-0", "jti-1", 3600)

        assert await registry.is_refresh_current(session.token_family, "jti-1")
        assert not await registry.is_refresh_current(session.token_family, "jti-0")

    async def test_reuse_revokes_family_and_session(self, registry):
        session = await _session_with_refresh(registry)
        await registry.rotate_refresh_token(session.id, session.token_family, "jti-0", "jti-1", 3600)

        with pytest.raises(RefreshTokenReuseDetected) as excinfo:
            await registry.rotate_refresh_token(
                session.id, session.token_family, "jti-0", "jti-2", 3600
            )
        assert excinfo.value.family_id == session.token_family
        assert not await registry.is_session_active(session.id)
        # The legitimate holder is locked out too
        with pytest.raises(InvalidRefresh):
            await registry.rotate_refresh_token(
                session.id, session.token_family, "jti-1", "jti-3", 3600
            )

    async def test_concurrent_rotation_has_one_winner(self, registry):
        session = await _session_with_refresh(registry)

        async def attempt(new_jti):
            try:
                await registry.rotate_refresh_token(
                    session.id, session.token_family, "jti-0", new_jti, 3600
                )
                return "ok"
            except (RefreshTokenReuseDetected, InvalidRefresh):
                return "rejected"

        outcomes = await asyncio.gather(*(attempt(f"jti-{i}") for i in range(1, 6)))
        assert outcomes.count("ok") == 1

    async def test_rotation_rejects_mismatched_session(self, registry):
        session = await _session_with_refresh(registry)
        with pytest.raises(InvalidRefresh):
            await registry.rotate_refresh_token(
                "other-session", session.token_family, "jti-0", "jti-1", 3600
            )

    async def test_set_current_on_unknown_family(self, registry):
        with pytest.raises(InvalidRefresh):
            await registry.set_current_refresh("missing", "jti", 60)

    async def test_revoke_family_ends_session(self, registry):
        session = await _session_with_refresh(registry)
        assert await registry.revoke_family(session.token_family) == 1
        assert not await registry.is_session_active(session.id)


class TestSingleUseArtifacts:
    async def test_authorization_code_consumed_once(self, registry):
        await registry.put_authorization_code("code-1", {"user_id": "u"}, 600)
        assert await registry.consume_authorization_code("code-1") == {"user_id": "u"}
        assert await registry.consume_authorization_code("code-1") is None

    async def test_authorization_code_expires(self, registry, clock):
        await registry.put_authorization_code("code-1", {"user_id": "u"}, 600)
        clock.advance(601)
        assert await registry.consume_authorization_code("code-1") is None

    async def test_one_time_token_scoped_by_purpose(self, registry):
        await registry.put_one_time_token("email_verify", "tok", "user-1", 60)
        assert await registry.pop_one_time_token("password_reset", "tok") is None
        assert await registry.pop_one_time_token("email_verify", "tok") == "user-1"
        assert await registry.pop_one_time_token("email_verify", "tok") is None


class TestMfaChallenges:
    def _challenge(self, clock):
        now = datetime.fromtimestamp(clock(), tz=timezone.utc)
        return MfaChallenge(
            id="challenge-1",
            user_id="user-1",
            methods=["totp"],
            expires_at=now + timedelta(seconds=300),
            created_at=now,
        )

    async def test_failures_exhaust_challenge_at_cap(self, registry, clock):
        await registry.put_mfa_challenge(self._challenge(clock), 300)

        results = [await registry.record_mfa_failure("challenge-1", 5) for _ in range(5)]

        assert results[:4] == [(1, False), (2, False), (3, False), (4, False)]
        assert results[4] == (5, True)
        assert await registry.get_mfa_challenge("challenge-1") is None

    async def test_unknown_challenge_counts_as_exhausted(self, registry):
        assert await registry.record_mfa_failure("missing", 5) == (0, True)

    async def test_consume_is_single_use(self, registry, clock):
        await registry.put_mfa_challenge(self._challenge(clock), 300)
        assert (await registry.consume_mfa_challenge("challenge-1")).user_id == "user-1"
        assert await registry.consume_mfa_challenge("challenge-1") is None

    async def test_challenge_expires(self, registry, clock):
        await registry.put_mfa_challenge(self._challenge(clock), 300)
        clock.advance(301)
        assert await registry.get_mfa_challenge("challenge-1") is None


class TestRateLimits:
    async def test_bucket_allows_limit_then_denies(self, registry):
        results = [await registry.check_rate_limit("auth:1.2.3.4", 5, 60) for _ in range(6)]
        assert [allowed for allowed, _, _ in results] == [True] * 5 + [False]
        assert [remaining for _, remaining, _ in results[:5]] == [4, 3, 2, 1, 0]
        assert results[5][2] >= 1

    async def test_bucket_refills_over_time(self, registry, clock):
        for _ in range(3):
            await registry.check_rate_limit("mfa:user-1", 3, 60)
        assert not (await registry.check_rate_limit("mfa:user-1", 3, 60))[0]
        clock.advance(20)
        assert (await registry.check_rate_limit("mfa:user-1", 3, 60))[0]

    async def test_keys_are_independent(self, registry):
        for _ in range(3):
            await registry.check_rate_limit("a", 3, 60)
        assert (await registry.check_rate_limit("b", 3, 60))[0]
