from __future__ import annotations

import hashlib
import json
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

import redis.asyncio as aioredis

from vaultauth.logging import get_logger
from vaultauth.storage.errors import InvalidRefresh, RefreshTokenReuseDetected
from vaultauth.storage.models import MfaChallenge, Session, SessionMetadata
from vaultauth.storage.session_registry import new_family_id, new_session_id

logger = get_logger(__name__)


class RedisSessionRegistry:
    """Redis-backed session registry shared by every API instance."""

    # Lua token bucket: atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    # Compare-and-swap on the family's current refresh jti.
    # Returns -1 unknown family, -2 revoked family or session, 0 reuse, 1 rotated.
    _ROTATE_SCRIPT = """
local family_key = KEYS[1]
local session_key = KEYS[2]
if redis.call('EXISTS', family_key) == 0 then
  return -1
end
local data = redis.call('HMGET', family_key, 'current_jti', 'revoked', 'session_id')
if data[3] ~= ARGV[3] then
  return -1
end
if data[2] == '1' or redis.call('EXISTS', session_key) == 0 then
  return -2
end
if data[1] ~= ARGV[1] then
  redis.call('HSET', family_key, 'revoked', '1')
  return 0
end
redis.call('HSET', family_key, 'current_jti', ARGV[2])
redis.call('EXPIRE', family_key, tonumber(ARGV[4]))
return 1
"""

    # Increment a challenge's attempt counter, deleting it once the cap is hit.
    _MFA_ATTEMPT_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return {0, 1}
end
local data = cjson.decode(raw)
local attempts = (tonumber(data['attempts']) or 0) + 1
if attempts >= tonumber(ARGV[1]) then
  redis.call('DEL', KEYS[1])
  return {attempts, 1}
end
data['attempts'] = attempts
redis.call('SET', KEYS[1], cjson.encode(data), 'KEEPTTL')
return {attempts, 0}
"""

    # Add a session to the per-user index. The index TTL only ever grows so it
    # outlives the longest session it tracks.
    _INDEX_SESSION_SCRIPT = """
redis.call('SADD', KEYS[1], ARGV[1])
local ttl = tonumber(ARGV[2])
if redis.call('TTL', KEYS[1]) < ttl then
  redis.call('EXPIRE', KEYS[1], ttl)
end
return 1
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._rotate = self.client.register_script(self._ROTATE_SCRIPT)
        self._mfa_attempt = self.client.register_script(self._MFA_ATTEMPT_SCRIPT)
        self._index_session = self.client.register_script(self._INDEX_SESSION_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        from redis import Redis

        # Short-lived sync client so the async client is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    # sessions ----------------------------------------------------------------
    async def create_session(
        self, user_id: str, metadata: SessionMetadata, ttl_seconds: int
    ) -> Session:
        now = datetime.now(timezone.utc)
        session = Session(
            id=new_session_id(),
            user_id=user_id,
            token_family=new_family_id(),
            metadata=metadata,
            created_at=now,
            last_seen_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
        family_key = f"auth:family:{session.token_family}"
        user_key = f"auth:user_sessions:{user_id}"
        pipe = self.client.pipeline()
        pipe.set(f"auth:session:{session.id}", json.dumps(session.to_dict()), ex=ttl_seconds)
        pipe.hset(
            family_key,
            mapping={
                "session_id": session.id,
                "user_id": user_id,
                "current_jti": "",
                "revoked": "0",
                "created_at": now.isoformat(),
            },
        )
        pipe.expire(family_key, ttl_seconds)
        await pipe.execute()
        # Track sessions per user for bulk revocation
        await self._index_session(keys=[user_key], args=[session.id, ttl_seconds])
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        raw = await self.client.get(f"auth:session:{session_id}")
        if raw is None:
            return None
        try:
            return Session.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning("session_record_corrupt", session_id=session_id)
            return None

    async def touch_session(self, session_id: str) -> None:
        session = await self.get_session(session_id)
        if session is None:
            return
        session.last_seen_at = datetime.now(timezone.utc)
        await self.client.set(
            f"auth:session:{session_id}", json.dumps(session.to_dict()), keepttl=True, xx=True
        )

    async def is_session_active(self, session_id: str) -> bool:
        return bool(await self.client.exists(f"auth:session:{session_id}"))

    async def list_user_sessions(self, user_id: str) -> List[Session]:
        user_key = f"auth:user_sessions:{user_id}"
        session_ids = await self.client.smembers(user_key)
        sessions: List[Session] = []
        stale: List[str] = []
        for session_id in session_ids:
            session = await self.get_session(session_id)
            if session is None:
                stale.append(session_id)
            else:
                sessions.append(session)
        if stale:
            await self.client.srem(user_key, *stale)
        return sorted(sessions, key=lambda item: item.created_at)

    # refresh token families --------------------------------------------------
    async def set_current_refresh(self, family_id: str, jti: str, ttl_seconds: int) -> None:
        key = f"auth:family:{family_id}"
        revoked = await self.client.hget(key, "revoked")
        if revoked is None:
            raise InvalidRefresh("unknown_family")
        if revoked == "1":
            raise InvalidRefresh("revoked")
        pipe = self.client.pipeline()
        pipe.hset(key, "current_jti", jti)
        pipe.expire(key, ttl_seconds)
        await pipe.execute()

    async def rotate_refresh_token(
        self,
        session_id: str,
        family_id: str,
        presented_jti: str,
        new_jti: str,
        ttl_seconds: int,
    ) -> None:
        result = int(
            await self._rotate(
                keys=[f"auth:family:{family_id}", f"auth:session:{session_id}"],
                args=[presented_jti, new_jti, session_id, max(1, int(ttl_seconds))],
            )
        )
        if result == 1:
            return
        if result == 0:
            await self.revoke_family(family_id)
            raise RefreshTokenReuseDetected(family_id, session_id)
        raise InvalidRefresh("unknown_family" if result == -1 else "revoked")

    async def is_refresh_current(self, family_id: str, jti: str) -> bool:
        current, revoked = await self.client.hmget(
            f"auth:family:{family_id}", "current_jti", "revoked"
        )
        return bool(current) and revoked != "1" and current == jti

    # revocation --------------------------------------------------------------
    async def revoke_session(self, session_id: str) -> bool:
        session = await self.get_session(session_id)
        if session is None:
            return False
        pipe = self.client.pipeline()
        pipe.delete(f"auth:session:{session_id}")
        pipe.srem(f"auth:user_sessions:{session.user_id}", session_id)
        pipe.hset(f"auth:family:{session.token_family}", "revoked", "1")
        results = await pipe.execute()
        return bool(results[0])

    async def revoke_all_sessions_for_user(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        session_ids = await self.client.smembers(f"auth:user_sessions:{user_id}")
        revoked = 0
        for session_id in session_ids:
            if except_session_id and session_id == except_session_id:
                continue
            if await self.revoke_session(session_id):
                revoked += 1
        return revoked

    async def revoke_family(self, family_id: str) -> int:
        key = f"auth:family:{family_id}"
        session_id = await self.client.hget(key, "session_id")
        if session_id is None:
            return 0
        await self.client.hset(key, "revoked", "1")
        return 1 if await self.revoke_session(session_id) else 0

    # authorization codes -----------------------------------------------------
    async def put_authorization_code(self, code: str, data: dict, ttl_seconds: int) -> None:
        await self.client.set(f"oauth:code:{code}", json.dumps(data), ex=ttl_seconds)

    async def consume_authorization_code(self, code: str) -> Optional[dict]:
        raw = await self.client.getdel(f"oauth:code:{code}")
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("authorization_code_corrupt")
            return None

    # mfa challenges ----------------------------------------------------------
    async def put_mfa_challenge(self, challenge: MfaChallenge, ttl_seconds: int) -> None:
        await self.client.set(
            f"mfa:challenge:{challenge.id}", json.dumps(challenge.to_dict()), ex=ttl_seconds
        )

    @staticmethod
    def _decode_challenge(raw: Optional[str]) -> Optional[MfaChallenge]:
        if raw is None:
            return None
        try:
            return MfaChallenge.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            return None

    async def get_mfa_challenge(self, challenge_id: str) -> Optional[MfaChallenge]:
        return self._decode_challenge(await self.client.get(f"mfa:challenge:{challenge_id}"))

    async def record_mfa_failure(
        self, challenge_id: str, max_attempts: int
    ) -> Tuple[int, bool]:
        attempts, exhausted = await self._mfa_attempt(
            keys=[f"mfa:challenge:{challenge_id}"], args=[max_attempts]
        )
        return (int(attempts), bool(int(exhausted)))

    async def consume_mfa_challenge(self, challenge_id: str) -> Optional[MfaChallenge]:
        return self._decode_challenge(await self.client.getdel(f"mfa:challenge:{challenge_id}"))

    # one-time tokens ---------------------------------------------------------
    async def put_one_time_token(
        self, purpose: str, token: str, value: str, ttl_seconds: int
    ) -> None:
        await self.client.set(f"auth:ott:{purpose}:{token}", value, ex=ttl_seconds)

    async def pop_one_time_token(self, purpose: str, token: str) -> Optional[str]:
        return await self.client.getdel(f"auth:ott:{purpose}:{token}")

    # rate limits -------------------------------------------------------------
    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        """Check a rate limit using the Redis token bucket script.

        The key is hashed so caller-supplied components cannot collide
        through delimiters.
        """
        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        return (bool(int(allowed)), remaining, reset_seconds)
