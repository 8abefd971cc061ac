"""Session registry contract and its in-process implementation.

The registry owns every piece of short-lived auth state: sessions, refresh
token families, authorization codes, MFA challenges, one-time tokens and
rate-limit buckets. Each entry carries a TTL and expires on its own.
"""

from __future__ import annotations

import math
import secrets
import threading
import time
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from vaultauth.logging import get_logger
from vaultauth.storage.errors import InvalidRefresh, RefreshTokenReuseDetected
from vaultauth.storage.models import MfaChallenge, Session, SessionMetadata, TokenFamily

logger = get_logger(__name__)


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


def new_family_id() -> str:
    return secrets.token_urlsafe(24)


class SessionRegistry(Protocol):
    async def create_session(
        self, user_id: str, metadata: SessionMetadata, ttl_seconds: int
    ) -> Session: ...

    async def get_session(self, session_id: str) -> Optional[Session]: ...

    async def touch_session(self, session_id: str) -> None: ...

    async def is_session_active(self, session_id: str) -> bool: ...

    async def list_user_sessions(self, user_id: str) -> List[Session]: ...

    async def set_current_refresh(self, family_id: str, jti: str, ttl_seconds: int) -> None: ...

    async def rotate_refresh_token(
        self,
        session_id: str,
        family_id: str,
        presented_jti: str,
        new_jti: str,
        ttl_seconds: int,
    ) -> None: ...

    async def is_refresh_current(self, family_id: str, jti: str) -> bool: ...

    async def revoke_session(self, session_id: str) -> bool: ...

    async def revoke_all_sessions_for_user(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int: ...

    async def revoke_family(self, family_id: str) -> int: ...

    async def put_authorization_code(self, code: str, data: dict, ttl_seconds: int) -> None: ...

    async def consume_authorization_code(self, code: str) -> Optional[dict]: ...

    async def put_mfa_challenge(self, challenge: MfaChallenge, ttl_seconds: int) -> None: ...

    async def get_mfa_challenge(self, challenge_id: str) -> Optional[MfaChallenge]: ...

    async def record_mfa_failure(
        self, challenge_id: str, max_attempts: int
    ) -> Tuple[int, bool]: ...

    async def consume_mfa_challenge(self, challenge_id: str) -> Optional[MfaChallenge]: ...

    async def put_one_time_token(
        self, purpose: str, token: str, value: str, ttl_seconds: int
    ) -> None: ...

    async def pop_one_time_token(self, purpose: str, token: str) -> Optional[str]: ...

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]: ...

    def verify_connection(self) -> None: ...

    async def close(self) -> None: ...


class MemorySessionRegistry:
    """Lock-guarded TTL map with the same contract as the Redis registry.

    Only used under ``TEST_MODE`` or ``ALLOW_REDIS_FALLBACK_DEV``; state lives
    in a single process. ``clock`` returns epoch seconds and can be swapped in
    tests to drive expiry.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._user_sessions: Dict[str, set[str]] = {}
        self._buckets: Dict[str, Tuple[float, float]] = {}

    # ttl map -----------------------------------------------------------------
    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _put(self, key: str, value: Any, ttl_seconds: int) -> None:
        self._entries[key] = (value, self._clock() + max(1, int(ttl_seconds)))

    def _get(self, key: str) -> Any:
        item = self._entries.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    def _pop(self, key: str) -> Any:
        value = self._get(key)
        self._entries.pop(key, None)
        return value

    def _remaining_ttl(self, key: str) -> int:
        item = self._entries.get(key)
        if item is None:
            return 0
        return max(0, int(math.ceil(item[1] - self._clock())))

    # sessions ----------------------------------------------------------------
    async def create_session(
        self, user_id: str, metadata: SessionMetadata, ttl_seconds: int
    ) -> Session:
        now = self._now()
        session = Session(
            id=new_session_id(),
            user_id=user_id,
            token_family=new_family_id(),
            metadata=metadata,
            created_at=now,
            last_seen_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
        family = TokenFamily(
            id=session.token_family,
            user_id=user_id,
            session_id=session.id,
            created_at=now,
        )
        with self._lock:
            self._put(f"auth:session:{session.id}", session, ttl_seconds)
            self._put(f"auth:family:{family.id}", family, ttl_seconds)
            self._user_sessions.setdefault(user_id, set()).add(session.id)
        return replace(session)

    async def get_session(self, session_id: str) -> Optional[Session]:
        with self._lock:
            session = self._get(f"auth:session:{session_id}")
            return replace(session) if session else None

    async def touch_session(self, session_id: str) -> None:
        with self._lock:
            session = self._get(f"auth:session:{session_id}")
            if session:
                session.last_seen_at = self._now()

    async def is_session_active(self, session_id: str) -> bool:
        with self._lock:
            session = self._get(f"auth:session:{session_id}")
            return bool(session) and not session.revoked

    async def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._lock:
            sessions = []
            for session_id in sorted(self._user_sessions.get(user_id, set())):
                session = self._get(f"auth:session:{session_id}")
                if session and not session.revoked:
                    sessions.append(replace(session))
                elif session is None:
                    self._user_sessions[user_id].discard(session_id)
        return sorted(sessions, key=lambda item: item.created_at)

    # refresh token families --------------------------------------------------
    async def set_current_refresh(self, family_id: str, jti: str, ttl_seconds: int) -> None:
        key = f"auth:family:{family_id}"
        with self._lock:
            family = self._get(key)
            if family is None:
                raise InvalidRefresh("unknown_family")
            if family.revoked:
                raise InvalidRefresh("revoked")
            family.current_jti = jti
            self._put(key, family, ttl_seconds)

    async def rotate_refresh_token(
        self,
        session_id: str,
        family_id: str,
        presented_jti: str,
        new_jti: str,
        ttl_seconds: int,
    ) -> None:
        key = f"auth:family:{family_id}"
        with self._lock:
            family = self._get(key)
            if family is None or family.session_id != session_id:
                raise InvalidRefresh("unknown_family")
            if family.revoked:
                raise InvalidRefresh("revoked")
            session = self._get(f"auth:session:{session_id}")
            if session is None or session.revoked:
                raise InvalidRefresh("session_inactive")
            if family.current_jti != presented_jti:
                self._revoke_family_locked(family_id)
                raise RefreshTokenReuseDetected(family_id, session_id)
            family.current_jti = new_jti
            self._put(key, family, ttl_seconds)

    async def is_refresh_current(self, family_id: str, jti: str) -> bool:
        with self._lock:
            family = self._get(f"auth:family:{family_id}")
            if family is None or family.revoked or family.current_jti is None:
                return False
            return secrets.compare_digest(family.current_jti, jti)

    # revocation --------------------------------------------------------------
    def _revoke_session_locked(self, session_id: str) -> bool:
        session = self._pop(f"auth:session:{session_id}")
        if session is None:
            return False
        self._user_sessions.get(session.user_id, set()).discard(session_id)
        family = self._get(f"auth:family:{session.token_family}")
        if family:
            family.revoked = True
        return True

    def _revoke_family_locked(self, family_id: str) -> int:
        family = self._get(f"auth:family:{family_id}")
        if family is None:
            return 0
        family.revoked = True
        return 1 if self._revoke_session_locked(family.session_id) else 0

    async def revoke_session(self, session_id: str) -> bool:
        with self._lock:
            return self._revoke_session_locked(session_id)

    async def revoke_all_sessions_for_user(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._lock:
            revoked = 0
            for session_id in list(self._user_sessions.get(user_id, set())):
                if except_session_id and session_id == except_session_id:
                    continue
                if self._revoke_session_locked(session_id):
                    revoked += 1
            return revoked

    async def revoke_family(self, family_id: str) -> int:
        with self._lock:
            return self._revoke_family_locked(family_id)

    # authorization codes -----------------------------------------------------
    async def put_authorization_code(self, code: str, data: dict, ttl_seconds: int) -> None:
        with self._lock:
            self._put(f"oauth:code:{code}", dict(data), ttl_seconds)

    async def consume_authorization_code(self, code: str) -> Optional[dict]:
        with self._lock:
            return self._pop(f"oauth:code:{code}")

    # mfa challenges ----------------------------------------------------------
    async def put_mfa_challenge(self, challenge: MfaChallenge, ttl_seconds: int) -> None:
        with self._lock:
            self._put(f"mfa:challenge:{challenge.id}", replace(challenge), ttl_seconds)

    async def get_mfa_challenge(self, challenge_id: str) -> Optional[MfaChallenge]:
        with self._lock:
            challenge = self._get(f"mfa:challenge:{challenge_id}")
            return replace(challenge) if challenge else None

    async def record_mfa_failure(
        self, challenge_id: str, max_attempts: int
    ) -> Tuple[int, bool]:
        key = f"mfa:challenge:{challenge_id}"
        with self._lock:
            challenge = self._get(key)
            if challenge is None:
                return (0, True)
            challenge.attempts += 1
            if challenge.attempts >= max_attempts:
                self._entries.pop(key, None)
                return (challenge.attempts, True)
            return (challenge.attempts, False)

    async def consume_mfa_challenge(self, challenge_id: str) -> Optional[MfaChallenge]:
        with self._lock:
            return self._pop(f"mfa:challenge:{challenge_id}")

    # one-time tokens ---------------------------------------------------------
    async def put_one_time_token(
        self, purpose: str, token: str, value: str, ttl_seconds: int
    ) -> None:
        with self._lock:
            self._put(f"auth:ott:{purpose}:{token}", value, ttl_seconds)

    async def pop_one_time_token(self, purpose: str, token: str) -> Optional[str]:
        with self._lock:
            return self._pop(f"auth:ott:{purpose}:{token}")

    # rate limits -------------------------------------------------------------
    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        """Token bucket matching the Redis Lua script's refill arithmetic."""
        now = self._clock()
        refill_rate = float(limit) / float(window_seconds)
        cost = max(1, cost)
        with self._lock:
            tokens, last = self._buckets.get(key, (float(limit), now))
            tokens = min(float(limit), tokens + max(0.0, now - last) * refill_rate)
            if tokens < cost:
                self._buckets[key] = (tokens, now)
                reset_after = int(math.ceil((cost - tokens) / refill_rate))
                return (False, max(0, int(tokens)), max(1, reset_after))
            tokens -= cost
            self._buckets[key] = (tokens, now)
            return (True, max(0, int(tokens)), 0)

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
            self._user_sessions.clear()
            self._buckets.clear()
