from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Optional

from vaultauth.logging import get_logger
from vaultauth.storage.models import User

logger = get_logger(__name__)

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"
TOKEN_TYPE_ID = "id"

REASON_EXPIRED = "expired"
REASON_MALFORMED = "malformed"
REASON_BAD_SIGNATURE = "bad-signature"


@dataclass(frozen=True)
class IssuedToken:
    token: str
    jti: str
    issued_at: int
    expires_at: int


@dataclass(frozen=True)
class VerifyResult:
    valid: bool
    payload: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None

    @classmethod
    def failure(cls, reason: str) -> "VerifyResult":
        return cls(valid=False, payload={}, reason=reason)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    """Issue and verify HS256 JWTs for access, refresh and ID tokens.

    Expiry is an absolute epoch timestamp; verification allows
    ``leeway_seconds`` of clock skew. ``clock`` returns epoch seconds and is
    injected so tests can move time forward.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl_seconds: int,
        refresh_ttl_seconds: int,
        remember_me_refresh_ttl_seconds: Optional[int] = None,
        leeway_seconds: int = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.remember_me_refresh_ttl_seconds = (
            remember_me_refresh_ttl_seconds or refresh_ttl_seconds
        )
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    def now(self) -> int:
        return int(self._clock())

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, payload: Dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _issue(self, claims: Dict[str, Any], ttl_seconds: int, jti: Optional[str]) -> IssuedToken:
        issued_at = self.now()
        expires_at = issued_at + int(ttl_seconds)
        token_id = jti or str(uuid.uuid4())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "iat": issued_at,
            "exp": expires_at,
            "jti": token_id,
            **claims,
        }
        return IssuedToken(
            token=self.encode(payload), jti=token_id, issued_at=issued_at, expires_at=expires_at
        )

    def issue_access_token(
        self,
        user: User,
        *,
        session_id: str,
        scope: Iterable[str] = (),
        token_family: Optional[str] = None,
        client_id: Optional[str] = None,
    ) -> IssuedToken:
        claims: Dict[str, Any] = {
            "sub": user.id,
            "email": user.email,
            "token_type": TOKEN_TYPE_ACCESS,
            "sid": session_id,
            "scope": list(scope),
        }
        if token_family:
            claims["family"] = token_family
        if client_id:
            claims["client_id"] = client_id
        return self._issue(claims, self.access_ttl_seconds, None)

    def issue_refresh_token(
        self,
        user: User,
        *,
        session_id: str,
        token_family: str,
        jti: Optional[str] = None,
        remember_me: bool = False,
        scope: Iterable[str] = (),
        client_id: Optional[str] = None,
    ) -> IssuedToken:
        claims: Dict[str, Any] = {
            "sub": user.id,
            "token_type": TOKEN_TYPE_REFRESH,
            "sid": session_id,
            "token_family": token_family,
            "remember_me": bool(remember_me),
            "scope": list(scope),
        }
        if client_id:
            claims["client_id"] = client_id
        ttl = self.remember_me_refresh_ttl_seconds if remember_me else self.refresh_ttl_seconds
        return self._issue(claims, ttl, jti)

    def issue_id_token(
        self, claims: Dict[str, Any], *, client_id: str, ttl_seconds: int = 3600
    ) -> IssuedToken:
        id_claims = {**claims, "token_type": TOKEN_TYPE_ID}
        issued = self._issue(id_claims, ttl_seconds, None)
        # ID tokens are addressed to the relying party, not the API audience
        payload = self.peek(issued.token) or {}
        payload["aud"] = client_id
        return IssuedToken(
            token=self.encode(payload),
            jti=issued.jti,
            issued_at=issued.issued_at,
            expires_at=issued.expires_at,
        )

    @staticmethod
    def peek(token: str) -> Optional[Dict[str, Any]]:
        """Decode a payload without checking the signature. Never trust the result."""
        try:
            _, payload_b64, _ = token.split(".")
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, binascii.Error, UnicodeDecodeError):
            return None
        return payload if isinstance(payload, dict) else None

    def verify(
        self,
        token: str,
        *,
        expected_type: Optional[str] = None,
        audience: Optional[str] = None,
    ) -> VerifyResult:
        if not token or not isinstance(token, str):
            return VerifyResult.failure(REASON_MALFORMED)
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return VerifyResult.failure(REASON_MALFORMED)

        # Pin the algorithm so "none" or asymmetric headers cannot be smuggled in
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, binascii.Error, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return VerifyResult.failure(REASON_MALFORMED)
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return VerifyResult.failure(REASON_MALFORMED)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return VerifyResult.failure(REASON_BAD_SIGNATURE)

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, binascii.Error, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return VerifyResult.failure(REASON_MALFORMED)
        if not isinstance(payload, dict):
            return VerifyResult.failure(REASON_MALFORMED)

        if payload.get("iss") != self.issuer:
            return VerifyResult.failure(REASON_MALFORMED)
        expected_aud = audience or self.audience
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = expected_aud in aud
        else:
            valid_aud = aud == expected_aud
        if not valid_aud:
            return VerifyResult.failure(REASON_MALFORMED)
        if expected_type and payload.get("token_type") != expected_type:
            return VerifyResult.failure(REASON_MALFORMED)
        if not payload.get("sub") or not payload.get("jti"):
            return VerifyResult.failure(REASON_MALFORMED)

        exp = payload.get("exp")
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return VerifyResult.failure(REASON_MALFORMED)
        if exp_ts <= self._clock() - self.leeway_seconds:
            return VerifyResult.failure(REASON_EXPIRED)
        return VerifyResult(valid=True, payload=payload)
