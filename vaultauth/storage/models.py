from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserStatus(str, Enum):
    PENDING_VERIFICATION = "pending_verification"
    ACTIVE = "active"
    LOCKED = "locked"
    CLOSED = "closed"


class MfaMethod(str, Enum):
    TOTP = "totp"
    SMS = "sms"
    EMAIL = "email"
    # Only accepted when verifying a challenge, never enrolled directly
    BACKUP_CODE = "backup_code"


@dataclass
class User:
    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    phone: Optional[str] = None
    status: UserStatus = UserStatus.PENDING_VERIFICATION
    email_verified: bool = False
    phone_verified: bool = False
    mfa_enabled: bool = False
    mfa_methods: List[str] = field(default_factory=list)
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.email

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE

    def public_dict(self) -> Dict:
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "status": self.status.value,
            "email_verified": self.email_verified,
            "mfa_enabled": self.mfa_enabled,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class UserAuthCredential:
    user_id: str
    password_hash: str
    password_algo: str = "argon2id"
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: Optional[datetime] = None


@dataclass
class MfaEnrollment:
    user_id: str
    method: MfaMethod
    secret: Optional[str] = None
    destination: Optional[str] = None
    enabled: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class SessionMetadata:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_type: Optional[str] = None
    client_id: Optional[str] = None
    remember_me: bool = False

    def to_dict(self) -> Dict:
        return {
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "device_type": self.device_type,
            "client_id": self.client_id,
            "remember_me": self.remember_me,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "SessionMetadata":
        data = data or {}
        return cls(
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            device_type=data.get("device_type"),
            client_id=data.get("client_id"),
            remember_me=bool(data.get("remember_me", False)),
        )


@dataclass
class Session:
    id: str
    user_id: str
    token_family: str
    metadata: SessionMetadata
    created_at: datetime
    last_seen_at: datetime
    expires_at: datetime
    revoked: bool = False

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "token_family": self.token_family,
            "metadata": self.metadata.to_dict(),
            "created_at": self.created_at.isoformat(),
            "last_seen_at": self.last_seen_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "revoked": self.revoked,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Session":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            token_family=data["token_family"],
            metadata=SessionMetadata.from_dict(data.get("metadata")),
            created_at=datetime.fromisoformat(data["created_at"]),
            last_seen_at=datetime.fromisoformat(data["last_seen_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            revoked=bool(data.get("revoked", False)),
        )


@dataclass
class TokenFamily:
    id: str
    user_id: str
    session_id: str
    current_jti: Optional[str] = None
    revoked: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class AuthorizationCode:
    code: str
    client_id: str
    redirect_uri: str
    user_id: str
    scope: Tuple[str, ...] = ()
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    nonce: Optional[str] = None
    auth_time: int = 0
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict:
        return {
            "code": self.code,
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "user_id": self.user_id,
            "scope": list(self.scope),
            "code_challenge": self.code_challenge,
            "code_challenge_method": self.code_challenge_method,
            "nonce": self.nonce,
            "auth_time": self.auth_time,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "AuthorizationCode":
        return cls(
            code=data["code"],
            client_id=data["client_id"],
            redirect_uri=data["redirect_uri"],
            user_id=data["user_id"],
            scope=tuple(data.get("scope") or ()),
            code_challenge=data.get("code_challenge"),
            code_challenge_method=data.get("code_challenge_method"),
            nonce=data.get("nonce"),
            auth_time=int(data.get("auth_time") or 0),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass
class MfaChallenge:
    id: str
    user_id: str
    methods: List[str]
    expires_at: datetime
    code_hashes: Dict[str, str] = field(default_factory=dict)
    attempts: int = 0
    remember_me: bool = False
    metadata: SessionMetadata = field(default_factory=SessionMetadata)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "methods": list(self.methods),
            "expires_at": self.expires_at.isoformat(),
            "code_hashes": dict(self.code_hashes),
            "attempts": self.attempts,
            "remember_me": self.remember_me,
            "metadata": self.metadata.to_dict(),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "MfaChallenge":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            methods=list(data.get("methods") or []),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            code_hashes=dict(data.get("code_hashes") or {}),
            attempts=int(data.get("attempts") or 0),
            remember_me=bool(data.get("remember_me", False)),
            metadata=SessionMetadata.from_dict(data.get("metadata")),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass(frozen=True)
class OAuthClient:
    client_id: str
    redirect_uris: Tuple[str, ...]
    client_secret: Optional[str] = None
    grant_types: Tuple[str, ...] = ("authorization_code", "refresh_token")
    scopes: Tuple[str, ...] = ("openid", "profile", "email", "offline_access")
    name: str = ""

    @property
    def is_public(self) -> bool:
        return self.client_secret is None
