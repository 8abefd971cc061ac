from __future__ import annotations

import asyncio
import secrets
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from vaultauth.config import Settings
from vaultauth.logging import audit_event, get_logger
from vaultauth.service.errors import (
    AccountLockedError,
    AccountNotVerifiedError,
    AuthenticationError,
    ConflictError,
    InvalidCredentialsError,
    InvalidCurrentPasswordError,
    InvalidRefreshTokenError,
    MfaChallengeExpiredError,
    MfaVerificationFailedError,
    NotFoundError,
    UserAlreadyExistsError,
    ValidationError,
)
from vaultauth.service.mfa import (
    generate_backup_codes,
    generate_delivered_code,
    generate_totp_secret,
    hash_backup_code,
    hash_code,
    provisioning_uri,
    verify_code_hash,
    verify_totp,
)
from vaultauth.service.notifications import NotificationService
from vaultauth.service.passwords import PASSWORD_ALGO, PasswordService, validate_password_strength
from vaultauth.service.tokens import TOKEN_TYPE_ACCESS, TOKEN_TYPE_REFRESH, TokenCodec
from vaultauth.storage.common import CredentialStore, normalize_email
from vaultauth.storage.errors import ConstraintViolation, InvalidRefresh, RefreshTokenReuseDetected
from vaultauth.storage.models import (
    MfaChallenge,
    MfaEnrollment,
    MfaMethod,
    Session,
    SessionMetadata,
    User,
    UserStatus,
)
from vaultauth.storage.session_registry import SessionRegistry

logger = get_logger(__name__)

DEFAULT_SCOPE: Tuple[str, ...] = ("openid", "profile", "email")

OTT_EMAIL_VERIFY = "email_verify"
OTT_PASSWORD_RESET = "password_reset"
OTT_MFA_ENROLL = "mfa_enroll"

_INVALID_CREDENTIALS = "Invalid email or password"


@dataclass(frozen=True)
class AuthContext:
    """Identity resolved from a verified access token; never mutated."""

    user_id: str
    email: Optional[str]
    session_id: str
    token_family: Optional[str] = None
    scope: Tuple[str, ...] = ()
    client_id: Optional[str] = None
    issued_at: int = 0
    expires_at: int = 0

    def has_scope(self, scope: str) -> bool:
        return scope in self.scope


@dataclass(frozen=True)
class TokenSet:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_in: int
    session_id: str
    token_family: str
    user_id: str = ""
    scope: Tuple[str, ...] = ()
    token_type: str = "Bearer"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "refresh_expires_in": self.refresh_expires_in,
        }


@dataclass(frozen=True)
class LoginResult:
    user: User
    tokens: Optional[TokenSet] = None
    mfa_required: bool = False
    challenge_id: Optional[str] = None
    methods: Tuple[str, ...] = ()
    expires_in: Optional[int] = None


@dataclass(frozen=True)
class RegisterInput:
    email: str
    password: str
    first_name: str = ""
    last_name: str = ""
    phone: Optional[str] = None


@dataclass(frozen=True)
class RegistrationResult:
    user: User
    verification_required: bool = True


@dataclass
class MfaEnrollmentStart:
    method: str
    secret: Optional[str] = None
    otpauth_uri: Optional[str] = None
    destination: Optional[str] = None


class AuthService:
    """Registration, login, MFA, session and token lifecycle."""

    def __init__(
        self,
        store: CredentialStore,
        registry: SessionRegistry,
        codec: TokenCodec,
        passwords: PasswordService,
        notifier: NotificationService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.registry = registry
        self.codec = codec
        self.passwords = passwords
        self.notifier = notifier
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.codec.now(), tz=timezone.utc)

    async def _notify(self, func, *args, **kwargs) -> bool:
        # SMTP is blocking
        return await asyncio.to_thread(func, *args, **kwargs)

    def _may_hold_session(self, user: Optional[User]) -> bool:
        if user is None:
            return False
        if user.status == UserStatus.ACTIVE:
            return True
        return (
            user.status == UserStatus.PENDING_VERIFICATION
            and self.settings.allow_unverified_login
        )

    # registration ------------------------------------------------------------
    async def register(
        self, data: RegisterInput, metadata: Optional[SessionMetadata] = None
    ) -> RegistrationResult:
        email = normalize_email(data.email)
        validate_password_strength(data.password, email)
        if self.store.get_user_by_email(email):
            raise UserAlreadyExistsError("An account with this email already exists")
        password_hash, algo = await self.passwords.hash(data.password)
        try:
            user = self.store.create_user(
                email,
                first_name=data.first_name,
                last_name=data.last_name,
                phone=data.phone,
                status=UserStatus.PENDING_VERIFICATION,
            )
        except ConstraintViolation:
            raise UserAlreadyExistsError("An account with this email already exists")
        self.store.save_password(user.id, password_hash, algo)
        await self._send_verification(user)
        audit_event(
            "user_registered",
            user_id=user.id,
            ip_address=metadata.ip_address if metadata else None,
        )
        return RegistrationResult(user=user, verification_required=True)

    async def _send_verification(self, user: User) -> None:
        token = secrets.token_urlsafe(32)
        await self.registry.put_one_time_token(
            OTT_EMAIL_VERIFY,
            token,
            user.id,
            self.settings.email_verification_ttl_hours * 3600,
        )
        await self._notify(self.notifier.send_email_verification, user.email, token)

    async def verify_email(self, token: str) -> User:
        user_id = await self.registry.pop_one_time_token(OTT_EMAIL_VERIFY, token)
        user = self.store.get_user(user_id) if user_id else None
        if not user:
            raise ValidationError("Invalid or expired verification token")
        updates: Dict[str, Any] = {"email_verified": True}
        if user.status == UserStatus.PENDING_VERIFICATION:
            updates["status"] = UserStatus.ACTIVE
        user = self.store.update_user(user.id, **updates) or user
        audit_event("email_verified", user_id=user.id)
        return user

    async def resend_verification(self, email: str) -> None:
        user = self.store.get_user_by_email(email)
        if not user or user.email_verified or user.status == UserStatus.CLOSED:
            # Same response either way so the endpoint cannot enumerate accounts
            return
        await self._send_verification(user)

    # login -------------------------------------------------------------------
    async def login(
        self,
        email: str,
        password: str,
        metadata: Optional[SessionMetadata] = None,
        *,
        remember_me: bool = False,
    ) -> LoginResult:
        metadata = replace(metadata or SessionMetadata(), remember_me=remember_me)
        user = self.store.get_user_by_email(email)
        record = self.store.get_password_record(user.id) if user else None
        if not user or not record or record.password_algo != PASSWORD_ALGO:
            # Equalise timing with the known-user path
            await self.passwords.verify_dummy(password)
            audit_event(
                "login_failed", level="warning", reason="unknown_user", ip_address=metadata.ip_address
            )
            raise InvalidCredentialsError(_INVALID_CREDENTIALS)

        password_ok = await self.passwords.verify(record.password_hash, password)
        now = self._now()
        lock_active = bool(user.locked_until and user.locked_until > now)
        # A lock without an expiry is only lifted by an operator
        held_lock = user.status == UserStatus.LOCKED and user.locked_until is None

        if user.status == UserStatus.CLOSED:
            audit_event("login_failed", level="warning", reason="closed", user_id=user.id)
            raise InvalidCredentialsError(_INVALID_CREDENTIALS)

        if not password_ok:
            attempts = self.store.record_failed_login(user.id)
            audit_event(
                "login_failed",
                level="warning",
                reason="bad_password",
                user_id=user.id,
                attempts=attempts,
                ip_address=metadata.ip_address,
            )
            if attempts >= self.settings.max_failed_logins and not (lock_active or held_lock):
                locked_until = now + timedelta(minutes=self.settings.account_lockout_minutes)
                self.store.update_user(user.id, status=UserStatus.LOCKED, locked_until=locked_until)
                audit_event(
                    "account_locked",
                    level="warning",
                    user_id=user.id,
                    attempts=attempts,
                    locked_until=locked_until.isoformat(),
                )
            raise InvalidCredentialsError(_INVALID_CREDENTIALS)

        if lock_active:
            raise AccountLockedError(
                "Account is temporarily locked due to repeated failed logins",
                detail={"locked_until": user.locked_until.isoformat()},
            )
        if held_lock:
            audit_event("login_failed", level="warning", reason="locked", user_id=user.id)
            raise AccountLockedError("Account is locked")
        if user.status == UserStatus.LOCKED or user.locked_until or user.failed_login_attempts:
            user = self._clear_lockout(user)

        if user.status == UserStatus.PENDING_VERIFICATION and not self.settings.allow_unverified_login:
            raise AccountNotVerifiedError("Please verify your email address before logging in")

        if user.mfa_enabled:
            return await self._issue_mfa_challenge(user, metadata)

        _, tokens = await self.issue_session_tokens(user, metadata, remember_me=remember_me)
        user = self._record_login(user)
        audit_event("login_succeeded", user_id=user.id, session_id=tokens.session_id, mfa=False)
        return LoginResult(user=user, tokens=tokens)

    def _clear_lockout(self, user: User) -> User:
        self.store.reset_failed_logins(user.id)
        if user.status != UserStatus.LOCKED or user.locked_until is None:
            return self.store.get_user(user.id) or user
        restored = UserStatus.ACTIVE if user.email_verified else UserStatus.PENDING_VERIFICATION
        return self.store.update_user(user.id, status=restored, locked_until=None) or user

    def _record_login(self, user: User) -> User:
        return self.store.update_user(user.id, last_login_at=self._now()) or user

    async def _issue_mfa_challenge(self, user: User, metadata: SessionMetadata) -> LoginResult:
        ttl = self.settings.mfa_challenge_ttl_seconds
        enrollments = [item for item in self.store.get_mfa_enrollments(user.id) if item.enabled]
        challenge = MfaChallenge(
            id=secrets.token_urlsafe(32),
            user_id=user.id,
            methods=[item.method.value for item in enrollments],
            expires_at=self._now() + timedelta(seconds=ttl),
            remember_me=metadata.remember_me,
            metadata=metadata,
            created_at=self._now(),
        )
        for enrollment in enrollments:
            if enrollment.method in (MfaMethod.SMS, MfaMethod.EMAIL) and enrollment.destination:
                code = generate_delivered_code()
                challenge.code_hashes[enrollment.method.value] = hash_code(code)
                await self._notify(
                    self.notifier.send_mfa_code,
                    enrollment.destination,
                    code,
                    method=enrollment.method.value,
                )
        await self.registry.put_mfa_challenge(challenge, ttl)
        audit_event(
            "mfa_challenge_issued", user_id=user.id, methods=challenge.methods
        )
        return LoginResult(
            user=user,
            mfa_required=True,
            challenge_id=challenge.id,
            methods=tuple(challenge.methods),
            expires_in=ttl,
        )

    async def peek_mfa_challenge_user(self, challenge_id: str) -> Optional[str]:
        challenge = await self.registry.get_mfa_challenge(challenge_id)
        return challenge.user_id if challenge else None

    async def verify_mfa_challenge(
        self, challenge_id: str, code: str, method: Optional[str] = None
    ) -> LoginResult:
        challenge = await self.registry.get_mfa_challenge(challenge_id)
        if challenge is None:
            raise MfaChallengeExpiredError("MFA challenge has expired or is invalid")
        user = self.store.get_user(challenge.user_id)
        if user is None or user.status == UserStatus.CLOSED:
            await self.registry.consume_mfa_challenge(challenge_id)
            raise MfaChallengeExpiredError("MFA challenge has expired or is invalid")

        if not self._check_mfa_code(user, challenge, code, method):
            max_attempts = self.settings.mfa_max_attempts
            attempts, exhausted = await self.registry.record_mfa_failure(
                challenge_id, max_attempts
            )
            audit_event(
                "mfa_failed", level="warning", user_id=user.id, attempts=attempts, method=method
            )
            if exhausted:
                audit_event("mfa_challenge_exhausted", level="warning", user_id=user.id)
                raise MfaChallengeExpiredError(
                    "Too many failed attempts; please log in again"
                )
            raise MfaVerificationFailedError(
                "Invalid verification code",
                detail={"remaining_attempts": max(0, max_attempts - attempts)},
            )

        # Single use: a concurrent winner leaves nothing to consume
        if await self.registry.consume_mfa_challenge(challenge_id) is None:
            raise MfaChallengeExpiredError("MFA challenge has expired or is invalid")
        _, tokens = await self.issue_session_tokens(
            user, challenge.metadata, remember_me=challenge.remember_me
        )
        user = self._record_login(user)
        audit_event("login_succeeded", user_id=user.id, session_id=tokens.session_id, mfa=True)
        return LoginResult(user=user, tokens=tokens)

    def _check_mfa_code(
        self, user: User, challenge: MfaChallenge, code: str, method: Optional[str]
    ) -> bool:
        code = (code or "").strip()
        if not code:
            return False
        if method in (None, MfaMethod.TOTP.value):
            for enrollment in self.store.get_mfa_enrollments(user.id):
                if (
                    enrollment.method == MfaMethod.TOTP
                    and enrollment.enabled
                    and enrollment.secret
                    and verify_totp(enrollment.secret, code)
                ):
                    return True
        if method in (None, MfaMethod.SMS.value, MfaMethod.EMAIL.value):
            candidates = [method] if method else list(challenge.code_hashes)
            for candidate in candidates:
                expected = challenge.code_hashes.get(candidate)
                if expected and verify_code_hash(code, expected):
                    return True
        if method in (None, MfaMethod.BACKUP_CODE.value):
            if self.store.consume_backup_code(user.id, hash_backup_code(code)):
                logger.info("backup_code_used", user_id=user.id)
                return True
        return False

    # tokens ------------------------------------------------------------------
    async def issue_session_tokens(
        self,
        user: User,
        metadata: Optional[SessionMetadata] = None,
        *,
        remember_me: bool = False,
        scope: Sequence[str] = DEFAULT_SCOPE,
        client_id: Optional[str] = None,
    ) -> Tuple[Session, TokenSet]:
        metadata = replace(metadata or SessionMetadata(), remember_me=remember_me, client_id=client_id)
        ttl = (
            self.codec.remember_me_refresh_ttl_seconds
            if remember_me
            else self.codec.refresh_ttl_seconds
        )
        session = await self.registry.create_session(user.id, metadata, ttl)
        refresh = self.codec.issue_refresh_token(
            user,
            session_id=session.id,
            token_family=session.token_family,
            remember_me=remember_me,
            scope=scope,
            client_id=client_id,
        )
        await self.registry.set_current_refresh(session.token_family, refresh.jti, ttl)
        access = self.codec.issue_access_token(
            user,
            session_id=session.id,
            scope=scope,
            token_family=session.token_family,
            client_id=client_id,
        )
        return session, TokenSet(
            access_token=access.token,
            refresh_token=refresh.token,
            expires_in=access.expires_at - access.issued_at,
            refresh_expires_in=refresh.expires_at - refresh.issued_at,
            session_id=session.id,
            token_family=session.token_family,
            user_id=user.id,
            scope=tuple(scope),
        )

    async def refresh_tokens(
        self,
        refresh_token: str,
        *,
        client_id: Optional[str] = None,
        scope: Optional[Sequence[str]] = None,
    ) -> TokenSet:
        result = self.codec.verify(refresh_token, expected_type=TOKEN_TYPE_REFRESH)
        if not result.valid:
            raise InvalidRefreshTokenError("Invalid or expired refresh token")
        payload = result.payload
        # Tokens issued to an OAuth client only refresh through that client
        if payload.get("client_id") != client_id:
            raise InvalidRefreshTokenError("Invalid or expired refresh token")
        session_id = payload.get("sid")
        family_id = payload.get("token_family")
        if not session_id or not family_id:
            raise InvalidRefreshTokenError("Invalid or expired refresh token")

        user = self.store.get_user(payload["sub"])
        if not self._may_hold_session(user):
            raise InvalidRefreshTokenError("Invalid or expired refresh token")

        remember_me = bool(payload.get("remember_me"))
        granted = tuple(payload.get("scope") or ())
        new_scope = tuple(scope) if scope is not None else granted
        if not set(new_scope).issubset(granted):
            raise InvalidRefreshTokenError("Requested scope exceeds the original grant")
        ttl = (
            self.codec.remember_me_refresh_ttl_seconds
            if remember_me
            else self.codec.refresh_ttl_seconds
        )
        new_jti = str(uuid.uuid4())
        try:
            await self.registry.rotate_refresh_token(
                session_id, family_id, payload["jti"], new_jti, ttl
            )
        except RefreshTokenReuseDetected as exc:
            audit_event(
                "refresh_token_reuse_detected",
                level="warning",
                user_id=user.id,
                token_family=exc.family_id,
                session_id=exc.session_id,
            )
            raise InvalidRefreshTokenError("Invalid or expired refresh token")
        except InvalidRefresh as exc:
            logger.info("refresh_rejected", user_id=user.id, reason=exc.reason)
            raise InvalidRefreshTokenError("Invalid or expired refresh token")

        refresh = self.codec.issue_refresh_token(
            user,
            session_id=session_id,
            token_family=family_id,
            jti=new_jti,
            remember_me=remember_me,
            scope=new_scope,
            client_id=client_id,
        )
        access = self.codec.issue_access_token(
            user,
            session_id=session_id,
            scope=new_scope,
            token_family=family_id,
            client_id=client_id,
        )
        await self.registry.touch_session(session_id)
        return TokenSet(
            access_token=access.token,
            refresh_token=refresh.token,
            expires_in=access.expires_at - access.issued_at,
            refresh_expires_in=refresh.expires_at - refresh.issued_at,
            session_id=session_id,
            token_family=family_id,
            user_id=user.id,
            scope=new_scope,
        )

    async def authenticate(self, access_token: Optional[str]) -> AuthContext:
        if not access_token:
            raise AuthenticationError("Authentication required")
        result = self.codec.verify(access_token, expected_type=TOKEN_TYPE_ACCESS)
        if not result.valid:
            raise AuthenticationError("Invalid or expired access token")
        payload = result.payload
        session_id = payload.get("sid")
        if not session_id or not await self.registry.is_session_active(session_id):
            raise AuthenticationError("Session is no longer active")
        return AuthContext(
            user_id=payload["sub"],
            email=payload.get("email"),
            session_id=session_id,
            token_family=payload.get("family"),
            scope=tuple(payload.get("scope") or ()),
            client_id=payload.get("client_id"),
            issued_at=int(payload.get("iat") or 0),
            expires_at=int(payload.get("exp") or 0),
        )

    async def logout(self, access_token: str, *, all_devices: bool = False) -> int:
        ctx = await self.authenticate(access_token)
        if all_devices:
            revoked = await self.registry.revoke_all_sessions_for_user(ctx.user_id)
            audit_event("sessions_revoked_all", user_id=ctx.user_id, count=revoked)
            return revoked
        revoked = 1 if await self.registry.revoke_session(ctx.session_id) else 0
        audit_event("session_revoked", user_id=ctx.user_id, session_id=ctx.session_id)
        return revoked

    # passwords ---------------------------------------------------------------
    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> int:
        user = self.store.get_user(user_id)
        record = self.store.get_password_record(user_id) if user else None
        if not user or not record:
            raise AuthenticationError("Authentication required")
        if not await self.passwords.verify(record.password_hash, current_password):
            raise InvalidCurrentPasswordError("Current password is incorrect")
        if current_password == new_password:
            raise ValidationError("New password must be different from the current password")
        validate_password_strength(new_password, user.email)
        password_hash, algo = await self.passwords.hash(new_password)
        self.store.save_password(user_id, password_hash, algo)
        revoked = await self.registry.revoke_all_sessions_for_user(user_id)
        audit_event("password_changed", user_id=user_id, sessions_revoked=revoked)
        return revoked

    async def request_password_reset(self, email: str) -> None:
        user = self.store.get_user_by_email(email)
        if not user or user.status == UserStatus.CLOSED:
            return
        token = secrets.token_urlsafe(32)
        await self.registry.put_one_time_token(
            OTT_PASSWORD_RESET,
            token,
            user.id,
            self.settings.password_reset_ttl_minutes * 60,
        )
        await self._notify(self.notifier.send_password_reset, user.email, token)
        logger.info("password_reset_requested", user_id=user.id)

    async def reset_password(self, token: str, new_password: str) -> int:
        user_id = await self.registry.pop_one_time_token(OTT_PASSWORD_RESET, token)
        user = self.store.get_user(user_id) if user_id else None
        if not user or user.status == UserStatus.CLOSED:
            raise ValidationError("Invalid or expired reset token")
        try:
            validate_password_strength(new_password, user.email)
        except ValidationError:
            # Give the token back so the user can retry with a stronger password
            await self.registry.put_one_time_token(
                OTT_PASSWORD_RESET, token, user.id, self.settings.password_reset_ttl_minutes * 60
            )
            raise
        password_hash, algo = await self.passwords.hash(new_password)
        self.store.save_password(user.id, password_hash, algo)
        self._clear_lockout(user)
        revoked = await self.registry.revoke_all_sessions_for_user(user.id)
        audit_event("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
        return revoked

    # profile and sessions ----------------------------------------------------
    def get_profile(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def update_profile(
        self,
        user_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> User:
        user = self.get_profile(user_id)
        updates: Dict[str, Any] = {}
        if first_name is not None:
            updates["first_name"] = first_name
        if last_name is not None:
            updates["last_name"] = last_name
        if phone is not None and phone != user.phone:
            updates["phone"] = phone
            updates["phone_verified"] = False
        if not updates:
            return user
        return self.store.update_user(user_id, **updates) or user

    async def list_sessions(self, user_id: str) -> List[Session]:
        return await self.registry.list_user_sessions(user_id)

    async def revoke_session(self, user_id: str, session_id: str) -> None:
        session = await self.registry.get_session(session_id)
        if not session or session.user_id != user_id:
            raise NotFoundError("Session not found")
        await self.registry.revoke_session(session_id)
        audit_event("session_revoked", user_id=user_id, session_id=session_id)

    async def revoke_other_sessions(self, user_id: str, current_session_id: str) -> int:
        revoked = await self.registry.revoke_all_sessions_for_user(
            user_id, except_session_id=current_session_id
        )
        audit_event("sessions_revoked_all", user_id=user_id, count=revoked, kept=current_session_id)
        return revoked

    # mfa enrollment ----------------------------------------------------------
    async def begin_mfa_enrollment(
        self, user_id: str, method: str, destination: Optional[str] = None
    ) -> MfaEnrollmentStart:
        user = self.get_profile(user_id)
        try:
            mfa_method = MfaMethod(method)
        except ValueError:
            raise ValidationError(f"Unsupported MFA method: {method}")
        if mfa_method == MfaMethod.BACKUP_CODE:
            raise ValidationError("Backup codes are issued when MFA is confirmed")
        if any(
            item.method == mfa_method and item.enabled
            for item in self.store.get_mfa_enrollments(user.id)
        ):
            raise ConflictError(
                f"MFA method {mfa_method.value} is already enabled; disable MFA before enrolling again"
            )

        if mfa_method == MfaMethod.TOTP:
            secret = generate_totp_secret()
            self.store.save_mfa_enrollment(
                MfaEnrollment(user_id=user.id, method=mfa_method, secret=secret, enabled=False)
            )
            return MfaEnrollmentStart(
                method=mfa_method.value,
                secret=secret,
                otpauth_uri=provisioning_uri(secret, user.email, self.settings.mfa_issuer_name),
            )

        target = destination or (user.phone if mfa_method == MfaMethod.SMS else user.email)
        if not target:
            raise ValidationError("A destination is required for this MFA method")
        code = generate_delivered_code()
        await self.registry.put_one_time_token(
            OTT_MFA_ENROLL,
            f"{user.id}:{mfa_method.value}",
            hash_code(code),
            self.settings.mfa_challenge_ttl_seconds,
        )
        self.store.save_mfa_enrollment(
            MfaEnrollment(user_id=user.id, method=mfa_method, destination=target, enabled=False)
        )
        await self._notify(self.notifier.send_mfa_code, target, code, method=mfa_method.value)
        return MfaEnrollmentStart(
            method=mfa_method.value,
            destination=self.notifier.redact_destination(target),
        )

    async def confirm_mfa_enrollment(self, user_id: str, method: str, code: str) -> List[str]:
        user = self.get_profile(user_id)
        enrollment = next(
            (item for item in self.store.get_mfa_enrollments(user_id) if item.method.value == method),
            None,
        )
        if enrollment is None:
            raise ValidationError("No pending enrollment for this MFA method")

        if enrollment.method == MfaMethod.TOTP:
            confirmed = bool(enrollment.secret) and verify_totp(enrollment.secret, code or "")
        else:
            expected = await self.registry.pop_one_time_token(
                OTT_MFA_ENROLL, f"{user_id}:{enrollment.method.value}"
            )
            confirmed = bool(expected) and verify_code_hash(code or "", expected)
        if not confirmed:
            raise MfaVerificationFailedError("Invalid verification code")

        self.store.save_mfa_enrollment(replace(enrollment, enabled=True))
        methods = sorted(set(user.mfa_methods) | {enrollment.method.value})
        self.store.update_user(user_id, mfa_enabled=True, mfa_methods=methods)
        backup_codes = generate_backup_codes()
        self.store.replace_backup_codes(user_id, [hash_backup_code(c) for c in backup_codes])
        await self._notify(self.notifier.send_mfa_enabled, user.email)
        logger.info("mfa_enabled", user_id=user_id, method=enrollment.method.value)
        return backup_codes

    async def disable_mfa(self, user_id: str, password: str) -> None:
        user = self.get_profile(user_id)
        record = self.store.get_password_record(user_id)
        if not record or not await self.passwords.verify(record.password_hash, password):
            raise InvalidCurrentPasswordError("Current password is incorrect")
        for enrollment in self.store.get_mfa_enrollments(user_id):
            self.store.delete_mfa_enrollment(user_id, enrollment.method.value)
        self.store.replace_backup_codes(user_id, [])
        self.store.update_user(user.id, mfa_enabled=False, mfa_methods=[])
        logger.info("mfa_disabled", user_id=user_id)
