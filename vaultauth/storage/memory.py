from __future__ import annotations

import threading
from dataclasses import fields as dataclass_fields
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from vaultauth.logging import get_logger
from vaultauth.storage.common import (
    build_mfa_cipher,
    decrypt_secret,
    encrypt_secret,
    generate_uuid,
    normalize_email,
)
from vaultauth.storage.errors import ConstraintViolation
from vaultauth.storage.models import (
    MfaEnrollment,
    MfaMethod,
    User,
    UserAuthCredential,
    UserStatus,
)

_USER_FIELDS = frozenset(f.name for f in dataclass_fields(User)) - {"id", "created_at"}


class MemoryStore:
    """In-process credential store used by tests and local development."""

    def __init__(self, *, mfa_encryption_key: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self._email_index: Dict[str, str] = {}
        self.credentials: Dict[str, UserAuthCredential] = {}
        self.mfa_enrollments: Dict[str, Dict[str, MfaEnrollment]] = {}
        self.backup_codes: Dict[str, List[str]] = {}
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key)

    def verify_connection(self) -> None:
        return None

    # users -----------------------------------------------------------------
    def create_user(
        self,
        email: str,
        *,
        first_name: str = "",
        last_name: str = "",
        phone: Optional[str] = None,
        status: UserStatus = UserStatus.PENDING_VERIFICATION,
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if normalized in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=generate_uuid(),
                email=normalized,
                first_name=first_name,
                last_name=last_name,
                phone=phone,
                status=UserStatus(status),
            )
            self.users[user.id] = user
            self._email_index[normalized] = user.id
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user, mfa_methods=list(user.mfa_methods)) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._email_index.get(normalize_email(email))
            return self.get_user(user_id) if user_id else None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _USER_FIELDS
        if unknown:
            raise ValueError(f"unknown user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if "email" in fields:
                new_email = normalize_email(fields["email"])
                owner = self._email_index.get(new_email)
                if owner and owner != user_id:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                self._email_index.pop(user.email, None)
                self._email_index[new_email] = user_id
                fields["email"] = new_email
            if "status" in fields:
                fields["status"] = UserStatus(fields["status"])
            fields["updated_at"] = datetime.now(timezone.utc)
            updated = replace(user, **fields)
            self.users[user_id] = updated
            return self.get_user(user_id)

    # passwords -------------------------------------------------------------
    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            existing = self.credentials.get(user_id)
            now = datetime.now(timezone.utc)
            self.credentials[user_id] = UserAuthCredential(
                user_id=user_id,
                password_hash=password_hash,
                password_algo=password_algo,
                created_at=existing.created_at if existing else now,
                last_updated_at=now,
            )

    def get_password_record(self, user_id: str) -> Optional[UserAuthCredential]:
        with self._data_lock:
            record = self.credentials.get(user_id)
            return replace(record) if record else None

    def record_failed_login(self, user_id: str) -> int:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return 0
            user.failed_login_attempts += 1
            user.updated_at = datetime.now(timezone.utc)
            return user.failed_login_attempts

    def reset_failed_logins(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.failed_login_attempts = 0
                user.locked_until = None

    # mfa -------------------------------------------------------------------
    def save_mfa_enrollment(self, enrollment: MfaEnrollment) -> None:
        stored = replace(
            enrollment,
            method=MfaMethod(enrollment.method),
            secret=encrypt_secret(self._mfa_cipher, enrollment.secret),
        )
        with self._data_lock:
            self.mfa_enrollments.setdefault(enrollment.user_id, {})[stored.method.value] = stored

    def get_mfa_enrollments(self, user_id: str) -> List[MfaEnrollment]:
        with self._data_lock:
            stored = list(self.mfa_enrollments.get(user_id, {}).values())
        return [
            replace(item, secret=decrypt_secret(self._mfa_cipher, item.secret))
            for item in stored
        ]

    def delete_mfa_enrollment(self, user_id: str, method: str) -> None:
        with self._data_lock:
            self.mfa_enrollments.get(user_id, {}).pop(MfaMethod(method).value, None)

    def replace_backup_codes(self, user_id: str, code_hashes: Sequence[str]) -> None:
        with self._data_lock:
            self.backup_codes[user_id] = list(code_hashes)

    def consume_backup_code(self, user_id: str, code_hash: str) -> bool:
        with self._data_lock:
            codes = self.backup_codes.get(user_id, [])
            if code_hash not in codes:
                return False
            codes.remove(code_hash)
            return True

    def backup_codes_remaining(self, user_id: str) -> int:
        with self._data_lock:
            return len(self.backup_codes.get(user_id, []))
