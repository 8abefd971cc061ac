"""Helpers shared by the memory and Postgres credential stores."""

from __future__ import annotations

import base64
import hashlib
import os
import uuid
from typing import Any, Optional, Protocol, Sequence

from cryptography.fernet import Fernet, InvalidToken

from vaultauth.storage.models import MfaEnrollment, User, UserAuthCredential, UserStatus


def generate_uuid() -> str:
    return str(uuid.uuid4())


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_mfa_cipher(key_material: Optional[str]) -> Fernet:
    """Build the Fernet cipher used for MFA secrets at rest.

    Falls back to ``MFA_SECRET_KEY`` then ``JWT_SECRET`` from the environment.
    """
    material = key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
    if not material:
        raise RuntimeError("MFA_SECRET_KEY or JWT_SECRET is required to encrypt MFA secrets")
    try:
        return Fernet(derive_cipher_key(material))
    except (ValueError, TypeError) as exc:
        raise RuntimeError("Unable to initialize MFA cipher") from exc


def encrypt_secret(cipher: Fernet, secret: Optional[str]) -> Optional[str]:
    if secret is None:
        return None
    return cipher.encrypt(secret.encode()).decode()


def decrypt_secret(cipher: Fernet, token: Optional[str]) -> Optional[str]:
    if token is None:
        return None
    try:
        return cipher.decrypt(token.encode()).decode()
    except InvalidToken as exc:
        raise RuntimeError("MFA secret could not be decrypted; check MFA_SECRET_KEY") from exc


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Return ``row[key]`` for dict rows, falling back to ``default``."""
    if row is None:
        return default
    try:
        value = row[key]
    except (KeyError, IndexError, TypeError):
        return default
    return default if value is None else value


class CredentialStore(Protocol):
    """Synchronous persistence contract for users, passwords and MFA."""

    def create_user(
        self,
        email: str,
        *,
        first_name: str = "",
        last_name: str = "",
        phone: Optional[str] = None,
        status: UserStatus = UserStatus.PENDING_VERIFICATION,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[UserAuthCredential]: ...

    def record_failed_login(self, user_id: str) -> int: ...

    def reset_failed_logins(self, user_id: str) -> None: ...

    def save_mfa_enrollment(self, enrollment: MfaEnrollment) -> None: ...

    def get_mfa_enrollments(self, user_id: str) -> list[MfaEnrollment]: ...

    def delete_mfa_enrollment(self, user_id: str, method: str) -> None: ...

    def replace_backup_codes(self, user_id: str, code_hashes: Sequence[str]) -> None: ...

    def consume_backup_code(self, user_id: str, code_hash: str) -> bool: ...

    def verify_connection(self) -> None: ...
