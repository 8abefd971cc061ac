"""Password policy and argon2id hashing."""

from __future__ import annotations

import asyncio
import re
from typing import List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from vaultauth.logging import get_logger
from vaultauth.service.errors import WeakPasswordError

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128

COMMON_PASSWORDS = frozenset(
    {
        "password",
        "password1",
        "password123",
        "passw0rd",
        "p@ssw0rd",
        "p@ssword1",
        "123456",
        "12345678",
        "123456789",
        "1234567890",
        "qwerty",
        "qwerty123",
        "qwertyuiop",
        "letmein",
        "letmein1!",
        "welcome",
        "welcome1",
        "welcome123!",
        "admin",
        "admin123",
        "iloveyou",
        "monkey",
        "dragon",
        "football",
        "baseball",
        "sunshine",
        "princess",
        "abc123",
        "trustno1",
        "changeme",
        "changeme1!",
    }
)

_SPECIAL_CHARS = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?`~]")


def password_policy_violations(password: str, email: Optional[str] = None) -> List[str]:
    """Return the list of failed requirements; empty when the password is acceptable."""
    errors: List[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if len(password) > MAX_PASSWORD_LENGTH:
        errors.append(f"Password must be at most {MAX_PASSWORD_LENGTH} characters long")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"\d", password):
        errors.append("Password must contain at least one digit")
    if not _SPECIAL_CHARS.search(password):
        errors.append("Password must contain at least one special character")
    if password.lower() in COMMON_PASSWORDS:
        errors.append("Password is too common")
    if email:
        local_part = email.lower().split("@")[0]
        if len(local_part) >= 3 and local_part in password.lower():
            errors.append("Password must not contain your email address")
    return errors


def validate_password_strength(password: str, email: Optional[str] = None) -> None:
    violations = password_policy_violations(password, email)
    if violations:
        raise WeakPasswordError(
            "Password does not meet security requirements",
            detail={"requirements": violations},
        )


class PasswordService:
    """argon2id hashing that keeps the event loop free.

    ``verify_dummy`` burns the same work as a real verification so callers can
    equalise timing between known and unknown accounts.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._dummy_hash = self._hasher.hash("vaultauth-dummy-password")

    def hash_sync(self, password: str) -> Tuple[str, str]:
        return self._hasher.hash(password), PASSWORD_ALGO

    def verify_sync(self, password_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_invalid")
            return False

    async def hash(self, password: str) -> Tuple[str, str]:
        return await asyncio.to_thread(self.hash_sync, password)

    async def verify(self, password_hash: str, password: str) -> bool:
        return await asyncio.to_thread(self.verify_sync, password_hash, password)

    async def verify_dummy(self, password: str) -> bool:
        await asyncio.to_thread(self.verify_sync, self._dummy_hash, password)
        return False
