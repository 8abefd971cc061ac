from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class RegistryError(Exception):
    """Base class for session registry failures."""


class InvalidRefresh(RegistryError):
    """Token family or session is unknown, expired or already revoked."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class RefreshTokenReuseDetected(RegistryError):
    """A rotated refresh token was presented again.

    Raised after the registry has revoked the whole family, so callers only
    need to report the security event.
    """

    def __init__(self, family_id: str, session_id: Optional[str] = None):
        super().__init__(f"refresh token reuse detected for family {family_id}")
        self.family_id = family_id
        self.session_id = session_id


__all__ = [
    "ConstraintViolation",
    "RegistryError",
    "InvalidRefresh",
    "RefreshTokenReuseDetected",
]
