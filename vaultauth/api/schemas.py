from __future__ import annotations

import re
import unicodedata
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Bound on raw password input; the policy itself is enforced by the service
MAX_PASSWORD_INPUT = 1024


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width characters."""
    normalized = unicodedata.normalize("NFKC", value)
    return "".join(ch for ch in normalized if unicodedata.category(ch) != "Cf")


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_PHONE_PATTERN = re.compile(r"^\+?[0-9]{7,15}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_phone(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    compact = re.sub(r"[\s().-]", "", value)
    if not _PHONE_PATTERN.match(compact):
        raise ValueError("invalid phone number")
    return compact


class Envelope(BaseModel):
    """Response envelope shared by every /auth route.

    Routes dump it with ``exclude_none`` so absent members are omitted.
    """

    success: bool
    message: str
    data: Optional[Any] = None
    error: Optional[str] = None
    details: Optional[Any] = None


class _Request(BaseModel):
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)


class RegisterRequest(_Request):
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_INPUT)
    confirm_password: str = Field(..., max_length=MAX_PASSWORD_INPUT)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    phone: Optional[str] = None
    accept_terms: bool = False
    accept_privacy: bool = False

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("phone")
    @classmethod
    def _validate_register_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _normalize_names(cls, value: str) -> str:
        return _normalize_unicode(value)

    @model_validator(mode="after")
    def _check_consistency(self) -> "RegisterRequest":
        if self.password != self.confirm_password:
            raise ValueError("passwords do not match")
        if not self.accept_terms:
            raise ValueError("terms of service must be accepted")
        if not self.accept_privacy:
            raise ValueError("privacy policy must be accepted")
        return self


class LoginRequest(_Request):
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_INPUT)
    remember_me: bool = False
    device_type: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class VerifyMfaRequest(_Request):
    challenge_id: str = Field(..., min_length=1, max_length=128)
    mfa_token: str = Field(..., min_length=6, max_length=16)
    mfa_type: Optional[Literal["totp", "sms", "email", "backup_code"]] = None


class RefreshRequest(_Request):
    # Falls back to the refresh_token cookie when omitted
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class LogoutRequest(_Request):
    all_devices: bool = False


class ChangePasswordRequest(_Request):
    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_INPUT)
    new_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_INPUT)
    confirm_password: str = Field(..., max_length=MAX_PASSWORD_INPUT)

    @model_validator(mode="after")
    def _passwords_match(self) -> "ChangePasswordRequest":
        if self.new_password != self.confirm_password:
            raise ValueError("passwords do not match")
        return self


class TokenRequest(_Request):
    token: str = Field(..., min_length=1, max_length=512)


class EmailRequest(_Request):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(_Request):
    token: str = Field(..., min_length=1, max_length=512)
    new_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_INPUT)
    confirm_password: str = Field(..., max_length=MAX_PASSWORD_INPUT)

    @model_validator(mode="after")
    def _passwords_match(self) -> "ResetPasswordRequest":
        if self.new_password != self.confirm_password:
            raise ValueError("passwords do not match")
        return self


class UpdateProfileRequest(_Request):
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    phone: Optional[str] = None

    @field_validator("phone")
    @classmethod
    def _validate_profile_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)


class MfaSetupRequest(_Request):
    method: Literal["totp", "sms", "email"]
    destination: Optional[str] = Field(default=None, max_length=254)


class MfaConfirmRequest(_Request):
    method: Literal["totp", "sms", "email"]
    code: str = Field(..., min_length=6, max_length=10)


class MfaDisableRequest(_Request):
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_INPUT)
