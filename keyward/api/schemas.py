from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from keyward.service.errors import ERROR_CODES

MAX_JSON_DEPTH = 10
MAX_PASSWORD_LENGTH = 128


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject deeply nested JSON before it reaches storage."""
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)} | {
        chr(c) for c in range(0x2066, 0x206A)
    }
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is one of the stable error codes."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def _validate_username(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = _normalize_unicode(value.strip())
    if not 3 <= len(value) <= 64:
        raise ValueError("username must be 3-64 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError("username may contain only letters, digits, '.', '_' and '-'")
    return value


class ProfileFields(BaseModel):
    """Editable profile attributes; unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")

    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    display_name: Optional[str] = Field(default=None, max_length=100)
    avatar: Optional[str] = Field(default=None, max_length=2048)
    bio: Optional[str] = Field(default=None, max_length=1000)
    phone_number: Optional[str] = Field(default=None, max_length=32)
    date_of_birth: Optional[str] = Field(default=None, max_length=32)
    company: Optional[str] = Field(default=None, max_length=100)
    website: Optional[str] = Field(default=None, max_length=2048)
    preferences: Optional[dict] = None
    custom_fields: Optional[dict] = None

    @field_validator("preferences", "custom_fields")
    @classmethod
    def _validate_dict_depth(cls, value: Optional[dict]) -> Optional[dict]:
        if value is not None:
            _validate_json_depth(value)
        return value


class SignupRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    username: Optional[str] = None
    profile: Optional[ProfileFields] = None

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("username")
    @classmethod
    def _validate_signup_username(cls, value: Optional[str]) -> Optional[str]:
        return _validate_username(value)


class LoginRequest(BaseModel):
    """``identifier`` is an email or username; ``email`` is accepted as an alias."""

    identifier: str = Field(
        ...,
        min_length=1,
        max_length=254,
        validation_alias=AliasChoices("identifier", "email", "username"),
    )
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class EmailRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class VerifyEmailRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class DeleteAccountRequest(BaseModel):
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class PolicyFields(BaseModel):
    """Partial project policy; only the fields sent are changed."""

    model_config = ConfigDict(extra="forbid")

    allow_signup: Optional[bool] = None
    require_email_verification: Optional[bool] = None
    min_password_length: Optional[int] = None
    require_uppercase: Optional[bool] = None
    require_lowercase: Optional[bool] = None
    require_numbers: Optional[bool] = None
    require_special_chars: Optional[bool] = None
    session_timeout_minutes: Optional[int] = None
    max_sessions: Optional[int] = None
    enable_account_locking: Optional[bool] = None
    max_login_attempts: Optional[int] = None
    lockout_duration_minutes: Optional[int] = None

    def changes(self) -> dict[str, Any]:
        return {k: v for k, v in self.model_dump(exclude_unset=True).items() if v is not None}


class ProjectCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=1000)
    policy: Optional[PolicyFields] = None


class TeamRoleRequest(BaseModel):
    member_id: str = Field(..., min_length=1, max_length=64)
    role: Optional[Literal["member", "admin"]] = None


class PrincipalStatusRequest(BaseModel):
    status: Literal["active", "inactive", "suspended"]
    suspended_until: Optional[datetime] = None
