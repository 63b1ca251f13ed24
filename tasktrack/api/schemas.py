from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from tasktrack.service.tasks import DESCRIPTION_MAX_LENGTH, TITLE_MAX_LENGTH
from tasktrack.storage.models import Identity, Task

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
NAME_MAX_LENGTH = 50


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(
        c for c in value if c not in zero_width and c not in bidi_overrides
    )
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("Email should be valid")
    normalized = _normalize_unicode(value.strip().lower())
    if not normalized:
        raise ValueError("Email is required")
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("Email should be valid")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Email should be valid")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("Email should be valid")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Email should be valid")
    return normalized


_HANDLE_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


def _validate_handle(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = _normalize_unicode(value.strip())
    if not 3 <= len(value) <= 50:
        raise ValueError("Username must be between 3 and 50 characters")
    if not _HANDLE_PATTERN.match(value):
        raise ValueError(
            "Username may contain only letters, digits, dots, underscores and hyphens"
        )
    return value


def _validate_password_strength(value: str) -> str:
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValueError(f"Password must be at most {PASSWORD_MAX_LENGTH} characters")
    return value


def _validate_name(value: Optional[str], label: str) -> Optional[str]:
    if value is None:
        return None
    value = _normalize_unicode(value).strip()
    if not value:
        raise ValueError(f"{label} is required")
    if len(value) > NAME_MAX_LENGTH:
        raise ValueError(f"{label} must be at most {NAME_MAX_LENGTH} characters")
    return value


def _epoch_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class _ApiModel(BaseModel):
    """camelCase on the wire, snake_case accepted on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# auth requests
class RegisterRequest(_ApiModel):
    email: str
    handle: str = Field(..., validation_alias=AliasChoices("handle", "username"))
    password: str
    first_name: str
    last_name: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("handle")
    @classmethod
    def _check_handle(cls, value: str) -> str:
        return _validate_handle(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("first_name")
    @classmethod
    def _check_first_name(cls, value: str) -> str:
        return _validate_name(value, "First name")

    @field_validator("last_name")
    @classmethod
    def _check_last_name(cls, value: str) -> str:
        return _validate_name(value, "Last name")


class LoginRequest(_ApiModel):
    email: str
    password: str = Field(..., min_length=1, max_length=PASSWORD_MAX_LENGTH)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class EmailRequest(_ApiModel):
    """Body of forgot-password and resend-verification."""

    email: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class VerifyEmailRequest(_ApiModel):
    code: str = Field(
        ..., min_length=1, max_length=32, validation_alias=AliasChoices("code", "token")
    )


class ResetPasswordRequest(_ApiModel):
    code: str = Field(
        ..., min_length=1, max_length=32, validation_alias=AliasChoices("code", "token")
    )
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _check_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class RefreshTokenRequest(_ApiModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


# profile requests
class ProfileUpdateRequest(_ApiModel):
    handle: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("handle", "username")
    )
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @field_validator("handle")
    @classmethod
    def _check_handle(cls, value: Optional[str]) -> Optional[str]:
        return _validate_handle(value)

    @field_validator("first_name")
    @classmethod
    def _check_first_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value, "First name")

    @field_validator("last_name")
    @classmethod
    def _check_last_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value, "Last name")


class PasswordChangeRequest(_ApiModel):
    current_password: str = Field(..., min_length=1, max_length=PASSWORD_MAX_LENGTH)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _check_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


# task requests
class TaskCreateRequest(_ApiModel):
    title: str = Field(..., max_length=TITLE_MAX_LENGTH)
    description: Optional[str] = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)

    @field_validator("title")
    @classmethod
    def _check_title(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Title is required")
        return value.strip()


class TaskUpdateRequest(_ApiModel):
    title: Optional[str] = Field(default=None, max_length=TITLE_MAX_LENGTH)
    description: Optional[str] = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)
    completed: Optional[bool] = None

    @field_validator("title")
    @classmethod
    def _check_title(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            raise ValueError("Title must not be blank")
        return value


# responses
class MessageResponse(_ApiModel):
    message: str
    success: bool = True


class UserSummary(_ApiModel):
    id: str
    email: str
    handle: str
    first_name: str
    last_name: str
    email_verified: bool
    created_at: datetime

    @classmethod
    def from_identity(cls, identity: Identity) -> "UserSummary":
        return cls(
            id=identity.id,
            email=identity.email,
            handle=identity.handle,
            first_name=identity.first_name,
            last_name=identity.last_name,
            email_verified=identity.email_verified,
            created_at=identity.created_at,
        )


class AuthTokenResponse(_ApiModel):
    access_token: str
    refresh_token: str
    user: UserSummary
    expires_at: int = Field(..., description="Access token expiry, epoch milliseconds")

    @classmethod
    def build(
        cls,
        access_token: str,
        refresh_token: str,
        identity: Identity,
        expires_at: datetime,
    ) -> "AuthTokenResponse":
        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            user=UserSummary.from_identity(identity),
            expires_at=_epoch_millis(expires_at),
        )


class ProfileResponse(UserSummary):
    updated_at: datetime

    @classmethod
    def from_identity(cls, identity: Identity) -> "ProfileResponse":
        return cls(
            id=identity.id,
            email=identity.email,
            handle=identity.handle,
            first_name=identity.first_name,
            last_name=identity.last_name,
            email_verified=identity.email_verified,
            created_at=identity.created_at,
            updated_at=identity.updated_at,
        )


class TaskResponse(_ApiModel):
    id: str
    title: str
    description: Optional[str] = None
    completed: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_task(cls, task: Task) -> "TaskResponse":
        return cls(
            id=task.id,
            title=task.title,
            description=task.description,
            completed=task.completed,
            created_at=task.created_at,
            updated_at=task.updated_at,
        )


class TaskListResponse(_ApiModel):
    message: str
    success: bool = True
    tasks: List[TaskResponse]
    total_tasks: int


class TaskMutationResponse(_ApiModel):
    message: str
    success: bool = True
    task: TaskResponse
