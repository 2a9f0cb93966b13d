from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from homestead.logging import get_correlation_id
from homestead.storage.models import canonical_email, normalize_unicode

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "mfa_setup_required",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = canonical_email(value)
    if not normalized:
        return None
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
    """Usernames: letters, digits, ``_``, ``.`` and ``-``; at most 64 characters."""
    if value is None:
        return None
    value = normalize_unicode(value.strip())
    if not value:
        return None
    if len(value) > 64:
        raise ValueError("username must be at most 64 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError(
            "username must contain only letters, digits, underscores, dots and hyphens"
        )
    return value


# Request bodies. Required-ness is checked by the service so a missing field
# is a 400 validation_error rather than a schema failure.


class RegisterRequest(BaseModel):
    username: Optional[str] = Field(default=None, max_length=64)
    email: Optional[str] = Field(default=None, max_length=254)
    password: Optional[str] = Field(default=None, max_length=1024)

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: Optional[str]) -> Optional[str]:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value)


class PasswordProofRequest(BaseModel):
    username: Optional[str] = Field(default=None, max_length=254)
    password: Optional[str] = Field(default=None, max_length=1024)


class VerifyInitialRequest(PasswordProofRequest):
    code: Optional[str] = Field(default=None, max_length=16)


class VerifyRequest(BaseModel):
    code: Optional[str] = Field(default=None, max_length=16)


class LoginRequest(BaseModel):
    username: Optional[str] = Field(
        default=None, max_length=254, description="Username or email"
    )
    password: Optional[str] = Field(default=None, max_length=1024)
    totp_code: Optional[str] = Field(default=None, max_length=16)
    device_id: Optional[str] = Field(default=None, max_length=256)


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)
    device_id: Optional[str] = Field(default=None, max_length=256)


class LogoutRequest(TokenRefreshRequest):
    pass


# Response payloads


class UserPublic(BaseModel):
    id: str
    username: str
    email: str
    is_admin: bool
    totp_enabled: bool
    created_at: datetime


class SetupStatusResponse(BaseModel):
    admin_exists: bool
    needs_setup: bool


class RegisterResponse(BaseModel):
    user: UserPublic
    is_admin: bool
    message: str
    # Only for the admin account: where the secrets live so the operator can back them up
    secrets_file: Optional[str] = None
    generated_at: Optional[str] = None


class TOTPSetupResponse(BaseModel):
    secret: str
    otpauth_uri: str
    qr_code: str


class MessageResponse(BaseModel):
    message: str


class AuthTokensResponse(BaseModel):
    user: UserPublic
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class BackupResponse(BaseModel):
    jwt_secret: str
    jwt_refresh_secret: str
    encryption_key: str
    secrets_file: str
    source: str
    generated_at: str
