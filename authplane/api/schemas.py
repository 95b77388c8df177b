from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from authplane.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "unavailable",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
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
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_SLUG_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,62}[a-z0-9])?$")


def _normalize_unicode(value: str) -> str:
    # Zero-width and bidi override characters can spoof an address
    stripped = set("\u200b\u200c\u200d\ufeff")
    stripped.update(chr(c) for c in range(0x202A, 0x202F))
    stripped.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in stripped)
    return unicodedata.normalize("NFKC", cleaned)


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
    labels = domain.split(".")
    if len(labels) < 2:
        raise ValueError("invalid email address format")
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)
    company_slug: str = Field(..., max_length=64)
    invitation_code: Optional[str] = Field(default=None, max_length=128)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("company_slug")
    @classmethod
    def _validate_slug(cls, value: str) -> str:
        slug = value.strip().lower()
        if not _SLUG_PATTERN.match(slug):
            raise ValueError("invalid company slug")
        return slug


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=256)


class RevokeRequest(BaseModel):
    scope: Literal["token", "device", "user"]
    token: Optional[str] = Field(default=None, max_length=8192)
    user_id: Optional[int] = Field(default=None, gt=0)
    device_id: Optional[str] = Field(default=None, max_length=64)

    @model_validator(mode="after")
    def _check_scope_fields(self):
        if self.scope == "device" and not self.device_id:
            raise ValueError("device_id is required for device scope")
        return self


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., max_length=128)
    new_password: str = Field(..., max_length=128)


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., max_length=128)


class UserInfo(BaseModel):
    id: int
    email: str
    company_id: Optional[int] = None
    system_role: str
    status: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class DeviceInfoResponse(BaseModel):
    device_id: str
    device_name: Optional[str] = None
    device_type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    ip: Optional[str] = None
    is_active: bool = True
    last_access_at: Optional[datetime] = None


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserInfo
    device: Optional[DeviceInfoResponse] = None


class SessionInfo(BaseModel):
    device_id: str
    device_name: Optional[str] = None
    device_type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    ip: Optional[str] = None
    last_access_at: Optional[datetime] = None
    created_at: datetime
    expires_at: datetime
    current: bool = False


class SessionListResponse(BaseModel):
    items: List[SessionInfo]


class RevokeResponse(BaseModel):
    scope: str
    revoked: int


class InvalidateResponse(BaseModel):
    user_id: int
    cutoff: float


class MeResponse(BaseModel):
    user_id: int
    tenant_id: Optional[int] = None
    tenant_slug: Optional[str] = None
    device_id: str
    system_role: str
    roles: List[str] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list)
    global_access: bool = False


class PasswordUpdatedResponse(BaseModel):
    user_id: int
    revoked: Optional[int] = None
