from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"


class SystemRole(str, Enum):
    """Platform-wide role; SUPERADMIN is the elevated tier."""

    SUPERADMIN = "SUPERADMIN"
    ADMIN = "ADMIN"
    MODERATOR = "MODERATOR"
    USER = "USER"


class InvitationStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    EXPIRED = "EXPIRED"


@dataclass
class Company:
    id: int
    name: str
    slug: str
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class User:
    id: int
    email: str
    password_hash: str
    company_id: Optional[int] = None
    status: str = UserStatus.ACTIVE.value
    system_role: str = SystemRole.USER.value
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE.value


@dataclass
class Permission:
    id: int
    company_id: int
    name: str
    resource: str
    action: str


@dataclass
class Role:
    id: int
    company_id: int
    name: str
    permission_ids: List[int] = field(default_factory=list)


@dataclass
class Device:
    id: int
    device_id: str
    user_id: int
    company_id: Optional[int]
    user_agent: str = "Unknown"
    ip: str = "Unknown"
    device_type: str = "desktop"
    device_name: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    is_active: bool = True
    last_access_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshToken:
    token: str
    user_id: int
    device_id: str
    company_id: Optional[int]
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        token: str,
        user_id: int,
        device_id: str,
        company_id: Optional[int],
        *,
        ttl_seconds: int,
    ) -> "RefreshToken":
        now = utcnow()
        return cls(
            token=token,
            user_id=user_id,
            device_id=device_id,
            company_id=company_id,
            expires_at=now + timedelta(seconds=ttl_seconds),
            created_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class BlacklistFallbackEntry:
    key: str
    value: str
    expires_at: datetime


@dataclass
class Invitation:
    code: str
    company_id: int
    status: str = InvitationStatus.PENDING.value
    expires_at: datetime = field(default_factory=lambda: utcnow() + timedelta(days=7))
    accepted_at: Optional[datetime] = None


@dataclass
class PasswordReset:
    """Single-use credential for setting a new password without the old one."""

    token: str
    user_id: int
    expires_at: datetime
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return not self.used and self.expires_at > (now or utcnow())


@dataclass
class SessionSummary:
    """Read-only projection of a live refresh token and its device."""

    device_id: str
    device_name: Optional[str]
    device_type: Optional[str]
    browser: Optional[str]
    os: Optional[str]
    ip: Optional[str]
    last_access_at: Optional[datetime]
    created_at: datetime
    expires_at: datetime
