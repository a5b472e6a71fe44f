from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class UserStatus(str, Enum):
    ACTIVE = "active"
    LOCKED = "locked"
    SUSPENDED = "suspended"


class SecuritySeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    email_verified: bool = False
    email_verified_at: Optional[datetime] = None
    failed_login_count: int = 0
    lockout_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    status: UserStatus = UserStatus.ACTIVE
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_locked(self, now: datetime) -> bool:
        return self.lockout_until is not None and self.lockout_until > now

    @property
    def display_name(self) -> str:
        return self.first_name or self.email.split("@", 1)[0]


@dataclass
class Role:
    id: str
    name: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Permission:
    id: str
    key: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class UserSession:
    """One logical device login. Never deleted, only revoked."""

    id: str
    user_id: str
    refresh_token_hash: str
    expires_at: datetime
    fingerprint: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device: Dict[str, Any] = field(default_factory=dict)
    access_jti: Optional[str] = None
    access_expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    last_rotated_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token_hash: str,
        ttl_seconds: int,
        *,
        session_id: str | None = None,
        fingerprint: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        device: Dict[str, Any] | None = None,
        access_jti: str | None = None,
        access_expires_at: datetime | None = None,
        now: datetime | None = None,
    ) -> "UserSession":
        created = now or utcnow()
        return cls(
            id=session_id or new_id(),
            user_id=user_id,
            refresh_token_hash=refresh_token_hash,
            expires_at=created + timedelta(seconds=ttl_seconds),
            fingerprint=fingerprint,
            ip_address=ip_address,
            user_agent=user_agent,
            device=device or {},
            access_jti=access_jti,
            access_expires_at=access_expires_at,
            created_at=created,
            updated_at=created,
        )

    def is_active(self, now: datetime) -> bool:
        return self.revoked_at is None and self.expires_at > now


@dataclass
class RotatedRefreshToken:
    """A refresh token hash that was valid once and has been rotated out."""

    token_hash: str
    session_id: str
    user_id: str
    rotated_at: datetime
    expires_at: datetime


@dataclass
class EmailVerificationToken:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    consumed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class PasswordResetToken:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    consumed_at: Optional[datetime] = None
    requested_ip: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class SecurityEvent:
    id: str
    type: str
    severity: SecuritySeverity = SecuritySeverity.INFO
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
