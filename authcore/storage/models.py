from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize naive timestamps (treated as UTC) and aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AccountStatus(str, Enum):
    """Whether the account may log in. Flipped by administrative deactivation."""

    ACTIVE = "active"
    INACTIVE = "inactive"


class EmailVerificationState(str, Enum):
    """Set to VERIFIED once a verification token is redeemed."""

    PENDING = "pending"
    VERIFIED = "verified"


class SessionState(str, Enum):
    """ACTIVE from login until logout or explicit invalidation."""

    ACTIVE = "active"
    INACTIVE = "inactive"


class OtpState(str, Enum):
    """Derived lifecycle of a one-time code; every state but VALID is terminal."""

    VALID = "valid"
    USED = "used"
    EXPIRED = "expired"
    BLOCKED = "blocked"


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class RevocationReason(str, Enum):
    USER_LOGOUT = "user_logout"
    REFRESH_REVOCATION = "refresh_revocation"
    SESSION_INVALIDATED = "session_invalidated"


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    name: str = ""
    phone: Optional[str] = None
    is_seller: bool = False
    status: AccountStatus = AccountStatus.ACTIVE
    verification: EmailVerificationState = EmailVerificationState.PENDING
    otp_blocked_until: Optional[datetime] = None
    otp_request_count: int = 0
    last_otp_request_at: Optional[datetime] = None
    login_count: int = 0
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def role(self) -> str:
        return "seller" if self.is_seller else "customer"

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    @property
    def email_verified(self) -> bool:
        return self.verification == EmailVerificationState.VERIFIED

    def otp_block_remaining(self, now: Optional[datetime] = None) -> Optional[timedelta]:
        if self.otp_blocked_until is None:
            return None
        remaining = as_utc(self.otp_blocked_until) - (now or utcnow())
        return remaining if remaining > timedelta(0) else None


@dataclass
class OtpCode:
    id: str
    user_id: str
    code_hash: str
    expires_at: datetime
    attempt_count: int = 0
    used_at: Optional[datetime] = None
    blocked_until: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        code_hash: str,
        ttl_minutes: int = 5,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "OtpCode":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            code_hash=code_hash,
            expires_at=now + timedelta(minutes=ttl_minutes),
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
        )

    def state(
        self, now: Optional[datetime] = None, max_attempts: Optional[int] = None
    ) -> OtpState:
        now = now or utcnow()
        if self.used_at is not None:
            return OtpState.USED
        if as_utc(self.expires_at) <= now:
            return OtpState.EXPIRED
        exhausted = max_attempts is not None and self.attempt_count >= max_attempts
        if self.blocked_until is not None or exhausted:
            # Blocked codes never become valid again, even after the cool-down
            return OtpState.BLOCKED
        return OtpState.VALID


@dataclass
class Session:
    id: str
    user_id: str
    refresh_token: str
    expires_at: datetime
    access_token_jti: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    device_name: Optional[str] = None
    state: SessionState = SessionState.ACTIVE
    last_activity: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token: str,
        ttl_days: int = 7,
        *,
        access_token_jti: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        device_name: Optional[str] = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_token=refresh_token,
            access_token_jti=access_token_jti,
            expires_at=now + timedelta(days=ttl_days),
            user_agent=user_agent,
            ip_address=ip_address,
            device_name=device_name,
            last_activity=now,
            created_at=now,
        )

    @property
    def is_active(self) -> bool:
        return self.state == SessionState.ACTIVE

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and as_utc(self.expires_at) > (now or utcnow())


@dataclass
class RevokedToken:
    jti: str
    token_type: TokenType
    reason: RevocationReason
    user_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    revoked_at: datetime = field(default_factory=utcnow)


@dataclass
class EmailVerification:
    id: str
    user_id: str
    token: str
    email: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return self.used_at is None and as_utc(self.expires_at) > (now or utcnow())
