from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import AuthenticationError, RateLimitError
from authcore.storage.models import OtpState, User, as_utc, utcnow

if TYPE_CHECKING:
    from authcore.service.auth import AuthStore

logger = get_logger(__name__)

CODE_EXPIRED = "code expired or already used; request a new code"


def generate_code() -> str:
    """Six-digit code in [100000, 999999]."""
    return str(100000 + secrets.randbelow(900000))


@dataclass
class OtpStatus:
    is_blocked: bool
    blocked_until: Optional[datetime]
    remaining_minutes: Optional[int]
    has_active_code: bool
    code_expires_at: Optional[datetime]
    remaining_attempts: int


class OtpManager:
    """Issues and checks one-time login codes.

    Only an argon2 hash of each code is stored. A code allows
    ``otp_max_attempts`` wrong guesses; the last one blocks it for
    ``otp_block_minutes`` and it can never be redeemed afterwards.
    """

    def __init__(
        self,
        store: "AuthStore",
        settings: Settings,
        hasher: PasswordHasher | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.hasher = hasher or PasswordHasher(type=Type.ID)

    def issue(
        self,
        user_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        """Replace any outstanding code for ``user_id`` and return the new plaintext."""
        code = generate_code()
        otp = self.store.create_otp(
            user_id,
            self.hasher.hash(code),
            ttl_minutes=self.settings.otp_ttl_minutes,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info("otp_issued", user_id=user_id, otp_id=otp.id, expires_at=otp.expires_at.isoformat())
        return code

    def _matches(self, code_hash: str, submitted: str) -> bool:
        try:
            return self.hasher.verify(code_hash, submitted)
        except (InvalidHash, VerifyMismatchError):
            return False

    def _blocked_error(self, otp, now: datetime) -> RateLimitError:
        if otp.blocked_until is None:
            retry_after = self.settings.otp_block_minutes * 60
        else:
            retry_after = int((as_utc(otp.blocked_until) - now).total_seconds())
        return RateLimitError(
            "code blocked after too many failed attempts", retry_after=max(1, retry_after)
        )

    def _closed_error(self, user_id: str, now: datetime) -> Exception:
        """Error for a code that was blocked or redeemed by a concurrent request."""
        latest = self.store.get_latest_otp(user_id)
        max_attempts = self.settings.otp_max_attempts
        if latest is not None and latest.state(now, max_attempts) == OtpState.BLOCKED:
            if latest.blocked_until is None or as_utc(latest.blocked_until) > now:
                return self._blocked_error(latest, now)
        return AuthenticationError(CODE_EXPIRED)

    def validate(self, user_id: str, submitted_code: str) -> None:
        otp = self.store.get_latest_otp(user_id)
        now = utcnow()
        if otp is None:
            raise AuthenticationError(CODE_EXPIRED)
        max_attempts = self.settings.otp_max_attempts
        state = otp.state(now, max_attempts)
        if state in (OtpState.USED, OtpState.EXPIRED):
            raise AuthenticationError(CODE_EXPIRED)
        if state == OtpState.BLOCKED:
            if otp.blocked_until is None or as_utc(otp.blocked_until) > now:
                raise self._blocked_error(otp, now)
            raise AuthenticationError(CODE_EXPIRED)

        if not self._matches(otp.code_hash, (submitted_code or "").strip()):
            until = now + timedelta(minutes=self.settings.otp_block_minutes)
            # Counting and blocking happen in one store call so a correct
            # guess racing the last wrong one cannot slip between them
            attempts = self.store.increment_otp_attempt(
                otp.id, max_attempts=max_attempts, block_until=until
            )
            if attempts is None:
                raise self._closed_error(user_id, now)
            if attempts >= max_attempts:
                logger.warning("otp_blocked", user_id=user_id, otp_id=otp.id, attempts=attempts)
                raise RateLimitError(
                    "code blocked after too many failed attempts",
                    retry_after=self.settings.otp_block_minutes * 60,
                )
            remaining = max_attempts - attempts
            logger.info("otp_mismatch", user_id=user_id, attempts=attempts)
            raise AuthenticationError(
                f"incorrect code; {remaining} attempts remaining",
                detail={"remaining_attempts": remaining},
            )

        if not self.store.mark_otp_used(otp.id, max_attempts=max_attempts):
            # Redeemed or blocked by a concurrent request since the lookup
            raise self._closed_error(user_id, now)
        logger.info("otp_verified", user_id=user_id, otp_id=otp.id)

    def status(self, user: User) -> OtpStatus:
        now = utcnow()
        otp = self.store.get_latest_otp(user.id)
        blocked_until: Optional[datetime] = None
        if user.otp_block_remaining(now) is not None:
            blocked_until = as_utc(user.otp_blocked_until)
        state = otp.state(now, self.settings.otp_max_attempts) if otp else None
        if state == OtpState.BLOCKED and otp.blocked_until and as_utc(otp.blocked_until) > now:
            code_block = as_utc(otp.blocked_until)
            blocked_until = max(blocked_until, code_block) if blocked_until else code_block
        remaining_minutes = None
        if blocked_until is not None:
            remaining_minutes = max(1, -(-int((blocked_until - now).total_seconds()) // 60))
        valid = state == OtpState.VALID
        return OtpStatus(
            is_blocked=blocked_until is not None,
            blocked_until=blocked_until,
            remaining_minutes=remaining_minutes,
            has_active_code=valid,
            code_expires_at=as_utc(otp.expires_at) if valid else None,
            remaining_attempts=(
                max(0, self.settings.otp_max_attempts - otp.attempt_count) if valid else 0
            ),
        )
