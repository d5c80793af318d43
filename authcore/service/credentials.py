from __future__ import annotations

from typing import TYPE_CHECKING

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from authcore.logging import get_logger
from authcore.service.errors import AuthenticationError, RateLimitError
from authcore.storage.models import User, utcnow

if TYPE_CHECKING:
    from authcore.service.auth import AuthStore

logger = get_logger(__name__)

INVALID_CREDENTIALS = "email or password incorrect"


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class CredentialVerifier:
    """Checks email/password pairs and the account flags that gate login."""

    def __init__(self, store: "AuthStore", hasher: PasswordHasher | None = None) -> None:
        self.store = store
        self.hasher = hasher or PasswordHasher(type=Type.ID)
        # Unknown emails still pay for one argon2 verify
        self._decoy_hash = self.hasher.hash("authcore-decoy-password")

    def hash_password(self, password: str) -> str:
        return self.hasher.hash(password)

    def _password_matches(self, stored_hash: str, password: str) -> bool:
        try:
            return self.hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def verify(self, email: str, password: str) -> User:
        """Return the user for a correct password, or raise.

        Unknown email and wrong password raise the same error so callers
        cannot probe which addresses are registered.
        """
        user = self.store.get_user_by_email(normalize_email(email))
        if not user:
            self._password_matches(self._decoy_hash, password)
            logger.info("login_unknown_email")
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not self._password_matches(user.password_hash, password):
            logger.info("login_password_mismatch", user_id=user.id)
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not user.email_verified:
            raise AuthenticationError(
                "email not verified; check your inbox for the verification link",
                detail={"reason": "email_unverified"},
            )
        if not user.is_active:
            raise AuthenticationError(
                "account is deactivated; contact support",
                detail={"reason": "account_inactive"},
            )
        remaining = user.otp_block_remaining(utcnow())
        if remaining is not None:
            seconds = int(remaining.total_seconds())
            minutes = max(1, -(-seconds // 60))
            logger.warning("otp_requests_blocked", user_id=user.id, minutes=minutes)
            raise RateLimitError(
                f"too many code requests; try again in {minutes} minutes",
                retry_after=seconds,
                detail={"remaining_minutes": minutes},
            )
        return user
