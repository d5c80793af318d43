from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    AccountStatus,
    EmailVerification,
    EmailVerificationState,
    OtpCode,
    RevocationReason,
    RevokedToken,
    Session,
    SessionState,
    TokenType,
    User,
    as_utc,
    utcnow,
)


def _accepts_guesses(otp: OtpCode, max_attempts: int) -> bool:
    return (
        otp.used_at is None
        and otp.blocked_until is None
        and otp.attempt_count < max_attempts
    )


class MemoryStore:
    """In-process backing store for development and tests.

    Every method takes ``_data_lock`` so multi-row mutations (logout, OTP
    reissue) are observed all-or-nothing by concurrent callers. Returned
    objects are copies; mutating them does not write through.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.otps: Dict[str, OtpCode] = {}
        self.sessions: Dict[str, Session] = {}
        self.revoked: Dict[str, RevokedToken] = {}
        self.verifications: Dict[str, EmailVerification] = {}
        # RLock so composite operations can reuse the single-row helpers
        self._data_lock = threading.RLock()

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        name: str = "",
        phone: Optional[str] = None,
        is_seller: bool = False,
        verified: bool = False,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                password_hash=password_hash,
                name=name,
                phone=phone,
                is_seller=is_seller,
                verification=(
                    EmailVerificationState.VERIFIED
                    if verified
                    else EmailVerificationState.PENDING
                ),
            )
            self.users[user.id] = user
            return replace(user)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def _update_user(self, user_id: str, **changes) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key, value in changes.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
            return replace(user)

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        return self._update_user(user_id, verification=EmailVerificationState.VERIFIED)

    def set_user_status(self, user_id: str, status: AccountStatus) -> Optional[User]:
        return self._update_user(user_id, status=status)

    def record_login(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            self._update_user(
                user_id,
                login_count=user.login_count + 1,
                last_login_at=utcnow(),
                otp_request_count=0,
                otp_blocked_until=None,
            )

    def record_otp_request(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            self._update_user(
                user_id,
                otp_request_count=user.otp_request_count + 1,
                last_otp_request_at=utcnow(),
            )

    def block_otp_requests(self, user_id: str, until: datetime) -> None:
        self._update_user(user_id, otp_blocked_until=until)

    # -- one-time codes ----------------------------------------------------

    def invalidate_user_otps(self, user_id: str) -> int:
        with self._data_lock:
            now = utcnow()
            count = 0
            for otp in self.otps.values():
                if otp.user_id == user_id and otp.used_at is None:
                    otp.used_at = now
                    count += 1
            return count

    def create_otp(
        self,
        user_id: str,
        code_hash: str,
        *,
        ttl_minutes: int = 5,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> OtpCode:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            self.invalidate_user_otps(user_id)
            otp = OtpCode.new(
                user_id,
                code_hash,
                ttl_minutes,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.otps[otp.id] = otp
            return replace(otp)

    def get_latest_otp(self, user_id: str) -> Optional[OtpCode]:
        with self._data_lock:
            codes = [otp for otp in self.otps.values() if otp.user_id == user_id]
            if not codes:
                return None
            return replace(max(codes, key=lambda otp: otp.created_at))

    def increment_otp_attempt(
        self, otp_id: str, *, max_attempts: int, block_until: datetime
    ) -> Optional[int]:
        """Count a failed guess and block the code once ``max_attempts`` is reached.

        Returns the new count, or None when the code was already used or
        blocked and nothing was recorded.
        """
        with self._data_lock:
            otp = self.otps.get(otp_id)
            if not otp or not _accepts_guesses(otp, max_attempts):
                return None
            otp.attempt_count += 1
            if otp.attempt_count >= max_attempts:
                otp.blocked_until = block_until
            return otp.attempt_count

    def mark_otp_used(self, otp_id: str, *, max_attempts: int) -> bool:
        """Consume the code; False when it was already used or is blocked."""
        with self._data_lock:
            otp = self.otps.get(otp_id)
            if not otp or not _accepts_guesses(otp, max_attempts):
                return False
            otp.used_at = utcnow()
            return True

    # -- sessions ----------------------------------------------------------

    def create_session(
        self,
        user_id: str,
        refresh_token: str,
        *,
        access_token_jti: Optional[str] = None,
        ttl_days: int = 7,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        device_name: Optional[str] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if any(s.refresh_token == refresh_token for s in self.sessions.values()):
                raise ConstraintViolation(
                    "refresh token already bound", {"field": "refresh_token"}
                )
            sess = Session.new(
                user_id,
                refresh_token,
                ttl_days,
                access_token_jti=access_token_jti,
                user_agent=user_agent,
                ip_address=ip_address,
                device_name=device_name,
            )
            self.sessions[sess.id] = sess
            return replace(sess)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def _find_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        now = utcnow()
        return next(
            (
                s
                for s in self.sessions.values()
                if s.refresh_token == refresh_token and s.is_valid(now)
            ),
            None,
        )

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._data_lock:
            sess = self._find_session_by_refresh_token(refresh_token)
            return replace(sess) if sess else None

    def list_active_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            now = utcnow()
            active = [
                replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_valid(now)
            ]
            return sorted(active, key=lambda s: s.last_activity, reverse=True)

    def update_session_access_jti(self, session_id: str, jti: str) -> bool:
        """Bind ``jti`` to the session only while it is still active."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_valid():
                return False
            sess.access_token_jti = jti
            sess.last_activity = utcnow()
            return True

    def deactivate_session(self, session_id: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return False
            sess.state = SessionState.INACTIVE
            return True

    def deactivate_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if sess.user_id != user_id or sess.id == except_session_id:
                    continue
                if sess.is_active:
                    sess.state = SessionState.INACTIVE
                    count += 1
            return count

    # -- revocation --------------------------------------------------------

    def revoke_token(
        self,
        jti: str,
        token_type: TokenType,
        reason: RevocationReason,
        *,
        user_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> bool:
        """Append ``jti`` to the registry; False when it was already there."""
        with self._data_lock:
            if jti in self.revoked:
                return False
            self.revoked[jti] = RevokedToken(
                jti=jti,
                token_type=token_type,
                reason=reason,
                user_id=user_id,
                expires_at=expires_at,
            )
            return True

    def is_token_revoked(self, jti: str) -> bool:
        with self._data_lock:
            return jti in self.revoked

    def logout_session(
        self,
        refresh_jti: str,
        refresh_token: str,
        *,
        user_id: Optional[str] = None,
        refresh_expires_at: Optional[datetime] = None,
    ) -> Optional[Session]:
        """Revoke both token ids and deactivate the session as one unit.

        Changes are staged first and applied only once every lookup has
        succeeded, so a failure leaves the registry and sessions untouched.
        """
        with self._data_lock:
            sess = self._find_session_by_refresh_token(refresh_token)
            staged: List[RevokedToken] = []
            if refresh_jti not in self.revoked:
                staged.append(
                    RevokedToken(
                        jti=refresh_jti,
                        token_type=TokenType.REFRESH,
                        reason=RevocationReason.USER_LOGOUT,
                        user_id=user_id,
                        expires_at=refresh_expires_at,
                    )
                )
            if sess and sess.access_token_jti and sess.access_token_jti not in self.revoked:
                staged.append(
                    RevokedToken(
                        jti=sess.access_token_jti,
                        token_type=TokenType.ACCESS,
                        reason=RevocationReason.USER_LOGOUT,
                        user_id=sess.user_id,
                    )
                )
            for entry in staged:
                self.revoked[entry.jti] = entry
            if sess:
                sess.state = SessionState.INACTIVE
                return replace(sess)
            return None

    # -- email verification ------------------------------------------------

    def create_email_verification(
        self, user_id: str, email: str, token: str, *, ttl_hours: int = 24
    ) -> EmailVerification:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if any(v.token == token for v in self.verifications.values()):
                raise ConstraintViolation("token already exists", {"field": "token"})
            now = utcnow()
            record = EmailVerification(
                id=str(uuid.uuid4()),
                user_id=user_id,
                token=token,
                email=email,
                expires_at=now + timedelta(hours=ttl_hours),
                created_at=now,
            )
            self.verifications[record.id] = record
            return replace(record)

    def get_email_verification(self, token: str) -> Optional[EmailVerification]:
        with self._data_lock:
            record = next(
                (v for v in self.verifications.values() if v.token == token), None
            )
            return replace(record) if record else None

    def mark_email_verification_used(self, verification_id: str) -> bool:
        with self._data_lock:
            record = self.verifications.get(verification_id)
            if not record or record.used_at is not None:
                return False
            record.used_at = utcnow()
            return True

    # -- retention ---------------------------------------------------------

    def purge_expired_otps(self, expired_before: datetime) -> int:
        with self._data_lock:
            stale = [
                oid
                for oid, otp in self.otps.items()
                if as_utc(otp.expires_at) < expired_before
            ]
            for oid in stale:
                self.otps.pop(oid, None)
            return len(stale)

    def purge_expired_verifications(self, expired_before: datetime) -> int:
        with self._data_lock:
            stale = [
                vid
                for vid, record in self.verifications.items()
                if as_utc(record.expires_at) < expired_before
            ]
            for vid in stale:
                self.verifications.pop(vid, None)
            return len(stale)

    def purge_stale_sessions(
        self, expired_before: datetime, inactive_before: datetime
    ) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if as_utc(sess.expires_at) < expired_before
                or (
                    not sess.is_active
                    and as_utc(sess.last_activity) < inactive_before
                )
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self.logger.info("sessions_purged", count=len(stale))
            return len(stale)
