from __future__ import annotations

import asyncio
import contextlib
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, List, Optional, Protocol, Set

import psycopg
from argon2 import PasswordHasher, Type
from redis.exceptions import RedisError

from authcore.config import Settings
from authcore.logging import get_logger, sanitize_error_message
from authcore.service.credentials import CredentialVerifier, normalize_email
from authcore.service.errors import (
    AuthenticationError,
    ConflictError,
    InternalError,
    NotFoundError,
    RateLimitError,
    ValidationError,
)
from authcore.service.notifier import EmailNotifier
from authcore.service.otp import CODE_EXPIRED, OtpManager, OtpStatus
from authcore.service.sessions import SessionLifecycle
from authcore.service.tokens import TokenClaims, TokenService
from authcore.storage.errors import ConstraintViolation, StoreUnavailable
from authcore.storage.models import (
    AccountStatus,
    EmailVerification,
    OtpCode,
    RevocationReason,
    Session,
    TokenType,
    User,
    utcnow,
)

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]+@[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)+$")

# Failures of the backing stores; surfaced to callers only as InternalError
_STORE_ERRORS = (
    StoreUnavailable,
    psycopg.Error,
    RedisError,
    ConnectionError,
    asyncio.TimeoutError,
)


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        name: str = "",
        phone: Optional[str] = None,
        is_seller: bool = False,
        verified: bool = False,
    ) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    def set_user_status(self, user_id: str, status: AccountStatus) -> Optional[User]: ...

    def record_login(self, user_id: str) -> None: ...

    def record_otp_request(self, user_id: str) -> None: ...

    def block_otp_requests(self, user_id: str, until: datetime) -> None: ...

    def invalidate_user_otps(self, user_id: str) -> int: ...

    def create_otp(
        self,
        user_id: str,
        code_hash: str,
        *,
        ttl_minutes: int = 5,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> OtpCode: ...

    def get_latest_otp(self, user_id: str) -> Optional[OtpCode]: ...

    def increment_otp_attempt(
        self, otp_id: str, *, max_attempts: int, block_until: datetime
    ) -> Optional[int]: ...

    def mark_otp_used(self, otp_id: str, *, max_attempts: int) -> bool: ...

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
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]: ...

    def list_active_sessions(self, user_id: str) -> List[Session]: ...

    def update_session_access_jti(self, session_id: str, jti: str) -> bool: ...

    def deactivate_session(self, session_id: str) -> bool: ...

    def deactivate_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int: ...

    def revoke_token(
        self,
        jti: str,
        token_type: TokenType,
        reason: RevocationReason,
        *,
        user_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> bool: ...

    def is_token_revoked(self, jti: str) -> bool: ...

    def logout_session(
        self,
        refresh_jti: str,
        refresh_token: str,
        *,
        user_id: Optional[str] = None,
        refresh_expires_at: Optional[datetime] = None,
    ) -> Optional[Session]: ...

    def create_email_verification(
        self, user_id: str, email: str, token: str, *, ttl_hours: int = 24
    ) -> EmailVerification: ...

    def get_email_verification(self, token: str) -> Optional[EmailVerification]: ...

    def mark_email_verification_used(self, verification_id: str) -> bool: ...

    def purge_expired_otps(self, expired_before: datetime) -> int: ...

    def purge_expired_verifications(self, expired_before: datetime) -> int: ...

    def purge_stale_sessions(
        self, expired_before: datetime, inactive_before: datetime
    ) -> int: ...


@dataclass
class LoginResult:
    access_token: str
    refresh_token: str
    user: User
    expires_in: int
    session_id: str


def _device_name(user_agent: Optional[str]) -> Optional[str]:
    if not user_agent:
        return None
    ua = user_agent.lower()
    for marker, name in (
        ("iphone", "iPhone"),
        ("ipad", "iPad"),
        ("android", "Android"),
        ("windows", "Windows"),
        ("mac os", "Mac"),
        ("linux", "Linux"),
    ):
        if marker in ua:
            return name
    return None


class AuthService:
    """Two-step login, token lifecycle and session management."""

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[Any],
        settings: Settings,
        *,
        notifier: Optional[EmailNotifier] = None,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.notifier = notifier or EmailNotifier()
        hasher = PasswordHasher(type=Type.ID)
        self.credentials = CredentialVerifier(store, hasher)
        self.otp = OtpManager(store, settings, hasher)
        self.tokens = TokenService(store, settings)
        self.sessions = SessionLifecycle(store)
        # Strong references so pending notification/cascade tasks are not collected
        self._background: Set[asyncio.Task] = set()

    # -- plumbing ----------------------------------------------------------

    @contextlib.contextmanager
    def _store_errors(self, operation: str):
        try:
            yield
        except _STORE_ERRORS as exc:
            logger.error(
                "store_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise InternalError("internal error") from exc

    def _spawn(self, awaitable: Awaitable[Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(self._run_background(awaitable, name))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _run_background(self, awaitable: Awaitable[Any], name: str) -> None:
        try:
            await awaitable
        except Exception as exc:
            logger.error(
                "background_task_failed",
                task=name,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )

    async def drain_background(self) -> None:
        """Wait for outstanding notification and cascade tasks."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    @staticmethod
    def _otp_quota_key(user_id: str) -> str:
        return f"auth:otp:hourly:{user_id}"

    async def _consume_quota(self, key: str, limit: int, window_seconds: int = 3600):
        if self.cache is None:
            return True, 0, 0
        return await self.cache.consume_quota(
            key, limit=limit, window_seconds=window_seconds
        )

    async def _enforce_otp_hourly_cap(self, user: User) -> None:
        allowed, _, reset_in = await self._consume_quota(
            self._otp_quota_key(user.id), self.settings.otp_hourly_limit
        )
        if allowed:
            return
        # Block until the hour that started with the first request runs out
        until = utcnow() + timedelta(seconds=reset_in)
        self.store.block_otp_requests(user.id, until)
        minutes = max(1, -(-reset_in // 60))
        logger.warning("otp_hourly_cap_reached", user_id=user.id, retry_after=reset_in)
        raise RateLimitError(
            f"too many code requests; try again in {minutes} minutes",
            retry_after=reset_in,
        )

    # -- registration & verification --------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        name: str = "",
        phone: Optional[str] = None,
        *,
        is_seller: bool = False,
    ) -> User:
        normalized = normalize_email(email)
        if len(normalized) > 254 or not _EMAIL_RE.match(normalized):
            raise ValidationError("invalid email address", detail={"field": "email"})
        if not 8 <= len(password or "") <= 128:
            raise ValidationError(
                "password must be 8 to 128 characters", detail={"field": "password"}
            )
        with self._store_errors("register"):
            try:
                user = self.store.create_user(
                    normalized,
                    self.credentials.hash_password(password),
                    name=(name or "").strip(),
                    phone=(phone or "").strip() or None,
                    is_seller=is_seller,
                )
            except ConstraintViolation as exc:
                raise ConflictError("email already registered", detail=exc.detail) from exc
            token = self._new_verification(user)
        logger.info("user_registered", user_id=user.id)
        self._spawn(self.notifier.send_verification(user, token), "send_verification")
        return user

    def _new_verification(self, user: User) -> str:
        token = secrets.token_urlsafe(32)
        self.store.create_email_verification(
            user.id,
            user.email,
            token,
            ttl_hours=self.settings.verification_ttl_hours,
        )
        return token

    async def verify_email(self, token: str) -> None:
        with self._store_errors("verify_email"):
            record = self.store.get_email_verification(token)
            if not record:
                raise NotFoundError("verification token not found")
            if record.used_at is not None:
                raise ValidationError("verification token already used")
            if not record.is_valid():
                raise ValidationError("verification token expired; request a new one")
            if not self.store.mark_email_verification_used(record.id):
                raise ValidationError("verification token already used")
            self.store.mark_email_verified(record.user_id)
        logger.info("email_verified", user_id=record.user_id)

    async def resend_verification(self, email: str) -> None:
        with self._store_errors("resend_verification"):
            user = self.store.get_user_by_email(normalize_email(email))
            if not user:
                raise NotFoundError("user not found")
            if user.email_verified:
                raise ValidationError("email already verified")
            allowed, _, reset_in = await self._consume_quota(
                f"auth:verify:hourly:{user.id}",
                self.settings.verification_hourly_limit,
            )
            if not allowed:
                raise RateLimitError(
                    "too many verification emails; try again later",
                    retry_after=reset_in,
                )
            token = self._new_verification(user)
        self._spawn(self.notifier.send_verification(user, token), "send_verification")

    # -- login -------------------------------------------------------------

    async def login_step1(
        self,
        email: str,
        password: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        """Check the password and send a one-time code; returns the user id."""
        with self._store_errors("login_step1"):
            user = self.credentials.verify(email, password)
            await self._enforce_otp_hourly_cap(user)
            code = self.otp.issue(user.id, ip_address=ip, user_agent=user_agent)
            self.store.record_otp_request(user.id)
        self._spawn(self.notifier.send_otp(user, code), "send_otp")
        return user.id

    async def login_step2(
        self,
        user_id: str,
        otp_code: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        with self._store_errors("login_step2"):
            user = self.store.get_user(user_id)
            if not user:
                raise AuthenticationError(CODE_EXPIRED)
            self.otp.validate(user.id, otp_code)
            if not user.is_active:
                raise AuthenticationError("account is deactivated; contact support")
            access_token, access_jti = self.tokens.issue_access(user)
            refresh_token, _ = self.tokens.issue_refresh(user)
            session = self.store.create_session(
                user.id,
                refresh_token,
                access_token_jti=access_jti,
                ttl_days=self.settings.session_ttl_days,
                user_agent=user_agent,
                ip_address=ip,
                device_name=_device_name(user_agent),
            )
            self.store.record_login(user.id)
            if self.cache is not None:
                await self.cache.clear_quota(self._otp_quota_key(user.id))
        logger.info("login_completed", user_id=user.id, session_id=session.id)
        return LoginResult(
            access_token=access_token,
            refresh_token=refresh_token,
            user=user,
            expires_in=self.settings.jwt_access_expiry,
            session_id=session.id,
        )

    async def resend_otp(
        self,
        user_id: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        with self._store_errors("resend_otp"):
            user = self.store.get_user(user_id)
            if not user:
                raise NotFoundError("user not found")
            if not user.is_active:
                raise AuthenticationError("account is deactivated; contact support")
            remaining = user.otp_block_remaining()
            if remaining is not None:
                raise RateLimitError(
                    "code requests are blocked; try again later",
                    retry_after=int(remaining.total_seconds()),
                )
            if self.cache is not None:
                acquired, wait = await self.cache.acquire_cooldown(
                    f"auth:otp:cooldown:{user.id}",
                    self.settings.otp_resend_cooldown_seconds,
                )
                if not acquired:
                    raise RateLimitError(
                        f"wait {wait} seconds before requesting another code",
                        retry_after=wait,
                    )
            await self._enforce_otp_hourly_cap(user)
            code = self.otp.issue(user.id, ip_address=ip, user_agent=user_agent)
            self.store.record_otp_request(user.id)
        self._spawn(self.notifier.send_otp(user, code), "send_otp")

    async def otp_status(self, user_id: str) -> OtpStatus:
        with self._store_errors("otp_status"):
            user = self.store.get_user(user_id)
            if not user:
                raise NotFoundError("user not found")
            return self.otp.status(user)

    # -- tokens ------------------------------------------------------------

    async def authenticate(self, access_token: str) -> TokenClaims:
        with self._store_errors("authenticate"):
            return self.tokens.validate(access_token, TokenType.ACCESS)

    async def refresh(self, refresh_token: str) -> str:
        """Mint a new access token for the session bound to ``refresh_token``.

        A token whose session is gone fails with AuthenticationError even when
        its signature still verifies; a revoked token with a live session
        fails with TokenError.
        """
        with self._store_errors("refresh"):
            claims = self.tokens.decode(refresh_token, TokenType.REFRESH)
            session = self.store.get_session_by_refresh_token(refresh_token)
            if not session:
                self.store.revoke_token(
                    claims.jti,
                    TokenType.REFRESH,
                    RevocationReason.REFRESH_REVOCATION,
                    user_id=claims.sub,
                    expires_at=claims.expires_at,
                )
                logger.info("refresh_session_missing", user_id=claims.sub)
                raise AuthenticationError("session not found")
            self.tokens.ensure_not_revoked(claims)
            user = self.store.get_user(session.user_id)
            if not user or not user.is_active:
                raise AuthenticationError("account unavailable")
            access_token, jti = self.tokens.issue_access(user)
            if not self.store.update_session_access_jti(session.id, jti):
                # Logged out or invalidated since the lookup above
                logger.info("refresh_session_closed", user_id=user.id, session_id=session.id)
                raise AuthenticationError("session not found")
        logger.info("access_token_refreshed", user_id=user.id, session_id=session.id)
        return access_token

    async def logout(self, refresh_token: str) -> None:
        with self._store_errors("logout"):
            claims = self.tokens.validate(refresh_token, TokenType.REFRESH)
            session = self.sessions.revoke_session_tokens(claims, refresh_token)
        self._spawn(
            self._cascade_logout(claims.sub, session.id if session else None),
            "logout_cascade",
        )

    async def _cascade_logout(self, user_id: str, session_id: Optional[str]) -> None:
        self.sessions.deactivate_remaining_sessions(
            user_id, except_session_id=session_id
        )

    # -- sessions ----------------------------------------------------------

    async def list_sessions(self, user_id: str) -> List[Session]:
        with self._store_errors("list_sessions"):
            return self.sessions.list_active(user_id)

    async def invalidate_session(self, user_id: str, session_id: str) -> None:
        with self._store_errors("invalidate_session"):
            self.sessions.invalidate(user_id, session_id)

    async def invalidate_all_sessions(self, user_id: str) -> int:
        with self._store_errors("invalidate_all_sessions"):
            return self.sessions.invalidate_all(user_id)
