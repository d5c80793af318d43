from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation, StoreUnavailable
from authcore.storage.models import (
    AccountStatus,
    EmailVerification,
    EmailVerificationState,
    OtpCode,
    RevocationReason,
    Session,
    SessionState,
    TokenType,
    User,
    utcnow,
)

_REQUIRED_TABLES = [
    "app_user",
    "login_otp",
    "user_session",
    "revoked_token",
    "email_verification",
]

_SESSION_COLUMNS = """
    id, user_id, refresh_token, access_token_jti, user_agent,
    ip_address::text AS ip_address, device_name, expires_at,
    last_activity, state, created_at
"""

_OTP_COLUMNS = """
    id, user_id, code_hash, expires_at, attempt_count, used_at,
    blocked_until, ip_address::text AS ip_address, user_agent, created_at
"""


class PostgresStore:
    """Postgres-backed store for users, codes, sessions and the revocation registry."""

    def __init__(self, dsn: str, *, timeout: float = 5.0) -> None:
        self.dsn = dsn
        self.timeout = timeout
        self.logger = get_logger(__name__)
        statement_ms = int(timeout * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_ms}",
            },
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self):
        """Borrow a pooled connection; timeouts surface as ``StoreUnavailable``."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except (PoolTimeout, psycopg.OperationalError) as exc:
            raise StoreUnavailable("postgres", exc) from exc

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- row mapping -------------------------------------------------------

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            name=row.get("name") or "",
            phone=row.get("phone"),
            is_seller=bool(row.get("is_seller")),
            status=AccountStatus(row.get("status") or "active"),
            verification=EmailVerificationState(row.get("verification") or "pending"),
            otp_blocked_until=row.get("otp_blocked_until"),
            otp_request_count=row.get("otp_request_count") or 0,
            last_otp_request_at=row.get("last_otp_request_at"),
            login_count=row.get("login_count") or 0,
            last_login_at=row.get("last_login_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _otp_from_row(row: Dict[str, Any]) -> OtpCode:
        return OtpCode(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            code_hash=row["code_hash"],
            expires_at=row["expires_at"],
            attempt_count=row.get("attempt_count") or 0,
            used_at=row.get("used_at"),
            blocked_until=row.get("blocked_until"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token=row["refresh_token"],
            access_token_jti=row.get("access_token_jti"),
            user_agent=row.get("user_agent"),
            ip_address=row.get("ip_address"),
            device_name=row.get("device_name"),
            expires_at=row["expires_at"],
            last_activity=row.get("last_activity") or utcnow(),
            state=SessionState(row.get("state") or "active"),
            created_at=row.get("created_at") or utcnow(),
        )

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
        user_id = str(uuid.uuid4())
        verification = (
            EmailVerificationState.VERIFIED if verified else EmailVerificationState.PENDING
        )
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, name, phone, is_seller, verification)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email,
                        password_hash,
                        name,
                        phone,
                        is_seller,
                        verification.value,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET verification = 'verified', updated_at = now()
                WHERE id = %s RETURNING *
                """,
                (user_id,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_status(self, user_id: str, status: AccountStatus) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET status = %s, updated_at = now() WHERE id = %s RETURNING *",
                (status.value, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def record_login(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user
                SET login_count = login_count + 1,
                    last_login_at = now(),
                    otp_request_count = 0,
                    otp_blocked_until = NULL,
                    updated_at = now()
                WHERE id = %s
                """,
                (user_id,),
            )

    def record_otp_request(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user
                SET otp_request_count = otp_request_count + 1,
                    last_otp_request_at = now(),
                    updated_at = now()
                WHERE id = %s
                """,
                (user_id,),
            )

    def block_otp_requests(self, user_id: str, until: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET otp_blocked_until = %s, updated_at = now() WHERE id = %s",
                (until, user_id),
            )

    # -- one-time codes ----------------------------------------------------

    @staticmethod
    def _invalidate_otps(conn, user_id: str) -> int:
        cur = conn.execute(
            "UPDATE login_otp SET used_at = now() WHERE user_id = %s AND used_at IS NULL",
            (user_id,),
        )
        return cur.rowcount or 0

    def invalidate_user_otps(self, user_id: str) -> int:
        with self._connect() as conn:
            return self._invalidate_otps(conn, user_id)

    def create_otp(
        self,
        user_id: str,
        code_hash: str,
        *,
        ttl_minutes: int = 5,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> OtpCode:
        otp = OtpCode.new(
            user_id,
            code_hash,
            ttl_minutes,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        try:
            with self._connect() as conn, conn.transaction():
                # Lock the user row so concurrent issues serialize
                conn.execute("SELECT id FROM app_user WHERE id = %s FOR UPDATE", (user_id,))
                self._invalidate_otps(conn, user_id)
                conn.execute(
                    """
                    INSERT INTO login_otp (id, user_id, code_hash, expires_at, ip_address, user_agent, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        otp.id,
                        user_id,
                        code_hash,
                        otp.expires_at,
                        ip_address,
                        user_agent,
                        otp.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return otp

    def get_latest_otp(self, user_id: str) -> Optional[OtpCode]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_OTP_COLUMNS} FROM login_otp
                WHERE user_id = %s ORDER BY created_at DESC LIMIT 1
                """,
                (user_id,),
            ).fetchone()
        return self._otp_from_row(row) if row else None

    def increment_otp_attempt(
        self, otp_id: str, *, max_attempts: int, block_until: datetime
    ) -> Optional[int]:
        """Count a failed guess, blocking the code in the same statement at the limit."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE login_otp
                SET attempt_count = attempt_count + 1,
                    blocked_until = CASE WHEN attempt_count + 1 >= %s THEN %s ELSE NULL END
                WHERE id = %s AND used_at IS NULL AND blocked_until IS NULL
                  AND attempt_count < %s
                RETURNING attempt_count
                """,
                (max_attempts, block_until, otp_id, max_attempts),
            ).fetchone()
        return int(row["attempt_count"]) if row else None

    def mark_otp_used(self, otp_id: str, *, max_attempts: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE login_otp SET used_at = now()
                WHERE id = %s AND used_at IS NULL AND blocked_until IS NULL
                  AND attempt_count < %s
                """,
                (otp_id, max_attempts),
            )
            return bool(cur.rowcount)

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
        sess = Session.new(
            user_id,
            refresh_token,
            ttl_days,
            access_token_jti=access_token_jti,
            user_agent=user_agent,
            ip_address=ip_address,
            device_name=device_name,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_session (id, user_id, refresh_token, access_token_jti, user_agent,
                        ip_address, device_name, expires_at, last_activity, state, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        user_id,
                        refresh_token,
                        access_token_jti,
                        user_agent,
                        ip_address,
                        device_name,
                        sess.expires_at,
                        sess.last_activity,
                        sess.state.value,
                        sess.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token already bound", {"field": "refresh_token"}
            )
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM user_session WHERE id = %s",
                (session_id,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS} FROM user_session
                WHERE refresh_token = %s AND state = 'active' AND expires_at > now()
                """,
                (refresh_token,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_active_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS} FROM user_session
                WHERE user_id = %s AND state = 'active' AND expires_at > now()
                ORDER BY last_activity DESC
                """,
                (user_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def update_session_access_jti(self, session_id: str, jti: str) -> bool:
        """Bind ``jti`` to the session only while it is still active."""
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_session SET access_token_jti = %s, last_activity = now()
                WHERE id = %s AND state = 'active' AND expires_at > now()
                """,
                (jti, session_id),
            )
            return bool(cur.rowcount)

    def deactivate_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE user_session SET state = 'inactive' WHERE id = %s AND state = 'active'",
                (session_id,),
            )
            return bool(cur.rowcount)

    def deactivate_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if except_session_id:
                cur = conn.execute(
                    """
                    UPDATE user_session SET state = 'inactive'
                    WHERE user_id = %s AND state = 'active' AND id <> %s
                    """,
                    (user_id, except_session_id),
                )
            else:
                cur = conn.execute(
                    "UPDATE user_session SET state = 'inactive' WHERE user_id = %s AND state = 'active'",
                    (user_id,),
                )
            return cur.rowcount or 0

    # -- revocation --------------------------------------------------------

    @staticmethod
    def _insert_revocation(
        conn,
        jti: str,
        token_type: TokenType,
        reason: RevocationReason,
        user_id: Optional[str],
        expires_at: Optional[datetime],
    ) -> bool:
        cur = conn.execute(
            """
            INSERT INTO revoked_token (jti, token_type, user_id, reason, expires_at)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (jti) DO NOTHING
            """,
            (jti, token_type.value, user_id, reason.value, expires_at),
        )
        return bool(cur.rowcount)

    def revoke_token(
        self,
        jti: str,
        token_type: TokenType,
        reason: RevocationReason,
        *,
        user_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> bool:
        with self._connect() as conn:
            return self._insert_revocation(
                conn, jti, token_type, reason, user_id, expires_at
            )

    def is_token_revoked(self, jti: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS hit FROM revoked_token WHERE jti = %s", (jti,)
            ).fetchone()
        return row is not None

    def logout_session(
        self,
        refresh_jti: str,
        refresh_token: str,
        *,
        user_id: Optional[str] = None,
        refresh_expires_at: Optional[datetime] = None,
    ) -> Optional[Session]:
        """Revoke both token ids and deactivate the session in one transaction."""
        with self._connect() as conn, conn.transaction():
            self._insert_revocation(
                conn,
                refresh_jti,
                TokenType.REFRESH,
                RevocationReason.USER_LOGOUT,
                user_id,
                refresh_expires_at,
            )
            row = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS} FROM user_session
                WHERE refresh_token = %s AND state = 'active' AND expires_at > now()
                FOR UPDATE
                """,
                (refresh_token,),
            ).fetchone()
            if not row:
                return None
            sess = self._session_from_row(row)
            if sess.access_token_jti:
                self._insert_revocation(
                    conn,
                    sess.access_token_jti,
                    TokenType.ACCESS,
                    RevocationReason.USER_LOGOUT,
                    sess.user_id,
                    None,
                )
            conn.execute(
                "UPDATE user_session SET state = 'inactive' WHERE id = %s", (sess.id,)
            )
            sess.state = SessionState.INACTIVE
            return sess

    # -- email verification ------------------------------------------------

    def create_email_verification(
        self, user_id: str, email: str, token: str, *, ttl_hours: int = 24
    ) -> EmailVerification:
        now = utcnow()
        record = EmailVerification(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token=token,
            email=email,
            expires_at=now + timedelta(hours=ttl_hours),
            created_at=now,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO email_verification (id, user_id, token, email, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (record.id, user_id, token, email, record.expires_at, now),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("token already exists", {"field": "token"})
        return record

    def get_email_verification(self, token: str) -> Optional[EmailVerification]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM email_verification WHERE token = %s", (token,)
            ).fetchone()
        if not row:
            return None
        return EmailVerification(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            email=row["email"],
            expires_at=row["expires_at"],
            used_at=row.get("used_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    def mark_email_verification_used(self, verification_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE email_verification SET used_at = now() WHERE id = %s AND used_at IS NULL",
                (verification_id,),
            )
            return bool(cur.rowcount)

    # -- retention ---------------------------------------------------------

    def purge_expired_otps(self, expired_before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM login_otp WHERE expires_at < %s", (expired_before,)
            )
            return cur.rowcount or 0

    def purge_expired_verifications(self, expired_before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM email_verification WHERE expires_at < %s", (expired_before,)
            )
            return cur.rowcount or 0

    def purge_stale_sessions(
        self, expired_before: datetime, inactive_before: datetime
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM user_session
                WHERE expires_at < %s
                   OR (state = 'inactive' AND last_activity < %s)
                """,
                (expired_before, inactive_before),
            )
            count = cur.rowcount or 0
        if count:
            self.logger.info("sessions_purged", count=count)
        return count
