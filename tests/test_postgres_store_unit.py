"""Unit tests for PostgresStore with the pool and connections stubbed out."""

import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation, StoreUnavailable
from authcore.storage.models import AccountStatus, RevocationReason, SessionState, TokenType
from authcore.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, row=None, rows=None, rowcount=0):
        self._row = row
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._row

    def fetchall(self):
        return self._rows


class FakeConn:
    """Records statements; answers each from a queue of cursors."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.statements = []
        self.transactions = 0
        self.in_transaction = False

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params, self.in_transaction))
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return FakeCursor()

    @contextmanager
    def transaction(self):
        self.transactions += 1
        self.in_transaction = True
        try:
            yield
        finally:
            self.in_transaction = False


def _store_with(conn: FakeConn) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()
    store.timeout = 1.0

    @contextmanager
    def _connect():
        yield conn

    store._connect = _connect
    return store


def _session_row(**overrides):
    now = datetime.now(timezone.utc)
    row = {
        "id": str(uuid.uuid4()),
        "user_id": str(uuid.uuid4()),
        "refresh_token": "refresh-token",
        "access_token_jti": "access-jti",
        "user_agent": None,
        "ip_address": "10.0.0.1",
        "device_name": None,
        "expires_at": now + timedelta(days=7),
        "last_activity": now,
        "state": "active",
        "created_at": now,
    }
    row.update(overrides)
    return row


class TestConnect:
    def test_pool_timeout_becomes_store_unavailable(self):
        class TimeoutPool:
            @contextmanager
            def connection(self):
                raise PoolTimeout("no connection available")
                yield  # pragma: no cover

        store: PostgresStore = PostgresStore.__new__(PostgresStore)
        store.pool = TimeoutPool()
        with pytest.raises(StoreUnavailable) as excinfo:
            store.get_user("anything")
        assert isinstance(excinfo.value.cause, PoolTimeout)

    def test_missing_tables_fail_startup(self):
        conn = FakeConn([FakeCursor(row={"oid": None})] + [FakeCursor(row={"oid": 1})] * 4)
        store = _store_with(conn)
        with pytest.raises(RuntimeError, match="app_user"):
            store._verify_required_schema()


class TestUsers:
    def test_duplicate_email_is_constraint_violation(self):
        conn = FakeConn([errors.UniqueViolation("duplicate key")])
        store = _store_with(conn)
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_user("dup@example.com", "hash")
        assert excinfo.value.detail == {"field": "email"}

    def test_user_row_mapping(self):
        row = {
            "id": uuid.uuid4(),
            "email": "row@example.com",
            "password_hash": "hash",
            "name": None,
            "phone": None,
            "is_seller": True,
            "status": "inactive",
            "verification": "verified",
            "otp_blocked_until": None,
            "otp_request_count": 2,
        }
        user = PostgresStore._user_from_row(row)
        assert isinstance(user.id, str)
        assert user.role == "seller"
        assert user.status == AccountStatus.INACTIVE
        assert user.email_verified is True
        assert user.otp_request_count == 2
        assert user.name == ""

    def test_record_login_resets_request_counters(self):
        conn = FakeConn()
        _store_with(conn).record_login("user-1")
        sql = conn.statements[0][0]
        assert "otp_request_count = 0" in sql
        assert "otp_blocked_until = NULL" in sql


class TestCodes:
    def test_create_otp_invalidates_previous_in_one_transaction(self):
        conn = FakeConn()
        store = _store_with(conn)
        otp = store.create_otp("user-1", "hash", ttl_minutes=5)

        assert conn.transactions == 1
        sqls = [s for s, _, in_tx in conn.statements if in_tx]
        assert sqls[0].startswith("SELECT id FROM app_user") and sqls[0].endswith("FOR UPDATE")
        assert sqls[1].startswith("UPDATE login_otp SET used_at = now()")
        assert sqls[2].startswith("INSERT INTO login_otp")
        assert otp.expires_at - otp.created_at == timedelta(minutes=5)

    def test_create_otp_for_missing_user(self):
        conn = FakeConn([FakeCursor(), FakeCursor(), errors.ForeignKeyViolation("fk")])
        with pytest.raises(ConstraintViolation):
            _store_with(conn).create_otp("ghost", "hash")

    def test_increment_blocks_in_the_same_statement(self):
        conn = FakeConn([FakeCursor(row={"attempt_count": 3})])
        until = datetime.now(timezone.utc) + timedelta(minutes=15)

        assert _store_with(conn).increment_otp_attempt(
            "otp-1", max_attempts=3, block_until=until
        ) == 3

        assert len(conn.statements) == 1
        sql, params, _ = conn.statements[0]
        assert sql.startswith("UPDATE login_otp SET attempt_count = attempt_count + 1")
        assert "blocked_until = CASE WHEN attempt_count + 1 >= %s THEN %s ELSE NULL END" in sql
        assert "used_at IS NULL AND blocked_until IS NULL AND attempt_count < %s" in sql
        assert "RETURNING attempt_count" in sql
        assert params == (3, until, "otp-1", 3)

    def test_increment_on_closed_code_returns_none(self):
        conn = FakeConn([FakeCursor(row=None)])
        until = datetime.now(timezone.utc)
        assert _store_with(conn).increment_otp_attempt(
            "otp-1", max_attempts=3, block_until=until
        ) is None

    def test_mark_used_refuses_blocked_or_exhausted(self):
        conn = FakeConn([FakeCursor(rowcount=0)])
        assert _store_with(conn).mark_otp_used("otp-1", max_attempts=3) is False
        sql, params, _ = conn.statements[0]
        assert "blocked_until IS NULL AND attempt_count < %s" in sql
        assert params == ("otp-1", 3)


class TestSessions:
    def test_access_jti_rotation_requires_active_session(self):
        conn = FakeConn([FakeCursor(rowcount=1), FakeCursor(rowcount=0)])
        store = _store_with(conn)

        assert store.update_session_access_jti("sess-1", "jti-2") is True
        assert store.update_session_access_jti("sess-1", "jti-3") is False

        sql, params, _ = conn.statements[0]
        assert "WHERE id = %s AND state = 'active' AND expires_at > now()" in sql
        assert params == ("jti-2", "sess-1")


class TestRevocation:
    def test_revoke_is_idempotent_insert(self):
        conn = FakeConn([FakeCursor(rowcount=1), FakeCursor(rowcount=0)])
        store = _store_with(conn)
        assert store.revoke_token("jti-1", TokenType.ACCESS, RevocationReason.USER_LOGOUT) is True
        assert store.revoke_token("jti-1", TokenType.ACCESS, RevocationReason.USER_LOGOUT) is False
        assert "ON CONFLICT (jti) DO NOTHING" in conn.statements[0][0]

    def test_logout_runs_in_one_transaction(self):
        row = _session_row()
        conn = FakeConn([
            FakeCursor(rowcount=1),
            FakeCursor(row=row),
            FakeCursor(rowcount=1),
            FakeCursor(rowcount=1),
        ])
        store = _store_with(conn)

        sess = store.logout_session("refresh-jti", "refresh-token", user_id=row["user_id"])

        assert conn.transactions == 1
        assert all(in_tx for _, _, in_tx in conn.statements)
        inserted = [p[0] for s, p, _ in conn.statements if s.startswith("INSERT INTO revoked_token")]
        assert inserted == ["refresh-jti", "access-jti"]
        assert conn.statements[1][0].endswith("FOR UPDATE")
        assert conn.statements[-1][0].startswith("UPDATE user_session SET state = 'inactive'")
        assert sess.state == SessionState.INACTIVE

    def test_logout_without_session_still_revokes_refresh(self):
        conn = FakeConn([FakeCursor(rowcount=1), FakeCursor(row=None)])
        store = _store_with(conn)

        assert store.logout_session("refresh-jti", "gone") is None
        assert len(conn.statements) == 2
        assert conn.statements[0][1][0] == "refresh-jti"

    def test_logout_failure_propagates(self):
        conn = FakeConn([FakeCursor(rowcount=1), errors.QueryCanceled("timeout")])
        with pytest.raises(errors.QueryCanceled):
            _store_with(conn).logout_session("refresh-jti", "refresh-token")


class TestRetention:
    def test_stale_session_purge_targets_expired_or_inactive(self):
        conn = FakeConn([FakeCursor(rowcount=3)])
        store = _store_with(conn)
        store.logger = get_logger("test")
        now = datetime.now(timezone.utc)

        count = store.purge_stale_sessions(now - timedelta(days=7), now - timedelta(days=30))

        assert count == 3
        sql = conn.statements[0][0]
        assert "expires_at < %s" in sql
        assert "state = 'inactive' AND last_activity < %s" in sql
