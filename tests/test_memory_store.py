"""Tests for the in-process store used in development and tests."""

from datetime import timedelta

import pytest

from authcore.storage.errors import ConstraintViolation
from authcore.storage.memory import MemoryStore
from authcore.storage.models import (
    OtpState,
    RevocationReason,
    SessionState,
    TokenType,
    utcnow,
)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def user(store):
    return store.create_user("store@example.com", "hash", verified=True)


class TestUsers:
    def test_duplicate_email_rejected(self, store, user):
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_user("store@example.com", "other-hash")
        assert excinfo.value.detail == {"field": "email"}

    def test_returned_objects_do_not_write_through(self, store, user):
        user.email = "changed@example.com"
        assert store.get_user(user.id).email == "store@example.com"

    def test_record_login_resets_request_counters(self, store, user):
        store.record_otp_request(user.id)
        store.record_otp_request(user.id)
        store.block_otp_requests(user.id, utcnow() + timedelta(hours=1))

        store.record_login(user.id)

        stored = store.get_user(user.id)
        assert stored.login_count == 1
        assert stored.otp_request_count == 0
        assert stored.otp_blocked_until is None
        assert stored.last_login_at is not None


class TestCodes:
    def test_new_code_invalidates_previous(self, store, user):
        first = store.create_otp(user.id, "hash-1")
        second = store.create_otp(user.id, "hash-2")

        assert store.otps[first.id].state() == OtpState.USED
        assert store.get_latest_otp(user.id).id == second.id
        assert store.get_latest_otp(user.id).state() == OtpState.VALID

    def test_code_for_unknown_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_otp("ghost", "hash")

    def test_mark_used_only_once(self, store, user):
        otp = store.create_otp(user.id, "hash")
        assert store.mark_otp_used(otp.id, max_attempts=3) is True
        assert store.mark_otp_used(otp.id, max_attempts=3) is False

    def test_attempts_increment_and_block_at_limit(self, store, user):
        otp = store.create_otp(user.id, "hash")
        until = utcnow() + timedelta(minutes=15)
        counts = [
            store.increment_otp_attempt(otp.id, max_attempts=3, block_until=until)
            for _ in range(3)
        ]
        assert counts == [1, 2, 3]
        assert store.otps[otp.id].blocked_until == until
        assert store.increment_otp_attempt("missing", max_attempts=3, block_until=until) is None

    def test_blocked_code_refuses_guesses_and_redemption(self, store, user):
        otp = store.create_otp(user.id, "hash")
        until = utcnow() + timedelta(minutes=15)
        for _ in range(3):
            store.increment_otp_attempt(otp.id, max_attempts=3, block_until=until)

        assert store.increment_otp_attempt(otp.id, max_attempts=3, block_until=until) is None
        assert store.mark_otp_used(otp.id, max_attempts=3) is False
        assert store.otps[otp.id].attempt_count == 3
        assert store.otps[otp.id].used_at is None

    def test_exhausted_code_refused_without_block(self, store, user):
        otp = store.create_otp(user.id, "hash")
        store.otps[otp.id].attempt_count = 3
        until = utcnow() + timedelta(minutes=15)
        assert store.mark_otp_used(otp.id, max_attempts=3) is False
        assert store.increment_otp_attempt(otp.id, max_attempts=3, block_until=until) is None

    def test_used_code_refuses_guesses(self, store, user):
        otp = store.create_otp(user.id, "hash")
        store.mark_otp_used(otp.id, max_attempts=3)
        until = utcnow() + timedelta(minutes=15)
        assert store.increment_otp_attempt(otp.id, max_attempts=3, block_until=until) is None
        assert store.otps[otp.id].attempt_count == 0


class TestSessions:
    def test_refresh_token_binds_one_session(self, store, user):
        store.create_session(user.id, "refresh-1")
        with pytest.raises(ConstraintViolation):
            store.create_session(user.id, "refresh-1")

    def test_inactive_session_not_found_by_refresh_token(self, store, user):
        sess = store.create_session(user.id, "refresh-1")
        store.deactivate_session(sess.id)
        assert store.get_session_by_refresh_token("refresh-1") is None
        assert store.deactivate_session(sess.id) is False

    def test_deactivate_all_except_current(self, store, user):
        keep = store.create_session(user.id, "refresh-1")
        store.create_session(user.id, "refresh-2")
        store.create_session(user.id, "refresh-3")

        count = store.deactivate_user_sessions(user.id, except_session_id=keep.id)

        assert count == 2
        assert [s.id for s in store.list_active_sessions(user.id)] == [keep.id]

    def test_access_jti_rotates_only_while_active(self, store, user):
        sess = store.create_session(user.id, "refresh-1", access_token_jti="access-1")
        assert store.update_session_access_jti(sess.id, "access-2") is True
        assert store.get_session(sess.id).access_token_jti == "access-2"

        store.deactivate_session(sess.id)
        assert store.update_session_access_jti(sess.id, "access-3") is False
        assert store.get_session(sess.id).access_token_jti == "access-2"
        assert store.update_session_access_jti("missing", "access-4") is False


class TestRevocation:
    def test_revoke_is_idempotent(self, store):
        assert store.revoke_token("jti-1", TokenType.ACCESS, RevocationReason.USER_LOGOUT)
        assert not store.revoke_token(
            "jti-1", TokenType.ACCESS, RevocationReason.SESSION_INVALIDATED
        )
        assert store.revoked["jti-1"].reason == RevocationReason.USER_LOGOUT

    def test_logout_revokes_both_and_deactivates(self, store, user):
        sess = store.create_session(user.id, "refresh-1", access_token_jti="access-1")

        result = store.logout_session("refresh-jti", "refresh-1", user_id=user.id)

        assert result.id == sess.id
        assert result.state == SessionState.INACTIVE
        assert store.is_token_revoked("refresh-jti")
        assert store.is_token_revoked("access-1")
        assert store.revoked["access-1"].token_type == TokenType.ACCESS

    def test_logout_without_session_still_revokes_refresh(self, store):
        assert store.logout_session("refresh-jti", "unknown") is None
        assert store.is_token_revoked("refresh-jti")
        assert len(store.revoked) == 1


class TestRetention:
    def test_purges_only_expired_codes(self, store, user):
        old = store.create_otp(user.id, "hash-old")
        store.otps[old.id].expires_at = utcnow() - timedelta(days=2)
        fresh = store.create_otp(user.id, "hash-fresh")

        assert store.purge_expired_otps(utcnow() - timedelta(hours=24)) == 1
        assert list(store.otps) == [fresh.id]

    def test_purges_expired_verifications(self, store, user):
        stale = store.create_email_verification(user.id, user.email, "token-old")
        store.verifications[stale.id].expires_at = utcnow() - timedelta(minutes=1)
        store.create_email_verification(user.id, user.email, "token-new")

        assert store.purge_expired_verifications(utcnow()) == 1
        assert store.get_email_verification("token-old") is None
        assert store.get_email_verification("token-new") is not None

    def test_purges_expired_and_long_inactive_sessions(self, store, user):
        now = utcnow()
        expired = store.create_session(user.id, "refresh-expired")
        store.sessions[expired.id].expires_at = now - timedelta(days=8)
        idle = store.create_session(user.id, "refresh-idle")
        store.sessions[idle.id].state = SessionState.INACTIVE
        store.sessions[idle.id].last_activity = now - timedelta(days=31)
        recent_logout = store.create_session(user.id, "refresh-recent")
        store.deactivate_session(recent_logout.id)
        live = store.create_session(user.id, "refresh-live")

        count = store.purge_stale_sessions(now - timedelta(days=7), now - timedelta(days=30))

        assert count == 2
        assert set(store.sessions) == {recent_logout.id, live.id}
