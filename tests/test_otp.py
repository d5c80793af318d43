"""Tests for one-time code issuance, validation and the attempt/block rules."""

from datetime import timedelta
from unittest.mock import patch

import pytest

from authcore.config import Settings
from authcore.service.errors import AuthenticationError, RateLimitError
from authcore.service.otp import CODE_EXPIRED, OtpManager, generate_code
from authcore.storage.memory import MemoryStore
from authcore.storage.models import OtpState, utcnow


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def manager(store):
    return OtpManager(store, Settings(jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!"))


@pytest.fixture
def user(store):
    return store.create_user("otp@example.com", "hash", verified=True)


def _wrong(code: str) -> str:
    return "100000" if code != "100000" else "100001"


class TestGenerateCode:
    def test_codes_are_six_digits_in_range(self):
        for _ in range(200):
            code = generate_code()
            assert len(code) == 6
            assert 100000 <= int(code) <= 999999


class TestIssue:
    def test_only_hash_is_stored(self, manager, store, user):
        code = manager.issue(user.id)
        otp = store.get_latest_otp(user.id)
        assert otp.code_hash != code
        assert otp.code_hash.startswith("$argon2id$")

    def test_new_code_invalidates_previous(self, manager, store, user):
        first = manager.issue(user.id)
        second = manager.issue(user.id)

        valid = [
            otp for otp in store.otps.values()
            if otp.user_id == user.id and otp.state(utcnow()) == OtpState.VALID
        ]
        assert len(valid) == 1

        if first != second:
            with pytest.raises(AuthenticationError):
                manager.validate(user.id, first)
        manager.validate(user.id, second)

    def test_code_expires_after_ttl(self, manager, store, user):
        manager.issue(user.id)
        otp = store.get_latest_otp(user.id)
        assert otp.expires_at - otp.created_at == timedelta(minutes=5)


class TestValidate:
    def test_correct_code_is_consumed_once(self, manager, user):
        code = manager.issue(user.id)
        manager.validate(user.id, code)
        with pytest.raises(AuthenticationError, match=CODE_EXPIRED):
            manager.validate(user.id, code)

    def test_no_code_reads_as_expired(self, manager, user):
        with pytest.raises(AuthenticationError, match=CODE_EXPIRED):
            manager.validate(user.id, "123456")

    def test_wrong_code_reports_remaining_attempts(self, manager, user):
        code = manager.issue(user.id)
        with pytest.raises(AuthenticationError) as excinfo:
            manager.validate(user.id, _wrong(code))
        assert excinfo.value.detail["remaining_attempts"] == 2

    def test_third_failure_blocks_exactly(self, manager, store, user):
        code = manager.issue(user.id)
        for expected in (2, 1):
            with pytest.raises(AuthenticationError) as excinfo:
                manager.validate(user.id, _wrong(code))
            assert excinfo.value.detail["remaining_attempts"] == expected
            assert store.get_latest_otp(user.id).blocked_until is None

        with pytest.raises(RateLimitError) as excinfo:
            manager.validate(user.id, _wrong(code))
        assert excinfo.value.retry_after == 15 * 60

        otp = store.get_latest_otp(user.id)
        assert otp.attempt_count == 3
        assert otp.state(utcnow()) == OtpState.BLOCKED

    def test_correct_code_after_block_is_rejected(self, manager, user):
        code = manager.issue(user.id)
        for _ in range(2):
            with pytest.raises(AuthenticationError):
                manager.validate(user.id, _wrong(code))
        with pytest.raises(RateLimitError):
            manager.validate(user.id, _wrong(code))
        with pytest.raises(RateLimitError):
            manager.validate(user.id, code)

    def test_attempt_count_never_decreases(self, manager, store, user):
        code = manager.issue(user.id)
        seen = []
        for _ in range(3):
            with pytest.raises((AuthenticationError, RateLimitError)):
                manager.validate(user.id, _wrong(code))
            seen.append(store.get_latest_otp(user.id).attempt_count)
        assert seen == sorted(seen)
        assert seen[-1] == 3

    def test_expired_code_is_rejected(self, manager, store, user):
        code = manager.issue(user.id)
        later = utcnow() + timedelta(minutes=6)
        with patch("authcore.service.otp.utcnow", return_value=later):
            with pytest.raises(AuthenticationError, match=CODE_EXPIRED):
                manager.validate(user.id, code)
        assert store.get_latest_otp(user.id).attempt_count == 0

    def test_block_that_has_lapsed_reads_as_expired(self, manager, user):
        code = manager.issue(user.id)
        for _ in range(2):
            with pytest.raises(AuthenticationError):
                manager.validate(user.id, _wrong(code))
        with pytest.raises(RateLimitError):
            manager.validate(user.id, _wrong(code))

        later = utcnow() + timedelta(minutes=16)
        with patch("authcore.service.otp.utcnow", return_value=later):
            with pytest.raises(AuthenticationError, match=CODE_EXPIRED):
                manager.validate(user.id, code)

    def test_lost_redemption_race_is_rejected(self, manager, store, user):
        code = manager.issue(user.id)
        with patch.object(store, "mark_otp_used", return_value=False):
            with pytest.raises(AuthenticationError, match=CODE_EXPIRED):
                manager.validate(user.id, code)


class TestInterleavedAttempts:
    """A wrong guess and a second request for the same code, interleaved."""

    def _exhaust_all_but_one(self, manager, code, user):
        for _ in range(2):
            with pytest.raises(AuthenticationError):
                manager.validate(user.id, _wrong(code))

    def test_correct_code_after_final_failure_commits_is_blocked(self, manager, store, user):
        code = manager.issue(user.id)
        self._exhaust_all_but_one(manager, code, user)
        increment = store.increment_otp_attempt
        outcomes = []

        def increment_then_redeem(otp_id, **kwargs):
            attempts = increment(otp_id, **kwargs)
            try:
                manager.validate(user.id, code)
                outcomes.append("redeemed")
            except RateLimitError as exc:
                outcomes.append(exc)
            return attempts

        with patch.object(store, "increment_otp_attempt", side_effect=increment_then_redeem):
            with pytest.raises(RateLimitError):
                manager.validate(user.id, _wrong(code))

        assert len(outcomes) == 1
        assert isinstance(outcomes[0], RateLimitError)
        otp = store.get_latest_otp(user.id)
        assert otp.used_at is None
        assert otp.blocked_until is not None

    def test_failure_after_redemption_reads_as_expired(self, manager, store, user):
        code = manager.issue(user.id)
        self._exhaust_all_but_one(manager, code, user)
        increment = store.increment_otp_attempt

        def redeem_then_increment(otp_id, **kwargs):
            manager.validate(user.id, code)
            return increment(otp_id, **kwargs)

        with patch.object(store, "increment_otp_attempt", side_effect=redeem_then_increment):
            with pytest.raises(AuthenticationError, match=CODE_EXPIRED):
                manager.validate(user.id, _wrong(code))

        otp = store.get_latest_otp(user.id)
        assert otp.used_at is not None
        assert otp.attempt_count == 2

    def test_two_final_failures_count_once(self, manager, store, user):
        code = manager.issue(user.id)
        self._exhaust_all_but_one(manager, code, user)
        increment = store.increment_otp_attempt
        calls = []

        def other_failure_first(otp_id, **kwargs):
            calls.append(otp_id)
            if len(calls) == 1:
                with pytest.raises(RateLimitError):
                    manager.validate(user.id, _wrong(code))
            return increment(otp_id, **kwargs)

        with patch.object(store, "increment_otp_attempt", side_effect=other_failure_first):
            with pytest.raises(RateLimitError) as excinfo:
                manager.validate(user.id, _wrong(code))

        assert 0 < excinfo.value.retry_after <= 15 * 60
        assert store.get_latest_otp(user.id).attempt_count == 3

    def test_exhausted_code_without_block_is_refused(self, manager, store, user):
        code = manager.issue(user.id)
        otp = store.get_latest_otp(user.id)
        store.otps[otp.id].attempt_count = 3

        assert store.get_latest_otp(user.id).state(utcnow(), 3) == OtpState.BLOCKED
        with pytest.raises(RateLimitError) as excinfo:
            manager.validate(user.id, code)
        assert excinfo.value.retry_after == 15 * 60
        assert store.get_latest_otp(user.id).used_at is None


class TestStatus:
    def test_active_code_status(self, manager, store, user):
        manager.issue(user.id)
        status = manager.status(store.get_user(user.id))
        assert status.has_active_code is True
        assert status.is_blocked is False
        assert status.remaining_attempts == 3
        assert status.code_expires_at is not None

    def test_blocked_code_status(self, manager, store, user):
        code = manager.issue(user.id)
        for _ in range(2):
            with pytest.raises(AuthenticationError):
                manager.validate(user.id, _wrong(code))
        with pytest.raises(RateLimitError):
            manager.validate(user.id, _wrong(code))

        status = manager.status(store.get_user(user.id))
        assert status.is_blocked is True
        assert status.has_active_code is False
        assert 14 <= status.remaining_minutes <= 15

    def test_request_block_is_reported(self, manager, store, user):
        store.block_otp_requests(user.id, utcnow() + timedelta(minutes=30))
        status = manager.status(store.get_user(user.id))
        assert status.is_blocked is True
        assert status.remaining_minutes == 30
        assert status.has_active_code is False
