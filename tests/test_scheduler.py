"""Tests for the periodic retention job."""

import asyncio
from datetime import timedelta
from unittest.mock import patch

import pytest

from authcore.config import Settings
from authcore.service.scheduler import CleanupScheduler
from authcore.storage.memory import MemoryStore
from authcore.storage.models import SessionState, utcnow


@pytest.fixture
def scheduler_settings():
    return Settings(jwt_secret="x" * 40, cleanup_interval_seconds=1)


@pytest.fixture
def seeded_store():
    store = MemoryStore()
    user = store.create_user("cleanup@example.com", "hash", verified=True)
    now = utcnow()

    old_otp = store.create_otp(user.id, "hash-old")
    store.otps[old_otp.id].expires_at = now - timedelta(hours=30)
    store.create_otp(user.id, "hash-new")

    token = store.create_email_verification(user.id, user.email, "verify-old")
    store.verifications[token.id].expires_at = now - timedelta(seconds=1)

    expired = store.create_session(user.id, "refresh-expired")
    store.sessions[expired.id].expires_at = now - timedelta(days=8)
    idle = store.create_session(user.id, "refresh-idle")
    store.sessions[idle.id].state = SessionState.INACTIVE
    store.sessions[idle.id].last_activity = now - timedelta(days=40)
    store.create_session(user.id, "refresh-live")
    return store


class TestRunOnce:
    def test_purges_only_stale_rows(self, seeded_store, scheduler_settings):
        scheduler = CleanupScheduler(seeded_store, scheduler_settings)

        report = scheduler.run_once()

        assert (report.otps, report.verifications, report.sessions) == (1, 1, 2)
        assert len(seeded_store.otps) == 1
        assert seeded_store.verifications == {}
        assert [s.refresh_token for s in seeded_store.sessions.values()] == ["refresh-live"]

    def test_second_run_finds_nothing(self, seeded_store, scheduler_settings):
        scheduler = CleanupScheduler(seeded_store, scheduler_settings)
        scheduler.run_once()
        report = scheduler.run_once()
        assert (report.otps, report.verifications, report.sessions) == (0, 0, 0)

    def test_failing_purge_does_not_stop_the_others(self, seeded_store, scheduler_settings):
        def _boom(*args):
            raise RuntimeError("table locked")

        seeded_store.purge_expired_otps = _boom
        scheduler = CleanupScheduler(seeded_store, scheduler_settings)

        with patch("authcore.service.scheduler.logger") as mock_logger:
            report = scheduler.run_once()

        assert report.otps == 0
        assert report.sessions == 2
        mock_logger.error.assert_called_once_with(
            "cleanup_failed",
            target="otps",
            error_type="RuntimeError",
            error="table locked",
        )


class TestLifecycle:
    async def test_start_runs_periodically_and_stop_cancels(
        self, seeded_store, scheduler_settings
    ):
        scheduler = CleanupScheduler(seeded_store, scheduler_settings)
        await scheduler.start()
        await asyncio.sleep(1.3)
        await scheduler.stop()

        assert scheduler._task is None
        assert [s.refresh_token for s in seeded_store.sessions.values()] == ["refresh-live"]

    async def test_double_start_warns(self, seeded_store, scheduler_settings):
        scheduler = CleanupScheduler(seeded_store, scheduler_settings)
        with patch("authcore.service.scheduler.logger") as mock_logger:
            await scheduler.start()
            await scheduler.start()
            await scheduler.stop()
        mock_logger.warning.assert_called_once_with("cleanup_scheduler_already_running")
