from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.storage.models import utcnow

if TYPE_CHECKING:
    from authcore.service.auth import AuthStore

logger = get_logger(__name__)


@dataclass
class CleanupReport:
    otps: int = 0
    verifications: int = 0
    sessions: int = 0


class CleanupScheduler:
    """Periodic retention job for expired codes, verification tokens and sessions.

    Only rows that are already expired or inactive are deleted. Each purge
    runs independently so one failing table does not stop the others.
    """

    def __init__(self, store: "AuthStore", settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.interval = settings.cleanup_interval_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._running:
            logger.warning("cleanup_scheduler_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("cleanup_scheduler_started", interval_seconds=self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("cleanup_scheduler_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval)
            await asyncio.to_thread(self.run_once)

    def _purge(self, name: str, func, *args) -> int:
        try:
            return func(*args)
        except Exception as exc:
            logger.error(
                "cleanup_failed",
                target=name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return 0

    def run_once(self, now: Optional[datetime] = None) -> CleanupReport:
        now = now or utcnow()
        s = self.settings
        report = CleanupReport(
            otps=self._purge(
                "otps",
                self.store.purge_expired_otps,
                now - timedelta(hours=s.cleanup_otp_retention_hours),
            ),
            verifications=self._purge(
                "verifications", self.store.purge_expired_verifications, now
            ),
            sessions=self._purge(
                "sessions",
                self.store.purge_stale_sessions,
                now - timedelta(days=s.cleanup_session_retention_days),
                now - timedelta(days=s.cleanup_inactive_session_days),
            ),
        )
        logger.info(
            "cleanup_completed",
            otps=report.otps,
            verifications=report.verifications,
            sessions=report.sessions,
        )
        return report
