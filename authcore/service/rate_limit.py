from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from authcore.config import Settings
from authcore.logging import get_logger

logger = get_logger(__name__)

GUEST = "guest"
CUSTOMER = "customer"
SELLER = "seller"

ENDPOINT_REGISTER = "register"
ENDPOINT_LOGIN = "login"
ENDPOINT_DEFAULT = "default"

_LOGIN_PATH_MARKERS = ("/login", "/verify-otp", "/resend-otp")


def classify_endpoint(path: str) -> str:
    """Map a request path onto the ceiling table's endpoint classes."""
    if path.endswith("/register"):
        return ENDPOINT_REGISTER
    if any(path.endswith(marker) for marker in _LOGIN_PATH_MARKERS):
        return ENDPOINT_LOGIN
    return ENDPOINT_DEFAULT


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: int
    limit: int
    fail_open: bool = False

    def retry_after(self, now: Optional[float] = None) -> int:
        return max(1, int(math.ceil(self.reset_time - (now or time.time()))))


class RateLimiter:
    """Sliding-window limiter over the shared cache.

    Counters live only in Redis so every instance sees the same window. When
    the cache errors or times out the request is allowed and a
    ``rate_limit_fail_open`` warning is logged.
    """

    def __init__(
        self,
        cache: Any,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.settings = settings
        self.clock = clock

    @property
    def window_seconds(self) -> int:
        return self.settings.rate_limit_window_minutes * 60

    def ceiling_for(self, role: str, endpoint: str) -> int:
        s = self.settings
        if role == GUEST:
            return s.rate_limit_guest_requests
        if role == SELLER:
            return s.rate_limit_seller_requests
        if role == CUSTOMER:
            if endpoint == ENDPOINT_REGISTER:
                return s.rate_limit_sensitive_register
            if endpoint == ENDPOINT_LOGIN:
                return s.rate_limit_sensitive_endpoints
            return s.rate_limit_customer_requests
        return s.rate_limit_default_requests

    def _open(self, limit: int, now: float) -> RateLimitResult:
        return RateLimitResult(
            allowed=True,
            remaining=limit,
            reset_time=int(now + self.window_seconds),
            limit=limit,
            fail_open=True,
        )

    async def check(self, identity: str, role: str, endpoint: str) -> RateLimitResult:
        limit = self.ceiling_for(role, endpoint)
        now = self.clock()
        if self.cache is None:
            logger.debug("rate_limit_skipped", reason="cache_disabled")
            return self._open(limit, now)
        try:
            allowed, count, reset_at = await asyncio.wait_for(
                self.cache.check_sliding_window(
                    identity,
                    role,
                    endpoint,
                    limit=limit,
                    window_seconds=self.window_seconds,
                    now=now,
                ),
                timeout=self.settings.redis_socket_timeout,
            )
        except Exception as exc:
            logger.warning(
                "rate_limit_fail_open",
                identity=identity,
                role=role,
                endpoint=endpoint,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return self._open(limit, now)

        remaining = max(0, limit - count - 1) if allowed else 0
        result = RateLimitResult(
            allowed=allowed,
            remaining=remaining,
            reset_time=int(math.ceil(reset_at)),
            limit=limit,
        )
        if allowed:
            logger.debug(
                "rate_limit_allowed", identity=identity, endpoint=endpoint, remaining=remaining
            )
        else:
            logger.warning(
                "rate_limit_exceeded", identity=identity, role=role, endpoint=endpoint, limit=limit
            )
        return result
