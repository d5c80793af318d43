"""In-memory stand-in for RedisCache with a controllable clock.

Mirrors the Lua scripts' semantics: the sliding window records every request
(rejected ones included), quotas are anchored at the first hit, and
cooldowns behave like SET NX EX.
"""

import math
import time


class InMemoryCache:
    def __init__(self, start: float = None):
        self.now = time.time() if start is None else start
        self.windows = {}
        self.quotas = {}
        self.cooldowns = {}

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def check_sliding_window(
        self, identity, role, endpoint, *, limit, window_seconds, now=None
    ):
        now = self.now if now is None else now
        key = (identity, role, endpoint)
        entries = [ts for ts in self.windows.get(key, []) if ts > now - window_seconds]
        count = len(entries)
        entries.append(now)
        self.windows[key] = entries
        return count < limit, count, min(entries) + window_seconds

    def _live_quota(self, key):
        entry = self.quotas.get(key)
        if entry and entry[1] <= self.now:
            self.quotas.pop(key, None)
            return None
        return entry

    async def consume_quota(self, key, *, limit, window_seconds):
        entry = self._live_quota(key)
        if entry is None:
            entry = (0, self.now + window_seconds)
        count, expires = entry
        ttl = int(math.ceil(expires - self.now))
        if count >= limit:
            return False, count, ttl
        self.quotas[key] = (count + 1, expires)
        return True, count + 1, ttl

    async def acquire_cooldown(self, key, seconds):
        expires = self.cooldowns.get(key)
        if expires is not None and expires > self.now:
            return False, max(1, int(math.ceil(expires - self.now)))
        self.cooldowns[key] = self.now + seconds
        return True, seconds

    async def clear_quota(self, key):
        self.quotas.pop(key, None)
