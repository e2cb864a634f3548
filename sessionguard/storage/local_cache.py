from __future__ import annotations

import math
import threading
import time
from typing import Callable, Dict, Optional, Tuple


class LocalCache:
    """Process-local stand-in for RedisCache.

    Used under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV when Redis is unreachable.
    Markers and windows live only in this process, so a multi-worker deployment
    must not rely on it. Expired entries are swept on writes at most once per
    ``SWEEP_INTERVAL_SECONDS``.
    """

    SWEEP_INTERVAL_SECONDS = 60.0

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._values: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def _live_value(self, key: str, now: float) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= now:
            self._values.pop(key, None)
            return None
        return value

    def _sweep_expired(self, now: float) -> None:
        # Caller holds the lock
        if now - self._last_sweep < self.SWEEP_INTERVAL_SECONDS:
            return
        self._last_sweep = now
        expired = [key for key, (_, expires_at) in self._values.items() if expires_at <= now]
        for key in expired:
            del self._values[key]

    def verify_connection(self) -> None:
        return None

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live_value(key, self._clock()) is not None

    async def create_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        with self._lock:
            now = self._clock()
            self._sweep_expired(now)
            if self._live_value(key, now) is not None:
                return False
            self._values[key] = (value, now + max(1, int(ttl_seconds)))
            return True

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        with self._lock:
            now = self._clock()
            self._sweep_expired(now)
            self._values[key] = (value, now + max(1, int(ttl_seconds)))

    async def hit_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        window = max(1, int(window_seconds))
        with self._lock:
            now = self._clock()
            self._sweep_expired(now)
            current = self._live_value(key, now)
            if current is None:
                expires_at = now + window
                count = 1
            else:
                expires_at = self._values[key][1]
                count = int(current) + 1
            self._values[key] = (str(count), expires_at)
            return count, max(1, math.ceil(expires_at - now))

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
