"""
auth/rate_limiter.py -- Per-key hour/day quota accounting.

Built on limits' MemoryStorage, the same in-memory backend slowapi uses for
the per-route limits in api/limiter.py. MemoryStorage.incr() anchors each
window: the counter's expiry is set when the first hit lands in an empty
window, so each window is a fixed-size interval starting at first use rather
than at a calendar boundary.

The hour and day increments for one key run under a striped lock chosen by
key id, so concurrent requests against one key never under-count and
requests against different keys rarely contend. There is no global lock.

check() always increments, even when the result is "exceeded". Denying the
request is the caller's decision; this class only keeps the books.

Counters live in process memory. A restart resets every quota, and separate
processes keep separate books.
"""

from __future__ import annotations

import logging
import threading
import zlib
from datetime import datetime, timezone

from limits.storage import MemoryStorage

from auth.models import RateLimit, RateLimitStatus

logger = logging.getLogger("authgate.ratelimit")

HOUR_WINDOW_SECONDS = 60 * 60
DAY_WINDOW_SECONDS = 24 * 60 * 60
_LOCK_STRIPES = 64


class RateLimiter:
    """Two rolling counters (hour, day) per API key.

    Usage:
        limiter = RateLimiter()
        status = limiter.check(key_id, RateLimit(100, 1000, 3))
        if status.exceeded:
            ...  # reject with 429, Retry-After from status.reset_time
    """

    def __init__(
        self,
        storage: MemoryStorage | None = None,
        hour_window: int = HOUR_WINDOW_SECONDS,
        day_window: int = DAY_WINDOW_SECONDS,
    ) -> None:
        self._storage = storage if storage is not None else MemoryStorage()
        self.hour_window = hour_window
        self.day_window = day_window
        self._locks = tuple(threading.Lock() for _ in range(_LOCK_STRIPES))

    def _lock_for(self, key_id: str) -> threading.Lock:
        return self._locks[zlib.crc32(key_id.encode()) % _LOCK_STRIPES]

    @staticmethod
    def _hour_key(key_id: str) -> str:
        return f"quota/{key_id}/hour"

    @staticmethod
    def _day_key(key_id: str) -> str:
        return f"quota/{key_id}/day"

    def check(self, key_id: str, policy: RateLimit) -> RateLimitStatus:
        """Consume one unit of quota for key_id and report the resulting state.

        exceeded is True when the post-increment count is above either ceiling.
        reset_time is when the binding window closes: the day window if the
        daily ceiling is exceeded, otherwise the hour window.
        """
        with self._lock_for(key_id):
            hour_count = self._storage.incr(self._hour_key(key_id), self.hour_window)
            day_count = self._storage.incr(self._day_key(key_id), self.day_window)

        hour_exceeded = hour_count > policy.requests_per_hour
        day_exceeded = day_count > policy.requests_per_day

        if day_exceeded:
            reset_at = self._storage.get_expiry(self._day_key(key_id))
            limit, used = policy.requests_per_day, day_count
        else:
            reset_at = self._storage.get_expiry(self._hour_key(key_id))
            limit, used = policy.requests_per_hour, hour_count

        remaining = max(0, min(policy.requests_per_hour - hour_count, policy.requests_per_day - day_count))
        exceeded = hour_exceeded or day_exceeded
        if exceeded:
            logger.info("Quota exceeded for key %s (hour=%d day=%d)", key_id, hour_count, day_count)

        return RateLimitStatus(
            remaining=remaining,
            reset_time=datetime.fromtimestamp(reset_at, tz=timezone.utc),
            exceeded=exceeded,
            limit=limit,
            used=used,
        )

    def reset(self, key_id: str) -> None:
        """Drop both counters for key_id (e.g. after the key is revoked)."""
        with self._lock_for(key_id):
            self._storage.clear(self._hour_key(key_id))
            self._storage.clear(self._day_key(key_id))

    def clear(self) -> None:
        """Drop every counter. Used by tests and operator tooling."""
        self._storage.reset()
