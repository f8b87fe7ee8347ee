"""Unit tests for auth/rate_limiter.py.

Window lengths are shrunk to one or two seconds so resets can be observed
with a short sleep instead of patching the clock.
"""

import threading
import time
from datetime import datetime, timezone

from auth.models import RateLimit
from auth.rate_limiter import RateLimiter

POLICY = RateLimit(requests_per_hour=3, requests_per_day=100, max_servers=1)


def test_nth_call_allowed_and_next_exceeded():
    limiter = RateLimiter()
    statuses = [limiter.check("k1", POLICY) for _ in range(4)]
    assert [s.exceeded for s in statuses] == [False, False, False, True]
    assert [s.remaining for s in statuses] == [2, 1, 0, 0]


def test_remaining_takes_the_tighter_window():
    limiter = RateLimiter()
    status = limiter.check("k1", RateLimit(requests_per_hour=50, requests_per_day=5, max_servers=1))
    assert status.remaining == 4


def test_day_limit_binds_reset_time():
    limiter = RateLimiter(hour_window=60, day_window=3600)
    policy = RateLimit(requests_per_hour=10, requests_per_day=1, max_servers=1)
    limiter.check("k1", policy)
    status = limiter.check("k1", policy)
    assert status.exceeded
    assert status.limit == 1
    seconds_left = (status.reset_time - datetime.now(timezone.utc)).total_seconds()
    assert 60 < seconds_left <= 3600


def test_hour_limit_reports_hour_reset():
    limiter = RateLimiter(hour_window=60, day_window=3600)
    status = limiter.check("k1", POLICY)
    seconds_left = (status.reset_time - datetime.now(timezone.utc)).total_seconds()
    assert 0 < seconds_left <= 60
    assert status.limit == POLICY.requests_per_hour
    assert status.used == 1


def test_window_resets_after_reset_time():
    limiter = RateLimiter(hour_window=1, day_window=60)
    policy = RateLimit(requests_per_hour=1, requests_per_day=100, max_servers=1)
    assert not limiter.check("k1", policy).exceeded
    assert limiter.check("k1", policy).exceeded
    time.sleep(1.2)
    assert not limiter.check("k1", policy).exceeded


def test_denied_calls_still_count():
    limiter = RateLimiter(hour_window=60, day_window=3600)
    policy = RateLimit(requests_per_hour=1, requests_per_day=100, max_servers=1)
    for _ in range(5):
        status = limiter.check("k1", policy)
    assert status.used == 5


def test_keys_are_independent():
    limiter = RateLimiter()
    for _ in range(4):
        limiter.check("k1", POLICY)
    assert not limiter.check("k2", POLICY).exceeded


def test_reset_clears_one_key():
    limiter = RateLimiter()
    for _ in range(4):
        limiter.check("k1", POLICY)
        limiter.check("k2", POLICY)
    limiter.reset("k1")
    assert not limiter.check("k1", POLICY).exceeded
    assert limiter.check("k2", POLICY).exceeded


def test_concurrent_checks_never_undercount():
    limiter = RateLimiter()
    policy = RateLimit(requests_per_hour=100, requests_per_day=1000, max_servers=1)
    results = []
    lock = threading.Lock()

    def worker():
        for _ in range(25):
            s = limiter.check("shared", policy)
            with lock:
                results.append(s.exceeded)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    # 200 calls against a ceiling of 100: exactly 100 allowed
    assert results.count(False) == 100
    assert results.count(True) == 100
