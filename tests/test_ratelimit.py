from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from townly.ratelimit import RateLimiter

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_minute_window_blocks_until_oldest_request_expires() -> None:
    limiter = RateLimiter(per_minute=2, per_hour=10, per_day=20)
    limiter.record_request(NOW)
    limiter.record_request(NOW + timedelta(seconds=10))

    assert limiter.can_make_request(NOW + timedelta(seconds=20)) is False
    assert limiter.wait_time(NOW + timedelta(seconds=20)) == pytest.approx(40.0)
    assert limiter.can_make_request(NOW + timedelta(seconds=61)) is True
    assert limiter.wait_time(NOW + timedelta(seconds=61)) == 0.0


def test_hour_window_applies_independently() -> None:
    limiter = RateLimiter(per_minute=5, per_hour=3, per_day=20)
    for minute in range(3):
        limiter.record_request(NOW + timedelta(minutes=minute * 5))

    later = NOW + timedelta(minutes=30)
    assert limiter.can_make_request(later) is False
    assert limiter.wait_time(later) == pytest.approx(30 * 60.0)


def test_stats_report_usage_and_reset_clears_history() -> None:
    limiter = RateLimiter(per_minute=5, per_hour=10, per_day=20)
    limiter.record_request(NOW)
    limiter.record_request(NOW - timedelta(hours=2))

    stats = limiter.stats(NOW)
    assert stats["minute"] == {"used": 1, "limit": 5, "remaining": 4}
    assert stats["hour"]["used"] == 1
    assert stats["day"]["used"] == 2

    limiter.reset()
    assert limiter.stats(NOW)["day"]["used"] == 0


def test_requests_older_than_a_day_are_pruned() -> None:
    limiter = RateLimiter(per_minute=1, per_hour=1, per_day=1)
    limiter.record_request(NOW - timedelta(days=1, seconds=1))
    assert limiter.can_make_request(NOW) is True


def test_non_positive_limits_are_rejected() -> None:
    with pytest.raises(ValueError):
        RateLimiter(per_minute=0)


def test_try_acquire_checks_and_records_together() -> None:
    limiter = RateLimiter(per_minute=2, per_hour=10, per_day=20)
    assert limiter.try_acquire(NOW) is True
    assert limiter.try_acquire(NOW + timedelta(seconds=1)) is True
    assert limiter.try_acquire(NOW + timedelta(seconds=2)) is False
    assert limiter.stats(NOW + timedelta(seconds=2))["minute"]["used"] == 2


def test_concurrent_acquires_never_exceed_the_limit() -> None:
    limiter = RateLimiter(per_minute=5, per_hour=100, per_day=100)
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: limiter.try_acquire(NOW), range(40)))
    assert results.count(True) == 5
    assert limiter.stats(NOW)["minute"]["used"] == 5
