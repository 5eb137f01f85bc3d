"""Sliding-window rate limiter guarding the AccuWeather quota."""
from __future__ import annotations

import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Deque, Dict, Optional

from .clock import ensure_aware, utc_now

_WINDOWS = {
    "minute": timedelta(minutes=1),
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
}


class RateLimiter:
    """Track request timestamps and enforce per-minute, per-hour and per-day limits."""

    def __init__(self, per_minute: int = 25, per_hour: int = 150, per_day: int = 450) -> None:
        if min(per_minute, per_hour, per_day) <= 0:
            raise ValueError("Rate limits must be positive")
        self._limits: Dict[str, int] = {"minute": per_minute, "hour": per_hour, "day": per_day}
        self._requests: Deque[datetime] = deque()
        self._lock = threading.Lock()

    @property
    def limits(self) -> Dict[str, int]:
        return dict(self._limits)

    def _prune(self, now: datetime) -> None:
        cutoff = now - _WINDOWS["day"]
        while self._requests and self._requests[0] <= cutoff:
            self._requests.popleft()

    def _count_since(self, since: datetime) -> int:
        return sum(1 for stamp in self._requests if stamp > since)

    def _allowed(self, current: datetime) -> bool:
        self._prune(current)
        for window, span in _WINDOWS.items():
            if self._count_since(current - span) >= self._limits[window]:
                return False
        return True

    def can_make_request(self, now: Optional[datetime] = None) -> bool:
        current = ensure_aware(now or utc_now())
        with self._lock:
            return self._allowed(current)

    def try_acquire(self, now: Optional[datetime] = None) -> bool:
        """Record a request if every window has room; check and record happen under one lock."""

        current = ensure_aware(now or utc_now())
        with self._lock:
            if not self._allowed(current):
                return False
            self._requests.append(current)
        return True

    def record_request(self, now: Optional[datetime] = None) -> None:
        current = ensure_aware(now or utc_now())
        with self._lock:
            self._requests.append(current)
            self._prune(current)

    def wait_time(self, now: Optional[datetime] = None) -> float:
        """Seconds until a request is allowed again; ``0.0`` when one is allowed now."""

        current = ensure_aware(now or utc_now())
        wait = 0.0
        with self._lock:
            self._prune(current)
            for window, span in _WINDOWS.items():
                in_window = [stamp for stamp in self._requests if stamp > current - span]
                if len(in_window) < self._limits[window]:
                    continue
                # The request that must leave the window before we are under the limit.
                blocking = in_window[len(in_window) - self._limits[window]]
                wait = max(wait, (blocking + span - current).total_seconds())
        return max(wait, 0.0)

    def stats(self, now: Optional[datetime] = None) -> Dict[str, Dict[str, int]]:
        current = ensure_aware(now or utc_now())
        with self._lock:
            self._prune(current)
            result: Dict[str, Dict[str, int]] = {}
            for window, span in _WINDOWS.items():
                used = self._count_since(current - span)
                limit = self._limits[window]
                result[window] = {"used": used, "limit": limit, "remaining": max(limit - used, 0)}
        return result

    def reset(self) -> None:
        with self._lock:
            self._requests.clear()


__all__ = ["RateLimiter"]
