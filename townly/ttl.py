"""Smart TTL: cache lifetimes that adapt to forecast distance and user habits."""
from __future__ import annotations

import logging
import sqlite3
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .clock import ensure_aware, to_kst, utc_now
from .config import CacheTTL
from .database import Database

logger = logging.getLogger("townly.ttl")

PATTERN_WINDOW_DAYS = 30

_TTL_BOUNDS = {
    "hourly": (30, 6 * 60),
    "daily": (60, 24 * 60),
}


@dataclass(frozen=True)
class UserPattern:
    frequency_score: float = 0.0
    preferred_locations: List[str] = field(default_factory=list)
    time_preference: str = "none"
    total_queries: int = 0
    avg_queries_per_day: float = 0.0
    activity_days: int = PATTERN_WINDOW_DAYS


@dataclass(frozen=True)
class TTLDecision:
    base_ttl: int
    ttl_minutes: int
    multiplier: float
    reasoning: List[str]


def _in_morning(hour: int) -> bool:
    return 6 <= hour < 12


def _in_evening(hour: int) -> bool:
    return 18 <= hour < 24


class SmartTTL:
    """Compute cache expiry for weather rows."""

    def __init__(self, database: Database, *, base: Optional[CacheTTL] = None) -> None:
        self._database = database
        self._base = base or CacheTTL()

    def base_ttl(self, data_type: str) -> int:
        try:
            return int(getattr(self._base, data_type))
        except AttributeError as exc:
            raise ValueError(f"Unknown data type '{data_type}'") from exc

    @staticmethod
    def dynamic_ttl(data_type: str, forecast_time: datetime, now: Optional[datetime] = None) -> int:
        """Shorter lifetimes for forecasts close to ``now``."""

        current = ensure_aware(now or utc_now())
        hours = abs((ensure_aware(forecast_time) - current).total_seconds()) / 3600
        if data_type == "hourly":
            if hours <= 1:
                return 30
            if hours <= 6:
                return 60
            if hours <= 24:
                return 120
            return 180
        if data_type == "daily":
            if hours <= 24:
                return 180
            if hours <= 72:
                return 360
            return 720
        raise ValueError(f"Dynamic TTL is not defined for '{data_type}'")

    def analyze_user(self, clerk_user_id: str, now: Optional[datetime] = None) -> UserPattern:
        current = ensure_aware(now or utc_now())
        since = current - timedelta(days=PATTERN_WINDOW_DAYS)
        activity = self._database.list_user_weather_activity(clerk_user_id, since)

        total = len(activity)
        per_day = total / PATTERN_WINDOW_DAYS
        locations = Counter(location for _, location in activity)
        preferred = [name for name, _ in locations.most_common(3)]

        preference = "none"
        if total:
            hours = [to_kst(created).hour for created, _ in activity]
            if sum(1 for hour in hours if _in_morning(hour)) / total > 0.4:
                preference = "morning"
            elif sum(1 for hour in hours if _in_evening(hour)) / total > 0.4:
                preference = "evening"

        return UserPattern(
            frequency_score=per_day,
            preferred_locations=preferred,
            time_preference=preference,
            total_queries=total,
            avg_queries_per_day=round(per_day, 2),
        )

    def personalized_ttl(
        self,
        clerk_user_id: str,
        data_type: str,
        location_name: str,
        *,
        forecast_time: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> TTLDecision:
        if data_type not in _TTL_BOUNDS:
            raise ValueError(f"Personalized TTL is not defined for '{data_type}'")

        current = ensure_aware(now or utc_now())
        pattern = self.analyze_user(clerk_user_id, current)
        if forecast_time is not None:
            base = self.dynamic_ttl(data_type, forecast_time, current)
        else:
            base = self.base_ttl(data_type)

        multiplier = 1.0
        reasoning: List[str] = []
        if pattern.frequency_score > 10:
            multiplier *= 2.0
            reasoning.append("고빈도 사용자 (일 10회 이상): TTL 2배 연장")
        elif pattern.frequency_score > 5:
            multiplier *= 1.5
            reasoning.append("중빈도 사용자 (일 5-10회): TTL 1.5배 연장")
        elif pattern.frequency_score > 2:
            multiplier *= 1.2
            reasoning.append("일반 사용자 (일 2-5회): TTL 1.2배 연장")
        else:
            reasoning.append("저빈도 사용자: 기본 TTL 적용")

        if location_name in pattern.preferred_locations:
            multiplier *= 1.3
            reasoning.append("선호 위치: TTL 1.3배 추가 연장")

        hour = to_kst(current).hour
        if pattern.time_preference == "morning" and _in_morning(hour):
            multiplier *= 1.2
            reasoning.append("아침 시간대 선호 사용자의 아침 조회: TTL 1.2배 연장")
        elif pattern.time_preference == "evening" and _in_evening(hour):
            multiplier *= 1.2
            reasoning.append("저녁 시간대 선호 사용자의 저녁 조회: TTL 1.2배 연장")

        raw_ttl = int(round(base * multiplier))
        low, high = _TTL_BOUNDS[data_type]
        final = max(low, min(high, raw_ttl))
        if final != raw_ttl:
            reasoning.append(f"TTL 범위 제한 적용: {raw_ttl}분 → {final}분")

        return TTLDecision(
            base_ttl=base,
            ttl_minutes=final,
            multiplier=round(multiplier, 2),
            reasoning=reasoning,
        )

    def expiry_for(
        self,
        data_type: str,
        *,
        forecast_time: Optional[datetime] = None,
        clerk_user_id: Optional[str] = None,
        location_name: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> datetime:
        """Return the ``expires_at`` timestamp for a cache write."""

        current = ensure_aware(now or utc_now())
        if clerk_user_id and data_type in _TTL_BOUNDS:
            try:
                decision = self.personalized_ttl(
                    clerk_user_id,
                    data_type,
                    location_name or "",
                    forecast_time=forecast_time,
                    now=current,
                )
                minutes = decision.ttl_minutes
            except sqlite3.Error:  # pragma: no cover - database failure
                logger.warning("Falling back to default TTL for user %s", clerk_user_id, exc_info=True)
                minutes = self.base_ttl(data_type)
        elif forecast_time is not None and data_type in _TTL_BOUNDS:
            minutes = self.dynamic_ttl(data_type, forecast_time, current)
        else:
            minutes = self.base_ttl(data_type)
        logger.debug("TTL for %s data: %s minutes", data_type, minutes)
        return current + timedelta(minutes=minutes)

    @staticmethod
    def recommendations(pattern: UserPattern) -> Dict[str, Any]:
        tips: List[str] = []
        score = 0
        if pattern.frequency_score > 5:
            tips.append("고빈도 사용자로 분류되어 캐시 TTL이 자동으로 연장됩니다.")
            score += 30
        if pattern.preferred_locations:
            tips.append(f"선호 위치 {len(pattern.preferred_locations)}곳의 데이터가 더 오래 캐시됩니다.")
            score += 25
        if pattern.time_preference != "none":
            label = "아침" if pattern.time_preference == "morning" else "저녁"
            tips.append(f"{label} 시간대 최적화가 적용됩니다.")
            score += 20
        if pattern.total_queries > 50:
            tips.append("활발한 사용자로 분류되어 개인화된 캐시 최적화가 활성화됩니다.")
            score += 25
        elif pattern.total_queries < 10:
            tips.append("사용량이 적어 표준 캐시 정책이 적용됩니다.")
            score += 10
        if not tips:
            tips.append("현재 표준 TTL 정책이 적용되고 있습니다.")
            score = 50
        return {"recommendations": tips, "optimization_score": min(100, score)}

    def performance_stats(self, now: Optional[datetime] = None) -> Dict[str, float]:
        current = ensure_aware(now or utc_now())
        today_start = to_kst(current).replace(hour=0, minute=0, second=0, microsecond=0)
        lifetimes = self._database.list_weather_cache_lifetimes()

        total = len(lifetimes)
        valid = [(created, expires) for created, expires in lifetimes if expires >= current]
        expired_today = sum(1 for _, expires in lifetimes if today_start <= expires < current)
        if valid:
            average = sum((expires - created).total_seconds() / 60 for created, expires in valid) / len(valid)
        else:
            average = 0.0
        hit_rate = (len(valid) / total * 100) if total else 0.0
        return {
            "total_cached_items": total,
            "valid_items": len(valid),
            "average_ttl_minutes": round(average, 2),
            "expired_items_today": expired_today,
            "cache_hit_rate": round(hit_rate, 2),
        }


__all__ = ["PATTERN_WINDOW_DAYS", "SmartTTL", "TTLDecision", "UserPattern"]
