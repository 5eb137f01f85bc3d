from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Tuple

import pytest

from townly.config import CacheTTL
from townly.ttl import SmartTTL

# 09:00 KST
MORNING = datetime(2025, 3, 1, 0, 0, tzinfo=timezone.utc)


class _ActivityDatabase:
    def __init__(self, activity: List[Tuple[datetime, str]]) -> None:
        self.activity = activity

    def list_user_weather_activity(self, clerk_user_id: str, since: datetime) -> List[Tuple[datetime, str]]:
        return [item for item in self.activity if item[0] >= since]


def _activity(count: int, location: str, when: datetime) -> List[Tuple[datetime, str]]:
    return [(when - timedelta(minutes=index), location) for index in range(count)]


@pytest.mark.parametrize(
    ("data_type", "hours_ahead", "expected"),
    [
        ("hourly", 0.5, 30),
        ("hourly", 1, 30),
        ("hourly", 5, 60),
        ("hourly", 20, 120),
        ("hourly", 30, 180),
        ("daily", 10, 180),
        ("daily", 48, 360),
        ("daily", 100, 720),
    ],
)
def test_dynamic_ttl_shrinks_for_near_forecasts(data_type: str, hours_ahead: float, expected: int) -> None:
    forecast = MORNING + timedelta(hours=hours_ahead)
    assert SmartTTL.dynamic_ttl(data_type, forecast, MORNING) == expected


def test_dynamic_ttl_rejects_unknown_type() -> None:
    with pytest.raises(ValueError):
        SmartTTL.dynamic_ttl("location", MORNING, MORNING)


def test_low_frequency_user_keeps_base_ttl() -> None:
    ttl = SmartTTL(_ActivityDatabase([]))
    decision = ttl.personalized_ttl("user", "hourly", "서울", now=MORNING)
    assert decision.ttl_minutes == 120
    assert decision.multiplier == 1.0


def test_frequent_morning_user_gets_extended_ttl_at_preferred_location() -> None:
    # 9 queries a day over the window, all at 07:00-09:00 KST
    activity = []
    for day in range(30):
        activity.extend(_activity(9, "서울", MORNING - timedelta(days=day, hours=1)))
    ttl = SmartTTL(_ActivityDatabase(activity))

    pattern = ttl.analyze_user("user", MORNING)
    assert pattern.time_preference == "morning"
    assert pattern.preferred_locations == ["서울"]

    decision = ttl.personalized_ttl("user", "hourly", "서울", now=MORNING)
    # 120 * 1.5 * 1.3 * 1.2 = 280.8
    assert decision.multiplier == pytest.approx(2.34)
    assert decision.ttl_minutes == 281


def test_personalized_ttl_is_clamped_to_bounds() -> None:
    activity = []
    for day in range(30):
        activity.extend(_activity(12, "부산", MORNING - timedelta(days=day, hours=1)))
    ttl = SmartTTL(_ActivityDatabase(activity), base=CacheTTL(hourly=300))

    decision = ttl.personalized_ttl("user", "hourly", "부산", now=MORNING)
    assert decision.ttl_minutes == 360
    assert any("TTL 범위 제한" in reason for reason in decision.reasoning)


def test_expiry_without_user_uses_base_ttl() -> None:
    ttl = SmartTTL(_ActivityDatabase([]))
    assert ttl.expiry_for("location", now=MORNING) == MORNING + timedelta(minutes=10080)
    assert ttl.expiry_for(
        "hourly", forecast_time=MORNING + timedelta(hours=3), now=MORNING
    ) == MORNING + timedelta(minutes=60)


def test_recommendations_for_idle_user() -> None:
    pattern = SmartTTL(_ActivityDatabase([])).analyze_user("user", MORNING)
    result = SmartTTL.recommendations(pattern)
    assert result["optimization_score"] == 10
    assert result["recommendations"] == ["사용량이 적어 표준 캐시 정책이 적용됩니다."]
