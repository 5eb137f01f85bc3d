"""Time helpers; Townly schedules and forecasts are expressed in Korea Standard Time."""

from __future__ import annotations

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

KST = ZoneInfo("Asia/Seoul")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_kst(value: datetime) -> datetime:
    return ensure_aware(value).astimezone(KST)


def kst_today(now: datetime) -> date:
    return to_kst(now).date()


__all__ = ["KST", "ensure_aware", "kst_today", "to_kst", "utc_now"]
