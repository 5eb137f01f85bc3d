"""Record outbound API calls and maintain per-provider daily statistics."""
from __future__ import annotations

import logging
import sqlite3
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from .clock import ensure_aware, utc_now
from .database import Database

logger = logging.getLogger("townly.tracking")

PROVIDERS = ("accuweather", "airkorea", "google_air_quality", "openai", "kakao")

DEFAULT_DAILY_LIMITS = {
    "accuweather": 500,
    "airkorea": 10000,
    "google_air_quality": 10000,
    "openai": 10000,
    "kakao": 10000,
}


class ApiTracker:
    """Thin layer over the ``api_call_logs`` and ``daily_api_stats`` tables."""

    def __init__(self, database: Database) -> None:
        self._database = database

    def record_call(
        self,
        provider: str,
        endpoint: str,
        *,
        method: str = "GET",
        http_status: Optional[int] = None,
        response_time_ms: Optional[int] = None,
        is_successful: bool = True,
        user_id: Optional[str] = None,
        request_params: Optional[Mapping[str, Any]] = None,
        error_message: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Insert one call log and refresh the provider's stats; never raises on storage errors."""

        call_time = ensure_aware(now or utc_now())
        try:
            self._database.insert_api_call(
                provider=provider,
                endpoint=endpoint,
                method=method,
                call_time=call_time,
                http_status=http_status,
                response_time_ms=response_time_ms,
                is_successful=is_successful,
                user_id=user_id,
                request_params=request_params,
                error_message=error_message,
            )
            self._database.refresh_daily_api_stats(provider, call_time.date().isoformat())
        except sqlite3.Error:
            logger.exception("Failed to record %s API call to %s", provider, endpoint)

    def daily_call_count(self, provider: str, date: Optional[str] = None) -> int:
        target = date or utc_now().date().isoformat()
        return self._database.count_api_calls(provider, target)

    def check_limit(self, provider: str, daily_limit: Optional[int] = None) -> Dict[str, Any]:
        limit = daily_limit if daily_limit is not None else DEFAULT_DAILY_LIMITS.get(provider, 1000)
        current = self.daily_call_count(provider)
        remaining = max(limit - current, 0)
        percentage = round(current / limit * 100, 1) if limit else 100.0
        return {
            "provider": provider,
            "current": current,
            "limit": limit,
            "remaining": remaining,
            "percentage": percentage,
            "can_make_request": current < limit,
        }

    def daily_stats(self, provider: str, date: Optional[str] = None) -> Optional[Dict[str, Any]]:
        target = date or utc_now().date().isoformat()
        stats = self._database.get_daily_api_stats(provider, target)
        if stats is None:
            return None
        return asdict(stats)

    def recent_stats(self, provider: str, days: int = 7) -> List[Dict[str, Any]]:
        return [asdict(stats) for stats in self._database.list_daily_api_stats(provider, limit=days)]

    def all_today_stats(self) -> Dict[str, Dict[str, Any]]:
        today = utc_now().date().isoformat()
        summary: Dict[str, Dict[str, Any]] = {}
        for provider in PROVIDERS:
            stats = self._database.get_daily_api_stats(provider, today)
            summary[provider] = {
                "total_calls": stats.total_calls if stats else 0,
                "successful_calls": stats.successful_calls if stats else 0,
                "failed_calls": stats.failed_calls if stats else 0,
                "avg_response_time": stats.avg_response_time if stats else None,
                "limit": self.check_limit(provider),
            }
        return summary

    def finalize_previous_day(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Mark yesterday's statistics rows as final."""

        current = ensure_aware(now or utc_now())
        yesterday = (current - timedelta(days=1)).date().isoformat()
        for provider in PROVIDERS:
            self._database.refresh_daily_api_stats(provider, yesterday)
        finalized = self._database.finalize_daily_api_stats(yesterday)
        logger.info("Finalized %s API stats rows for %s", finalized, yesterday)
        return {"date": yesterday, "finalized": finalized}


__all__ = ["ApiTracker", "DEFAULT_DAILY_LIMITS", "PROVIDERS"]
