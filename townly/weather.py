"""AccuWeather client and the database-backed weather cache."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx

from .clock import KST, ensure_aware, kst_today, to_kst, utc_now
from .database import Database
from .errors import ConfigurationError, ExternalAPIError, RateLimitError, TownlyError, WeatherError
from .models import DailyForecast, HourlyForecast, LocationKey
from .ratelimit import RateLimiter
from .tracking import ApiTracker
from .ttl import SmartTTL

logger = logging.getLogger("townly.weather")

ACCUWEATHER_BASE_URL = "https://dataservice.accuweather.com"
DAILY_FORECAST_PATHS = {1: "1day", 5: "5day", 10: "10day", 15: "15day"}
COLLECTION_HOURS = (0, 6, 12, 18)
KOREAN_WEEKDAYS = ("월", "화", "수", "목", "금", "토", "일")
DEFAULT_LOCATION = "서울"

_STATUS_MESSAGES = {
    400: "잘못된 요청: 위치 정보나 매개변수를 확인해주세요.",
    401: "AccuWeather API 키 인증 실패: API 키를 확인해주세요.",
    403: "AccuWeather API 권한 제한: 현재 API 플랜에서 지원되지 않는 요청입니다.",
    429: "API 호출 한도 초과: 잠시 후 다시 시도해주세요.",
}


class AccuWeatherClient:
    """Minimal synchronous client for the AccuWeather REST API."""

    def __init__(
        self,
        api_key: Optional[str],
        *,
        http_client: Optional[httpx.Client] = None,
        timeout: float = 10.0,
        rate_limiter: Optional[RateLimiter] = None,
        tracker: Optional[ApiTracker] = None,
        base_url: str = ACCUWEATHER_BASE_URL,
    ) -> None:
        self._api_key = api_key
        self._client = http_client or httpx.Client(timeout=timeout)
        self._owns_client = http_client is None
        self._limiter = rate_limiter
        self._tracker = tracker
        self._base_url = base_url.rstrip("/")

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    @property
    def rate_limiter(self) -> Optional[RateLimiter]:
        return self._limiter

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def _status_error(self, status_code: int, endpoint: str) -> ExternalAPIError:
        if status_code >= 500:
            message = "AccuWeather 서버 오류: 잠시 후 다시 시도해주세요."
        else:
            message = _STATUS_MESSAGES.get(status_code, "AccuWeather API 오류")
        return ExternalAPIError(
            f"{message} ({status_code})",
            provider="accuweather",
            http_status=status_code,
            details={"endpoint": endpoint},
        )

    def _track(self, endpoint: str, *, status_code: Optional[int], started: float, error: Optional[str]) -> None:
        if self._tracker is None:
            return
        self._tracker.record_call(
            "accuweather",
            endpoint,
            http_status=status_code,
            response_time_ms=int((time.perf_counter() - started) * 1000),
            is_successful=error is None,
            error_message=error,
        )

    def _get(self, path: str, params: Mapping[str, Any]) -> Any:
        if not self._api_key:
            raise ConfigurationError("ACCUWEATHER_API_KEY is not configured")

        if self._limiter is not None and not self._limiter.try_acquire():
            wait = self._limiter.wait_time()
            raise RateLimitError(f"AccuWeather rate limit reached; retry in {wait:.0f}s", retry_after=wait)

        query = {"apikey": self._api_key, **params}
        started = time.perf_counter()
        try:
            response = self._client.get(f"{self._base_url}{path}", params=query)
        except httpx.HTTPError as exc:
            self._track(path, status_code=None, started=started, error=str(exc))
            logger.warning("AccuWeather request to %s failed: %s", path, exc)
            raise ExternalAPIError(f"AccuWeather request failed: {exc}", provider="accuweather") from exc

        if response.status_code >= 400:
            self._track(path, status_code=response.status_code, started=started, error=response.text[:200])
            logger.warning("AccuWeather %s returned HTTP %s", path, response.status_code)
            raise self._status_error(response.status_code, path)

        self._track(path, status_code=response.status_code, started=started, error=None)
        try:
            payload = response.json()
        except ValueError as exc:
            raise ExternalAPIError("AccuWeather returned a non-JSON body", provider="accuweather") from exc
        logger.info("AccuWeather %s responded in %.0f ms", path, (time.perf_counter() - started) * 1000)
        return payload

    def search_location(self, query: str) -> Dict[str, Any]:
        """Return the first city matching ``query``."""

        cleaned = query.strip()
        if not cleaned:
            raise ValueError("Location query must not be empty")
        results = self._get("/locations/v1/cities/search", {"q": cleaned, "language": "ko-kr"})
        if not results:
            raise WeatherError(f"Location not found: {cleaned}", user_message=f"위치를 찾을 수 없습니다: {cleaned}")
        return dict(results[0])

    def location_by_coordinates(self, latitude: float, longitude: float) -> Dict[str, Any]:
        result = self._get(
            "/locations/v1/cities/geoposition/search",
            {"q": f"{latitude},{longitude}", "language": "ko-kr"},
        )
        if not result or not result.get("Key"):
            raise WeatherError(
                f"No location for coordinates {latitude},{longitude}",
                user_message=f"좌표에 해당하는 위치를 찾을 수 없습니다: {latitude}, {longitude}",
            )
        return dict(result)

    def hourly_forecast(self, location_key: str, units: str = "metric") -> List[Dict[str, Any]]:
        return list(
            self._get(
                f"/forecasts/v1/hourly/12hour/{location_key}",
                {"language": "ko-kr", "details": "true", "metric": _metric_flag(units)},
            )
        )

    def daily_forecast(self, location_key: str, days: int = 5, units: str = "metric") -> Dict[str, Any]:
        """Fetch a 1/5/10/15-day forecast; long ranges blocked by the plan fall back to 5 days."""

        if days not in DAILY_FORECAST_PATHS:
            raise ValueError(f"Unsupported forecast length {days}; expected one of 1, 5, 10, 15")
        try:
            return dict(
                self._get(
                    f"/forecasts/v1/daily/{DAILY_FORECAST_PATHS[days]}/{location_key}",
                    {"language": "ko-kr", "details": "true", "metric": _metric_flag(units)},
                )
            )
        except ExternalAPIError as exc:
            if exc.http_status == 403 and days > 5:
                logger.warning("%s-day forecast is not available on this plan; using 5 days", days)
                return self.daily_forecast(location_key, 5, units)
            raise


def _metric_flag(units: str) -> str:
    return "true" if units == "metric" else "false"


def _value(node: Any, *path: str, default: Any = None) -> Any:
    current = node
    for key in path:
        if not isinstance(current, Mapping):
            return default
        current = current.get(key)
    return default if current is None else current


def _max_probability(part: Mapping[str, Any]) -> int:
    keys = (
        "PrecipitationProbability",
        "RainProbability",
        "ThunderstormProbability",
        "SnowProbability",
        "IceProbability",
    )
    return max(int(part.get(key) or 0) for key in keys)


def _half_day(part: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    if not part:
        return {}
    return {
        "icon": part.get("Icon"),
        "conditions": part.get("IconPhrase") or part.get("ShortPhrase") or "알 수 없음",
        "precipitation_probability": _max_probability(part),
    }


def parse_hourly(
    payload: Sequence[Mapping[str, Any]],
    *,
    location_name: str,
    location_key: str,
    units: str = "metric",
    clerk_user_id: Optional[str] = None,
) -> List[HourlyForecast]:
    """Map AccuWeather 12-hour forecast items to :class:`HourlyForecast`."""

    forecasts: List[HourlyForecast] = []
    for item in payload:
        moment = to_kst(datetime.fromisoformat(str(item["DateTime"])))
        forecasts.append(
            HourlyForecast(
                location_name=location_name,
                location_key=location_key,
                forecast_datetime=moment,
                temperature=float(round(_value(item, "Temperature", "Value", default=0))),
                conditions=item.get("IconPhrase") or "알 수 없음",
                weather_icon=item.get("WeatherIcon"),
                humidity=item.get("RelativeHumidity"),
                precipitation=float(
                    _value(item, "Rain", "Value", default=0) or _value(item, "TotalLiquid", "Value", default=0)
                ),
                precipitation_probability=int(item.get("PrecipitationProbability") or 0),
                rain_probability=int(item.get("RainProbability") or 0),
                wind_speed=float(round(_value(item, "Wind", "Speed", "Value", default=0))),
                units=units,
                clerk_user_id=clerk_user_id,
                raw=dict(item),
            )
        )
    return forecasts


def parse_daily(
    payload: Mapping[str, Any],
    *,
    location_name: str,
    location_key: str,
    days: int,
    units: str = "metric",
    clerk_user_id: Optional[str] = None,
) -> tuple[Dict[str, Any], List[DailyForecast]]:
    """Map an AccuWeather daily response to ``(headline, forecasts)``."""

    headline_raw = payload.get("Headline") or {}
    headline: Dict[str, Any] = {}
    if headline_raw:
        headline = {
            "text": headline_raw.get("Text") or "",
            "category": headline_raw.get("Category") or "",
            "severity": int(headline_raw.get("Severity") or 0),
        }

    forecasts: List[DailyForecast] = []
    for item in list(payload.get("DailyForecasts") or [])[:days]:
        moment = to_kst(datetime.fromisoformat(str(item["Date"])))
        high = float(_value(item, "Temperature", "Maximum", "Value", default=0))
        low = float(_value(item, "Temperature", "Minimum", "Value", default=0))
        day_part = item.get("Day") or {}
        forecasts.append(
            DailyForecast(
                location_name=location_name,
                location_key=location_key,
                forecast_date=moment.date().isoformat(),
                day_of_week=KOREAN_WEEKDAYS[moment.weekday()],
                temperature=int(round((high + low) / 2)),
                high_temp=int(round(high)),
                low_temp=int(round(low)),
                conditions=day_part.get("IconPhrase") or "알 수 없음",
                weather_icon=day_part.get("Icon"),
                precipitation_probability=_max_probability(day_part) if day_part else 0,
                rain_probability=int(day_part.get("RainProbability") or 0),
                day_weather=_half_day(item.get("Day")),
                night_weather=_half_day(item.get("Night")),
                headline=headline,
                units=units,
                clerk_user_id=clerk_user_id,
                raw=dict(item),
            )
        )
    return headline, forecasts


@dataclass(frozen=True)
class ForecastResult:
    location_name: str
    location_key: str
    forecasts: List[Any]
    from_cache: bool
    headline: Dict[str, Any] = field(default_factory=dict)


class WeatherService:
    """Serve AccuWeather forecasts from the TTL cache, calling the API on a miss."""

    def __init__(
        self,
        database: Database,
        client: AccuWeatherClient,
        *,
        smart_ttl: Optional[SmartTTL] = None,
        indexer: Any = None,
    ) -> None:
        self._database = database
        self._client = client
        self._ttl = smart_ttl or SmartTTL(database)
        self._indexer = indexer

    @property
    def client(self) -> AccuWeatherClient:
        return self._client

    @property
    def smart_ttl(self) -> SmartTTL:
        return self._ttl

    def set_indexer(self, indexer: Any) -> None:
        self._indexer = indexer

    # ------------------------------------------------------------------
    # Location keys
    # ------------------------------------------------------------------
    def resolve_location(
        self,
        *,
        location: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> LocationKey:
        current = ensure_aware(now or utc_now())
        if latitude is not None and longitude is not None:
            cache_key = f"locationKey:{latitude},{longitude}"
        elif location and location.strip():
            cache_key = f"locationKey:{location.strip()}"
        else:
            raise ValueError("Either location or latitude/longitude must be provided")

        cached = self._database.get_location_key(cache_key, current)
        if cached is not None:
            logger.debug("Location key cache hit for %s", cache_key)
            return cached

        logger.debug("Location key cache miss for %s", cache_key)
        if latitude is not None and longitude is not None:
            raw = self._client.location_by_coordinates(latitude, longitude)
            display_name = location.strip() if location and location.strip() else f"{latitude:.4f}, {longitude:.4f}"
        else:
            raw = self._client.search_location(location or "")
            display_name = (location or "").strip()

        geo = raw.get("GeoPosition") or {}
        resolved = LocationKey(
            cache_key=cache_key,
            location_key=str(raw["Key"]),
            location_name=display_name,
            localized_name=raw.get("LocalizedName"),
            latitude=geo.get("Latitude", latitude),
            longitude=geo.get("Longitude", longitude),
            country=_value(raw, "Country", "LocalizedName"),
            administrative_area=_value(raw, "AdministrativeArea", "LocalizedName"),
            expires_at=self._ttl.expiry_for("location", now=current),
        )
        self._database.upsert_location_key(resolved)
        return resolved

    # ------------------------------------------------------------------
    # Forecasts
    # ------------------------------------------------------------------
    @staticmethod
    def _user_key(base: str, clerk_user_id: Optional[str]) -> str:
        return f"{base}:user:{clerk_user_id}" if clerk_user_id else base

    def hourly_weather(
        self,
        *,
        location: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        units: str = "metric",
        clerk_user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ForecastResult:
        current = ensure_aware(now or utc_now())
        resolved = self.resolve_location(location=location, latitude=latitude, longitude=longitude, now=current)
        cache_key = self._user_key(f"hourlyWeather:{resolved.location_key}:{units}", clerk_user_id)

        cached = self._database.get_hourly_weather(cache_key, current)
        if cached:
            logger.debug("Hourly weather cache hit for %s (%s rows)", cache_key, len(cached))
            return ForecastResult(resolved.location_name, resolved.location_key, cached, True)

        payload = self._client.hourly_forecast(resolved.location_key, units)
        forecasts = parse_hourly(
            payload,
            location_name=resolved.location_name,
            location_key=resolved.location_key,
            units=units,
            clerk_user_id=clerk_user_id,
        )
        if forecasts:
            expires_at = self._ttl.expiry_for(
                "hourly",
                forecast_time=forecasts[0].forecast_datetime,
                clerk_user_id=clerk_user_id,
                location_name=resolved.location_name,
                now=current,
            )
            self._database.replace_hourly_weather(cache_key, forecasts, expires_at=expires_at, created_at=current)
            self._index("hourly", forecasts, clerk_user_id)
        return ForecastResult(resolved.location_name, resolved.location_key, forecasts, False)

    def daily_weather(
        self,
        *,
        location: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        days: int = 5,
        units: str = "metric",
        clerk_user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ForecastResult:
        if days not in DAILY_FORECAST_PATHS:
            raise ValueError(f"Unsupported forecast length {days}; expected one of 1, 5, 10, 15")

        current = ensure_aware(now or utc_now())
        resolved = self.resolve_location(location=location, latitude=latitude, longitude=longitude, now=current)
        cache_key = self._user_key(f"dailyWeather:{resolved.location_key}:{days}:{units}", clerk_user_id)

        cached = self._database.get_daily_weather(cache_key, current)
        if cached:
            logger.debug("Daily weather cache hit for %s (%s rows)", cache_key, len(cached))
            return ForecastResult(
                resolved.location_name, resolved.location_key, cached, True, headline=dict(cached[0].headline)
            )

        payload = self._client.daily_forecast(resolved.location_key, days, units)
        headline, forecasts = parse_daily(
            payload,
            location_name=resolved.location_name,
            location_key=resolved.location_key,
            days=days,
            units=units,
            clerk_user_id=clerk_user_id,
        )
        if forecasts:
            first_day = datetime.combine(date.fromisoformat(forecasts[0].forecast_date), dt_time(0, 0), tzinfo=KST)
            expires_at = self._ttl.expiry_for(
                "daily",
                forecast_time=first_day,
                clerk_user_id=clerk_user_id,
                location_name=resolved.location_name,
                now=current,
            )
            self._database.replace_daily_weather(cache_key, forecasts, expires_at=expires_at, created_at=current)
            self._index("daily", forecasts, clerk_user_id)
        return ForecastResult(resolved.location_name, resolved.location_key, forecasts, False, headline=headline)

    def _index(self, kind: str, forecasts: Sequence[Any], clerk_user_id: Optional[str]) -> None:
        if self._indexer is None:
            return
        try:
            if kind == "hourly":
                self._indexer.index_hourly(forecasts, clerk_user_id)
            else:
                self._indexer.index_daily(forecasts, clerk_user_id)
        except TownlyError as exc:
            logger.warning("Failed to create %s weather embeddings: %s", kind, exc)

    # ------------------------------------------------------------------
    # Cache lookups by location name
    # ------------------------------------------------------------------
    def current_from_cache(self, location_name: str, now: Optional[datetime] = None) -> Optional[HourlyForecast]:
        """Return the cached hour closest to ``now`` for today's date."""

        current = ensure_aware(now or utc_now())
        rows = self._database.find_hourly_weather(
            location_name, current, forecast_date=kst_today(current).isoformat(), limit=24
        )
        if not rows:
            return None
        return min(rows, key=lambda row: abs((row.forecast_datetime - current).total_seconds()))

    def hourly_from_cache(
        self, location_name: str, now: Optional[datetime] = None, *, limit: int = 12
    ) -> List[HourlyForecast]:
        current = ensure_aware(now or utc_now())
        rows = self._database.find_hourly_weather(location_name, current, limit=limit * 4)
        upcoming = [row for row in rows if row.forecast_datetime >= current.replace(minute=0, second=0, microsecond=0)]
        seen: Dict[datetime, HourlyForecast] = {}
        for row in upcoming or rows:
            seen.setdefault(row.forecast_datetime, row)
        return [seen[key] for key in sorted(seen)][:limit]

    def daily_from_cache(
        self, location_name: str, now: Optional[datetime] = None, *, limit: int = 5
    ) -> List[DailyForecast]:
        current = ensure_aware(now or utc_now())
        today = kst_today(current).isoformat()
        rows = self._database.find_daily_weather(location_name, current, limit=limit + 15)
        return [row for row in rows if row.forecast_date >= today][:limit]

    def day_from_cache(
        self, location_name: str, forecast_date: date, now: Optional[datetime] = None
    ) -> Optional[DailyForecast]:
        current = ensure_aware(now or utc_now())
        rows = self._database.find_daily_weather(
            location_name, current, forecast_date=forecast_date.isoformat(), limit=1
        )
        return rows[0] if rows else None

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    def cleanup_expired(self, now: Optional[datetime] = None) -> Dict[str, int]:
        current = ensure_aware(now or utc_now())
        removed = self._database.delete_expired_weather(current)
        embedding_cutoff = current - timedelta(minutes=self._ttl.base_ttl("embedding"))
        removed["weather_embeddings"] = self._database.delete_embeddings_before(embedding_cutoff)
        logger.info("Removed expired weather cache rows: %s", removed)
        return removed

    def clear_cache(self, kind: str = "all") -> Dict[str, int]:
        removed = self._database.clear_weather_cache(kind)
        logger.info("Cleared %s weather cache: %s", kind, removed)
        return removed

    def cache_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        current = ensure_aware(now or utc_now())
        stats: Dict[str, Any] = {"tables": self._database.weather_cache_stats(current)}
        limiter = self._client.rate_limiter
        if limiter is not None:
            stats["rate_limit"] = limiter.stats(current)
        return stats

    def collect_for_all_users(self, now: Optional[datetime] = None, *, force: bool = False) -> Dict[str, Any]:
        """Refresh hourly and 5-day forecasts for every saved user location."""

        current = ensure_aware(now or utc_now())
        kst_hour = to_kst(current).hour
        if not force and kst_hour not in COLLECTION_HOURS:
            return {
                "skipped": True,
                "reason": f"Collection runs at KST hours {list(COLLECTION_HOURS)}; current hour is {kst_hour}",
                "processed": 0,
                "succeeded": 0,
                "failed": 0,
                "results": [],
            }

        results: List[Dict[str, Any]] = []
        for user_location in self._database.list_user_locations():
            entry: Dict[str, Any] = {
                "clerk_user_id": user_location.clerk_user_id,
                "location": user_location.location_name,
            }
            try:
                hourly = self.hourly_weather(
                    location=user_location.location_name,
                    latitude=user_location.latitude,
                    longitude=user_location.longitude,
                    clerk_user_id=user_location.clerk_user_id,
                    now=current,
                )
                daily = self.daily_weather(
                    location=user_location.location_name,
                    latitude=user_location.latitude,
                    longitude=user_location.longitude,
                    days=5,
                    clerk_user_id=user_location.clerk_user_id,
                    now=current,
                )
            except (TownlyError, ValueError) as exc:
                logger.warning("Weather collection failed for %s: %s", user_location.clerk_user_id, exc)
                entry.update({"success": False, "error": str(exc)})
            else:
                entry.update(
                    {
                        "success": True,
                        "hourly_count": len(hourly.forecasts),
                        "daily_count": len(daily.forecasts),
                    }
                )
            results.append(entry)

        succeeded = sum(1 for entry in results if entry["success"])
        logger.info("Weather collection finished: %s/%s locations", succeeded, len(results))
        return {
            "skipped": False,
            "processed": len(results),
            "succeeded": succeeded,
            "failed": len(results) - succeeded,
            "results": results,
        }


__all__ = [
    "ACCUWEATHER_BASE_URL",
    "AccuWeatherClient",
    "COLLECTION_HOURS",
    "DAILY_FORECAST_PATHS",
    "DEFAULT_LOCATION",
    "ForecastResult",
    "KOREAN_WEEKDAYS",
    "WeatherService",
    "parse_daily",
    "parse_hourly",
]
