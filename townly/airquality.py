"""AirKorea and Google Air Quality clients plus the hourly air-quality cache."""
from __future__ import annotations

import logging
import time
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional

import httpx

from .clock import ensure_aware, to_kst, utc_now
from .database import Database
from .errors import AirQualityError, ConfigurationError, ExternalAPIError, TownlyError
from .models import AirQualityReading
from .tracking import ApiTracker
from .weather import COLLECTION_HOURS

logger = logging.getLogger("townly.airquality")

AIRKOREA_BASE_URL = "http://apis.data.go.kr/B552584/ArpltnInforInqireSvc"
GOOGLE_AIR_QUALITY_BASE_URL = "https://airquality.googleapis.com/v1"
EXTRA_COMPUTATIONS = ("LOCAL_AQI", "DOMINANT_POLLUTANT", "HEALTH_RECOMMENDATIONS")
CACHE_LIFETIME = timedelta(hours=1)
COLLECTION_FORECAST_HOURS = 90
MAX_FORECAST_HOURS = 96


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class AirKoreaClient:
    """Client for the public AirKorea real-time measurement service."""

    def __init__(
        self,
        api_key: Optional[str],
        *,
        http_client: Optional[httpx.Client] = None,
        timeout: float = 10.0,
        tracker: Optional[ApiTracker] = None,
        base_url: str = AIRKOREA_BASE_URL,
    ) -> None:
        self._api_key = api_key
        self._client = http_client or httpx.Client(timeout=timeout)
        self._tracker = tracker
        self._base_url = base_url.rstrip("/")

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def _get(self, operation: str, params: Mapping[str, Any]) -> List[Dict[str, Any]]:
        if not self._api_key:
            raise ConfigurationError("AIRKOREA_API_KEY is not configured")

        query = {"serviceKey": self._api_key, "returnType": "json", "pageNo": "1", "ver": "1.3", **params}
        started = time.perf_counter()
        try:
            response = self._client.get(f"{self._base_url}/{operation}", params=query)
        except httpx.HTTPError as exc:
            self._track(operation, None, started, str(exc))
            raise ExternalAPIError(f"AirKorea request failed: {exc}", provider="airkorea") from exc

        if response.status_code >= 400:
            self._track(operation, response.status_code, started, response.text[:200])
            logger.warning("AirKorea %s returned HTTP %s", operation, response.status_code)
            raise ExternalAPIError(
                f"AirKorea request failed with HTTP {response.status_code}",
                provider="airkorea",
                http_status=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            self._track(operation, response.status_code, started, "invalid JSON")
            raise AirQualityError(
                f"AirKorea response is not valid JSON: {response.text[:200]}",
            ) from exc

        self._track(operation, response.status_code, started, None)
        logger.info("AirKorea %s responded in %s ms", operation, _elapsed_ms(started))
        items = ((payload.get("response") or {}).get("body") or {}).get("items") or []
        return [dict(item) for item in items]

    def _track(self, operation: str, status_code: Optional[int], started: float, error: Optional[str]) -> None:
        if self._tracker is None:
            return
        self._tracker.record_call(
            "airkorea",
            f"/{operation}",
            http_status=status_code,
            response_time_ms=_elapsed_ms(started),
            is_successful=error is None,
            error_message=error,
        )

    def station_realtime(self, station_name: str, data_term: str = "DAILY", rows: int = 24) -> List[Dict[str, Any]]:
        if not station_name.strip():
            raise ValueError("station_name must not be empty")
        return self._get(
            "getMsrstnAcctoRltmMesureDnsty",
            {"stationName": station_name.strip(), "dataTerm": data_term, "numOfRows": str(rows)},
        )

    def sido_realtime(self, sido_name: str, rows: int = 100) -> List[Dict[str, Any]]:
        if not sido_name.strip():
            raise ValueError("sido_name must not be empty")
        return self._get("getCtprvnRltmMesureDnsty", {"sidoName": sido_name.strip(), "numOfRows": str(rows)})

    def nearby_stations(self, tm_x: float, tm_y: float) -> List[Dict[str, Any]]:
        return self._get("getNearbyMsrstnList", {"tmX": str(tm_x), "tmY": str(tm_y)})


class GoogleAirQualityClient:
    """Client for the Google Maps Air Quality API."""

    def __init__(
        self,
        api_key: Optional[str],
        *,
        http_client: Optional[httpx.Client] = None,
        timeout: float = 10.0,
        tracker: Optional[ApiTracker] = None,
        base_url: str = GOOGLE_AIR_QUALITY_BASE_URL,
    ) -> None:
        self._api_key = api_key
        self._client = http_client or httpx.Client(timeout=timeout)
        self._tracker = tracker
        self._base_url = base_url.rstrip("/")

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def _post(self, endpoint: str, body: Dict[str, Any], user_id: Optional[str]) -> Dict[str, Any]:
        if not self._api_key:
            raise ConfigurationError("GOOGLE_MAPS_API_KEY is not configured")

        started = time.perf_counter()
        try:
            response = self._client.post(
                f"{self._base_url}/{endpoint}",
                params={"key": self._api_key},
                json=body,
            )
        except httpx.HTTPError as exc:
            self._track(endpoint, None, started, str(exc), user_id)
            raise ExternalAPIError(f"Google Air Quality request failed: {exc}", provider="google_air_quality") from exc

        if response.status_code >= 400:
            self._track(endpoint, response.status_code, started, response.text[:200], user_id)
            logger.warning("Google Air Quality %s returned HTTP %s", endpoint, response.status_code)
            raise ExternalAPIError(
                f"Google Air Quality API error {response.status_code}",
                provider="google_air_quality",
                http_status=response.status_code,
            )

        self._track(endpoint, response.status_code, started, None, user_id)
        logger.info("Google Air Quality %s responded in %s ms", endpoint, _elapsed_ms(started))
        try:
            return dict(response.json())
        except ValueError as exc:
            raise AirQualityError("Google Air Quality returned a non-JSON body") from exc

    def _track(
        self,
        endpoint: str,
        status_code: Optional[int],
        started: float,
        error: Optional[str],
        user_id: Optional[str],
    ) -> None:
        if self._tracker is None:
            return
        self._tracker.record_call(
            "google_air_quality",
            f"/{endpoint}",
            method="POST",
            http_status=status_code,
            response_time_ms=_elapsed_ms(started),
            is_successful=error is None,
            user_id=user_id,
            error_message=error,
        )

    def current_conditions(self, latitude: float, longitude: float, *, user_id: Optional[str] = None) -> Dict[str, Any]:
        body = {
            "location": {"latitude": latitude, "longitude": longitude},
            "extraComputations": list(EXTRA_COMPUTATIONS),
            "languageCode": "ko",
        }
        return self._post("currentConditions:lookup", body, user_id)

    def hourly_forecast(
        self,
        latitude: float,
        longitude: float,
        hours: int = 12,
        *,
        now: Optional[datetime] = None,
        user_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        start = ensure_aware(now or utc_now()).astimezone(timezone.utc).replace(microsecond=0)
        end = start + timedelta(hours=hours)
        body = {
            "location": {"latitude": latitude, "longitude": longitude},
            "period": {
                "startTime": start.isoformat().replace("+00:00", "Z"),
                "endTime": end.isoformat().replace("+00:00", "Z"),
            },
            "extraComputations": list(EXTRA_COMPUTATIONS),
            "languageCode": "ko",
        }
        payload = self._post("forecast:lookup", body, user_id)
        return [dict(item) for item in payload.get("hourlyForecasts") or []]


def _parse_timestamp(value: Optional[str], fallback: datetime) -> datetime:
    if not value:
        return fallback
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def process_air_quality(data: Mapping[str, Any], *, now: Optional[datetime] = None) -> AirQualityReading:
    """Reduce a Google Air Quality record to the pollutant values Townly stores."""

    values: Dict[str, Optional[int]] = {}
    for pollutant in data.get("pollutants") or []:
        code = pollutant.get("code")
        concentration = (pollutant.get("concentration") or {}).get("value")
        if concentration is None:
            continue
        if code in {"pm10", "pm25", "no2", "o3", "so2"}:
            values[code] = int(round(float(concentration)))
        elif code == "co":
            values["co"] = int(round(float(concentration) * 1000))

    for index in data.get("indexes") or []:
        display = index.get("aqiDisplay")
        code = index.get("code")
        if display == "KR" or code == "kor_airkorea":
            values["cai_kr"] = index.get("aqi")
        elif display == "BreezoMeter" or code == "uaqi":
            values["breezometer_aqi"] = index.get("aqi")

    recommendations = data.get("healthRecommendations") or {}
    health: Dict[str, str] = {}
    if recommendations:
        health = {
            "general": recommendations.get("generalPopulation") or "",
            "sensitive": recommendations.get("elderly") or recommendations.get("children") or "",
        }

    return AirQualityReading(
        forecast_datetime=_parse_timestamp(data.get("dateTime"), ensure_aware(now or utc_now())),
        pm10=values.get("pm10"),
        pm25=values.get("pm25"),
        cai_kr=values.get("cai_kr"),
        breezometer_aqi=values.get("breezometer_aqi"),
        no2=values.get("no2"),
        o3=values.get("o3"),
        so2=values.get("so2"),
        co=values.get("co"),
        health_recommendations=health,
        raw=dict(data),
    )


def _average(values: List[Optional[int]]) -> Optional[int]:
    present = [value for value in values if value is not None]
    if not present:
        return None
    return int(round(sum(present) / len(present)))


class AirQualityService:
    """Hourly and daily air quality with a one-hour database cache."""

    def __init__(
        self,
        database: Database,
        google: GoogleAirQualityClient,
        airkorea: Optional[AirKoreaClient] = None,
    ) -> None:
        self._database = database
        self._google = google
        self._airkorea = airkorea

    @property
    def airkorea(self) -> Optional[AirKoreaClient]:
        return self._airkorea

    def station(self, station_name: str) -> List[Dict[str, Any]]:
        if self._airkorea is None:
            raise ConfigurationError("AirKorea client is not configured")
        return self._airkorea.station_realtime(station_name)

    def sido(self, sido_name: str) -> List[Dict[str, Any]]:
        if self._airkorea is None:
            raise ConfigurationError("AirKorea client is not configured")
        return self._airkorea.sido_realtime(sido_name)

    def current(self, latitude: float, longitude: float, *, clerk_user_id: Optional[str] = None) -> AirQualityReading:
        return process_air_quality(self._google.current_conditions(latitude, longitude, user_id=clerk_user_id))

    @staticmethod
    def cache_key(latitude: float, longitude: float, moment: datetime) -> str:
        stamp = ensure_aware(moment).astimezone(timezone.utc).isoformat(timespec="seconds")
        return f"google_hourly_{latitude}_{longitude}_{stamp}"

    def hourly_with_ttl(
        self,
        latitude: float,
        longitude: float,
        hours: int = 12,
        *,
        clerk_user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[AirQualityReading]:
        if not 1 <= hours <= MAX_FORECAST_HOURS:
            raise ValueError(f"hours must be between 1 and {MAX_FORECAST_HOURS}")

        current = ensure_aware(now or utc_now())
        cached = self._database.get_air_quality(latitude, longitude, current)
        if len(cached) >= hours:
            logger.debug("Air quality cache hit for %s,%s (%s rows)", latitude, longitude, len(cached))
            return cached[:hours]

        logger.debug("Air quality cache has %s/%s rows; calling API", len(cached), hours)
        try:
            payload = self._google.hourly_forecast(
                latitude, longitude, hours, now=current, user_id=clerk_user_id
            )
        except TownlyError:
            if cached:
                logger.warning("Air quality API failed; serving %s cached rows", len(cached))
                return cached
            raise

        readings = [process_air_quality(item, now=current) for item in payload]
        expires_at = current + CACHE_LIFETIME
        for reading in readings:
            self._database.upsert_air_quality(
                self.cache_key(latitude, longitude, reading.forecast_datetime),
                reading,
                latitude=latitude,
                longitude=longitude,
                expires_at=expires_at,
                clerk_user_id=clerk_user_id,
            )
        return readings[:hours]

    def daily_with_ttl(
        self,
        latitude: float,
        longitude: float,
        days: int = 4,
        *,
        clerk_user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[AirQualityReading]:
        """Average the hourly forecast per KST day."""

        if days < 1:
            raise ValueError("days must be at least 1")
        hours = min(days * 24, MAX_FORECAST_HOURS)
        hourly = self.hourly_with_ttl(latitude, longitude, hours, clerk_user_id=clerk_user_id, now=now)

        grouped: "OrderedDict[str, List[AirQualityReading]]" = OrderedDict()
        for reading in hourly:
            grouped.setdefault(to_kst(reading.forecast_datetime).date().isoformat(), []).append(reading)

        daily: List[AirQualityReading] = []
        for day, readings in list(grouped.items())[:days]:
            first = to_kst(readings[0].forecast_datetime)
            daily.append(
                AirQualityReading(
                    forecast_datetime=first.replace(hour=0, minute=0, second=0, microsecond=0),
                    pm10=_average([item.pm10 for item in readings]),
                    pm25=_average([item.pm25 for item in readings]),
                    cai_kr=_average([item.cai_kr for item in readings]),
                    breezometer_aqi=_average([item.breezometer_aqi for item in readings]),
                    no2=_average([item.no2 for item in readings]),
                    o3=_average([item.o3 for item in readings]),
                    so2=_average([item.so2 for item in readings]),
                    co=_average([item.co for item in readings]),
                    raw={"daily_average": True, "date": day, "hourly_data_count": len(readings)},
                )
            )
        return daily

    def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        removed = self._database.delete_expired_air_quality(ensure_aware(now or utc_now()))
        logger.info("Removed %s expired air quality rows", removed)
        return removed

    def collect_for_all_users(self, now: Optional[datetime] = None, *, force: bool = False) -> Dict[str, Any]:
        """Fetch a 90-hour forecast for every saved user location with coordinates."""

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
        for location in self._database.list_user_locations():
            if location.latitude is None or location.longitude is None:
                continue
            entry: Dict[str, Any] = {"clerk_user_id": location.clerk_user_id, "location": location.location_name}
            try:
                readings = self.hourly_with_ttl(
                    location.latitude,
                    location.longitude,
                    COLLECTION_FORECAST_HOURS,
                    clerk_user_id=location.clerk_user_id,
                    now=current,
                )
            except TownlyError as exc:
                logger.warning("Air quality collection failed for %s: %s", location.clerk_user_id, exc)
                entry.update({"success": False, "error": str(exc)})
            else:
                entry.update({"success": True, "hourly_count": len(readings)})
            results.append(entry)

        succeeded = sum(1 for entry in results if entry["success"])
        return {
            "skipped": False,
            "processed": len(results),
            "succeeded": succeeded,
            "failed": len(results) - succeeded,
            "results": results,
        }


__all__ = [
    "AIRKOREA_BASE_URL",
    "AirKoreaClient",
    "AirQualityService",
    "GOOGLE_AIR_QUALITY_BASE_URL",
    "GoogleAirQualityClient",
    "process_air_quality",
]
