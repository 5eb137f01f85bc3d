from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest

from townly.database import Database
from townly.errors import ConfigurationError, ExternalAPIError, RateLimitError
from townly.ratelimit import RateLimiter
from townly.tracking import ApiTracker
from townly.weather import AccuWeatherClient, WeatherService, parse_daily, parse_hourly

from stubs import SEOUL_KEY, ProviderStub, accuweather_daily, accuweather_hourly

# 15:00 KST
NOW = datetime(2025, 3, 1, 6, 0, tzinfo=timezone.utc)


@pytest.fixture()
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "townly.sqlite3")
    db.initialize()
    return db


@pytest.fixture()
def stub() -> ProviderStub:
    return ProviderStub(NOW)


def _service(database: Database, stub: ProviderStub, **client_kwargs) -> WeatherService:
    client = AccuWeatherClient("test-key", http_client=stub.client(), **client_kwargs)
    return WeatherService(database, client)


def test_parse_hourly_converts_to_kst_and_rounds_values() -> None:
    forecasts = parse_hourly(accuweather_hourly(NOW, 2), location_name="서울", location_key=SEOUL_KEY)
    assert [item.forecast_hour for item in forecasts] == [16, 17]
    assert forecasts[0].temperature == 10.0
    assert forecasts[0].wind_speed == 7.0
    assert forecasts[0].rain_probability == 10


def test_parse_daily_uses_highest_probability_and_korean_weekday() -> None:
    headline, forecasts = parse_daily(
        accuweather_daily(NOW, 5), location_name="서울", location_key=SEOUL_KEY, days=3
    )
    assert headline["text"] == "맑은 날씨가 이어집니다"
    assert len(forecasts) == 3
    first = forecasts[0]
    assert first.forecast_date == "2025-03-01"
    assert first.day_of_week == "토"
    assert (first.low_temp, first.high_temp, first.temperature) == (2, 12, 7)
    assert first.precipitation_probability == 20
    assert first.night_weather["conditions"] == "맑음"


def test_hourly_weather_is_served_from_cache_on_second_call(database: Database, stub: ProviderStub) -> None:
    service = _service(database, stub)

    first = service.hourly_weather(location="서울", now=NOW)
    assert first.from_cache is False
    assert first.location_key == SEOUL_KEY
    assert len(first.forecasts) == 12

    second = service.hourly_weather(location="서울", now=NOW + timedelta(minutes=5))
    assert second.from_cache is True
    assert [item.temperature for item in second.forecasts] == [item.temperature for item in first.forecasts]

    hourly_calls = [path for path in stub.paths() if "/hourly/" in path]
    location_calls = [path for path in stub.paths() if path.startswith("/locations/")]
    assert len(hourly_calls) == 1
    assert len(location_calls) == 1


def test_user_scoped_cache_keys_do_not_share_rows(database: Database, stub: ProviderStub) -> None:
    service = _service(database, stub)
    service.hourly_weather(location="서울", now=NOW)
    scoped = service.hourly_weather(location="서울", clerk_user_id="user_1", now=NOW)
    assert scoped.from_cache is False
    assert all(item.clerk_user_id == "user_1" for item in scoped.forecasts)


def test_daily_weather_caches_headline(database: Database, stub: ProviderStub) -> None:
    service = _service(database, stub)
    fresh = service.daily_weather(location="서울", days=5, now=NOW)
    cached = service.daily_weather(location="서울", days=5, now=NOW + timedelta(minutes=1))

    assert fresh.from_cache is False
    assert cached.from_cache is True
    assert cached.headline["text"] == "맑은 날씨가 이어집니다"
    assert len(cached.forecasts) == 5


def test_daily_weather_rejects_unsupported_length(database: Database, stub: ProviderStub) -> None:
    with pytest.raises(ValueError):
        _service(database, stub).daily_weather(location="서울", days=3, now=NOW)


def test_ten_day_forecast_falls_back_to_five_days_when_forbidden(database: Database, stub: ProviderStub) -> None:
    stub.override(
        "dataservice.accuweather.com",
        f"/forecasts/v1/daily/10day/{SEOUL_KEY}",
        lambda request: httpx.Response(403, json={"Message": "Unauthorized"}),
    )
    result = _service(database, stub).daily_weather(location="서울", days=10, now=NOW)
    assert len(result.forecasts) == 5
    assert f"/forecasts/v1/daily/5day/{SEOUL_KEY}" in stub.paths()


def test_http_errors_map_to_external_api_error_and_are_tracked(database: Database, stub: ProviderStub) -> None:
    stub.override(
        "dataservice.accuweather.com",
        "/locations/v1/cities/search",
        lambda request: httpx.Response(401, json={"Message": "Api Authorization failed"}),
    )
    tracker = ApiTracker(database)
    service = _service(database, stub, tracker=tracker)

    with pytest.raises(ExternalAPIError) as excinfo:
        service.hourly_weather(location="서울", now=NOW)
    assert excinfo.value.http_status == 401
    assert excinfo.value.status_code == 502
    assert "API 키" in str(excinfo.value)
    assert tracker.daily_call_count("accuweather") == 1
    usage = tracker.check_limit("accuweather")
    assert usage["provider"] == "accuweather"
    assert usage["current"] == 1


def test_missing_api_key_raises_configuration_error(database: Database, stub: ProviderStub) -> None:
    service = WeatherService(database, AccuWeatherClient(None, http_client=stub.client()))
    with pytest.raises(ConfigurationError):
        service.hourly_weather(location="서울", now=NOW)
    assert stub.requests == []


def test_rate_limiter_blocks_requests_before_they_are_sent(database: Database, stub: ProviderStub) -> None:
    limiter = RateLimiter(per_minute=1, per_hour=10, per_day=10)
    limiter.record_request()
    service = _service(database, stub, rate_limiter=limiter)

    with pytest.raises(RateLimitError) as excinfo:
        service.hourly_weather(location="부산", now=NOW)
    assert excinfo.value.retry_after > 0
    assert stub.requests == []


def test_cache_lookups_by_location_name(database: Database, stub: ProviderStub) -> None:
    service = _service(database, stub)
    service.hourly_weather(location="서울", now=NOW)
    service.daily_weather(location="서울", now=NOW)

    current = service.current_from_cache("서울", NOW)
    assert current is not None
    assert current.forecast_hour == 16

    upcoming = service.hourly_from_cache("서울", NOW, limit=6)
    assert [item.forecast_hour for item in upcoming] == [16, 17, 18, 19, 20, 21]

    days = service.daily_from_cache("서울", NOW)
    assert days[0].forecast_date == "2025-03-01"
    tomorrow = service.day_from_cache("서울", (NOW + timedelta(days=1)).date(), NOW)
    assert tomorrow is not None and tomorrow.high_temp == 13


def test_collect_for_all_users_only_runs_at_collection_hours(database: Database, stub: ProviderStub) -> None:
    database.set_user_location("user_1", location_name="서울")
    service = _service(database, stub)

    skipped = service.collect_for_all_users(NOW)
    assert skipped["skipped"] is True
    assert stub.requests == []

    # 18:00 KST
    collected = service.collect_for_all_users(NOW + timedelta(hours=3))
    assert collected["processed"] == 1
    assert collected["succeeded"] == 1
    assert collected["results"][0]["hourly_count"] == 12


def test_cleanup_expired_removes_stale_rows(database: Database, stub: ProviderStub) -> None:
    service = _service(database, stub)
    service.hourly_weather(location="서울", now=NOW)

    removed = service.cleanup_expired(NOW + timedelta(days=30))
    assert removed["hourly_weather_data"] == 12
    assert removed["weather_location_keys"] == 1
    assert service.cache_stats(NOW)["tables"]["hourly_weather_data"]["total"] == 0
