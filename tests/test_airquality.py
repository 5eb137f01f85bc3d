from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest

from townly.airquality import AirKoreaClient, AirQualityService, GoogleAirQualityClient, process_air_quality
from townly.database import Database
from townly.errors import ConfigurationError, ExternalAPIError

from stubs import ProviderStub, google_hourly_air

NOW = datetime(2025, 3, 1, 3, 0, tzinfo=timezone.utc)
LAT, LON = 37.5665, 126.978


@pytest.fixture()
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "townly.sqlite3")
    db.initialize()
    return db


@pytest.fixture()
def stub() -> ProviderStub:
    return ProviderStub(NOW)


def _service(database: Database, stub: ProviderStub) -> AirQualityService:
    client = stub.client()
    return AirQualityService(
        database,
        GoogleAirQualityClient("google-key", http_client=client),
        AirKoreaClient("airkorea-key", http_client=client),
    )


def test_process_air_quality_extracts_pollutants_and_indexes() -> None:
    record = google_hourly_air(NOW, 1)["hourlyForecasts"][0]
    reading = process_air_quality(record)

    assert reading.forecast_datetime == NOW
    assert reading.pm10 == 30
    assert reading.pm25 == 15
    assert reading.co == 300
    assert reading.cai_kr == 50
    assert reading.breezometer_aqi == 60
    assert reading.health_recommendations["sensitive"] == "무리하지 마세요."


def test_hourly_forecast_is_cached_for_an_hour(database: Database, stub: ProviderStub) -> None:
    service = _service(database, stub)

    first = service.hourly_with_ttl(LAT, LON, 12, now=NOW)
    assert len(first) == 12
    second = service.hourly_with_ttl(LAT, LON, 6, now=NOW + timedelta(minutes=10))
    assert len(second) == 6
    assert len(stub.paths("airquality.googleapis.com")) == 1

    service.hourly_with_ttl(LAT, LON, 6, now=NOW + timedelta(hours=2))
    assert len(stub.paths("airquality.googleapis.com")) == 2


def test_hourly_forecast_serves_stale_rows_when_api_fails(database: Database, stub: ProviderStub) -> None:
    service = _service(database, stub)
    service.hourly_with_ttl(LAT, LON, 4, now=NOW)

    stub.override(
        "airquality.googleapis.com",
        "/v1/forecast:lookup",
        lambda request: httpx.Response(500, json={"error": "backend"}),
    )
    readings = service.hourly_with_ttl(LAT, LON, 12, now=NOW + timedelta(minutes=5))
    assert len(readings) == 4


def test_hourly_forecast_validates_range(database: Database, stub: ProviderStub) -> None:
    service = _service(database, stub)
    with pytest.raises(ValueError):
        service.hourly_with_ttl(LAT, LON, 0, now=NOW)
    with pytest.raises(ValueError):
        service.hourly_with_ttl(LAT, LON, 97, now=NOW)


def test_daily_forecast_averages_per_kst_day(database: Database, stub: ProviderStub) -> None:
    service = _service(database, stub)
    daily = service.daily_with_ttl(LAT, LON, 2, now=NOW)

    assert len(daily) == 2
    # 12:00 KST start leaves 12 readings on the first day
    assert daily[0].raw == {"daily_average": True, "date": "2025-03-01", "hourly_data_count": 12}
    assert daily[1].raw["date"] == "2025-03-02"
    assert daily[0].pm25 == 15
    assert daily[0].forecast_datetime.hour == 0


def test_airkorea_station_lookup(database: Database, stub: ProviderStub) -> None:
    items = _service(database, stub).station("종로구")
    assert items[0]["pm10Value"] == "32"
    request = stub.requests[-1]
    assert request.url.params["stationName"] == "종로구"
    assert request.url.params["returnType"] == "json"


def test_missing_google_key_raises(database: Database, stub: ProviderStub) -> None:
    service = AirQualityService(database, GoogleAirQualityClient(None, http_client=stub.client()))
    with pytest.raises(ConfigurationError):
        service.current(LAT, LON)
    with pytest.raises(ConfigurationError):
        service.station("종로구")


def test_google_http_error_is_external_api_error(database: Database, stub: ProviderStub) -> None:
    stub.override(
        "airquality.googleapis.com",
        "/v1/currentConditions:lookup",
        lambda request: httpx.Response(403, json={"error": "denied"}),
    )
    with pytest.raises(ExternalAPIError) as excinfo:
        _service(database, stub).current(LAT, LON)
    assert excinfo.value.http_status == 403


def test_collect_for_all_users_skips_locations_without_coordinates(database: Database, stub: ProviderStub) -> None:
    database.set_user_location("with_coords", location_name="서울", latitude=LAT, longitude=LON)
    database.set_user_location("name_only", location_name="부산")
    service = _service(database, stub)

    # 12:00 KST
    result = service.collect_for_all_users(NOW)
    assert result["processed"] == 1
    assert result["results"][0]["clerk_user_id"] == "with_coords"
    assert result["results"][0]["hourly_count"] == 90

    assert service.cleanup_expired(NOW + timedelta(hours=2)) == 90
