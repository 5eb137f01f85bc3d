from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import httpx
import pytest

from townly.chatbot import FAILURE_MESSAGE, NOT_UNDERSTOOD_MESSAGE, WeatherChatbot
from townly.database import Database
from townly.weather import AccuWeatherClient, WeatherService

from stubs import ProviderStub

# 15:00 KST
NOW = datetime(2025, 3, 1, 6, 0, tzinfo=timezone.utc)


@pytest.fixture()
def stub() -> ProviderStub:
    return ProviderStub(NOW)


@pytest.fixture()
def weather(tmp_path: Path, stub: ProviderStub) -> WeatherService:
    database = Database(tmp_path / "townly.sqlite3")
    database.initialize()
    return WeatherService(database, AccuWeatherClient("test-key", http_client=stub.client()))


def test_current_weather_falls_back_to_api_on_empty_cache(weather: WeatherService) -> None:
    reply = WeatherChatbot(weather).process("오늘 날씨", now=NOW)

    assert reply.success is True
    assert reply.data is not None
    assert reply.data.source == "api"
    assert reply.message.startswith("📍 서울의 날씨 정보입니다:")
    assert "🌡️ 온도: 10°C" in reply.message
    assert reply.message.endswith("🌐 실시간 데이터")


def test_hourly_question_reads_the_cache(weather: WeatherService, stub: ProviderStub) -> None:
    weather.hourly_weather(location="서울", now=NOW)
    calls_before = len(stub.requests)

    reply = WeatherChatbot(weather).process("서울 시간별 날씨", now=NOW)
    assert reply.data.kind == "hourly"
    assert reply.data.source == "database"
    assert "⏰ 시간별 날씨 (12시간):" in reply.message
    assert "16시: 10°C, 맑음 (강수 10%)" in reply.message
    assert len(stub.requests) == calls_before


def test_tomorrow_question_uses_the_daily_row(weather: WeatherService) -> None:
    weather.daily_weather(location="서울", now=NOW)

    reply = WeatherChatbot(weather).process("내일 날씨 어떨까?", now=NOW)
    assert reply.data.kind == "specific_day"
    assert reply.data.to_dict()["date"] == "2025-03-02"
    assert "내일 (3/2 일): 3°C ~ 13°C, 대체로 맑음 (강수 20%)" in reply.message
    assert "🌙 밤: 맑음" in reply.message


def test_user_location_is_used_when_message_has_none(weather: WeatherService, stub: ProviderStub) -> None:
    reply = WeatherChatbot(weather).process("날씨", user_location="제주", now=NOW)
    assert reply.data.location == "제주"
    search = [req for req in stub.requests if req.url.path == "/locations/v1/cities/search"]
    assert search[0].url.params["q"] == "제주"


def test_faq_only_question_returns_faq_answer(weather: WeatherService) -> None:
    reply = WeatherChatbot(weather).process("우산 가져갈까?", now=NOW)
    assert reply.success is True
    assert reply.faq is not None and reply.faq.id == "umbrella-advice"
    assert reply.message.startswith("강수 확률을 확인해서 우산 필요 여부를 알려드리겠습니다.")
    assert reply.to_dict()["faq_id"] == "umbrella-advice"


def test_unrelated_message_is_not_understood(weather: WeatherService) -> None:
    reply = WeatherChatbot(weather).process("hello there", now=NOW)
    assert reply.success is False
    assert reply.message == NOT_UNDERSTOOD_MESSAGE


def test_provider_failure_returns_friendly_message(weather: WeatherService, stub: ProviderStub) -> None:
    stub.override(
        "dataservice.accuweather.com",
        "/locations/v1/cities/search",
        lambda request: httpx.Response(503, text="unavailable"),
    )
    reply = WeatherChatbot(weather).process("부산 날씨", now=NOW)
    assert reply.success is False
    assert reply.message == FAILURE_MESSAGE
    assert reply.confidence == 0.0
