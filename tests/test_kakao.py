from __future__ import annotations

import json
from datetime import datetime, timezone

import httpx
import pytest

from townly.chatbot import ChatbotResponse, WeatherLookup
from townly.kakao import (
    DEFAULT_QUICK_REPLIES,
    KakaoBusinessClient,
    SkillRequest,
    error_response,
    quick_replies_for,
    simple_text,
    weather_icon_url,
    weather_skill_response,
)
from townly.weather import parse_hourly

from stubs import SEOUL_KEY, ProviderStub, accuweather_hourly

NOW = datetime(2025, 3, 1, 6, 0, tzinfo=timezone.utc)

SKILL_PAYLOAD = {
    "intent": {"id": "intent-1", "name": "날씨"},
    "userRequest": {
        "timezone": "Asia/Seoul",
        "params": {"ignoreMe": "true"},
        "block": {"id": "block-1", "name": "날씨 블록"},
        "utterance": "오늘 날씨 어때?",
        "lang": "ko",
        "user": {"id": "kakao-user-1", "type": "botUserKey", "properties": {"location": "부산"}},
    },
    "bot": {"id": "bot-1", "name": "Townly"},
    "action": {
        "id": "action-1",
        "name": "weather",
        "params": {},
        "detailParams": {},
        "clientExtra": {},
    },
}


def test_skill_request_parses_aliases() -> None:
    request = SkillRequest.model_validate(SKILL_PAYLOAD)
    assert request.utterance == "오늘 날씨 어때?"
    assert request.user_id == "kakao-user-1"
    assert request.user_location == "부산"
    assert request.action.detail_params == {}


def test_simple_text_shapes_a_version_two_response() -> None:
    body = simple_text("안녕하세요", DEFAULT_QUICK_REPLIES[:1])
    assert body == {
        "version": "2.0",
        "template": {
            "outputs": [{"simpleText": {"text": "안녕하세요"}}],
            "quickReplies": [{"label": "오늘 날씨", "action": "message", "messageText": "오늘 날씨 어때?"}],
        },
    }
    assert error_response("오류")["template"]["quickReplies"][0]["label"] == "다시 시도"


def test_weather_icon_url_pads_icon_numbers() -> None:
    assert weather_icon_url(7).endswith("/07-s.png")
    assert weather_icon_url(None).endswith("/01-s.png")


def test_current_weather_response_adds_card_and_location_context() -> None:
    forecast = parse_hourly(accuweather_hourly(NOW, 1), location_name="서울", location_key=SEOUL_KEY)[0]
    response = ChatbotResponse(
        success=True,
        message="📍 서울의 날씨 정보입니다",
        confidence=0.8,
        data=WeatherLookup("current", "서울", [forecast], "database"),
    )
    body = weather_skill_response(response)

    outputs = body["template"]["outputs"]
    assert outputs[0] == {"simpleText": {"text": "📍 서울의 날씨 정보입니다"}}
    card = outputs[1]["basicCard"]
    assert card["title"] == "서울 현재 날씨"
    assert card["description"].startswith("온도: 10°C\n날씨: 맑음")
    assert card["buttons"][0]["messageText"] == "서울 주간 날씨 예보"
    assert body["context"]["values"][0]["params"] == {"location": "서울"}

    labels = [reply["label"] for reply in body["template"]["quickReplies"]]
    assert labels == ["오늘 날씨", "내일 날씨", "시간별 날씨", "옷차림 추천"]


def test_quick_replies_prefer_related_questions() -> None:
    response = ChatbotResponse(
        success=True,
        message="...",
        confidence=0.9,
        related_questions=["우산 가져갈까?", "내일 서울 날씨는 어떻게 되나요?"],
    )
    replies = quick_replies_for(response)
    assert [reply["label"] for reply in replies] == ["우산 가져갈까?", "내일 서울 날씨는 ...", "오늘 날씨"]
    assert replies[1]["messageText"] == "내일 서울 날씨는 어떻게 되나요?"

    failed = ChatbotResponse(success=False, message="...", confidence=0.1)
    assert quick_replies_for(failed) == list(DEFAULT_QUICK_REPLIES)


def test_client_without_admin_key_simulates() -> None:
    stub = ProviderStub(NOW)
    client = KakaoBusinessClient(None, http_client=stub.client())
    assert client.simulated is True

    result = client.send_broadcast("안녕하세요", ["a", "b"])
    assert result.success is True
    assert result.sent_count == 2
    assert result.cost == 0
    assert result.message_id.startswith("sim_")
    assert client.wallet_balance().balance == 999999
    assert stub.requests == []


def test_broadcast_posts_to_kakao_business() -> None:
    stub = ProviderStub(NOW)
    client = KakaoBusinessClient("admin-key", channel_id="_townly", http_client=stub.client())

    result = client.send_broadcast("오늘은 맑아요", ["kakao-user-1"])
    assert result.to_dict() == {
        "success": True,
        "message_id": "kakao-1",
        "sent_count": 1,
        "failed_count": 0,
        "cost": 15,
        "error": None,
    }
    request = stub.requests[0]
    assert request.url.path == "/v1/messages/broadcast"
    assert request.headers["Authorization"] == "Bearer admin-key"
    assert json.loads(request.content)["channel_id"] == "_townly"


def test_failed_broadcast_is_reported_not_raised() -> None:
    stub = ProviderStub(NOW)
    stub.override("api.kakaobusiness.com", "/v1/messages/broadcast", lambda request: httpx.Response(500, text="down"))
    result = KakaoBusinessClient("admin-key", http_client=stub.client()).send_broadcast("hi", ["a", "b", "c"])
    assert result.success is False
    assert result.failed_count == 3
    assert "HTTP 500" in result.error


def test_alimtalk_requires_template_and_estimates_cost() -> None:
    client = KakaoBusinessClient(None)
    with pytest.raises(ValueError):
        client.send_alimtalk("", "본문", ["01012345678"])
    assert client.send_alimtalk("weather_daily", "본문", ["a", "b"]).sent_count == 2
    assert KakaoBusinessClient.estimate_cost("alimtalk", 3) == 24
    assert KakaoBusinessClient.estimate_cost("broadcast", 2) == 30
