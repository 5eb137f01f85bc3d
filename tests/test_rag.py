from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List

import openai
import pytest
from tenacity import wait_none

from townly.chatbot import NOT_UNDERSTOOD_MESSAGE, WeatherChatbot
from townly.database import Database
from townly.embeddings import (
    EmbeddingClient,
    VectorStore,
    WeatherIndexer,
    cosine_similarity,
    daily_to_text,
    hourly_to_text,
)
from townly.errors import ConfigurationError, ExternalAPIError
from townly.rag import (
    GREETING_TEXT,
    LEARNING_NOTE,
    RESTAURANT_FALLBACK,
    RESTAURANT_SYSTEM_PROMPT,
    TRUNCATION_NOTE,
    TownlyResponder,
    WeatherRAG,
    detect_message_type,
    is_weather_question,
    trim_reply,
)
from townly.tracking import ApiTracker
from townly.weather import AccuWeatherClient, WeatherService, parse_daily, parse_hourly

from stubs import SEOUL_KEY, accuweather_daily, accuweather_hourly

NOW = datetime(2025, 3, 1, 6, 0, tzinfo=timezone.utc)


class FakeOpenAI:
    """Just enough of ``openai.OpenAI`` for embeddings and chat completions."""

    def __init__(self, *, reply: str = "서울은 맑아요 ☀️", embed_failures: int = 0, chat_error: bool = False) -> None:
        self.reply = reply
        self.embed_failures = embed_failures
        self.chat_error = chat_error
        self.embed_calls = 0
        self.chat_calls: List[Dict[str, Any]] = []
        self.embeddings = SimpleNamespace(create=self._embed)
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._chat))

    @staticmethod
    def vector_for(text: str) -> List[float]:
        return [0.0, 1.0] if "부산" in text else [1.0, 0.0]

    def _embed(self, *, model: str, input: List[str], encoding_format: str) -> SimpleNamespace:
        self.embed_calls += 1
        if self.embed_failures:
            self.embed_failures -= 1
            raise openai.OpenAIError("temporary failure")
        return SimpleNamespace(data=[SimpleNamespace(embedding=self.vector_for(text)) for text in input])

    def _chat(self, **kwargs: Any) -> SimpleNamespace:
        self.chat_calls.append(kwargs)
        if self.chat_error:
            raise openai.OpenAIError("chat unavailable")
        message = SimpleNamespace(content=f"  {self.reply}  ")
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


@pytest.fixture()
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "townly.sqlite3")
    db.initialize()
    return db


@pytest.fixture()
def chatbot(database: Database) -> WeatherChatbot:
    return WeatherChatbot(WeatherService(database, AccuWeatherClient(None)))


def _embeddings(client: FakeOpenAI, **kwargs: Any) -> EmbeddingClient:
    return EmbeddingClient(client, wait=wait_none(), **kwargs)


def _index_sample(database: Database, client: FakeOpenAI) -> VectorStore:
    store = VectorStore(database)
    indexer = WeatherIndexer(_embeddings(client), store)
    hourly = parse_hourly(accuweather_hourly(NOW, 3), location_name="서울", location_key=SEOUL_KEY)
    _, daily = parse_daily(accuweather_daily(NOW, 2), location_name="부산", location_key="47", days=2)
    assert indexer.index_hourly(hourly, "user_1") == 3
    assert indexer.index_daily(daily, "user_1") == 2
    return store


def test_cosine_similarity_handles_degenerate_vectors() -> None:
    assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
    assert cosine_similarity([0, 0], [1, 0]) == 0.0
    assert cosine_similarity([1, 0, 0], [1, 0]) == 0.0


def test_forecast_text_rendering() -> None:
    hourly = parse_hourly(accuweather_hourly(NOW, 1), location_name="서울", location_key=SEOUL_KEY)[0]
    text = hourly_to_text(hourly)
    assert text.startswith("서울의 2025-03-01 16시 시간별 날씨 예보: 예상 온도 10도, 날씨 맑음")
    assert "강수확률 10%" in text

    _, daily = parse_daily(accuweather_daily(NOW, 1), location_name="서울", location_key=SEOUL_KEY, days=1)
    text = daily_to_text(daily[0])
    assert "토요일 일별 날씨 예보: 최고기온 12도, 최저기온 2도" in text
    assert "밤 날씨: 맑음" in text


def test_embed_batch_retries_transient_failures(database: Database) -> None:
    client = FakeOpenAI(embed_failures=2)
    tracker = ApiTracker(database)
    vectors = _embeddings(client, tracker=tracker).embed_batch(["서울 날씨", "부산 날씨"])

    assert vectors == [[1.0, 0.0], [0.0, 1.0]]
    assert client.embed_calls == 3
    assert tracker.daily_call_count("openai") == 1


def test_embed_batch_gives_up_after_attempts() -> None:
    client = FakeOpenAI(embed_failures=5)
    with pytest.raises(ExternalAPIError):
        _embeddings(client, attempts=2).embed("서울 날씨")
    assert client.embed_calls == 2


def test_embedding_client_requires_configuration() -> None:
    with pytest.raises(ConfigurationError):
        EmbeddingClient(None).embed("서울 날씨")


def test_vector_store_ranks_by_similarity(database: Database) -> None:
    client = FakeOpenAI()
    store = _index_sample(database, client)

    results = store.search("user_1", FakeOpenAI.vector_for("부산 날씨"), limit=2)
    assert [result.content_type for result in results] == ["daily", "daily"]
    assert results[0].similarity == pytest.approx(1.0)
    assert results[0].location_name == "부산"
    assert store.search("someone_else", [1.0, 0.0]) == []


def test_rag_answers_from_embedded_context(database: Database, chatbot: WeatherChatbot) -> None:
    client = FakeOpenAI()
    store = _index_sample(database, client)
    rag = WeatherRAG(chatbot, embeddings=_embeddings(client), store=store, client=client)

    answer = rag.answer("서울 날씨 알려줘", user_id="user_1", now=NOW)
    assert answer.source == "rag"
    assert answer.text == "서울은 맑아요 ☀️"
    assert answer.context_count == 5
    assert answer.confidence == 1.0
    prompt = client.chat_calls[0]["messages"][1]["content"]
    assert prompt.startswith("=== 관련 날씨 정보 ===")
    assert "=== 사용자 질문 ===\n서울 날씨 알려줘" in prompt


def test_rag_without_context_falls_back_with_learning_note(database: Database, chatbot: WeatherChatbot) -> None:
    client = FakeOpenAI()
    rag = WeatherRAG(chatbot, embeddings=_embeddings(client), store=VectorStore(database), client=client)

    answer = rag.answer("우산 가져갈까?", user_id="user_1", now=NOW)
    assert answer.source == "chatbot"
    assert answer.text.endswith(LEARNING_NOTE)
    assert client.chat_calls == []


def test_rag_completion_failure_falls_back_to_chatbot(database: Database, chatbot: WeatherChatbot) -> None:
    client = FakeOpenAI(chat_error=True)
    store = _index_sample(database, client)
    rag = WeatherRAG(chatbot, embeddings=_embeddings(client), store=store, client=client)

    answer = rag.answer("hello there", user_id="user_1", now=NOW)
    assert answer.source == "chatbot"
    assert answer.text == NOT_UNDERSTOOD_MESSAGE


def test_disabled_rag_uses_chatbot(chatbot: WeatherChatbot) -> None:
    rag = WeatherRAG(chatbot)
    assert rag.enabled is False
    answer = rag.answer("hello there", now=NOW)
    assert answer.source == "chatbot"
    assert LEARNING_NOTE not in answer.text


def test_responder_routes_messages(chatbot: WeatherChatbot) -> None:
    offline = TownlyResponder(WeatherRAG(chatbot))
    assert offline.respond(" ").text == GREETING_TEXT
    assert offline.respond("강남 맛집 알려줘").text == RESTAURANT_FALLBACK
    assert offline.respond("강남 맛집 알려줘").type == "fallback"
    assert offline.respond("우산 가져갈까? 비 와?", now=NOW).type == "weather_chatbot"

    client = FakeOpenAI(reply="강남역 근처 맛집을 추천해 드릴게요!")
    online = TownlyResponder(WeatherRAG(chatbot), client=client)
    reply = online.respond("강남 맛집 알려줘")
    assert reply.type == "chatgpt"
    assert reply.text == "강남역 근처 맛집을 추천해 드릴게요!"
    assert client.chat_calls[0]["messages"][0]["content"] == RESTAURANT_SYSTEM_PROMPT


@pytest.mark.parametrize(
    "message",
    ["비빔밥 맛집 추천해줘", "서비스 이용 방법 알려줘", "눈썹 문신 잘하는 곳"],
)
def test_single_syllable_keywords_do_not_make_weather_questions(chatbot: WeatherChatbot, message: str) -> None:
    assert is_weather_question(message) is False
    reply = TownlyResponder(WeatherRAG(chatbot)).respond(message, now=NOW)
    assert reply.type == "fallback"


def test_restaurant_question_with_rain_syllable_gets_restaurant_fallback(chatbot: WeatherChatbot) -> None:
    reply = TownlyResponder(WeatherRAG(chatbot)).respond("비빔밥 맛집 추천해줘", now=NOW)
    assert reply.text == RESTAURANT_FALLBACK


def test_trim_reply_cuts_at_sentence_end() -> None:
    short = "짧은 답변입니다."
    assert trim_reply(short) == short

    sentences = "가" * 599 + "." + "나" * 600
    trimmed = trim_reply(sentences)
    assert trimmed == "가" * 599 + "." + f"\n\n{TRUNCATION_NOTE}"

    no_period = "다" * 1200
    assert trim_reply(no_period) == "다" * 950 + f"...\n\n{TRUNCATION_NOTE}"


@pytest.mark.parametrize(
    ("utterance", "params", "expected"),
    [
        ("[이미지]", None, "image"),
        ("사진", {"imageUrl": "https://example.com/a.png"}, "image"),
        ("https://townly.kr 열어줘", None, "url"),
        ("010-1234-5678로 연락주세요", None, "phone"),
        ("me@example.com", None, "email"),
        ("안녕하세요", None, "text"),
    ],
)
def test_detect_message_type(utterance: str, params: Any, expected: str) -> None:
    assert detect_message_type(utterance, params) == expected
