"""Retrieval-augmented answers over cached weather embeddings and the Townly persona."""
from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional, Sequence

import openai

from .chatbot import WeatherChatbot
from .embeddings import EmbeddingClient, SearchResult, VectorStore
from .errors import TownlyError
from .intent import detect_weather_query
from .tracking import ApiTracker

logger = logging.getLogger("townly.rag")

CHAT_MODEL = "gpt-4o-mini"
CHAT_TEMPERATURE = 0.3
CHAT_MAX_TOKENS = 800
MAX_REPLY_LENGTH = 1000

WEATHER_SYSTEM_PROMPT = """당신은 한국의 날씨 정보를 제공하는 전문적이고 친근한 AI 어시스턴트입니다.

주요 역할:
1. 제공된 날씨 데이터를 바탕으로 정확하고 유용한 정보를 제공합니다.
2. 사용자의 질문에 대해 구체적이고 실용적인 답변을 제공합니다.
3. 날씨에 따른 생활 조언(옷차림, 우산 필요성 등)을 포함합니다.
4. 한국어로 자연스럽고 친근하게 대화합니다.

응답 가이드라인:
- 간결하면서도 충분한 정보를 제공하세요
- 온도, 날씨 상태, 강수확률 등 핵심 정보를 포함하세요
- 불확실한 정보에 대해서는 정확히 명시하세요
- 이모지를 적절히 사용하여 친근함을 표현하세요"""

TOWNLY_SYSTEM_PROMPT = """당신은 "Townly"라는 하이퍼 로컬 정보 에이전트입니다.

지역 정보, 맛집, 편의시설 등에 대한 질문이면 구체적으로 도움을 주고,
그 외의 질문이면 Townly의 주요 기능을 안내하며 지역 관련 질문을 유도해주세요.

한국어로 응답하고, 이모지를 적절히 사용하여 친근감을 표현하세요."""

RESTAURANT_SYSTEM_PROMPT = """당신은 "Townly" 맛집 전문 AI입니다. 사용자가 맛집 관련 질문을 했습니다.

- 구체적인 지역명이 있으면 해당 지역의 맛집 3~4곳을 이모지와 함께 목록으로 추천하세요
- 지역명이 없으면 "어떤 지역의 맛집을 찾으시나요? 🤔"라고 질문하세요
- 정확한 정보가 없으면 "현지인 맛집", "가성비 좋은" 등 일반적 표현을 사용하세요"""

TRANSIT_SYSTEM_PROMPT = """당신은 "Townly" 교통 정보 AI입니다. 사용자가 교통 관련 질문을 했습니다.

출발지와 목적지가 명확하면 지하철, 버스, 도보 등 교통 방법과 대략적인 소요시간을 안내하고,
정보가 부족하면 구체적인 위치를 질문하세요. 실시간 정보는 제공할 수 없음을 안내하세요."""

GREETING_TEXT = """안녕하세요! 🏘️ Townly입니다.

무엇을 도와드릴까요? 구체적인 질문을 해주시면 더 정확한 답변을 드릴 수 있어요! 😊"""

RESTAURANT_FALLBACK = """🍽️ 맛집 정보를 찾고 계시는군요!

더 정확한 추천을 위해 지역을 알려주세요:
• "강남역 맛집 추천해줘"
• "홍대 카페 어디가 좋을까?"

어떤 지역의 맛집을 찾으시나요? 😊"""

HELLO_FALLBACK = """안녕하세요! 🏘️ Townly입니다.

저는 하이퍼 로컬 정보 에이전트로, 다음과 같은 도움을 드릴 수 있어요:

🍽️ 맛집 추천 - 지역별 맛집과 카페 정보
📍 동네 정보 - 편의시설, 교통, 주변 정보
🌤️ 생활 정보 - 날씨, 미세먼지 등

구체적인 질문을 해주시면 더 정확한 정보를 드릴 수 있어요! 😊"""

DEFAULT_FALLBACK = """안녕하세요! 🏘️ Townly입니다.

현재 AI 서비스 처리 중 일시적인 문제가 발생했습니다.

다음과 같은 도움을 드릴 수 있어요:
• 맛집이나 카페 추천
• 주변 편의시설 정보
• 날씨와 미세먼지 정보

궁금한 것이 있으시면 언제든 물어보세요! 😊"""

LEARNING_NOTE = "💡 더 정확한 정보를 위해 날씨 데이터를 학습 중입니다."
TRUNCATION_NOTE = "더 자세한 정보가 필요하시면 추가로 질문해주세요! 😊"


def complete_chat(
    client: Any,
    *,
    system_prompt: str,
    user_prompt: str,
    model: str = CHAT_MODEL,
    temperature: float = CHAT_TEMPERATURE,
    max_tokens: int = CHAT_MAX_TOKENS,
    tracker: Optional[ApiTracker] = None,
    user_id: Optional[str] = None,
) -> str:
    """Run one chat completion and return the stripped reply text.

    OpenAI failures are re-raised as :class:`openai.OpenAIError`; an empty
    reply raises ``ValueError``.
    """

    started = time.perf_counter()
    error: Optional[str] = None
    try:
        completion = client.chat.completions.create(
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        )
    except openai.OpenAIError as exc:
        error = str(exc)
        raise
    finally:
        if tracker is not None:
            tracker.record_call(
                "openai",
                "/v1/chat/completions",
                method="POST",
                response_time_ms=int((time.perf_counter() - started) * 1000),
                is_successful=error is None,
                user_id=user_id,
                request_params={"model": model},
                error_message=error,
            )

    content = completion.choices[0].message.content if completion.choices else None
    if not content or not content.strip():
        raise ValueError("Empty chat completion")
    return content.strip()


def build_context(results: Sequence[SearchResult]) -> str:
    context = "=== 관련 날씨 정보 ===\n\n"
    for index, result in enumerate(results, start=1):
        context += f"{index}. {result.content}\n"
        context += f"   위치: {result.location_name}\n"
        context += f"   유형: {result.content_type}\n"
        if result.forecast_date:
            context += f"   날짜: {result.forecast_date}\n"
        context += f"   유사도: {result.similarity * 100:.1f}%\n\n"
    return context


def build_prompt(message: str, context: str) -> str:
    return (
        f"{context}\n=== 사용자 질문 ===\n{message}\n\n"
        "위의 날씨 정보를 바탕으로 사용자의 질문에 정확하고 도움이 되는 답변을 제공해 주세요. "
        "날씨에 따른 실용적인 조언도 포함해 주세요."
    )


@dataclass(frozen=True)
class RAGAnswer:
    text: str
    source: str
    confidence: float
    context_count: int = 0


class WeatherRAG:
    """Answer weather questions from the user's embedded forecasts, or the chatbot."""

    def __init__(
        self,
        chatbot: WeatherChatbot,
        *,
        embeddings: Optional[EmbeddingClient] = None,
        store: Optional[VectorStore] = None,
        client: Any = None,
        tracker: Optional[ApiTracker] = None,
        model: str = CHAT_MODEL,
    ) -> None:
        self._chatbot = chatbot
        self._embeddings = embeddings
        self._store = store
        self._client = client
        self._tracker = tracker
        self._model = model

    @property
    def chatbot(self) -> WeatherChatbot:
        return self._chatbot

    @property
    def enabled(self) -> bool:
        return (
            self._client is not None
            and self._store is not None
            and self._embeddings is not None
            and self._embeddings.configured
        )

    def answer(
        self,
        message: str,
        *,
        user_id: Optional[str] = None,
        location: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RAGAnswer:
        if not self.enabled:
            return self._fallback(message, user_id=user_id, location=location, now=now, learning=False)

        try:
            query = self._embeddings.embed(message)
        except TownlyError as exc:
            logger.warning("Query embedding failed, using the chatbot: %s", exc)
            return self._fallback(message, user_id=user_id, location=location, now=now, learning=False)

        results = self._store.search(user_id, query, limit=5)
        if not results:
            return self._fallback(message, user_id=user_id, location=location, now=now, learning=True)

        try:
            text = complete_chat(
                self._client,
                system_prompt=WEATHER_SYSTEM_PROMPT,
                user_prompt=build_prompt(message, build_context(results)),
                model=self._model,
                tracker=self._tracker,
                user_id=user_id,
            )
        except (openai.OpenAIError, ValueError) as exc:
            logger.warning("RAG completion failed, using the chatbot: %s", exc)
            return self._fallback(message, user_id=user_id, location=location, now=now, learning=False)

        return RAGAnswer(
            text=text,
            source="rag",
            confidence=round(results[0].similarity, 3),
            context_count=len(results),
        )

    def _fallback(
        self,
        message: str,
        *,
        user_id: Optional[str],
        location: Optional[str],
        now: Optional[datetime],
        learning: bool,
    ) -> RAGAnswer:
        reply = self._chatbot.process(message, user_id=user_id, user_location=location, now=now)
        text = reply.message
        if learning and reply.success:
            text += f"\n\n{LEARNING_NOTE}"
        return RAGAnswer(text=text, source="chatbot", confidence=reply.confidence)


def is_weather_question(message: str) -> bool:
    return detect_weather_query(message).is_weather_query


def contextual_system_prompt(message: str) -> str:
    lowered = message.lower()
    if any(word in lowered for word in ("맛집", "음식", "식당", "카페", "레스토랑")):
        return RESTAURANT_SYSTEM_PROMPT
    if any(word in lowered for word in ("교통", "지하철", "버스", "길찾기")):
        return TRANSIT_SYSTEM_PROMPT
    return TOWNLY_SYSTEM_PROMPT


def fallback_response(message: str) -> str:
    lowered = message.lower().strip()
    if any(word in lowered for word in ("맛집", "음식", "식당")):
        return RESTAURANT_FALLBACK
    if any(word in lowered for word in ("안녕", "처음", "시작")):
        return HELLO_FALLBACK
    return DEFAULT_FALLBACK


def trim_reply(text: str) -> str:
    """Keep replies within Kakao's message length, cutting at a sentence end if possible."""

    if len(text) <= MAX_REPLY_LENGTH:
        return text
    truncated = text[:950]
    last_sentence = truncated.rfind(".")
    if last_sentence > 500:
        return truncated[: last_sentence + 1] + f"\n\n{TRUNCATION_NOTE}"
    return truncated + f"...\n\n{TRUNCATION_NOTE}"


@dataclass(frozen=True)
class ResponderReply:
    text: str
    type: str


class TownlyResponder:
    """Route generic Kakao messages to the weather RAG or the Townly persona."""

    def __init__(
        self,
        rag: WeatherRAG,
        *,
        client: Any = None,
        tracker: Optional[ApiTracker] = None,
        model: str = CHAT_MODEL,
    ) -> None:
        self._rag = rag
        self._client = client
        self._tracker = tracker
        self._model = model

    def respond(
        self,
        message: str,
        *,
        user_id: Optional[str] = None,
        location: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ResponderReply:
        trimmed = message.strip()
        if len(trimmed) < 2:
            return ResponderReply(GREETING_TEXT, "default")

        if is_weather_question(trimmed):
            answer = self._rag.answer(trimmed, user_id=user_id, location=location, now=now)
            return ResponderReply(trim_reply(answer.text), f"weather_{answer.source}")

        if self._client is None:
            return ResponderReply(fallback_response(trimmed), "fallback")
        try:
            text = complete_chat(
                self._client,
                system_prompt=contextual_system_prompt(trimmed),
                user_prompt=trimmed,
                model=self._model,
                tracker=self._tracker,
                user_id=user_id,
            )
        except (openai.OpenAIError, ValueError) as exc:
            logger.warning("Townly chat completion failed: %s", exc)
            return ResponderReply(fallback_response(trimmed), "fallback")
        return ResponderReply(trim_reply(text), "chatgpt")


_PHONE_PATTERN = re.compile(r"\d{2,3}-\d{3,4}-\d{4}")


def detect_message_type(utterance: str, params: Optional[Mapping[str, Any]] = None) -> str:
    """Classify a Kakao utterance as image, url, phone, email or text."""

    params = params or {}
    if params.get("imageUrl") or "[이미지]" in utterance:
        return "image"
    if "http://" in utterance or "https://" in utterance:
        return "url"
    if _PHONE_PATTERN.search(utterance):
        return "phone"
    if "@" in utterance and "." in utterance:
        return "email"
    return "text"


__all__ = [
    "CHAT_MODEL",
    "RAGAnswer",
    "ResponderReply",
    "TownlyResponder",
    "WeatherRAG",
    "build_context",
    "build_prompt",
    "complete_chat",
    "contextual_system_prompt",
    "detect_message_type",
    "fallback_response",
    "is_weather_question",
    "trim_reply",
]
