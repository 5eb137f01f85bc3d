"""Weather chatbot answering Korean questions from the weather cache."""
from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from .clock import ensure_aware, kst_today, to_kst, utc_now
from .errors import TownlyError
from .intent import FAQ, FAQMatcher, WeatherIntent, analyze_intent
from .models import DailyForecast, HourlyForecast
from .weather import DEFAULT_LOCATION, KOREAN_WEEKDAYS, WeatherService

logger = logging.getLogger("townly.chatbot")

NOT_UNDERSTOOD_MESSAGE = (
    '죄송합니다. 날씨 관련 질문을 이해하지 못했습니다. 예: "오늘 날씨", "내일 서울 날씨", "주간 날씨 예보"'
)
FAILURE_MESSAGE = "날씨 정보를 가져오는 중 오류가 발생했습니다. 잠시 후 다시 시도해 주세요."
LOCATION_HINT = "구체적인 지역을 말씀해 주시면 더 정확한 정보를 제공해드릴 수 있습니다."


@dataclass(frozen=True)
class WeatherLookup:
    kind: str
    location: str
    items: List[Any]
    source: str
    target_date: Optional[date] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind,
            "location": self.location,
            "source": self.source,
            "date": self.target_date.isoformat() if self.target_date else None,
            "count": len(self.items),
        }


@dataclass(frozen=True)
class ChatbotResponse:
    success: bool
    message: str
    confidence: float
    data: Optional[WeatherLookup] = None
    faq: Optional[FAQ] = None
    related_questions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "confidence": round(self.confidence, 3),
            "data": self.data.to_dict() if self.data else None,
            "faq_id": self.faq.id if self.faq else None,
            "related_questions": list(self.related_questions),
        }


def _number(value: float) -> str:
    return f"{value:g}"


def format_current(item: Any) -> str:
    lines = [f"🌡️ 온도: {_number(item.temperature)}°C", f"☁️ 날씨: {item.conditions}"]
    humidity = getattr(item, "humidity", None)
    if humidity:
        lines.append(f"💧 습도: {humidity}%")
    if item.precipitation_probability > 0:
        lines.append(f"🌧️ 강수확률: {item.precipitation_probability}%")
    wind_speed = getattr(item, "wind_speed", 0)
    if wind_speed > 0:
        lines.append(f"💨 풍속: {_number(wind_speed)}km/h")
    return "\n".join(lines) + "\n"


def format_hourly(items: Sequence[HourlyForecast]) -> str:
    response = "⏰ 시간별 날씨 (12시간):\n\n"
    for item in items[:6]:
        response += f"{to_kst(item.forecast_datetime).hour}시: {_number(item.temperature)}°C, {item.conditions}"
        if item.precipitation_probability > 0:
            response += f" (강수 {item.precipitation_probability}%)"
        response += "\n"
    return response


def format_daily(items: Sequence[DailyForecast], today: date) -> str:
    response = "📅 일별 날씨 예보:\n\n"
    for index, item in enumerate(items[:5]):
        day = date.fromisoformat(item.forecast_date)
        label = f"{day.month}/{day.day} {KOREAN_WEEKDAYS[day.weekday()]}"
        if day == today:
            response += f"오늘 ({label}): "
        elif day == today + timedelta(days=1):
            response += f"내일 ({label}): "
        else:
            response += f"{day.month}/{day.day} ({KOREAN_WEEKDAYS[day.weekday()]}): "

        response += f"{item.low_temp}°C ~ {item.high_temp}°C, {item.conditions}"
        if item.precipitation_probability > 0:
            response += f" (강수 {item.precipitation_probability}%)"

        night = item.night_weather or {}
        if index <= 1 and night:
            response += f"\n   🌙 밤: {night.get('conditions', '알 수 없음')}"
            night_probability = int(night.get("precipitation_probability") or 0)
            if night_probability > 0:
                response += f" (강수 {night_probability}%)"
        response += "\n"
    return response


class WeatherChatbot:
    """Combine intent analysis, FAQ matching and cached forecasts into a reply."""

    def __init__(self, weather: WeatherService, *, faq: Optional[FAQMatcher] = None) -> None:
        self._weather = weather
        self._faq = faq or FAQMatcher()

    @property
    def faq(self) -> FAQMatcher:
        return self._faq

    def process(
        self,
        message: str,
        *,
        user_id: Optional[str] = None,
        user_location: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ChatbotResponse:
        current = ensure_aware(now or utc_now())
        today = kst_today(current)
        try:
            faq_match = self._faq.best_match(message)
            intent = analyze_intent(message, today)

            if intent.type == "unknown" or intent.confidence < 0.3:
                if faq_match is not None and faq_match.confidence > 0.5:
                    return ChatbotResponse(
                        success=True,
                        message=f"{faq_match.answer}\n\n{LOCATION_HINT}",
                        confidence=faq_match.confidence,
                        faq=faq_match,
                        related_questions=self._faq.related_questions(faq_match),
                    )
                return ChatbotResponse(success=False, message=NOT_UNDERSTOOD_MESSAGE, confidence=intent.confidence)

            location = intent.location or user_location or DEFAULT_LOCATION
            lookup = self.lookup(intent, location, now=current)
            reply = self.format_response(intent, lookup, today)

            if faq_match is not None and faq_match.confidence > 0.4 and faq_match.category == "advice":
                reply += "\n\n💡 " + self._faq_answer(faq_match, lookup)

            return ChatbotResponse(
                success=True,
                message=reply,
                confidence=max(intent.confidence, faq_match.confidence if faq_match else 0.0),
                data=lookup,
                faq=faq_match,
                related_questions=self._faq.related_questions(faq_match) if faq_match else [],
            )
        except (TownlyError, sqlite3.Error, ValueError):
            logger.exception("Weather chatbot failed for user %s", user_id)
            return ChatbotResponse(success=False, message=FAILURE_MESSAGE, confidence=0.0)

    def lookup(self, intent: WeatherIntent, location: str, *, now: datetime) -> WeatherLookup:
        """Read the forecast matching ``intent`` from the cache, falling back to the API."""

        try:
            if intent.type == "hourly":
                return WeatherLookup("hourly", location, self._weather.hourly_from_cache(location, now), "database")
            if intent.type in {"daily", "forecast"}:
                if intent.period == "week":
                    items = self._weather.daily_from_cache(location, now, limit=7)
                    return WeatherLookup("weekly", location, items, "database")
                if intent.period in {"tomorrow", "specific_date"} and intent.date is not None:
                    day = self._weather.day_from_cache(location, intent.date, now)
                    return WeatherLookup(
                        "specific_day", location, [day] if day else [], "database", target_date=intent.date
                    )
                return WeatherLookup("daily", location, self._weather.daily_from_cache(location, now), "database")

            current_row = self._weather.current_from_cache(location, now)
            if current_row is not None:
                return WeatherLookup("current", location, [current_row], "database")
        except sqlite3.Error:
            logger.warning("Weather cache lookup failed for %s; calling the API", location, exc_info=True)

        return self._from_api(location, intent.type, now)

    def _from_api(self, location: str, intent_type: str, now: datetime) -> WeatherLookup:
        if intent_type in {"hourly", "current"}:
            result = self._weather.hourly_weather(location=location, now=now)
            return WeatherLookup(intent_type, location, list(result.forecasts), "api")
        result = self._weather.daily_weather(location=location, days=5, now=now)
        return WeatherLookup("daily", location, list(result.forecasts), "api")

    @staticmethod
    def format_response(intent: WeatherIntent, lookup: WeatherLookup, today: date) -> str:
        if not lookup.items:
            return f"{lookup.location}의 날씨 정보를 찾을 수 없습니다. 다른 지역명을 시도해 보세요."

        response = f"📍 {lookup.location}의 날씨 정보입니다:\n\n"
        first = lookup.items[0]
        if intent.type == "hourly" and isinstance(first, HourlyForecast):
            response += format_hourly(lookup.items)
        elif isinstance(first, DailyForecast):
            response += format_daily(lookup.items, today)
        else:
            response += format_current(first)

        source = "📊 캐시된 데이터" if lookup.source == "database" else "🌐 실시간 데이터"
        return response + f"\n\n{source}"

    def _faq_answer(self, faq: FAQ, lookup: WeatherLookup) -> str:
        first = lookup.items[0] if lookup.items else None
        night: Optional[float] = None
        if isinstance(first, DailyForecast) and first.night_weather:
            night = first.night_weather.get("precipitation_probability")
        return self._faq.answer(
            faq,
            temperature=getattr(first, "temperature", None),
            precipitation_probability=getattr(first, "precipitation_probability", None),
            night_precipitation_probability=night,
        )


__all__ = [
    "ChatbotResponse",
    "FAILURE_MESSAGE",
    "NOT_UNDERSTOOD_MESSAGE",
    "WeatherChatbot",
    "WeatherLookup",
    "format_current",
    "format_daily",
    "format_hourly",
]
