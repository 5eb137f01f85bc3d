"""Rule-based weather intent detection and FAQ matching for Korean utterances."""
from __future__ import annotations

import re
from dataclasses import dataclass, replace
from datetime import date, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

WEATHER_KEYWORDS = (
    "날씨",
    "기온",
    "온도",
    "비",
    "눈",
    "바람",
    "습도",
    "weather",
    "미세먼지",
    "대기질",
    "강수",
    "맑음",
    "흐림",
)

TIME_PATTERNS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("current", ("지금", "현재", "오늘 날씨", "지금 날씨", "현재 날씨")),
    ("hourly", ("시간별", "몇시간", "시간당", "매시간")),
    ("daily", ("일별", "매일", "하루", "일간")),
    ("forecast", ("예보", "내일", "모레", "주간", "일주일", "며칠")),
)

KNOWN_LOCATIONS = (
    "서울", "부산", "대구", "인천", "광주", "대전", "울산", "세종",
    "경기", "강원", "충북", "충남", "전북", "전남", "경북", "경남", "제주",
    "강남", "강북", "송파", "마포", "영등포", "용산", "중구", "종로",
    "운정", "일산", "파주", "고양", "수원", "성남", "안양", "부천",
)


@dataclass(frozen=True)
class WeatherIntent:
    type: str
    confidence: float
    location: Optional[str] = None
    period: Optional[str] = None
    date: Optional[date] = None


def _extract_location(message: str) -> Optional[str]:
    for location in KNOWN_LOCATIONS:
        if location in message:
            return location
    return None


def _extract_period(message: str, today: date) -> Tuple[Optional[str], Optional[date]]:
    if "내일" in message:
        return "tomorrow", today + timedelta(days=1)
    if "모레" in message:
        return "specific_date", today + timedelta(days=2)
    if any(token in message for token in ("주간", "일주일", "7일")):
        return "week", None
    if any(token in message for token in ("오늘", "지금", "현재")):
        return "today", None
    return None, None


def analyze_intent(message: str, today: Optional[date] = None) -> WeatherIntent:
    """Classify a chat message into a weather request type."""

    cleaned = message.lower().strip()
    if not any(keyword in cleaned for keyword in WEATHER_KEYWORDS):
        return WeatherIntent(type="unknown", confidence=0.1)

    intent_type = "current"
    confidence = 0.5
    for candidate, patterns in TIME_PATTERNS:
        if any(pattern in cleaned for pattern in patterns):
            intent_type = candidate
            confidence = 0.8
            break

    if "예보" in cleaned:
        confidence = max(confidence, 0.9)

    period, target_date = _extract_period(cleaned, today or date.today())
    return WeatherIntent(
        type=intent_type,
        confidence=confidence,
        location=_extract_location(cleaned),
        period=period,
        date=target_date,
    )


_TYPE_DESCRIPTIONS = {
    "current": "현재 날씨 정보",
    "hourly": "시간별 날씨 정보",
    "daily": "일별 날씨 정보",
    "forecast": "날씨 예보 정보",
}

_PERIOD_DESCRIPTIONS = {
    "today": "오늘",
    "tomorrow": "내일",
    "week": "주간",
    "specific_date": "특정 날짜",
}


def describe_intent(intent: WeatherIntent) -> str:
    description = _TYPE_DESCRIPTIONS.get(intent.type, "날씨 관련 질문")
    if intent.location:
        description += f" ({intent.location})"
    if intent.period in _PERIOD_DESCRIPTIONS:
        description += f" - {_PERIOD_DESCRIPTIONS[intent.period]}"
    return description


@dataclass(frozen=True)
class FAQ:
    id: str
    question: str
    keywords: Tuple[str, ...]
    answer: str
    category: str
    confidence: float


DEFAULT_FAQS: Tuple[FAQ, ...] = (
    FAQ(
        "current-weather",
        "지금 날씨 어때?",
        ("지금", "현재", "오늘", "날씨", "어때", "어떤지"),
        "현재 날씨 정보를 확인해드리겠습니다.",
        "current",
        0.9,
    ),
    FAQ(
        "tomorrow-weather",
        "내일 날씨 어떨까?",
        ("내일", "명일", "다음날", "날씨", "어떨까", "예보"),
        "내일 날씨 예보를 확인해드리겠습니다.",
        "forecast",
        0.9,
    ),
    FAQ(
        "rain-check",
        "비 올까?",
        ("비", "강수", "우천", "올까", "올지", "와?", "밤", "저녁", "밤에"),
        "강수 확률을 확인해드리겠습니다.",
        "forecast",
        0.8,
    ),
    FAQ(
        "weekly-forecast",
        "이번 주 날씨는?",
        ("주간", "이번주", "일주일", "주", "예보", "날씨"),
        "주간 날씨 예보를 확인해드리겠습니다.",
        "forecast",
        0.8,
    ),
    FAQ(
        "clothing-advice",
        "뭐 입을까?",
        ("옷", "입을까", "무슨", "복장", "차림", "의류"),
        "현재 기온을 고려한 옷차림을 추천해드리겠습니다.",
        "advice",
        0.7,
    ),
    FAQ(
        "umbrella-advice",
        "우산 가져갈까?",
        ("우산", "가져갈까", "필요", "들고", "챙겨"),
        "강수 확률을 확인해서 우산 필요 여부를 알려드리겠습니다.",
        "advice",
        0.7,
    ),
    FAQ(
        "temperature-today",
        "오늘 기온은?",
        ("기온", "온도", "몇도", "따뜻", "춥", "덥"),
        "현재 기온 정보를 확인해드리겠습니다.",
        "current",
        0.8,
    ),
    FAQ(
        "air-quality",
        "미세먼지 어때?",
        ("미세먼지", "대기질", "공기", "황사", "스모그"),
        "현재 대기질 정보는 미세먼지 페이지에서 확인하실 수 있습니다.",
        "general",
        0.6,
    ),
)

MIN_FAQ_SCORE = 0.3


def clothing_advice(temperature: float) -> str:
    if temperature < 5:
        return "기온이 매우 낮으니 두꺼운 외투와 목도리를 착용하세요."
    if temperature < 15:
        return "쌀쌀하니 가벼운 외투나 자켓을 입으시는 게 좋겠어요."
    if temperature < 25:
        return "적당한 기온이니 긴팔 셔츠나 가디건 정도가 적당해요."
    return "기온이 높으니 반팔이나 얇은 옷을 입으시면 됩니다."


def umbrella_advice(rain_probability: float) -> str:
    if rain_probability > 70:
        return "강수 확률이 높으니 우산을 꼭 챙기세요."
    if rain_probability > 30:
        return "비올 가능성이 있으니 접이식 우산을 준비하시는 게 좋겠어요."
    return "강수 확률이 낮으니 우산은 필요 없을 것 같아요."


class FAQMatcher:
    """Score user questions against a small keyword FAQ."""

    def __init__(self, faqs: Sequence[FAQ] = DEFAULT_FAQS) -> None:
        self._faqs = list(faqs)

    @property
    def faqs(self) -> List[FAQ]:
        return list(self._faqs)

    def by_category(self, category: str) -> List[FAQ]:
        return [faq for faq in self._faqs if faq.category == category]

    @staticmethod
    def similarity(message: str, faq: FAQ) -> float:
        matches = sum(1 for keyword in faq.keywords if keyword in message)
        score = 0.2 * matches
        score += (matches / len(faq.keywords)) * 0.3

        longest = max(len(message), len(faq.question))
        if longest:
            score += min(len(message), len(faq.question)) / longest * 0.1

        user_words = re.split(r"\s+", message)
        faq_words = re.split(r"\s+", faq.question.lower())
        common = [word for word in user_words if word in faq_words]
        score += len(common) / max(len(user_words), len(faq_words)) * 0.2
        return min(score, 1.0)

    def best_match(self, message: str) -> Optional[FAQ]:
        """Return the best FAQ with ``confidence`` set to its score, if above the threshold."""

        cleaned = message.lower().strip()
        best: Optional[FAQ] = None
        best_score = 0.0
        for faq in self._faqs:
            score = self.similarity(cleaned, faq)
            if score > best_score and score > MIN_FAQ_SCORE:
                best_score = score
                best = replace(faq, confidence=score)
        return best

    @staticmethod
    def answer(
        faq: FAQ,
        *,
        temperature: Optional[float] = None,
        precipitation_probability: Optional[float] = None,
        night_precipitation_probability: Optional[float] = None,
    ) -> str:
        response = faq.answer
        if faq.id == "rain-check" and night_precipitation_probability is not None:
            if night_precipitation_probability > 70:
                response += " 오늘 밤 비가 올 확률이 높습니다."
            elif night_precipitation_probability > 30:
                response += " 오늘 밤 비가 올 가능성이 있습니다."
            else:
                response += " 오늘 밤은 비가 오지 않을 것 같습니다."
        elif faq.id == "clothing-advice" and temperature is not None:
            response += " " + clothing_advice(temperature)
        elif faq.id == "umbrella-advice" and precipitation_probability:
            response += " " + umbrella_advice(precipitation_probability)
        elif faq.id == "air-quality":
            response += ' 더 자세한 대기질 정보는 "미세먼지"라고 말씀해 주세요.'
        return response

    def related_questions(self, current: FAQ) -> List[str]:
        same = [faq.question for faq in self._faqs if faq.category == current.category and faq.id != current.id]
        others = [
            faq.question
            for faq in self._faqs
            if faq.category != current.category and faq.confidence > 0.8
        ]
        return (same[:2] + others[:2])[:3]

    def as_dicts(self) -> List[Dict[str, object]]:
        return [
            {"id": faq.id, "question": faq.question, "category": faq.category, "keywords": list(faq.keywords)}
            for faq in self._faqs
        ]


# ----------------------------------------------------------------------
# Weather query detection
# ----------------------------------------------------------------------
DETECTION_KEYWORDS = (
    "날씨", "기온", "온도", "습도", "바람",
    "비", "눈", "구름", "햇빛", "맑", "흐림", "우천", "강수", "강우",
    "덥", "춥", "시원", "따뜻", "쌀쌀", "무더",
    "오늘", "내일", "모레", "어제", "이번주", "다음주",
    "월", "일",
)

_ASKING = r"(\?|？|알려줘|알려주세요|어때|어떠)"
_FALLING = r"(오는|온다|올까|내릴)"

DETECTION_PATTERNS = tuple(
    re.compile(pattern)
    for pattern in (
        rf"날씨.*{_ASKING}",
        rf"기온.*{_ASKING}",
        rf"온도.*{_ASKING}",
        rf"비.*{_FALLING}",
        rf"눈.*{_FALLING}",
        r"맑[은을]",
        r"흐림",
        r"\d+월\s*\d+일.*날씨",
        r"오늘.*날씨",
        r"내일.*날씨",
        r"모레.*날씨",
        r"우산.*(필요|챙겨|가져)",
        r"옷차림",
        r"외출.*날씨",
    )
)

_STRONG_WEATHER_QUESTION = re.compile(r"날씨.*(\?|？|알려줘|알려주세요)")
_DATED_WEATHER_QUESTION = re.compile(r"\d+월\s*\d+일.*날씨")
_QUESTION_FORM = re.compile(r"[?？]|알려줘|알려주세요|어때|어떠")

WEATHER_QUERY_THRESHOLD = 0.3


@dataclass(frozen=True)
class WeatherQueryDetection:
    is_weather_query: bool
    confidence: float
    detected_aspects: Tuple[str, ...]
    reasoning: str


def detect_weather_query(message: str) -> WeatherQueryDetection:
    """Score how likely ``message`` asks about the weather.

    Keywords add 0.15 each, patterns 0.3 each, explicit weather or dated
    questions 0.4 and any question form 0.1. Single-syllable keywords such as
    "비" alone stay under the threshold.
    """

    normalized = message.lower().strip()
    confidence = 0.0
    reasons: List[str] = []

    aspects = tuple(keyword for keyword in DETECTION_KEYWORDS if keyword in normalized)
    if aspects:
        confidence += len(aspects) * 0.15
        reasons.append(f"keywords: {', '.join(aspects)}")

    pattern_hits = sum(1 for pattern in DETECTION_PATTERNS if pattern.search(normalized))
    if pattern_hits:
        confidence += pattern_hits * 0.3
        reasons.append(f"patterns: {pattern_hits}")

    if _STRONG_WEATHER_QUESTION.search(normalized):
        confidence += 0.4
        reasons.append("explicit weather question")
    if _DATED_WEATHER_QUESTION.search(normalized):
        confidence += 0.4
        reasons.append("dated weather question")
    if _QUESTION_FORM.search(normalized):
        confidence += 0.1
        reasons.append("question form")

    confidence = min(round(confidence, 2), 1.0)
    return WeatherQueryDetection(
        is_weather_query=confidence >= WEATHER_QUERY_THRESHOLD,
        confidence=confidence,
        detected_aspects=aspects,
        reasoning=", ".join(reasons),
    )


__all__ = [
    "DEFAULT_FAQS",
    "DETECTION_KEYWORDS",
    "WeatherQueryDetection",
    "detect_weather_query",
    "FAQ",
    "FAQMatcher",
    "KNOWN_LOCATIONS",
    "WEATHER_KEYWORDS",
    "WeatherIntent",
    "analyze_intent",
    "clothing_advice",
    "describe_intent",
    "umbrella_advice",
]
