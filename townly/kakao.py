"""Kakao i Open Builder skill contract and the Kakao Business messaging client."""
from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx
from pydantic import BaseModel, ConfigDict, Field

from .chatbot import ChatbotResponse
from .clock import utc_now
from .errors import ExternalAPIError
from .tracking import ApiTracker

logger = logging.getLogger("townly.kakao")

KAKAO_BUSINESS_BASE_URL = "https://api.kakaobusiness.com/v1"
WEATHER_ICON_URL = "https://developer.accuweather.com/sites/default/files/{icon}-s.png"
BROADCAST_COST = 15
ALIMTALK_COST = 8
SIMULATED_BALANCE = 999999


# ----------------------------------------------------------------------
# Skill request
# ----------------------------------------------------------------------
class _SkillModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class SkillNamed(_SkillModel):
    id: str
    name: str


class SkillUser(_SkillModel):
    id: str
    type: Optional[str] = None
    properties: Dict[str, Any] = Field(default_factory=dict)


class SkillUserRequest(_SkillModel):
    timezone: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    block: Optional[SkillNamed] = None
    utterance: str
    lang: Optional[str] = None
    user: SkillUser


class SkillAction(_SkillModel):
    id: str
    name: str
    params: Dict[str, Any] = Field(default_factory=dict)
    client_extra: Optional[Dict[str, Any]] = Field(default=None, alias="clientExtra")
    detail_params: Optional[Dict[str, Any]] = Field(default=None, alias="detailParams")


class SkillRequest(_SkillModel):
    intent: SkillNamed
    user_request: SkillUserRequest = Field(alias="userRequest")
    bot: SkillNamed
    action: SkillAction

    @property
    def utterance(self) -> str:
        return self.user_request.utterance

    @property
    def user_id(self) -> str:
        return self.user_request.user.id

    @property
    def user_location(self) -> Optional[str]:
        location = self.user_request.user.properties.get("location")
        return str(location) if location else None


# ----------------------------------------------------------------------
# Skill response builders
# ----------------------------------------------------------------------
def quick_reply(label: str, message_text: str) -> Dict[str, str]:
    return {"label": label, "action": "message", "messageText": message_text}


DEFAULT_QUICK_REPLIES = (
    quick_reply("오늘 날씨", "오늘 날씨 어때?"),
    quick_reply("내일 날씨", "내일 날씨 알려줘"),
    quick_reply("주간 예보", "이번 주 날씨 예보"),
)


def skill_response(
    outputs: Sequence[Mapping[str, Any]],
    *,
    quick_replies: Optional[Sequence[Mapping[str, Any]]] = None,
    context: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    template: Dict[str, Any] = {"outputs": [dict(output) for output in outputs]}
    if quick_replies:
        template["quickReplies"] = [dict(reply) for reply in quick_replies]
    body: Dict[str, Any] = {"version": "2.0", "template": template}
    if context:
        body["context"] = dict(context)
    return body


def simple_text(text: str, quick_replies: Optional[Sequence[Mapping[str, Any]]] = None) -> Dict[str, Any]:
    return skill_response([{"simpleText": {"text": text}}], quick_replies=quick_replies)


def basic_card(
    title: str,
    description: str,
    *,
    image_url: Optional[str] = None,
    buttons: Optional[Sequence[Mapping[str, Any]]] = None,
) -> Dict[str, Any]:
    card: Dict[str, Any] = {"title": title, "description": description}
    if image_url:
        card["thumbnail"] = {"imageUrl": image_url}
    if buttons:
        card["buttons"] = [dict(button) for button in buttons]
    return {"basicCard": card}


def preferred_location_context(location: str) -> Dict[str, Any]:
    return {"values": [{"name": "user_preferred_location", "lifeSpan": 5, "params": {"location": location}}]}


def weather_icon_url(icon: Optional[int]) -> str:
    return WEATHER_ICON_URL.format(icon=f"{icon or 1:02d}")


def quick_replies_for(response: ChatbotResponse) -> List[Dict[str, str]]:
    """Related FAQ questions first, then follow-ups suited to the answer type."""

    if response.related_questions:
        related = [
            quick_reply(question[:10] + "..." if len(question) > 10 else question, question)
            for question in response.related_questions[:3]
        ]
        return related + [DEFAULT_QUICK_REPLIES[0]]

    if response.success and response.data is not None:
        extra = []
        if response.data.kind == "current":
            extra.append(quick_reply("시간별 날씨", "시간별 날씨 보여줘"))
        extra.append(quick_reply("옷차림 추천", "뭐 입을까?"))
        return list(DEFAULT_QUICK_REPLIES[:2]) + extra[:2]

    return list(DEFAULT_QUICK_REPLIES)


def weather_skill_response(response: ChatbotResponse) -> Dict[str, Any]:
    outputs: List[Dict[str, Any]] = [{"simpleText": {"text": response.message}}]
    context = None
    data = response.data
    if response.success and data is not None:
        if data.kind == "current" and data.items:
            weather = data.items[0]
            outputs.append(
                basic_card(
                    f"{data.location} 현재 날씨",
                    f"온도: {weather.temperature:g}°C\n날씨: {weather.conditions}\n"
                    f"습도: {weather.humidity or 0}%\n강수확률: {weather.precipitation_probability or 0}%",
                    image_url=weather_icon_url(weather.weather_icon),
                    buttons=[
                        {"action": "message", "label": "주간 예보 보기", "messageText": f"{data.location} 주간 날씨 예보"}
                    ],
                )
            )
        context = preferred_location_context(data.location)
    return skill_response(outputs, quick_replies=quick_replies_for(response), context=context)


def error_response(text: str) -> Dict[str, Any]:
    return simple_text(text, [quick_reply("다시 시도", "오늘 날씨")])


# ----------------------------------------------------------------------
# Kakao Business API
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class SendResult:
    success: bool
    message_id: Optional[str] = None
    sent_count: int = 0
    failed_count: int = 0
    cost: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class WalletInfo:
    balance: int
    currency: str
    last_updated: datetime


class KakaoBusinessClient:
    """Send channel broadcasts and AlimTalk messages; simulates when no admin key is set."""

    def __init__(
        self,
        admin_key: Optional[str],
        *,
        channel_id: Optional[str] = None,
        sender_key: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
        timeout: float = 10.0,
        tracker: Optional[ApiTracker] = None,
        base_url: str = KAKAO_BUSINESS_BASE_URL,
    ) -> None:
        self._admin_key = admin_key
        self._channel_id = channel_id or ""
        self._sender_key = sender_key or ""
        self._client = http_client or httpx.Client(timeout=timeout)
        self._owns_client = http_client is None
        self._tracker = tracker
        self._base_url = base_url.rstrip("/")
        if not admin_key:
            logger.warning("KAKAO_ADMIN_KEY is not set; Kakao Business runs in simulation mode")

    @property
    def simulated(self) -> bool:
        return not self._admin_key

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    @staticmethod
    def estimate_cost(message_type: str, recipients: int = 1) -> int:
        per_message = BROADCAST_COST if message_type == "broadcast" else ALIMTALK_COST
        return per_message * recipients

    def _request(self, method: str, path: str, body: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        started = time.perf_counter()
        status_code: Optional[int] = None
        error: Optional[str] = None
        try:
            response = self._client.request(
                method,
                f"{self._base_url}{path}",
                json=dict(body) if body is not None else None,
                headers={"Authorization": f"Bearer {self._admin_key}", "Accept": "application/json"},
            )
            status_code = response.status_code
            if response.status_code >= 400:
                error = response.text[:200]
                raise ExternalAPIError(
                    f"Kakao Business request failed: HTTP {response.status_code}",
                    provider="kakao",
                    http_status=response.status_code,
                )
            try:
                return response.json()
            except ValueError as exc:
                error = "invalid JSON"
                raise ExternalAPIError("Kakao Business returned a non-JSON body", provider="kakao") from exc
        except httpx.HTTPError as exc:
            error = str(exc)
            raise ExternalAPIError(f"Kakao Business request failed: {exc}", provider="kakao") from exc
        finally:
            if self._tracker is not None:
                self._tracker.record_call(
                    "kakao",
                    path,
                    method=method,
                    http_status=status_code,
                    response_time_ms=int((time.perf_counter() - started) * 1000),
                    is_successful=error is None,
                    error_message=error,
                )

    def send_broadcast(self, message: str, recipients: Optional[Sequence[str]] = None) -> SendResult:
        count = len(recipients) if recipients else 1
        if self.simulated:
            logger.info("Simulated Kakao broadcast to %s recipient(s)", count)
            return SendResult(
                success=True,
                message_id=f"sim_{int(time.time() * 1000)}",
                sent_count=count,
                cost=0,
            )

        body = {
            "channel_id": self._channel_id,
            "message": {"type": "text", "text": message},
            "recipients": list(recipients or []),
        }
        try:
            result = self._request("POST", "/messages/broadcast", body)
        except ExternalAPIError as exc:
            logger.warning("Kakao broadcast failed: %s", exc)
            return SendResult(success=False, failed_count=count, error=str(exc))
        return SendResult(
            success=True,
            message_id=result.get("message_id"),
            sent_count=int(result.get("sent_count") or count),
            failed_count=int(result.get("failed_count") or 0),
            cost=int(result.get("cost") or self.estimate_cost("broadcast", count)),
        )

    def send_alimtalk(
        self,
        template_id: str,
        message: str,
        recipients: Sequence[str],
        template_args: Optional[Mapping[str, str]] = None,
    ) -> SendResult:
        if not template_id:
            raise ValueError("AlimTalk requires a template id")
        count = len(recipients) or 1
        if self.simulated:
            logger.info("Simulated Kakao AlimTalk %s to %s recipient(s)", template_id, count)
            return SendResult(
                success=True,
                message_id=f"sim_alimtalk_{int(time.time() * 1000)}",
                sent_count=count,
                cost=0,
            )

        body = {
            "sender_key": self._sender_key,
            "template_id": template_id,
            "message": message,
            "template_args": dict(template_args or {}),
            "recipients": list(recipients),
        }
        try:
            result = self._request("POST", "/messages/alimtalk", body)
        except ExternalAPIError as exc:
            logger.warning("Kakao AlimTalk failed: %s", exc)
            return SendResult(success=False, failed_count=count, error=str(exc))
        return SendResult(
            success=True,
            message_id=result.get("message_id"),
            sent_count=int(result.get("sent_count") or count),
            failed_count=int(result.get("failed_count") or 0),
            cost=int(result.get("cost") or self.estimate_cost("alimtalk", count)),
        )

    def wallet_balance(self) -> WalletInfo:
        if self.simulated:
            return WalletInfo(balance=SIMULATED_BALANCE, currency="KRW", last_updated=utc_now())
        result = self._request("GET", "/wallet/balance")
        return WalletInfo(
            balance=int(result.get("balance") or 0),
            currency=str(result.get("currency") or "KRW"),
            last_updated=utc_now(),
        )


__all__ = [
    "DEFAULT_QUICK_REPLIES",
    "KakaoBusinessClient",
    "SendResult",
    "SkillRequest",
    "WalletInfo",
    "basic_card",
    "error_response",
    "preferred_location_context",
    "quick_replies_for",
    "simple_text",
    "skill_response",
    "weather_icon_url",
    "weather_skill_response",
]
