"""Gmail API sending, the Gmail OAuth flow and weather email rendering."""
from __future__ import annotations

import base64
import logging
import re
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from email.message import EmailMessage
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlencode

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape

from .clock import ensure_aware, to_kst, utc_now
from .database import Database
from .errors import ConfigurationError, ExternalAPIError
from .intent import clothing_advice, umbrella_advice
from .models import DailyForecast, HourlyForecast

logger = logging.getLogger("townly.mail")

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GMAIL_SEND_URL = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"
GMAIL_PROFILE_URL = "https://gmail.googleapis.com/gmail/v1/users/me/profile"
GMAIL_SCOPES = (
    "https://www.googleapis.com/auth/gmail.send",
    "https://www.googleapis.com/auth/gmail.readonly",
)
BATCH_SIZE = 10


@dataclass(frozen=True)
class OutgoingEmail:
    to: str
    subject: str
    html: str
    text: Optional[str] = None
    clerk_user_id: Optional[str] = None


@dataclass(frozen=True)
class EmailResult:
    email: str
    success: bool
    message_id: Optional[str] = None
    thread_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class BulkSendResult:
    total_count: int
    success_count: int
    failure_count: int
    results: List[EmailResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def build_raw_message(*, sender: str, to: str, subject: str, html: str, text: str) -> str:
    """Return a multipart/alternative message encoded the way Gmail's ``raw`` field expects."""

    message = EmailMessage()
    message["From"] = sender
    message["To"] = to
    message["Subject"] = subject
    message.set_content(text)
    message.add_alternative(html, subtype="html")
    return base64.urlsafe_b64encode(message.as_bytes()).decode("ascii").rstrip("=")


class GmailClient:
    """Send mail through the Gmail REST API using an OAuth refresh token."""

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        refresh_token: Optional[str],
        from_email: Optional[str],
        *,
        http_client: Optional[httpx.Client] = None,
        timeout: float = 15.0,
        batch_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self._from_email = from_email
        self._client = http_client or httpx.Client(timeout=timeout)
        self._owns_client = http_client is None
        self._batch_delay = batch_delay
        self._sleep = sleep
        self._access_token: Optional[str] = None
        self._access_expires: float = 0.0

    @property
    def configured(self) -> bool:
        return bool(self._client_id and self._client_secret and self._refresh_token and self._from_email)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def set_refresh_token(self, refresh_token: Optional[str]) -> None:
        self._refresh_token = refresh_token
        self._access_token = None
        self._access_expires = 0.0

    def access_token(self) -> str:
        if self._access_token and time.monotonic() < self._access_expires:
            return self._access_token
        if not self.configured:
            raise ConfigurationError("Gmail credentials are not configured")

        try:
            response = self._client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": self._refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        except httpx.HTTPError as exc:
            raise ExternalAPIError(f"Gmail token refresh failed: {exc}", provider="gmail") from exc
        if response.status_code >= 400:
            raise ExternalAPIError(
                f"Gmail token refresh failed: HTTP {response.status_code}",
                provider="gmail",
                http_status=response.status_code,
            )

        payload = response.json()
        self._access_token = str(payload["access_token"])
        self._access_expires = time.monotonic() + max(int(payload.get("expires_in", 3600)) - 60, 0)
        return self._access_token

    def send(self, to: str, subject: str, html: str, text: Optional[str] = None) -> EmailResult:
        """Send one email; failures are reported in the result rather than raised."""

        try:
            raw = build_raw_message(
                sender=self._from_email or "",
                to=to,
                subject=subject,
                html=html,
                text=text or html_to_text(html),
            )
            response = self._client.post(
                GMAIL_SEND_URL,
                json={"raw": raw},
                headers={"Authorization": f"Bearer {self.access_token()}"},
            )
        except (ConfigurationError, ExternalAPIError) as exc:
            return EmailResult(email=to, success=False, error=str(exc))
        except httpx.HTTPError as exc:
            logger.warning("Gmail send to %s failed: %s", to, exc)
            return EmailResult(email=to, success=False, error=str(exc))

        if response.status_code >= 400:
            logger.warning("Gmail send to %s returned HTTP %s", to, response.status_code)
            return EmailResult(email=to, success=False, error=f"HTTP {response.status_code}: {response.text[:200]}")

        payload = response.json()
        return EmailResult(email=to, success=True, message_id=payload.get("id"), thread_id=payload.get("threadId"))

    def send_bulk(self, emails: Sequence[OutgoingEmail], *, batch_size: int = BATCH_SIZE) -> BulkSendResult:
        results: List[EmailResult] = []
        for start in range(0, len(emails), batch_size):
            for email in emails[start:start + batch_size]:
                results.append(self.send(email.to, email.subject, email.html, email.text))
            if start + batch_size < len(emails) and self._batch_delay > 0:
                self._sleep(self._batch_delay)

        success = sum(1 for result in results if result.success)
        return BulkSendResult(
            total_count=len(emails),
            success_count=success,
            failure_count=len(results) - success,
            results=results,
        )


class GmailOAuth:
    """Authorization-code flow that stores the refresh token encrypted in the database."""

    def __init__(
        self,
        database: Database,
        *,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: Optional[str],
        http_client: Optional[httpx.Client] = None,
        timeout: float = 15.0,
    ) -> None:
        self._database = database
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._client = http_client or httpx.Client(timeout=timeout)

    @property
    def configured(self) -> bool:
        return bool(self._client_id and self._client_secret and self._redirect_uri)

    def _require_configured(self) -> None:
        if not self.configured:
            raise ConfigurationError("GMAIL_CLIENT_ID, GMAIL_CLIENT_SECRET and GMAIL_REDIRECT_URI are required")

    def authorization_url(self, state: Optional[str] = None) -> str:
        self._require_configured()
        params = {
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri,
            "response_type": "code",
            "scope": " ".join(GMAIL_SCOPES),
            "access_type": "offline",
            "prompt": "consent",
        }
        if state:
            params["state"] = state
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    def exchange_code(self, code: str) -> Dict[str, Any]:
        """Trade an authorization code for tokens and persist the refresh token."""

        self._require_configured()
        if not code:
            raise ValueError("Authorization code is required")
        try:
            response = self._client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "code": code,
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "redirect_uri": self._redirect_uri,
                    "grant_type": "authorization_code",
                },
            )
        except httpx.HTTPError as exc:
            raise ExternalAPIError(f"Gmail code exchange failed: {exc}", provider="gmail") from exc
        if response.status_code >= 400:
            raise ExternalAPIError(
                f"Gmail code exchange failed: HTTP {response.status_code}",
                provider="gmail",
                http_status=response.status_code,
            )

        tokens = response.json()
        refresh_token = tokens.get("refresh_token")
        if not refresh_token:
            raise ValueError("Google did not return a refresh token; revoke access and retry with prompt=consent")

        email = self._profile_email(tokens.get("access_token"))
        self._database.save_gmail_credentials(refresh_token=refresh_token, email=email, scope=tokens.get("scope"))
        logger.info("Stored Gmail credentials for %s", email or "unknown account")
        return {"email": email, "scope": tokens.get("scope"), "refresh_token": refresh_token}

    def _profile_email(self, access_token: Optional[str]) -> Optional[str]:
        if not access_token:
            return None
        try:
            response = self._client.get(GMAIL_PROFILE_URL, headers={"Authorization": f"Bearer {access_token}"})
        except httpx.HTTPError as exc:
            logger.warning("Could not read the Gmail profile: %s", exc)
            return None
        if response.status_code >= 400:
            return None
        return response.json().get("emailAddress")

    def stored_refresh_token(self) -> Optional[str]:
        credentials = self._database.get_gmail_credentials()
        return credentials.refresh_token if credentials else None

    def status(self) -> Dict[str, Any]:
        credentials = self._database.get_gmail_credentials()
        return {
            "configured": self.configured,
            "connected": credentials is not None,
            "email": credentials.email if credentials else None,
            "scope": credentials.scope if credentials else None,
            "updated_at": credentials.updated_at.isoformat() if credentials else None,
        }

    def revoke(self) -> bool:
        credentials = self._database.get_gmail_credentials()
        if credentials is None:
            return False
        try:
            response = self._client.post(GOOGLE_REVOKE_URL, params={"token": credentials.refresh_token})
            if response.status_code >= 400:
                logger.warning("Google token revocation returned HTTP %s", response.status_code)
        except httpx.HTTPError as exc:
            logger.warning("Google token revocation failed: %s", exc)
        return self._database.delete_gmail_credentials()


# ----------------------------------------------------------------------
# Weather email content
# ----------------------------------------------------------------------
ALERT_LEVEL_TEXT = {"low": "낮음", "medium": "보통", "high": "높음"}
TIME_OF_DAY_TEXT = {"morning": "아침", "evening": "저녁"}


@dataclass(frozen=True)
class WeatherSummary:
    summary: str
    key_points: List[str]
    recommendations: List[str]
    alert_level: str
    forecast_period: str
    min_temp: Optional[float]
    max_temp: Optional[float]
    max_rain_probability: int
    generated_at: datetime


def html_to_text(html: str) -> str:
    text = re.sub(r"<[^>]*>", "", html)
    for entity, char in (("&nbsp;", " "), ("&amp;", "&"), ("&lt;", "<"), ("&gt;", ">"), ("&quot;", '"'), ("&#39;", "'")):
        text = text.replace(entity, char)
    return re.sub(r"\s+", " ", text).strip()


def _alert_level(min_temp: Optional[float], max_temp: Optional[float], rain: int) -> str:
    if rain >= 70 or (max_temp is not None and max_temp >= 33) or (min_temp is not None and min_temp <= -10):
        return "high"
    if rain >= 40 or (max_temp is not None and max_temp >= 30) or (min_temp is not None and min_temp <= 0):
        return "medium"
    return "low"


def build_weather_summary(
    hourly: Sequence[HourlyForecast],
    daily: Sequence[DailyForecast],
    time_of_day: str,
    *,
    location: str = "",
    now: Optional[datetime] = None,
) -> WeatherSummary:
    """Reduce the next 12 hours (or the first daily row) to the email's headline numbers."""

    hours = list(hourly[:12])
    if hours:
        temperatures = [item.temperature for item in hours]
        min_temp: Optional[float] = min(temperatures)
        max_temp: Optional[float] = max(temperatures)
        rain = max(max(item.precipitation_probability, item.rain_probability) for item in hours)
        conditions = hours[0].conditions
        period = f"{len(hours)}시간"
    elif daily:
        first = daily[0]
        min_temp, max_temp = float(first.low_temp), float(first.high_temp)
        rain = max(first.precipitation_probability, first.rain_probability)
        conditions = first.conditions
        period = "1일"
    else:
        min_temp = max_temp = None
        rain = 0
        conditions = "정보 없음"
        period = "-"

    label = TIME_OF_DAY_TEXT.get(time_of_day, "오늘")
    key_points: List[str] = [f"날씨: {conditions}"]
    if min_temp is not None and max_temp is not None:
        key_points.append(f"기온: {min_temp:g}°C ~ {max_temp:g}°C")
    key_points.append(f"최대 강수확률: {rain}%")
    if time_of_day == "evening" and len(daily) > 1:
        tomorrow = daily[1]
        key_points.append(f"내일: {tomorrow.low_temp}°C ~ {tomorrow.high_temp}°C, {tomorrow.conditions}")

    recommendations: List[str] = []
    if max_temp is not None:
        recommendations.append(clothing_advice(max_temp if time_of_day == "morning" else min_temp))
    recommendations.append(umbrella_advice(rain))

    place = f"{location} " if location else ""
    summary = f"{place}{label} 날씨는 {conditions}"
    if min_temp is not None and max_temp is not None:
        summary += f", 기온은 {min_temp:g}°C에서 {max_temp:g}°C 사이"
    summary += f"이며 강수확률은 최대 {rain}%입니다."

    return WeatherSummary(
        summary=summary,
        key_points=key_points,
        recommendations=recommendations,
        alert_level=_alert_level(min_temp, max_temp, rain),
        forecast_period=period,
        min_temp=min_temp,
        max_temp=max_temp,
        max_rain_probability=rain,
        generated_at=ensure_aware(now or utc_now()),
    )


def default_subject(location: str, time_of_day: str, summary: WeatherSummary) -> str:
    label = TIME_OF_DAY_TEXT.get(time_of_day, "오늘")
    subject = f"[Townly] {location} {label} 날씨"
    if summary.max_rain_probability >= 60:
        subject += " ☔ 우산을 챙기세요"
    return subject


def _template_environment() -> Environment:
    base_dir = Path(__file__).resolve().parent
    return Environment(
        loader=FileSystemLoader(str(base_dir / "templates")),
        autoescape=select_autoescape(["html"]),
        trim_blocks=True,
        lstrip_blocks=True,
    )


_KOREAN_WEEKDAYS_LONG = ("월요일", "화요일", "수요일", "목요일", "금요일", "토요일", "일요일")


def render_weather_email(
    location: str,
    time_of_day: str,
    summary: WeatherSummary,
    *,
    hourly: Sequence[HourlyForecast] = (),
    daily: Sequence[DailyForecast] = (),
    recipient_name: Optional[str] = None,
    unsubscribe_url: Optional[str] = None,
) -> Tuple[str, str]:
    """Render the HTML and plain-text bodies of a weather email."""

    generated = to_kst(summary.generated_at)
    context = {
        "location": location,
        "time_text": TIME_OF_DAY_TEXT.get(time_of_day, "오늘"),
        "date_text": f"{generated.year}년 {generated.month}월 {generated.day}일 {_KOREAN_WEEKDAYS_LONG[generated.weekday()]}",
        "greeting": f"{recipient_name}님" if recipient_name else "안녕하세요",
        "alert_level": summary.alert_level,
        "alert_text": ALERT_LEVEL_TEXT.get(summary.alert_level, "낮음"),
        "summary": summary,
        "hours": [
            {
                "hour": to_kst(item.forecast_datetime).hour,
                "temperature": f"{item.temperature:g}",
                "conditions": item.conditions,
                "rain": item.precipitation_probability,
            }
            for item in list(hourly)[:12]
        ],
        "days": list(daily)[:5],
        "generated_text": generated.strftime("%Y-%m-%d %H:%M"),
        "unsubscribe_url": unsubscribe_url,
    }
    environment = _template_environment()
    html = environment.get_template("weather_email.html").render(**context)
    text = environment.get_template("weather_email.txt").render(**context)
    return html, text


__all__ = [
    "BulkSendResult",
    "EmailResult",
    "GmailClient",
    "GmailOAuth",
    "OutgoingEmail",
    "WeatherSummary",
    "build_raw_message",
    "build_weather_summary",
    "default_subject",
    "html_to_text",
    "render_weather_email",
]
