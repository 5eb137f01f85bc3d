"""Domain models persisted by the Townly database."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class UserRole:
    clerk_user_id: str
    role: str
    signup_method: Optional[str]
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class UserProfile:
    clerk_user_id: str
    email: Optional[str]
    name: Optional[str]
    signup_method: Optional[str]
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class UserLocation:
    clerk_user_id: str
    location_name: str
    latitude: Optional[float]
    longitude: Optional[float]
    station_name: Optional[str]
    updated_at: datetime


@dataclass(frozen=True)
class EmailSettings:
    """Per-user weather email subscription preferences."""

    clerk_user_id: str
    is_subscribed: bool = True
    receive_morning: bool = True
    receive_evening: bool = True
    total_emails_sent: int = 0
    last_email_sent_at: Optional[datetime] = None


@dataclass(frozen=True)
class EmailRecipient:
    clerk_user_id: str
    email: str
    location_name: Optional[str] = None


@dataclass(frozen=True)
class KakaoMessage:
    id: int
    user_key: str
    message: str
    message_type: str
    ai_response: Optional[str]
    response_type: Optional[str]
    processing_time: Optional[str]
    channel_id: Optional[str]
    received_at: datetime


@dataclass(frozen=True)
class WebhookLog:
    id: int
    method: str
    url: str
    status_code: str
    is_successful: bool
    processing_time: Optional[str]
    error_message: Optional[str]
    ip_address: Optional[str]
    user_agent: Optional[str]
    request_body: Optional[str]
    response_body: Optional[str]
    timestamp: datetime


@dataclass(frozen=True)
class ScheduledMessage:
    """A Kakao broadcast that repeats on a daily/weekly/monthly/once schedule."""

    id: int
    title: str
    message: str
    schedule_type: str
    schedule_time: str
    schedule_day: Optional[int]
    timezone: str
    target_type: str
    target_user_ids: List[str]
    is_active: bool
    next_send_at: Optional[datetime]
    last_sent_at: Optional[datetime]
    total_sent_count: int
    created_by: Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class ScheduledMessageLog:
    id: int
    scheduled_message_id: int
    executed_at: datetime
    recipient_count: int
    success_count: int
    failure_count: int
    error_message: Optional[str]
    is_successful: bool
    execution_time_ms: int


@dataclass(frozen=True)
class EmailSchedule:
    id: int
    title: str
    description: Optional[str]
    email_subject: str
    email_template: str
    schedule_time: str
    timezone: str
    target_type: str
    target_user_ids: List[str]
    is_active: bool
    next_send_at: Optional[datetime]
    last_sent_at: Optional[datetime]
    total_sent_count: int
    created_at: datetime


@dataclass(frozen=True)
class EmailSendLog:
    id: int
    email_schedule_id: Optional[int]
    email_type: str
    subject: str
    recipient_count: int
    success_count: int
    failure_count: int
    is_successful: bool
    execution_time_ms: Optional[int]
    failed_emails: List[Dict[str, Any]]
    initiated_by: str
    created_at: datetime


@dataclass(frozen=True)
class LocationKey:
    cache_key: str
    location_key: str
    location_name: str
    localized_name: Optional[str]
    latitude: Optional[float]
    longitude: Optional[float]
    country: Optional[str]
    administrative_area: Optional[str]
    expires_at: datetime


@dataclass(frozen=True)
class HourlyForecast:
    """One hour of AccuWeather forecast; ``forecast_datetime`` is in KST."""

    location_name: str
    location_key: str
    forecast_datetime: datetime
    temperature: float
    conditions: str
    weather_icon: Optional[int] = None
    humidity: Optional[int] = None
    precipitation: float = 0.0
    precipitation_probability: int = 0
    rain_probability: int = 0
    wind_speed: float = 0.0
    units: str = "metric"
    clerk_user_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @property
    def forecast_date(self) -> str:
        return self.forecast_datetime.date().isoformat()

    @property
    def forecast_hour(self) -> int:
        return self.forecast_datetime.hour


@dataclass(frozen=True)
class DailyForecast:
    location_name: str
    location_key: str
    forecast_date: str
    day_of_week: str
    temperature: int
    high_temp: int
    low_temp: int
    conditions: str
    weather_icon: Optional[int] = None
    precipitation_probability: int = 0
    rain_probability: int = 0
    day_weather: Dict[str, Any] = field(default_factory=dict)
    night_weather: Dict[str, Any] = field(default_factory=dict)
    headline: Dict[str, Any] = field(default_factory=dict)
    units: str = "metric"
    clerk_user_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class AirQualityReading:
    """Processed Google Air Quality values for one hour (or a daily average)."""

    forecast_datetime: datetime
    pm10: Optional[int] = None
    pm25: Optional[int] = None
    cai_kr: Optional[int] = None
    breezometer_aqi: Optional[int] = None
    no2: Optional[int] = None
    o3: Optional[int] = None
    so2: Optional[int] = None
    co: Optional[int] = None
    health_recommendations: Dict[str, str] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class WeatherEmbedding:
    id: int
    clerk_user_id: Optional[str]
    content_type: str
    location_name: str
    forecast_date: Optional[str]
    content: str
    embedding: List[float]
    metadata: Dict[str, Any]
    created_at: datetime


@dataclass(frozen=True)
class GmailCredentials:
    email: Optional[str]
    refresh_token: str
    scope: Optional[str]
    updated_at: datetime


@dataclass(frozen=True)
class DailyApiStats:
    stat_date: str
    api_provider: str
    total_calls: int
    successful_calls: int
    failed_calls: int
    avg_response_time: Optional[int]
    max_response_time: Optional[int]
    min_response_time: Optional[int]
    endpoint_stats: Dict[str, Dict[str, int]]
    hourly_stats: List[Dict[str, int]]
    is_finalized: bool
    last_updated: datetime


__all__ = [
    "AirQualityReading",
    "DailyApiStats",
    "DailyForecast",
    "EmailRecipient",
    "EmailSchedule",
    "EmailSendLog",
    "EmailSettings",
    "GmailCredentials",
    "HourlyForecast",
    "KakaoMessage",
    "LocationKey",
    "ScheduledMessage",
    "ScheduledMessageLog",
    "UserLocation",
    "UserProfile",
    "UserRole",
    "WeatherEmbedding",
    "WebhookLog",
]
