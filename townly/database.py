"""SQLite-backed persistence for Townly users, schedules, logs and API caches."""
from __future__ import annotations

import base64
import hashlib
import json
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from cryptography.fernet import Fernet, InvalidToken

from .clock import ensure_aware, to_kst
from .models import (
    AirQualityReading,
    DailyApiStats,
    DailyForecast,
    EmailRecipient,
    EmailSchedule,
    EmailSendLog,
    EmailSettings,
    GmailCredentials,
    HourlyForecast,
    KakaoMessage,
    LocationKey,
    ScheduledMessage,
    ScheduledMessageLog,
    UserLocation,
    UserProfile,
    UserRole,
    WeatherEmbedding,
    WebhookLog,
)

USER_ROLES = ("customer", "admin")


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the application database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "townly.sqlite3").resolve(strict=False)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    return ensure_aware(value).astimezone(timezone.utc).isoformat(timespec="seconds")


def _serialize_optional(value: Optional[datetime]) -> Optional[str]:
    return _serialize_datetime(value) if value is not None else None


def _serialize_local(value: datetime) -> str:
    return to_kst(value).isoformat(timespec="seconds")


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _parse_optional(value: Optional[str]) -> Optional[datetime]:
    return _parse_datetime(value) if value else None


def _dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, default=str)


def _load_json(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except ValueError:
        return default


def _optional_float(value: Any) -> Optional[float]:
    return float(value) if value is not None else None


class Database:
    """Simple wrapper around SQLite for persisting Townly state."""

    def __init__(self, path: Path, *, secret_key: Optional[str] = None) -> None:
        _ensure_directory(path)
        self._path = path
        self._cipher = self._build_cipher(secret_key)

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS user_roles (
                    clerk_user_id TEXT PRIMARY KEY,
                    role TEXT NOT NULL DEFAULT 'customer',
                    signup_method TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS user_profiles (
                    clerk_user_id TEXT PRIMARY KEY,
                    email TEXT,
                    name TEXT,
                    signup_method TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS user_locations (
                    clerk_user_id TEXT PRIMARY KEY,
                    location_name TEXT NOT NULL,
                    latitude REAL,
                    longitude REAL,
                    station_name TEXT,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS user_email_settings (
                    clerk_user_id TEXT PRIMARY KEY,
                    is_subscribed INTEGER NOT NULL DEFAULT 1,
                    receive_morning INTEGER NOT NULL DEFAULT 1,
                    receive_evening INTEGER NOT NULL DEFAULT 1,
                    total_emails_sent INTEGER NOT NULL DEFAULT 0,
                    last_email_sent_at TEXT
                );

                CREATE TABLE IF NOT EXISTS kakao_messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_key TEXT NOT NULL,
                    message TEXT NOT NULL,
                    message_type TEXT NOT NULL DEFAULT 'text',
                    ai_response TEXT,
                    response_type TEXT,
                    processing_time TEXT,
                    channel_id TEXT,
                    raw_data TEXT,
                    received_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS webhook_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    method TEXT NOT NULL,
                    url TEXT NOT NULL,
                    user_agent TEXT,
                    request_body TEXT,
                    request_headers TEXT,
                    status_code TEXT NOT NULL,
                    response_body TEXT,
                    processing_time TEXT,
                    error_message TEXT,
                    ip_address TEXT,
                    is_successful INTEGER NOT NULL DEFAULT 0,
                    timestamp TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS scheduled_messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL,
                    message TEXT NOT NULL,
                    schedule_type TEXT NOT NULL,
                    schedule_time TEXT NOT NULL,
                    schedule_day INTEGER,
                    timezone TEXT NOT NULL DEFAULT 'Asia/Seoul',
                    target_type TEXT NOT NULL DEFAULT 'all',
                    target_user_ids TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    next_send_at TEXT,
                    last_sent_at TEXT,
                    total_sent_count INTEGER NOT NULL DEFAULT 0,
                    created_by TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS scheduled_message_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    scheduled_message_id INTEGER NOT NULL REFERENCES scheduled_messages(id) ON DELETE CASCADE,
                    executed_at TEXT NOT NULL,
                    recipient_count INTEGER NOT NULL DEFAULT 0,
                    success_count INTEGER NOT NULL DEFAULT 0,
                    failure_count INTEGER NOT NULL DEFAULT 0,
                    error_message TEXT,
                    is_successful INTEGER NOT NULL DEFAULT 0,
                    execution_time_ms INTEGER NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS email_schedules (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL,
                    description TEXT,
                    email_subject TEXT NOT NULL,
                    email_template TEXT NOT NULL DEFAULT 'weather_summary',
                    schedule_time TEXT NOT NULL,
                    timezone TEXT NOT NULL DEFAULT 'Asia/Seoul',
                    target_type TEXT NOT NULL DEFAULT 'all_users',
                    target_user_ids TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    next_send_at TEXT,
                    last_sent_at TEXT,
                    total_sent_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS email_send_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email_schedule_id INTEGER REFERENCES email_schedules(id) ON DELETE SET NULL,
                    email_type TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    recipient_count INTEGER NOT NULL DEFAULT 0,
                    success_count INTEGER NOT NULL DEFAULT 0,
                    failure_count INTEGER NOT NULL DEFAULT 0,
                    is_successful INTEGER NOT NULL DEFAULT 0,
                    execution_time_ms INTEGER,
                    failed_emails TEXT,
                    initiated_by TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS individual_email_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email_send_log_id INTEGER NOT NULL REFERENCES email_send_logs(id) ON DELETE CASCADE,
                    clerk_user_id TEXT,
                    recipient_email TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    status TEXT NOT NULL,
                    sent_at TEXT,
                    gmail_message_id TEXT,
                    error_message TEXT
                );

                CREATE TABLE IF NOT EXISTS weather_location_keys (
                    cache_key TEXT PRIMARY KEY,
                    location_key TEXT NOT NULL,
                    location_name TEXT NOT NULL,
                    localized_name TEXT,
                    latitude REAL,
                    longitude REAL,
                    country TEXT,
                    administrative_area TEXT,
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS hourly_weather_data (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    clerk_user_id TEXT,
                    location_name TEXT NOT NULL,
                    location_key TEXT NOT NULL,
                    forecast_date TEXT NOT NULL,
                    forecast_hour INTEGER NOT NULL,
                    forecast_datetime TEXT NOT NULL,
                    temperature REAL NOT NULL,
                    conditions TEXT NOT NULL,
                    weather_icon INTEGER,
                    humidity INTEGER,
                    precipitation REAL NOT NULL DEFAULT 0,
                    precipitation_probability INTEGER NOT NULL DEFAULT 0,
                    rain_probability INTEGER NOT NULL DEFAULT 0,
                    wind_speed REAL NOT NULL DEFAULT 0,
                    units TEXT NOT NULL DEFAULT 'metric',
                    raw_data TEXT,
                    cache_key TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS daily_weather_data (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    clerk_user_id TEXT,
                    location_name TEXT NOT NULL,
                    location_key TEXT NOT NULL,
                    forecast_date TEXT NOT NULL,
                    day_of_week TEXT NOT NULL,
                    temperature INTEGER NOT NULL,
                    high_temp INTEGER NOT NULL,
                    low_temp INTEGER NOT NULL,
                    conditions TEXT NOT NULL,
                    weather_icon INTEGER,
                    precipitation_probability INTEGER NOT NULL DEFAULT 0,
                    rain_probability INTEGER NOT NULL DEFAULT 0,
                    day_weather TEXT,
                    night_weather TEXT,
                    headline TEXT,
                    units TEXT NOT NULL DEFAULT 'metric',
                    raw_data TEXT,
                    cache_key TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS weather_embeddings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    clerk_user_id TEXT,
                    content_type TEXT NOT NULL,
                    location_name TEXT NOT NULL,
                    forecast_date TEXT,
                    content TEXT NOT NULL,
                    embedding TEXT NOT NULL,
                    metadata TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS google_hourly_air_quality (
                    cache_key TEXT PRIMARY KEY,
                    clerk_user_id TEXT,
                    latitude REAL NOT NULL,
                    longitude REAL NOT NULL,
                    forecast_datetime TEXT NOT NULL,
                    pm10 INTEGER,
                    pm25 INTEGER,
                    cai_kr INTEGER,
                    breezometer_aqi INTEGER,
                    no2 INTEGER,
                    o3 INTEGER,
                    so2 INTEGER,
                    co INTEGER,
                    health_recommendations TEXT,
                    raw_data TEXT,
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS gmail_credentials (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    email TEXT,
                    refresh_token_encrypted TEXT NOT NULL,
                    scope TEXT,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS api_call_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    api_provider TEXT NOT NULL,
                    api_endpoint TEXT NOT NULL,
                    http_method TEXT NOT NULL DEFAULT 'GET',
                    call_date TEXT NOT NULL,
                    call_time TEXT NOT NULL,
                    http_status INTEGER,
                    response_time_ms INTEGER,
                    is_successful INTEGER NOT NULL DEFAULT 1,
                    user_id TEXT,
                    request_params TEXT,
                    error_message TEXT
                );

                CREATE TABLE IF NOT EXISTS daily_api_stats (
                    stat_date TEXT NOT NULL,
                    api_provider TEXT NOT NULL,
                    total_calls INTEGER NOT NULL DEFAULT 0,
                    successful_calls INTEGER NOT NULL DEFAULT 0,
                    failed_calls INTEGER NOT NULL DEFAULT 0,
                    avg_response_time INTEGER,
                    max_response_time INTEGER,
                    min_response_time INTEGER,
                    endpoint_stats TEXT,
                    hourly_stats TEXT,
                    is_finalized INTEGER NOT NULL DEFAULT 0,
                    last_updated TEXT NOT NULL,
                    PRIMARY KEY (stat_date, api_provider)
                );

                CREATE INDEX IF NOT EXISTS idx_kakao_messages_user ON kakao_messages(user_key);
                CREATE INDEX IF NOT EXISTS idx_scheduled_messages_due ON scheduled_messages(is_active, next_send_at);
                CREATE INDEX IF NOT EXISTS idx_email_schedules_due ON email_schedules(is_active, next_send_at);
                CREATE INDEX IF NOT EXISTS idx_hourly_weather_cache ON hourly_weather_data(cache_key);
                CREATE INDEX IF NOT EXISTS idx_hourly_weather_location ON hourly_weather_data(location_name, forecast_date);
                CREATE INDEX IF NOT EXISTS idx_daily_weather_cache ON daily_weather_data(cache_key);
                CREATE INDEX IF NOT EXISTS idx_daily_weather_location ON daily_weather_data(location_name, forecast_date);
                CREATE INDEX IF NOT EXISTS idx_embeddings_user ON weather_embeddings(clerk_user_id, created_at);
                CREATE INDEX IF NOT EXISTS idx_air_quality_position ON google_hourly_air_quality(latitude, longitude);
                CREATE INDEX IF NOT EXISTS idx_api_calls_provider_date ON api_call_logs(api_provider, call_date);
                """
            )

            columns = {
                row["name"]
                for row in conn.execute("PRAGMA table_info(user_roles)").fetchall()
            }
            if "signup_method" not in columns:
                conn.execute("ALTER TABLE user_roles ADD COLUMN signup_method TEXT")

            columns = {
                row["name"]
                for row in conn.execute("PRAGMA table_info(user_locations)").fetchall()
            }
            if "station_name" not in columns:
                conn.execute("ALTER TABLE user_locations ADD COLUMN station_name TEXT")

    def ping(self) -> bool:
        """Return ``True`` when the database file can be queried."""

        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
        except sqlite3.Error:
            return False
        return True

    # ------------------------------------------------------------------
    # Users, roles and profiles
    # ------------------------------------------------------------------
    def get_user_role(self, clerk_user_id: str) -> Optional[UserRole]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_roles WHERE clerk_user_id = ?",
                (clerk_user_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_user_role(row)

    def set_user_role(
        self,
        clerk_user_id: str,
        role: str,
        *,
        signup_method: Optional[str] = None,
    ) -> UserRole:
        """Insert or update the role assigned to a Clerk user."""

        if role not in USER_ROLES:
            raise ValueError(f"Unsupported role '{role}'")
        if not clerk_user_id.strip():
            raise ValueError("clerk_user_id must not be empty")

        now = _serialize_datetime(_current_timestamp())
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_roles (clerk_user_id, role, signup_method, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(clerk_user_id) DO UPDATE SET
                    role = excluded.role,
                    signup_method = COALESCE(excluded.signup_method, user_roles.signup_method),
                    updated_at = excluded.updated_at
                """,
                (clerk_user_id, role, signup_method, now, now),
            )

        stored = self.get_user_role(clerk_user_id)
        if stored is None:  # pragma: no cover - sqlite guarantees the upsert
            raise RuntimeError("Failed to persist user role")
        return stored

    def upsert_user_profile(
        self,
        clerk_user_id: str,
        *,
        email: Optional[str],
        name: Optional[str],
        signup_method: Optional[str] = None,
    ) -> UserProfile:
        normalized_email = email.strip().lower() if email else None
        now = _serialize_datetime(_current_timestamp())
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_profiles (clerk_user_id, email, name, signup_method, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(clerk_user_id) DO UPDATE SET
                    email = excluded.email,
                    name = excluded.name,
                    signup_method = COALESCE(excluded.signup_method, user_profiles.signup_method),
                    updated_at = excluded.updated_at
                """,
                (clerk_user_id, normalized_email, name, signup_method, now, now),
            )
            row = conn.execute(
                "SELECT * FROM user_profiles WHERE clerk_user_id = ?",
                (clerk_user_id,),
            ).fetchone()
        return self._row_to_user_profile(row)

    def get_user_profile(self, clerk_user_id: str) -> Optional[UserProfile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_profiles WHERE clerk_user_id = ?",
                (clerk_user_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_user_profile(row)

    def list_user_profiles(self) -> List[UserProfile]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM user_profiles ORDER BY created_at").fetchall()
        return [self._row_to_user_profile(row) for row in rows]

    def delete_user(self, clerk_user_id: str) -> bool:
        """Remove every per-user row; returns ``True`` if anything was deleted."""

        deleted = 0
        with self._connect() as conn:
            for table in ("user_roles", "user_profiles", "user_locations", "user_email_settings"):
                cursor = conn.execute(f"DELETE FROM {table} WHERE clerk_user_id = ?", (clerk_user_id,))
                deleted += cursor.rowcount
        return deleted > 0

    def set_user_location(
        self,
        clerk_user_id: str,
        *,
        location_name: str,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        station_name: Optional[str] = None,
    ) -> UserLocation:
        if not location_name.strip():
            raise ValueError("location_name must not be empty")
        now = _serialize_datetime(_current_timestamp())
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_locations (clerk_user_id, location_name, latitude, longitude, station_name, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(clerk_user_id) DO UPDATE SET
                    location_name = excluded.location_name,
                    latitude = excluded.latitude,
                    longitude = excluded.longitude,
                    station_name = excluded.station_name,
                    updated_at = excluded.updated_at
                """,
                (clerk_user_id, location_name.strip(), latitude, longitude, station_name, now),
            )
        location = self.get_user_location(clerk_user_id)
        if location is None:  # pragma: no cover - sqlite guarantees the upsert
            raise RuntimeError("Failed to persist user location")
        return location

    def get_user_location(self, clerk_user_id: str) -> Optional[UserLocation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_locations WHERE clerk_user_id = ?",
                (clerk_user_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_user_location(row)

    def list_user_locations(self) -> List[UserLocation]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM user_locations ORDER BY clerk_user_id").fetchall()
        return [self._row_to_user_location(row) for row in rows]

    def get_email_settings(self, clerk_user_id: str) -> EmailSettings:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_email_settings WHERE clerk_user_id = ?",
                (clerk_user_id,),
            ).fetchone()
        if row is None:
            return EmailSettings(clerk_user_id=clerk_user_id)
        return self._row_to_email_settings(row)

    def update_email_settings(
        self,
        clerk_user_id: str,
        *,
        is_subscribed: Optional[bool] = None,
        receive_morning: Optional[bool] = None,
        receive_evening: Optional[bool] = None,
    ) -> EmailSettings:
        current = self.get_email_settings(clerk_user_id)
        values = (
            clerk_user_id,
            int(current.is_subscribed if is_subscribed is None else is_subscribed),
            int(current.receive_morning if receive_morning is None else receive_morning),
            int(current.receive_evening if receive_evening is None else receive_evening),
            current.total_emails_sent,
            _serialize_optional(current.last_email_sent_at),
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_email_settings (
                    clerk_user_id, is_subscribed, receive_morning, receive_evening,
                    total_emails_sent, last_email_sent_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(clerk_user_id) DO UPDATE SET
                    is_subscribed = excluded.is_subscribed,
                    receive_morning = excluded.receive_morning,
                    receive_evening = excluded.receive_evening
                """,
                values,
            )
        return self.get_email_settings(clerk_user_id)

    def record_email_sent(self, clerk_user_id: str, sent_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_email_settings (clerk_user_id, total_emails_sent, last_email_sent_at)
                VALUES (?, 1, ?)
                ON CONFLICT(clerk_user_id) DO UPDATE SET
                    total_emails_sent = user_email_settings.total_emails_sent + 1,
                    last_email_sent_at = excluded.last_email_sent_at
                """,
                (clerk_user_id, _serialize_datetime(sent_at)),
            )

    def list_email_recipients(
        self,
        target_type: str,
        *,
        target_user_ids: Optional[Sequence[str]] = None,
        time_of_day: Optional[str] = None,
    ) -> List[EmailRecipient]:
        """Return subscribed users with an email address for a schedule target."""

        query = """
            SELECT p.clerk_user_id, p.email, l.location_name,
                   COALESCE(s.is_subscribed, 1) AS is_subscribed,
                   COALESCE(s.receive_morning, 1) AS receive_morning,
                   COALESCE(s.receive_evening, 1) AS receive_evening
              FROM user_profiles p
              LEFT JOIN user_email_settings s ON s.clerk_user_id = p.clerk_user_id
              LEFT JOIN user_locations l ON l.clerk_user_id = p.clerk_user_id
             WHERE p.email IS NOT NULL AND p.email != ''
             ORDER BY p.created_at
        """
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()

        wanted = set(target_user_ids or [])
        recipients: List[EmailRecipient] = []
        for row in rows:
            if target_type == "specific_users":
                if row["clerk_user_id"] not in wanted:
                    continue
            else:
                if not row["is_subscribed"]:
                    continue
                if time_of_day == "morning" and not row["receive_morning"]:
                    continue
                if time_of_day == "evening" and not row["receive_evening"]:
                    continue
                if target_type == "active_users" and not row["location_name"]:
                    continue
            recipients.append(
                EmailRecipient(
                    clerk_user_id=str(row["clerk_user_id"]),
                    email=str(row["email"]),
                    location_name=row["location_name"],
                )
            )
        return recipients

    # ------------------------------------------------------------------
    # Kakao messages and webhook logs
    # ------------------------------------------------------------------
    def insert_kakao_message(
        self,
        *,
        user_key: str,
        message: str,
        message_type: str = "text",
        ai_response: Optional[str] = None,
        response_type: Optional[str] = None,
        processing_time: Optional[str] = None,
        channel_id: Optional[str] = None,
        raw_data: Optional[Mapping[str, Any]] = None,
    ) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO kakao_messages (
                    user_key, message, message_type, ai_response, response_type,
                    processing_time, channel_id, raw_data, received_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_key,
                    message,
                    message_type,
                    ai_response,
                    response_type,
                    processing_time,
                    channel_id,
                    _dump_json(raw_data),
                    _serialize_datetime(_current_timestamp()),
                ),
            )
            return int(cursor.lastrowid)

    def list_kakao_messages(self, *, limit: int = 50, user_key: Optional[str] = None) -> List[KakaoMessage]:
        with self._connect() as conn:
            if user_key:
                rows = conn.execute(
                    "SELECT * FROM kakao_messages WHERE user_key = ? ORDER BY id DESC LIMIT ?",
                    (user_key, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM kakao_messages ORDER BY id DESC LIMIT ?",
                    (limit,),
                ).fetchall()
        return [self._row_to_kakao_message(row) for row in rows]

    def insert_webhook_log(
        self,
        *,
        method: str,
        url: str,
        status_code: int | str,
        is_successful: bool,
        user_agent: Optional[str] = None,
        request_body: Optional[str] = None,
        request_headers: Optional[Mapping[str, str]] = None,
        response_body: Optional[str] = None,
        processing_time: Optional[str] = None,
        error_message: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO webhook_logs (
                    method, url, user_agent, request_body, request_headers, status_code,
                    response_body, processing_time, error_message, ip_address, is_successful, timestamp
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    method,
                    url,
                    user_agent,
                    request_body,
                    _dump_json(dict(request_headers) if request_headers is not None else None),
                    str(status_code),
                    response_body,
                    processing_time,
                    error_message,
                    ip_address,
                    int(is_successful),
                    _serialize_datetime(_current_timestamp()),
                ),
            )
            return int(cursor.lastrowid)

    def list_webhook_logs(self, *, limit: int = 50) -> List[WebhookLog]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM webhook_logs ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._row_to_webhook_log(row) for row in rows]

    def webhook_log_summary(self, since: datetime) -> Dict[str, int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(CASE WHEN is_successful = 1 THEN 1 ELSE 0 END), 0) AS successful
                  FROM webhook_logs
                 WHERE timestamp >= ?
                """,
                (_serialize_datetime(since),),
            ).fetchone()
        total = int(row["total"])
        successful = int(row["successful"])
        return {"total": total, "successful": successful, "failed": total - successful}

    # ------------------------------------------------------------------
    # Scheduled Kakao messages
    # ------------------------------------------------------------------
    _SCHEDULED_MESSAGE_COLUMNS = {
        "title",
        "message",
        "schedule_type",
        "schedule_time",
        "schedule_day",
        "timezone",
        "target_type",
        "target_user_ids",
        "is_active",
        "next_send_at",
    }

    def create_scheduled_message(
        self,
        *,
        title: str,
        message: str,
        schedule_type: str,
        schedule_time: str,
        next_send_at: datetime,
        schedule_day: Optional[int] = None,
        timezone_name: str = "Asia/Seoul",
        target_type: str = "all",
        target_user_ids: Optional[Sequence[str]] = None,
        is_active: bool = True,
        created_by: Optional[str] = None,
    ) -> ScheduledMessage:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO scheduled_messages (
                    title, message, schedule_type, schedule_time, schedule_day, timezone,
                    target_type, target_user_ids, is_active, next_send_at, created_by, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    title,
                    message,
                    schedule_type,
                    schedule_time,
                    schedule_day,
                    timezone_name,
                    target_type,
                    _dump_json(list(target_user_ids or [])),
                    int(is_active),
                    _serialize_datetime(next_send_at),
                    created_by,
                    _serialize_datetime(_current_timestamp()),
                ),
            )
            message_id = int(cursor.lastrowid)

        created = self.get_scheduled_message(message_id)
        if created is None:  # pragma: no cover - sqlite guarantees the insert
            raise RuntimeError("Failed to persist scheduled message")
        return created

    def get_scheduled_message(self, message_id: int) -> Optional[ScheduledMessage]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM scheduled_messages WHERE id = ?", (message_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_scheduled_message(row)

    def list_scheduled_messages(self, *, active_only: bool = False) -> List[ScheduledMessage]:
        query = "SELECT * FROM scheduled_messages"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY created_at DESC, id DESC"
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [self._row_to_scheduled_message(row) for row in rows]

    def list_due_scheduled_messages(self, now: datetime) -> List[ScheduledMessage]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM scheduled_messages
                 WHERE is_active = 1 AND next_send_at IS NOT NULL AND next_send_at <= ?
                 ORDER BY next_send_at, id
                """,
                (_serialize_datetime(now),),
            ).fetchall()
        return [self._row_to_scheduled_message(row) for row in rows]

    def update_scheduled_message(self, message_id: int, **fields: Any) -> Optional[ScheduledMessage]:
        updates, values = self._build_updates(fields, self._SCHEDULED_MESSAGE_COLUMNS)
        if not updates:
            return self.get_scheduled_message(message_id)

        values.append(message_id)
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE scheduled_messages SET {', '.join(updates)} WHERE id = ?",
                values,
            )
            if cursor.rowcount == 0:
                return None
        return self.get_scheduled_message(message_id)

    def delete_scheduled_message(self, message_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM scheduled_messages WHERE id = ?", (message_id,))
        return cursor.rowcount > 0

    def mark_scheduled_message_sent(
        self,
        message_id: int,
        *,
        sent_at: datetime,
        next_send_at: datetime,
        deactivate: bool = False,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE scheduled_messages
                   SET last_sent_at = ?,
                       next_send_at = ?,
                       total_sent_count = total_sent_count + 1,
                       is_active = CASE WHEN ? THEN 0 ELSE is_active END
                 WHERE id = ?
                """,
                (
                    _serialize_datetime(sent_at),
                    _serialize_datetime(next_send_at),
                    int(deactivate),
                    message_id,
                ),
            )

    def insert_scheduled_message_log(
        self,
        message_id: int,
        *,
        executed_at: datetime,
        recipient_count: int,
        success_count: int,
        failure_count: int,
        is_successful: bool,
        execution_time_ms: int,
        error_message: Optional[str] = None,
    ) -> ScheduledMessageLog:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO scheduled_message_logs (
                    scheduled_message_id, executed_at, recipient_count, success_count,
                    failure_count, error_message, is_successful, execution_time_ms
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message_id,
                    _serialize_datetime(executed_at),
                    recipient_count,
                    success_count,
                    failure_count,
                    error_message,
                    int(is_successful),
                    execution_time_ms,
                ),
            )
            row = conn.execute(
                "SELECT * FROM scheduled_message_logs WHERE id = ?",
                (cursor.lastrowid,),
            ).fetchone()
        return self._row_to_scheduled_message_log(row)

    def list_scheduled_message_logs(
        self,
        *,
        message_id: Optional[int] = None,
        limit: int = 50,
    ) -> List[ScheduledMessageLog]:
        with self._connect() as conn:
            if message_id is not None:
                rows = conn.execute(
                    """
                    SELECT * FROM scheduled_message_logs
                     WHERE scheduled_message_id = ?
                     ORDER BY executed_at DESC, id DESC LIMIT ?
                    """,
                    (message_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM scheduled_message_logs ORDER BY executed_at DESC, id DESC LIMIT ?",
                    (limit,),
                ).fetchall()
        return [self._row_to_scheduled_message_log(row) for row in rows]

    def scheduled_message_stats(self, since: datetime) -> Dict[str, int]:
        with self._connect() as conn:
            totals = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(CASE WHEN is_active = 1 THEN 1 ELSE 0 END), 0) AS active
                  FROM scheduled_messages
                """
            ).fetchone()
            sent = conn.execute(
                """
                SELECT COUNT(*) AS successful FROM scheduled_message_logs
                 WHERE is_successful = 1 AND executed_at >= ?
                """,
                (_serialize_datetime(since),),
            ).fetchone()
        return {
            "total_messages": int(totals["total"]),
            "active_messages": int(totals["active"]),
            "recent_successful_sends": int(sent["successful"]),
        }

    # ------------------------------------------------------------------
    # Email schedules and send logs
    # ------------------------------------------------------------------
    _EMAIL_SCHEDULE_COLUMNS = {
        "title",
        "description",
        "email_subject",
        "email_template",
        "schedule_time",
        "timezone",
        "target_type",
        "target_user_ids",
        "is_active",
        "next_send_at",
    }

    def create_email_schedule(
        self,
        *,
        title: str,
        email_subject: str,
        schedule_time: str,
        next_send_at: datetime,
        description: Optional[str] = None,
        email_template: str = "weather_summary",
        timezone_name: str = "Asia/Seoul",
        target_type: str = "all_users",
        target_user_ids: Optional[Sequence[str]] = None,
        is_active: bool = True,
    ) -> EmailSchedule:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO email_schedules (
                    title, description, email_subject, email_template, schedule_time, timezone,
                    target_type, target_user_ids, is_active, next_send_at, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    title,
                    description,
                    email_subject,
                    email_template,
                    schedule_time,
                    timezone_name,
                    target_type,
                    _dump_json(list(target_user_ids or [])),
                    int(is_active),
                    _serialize_datetime(next_send_at),
                    _serialize_datetime(_current_timestamp()),
                ),
            )
            schedule_id = int(cursor.lastrowid)

        created = self.get_email_schedule(schedule_id)
        if created is None:  # pragma: no cover - sqlite guarantees the insert
            raise RuntimeError("Failed to persist email schedule")
        return created

    def get_email_schedule(self, schedule_id: int) -> Optional[EmailSchedule]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM email_schedules WHERE id = ?", (schedule_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_email_schedule(row)

    def list_email_schedules(self) -> List[EmailSchedule]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM email_schedules ORDER BY schedule_time, id").fetchall()
        return [self._row_to_email_schedule(row) for row in rows]

    def list_due_email_schedules(self, now: datetime) -> List[EmailSchedule]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM email_schedules
                 WHERE is_active = 1 AND next_send_at IS NOT NULL AND next_send_at <= ?
                 ORDER BY next_send_at, id
                """,
                (_serialize_datetime(now),),
            ).fetchall()
        return [self._row_to_email_schedule(row) for row in rows]

    def update_email_schedule(self, schedule_id: int, **fields: Any) -> Optional[EmailSchedule]:
        updates, values = self._build_updates(fields, self._EMAIL_SCHEDULE_COLUMNS)
        if not updates:
            return self.get_email_schedule(schedule_id)

        values.append(schedule_id)
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE email_schedules SET {', '.join(updates)} WHERE id = ?",
                values,
            )
            if cursor.rowcount == 0:
                return None
        return self.get_email_schedule(schedule_id)

    def delete_email_schedule(self, schedule_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM email_schedules WHERE id = ?", (schedule_id,))
        return cursor.rowcount > 0

    def mark_email_schedule_sent(self, schedule_id: int, *, sent_at: datetime, next_send_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE email_schedules
                   SET last_sent_at = ?, next_send_at = ?, total_sent_count = total_sent_count + 1
                 WHERE id = ?
                """,
                (_serialize_datetime(sent_at), _serialize_datetime(next_send_at), schedule_id),
            )

    def insert_email_send_log(
        self,
        *,
        email_type: str,
        subject: str,
        recipient_count: int,
        initiated_by: str,
        email_schedule_id: Optional[int] = None,
    ) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO email_send_logs (
                    email_schedule_id, email_type, subject, recipient_count, initiated_by, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    email_schedule_id,
                    email_type,
                    subject,
                    recipient_count,
                    initiated_by,
                    _serialize_datetime(_current_timestamp()),
                ),
            )
            return int(cursor.lastrowid)

    def complete_email_send_log(
        self,
        log_id: int,
        *,
        success_count: int,
        failure_count: int,
        execution_time_ms: int,
        failed_emails: Sequence[Mapping[str, Any]],
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE email_send_logs
                   SET success_count = ?, failure_count = ?, is_successful = ?,
                       execution_time_ms = ?, failed_emails = ?
                 WHERE id = ?
                """,
                (
                    success_count,
                    failure_count,
                    int(failure_count == 0),
                    execution_time_ms,
                    _dump_json([dict(item) for item in failed_emails]),
                    log_id,
                ),
            )

    def insert_individual_email_log(
        self,
        log_id: int,
        *,
        clerk_user_id: Optional[str],
        recipient_email: str,
        subject: str,
        status: str,
        sent_at: Optional[datetime] = None,
        gmail_message_id: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO individual_email_logs (
                    email_send_log_id, clerk_user_id, recipient_email, subject, status,
                    sent_at, gmail_message_id, error_message
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    log_id,
                    clerk_user_id,
                    recipient_email,
                    subject,
                    status,
                    _serialize_optional(sent_at),
                    gmail_message_id,
                    error_message,
                ),
            )

    def list_email_send_logs(self, *, limit: int = 50) -> List[EmailSendLog]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM email_send_logs ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._row_to_email_send_log(row) for row in rows]

    def list_individual_email_logs(self, log_id: int) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM individual_email_logs WHERE email_send_log_id = ? ORDER BY id",
                (log_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # Weather cache
    # ------------------------------------------------------------------
    def get_location_key(self, cache_key: str, now: datetime) -> Optional[LocationKey]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM weather_location_keys WHERE cache_key = ? AND expires_at >= ?",
                (cache_key, _serialize_datetime(now)),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_location_key(row)

    def upsert_location_key(self, location: LocationKey) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO weather_location_keys (
                    cache_key, location_key, location_name, localized_name, latitude, longitude,
                    country, administrative_area, created_at, expires_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(cache_key) DO UPDATE SET
                    location_key = excluded.location_key,
                    location_name = excluded.location_name,
                    localized_name = excluded.localized_name,
                    latitude = excluded.latitude,
                    longitude = excluded.longitude,
                    country = excluded.country,
                    administrative_area = excluded.administrative_area,
                    expires_at = excluded.expires_at
                """,
                (
                    location.cache_key,
                    location.location_key,
                    location.location_name,
                    location.localized_name,
                    location.latitude,
                    location.longitude,
                    location.country,
                    location.administrative_area,
                    _serialize_datetime(_current_timestamp()),
                    _serialize_datetime(location.expires_at),
                ),
            )

    def replace_hourly_weather(
        self,
        cache_key: str,
        forecasts: Iterable[HourlyForecast],
        *,
        expires_at: datetime,
        created_at: Optional[datetime] = None,
    ) -> int:
        """Replace every cached hourly row for ``cache_key``; returns rows written."""

        created = _serialize_datetime(created_at or _current_timestamp())
        expires = _serialize_datetime(expires_at)
        rows = [
            (
                item.clerk_user_id,
                item.location_name,
                item.location_key,
                item.forecast_date,
                item.forecast_hour,
                _serialize_local(item.forecast_datetime),
                item.temperature,
                item.conditions,
                item.weather_icon,
                item.humidity,
                item.precipitation,
                item.precipitation_probability,
                item.rain_probability,
                item.wind_speed,
                item.units,
                _dump_json(item.raw),
                cache_key,
                created,
                expires,
            )
            for item in forecasts
        ]
        with self._connect() as conn:
            conn.execute("DELETE FROM hourly_weather_data WHERE cache_key = ?", (cache_key,))
            conn.executemany(
                """
                INSERT INTO hourly_weather_data (
                    clerk_user_id, location_name, location_key, forecast_date, forecast_hour,
                    forecast_datetime, temperature, conditions, weather_icon, humidity, precipitation,
                    precipitation_probability, rain_probability, wind_speed, units, raw_data,
                    cache_key, created_at, expires_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
        return len(rows)

    def get_hourly_weather(self, cache_key: str, now: datetime) -> List[HourlyForecast]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM hourly_weather_data
                 WHERE cache_key = ? AND expires_at >= ?
                 ORDER BY forecast_datetime
                """,
                (cache_key, _serialize_datetime(now)),
            ).fetchall()
        return [self._row_to_hourly(row) for row in rows]

    def find_hourly_weather(
        self,
        location_name: str,
        now: datetime,
        *,
        forecast_date: Optional[str] = None,
        clerk_user_id: Optional[str] = None,
        limit: int = 12,
        newest_first: bool = False,
    ) -> List[HourlyForecast]:
        clauses = ["location_name = ?", "expires_at >= ?"]
        params: List[Any] = [location_name, _serialize_datetime(now)]
        if forecast_date is not None:
            clauses.append("forecast_date = ?")
            params.append(forecast_date)
        if clerk_user_id is not None:
            clauses.append("clerk_user_id = ?")
            params.append(clerk_user_id)
        order = "DESC" if newest_first else "ASC"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM hourly_weather_data
                 WHERE {' AND '.join(clauses)}
                 ORDER BY forecast_datetime {order}
                 LIMIT ?
                """,
                params,
            ).fetchall()
        return [self._row_to_hourly(row) for row in rows]

    def replace_daily_weather(
        self,
        cache_key: str,
        forecasts: Iterable[DailyForecast],
        *,
        expires_at: datetime,
        created_at: Optional[datetime] = None,
    ) -> int:
        created = _serialize_datetime(created_at or _current_timestamp())
        expires = _serialize_datetime(expires_at)
        rows = [
            (
                item.clerk_user_id,
                item.location_name,
                item.location_key,
                item.forecast_date,
                item.day_of_week,
                item.temperature,
                item.high_temp,
                item.low_temp,
                item.conditions,
                item.weather_icon,
                item.precipitation_probability,
                item.rain_probability,
                _dump_json(item.day_weather),
                _dump_json(item.night_weather),
                _dump_json(item.headline),
                item.units,
                _dump_json(item.raw),
                cache_key,
                created,
                expires,
            )
            for item in forecasts
        ]
        with self._connect() as conn:
            conn.execute("DELETE FROM daily_weather_data WHERE cache_key = ?", (cache_key,))
            conn.executemany(
                """
                INSERT INTO daily_weather_data (
                    clerk_user_id, location_name, location_key, forecast_date, day_of_week,
                    temperature, high_temp, low_temp, conditions, weather_icon,
                    precipitation_probability, rain_probability, day_weather, night_weather,
                    headline, units, raw_data, cache_key, created_at, expires_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
        return len(rows)

    def get_daily_weather(self, cache_key: str, now: datetime) -> List[DailyForecast]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM daily_weather_data
                 WHERE cache_key = ? AND expires_at >= ?
                 ORDER BY forecast_date
                """,
                (cache_key, _serialize_datetime(now)),
            ).fetchall()
        return [self._row_to_daily(row) for row in rows]

    def find_daily_weather(
        self,
        location_name: str,
        now: datetime,
        *,
        forecast_date: Optional[str] = None,
        clerk_user_id: Optional[str] = None,
        limit: int = 5,
    ) -> List[DailyForecast]:
        clauses = ["location_name = ?", "expires_at >= ?"]
        params: List[Any] = [location_name, _serialize_datetime(now)]
        if forecast_date is not None:
            clauses.append("forecast_date = ?")
            params.append(forecast_date)
        if clerk_user_id is not None:
            clauses.append("clerk_user_id = ?")
            params.append(clerk_user_id)
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM daily_weather_data
                 WHERE {' AND '.join(clauses)}
                 GROUP BY forecast_date
                 ORDER BY forecast_date
                 LIMIT ?
                """,
                params,
            ).fetchall()
        return [self._row_to_daily(row) for row in rows]

    def delete_expired_weather(self, now: datetime) -> Dict[str, int]:
        """Delete expired cache rows from every weather table."""

        cutoff = _serialize_datetime(now)
        removed: Dict[str, int] = {}
        with self._connect() as conn:
            for table in ("weather_location_keys", "hourly_weather_data", "daily_weather_data"):
                cursor = conn.execute(f"DELETE FROM {table} WHERE expires_at < ?", (cutoff,))
                removed[table] = cursor.rowcount
        return removed

    def delete_embeddings_before(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM weather_embeddings WHERE created_at < ?",
                (_serialize_datetime(cutoff),),
            )
        return cursor.rowcount

    def clear_weather_cache(self, kind: str = "all") -> Dict[str, int]:
        tables = {
            "location": ("weather_location_keys",),
            "hourly": ("hourly_weather_data",),
            "daily": ("daily_weather_data",),
            "all": ("weather_location_keys", "hourly_weather_data", "daily_weather_data"),
        }
        if kind not in tables:
            raise ValueError(f"Unknown cache kind '{kind}'")
        removed: Dict[str, int] = {}
        with self._connect() as conn:
            for table in tables[kind]:
                cursor = conn.execute(f"DELETE FROM {table}")
                removed[table] = cursor.rowcount
        return removed

    def weather_cache_stats(self, now: datetime) -> Dict[str, Dict[str, int]]:
        cutoff = _serialize_datetime(now)
        stats: Dict[str, Dict[str, int]] = {}
        with self._connect() as conn:
            for table in ("weather_location_keys", "hourly_weather_data", "daily_weather_data"):
                row = conn.execute(
                    f"""
                    SELECT COUNT(*) AS total,
                           COALESCE(SUM(CASE WHEN expires_at >= ? THEN 1 ELSE 0 END), 0) AS valid
                      FROM {table}
                    """,
                    (cutoff,),
                ).fetchone()
                total = int(row["total"])
                valid = int(row["valid"])
                stats[table] = {"total": total, "valid": valid, "expired": total - valid}
        return stats

    def list_weather_cache_lifetimes(self) -> List[Tuple[datetime, datetime]]:
        """Return ``(created_at, expires_at)`` for every hourly and daily row."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT created_at, expires_at FROM hourly_weather_data
                UNION ALL
                SELECT created_at, expires_at FROM daily_weather_data
                """
            ).fetchall()
        return [(_parse_datetime(row["created_at"]), _parse_datetime(row["expires_at"])) for row in rows]

    def list_user_weather_activity(self, clerk_user_id: str, since: datetime) -> List[Tuple[datetime, str]]:
        """Return ``(created_at, location_name)`` for each distinct cached query of a user."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT cache_key, created_at, location_name FROM hourly_weather_data
                 WHERE clerk_user_id = ? AND created_at >= ?
                UNION
                SELECT DISTINCT cache_key, created_at, location_name FROM daily_weather_data
                 WHERE clerk_user_id = ? AND created_at >= ?
                """,
                (clerk_user_id, _serialize_datetime(since), clerk_user_id, _serialize_datetime(since)),
            ).fetchall()
        return [(_parse_datetime(row["created_at"]), str(row["location_name"])) for row in rows]

    def list_weather_user_ids(self) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT clerk_user_id FROM hourly_weather_data WHERE clerk_user_id IS NOT NULL
                UNION
                SELECT DISTINCT clerk_user_id FROM daily_weather_data WHERE clerk_user_id IS NOT NULL
                """
            ).fetchall()
        return sorted(str(row["clerk_user_id"]) for row in rows)

    # ------------------------------------------------------------------
    # Weather embeddings
    # ------------------------------------------------------------------
    def insert_weather_embedding(
        self,
        *,
        clerk_user_id: Optional[str],
        content_type: str,
        location_name: str,
        content: str,
        embedding: Sequence[float],
        forecast_date: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> WeatherEmbedding:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO weather_embeddings (
                    clerk_user_id, content_type, location_name, forecast_date, content,
                    embedding, metadata, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    clerk_user_id,
                    content_type,
                    location_name,
                    forecast_date,
                    content,
                    json.dumps([float(value) for value in embedding]),
                    _dump_json(dict(metadata or {})),
                    _serialize_datetime(created_at or _current_timestamp()),
                ),
            )
            row = conn.execute("SELECT * FROM weather_embeddings WHERE id = ?", (cursor.lastrowid,)).fetchone()
        return self._row_to_embedding(row)

    def list_recent_embeddings(self, clerk_user_id: Optional[str], *, limit: int = 20) -> List[WeatherEmbedding]:
        with self._connect() as conn:
            if clerk_user_id is None:
                rows = conn.execute(
                    "SELECT * FROM weather_embeddings ORDER BY created_at DESC, id DESC LIMIT ?",
                    (limit,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM weather_embeddings
                     WHERE clerk_user_id = ?
                     ORDER BY created_at DESC, id DESC LIMIT ?
                    """,
                    (clerk_user_id, limit),
                ).fetchall()
        return [self._row_to_embedding(row) for row in rows]

    # ------------------------------------------------------------------
    # Air quality cache
    # ------------------------------------------------------------------
    def upsert_air_quality(
        self,
        cache_key: str,
        reading: AirQualityReading,
        *,
        latitude: float,
        longitude: float,
        expires_at: datetime,
        clerk_user_id: Optional[str] = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO google_hourly_air_quality (
                    cache_key, clerk_user_id, latitude, longitude, forecast_datetime, pm10, pm25,
                    cai_kr, breezometer_aqi, no2, o3, so2, co, health_recommendations, raw_data,
                    created_at, expires_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(cache_key) DO UPDATE SET
                    clerk_user_id = excluded.clerk_user_id,
                    pm10 = excluded.pm10,
                    pm25 = excluded.pm25,
                    cai_kr = excluded.cai_kr,
                    breezometer_aqi = excluded.breezometer_aqi,
                    no2 = excluded.no2,
                    o3 = excluded.o3,
                    so2 = excluded.so2,
                    co = excluded.co,
                    health_recommendations = excluded.health_recommendations,
                    raw_data = excluded.raw_data,
                    expires_at = excluded.expires_at
                """,
                (
                    cache_key,
                    clerk_user_id,
                    latitude,
                    longitude,
                    _serialize_datetime(reading.forecast_datetime),
                    reading.pm10,
                    reading.pm25,
                    reading.cai_kr,
                    reading.breezometer_aqi,
                    reading.no2,
                    reading.o3,
                    reading.so2,
                    reading.co,
                    _dump_json(reading.health_recommendations),
                    _dump_json(reading.raw),
                    _serialize_datetime(_current_timestamp()),
                    _serialize_datetime(expires_at),
                ),
            )

    def get_air_quality(
        self,
        latitude: float,
        longitude: float,
        now: datetime,
        *,
        clerk_user_id: Optional[str] = None,
    ) -> List[AirQualityReading]:
        clauses = ["latitude = ?", "longitude = ?", "expires_at >= ?", "forecast_datetime >= ?"]
        current_hour = ensure_aware(now).astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)
        params: List[Any] = [latitude, longitude, _serialize_datetime(now), _serialize_datetime(current_hour)]
        if clerk_user_id is not None:
            clauses.append("clerk_user_id = ?")
            params.append(clerk_user_id)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM google_hourly_air_quality
                 WHERE {' AND '.join(clauses)}
                 ORDER BY forecast_datetime
                """,
                params,
            ).fetchall()
        return [self._row_to_air_quality(row) for row in rows]

    def delete_expired_air_quality(self, now: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM google_hourly_air_quality WHERE expires_at < ?",
                (_serialize_datetime(now),),
            )
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Gmail credentials
    # ------------------------------------------------------------------
    def save_gmail_credentials(self, *, refresh_token: str, email: Optional[str], scope: Optional[str]) -> None:
        if not refresh_token:
            raise ValueError("Refresh token must not be empty")
        encrypted = self._encrypt_secret(refresh_token)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO gmail_credentials (id, email, refresh_token_encrypted, scope, updated_at)
                VALUES (1, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    email = excluded.email,
                    refresh_token_encrypted = excluded.refresh_token_encrypted,
                    scope = excluded.scope,
                    updated_at = excluded.updated_at
                """,
                (email, encrypted, scope, _serialize_datetime(_current_timestamp())),
            )

    def get_gmail_credentials(self) -> Optional[GmailCredentials]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM gmail_credentials WHERE id = 1").fetchone()
        if row is None:
            return None
        return GmailCredentials(
            email=row["email"],
            refresh_token=self._decrypt_secret(str(row["refresh_token_encrypted"])),
            scope=row["scope"],
            updated_at=_parse_datetime(str(row["updated_at"])),
        )

    def delete_gmail_credentials(self) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM gmail_credentials WHERE id = 1")
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # API usage tracking
    # ------------------------------------------------------------------
    def insert_api_call(
        self,
        *,
        provider: str,
        endpoint: str,
        method: str,
        call_time: datetime,
        http_status: Optional[int],
        response_time_ms: Optional[int],
        is_successful: bool,
        user_id: Optional[str] = None,
        request_params: Optional[Mapping[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> None:
        call_time = ensure_aware(call_time).astimezone(timezone.utc)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO api_call_logs (
                    api_provider, api_endpoint, http_method, call_date, call_time, http_status,
                    response_time_ms, is_successful, user_id, request_params, error_message
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    provider,
                    endpoint,
                    method,
                    call_time.date().isoformat(),
                    _serialize_datetime(call_time),
                    http_status,
                    response_time_ms,
                    int(is_successful),
                    user_id,
                    _dump_json(dict(request_params) if request_params else None),
                    error_message,
                ),
            )

    def count_api_calls(self, provider: str, call_date: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM api_call_logs WHERE api_provider = ? AND call_date = ?",
                (provider, call_date),
            ).fetchone()
        return int(row["total"])

    def refresh_daily_api_stats(self, provider: str, stat_date: str) -> None:
        """Recompute the aggregated statistics row for ``provider`` on ``stat_date``."""

        with self._connect() as conn:
            totals = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(CASE WHEN is_successful = 1 THEN 1 ELSE 0 END), 0) AS successful,
                       AVG(response_time_ms) AS avg_time,
                       MAX(response_time_ms) AS max_time,
                       MIN(response_time_ms) AS min_time
                  FROM api_call_logs
                 WHERE api_provider = ? AND call_date = ?
                """,
                (provider, stat_date),
            ).fetchone()
            hourly_rows = conn.execute(
                """
                SELECT CAST(substr(call_time, 12, 2) AS INTEGER) AS hour, COUNT(*) AS calls
                  FROM api_call_logs
                 WHERE api_provider = ? AND call_date = ?
                 GROUP BY hour
                 ORDER BY hour
                """,
                (provider, stat_date),
            ).fetchall()
            endpoint_rows = conn.execute(
                """
                SELECT api_endpoint,
                       COUNT(*) AS calls,
                       COALESCE(SUM(CASE WHEN is_successful = 1 THEN 1 ELSE 0 END), 0) AS successful
                  FROM api_call_logs
                 WHERE api_provider = ? AND call_date = ?
                 GROUP BY api_endpoint
                """,
                (provider, stat_date),
            ).fetchall()

            total = int(totals["total"])
            successful = int(totals["successful"])
            endpoint_stats = {
                str(row["api_endpoint"]): {
                    "calls": int(row["calls"]),
                    "successful": int(row["successful"]),
                    "failed": int(row["calls"]) - int(row["successful"]),
                }
                for row in endpoint_rows
            }
            hourly_stats = [{"hour": int(row["hour"]), "calls": int(row["calls"])} for row in hourly_rows]
            avg_time = totals["avg_time"]

            conn.execute(
                """
                INSERT INTO daily_api_stats (
                    stat_date, api_provider, total_calls, successful_calls, failed_calls,
                    avg_response_time, max_response_time, min_response_time, endpoint_stats,
                    hourly_stats, is_finalized, last_updated
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                ON CONFLICT(stat_date, api_provider) DO UPDATE SET
                    total_calls = excluded.total_calls,
                    successful_calls = excluded.successful_calls,
                    failed_calls = excluded.failed_calls,
                    avg_response_time = excluded.avg_response_time,
                    max_response_time = excluded.max_response_time,
                    min_response_time = excluded.min_response_time,
                    endpoint_stats = excluded.endpoint_stats,
                    hourly_stats = excluded.hourly_stats,
                    last_updated = excluded.last_updated
                """,
                (
                    stat_date,
                    provider,
                    total,
                    successful,
                    total - successful,
                    int(round(avg_time)) if avg_time is not None else None,
                    totals["max_time"],
                    totals["min_time"],
                    _dump_json(endpoint_stats),
                    _dump_json(hourly_stats),
                    _serialize_datetime(_current_timestamp()),
                ),
            )

    def get_daily_api_stats(self, provider: str, stat_date: str) -> Optional[DailyApiStats]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM daily_api_stats WHERE api_provider = ? AND stat_date = ?",
                (provider, stat_date),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_daily_api_stats(row)

    def list_daily_api_stats(self, provider: str, *, limit: int = 7) -> List[DailyApiStats]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM daily_api_stats
                 WHERE api_provider = ?
                 ORDER BY stat_date DESC LIMIT ?
                """,
                (provider, limit),
            ).fetchall()
        return [self._row_to_daily_api_stats(row) for row in rows]

    def finalize_daily_api_stats(self, stat_date: str) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE daily_api_stats SET is_finalized = 1, last_updated = ? WHERE stat_date = ?",
                (_serialize_datetime(_current_timestamp()), stat_date),
            )
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _build_updates(fields: Mapping[str, Any], allowed: Iterable[str]) -> Tuple[List[str], List[Any]]:
        allowed_columns = set(allowed)
        updates: List[str] = []
        values: List[Any] = []
        for column, value in fields.items():
            if column not in allowed_columns:
                raise ValueError(f"Unknown column '{column}'")
            if column == "is_active":
                value = int(bool(value))
            elif column == "target_user_ids":
                value = _dump_json(list(value or []))
            elif isinstance(value, datetime):
                value = _serialize_datetime(value)
            updates.append(f"{column} = ?")
            values.append(value)
        return updates, values

    def _row_to_user_role(self, row: sqlite3.Row) -> UserRole:
        return UserRole(
            clerk_user_id=str(row["clerk_user_id"]),
            role=str(row["role"]),
            signup_method=row["signup_method"],
            created_at=_parse_datetime(str(row["created_at"])),
            updated_at=_parse_datetime(str(row["updated_at"])),
        )

    def _row_to_user_profile(self, row: sqlite3.Row) -> UserProfile:
        return UserProfile(
            clerk_user_id=str(row["clerk_user_id"]),
            email=row["email"],
            name=row["name"],
            signup_method=row["signup_method"],
            created_at=_parse_datetime(str(row["created_at"])),
            updated_at=_parse_datetime(str(row["updated_at"])),
        )

    def _row_to_user_location(self, row: sqlite3.Row) -> UserLocation:
        return UserLocation(
            clerk_user_id=str(row["clerk_user_id"]),
            location_name=str(row["location_name"]),
            latitude=_optional_float(row["latitude"]),
            longitude=_optional_float(row["longitude"]),
            station_name=row["station_name"],
            updated_at=_parse_datetime(str(row["updated_at"])),
        )

    def _row_to_email_settings(self, row: sqlite3.Row) -> EmailSettings:
        return EmailSettings(
            clerk_user_id=str(row["clerk_user_id"]),
            is_subscribed=bool(row["is_subscribed"]),
            receive_morning=bool(row["receive_morning"]),
            receive_evening=bool(row["receive_evening"]),
            total_emails_sent=int(row["total_emails_sent"]),
            last_email_sent_at=_parse_optional(row["last_email_sent_at"]),
        )

    def _row_to_kakao_message(self, row: sqlite3.Row) -> KakaoMessage:
        return KakaoMessage(
            id=int(row["id"]),
            user_key=str(row["user_key"]),
            message=str(row["message"]),
            message_type=str(row["message_type"]),
            ai_response=row["ai_response"],
            response_type=row["response_type"],
            processing_time=row["processing_time"],
            channel_id=row["channel_id"],
            received_at=_parse_datetime(str(row["received_at"])),
        )

    def _row_to_webhook_log(self, row: sqlite3.Row) -> WebhookLog:
        return WebhookLog(
            id=int(row["id"]),
            method=str(row["method"]),
            url=str(row["url"]),
            status_code=str(row["status_code"]),
            is_successful=bool(row["is_successful"]),
            processing_time=row["processing_time"],
            error_message=row["error_message"],
            ip_address=row["ip_address"],
            user_agent=row["user_agent"],
            request_body=row["request_body"],
            response_body=row["response_body"],
            timestamp=_parse_datetime(str(row["timestamp"])),
        )

    def _row_to_scheduled_message(self, row: sqlite3.Row) -> ScheduledMessage:
        return ScheduledMessage(
            id=int(row["id"]),
            title=str(row["title"]),
            message=str(row["message"]),
            schedule_type=str(row["schedule_type"]),
            schedule_time=str(row["schedule_time"]),
            schedule_day=row["schedule_day"],
            timezone=str(row["timezone"]),
            target_type=str(row["target_type"]),
            target_user_ids=list(_load_json(row["target_user_ids"], [])),
            is_active=bool(row["is_active"]),
            next_send_at=_parse_optional(row["next_send_at"]),
            last_sent_at=_parse_optional(row["last_sent_at"]),
            total_sent_count=int(row["total_sent_count"]),
            created_by=row["created_by"],
            created_at=_parse_datetime(str(row["created_at"])),
        )

    def _row_to_scheduled_message_log(self, row: sqlite3.Row) -> ScheduledMessageLog:
        return ScheduledMessageLog(
            id=int(row["id"]),
            scheduled_message_id=int(row["scheduled_message_id"]),
            executed_at=_parse_datetime(str(row["executed_at"])),
            recipient_count=int(row["recipient_count"]),
            success_count=int(row["success_count"]),
            failure_count=int(row["failure_count"]),
            error_message=row["error_message"],
            is_successful=bool(row["is_successful"]),
            execution_time_ms=int(row["execution_time_ms"]),
        )

    def _row_to_email_schedule(self, row: sqlite3.Row) -> EmailSchedule:
        return EmailSchedule(
            id=int(row["id"]),
            title=str(row["title"]),
            description=row["description"],
            email_subject=str(row["email_subject"]),
            email_template=str(row["email_template"]),
            schedule_time=str(row["schedule_time"]),
            timezone=str(row["timezone"]),
            target_type=str(row["target_type"]),
            target_user_ids=list(_load_json(row["target_user_ids"], [])),
            is_active=bool(row["is_active"]),
            next_send_at=_parse_optional(row["next_send_at"]),
            last_sent_at=_parse_optional(row["last_sent_at"]),
            total_sent_count=int(row["total_sent_count"]),
            created_at=_parse_datetime(str(row["created_at"])),
        )

    def _row_to_email_send_log(self, row: sqlite3.Row) -> EmailSendLog:
        return EmailSendLog(
            id=int(row["id"]),
            email_schedule_id=row["email_schedule_id"],
            email_type=str(row["email_type"]),
            subject=str(row["subject"]),
            recipient_count=int(row["recipient_count"]),
            success_count=int(row["success_count"]),
            failure_count=int(row["failure_count"]),
            is_successful=bool(row["is_successful"]),
            execution_time_ms=row["execution_time_ms"],
            failed_emails=list(_load_json(row["failed_emails"], [])),
            initiated_by=str(row["initiated_by"]),
            created_at=_parse_datetime(str(row["created_at"])),
        )

    def _row_to_location_key(self, row: sqlite3.Row) -> LocationKey:
        return LocationKey(
            cache_key=str(row["cache_key"]),
            location_key=str(row["location_key"]),
            location_name=str(row["location_name"]),
            localized_name=row["localized_name"],
            latitude=_optional_float(row["latitude"]),
            longitude=_optional_float(row["longitude"]),
            country=row["country"],
            administrative_area=row["administrative_area"],
            expires_at=_parse_datetime(str(row["expires_at"])),
        )

    def _row_to_hourly(self, row: sqlite3.Row) -> HourlyForecast:
        return HourlyForecast(
            location_name=str(row["location_name"]),
            location_key=str(row["location_key"]),
            forecast_datetime=_parse_datetime(str(row["forecast_datetime"])),
            temperature=float(row["temperature"]),
            conditions=str(row["conditions"]),
            weather_icon=row["weather_icon"],
            humidity=row["humidity"],
            precipitation=float(row["precipitation"]),
            precipitation_probability=int(row["precipitation_probability"]),
            rain_probability=int(row["rain_probability"]),
            wind_speed=float(row["wind_speed"]),
            units=str(row["units"]),
            clerk_user_id=row["clerk_user_id"],
            raw=_load_json(row["raw_data"], {}),
            created_at=_parse_datetime(str(row["created_at"])),
            expires_at=_parse_datetime(str(row["expires_at"])),
        )

    def _row_to_daily(self, row: sqlite3.Row) -> DailyForecast:
        return DailyForecast(
            location_name=str(row["location_name"]),
            location_key=str(row["location_key"]),
            forecast_date=str(row["forecast_date"]),
            day_of_week=str(row["day_of_week"]),
            temperature=int(row["temperature"]),
            high_temp=int(row["high_temp"]),
            low_temp=int(row["low_temp"]),
            conditions=str(row["conditions"]),
            weather_icon=row["weather_icon"],
            precipitation_probability=int(row["precipitation_probability"]),
            rain_probability=int(row["rain_probability"]),
            day_weather=_load_json(row["day_weather"], {}),
            night_weather=_load_json(row["night_weather"], {}),
            headline=_load_json(row["headline"], {}),
            units=str(row["units"]),
            clerk_user_id=row["clerk_user_id"],
            raw=_load_json(row["raw_data"], {}),
            created_at=_parse_datetime(str(row["created_at"])),
            expires_at=_parse_datetime(str(row["expires_at"])),
        )

    def _row_to_embedding(self, row: sqlite3.Row) -> WeatherEmbedding:
        return WeatherEmbedding(
            id=int(row["id"]),
            clerk_user_id=row["clerk_user_id"],
            content_type=str(row["content_type"]),
            location_name=str(row["location_name"]),
            forecast_date=row["forecast_date"],
            content=str(row["content"]),
            embedding=[float(value) for value in _load_json(row["embedding"], [])],
            metadata=_load_json(row["metadata"], {}),
            created_at=_parse_datetime(str(row["created_at"])),
        )

    def _row_to_air_quality(self, row: sqlite3.Row) -> AirQualityReading:
        return AirQualityReading(
            forecast_datetime=_parse_datetime(str(row["forecast_datetime"])),
            pm10=row["pm10"],
            pm25=row["pm25"],
            cai_kr=row["cai_kr"],
            breezometer_aqi=row["breezometer_aqi"],
            no2=row["no2"],
            o3=row["o3"],
            so2=row["so2"],
            co=row["co"],
            health_recommendations=_load_json(row["health_recommendations"], {}),
            raw=_load_json(row["raw_data"], {}),
        )

    def _row_to_daily_api_stats(self, row: sqlite3.Row) -> DailyApiStats:
        return DailyApiStats(
            stat_date=str(row["stat_date"]),
            api_provider=str(row["api_provider"]),
            total_calls=int(row["total_calls"]),
            successful_calls=int(row["successful_calls"]),
            failed_calls=int(row["failed_calls"]),
            avg_response_time=row["avg_response_time"],
            max_response_time=row["max_response_time"],
            min_response_time=row["min_response_time"],
            endpoint_stats=_load_json(row["endpoint_stats"], {}),
            hourly_stats=_load_json(row["hourly_stats"], []),
            is_finalized=bool(row["is_finalized"]),
            last_updated=_parse_datetime(str(row["last_updated"])),
        )

    def _build_cipher(self, secret: Optional[str]) -> Optional[Fernet]:
        if not secret:
            return None
        digest = hashlib.sha256(secret.encode("utf-8")).digest()
        key = base64.urlsafe_b64encode(digest)
        return Fernet(key)

    def _require_cipher(self) -> Fernet:
        if self._cipher is None:
            raise RuntimeError(
                "Secret encryption key is not configured. Set TOWNLY_SECRET_KEY to store OAuth credentials."
            )
        return self._cipher

    def _encrypt_secret(self, value: str) -> str:
        cipher = self._require_cipher()
        return cipher.encrypt(value.encode("utf-8")).decode("utf-8")

    def _decrypt_secret(self, encrypted: str) -> str:
        cipher = self._require_cipher()
        try:
            plaintext = cipher.decrypt(encrypted.encode("utf-8"))
        except InvalidToken as exc:
            raise ValueError("Stored credential could not be decrypted. Re-authorise Gmail to repair it.") from exc
        return plaintext.decode("utf-8")


__all__ = ["Database", "USER_ROLES", "resolve_database_path"]
