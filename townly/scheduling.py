"""Kakao scheduled broadcasts and scheduled weather emails."""
from __future__ import annotations

import calendar
import logging
import re
import sqlite3
import time
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator

from .clock import ensure_aware, kst_today, utc_now
from .database import Database
from .errors import ConfigurationError, TownlyError, ValidationError
from .kakao import KakaoBusinessClient
from .mail import GmailClient, OutgoingEmail, build_weather_summary, default_subject, render_weather_email
from .models import DailyForecast, EmailRecipient, EmailSchedule, HourlyForecast, ScheduledMessage
from .weather import DEFAULT_LOCATION, WeatherService

logger = logging.getLogger("townly.scheduling")

SCHEDULE_TYPES = ("daily", "weekly", "monthly", "once")
MESSAGE_TARGET_TYPES = ("all", "specific", "segment")
EMAIL_TARGET_TYPES = ("all_users", "active_users", "specific_users")
DEFAULT_TIMEZONE = "Asia/Seoul"
ONCE_DONE_AT = datetime(2099, 12, 31, 23, 59, 59, tzinfo=timezone.utc)
STATS_WINDOW_DAYS = 30

_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def parse_schedule_time(value: str) -> Tuple[int, int]:
    match = _TIME_PATTERN.match(value or "")
    if match is None:
        raise ValueError(f"Invalid schedule time {value!r}; expected HH:MM")
    return int(match.group(1)), int(match.group(2))


def _zone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone {name!r}") from exc


# ----------------------------------------------------------------------
# Request validation
# ----------------------------------------------------------------------
class _ScheduleTimeMixin(BaseModel):
    @field_validator("schedule_time", check_fields=False)
    @classmethod
    def _check_time(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            parse_schedule_time(value)
        return value

    @field_validator("timezone", check_fields=False)
    @classmethod
    def _check_timezone(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            _zone(value)
        return value


class ScheduledMessageCreate(_ScheduleTimeMixin):
    title: str = Field(..., min_length=1, max_length=100)
    message: str = Field(..., min_length=1, max_length=1000)
    schedule_type: str
    schedule_time: str
    schedule_day: Optional[int] = Field(default=None, ge=0, le=31)
    timezone: str = DEFAULT_TIMEZONE
    target_type: str = "all"
    target_user_ids: List[str] = Field(default_factory=list)
    is_active: bool = True

    @field_validator("schedule_type")
    @classmethod
    def _check_type(cls, value: str) -> str:
        if value not in SCHEDULE_TYPES:
            raise ValueError(f"schedule_type must be one of {', '.join(SCHEDULE_TYPES)}")
        return value

    @field_validator("target_type")
    @classmethod
    def _check_target(cls, value: str) -> str:
        if value not in MESSAGE_TARGET_TYPES:
            raise ValueError(f"target_type must be one of {', '.join(MESSAGE_TARGET_TYPES)}")
        return value

    @model_validator(mode="after")
    def _check_weekday(self) -> "ScheduledMessageCreate":
        if self.schedule_type == "weekly" and self.schedule_day is not None and self.schedule_day > 6:
            raise ValueError("weekly schedules take a weekday between 0 (Sunday) and 6")
        return self


class ScheduledMessageUpdate(_ScheduleTimeMixin):
    title: Optional[str] = Field(default=None, min_length=1, max_length=100)
    message: Optional[str] = Field(default=None, min_length=1, max_length=1000)
    schedule_type: Optional[str] = None
    schedule_time: Optional[str] = None
    schedule_day: Optional[int] = Field(default=None, ge=0, le=31)
    timezone: Optional[str] = None
    target_type: Optional[str] = None
    target_user_ids: Optional[List[str]] = None
    is_active: Optional[bool] = None

    @field_validator("schedule_type")
    @classmethod
    def _check_type(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in SCHEDULE_TYPES:
            raise ValueError(f"schedule_type must be one of {', '.join(SCHEDULE_TYPES)}")
        return value

    @field_validator("target_type")
    @classmethod
    def _check_target(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in MESSAGE_TARGET_TYPES:
            raise ValueError(f"target_type must be one of {', '.join(MESSAGE_TARGET_TYPES)}")
        return value


class EmailScheduleCreate(_ScheduleTimeMixin):
    title: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    email_subject: str = Field(..., min_length=1, max_length=200)
    email_template: str = "weather_summary"
    schedule_time: str
    timezone: str = DEFAULT_TIMEZONE
    target_type: str = "all_users"
    target_user_ids: List[str] = Field(default_factory=list)
    is_active: bool = True

    @field_validator("target_type")
    @classmethod
    def _check_target(cls, value: str) -> str:
        if value not in EMAIL_TARGET_TYPES:
            raise ValueError(f"target_type must be one of {', '.join(EMAIL_TARGET_TYPES)}")
        return value


class EmailScheduleUpdate(_ScheduleTimeMixin):
    title: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    email_subject: Optional[str] = Field(default=None, min_length=1, max_length=200)
    email_template: Optional[str] = None
    schedule_time: Optional[str] = None
    timezone: Optional[str] = None
    target_type: Optional[str] = None
    target_user_ids: Optional[List[str]] = None
    is_active: Optional[bool] = None

    @field_validator("target_type")
    @classmethod
    def _check_target(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in EMAIL_TARGET_TYPES:
            raise ValueError(f"target_type must be one of {', '.join(EMAIL_TARGET_TYPES)}")
        return value


# ----------------------------------------------------------------------
# Next-send calculation
# ----------------------------------------------------------------------
def _add_month(day: date) -> date:
    if day.month == 12:
        return date(day.year + 1, 1, 1)
    return date(day.year, day.month + 1, 1)


def _clamped(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, calendar.monthrange(year, month)[1]))


def calculate_next_send(
    schedule_type: str,
    schedule_time: str,
    schedule_day: Optional[int] = None,
    now: Optional[datetime] = None,
    *,
    timezone_name: str = DEFAULT_TIMEZONE,
) -> datetime:
    """Return the next UTC send time; ``schedule_time`` is wall-clock time in ``timezone_name``.

    Weekly schedules count weekdays from 0 = Sunday. Monthly days beyond the
    month's length fall on its last day.
    """

    if schedule_type not in SCHEDULE_TYPES:
        raise ValueError(f"Unknown schedule type {schedule_type!r}")
    hours, minutes = parse_schedule_time(schedule_time)
    zone = _zone(timezone_name)
    local_now = ensure_aware(now or utc_now()).astimezone(zone)

    def at(day: date) -> datetime:
        return datetime(day.year, day.month, day.day, hours, minutes, tzinfo=zone)

    today = local_now.date()
    candidate = at(today)

    if schedule_type in {"daily", "once"}:
        if candidate <= local_now:
            candidate = at(today + timedelta(days=1))
    elif schedule_type == "weekly":
        target = schedule_day or 0
        if not 0 <= target <= 6:
            raise ValueError("weekly schedules take a weekday between 0 (Sunday) and 6")
        current = (today.weekday() + 1) % 7
        days = target - current
        if days < 0 or (days == 0 and candidate <= local_now):
            days += 7
        candidate = at(today + timedelta(days=days))
    else:
        target = schedule_day or 1
        candidate = at(_clamped(today.year, today.month, target))
        if candidate <= local_now:
            following = _add_month(today)
            candidate = at(_clamped(following.year, following.month, target))

    return candidate.astimezone(timezone.utc)


def calculate_next_email_send(
    schedule_time: str,
    timezone_name: str = DEFAULT_TIMEZONE,
    now: Optional[datetime] = None,
) -> datetime:
    return calculate_next_send("daily", schedule_time, None, now, timezone_name=timezone_name)


# ----------------------------------------------------------------------
# Kakao scheduled messages
# ----------------------------------------------------------------------
class ScheduledMessageDispatcher:
    """Broadcast due scheduled messages through Kakao Business and log each run."""

    def __init__(
        self,
        database: Database,
        kakao: KakaoBusinessClient,
        *,
        gap_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._database = database
        self._kakao = kakao
        self._gap = gap_seconds
        self._sleep = sleep

    def create(self, payload: ScheduledMessageCreate, *, created_by: Optional[str] = None, now: Optional[datetime] = None) -> ScheduledMessage:
        next_send_at = calculate_next_send(
            payload.schedule_type, payload.schedule_time, payload.schedule_day, now, timezone_name=payload.timezone
        )
        return self._database.create_scheduled_message(
            title=payload.title,
            message=payload.message,
            schedule_type=payload.schedule_type,
            schedule_time=payload.schedule_time,
            schedule_day=payload.schedule_day,
            timezone_name=payload.timezone,
            target_type=payload.target_type,
            target_user_ids=payload.target_user_ids,
            is_active=payload.is_active,
            next_send_at=next_send_at,
            created_by=created_by,
        )

    def update(
        self, message_id: int, payload: ScheduledMessageUpdate, *, now: Optional[datetime] = None
    ) -> ScheduledMessage:
        existing = self._database.get_scheduled_message(message_id)
        if existing is None:
            raise KeyError(f"Scheduled message {message_id} not found")

        fields: Dict[str, Any] = payload.model_dump(exclude_none=True)
        if {"schedule_type", "schedule_time", "schedule_day", "timezone"} & fields.keys():
            schedule_type = fields.get("schedule_type", existing.schedule_type)
            if schedule_type == "weekly" and (fields.get("schedule_day", existing.schedule_day) or 0) > 6:
                raise ValueError("weekly schedules take a weekday between 0 (Sunday) and 6")
            fields["next_send_at"] = calculate_next_send(
                schedule_type,
                fields.get("schedule_time", existing.schedule_time),
                fields.get("schedule_day", existing.schedule_day),
                now,
                timezone_name=fields.get("timezone", existing.timezone),
            )
        updated = self._database.update_scheduled_message(message_id, **fields)
        if updated is None:
            raise KeyError(f"Scheduled message {message_id} not found")
        return updated

    def toggle(self, message_id: int, is_active: bool, *, now: Optional[datetime] = None) -> ScheduledMessage:
        existing = self._database.get_scheduled_message(message_id)
        if existing is None:
            raise KeyError(f"Scheduled message {message_id} not found")
        fields: Dict[str, Any] = {"is_active": is_active}
        if is_active:
            fields["next_send_at"] = calculate_next_send(
                existing.schedule_type,
                existing.schedule_time,
                existing.schedule_day,
                now,
                timezone_name=existing.timezone,
            )
        updated = self._database.update_scheduled_message(message_id, **fields)
        if updated is None:
            raise KeyError(f"Scheduled message {message_id} not found")
        return updated

    def process(self, message_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Send one scheduled message and advance its schedule."""

        current = ensure_aware(now or utc_now())
        message = self._database.get_scheduled_message(message_id)
        if message is None:
            raise KeyError(f"Scheduled message {message_id} not found")

        started = time.perf_counter()
        try:
            recipients = message.target_user_ids if message.target_type == "specific" else None
            result = self._kakao.send_broadcast(message.message, recipients)
            elapsed = int((time.perf_counter() - started) * 1000)
            self._database.insert_scheduled_message_log(
                message.id,
                executed_at=current,
                recipient_count=max(result.sent_count + result.failed_count, 1),
                success_count=result.sent_count if result.success else 0,
                failure_count=0 if result.success else max(result.failed_count, 1),
                is_successful=result.success,
                execution_time_ms=elapsed,
                error_message=result.error,
            )

            if message.schedule_type == "once":
                self._database.mark_scheduled_message_sent(
                    message.id, sent_at=current, next_send_at=ONCE_DONE_AT, deactivate=True
                )
            else:
                next_send_at = calculate_next_send(
                    message.schedule_type,
                    message.schedule_time,
                    message.schedule_day,
                    current,
                    timezone_name=message.timezone,
                )
                self._database.mark_scheduled_message_sent(message.id, sent_at=current, next_send_at=next_send_at)
        except (TownlyError, ValueError, sqlite3.Error) as exc:
            logger.exception("Scheduled message %s failed", message.id)
            self._database.insert_scheduled_message_log(
                message.id,
                executed_at=current,
                recipient_count=0,
                success_count=0,
                failure_count=1,
                is_successful=False,
                execution_time_ms=0,
                error_message=str(exc),
            )
            return {"message_id": message.id, "title": message.title, "success": False, "error": str(exc)}

        logger.info("Scheduled message %s sent (success=%s)", message.id, result.success)
        return {
            "message_id": message.id,
            "title": message.title,
            "success": result.success,
            "result": result.to_dict(),
            "error": result.error,
        }

    def process_pending(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        current = ensure_aware(now or utc_now())
        pending = self._database.list_due_scheduled_messages(current)
        results: List[Dict[str, Any]] = []
        for index, message in enumerate(pending):
            if index and self._gap > 0:
                self._sleep(self._gap)
            results.append(self.process(message.id, current))

        succeeded = sum(1 for result in results if result["success"])
        logger.info("Processed %s scheduled message(s): %s succeeded", len(results), succeeded)
        return {
            "processed": len(results),
            "success": succeeded,
            "failure": len(results) - succeeded,
            "results": results,
        }

    def stats(self, now: Optional[datetime] = None) -> Dict[str, int]:
        current = ensure_aware(now or utc_now())
        return self._database.scheduled_message_stats(current - timedelta(days=STATS_WINDOW_DAYS))


# ----------------------------------------------------------------------
# Scheduled weather emails
# ----------------------------------------------------------------------
def time_of_day_for(schedule_time: str) -> str:
    return "morning" if schedule_time.startswith("06") else "evening"


class EmailScheduleDispatcher:
    """Render and send personalised weather emails for due email schedules."""

    def __init__(self, database: Database, gmail: GmailClient, weather: Optional[WeatherService] = None) -> None:
        self._database = database
        self._gmail = gmail
        self._weather = weather

    def create(self, payload: EmailScheduleCreate, *, now: Optional[datetime] = None) -> EmailSchedule:
        return self._database.create_email_schedule(
            title=payload.title,
            description=payload.description,
            email_subject=payload.email_subject,
            email_template=payload.email_template,
            schedule_time=payload.schedule_time,
            timezone_name=payload.timezone,
            target_type=payload.target_type,
            target_user_ids=payload.target_user_ids,
            is_active=payload.is_active,
            next_send_at=calculate_next_email_send(payload.schedule_time, payload.timezone, now),
        )

    def update(self, schedule_id: int, payload: EmailScheduleUpdate, *, now: Optional[datetime] = None) -> EmailSchedule:
        existing = self._database.get_email_schedule(schedule_id)
        if existing is None:
            raise KeyError(f"Email schedule {schedule_id} not found")
        fields: Dict[str, Any] = payload.model_dump(exclude_none=True)
        if "schedule_time" in fields or "timezone" in fields:
            fields["next_send_at"] = calculate_next_email_send(
                fields.get("schedule_time", existing.schedule_time),
                fields.get("timezone", existing.timezone),
                now,
            )
        updated = self._database.update_email_schedule(schedule_id, **fields)
        if updated is None:
            raise KeyError(f"Email schedule {schedule_id} not found")
        return updated

    def _collect_weather(
        self, recipient: EmailRecipient, location: str, now: datetime
    ) -> Optional[Tuple[List[HourlyForecast], List[DailyForecast]]]:
        hour_start = now.replace(minute=0, second=0, microsecond=0)
        hourly = [
            row
            for row in self._database.find_hourly_weather(
                location, now, clerk_user_id=recipient.clerk_user_id, limit=48
            )
            if row.forecast_datetime >= hour_start
        ][:12]
        today = kst_today(now).isoformat()
        daily = [
            row
            for row in self._database.find_daily_weather(
                location, now, clerk_user_id=recipient.clerk_user_id, limit=20
            )
            if row.forecast_date >= today
        ][:5]
        if hourly and daily:
            return hourly, daily
        if self._weather is None:
            return (hourly, daily) if hourly or daily else None

        try:
            if not hourly:
                hourly = list(self._weather.hourly_weather(location=location, now=now).forecasts)[:12]
            if not daily:
                daily = list(self._weather.daily_weather(location=location, days=5, now=now).forecasts)
        except TownlyError as exc:
            logger.warning("Skipping weather email for %s: %s", recipient.clerk_user_id, exc)
            return None
        return hourly, daily

    def execute(
        self,
        schedule_id: int,
        now: Optional[datetime] = None,
        *,
        initiated_by: str = "cron_job",
    ) -> Dict[str, Any]:
        """Send one schedule's emails now and advance its next send time."""

        current = ensure_aware(now or utc_now())
        schedule = self._database.get_email_schedule(schedule_id)
        if schedule is None:
            raise KeyError(f"Email schedule {schedule_id} not found")
        if not self._gmail.configured:
            raise ConfigurationError("Gmail is not configured; connect an account first")

        time_of_day = time_of_day_for(schedule.schedule_time)
        recipients = self._database.list_email_recipients(
            schedule.target_type,
            target_user_ids=schedule.target_user_ids,
            time_of_day=time_of_day,
        )
        if not recipients:
            raise ValidationError("발송 대상이 없습니다", details={"schedule_id": schedule.id})

        started = time.perf_counter()
        emails: List[OutgoingEmail] = []
        skipped: List[str] = []
        for recipient in recipients:
            location = recipient.location_name or DEFAULT_LOCATION
            weather = self._collect_weather(recipient, location, current)
            if weather is None:
                skipped.append(recipient.email)
                continue
            hourly, daily = weather
            summary = build_weather_summary(hourly, daily, time_of_day, location=location, now=current)
            html, text = render_weather_email(location, time_of_day, summary, hourly=hourly, daily=daily)
            emails.append(
                OutgoingEmail(
                    to=recipient.email,
                    subject=schedule.email_subject or default_subject(location, time_of_day, summary),
                    html=html,
                    text=text,
                    clerk_user_id=recipient.clerk_user_id,
                )
            )

        log_id = self._database.insert_email_send_log(
            email_type="scheduled" if initiated_by == "cron_job" else "manual",
            subject=schedule.email_subject,
            recipient_count=len(emails),
            initiated_by=initiated_by,
            email_schedule_id=schedule.id,
        )
        outcome = self._gmail.send_bulk(emails)

        for email, result in zip(emails, outcome.results):
            self._database.insert_individual_email_log(
                log_id,
                clerk_user_id=email.clerk_user_id,
                recipient_email=email.to,
                subject=email.subject,
                status="sent" if result.success else "failed",
                sent_at=current if result.success else None,
                gmail_message_id=result.message_id,
                error_message=result.error,
            )
            if result.success and email.clerk_user_id:
                self._database.record_email_sent(email.clerk_user_id, current)

        elapsed = int((time.perf_counter() - started) * 1000)
        self._database.complete_email_send_log(
            log_id,
            success_count=outcome.success_count,
            failure_count=outcome.failure_count,
            execution_time_ms=elapsed,
            failed_emails=[{"email": r.email, "error": r.error} for r in outcome.results if not r.success],
        )
        next_send_at = calculate_next_email_send(schedule.schedule_time, schedule.timezone, current)
        self._database.mark_email_schedule_sent(schedule.id, sent_at=current, next_send_at=next_send_at)

        logger.info(
            "Email schedule %s sent %s/%s emails (%s skipped)",
            schedule.id,
            outcome.success_count,
            outcome.total_count,
            len(skipped),
        )
        return {
            "schedule_id": schedule.id,
            "title": schedule.title,
            "success": outcome.failure_count == 0,
            "log_id": log_id,
            "total_sent": outcome.total_count,
            "success_count": outcome.success_count,
            "failure_count": outcome.failure_count,
            "skipped": skipped,
            "next_send_at": next_send_at.isoformat(),
            "execution_time_ms": elapsed,
        }

    def execute_due(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        current = ensure_aware(now or utc_now())
        due = self._database.list_due_email_schedules(current)
        results: List[Dict[str, Any]] = []
        for schedule in due:
            try:
                results.append(self.execute(schedule.id, current))
            except TownlyError as exc:
                logger.warning("Email schedule %s failed: %s", schedule.id, exc)
                next_send_at = calculate_next_email_send(schedule.schedule_time, schedule.timezone, current)
                self._database.update_email_schedule(schedule.id, next_send_at=next_send_at)
                results.append({"schedule_id": schedule.id, "title": schedule.title, "success": False, "error": str(exc)})
        return {
            "processed": len(results),
            "success": sum(1 for result in results if result["success"]),
            "results": results,
        }

    def recalculate_all(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        current = ensure_aware(now or utc_now())
        updated: List[Dict[str, Any]] = []
        for schedule in self._database.list_email_schedules():
            next_send_at = calculate_next_email_send(schedule.schedule_time, schedule.timezone, current)
            self._database.update_email_schedule(schedule.id, next_send_at=next_send_at)
            updated.append({"id": schedule.id, "title": schedule.title, "next_send_at": next_send_at.isoformat()})
        return updated


__all__ = [
    "EMAIL_TARGET_TYPES",
    "EmailScheduleCreate",
    "EmailScheduleDispatcher",
    "EmailScheduleUpdate",
    "MESSAGE_TARGET_TYPES",
    "ONCE_DONE_AT",
    "SCHEDULE_TYPES",
    "ScheduledMessageCreate",
    "ScheduledMessageDispatcher",
    "ScheduledMessageUpdate",
    "calculate_next_email_send",
    "calculate_next_send",
    "parse_schedule_time",
    "time_of_day_for",
]
