from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pydantic
import pytest

from townly.database import Database
from townly.errors import ConfigurationError, ValidationError
from townly.kakao import KakaoBusinessClient
from townly.mail import GmailClient
from townly.scheduling import (
    ONCE_DONE_AT,
    EmailScheduleCreate,
    EmailScheduleDispatcher,
    EmailScheduleUpdate,
    ScheduledMessageCreate,
    ScheduledMessageDispatcher,
    ScheduledMessageUpdate,
    calculate_next_email_send,
    calculate_next_send,
    time_of_day_for,
)
from townly.weather import AccuWeatherClient, WeatherService

from stubs import ProviderStub

# Saturday 15:00 KST
NOW = datetime(2025, 3, 1, 6, 0, tzinfo=timezone.utc)


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture()
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "townly.sqlite3")
    db.initialize()
    return db


@pytest.mark.parametrize(
    ("schedule_type", "schedule_time", "schedule_day", "expected"),
    [
        ("daily", "18:30", None, utc(2025, 3, 1, 9, 30)),
        ("daily", "09:00", None, utc(2025, 3, 2, 0, 0)),
        ("daily", "15:00", None, utc(2025, 3, 2, 6, 0)),
        ("once", "09:00", None, utc(2025, 3, 2, 0, 0)),
        ("weekly", "09:00", 0, utc(2025, 3, 2, 0, 0)),
        ("weekly", "09:00", 6, utc(2025, 3, 8, 0, 0)),
        ("weekly", "18:00", 6, utc(2025, 3, 1, 9, 0)),
        ("monthly", "09:00", 1, utc(2025, 4, 1, 0, 0)),
        ("monthly", "09:00", 15, utc(2025, 3, 15, 0, 0)),
    ],
)
def test_calculate_next_send(schedule_type, schedule_time, schedule_day, expected) -> None:
    assert calculate_next_send(schedule_type, schedule_time, schedule_day, NOW) == expected


def test_monthly_day_is_clamped_to_month_length() -> None:
    # 2025-02-10 10:00 KST
    february = utc(2025, 2, 10, 1, 0)
    assert calculate_next_send("monthly", "09:00", 31, february) == utc(2025, 2, 28, 0, 0)
    # 2025-02-28 10:00 KST, past the clamped slot
    after = utc(2025, 2, 28, 1, 0)
    assert calculate_next_send("monthly", "09:00", 31, after) == utc(2025, 3, 31, 0, 0)


def test_schedule_time_uses_the_schedule_timezone() -> None:
    assert calculate_next_send("daily", "09:00", None, NOW, timezone_name="UTC") == utc(2025, 3, 1, 9, 0)
    assert calculate_next_email_send("06:00", "Asia/Seoul", NOW) == utc(2025, 3, 1, 21, 0)


def test_invalid_schedules_are_rejected() -> None:
    with pytest.raises(ValueError):
        calculate_next_send("daily", "24:00", None, NOW)
    with pytest.raises(ValueError):
        calculate_next_send("weekly", "09:00", 7, NOW)
    with pytest.raises(ValueError):
        calculate_next_send("hourly", "09:00", None, NOW)
    with pytest.raises(ValueError):
        calculate_next_send("daily", "09:00", None, NOW, timezone_name="Mars/Olympus")


def test_request_models_validate_fields() -> None:
    with pytest.raises(pydantic.ValidationError):
        ScheduledMessageCreate(title="t", message="m", schedule_type="yearly", schedule_time="09:00")
    with pytest.raises(pydantic.ValidationError):
        ScheduledMessageCreate(title="t", message="m", schedule_type="weekly", schedule_time="09:00", schedule_day=9)
    with pytest.raises(pydantic.ValidationError):
        ScheduledMessageCreate(title="t", message="m", schedule_type="daily", schedule_time="9am")
    with pytest.raises(pydantic.ValidationError):
        EmailScheduleCreate(title="t", email_subject="s", schedule_time="06:00", target_type="everyone")
    assert time_of_day_for("06:00") == "morning"
    assert time_of_day_for("18:00") == "evening"


# ----------------------------------------------------------------------
# Kakao scheduled messages
# ----------------------------------------------------------------------
def _message_dispatcher(database: Database, kakao: KakaoBusinessClient) -> ScheduledMessageDispatcher:
    return ScheduledMessageDispatcher(database, kakao, gap_seconds=0)


def test_process_pending_sends_due_messages_and_advances(database: Database) -> None:
    dispatcher = _message_dispatcher(database, KakaoBusinessClient(None))
    message = dispatcher.create(
        ScheduledMessageCreate(title="아침 인사", message="좋은 아침!", schedule_type="daily", schedule_time="09:00"),
        created_by="admin_1",
        now=NOW,
    )
    assert message.next_send_at == utc(2025, 3, 2, 0, 0)

    assert dispatcher.process_pending(NOW)["processed"] == 0

    due = utc(2025, 3, 2, 0, 0)
    summary = dispatcher.process_pending(due)
    assert summary["processed"] == 1
    assert summary["success"] == 1

    stored = database.get_scheduled_message(message.id)
    assert stored.next_send_at == utc(2025, 3, 3, 0, 0)
    assert stored.last_sent_at == due
    assert stored.total_sent_count == 1

    logs = database.list_scheduled_message_logs(message_id=message.id)
    assert len(logs) == 1
    assert logs[0].is_successful is True
    assert dispatcher.stats(due)["recent_successful_sends"] == 1


def test_once_message_is_deactivated_after_sending(database: Database) -> None:
    dispatcher = _message_dispatcher(database, KakaoBusinessClient(None))
    message = dispatcher.create(
        ScheduledMessageCreate(title="공지", message="점검 안내", schedule_type="once", schedule_time="09:00"),
        now=NOW,
    )
    dispatcher.process(message.id, utc(2025, 3, 2, 0, 0))

    stored = database.get_scheduled_message(message.id)
    assert stored.is_active is False
    assert stored.next_send_at == ONCE_DONE_AT
    assert dispatcher.process_pending(utc(2025, 3, 5, 0, 0))["processed"] == 0


def test_specific_targets_are_sent_as_recipients(database: Database) -> None:
    stub = ProviderStub(NOW)
    dispatcher = _message_dispatcher(database, KakaoBusinessClient("admin-key", http_client=stub.client()))
    message = dispatcher.create(
        ScheduledMessageCreate(
            title="VIP",
            message="안내",
            schedule_type="daily",
            schedule_time="09:00",
            target_type="specific",
            target_user_ids=["kakao-1", "kakao-2"],
        ),
        now=NOW,
    )
    result = dispatcher.process(message.id, NOW)
    assert result["success"] is True
    assert json.loads(stub.requests[0].content)["recipients"] == ["kakao-1", "kakao-2"]


def test_failed_broadcast_is_logged_and_schedule_still_advances(database: Database) -> None:
    stub = ProviderStub(NOW)
    stub.override("api.kakaobusiness.com", "/v1/messages/broadcast", lambda request: httpx.Response(500, text="down"))
    dispatcher = _message_dispatcher(database, KakaoBusinessClient("admin-key", http_client=stub.client()))
    message = dispatcher.create(
        ScheduledMessageCreate(title="t", message="m", schedule_type="daily", schedule_time="09:00"), now=NOW
    )
    result = dispatcher.process(message.id, utc(2025, 3, 2, 0, 0))

    assert result["success"] is False
    log = database.list_scheduled_message_logs(message_id=message.id)[0]
    assert log.is_successful is False
    assert log.failure_count == 1
    assert database.get_scheduled_message(message.id).next_send_at == utc(2025, 3, 3, 0, 0)


def test_update_and_toggle_recalculate_next_send(database: Database) -> None:
    dispatcher = _message_dispatcher(database, KakaoBusinessClient(None))
    message = dispatcher.create(
        ScheduledMessageCreate(title="t", message="m", schedule_type="daily", schedule_time="09:00"), now=NOW
    )
    updated = dispatcher.update(message.id, ScheduledMessageUpdate(schedule_time="18:00"), now=NOW)
    assert updated.next_send_at == utc(2025, 3, 1, 9, 0)

    paused = dispatcher.toggle(message.id, False, now=NOW)
    assert paused.is_active is False
    resumed = dispatcher.toggle(message.id, True, now=NOW + timedelta(hours=4))
    assert resumed.next_send_at == utc(2025, 3, 2, 9, 0)

    with pytest.raises(KeyError):
        dispatcher.update(999, ScheduledMessageUpdate(title="x"), now=NOW)


def test_toggle_raises_key_error_when_row_disappears(database: Database, monkeypatch: pytest.MonkeyPatch) -> None:
    dispatcher = _message_dispatcher(database, KakaoBusinessClient(None))
    message = dispatcher.create(
        ScheduledMessageCreate(title="t", message="m", schedule_type="daily", schedule_time="09:00"), now=NOW
    )
    monkeypatch.setattr(database, "update_scheduled_message", lambda *args, **kwargs: None)
    with pytest.raises(KeyError):
        dispatcher.toggle(message.id, False, now=NOW)


# ----------------------------------------------------------------------
# Scheduled weather emails
# ----------------------------------------------------------------------
# 2025-03-02 06:00 KST
SEND = utc(2025, 3, 1, 21, 0)


def _email_dispatcher(database: Database, stub: ProviderStub, *, gmail_configured: bool = True) -> EmailScheduleDispatcher:
    client = stub.client()
    gmail = GmailClient(
        "client-id",
        "client-secret",
        "refresh-token" if gmail_configured else None,
        "weather@townly.kr",
        http_client=client,
        batch_delay=0,
    )
    weather = WeatherService(database, AccuWeatherClient("test-key", http_client=client))
    return EmailScheduleDispatcher(database, gmail, weather)


def _morning_schedule(dispatcher: EmailScheduleDispatcher, **kwargs):
    return dispatcher.create(
        EmailScheduleCreate(title="아침 날씨", email_subject="오늘의 날씨", schedule_time="06:00", **kwargs),
        now=NOW,
    )


def test_execute_sends_personalised_weather_email(database: Database) -> None:
    database.upsert_user_profile("user_1", email="Kim@Example.com", name="김민수")
    database.set_user_location("user_1", location_name="서울")
    stub = ProviderStub(SEND)
    dispatcher = _email_dispatcher(database, stub)
    schedule = _morning_schedule(dispatcher)
    assert schedule.next_send_at == SEND

    result = dispatcher.execute(schedule.id, SEND)
    assert result["success"] is True
    assert result["success_count"] == 1
    assert result["skipped"] == []
    assert len(stub.sent_emails) == 1
    assert "raw" in stub.sent_emails[0]

    logs = database.list_individual_email_logs(result["log_id"])
    assert logs[0]["recipient_email"] == "kim@example.com"
    assert logs[0]["status"] == "sent"
    assert logs[0]["gmail_message_id"] == "msg-1"

    assert database.get_email_settings("user_1").total_emails_sent == 1
    stored = database.get_email_schedule(schedule.id)
    assert stored.total_sent_count == 1
    assert stored.next_send_at == SEND + timedelta(days=1)


def test_recipients_who_opted_out_of_mornings_are_skipped(database: Database) -> None:
    database.upsert_user_profile("user_1", email="kim@example.com", name=None)
    database.update_email_settings("user_1", receive_morning=False)
    dispatcher = _email_dispatcher(database, ProviderStub(SEND))
    schedule = _morning_schedule(dispatcher)

    with pytest.raises(ValidationError):
        dispatcher.execute(schedule.id, SEND)


def test_execute_requires_gmail(database: Database) -> None:
    dispatcher = _email_dispatcher(database, ProviderStub(SEND), gmail_configured=False)
    schedule = _morning_schedule(dispatcher)
    with pytest.raises(ConfigurationError):
        dispatcher.execute(schedule.id, SEND)
    with pytest.raises(KeyError):
        dispatcher.execute(999, SEND)


def test_execute_due_reports_failures_and_reschedules(database: Database) -> None:
    dispatcher = _email_dispatcher(database, ProviderStub(SEND))
    schedule = _morning_schedule(dispatcher)

    summary = dispatcher.execute_due(SEND)
    assert summary["processed"] == 1
    assert summary["success"] == 0
    assert summary["results"][0]["error"] == "발송 대상이 없습니다"
    assert database.get_email_schedule(schedule.id).next_send_at == SEND + timedelta(days=1)


def test_email_schedule_update_recomputes_next_send(database: Database) -> None:
    dispatcher = _email_dispatcher(database, ProviderStub(NOW))
    schedule = _morning_schedule(dispatcher)
    updated = dispatcher.update(schedule.id, EmailScheduleUpdate(schedule_time="18:00"), now=NOW)
    assert updated.next_send_at == utc(2025, 3, 1, 9, 0)
    assert dispatcher.recalculate_all(NOW)[0]["next_send_at"] == utc(2025, 3, 1, 9, 0).isoformat()
