from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from townly.clock import KST
from townly.database import Database
from townly.models import HourlyForecast

NOW = datetime(2025, 3, 1, 3, 0, tzinfo=timezone.utc)


@pytest.fixture()
def database(tmp_path: Path) -> Database:
    db_path = tmp_path / "townly.sqlite3"
    db = Database(db_path, secret_key="test-secret")
    db.initialize()
    return db


def test_initialize_is_idempotent(database: Database) -> None:
    database.initialize()
    assert database.ping() is True


def test_set_user_role_upserts_and_keeps_signup_method(database: Database) -> None:
    created = database.set_user_role("user_1", "customer", signup_method="kakao")
    assert created.role == "customer"
    assert created.signup_method == "kakao"

    promoted = database.set_user_role("user_1", "admin")
    assert promoted.role == "admin"
    assert promoted.signup_method == "kakao"


def test_set_user_role_rejects_unknown_role(database: Database) -> None:
    with pytest.raises(ValueError):
        database.set_user_role("user_1", "superuser")
    with pytest.raises(ValueError):
        database.set_user_role("  ", "customer")


def test_delete_user_removes_every_per_user_row(database: Database) -> None:
    database.set_user_role("user_1", "customer")
    database.upsert_user_profile("user_1", email="Someone@Example.com", name="Someone")
    database.set_user_location("user_1", location_name="서울")
    database.update_email_settings("user_1", receive_evening=False)

    assert database.get_user_profile("user_1").email == "someone@example.com"
    assert database.delete_user("user_1") is True
    assert database.get_user_role("user_1") is None
    assert database.get_user_location("user_1") is None
    assert database.get_email_settings("user_1").receive_evening is True
    assert database.delete_user("user_1") is False


def test_email_settings_default_and_partial_update(database: Database) -> None:
    defaults = database.get_email_settings("user_2")
    assert defaults.is_subscribed and defaults.receive_morning and defaults.receive_evening

    updated = database.update_email_settings("user_2", receive_morning=False)
    assert updated.receive_morning is False
    assert updated.receive_evening is True

    database.record_email_sent("user_2", NOW)
    database.record_email_sent("user_2", NOW + timedelta(hours=1))
    settings = database.get_email_settings("user_2")
    assert settings.total_emails_sent == 2
    assert settings.last_email_sent_at == NOW + timedelta(hours=1)
    assert settings.receive_morning is False


def test_email_recipients_respect_subscription_and_target(database: Database) -> None:
    database.upsert_user_profile("a", email="a@example.com", name="A")
    database.upsert_user_profile("b", email="b@example.com", name="B")
    database.upsert_user_profile("c", email="c@example.com", name="C")
    database.upsert_user_profile("d", email=None, name="No email")
    database.set_user_location("a", location_name="서울")
    database.update_email_settings("b", receive_morning=False)
    database.update_email_settings("c", is_subscribed=False)

    everyone = {item.clerk_user_id for item in database.list_email_recipients("all_users")}
    assert everyone == {"a", "b"}

    morning = {item.clerk_user_id for item in database.list_email_recipients("all_users", time_of_day="morning")}
    assert morning == {"a"}

    active = database.list_email_recipients("active_users")
    assert [item.clerk_user_id for item in active] == ["a"]
    assert active[0].location_name == "서울"

    specific = database.list_email_recipients("specific_users", target_user_ids=["c"])
    assert [item.email for item in specific] == ["c@example.com"]


def test_due_scheduled_messages_only_include_active_rows(database: Database) -> None:
    due = database.create_scheduled_message(
        title="Morning",
        message="Good morning",
        schedule_type="daily",
        schedule_time="09:00",
        next_send_at=NOW - timedelta(minutes=1),
    )
    database.create_scheduled_message(
        title="Later",
        message="Not yet",
        schedule_type="daily",
        schedule_time="10:00",
        next_send_at=NOW + timedelta(hours=1),
    )
    database.create_scheduled_message(
        title="Paused",
        message="Paused",
        schedule_type="daily",
        schedule_time="08:00",
        next_send_at=NOW - timedelta(hours=1),
        is_active=False,
    )

    assert [item.id for item in database.list_due_scheduled_messages(NOW)] == [due.id]

    database.mark_scheduled_message_sent(due.id, sent_at=NOW, next_send_at=NOW + timedelta(days=1))
    refreshed = database.get_scheduled_message(due.id)
    assert refreshed.total_sent_count == 1
    assert refreshed.last_sent_at == NOW
    assert database.list_due_scheduled_messages(NOW) == []


def test_update_scheduled_message_rejects_unknown_columns(database: Database) -> None:
    message = database.create_scheduled_message(
        title="Morning",
        message="Hi",
        schedule_type="daily",
        schedule_time="09:00",
        next_send_at=NOW,
    )
    with pytest.raises(ValueError):
        database.update_scheduled_message(message.id, created_by="someone")
    assert database.update_scheduled_message(9999, title="Missing") is None

    updated = database.update_scheduled_message(message.id, target_user_ids=["u1", "u2"], is_active=False)
    assert updated.target_user_ids == ["u1", "u2"]
    assert updated.is_active is False


def test_hourly_weather_cache_replace_and_expiry(database: Database) -> None:
    forecast_time = datetime(2025, 3, 1, 15, 0, tzinfo=KST)
    forecasts = [
        HourlyForecast(
            location_name="서울",
            location_key="226081",
            forecast_datetime=forecast_time + timedelta(hours=offset),
            temperature=10.0 + offset,
            conditions="맑음",
        )
        for offset in range(3)
    ]
    written = database.replace_hourly_weather("hourly:seoul", forecasts, expires_at=NOW + timedelta(hours=1))
    assert written == 3

    cached = database.get_hourly_weather("hourly:seoul", NOW)
    assert [item.temperature for item in cached] == [10.0, 11.0, 12.0]
    assert cached[0].forecast_hour == 15
    assert cached[0].forecast_date == "2025-03-01"

    assert database.get_hourly_weather("hourly:seoul", NOW + timedelta(hours=2)) == []
    removed = database.delete_expired_weather(NOW + timedelta(hours=2))
    assert removed["hourly_weather_data"] == 3


def test_gmail_credentials_are_encrypted_at_rest(database: Database, tmp_path: Path) -> None:
    database.save_gmail_credentials(refresh_token="refresh-123", email="bot@example.com", scope="gmail.send")

    stored = database.get_gmail_credentials()
    assert stored is not None
    assert stored.refresh_token == "refresh-123"

    other_key = Database(tmp_path / "townly.sqlite3", secret_key="another-secret")
    with pytest.raises(ValueError):
        other_key.get_gmail_credentials()

    no_key = Database(tmp_path / "townly.sqlite3")
    with pytest.raises(RuntimeError):
        no_key.get_gmail_credentials()

    assert database.delete_gmail_credentials() is True
    assert database.get_gmail_credentials() is None


def test_webhook_log_summary_counts_recent_calls(database: Database) -> None:
    database.insert_webhook_log(method="POST", url="/api/kakao/webhook", status_code=200, is_successful=True)
    database.insert_webhook_log(
        method="POST",
        url="/api/kakao/webhook",
        status_code=500,
        is_successful=False,
        error_message="boom",
    )

    since = datetime.now(timezone.utc) - timedelta(hours=1)
    assert database.webhook_log_summary(since) == {"total": 2, "successful": 1, "failed": 1}
    logs = database.list_webhook_logs(limit=1)
    assert logs[0].status_code == "500"
    assert logs[0].error_message == "boom"
