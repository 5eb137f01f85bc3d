"""End-to-end tests for the Townly HTTP API."""

from __future__ import annotations

import base64
import json
import tempfile
import time
import unittest
from datetime import datetime, timezone
from pathlib import Path

from fastapi.testclient import TestClient

from townly.config import Settings
from townly.database import Database
from townly.security import sign_svix_payload
from townly.service import create_app

from stubs import ProviderStub

ADMIN_TOKEN = "admin-token"
CRON_SECRET = "cron-secret"
CLERK_SECRET = "whsec_" + base64.b64encode(b"clerk-signing-secret").decode("ascii")

SKILL_PAYLOAD = {
    "intent": {"id": "intent-1", "name": "날씨"},
    "userRequest": {
        "utterance": "오늘 날씨",
        "user": {"id": "kakao-user-1", "type": "botUserKey", "properties": {"location": "부산"}},
    },
    "bot": {"id": "bot-1", "name": "Townly"},
    "action": {"id": "action-1", "name": "weather", "params": {}},
}


class TownlyServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tempdir = tempfile.TemporaryDirectory()
        db_path = Path(self._tempdir.name) / "townly.sqlite3"
        self.database = Database(db_path, secret_key="test-secret")
        self.database.initialize()
        self.stub = ProviderStub(datetime.now(timezone.utc))

    def tearDown(self) -> None:
        self._tempdir.cleanup()

    def _settings(self, **overrides) -> Settings:
        values = {
            "accuweather_api_key": "test-key",
            "google_maps_api_key": "google-key",
            "airkorea_api_key": "airkorea-key",
            "admin_tokens": [ADMIN_TOKEN],
            "cron_secret": CRON_SECRET,
            "clerk_webhook_secret": CLERK_SECRET,
            "secret_key": "test-secret",
            "gmail_client_id": "client-id",
            "gmail_client_secret": "client-secret",
            "gmail_redirect_uri": "https://townly.kr/api/auth/gmail/callback",
        }
        values.update(overrides)
        return Settings(**values)

    def _client(self, **overrides) -> TestClient:
        app = create_app(
            settings=self._settings(**overrides),
            database=self.database,
            http_client=self.stub.client(),
        )
        return TestClient(app)

    @staticmethod
    def _admin() -> dict:
        return {"Authorization": f"Bearer {ADMIN_TOKEN}"}

    @staticmethod
    def _cron() -> dict:
        return {"Authorization": f"Bearer {CRON_SECRET}"}

    def test_health_reports_provider_configuration(self) -> None:
        with self._client() as client:
            self.assertEqual(client.get("/healthz").json(), {"status": "ok"})
            health = client.get("/api/health")
            self.assertEqual(health.status_code, 200, health.text)
            payload = health.json()
            self.assertEqual(payload["status"], "healthy")
            self.assertTrue(payload["providers"]["accuweather"])
            self.assertFalse(payload["providers"]["openai"])
            self.assertFalse(payload["providers"]["kakao_business"])

    def test_hourly_weather_is_cached_between_requests(self) -> None:
        with self._client() as client:
            first = client.get("/api/weather/hourly", params={"location": "서울"})
            self.assertEqual(first.status_code, 200, first.text)
            self.assertFalse(first.json()["from_cache"])
            self.assertEqual(first.json()["count"], 12)
            self.assertNotIn("raw", first.json()["forecasts"][0])

            second = client.get("/api/weather/hourly", params={"location": "서울"})
            self.assertTrue(second.json()["from_cache"])

            stats = client.get("/api/weather/stats").json()
            self.assertEqual(stats["api_usage"]["provider"], "accuweather")

    def test_weather_validation_and_error_mapping(self) -> None:
        with self._client() as client:
            missing = client.get("/api/weather/hourly")
            self.assertEqual(missing.status_code, 400)

            bad_days = client.get("/api/weather/daily", params={"location": "서울", "days": 3})
            self.assertEqual(bad_days.status_code, 400)

        with self._client(accuweather_api_key=None) as client:
            unconfigured = client.get("/api/weather/daily", params={"location": "서울"})
            self.assertEqual(unconfigured.status_code, 503)
            self.assertEqual(unconfigured.json()["error"], "CONFIGURATION_ERROR")

    def test_air_quality_endpoints(self) -> None:
        with self._client() as client:
            hourly = client.get("/api/airquality/google/hourly", params={"lat": 37.5665, "lon": 126.978, "hours": 6})
            self.assertEqual(hourly.status_code, 200, hourly.text)
            self.assertEqual(hourly.json()["count"], 6)

            too_many = client.get("/api/airquality/google/hourly", params={"lat": 37.5, "lon": 126.9, "hours": 120})
            self.assertEqual(too_many.status_code, 400)

            station = client.get("/api/airquality/station", params={"station_name": "종로구"})
            self.assertEqual(station.json()["items"][0]["pm10Value"], "32")

    def test_admin_endpoints_require_bearer_token(self) -> None:
        with self._client() as client:
            self.assertEqual(client.get("/api/admin/scheduled-messages").status_code, 401)
            wrong = client.get("/api/admin/scheduled-messages", headers={"Authorization": "Bearer nope"})
            self.assertEqual(wrong.status_code, 403)
            self.assertEqual(client.get("/api/admin/scheduled-messages", headers=self._admin()).status_code, 200)

        with self._client(admin_tokens=[]) as client:
            disabled = client.get("/api/admin/scheduled-messages", headers=self._admin())
            self.assertEqual(disabled.status_code, 503)

    def test_scheduled_message_admin_lifecycle(self) -> None:
        with self._client() as client:
            created = client.post(
                "/api/admin/scheduled-messages",
                headers=self._admin(),
                json={"title": "아침 인사", "message": "좋은 아침!", "schedule_type": "daily", "schedule_time": "09:00"},
            )
            self.assertEqual(created.status_code, 201, created.text)
            message_id = created.json()["id"]
            self.assertEqual(created.json()["created_by"], "admin")

            invalid = client.post(
                "/api/admin/scheduled-messages",
                headers=self._admin(),
                json={"title": "x", "message": "y", "schedule_type": "yearly", "schedule_time": "09:00"},
            )
            self.assertEqual(invalid.status_code, 422)

            sent = client.post(f"/api/admin/scheduled-messages/{message_id}/send", headers=self._admin())
            self.assertEqual(sent.status_code, 200, sent.text)
            self.assertTrue(sent.json()["success"])

            logs = client.get(f"/api/admin/scheduled-messages/{message_id}/logs", headers=self._admin())
            self.assertEqual(len(logs.json()["logs"]), 1)

            toggled = client.post(
                f"/api/admin/scheduled-messages/{message_id}/toggle",
                headers=self._admin(),
                json={"is_active": False},
            )
            self.assertFalse(toggled.json()["is_active"])

            deleted = client.delete(f"/api/admin/scheduled-messages/{message_id}", headers=self._admin())
            self.assertEqual(deleted.status_code, 200)
            missing = client.get(f"/api/admin/scheduled-messages/{message_id}", headers=self._admin())
            self.assertEqual(missing.status_code, 404)

    def test_user_settings_endpoints(self) -> None:
        with self._client() as client:
            role = client.put("/api/users/user_1/role", headers=self._admin(), json={"role": "admin"})
            self.assertEqual(role.status_code, 200, role.text)
            self.assertEqual(client.get("/api/users/user_1/role", headers=self._admin()).json()["role"], "admin")

            bad_role = client.put("/api/users/user_1/role", headers=self._admin(), json={"role": "owner"})
            self.assertEqual(bad_role.status_code, 400)

            settings = client.put(
                "/api/users/user_1/email-settings",
                headers=self._admin(),
                json={"receive_evening": False},
            )
            self.assertFalse(settings.json()["receive_evening"])
            self.assertTrue(settings.json()["receive_morning"])

    def test_kakao_broadcast_is_simulated_without_admin_key(self) -> None:
        with self._client() as client:
            response = client.post("/api/admin/kakao/send", headers=self._admin(), json={"message": "안내"})
            self.assertEqual(response.status_code, 200, response.text)
            self.assertTrue(response.json()["simulated"])
            self.assertEqual(response.json()["cost"], 0)

    def test_cron_endpoints_check_secret(self) -> None:
        with self._client() as client:
            self.assertEqual(client.get("/api/cron/scheduled-messages").status_code, 401)
            ok = client.get("/api/cron/scheduled-messages", headers=self._cron())
            self.assertEqual(ok.status_code, 200, ok.text)
            self.assertEqual(ok.json()["processed"], 0)

            emails = client.get("/api/cron/email-scheduler", headers=self._cron())
            self.assertEqual(emails.json()["schedules_processed"], 0)

            empty = client.post("/api/cron/email-scheduler", headers=self._cron(), json={})
            self.assertEqual(empty.status_code, 400)

        with self._client(cron_secret=None) as client:
            self.assertEqual(client.get("/api/cron/scheduled-messages", headers=self._cron()).status_code, 500)

        with self._client(environment="production") as client:
            blocked = client.post("/api/cron/email-scheduler", headers=self._cron(), json={"forceExecution": True})
            self.assertEqual(blocked.status_code, 403)

    def test_weather_skill_answers_and_stores_message(self) -> None:
        with self._client() as client:
            response = client.post("/api/kakao/skills/weather", json=SKILL_PAYLOAD)
            self.assertEqual(response.status_code, 200, response.text)
            body = response.json()
            self.assertEqual(body["version"], "2.0")
            text = body["template"]["outputs"][0]["simpleText"]["text"]
            self.assertTrue(text.startswith("📍 부산의 날씨 정보입니다"), text)
            self.assertIn("basicCard", body["template"]["outputs"][1])

            broken = client.post("/api/kakao/skills/weather", json={"userRequest": {}})
            self.assertEqual(broken.json()["template"]["quickReplies"][0]["label"], "다시 시도")

        stored = self.database.list_kakao_messages(limit=5)
        self.assertEqual(len(stored), 1)
        self.assertEqual(stored[0].response_type, "weather_skill")

    def test_kakao_webhook_logs_every_call(self) -> None:
        with self._client() as client:
            empty = client.post("/api/kakao/webhook", content=b"")
            self.assertEqual(empty.json()["template"]["outputs"][0]["simpleText"]["text"], "요청을 처리할 수 없습니다.")

            reply = client.post(
                "/api/kakao/webhook",
                json={"userRequest": {"utterance": "강남 맛집 알려줘", "user": {"id": "kakao-user-2"}}},
            )
            self.assertEqual(reply.status_code, 200, reply.text)
            self.assertIn("맛집 정보를 찾고 계시는군요", reply.json()["template"]["outputs"][0]["simpleText"]["text"])

            self.assertEqual(client.get("/api/kakao/webhook").json()["status"], "healthy")

        logs = self.database.list_webhook_logs(limit=10)
        self.assertEqual(len(logs), 3)
        self.assertEqual(sum(1 for log in logs if not log.is_successful), 1)
        messages = self.database.list_kakao_messages(limit=5)
        self.assertEqual(messages[0].response_type, "fallback")

    def test_clerk_webhook_verifies_signature(self) -> None:
        body = json.dumps(
            {
                "type": "user.created",
                "data": {
                    "id": "user_9",
                    "email_addresses": [{"id": "e1", "email_address": "new@example.com"}],
                    "primary_email_address_id": "e1",
                },
            }
        ).encode("utf-8")
        timestamp = str(int(time.time()))
        headers = {
            "svix-id": "msg_1",
            "svix-timestamp": timestamp,
            "svix-signature": sign_svix_payload(CLERK_SECRET, "msg_1", timestamp, body),
            "content-type": "application/json",
        }
        with self._client() as client:
            unsigned = client.post("/api/webhooks/clerk", content=body)
            self.assertEqual(unsigned.status_code, 400)
            self.assertEqual(unsigned.json()["error"], "Missing svix headers")

            accepted = client.post("/api/webhooks/clerk", content=body, headers=headers)
            self.assertEqual(accepted.status_code, 200, accepted.text)
            self.assertEqual(accepted.json()["role"], "customer")

        self.assertEqual(self.database.get_user_role("user_9").role, "customer")
        self.assertEqual(self.database.get_user_profile("user_9").email, "new@example.com")

    def test_gmail_oauth_flow_rejects_unknown_state(self) -> None:
        with self._client() as client:
            url = client.get("/api/auth/gmail/url", headers=self._admin())
            self.assertEqual(url.status_code, 200, url.text)
            self.assertIn("access_type=offline", url.json()["url"])

            rejected = client.get("/api/auth/gmail/callback", params={"code": "abc", "state": "forged"})
            self.assertEqual(rejected.status_code, 400)

            status = client.get("/api/auth/gmail/status", headers=self._admin()).json()
            self.assertFalse(status["connected"])
            self.assertFalse(status["sender_ready"])


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
