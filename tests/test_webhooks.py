from __future__ import annotations

import base64
from pathlib import Path

import pytest

from townly.database import Database
from townly.security import WebhookVerificationError, sign_svix_payload, verify_svix_signature
from townly.webhooks import handle_clerk_event, resolve_role, resolve_signup_method

SECRET = "whsec_" + base64.b64encode(b"clerk-signing-secret").decode("ascii")
BODY = b'{"type":"user.created"}'
SENT_AT = 1_740_800_000


def _headers(signature: str, *, timestamp: int = SENT_AT) -> dict:
    return {"svix-id": "msg_1", "svix-timestamp": str(timestamp), "svix-signature": signature}


def test_valid_signature_is_accepted_among_several() -> None:
    signature = sign_svix_payload(SECRET, "msg_1", str(SENT_AT), BODY)
    header = "v1,bm90LXRoaXMtb25l " + signature
    verify_svix_signature(SECRET, _headers(header), BODY, now=SENT_AT + 10)


def test_tampered_body_is_rejected() -> None:
    signature = sign_svix_payload(SECRET, "msg_1", str(SENT_AT), BODY)
    with pytest.raises(WebhookVerificationError, match="No matching"):
        verify_svix_signature(SECRET, _headers(signature), BODY + b" ", now=SENT_AT)


def test_stale_timestamp_is_rejected() -> None:
    signature = sign_svix_payload(SECRET, "msg_1", str(SENT_AT), BODY)
    with pytest.raises(WebhookVerificationError, match="tolerance"):
        verify_svix_signature(SECRET, _headers(signature), BODY, now=SENT_AT + 301)


def test_missing_headers_are_rejected() -> None:
    with pytest.raises(WebhookVerificationError, match="Missing"):
        verify_svix_signature(SECRET, {"svix-id": "msg_1"}, BODY, now=SENT_AT)
    with pytest.raises(WebhookVerificationError, match="timestamp"):
        verify_svix_signature(SECRET, {"svix-id": "msg_1", "svix-timestamp": "soon", "svix-signature": "v1,abc"}, BODY)


@pytest.mark.parametrize(
    ("data", "expected"),
    [
        ({"external_id": "role:admin"}, "admin"),
        ({"redirect_url": "https://townly.kr/sign-up?role=admin"}, "admin"),
        ({"last_sign_in_url": "https://townly.kr/?role=customer"}, "customer"),
        ({}, "customer"),
    ],
)
def test_resolve_role(data: dict, expected: str) -> None:
    assert resolve_role(data) == expected


def test_resolve_signup_method() -> None:
    assert resolve_signup_method({"external_accounts": [{"provider": "oauth_kakao"}]}) == "kakao"
    assert resolve_signup_method({"external_accounts": [{"provider": "oauth_google"}]}) == "email"
    assert resolve_signup_method({}) == "email"


@pytest.fixture()
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "townly.sqlite3")
    db.initialize()
    return db


def test_clerk_lifecycle_creates_updates_and_deletes_user(database: Database) -> None:
    created = handle_clerk_event(
        database,
        {
            "type": "user.created",
            "data": {
                "id": "user_1",
                "external_id": "role:admin",
                "first_name": "민수",
                "last_name": "김",
                "primary_email_address_id": "email_2",
                "email_addresses": [
                    {"id": "email_1", "email_address": "old@example.com"},
                    {"id": "email_2", "email_address": "Kim@Example.com"},
                ],
                "external_accounts": [{"provider": "oauth_kakao"}],
            },
        },
    )
    assert created == {"success": True, "event": "user.created", "role": "admin"}
    role = database.get_user_role("user_1")
    assert role.role == "admin"
    assert role.signup_method == "kakao"
    profile = database.get_user_profile("user_1")
    assert profile.email == "kim@example.com"
    assert profile.name == "민수 김"

    handle_clerk_event(
        database,
        {"type": "user.updated", "data": {"id": "user_1", "username": "minsu", "email_addresses": []}},
    )
    assert database.get_user_profile("user_1").name == "minsu"

    deleted = handle_clerk_event(database, {"type": "user.deleted", "data": {"id": "user_1"}})
    assert deleted["removed"] is True
    assert database.get_user_role("user_1") is None


def test_unknown_events_are_ignored(database: Database) -> None:
    result = handle_clerk_event(database, {"type": "session.created", "data": {"id": "sess_1"}})
    assert result["ignored"] is True
