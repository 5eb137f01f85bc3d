"""Security helpers for the Townly admin, cron and webhook endpoints."""
from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import time
from typing import Callable, Iterable, List, Mapping, Optional

from fastapi import HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

SVIX_TOLERANCE_SECONDS = 5 * 60


class TokenAuth:
    """Bearer token authentication using constant-time comparisons."""

    def __init__(self, tokens: Iterable[str]):
        token_list: List[str] = [token.strip() for token in tokens if token.strip()]
        if not token_list:
            raise ValueError("At least one API token must be provided")
        self._tokens = token_list
        self._bearer = HTTPBearer(auto_error=False)

    async def __call__(self, request: Request) -> None:
        credentials: HTTPAuthorizationCredentials | None = await self._bearer(request)  # type: ignore[assignment]
        if credentials is None or credentials.scheme.lower() != "bearer":
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")

        provided = credentials.credentials
        for token in self._tokens:
            if secrets.compare_digest(provided, token):
                return None

        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid API token")


class DisabledAuth:
    """Dependency used when no admin tokens are configured; rejects every call."""

    async def __call__(self, request: Request) -> None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API is disabled. Set TOWNLY_ADMIN_TOKENS to enable it.",
        )


def build_cron_auth(secret: Optional[str]) -> Callable[[Request], None]:
    """Return a dependency checking ``Authorization: Bearer <CRON_SECRET>``."""

    def dependency(request: Request) -> None:
        if not secret:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="CRON_SECRET is not configured",
            )
        header = request.headers.get("authorization", "")
        expected = f"Bearer {secret}"
        if not secrets.compare_digest(header.encode("utf-8"), expected.encode("utf-8")):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    return dependency


class WebhookVerificationError(ValueError):
    """Raised when a svix-signed webhook fails verification."""


def _decode_svix_secret(secret: str) -> bytes:
    raw = secret[len("whsec_"):] if secret.startswith("whsec_") else secret
    try:
        return base64.b64decode(raw)
    except ValueError as exc:
        raise WebhookVerificationError("Webhook secret is not valid base64") from exc


def sign_svix_payload(secret: str, msg_id: str, timestamp: str, body: bytes) -> str:
    """Return the ``v1,<signature>`` value svix would send for ``body``."""

    key = _decode_svix_secret(secret)
    signed = f"{msg_id}.{timestamp}.".encode("utf-8") + body
    digest = hmac.new(key, signed, hashlib.sha256).digest()
    return "v1," + base64.b64encode(digest).decode("ascii")


def verify_svix_signature(
    secret: str,
    headers: Mapping[str, str],
    body: bytes,
    *,
    now: Optional[float] = None,
) -> None:
    """Validate svix webhook headers; raises :class:`WebhookVerificationError`."""

    msg_id = headers.get("svix-id")
    timestamp = headers.get("svix-timestamp")
    signature_header = headers.get("svix-signature")
    if not msg_id or not timestamp or not signature_header:
        raise WebhookVerificationError("Missing svix headers")

    try:
        sent_at = int(timestamp)
    except ValueError as exc:
        raise WebhookVerificationError("Invalid svix timestamp") from exc

    current = time.time() if now is None else now
    if abs(current - sent_at) > SVIX_TOLERANCE_SECONDS:
        raise WebhookVerificationError("Webhook timestamp is outside the tolerance window")

    expected = sign_svix_payload(secret, msg_id, timestamp, body).split(",", 1)[1]
    for candidate in signature_header.split():
        version, _, value = candidate.partition(",")
        if version != "v1" or not value:
            continue
        if secrets.compare_digest(value.encode("utf-8"), expected.encode("utf-8")):
            return None

    raise WebhookVerificationError("No matching webhook signature")


__all__ = [
    "DisabledAuth",
    "SVIX_TOLERANCE_SECONDS",
    "TokenAuth",
    "WebhookVerificationError",
    "build_cron_auth",
    "sign_svix_payload",
    "verify_svix_signature",
]
