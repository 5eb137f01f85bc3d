"""Inbound webhooks: Kakao i Open Builder skills, the Kakao channel webhook and Clerk."""
from __future__ import annotations

import json
import logging
import sqlite3
import time
from functools import partial
from typing import Any, Dict, Mapping, Optional
from urllib.parse import parse_qs, urlparse

import anyio
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from .clock import utc_now
from .database import Database
from .intent import KNOWN_LOCATIONS
from .kakao import (
    DEFAULT_QUICK_REPLIES,
    SkillRequest,
    error_response,
    preferred_location_context,
    simple_text,
    skill_response,
    weather_skill_response,
)
from .rag import detect_message_type
from .runtime import Runtime
from .security import WebhookVerificationError, verify_svix_signature
from .weather import DEFAULT_LOCATION

logger = logging.getLogger("townly.webhooks")

SKILL_ERROR_TEXT = "죄송합니다. 날씨 정보를 가져오는 중 오류가 발생했습니다. 잠시 후 다시 시도해 주세요."
EMPTY_BODY_TEXT = "요청을 처리할 수 없습니다."
INVALID_JSON_TEXT = "요청 형식이 올바르지 않습니다."
EMPTY_UTTERANCE_TEXT = "메시지를 이해할 수 없습니다. 텍스트로 다시 입력해주세요."
WEBHOOK_ERROR_TEXT = "죄송합니다. 일시적인 오류가 발생했습니다. 잠시 후 다시 시도해주세요."

ADMIN_ROLE_MARKER = "role:admin"


def client_ip(request: Request) -> str:
    return request.headers.get("x-forwarded-for") or request.headers.get("x-real-ip") or "unknown"


def _elapsed(started: float) -> str:
    return f"{int((time.perf_counter() - started) * 1000)}ms"


def _store_kakao_message(database: Database, **fields: Any) -> None:
    try:
        database.insert_kakao_message(**fields)
    except sqlite3.Error:
        logger.exception("Failed to store Kakao message from %s", fields.get("user_key"))


# ----------------------------------------------------------------------
# Clerk role assignment
# ----------------------------------------------------------------------
def _url_requests_admin(value: Any) -> bool:
    if not isinstance(value, str) or not value:
        return False
    try:
        query = parse_qs(urlparse(value).query)
    except ValueError:
        return False
    return "admin" in query.get("role", [])


def resolve_role(data: Mapping[str, Any]) -> str:
    """``admin`` when the external id or any sign-in URL carries ``role=admin``."""

    if data.get("external_id") == ADMIN_ROLE_MARKER:
        return "admin"
    for key in ("redirect_url", "first_sign_in_url", "last_sign_in_url"):
        if _url_requests_admin(data.get(key)):
            return "admin"
    return "customer"


def resolve_signup_method(data: Mapping[str, Any]) -> str:
    for account in data.get("external_accounts") or []:
        provider = str(account.get("provider") or account.get("object") or "")
        if "kakao" in provider:
            return "kakao"
    return "email"


def _primary_email(data: Mapping[str, Any]) -> Optional[str]:
    addresses = data.get("email_addresses") or []
    primary_id = data.get("primary_email_address_id")
    for address in addresses:
        if primary_id and address.get("id") == primary_id:
            return address.get("email_address")
    if addresses:
        return addresses[0].get("email_address")
    return None


def _display_name(data: Mapping[str, Any]) -> Optional[str]:
    parts = [data.get("first_name"), data.get("last_name")]
    name = " ".join(str(part) for part in parts if part)
    return name or data.get("username") or None


def handle_clerk_event(database: Database, event: Mapping[str, Any]) -> Dict[str, Any]:
    event_type = str(event.get("type") or "")
    data = event.get("data") or {}
    user_id = data.get("id")

    if event_type == "user.created" and user_id:
        role = resolve_role(data)
        signup_method = resolve_signup_method(data)
        database.set_user_role(user_id, role, signup_method=signup_method)
        database.upsert_user_profile(
            user_id,
            email=_primary_email(data),
            name=_display_name(data),
            signup_method=signup_method,
        )
        logger.info("Registered Clerk user %s as %s (%s)", user_id, role, signup_method)
        return {"success": True, "event": event_type, "role": role}

    if event_type == "user.updated" and user_id:
        database.upsert_user_profile(user_id, email=_primary_email(data), name=_display_name(data))
        return {"success": True, "event": event_type}

    if event_type == "user.deleted" and user_id:
        removed = database.delete_user(user_id)
        logger.info("Removed Clerk user %s (found=%s)", user_id, removed)
        return {"success": True, "event": event_type, "removed": removed}

    logger.debug("Ignoring Clerk event %s", event_type or "<none>")
    return {"success": True, "event": event_type, "ignored": True}


# ----------------------------------------------------------------------
# Routes
# ----------------------------------------------------------------------
def register_webhook_routes(app: FastAPI, runtime: Runtime) -> None:
    database = runtime.database

    async def _parse_skill(request: Request) -> Optional[SkillRequest]:
        try:
            payload = await request.json()
            return SkillRequest.model_validate(payload)
        except (ValueError, PydanticValidationError) as exc:
            logger.warning("Rejected Kakao skill request: %s", exc)
            return None

    @app.post("/api/kakao/skills/weather")
    async def weather_skill(request: Request) -> Dict[str, Any]:
        started = time.perf_counter()
        skill = await _parse_skill(request)
        if skill is None:
            return error_response(SKILL_ERROR_TEXT)

        try:
            reply = await anyio.to_thread.run_sync(
                partial(
                    runtime.chatbot.process,
                    skill.utterance,
                    user_id=skill.user_id,
                    user_location=skill.user_location or DEFAULT_LOCATION,
                    now=utc_now(),
                )
            )
        except Exception:
            logger.exception("Weather skill failed for %s", skill.user_id)
            return error_response(SKILL_ERROR_TEXT)

        _store_kakao_message(
            database,
            user_key=skill.user_id,
            message=skill.utterance.strip(),
            ai_response=reply.message,
            response_type="weather_skill",
            processing_time=_elapsed(started),
            channel_id=skill.bot.id,
            raw_data=skill.model_dump(by_alias=True),
        )
        return weather_skill_response(reply)

    @app.get("/api/kakao/skills/weather")
    async def weather_skill_info() -> Dict[str, Any]:
        return {
            "name": "날씨 스킬",
            "version": "1.0.0",
            "description": "사용자의 날씨 질문에 대해 데이터베이스 기반 날씨 정보를 제공합니다.",
            "endpoints": {"skill": "/api/kakao/skills/weather"},
            "capabilities": ["현재 날씨 조회", "시간별 날씨 예보", "일별 날씨 예보", "주간 날씨 예보", "위치별 날씨 정보"],
            "supported_locations": list(KNOWN_LOCATIONS),
        }

    @app.post("/api/kakao/skills/weather-rag")
    async def weather_rag_skill(request: Request) -> Dict[str, Any]:
        started = time.perf_counter()
        skill = await _parse_skill(request)
        if skill is None:
            return error_response(SKILL_ERROR_TEXT)

        location = skill.user_location or DEFAULT_LOCATION
        try:
            answer = await anyio.to_thread.run_sync(
                partial(
                    runtime.rag.answer,
                    skill.utterance,
                    user_id=skill.user_id,
                    location=location,
                    now=utc_now(),
                )
            )
        except Exception:
            logger.exception("Weather RAG skill failed for %s", skill.user_id)
            return error_response(SKILL_ERROR_TEXT)

        _store_kakao_message(
            database,
            user_key=skill.user_id,
            message=skill.utterance.strip(),
            ai_response=answer.text,
            response_type=f"weather_{answer.source}",
            processing_time=_elapsed(started),
            channel_id=skill.bot.id,
            raw_data=skill.model_dump(by_alias=True),
        )
        return skill_response(
            [{"simpleText": {"text": answer.text}}],
            quick_replies=DEFAULT_QUICK_REPLIES,
            context=preferred_location_context(location),
        )

    @app.get("/api/kakao/skills/weather-rag")
    async def weather_rag_skill_info() -> Dict[str, Any]:
        return {
            "name": "날씨 RAG 스킬",
            "version": "2.0.0",
            "description": "벡터 검색과 ChatGPT를 활용한 날씨 정보 서비스",
            "endpoints": {"skill": "/api/kakao/skills/weather-rag", "fallback": "/api/kakao/skills/weather"},
            "rag_enabled": runtime.rag.enabled,
            "supported_locations": list(KNOWN_LOCATIONS),
        }

    def _log_webhook(
        request: Request,
        *,
        method: str,
        status_code: int,
        started: float,
        body: Optional[str],
        response_body: Any,
        error: Optional[str] = None,
    ) -> None:
        try:
            database.insert_webhook_log(
                method=method,
                url=str(request.url),
                status_code=status_code,
                is_successful=error is None and status_code < 400,
                user_agent=request.headers.get("user-agent", "unknown"),
                request_body=body,
                request_headers=dict(request.headers),
                response_body=json.dumps(response_body, ensure_ascii=False),
                processing_time=_elapsed(started),
                error_message=error,
                ip_address=client_ip(request),
            )
        except sqlite3.Error:
            logger.exception("Failed to write webhook log")

    @app.post("/api/kakao/webhook")
    async def kakao_webhook(request: Request) -> Dict[str, Any]:
        started = time.perf_counter()
        body = ""
        try:
            body = (await request.body()).decode("utf-8", errors="replace")
            if not body.strip():
                response = simple_text(EMPTY_BODY_TEXT)
                _log_webhook(
                    request,
                    method="POST",
                    status_code=400,
                    started=started,
                    body=body,
                    response_body=response,
                    error="Request body is empty",
                )
                return response

            try:
                payload = json.loads(body)
            except ValueError:
                response = simple_text(INVALID_JSON_TEXT)
                _log_webhook(
                    request,
                    method="POST",
                    status_code=400,
                    started=started,
                    body=body,
                    response_body=response,
                    error="Invalid JSON",
                )
                return response

            if not isinstance(payload, dict):
                payload = {}
            user_request = payload.get("userRequest") or {}
            utterance = str(user_request.get("utterance") or "")
            user_id = str((user_request.get("user") or {}).get("id") or "unknown")
            if not utterance.strip():
                response = simple_text(EMPTY_UTTERANCE_TEXT)
                _log_webhook(request, method="POST", status_code=200, started=started, body=body, response_body=response)
                return response

            location = ((user_request.get("user") or {}).get("properties") or {}).get("location")
            reply_started = time.perf_counter()
            reply = await anyio.to_thread.run_sync(
                partial(
                    runtime.responder.respond,
                    utterance,
                    user_id=user_id,
                    location=location or DEFAULT_LOCATION,
                    now=utc_now(),
                )
            )
            _store_kakao_message(
                database,
                user_key=user_id,
                message=utterance.strip(),
                message_type=detect_message_type(utterance, user_request.get("params")),
                ai_response=reply.text,
                response_type=reply.type,
                processing_time=_elapsed(reply_started),
                channel_id=(payload.get("bot") or {}).get("id"),
                raw_data=payload,
            )
            logger.info("Kakao webhook answered %s with a %s reply", user_id, reply.type)

            response = simple_text(reply.text)
            _log_webhook(request, method="POST", status_code=200, started=started, body=body, response_body=response)
            return response
        except Exception as exc:
            logger.exception("Kakao webhook processing failed")
            _log_webhook(
                request,
                method="POST",
                status_code=500,
                started=started,
                body=body or None,
                response_body={"error": "Internal server error"},
                error=str(exc),
            )
            return simple_text(WEBHOOK_ERROR_TEXT)

    @app.get("/api/kakao/webhook")
    async def kakao_webhook_health(request: Request) -> Dict[str, Any]:
        started = time.perf_counter()
        response = {
            "status": "healthy",
            "service": "Townly Kakao Webhook",
            "timestamp": utc_now().isoformat(),
        }
        _log_webhook(request, method="GET", status_code=200, started=started, body=None, response_body=response)
        return response

    @app.post("/api/webhooks/clerk")
    async def clerk_webhook(request: Request) -> JSONResponse:
        secret = runtime.settings.clerk_webhook_secret
        if not secret:
            logger.error("CLERK_WEBHOOK_SECRET is not configured")
            return JSONResponse({"error": "Webhook secret not configured"}, status_code=500)

        body = await request.body()
        try:
            verify_svix_signature(secret, request.headers, body)
        except WebhookVerificationError as exc:
            logger.warning("Rejected Clerk webhook: %s", exc)
            message = "Missing svix headers" if "Missing" in str(exc) else "Invalid webhook signature"
            return JSONResponse({"error": message}, status_code=400)

        try:
            event = json.loads(body)
        except ValueError:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")

        try:
            result = handle_clerk_event(database, event)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return JSONResponse(result)


__all__ = [
    "client_ip",
    "handle_clerk_event",
    "register_webhook_routes",
    "resolve_role",
    "resolve_signup_method",
]
