"""Admin, user-settings and Gmail OAuth endpoints protected by bearer tokens."""
from __future__ import annotations

import logging
import secrets
from dataclasses import asdict
from datetime import timedelta
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Set

import anyio
from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.responses import HTMLResponse
from pydantic import BaseModel, Field

from .clock import utc_now
from .database import USER_ROLES
from .runtime import Runtime
from .scheduling import (
    EmailScheduleCreate,
    EmailScheduleUpdate,
    ScheduledMessageCreate,
    ScheduledMessageUpdate,
)
from .tracking import PROVIDERS

logger = logging.getLogger("townly.admin")

CACHE_KINDS = ("all", "hourly", "daily", "location")


class ToggleRequest(BaseModel):
    is_active: bool


class BroadcastRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=1000)
    recipients: Optional[List[str]] = None


class CacheClearRequest(BaseModel):
    type: str = "all"


class RoleUpdateRequest(BaseModel):
    role: str
    signup_method: Optional[str] = Field(default=None, max_length=32)


class LocationUpdateRequest(BaseModel):
    location_name: str = Field(..., min_length=1, max_length=100)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    station_name: Optional[str] = Field(default=None, max_length=100)


class EmailSettingsUpdateRequest(BaseModel):
    is_subscribed: Optional[bool] = None
    receive_morning: Optional[bool] = None
    receive_evening: Optional[bool] = None


def register_user_routes(app: FastAPI, runtime: Runtime, *, auth: Callable[..., Any]) -> None:
    database = runtime.database

    @app.get("/api/users/{user_id}/role", dependencies=[Depends(auth)])
    async def read_user_role(user_id: str) -> Dict[str, Any]:
        role = database.get_user_role(user_id)
        if role is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User role not found")
        return asdict(role)

    @app.put("/api/users/{user_id}/role", dependencies=[Depends(auth)])
    async def update_user_role(user_id: str, payload: RoleUpdateRequest) -> Dict[str, Any]:
        if payload.role not in USER_ROLES:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"role must be one of {', '.join(USER_ROLES)}",
            )
        try:
            role = database.set_user_role(user_id, payload.role, signup_method=payload.signup_method)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        logger.info("Set role of %s to %s", user_id, payload.role)
        return asdict(role)

    @app.put("/api/users/{user_id}/location", dependencies=[Depends(auth)])
    async def update_user_location(user_id: str, payload: LocationUpdateRequest) -> Dict[str, Any]:
        try:
            location = database.set_user_location(
                user_id,
                location_name=payload.location_name,
                latitude=payload.latitude,
                longitude=payload.longitude,
                station_name=payload.station_name,
            )
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return asdict(location)

    @app.get("/api/users/{user_id}/email-settings", dependencies=[Depends(auth)])
    async def read_email_settings(user_id: str) -> Dict[str, Any]:
        return asdict(database.get_email_settings(user_id))

    @app.put("/api/users/{user_id}/email-settings", dependencies=[Depends(auth)])
    async def update_email_settings(user_id: str, payload: EmailSettingsUpdateRequest) -> Dict[str, Any]:
        settings = database.update_email_settings(
            user_id,
            is_subscribed=payload.is_subscribed,
            receive_morning=payload.receive_morning,
            receive_evening=payload.receive_evening,
        )
        return asdict(settings)


def register_admin_routes(app: FastAPI, runtime: Runtime, *, auth: Callable[..., Any]) -> None:
    """Expose scheduling, cache, usage and Kakao administration endpoints."""

    database = runtime.database
    guarded = [Depends(auth)]

    # ------------------------------------------------------------------
    # Scheduled Kakao messages
    # ------------------------------------------------------------------
    @app.get("/api/admin/scheduled-messages", dependencies=guarded)
    async def list_scheduled_messages(active_only: bool = False) -> Dict[str, Any]:
        messages = database.list_scheduled_messages(active_only=active_only)
        return {"messages": [asdict(message) for message in messages], "count": len(messages)}

    @app.post("/api/admin/scheduled-messages", status_code=status.HTTP_201_CREATED, dependencies=guarded)
    async def create_scheduled_message(payload: ScheduledMessageCreate) -> Dict[str, Any]:
        try:
            message = runtime.messages.create(payload, created_by="admin")
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        logger.info("Created scheduled message %s (%s)", message.id, message.schedule_type)
        return asdict(message)

    @app.get("/api/admin/scheduled-messages/stats", dependencies=guarded)
    async def scheduled_message_stats() -> Dict[str, Any]:
        return runtime.messages.stats()

    @app.get("/api/admin/scheduled-messages/logs", dependencies=guarded)
    async def list_all_message_logs(limit: int = Query(50, ge=1, le=500)) -> Dict[str, Any]:
        logs = database.list_scheduled_message_logs(limit=limit)
        return {"logs": [asdict(log) for log in logs]}

    @app.get("/api/admin/scheduled-messages/{message_id}", dependencies=guarded)
    async def read_scheduled_message(message_id: int) -> Dict[str, Any]:
        message = database.get_scheduled_message(message_id)
        if message is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Scheduled message not found")
        return asdict(message)

    @app.put("/api/admin/scheduled-messages/{message_id}", dependencies=guarded)
    async def update_scheduled_message(message_id: int, payload: ScheduledMessageUpdate) -> Dict[str, Any]:
        try:
            message = runtime.messages.update(message_id, payload)
        except KeyError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Scheduled message not found")
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return asdict(message)

    @app.delete("/api/admin/scheduled-messages/{message_id}", dependencies=guarded)
    async def delete_scheduled_message(message_id: int) -> Dict[str, Any]:
        if not database.delete_scheduled_message(message_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Scheduled message not found")
        logger.info("Deleted scheduled message %s", message_id)
        return {"success": True}

    @app.post("/api/admin/scheduled-messages/{message_id}/toggle", dependencies=guarded)
    async def toggle_scheduled_message(message_id: int, payload: ToggleRequest) -> Dict[str, Any]:
        try:
            message = runtime.messages.toggle(message_id, payload.is_active)
        except KeyError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Scheduled message not found")
        return asdict(message)

    @app.get("/api/admin/scheduled-messages/{message_id}/logs", dependencies=guarded)
    async def list_message_logs(message_id: int, limit: int = Query(50, ge=1, le=500)) -> Dict[str, Any]:
        logs = database.list_scheduled_message_logs(message_id=message_id, limit=limit)
        return {"logs": [asdict(log) for log in logs]}

    @app.post("/api/admin/scheduled-messages/{message_id}/send", dependencies=guarded)
    async def send_scheduled_message_now(message_id: int) -> Dict[str, Any]:
        try:
            return await anyio.to_thread.run_sync(partial(runtime.messages.process, message_id))
        except KeyError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Scheduled message not found")

    # ------------------------------------------------------------------
    # Email schedules
    # ------------------------------------------------------------------
    @app.get("/api/admin/email-schedules", dependencies=guarded)
    async def list_email_schedules() -> Dict[str, Any]:
        schedules = database.list_email_schedules()
        return {"schedules": [asdict(schedule) for schedule in schedules], "count": len(schedules)}

    @app.post("/api/admin/email-schedules", status_code=status.HTTP_201_CREATED, dependencies=guarded)
    async def create_email_schedule(payload: EmailScheduleCreate) -> Dict[str, Any]:
        schedule = runtime.emails.create(payload)
        logger.info("Created email schedule %s at %s", schedule.id, schedule.schedule_time)
        return asdict(schedule)

    @app.post("/api/admin/email-schedules/recalculate", dependencies=guarded)
    async def recalculate_email_schedules() -> Dict[str, Any]:
        updated = runtime.emails.recalculate_all()
        return {"success": True, "updated": updated}

    @app.put("/api/admin/email-schedules/{schedule_id}", dependencies=guarded)
    async def update_email_schedule(schedule_id: int, payload: EmailScheduleUpdate) -> Dict[str, Any]:
        try:
            schedule = runtime.emails.update(schedule_id, payload)
        except KeyError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Email schedule not found")
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return asdict(schedule)

    @app.delete("/api/admin/email-schedules/{schedule_id}", dependencies=guarded)
    async def delete_email_schedule(schedule_id: int) -> Dict[str, Any]:
        if not database.delete_email_schedule(schedule_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Email schedule not found")
        return {"success": True}

    @app.post("/api/admin/email-schedules/{schedule_id}/execute", dependencies=guarded)
    async def execute_email_schedule(schedule_id: int) -> Dict[str, Any]:
        try:
            return await anyio.to_thread.run_sync(
                partial(runtime.emails.execute, schedule_id, initiated_by="admin")
            )
        except KeyError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Email schedule not found")

    @app.get("/api/admin/email-logs", dependencies=guarded)
    async def list_email_logs(limit: int = Query(50, ge=1, le=500)) -> Dict[str, Any]:
        logs = database.list_email_send_logs(limit=limit)
        return {"logs": [asdict(log) for log in logs]}

    # ------------------------------------------------------------------
    # Caches and usage
    # ------------------------------------------------------------------
    @app.post("/api/admin/cache/cleanup", dependencies=guarded)
    async def cleanup_cache() -> Dict[str, Any]:
        now = utc_now()
        removed = runtime.weather.cleanup_expired(now)
        removed["air_quality_data"] = runtime.air_quality.cleanup_expired(now)
        return {"success": True, "removed": removed}

    @app.post("/api/admin/cache/clear", dependencies=guarded)
    async def clear_cache(payload: CacheClearRequest) -> Dict[str, Any]:
        if payload.type not in CACHE_KINDS:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"type must be one of {', '.join(CACHE_KINDS)}",
            )
        return {"success": True, "removed": runtime.weather.clear_cache(payload.type)}

    @app.get("/api/admin/smart-ttl", dependencies=guarded)
    async def smart_ttl_report(user_id: Optional[str] = None) -> Dict[str, Any]:
        now = utc_now()
        report: Dict[str, Any] = {"performance": runtime.smart_ttl.performance_stats(now)}
        if user_id:
            pattern = runtime.smart_ttl.analyze_user(user_id, now)
            report["user_pattern"] = asdict(pattern)
            report.update(runtime.smart_ttl.recommendations(pattern))
        return report

    @app.get("/api/admin/api-stats", dependencies=guarded)
    async def api_stats(provider: Optional[str] = None, days: int = Query(7, ge=1, le=90)) -> Dict[str, Any]:
        if provider is not None and provider not in PROVIDERS:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"provider must be one of {', '.join(PROVIDERS)}",
            )
        providers = [provider] if provider else list(PROVIDERS)
        return {
            "today": runtime.tracker.all_today_stats(),
            "limits": {name: runtime.tracker.check_limit(name) for name in providers},
            "history": {name: runtime.tracker.recent_stats(name, days) for name in providers},
            "weather_cache": runtime.weather.cache_stats(),
        }

    # ------------------------------------------------------------------
    # Kakao
    # ------------------------------------------------------------------
    @app.get("/api/admin/kakao/messages", dependencies=guarded)
    async def list_kakao_messages(
        limit: int = Query(50, ge=1, le=500),
        user_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        messages = database.list_kakao_messages(limit=limit, user_key=user_key)
        return {"messages": [asdict(message) for message in messages]}

    @app.get("/api/admin/webhook-logs", dependencies=guarded)
    async def list_webhook_logs(limit: int = Query(50, ge=1, le=500)) -> Dict[str, Any]:
        logs = database.list_webhook_logs(limit=limit)
        summary = database.webhook_log_summary(utc_now() - timedelta(hours=24))
        return {"logs": [asdict(log) for log in logs], "last_24h": summary}

    @app.post("/api/admin/kakao/send", dependencies=guarded)
    async def send_kakao_broadcast(payload: BroadcastRequest) -> Dict[str, Any]:
        result = await anyio.to_thread.run_sync(
            partial(runtime.kakao.send_broadcast, payload.message, payload.recipients)
        )
        return {**result.to_dict(), "simulated": runtime.kakao.simulated}

    @app.get("/api/admin/kakao/wallet", dependencies=guarded)
    async def kakao_wallet() -> Dict[str, Any]:
        wallet = await anyio.to_thread.run_sync(runtime.kakao.wallet_balance)
        return {**asdict(wallet), "simulated": runtime.kakao.simulated}


def register_gmail_routes(app: FastAPI, runtime: Runtime, *, auth: Callable[..., Any]) -> None:
    oauth = runtime.gmail_oauth
    pending_states: Set[str] = set()

    @app.get("/api/auth/gmail/url", dependencies=[Depends(auth)])
    async def gmail_authorization_url() -> Dict[str, str]:
        state = secrets.token_urlsafe(24)
        url = oauth.authorization_url(state)
        pending_states.add(state)
        return {"url": url, "state": state}

    @app.get("/api/auth/gmail/callback", response_class=HTMLResponse)
    async def gmail_callback(code: str = "", state: str = "", error: Optional[str] = None) -> HTMLResponse:
        if error:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Google returned an error: {error}")
        if state not in pending_states:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unknown or expired OAuth state")
        pending_states.discard(state)
        try:
            result = await anyio.to_thread.run_sync(oauth.exchange_code, code)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        runtime.gmail.set_refresh_token(result["refresh_token"])
        logger.info("Gmail connected for %s", result.get("email") or "unknown account")
        return HTMLResponse(
            "<html><body><h1>Gmail 연동이 완료되었습니다.</h1>"
            "<p>이 창을 닫으셔도 됩니다.</p></body></html>"
        )

    @app.get("/api/auth/gmail/status", dependencies=[Depends(auth)])
    async def gmail_status() -> Dict[str, Any]:
        return {**oauth.status(), "sender_ready": runtime.gmail.configured}

    @app.post("/api/auth/gmail/revoke", dependencies=[Depends(auth)])
    async def gmail_revoke() -> Dict[str, Any]:
        revoked = await anyio.to_thread.run_sync(oauth.revoke)
        runtime.gmail.set_refresh_token(runtime.settings.gmail_refresh_token)
        return {"success": revoked}


__all__ = ["register_admin_routes", "register_gmail_routes", "register_user_routes"]
