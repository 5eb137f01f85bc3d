"""Cron-triggered endpoints guarded by ``Authorization: Bearer <CRON_SECRET>``."""
from __future__ import annotations

import logging
import time
from functools import partial
from typing import Any, Callable, Dict, Optional

import anyio
from fastapi import Depends, FastAPI, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from .clock import utc_now
from .runtime import Runtime

logger = logging.getLogger("townly.cron")


class ProcessMessageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: int = Field(alias="messageId")


class EmailCronRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    schedule_id: Optional[int] = Field(default=None, alias="scheduleId")
    force_execution: bool = Field(default=False, alias="forceExecution")


def register_cron_routes(app: FastAPI, runtime: Runtime, *, auth: Callable[..., Any]) -> None:
    guarded = [Depends(auth)]

    @app.get("/api/cron/scheduled-messages", dependencies=guarded)
    async def process_scheduled_messages() -> Dict[str, Any]:
        now = utc_now()
        result = await anyio.to_thread.run_sync(runtime.messages.process_pending, now)
        return {"success": True, "timestamp": now.isoformat(), **result}

    @app.post("/api/cron/scheduled-messages", dependencies=guarded)
    async def process_one_message(payload: ProcessMessageRequest) -> Dict[str, Any]:
        try:
            result = await anyio.to_thread.run_sync(runtime.messages.process, payload.message_id)
        except KeyError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Scheduled message not found")
        return {"success": result["success"], "result": result}

    async def _run_due_emails() -> Dict[str, Any]:
        started = time.perf_counter()
        now = utc_now()
        outcome = await anyio.to_thread.run_sync(runtime.emails.execute_due, now)
        results = outcome["results"]
        executed = [entry for entry in results if entry["success"]]
        logger.info("Email scheduler ran %s schedule(s), %s succeeded", len(results), len(executed))
        return {
            "success": True,
            "timestamp": now.isoformat(),
            "schedules_processed": len(results),
            "results": results,
            "summary": {
                "schedules_executed": len(executed),
                "schedules_failed": len(results) - len(executed),
                "total_emails_succeeded": sum(entry.get("success_count", 0) for entry in results),
                "total_emails_failed": sum(entry.get("failure_count", 0) for entry in results),
            },
            "execution_time_ms": int((time.perf_counter() - started) * 1000),
        }

    @app.get("/api/cron/email-scheduler", dependencies=guarded)
    async def email_scheduler() -> Dict[str, Any]:
        return await _run_due_emails()

    @app.post("/api/cron/email-scheduler", dependencies=guarded)
    async def trigger_email_scheduler(payload: EmailCronRequest) -> Dict[str, Any]:
        if runtime.settings.is_production:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Manual trigger not allowed in production",
            )
        if payload.schedule_id is not None:
            try:
                result = await anyio.to_thread.run_sync(
                    partial(runtime.emails.execute, payload.schedule_id, initiated_by="manual_trigger")
                )
            except KeyError:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Email schedule not found")
            return {"success": True, "schedule_id": payload.schedule_id, "result": result}
        if payload.force_execution:
            return await _run_due_emails()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="scheduleId or forceExecution required",
        )

    @app.get("/api/cron/weather-collector", dependencies=guarded)
    async def collect_weather() -> Dict[str, Any]:
        return await anyio.to_thread.run_sync(runtime.weather.collect_for_all_users)

    @app.post("/api/cron/weather-collector", dependencies=guarded)
    async def force_collect_weather() -> Dict[str, Any]:
        return await anyio.to_thread.run_sync(partial(runtime.weather.collect_for_all_users, force=True))

    @app.get("/api/cron/air-quality-collector", dependencies=guarded)
    async def collect_air_quality() -> Dict[str, Any]:
        return await anyio.to_thread.run_sync(runtime.air_quality.collect_for_all_users)

    @app.post("/api/cron/air-quality-collector", dependencies=guarded)
    async def force_collect_air_quality() -> Dict[str, Any]:
        return await anyio.to_thread.run_sync(partial(runtime.air_quality.collect_for_all_users, force=True))

    @app.get("/api/cron/api-stats-reset", dependencies=guarded)
    async def reset_api_stats() -> Dict[str, Any]:
        result = runtime.tracker.finalize_previous_day(utc_now())
        return {"success": True, **result}


__all__ = ["EmailCronRequest", "ProcessMessageRequest", "register_cron_routes"]
