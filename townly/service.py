"""FastAPI application factory for the Townly backend."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from functools import partial
from typing import Any, AsyncIterator, Dict, Optional

import anyio
import httpx
from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from .admin import register_admin_routes, register_gmail_routes, register_user_routes
from .clock import utc_now
from .config import Settings
from .cron import register_cron_routes
from .database import Database
from .errors import TownlyError
from .models import AirQualityReading
from .runtime import Runtime, build_runtime
from .security import DisabledAuth, TokenAuth, build_cron_auth
from .weather import ForecastResult
from .webhooks import register_webhook_routes

logger = logging.getLogger("townly.service")


def _forecast_payload(result: ForecastResult) -> Dict[str, Any]:
    forecasts = []
    for item in result.forecasts:
        data = asdict(item)
        data.pop("raw", None)
        forecasts.append(data)
    return {
        "location_name": result.location_name,
        "location_key": result.location_key,
        "from_cache": result.from_cache,
        "headline": result.headline,
        "count": len(forecasts),
        "forecasts": forecasts,
    }


def _reading_payload(reading: AirQualityReading) -> Dict[str, Any]:
    data = asdict(reading)
    data.pop("raw", None)
    return data


def _build_admin_auth(settings: Settings):
    if settings.admin_tokens:
        return TokenAuth(settings.admin_tokens)
    logger.warning("TOWNLY_ADMIN_TOKENS is empty; admin endpoints are disabled")
    return DisabledAuth()


def register_public_routes(app: FastAPI, runtime: Runtime) -> None:
    """Health checks plus the read-only weather and air quality endpoints."""

    @app.get("/healthz")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/health")
    async def detailed_health() -> JSONResponse:
        database_ok = runtime.database.ping()
        settings = runtime.settings
        body = {
            "status": "healthy" if database_ok else "degraded",
            "timestamp": utc_now().isoformat(),
            "environment": settings.environment,
            "database": database_ok,
            "providers": {
                "accuweather": runtime.weather.client.configured,
                "airkorea": bool(settings.airkorea_api_key),
                "google_air_quality": bool(settings.google_maps_api_key),
                "openai": runtime.embeddings.configured,
                "kakao_business": not runtime.kakao.simulated,
                "gmail": runtime.gmail.configured,
            },
        }
        return JSONResponse(body, status_code=200 if database_ok else 503)

    def _weather_args(
        location: Optional[str], lat: Optional[float], lon: Optional[float]
    ) -> Dict[str, Any]:
        if not location and (lat is None or lon is None):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Provide either location or both lat and lon",
            )
        return {"location": location, "latitude": lat, "longitude": lon}

    @app.get("/api/weather/hourly")
    async def hourly_weather(
        location: Optional[str] = None,
        lat: Optional[float] = Query(None, ge=-90, le=90),
        lon: Optional[float] = Query(None, ge=-180, le=180),
        units: str = Query("metric", pattern="^(metric|imperial)$"),
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        call = partial(
            runtime.weather.hourly_weather,
            **_weather_args(location, lat, lon),
            units=units,
            clerk_user_id=user_id,
        )
        try:
            result = await anyio.to_thread.run_sync(call)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return _forecast_payload(result)

    @app.get("/api/weather/daily")
    async def daily_weather(
        location: Optional[str] = None,
        lat: Optional[float] = Query(None, ge=-90, le=90),
        lon: Optional[float] = Query(None, ge=-180, le=180),
        days: int = 5,
        units: str = Query("metric", pattern="^(metric|imperial)$"),
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        call = partial(
            runtime.weather.daily_weather,
            **_weather_args(location, lat, lon),
            days=days,
            units=units,
            clerk_user_id=user_id,
        )
        try:
            result = await anyio.to_thread.run_sync(call)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return _forecast_payload(result)

    @app.get("/api/weather/stats")
    async def weather_stats() -> Dict[str, Any]:
        return {
            "cache": runtime.weather.cache_stats(),
            "api_usage": runtime.tracker.check_limit("accuweather"),
            "smart_ttl": runtime.smart_ttl.performance_stats(),
        }

    @app.get("/api/weather/health")
    async def weather_health() -> Dict[str, Any]:
        limiter = runtime.weather.client.rate_limiter
        now = utc_now()
        return {
            "status": "healthy" if runtime.weather.client.configured else "unconfigured",
            "api_key_configured": runtime.weather.client.configured,
            "rate_limit": limiter.stats(now) if limiter is not None else None,
            "can_make_request": limiter.can_make_request(now) if limiter is not None else True,
            "cache": runtime.database.weather_cache_stats(now),
        }

    @app.get("/api/airquality/station")
    async def station_air_quality(station_name: str = Query(..., min_length=1)) -> Dict[str, Any]:
        items = await anyio.to_thread.run_sync(runtime.air_quality.station, station_name)
        return {"station_name": station_name, "items": items}

    @app.get("/api/airquality/sido")
    async def sido_air_quality(sido_name: str = Query(..., min_length=1)) -> Dict[str, Any]:
        items = await anyio.to_thread.run_sync(runtime.air_quality.sido, sido_name)
        return {"sido_name": sido_name, "items": items}

    @app.get("/api/airquality/google/current")
    async def google_current_air_quality(
        lat: float = Query(..., ge=-90, le=90),
        lon: float = Query(..., ge=-180, le=180),
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        reading = await anyio.to_thread.run_sync(
            partial(runtime.air_quality.current, lat, lon, clerk_user_id=user_id)
        )
        return _reading_payload(reading)

    @app.get("/api/airquality/google/hourly")
    async def google_hourly_air_quality(
        lat: float = Query(..., ge=-90, le=90),
        lon: float = Query(..., ge=-180, le=180),
        hours: int = 12,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            readings = await anyio.to_thread.run_sync(
                partial(runtime.air_quality.hourly_with_ttl, lat, lon, hours, clerk_user_id=user_id)
            )
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return {"count": len(readings), "readings": [_reading_payload(item) for item in readings]}

    @app.get("/api/airquality/google/daily")
    async def google_daily_air_quality(
        lat: float = Query(..., ge=-90, le=90),
        lon: float = Query(..., ge=-180, le=180),
        days: int = 4,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            readings = await anyio.to_thread.run_sync(
                partial(runtime.air_quality.daily_with_ttl, lat, lon, days, clerk_user_id=user_id)
            )
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return {"count": len(readings), "readings": [_reading_payload(item) for item in readings]}


def create_app(
    *,
    settings: Settings | None = None,
    runtime: Runtime | None = None,
    database: Database | None = None,
    http_client: httpx.Client | None = None,
    openai_client: Any = None,
) -> FastAPI:
    """Instantiate the Townly FastAPI application."""

    if runtime is None:
        runtime = build_runtime(
            settings or Settings.from_env(),
            database=database,
            http_client=http_client,
            openai_client=openai_client,
        )
    settings = runtime.settings

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        runtime.close()

    app = FastAPI(
        title="Townly API",
        lifespan=lifespan,
        version="1.0.0",
        description="Hyper-local weather, air quality and messaging backend.",
    )
    app.state.runtime = runtime
    app.state.database = runtime.database

    @app.exception_handler(TownlyError)
    async def townly_error_handler(request: Request, exc: TownlyError) -> JSONResponse:
        log = logger.error if exc.status_code >= 500 else logger.warning
        log("%s %s failed with %s: %s", request.method, request.url.path, exc.code.value, exc)
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    admin_auth = _build_admin_auth(settings)
    register_public_routes(app, runtime)
    register_user_routes(app, runtime, auth=admin_auth)
    register_admin_routes(app, runtime, auth=admin_auth)
    register_gmail_routes(app, runtime, auth=admin_auth)
    register_cron_routes(app, runtime, auth=build_cron_auth(settings.cron_secret))
    register_webhook_routes(app, runtime)

    return app


__all__ = ["create_app", "register_public_routes"]
