"""Wire the Townly services together from :class:`~townly.config.Settings`."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from .airquality import AirKoreaClient, AirQualityService, GoogleAirQualityClient
from .chatbot import WeatherChatbot
from .config import Settings
from .database import Database, resolve_database_path
from .embeddings import EmbeddingClient, VectorStore, WeatherIndexer, build_openai_client
from .kakao import KakaoBusinessClient
from .mail import GmailClient, GmailOAuth
from .rag import TownlyResponder, WeatherRAG
from .ratelimit import RateLimiter
from .scheduling import EmailScheduleDispatcher, ScheduledMessageDispatcher
from .tracking import ApiTracker
from .ttl import SmartTTL
from .weather import AccuWeatherClient, WeatherService

logger = logging.getLogger("townly.runtime")


@dataclass
class Runtime:
    """Every long-lived collaborator the HTTP layer and CLI need."""

    settings: Settings
    database: Database
    tracker: ApiTracker
    smart_ttl: SmartTTL
    weather: WeatherService
    air_quality: AirQualityService
    chatbot: WeatherChatbot
    embeddings: EmbeddingClient
    store: VectorStore
    rag: WeatherRAG
    responder: TownlyResponder
    kakao: KakaoBusinessClient
    gmail: GmailClient
    gmail_oauth: GmailOAuth
    messages: ScheduledMessageDispatcher
    emails: EmailScheduleDispatcher
    http_client: Optional[httpx.Client] = None

    def close(self) -> None:
        if self.http_client is not None:
            self.http_client.close()


def _stored_gmail_token(database: Database, settings: Settings) -> Optional[str]:
    if not settings.secret_key:
        return None
    try:
        credentials = database.get_gmail_credentials()
    except ValueError as exc:
        logger.warning("Stored Gmail credentials are unreadable: %s", exc)
        return None
    return credentials.refresh_token if credentials else None


def build_runtime(
    settings: Settings,
    *,
    database: Optional[Database] = None,
    http_client: Optional[httpx.Client] = None,
    openai_client: Any = None,
    initialize_database: bool = True,
) -> Runtime:
    """Build the service graph; ``http_client`` and ``openai_client`` may be injected for tests."""

    db = database or Database(resolve_database_path(settings.database_path), secret_key=settings.secret_key)
    if initialize_database:
        db.initialize()

    profile = settings.profile
    owned_client: Optional[httpx.Client] = None
    if http_client is None:
        owned_client = httpx.Client(timeout=profile.http_timeout_seconds)
        http_client = owned_client

    tracker = ApiTracker(db)
    limits = profile.rate_limits
    limiter = RateLimiter(per_minute=limits.per_minute, per_hour=limits.per_hour, per_day=limits.per_day)
    smart_ttl = SmartTTL(db, base=profile.cache_ttl_minutes)

    accuweather = AccuWeatherClient(
        settings.accuweather_api_key,
        http_client=http_client,
        rate_limiter=limiter,
        tracker=tracker,
    )
    weather = WeatherService(db, accuweather, smart_ttl=smart_ttl)

    air_quality = AirQualityService(
        db,
        GoogleAirQualityClient(settings.google_maps_api_key, http_client=http_client, tracker=tracker),
        AirKoreaClient(settings.airkorea_api_key, http_client=http_client, tracker=tracker),
    )

    if openai_client is None and settings.embeddings_enabled:
        openai_client = build_openai_client(settings.openai_api_key)
    embeddings = EmbeddingClient(openai_client, tracker=tracker)
    store = VectorStore(db)
    if embeddings.configured:
        weather.set_indexer(WeatherIndexer(embeddings, store))

    chatbot = WeatherChatbot(weather)
    rag = WeatherRAG(chatbot, embeddings=embeddings, store=store, client=openai_client, tracker=tracker)
    responder = TownlyResponder(rag, client=openai_client, tracker=tracker)

    kakao = KakaoBusinessClient(
        settings.kakao_admin_key,
        channel_id=settings.kakao_channel_id,
        sender_key=settings.kakao_sender_key,
        http_client=http_client,
        tracker=tracker,
    )
    gmail = GmailClient(
        settings.gmail_client_id,
        settings.gmail_client_secret,
        _stored_gmail_token(db, settings) or settings.gmail_refresh_token,
        settings.gmail_from_email,
        http_client=http_client,
    )
    gmail_oauth = GmailOAuth(
        db,
        client_id=settings.gmail_client_id,
        client_secret=settings.gmail_client_secret,
        redirect_uri=settings.gmail_redirect_uri,
        http_client=http_client,
    )

    return Runtime(
        settings=settings,
        database=db,
        tracker=tracker,
        smart_ttl=smart_ttl,
        weather=weather,
        air_quality=air_quality,
        chatbot=chatbot,
        embeddings=embeddings,
        store=store,
        rag=rag,
        responder=responder,
        kakao=kakao,
        gmail=gmail,
        gmail_oauth=gmail_oauth,
        messages=ScheduledMessageDispatcher(db, kakao, gap_seconds=profile.cron_message_gap_seconds),
        emails=EmailScheduleDispatcher(db, gmail, weather),
        http_client=owned_client,
    )


__all__ = ["Runtime", "build_runtime"]
