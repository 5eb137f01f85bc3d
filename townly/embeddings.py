"""OpenAI embeddings for weather rows and a small per-user vector store."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np
import openai
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .database import Database
from .errors import ConfigurationError, ExternalAPIError
from .models import DailyForecast, HourlyForecast
from .tracking import ApiTracker

logger = logging.getLogger("townly.embeddings")

EMBEDDING_MODEL = "text-embedding-3-small"
SEARCH_CANDIDATES = 20


def build_openai_client(api_key: Optional[str]) -> Optional[openai.OpenAI]:
    if not api_key:
        return None
    return openai.OpenAI(api_key=api_key)


class EmbeddingClient:
    """Wrap ``client.embeddings.create`` with retries and usage tracking."""

    def __init__(
        self,
        client: Optional[Any],
        *,
        model: str = EMBEDDING_MODEL,
        tracker: Optional[ApiTracker] = None,
        attempts: int = 3,
        wait: Any = None,
    ) -> None:
        self._client = client
        self._model = model
        self._tracker = tracker
        self._attempts = attempts
        self._wait = wait if wait is not None else wait_exponential(multiplier=1, min=2, max=10)

    @property
    def configured(self) -> bool:
        return self._client is not None

    @property
    def model(self) -> str:
        return self._model

    def embed(self, text: str) -> List[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed ``texts`` in one request, preserving order."""

        if self._client is None:
            raise ConfigurationError("OPENAI_API_KEY is not configured")
        if not texts:
            return []

        started = time.perf_counter()
        retrying = Retrying(
            stop=stop_after_attempt(self._attempts),
            wait=self._wait,
            retry=retry_if_exception_type(openai.OpenAIError),
            reraise=True,
        )
        try:
            response = retrying(
                self._client.embeddings.create,
                model=self._model,
                input=list(texts),
                encoding_format="float",
            )
        except openai.OpenAIError as exc:
            self._track(started, error=str(exc), count=len(texts))
            logger.warning("OpenAI embedding request failed: %s", exc)
            raise ExternalAPIError(f"Embedding request failed: {exc}", provider="openai") from exc

        embeddings = [list(item.embedding) for item in response.data]
        if len(embeddings) != len(texts):
            raise ExternalAPIError(
                f"Expected {len(texts)} embeddings, got {len(embeddings)}",
                provider="openai",
            )
        self._track(started, error=None, count=len(texts))
        logger.info("Created %s embeddings with %s", len(embeddings), self._model)
        return embeddings

    def _track(self, started: float, *, error: Optional[str], count: int) -> None:
        if self._tracker is None:
            return
        self._tracker.record_call(
            "openai",
            "/v1/embeddings",
            method="POST",
            response_time_ms=int((time.perf_counter() - started) * 1000),
            is_successful=error is None,
            request_params={"model": self._model, "inputs": count},
            error_message=error,
        )


# ----------------------------------------------------------------------
# Text formatting
# ----------------------------------------------------------------------
def hourly_to_text(forecast: HourlyForecast) -> str:
    text = (
        f"{forecast.location_name}의 {forecast.forecast_date} {forecast.forecast_hour}시 시간별 날씨 예보: "
        f"예상 온도 {forecast.temperature:g}도, 날씨 {forecast.conditions}"
    )
    if forecast.precipitation_probability > 0:
        text += f", 강수확률 {forecast.precipitation_probability}%"
    if forecast.humidity:
        text += f", 습도 {forecast.humidity}%"
    return text


def daily_to_text(forecast: DailyForecast) -> str:
    text = f"{forecast.location_name}의 {forecast.forecast_date} {forecast.day_of_week}요일 일별 날씨 예보: "
    text += f"최고기온 {forecast.high_temp}도, 최저기온 {forecast.low_temp}도, 날씨 {forecast.conditions}"
    if forecast.precipitation_probability > 0:
        text += f", 강수확률 {forecast.precipitation_probability}%"
    for label, part in (("낮", forecast.day_weather), ("밤", forecast.night_weather)):
        if not part:
            continue
        text += f", {label} 날씨: {part.get('conditions', '')}"
        probability = int(part.get("precipitation_probability") or 0)
        if probability > 0:
            text += f" (강수확률 {probability}%)"
    return text


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0.0 for zero vectors or mismatched dimensions."""

    left = np.asarray(a, dtype=float)
    right = np.asarray(b, dtype=float)
    if left.shape != right.shape or left.size == 0:
        return 0.0
    norm = float(np.linalg.norm(left) * np.linalg.norm(right))
    if norm == 0.0:
        return 0.0
    return float(np.dot(left, right) / norm)


# ----------------------------------------------------------------------
# Vector store
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class SearchResult:
    id: int
    content: str
    content_type: str
    location_name: str
    forecast_date: Optional[str]
    metadata: Dict[str, Any]
    similarity: float


class VectorStore:
    def __init__(self, database: Database) -> None:
        self._database = database

    def add(
        self,
        user_id: Optional[str],
        content_type: str,
        location_name: str,
        forecast_date: Optional[str],
        content: str,
        embedding: Sequence[float],
        metadata: Optional[Mapping[str, Any]] = None,
        *,
        created_at: Optional[datetime] = None,
    ) -> int:
        stored = self._database.insert_weather_embedding(
            clerk_user_id=user_id,
            content_type=content_type,
            location_name=location_name,
            content=content,
            embedding=embedding,
            forecast_date=forecast_date,
            metadata=metadata,
            created_at=created_at,
        )
        return stored.id

    def search(
        self,
        user_id: Optional[str],
        query_embedding: Sequence[float],
        *,
        limit: int = 5,
        candidates: int = SEARCH_CANDIDATES,
    ) -> List[SearchResult]:
        """Rank the user's most recent ``candidates`` embeddings by similarity."""

        rows = self._database.list_recent_embeddings(user_id, limit=candidates)
        scored = [
            SearchResult(
                id=row.id,
                content=row.content,
                content_type=row.content_type,
                location_name=row.location_name,
                forecast_date=row.forecast_date,
                metadata=row.metadata,
                similarity=cosine_similarity(query_embedding, row.embedding),
            )
            for row in rows
        ]
        scored.sort(key=lambda result: result.similarity, reverse=True)
        return scored[:limit]


class WeatherIndexer:
    """Embed freshly cached forecasts into the vector store."""

    def __init__(self, embeddings: EmbeddingClient, store: VectorStore) -> None:
        self._embeddings = embeddings
        self._store = store

    @property
    def enabled(self) -> bool:
        return self._embeddings.configured

    def index_hourly(self, forecasts: Sequence[HourlyForecast], user_id: Optional[str]) -> int:
        if not forecasts or not self.enabled:
            return 0
        texts = [hourly_to_text(item) for item in forecasts]
        vectors = self._embeddings.embed_batch(texts)
        for item, text, vector in zip(forecasts, texts, vectors):
            self._store.add(
                user_id,
                "hourly",
                item.location_name,
                item.forecast_date,
                text,
                vector,
                {
                    "forecast_hour": item.forecast_hour,
                    "temperature": item.temperature,
                    "precipitation_probability": item.precipitation_probability,
                    "humidity": item.humidity,
                },
            )
        logger.info("Indexed %s hourly forecasts for user %s", len(texts), user_id)
        return len(texts)

    def index_daily(self, forecasts: Sequence[DailyForecast], user_id: Optional[str]) -> int:
        if not forecasts or not self.enabled:
            return 0
        texts = [daily_to_text(item) for item in forecasts]
        vectors = self._embeddings.embed_batch(texts)
        for item, text, vector in zip(forecasts, texts, vectors):
            self._store.add(
                user_id,
                "daily",
                item.location_name,
                item.forecast_date,
                text,
                vector,
                {
                    "high_temp": item.high_temp,
                    "low_temp": item.low_temp,
                    "precipitation_probability": item.precipitation_probability,
                },
            )
        logger.info("Indexed %s daily forecasts for user %s", len(texts), user_id)
        return len(texts)


__all__ = [
    "EMBEDDING_MODEL",
    "EmbeddingClient",
    "SearchResult",
    "VectorStore",
    "WeatherIndexer",
    "build_openai_client",
    "cosine_similarity",
    "daily_to_text",
    "hourly_to_text",
]
