"""Configuration management for the Townly service."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import yaml

ENVIRONMENTS = ("development", "staging", "production")

_DEFAULT_PROFILES: Dict[str, Dict[str, object]] = {
    "development": {
        "log_level": "DEBUG",
        "http_timeout_seconds": 15.0,
        "cron_message_gap_seconds": 1.0,
    },
    "staging": {
        "log_level": "INFO",
        "http_timeout_seconds": 10.0,
        "cron_message_gap_seconds": 1.0,
    },
    "production": {
        "log_level": "INFO",
        "http_timeout_seconds": 10.0,
        "cron_message_gap_seconds": 1.0,
    },
}

REQUIRED_ENV_VARS = ("CRON_SECRET", "CLERK_WEBHOOK_SECRET", "TOWNLY_ADMIN_TOKENS")
OPTIONAL_ENV_VARS = (
    "ACCUWEATHER_API_KEY",
    "AIRKOREA_API_KEY",
    "GOOGLE_MAPS_API_KEY",
    "OPENAI_API_KEY",
    "KAKAO_ADMIN_KEY",
    "KAKAO_CHANNEL_ID",
    "GMAIL_CLIENT_ID",
    "GMAIL_CLIENT_SECRET",
    "GMAIL_REFRESH_TOKEN",
    "GMAIL_FROM_EMAIL",
    "TOWNLY_SECRET_KEY",
)


def _env_flag(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


@dataclass(frozen=True)
class RateLimits:
    per_minute: int = 25
    per_hour: int = 150
    per_day: int = 450


@dataclass(frozen=True)
class CacheTTL:
    """Base cache lifetimes in minutes."""

    hourly: int = 120
    daily: int = 360
    location: int = 10080
    embedding: int = 43200


@dataclass(frozen=True)
class Profile:
    """Per-environment tunables loaded from the YAML profile file."""

    name: str
    log_level: str = "INFO"
    http_timeout_seconds: float = 10.0
    cron_message_gap_seconds: float = 1.0
    rate_limits: RateLimits = field(default_factory=RateLimits)
    cache_ttl_minutes: CacheTTL = field(default_factory=CacheTTL)

    @staticmethod
    def from_dict(name: str, data: Mapping[str, object]) -> "Profile":
        """Create a :class:`Profile` from raw dictionary data."""
        limits_raw = data.get("rate_limits") or {}
        ttl_raw = data.get("cache_ttl_minutes") or {}
        if not isinstance(limits_raw, Mapping) or not isinstance(ttl_raw, Mapping):
            raise ValueError(f"Profile '{name}' has malformed rate_limits or cache_ttl_minutes")

        defaults_limits = RateLimits()
        defaults_ttl = CacheTTL()
        return Profile(
            name=name,
            log_level=str(data.get("log_level", "INFO")).upper(),
            http_timeout_seconds=float(data.get("http_timeout_seconds", 10.0)),
            cron_message_gap_seconds=float(data.get("cron_message_gap_seconds", 1.0)),
            rate_limits=RateLimits(
                per_minute=int(limits_raw.get("per_minute", defaults_limits.per_minute)),
                per_hour=int(limits_raw.get("per_hour", defaults_limits.per_hour)),
                per_day=int(limits_raw.get("per_day", defaults_limits.per_day)),
            ),
            cache_ttl_minutes=CacheTTL(
                hourly=int(ttl_raw.get("hourly", defaults_ttl.hourly)),
                daily=int(ttl_raw.get("daily", defaults_ttl.daily)),
                location=int(ttl_raw.get("location", defaults_ttl.location)),
                embedding=int(ttl_raw.get("embedding", defaults_ttl.embedding)),
            ),
        )


def load_profile(environment: str, config_path: Path | None = None) -> Profile:
    """Load the tunables for ``environment`` from a YAML file, or built-in defaults."""
    if environment not in ENVIRONMENTS:
        raise ValueError(f"Unknown environment '{environment}'. Expected one of: {', '.join(ENVIRONMENTS)}")

    raw: Dict[str, object] = {}
    if config_path is not None and config_path.exists():
        with config_path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}

    environments = raw.get("environments") or {}
    if not isinstance(environments, Mapping):
        raise ValueError("Configuration file 'environments' key must be a mapping")

    merged: Dict[str, object] = dict(_DEFAULT_PROFILES[environment])
    overrides = environments.get(environment) or {}
    if not isinstance(overrides, Mapping):
        raise ValueError(f"Configuration for environment '{environment}' must be a mapping")
    merged.update(overrides)
    return Profile.from_dict(environment, merged)


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the YAML profile file."""
    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    return (Path(__file__).resolve().parent.parent / "config" / "townly.yaml").resolve(strict=False)


@dataclass(frozen=True)
class Settings:
    """Runtime settings assembled from the environment."""

    environment: str = "development"
    database_path: Optional[str] = None
    accuweather_api_key: Optional[str] = None
    airkorea_api_key: Optional[str] = None
    google_maps_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    kakao_admin_key: Optional[str] = None
    kakao_channel_id: Optional[str] = None
    kakao_sender_key: Optional[str] = None
    cron_secret: Optional[str] = None
    clerk_webhook_secret: Optional[str] = None
    secret_key: Optional[str] = None
    admin_tokens: List[str] = field(default_factory=list)
    gmail_client_id: Optional[str] = None
    gmail_client_secret: Optional[str] = None
    gmail_redirect_uri: Optional[str] = None
    gmail_refresh_token: Optional[str] = None
    gmail_from_email: Optional[str] = None
    embeddings_enabled: bool = True
    profile: Profile = field(default_factory=lambda: Profile(name="development"))

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @staticmethod
    def from_env(environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        environment = (_clean(env.get("TOWNLY_ENV")) or "development").lower()
        profile = load_profile(environment, resolve_config_path(env.get("TOWNLY_CONFIG_PATH")))
        tokens_raw = env.get("TOWNLY_ADMIN_TOKENS", "")
        return Settings(
            environment=environment,
            database_path=_clean(env.get("TOWNLY_DB_PATH")),
            accuweather_api_key=_clean(env.get("ACCUWEATHER_API_KEY")),
            airkorea_api_key=_clean(env.get("AIRKOREA_API_KEY")),
            google_maps_api_key=_clean(env.get("GOOGLE_MAPS_API_KEY")),
            openai_api_key=_clean(env.get("OPENAI_API_KEY")),
            kakao_admin_key=_clean(env.get("KAKAO_ADMIN_KEY")),
            kakao_channel_id=_clean(env.get("KAKAO_CHANNEL_ID")),
            kakao_sender_key=_clean(env.get("KAKAO_SENDER_KEY")),
            cron_secret=_clean(env.get("CRON_SECRET")),
            clerk_webhook_secret=_clean(env.get("CLERK_WEBHOOK_SECRET")),
            secret_key=_clean(env.get("TOWNLY_SECRET_KEY")),
            admin_tokens=[token.strip() for token in tokens_raw.split(",") if token.strip()],
            gmail_client_id=_clean(env.get("GMAIL_CLIENT_ID")),
            gmail_client_secret=_clean(env.get("GMAIL_CLIENT_SECRET")),
            gmail_redirect_uri=_clean(env.get("GMAIL_REDIRECT_URI")),
            gmail_refresh_token=_clean(env.get("GMAIL_REFRESH_TOKEN")),
            gmail_from_email=_clean(env.get("GMAIL_FROM_EMAIL")),
            embeddings_enabled=_env_flag(env.get("TOWNLY_EMBEDDINGS_ENABLED"), True),
            profile=profile,
        )


def check_environment(environ: Mapping[str, str] | None = None) -> Dict[str, List[str]]:
    """Report which required and optional environment variables are unset."""
    env = os.environ if environ is None else environ
    missing_required = [name for name in REQUIRED_ENV_VARS if not _clean(env.get(name))]
    missing_optional = [name for name in OPTIONAL_ENV_VARS if not _clean(env.get(name))]
    configured = [name for name in (*REQUIRED_ENV_VARS, *OPTIONAL_ENV_VARS) if _clean(env.get(name))]
    return {
        "missing_required": missing_required,
        "missing_optional": missing_optional,
        "configured": configured,
    }


__all__ = [
    "CacheTTL",
    "ENVIRONMENTS",
    "Profile",
    "RateLimits",
    "Settings",
    "_env_flag",
    "check_environment",
    "load_profile",
    "resolve_config_path",
]
