"""Townly: hyper-local weather, air quality and messaging backend."""

from __future__ import annotations

from typing import Any

from .config import Settings
from .database import Database, resolve_database_path


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the Townly FastAPI application."""

    from .service import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "Database",
    "Settings",
    "create_app",
    "resolve_database_path",
]
