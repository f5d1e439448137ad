"""Filesystem helpers for engine data and cache locations."""
from __future__ import annotations

from pathlib import Path

from platformdirs import user_cache_dir, user_data_dir


APP_NAME = "Marquee"
APP_AUTHOR = "Marquee"


def default_cache_dir() -> str:
    """Return the platform-appropriate response cache directory."""

    return str(Path(user_cache_dir(APP_NAME, APP_AUTHOR)) / "http")


def default_database_url() -> str:
    """Return a SQLite URL inside the platform data directory."""

    base_dir = Path(user_data_dir(APP_NAME, APP_AUTHOR))
    return f"sqlite:///{base_dir / 'marquee.db'}"


def ensure_directory(path: str) -> Path:
    """Expand and create a directory if it does not exist."""

    resolved = Path(path).expanduser()
    resolved.mkdir(parents=True, exist_ok=True)
    return resolved.resolve()
