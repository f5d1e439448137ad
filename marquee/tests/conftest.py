"""Shared fixtures: isolated settings, fake upstreams and a running API client."""
from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from marquee.engine import create_app
from marquee.engine.schemas import RateLimitSpec
from marquee.engine.settings import EngineSettings

from .helpers import FakeUpstream


@pytest.fixture()
def settings(tmp_path: Path) -> EngineSettings:
    """Settings backed by a SQLite database and cache directory under ``tmp_path``."""

    return EngineSettings(
        database_url=f"sqlite:///{tmp_path / 'marquee.db'}",
        cache_dir=str(tmp_path / "cache"),
        mdb_token="test-token",
        scheduler_enabled=False,
        cleanup_debounce_sec=0,
        http_backoff_base_sec=0,
        job_flush_interval_ms=50,
        per_provider_rate=RateLimitSpec(concurrency=50, window_sec=1),
        mdb_rate=RateLimitSpec(concurrency=200, window_sec=1),
    )


@pytest.fixture()
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture()
def client(settings: EngineSettings, upstream: FakeUpstream) -> Iterator[TestClient]:
    """Provide a test client whose lifespan runs the engine against the fake upstream."""

    app = create_app(settings=settings, transport=upstream.transport)
    with TestClient(app) as test_client:
        yield test_client
