"""Application factory for the Marquee engine API."""
from __future__ import annotations

from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .routers import health, jobs, providers
from .settings import EngineSettings, load_settings
from .state import EngineRuntime


def create_app(
    settings: EngineSettings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Build the FastAPI application; the lifespan starts and stops the engine."""

    resolved_settings = settings or load_settings()
    runtime = EngineRuntime(resolved_settings, transport=transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await runtime.start()
        try:
            yield
        finally:
            await runtime.stop()

    app = FastAPI(title="Marquee Engine API", version="0.1.0", lifespan=lifespan)
    app.state.runtime = runtime
    app.state.settings = resolved_settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    for router in (health.router, jobs.router, providers.router):
        app.include_router(router)

    return app
