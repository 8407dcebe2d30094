from __future__ import annotations
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from app.api import router
from app.history import router as history_router
from controller.shell import build_default_channel
from controller.telemetry import build_default_telemetry_client
from datastore.history import build_default_history_store
from logging_config import configure_logging
from services.engine import build_default_engine
from settings import get_settings


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    engine = build_default_engine()
    if get_settings().autostart:
        engine.start()
    try:
        yield
    finally:
        engine.shutdown()
        build_default_engine.cache_clear()
        build_default_history_store.cache_clear()
        build_default_channel.cache_clear()
        build_default_telemetry_client.cache_clear()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(
        title="iLO Thermal Sync",
        description="Cached telemetry, overrides and serialized fan commands for an iLO controller.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(router)
    app.include_router(history_router)
    return app

app = create_app()
