from __future__ import annotations
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from app.api import router
from logging_config import configure_logging
from services.bridge import build_default_bridge


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    # StartupError propagates so the server exits non-zero
    bridge = build_default_bridge()
    bridge.start()
    try:
        yield
    finally:
        bridge.stop()
        build_default_bridge.cache_clear()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(
        title="Telemetry Relay",
        description="MQTT to document-store bridge with bounded history retention.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(router)
    return app

app = create_app()
