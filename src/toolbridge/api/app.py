"""FastAPI app entrypoint."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from toolbridge.api.deps import get_bridge_state, get_settings, shutdown
from toolbridge.api.routes.bridge import router as bridge_router
from toolbridge.api.routes.codemode import router as codemode_router

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    get_bridge_state().start()
    try:
        yield
    finally:
        await shutdown()


def create_app() -> FastAPI:
    app = FastAPI(title="Tool Bridge API", version="0.1.0", lifespan=lifespan)
    app.include_router(bridge_router)
    app.include_router(codemode_router)

    @app.get("/api/v1/health", tags=["system"])
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()


def run() -> None:
    configure_logging(get_settings().log_level)
    uvicorn.run("toolbridge.api.app:app", host="0.0.0.0", port=8000, reload=False)
