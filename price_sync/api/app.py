"""FastAPI application factory for price-sync."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from price_sync import __version__
from price_sync.api.routers.sync import router as sync_router
from price_sync.config import SyncConfig
from price_sync.runtime import build_runtime

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

__all__ = ["create_app"]

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    config = SyncConfig.from_env()
    runtime = build_runtime(config)
    app.state.runtime = runtime

    if config.scheduler.enabled:
        # Startup sync may take minutes on a fresh store; serve meanwhile
        startup = asyncio.create_task(asyncio.to_thread(runtime.scheduler.startup_sync))
        runtime.scheduler.start()
    else:
        startup = None
        logger.info("Scheduler disabled, serving read-only sync status")
    try:
        yield
    finally:
        runtime.scheduler.stop()
        if startup is not None and not startup.done():
            # The worker thread cannot be cancelled; stop it between chunks
            logger.info("Waiting for startup sync to stop")
            runtime.backfill.request_stop()
            await asyncio.wait([startup])
        runtime.close()


def create_app() -> FastAPI:
    app = FastAPI(
        title="price-sync API",
        version=__version__,
        lifespan=_lifespan,
    )

    app.include_router(sync_router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app
