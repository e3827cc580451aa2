"""FastAPI application factory with lifespan, CORS, and routers."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from folioquote import __version__
from folioquote.config import get_settings

logger = logging.getLogger(__name__)

_start_time: float = 0.0


def get_uptime() -> float:
    return time.time() - _start_time if _start_time else 0.0


@asynccontextmanager
async def _lifespan(app: FastAPI):
    global _start_time
    _start_time = time.time()

    import redis.asyncio as aioredis
    from folioquote.db.database import dispose_db, init_db
    from folioquote.workers.price_sync_worker import get_price_scheduler

    settings = get_settings()
    try:
        await init_db()
    except Exception as exc:
        logger.warning("Database init failed (running in degraded mode): %s", exc)

    redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
    scheduler = get_price_scheduler(redis_client=redis_client)
    if settings.sync_enabled:
        scheduler.start()

    logger.info("folioquote API v%s starting", __version__)
    yield
    logger.info("folioquote API shutting down")

    await scheduler.stop()
    await redis_client.aclose()
    await dispose_db()


def create_app() -> FastAPI:
    """Build and return the fully-configured FastAPI application."""
    app = FastAPI(
        title="folioquote",
        description="Market price acquisition with provider fallback and cached degradation",
        version=__version__,
        lifespan=_lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    from folioquote.api.routes import prices, system
    app.include_router(prices.router, prefix="/api")
    app.include_router(system.router, prefix="/api")

    return app
