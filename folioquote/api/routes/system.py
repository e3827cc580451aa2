"""System endpoints — health, config."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from folioquote import __version__
from folioquote.config import get_settings
from folioquote.marketdata.service import PriceService, get_price_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["system"])


@router.get("/health")
async def health(service: PriceService = Depends(get_price_service)):
    from folioquote.api.app import get_uptime
    settings = get_settings()

    db_ok = False
    redis_ok = False

    try:
        from folioquote.db.database import get_session
        from sqlalchemy import text
        async with get_session() as session:
            await session.execute(text("SELECT 1"))
        db_ok = True
    except Exception as exc:
        logger.warning("[health] database check failed: %s", exc)
    try:
        import redis.asyncio as aioredis
        r = aioredis.from_url(settings.redis_url)
        try:
            await r.ping()
        finally:
            await r.aclose()
        redis_ok = True
    except Exception as exc:
        logger.warning("[health] redis check failed: %s", exc)

    providers = service.provider_states()
    open_circuits = sorted(name for name, snap in providers.items() if not snap["available"])

    return {
        "status": "ok" if db_ok else "degraded",
        "version": __version__,
        "uptime_seconds": round(get_uptime(), 1),
        "components": {"db": db_ok, "redis": redis_ok, "providers": not open_circuits},
        "open_circuits": open_circuits,
    }


@router.get("/config")
async def config():
    s = get_settings()
    return {
        "market_timezone": s.market_timezone,
        "market_open": s.market_open.isoformat(),
        "market_close": s.market_close.isoformat(),
        "post_close_window": [s.post_close_start.isoformat(), s.post_close_end.isoformat()],
        "market_probe_symbol": s.market_probe_symbol,
        "price_cache_duration_seconds": s.price_cache_duration_seconds,
        "default_currency": s.default_currency,
        "sync_enabled": s.sync_enabled,
        "sync_interval_seconds": s.sync_interval_seconds,
        "max_symbols_per_sync": s.max_symbols_per_sync,
        "log_level": s.log_level,
    }
