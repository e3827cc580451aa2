"""folioquote — CLI entrypoint.

::

    python -m folioquote.main --server    # API + background sync (default)
    python -m folioquote.main --sync      # background sync only
    python -m folioquote.main --once      # one sync run, then exit
    python -m folioquote.main --status    # market status, breakers, recent jobs as JSON
    python -m folioquote.main --register holdings.json   # track [{"symbol", "type"}] for sync
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from folioquote import __version__
from folioquote.config import get_settings
from folioquote.utils import setup_logging

logger = logging.getLogger("folioquote")

BANNER = f"folioquote v{__version__} — market prices with fallback and cached degradation"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="folioquote",
        description="folioquote — market price acquisition service",
    )
    group = parser.add_argument_group("modes")
    group.add_argument("--server", action="store_true", help="Run FastAPI server with background sync (default)")
    group.add_argument("--sync", action="store_true", help="Run the background sync scheduler only")
    group.add_argument("--once", action="store_true", help="Run a single sync pass then exit")
    group.add_argument("--status", action="store_true", help="Print market status, provider breakers and recent jobs")
    group.add_argument("--register", metavar="FILE",
                       help="Track the symbols in a JSON file ([{\"symbol\": ..., \"type\": ...}]) for background sync")
    return parser


def load_tracked_symbols(path: str) -> list[tuple[str, str]]:
    """Read ``[{"symbol": ..., "type": ...}]``; a missing type means a stock."""
    with open(path, encoding="utf-8") as fh:
        rows = json.load(fh)
    if not isinstance(rows, list):
        raise ValueError(f"{path}: expected a JSON array of {{symbol, type}} objects")
    items = []
    for row in rows:
        if not isinstance(row, dict) or not row.get("symbol"):
            raise ValueError(f"{path}: every entry needs a symbol, got {row!r}")
        items.append((str(row["symbol"]), str(row.get("type") or "stock")))
    return items


async def _run_server() -> None:
    import uvicorn
    from folioquote.api.app import create_app

    settings = get_settings()
    config = uvicorn.Config(
        create_app(),
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
    await uvicorn.Server(config).serve()


async def _run_worker(args: argparse.Namespace) -> None:
    import redis.asyncio as aioredis
    from folioquote.db.database import dispose_db, init_db
    from folioquote.workers.price_sync_worker import get_price_scheduler

    settings = get_settings()
    await init_db()
    redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
    scheduler = get_price_scheduler(redis_client=redis_client)

    try:
        if args.register:
            count = await scheduler.service.register_symbols(load_tracked_symbols(args.register))
            logger.info("Tracking %d symbols from %s", count, args.register)
        elif args.status:
            status = await scheduler.get_status()
            status["providers"] = scheduler.service.provider_states()
            status["market_status"] = (await scheduler.service.get_market_status()).to_dict()
            print(json.dumps(status, indent=2, default=str))
        elif args.once:
            result = await scheduler.run_once()
            logger.info("Sync pass finished: %s", result)
        else:
            scheduler.start()
            logger.info("Background sync running — press Ctrl+C to stop")
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                logger.info("Shutdown requested")
            finally:
                await scheduler.stop()
    finally:
        await redis_client.aclose()
        await dispose_db()


async def _run(args: argparse.Namespace) -> None:
    if args.sync or args.once or args.status or args.register:
        await _run_worker(args)
    else:
        await _run_server()


def main() -> None:
    parser = _build_parser()
    args = parser.parse_args()

    settings = get_settings()
    setup_logging(settings.log_level)

    if not (args.status or args.register):
        print(BANNER, file=sys.stderr)

    try:
        asyncio.run(_run(args))
    except KeyboardInterrupt:
        logger.info("Interrupted — shutting down")


if __name__ == "__main__":
    main()
