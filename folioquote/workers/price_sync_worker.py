"""Background Price Sync — keeps the cache warm for the most requested symbols.

Schedule (home-exchange local time, weekdays only):
  Trading window     run every ``sync_interval_seconds`` (skipped on holidays)
  Post-close window  run once per date to capture closing prices
  Otherwise          sleep until the next open or post-close window

A scheduled run refreshes symbols sequentially with a delay between them to
stay under upstream rate limits. A manual (fast) sync refreshes small
concurrent batches inside a wall-clock budget and is refused while any sync
is already running.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import random
from datetime import date
from typing import Any

from folioquote.config import Settings, get_settings
from folioquote.marketdata.quote import AssetKind, MarketReason, PriceQuote
from folioquote.marketdata.service import PriceService, get_price_service
from folioquote.workers.sync_jobs import COMPLETED, FAILED, SyncJobStore

logger = logging.getLogger(__name__)

ALREADY_RUNNING = {"success": False, "message": "Sync already in progress"}
STOPPED_MESSAGE = "stopped before completion"

_POST_CLOSE_KEY = "folioquote:price-sync:post-close:{date}"


class SchedulerState(str, enum.Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"


class PriceSyncScheduler:
    def __init__(
        self,
        service: PriceService,
        settings: Settings,
        *,
        jobs: SyncJobStore | None = None,
        redis_client: Any = None,
    ) -> None:
        self.service = service
        self.settings = settings
        self.calendar = service.calendar
        self.jobs = jobs or SyncJobStore()
        self._redis = redis_client
        self._state = SchedulerState.IDLE
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()
        self._last_post_close: date | None = None
        self._holiday_date: date | None = None
        self._stats: dict[str, int] = {"runs": 0, "skipped": 0, "errors": 0}

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    # ── Lifecycle ──────────────────────────────────────────────────────

    def start(self) -> None:
        if self.active:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name="price-sync")
        logger.info(
            "[price-sync] scheduler started (interval=%ds, max_symbols=%d)",
            self.settings.sync_interval_seconds, self.settings.max_symbols_per_sync,
        )

    async def stop(self) -> None:
        """Wake any pending sleep, let an in-flight run reach a symbol boundary, then cancel."""
        self._stop_event.set()
        task, self._task = self._task, None
        if task is None or task.done():
            return
        done, _ = await asyncio.wait({task}, timeout=self.settings.sync_stop_grace_seconds)
        if not done:
            logger.warning("[price-sync] run did not stop within grace period, cancelling")
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info("[price-sync] scheduler stopped")

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless stopped first; returns True when a stop was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=max(0.0, seconds))
        except asyncio.TimeoutError:
            return False
        return True

    async def _loop(self) -> None:
        if await self._sleep(self.settings.sync_startup_delay_seconds):
            return
        while not self._stop_event.is_set():
            try:
                delay = await self._tick()
            except Exception:
                self._stats["errors"] += 1
                logger.error("[price-sync] scheduler iteration failed", exc_info=True)
                delay = float(self.settings.sync_interval_seconds)
            logger.debug("[price-sync] next check in %.0fs", delay)
            if await self._sleep(delay):
                break

    async def _tick(self) -> float:
        """Run whatever the current window calls for; return seconds until the next check."""
        cal = self.calendar
        if cal.in_trading_window():
            status = await cal.get_status()
            if status.reason is MarketReason.HOLIDAY:
                self._holiday_date = cal.session_date()
                self._stats["skipped"] += 1
                logger.info("[price-sync] market holiday detected, skipping run")
            else:
                await self.run_once()
            return float(self.settings.sync_interval_seconds)

        if cal.in_post_close_window():
            today = cal.session_date()
            if self._holiday_date == today:
                logger.info("[price-sync] holiday, skipping post-close sync")
            elif await self._claim_post_close(today):
                logger.info("[price-sync] post-close sync for %s", today.isoformat())
                await self.run_once()
            return cal.seconds_until_next_open()

        return cal.seconds_until_next_window()

    async def _claim_post_close(self, today: date) -> bool:
        """At most one post-close run per local date, across restarts when Redis is reachable."""
        if self._last_post_close == today:
            return False
        claimed = True
        if self._redis is not None:
            try:
                claimed = bool(await self._redis.set(
                    _POST_CLOSE_KEY.format(date=today.isoformat()), "1", nx=True, ex=86400,
                ))
            except Exception as exc:
                logger.warning("[price-sync] redis guard unavailable, using in-process guard: %s", exc)
        self._last_post_close = today
        return claimed

    # ── Runs ───────────────────────────────────────────────────────────

    async def run_once(self) -> dict[str, Any]:
        """One scheduled run: sequential refresh of the top-priority symbols."""
        if self._state is SchedulerState.RUNNING:
            logger.info("[price-sync] run requested while another sync is running, skipping")
            return dict(ALREADY_RUNNING)
        self._state = SchedulerState.RUNNING
        try:
            return await self._run_sequential()
        finally:
            self._state = SchedulerState.IDLE

    async def trigger_manual_sync(self) -> dict[str, Any]:
        if self._state is SchedulerState.RUNNING:
            return dict(ALREADY_RUNNING)
        self._state = SchedulerState.RUNNING
        try:
            return await self._run_fast()
        finally:
            self._state = SchedulerState.IDLE

    async def _run_sequential(self) -> dict[str, Any]:
        symbols = await self.service.priority.top_symbols(self.settings.max_symbols_per_sync)
        if not symbols:
            logger.info("[price-sync] no symbols to sync")
            return {"success": True, "fetched": 0, "failed": 0, "total": 0}

        self._stats["runs"] += 1
        job_id = await self.jobs.start(len(symbols), trigger="scheduled")
        logger.info("[price-sync] run %d: %d symbols", self._stats["runs"], len(symbols))
        progress_every = max(1, self.settings.sync_progress_every)
        fetched = failed = 0

        try:
            for i, (symbol, kind) in enumerate(symbols):
                if i:
                    pause = self.settings.sync_symbol_delay_seconds + random.uniform(0, self.settings.sync_jitter_seconds)
                    if await self._sleep(pause):
                        break
                elif self._stop_event.is_set():
                    break

                if await self._refresh_one(symbol, kind):
                    fetched += 1
                else:
                    failed += 1

                if (i + 1) % progress_every == 0:
                    await self.jobs.progress(job_id, fetched, failed)
        except asyncio.CancelledError:
            await self.jobs.finish(job_id, FAILED, fetched, failed, "cancelled")
            raise
        except Exception as exc:
            await self.jobs.finish(job_id, FAILED, fetched, failed, str(exc))
            raise

        if self._stop_event.is_set() and fetched + failed < len(symbols):
            await self.jobs.finish(job_id, FAILED, fetched, failed, STOPPED_MESSAGE)
            logger.info("[price-sync] %s after %d/%d symbols", STOPPED_MESSAGE, fetched + failed, len(symbols))
            return {"success": False, "message": STOPPED_MESSAGE, "fetched": fetched, "failed": failed,
                    "total": len(symbols)}

        await self.jobs.finish(job_id, COMPLETED, fetched, failed)
        logger.info("[price-sync] run complete: %d fetched, %d failed", fetched, failed)
        return {"success": True, "fetched": fetched, "failed": failed, "total": len(symbols)}

    async def _run_fast(self) -> dict[str, Any]:
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + self.settings.fast_sync_budget_seconds

        symbols = await self.service.priority.top_symbols(self.settings.max_symbols_per_sync)
        if not symbols:
            return {"success": True, "fetched": 0, "failed": 0, "total": 0, "partial": False}

        job_id = await self.jobs.start(len(symbols), trigger="manual")
        size = max(1, self.settings.fast_sync_batch_size)
        fetched = failed = 0
        partial = False

        try:
            for start in range(0, len(symbols), size):
                if start:
                    await asyncio.sleep(self.settings.fast_sync_batch_delay_seconds)
                if loop.time() >= deadline:
                    partial = True
                    break
                batch = symbols[start:start + size]
                outcomes = await asyncio.gather(
                    *(self.service.refresh(symbol, kind, deadline=deadline) for symbol, kind in batch),
                    return_exceptions=True,
                )
                for (symbol, _kind), outcome in zip(batch, outcomes):
                    if isinstance(outcome, PriceQuote):
                        fetched += 1
                    else:
                        if isinstance(outcome, BaseException):
                            logger.warning("[price-sync] manual refresh of %s raised: %r", symbol, outcome)
                        failed += 1
        except Exception as exc:
            await self.jobs.finish(job_id, FAILED, fetched, failed, str(exc))
            raise

        # budget ran out inside the last batch
        if loop.time() >= deadline:
            partial = True

        await self.jobs.finish(
            job_id, COMPLETED, fetched, failed,
            "time budget exhausted" if partial else None,
        )
        elapsed = loop.time() - started
        logger.info(
            "[price-sync] manual sync: %d fetched, %d failed of %d in %.1fs%s",
            fetched, failed, len(symbols), elapsed, " (partial)" if partial else "",
        )
        return {
            "success": True,
            "fetched": fetched,
            "failed": failed,
            "total": len(symbols),
            "partial": partial,
            "elapsed_seconds": round(elapsed, 2),
        }

    async def _refresh_one(self, symbol: str, kind: AssetKind) -> bool:
        try:
            quote = await self.service.refresh(symbol, kind)
        except Exception as exc:
            logger.warning("[price-sync] refresh of %s raised: %s", symbol, exc)
            return False
        return quote is not None

    # ── Introspection ──────────────────────────────────────────────────

    async def get_status(self) -> dict[str, Any]:
        market = await self.calendar.get_status()
        return {
            "is_running": self._state is SchedulerState.RUNNING,
            "scheduler_active": self.active,
            "state": self._state.value,
            "market_open": market.is_open,
            "market_reason": market.reason.value,
            "post_close_window": self.calendar.in_post_close_window(),
            "stats": dict(self._stats),
            "recent_jobs": await self.jobs.recent(10),
        }


# ── Process-wide instance ─────────────────────────────────────────────

_scheduler: PriceSyncScheduler | None = None


def get_price_scheduler(redis_client: Any = None) -> PriceSyncScheduler:
    """Shared scheduler; the first caller may supply the Redis client for the post-close guard."""
    global _scheduler
    if _scheduler is None:
        _scheduler = PriceSyncScheduler(get_price_service(), get_settings(), redis_client=redis_client)
    elif redis_client is not None and _scheduler._redis is None:
        _scheduler._redis = redis_client
    return _scheduler
