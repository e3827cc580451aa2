"""Market open/closed detection for the home exchange.

Weekends and times outside the configured session are decided locally.
Inside the session a reference index is probed to catch exchange holidays:
if the index has not traded recently today, the market is treated as closed.
A failed probe reports the market as open.
"""

from __future__ import annotations

import asyncio
import logging
import time as _time
from datetime import date, datetime, time, timedelta
from functools import partial
from typing import Awaitable, Callable

from folioquote.config import Settings
from folioquote.marketdata import providers
from folioquote.marketdata.quote import MarketReason, MarketStatus
from folioquote.utils import utc_now

logger = logging.getLogger(__name__)

ProbeFn = Callable[[], Awaitable[datetime | None]]


class MarketCalendar:
    def __init__(
        self,
        settings: Settings,
        *,
        probe: ProbeFn | None = None,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = _time.monotonic,
    ) -> None:
        self.settings = settings
        self.tz = settings.market_tz
        self._probe = probe or partial(providers.probe_last_trade, settings)
        self._clock = clock
        self._monotonic = monotonic
        self._lock = asyncio.Lock()
        self._cached: MarketStatus | None = None
        self._expires_at = 0.0

    # ── Status ─────────────────────────────────────────────────────────

    async def get_status(self) -> MarketStatus:
        """Current market status, cached for ``market_status_ttl_seconds``."""
        if self._cached is not None and self._monotonic() < self._expires_at:
            return self._cached

        async with self._lock:
            # another caller may have refreshed while we waited
            if self._cached is not None and self._monotonic() < self._expires_at:
                return self._cached
            status = await self._evaluate()
            self._cached = status
            self._expires_at = self._monotonic() + self.settings.market_status_ttl_seconds
            return status

    def invalidate(self) -> None:
        self._cached = None
        self._expires_at = 0.0

    async def _evaluate(self) -> MarketStatus:
        now = self._clock()
        local = self.local_now(now)
        stamp = local.strftime("%Y-%m-%d %H:%M:%S %Z")

        def _status(is_open: bool, reason: MarketReason, last_trade: datetime | None = None) -> MarketStatus:
            return MarketStatus(is_open=is_open, reason=reason, as_of=now,
                                local_time=stamp, last_trade_at=last_trade)

        if local.weekday() >= 5:
            return _status(False, MarketReason.WEEKEND)
        if local.time() < self.settings.market_open:
            return _status(False, MarketReason.PRE_MARKET)
        if local.time() > self.settings.market_close:
            return _status(False, MarketReason.AFTER_HOURS)

        try:
            last_trade = await self._probe()
        except Exception as exc:
            logger.warning("[calendar] probe failed, assuming open: %s", exc)
            return _status(True, MarketReason.OPEN)

        if last_trade is None:
            logger.info("[calendar] probe returned no trade time, assuming open")
            return _status(True, MarketReason.OPEN)

        recency = timedelta(minutes=self.settings.market_probe_recency_minutes)
        traded_today = last_trade.astimezone(self.tz).date() == local.date()
        if traded_today and now - last_trade < recency:
            return _status(True, MarketReason.OPEN, last_trade)

        logger.info(
            "[calendar] %s last traded %s, treating session as holiday",
            self.settings.market_probe_symbol, last_trade.isoformat(),
        )
        return _status(False, MarketReason.HOLIDAY, last_trade)

    # ── Window helpers ─────────────────────────────────────────────────

    def local_now(self, now: datetime | None = None) -> datetime:
        return (now or self._clock()).astimezone(self.tz)

    def session_date(self, now: datetime | None = None) -> date:
        return self.local_now(now).date()

    def in_trading_window(self, now: datetime | None = None) -> bool:
        local = self.local_now(now)
        if local.weekday() >= 5:
            return False
        return self.settings.market_open <= local.time() <= self.settings.market_close

    def in_post_close_window(self, now: datetime | None = None) -> bool:
        local = self.local_now(now)
        if local.weekday() >= 5:
            return False
        return self.settings.post_close_start <= local.time() < self.settings.post_close_end

    def seconds_until_next_open(self, now: datetime | None = None) -> float:
        local = self.local_now(now)
        return (self._next_weekday_at(local, self.settings.market_open) - local).total_seconds()

    def seconds_until_next_window(self, now: datetime | None = None) -> float:
        """Seconds until the next session open or post-close window, whichever is first."""
        local = self.local_now(now)
        candidates = (
            self._next_weekday_at(local, self.settings.market_open),
            self._next_weekday_at(local, self.settings.post_close_start),
        )
        return min((c - local).total_seconds() for c in candidates)

    def _next_weekday_at(self, local: datetime, at: time) -> datetime:
        day = local.date()
        for _ in range(8):
            candidate = datetime.combine(day, at, tzinfo=self.tz)
            if candidate.weekday() < 5 and candidate > local:
                return candidate
            day += timedelta(days=1)
        raise RuntimeError("no weekday found within a week")  # unreachable
