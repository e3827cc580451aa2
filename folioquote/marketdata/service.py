"""Inbound price operations: cache-first lookups backed by the provider chains.

Response shape for a resolved symbol::

    {symbol, price, previous_close, change, change_percent, last_change,
     last_change_percent, currency, price_date, price_type, cached, stale,
     source, fetched_at}

and for an unresolvable one ``{symbol, price: None, unavailable: True, reason}``.
``get_price`` adds ``market_status``; ``get_bulk_prices`` reports it once.

While the market is closed ``change``/``change_percent`` are always 0 and the
last session's move is reported in ``last_change``/``last_change_percent``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Callable, Iterable

from folioquote.config import Settings, get_settings
from folioquote.marketdata.breaker import CircuitBreaker
from folioquote.marketdata.cache import CachedPrice, PriceCache, serve_cached
from folioquote.marketdata.calendar import MarketCalendar
from folioquote.marketdata.chain import FallbackChain, all_breakers, build_chains
from folioquote.marketdata.errors import ConfirmationRequired
from folioquote.marketdata.priority import SymbolPriorityStore
from folioquote.marketdata.quote import AssetKind, MarketStatus, PriceQuote, PriceType
from folioquote.marketdata.search import SymbolSearch
from folioquote.utils import utc_now

logger = logging.getLogger(__name__)

REASON_CLOSED_NO_CACHE = "No cached price (market closed)"
REASON_FETCH_FAILED = "Price fetch failed"
REASON_DEADLINE = "Request deadline exceeded"


def normalize_symbol(symbol: str) -> str:
    return (symbol or "").strip().upper()


class PriceService:
    def __init__(
        self,
        settings: Settings,
        *,
        cache: PriceCache | None = None,
        priority: SymbolPriorityStore | None = None,
        calendar: MarketCalendar | None = None,
        chains: dict[AssetKind, FallbackChain] | None = None,
        search: SymbolSearch | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.cache = cache or PriceCache()
        self.priority = priority or SymbolPriorityStore()
        self.calendar = calendar or MarketCalendar(settings)
        self.chains = chains if chains is not None else build_chains(settings)
        self.cache_duration = timedelta(seconds=settings.price_cache_duration_seconds)
        self._clock = clock
        self.search = search or SymbolSearch(settings)
        self._inflight: dict[tuple[AssetKind, str], asyncio.Task] = {}

    # ── Lookups ────────────────────────────────────────────────────────

    async def get_price(
        self,
        symbol: str,
        kind: AssetKind | str = AssetKind.EQUITY,
        force_refresh: bool = False,
        deadline: float | None = None,
    ) -> dict[str, Any]:
        kind = AssetKind.parse(kind)
        symbol = normalize_symbol(symbol)
        if deadline is None:
            deadline = asyncio.get_running_loop().time() + self.settings.request_timeout_seconds

        market = await self.calendar.get_status()
        await self._bump(symbol, kind)
        entry = await self.cache.get(symbol)

        result = self._from_cache_or_none(symbol, entry, market, force_refresh)
        if result is None:
            result = await self._fetch_result(symbol, kind, entry, market, deadline)
        result["market_status"] = market.to_dict()
        return result

    async def get_bulk_prices(
        self,
        items: Iterable[tuple[str, AssetKind | str]],
        force_refresh: bool = False,
    ) -> dict[str, Any]:
        """Resolve many symbols with one cache read; fetches run in small paced batches."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.request_timeout_seconds

        wanted: dict[str, AssetKind] = {}
        for symbol, kind in items:
            wanted.setdefault(normalize_symbol(symbol), AssetKind.parse(kind))

        market = await self.calendar.get_status()
        cached = await self.cache.get_bulk(wanted)

        results: dict[str, dict[str, Any]] = {}
        pending: list[tuple[str, AssetKind, CachedPrice | None]] = []
        for symbol, kind in wanted.items():
            await self._bump(symbol, kind)
            entry = cached.get(symbol)
            served = self._from_cache_or_none(symbol, entry, market, force_refresh)
            if served is not None:
                results[symbol] = served
            else:
                pending.append((symbol, kind, entry))

        size = max(1, self.settings.bulk_fetch_concurrency)
        for start in range(0, len(pending), size):
            if start:
                await asyncio.sleep(self.settings.bulk_fetch_batch_delay_seconds)
            batch = pending[start:start + size]
            if loop.time() >= deadline:
                for symbol, _kind, entry in batch:
                    results[symbol] = self._degraded(symbol, entry, market, REASON_DEADLINE)
                continue

            outcomes = await asyncio.gather(
                *(self._fetch_result(symbol, kind, entry, market, deadline) for symbol, kind, entry in batch),
                return_exceptions=True,
            )
            for (symbol, _kind, entry), outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error("[prices] bulk fetch for %s raised: %r", symbol, outcome)
                    results[symbol] = self._degraded(symbol, entry, market, REASON_FETCH_FAILED)
                else:
                    results[symbol] = outcome

        return {
            "prices": {symbol: results[symbol] for symbol in wanted},
            "market_status": market.to_dict(),
        }

    async def get_market_status(self) -> MarketStatus:
        return await self.calendar.get_status()

    async def search_stocks(self, query: str) -> list[dict[str, Any]]:
        return await self.search.stocks(query)

    async def search_mutual_funds(self, query: str) -> list[dict[str, Any]]:
        return await self.search.mutual_funds(query)

    async def register_symbols(self, items: Iterable[tuple[str, AssetKind | str]]) -> int:
        """Track held symbols so the background sync refreshes them before they are requested."""
        tracked = [(normalize_symbol(symbol), AssetKind.parse(kind)) for symbol, kind in items]
        return await self.priority.register([(s, k) for s, k in tracked if s])

    # ── Refresh (shared by lookups and the background sync) ────────────

    async def refresh(
        self,
        symbol: str,
        kind: AssetKind | str = AssetKind.EQUITY,
        deadline: float | None = None,
    ) -> PriceQuote | None:
        """Fetch through the chain and write through the cache.

        Concurrent refreshes of one symbol in this process share a single
        upstream fetch, bounded only by the provider timeouts. Each caller
        waits at most until its own ``deadline`` and gets ``None`` past it;
        the shared fetch keeps running and still writes the cache.
        """
        kind = AssetKind.parse(kind)
        symbol = normalize_symbol(symbol)
        key = (kind, symbol)

        remaining = None
        if deadline is not None:
            remaining = deadline - asyncio.get_running_loop().time()
            if remaining <= 0:
                logger.info("[prices] deadline spent before refresh of %s", symbol)
                return None

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._fetch_and_store(symbol, kind))
            self._inflight[key] = task
            task.add_done_callback(partial(self._refresh_done, key))

        if remaining is None:
            return await asyncio.shield(task)
        try:
            return await asyncio.wait_for(asyncio.shield(task), remaining)
        except asyncio.TimeoutError:
            logger.info("[prices] deadline reached waiting for %s, refresh continues in background", symbol)
            return None

    def _refresh_done(self, key: tuple[AssetKind, str], task: asyncio.Task) -> None:
        self._inflight.pop(key, None)
        # waiters may all have given up; surface failures nobody awaited
        if not task.cancelled() and task.exception() is not None:
            logger.warning("[prices] refresh of %s failed: %r", key[1], task.exception())

    async def _fetch_and_store(self, symbol: str, kind: AssetKind) -> PriceQuote | None:
        quote = await self.chains[kind].fetch_price(symbol)
        if quote is None:
            return None
        await self.cache.put(symbol, quote, asset_kind=kind)
        return quote

    # ── Maintenance ────────────────────────────────────────────────────

    async def clear_cache(self, confirm: bool = False) -> int:
        if not confirm:
            raise ConfirmationRequired("clearing the price cache requires confirm=true")
        return await self.cache.clear()

    def breakers(self) -> dict[str, CircuitBreaker]:
        return all_breakers(self.chains.values())

    def provider_states(self) -> dict[str, dict[str, Any]]:
        return {name: breaker.snapshot() for name, breaker in self.breakers().items()}

    def reset_provider(self, name: str) -> dict[str, Any]:
        """Force one provider's breaker CLOSED. Raises ``KeyError`` for unknown names."""
        breaker = self.breakers()[name]
        breaker.reset()
        return breaker.snapshot()

    def reset_all_providers(self) -> None:
        for breaker in self.breakers().values():
            breaker.reset()

    # ── Result shaping ─────────────────────────────────────────────────

    async def _bump(self, symbol: str, kind: AssetKind) -> None:
        try:
            await self.priority.bump(symbol, kind)
        except Exception as exc:
            logger.warning("[prices] priority bump failed for %s: %s", symbol, exc)

    def _from_cache_or_none(
        self,
        symbol: str,
        entry: CachedPrice | None,
        market: MarketStatus,
        force_refresh: bool,
    ) -> dict[str, Any] | None:
        decision = serve_cached(entry, market, self._clock(), self.cache_duration, force_refresh=force_refresh)
        if decision is not None:
            return self._cached_result(entry, decision, market)
        if entry is None and not market.is_open and not force_refresh:
            return _unavailable(symbol, REASON_CLOSED_NO_CACHE)
        return None

    async def _fetch_result(
        self,
        symbol: str,
        kind: AssetKind,
        entry: CachedPrice | None,
        market: MarketStatus,
        deadline: float | None,
    ) -> dict[str, Any]:
        quote = await self.refresh(symbol, kind, deadline=deadline)
        if quote is not None:
            return self._quote_result(symbol, quote, market)
        return self._degraded(symbol, entry, market, REASON_FETCH_FAILED)

    def _degraded(
        self, symbol: str, entry: CachedPrice | None, market: MarketStatus, reason: str
    ) -> dict[str, Any]:
        if entry is not None:
            return self._cached_result(entry, PriceType.FALLBACK, market)
        return _unavailable(symbol, reason)

    def _quote_result(self, symbol: str, quote: PriceQuote, market: MarketStatus) -> dict[str, Any]:
        price_type = PriceType.LIVE if quote.is_live_session else PriceType.LAST_CLOSE
        return _result(
            symbol=symbol,
            price=quote.price,
            previous_close=quote.previous_close,
            change=quote.change,
            change_percent=quote.change_percent,
            currency=quote.currency,
            price_date=quote.trading_date,
            price_type=price_type,
            source=quote.source,
            fetched_at=self._clock(),
            market_open=market.is_open,
            cached=False,
        )

    def _cached_result(self, entry: CachedPrice, price_type: PriceType, market: MarketStatus) -> dict[str, Any]:
        return _result(
            symbol=entry.symbol,
            price=entry.price,
            previous_close=entry.previous_close,
            change=entry.change_amount,
            change_percent=entry.change_percent,
            currency=entry.currency,
            price_date=entry.price_date,
            price_type=price_type,
            source=entry.source,
            fetched_at=entry.fetched_at,
            market_open=market.is_open,
            cached=True,
        )


def _result(*, symbol, price, previous_close, change, change_percent, currency, price_date,
            price_type: PriceType, source, fetched_at, market_open: bool, cached: bool) -> dict[str, Any]:
    return {
        "symbol": symbol,
        "price": price,
        "previous_close": previous_close,
        "change": change if market_open else 0.0,
        "change_percent": change_percent if market_open else 0.0,
        "last_change": change,
        "last_change_percent": change_percent,
        "currency": currency,
        "price_date": price_date.isoformat() if price_date else None,
        "price_type": price_type.value,
        "cached": cached,
        "stale": price_type is PriceType.FALLBACK,
        "source": source,
        "fetched_at": fetched_at.isoformat() if fetched_at else None,
    }


def _unavailable(symbol: str, reason: str) -> dict[str, Any]:
    return {"symbol": symbol, "price": None, "unavailable": True, "reason": reason}


# ── Process-wide instance ─────────────────────────────────────────────

_service: PriceService | None = None


def get_price_service() -> PriceService:
    """Shared service used by the API routes and the background scheduler."""
    global _service
    if _service is None:
        _service = PriceService(get_settings())
    return _service
