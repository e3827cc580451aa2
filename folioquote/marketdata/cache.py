"""Persistent latest-price cache and the policy deciding when it may be served."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterable

from sqlalchemy import delete, func, select

from folioquote.db.database import SessionFactory, get_session, upsert_stmt
from folioquote.db.models import PriceCacheEntry
from folioquote.marketdata.quote import AssetKind, MarketStatus, PriceQuote, PriceType
from folioquote.utils import as_utc, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedPrice:
    symbol: str
    asset_kind: AssetKind
    price: float
    previous_close: float | None
    change_amount: float
    change_percent: float
    currency: str
    price_date: date | None
    is_live_session: bool
    source: str
    fetched_at: datetime

    @classmethod
    def from_row(cls, row: PriceCacheEntry) -> CachedPrice:
        return cls(
            symbol=row.symbol,
            asset_kind=AssetKind(row.asset_kind),
            price=row.price,
            previous_close=row.previous_close,
            change_amount=row.change_amount,
            change_percent=row.change_percent,
            currency=row.currency,
            price_date=row.price_date,
            is_live_session=row.is_live_session,
            source=row.source,
            fetched_at=as_utc(row.fetched_at),
        )

    def age(self, now: datetime) -> timedelta:
        return now - self.fetched_at


def serve_cached(
    entry: CachedPrice | None,
    market: MarketStatus,
    now: datetime,
    cache_duration: timedelta,
    *,
    force_refresh: bool = False,
) -> PriceType | None:
    """Decide how a cached entry may be served without fetching.

    Returns ``CACHED`` for a fresh entry while the market is open,
    ``LAST_CLOSE`` for any entry while it is closed, and ``None`` when the
    caller has to go upstream (or, closed with no entry, report unavailable).
    """
    if entry is None or force_refresh:
        return None
    if not market.is_open:
        return PriceType.LAST_CLOSE
    if entry.age(now) < cache_duration:
        return PriceType.CACHED
    return None


class PriceCache:
    def __init__(self, session_factory: SessionFactory = get_session) -> None:
        self._session = session_factory

    async def get(self, symbol: str) -> CachedPrice | None:
        async with self._session() as session:
            row = (
                await session.execute(select(PriceCacheEntry).where(PriceCacheEntry.symbol == symbol))
            ).scalar_one_or_none()
            return CachedPrice.from_row(row) if row is not None else None

    async def get_bulk(self, symbols: Iterable[str]) -> dict[str, CachedPrice]:
        wanted = sorted(set(symbols))
        if not wanted:
            return {}
        async with self._session() as session:
            rows = (
                await session.execute(select(PriceCacheEntry).where(PriceCacheEntry.symbol.in_(wanted)))
            ).scalars().all()
            return {row.symbol: CachedPrice.from_row(row) for row in rows}

    async def put(
        self,
        symbol: str,
        quote: PriceQuote,
        source: str | None = None,
        *,
        asset_kind: AssetKind = AssetKind.EQUITY,
        fetched_at: datetime | None = None,
    ) -> None:
        """Upsert the latest quote; an older write never replaces a newer row."""
        values = {
            "symbol": symbol,
            "asset_kind": asset_kind.value,
            "price": quote.price,
            "previous_close": quote.previous_close,
            "change_amount": quote.change,
            "change_percent": quote.change_percent,
            "currency": quote.currency,
            "price_date": quote.trading_date,
            "is_live_session": quote.is_live_session,
            "source": source or quote.source,
            "fetched_at": fetched_at or utc_now(),
        }
        async with self._session() as session:
            stmt = upsert_stmt(session, PriceCacheEntry).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["symbol"],
                set_={key: stmt.excluded[key] for key in values if key != "symbol"},
                where=stmt.excluded.fetched_at >= PriceCacheEntry.__table__.c.fetched_at,
            )
            await session.execute(stmt)
        logger.debug("[prices] cached %s at %s (%s)", symbol, quote.price, values["source"])

    async def clear(self) -> int:
        async with self._session() as session:
            result = await session.execute(delete(PriceCacheEntry))
            deleted = result.rowcount or 0
        logger.warning("[prices] cache cleared (%d rows)", deleted)
        return deleted

    async def count(self) -> int:
        async with self._session() as session:
            return (await session.execute(select(func.count()).select_from(PriceCacheEntry))).scalar_one()
