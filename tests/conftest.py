from __future__ import annotations

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from folioquote.config import Settings
from folioquote.db.database import make_session_scope
from folioquote.db.models import Base
from folioquote.marketdata.quote import MarketReason, MarketStatus, PriceQuote

IST = ZoneInfo("Asia/Kolkata")


def ist(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    """An IST wall-clock time expressed as an aware UTC datetime."""
    return datetime(year, month, day, hour, minute, tzinfo=IST).astimezone(timezone.utc)


def make_quote(symbol: str, price: float = 100.0, *, previous_close: float | None = 98.0,
               live: bool = True, source: str = "fake") -> PriceQuote:
    change = round(price - previous_close, 4) if previous_close else 0.0
    pct = round(change / previous_close * 100, 4) if previous_close else 0.0
    return PriceQuote(
        symbol=symbol,
        price=price,
        previous_close=previous_close,
        change=change,
        change_percent=pct,
        currency="INR",
        trading_date=date(2024, 1, 8),
        is_live_session=live,
        source=source,
    )


def market(is_open: bool, reason: MarketReason | None = None) -> MarketStatus:
    return MarketStatus(
        is_open=is_open,
        reason=reason or (MarketReason.OPEN if is_open else MarketReason.AFTER_HOURS),
        as_of=datetime.now(timezone.utc),
    )


class FakeCalendar:
    """Stands in for MarketCalendar: fixed status and window answers."""

    def __init__(self, status: MarketStatus, *, trading: bool = False, post_close: bool = False) -> None:
        self.status = status
        self.trading = trading
        self.post_close = post_close
        self.calls = 0

    async def get_status(self) -> MarketStatus:
        self.calls += 1
        return self.status

    def in_trading_window(self, now=None) -> bool:  # noqa: ANN001
        return self.trading

    def in_post_close_window(self, now=None) -> bool:  # noqa: ANN001
        return self.post_close

    def session_date(self, now=None) -> date:  # noqa: ANN001
        return date(2024, 1, 8)

    def seconds_until_next_open(self, now=None) -> float:  # noqa: ANN001
        return 1000.0

    def seconds_until_next_window(self, now=None) -> float:  # noqa: ANN001
        return 500.0


class FakeChain:
    """Chain returning canned quotes per symbol; ``None`` entries mean every provider failed."""

    def __init__(self, quotes: dict[str, PriceQuote | None] | None = None, delay: float = 0.0) -> None:
        self.quotes = quotes or {}
        self.delay = delay
        self.calls: list[str] = []

    async def fetch_price(self, symbol: str, deadline: float | None = None) -> PriceQuote | None:
        import asyncio

        self.calls.append(symbol)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.quotes.get(symbol)

    def breakers(self) -> dict:
        return {}


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        sync_symbol_delay_seconds=0.0,
        sync_jitter_seconds=0.0,
        sync_startup_delay_seconds=0.0,
        fast_sync_batch_delay_seconds=0.0,
        bulk_fetch_batch_delay_seconds=0.0,
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'folioquote.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield make_session_scope(async_sessionmaker(bind=engine, expire_on_commit=False))
    await engine.dispose()
