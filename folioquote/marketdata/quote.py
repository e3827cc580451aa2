"""Normalized quote and market-status types shared by every provider adapter."""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Any

from folioquote.marketdata.errors import ProviderUnavailable


class AssetKind(str, enum.Enum):
    EQUITY = "EQUITY"
    MUTUAL_FUND = "MUTUAL_FUND"
    METAL = "METAL"

    @classmethod
    def parse(cls, raw: str | AssetKind | None) -> AssetKind:
        """Accept enum values and the short request aliases ``stock``/``mf``/``metal``."""
        if isinstance(raw, AssetKind):
            return raw
        value = (raw or "").strip().lower()
        aliases = {
            "": cls.EQUITY,
            "stock": cls.EQUITY,
            "equity": cls.EQUITY,
            "etf": cls.EQUITY,
            "mf": cls.MUTUAL_FUND,
            "mutual_fund": cls.MUTUAL_FUND,
            "metal": cls.METAL,
        }
        if value in aliases:
            return aliases[value]
        raise ValueError(f"unknown asset kind: {raw!r}")


class PriceType(str, enum.Enum):
    LIVE = "LIVE"
    CACHED = "CACHED"
    LAST_CLOSE = "LAST_CLOSE"
    FALLBACK = "FALLBACK"


class MarketReason(str, enum.Enum):
    WEEKEND = "Weekend"
    PRE_MARKET = "PreMarket"
    AFTER_HOURS = "AfterHours"
    HOLIDAY = "Holiday"
    OPEN = "Open"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class PriceQuote:
    symbol: str
    price: float
    previous_close: float | None
    change: float
    change_percent: float
    currency: str
    trading_date: date
    is_live_session: bool
    source: str

    def with_source(self, source: str) -> PriceQuote:
        return replace(self, source=source)


def make_quote(
    provider: str,
    symbol: str,
    *,
    price: Any,
    previous_close: Any = None,
    change: Any = None,
    change_percent: Any = None,
    currency: str | None,
    trading_date: date,
    session_date: date,
    default_currency: str = "INR",
) -> PriceQuote:
    """Build a ``PriceQuote`` from loosely-typed provider fields.

    Raises ``ProviderUnavailable`` when the price is missing, non-finite or
    not positive. Change fields are derived from ``previous_close`` unless
    the provider supplied them.
    """
    try:
        px = float(price)
    except (TypeError, ValueError):
        raise ProviderUnavailable(provider, f"unparseable price {price!r}") from None
    if not math.isfinite(px) or px <= 0:
        raise ProviderUnavailable(provider, f"non-positive price {px}")

    prev: float | None = None
    if previous_close is not None:
        try:
            prev = float(previous_close)
        except (TypeError, ValueError):
            prev = None
        if prev is not None and (not math.isfinite(prev) or prev <= 0):
            prev = None

    if change is None or change_percent is None:
        if prev:
            change = px - prev
            change_percent = (px - prev) / prev * 100.0
        else:
            change, change_percent = 0.0, 0.0

    return PriceQuote(
        symbol=symbol,
        price=round(px, 4),
        previous_close=round(prev, 4) if prev is not None else None,
        change=round(float(change), 4),
        change_percent=round(float(change_percent), 4),
        currency=(currency or default_currency).upper(),
        trading_date=trading_date,
        is_live_session=trading_date == session_date,
        source=provider,
    )


@dataclass(frozen=True)
class MarketStatus:
    is_open: bool
    reason: MarketReason
    as_of: datetime
    local_time: str = ""
    last_trade_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_open": self.is_open,
            "reason": self.reason.value,
            "as_of": self.as_of.isoformat(),
            "local_time": self.local_time,
            "last_trade_at": self.last_trade_at.isoformat() if self.last_trade_at else None,
        }
