"""Upstream price adapters.

Each adapter fetches one symbol from one untrusted source and maps the raw,
provider-specific response into a ``PriceQuote`` through a pure ``parse_*``
function. Anything that cannot be normalized raises ``ProviderUnavailable``.

  yahoo   chart endpoint, exchange-qualified tickers (primary)
  bse     BSE India JSON API (secondary)
  google  Google Finance quote page, HTML scrape (last resort)
  mfapi   mfapi.in mutual fund NAVs, keyed by scheme code
  metals  gold/silver per gram in home currency, derived from futures + FX

Symbol discovery (``search_stocks``, ``fetch_mf_schemes``) uses the Yahoo
search endpoint and the mfapi.in scheme list.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import date, datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo

import httpx
from bs4 import BeautifulSoup

from folioquote.config import Settings
from folioquote.marketdata.errors import ProviderUnavailable, RateLimited
from folioquote.marketdata.quote import PriceQuote, make_quote
from folioquote.utils import browser_headers, retry, safe_float

logger = logging.getLogger(__name__)

_YAHOO_CHART_URL = "https://query1.finance.yahoo.com/v8/finance/chart/{symbol}"
_BSE_SEARCH_URL = "https://api.bseindia.com/BseIndiaAPI/api/Sensex/getSensexData"
_BSE_GRAPH_URL = "https://api.bseindia.com/BseIndiaAPI/api/StockReachGraph/w"
_BSE_HEADER_URL = "https://api.bseindia.com/BseIndiaAPI/api/getScripHeaderData/w"
_GOOGLE_QUOTE_URL = "https://www.google.com/finance/quote/{symbol}"
_MFAPI_URL = "https://api.mfapi.in/mf/{scheme_code}"
_MFAPI_LIST_URL = "https://api.mfapi.in/mf"
_YAHOO_SEARCH_URL = "https://query1.finance.yahoo.com/v1/finance/search"

TROY_OUNCE_GRAMS = 31.1035
_METAL_FUTURES = {"GOLD": "GC=F", "SILVER": "SI=F"}


def _session_date(tz: ZoneInfo) -> date:
    return datetime.now(tz).date()


def _retry_after(resp: httpx.Response) -> float | None:
    return safe_float(resp.headers.get("Retry-After"))


# ── HTTP plumbing ─────────────────────────────────────────────────────

async def _get(
    provider: str,
    url: str,
    *,
    timeout: float,
    params: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> httpx.Response:
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        resp = await client.get(url, params=params, headers=headers or browser_headers())
    if resp.status_code == 429:
        raise RateLimited(provider, _retry_after(resp))
    if resp.status_code != 200:
        raise ProviderUnavailable(provider, f"HTTP {resp.status_code}")
    return resp


_get_with_retry = retry(
    max_attempts=3,
    backoff=lambda attempt: 2.0 * attempt,
    exceptions=(RateLimited, httpx.TransportError),
)(_get)


async def _fetch(provider: str, url: str, *, retrying: bool = False, **kwargs: Any) -> httpx.Response:
    """GET and translate transport failures into ``ProviderUnavailable``."""
    getter = _get_with_retry if retrying else _get
    try:
        return await getter(provider, url, **kwargs)
    except httpx.HTTPError as exc:
        raise ProviderUnavailable(provider, f"{type(exc).__name__}: {exc}") from exc


def _json(provider: str, resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        raise ProviderUnavailable(provider, "malformed JSON payload") from None


# ── Symbol conventions ────────────────────────────────────────────────

def strip_exchange_suffix(symbol: str) -> str:
    s = (symbol or "").strip().upper()
    for suffix in (".NS", ".BO"):
        if s.endswith(suffix):
            return s[: -len(suffix)]
    return s


def to_google_symbol(symbol: str) -> str:
    s = (symbol or "").strip().upper()
    if s.endswith(".NS"):
        return f"{s[:-3]}:NSE"
    if s.endswith(".BO"):
        return f"{s[:-3]}:BOM"
    return s


# ── Yahoo chart (primary) ─────────────────────────────────────────────

def _yahoo_meta(provider: str, payload: Any) -> dict[str, Any]:
    chart = payload.get("chart") if isinstance(payload, dict) else None
    results = (chart or {}).get("result") or []
    if not results or not isinstance(results[0], dict):
        error = (chart or {}).get("error") or {}
        raise ProviderUnavailable(provider, f"no chart result ({error.get('code', 'empty')})")
    return results[0].get("meta") or {}


def parse_yahoo_chart(
    payload: Any,
    symbol: str,
    *,
    tz: ZoneInfo,
    session_date: date,
    default_currency: str = "INR",
) -> PriceQuote:
    meta = _yahoo_meta("yahoo", payload)
    previous_close = (
        meta.get("chartPreviousClose")
        or meta.get("previousClose")
        or meta.get("regularMarketPreviousClose")
    )
    price = meta.get("regularMarketPrice") or previous_close
    last_trade = meta.get("regularMarketTime")
    if last_trade:
        trading_date = datetime.fromtimestamp(int(last_trade), tz).date()
    else:
        trading_date = session_date
    return make_quote(
        "yahoo",
        symbol,
        price=price,
        previous_close=previous_close,
        currency=meta.get("currency"),
        trading_date=trading_date,
        session_date=session_date,
        default_currency=default_currency,
    )


async def fetch_yahoo(symbol: str, *, settings: Settings) -> PriceQuote:
    resp = await _fetch(
        "yahoo",
        _YAHOO_CHART_URL.format(symbol=symbol),
        retrying=True,
        params={"interval": "1d", "range": "1d"},
        timeout=settings.yahoo_timeout_seconds,
    )
    tz = settings.market_tz
    return parse_yahoo_chart(
        _json("yahoo", resp),
        symbol,
        tz=tz,
        session_date=_session_date(tz),
        default_currency=settings.default_currency,
    )


async def probe_last_trade(settings: Settings) -> datetime | None:
    """Last trade time of the reference index, or None when Yahoo omits it."""
    resp = await _fetch(
        "probe",
        _YAHOO_CHART_URL.format(symbol=settings.market_probe_symbol),
        params={"interval": "1m", "range": "1d"},
        timeout=settings.market_probe_timeout_seconds,
    )
    meta = _yahoo_meta("probe", _json("probe", resp))
    ts = meta.get("regularMarketTime")
    if not ts:
        return None
    return datetime.fromtimestamp(int(ts), timezone.utc)


# ── BSE (secondary) ───────────────────────────────────────────────────

def parse_bse_quote(
    payload: Any,
    symbol: str,
    *,
    session_date: date,
    default_currency: str = "INR",
) -> PriceQuote:
    if not isinstance(payload, dict):
        raise ProviderUnavailable("bse", "unexpected payload shape")

    change = change_percent = None
    if payload.get("CurrValue") or payload.get("Curvalue"):
        price = safe_float(payload.get("CurrValue") or payload.get("Curvalue"))
        previous_close = safe_float(payload.get("PrevClose") or payload.get("prevClose"))
    elif isinstance(payload.get("Header"), dict):
        header = payload["Header"]
        price = safe_float(header.get("CurrentVal") or header.get("CurrVal"))
        previous_close = safe_float(header.get("PreClsVal") or header.get("PrevCls"))
        change = safe_float(header.get("Change"))
        change_percent = safe_float(header.get("PerChange") or header.get("PercChange"))
    else:
        raise ProviderUnavailable("bse", "unrecognised quote payload")

    return make_quote(
        "bse",
        symbol,
        price=price,
        previous_close=previous_close,
        change=change if change_percent is not None else None,
        change_percent=change_percent if change is not None else None,
        currency=default_currency,
        trading_date=session_date,
        session_date=session_date,
        default_currency=default_currency,
    )


async def fetch_bse(symbol: str, *, settings: Settings) -> PriceQuote:
    base = strip_exchange_suffix(symbol)
    headers = {**browser_headers(), "Referer": "https://www.bseindia.com/"}
    timeout = settings.bse_timeout_seconds

    search = _json("bse", await _fetch(
        "bse", _BSE_SEARCH_URL,
        params={"scripcode": "", "scripname": base}, headers=headers, timeout=timeout,
    ))
    rows = search.get("Table") if isinstance(search, dict) else None
    match = next(
        (
            row for row in rows or []
            if isinstance(row, dict)
            and row.get("scrip_cd")
            and str(row.get("short_name") or "").upper() == base
        ),
        None,
    )

    if match:
        resp = await _fetch(
            "bse", _BSE_GRAPH_URL,
            params={"flag": "0", "scripcode": match["scrip_cd"]}, headers=headers, timeout=timeout,
        )
    else:
        logger.debug("[provider] bse scrip search missed %s, trying header endpoint", base)
        resp = await _fetch(
            "bse", _BSE_HEADER_URL,
            params={"scripcode": "", "scripid": base, "flag": ""}, headers=headers, timeout=timeout,
        )

    return parse_bse_quote(
        _json("bse", resp),
        symbol,
        session_date=_session_date(settings.market_tz),
        default_currency=settings.default_currency,
    )


# ── Google Finance (last resort, HTML scrape) ─────────────────────────

def _attr(soup: BeautifulSoup, name: str) -> float | None:
    node = soup.find(attrs={name: True})
    return safe_float(node.get(name)) if node is not None else None


def parse_google_finance(
    html: str,
    symbol: str,
    *,
    session_date: date,
    default_currency: str = "INR",
) -> PriceQuote:
    soup = BeautifulSoup(html, "html.parser")

    price = _attr(soup, "data-last-price")
    if price is None:
        node = soup.select_one("div.YMlKec")
        if node is None:
            raise ProviderUnavailable("google", "could not locate price in page")
        price = safe_float(node.get_text(strip=True).lstrip("₹$€£"))
        previous_close, change, change_percent = price, 0.0, 0.0
    else:
        previous_close = _attr(soup, "data-previous-close") or price
        change = _attr(soup, "data-price-change")
        change_percent = _attr(soup, "data-price-change-percent")
        if change is None or change_percent is None:
            change = change_percent = None

    currency_node = soup.find(attrs={"data-currency-code": True})
    currency = currency_node.get("data-currency-code") if currency_node is not None else None

    return make_quote(
        "google",
        symbol,
        price=price,
        previous_close=previous_close,
        change=change,
        change_percent=change_percent,
        currency=currency,
        trading_date=session_date,
        session_date=session_date,
        default_currency=default_currency,
    )


async def fetch_google(symbol: str, *, settings: Settings) -> PriceQuote:
    resp = await _fetch(
        "google",
        _GOOGLE_QUOTE_URL.format(symbol=to_google_symbol(symbol)),
        headers=browser_headers(accept="text/html"),
        timeout=settings.google_timeout_seconds,
    )
    return parse_google_finance(
        resp.text,
        symbol,
        session_date=_session_date(settings.market_tz),
        default_currency=settings.default_currency,
    )


# ── Mutual fund NAV ───────────────────────────────────────────────────

def parse_mfapi(
    payload: Any,
    scheme_code: str,
    *,
    session_date: date,
    default_currency: str = "INR",
) -> PriceQuote:
    rows = payload.get("data") if isinstance(payload, dict) else None
    if not rows:
        raise ProviderUnavailable("mfapi", "no NAV data")

    latest = rows[0]
    previous = rows[1] if len(rows) > 1 else latest
    try:
        nav_date = datetime.strptime(str(latest.get("date")), "%d-%m-%Y").date()
    except ValueError:
        raise ProviderUnavailable("mfapi", f"bad NAV date {latest.get('date')!r}") from None

    quote = make_quote(
        "mfapi",
        scheme_code,
        price=safe_float(latest.get("nav")),
        previous_close=safe_float(previous.get("nav")),
        currency=default_currency,
        trading_date=nav_date,
        session_date=session_date,
        default_currency=default_currency,
    )
    # NAVs are end-of-day only
    return replace(quote, is_live_session=False)


async def fetch_mfapi(scheme_code: str, *, settings: Settings) -> PriceQuote:
    resp = await _fetch(
        "mfapi",
        _MFAPI_URL.format(scheme_code=scheme_code),
        timeout=settings.mfapi_timeout_seconds,
    )
    return parse_mfapi(
        _json("mfapi", resp),
        scheme_code,
        session_date=_session_date(settings.market_tz),
        default_currency=settings.default_currency,
    )


# ── Precious metals ───────────────────────────────────────────────────

def metal_quote(
    metal: str,
    *,
    futures: PriceQuote,
    fx: PriceQuote,
    premium: float,
    session_date: date,
    currency: str,
) -> PriceQuote:
    """Per-gram (24K / 999) price in home currency from USD/oz futures and USD FX."""

    def _per_gram(usd_per_oz: float, rate: float) -> float:
        return round(usd_per_oz * rate / TROY_OUNCE_GRAMS * premium, 2)

    previous_close = None
    if futures.previous_close:
        previous_close = _per_gram(futures.previous_close, fx.previous_close or fx.price)

    return make_quote(
        "metals",
        metal,
        price=_per_gram(futures.price, fx.price),
        previous_close=previous_close,
        currency=currency,
        trading_date=futures.trading_date,
        session_date=session_date,
        default_currency=currency,
    )


async def fetch_metal(symbol: str, *, settings: Settings) -> PriceQuote:
    metal = (symbol or "").strip().upper()
    future_symbol = _METAL_FUTURES.get(metal)
    if future_symbol is None:
        raise ProviderUnavailable("metals", f"unsupported metal {symbol!r}")

    futures = await fetch_yahoo(future_symbol, settings=settings)
    fx = await fetch_yahoo(f"USD{settings.default_currency}=X", settings=settings)
    premium = settings.gold_local_premium if metal == "GOLD" else settings.silver_local_premium
    return metal_quote(
        metal,
        futures=futures,
        fx=fx,
        premium=premium,
        session_date=_session_date(settings.market_tz),
        currency=settings.default_currency,
    )


# ── Symbol discovery ──────────────────────────────────────────────────

_HOME_EXCHANGES = ("NSI", "BSE")


def parse_yahoo_search(payload: Any, *, limit: int = 10) -> list[dict[str, Any]]:
    """Home-exchange equities from a Yahoo search response."""
    quotes = payload.get("quotes") if isinstance(payload, dict) else None
    stocks: list[dict[str, Any]] = []
    for item in quotes or []:
        if not isinstance(item, dict) or item.get("quoteType") != "EQUITY":
            continue
        symbol = str(item.get("symbol") or "")
        if not symbol:
            continue
        if item.get("exchange") not in _HOME_EXCHANGES and not symbol.endswith((".NS", ".BO")):
            continue
        stocks.append({
            "symbol": symbol,
            "name": item.get("longname") or item.get("shortname"),
            "exchange": "NSE" if symbol.endswith(".NS") else "BSE",
            "type": "STOCK",
        })
        if len(stocks) >= limit:
            break
    return stocks


async def search_stocks(query: str, *, settings: Settings) -> list[dict[str, Any]]:
    resp = await _fetch(
        "yahoo",
        _YAHOO_SEARCH_URL,
        params={
            "q": query,
            "quotesCount": 15,
            "newsCount": 0,
            "listsCount": 0,
            "enableFuzzyQuery": "false",
            "quotesQueryId": "tss_match_phrase_query",
        },
        timeout=settings.yahoo_timeout_seconds,
    )
    return parse_yahoo_search(_json("yahoo", resp))


def filter_mf_schemes(schemes: list[dict[str, Any]], query: str, *, limit: int = 20) -> list[dict[str, Any]]:
    needle = query.strip().lower()
    return [
        scheme for scheme in schemes
        if isinstance(scheme, dict) and needle in str(scheme.get("schemeName") or "").lower()
    ][:limit]


async def fetch_mf_schemes(*, settings: Settings) -> list[dict[str, Any]]:
    """The full mfapi.in scheme list (tens of thousands of rows)."""
    resp = await _fetch("mfapi", _MFAPI_LIST_URL, timeout=settings.mf_list_timeout_seconds)
    payload = _json("mfapi", resp)
    if not isinstance(payload, list):
        raise ProviderUnavailable("mfapi", "scheme list is not an array")
    return payload
