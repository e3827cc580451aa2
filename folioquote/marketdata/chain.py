"""Ordered provider fallback with per-provider circuit breakers."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from typing import Awaitable, Callable, Iterable, Sequence

from folioquote.config import Settings
from folioquote.marketdata import providers
from folioquote.marketdata.breaker import CircuitBreaker
from folioquote.marketdata.errors import CircuitOpenError
from folioquote.marketdata.quote import AssetKind, PriceQuote

logger = logging.getLogger(__name__)

FetchFn = Callable[[str], Awaitable[PriceQuote]]


@dataclass
class Provider:
    name: str
    fetch: FetchFn
    breaker: CircuitBreaker
    timeout: float


class FallbackChain:
    """Ask providers in fixed priority order; first valid quote wins.

    Never raises for an unresolvable symbol: when every provider is skipped
    or fails, ``fetch_price`` returns ``None``.
    """

    def __init__(self, providers: Sequence[Provider]) -> None:
        self.providers = list(providers)

    async def fetch_price(self, symbol: str, deadline: float | None = None) -> PriceQuote | None:
        loop = asyncio.get_running_loop()

        for provider in self.providers:
            if not provider.breaker.is_available():
                logger.debug("[provider] %s circuit OPEN, skipping %s", provider.name, symbol)
                continue

            remaining = None
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    logger.info("[provider] deadline spent before %s for %s", provider.name, symbol)
                    return None

            # The provider timeout counts against the breaker; the request
            # deadline cancels the call and leaves the breaker untouched.
            call = provider.breaker.execute(_bounded(provider.fetch, symbol, provider.timeout))
            try:
                quote = await (call if remaining is None else asyncio.wait_for(call, remaining))
            except CircuitOpenError:
                logger.debug("[provider] %s rejected %s (circuit opened concurrently)", provider.name, symbol)
                continue
            except asyncio.TimeoutError:
                if deadline is not None and loop.time() >= deadline:
                    logger.info("[provider] deadline reached during %s for %s", provider.name, symbol)
                    return None
                logger.info("[provider] %s timed out after %.1fs for %s", provider.name, provider.timeout, symbol)
                continue
            except Exception as exc:
                logger.info("[provider] %s failed for %s: %s", provider.name, symbol, exc)
                continue

            if quote is None or not quote.price or quote.price <= 0:
                logger.info("[provider] %s returned no usable price for %s", provider.name, symbol)
                continue

            logger.debug("[provider] %s served %s at %s", provider.name, symbol, quote.price)
            return quote.with_source(provider.name)

        logger.warning("[provider] all providers failed for %s", symbol)
        return None

    def breakers(self) -> dict[str, CircuitBreaker]:
        return {p.name: p.breaker for p in self.providers}


def _bounded(fetch: FetchFn, symbol: str, timeout: float) -> Callable[[], Awaitable[PriceQuote]]:
    async def _call() -> PriceQuote:
        return await asyncio.wait_for(fetch(symbol), timeout)
    return _call


def _provider(name: str, fetch: FetchFn, *, failures: int, recovery: float, timeout: float,
              half_open: int) -> Provider:
    return Provider(
        name=name,
        fetch=fetch,
        breaker=CircuitBreaker(
            name,
            failure_threshold=failures,
            recovery_timeout=recovery,
            half_open_success_threshold=half_open,
        ),
        timeout=timeout,
    )


def build_chains(settings: Settings) -> dict[AssetKind, FallbackChain]:
    """One chain per asset kind, each provider owning its own breaker."""
    s = settings
    half_open = s.half_open_success_threshold

    yahoo = _provider(
        "yahoo", partial(providers.fetch_yahoo, settings=s),
        failures=s.yahoo_failure_threshold, recovery=s.yahoo_recovery_seconds,
        timeout=s.yahoo_timeout_seconds, half_open=half_open,
    )
    bse = _provider(
        "bse", partial(providers.fetch_bse, settings=s),
        failures=s.bse_failure_threshold, recovery=s.bse_recovery_seconds,
        timeout=s.bse_timeout_seconds, half_open=half_open,
    )
    google = _provider(
        "google", partial(providers.fetch_google, settings=s),
        failures=s.google_failure_threshold, recovery=s.google_recovery_seconds,
        timeout=s.google_timeout_seconds, half_open=half_open,
    )
    mfapi = _provider(
        "mfapi", partial(providers.fetch_mfapi, settings=s),
        failures=s.mfapi_failure_threshold, recovery=s.mfapi_recovery_seconds,
        timeout=s.mfapi_timeout_seconds, half_open=half_open,
    )
    # two sequential Yahoo calls per metal quote
    metals = _provider(
        "metals", partial(providers.fetch_metal, settings=s),
        failures=s.metals_failure_threshold, recovery=s.metals_recovery_seconds,
        timeout=s.metals_timeout_seconds * 2, half_open=half_open,
    )

    return {
        AssetKind.EQUITY: FallbackChain([yahoo, bse, google]),
        AssetKind.MUTUAL_FUND: FallbackChain([mfapi]),
        AssetKind.METAL: FallbackChain([metals]),
    }


def all_breakers(chains: Iterable[FallbackChain]) -> dict[str, CircuitBreaker]:
    out: dict[str, CircuitBreaker] = {}
    for chain in chains:
        out.update(chain.breakers())
    return out
