"""Symbol discovery: home-exchange stock search and mutual fund scheme lookup."""

from __future__ import annotations

import asyncio
import logging
import time as _time
from functools import partial
from typing import Any, Awaitable, Callable

from folioquote.config import Settings
from folioquote.marketdata import providers

logger = logging.getLogger(__name__)

SchemeLoader = Callable[[], Awaitable[list[dict[str, Any]]]]
StockSearch = Callable[[str], Awaitable[list[dict[str, Any]]]]


class MutualFundDirectory:
    """The mfapi.in scheme list, downloaded at most once per ``mf_list_cache_seconds``."""

    def __init__(
        self,
        settings: Settings,
        *,
        loader: SchemeLoader | None = None,
        monotonic: Callable[[], float] = _time.monotonic,
    ) -> None:
        self.settings = settings
        self._loader = loader or partial(providers.fetch_mf_schemes, settings=settings)
        self._monotonic = monotonic
        self._lock = asyncio.Lock()
        self._schemes: list[dict[str, Any]] | None = None
        self._expires_at = 0.0

    async def schemes(self) -> list[dict[str, Any]]:
        if self._schemes is not None and self._monotonic() < self._expires_at:
            return self._schemes

        async with self._lock:
            if self._schemes is not None and self._monotonic() < self._expires_at:
                return self._schemes
            schemes = await self._loader()
            self._schemes = schemes
            self._expires_at = self._monotonic() + self.settings.mf_list_cache_seconds
            logger.info("[search] loaded %d mutual fund schemes", len(schemes))
            return schemes

    async def search(self, query: str, limit: int = 20) -> list[dict[str, Any]]:
        return providers.filter_mf_schemes(await self.schemes(), query, limit=limit)


class SymbolSearch:
    def __init__(
        self,
        settings: Settings,
        *,
        stocks: StockSearch | None = None,
        funds: MutualFundDirectory | None = None,
    ) -> None:
        self.settings = settings
        self._stocks = stocks or partial(providers.search_stocks, settings=settings)
        self.funds = funds or MutualFundDirectory(settings)

    def _check(self, query: str) -> str:
        query = (query or "").strip()
        if len(query) < self.settings.search_min_query_length:
            raise ValueError(
                f"Search query must be at least {self.settings.search_min_query_length} characters"
            )
        return query

    async def stocks(self, query: str) -> list[dict[str, Any]]:
        """At most 10 NSE/BSE equities matching ``query``."""
        return await self._stocks(self._check(query))

    async def mutual_funds(self, query: str) -> list[dict[str, Any]]:
        """At most 20 schemes whose name contains ``query``, case-insensitively."""
        return await self.funds.search(self._check(query))
