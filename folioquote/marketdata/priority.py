"""Request-frequency ranking used to pick which symbols the background sync refreshes."""

from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy import select

from folioquote.db.database import SessionFactory, get_session, upsert_stmt
from folioquote.db.models import SymbolPriority
from folioquote.marketdata.quote import AssetKind
from folioquote.utils import utc_now

logger = logging.getLogger(__name__)


class SymbolPriorityStore:
    def __init__(self, session_factory: SessionFactory = get_session) -> None:
        self._session = session_factory

    async def bump(self, symbol: str, asset_kind: AssetKind = AssetKind.EQUITY) -> None:
        table = SymbolPriority.__table__
        async with self._session() as session:
            stmt = upsert_stmt(session, SymbolPriority).values(
                symbol=symbol,
                asset_kind=asset_kind.value,
                priority=1,
                request_count=1,
                last_requested_at=utc_now(),
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["symbol"],
                set_={
                    "asset_kind": stmt.excluded.asset_kind,
                    "priority": table.c.priority + 1,
                    "request_count": table.c.request_count + 1,
                    "last_requested_at": stmt.excluded.last_requested_at,
                },
            )
            await session.execute(stmt)

    async def register(self, items: Iterable[tuple[str, AssetKind]]) -> int:
        """Seed tracked symbols at priority 0; existing rankings are left alone."""
        rows = [
            {"symbol": symbol, "asset_kind": kind.value, "priority": 0, "request_count": 0}
            for symbol, kind in dict(items).items()
        ]
        if not rows:
            return 0
        async with self._session() as session:
            stmt = upsert_stmt(session, SymbolPriority).values(rows)
            await session.execute(stmt.on_conflict_do_nothing(index_elements=["symbol"]))
        logger.info("[prices] registered %d tracked symbols", len(rows))
        return len(rows)

    async def top_symbols(self, limit: int) -> list[tuple[str, AssetKind]]:
        async with self._session() as session:
            rows = (
                await session.execute(
                    select(SymbolPriority.symbol, SymbolPriority.asset_kind)
                    .order_by(
                        SymbolPriority.priority.desc(),
                        SymbolPriority.request_count.desc(),
                        SymbolPriority.symbol,
                    )
                    .limit(limit)
                )
            ).all()
        return [(symbol, AssetKind(kind)) for symbol, kind in rows]
