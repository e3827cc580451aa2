from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from conftest import FakeCalendar, FakeChain, make_quote, market
from folioquote.marketdata.cache import PriceCache
from folioquote.marketdata.errors import ConfirmationRequired
from folioquote.marketdata.priority import SymbolPriorityStore
from folioquote.marketdata.quote import AssetKind, MarketReason
from folioquote.marketdata.service import PriceService
from folioquote.utils import utc_now


def _service(settings, session_factory, *, is_open: bool, chain: FakeChain | None = None) -> PriceService:  # noqa: ANN001
    chain = chain or FakeChain()
    return PriceService(
        settings,
        cache=PriceCache(session_factory),
        priority=SymbolPriorityStore(session_factory),
        calendar=FakeCalendar(market(is_open)),
        chains={AssetKind.EQUITY: chain, AssetKind.MUTUAL_FUND: chain, AssetKind.METAL: chain},
    )


@pytest.mark.asyncio
async def test_closed_market_serves_last_close_with_zero_change(settings, session_factory) -> None:  # noqa: ANN001
    chain = FakeChain()
    svc = _service(settings, session_factory, is_open=False, chain=chain)
    await svc.cache.put("ABC.NS", make_quote("ABC.NS", 102.5, previous_close=100.0),
                        fetched_at=utc_now() - timedelta(hours=3))

    result = await svc.get_price("ABC.NS")

    assert result["price"] == 102.5
    assert result["price_type"] == "LAST_CLOSE"
    assert result["change"] == 0
    assert result["change_percent"] == 0
    assert result["last_change"] == 2.5
    assert result["last_change_percent"] == 2.5
    assert result["market_status"]["is_open"] is False
    assert chain.calls == []


@pytest.mark.asyncio
async def test_closed_market_without_entry_is_unavailable_and_not_fetched(settings, session_factory) -> None:  # noqa: ANN001
    chain = FakeChain({"NEW.NS": make_quote("NEW.NS")})
    svc = _service(settings, session_factory, is_open=False, chain=chain)

    result = await svc.get_price("new.ns")

    assert result["price"] is None
    assert result["unavailable"] is True
    assert result["reason"] == "No cached price (market closed)"
    assert chain.calls == []


@pytest.mark.asyncio
async def test_open_market_serves_fresh_cache(settings, session_factory) -> None:  # noqa: ANN001
    chain = FakeChain()
    svc = _service(settings, session_factory, is_open=True, chain=chain)
    await svc.cache.put("TCS.NS", make_quote("TCS.NS", 3900.0), "bse")

    result = await svc.get_price("TCS.NS")

    assert result["price_type"] == "CACHED"
    assert result["cached"] is True
    assert result["source"] == "bse"
    assert chain.calls == []


@pytest.mark.asyncio
async def test_open_market_refreshes_stale_entry(settings, session_factory) -> None:  # noqa: ANN001
    chain = FakeChain({"TCS.NS": make_quote("TCS.NS", 4000.0, previous_close=3900.0, source="yahoo")})
    svc = _service(settings, session_factory, is_open=True, chain=chain)
    await svc.cache.put("TCS.NS", make_quote("TCS.NS", 3900.0), fetched_at=utc_now() - timedelta(hours=1))

    result = await svc.get_price("TCS.NS")

    assert result["price"] == 4000.0
    assert result["price_type"] == "LIVE"
    assert result["cached"] is False
    assert result["change"] == 100.0
    assert chain.calls == ["TCS.NS"]
    assert (await svc.cache.get("TCS.NS")).price == 4000.0


@pytest.mark.asyncio
async def test_previous_session_quote_is_last_close(settings, session_factory) -> None:  # noqa: ANN001
    chain = FakeChain({"OLD.NS": make_quote("OLD.NS", 50.0, live=False)})
    svc = _service(settings, session_factory, is_open=True, chain=chain)

    result = await svc.get_price("OLD.NS")

    assert result["price_type"] == "LAST_CLOSE"


@pytest.mark.asyncio
async def test_failed_fetch_falls_back_to_stale_entry(settings, session_factory) -> None:  # noqa: ANN001
    svc = _service(settings, session_factory, is_open=True, chain=FakeChain({"DOWN.NS": None}))
    await svc.cache.put("DOWN.NS", make_quote("DOWN.NS", 77.0), fetched_at=utc_now() - timedelta(hours=2))

    result = await svc.get_price("DOWN.NS")

    assert result["price"] == 77.0
    assert result["price_type"] == "FALLBACK"
    assert result["stale"] is True


@pytest.mark.asyncio
async def test_failed_fetch_without_entry_is_unavailable(settings, session_factory) -> None:  # noqa: ANN001
    svc = _service(settings, session_factory, is_open=True, chain=FakeChain())

    result = await svc.get_price("NOPE.NS")

    assert result["unavailable"] is True
    assert result["reason"] == "Price fetch failed"


@pytest.mark.asyncio
async def test_forced_refresh_while_closed_fetches_but_reports_zero_change(settings, session_factory) -> None:  # noqa: ANN001
    chain = FakeChain({"ABC.NS": make_quote("ABC.NS", 105.0, previous_close=100.0)})
    svc = _service(settings, session_factory, is_open=False, chain=chain)
    await svc.cache.put("ABC.NS", make_quote("ABC.NS", 102.5, previous_close=100.0))

    result = await svc.get_price("ABC.NS", force_refresh=True)

    assert chain.calls == ["ABC.NS"]
    assert result["price"] == 105.0
    assert result["change"] == 0
    assert result["last_change"] == 5.0


@pytest.mark.asyncio
async def test_bulk_reports_unavailable_symbol_without_failing_others(settings, session_factory) -> None:  # noqa: ANN001
    chain = FakeChain({"BBB.NS": make_quote("BBB.NS", 20.0), "XYZ.NS": None})
    svc = _service(settings, session_factory, is_open=True, chain=chain)
    await svc.cache.put("AAA.NS", make_quote("AAA.NS", 10.0))

    result = await svc.get_bulk_prices([("AAA.NS", "stock"), ("BBB.NS", "stock"), ("XYZ.NS", "stock")])

    prices = result["prices"]
    assert list(prices) == ["AAA.NS", "BBB.NS", "XYZ.NS"]
    assert prices["AAA.NS"]["price_type"] == "CACHED"
    assert prices["BBB.NS"]["price"] == 20.0
    assert prices["XYZ.NS"]["unavailable"] is True
    assert result["market_status"]["reason"] == MarketReason.OPEN.value
    assert sorted(chain.calls) == ["BBB.NS", "XYZ.NS"]


@pytest.mark.asyncio
async def test_concurrent_refreshes_share_one_fetch(settings, session_factory) -> None:  # noqa: ANN001
    chain = FakeChain({"HOT.NS": make_quote("HOT.NS", 9.0)}, delay=0.05)
    svc = _service(settings, session_factory, is_open=True, chain=chain)

    quotes = await asyncio.gather(*(svc.refresh("HOT.NS") for _ in range(4)))

    assert chain.calls == ["HOT.NS"]
    assert all(q.price == 9.0 for q in quotes)


@pytest.mark.asyncio
async def test_requests_bump_symbol_priority(settings, session_factory) -> None:  # noqa: ANN001
    svc = _service(settings, session_factory, is_open=False)
    await svc.priority.register([("RARE.NS", AssetKind.EQUITY)])

    await svc.get_price("POPULAR.NS")
    await svc.get_price("POPULAR.NS")
    await svc.get_price("MF123", "mf")

    top = await svc.priority.top_symbols(10)
    assert top[0] == ("POPULAR.NS", AssetKind.EQUITY)
    assert ("MF123", AssetKind.MUTUAL_FUND) in top
    assert top[-1] == ("RARE.NS", AssetKind.EQUITY)


@pytest.mark.asyncio
async def test_clear_cache_requires_confirmation(settings, session_factory) -> None:  # noqa: ANN001
    svc = _service(settings, session_factory, is_open=True)
    await svc.cache.put("A.NS", make_quote("A.NS"))

    with pytest.raises(ConfirmationRequired):
        await svc.clear_cache()
    assert await svc.cache.count() == 1

    assert await svc.clear_cache(confirm=True) == 1


@pytest.mark.asyncio
async def test_reset_unknown_provider_raises_key_error(settings, session_factory) -> None:  # noqa: ANN001
    svc = _service(settings, session_factory, is_open=True)
    with pytest.raises(KeyError):
        svc.reset_provider("nope")


@pytest.mark.asyncio
async def test_request_joining_slow_refresh_honours_own_deadline(settings, session_factory) -> None:  # noqa: ANN001
    chain = FakeChain({"SLOW.NS": make_quote("SLOW.NS", 12.0)}, delay=0.5)
    svc = _service(settings, session_factory, is_open=True, chain=chain)
    loop = asyncio.get_running_loop()

    background = asyncio.ensure_future(svc.refresh("SLOW.NS"))
    await asyncio.sleep(0)
    started = loop.time()
    result = await svc.get_price("SLOW.NS", deadline=started + 0.1)
    elapsed = loop.time() - started

    assert elapsed < 0.4
    assert result["unavailable"] is True
    # the shared fetch is not cut short and still lands in the cache
    quote = await background
    assert quote.price == 12.0
    assert chain.calls == ["SLOW.NS"]
    assert (await svc.cache.get("SLOW.NS")).price == 12.0


@pytest.mark.asyncio
async def test_shared_refresh_is_not_bound_by_first_callers_deadline(settings, session_factory) -> None:  # noqa: ANN001
    chain = FakeChain({"LATE.NS": make_quote("LATE.NS", 8.0)}, delay=0.2)
    svc = _service(settings, session_factory, is_open=True, chain=chain)
    loop = asyncio.get_running_loop()

    hurried = asyncio.ensure_future(svc.refresh("LATE.NS", deadline=loop.time() + 0.05))
    await asyncio.sleep(0)
    patient = await svc.refresh("LATE.NS")

    assert await hurried is None
    assert patient is not None and patient.price == 8.0
    assert chain.calls == ["LATE.NS"]


@pytest.mark.asyncio
async def test_registered_holdings_are_picked_up_by_sync(settings, session_factory) -> None:  # noqa: ANN001
    svc = _service(settings, session_factory, is_open=True)

    count = await svc.register_symbols([(" infy.ns ", "stock"), ("119551", "mf"), ("", "stock")])

    assert count == 2
    assert set(await svc.priority.top_symbols(10)) == {
        ("INFY.NS", AssetKind.EQUITY),
        ("119551", AssetKind.MUTUAL_FUND),
    }
