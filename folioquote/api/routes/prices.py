"""Price endpoints — lookups, bulk, search, tracked symbols, market status, sync control and maintenance."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from folioquote.marketdata.errors import ConfirmationRequired, ProviderUnavailable
from folioquote.marketdata.quote import AssetKind
from folioquote.marketdata.service import PriceService, get_price_service
from folioquote.workers.price_sync_worker import PriceSyncScheduler, get_price_scheduler

router = APIRouter(prefix="/prices", tags=["prices"])

_TYPE_PATTERN = "^(stock|equity|etf|mf|mutual_fund|metal|EQUITY|MUTUAL_FUND|METAL)$"


def get_scheduler() -> PriceSyncScheduler:
    return get_price_scheduler()


class BulkItem(BaseModel):
    symbol: str = Field(min_length=1, max_length=64)
    type: str = Field("stock", pattern=_TYPE_PATTERN)


class BulkRequest(BaseModel):
    symbols: list[BulkItem] = Field(default_factory=list, max_length=200)
    force_refresh: bool = False


class SymbolsRequest(BaseModel):
    symbols: list[BulkItem] = Field(default_factory=list, max_length=1000)


@router.get("/market-status")
async def market_status(service: PriceService = Depends(get_price_service)):
    status = await service.get_market_status()
    return status.to_dict()


@router.post("/bulk")
async def bulk_prices(req: BulkRequest, service: PriceService = Depends(get_price_service)):
    items = [(item.symbol, AssetKind.parse(item.type)) for item in req.symbols]
    return await service.get_bulk_prices(items, force_refresh=req.force_refresh)


@router.post("/symbols")
async def register_symbols(req: SymbolsRequest, service: PriceService = Depends(get_price_service)):
    items = [(item.symbol, AssetKind.parse(item.type)) for item in req.symbols]
    return {"success": True, "registered": await service.register_symbols(items)}


@router.get("/search/stocks")
async def search_stocks(q: str = Query(""), service: PriceService = Depends(get_price_service)):
    try:
        stocks = await service.search_stocks(q)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    except ProviderUnavailable as exc:
        raise HTTPException(502, "Failed to search stocks") from exc
    return {"stocks": stocks}


@router.get("/search/mf")
async def search_mutual_funds(q: str = Query(""), service: PriceService = Depends(get_price_service)):
    try:
        funds = await service.search_mutual_funds(q)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    except ProviderUnavailable as exc:
        raise HTTPException(503, "Mutual fund data not available") from exc
    return {"funds": funds}


@router.get("/sync/status")
async def sync_status(scheduler: PriceSyncScheduler = Depends(get_scheduler)):
    return await scheduler.get_status()


@router.post("/sync/trigger")
async def sync_trigger(scheduler: PriceSyncScheduler = Depends(get_scheduler)):
    return await scheduler.trigger_manual_sync()


@router.delete("/cache")
async def clear_cache(
    confirm: bool = Query(False),
    service: PriceService = Depends(get_price_service),
):
    try:
        deleted = await service.clear_cache(confirm=confirm)
    except ConfirmationRequired as exc:
        raise HTTPException(400, str(exc)) from exc
    return {"success": True, "deleted": deleted}


@router.get("/providers")
async def provider_states(service: PriceService = Depends(get_price_service)):
    return {"providers": service.provider_states()}


@router.post("/providers/reset")
async def reset_all_providers(service: PriceService = Depends(get_price_service)):
    service.reset_all_providers()
    return {"providers": service.provider_states()}


@router.post("/providers/{name}/reset")
async def reset_provider(name: str, service: PriceService = Depends(get_price_service)):
    try:
        return service.reset_provider(name)
    except KeyError:
        raise HTTPException(404, f"Unknown provider: {name}") from None


# Catch-all symbol lookup; must stay registered after the fixed paths above.
@router.get("/{symbol}")
async def get_price(
    symbol: str,
    type: str = Query("stock", pattern=_TYPE_PATTERN),
    refresh: bool = Query(False),
    service: PriceService = Depends(get_price_service),
):
    return await service.get_price(symbol, AssetKind.parse(type), force_refresh=refresh)
