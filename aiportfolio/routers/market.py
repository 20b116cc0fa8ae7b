"""行情路由"""
from fastapi import APIRouter, Depends, HTTPException, Query

from aiportfolio.providers.fundamentals import compute_pe_ratio, compute_peg_ratio
from aiportfolio.routers.deps import get_market_data_service
from aiportfolio.schemas.market import FundamentalsView, HistoryPointView, MonitoringResponse, PriceEntryView
from aiportfolio.services.market_data_service import MarketDataService, unique_upper_symbols

router = APIRouter(prefix="/market", tags=["行情"])

SUPPORTED_INTERVALS = ("1d", "1wk", "1mo")


def _parse_symbols(symbols: str) -> list[str]:
    parsed = unique_upper_symbols(symbols.split(","))
    if not parsed:
        raise HTTPException(status_code=422, detail="symbols is required")
    return parsed


@router.get("/prices", response_model=dict[str, PriceEntryView])
async def get_prices(
    symbols: str = Query(..., description="逗号分隔，如 AAPL,SAF.PA"),
    svc: MarketDataService = Depends(get_market_data_service),
):
    """批量实时行情（无数据的 symbol 返回空哨兵 current=0）"""
    prices = await svc.resolve_prices(_parse_symbols(symbols))
    return {symbol: entry.to_dict() for symbol, entry in prices.items()}


@router.get("/history", response_model=dict[str, list[HistoryPointView]])
async def get_history(
    symbols: str = Query(..., description="逗号分隔"),
    period: str = Query("6mo", description="如 10d / 4wk / 6mo / 1y"),
    interval: str = Query("1d"),
    svc: MarketDataService = Depends(get_market_data_service),
):
    if interval not in SUPPORTED_INTERVALS:
        raise HTTPException(status_code=422, detail=f"interval must be one of {', '.join(SUPPORTED_INTERVALS)}")
    histories = await svc.resolve_histories(_parse_symbols(symbols), period, interval)
    return {symbol: [p.to_dict() for p in points] for symbol, points in histories.items()}


@router.get("/fundamentals/{symbol}", response_model=FundamentalsView)
async def get_fundamentals(symbol: str, svc: MarketDataService = Depends(get_market_data_service)):
    """基本面快照 + 按当前价计算的 PE / PEG"""
    upper = symbol.strip().upper()
    snapshot = await svc.get_fundamentals(upper)
    if snapshot is None:
        return FundamentalsView(symbol=upper, available=False)

    entry = await svc.resolve_price(upper)
    current = entry.current if entry.has_live_price else None
    pe = compute_pe_ratio(current, snapshot.eps_diluted)
    return FundamentalsView(
        symbol=upper,
        available=True,
        current_price=current,
        pe_ratio=pe,
        peg_ratio=compute_peg_ratio(pe, snapshot.eps_cagr_pct),
        **snapshot.to_dict(),
    )


@router.post("/cache/clear")
async def clear_cache(svc: MarketDataService = Depends(get_market_data_service)):
    """清空缓存 / 解析记录 / 限流冷却"""
    svc.clear_all()
    return {"status": "ok"}


@router.get("/monitoring", response_model=MonitoringResponse)
async def get_monitoring(svc: MarketDataService = Depends(get_market_data_service)):
    return MonitoringResponse(**svc.get_monitoring())
