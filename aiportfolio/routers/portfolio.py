"""组合聚合路由：持仓由调用方在请求体中提供"""
from fastapi import APIRouter, Depends, Query

from aiportfolio.routers.deps import get_portfolio_service
from aiportfolio.schemas.portfolio import (
    EnrichedPosition,
    PortfolioRequest,
    SummaryDebugResponse,
    SummaryResponse,
    TagSummaryRow,
    TagTimeseriesResponse,
    to_documents,
)
from aiportfolio.services.portfolio_service import PortfolioService

router = APIRouter(prefix="/portfolio", tags=["组合"])


@router.post("/summary", response_model=SummaryResponse)
async def portfolio_summary(req: PortfolioRequest, svc: PortfolioService = Depends(get_portfolio_service)):
    return await svc.summary(to_documents(req))


@router.post("/summary/debug", response_model=SummaryDebugResponse)
async def portfolio_summary_debug(req: PortfolioRequest, svc: PortfolioService = Depends(get_portfolio_service)):
    """逐个持仓的市值明细，标出缺失行情的 symbol"""
    return await svc.summary_debug(to_documents(req))


@router.post("/tags/summary", response_model=list[TagSummaryRow])
async def tag_summary(req: PortfolioRequest, svc: PortfolioService = Depends(get_portfolio_service)):
    return await svc.tag_summary(to_documents(req), req.tag_names)


@router.post("/tags/timeseries", response_model=TagTimeseriesResponse)
async def tag_timeseries(
    req: PortfolioRequest,
    period: str = Query("6mo"),
    interval: str = Query("1d"),
    svc: PortfolioService = Depends(get_portfolio_service),
):
    return await svc.tag_timeseries(to_documents(req), req.tag_names, period, interval)


@router.post("/enriched", response_model=list[EnrichedPosition])
async def enriched_positions(req: PortfolioRequest, svc: PortfolioService = Depends(get_portfolio_service)):
    return await svc.enriched(to_documents(req), req.tag_names)
