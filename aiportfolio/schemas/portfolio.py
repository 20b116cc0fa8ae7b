"""组合接口 schemas"""
from typing import Any, Optional

from pydantic import BaseModel, Field


class PositionIn(BaseModel):
    id: Optional[str] = None
    symbol: str
    quantity: float = 0.0
    cost_price: float = 0.0
    is_closed: bool = False
    closing_price: Optional[float] = None
    closing_date: Optional[str] = None
    purchase_date: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    tags: list[str] = []
    api_url: Optional[str] = None
    api_token: Optional[str] = None
    revenue_growth_yoy_pct: Optional[float] = None
    pe_ratio: Optional[float] = None
    peg_ratio: Optional[float] = None
    roe_5y_avg_pct: Optional[float] = None
    quick_ratio: Optional[float] = None
    indicator_disabled: bool = False
    fundamentals_overrides: dict[str, bool] = Field({}, description="指标名 -> True 表示手工维护，不自动补全")


class PortfolioRequest(BaseModel):
    positions: list[PositionIn] = []
    tag_names: Optional[dict[str, str]] = Field(None, description="tag id -> 标签名；为空时直接使用 tags 中的值")


class SummaryResponse(BaseModel):
    total_market_value: float = 0.0
    total_unrealized_pl: float = 0.0


class SummaryDebugRow(BaseModel):
    symbol: str
    qty: float
    used_price: Optional[float] = None
    subtotal: float = 0.0
    note: str = ""


class SummaryDebugResponse(BaseModel):
    total_market_value: float = 0.0
    rows: list[SummaryDebugRow] = []


class TagSummaryRow(BaseModel):
    tag: str
    total_quantity: float = 0.0
    total_market_value: float = 0.0
    total_unrealized_pl: float = 0.0
    intraday_change_pct: Optional[float] = None
    change_10d_pct: Optional[float] = None
    change_1y_pct: Optional[float] = None


class TimeseriesPoint(BaseModel):
    date: str
    market_value: float = 0.0
    unrealized_pl: float = 0.0


class TagTimeseriesResponse(BaseModel):
    tags: dict[str, list[TimeseriesPoint]] = {}
    total: list[TimeseriesPoint] = []


class EnrichedPosition(BaseModel):
    id: Optional[str] = None
    symbol: str
    quantity: float
    cost_price: float
    is_closed: bool = False
    closing_price: Optional[float] = None
    closing_date: Optional[str] = None
    purchase_date: Optional[str] = None
    tags: list[str] = []
    current_price: float = 0.0
    long_name: Optional[str] = None
    currency: Optional[str] = None
    intraday_change: Optional[float] = None
    intraday_change_pct: Optional[float] = None
    price_10d: Optional[float] = None
    change_10d_pct: Optional[float] = None
    price_1y: Optional[float] = None
    change_1y_pct: Optional[float] = None
    revenue_growth_yoy_pct: Optional[float] = None
    pe_ratio: Optional[float] = None
    peg_ratio: Optional[float] = None
    roe_5y_avg_pct: Optional[float] = None
    quick_ratio: Optional[float] = None
    indicator_disabled: bool = False


def to_documents(request: PortfolioRequest) -> list[dict[str, Any]]:
    return [p.model_dump() for p in request.positions]
