"""行情接口 schemas"""
from typing import Optional

from pydantic import BaseModel


class PriceEntryView(BaseModel):
    current: Optional[float] = 0.0
    previous_close: Optional[float] = None
    change: Optional[float] = None
    change_pct: Optional[float] = None
    long_name: Optional[str] = None
    currency: Optional[str] = None
    price_10d: Optional[float] = None
    change_10d_pct: Optional[float] = None
    price_1y: Optional[float] = None
    change_1y_pct: Optional[float] = None


class HistoryPointView(BaseModel):
    date: str
    close: float


class FundamentalsView(BaseModel):
    symbol: str
    available: bool = False
    revenue_growth_min_yoy_5y_pct: Optional[float] = None
    revenue_growth_latest_yoy_pct: Optional[float] = None
    eps_diluted: Optional[float] = None
    eps_cagr_pct: Optional[float] = None
    roe_5y_avg_pct: Optional[float] = None
    quick_ratio: Optional[float] = None
    current_price: Optional[float] = None
    pe_ratio: Optional[float] = None
    peg_ratio: Optional[float] = None


class ProviderStatsView(BaseModel):
    provider: str
    total_calls: int = 0
    success_calls: int = 0
    error_calls: int = 0
    rate_limited: int = 0
    success_rate: float = 100
    avg_response_time_ms: Optional[float] = None
    last_error: Optional[dict] = None
    can_call: bool = True
    cooldown_until: Optional[str] = None


class MonitoringResponse(BaseModel):
    status: str = "ok"
    providers: list[ProviderStatsView] = []
    cache_sizes: dict[str, int] = {}
    inflight: int = 0
