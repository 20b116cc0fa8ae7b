"""基本面时间序列（Yahoo fundamentals-timeseries）

只取年度指标，计算：
- 近5年营收同比增速最小值 / 最新同比增速
- 最新摊薄EPS、近4个EPS点的复合增长率
- 近5年平均ROE
- 最新速动比率
"""

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx

from aiportfolio.core.config import settings
from aiportfolio.core.http import InflightRequests, fetch_json
from aiportfolio.models.market import safe_number
from aiportfolio.providers.base import extract_path

logger = logging.getLogger(__name__)

FUNDAMENTALS_TYPES = [
    "annualTotalRevenue",
    "annualDilutedEPS",
    "annualNetIncome",
    "annualStockholdersEquity",
    "annualCurrentAssets",
    "annualInventory",
    "annualCurrentLiabilities",
]


@dataclass(frozen=True)
class MetricPoint:
    date: str
    value: float


@dataclass(frozen=True)
class FundamentalsSnapshot:
    revenue_growth_min_yoy_5y_pct: Optional[float] = None
    revenue_growth_latest_yoy_pct: Optional[float] = None
    eps_diluted: Optional[float] = None
    eps_cagr_pct: Optional[float] = None
    roe_5y_avg_pct: Optional[float] = None
    quick_ratio: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def parse_timeseries_response(payload: Any) -> Dict[str, List[MetricPoint]]:
    """{"timeseries": {"result": [{"meta": {"type": ["annualX"]}, "annualX": [...]}]}}"""
    series: Dict[str, List[MetricPoint]] = {}
    results = extract_path(payload, ("timeseries", "result"))
    if not isinstance(results, list):
        return series
    for item in results:
        metric = extract_path(item, ("meta", "type", 0))
        if not isinstance(metric, str) or not metric:
            continue
        points = []
        for entry in item.get(metric) or []:
            if not isinstance(entry, dict):
                continue
            reported = entry.get("reportedValue")
            value = safe_number(reported.get("raw") if isinstance(reported, dict) else reported)
            day = entry.get("asOfDate")
            if not day or value is None:
                continue
            points.append(MetricPoint(date=day, value=value))
        series[metric] = sorted(points, key=lambda p: p.date)
    return series


def take_last(points: Sequence[MetricPoint], count: int) -> List[MetricPoint]:
    if not points:
        return []
    if count <= 0:
        return list(points)
    return list(points[-count:])


def compute_yoy_growth(points: Sequence[MetricPoint]) -> List[MetricPoint]:
    """逐年同比（%），上一年值 <= 0 时跳过"""
    out = []
    for prev, current in zip(points, points[1:]):
        if prev.value <= 0:
            continue
        out.append(MetricPoint(date=current.date, value=((current.value / prev.value) - 1) * 100))
    return out


def compute_cagr_pct(points: Sequence[MetricPoint]) -> Optional[float]:
    if len(points) < 2:
        return None
    first, last = points[0].value, points[-1].value
    if first <= 0 or last <= 0:
        return None
    years = len(points) - 1
    return safe_number(((last / first) ** (1 / years) - 1) * 100)


def compute_mean(values: Sequence[float]) -> Optional[float]:
    if not values:
        return None
    return sum(values) / len(values)


def _by_date(points: Sequence[MetricPoint]) -> Dict[str, float]:
    return {p.date: p.value for p in points}


def compute_roe_series(net_income: Sequence[MetricPoint], equity: Sequence[MetricPoint]) -> List[MetricPoint]:
    income_by_date = _by_date(net_income)
    equity_by_date = _by_date(equity)
    out = []
    for day in sorted(set(income_by_date) & set(equity_by_date)):
        eq = equity_by_date[day]
        if eq == 0:
            continue
        out.append(MetricPoint(date=day, value=income_by_date[day] / eq * 100))
    return out


def compute_latest_quick_ratio(
    current_assets: Sequence[MetricPoint],
    inventory: Sequence[MetricPoint],
    current_liabilities: Sequence[MetricPoint],
) -> Optional[float]:
    """(流动资产 - 存货) / 流动负债，取三项齐全的最新日期"""
    assets = _by_date(current_assets)
    stock = _by_date(inventory)
    liabilities = _by_date(current_liabilities)
    for day in sorted(set(assets) & set(stock) & set(liabilities), reverse=True):
        if liabilities[day] == 0:
            continue
        quick = safe_number((assets[day] - stock[day]) / liabilities[day])
        if quick is not None:
            return quick
    return None


def build_snapshot(series: Dict[str, List[MetricPoint]]) -> FundamentalsSnapshot:
    revenue_growth = compute_yoy_growth(series.get("annualTotalRevenue", []))
    recent_growth = take_last(revenue_growth, 5)

    eps = series.get("annualDilutedEPS", [])
    roe = take_last(compute_roe_series(
        series.get("annualNetIncome", []),
        series.get("annualStockholdersEquity", []),
    ), 5)

    return FundamentalsSnapshot(
        revenue_growth_min_yoy_5y_pct=min(p.value for p in recent_growth) if recent_growth else None,
        revenue_growth_latest_yoy_pct=revenue_growth[-1].value if revenue_growth else None,
        eps_diluted=eps[-1].value if eps else None,
        eps_cagr_pct=compute_cagr_pct(take_last(eps, 4)),
        roe_5y_avg_pct=compute_mean([p.value for p in roe]),
        quick_ratio=compute_latest_quick_ratio(
            series.get("annualCurrentAssets", []),
            series.get("annualInventory", []),
            series.get("annualCurrentLiabilities", []),
        ),
    )


def compute_pe_ratio(price: Any, eps: Any) -> Optional[float]:
    price, eps = safe_number(price), safe_number(eps)
    if price is None or eps is None or eps <= 0:
        return None
    return safe_number(price / eps)


def compute_peg_ratio(pe: Any, growth_pct: Any) -> Optional[float]:
    pe, growth = safe_number(pe), safe_number(growth_pct)
    if pe is None or growth is None or growth <= 0:
        return None
    return safe_number(pe / growth)


class FundamentalsClient:
    """基本面时间序列接口"""

    def __init__(self, client: httpx.AsyncClient, inflight: Optional[InflightRequests] = None):
        self._client = client
        self._inflight = inflight or InflightRequests()

    async def fetch_series(self, symbol: str) -> Dict[str, List[MetricPoint]]:
        url = settings.YAHOO_FUNDAMENTALS_URL.format(symbol=symbol)
        params = {
            "type": ",".join(FUNDAMENTALS_TYPES),
            "period1": 0,
            "period2": int(time.time()),
        }
        key = str(httpx.URL(url, params=params))
        payload = await self._inflight.run(key, lambda: fetch_json(self._client, url, params=params))
        return parse_timeseries_response(payload)

    async def fetch_snapshot(self, symbol: str) -> FundamentalsSnapshot:
        series = await self.fetch_series(symbol)
        logger.debug(f"[Fundamentals] {symbol}: " + ", ".join(f"{k}={len(v)}" for k, v in series.items()))
        return build_snapshot(series)
