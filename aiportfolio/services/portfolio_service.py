"""组合聚合服务

输入：持仓记录 + 已解析的行情（按大写 symbol 索引）
输出：组合汇总、标签汇总（加权涨跌幅）、标签 / 总体历史序列、单个持仓的展示字段。

加权涨跌幅 = Σ(现值 - 参考市值) / Σ(参考市值)，只统计参考值非零的持仓，
而不是对各持仓涨跌幅做简单平均。
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from aiportfolio.models.market import HistoryPoint, PriceEntry, pct_change, safe_number
from aiportfolio.models.position import Position, iso_date_only
from aiportfolio.providers.fundamentals import FundamentalsSnapshot, compute_pe_ratio, compute_peg_ratio

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# 展示行上的基本面指标，文档值优先，缺失时由基本面快照补全
INDICATOR_FIELDS = ("revenue_growth_yoy_pct", "pe_ratio", "peg_ratio", "roe_5y_avg_pct", "quick_ratio")


def _one_year_before(now: datetime) -> datetime:
    try:
        return now.replace(year=now.year - 1)
    except ValueError:
        # 2月29日
        return now.replace(year=now.year - 1, day=28)


def coerce_positions(positions: Iterable[Any]) -> List[Position]:
    return [p if isinstance(p, Position) else Position.from_document(p) for p in positions or []]


def missing_indicators(position: Position) -> List[str]:
    """需要自动补全的指标：未禁用、文档中为空、且未被手工覆盖"""
    if position.indicator_disabled:
        return []
    return [
        name for name in INDICATOR_FIELDS
        if getattr(position, name) is None and not position.fundamentals_overrides.get(name)
    ]


def indicators_from_snapshot(snapshot: Optional[FundamentalsSnapshot], price: Optional[float]) -> Dict[str, Optional[float]]:
    """基本面快照 + 实时价 -> 指标；PE = 价格 / 稀释 EPS，PEG = PE / EPS 复合增速"""
    if snapshot is None:
        return dict.fromkeys(INDICATOR_FIELDS)
    pe = compute_pe_ratio(price, snapshot.eps_diluted)
    return {
        "revenue_growth_yoy_pct": snapshot.revenue_growth_latest_yoy_pct,
        "pe_ratio": pe,
        "peg_ratio": compute_peg_ratio(pe, snapshot.eps_cagr_pct),
        "roe_5y_avg_pct": snapshot.roe_5y_avg_pct,
        "quick_ratio": snapshot.quick_ratio,
    }


def effective_price(position: Position, entry: Optional[PriceEntry]) -> float:
    """已平仓且有平仓价时用平仓价，否则用实时价"""
    if position.is_closed and position.closing_price is not None:
        return position.closing_price
    live = entry.current if entry is not None else None
    return safe_number(live) or 0.0


def _live_price(entry: Optional[PriceEntry]) -> Optional[float]:
    if entry is None or not entry.has_live_price:
        return None
    return safe_number(entry.current)


def _intraday_reference(entry: PriceEntry) -> Optional[float]:
    if entry.previous_close is not None:
        return entry.previous_close
    if entry.current is not None and entry.change is not None:
        return entry.current - entry.change
    return None


@dataclass
class TagBucket:
    tag: str
    total_quantity: float = 0.0
    total_market_value: float = 0.0
    total_unrealized_pl: float = 0.0
    intraday_numerator: float = 0.0
    intraday_denominator: float = 0.0
    ten_day_numerator: float = 0.0
    ten_day_denominator: float = 0.0
    one_year_numerator: float = 0.0
    one_year_denominator: float = 0.0

    def add(self, quantity: float, market_value: float, unrealized_pl: float) -> None:
        self.total_quantity += quantity
        self.total_market_value += market_value
        self.total_unrealized_pl += unrealized_pl

    def to_row(self) -> Dict[str, Any]:
        return {
            "tag": self.tag,
            "total_quantity": self.total_quantity,
            "total_market_value": self.total_market_value,
            "total_unrealized_pl": self.total_unrealized_pl,
            "intraday_change_pct": _ratio_pct(self.intraday_numerator, self.intraday_denominator),
            "change_10d_pct": _ratio_pct(self.ten_day_numerator, self.ten_day_denominator),
            "change_1y_pct": _ratio_pct(self.one_year_numerator, self.one_year_denominator),
        }


def _ratio_pct(numerator: float, denominator: float) -> Optional[float]:
    return numerator / denominator * 100 if denominator else None


class PortfolioService:
    """组合聚合（纯计算）；传入 market_data 时可直接从持仓拉取行情"""

    def __init__(self, market_data=None, now: Callable[[], datetime] = _utcnow):
        self.market_data = market_data
        self._now = now

    def _tag_names_for(self, position: Position, tag_names: Optional[Mapping[str, str]]) -> List[str]:
        if tag_names is None:
            return [t for t in position.tags if t]
        return [tag_names[t] for t in position.tags if tag_names.get(t)]

    # ------------------------------------------------------------------
    # 汇总
    # ------------------------------------------------------------------

    def compute_summary(self, positions: Iterable[Any], prices: Mapping[str, PriceEntry]) -> Dict[str, float]:
        """未平仓持仓的总市值与浮动盈亏；行情完全缺失的持仓直接跳过"""
        total_market_value = 0.0
        total_unrealized_pl = 0.0
        for position in coerce_positions(positions):
            if position.is_closed:
                continue
            current = _live_price(prices.get(position.symbol))
            if current is None:
                continue
            total_market_value += current * position.quantity
            total_unrealized_pl += (current - position.cost_price) * position.quantity
        return {
            "total_market_value": total_market_value,
            "total_unrealized_pl": total_unrealized_pl,
        }

    def compute_summary_debug(self, positions: Iterable[Any], prices: Mapping[str, PriceEntry]) -> Dict[str, Any]:
        total = 0.0
        rows = []
        for position in coerce_positions(positions):
            if position.is_closed:
                continue
            current = _live_price(prices.get(position.symbol))
            if current is None:
                rows.append({
                    "symbol": position.symbol,
                    "qty": position.quantity,
                    "used_price": None,
                    "subtotal": 0.0,
                    "note": "missing live price",
                })
                continue
            subtotal = current * position.quantity
            total += subtotal
            rows.append({
                "symbol": position.symbol,
                "qty": position.quantity,
                "used_price": current,
                "subtotal": subtotal,
                "note": "",
            })
        return {"total_market_value": total, "rows": rows}

    def compute_tag_summary(
        self,
        positions: Iterable[Any],
        prices: Mapping[str, PriceEntry],
        tag_names: Optional[Mapping[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        one_year_ago = _one_year_before(self._now())
        buckets: Dict[str, TagBucket] = {}

        for position in coerce_positions(positions):
            if position.is_closed:
                continue
            entry = prices.get(position.symbol)
            current = _live_price(entry)
            if current is None:
                continue

            qty = position.quantity
            mv_now = current * qty
            reference = _intraday_reference(entry)
            mv_prev = reference * qty if reference is not None else None
            mv_10d = entry.price_10d * qty if entry.price_10d is not None else None

            opened_at = position.opened_at
            base_1y = position.cost_price if opened_at and opened_at > one_year_ago else entry.price_1y
            mv_1y = base_1y * qty if base_1y is not None else None
            pl = (current - position.cost_price) * qty

            for name in self._tag_names_for(position, tag_names):
                bucket = buckets.setdefault(name, TagBucket(tag=name))
                bucket.add(qty, mv_now, pl)
                if mv_prev:
                    bucket.intraday_denominator += mv_prev
                    bucket.intraday_numerator += mv_now - mv_prev
                if mv_10d:
                    bucket.ten_day_denominator += mv_10d
                    bucket.ten_day_numerator += mv_now - mv_10d
                if mv_1y:
                    bucket.one_year_denominator += mv_1y
                    bucket.one_year_numerator += mv_now - mv_1y

        return [bucket.to_row() for bucket in buckets.values()]

    # ------------------------------------------------------------------
    # 历史序列
    # ------------------------------------------------------------------

    def compute_tag_timeseries(
        self,
        positions: Iterable[Any],
        histories: Mapping[str, Sequence[HistoryPoint]],
        tag_names: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, Any]:
        """每日市值 = 收盘价 × 数量；买入日之前的点不计入"""
        tag_series: Dict[str, Dict[str, Dict[str, Any]]] = {}
        total_series: Dict[str, Dict[str, Any]] = {}

        for position in coerce_positions(positions):
            if position.is_closed:
                continue
            history = histories.get(position.symbol) or []
            qty = position.quantity
            if not history or qty == 0:
                continue
            cutoff = iso_date_only(position.opened_at)
            names = self._tag_names_for(position, tag_names)

            for point in history:
                if not point.date or point.close is None:
                    continue
                if cutoff and point.date < cutoff:
                    continue
                mv = point.close * qty
                pl = (point.close - position.cost_price) * qty
                for series in [total_series] + [tag_series.setdefault(name, {}) for name in names]:
                    slot = series.setdefault(point.date, {"date": point.date, "market_value": 0.0, "unrealized_pl": 0.0})
                    slot["market_value"] += mv
                    slot["unrealized_pl"] += pl

        return {
            "tags": {name: [series[d] for d in sorted(series)] for name, series in tag_series.items()},
            "total": [total_series[d] for d in sorted(total_series)],
        }

    # ------------------------------------------------------------------
    # 单个持仓展示字段
    # ------------------------------------------------------------------

    def enrich_position(
        self,
        position: Position,
        entry: Optional[PriceEntry],
        tag_names: Optional[Mapping[str, str]] = None,
        fundamentals: Optional[FundamentalsSnapshot] = None,
    ) -> Dict[str, Any]:
        now = self._now()
        entry = entry or PriceEntry.empty()
        one_year_ago = _one_year_before(now)
        closing_date = (position.closing_date or position.updated_at) if position.is_closed else None

        end = position.closing_price if position.is_closed else _live_price(entry)

        prev = entry.previous_close if entry.previous_close else None
        if not position.is_closed and prev is None and end is not None and entry.change is not None:
            derived = end - entry.change
            prev = derived if derived != 0 else None

        ten_base = entry.price_10d if entry.price_10d else None
        intraday_allowed = not position.is_closed or (
            closing_date is not None and iso_date_only(closing_date) == iso_date_only(now)
        )
        intraday_change = end - prev if intraday_allowed and end is not None and prev is not None else None
        intraday_pct = pct_change(end, prev) if intraday_allowed else None

        price_1y_base = None
        if end:
            opened_at = position.opened_at
            if opened_at and opened_at > one_year_ago and position.cost_price:
                price_1y_base = position.cost_price
            elif entry.price_1y:
                price_1y_base = entry.price_1y

        row = {
            "id": position.id,
            "symbol": position.symbol,
            "quantity": position.quantity,
            "cost_price": position.cost_price,
            "is_closed": position.is_closed,
            "closing_price": position.closing_price,
            "closing_date": closing_date.isoformat() if closing_date else None,
            "purchase_date": position.purchase_date.isoformat() if position.purchase_date else None,
            "tags": self._tag_names_for(position, tag_names),
            "current_price": effective_price(position, entry),
            "long_name": entry.long_name,
            "currency": entry.currency,
            "intraday_change": intraday_change,
            "intraday_change_pct": intraday_pct,
            "price_10d": ten_base,
            "change_10d_pct": pct_change(end, ten_base),
            "price_1y": price_1y_base,
            "change_1y_pct": pct_change(end, price_1y_base),
            "indicator_disabled": position.indicator_disabled,
        }
        row.update({name: getattr(position, name) for name in INDICATOR_FIELDS})
        missing = missing_indicators(position)
        if missing:
            computed = indicators_from_snapshot(fundamentals, _live_price(entry))
            for name in missing:
                row[name] = computed[name]
        return row

    # ------------------------------------------------------------------
    # 带行情拉取的入口（供路由使用）
    # ------------------------------------------------------------------

    async def prices_for(self, positions: Sequence[Position]) -> Dict[str, PriceEntry]:
        """普通持仓按 symbol 走行情级联；带 api_url 的持仓使用自定义 API，结果按 symbol 覆盖"""
        if self.market_data is None:
            raise RuntimeError("PortfolioService was created without a MarketDataService")
        custom = [p for p in positions if p.api_url and p.id]
        symbols = [p.symbol for p in positions if not (p.api_url and p.id)]
        prices = dict(await self.market_data.resolve_prices(symbols))
        if custom:
            by_id = await self.market_data.get_custom_prices_for_positions(custom)
            for position in custom:
                entry = by_id.get(position.id)
                if entry is None or not position.symbol:
                    continue
                if entry.has_live_price:
                    prices[position.symbol] = entry
                else:
                    prices.setdefault(position.symbol, entry)
        return prices

    async def summary(self, positions: Iterable[Any]) -> Dict[str, float]:
        positions = coerce_positions(positions)
        return self.compute_summary(positions, await self.prices_for(positions))

    async def summary_debug(self, positions: Iterable[Any]) -> Dict[str, Any]:
        positions = coerce_positions(positions)
        return self.compute_summary_debug(positions, await self.prices_for(positions))

    async def tag_summary(self, positions: Iterable[Any], tag_names=None) -> List[Dict[str, Any]]:
        positions = coerce_positions(positions)
        return self.compute_tag_summary(positions, await self.prices_for(positions), tag_names)

    async def tag_timeseries(self, positions: Iterable[Any], tag_names=None, period="6mo", interval="1d") -> Dict[str, Any]:
        if self.market_data is None:
            raise RuntimeError("PortfolioService was created without a MarketDataService")
        open_positions = [p for p in coerce_positions(positions) if not p.is_closed]
        if not open_positions:
            return {"tags": {}, "total": []}
        histories = await self.market_data.resolve_histories([p.symbol for p in open_positions], period, interval)
        missing = sorted({p.symbol for p in open_positions if not histories.get(p.symbol)})
        if missing:
            logger.info(f"[Portfolio] No history for {missing}, excluded from time series")
        return self.compute_tag_timeseries(open_positions, histories, tag_names)

    async def enriched(self, positions: Iterable[Any], tag_names=None) -> List[Dict[str, Any]]:
        positions = coerce_positions(positions)
        prices = await self.prices_for(positions)
        wanted = [p.symbol for p in positions if p.symbol and missing_indicators(p)]
        fundamentals = await self.market_data.refresh_fundamentals(wanted) if wanted else {}
        return [
            self.enrich_position(p, prices.get(p.symbol), tag_names, fundamentals.get(p.symbol))
            for p in positions
        ]
