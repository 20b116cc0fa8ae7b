"""行情领域模型

PriceEntry / HistoryPoint 为不可变值对象：每次刷新整体替换缓存槽位，不做原地修改。
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence


class Provider(str, Enum):
    """行情数据源（级联顺序见 MarketDataService.QUOTE_ORDER）"""
    PRIMARY = "primary"        # Yahoo chart JSON 接口
    SECONDARY = "secondary"    # yfinance 库
    EXCHANGE = "exchange"      # Boursorama 二级市场行情 + 历史
    CSV = "csv"                # Stooq 日线 CSV
    FUND = "fund"              # 基金净值 HTML 页面
    CUSTOM = "custom"          # 持仓自带的自定义 API


def safe_number(value: Any) -> Optional[float]:
    """转换为有限浮点数，失败返回 None"""
    if value is None or isinstance(value, bool):
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    return num if math.isfinite(num) else None


def pct_change(current: Optional[float], reference: Optional[float]) -> Optional[float]:
    """(current / reference - 1) * 100；参考价为 0 或缺失时返回 None"""
    if current is None or reference is None or reference == 0:
        return None
    return ((current / reference) - 1) * 100


@dataclass(frozen=True)
class HistoryPoint:
    date: str       # YYYY-MM-DD
    close: float

    def to_dict(self) -> Dict[str, Any]:
        return {"date": self.date, "close": self.close}


@dataclass(frozen=True)
class ResolutionRecord:
    provider: Provider
    provider_symbol_id: str


@dataclass(frozen=True)
class PriceEntry:
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
    source: Optional[Provider] = field(default=None, compare=False)

    @classmethod
    def empty(cls) -> "PriceEntry":
        """完全未解析时的哨兵：current=0，其余字段全部为 None"""
        return cls()

    @property
    def is_empty(self) -> bool:
        return self.source is None and all(
            value is None
            for key, value in asdict(self).items()
            if key not in ("current", "source")
        )

    @property
    def has_live_price(self) -> bool:
        return not self.is_empty and self.current is not None

    def with_references(self, price_10d: Optional[float], price_1y: Optional[float]) -> "PriceEntry":
        return replace(
            self,
            price_10d=price_10d,
            change_10d_pct=pct_change(self.current, price_10d),
            price_1y=price_1y,
            change_1y_pct=pct_change(self.current, price_1y),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("source", None)
        return data


def build_price_entry(
    current: Optional[float],
    previous_close: Optional[float],
    *,
    long_name: Optional[str] = None,
    currency: Optional[str] = None,
    source: Optional[Provider] = None,
    price_10d: Optional[float] = None,
    price_1y: Optional[float] = None,
) -> PriceEntry:
    """由当前价和昨收构造 PriceEntry，统一计算 change / change_pct"""
    change = current - previous_close if current is not None and previous_close is not None else None
    change_pct = (
        change / previous_close * 100
        if change is not None and previous_close
        else None
    )
    return PriceEntry(
        current=current,
        previous_close=previous_close,
        change=change,
        change_pct=change_pct,
        long_name=long_name,
        currency=currency,
        price_10d=price_10d,
        change_10d_pct=pct_change(current, price_10d),
        price_1y=price_1y,
        change_1y_pct=pct_change(current, price_1y),
        source=source,
    )


def to_day(value: Any) -> Optional[str]:
    """把日期 / 时间戳（秒）/ ISO 字符串归一化为 YYYY-MM-DD（UTC）"""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(float(value), tz=timezone.utc).date().isoformat()
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return to_day(datetime.fromisoformat(text.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def normalize_daily(ticks: Iterable[tuple]) -> List[HistoryPoint]:
    """
    (时间戳排序键, 日期字符串, 收盘价) -> 每日一条、按日期升序的 HistoryPoint 列表

    同一日多个 tick 时取最新一条。
    """
    by_day: Dict[str, tuple] = {}
    for sort_key, day, close in ticks:
        close = safe_number(close)
        if day is None or close is None:
            continue
        current = by_day.get(day)
        if current is None or sort_key >= current[0]:
            by_day[day] = (sort_key, close)
    return [HistoryPoint(date=day, close=by_day[day][1]) for day in sorted(by_day)]


def reference_price_10d(points: Sequence[HistoryPoint]) -> Optional[float]:
    """最新点往前数第 11 个收盘价；序列不足 11 个时取最早的点"""
    if not points:
        return None
    if len(points) >= 11:
        return points[-11].close
    return points[0].close


def reference_price_1y(points: Sequence[HistoryPoint]) -> Optional[float]:
    """约一年窗口内最早的收盘价"""
    if not points:
        return None
    return points[0].close
