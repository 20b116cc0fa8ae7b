"""Yahoo chart JSON 接口（主行情源）

同一个接口既提供实时报价（meta 字段）也提供日线历史（timestamp + indicators）。
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List

from aiportfolio.core.config import settings
from aiportfolio.core.http import ProviderError
from aiportfolio.models.market import (
    HistoryPoint,
    PriceEntry,
    Provider,
    build_price_entry,
    normalize_daily,
    safe_number,
    to_day,
)
from aiportfolio.providers.base import QuoteAdapter, extract_path, first_number, first_text
from aiportfolio.services.api_monitoring_service import APIProvider

logger = logging.getLogger(__name__)

CURRENT_PRICE_RULES = [
    ("meta", "regularMarketPrice"),
    ("meta", "postMarketPrice"),
]

# range=1d 时 chartPreviousClose 即上一交易日收盘价
PREVIOUS_CLOSE_RULES = [
    ("meta", "regularMarketPreviousClose"),
    ("meta", "previousClose"),
    ("meta", "chartPreviousClose"),
]

NAME_RULES = [("meta", "longName"), ("meta", "shortName")]


def _chart_result(payload: Any) -> Dict[str, Any]:
    error = extract_path(payload, ("chart", "error"))
    if error:
        description = error.get("description") if isinstance(error, dict) else error
        raise ProviderError(f"yahoo chart error: {description}")
    result = extract_path(payload, ("chart", "result", 0))
    if not isinstance(result, dict):
        raise ProviderError("yahoo chart: empty result")
    return result


def parse_chart_quote(payload: Any) -> PriceEntry:
    result = _chart_result(payload)
    current = first_number(result, CURRENT_PRICE_RULES)
    if current is None:
        raise ProviderError("yahoo chart: missing regularMarketPrice")
    return build_price_entry(
        current,
        first_number(result, PREVIOUS_CLOSE_RULES),
        long_name=first_text(result, NAME_RULES),
        currency=first_text(result, [("meta", "currency")]),
        source=Provider.PRIMARY,
    )


def parse_chart_history(payload: Any) -> List[HistoryPoint]:
    """timestamp[] + 收盘价序列 -> 日线；优先复权收盘价"""
    result = _chart_result(payload)
    timestamps = result.get("timestamp") or []
    closes = extract_path(result, ("indicators", "adjclose", 0, "adjclose"))
    if not closes:
        closes = extract_path(result, ("indicators", "quote", 0, "close")) or []

    # 按交易所本地日期归档
    offset = safe_number(extract_path(result, ("meta", "gmtoffset"))) or 0
    ticks = []
    for ts, close in zip(timestamps, closes):
        ts = safe_number(ts)
        if ts is None:
            continue
        ticks.append((ts, to_day(ts + offset), close))
    return normalize_daily(ticks)


def _epoch(day: date) -> int:
    return int(datetime.combine(day, time.min, tzinfo=timezone.utc).timestamp())


class YahooChartAdapter(QuoteAdapter):
    provider = Provider.PRIMARY
    api_provider = APIProvider.YAHOO_CHART
    supported_intervals = ("1d", "1wk", "1mo")

    def _url(self, symbol: str) -> str:
        return settings.YAHOO_CHART_URL.format(symbol=symbol)

    async def fetch_quote(self, provider_symbol_id: str) -> PriceEntry:
        payload = await self._get_json(self._url(provider_symbol_id), {"range": "1d", "interval": "1d"})
        return parse_chart_quote(payload)

    async def fetch_history(self, provider_symbol_id, start, end, interval="1d") -> List[HistoryPoint]:
        self._check_interval(interval)
        params = {
            "period1": _epoch(start),
            "period2": _epoch(end + timedelta(days=1)),
            "interval": interval,
            "events": "history",
        }
        payload = await self._get_json(self._url(provider_symbol_id), params)
        points = parse_chart_history(payload)
        if not points:
            logger.debug(f"[YahooChart] Empty history for {provider_symbol_id} ({interval})")
        return points
