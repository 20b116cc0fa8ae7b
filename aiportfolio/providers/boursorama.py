"""Boursorama 交易所行情（GetTicksEOD JSON）

返回结构：
    {"d": {"Name": "...", "qd": {"d": 20000, "c": 101.2},
           "QuoteTab": [{"d": 19999, "o": .., "h": .., "l": .., "c": 100.0, "v": ..}, ...]}}
其中 d 为 1970-01-01 起的天数。
"""

import logging
from datetime import date, timedelta
from typing import Any, List, Optional

from aiportfolio.core.config import settings
from aiportfolio.core.http import ProviderError
from aiportfolio.models.market import HistoryPoint, PriceEntry, Provider, build_price_entry, normalize_daily, safe_number
from aiportfolio.providers.base import QuoteAdapter, extract_path, first_text
from aiportfolio.providers.symbols import boursorama_candidates
from aiportfolio.services.api_monitoring_service import APIProvider

logger = logging.getLogger(__name__)

EPOCH = date(1970, 1, 1)
MAX_LENGTH_DAYS = 3650


def day_from_number(value: Any) -> Optional[str]:
    num = safe_number(value)
    if num is None:
        return None
    return (EPOCH + timedelta(days=int(num))).isoformat()


def _quote_tab(payload: Any) -> List[dict]:
    rows = extract_path(payload, ("d", "QuoteTab"))
    if not isinstance(rows, list):
        return []
    return [row for row in rows if isinstance(row, dict)]


def parse_ticks_history(payload: Any) -> List[HistoryPoint]:
    ticks = []
    for row in _quote_tab(payload):
        num = safe_number(row.get("d"))
        if num is None:
            continue
        ticks.append((num, day_from_number(num), row.get("c")))
    return normalize_daily(ticks)


def parse_ticks_quote(payload: Any) -> PriceEntry:
    """最新价取 qd.c，缺失时取最后一根日线；昨收取最新交易日之前的最后一根日线"""
    points = parse_ticks_history(payload)
    live = extract_path(payload, ("d", "qd"))
    current = safe_number(live.get("c")) if isinstance(live, dict) else None
    current_day = day_from_number(live.get("d")) if isinstance(live, dict) else None

    if current is None and points:
        current = points[-1].close
        current_day = points[-1].date
    if current is None:
        raise ProviderError("boursorama: no price in payload")
    if current_day is None and points:
        current_day = points[-1].date

    previous = [p for p in points if current_day is None or p.date < current_day]
    previous_close = previous[-1].close if previous else None
    return build_price_entry(
        current,
        previous_close,
        long_name=first_text(payload, [("d", "Name")]),
        currency=first_text(payload, [("d", "Currency")]) or "EUR",
        source=Provider.EXCHANGE,
    )


class BoursoramaAdapter(QuoteAdapter):
    provider = Provider.EXCHANGE
    api_provider = APIProvider.BOURSORAMA

    def candidate_ids(self, symbol: str) -> List[str]:
        return boursorama_candidates(symbol)

    async def _ticks(self, provider_symbol_id: str, length: int) -> Any:
        params = {"symbol": provider_symbol_id, "length": length, "period": 0, "guid": ""}
        payload = await self._get_json(settings.BOURSORAMA_TICKS_URL, params)
        if not isinstance(extract_path(payload, ("d",)), dict):
            raise ProviderError(f"boursorama: unknown symbol {provider_symbol_id}")
        return payload

    async def fetch_quote(self, provider_symbol_id: str) -> PriceEntry:
        return parse_ticks_quote(await self._ticks(provider_symbol_id, 10))

    async def fetch_history(self, provider_symbol_id, start, end, interval="1d") -> List[HistoryPoint]:
        self._check_interval(interval)
        length = min(MAX_LENGTH_DAYS, max(1, (date.today() - start).days + 1))
        points = parse_ticks_history(await self._ticks(provider_symbol_id, length))
        start_day, end_day = start.isoformat(), end.isoformat()
        in_range = [p for p in points if start_day <= p.date <= end_day]
        logger.debug(f"[Boursorama] {provider_symbol_id}: {len(in_range)}/{len(points)} bars in range")
        return in_range
