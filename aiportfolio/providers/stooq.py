"""Stooq 日线 CSV（最后兜底的行情源）"""

import io
import logging
from datetime import date, timedelta
from typing import List

import pandas as pd

from aiportfolio.core.config import settings
from aiportfolio.core.http import ProviderError
from aiportfolio.models.market import HistoryPoint, PriceEntry, Provider, build_price_entry, safe_number
from aiportfolio.providers.base import QuoteAdapter
from aiportfolio.providers.symbols import stooq_symbol
from aiportfolio.services.api_monitoring_service import APIProvider

logger = logging.getLogger(__name__)

STOOQ_INTERVALS = {"1d": "d", "1wk": "w", "1mo": "m"}


def parse_stooq_csv(text: str) -> List[HistoryPoint]:
    """Date,Open,High,Low,Close,Volume -> 日线；Stooq 对未知代码返回 "No data" """
    if not text or not text.strip() or text.strip().lower().startswith("no data"):
        return []
    try:
        df = pd.read_csv(io.StringIO(text))
    except (ValueError, pd.errors.ParserError) as e:
        raise ProviderError(f"stooq: unreadable CSV ({e})") from e
    if "Date" not in df.columns or "Close" not in df.columns:
        return []

    points = {}
    for day, close in zip(df["Date"], df["Close"]):
        close = safe_number(close)
        if close is None or not isinstance(day, str):
            continue
        points[day.strip()] = close
    return [HistoryPoint(date=day, close=points[day]) for day in sorted(points)]


class StooqAdapter(QuoteAdapter):
    provider = Provider.CSV
    api_provider = APIProvider.STOOQ
    supported_intervals = tuple(STOOQ_INTERVALS)

    def candidate_ids(self, symbol: str) -> List[str]:
        return [stooq_symbol(symbol)]

    async def fetch_history(self, provider_symbol_id, start, end, interval="1d") -> List[HistoryPoint]:
        self._check_interval(interval)
        params = {
            "s": provider_symbol_id,
            "d1": start.strftime("%Y%m%d"),
            "d2": end.strftime("%Y%m%d"),
            "i": STOOQ_INTERVALS[interval],
        }
        points = parse_stooq_csv(await self._get_text(settings.STOOQ_CSV_URL, params))
        if not points:
            logger.debug(f"[Stooq] No bars for {provider_symbol_id} ({params['d1']}-{params['d2']})")
        return points

    async def fetch_quote(self, provider_symbol_id: str) -> PriceEntry:
        """最近两根日线：最后收盘价作为当前价，前一根作为昨收"""
        today = date.today()
        points = await self.fetch_history(provider_symbol_id, today - timedelta(days=14), today)
        if not points:
            raise ProviderError(f"stooq: no data for {provider_symbol_id}")
        previous = points[-2].close if len(points) >= 2 else None
        return build_price_entry(points[-1].close, previous, source=Provider.CSV)
