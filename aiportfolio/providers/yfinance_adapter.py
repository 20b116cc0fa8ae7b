"""yfinance 备用行情源

yfinance 为同步库，统一放到线程池执行，避免阻塞事件循环。
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import List, Optional

import pandas as pd
import yfinance as yf

from aiportfolio.core.config import settings
from aiportfolio.core.http import InflightRequests, ProviderError, RateLimitedError, is_rate_limit_message
from aiportfolio.models.market import HistoryPoint, PriceEntry, Provider, build_price_entry, safe_number
from aiportfolio.providers.base import QuoteAdapter
from aiportfolio.services.api_monitoring_service import APIProvider

logger = logging.getLogger(__name__)


def frame_to_points(df: Optional[pd.DataFrame]) -> List[HistoryPoint]:
    """yfinance DataFrame -> 日线（优先 Adj Close）"""
    if df is None or df.empty:
        return []
    column = "Adj Close" if "Adj Close" in df.columns else "Close"
    if column not in df.columns:
        return []
    series = df[column].dropna()
    points = {}
    for idx, close in series.items():
        close = safe_number(close)
        if close is None:
            continue
        # 同一日保留最后一条
        points[pd.Timestamp(idx).strftime("%Y-%m-%d")] = close
    return [HistoryPoint(date=day, close=points[day]) for day in sorted(points)]


class YFinanceAdapter(QuoteAdapter):
    provider = Provider.SECONDARY
    api_provider = APIProvider.YAHOO_FINANCE
    supported_intervals = ("1d", "1wk", "1mo")

    def __init__(self, client=None, inflight: Optional[InflightRequests] = None, executor: Optional[ThreadPoolExecutor] = None):
        super().__init__(client, inflight)
        self._executor = executor or ThreadPoolExecutor(max_workers=settings.EXTERNAL_API_CONCURRENCY)

    async def _run_in_executor(self, func, *args, **kwargs):
        """线程池执行 yfinance 调用，超过 HTTP_TIMEOUT_SECONDS 视为失败（线程本身无法取消，结果被丢弃）"""
        loop = asyncio.get_running_loop()
        timeout = settings.HTTP_TIMEOUT_SECONDS
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(self._executor, lambda: func(*args, **kwargs)),
                timeout=timeout,
            )
        except ProviderError:
            raise
        except asyncio.TimeoutError as e:
            logger.info(f"[yfinance] {getattr(func, '__name__', func)} timed out after {timeout}s")
            raise ProviderError(f"yfinance timeout after {timeout}s") from e
        except Exception as e:
            error_msg = str(e)
            logger.debug(f"[yfinance] {getattr(func, '__name__', func)} failed: {error_msg}")
            if is_rate_limit_message(error_msg):
                raise RateLimitedError(f"yfinance rate limited: {error_msg}") from e
            raise ProviderError(f"yfinance {type(e).__name__}: {error_msg}") from e

    def _quote_sync(self, symbol: str) -> PriceEntry:
        info = yf.Ticker(symbol).fast_info
        current = safe_number(info.get("lastPrice"))
        if current is None:
            raise ProviderError(f"yfinance: no last price for {symbol}")
        return build_price_entry(
            current,
            safe_number(info.get("previousClose")),
            currency=info.get("currency"),
            source=Provider.SECONDARY,
        )

    def _history_sync(self, symbol: str, start, end, interval: str) -> pd.DataFrame:
        return yf.Ticker(symbol).history(
            start=start.isoformat(),
            end=(end + timedelta(days=1)).isoformat(),
            interval=interval,
            auto_adjust=False,
        )

    async def fetch_quote(self, provider_symbol_id: str) -> PriceEntry:
        return await self._run_in_executor(self._quote_sync, provider_symbol_id)

    async def fetch_history(self, provider_symbol_id, start, end, interval="1d") -> List[HistoryPoint]:
        self._check_interval(interval)
        df = await self._run_in_executor(self._history_sync, provider_symbol_id, start, end, interval)
        return frame_to_points(df)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
