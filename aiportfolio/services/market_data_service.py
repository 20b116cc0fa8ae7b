"""市场数据服务

统一的行情解析入口：
- 多数据源级联：Yahoo chart -> yfinance -> Boursorama -> Stooq；基金代码直接走基金净值页面
- symbol -> 数据源解析记录缓存24小时，下次优先尝试上次成功的数据源
- 行情 / 历史 / 基本面 / 自定义 API 各自独立的 TTL 缓存（失败结果使用短 TTL）
- 限流冷却：主数据源返回 429 后整个 Yahoo 家族冷却，期间直接跳到下一个数据源
- 批量请求有界并发（K 个 worker）
- 所有上游错误在本层消化：单个 symbol 最坏结果是空数据，不影响同批其他 symbol
"""

import logging
import re
import time
from datetime import date
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import httpx
import pandas as pd

from aiportfolio.core.cache import TTLCache
from aiportfolio.core.config import settings
from aiportfolio.core.http import InflightRequests, ProviderError, RateLimitedError, make_http_client
from aiportfolio.models.market import (
    HistoryPoint,
    PriceEntry,
    Provider,
    ResolutionRecord,
    reference_price_10d,
    reference_price_1y,
)
from aiportfolio.models.position import Position
from aiportfolio.providers.base import QuoteAdapter
from aiportfolio.providers.boursorama import BoursoramaAdapter
from aiportfolio.providers.custom_api import CustomApiClient
from aiportfolio.providers.fund_page import FundPageAdapter
from aiportfolio.providers.fundamentals import FundamentalsClient, FundamentalsSnapshot
from aiportfolio.providers.stooq import StooqAdapter
from aiportfolio.providers.symbols import fund_page_id, is_fund_identifier
from aiportfolio.providers.yahoo_chart import YahooChartAdapter
from aiportfolio.providers.yfinance_adapter import YFinanceAdapter
from aiportfolio.services.api_monitoring_service import APIMonitoringService, APIProvider
from aiportfolio.services.concurrency import map_with_concurrency

logger = logging.getLogger(__name__)

DEFAULT_PERIOD = "6mo"
REFERENCE_PERIOD = "1y"

_PERIOD_RE = re.compile(r"^(\d+)\s*(d|wk|w|mo|y)$")


def parse_period(period: Optional[str], today: Optional[date] = None) -> Tuple[date, date]:
    """"10d" / "2wk" / "6mo" / "1y" -> (start, end)；无法识别时按 6 个月"""
    end = today or date.today()
    match = _PERIOD_RE.match((period or "").strip().lower())
    count, unit = (int(match.group(1)), match.group(2)) if match else (6, "mo")
    if count <= 0:
        count, unit = 6, "mo"

    anchor = pd.Timestamp(end)
    if unit == "d":
        start = anchor - pd.DateOffset(days=count)
    elif unit in ("w", "wk"):
        start = anchor - pd.DateOffset(weeks=count)
    elif unit == "mo":
        start = anchor - pd.DateOffset(months=count)
    else:
        start = anchor - pd.DateOffset(years=count)
    return start.date(), end


def unique_upper_symbols(symbols: Iterable[Any]) -> List[str]:
    seen: Dict[str, None] = {}
    for symbol in symbols or []:
        text = str(symbol or "").strip().upper()
        if text:
            seen.setdefault(text, None)
    return list(seen)


class MarketDataService:
    """行情解析引擎（缓存、解析记录、限流冷却、in-flight 去重都由实例持有）"""

    QUOTE_ORDER = (Provider.PRIMARY, Provider.SECONDARY, Provider.EXCHANGE, Provider.CSV)
    HISTORY_ORDER = (Provider.PRIMARY, Provider.SECONDARY, Provider.EXCHANGE, Provider.CSV)

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        adapters: Optional[Dict[Provider, QuoteAdapter]] = None,
        monitor: Optional[APIMonitoringService] = None,
        clock: Callable[[], float] = time.monotonic,
        concurrency: Optional[int] = None,
    ):
        self._owns_client = http_client is None
        self._client = http_client or make_http_client()
        self.monitor = monitor or APIMonitoringService()
        self.inflight = InflightRequests()
        self.concurrency = max(1, concurrency or settings.EXTERNAL_API_CONCURRENCY)

        self.quote_cache = TTLCache(settings.QUOTE_CACHE_TTL_SECONDS, clock, settings.CACHE_MAX_ENTRIES)
        self.history_cache = TTLCache(settings.HISTORY_CACHE_TTL_SECONDS, clock, settings.HISTORY_CACHE_MAX_ENTRIES)
        self.resolution_cache = TTLCache(settings.RESOLUTION_CACHE_TTL_SECONDS, clock, settings.CACHE_MAX_ENTRIES)
        self.fundamentals_cache = TTLCache(settings.FUNDAMENTALS_CACHE_TTL_SECONDS, clock, settings.CACHE_MAX_ENTRIES)
        self.custom_cache = TTLCache(settings.CUSTOM_API_CACHE_TTL_SECONDS, clock, settings.CACHE_MAX_ENTRIES)

        self.adapters: Dict[Provider, QuoteAdapter] = adapters if adapters is not None else self._default_adapters()
        self.fundamentals = FundamentalsClient(self._client, self.inflight)
        self.custom_api = CustomApiClient(
            self._client, cache=self.custom_cache, inflight=self.inflight, monitor=self.monitor
        )

    def _default_adapters(self) -> Dict[Provider, QuoteAdapter]:
        return {
            Provider.PRIMARY: YahooChartAdapter(self._client, self.inflight),
            Provider.SECONDARY: YFinanceAdapter(self._client, self.inflight),
            Provider.EXCHANGE: BoursoramaAdapter(self._client, self.inflight),
            Provider.CSV: StooqAdapter(self._client, self.inflight),
            Provider.FUND: FundPageAdapter(self._client, self.inflight),
        }

    # ------------------------------------------------------------------
    # 数据源调用（冷却检查 + 调用统计 + 错误归一）
    # ------------------------------------------------------------------

    async def _call_adapter(self, adapter: QuoteAdapter, endpoint: str, call: Callable[[], Awaitable[Any]]) -> Any:
        api_provider = adapter.api_provider
        gate = self.monitor.can_call_provider(api_provider)
        if not gate["can_call"]:
            logger.debug(f"[MarketData] Skip {api_provider.value} due to cooldown: {gate['reason']}")
            return None

        start_time = time.time()
        error_msg = None
        rate_limited = False
        result = None
        try:
            result = await call()
        except RateLimitedError as e:
            error_msg, rate_limited = str(e), True
            logger.info(f"[MarketData] {api_provider.value} rate limit for {endpoint}: {error_msg}")
        except ProviderError as e:
            error_msg = str(e)
            logger.debug(f"[MarketData] {api_provider.value} failed for {endpoint}: {error_msg}")
        except Exception as e:
            error_msg = f"{type(e).__name__}: {e}"
            logger.warning(f"[MarketData] {api_provider.value} unexpected error for {endpoint}: {error_msg}")

        self.monitor.record_api_call(
            provider=api_provider,
            endpoint=endpoint,
            success=error_msg is None,
            response_time_ms=(time.time() - start_time) * 1000,
            error_message=error_msg,
            rate_limited=rate_limited,
        )
        return result

    def _attempts(self, symbol: str, order: Sequence[Provider], capability: str) -> List[Tuple[QuoteAdapter, str]]:
        """解析记录（如有）排在最前，其余按级联顺序展开候选 id"""
        attempts: List[Tuple[QuoteAdapter, str]] = []
        seen = set()

        def _add(provider: Provider, provider_symbol_id: str) -> None:
            adapter = self.adapters.get(provider)
            if adapter is None or not getattr(adapter, capability):
                return
            if (provider, provider_symbol_id) in seen:
                return
            seen.add((provider, provider_symbol_id))
            attempts.append((adapter, provider_symbol_id))

        record = self.resolution_cache.get(self._resolution_key(symbol))
        if record is not None:
            _add(record.provider, record.provider_symbol_id)
        for provider in order:
            adapter = self.adapters.get(provider)
            if adapter is None:
                continue
            for candidate in adapter.candidate_ids(symbol):
                _add(provider, candidate)
        return attempts

    @staticmethod
    def _resolution_key(symbol: str) -> str:
        return f"resolution:{symbol}"

    def get_resolution(self, symbol: str) -> Optional[ResolutionRecord]:
        return self.resolution_cache.get(self._resolution_key(symbol.strip().upper()))

    # ------------------------------------------------------------------
    # 行情
    # ------------------------------------------------------------------

    async def resolve_price(self, symbol: str) -> PriceEntry:
        upper = (symbol or "").strip().upper()
        if not upper:
            return PriceEntry.empty()

        key = f"quote:{upper}"
        cached = self.quote_cache.get(key)
        if cached is not None:
            return cached
        return await self.inflight.run(key, lambda: self._resolve_price_uncached(upper, key))

    async def _resolve_price_uncached(self, upper: str, key: str) -> PriceEntry:
        if is_fund_identifier(upper):
            entry = await self._resolve_fund_quote(upper)
        else:
            entry = await self._resolve_quote_cascade(upper)

        if entry is None:
            logger.info(f"[MarketData] No quote for {upper} from any provider")
            entry = PriceEntry.empty()
            self.quote_cache.set(key, entry, ttl_override=settings.QUOTE_FAILURE_TTL_SECONDS)
            return entry

        entry = await self._with_references(upper, entry)
        self.quote_cache.set(key, entry)
        return entry

    async def _resolve_quote_cascade(self, upper: str) -> Optional[PriceEntry]:
        for adapter, provider_symbol_id in self._attempts(upper, self.QUOTE_ORDER, "supports_quote"):
            entry = await self._call_adapter(
                adapter, f"quote:{provider_symbol_id}", lambda: adapter.fetch_quote(provider_symbol_id)
            )
            if entry is not None and entry.current is not None:
                self.resolution_cache.set(
                    self._resolution_key(upper), ResolutionRecord(adapter.provider, provider_symbol_id)
                )
                logger.debug(f"[MarketData] {upper} resolved via {adapter.provider.value}:{provider_symbol_id}")
                return entry
        return None

    async def _resolve_fund_quote(self, upper: str) -> Optional[PriceEntry]:
        adapter = self.adapters.get(Provider.FUND)
        if adapter is None:
            return None
        fund_id = fund_page_id(upper)
        entry = await self._call_adapter(adapter, f"fund:{fund_id}", lambda: adapter.fetch_quote(fund_id))
        if entry is None or entry.current is None:
            return None
        return entry

    async def _with_references(self, upper: str, entry: PriceEntry) -> PriceEntry:
        """10日 / 1年参考价从约一年的日线回填"""
        if entry.price_10d is not None or entry.price_1y is not None:
            return entry
        points = await self.resolve_history(upper, REFERENCE_PERIOD, "1d")
        return entry.with_references(reference_price_10d(points), reference_price_1y(points))

    async def resolve_prices(self, symbols: Iterable[str]) -> Dict[str, PriceEntry]:
        """批量行情：去重、大写，K 个 worker 并发，单个失败得到空哨兵"""
        unique = unique_upper_symbols(symbols)

        async def _one(symbol: str) -> PriceEntry:
            try:
                return await self.resolve_price(symbol)
            except Exception:
                logger.exception(f"[MarketData] resolve_price crashed for {symbol}")
                return PriceEntry.empty()

        entries = await map_with_concurrency(unique, self.concurrency, _one)
        return dict(zip(unique, entries))

    # ------------------------------------------------------------------
    # 历史K线
    # ------------------------------------------------------------------

    async def resolve_history(
        self,
        symbol: str,
        period: Optional[str] = DEFAULT_PERIOD,
        interval: str = "1d",
    ) -> List[HistoryPoint]:
        upper = (symbol or "").strip().upper()
        if not upper:
            return []
        interval = (interval or "1d").strip().lower()
        start, end = parse_period(period)

        # 按解析后的日期区间作 key："6mo" 与无法识别的 period 共用同一条目
        key = f"history:{upper}:{start.isoformat()}:{end.isoformat()}:{interval}"
        cached = self.history_cache.get(key)
        if cached is not None:
            return cached
        return await self.inflight.run(key, lambda: self._resolve_history_uncached(upper, start, end, interval, key))

    async def _resolve_history_uncached(
        self, upper: str, start: date, end: date, interval: str, key: str
    ) -> List[HistoryPoint]:
        for adapter, provider_symbol_id in self._attempts(upper, self.HISTORY_ORDER, "supports_history"):
            if interval not in adapter.supported_intervals:
                continue
            points = await self._call_adapter(
                adapter,
                f"history:{provider_symbol_id}",
                lambda: adapter.fetch_history(provider_symbol_id, start, end, interval),
            )
            if points:
                resolution_key = self._resolution_key(upper)
                if self.resolution_cache.get(resolution_key) is None:
                    self.resolution_cache.set(resolution_key, ResolutionRecord(adapter.provider, provider_symbol_id))
                self.history_cache.set(key, points)
                return points

        logger.info(f"[MarketData] No history for {upper} ({start}..{end}, {interval})")
        self.history_cache.set(key, [], ttl_override=settings.QUOTE_FAILURE_TTL_SECONDS)
        return []

    async def resolve_histories(
        self,
        symbols: Iterable[str],
        period: Optional[str] = DEFAULT_PERIOD,
        interval: str = "1d",
    ) -> Dict[str, List[HistoryPoint]]:
        unique = unique_upper_symbols(symbols)

        async def _one(symbol: str) -> List[HistoryPoint]:
            try:
                return await self.resolve_history(symbol, period, interval)
            except Exception:
                logger.exception(f"[MarketData] resolve_history crashed for {symbol}")
                return []

        series = await map_with_concurrency(unique, self.concurrency, _one)
        return dict(zip(unique, series))

    # ------------------------------------------------------------------
    # 基本面
    # ------------------------------------------------------------------

    async def get_fundamentals(self, symbol: str) -> Optional[FundamentalsSnapshot]:
        """基本面快照，缓存24小时；任何失败返回 None（不缓存）"""
        upper = (symbol or "").strip().upper()
        if not upper:
            return None
        cached = self.fundamentals_cache.get(upper)
        if cached is not None:
            return cached

        gate = self.monitor.can_call_provider(APIProvider.YAHOO_FUNDAMENTALS)
        if not gate["can_call"]:
            logger.debug(f"[MarketData] Skip fundamentals for {upper}: {gate['reason']}")
            return None

        async def _load() -> Optional[FundamentalsSnapshot]:
            start_time = time.time()
            try:
                snapshot = await self.fundamentals.fetch_snapshot(upper)
            except ProviderError as e:
                logger.info(f"[MarketData] Fundamentals failed for {upper}: {e}")
                self.monitor.record_api_call(
                    provider=APIProvider.YAHOO_FUNDAMENTALS,
                    endpoint=f"fundamentals:{upper}",
                    success=False,
                    response_time_ms=(time.time() - start_time) * 1000,
                    error_message=str(e),
                    rate_limited=isinstance(e, RateLimitedError),
                )
                return None
            self.monitor.record_api_call(
                provider=APIProvider.YAHOO_FUNDAMENTALS,
                endpoint=f"fundamentals:{upper}",
                success=True,
                response_time_ms=(time.time() - start_time) * 1000,
            )
            self.fundamentals_cache.set(upper, snapshot)
            return snapshot

        return await self.inflight.run(f"fundamentals:{upper}", _load)

    async def refresh_fundamentals(self, symbols: Iterable[str]) -> Dict[str, Optional[FundamentalsSnapshot]]:
        """批量刷新基本面（并发 3），单个失败为 None"""
        unique = unique_upper_symbols(symbols)

        async def _one(symbol: str) -> Optional[FundamentalsSnapshot]:
            try:
                return await self.get_fundamentals(symbol)
            except Exception:
                logger.exception(f"[MarketData] get_fundamentals crashed for {symbol}")
                return None

        snapshots = await map_with_concurrency(unique, settings.FUNDAMENTALS_CONCURRENCY, _one)
        return dict(zip(unique, snapshots))

    # ------------------------------------------------------------------
    # 自定义 API
    # ------------------------------------------------------------------

    async def get_custom_prices_for_positions(self, positions: Sequence[Position]) -> Dict[str, PriceEntry]:
        """带 api_url 的持仓 -> {position id: PriceEntry}"""
        items = [p for p in positions if p.api_url and p.id]

        async def _one(position: Position) -> PriceEntry:
            try:
                return await self.custom_api.price_entry_for(position.api_url, position.api_token)
            except Exception:
                logger.exception(f"[MarketData] custom API crashed for position {position.id}")
                return PriceEntry.empty()

        entries = await map_with_concurrency(items, self.concurrency, _one)
        return {position.id: entry for position, entry in zip(items, entries)}

    # ------------------------------------------------------------------
    # 运维
    # ------------------------------------------------------------------

    def clear_all(self) -> None:
        """清空所有缓存、解析记录、in-flight 记录，并解除限流冷却"""
        for cache in (
            self.quote_cache,
            self.history_cache,
            self.resolution_cache,
            self.fundamentals_cache,
            self.custom_cache,
        ):
            cache.clear()
        self.inflight.clear()
        self.monitor.reset()
        logger.info("[MarketData] All caches and cooldowns cleared")

    def get_monitoring(self) -> Dict[str, Any]:
        return {
            "providers": self.monitor.get_all_api_stats(),
            "cache_sizes": {
                "quotes": len(self.quote_cache),
                "history": len(self.history_cache),
                "resolution": len(self.resolution_cache),
                "fundamentals": len(self.fundamentals_cache),
                "custom_api": len(self.custom_cache),
            },
            "inflight": self.inflight.pending(),
        }

    async def aclose(self) -> None:
        for adapter in self.adapters.values():
            shutdown = getattr(adapter, "shutdown", None)
            if callable(shutdown):
                shutdown()
        if self._owns_client:
            await self._client.aclose()
