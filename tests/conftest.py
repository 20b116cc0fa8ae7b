import asyncio
from typing import Callable, Dict, List, Optional

import httpx
import pytest

from aiportfolio.core.http import ProviderError
from aiportfolio.models.market import HistoryPoint, PriceEntry, Provider
from aiportfolio.providers.base import QuoteAdapter
from aiportfolio.providers.symbols import boursorama_candidates, stooq_symbol
from aiportfolio.services.api_monitoring_service import APIMonitoringService, APIProvider
from aiportfolio.services.market_data_service import MarketDataService


class FakeClock:
    """可手动推进的时钟（秒）"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAdapter(QuoteAdapter):
    """按 provider_symbol_id 返回预设行情 / 历史，并记录调用"""

    supported_intervals = ("1d", "1wk", "1mo")

    def __init__(
        self,
        provider: Provider,
        api_provider: APIProvider,
        quotes: Optional[Dict[str, object]] = None,
        histories: Optional[Dict[str, List[HistoryPoint]]] = None,
        candidates: Optional[Callable[[str], List[str]]] = None,
        delay: float = 0.0,
    ):
        super().__init__(client=None)
        self.provider = provider
        self.api_provider = api_provider
        self.quotes = quotes or {}
        self.histories = histories or {}
        self._candidates = candidates
        self.delay = delay
        self.quote_calls: List[str] = []
        self.history_calls: List[str] = []

    def candidate_ids(self, symbol: str) -> List[str]:
        return self._candidates(symbol) if self._candidates else [symbol]

    async def fetch_quote(self, provider_symbol_id: str) -> PriceEntry:
        self.quote_calls.append(provider_symbol_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.quotes.get(provider_symbol_id)
        if isinstance(result, Exception):
            raise result
        if result is None:
            raise ProviderError(f"no quote for {provider_symbol_id}")
        return result

    async def fetch_history(self, provider_symbol_id, start, end, interval="1d") -> List[HistoryPoint]:
        self.history_calls.append(provider_symbol_id)
        result = self.histories.get(provider_symbol_id)
        if isinstance(result, Exception):
            raise result
        if result is None:
            raise ProviderError(f"no history for {provider_symbol_id}")
        return result


def make_points(closes, start_day: int = 1, month: str = "2024-01") -> List[HistoryPoint]:
    return [HistoryPoint(date=f"{month}-{start_day + i:02d}", close=c) for i, c in enumerate(closes)]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_http_client():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, text="not found")

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def build_service(clock, mock_http_client):
    """用 FakeAdapter 构造一个隔离的 MarketDataService"""

    def _build(adapters: Dict[Provider, QuoteAdapter], concurrency: int = 4) -> MarketDataService:
        return MarketDataService(
            http_client=mock_http_client,
            adapters=adapters,
            monitor=APIMonitoringService(clock=clock),
            clock=clock,
            concurrency=concurrency,
        )

    return _build


def make_adapters(primary=None, secondary=None, exchange=None, csv=None, fund=None, primary_history=None):
    adapters = {
        Provider.PRIMARY: FakeAdapter(Provider.PRIMARY, APIProvider.YAHOO_CHART, quotes=primary, histories=primary_history),
        Provider.SECONDARY: FakeAdapter(Provider.SECONDARY, APIProvider.YAHOO_FINANCE, quotes=secondary),
        Provider.EXCHANGE: FakeAdapter(
            Provider.EXCHANGE, APIProvider.BOURSORAMA, quotes=exchange, candidates=boursorama_candidates
        ),
        Provider.CSV: FakeAdapter(Provider.CSV, APIProvider.STOOQ, quotes=csv, candidates=lambda s: [stooq_symbol(s)]),
    }
    if fund is not None:
        fund_adapter = FakeAdapter(Provider.FUND, APIProvider.FUND_PAGE, quotes=fund)
        fund_adapter.supports_history = False
        adapters[Provider.FUND] = fund_adapter
    return adapters
