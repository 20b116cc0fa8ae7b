"""数据源适配器基类

每个适配器声明自己的能力（quote / history）、支持的K线周期，以及
symbol -> 数据源内部 id 的候选生成规则。失败一律抛出 ProviderError，
由 MarketDataService 的级联逻辑捕获并尝试下一个数据源。
"""

from __future__ import annotations

import json
from abc import ABC
from datetime import date
from typing import Any, List, Optional, Sequence, Tuple

import httpx

from aiportfolio.core.http import InflightRequests, ProviderError, fetch_text
from aiportfolio.models.market import HistoryPoint, PriceEntry, Provider, safe_number
from aiportfolio.services.api_monitoring_service import APIProvider

# 提取规则：从 JSON 中取值的一条路径，如 ("meta", "regularMarketPrice")
ExtractionRule = Tuple[Any, ...]


def extract_path(payload: Any, path: ExtractionRule) -> Any:
    node = payload
    for key in path:
        if isinstance(key, int):
            if not isinstance(node, (list, tuple)) or not -len(node) <= key < len(node):
                return None
            node = node[key]
        else:
            if not isinstance(node, dict):
                return None
            node = node.get(key)
        if node is None:
            return None
    return node


def first_number(payload: Any, rules: Sequence[ExtractionRule]) -> Optional[float]:
    """按顺序尝试提取规则，返回第一个有效数值"""
    for rule in rules:
        value = safe_number(extract_path(payload, rule))
        if value is not None:
            return value
    return None


def first_text(payload: Any, rules: Sequence[ExtractionRule]) -> Optional[str]:
    for rule in rules:
        value = extract_path(payload, rule)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


class QuoteAdapter(ABC):
    """行情数据源适配器"""

    provider: Provider
    api_provider: APIProvider
    supports_quote: bool = True
    supports_history: bool = True
    supported_intervals: Tuple[str, ...] = ("1d",)

    def __init__(self, client: httpx.AsyncClient, inflight: Optional[InflightRequests] = None):
        self._client = client
        self._inflight = inflight or InflightRequests()

    def candidate_ids(self, symbol: str) -> List[str]:
        """symbol -> 按顺序尝试的数据源内部 id（可以为空）"""
        return [symbol]

    async def fetch_quote(self, provider_symbol_id: str) -> PriceEntry:
        raise ProviderError(f"{self.provider.value} does not provide quotes")

    async def fetch_history(
        self,
        provider_symbol_id: str,
        start: date,
        end: date,
        interval: str = "1d",
    ) -> List[HistoryPoint]:
        raise ProviderError(f"{self.provider.value} does not provide history")

    def _check_interval(self, interval: str) -> None:
        if interval not in self.supported_intervals:
            raise ProviderError(f"{self.provider.value} does not support interval {interval}")

    async def _get_text(self, url: str, params: Optional[dict] = None, headers: Optional[dict] = None) -> str:
        """GET 请求，相同的最终 URL 并发时合并为一次网络调用"""
        key = str(httpx.URL(url, params=params)) if params else url
        return await self._inflight.run(key, lambda: fetch_text(self._client, url, params=params, headers=headers))

    async def _get_json(self, url: str, params: Optional[dict] = None, headers: Optional[dict] = None) -> Any:
        text = await self._get_text(url, params=params, headers=headers)
        try:
            return json.loads(text)
        except ValueError as e:
            raise ProviderError(f"{self.provider.value}: invalid JSON from {url}") from e
