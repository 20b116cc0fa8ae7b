"""基金净值页面（Boursorama OPCVM HTML）

页面只给出最新净值和当日涨跌幅：
    <span data-ist-last>123,45</span>
    <span data-ist-variation>+0,52%</span>
昨收由 current / (1 + pct/100) 反推。涨跌幅只保留两位小数，
因此反推的昨收与真实值之间存在舍入误差。
"""

import logging
import re
from typing import List, Optional

from bs4 import BeautifulSoup

from aiportfolio.core.config import settings
from aiportfolio.core.http import ProviderError
from aiportfolio.models.market import PriceEntry, Provider, build_price_entry, safe_number
from aiportfolio.providers.base import QuoteAdapter
from aiportfolio.providers.symbols import fund_page_id, is_fund_identifier
from aiportfolio.services.api_monitoring_service import APIProvider

logger = logging.getLogger(__name__)

_NUMBER_RE = re.compile(r"[-+]?\d+(?:\.\d+)?")


def parse_localized_number(text: Optional[str]) -> Optional[float]:
    """"1 234,56 EUR" / "+0,52%" -> float"""
    if not text:
        return None
    cleaned = re.sub(r"[\s\u00a0\u202f]", "", text).replace(",", ".")
    match = _NUMBER_RE.search(cleaned)
    return safe_number(match.group(0)) if match else None


def derive_previous_close(current: Optional[float], variation_pct: Optional[float]) -> Optional[float]:
    if current is None or variation_pct is None or variation_pct == -100:
        return None
    return current / (1 + variation_pct / 100)


def _attr_or_text(node) -> Optional[str]:
    if node is None:
        return None
    for attr in ("data-ist-last", "data-ist-variation"):
        value = node.get(attr)
        if isinstance(value, str) and value.strip():
            return value
    return node.get_text(strip=True)


def parse_fund_page(html: str) -> PriceEntry:
    soup = BeautifulSoup(html, "html.parser")
    current = parse_localized_number(_attr_or_text(soup.select_one("[data-ist-last]")))
    if current is None:
        raise ProviderError("fund page: missing data-ist-last")
    variation = parse_localized_number(_attr_or_text(soup.select_one("[data-ist-variation]")))

    title = soup.select_one("h1")
    currency_node = soup.select_one("[data-ist-currency]") or soup.select_one(".c-faceplate__price-currency")
    return build_price_entry(
        current,
        derive_previous_close(current, variation),
        long_name=title.get_text(" ", strip=True) if title else None,
        currency=currency_node.get_text(strip=True) if currency_node else None,
        source=Provider.FUND,
    )


class FundPageAdapter(QuoteAdapter):
    provider = Provider.FUND
    api_provider = APIProvider.FUND_PAGE
    supports_history = False

    def candidate_ids(self, symbol: str) -> List[str]:
        return [fund_page_id(symbol)] if is_fund_identifier(symbol) else []

    async def fetch_quote(self, provider_symbol_id: str) -> PriceEntry:
        html = await self._get_text(settings.BOURSORAMA_FUND_URL.format(fund_id=provider_symbol_id))
        entry = parse_fund_page(html)
        logger.debug(f"[FundPage] {provider_symbol_id}: {entry.current} ({entry.change_pct}%)")
        return entry
