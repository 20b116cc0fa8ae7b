"""持仓自定义 API（策略净值序列）

持仓文档可以携带 api_url / api_token，返回 JSON 时间序列。
价格由序列推导：日线序列决定 10日 / 1年参考价，日内序列决定当前价与昨收。
两条序列都为空时，对 trading-app 的 equity 地址回退到 portfolios 接口读取当前权益。
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import unquote

import httpx

from aiportfolio.core.cache import TTLCache
from aiportfolio.core.config import settings
from aiportfolio.core.http import InflightRequests, ProviderError, fetch_json
from aiportfolio.models.market import PriceEntry, Provider, build_price_entry, safe_number
from aiportfolio.models.position import parse_date_input
from aiportfolio.services.api_monitoring_service import APIMonitoringService, APIProvider

logger = logging.getLogger(__name__)

# 序列数组所在位置，按顺序尝试
SERIES_ARRAY_RULES = (None, "data", "prices", "results")
TIMESTAMP_FIELDS = ("timestamp", "datetime", "date", "t")
VALUE_FIELDS = ("equityValue", "value", "close", "price", "nav")

DAILY_MAX_POINTS = 10_000
INTRADAY_MAX_POINTS = 20_000
INTRADAY_LOOKBACK = timedelta(hours=36)
INTRADAY_LIMIT = 5000

TRADING_APP_EQUITY_PATH_RE = re.compile(r"^/api/strategies/equity/([^/]+)/([^/]+)/?$")


@dataclass(frozen=True)
class SeriesPoint:
    ts: float       # epoch 秒
    value: float

    @property
    def day(self) -> str:
        return datetime.fromtimestamp(self.ts, tz=timezone.utc).date().isoformat()


def build_auth_headers(api_token: Optional[str]) -> Dict[str, str]:
    headers = {"accept": "application/json"}
    token = api_token.strip() if isinstance(api_token, str) else ""
    if token:
        headers["x-auth-token"] = token
        headers["authorization"] = f"Bearer {token}"
    return headers


def extract_point_series(payload: Any) -> List[Any]:
    for key in SERIES_ARRAY_RULES:
        node = payload if key is None else (payload.get(key) if isinstance(payload, dict) else None)
        if isinstance(node, list):
            return node
    return []


def _point_timestamp(entry: Dict[str, Any]) -> Optional[float]:
    for key in TIMESTAMP_FIELDS:
        parsed = parse_date_input(entry.get(key))
        if parsed is not None:
            return parsed.timestamp()
    return None


def _point_value(entry: Dict[str, Any]) -> Optional[float]:
    for key in VALUE_FIELDS:
        value = safe_number(entry.get(key))
        if value is not None:
            return value
    return None


def normalise_point_series(payload: Any, max_points: int = DAILY_MAX_POINTS) -> List[SeriesPoint]:
    points = []
    for entry in extract_point_series(payload):
        if not isinstance(entry, dict):
            continue
        ts, value = _point_timestamp(entry), _point_value(entry)
        if ts is None or value is None:
            continue
        points.append(SeriesPoint(ts=ts, value=value))
    points.sort(key=lambda p: p.ts)
    if max_points > 0 and len(points) > max_points:
        return points[-max_points:]
    return points


def normalise_daily_series(payload: Any) -> List[SeriesPoint]:
    """每个 UTC 日保留最新一条"""
    by_day: Dict[str, SeriesPoint] = {}
    for point in normalise_point_series(payload):
        current = by_day.get(point.day)
        if current is None or point.ts >= current.ts:
            by_day[point.day] = point
    return sorted(by_day.values(), key=lambda p: p.ts)


def find_point_at_or_before(points: Sequence[SeriesPoint], target_ts: float) -> Optional[SeriesPoint]:
    lo, hi = 0, len(points) - 1
    best = None
    while lo <= hi:
        mid = (lo + hi) // 2
        if points[mid].ts <= target_ts:
            best = points[mid]
            lo = mid + 1
        else:
            hi = mid - 1
    return best


def _utc_midnight(now: datetime) -> datetime:
    return now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


def price_entry_from_series(
    daily: Sequence[SeriesPoint],
    intraday: Optional[Sequence[SeriesPoint]] = None,
    currency: str = "USD",
    now: Optional[datetime] = None,
) -> PriceEntry:
    """
    由日线 + 日内序列推导 PriceEntry

    - 当前价：日内序列最后一点，否则日线最后一点
    - 昨收：今日（UTC）第一个日内点；否则日内倒数第二点；只有日线时取日线倒数第二点
    - 10日 / 1年参考价：日线中最后一个不晚于 (最后日期 - 10天 / 365天) 的点
    """
    daily = list(daily or [])
    intraday = list(intraday or [])
    if not daily and not intraday:
        return PriceEntry.empty()

    last = (intraday or daily)[-1]
    today_start = _utc_midnight(now or datetime.now(timezone.utc)).timestamp()

    previous_close = None
    if intraday:
        for point in intraday:
            if point.ts >= today_start:
                previous_close = point.value
                break
        if previous_close is None and len(intraday) >= 2:
            previous_close = intraday[-2].value
    elif len(daily) >= 2:
        previous_close = daily[-2].value

    price_10d = price_1y = None
    if daily:
        anchor = daily[-1].ts
        base_10d = find_point_at_or_before(daily, anchor - timedelta(days=10).total_seconds())
        base_1y = find_point_at_or_before(daily, anchor - timedelta(days=365).total_seconds())
        price_10d = base_10d.value if base_10d else None
        price_1y = base_1y.value if base_1y else None

    return build_price_entry(
        last.value,
        previous_close,
        currency=currency,
        source=Provider.CUSTOM,
        price_10d=price_10d,
        price_1y=price_1y,
    )


def parse_trading_app_equity_url(api_url: Optional[str]) -> Optional[Dict[str, str]]:
    """https://host/api/strategies/equity/{user}/{strategy} -> {origin, user_id, strategy_id}"""
    text = api_url.strip() if isinstance(api_url, str) else ""
    if not text:
        return None
    try:
        url = httpx.URL(text)
    except httpx.InvalidURL:
        return None
    if url.scheme not in ("http", "https"):
        return None
    match = TRADING_APP_EQUITY_PATH_RE.match(url.raw_path.decode("ascii").split("?", 1)[0])
    if not match:
        return None
    origin = f"{url.scheme}://{url.netloc.decode('ascii')}"
    return {"origin": origin, "user_id": match.group(1), "strategy_id": match.group(2)}


def _http_url(api_url: Optional[str]) -> Optional[httpx.URL]:
    text = api_url.strip() if isinstance(api_url, str) else ""
    if not text:
        return None
    try:
        url = httpx.URL(text)
    except httpx.InvalidURL:
        return None
    return url if url.scheme in ("http", "https") else None


class CustomApiClient:
    """自定义 API 序列抓取（15s 缓存 + 按最终 URL 的 in-flight 去重）"""

    def __init__(
        self,
        client: httpx.AsyncClient,
        cache: Optional[TTLCache] = None,
        inflight: Optional[InflightRequests] = None,
        monitor: Optional[APIMonitoringService] = None,
    ):
        self._client = client
        self.cache = cache or TTLCache(settings.CUSTOM_API_CACHE_TTL_SECONDS)
        self._inflight = inflight or InflightRequests()
        self._monitor = monitor

    async def _fetch_cached(self, url: httpx.URL, api_token: Optional[str], parse) -> Any:
        final_url = str(url)
        cached = self.cache.get(final_url)
        if cached is not None:
            return cached

        async def _load():
            start_time = time.time()
            try:
                payload = await fetch_json(self._client, final_url, headers=build_auth_headers(api_token))
            except ProviderError as e:
                logger.info(f"[CustomAPI] {final_url} failed: {e}")
                self._record(final_url, False, start_time, str(e))
                return None
            self._record(final_url, True, start_time)
            value = parse(payload)
            self.cache.set(final_url, value)
            return value

        return await self._inflight.run(f"custom:{final_url}", _load)

    def _record(self, endpoint: str, success: bool, start_time: float, error: Optional[str] = None) -> None:
        if self._monitor is None:
            return
        self._monitor.record_api_call(
            provider=APIProvider.CUSTOM_API,
            endpoint=endpoint,
            success=success,
            response_time_ms=(time.time() - start_time) * 1000,
            error_message=error,
        )

    async def fetch_daily_series(
        self, api_url: Optional[str], api_token: Optional[str] = None, start_date: Optional[datetime] = None
    ) -> List[SeriesPoint]:
        url = _http_url(api_url)
        if url is None:
            return []
        if start_date is not None:
            url = url.copy_set_param("startDate", _iso_ms(start_date))
        return await self._fetch_cached(url, api_token, normalise_daily_series) or []

    async def fetch_intraday_series(
        self,
        api_url: Optional[str],
        api_token: Optional[str] = None,
        start_date: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[SeriesPoint]:
        url = _http_url(api_url)
        if url is None:
            return []
        if start_date is not None:
            url = url.copy_set_param("startDate", _iso_ms(start_date))
        if limit and limit > 0 and "limit" not in url.params:
            url = url.copy_set_param("limit", str(int(limit)))
        return await self._fetch_cached(
            url, api_token, lambda payload: normalise_point_series(payload, INTRADAY_MAX_POINTS)
        ) or []

    async def fetch_portfolio_equity_map(self, origin: str, user_id: str, api_token: Optional[str]) -> Dict[str, float]:
        """trading-app portfolios 接口 -> {strategy_id: currentValue + cashBuffer}"""
        url = httpx.URL(origin).join(f"/api/strategies/portfolios/{user_id}")
        return await self._fetch_cached(url, api_token, parse_portfolio_equity_map) or {}

    async def fetch_trading_app_equity(self, api_url: Optional[str], api_token: Optional[str] = None) -> Optional[float]:
        parsed = parse_trading_app_equity_url(api_url)
        if parsed is None:
            return None
        equity = await self.fetch_portfolio_equity_map(parsed["origin"], parsed["user_id"], api_token)
        strategy_id = parsed["strategy_id"]
        decoded = unquote(strategy_id)
        for candidate in dict.fromkeys([strategy_id, decoded]):
            if candidate in equity:
                return safe_number(equity[candidate])
        return None

    async def price_entry_for(
        self, api_url: Optional[str], api_token: Optional[str] = None, now: Optional[datetime] = None
    ) -> PriceEntry:
        now = now or datetime.now(timezone.utc)
        intraday_start = _utc_midnight(now) - INTRADAY_LOOKBACK
        daily, intraday = await asyncio.gather(
            self.fetch_daily_series(api_url, api_token),
            self.fetch_intraday_series(api_url, api_token, start_date=intraday_start, limit=INTRADAY_LIMIT),
        )

        entry = price_entry_from_series(daily, intraday, now=now)
        if entry.is_empty:
            fallback = await self.fetch_trading_app_equity(api_url, api_token)
            if fallback is not None:
                entry = price_entry_from_series([SeriesPoint(ts=now.timestamp(), value=fallback)], now=now)
        return entry


def parse_portfolio_equity_map(payload: Any) -> Dict[str, float]:
    portfolios = payload.get("portfolios") if isinstance(payload, dict) else None
    out: Dict[str, float] = {}
    for portfolio in portfolios if isinstance(portfolios, list) else []:
        if not isinstance(portfolio, dict):
            continue
        sid = str(portfolio.get("strategy_id") or "").strip()
        current_value = safe_number(portfolio.get("currentValue"))
        if not sid or current_value is None:
            continue
        equity = safe_number(current_value + (safe_number(portfolio.get("cashBuffer")) or 0))
        if equity is not None:
            out[sid] = equity
    return out


def _iso_ms(value: datetime) -> str:
    """2024-01-01T00:00:00.000Z"""
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"
