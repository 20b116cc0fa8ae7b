"""
API调用监控与限流熔断

功能：
1. 跟踪每个外部数据源的调用次数和成功率（进程内）
2. 检测 Rate Limit 错误（HTTP 429 / Too Many Requests）
3. 按数据源“家族”维护冷却时间戳：冷却期内直接跳过该数据源，不发起网络请求
4. 提供手动重置（与缓存清理一起使用）

支持的数据源：
- Yahoo chart 接口 / yfinance / Yahoo 基本面（同属 Yahoo 家族，共用一个冷却）
- Boursorama 行情与基金页面
- Stooq CSV
- 自定义 API
"""

import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from aiportfolio.core.config import settings
from aiportfolio.core.http import is_rate_limit_message

logger = logging.getLogger(__name__)


class APIProvider(str, Enum):
    """外部API提供商"""
    YAHOO_CHART = "YahooChart"              # Yahoo chart JSON 接口（主行情源）
    YAHOO_FINANCE = "YahooFinance"          # yfinance 库
    YAHOO_FUNDAMENTALS = "YahooFundamentals"
    BOURSORAMA = "Boursorama"
    FUND_PAGE = "BoursoramaFund"
    STOOQ = "Stooq"
    CUSTOM_API = "CustomAPI"


# 共享同一上游限流的数据源归为一个家族
PROVIDER_FAMILY = {
    APIProvider.YAHOO_CHART: "yahoo",
    APIProvider.YAHOO_FINANCE: "yahoo",
    APIProvider.YAHOO_FUNDAMENTALS: "yahoo",
    APIProvider.BOURSORAMA: "boursorama",
    APIProvider.FUND_PAGE: "boursorama",
    APIProvider.STOOQ: "stooq",
    APIProvider.CUSTOM_API: "custom",
}

# 只有主行情源的 429 会触发家族冷却；其他数据源的限流仅计数
RATE_LIMIT_TRIP_PROVIDERS = {APIProvider.YAHOO_CHART}


class RateLimitBreaker:
    """单个数据源家族的限流冷却：now < cooldown_until 时视为不可用"""

    def __init__(self, name: str, clock: Callable[[], float] = time.time):
        self.name = name
        self._clock = clock
        self.cooldown_until: float = 0.0
        self.reason: str = ""

    def trip(self, seconds: float, reason: str = "") -> None:
        self.cooldown_until = self._clock() + seconds
        self.reason = reason
        logger.warning(f"[RateLimit] {self.name} tripped for {seconds:.0f}s: {reason}")

    def is_tripped(self) -> bool:
        return self._clock() < self.cooldown_until

    def reset(self) -> None:
        self.cooldown_until = 0.0
        self.reason = ""


class APIMonitoringService:
    """API调用监控服务"""

    def __init__(
        self,
        cooldown_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cooldown_seconds = (
            cooldown_seconds if cooldown_seconds is not None else settings.API_RATE_LIMIT_COOLDOWN_SECONDS
        )
        self._clock = clock
        self._breakers: Dict[str, RateLimitBreaker] = {
            family: RateLimitBreaker(family, clock) for family in set(PROVIDER_FAMILY.values())
        }
        self._stats: Dict[APIProvider, Dict[str, Any]] = {}

    def breaker_for(self, provider: APIProvider) -> RateLimitBreaker:
        return self._breakers[PROVIDER_FAMILY[provider]]

    def record_api_call(
        self,
        provider: APIProvider,
        endpoint: str = "default",
        success: bool = True,
        response_time_ms: Optional[float] = None,
        error_message: Optional[str] = None,
        rate_limited: Optional[bool] = None,
    ) -> None:
        """
        记录API调用

        Args:
            provider: API提供商
            endpoint: 调用的端点/symbol
            success: 是否成功
            response_time_ms: 响应时间（毫秒）
            error_message: 错误信息（如果失败）
            rate_limited: 调用方已确认是否为限流；None 时按错误信息判断
        """
        stats = self._stats.setdefault(provider, {
            "total_calls": 0,
            "success_calls": 0,
            "error_calls": 0,
            "rate_limited": 0,
            "last_error": None,
            "avg_response_time_ms": None,
        })
        stats["total_calls"] += 1
        if success:
            stats["success_calls"] += 1
        else:
            stats["error_calls"] += 1
            if error_message:
                stats["last_error"] = {
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "endpoint": endpoint,
                    "error": error_message,
                }

        if response_time_ms is not None:
            prev = stats["avg_response_time_ms"]
            n = stats["total_calls"]
            stats["avg_response_time_ms"] = response_time_ms if prev is None else prev + (response_time_ms - prev) / n

        if rate_limited is None:
            rate_limited = bool(error_message) and self._is_rate_limit_error(error_message)
        if not success and rate_limited:
            stats["rate_limited"] += 1
            if provider in RATE_LIMIT_TRIP_PROVIDERS:
                self.set_cooldown(provider, self.cooldown_seconds, error_message)

    def can_call_provider(self, provider: APIProvider) -> Dict[str, Any]:
        """检查是否允许调用（考虑冷却）。"""
        breaker = self.breaker_for(provider)
        if breaker.is_tripped():
            return {
                "can_call": False,
                "reason": breaker.reason or "in cooldown",
                "cooldown_until": datetime.fromtimestamp(breaker.cooldown_until, tz=timezone.utc).isoformat(),
            }
        return {"can_call": True, "reason": "", "cooldown_until": None}

    def set_cooldown(self, provider: APIProvider, seconds: float, reason: str = "") -> None:
        """设置某个API的冷却期，避免连续触发限流。"""
        self.breaker_for(provider).trip(seconds, reason or f"{provider.value} rate limited")

    def get_api_stats(self, provider: APIProvider) -> Dict[str, Any]:
        stats = self._stats.get(provider, {})
        total = stats.get("total_calls", 0)
        success = stats.get("success_calls", 0)
        gate = self.can_call_provider(provider)
        return {
            "provider": provider.value,
            "total_calls": total,
            "success_calls": success,
            "error_calls": stats.get("error_calls", 0),
            "rate_limited": stats.get("rate_limited", 0),
            "success_rate": round(success / total * 100, 2) if total > 0 else 100,
            "avg_response_time_ms": stats.get("avg_response_time_ms"),
            "last_error": stats.get("last_error"),
            "can_call": gate["can_call"],
            "cooldown_until": gate["cooldown_until"],
        }

    def get_all_api_stats(self) -> List[Dict[str, Any]]:
        return [self.get_api_stats(provider) for provider in APIProvider]

    def reset(self) -> None:
        """清空统计并解除所有冷却"""
        self._stats.clear()
        for breaker in self._breakers.values():
            breaker.reset()

    @staticmethod
    def _is_rate_limit_error(error_message: str) -> bool:
        return is_rate_limit_message(error_message)
