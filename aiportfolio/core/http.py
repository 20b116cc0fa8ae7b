"""HTTP 工具

- 统一的超时 / User-Agent 配置
- 上游错误归一化为 ProviderError / RateLimitedError
- 按请求 URL 的 in-flight 去重：并发的相同请求共享同一个结果
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from aiportfolio.core.config import settings

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """数据源本地失败（网络、超时、非2xx、解析失败）"""


class RateLimitedError(ProviderError):
    """数据源返回 429 / Too Many Requests"""


def is_rate_limit_message(message: str) -> bool:
    msg = (message or "").lower()
    return "rate limit" in msg or "too many requests" in msg or "429" in msg


def make_http_client(
    timeout: Optional[float] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """创建共享的 httpx.AsyncClient（超时即取消请求）"""
    seconds = timeout if timeout is not None else settings.HTTP_TIMEOUT_SECONDS
    return httpx.AsyncClient(
        timeout=httpx.Timeout(seconds, connect=min(5.0, seconds)),
        headers={
            "user-agent": settings.HTTP_USER_AGENT,
            "accept": "application/json,text/plain,text/html,*/*",
        },
        follow_redirects=True,
        transport=transport,
    )


async def fetch_text(
    client: httpx.AsyncClient,
    url: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> str:
    """GET 请求并返回文本；任何失败都转换为 ProviderError"""
    try:
        response = await client.get(url, params=params, headers=headers)
    except httpx.TimeoutException as e:
        raise ProviderError(f"timeout fetching {url}") from e
    except httpx.HTTPError as e:
        raise ProviderError(f"{type(e).__name__} fetching {url}: {e}") from e

    if response.status_code >= 400:
        logger.debug(f"[HTTP] GET {url} -> {response.status_code}")
    if response.status_code == 429:
        raise RateLimitedError(f"HTTP 429 fetching {url}")
    if response.status_code < 200 or response.status_code >= 300:
        raise ProviderError(f"HTTP {response.status_code} fetching {url}")
    return response.text


async def fetch_json(
    client: httpx.AsyncClient,
    url: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> Any:
    text = await fetch_text(client, url, params=params, headers=headers)
    try:
        return json.loads(text)
    except ValueError as e:
        raise ProviderError(f"invalid JSON from {url}") from e


class InflightRequests:
    """
    并发请求去重（singleflight）

    以请求 key（通常是最终 URL）为索引保存进行中的 Task，
    同一 key 的并发调用方等待同一个 Task 并得到同一结果。
    """

    def __init__(self) -> None:
        self._tasks: Dict[str, asyncio.Task] = {}

    async def run(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        task = self._tasks.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._tasks[key] = task
            task.add_done_callback(lambda _t, k=key: self._discard(k, _t))
        # shield: 单个调用方被取消时不影响其他等待同一结果的调用方
        return await asyncio.shield(task)

    def _discard(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]

    def pending(self) -> int:
        return len(self._tasks)

    def clear(self) -> None:
        self._tasks.clear()
