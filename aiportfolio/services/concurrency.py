"""有界并发：K 个 worker 共享一个下标游标依次取任务，结果按输入顺序返回"""

import asyncio
from typing import Awaitable, Callable, Iterable, List, TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def map_with_concurrency(
    items: Iterable[T],
    limit: int,
    mapper: Callable[[T], Awaitable[R]],
) -> List[R]:
    items = list(items)
    results: List[R] = [None] * len(items)  # type: ignore[list-item]
    cursor = 0

    async def worker() -> None:
        nonlocal cursor
        while cursor < len(items):
            index = cursor
            cursor += 1
            results[index] = await mapper(items[index])

    workers = [worker() for _ in range(min(max(1, limit), len(items)))]
    await asyncio.gather(*workers)
    return results
