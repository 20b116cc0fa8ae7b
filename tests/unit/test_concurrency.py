import asyncio
import random

import pytest

from aiportfolio.services.concurrency import map_with_concurrency


@pytest.mark.asyncio
async def test_at_most_k_mappers_in_flight():
    in_flight = 0
    peak = 0

    async def mapper(item):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.005)
        in_flight -= 1
        return item * 2

    results = await map_with_concurrency(range(10), 4, mapper)

    assert peak == 4
    assert results == [i * 2 for i in range(10)]


@pytest.mark.asyncio
async def test_results_keep_input_order_regardless_of_completion():
    delays = [random.uniform(0, 0.01) for _ in range(12)]

    async def mapper(index):
        await asyncio.sleep(delays[index])
        return f"sym{index}"

    results = await map_with_concurrency(list(range(12)), 4, mapper)
    assert results == [f"sym{i}" for i in range(12)]


@pytest.mark.asyncio
async def test_empty_input_and_small_batches():
    async def mapper(item):
        return item

    assert await map_with_concurrency([], 4, mapper) == []
    assert await map_with_concurrency(["A"], 4, mapper) == ["A"]
    # limit 小于 1 时按 1 处理
    assert await map_with_concurrency([1, 2, 3], 0, mapper) == [1, 2, 3]
