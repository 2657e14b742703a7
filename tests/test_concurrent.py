"""Tests for batched concurrent processing."""

import asyncio

import pytest

from pipelines.concurrent import concurrent_map, row_collector


async def arange(n):
    for i in range(n):
        yield i


@pytest.mark.asyncio
async def test_row_collector_batches_with_remainder():
    batches = [batch async for batch in row_collector(arange(7), 3)]
    assert batches == [[0, 1, 2], [3, 4, 5], [6]]


@pytest.mark.asyncio
async def test_row_collector_empty_stream():
    assert [batch async for batch in row_collector(arange(0), 3)] == []


@pytest.mark.asyncio
async def test_row_collector_rejects_zero_count():
    with pytest.raises(ValueError):
        [batch async for batch in row_collector(arange(3), 0)]


@pytest.mark.asyncio
async def test_concurrent_map_bounds_in_flight_work():
    in_flight = 0
    peak = 0
    seen = []

    async def work(row):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0)
        seen.append(row)
        in_flight -= 1

    processed = await concurrent_map(arange(10), work, concurrency=4)

    assert processed == 10
    assert sorted(seen) == list(range(10))
    assert peak == 4


@pytest.mark.asyncio
async def test_concurrent_map_propagates_errors():
    async def work(row):
        if row == 2:
            raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await concurrent_map(arange(5), work, concurrency=2)
