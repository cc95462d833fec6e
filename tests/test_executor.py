"""Tests for the batch executor."""

import asyncio

import pytest

from rigalloc.bulk import BatchExecutor
from rigalloc.errors import AdapterError


@pytest.mark.asyncio
class TestBatchExecutor:
    """Tests for batched, failure-isolated dispatch."""

    async def test_partial_failure_isolated(self):
        """One failing item out of N gives N-1 successes and never raises."""
        items = list(range(25))

        async def mutate(item):
            if item == 13:
                raise AdapterError("write rejected")

        result = await BatchExecutor().run(items, mutate)

        assert result.success_count == 24
        assert result.failure_count == 1
        assert result.total == 25
        assert result.failures[0].item == 13
        assert result.failures[0].error_type == "AdapterError"
        assert result.summary().startswith("24 succeeded, 1 failed")

    async def test_every_item_attempted_after_failures(self):
        attempted = []

        async def mutate(item):
            attempted.append(item)
            if item < 10:
                raise RuntimeError("first batch fails")

        result = await BatchExecutor(batch_size=10).run(list(range(20)), mutate)

        assert sorted(attempted) == list(range(20))
        assert result.success_count == 10
        assert result.failure_count == 10

    async def test_concurrency_bounded_by_batch_size(self):
        in_flight = 0
        peak = 0

        async def mutate(item):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1

        await BatchExecutor(batch_size=10).run(list(range(25)), mutate)

        assert peak == 10

    async def test_batches_run_sequentially(self):
        finished = set()
        violations = []

        async def mutate(item):
            batch_start = (item // 4) * 4
            if not all(i in finished for i in range(batch_start)):
                violations.append(item)
            await asyncio.sleep(0.005 * (item % 3))
            finished.add(item)

        await BatchExecutor(batch_size=4).run(list(range(12)), mutate)

        assert violations == []
        assert len(finished) == 12

    async def test_empty(self):
        async def mutate(item):
            raise AssertionError("not called")

        result = await BatchExecutor().run([], mutate)

        assert result.total == 0
        assert result.summary().startswith("0 succeeded")

    async def test_cancellation_propagates(self):
        async def mutate(item):
            await asyncio.sleep(10)

        task = asyncio.create_task(BatchExecutor().run([1, 2], mutate))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

    async def test_invalid_batch_size(self):
        with pytest.raises(ValueError):
            BatchExecutor(batch_size=0)
