"""Batch operation executor.

The remote store only offers per-row writes, so multi-item actions are
dispatched client-side in fixed-size batches: items inside a batch run
concurrently, batches run one after another. Every item succeeds or fails
on its own; the caller gets counts, never an aggregate exception.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from rigalloc.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class BatchFailure(Generic[T]):
    """One item that failed and why."""

    item: T
    error: str
    error_type: str


@dataclass
class BatchResult(Generic[T]):
    """Summary of a batch run."""

    success_count: int = 0
    failure_count: int = 0
    duration_ms: int = 0
    failures: list[BatchFailure[T]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.success_count + self.failure_count

    def summary(self) -> str:
        if self.failure_count == 0:
            return f"{self.success_count} succeeded ({self.duration_ms}ms)"
        return f"{self.success_count} succeeded, {self.failure_count} failed ({self.duration_ms}ms)"


class BatchExecutor:
    """Runs an async mutation over items with bounded concurrency.

    Args:
        batch_size: Maximum number of requests in flight at once.
    """

    def __init__(self, batch_size: int = 10) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.batch_size = batch_size

    async def run(
        self,
        items: Sequence[T],
        mutation_fn: Callable[[T], Awaitable[object]],
    ) -> BatchResult[T]:
        """Apply ``mutation_fn`` to every item.

        Exceptions raised by ``mutation_fn`` are counted as failures.
        Cancellation still propagates.
        """
        result: BatchResult[T] = BatchResult()
        start = time.perf_counter()

        async def attempt(item: T) -> None:
            try:
                await mutation_fn(item)
            except Exception as e:
                logger.warning(
                    "batch_item_failed",
                    item=str(item),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                result.failures.append(BatchFailure(item, str(e), type(e).__name__))
                result.failure_count += 1
            else:
                result.success_count += 1

        for offset in range(0, len(items), self.batch_size):
            batch = items[offset : offset + self.batch_size]
            await asyncio.gather(*(attempt(item) for item in batch))

        result.duration_ms = int((time.perf_counter() - start) * 1000)
        logger.info(
            "batch_completed",
            items=len(items),
            batches=(len(items) + self.batch_size - 1) // self.batch_size,
            success_count=result.success_count,
            failure_count=result.failure_count,
            duration_ms=result.duration_ms,
        )
        return result
