"""Bounded-concurrency fan-out that keeps per-item outcomes."""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class BatchResult(Generic[T, R]):
    item: T
    value: R | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def run_batched(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    batch_size: int = 10,
) -> list[BatchResult[T, R]]:
    """Run `worker` over `items`, at most `batch_size` at a time.

    A failing item is recorded on its BatchResult; the rest of the batch and
    later batches still run. Results keep the input order.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    results: list[BatchResult[T, R]] = []
    for start in range(0, len(items), batch_size):
        batch = items[start:start + batch_size]
        outcomes = await asyncio.gather(*(worker(item) for item in batch), return_exceptions=True)

        for item, outcome in zip(batch, outcomes):
            if isinstance(outcome, Exception):
                results.append(BatchResult(item=item, error=outcome))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append(BatchResult(item=item, value=outcome))

    return results
