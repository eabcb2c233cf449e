"""
Batch Scheduling
================

Bounded-concurrency batch runner and a fixed-interval rate gate used by
the offline jobs to keep provider traffic predictable.

Usage:
    scheduler = BatchScheduler(batch_size=20, rate_limiter=IntervalRateLimiter(1.0))
    async for batch, outcomes in scheduler.run(records, embed_one):
        ...
"""

import asyncio
from typing import (
    AsyncIterator, Awaitable, Callable, List, Optional, Sequence, Tuple, TypeVar, Union
)

T = TypeVar("T")
R = TypeVar("R")


class IntervalRateLimiter:
    """
    Fixed-interval gate.

    Successive ``acquire()`` calls return at least ``interval_seconds``
    apart, whichever coroutine calls them. The first call never waits.
    """

    def __init__(self, interval_seconds: float):
        self._interval = max(0.0, interval_seconds)
        self._lock = asyncio.Lock()
        self._next_slot: Optional[float] = None

    async def acquire(self) -> None:
        async with self._lock:
            loop = asyncio.get_running_loop()
            now = loop.time()
            if self._next_slot is not None and now < self._next_slot:
                await asyncio.sleep(self._next_slot - now)
                now = loop.time()
            self._next_slot = now + self._interval


class BatchScheduler:
    """
    Runs a worker over items in fixed-size batches.

    Items of one batch run concurrently; batches run one after another,
    each start gated by the optional rate limiter. Worker exceptions are
    returned in place of results so one failure never aborts a batch.
    """

    def __init__(self, batch_size: int, rate_limiter: Optional[IntervalRateLimiter] = None):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._batch_size = batch_size
        self._rate_limiter = rate_limiter

    @property
    def batch_size(self) -> int:
        return self._batch_size

    async def run(
        self,
        items: Sequence[T],
        worker: Callable[[T], Awaitable[R]]
    ) -> AsyncIterator[Tuple[List[T], List[Union[R, Exception]]]]:
        """
        Yield ``(batch, outcomes)`` pairs, outcomes aligned with the batch.

        The caller consumes each batch before the next one starts, so
        writes made while handling a batch never overlap provider calls.
        """
        for start in range(0, len(items), self._batch_size):
            batch = list(items[start:start + self._batch_size])
            if self._rate_limiter is not None:
                await self._rate_limiter.acquire()

            outcomes = await asyncio.gather(
                *(worker(item) for item in batch),
                return_exceptions=True
            )
            for outcome in outcomes:
                # Cancellation and interpreter exits are not per-item failures
                if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                    raise outcome

            yield batch, list(outcomes)
