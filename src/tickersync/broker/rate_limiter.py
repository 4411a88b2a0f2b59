"""Rate-limited request queue for broker REST calls.

The provider enforces a transactions-per-second ceiling per account. Every
REST call (token issuance, price queries, chart pages) is funnelled through
the FIFO queue of its trading mode, which runs tasks strictly one at a time
and keeps at least `min_interval` between the end of one task and the start
of the next. Many independently scheduled pollers can then share one budget.

The queue never retries. A task's exception is delivered to its enqueuer and
the queue moves on.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from tickersync.logging import get_logger
from tickersync.models import TradingMode

logger = get_logger(__name__)

T = TypeVar("T")


class RequestQueue:
    """Serializing, pacing FIFO queue for one trading mode."""

    def __init__(self, min_interval_ms: int, name: str = "default") -> None:
        self._min_interval = min_interval_ms / 1000
        self._name = name
        self._queue: asyncio.Queue[tuple[Callable[[], Awaitable[Any]], asyncio.Future]] = asyncio.Queue()
        self._worker: asyncio.Task | None = None  # type: ignore[type-arg]
        self._last_finished: float | None = None

    @property
    def min_interval_ms(self) -> int:
        return round(self._min_interval * 1000)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def set_interval(self, min_interval_ms: int) -> None:
        """Change the pacing interval. Applies from the next dequeued task."""
        self._min_interval = min_interval_ms / 1000
        logger.info("request_queue_interval_set", queue=self._name, min_interval_ms=min_interval_ms)

    async def enqueue(self, task: Callable[[], Awaitable[T]]) -> T:
        """Queue a zero-argument coroutine factory and wait for its result."""
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((task, future))
        self._ensure_worker()
        return await future

    async def close(self) -> None:
        """Stop the worker and cancel every task that has not started."""
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            if not future.done():
                future.cancel()

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while True:
            task, future = await self._queue.get()
            if future.cancelled():
                # Enqueuer gave up before its turn came
                continue
            try:
                await self._pace()
                result = await task()
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            except Exception as exc:
                if not future.done():
                    future.set_exception(exc)
            else:
                if not future.done():
                    future.set_result(result)
            self._last_finished = time.monotonic()

    async def _pace(self) -> None:
        if self._last_finished is None:
            return
        wait = self._min_interval - (time.monotonic() - self._last_finished)
        if wait > 0:
            await asyncio.sleep(wait)


class RequestQueues:
    """One RequestQueue per trading mode."""

    def __init__(self, intervals_ms: dict[TradingMode, int]) -> None:
        self._queues = {
            mode: RequestQueue(interval, name=mode.value) for mode, interval in intervals_ms.items()
        }

    def get(self, mode: TradingMode) -> RequestQueue:
        return self._queues[mode]

    def set_interval(self, mode: TradingMode, min_interval_ms: int) -> None:
        self._queues[mode].set_interval(min_interval_ms)

    async def close(self) -> None:
        for queue in self._queues.values():
            await queue.close()
