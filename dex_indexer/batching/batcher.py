import asyncio
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Generic, List, Optional, TypeVar

from loguru import logger

T = TypeVar("T")

FlushFn = Callable[[List[T]], Awaitable[object]]


class BatcherClosedError(RuntimeError):
    pass


class MicroBatcher(Generic[T]):
    """
    Buffers pushed items and hands them to `flush_fn` in batches.

    A batch is flushed when `max_items` are pending, when the oldest pending
    item has waited `max_wait_ms`, or when `drain()` is called. No batch holds
    more than `max_items`: a full buffer is sealed on the push that fills it
    and queued behind earlier sealed batches. One worker task owns every
    flush, so at most one flush runs at a time and batches go out in the
    order they were sealed.

    A failed flush is not retried: the error is logged and the batch dropped,
    or re-raised to the `drain()` callers waiting on that batch.
    """

    def __init__(
        self,
        name: str,
        max_items: int,
        max_wait_ms: int,
        flush_fn: FlushFn,
    ):
        if max_items <= 0:
            raise ValueError(f"max_items must be positive, got {max_items}")
        if max_wait_ms <= 0:
            raise ValueError(f"max_wait_ms must be positive, got {max_wait_ms}")

        self.name = name
        self.max_items = max_items
        self.max_wait = max_wait_ms / 1000
        self.flush_fn = flush_fn

        self._pending: List[T] = []
        self._oldest_at: Optional[float] = None
        self._ready: Deque[List[T]] = deque()
        self._waiters: List[asyncio.Future] = []
        self._wakeup: Optional[asyncio.Event] = None
        self._worker: Optional[asyncio.Task] = None
        self._closed = False

        # Metrics
        self.batches_flushed = 0
        self.items_flushed = 0
        self.batches_failed = 0

    @property
    def pending(self) -> int:
        return len(self._pending) + sum(len(batch) for batch in self._ready)

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        if self._closed:
            raise BatcherClosedError(f"{self.name} batcher is closed")
        if self.running:
            return
        self._wakeup = asyncio.Event()
        self._worker = asyncio.get_running_loop().create_task(
            self._run(), name=f"{self.name}-batcher"
        )
        logger.debug(f"{self.name} batcher started (max_items={self.max_items}, max_wait={self.max_wait}s)")

    def push(self, item: T) -> None:
        """Queue an item. Never waits for the flush it may trigger."""
        if self._closed:
            raise BatcherClosedError(f"{self.name} batcher is closed")
        if not self.running:
            self.start()

        if not self._pending:
            self._oldest_at = time.monotonic()
            self._pending.append(item)
            # the worker needs to arm its timer
            self._wakeup.set()
        else:
            self._pending.append(item)

        if len(self._pending) >= self.max_items:
            self._seal()
            self._wakeup.set()

    async def drain(self) -> None:
        """Flush everything pushed so far and wait for those flushes to finish."""
        if not self.running:
            self._seal()
            await self._flush_ready(len(self._ready))
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        self._wakeup.set()
        await waiter

    async def stop(self) -> None:
        """Drain, then shut the worker down. Further pushes raise."""
        if self._closed:
            return
        try:
            await self.drain()
        finally:
            self._closed = True
            if self._worker is not None:
                self._wakeup.set()
                await self._worker
            logger.info(
                f"{self.name} batcher stopped. "
                f"Total flushed: {self.items_flushed} items in {self.batches_flushed} batches, "
                f"{self.batches_failed} failed"
            )

    def _time_left(self) -> Optional[float]:
        if not self._pending:
            return None
        return self._oldest_at + self.max_wait - time.monotonic()

    def _seal(self) -> None:
        if not self._pending:
            return
        self._ready.append(self._pending)
        self._pending = []
        self._oldest_at = None

    async def _flush_ready(self, count: int) -> None:
        """Flush the first `count` sealed batches, raising the first failure after all ran."""
        error: Optional[Exception] = None
        for _ in range(count):
            try:
                await self._flush(self._ready.popleft())
            except Exception as e:
                if error is None:
                    error = e
                else:
                    logger.warning(f"{self.name} flush failed, batch dropped: {e!r}")
        if error is not None:
            raise error

    async def _run(self) -> None:
        while True:
            if self._waiters:
                # everything pushed before these drain calls is sealed by now
                waiters = self._waiters
                self._waiters = []
                self._seal()
                try:
                    await self._flush_ready(len(self._ready))
                except Exception as e:
                    for waiter in waiters:
                        if not waiter.done():
                            waiter.set_exception(e)
                else:
                    for waiter in waiters:
                        if not waiter.done():
                            waiter.set_result(None)
                continue

            if self._pending and (self._closed or self._time_left() <= 0):
                self._seal()

            if self._ready:
                try:
                    await self._flush(self._ready.popleft())
                except Exception as e:
                    logger.warning(f"{self.name} flush failed, batch dropped: {e!r}")
                continue

            if self._closed:
                return

            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._time_left())
            except asyncio.TimeoutError:
                pass

    async def _flush(self, items: List[T]) -> None:
        if not items:
            return
        started = time.monotonic()
        try:
            await self.flush_fn(items)
        except Exception:
            self.batches_failed += 1
            raise
        self.batches_flushed += 1
        self.items_flushed += len(items)
        logger.debug(
            f"{self.name} flushed {len(items)} items in {(time.monotonic() - started) * 1000:.1f}ms "
            f"(total: {self.items_flushed})"
        )
