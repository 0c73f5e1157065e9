from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from loguru import logger

from dex_indexer.batching.batcher import MicroBatcher
from dex_indexer.storage.clickhouse import ClickHouseStore
from dex_indexer.trade_processor.models import Candle, CandleInput

OHLCV_TABLE = "ohlcv_1m"


def init_ohlcv_candle(item: CandleInput) -> Candle:
    return Candle(
        pool_id=item.pool_id,
        bucket_start=item.bucket_start,
        open=item.price,
        high=item.price,
        low=item.price,
        close=item.price,
        volume_zig=item.volume_zig,
        trade_count=item.trade_inc,
        liquidity_zig=item.liquidity_zig,
    )


def update_ohlcv_candle(candle: Candle, item: CandleInput) -> Candle:

    candle.high = max(candle.high, item.price)
    candle.low = min(candle.low, item.price)
    candle.close = item.price
    candle.volume_zig += item.volume_zig
    candle.trade_count += item.trade_inc
    if item.liquidity_zig is not None:
        candle.liquidity_zig = item.liquidity_zig

    return candle


def order_for_close(items: List[CandleInput]) -> List[CandleInput]:
    """
    Chain order when every input carries (height, msg_index), else arrival order.
    The sort is stable, so ties keep their arrival order.
    """
    if items and all(item.sequence is not None for item in items):
        return sorted(items, key=lambda item: item.sequence)
    return list(items)


def aggregate_batch(items: Iterable[CandleInput]) -> List[Candle]:
    """Reduce a batch to one candle per (pool_id, bucket_start)."""
    candles: Dict[Tuple[int, datetime], Candle] = {}
    for item in items:
        key = (item.pool_id, item.bucket_start)
        candle = candles.get(key)
        if candle is None:
            candles[key] = init_ohlcv_candle(item)
        else:
            update_ohlcv_candle(candle, item)
    return list(candles.values())


@dataclass
class PoolContinuity:
    bucket_start: datetime
    close: float
    # last row written for bucket_start
    candle: Optional[Candle] = None


class ContinuityState:
    """
    Last closed bucket per pool, so the next bucket opens at its close.

    Lives in process memory only; after a restart the first candle of each
    pool opens at its own first price.
    """

    def __init__(self):
        self._pools: Dict[int, PoolContinuity] = {}

    def get(self, pool_id: int) -> Optional[PoolContinuity]:
        return self._pools.get(pool_id)

    def update(self, candle: Candle) -> None:
        current = self._pools.get(candle.pool_id)
        if current is not None and candle.bucket_start < current.bucket_start:
            return
        self._pools[candle.pool_id] = PoolContinuity(
            bucket_start=candle.bucket_start,
            close=candle.close,
            candle=candle.model_copy(),
        )

    def clear(self) -> None:
        self._pools.clear()

    def __len__(self) -> int:
        return len(self._pools)


def merge_same_bucket(earlier: Candle, later: Candle) -> Candle:
    """Fold a second write of one bucket into the first so the newest row is complete."""
    return Candle(
        pool_id=later.pool_id,
        bucket_start=later.bucket_start,
        open=earlier.open,
        high=max(earlier.high, later.high),
        low=min(earlier.low, later.low),
        close=later.close,
        volume_zig=earlier.volume_zig + later.volume_zig,
        trade_count=earlier.trade_count + later.trade_count,
        liquidity_zig=later.liquidity_zig if later.liquidity_zig is not None else earlier.liquidity_zig,
    )


def apply_continuity(candles: List[Candle], state: ContinuityState) -> List[Candle]:
    """
    Chain each pool's candles: a bucket opens at the close of the pool's previous
    bucket. High and low stay the extremes observed in the bucket, so the open
    may fall outside [low, high].
    """
    chained = []
    for candle in sorted(candles, key=lambda c: (c.pool_id, c.bucket_start)):
        prev = state.get(candle.pool_id)
        if prev is not None:
            if prev.bucket_start < candle.bucket_start:
                candle.open = prev.close
            elif prev.bucket_start == candle.bucket_start and prev.candle is not None:
                candle = merge_same_bucket(prev.candle, candle)
        state.update(candle)
        chained.append(candle)
    return chained


class CandleAggregator:
    """
    Turns price points into 1m OHLCV rows, one bulk append per flush.
    The continuity state is only touched from the batcher's flush path.
    """

    def __init__(
        self,
        store: ClickHouseStore,
        max_items: int = 600,
        max_wait_ms: int = 120,
        state: Optional[ContinuityState] = None,
        table: str = OHLCV_TABLE,
    ):
        self.store = store
        self.state = state if state is not None else ContinuityState()
        self.table = table
        self.batcher: MicroBatcher[CandleInput] = MicroBatcher(
            name="ohlcv",
            max_items=max_items,
            max_wait_ms=max_wait_ms,
            flush_fn=self.flush,
        )

    def push(self, item: CandleInput) -> None:
        self.batcher.push(item)

    async def flush(self, items: List[CandleInput]) -> List[Candle]:
        if not items:
            return []

        candles = apply_continuity(aggregate_batch(order_for_close(items)), self.state)
        if not candles:
            return []

        await self.store.insert(
            self.table,
            [candle.to_row() for candle in candles],
            column_names=Candle.COLUMNS,
        )
        logger.debug(f"Inserted {len(candles)} candles from {len(items)} price points")
        return candles

    async def drain(self) -> None:
        await self.batcher.drain()

    async def stop(self) -> None:
        await self.batcher.stop()
