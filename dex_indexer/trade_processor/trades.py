from typing import List

from loguru import logger

from dex_indexer.batching.batcher import MicroBatcher
from dex_indexer.storage.clickhouse import ClickHouseStore
from dex_indexer.trade_processor.models import TradeTick

TRADES_TABLE = "trades"


class TradeWriter:
    """Appends raw trade rows in batches, no aggregation."""

    def __init__(
        self,
        store: ClickHouseStore,
        max_items: int = 800,
        max_wait_ms: int = 120,
        table: str = TRADES_TABLE,
    ):
        self.store = store
        self.table = table
        self.batcher: MicroBatcher[TradeTick] = MicroBatcher(
            name="trades",
            max_items=max_items,
            max_wait_ms=max_wait_ms,
            flush_fn=self.flush,
        )

    def push(self, trade: TradeTick) -> None:
        self.batcher.push(trade)

    async def flush(self, trades: List[TradeTick]) -> int:
        if not trades:
            return 0
        written = await self.store.insert(
            self.table,
            [trade.to_row() for trade in trades],
            column_names=TradeTick.COLUMNS,
        )
        logger.debug(f"Inserted {written} trades")
        return written

    async def drain(self) -> None:
        await self.batcher.drain()

    async def stop(self) -> None:
        await self.batcher.stop()
