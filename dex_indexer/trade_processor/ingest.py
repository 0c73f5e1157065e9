from typing import Any, Dict, Optional, Tuple

from loguru import logger
from pydantic import ValidationError

from dex_indexer.trade_processor.candles import CandleAggregator
from dex_indexer.trade_processor.models import (
    CandleInput,
    TradeAction,
    TradeTick,
    floor_to_minute,
    to_float,
)
from dex_indexer.trade_processor.trades import TradeWriter


def to_candle_input(trade: TradeTick, event: Dict[str, Any]) -> Optional[CandleInput]:
    """Price point for the 1m candle, or None when the event carries no usable price."""
    price = to_float(event.get("price_in_zig"))
    if price <= 0:
        return None
    return CandleInput(
        pool_id=trade.pool_id,
        bucket_start=floor_to_minute(trade.created_at),
        price=price,
        volume_zig=event.get("volume_zig"),
        trade_inc=1 if trade.action == TradeAction.SWAP else 0,
        liquidity_zig=event.get("liquidity_zig"),
        height=trade.height,
        msg_index=trade.msg_index,
    )


class SwapIngestor:
    """Feeds swap/provide/withdraw events into the trade and candle batchers."""

    def __init__(self, trades: TradeWriter, candles: CandleAggregator):
        self.trades = trades
        self.candles = candles
        self.events_ingested = 0
        self.events_rejected = 0

    def ingest(self, event: Dict[str, Any]) -> Tuple[Optional[TradeTick], Optional[CandleInput]]:
        try:
            trade = TradeTick.model_validate(event)
            point = to_candle_input(trade, event)
        except ValidationError as e:
            self.events_rejected += 1
            logger.warning(f"Skipping malformed event {event.get('tx_hash', '?')}: {e.error_count()} errors")
            return None, None

        self.trades.push(trade)
        if point is not None:
            self.candles.push(point)

        self.events_ingested += 1
        logger.debug(f"Ingested {trade.action.value} pool={trade.pool_id} tx={trade.tx_hash}")
        return trade, point

    async def drain_all(self) -> None:
        await self.trades.drain()
        await self.candles.drain()

    async def stop(self) -> None:
        try:
            await self.trades.stop()
        finally:
            await self.candles.stop()
