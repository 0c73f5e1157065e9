import asyncio
import signal
import sys
import threading
from typing import Any, Callable, Dict, Optional

from loguru import logger
from quixstreams import Application
from quixstreams.models import SerializationError, Topic

from dex_indexer.storage.clickhouse import ClickHouseStore
from dex_indexer.trade_processor.candles import CandleAggregator
from dex_indexer.trade_processor.ingest import SwapIngestor
from dex_indexer.trade_processor.trades import TradeWriter


def decode_event(topic: Topic, msg) -> Optional[Dict[str, Any]]:
    """Message value through the topic's deserializer, or None when it is not a JSON object."""
    try:
        event = topic.deserialize(msg).value
    except SerializationError as e:
        logger.warning(f"Skipping undecodable message at {msg.topic()}[{msg.partition()}]@{msg.offset()}: {e}")
        return None
    if event is None:
        return None
    if not isinstance(event, dict):
        logger.warning(f"Skipping non-object message: {type(event).__name__}")
        return None
    return event


def consume_events(
    kafka_broker_address: Optional[str],
    kafka_topic: str,
    kafka_consumer_group: str,
    on_event: Callable[[Dict[str, Any]], None],
    stop: threading.Event,
    poll_timeout: float = 0.5,
):
    """Blocking Kafka poll loop; runs off the event loop thread."""

    app = Application(
        broker_address=kafka_broker_address,
        consumer_group=kafka_consumer_group,
        auto_offset_reset="earliest",
    )

    topic = app.topic(name=kafka_topic, value_deserializer='json')

    with app.get_consumer() as consumer:
        consumer.subscribe([topic.name])
        logger.info(f"Consuming swap events from {topic.name} as {kafka_consumer_group}")

        while not stop.is_set():
            msg = consumer.poll(poll_timeout)
            if msg is None:
                continue
            if msg.error():
                logger.error(f"Kafka error: {msg.error()}")
                continue

            event = decode_event(topic, msg)
            if event is not None:
                on_event(event)

    logger.info("Kafka consumer closed")


def build_pipeline(store: ClickHouseStore, cfg) -> SwapIngestor:
    trades = TradeWriter(
        store,
        max_items=cfg.trades_batch_max,
        max_wait_ms=cfg.trades_batch_wait_ms,
    )
    candles = CandleAggregator(
        store,
        max_items=cfg.ohlcv_batch_max,
        max_wait_ms=cfg.ohlcv_batch_wait_ms,
    )
    return SwapIngestor(trades, candles)


async def run_indexer(cfg) -> None:
    store = ClickHouseStore(
        host=cfg.clickhouse_host,
        port=cfg.clickhouse_port,
        database=cfg.clickhouse_database,
        username=cfg.clickhouse_username,
        password=cfg.clickhouse_password,
        retry_attempts=cfg.clickhouse_retry_attempts,
        retry_wait_ms=cfg.clickhouse_retry_wait_ms,
    )
    await store.connect()
    await store.ensure_schema()

    ingestor = build_pipeline(store, cfg)
    ingestor.trades.batcher.start()
    ingestor.candles.batcher.start()

    loop = asyncio.get_running_loop()
    stop = threading.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    def on_event(event: Dict[str, Any]) -> None:
        loop.call_soon_threadsafe(ingestor.ingest, event)

    try:
        await asyncio.to_thread(
            consume_events,
            cfg.kafka_broker_address,
            cfg.kafka_topic,
            cfg.kafka_consumer_group,
            on_event,
            stop,
        )
    finally:
        logger.info("Shutting down, draining batchers...")
        # let events already handed to the loop reach the batchers
        await asyncio.sleep(0)
        try:
            await ingestor.stop()
        finally:
            await store.close()
        logger.info(
            f"Indexer stopped. Ingested {ingestor.events_ingested} events, "
            f"rejected {ingestor.events_rejected}"
        )


def run() -> None:
    from dex_indexer.config import config

    logger.remove()
    logger.add(sys.stderr, level=config.log_level.upper())

    asyncio.run(run_indexer(config))


if __name__ == "__main__":
    run()
