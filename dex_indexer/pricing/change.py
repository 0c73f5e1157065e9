from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from dex_indexer.pricing.selector import positive_id
from dex_indexer.storage.clickhouse import ClickHouseStore
from dex_indexer.trade_processor.models import to_float


async def _latest_close(
    store: ClickHouseStore,
    pool_id: int,
    cutoff: Optional[int] = None,
) -> Optional[float]:
    # rows are append-only, so the newest write of a bucket wins
    if cutoff is None:
        rows = await store.query(
            '''
            SELECT close
            FROM ohlcv_1m
            WHERE pool_id = {pool_id:UInt64}
            ORDER BY bucket_start DESC, written_at DESC
            LIMIT 1
            ''',
            {"pool_id": pool_id},
        )
    else:
        rows = await store.query(
            '''
            SELECT close
            FROM ohlcv_1m
            WHERE pool_id = {pool_id:UInt64}
                AND bucket_start <= toDateTime({cutoff:UInt32}, 'UTC')
            ORDER BY bucket_start DESC, written_at DESC
            LIMIT 1
            ''',
            {"pool_id": pool_id, "cutoff": cutoff},
        )
    if not rows or rows[0].get("close") is None:
        return None
    return to_float(rows[0]["close"])


async def change_pct_for_minutes(
    store: ClickHouseStore,
    pool_id: Any,
    minutes: Any,
    now: Optional[datetime] = None,
) -> Optional[float]:
    """% change over N minutes for one pool's 1m candle stream."""
    pid = positive_id(pool_id)
    if pid is None:
        return None

    try:
        mins = float(minutes or 0)
    except (TypeError, ValueError):
        return None
    if not mins > 0 or mins == float("inf"):
        return None

    now = now or datetime.now(timezone.utc)
    try:
        cutoff = int((now - timedelta(minutes=mins)).timestamp())
    except OverflowError:
        return None
    # DateTime columns start at the epoch
    if cutoff < 0:
        return None

    last = await _latest_close(store, pid)
    prev = await _latest_close(store, pid, cutoff=cutoff)

    if last is None or prev is None or prev <= 0:
        return None
    return (last - prev) / prev * 100
