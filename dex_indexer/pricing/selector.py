from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from dex_indexer.storage.clickhouse import ClickHouseStore
from dex_indexer.trade_processor.models import PoolMetric, PoolSelection, Price


class PriceSource(str, Enum):
    POOL = "pool"
    FIRST = "first"
    BEST = "best"

    @classmethod
    def parse(cls, value: Any) -> "PriceSource":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or cls.BEST.value).strip().lower())
        except ValueError:
            return cls.BEST


def positive_id(value: Any) -> Optional[int]:
    """Numeric id > 0, or None for anything else (None, '', 'undefined', '3.5', -1)."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = int(str(value).strip())
    except ValueError:
        return None
    return number if number > 0 else None


def pick_best_price(prices: List[Price], tvl_by_pool: Dict[int, float]) -> Optional[Price]:
    """
    Lowest price wins (best execution for a buyer); equal prices go to the
    pool with the highest 24h TVL. Missing TVL counts as zero.
    """
    if not prices:
        return None
    return min(
        prices,
        key=lambda p: (p.price_in_zig, -tvl_by_pool.get(p.pool_id, 0.0)),
    )


class PoolSelector:

    def __init__(self, store: ClickHouseStore, candidates: int = 16):
        if candidates <= 0:
            raise ValueError(f"candidates must be positive, got {candidates}")
        self.store = store
        self.candidates = candidates

    @classmethod
    def from_config(cls, store: ClickHouseStore, cfg=None) -> "PoolSelector":
        if cfg is None:
            from dex_indexer.config import config as cfg
        return cls(store, candidates=cfg.best_price_candidates)

    async def pool_for_token(self, token_id: Any, pool_id: Any) -> Optional[PoolSelection]:
        tid = positive_id(token_id)
        pid = positive_id(pool_id)
        if tid is None or pid is None:
            return None

        rows = await self.store.query(
            '''
            SELECT pool_id, pair_contract
            FROM pools
            WHERE pool_id = {pool_id:UInt64} AND base_token_id = {token_id:UInt64}
            LIMIT 1
            ''',
            {"pool_id": pid, "token_id": tid},
        )
        if not rows:
            return None
        return PoolSelection(pool_id=rows[0]["pool_id"], pair_contract=rows[0]["pair_contract"])

    async def first_uzig_pool(self, token_id: Any) -> Optional[PoolSelection]:
        """Earliest-created UZIG-quoted pool for this token."""
        tid = positive_id(token_id)
        if tid is None:
            return None

        rows = await self.store.query(
            '''
            SELECT pool_id, pair_contract
            FROM pools
            WHERE base_token_id = {token_id:UInt64} AND is_uzig_quote = 1
            ORDER BY created_at ASC
            LIMIT 1
            ''',
            {"token_id": tid},
        )
        if not rows:
            return None
        return PoolSelection(pool_id=rows[0]["pool_id"], pair_contract=rows[0]["pair_contract"])

    async def _recent_prices(self, token_id: int) -> List[Price]:
        rows = await self.store.query(
            '''
            SELECT
                pr.pool_id AS pool_id,
                pr.token_id AS token_id,
                pr.price_in_zig AS price_in_zig,
                pr.updated_at AS updated_at,
                p.pair_contract AS pair_contract
            FROM (
                SELECT pool_id, token_id, price_in_zig, updated_at
                FROM prices
                WHERE token_id = {token_id:UInt64}
                ORDER BY updated_at DESC
                LIMIT 1 BY pool_id
            ) AS pr
            INNER JOIN pools AS p ON p.pool_id = pr.pool_id
            WHERE p.is_uzig_quote = 1
            ORDER BY pr.updated_at DESC
            LIMIT {limit:UInt32}
            ''',
            {"token_id": token_id, "limit": self.candidates},
        )
        return [Price.model_validate(row) for row in rows]

    async def _tvl_24h(self, pool_ids: List[int]) -> Dict[int, float]:
        if not pool_ids:
            return {}
        rows = await self.store.query(
            '''
            SELECT pool_id, '24h' AS bucket, argMax(tvl_zig, updated_at) AS tvl_zig
            FROM pool_matrix
            WHERE bucket = '24h' AND pool_id IN {pool_ids:Array(UInt64)}
            GROUP BY pool_id
            ''',
            {"pool_ids": pool_ids},
        )
        metrics = [PoolMetric.model_validate(row) for row in rows]
        return {m.pool_id: m.tvl_zig for m in metrics}

    async def best_uzig_pool(self, token_id: Any) -> Optional[PoolSelection]:
        """Best executable price pool (lowest price_in_zig, tie-break by highest 24h TVL)."""
        tid = positive_id(token_id)
        if tid is None:
            return None

        prices = await self._recent_prices(tid)
        if not prices:
            return None

        tvl_by_pool = await self._tvl_24h([p.pool_id for p in prices])
        best = pick_best_price(prices, tvl_by_pool)
        logger.debug(
            f"Best pool for token {tid}: {best.pool_id} @ {best.price_in_zig} "
            f"({len(prices)} candidates)"
        )
        return PoolSelection(
            pool_id=best.pool_id,
            pair_contract=best.pair_contract,
            price_in_zig=best.price_in_zig,
        )

    async def resolve_pool_selection(
        self,
        token_id: Any,
        price_source: Any = PriceSource.BEST,
        pool_id: Any = None,
    ) -> Tuple[PriceSource, Optional[PoolSelection]]:
        mode = PriceSource.parse(price_source)

        if mode == PriceSource.POOL:
            return mode, await self.pool_for_token(token_id, pool_id)

        if mode == PriceSource.FIRST:
            return mode, await self.first_uzig_pool(token_id)

        return mode, await self.best_uzig_pool(token_id)
