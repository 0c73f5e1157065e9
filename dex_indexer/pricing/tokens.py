from typing import Any, Optional

from dex_indexer.storage.clickhouse import ClickHouseStore
from dex_indexer.trade_processor.models import Token, to_float


async def resolve_token(store: ClickHouseStore, query: Any) -> Optional[Token]:
    """
    Find a token by denom, symbol, name (case-insensitive) or id.

    An exact denom match ranks first, then a symbol match, then the highest id.
    """
    if query is None:
        return None
    q = str(query).strip()
    if not q:
        return None

    rows = await store.query(
        '''
        SELECT token_id, denom, symbol, name, exponent
        FROM tokens AS t
        WHERE t.denom = {q:String}
           OR lower(t.symbol) = lower({q:String})
           OR lower(t.name) = lower({q:String})
           OR toString(t.token_id) = {q:String}
        ORDER BY
            t.denom = {q:String} DESC,
            lower(t.symbol) = lower({q:String}) DESC,
            t.token_id DESC
        LIMIT 1
        ''',
        {"q": q},
    )
    if not rows:
        return None
    return Token.model_validate(rows[0])


async def get_zig_usd(store: ClickHouseStore) -> float:
    rows = await store.query(
        '''
        SELECT zig_usd
        FROM exchange_rates
        ORDER BY ts DESC
        LIMIT 1
        '''
    )
    return to_float(rows[0]["zig_usd"]) if rows else 0.0
