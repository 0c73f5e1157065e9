from unittest.mock import AsyncMock, MagicMock

import pytest
from clickhouse_connect.driver.exceptions import OperationalError

from dex_indexer.pricing.tokens import get_zig_usd, resolve_token
from dex_indexer.storage.clickhouse import ClickHouseStore


@pytest.fixture
def client():
    client = AsyncMock()
    client.close = MagicMock(return_value=None)
    return client


@pytest.fixture
def store(client):
    return ClickHouseStore(database="testdb", retry_attempts=3, retry_wait_ms=0, client=client)


@pytest.mark.asyncio
async def test_insert_targets_database(store, client):
    written = await store.insert("trades", [[1, "a"], [2, "b"]], column_names=("pool_id", "tx_hash"))

    assert written == 2
    client.insert.assert_awaited_once_with(
        "trades",
        [[1, "a"], [2, "b"]],
        column_names=["pool_id", "tx_hash"],
        database="testdb",
    )


@pytest.mark.asyncio
async def test_empty_insert_is_a_no_op(store, client):
    assert await store.insert("trades", [], column_names=["pool_id"]) == 0
    client.insert.assert_not_awaited()


@pytest.mark.asyncio
async def test_transient_errors_are_retried(store, client):
    client.insert.side_effect = [OperationalError("connection reset"), None]
    assert await store.insert("ohlcv_1m", [[1]], column_names=["pool_id"]) == 1
    assert client.insert.await_count == 2


@pytest.mark.asyncio
async def test_retries_give_up_with_last_error(store, client):
    client.insert.side_effect = OperationalError("down")
    with pytest.raises(OperationalError):
        await store.insert("ohlcv_1m", [[1]], column_names=["pool_id"])
    assert client.insert.await_count == 3


@pytest.mark.asyncio
async def test_other_errors_are_not_retried(store, client):
    client.insert.side_effect = ValueError("bad row")
    with pytest.raises(ValueError):
        await store.insert("ohlcv_1m", [[1]], column_names=["pool_id"])
    assert client.insert.await_count == 1


@pytest.mark.asyncio
async def test_query_returns_named_rows(store, client):
    result = MagicMock()
    result.named_results.return_value = iter([{"close": 1.5}])
    client.query.return_value = result

    rows = await store.query("SELECT close FROM ohlcv_1m WHERE pool_id = {pool_id:UInt64}", {"pool_id": 1})
    assert rows == [{"close": 1.5}]
    client.query.assert_awaited_once_with(
        "SELECT close FROM ohlcv_1m WHERE pool_id = {pool_id:UInt64}",
        parameters={"pool_id": 1},
    )


@pytest.mark.asyncio
async def test_unconnected_store_raises():
    with pytest.raises(RuntimeError):
        await ClickHouseStore().insert("trades", [[1]], column_names=["pool_id"])


@pytest.mark.asyncio
async def test_ensure_schema_creates_write_tables(store, client):
    await store.ensure_schema()
    statements = [call.args[0] for call in client.command.await_args_list]

    assert any("testdb.trades" in s for s in statements)
    assert any("testdb.ohlcv_1m" in s and "ReplacingMergeTree(written_at)" in s for s in statements)


@pytest.mark.asyncio
async def test_trades_dedup_key_ignores_created_at(store, client):
    await store.ensure_schema()
    trades_ddl = next(
        call.args[0] for call in client.command.await_args_list if "testdb.trades" in call.args[0]
    )
    # a redelivered event without a timestamp gets a new created_at
    assert "ORDER BY (pool_id, tx_hash, msg_index)" in trades_ddl


@pytest.mark.asyncio
async def test_close_releases_client(store, client):
    await store.close()
    client.close.assert_called_once()
    assert store.client is None


@pytest.mark.asyncio
async def test_resolve_token(mock_store):
    mock_store.query.return_value = [
        {"token_id": 7, "denom": "coin.zig1.meme", "symbol": "MEME", "name": "Meme", "exponent": 6}
    ]
    token = await resolve_token(mock_store, " meme ")

    assert token.token_id == 7
    assert mock_store.query.await_args.args[1] == {"q": "meme"}
    assert await resolve_token(mock_store, "  ") is None


@pytest.mark.asyncio
async def test_zig_usd_defaults_to_zero(mock_store):
    assert await get_zig_usd(mock_store) == 0.0
    mock_store.query.return_value = [{"zig_usd": "0.091"}]
    assert await get_zig_usd(mock_store) == pytest.approx(0.091)
