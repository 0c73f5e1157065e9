import inspect
from typing import Any, Dict, List, Optional, Sequence

import clickhouse_connect
from clickhouse_connect.driver.exceptions import OperationalError
from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)


async def _close_client(client) -> None:
    # close() is a coroutine on newer clickhouse-connect releases
    result = client.close()
    if inspect.isawaitable(result):
        await result


class ClickHouseStore:
    """
    Append-only access to ClickHouse.

    Writes are bulk inserts, reads are plain SELECTs returning dict rows.
    Transient connection errors are retried; retrying an insert may duplicate
    rows, which the ReplacingMergeTree keys collapse.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 8123,
        database: str = "degenter",
        username: str = "default",
        password: str = "",
        retry_attempts: int = 3,
        retry_wait_ms: int = 150,
        client: Any = None,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.username = username
        self.password = password
        self.retry_attempts = retry_attempts
        self.retry_wait = retry_wait_ms / 1000
        self.client = client

    async def connect(self) -> None:
        if self.client is not None:
            return
        await self._create_database()
        self.client = await self._new_client(database=self.database)
        logger.info(f"Connected to ClickHouse @ {self.host}:{self.port}/{self.database}")

    async def close(self) -> None:
        if self.client is None:
            return
        try:
            await _close_client(self.client)
            logger.info("ClickHouse client closed")
        except Exception as e:
            logger.warning(f"ClickHouse close error: {e}")
        finally:
            self.client = None

    async def _new_client(self, database: Optional[str] = None):
        kwargs = {"database": database} if database else {}
        return await clickhouse_connect.get_async_client(
            host=self.host,
            port=self.port,
            username=self.username,
            password=self.password,
            **kwargs,
        )

    async def _create_database(self):
        bootstrap = await self._new_client()
        try:
            await bootstrap.command(f"CREATE DATABASE IF NOT EXISTS {self.database}")
        finally:
            await _close_client(bootstrap)

    async def ensure_schema(self) -> None:
        await self.command(
            f'''
            CREATE TABLE IF NOT EXISTS {self.database}.trades (
                pool_id                     UInt64,
                pair_contract               String,
                action                      LowCardinality(String),
                direction                   LowCardinality(String),
                offer_asset_denom           String,
                offer_amount_base           UInt256,
                ask_asset_denom             String,
                ask_amount_base             UInt256,
                return_amount_base          UInt256,
                is_router                   UInt8,
                reserve_asset1_denom        String,
                reserve_asset1_amount_base  UInt256,
                reserve_asset2_denom        String,
                reserve_asset2_amount_base  UInt256,
                height                      UInt64,
                tx_hash                     String,
                signer                      String,
                msg_index                   UInt32,
                created_at                  DateTime('UTC')
            )
            ENGINE = ReplacingMergeTree
            PARTITION BY toYYYYMM(created_at)
            ORDER BY (pool_id, tx_hash, msg_index)
            SETTINGS index_granularity = 8192;
            '''
        )
        await self.command(
            f'''
            CREATE TABLE IF NOT EXISTS {self.database}.ohlcv_1m (
                pool_id        UInt64,
                bucket_start   DateTime('UTC'),
                open           Decimal(38, 18),
                high           Decimal(38, 18),
                low            Decimal(38, 18),
                close          Decimal(38, 18),
                volume_zig     Decimal(38, 8),
                trade_count    UInt32,
                liquidity_zig  Nullable(Decimal(38, 8)),
                written_at     DateTime64(3, 'UTC') DEFAULT now64(3)
            )
            ENGINE = ReplacingMergeTree(written_at)
            PARTITION BY toYYYYMM(bucket_start)
            ORDER BY (pool_id, bucket_start)
            SETTINGS index_granularity = 8192;
            '''
        )
        logger.info("ClickHouse schema ready")

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_incrementing(start=self.retry_wait, increment=self.retry_wait),
            retry=retry_if_exception_type(OperationalError),
            before_sleep=self._log_retry,
            reraise=True,
        )

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        logger.warning(
            f"ClickHouse retry {retry_state.attempt_number}: {retry_state.outcome.exception()}"
        )

    def _require_client(self):
        if self.client is None:
            raise RuntimeError("ClickHouse client not connected")
        return self.client

    async def insert(
        self,
        table: str,
        rows: Sequence[Sequence[Any]],
        column_names: Sequence[str],
    ) -> int:
        if not rows:
            return 0
        client = self._require_client()
        async for attempt in self._retrying():
            with attempt:
                await client.insert(
                    table,
                    rows,
                    column_names=list(column_names),
                    database=self.database,
                )
        return len(rows)

    async def query(self, sql: str, parameters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        client = self._require_client()
        async for attempt in self._retrying():
            with attempt:
                result = await client.query(sql, parameters=parameters or {})
        return list(result.named_results())

    async def command(self, sql: str, parameters: Optional[Dict[str, Any]] = None):
        client = self._require_client()
        async for attempt in self._retrying():
            with attempt:
                return await client.command(sql, parameters=parameters or {})
