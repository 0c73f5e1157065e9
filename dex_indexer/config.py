from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):

    model_config = SettingsConfigDict(
        extra="forbid",
        env_file=".env"
    )
    kafka_broker_address: Optional[str] = None
    kafka_topic: str = "swap_events"
    kafka_consumer_group: str = "dex_indexer"

    clickhouse_host: str = "localhost"
    clickhouse_port: int = 8123
    clickhouse_database: str = "degenter"
    clickhouse_username: str = "default"
    clickhouse_password: str = ""
    clickhouse_retry_attempts: int = Field(default=3, ge=1)
    clickhouse_retry_wait_ms: int = Field(default=150, ge=0)

    trades_batch_max: int = Field(default=800, gt=0)
    trades_batch_wait_ms: int = Field(default=120, gt=0)
    ohlcv_batch_max: int = Field(default=600, gt=0)
    ohlcv_batch_wait_ms: int = Field(default=120, gt=0)

    best_price_candidates: int = Field(default=16, gt=0)
    log_level: str = "INFO"


config = AppConfig()
