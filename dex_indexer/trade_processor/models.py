import math
from datetime import datetime, timezone
from decimal import Context, Decimal, InvalidOperation
from enum import Enum
from typing import Any, ClassVar, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

PRICE_SCALE = 18
AMOUNT_SCALE = 8

# Decimal(38, 18) needs more digits than the default context carries
_DECIMAL_CONTEXT = Context(prec=76)


def to_decimal(value: Any, scale: int) -> Decimal:
    """Fixed-point encoding used for every Decimal column. Bad input becomes zero."""
    try:
        number = float(value or 0)
    except (TypeError, ValueError):
        return Decimal(0).quantize(Decimal(10) ** -scale, context=_DECIMAL_CONTEXT)
    if not math.isfinite(number):
        number = 0.0
    return Decimal(repr(number)).quantize(Decimal(10) ** -scale, context=_DECIMAL_CONTEXT)


def to_float(value: Any) -> float:
    try:
        number = float(value or 0)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def to_base_units(value: Any) -> int:
    if value is None:
        return 0
    text = str(value).strip()
    if not text:
        return 0
    try:
        return int(Decimal(text))
    except (InvalidOperation, ValueError):
        return 0


def to_utc_seconds(value: Any) -> Optional[datetime]:
    """
    Normalize a timestamp to a timezone-aware UTC datetime with whole seconds.
    Accepts datetimes, ISO-8601 strings and epoch seconds.
    """
    if value is None or value == "":
        return None
    try:
        if isinstance(value, datetime):
            ts = value
        elif isinstance(value, (int, float)):
            ts = datetime.fromtimestamp(value, tz=timezone.utc)
        else:
            ts = _parse_iso(str(value).strip())
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return ts.astimezone(timezone.utc).replace(microsecond=0)
    except (OverflowError, OSError, ValueError) as e:
        raise ValueError(f"invalid timestamp {value!r}: {e}") from e


def _parse_iso(text: str) -> datetime:
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        if len(text) < 19:
            raise
    # fractions fromisoformat rejects (e.g. nanoseconds); ClickHouse DateTime only has seconds
    return datetime.fromisoformat(text[:19])


def floor_to_minute(value: Any) -> Optional[datetime]:
    ts = to_utc_seconds(value)
    return ts.replace(second=0) if ts is not None else None


class TradeAction(str, Enum):
    SWAP = "swap"
    PROVIDE = "provide"
    WITHDRAW = "withdraw"


class TradeDirection(str, Enum):
    BUY = "buy"
    SELL = "sell"
    PROVIDE = "provide"
    WITHDRAW = "withdraw"


class TradeTick(BaseModel):
    model_config = ConfigDict(frozen=True)

    COLUMNS: ClassVar[List[str]] = [
        "pool_id", "pair_contract", "action", "direction",
        "offer_asset_denom", "offer_amount_base",
        "ask_asset_denom", "ask_amount_base",
        "return_amount_base", "is_router",
        "reserve_asset1_denom", "reserve_asset1_amount_base",
        "reserve_asset2_denom", "reserve_asset2_amount_base",
        "height", "tx_hash", "signer", "msg_index", "created_at",
    ]

    pool_id: int = 0
    pair_contract: str = ""
    action: TradeAction = TradeAction.SWAP
    direction: TradeDirection = TradeDirection.BUY
    offer_asset_denom: str = ""
    offer_amount_base: int = 0
    ask_asset_denom: str = ""
    ask_amount_base: int = 0
    return_amount_base: int = 0
    is_router: bool = False
    reserve_asset1_denom: str = ""
    reserve_asset1_amount_base: int = 0
    reserve_asset2_denom: str = ""
    reserve_asset2_amount_base: int = 0
    height: int = 0
    tx_hash: str = ""
    signer: str = ""
    msg_index: int = 0
    created_at: datetime = Field(default_factory=lambda: to_utc_seconds(datetime.now(timezone.utc)))

    @field_validator(
        "pair_contract", "offer_asset_denom", "ask_asset_denom",
        "reserve_asset1_denom", "reserve_asset2_denom",
        "tx_hash", "signer",
        mode="before",
    )
    @classmethod
    def _empty_string(cls, v):
        return "" if v is None else str(v)

    @field_validator(
        "offer_amount_base", "ask_amount_base", "return_amount_base",
        "reserve_asset1_amount_base", "reserve_asset2_amount_base",
        mode="before",
    )
    @classmethod
    def _amount(cls, v):
        return to_base_units(v)

    @field_validator("pool_id", "height", "msg_index", mode="before")
    @classmethod
    def _int_or_zero(cls, v):
        return 0 if v is None or v == "" else v

    @field_validator("action", mode="before")
    @classmethod
    def _action(cls, v):
        return v or TradeAction.SWAP

    @field_validator("direction", mode="before")
    @classmethod
    def _direction(cls, v):
        return v or TradeDirection.BUY

    @field_validator("is_router", mode="before")
    @classmethod
    def _router(cls, v):
        return bool(v)

    @field_validator("created_at", mode="before")
    @classmethod
    def _created_at(cls, v):
        return to_utc_seconds(v) or to_utc_seconds(datetime.now(timezone.utc))

    def to_row(self) -> list:
        return [
            self.pool_id,
            self.pair_contract,
            self.action.value,
            self.direction.value,
            self.offer_asset_denom,
            self.offer_amount_base,
            self.ask_asset_denom,
            self.ask_amount_base,
            self.return_amount_base,
            1 if self.is_router else 0,
            self.reserve_asset1_denom,
            self.reserve_asset1_amount_base,
            self.reserve_asset2_denom,
            self.reserve_asset2_amount_base,
            self.height,
            self.tx_hash,
            self.signer,
            self.msg_index,
            self.created_at,
        ]


class CandleInput(BaseModel):
    model_config = ConfigDict(frozen=True)

    pool_id: int
    bucket_start: datetime
    price: float
    volume_zig: float = 0.0
    trade_inc: int = 0
    liquidity_zig: Optional[float] = None
    # chain position of the trade, when known
    height: Optional[int] = None
    msg_index: Optional[int] = None

    @field_validator("bucket_start", mode="before")
    @classmethod
    def _bucket(cls, v):
        return to_utc_seconds(v)

    @field_validator("price", "volume_zig", mode="before")
    @classmethod
    def _number(cls, v):
        return to_float(v)

    @field_validator("trade_inc", mode="before")
    @classmethod
    def _count(cls, v):
        return int(v or 0)

    @field_validator("liquidity_zig", mode="before")
    @classmethod
    def _liquidity(cls, v):
        return None if v is None else to_float(v)

    @property
    def sequence(self) -> Optional[tuple]:
        if self.height is None or self.msg_index is None:
            return None
        return (self.height, self.msg_index)


class Candle(BaseModel):

    COLUMNS: ClassVar[List[str]] = [
        "pool_id", "bucket_start", "open", "high", "low", "close",
        "volume_zig", "trade_count", "liquidity_zig",
    ]

    pool_id: int
    bucket_start: datetime
    open: float
    high: float
    low: float
    close: float
    volume_zig: float = 0.0
    trade_count: int = 0
    liquidity_zig: Optional[float] = None

    def to_row(self) -> list:
        return [
            self.pool_id,
            self.bucket_start,
            to_decimal(self.open, PRICE_SCALE),
            to_decimal(self.high, PRICE_SCALE),
            to_decimal(self.low, PRICE_SCALE),
            to_decimal(self.close, PRICE_SCALE),
            to_decimal(self.volume_zig, AMOUNT_SCALE),
            self.trade_count,
            None if self.liquidity_zig is None else to_decimal(self.liquidity_zig, AMOUNT_SCALE),
        ]


class Pool(BaseModel):
    pool_id: int
    pair_contract: str
    base_token_id: int
    quote_token_id: int
    is_uzig_quote: bool = False
    created_at: Optional[datetime] = None


class Price(BaseModel):
    pool_id: int
    token_id: int
    price_in_zig: float
    updated_at: datetime
    pair_contract: str = ""


class PoolMetric(BaseModel):
    pool_id: int
    bucket: str
    tvl_zig: float = 0.0

    @field_validator("tvl_zig", mode="before")
    @classmethod
    def _tvl(cls, v):
        return to_float(v)


class PoolSelection(BaseModel):
    pool_id: int
    pair_contract: str = ""
    price_in_zig: Optional[float] = None


class Token(BaseModel):
    token_id: int
    denom: str
    symbol: Optional[str] = None
    name: Optional[str] = None
    exponent: Optional[int] = None
