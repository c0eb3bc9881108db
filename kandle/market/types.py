"""Market data types: Instrument, Tick, TimeframeConfig and Candle."""

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

from kandle.errors import TickValidationError
from kandle.market.clock import ensure_utc, from_epoch_ms, minutes_to_ms

# Feeds disagree on the price key; the first one present wins.
PRICE_KEYS = ("ltp", "close", "price")

# SQLite INTEGER is a signed 64-bit value.
MAX_VOLUME = 2**63 - 1


def is_storable_price(price: Decimal) -> bool:
    """True if the price survives the round trip through a REAL column."""
    if not price.is_finite() or price <= 0:
        return False
    as_float = float(price)
    return math.isfinite(as_float) and as_float > 0


@dataclass(frozen=True)
class Instrument:
    """A tradeable instrument, created lazily on its first tick."""

    id: int
    symbol: str
    exchange: str
    instrument_type: str
    name: str = ""
    lot_size: int | None = None
    tick_size: Decimal | None = None
    is_active: bool = True
    created_at: datetime | None = None


@dataclass(frozen=True)
class InstrumentSpec:
    """Fields used to create an instrument that does not exist yet."""

    symbol: str
    exchange: str
    instrument_type: str
    lot_size: int | None = None
    tick_size: Decimal | None = None


@dataclass(frozen=True)
class TimeframeConfig:
    """A named aggregation interval."""

    name: str
    interval_minutes: float
    description: str = ""
    is_active: bool = True
    id: int | None = None

    @property
    def interval_ms(self) -> int:
        """Interval length in milliseconds."""
        return minutes_to_ms(self.interval_minutes)

    @property
    def interval(self) -> timedelta:
        return timedelta(milliseconds=self.interval_ms)


@dataclass(frozen=True)
class Tick:
    """A single price tick with its canonical price already resolved."""

    symbol: str
    price: Decimal
    volume: int
    timestamp: datetime
    change: Decimal = Decimal("0")
    change_percent: Decimal = Decimal("0")
    instrument_id: int | None = None

    def __post_init__(self) -> None:
        if not self.symbol:
            raise TickValidationError("Symbol is required", field="symbol")
        if not is_storable_price(self.price):
            raise TickValidationError("Price must be positive", field="price")
        if self.volume < 0:
            raise TickValidationError("Volume cannot be negative", field="volume")
        if self.volume > MAX_VOLUME:
            raise TickValidationError("Volume out of range", field="volume")
        if self.timestamp.tzinfo is None:
            raise TickValidationError("Timestamp must be timezone-aware", field="timestamp")


@dataclass
class Candle:
    """OHLCV candlestick data for one (instrument, timeframe, bucket).

    The derived statistics are never assigned directly; every mutation goes
    through refresh_derived() so they always agree with open/high/low/close.
    """

    instrument_id: int
    timeframe_id: int
    timeframe: str
    open_time: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: int
    tick_count: int = 1
    last_tick_at: datetime | None = None

    typical_price: Decimal = field(init=False)
    weighted_price: Decimal = field(init=False)
    price_change: Decimal = field(init=False)
    price_change_percent: Decimal = field(init=False)
    upper_shadow: Decimal = field(init=False)
    lower_shadow: Decimal = field(init=False)
    body_size: Decimal = field(init=False)
    total_range: Decimal = field(init=False)

    def __post_init__(self) -> None:
        self.refresh_derived()

    def refresh_derived(self) -> None:
        """Recompute every derived field from the primary OHLC fields."""
        self.typical_price = (self.high + self.low + self.close) / 3
        self.weighted_price = (self.high + self.low + self.close + self.close) / 4
        self.price_change = self.close - self.open
        if self.open:
            self.price_change_percent = self.price_change / self.open * 100
        else:
            self.price_change_percent = Decimal("0")
        self.upper_shadow = self.high - max(self.open, self.close)
        self.lower_shadow = min(self.open, self.close) - self.low
        self.body_size = abs(self.close - self.open)
        self.total_range = self.high - self.low

    @property
    def is_bullish(self) -> bool:
        """Check if candle closed higher than it opened."""
        return self.close > self.open

    @property
    def is_bearish(self) -> bool:
        """Check if candle closed lower than it opened."""
        return self.close < self.open

    def update_with_tick(self, tick: Tick) -> None:
        """Fold a single tick into the candle. Open is never touched."""
        if tick.price > self.high:
            self.high = tick.price
        if tick.price < self.low:
            self.low = tick.price

        self.close = tick.price
        self.volume += tick.volume
        self.tick_count += 1
        self.last_tick_at = tick.timestamp
        self.refresh_derived()

    @classmethod
    def from_tick(
        cls,
        tick: Tick,
        instrument_id: int,
        timeframe: TimeframeConfig,
        open_time: datetime,
    ) -> "Candle":
        """Create a new candle from a tick."""
        return cls.from_ticks([tick], instrument_id, timeframe, open_time)

    @classmethod
    def from_ticks(
        cls,
        ticks: Iterable[Tick],
        instrument_id: int,
        timeframe: TimeframeConfig,
        open_time: datetime,
    ) -> "Candle":
        """Create a candle from every tick in its bucket.

        Ticks are ordered by timestamp; ties keep their given order, which
        for store reads is insertion order.
        """
        ordered = sorted(ticks, key=lambda t: t.timestamp)
        if not ordered:
            raise ValueError("Cannot build a candle from zero ticks")
        if timeframe.id is None:
            raise ValueError(f"Timeframe {timeframe.name} has not been persisted")

        prices = [t.price for t in ordered]
        return cls(
            instrument_id=instrument_id,
            timeframe_id=timeframe.id,
            timeframe=timeframe.name,
            open_time=open_time,
            open=prices[0],
            high=max(prices),
            low=min(prices),
            close=prices[-1],
            volume=sum(t.volume for t in ordered),
            tick_count=len(ordered),
            last_tick_at=ordered[-1].timestamp,
        )


def _pick(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return None


def _to_decimal(value: Any, field_name: str) -> Decimal:
    if isinstance(value, bool):
        raise TickValidationError(f"{field_name} must be numeric", field=field_name)
    if isinstance(value, float) and not math.isfinite(value):
        raise TickValidationError(f"{field_name} must be finite", field=field_name)
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise TickValidationError(
            f"{field_name} must be numeric, got {value!r}", field=field_name
        ) from None
    if not result.is_finite():
        raise TickValidationError(f"{field_name} must be finite", field=field_name)
    return result


def _to_optional_decimal(value: Any, field_name: str) -> Decimal | None:
    if value is None or value == "":
        return None
    return _to_decimal(value, field_name)


def _parse_timestamp(value: Any) -> datetime:
    if value is None or value == "":
        raise TickValidationError("Timestamp is required", field="timestamp")
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if isinstance(value, float) and not math.isfinite(value):
            raise TickValidationError("Timestamp must be finite", field="timestamp")
        return from_epoch_ms(int(value))
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            return from_epoch_ms(int(text))
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except ValueError:
            raise TickValidationError(
                f"Unparseable timestamp {value!r}", field="timestamp"
            ) from None
    raise TickValidationError(f"Unsupported timestamp {value!r}", field="timestamp")


def _parse_volume(value: Any) -> int:
    if value is None or value == "":
        return 0
    volume = _to_decimal(value, "volume")
    if volume != volume.to_integral_value():
        raise TickValidationError(f"Volume must be whole, got {value!r}", field="volume")
    if volume < 0:
        raise TickValidationError("Volume cannot be negative", field="volume")
    if volume > MAX_VOLUME:
        raise TickValidationError(f"Volume out of range, got {value!r}", field="volume")
    return int(volume)


def resolve_price(raw: Mapping[str, Any]) -> Decimal:
    """Resolve the canonical price of a raw tick payload."""
    value = _pick(raw, *PRICE_KEYS)
    if value is None or value == "":
        raise TickValidationError("Tick has no price", field="price")
    price = _to_decimal(value, "price")
    if price <= 0:
        raise TickValidationError(f"Price must be positive, got {price}", field="price")
    if not is_storable_price(price):
        raise TickValidationError(f"Price out of range, got {price}", field="price")
    return price


def parse_tick(raw: Mapping[str, Any]) -> Tick:
    """
    Validate a raw feed payload and build a Tick.

    Accepts camelCase or snake_case keys. Numeric timestamps are epoch
    milliseconds; naive datetimes are taken as UTC.

    Raises:
        TickValidationError: If symbol, price or timestamp is missing or invalid
    """
    if not isinstance(raw, Mapping):
        raise TickValidationError(
            f"Tick payload must be an object, got {type(raw).__name__}", field="payload"
        )
    symbol = raw.get("symbol")
    if not isinstance(symbol, str) or not symbol.strip():
        raise TickValidationError("Tick symbol is required", field="symbol")

    return Tick(
        symbol=symbol.strip(),
        price=resolve_price(raw),
        volume=_parse_volume(raw.get("volume")),
        timestamp=_parse_timestamp(raw.get("timestamp")),
        change=_to_optional_decimal(raw.get("change"), "change") or Decimal("0"),
        change_percent=(
            _to_optional_decimal(_pick(raw, "change_percent", "changePercent"), "change_percent")
            or Decimal("0")
        ),
    )


def parse_instrument_spec(
    raw: Mapping[str, Any],
    default_exchange: str,
    default_instrument_type: str,
) -> InstrumentSpec:
    """Extract instrument metadata carried alongside a raw tick."""
    lot_size = _to_optional_decimal(_pick(raw, "lot_size", "lotSize"), "lot_size")
    return InstrumentSpec(
        symbol=str(raw["symbol"]).strip(),
        exchange=_pick(raw, "exchange") or default_exchange,
        instrument_type=_pick(raw, "instrument_type", "instrumentType") or default_instrument_type,
        lot_size=int(lot_size) if lot_size is not None else None,
        tick_size=_to_optional_decimal(_pick(raw, "tick_size", "tickSize"), "tick_size"),
    )
