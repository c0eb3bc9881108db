"""Data access layer for instruments, timeframes, ticks and candles."""

import logging
from datetime import datetime, timezone
from decimal import Decimal

import aiosqlite

from kandle.market.clock import from_epoch_ms, to_epoch_ms
from kandle.market.types import Candle, Instrument, InstrumentSpec, Tick, TimeframeConfig
from kandle.persistence.database import Database

logger = logging.getLogger(__name__)

_CANDLE_COLUMNS = (
    "instrument_id, timeframe_id, open_time, open, high, low, close, volume, "
    "tick_count, last_tick_at, typical_price, weighted_price, price_change, "
    "price_change_percent, upper_shadow, lower_shadow, body_size, total_range"
)

_CANDLE_SELECT = """
    SELECT c.*, t.name AS timeframe
    FROM candles c JOIN timeframes t ON t.id = c.timeframe_id
"""

_TICK_SELECT = """
    SELECT k.*, i.symbol AS symbol
    FROM ticks k JOIN instruments i ON i.id = k.instrument_id
"""


def _dec(value: float | None) -> Decimal | None:
    return Decimal(str(value)) if value is not None else None


def _now_ms() -> int:
    return to_epoch_ms(datetime.now(timezone.utc))


def _row_to_instrument(row: aiosqlite.Row) -> Instrument:
    return Instrument(
        id=row["id"],
        symbol=row["symbol"],
        name=row["name"],
        exchange=row["exchange"],
        instrument_type=row["instrument_type"],
        lot_size=row["lot_size"],
        tick_size=_dec(row["tick_size"]),
        is_active=bool(row["is_active"]),
        created_at=from_epoch_ms(row["created_at"]),
    )


def _row_to_timeframe(row: aiosqlite.Row) -> TimeframeConfig:
    return TimeframeConfig(
        id=row["id"],
        name=row["name"],
        interval_minutes=row["interval_minutes"],
        description=row["description"],
        is_active=bool(row["is_active"]),
    )


def _row_to_tick(row: aiosqlite.Row) -> Tick:
    return Tick(
        symbol=row["symbol"],
        price=_dec(row["ltp"]),
        volume=row["volume"],
        timestamp=from_epoch_ms(row["ts"]),
        change=_dec(row["change"]),
        change_percent=_dec(row["change_percent"]),
        instrument_id=row["instrument_id"],
    )


def _row_to_candle(row: aiosqlite.Row) -> Candle:
    last_tick_at = row["last_tick_at"]
    return Candle(
        instrument_id=row["instrument_id"],
        timeframe_id=row["timeframe_id"],
        timeframe=row["timeframe"],
        open_time=from_epoch_ms(row["open_time"]),
        open=_dec(row["open"]),
        high=_dec(row["high"]),
        low=_dec(row["low"]),
        close=_dec(row["close"]),
        volume=row["volume"],
        tick_count=row["tick_count"],
        last_tick_at=from_epoch_ms(last_tick_at) if last_tick_at is not None else None,
    )


def _candle_params(candle: Candle) -> tuple:
    return (
        candle.instrument_id,
        candle.timeframe_id,
        to_epoch_ms(candle.open_time),
        float(candle.open),
        float(candle.high),
        float(candle.low),
        float(candle.close),
        candle.volume,
        candle.tick_count,
        to_epoch_ms(candle.last_tick_at) if candle.last_tick_at else None,
        float(candle.typical_price),
        float(candle.weighted_price),
        float(candle.price_change),
        float(candle.price_change_percent),
        float(candle.upper_shadow),
        float(candle.lower_shadow),
        float(candle.body_size),
        float(candle.total_range),
    )


class Repository:
    """Data access layer for all market data entities."""

    def __init__(self, db: Database) -> None:
        self._db = db

    # --- Instrument operations ---

    async def find_instrument_by_symbol(self, symbol: str) -> Instrument | None:
        """Get an instrument by symbol."""
        row = await self._db.fetchone(
            "SELECT * FROM instruments WHERE symbol = ?",
            (symbol,),
        )
        return _row_to_instrument(row) if row else None

    async def create_instrument(self, spec: InstrumentSpec) -> Instrument:
        """
        Create an instrument, or return the existing row for its symbol.

        Concurrent creators race on the UNIQUE(symbol) constraint; the first
        insert wins and every caller reads back the same row.
        """
        now = _now_ms()
        inserted = await self._db.write(
            """
            INSERT INTO instruments
            (symbol, name, exchange, instrument_type, lot_size, tick_size,
             is_active, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
            ON CONFLICT(symbol) DO NOTHING
            """,
            (
                spec.symbol,
                spec.symbol,
                spec.exchange,
                spec.instrument_type,
                spec.lot_size,
                float(spec.tick_size) if spec.tick_size is not None else None,
                now,
                now,
            ),
        )

        instrument = await self.find_instrument_by_symbol(spec.symbol)
        if instrument is None:
            raise RuntimeError(f"Instrument {spec.symbol} vanished after insert")
        if inserted:
            logger.info("Instrument created: %s (%s)", spec.symbol, spec.exchange)
        return instrument

    async def update_instrument_metadata(
        self,
        instrument_id: int,
        lot_size: int | None = None,
        tick_size: Decimal | None = None,
    ) -> None:
        """Backfill lot/tick size where they are still unknown."""
        await self._db.execute(
            """
            UPDATE instruments SET
                lot_size = COALESCE(lot_size, ?),
                tick_size = COALESCE(tick_size, ?),
                updated_at = ?
            WHERE id = ?
            """,
            (
                lot_size,
                float(tick_size) if tick_size is not None else None,
                _now_ms(),
                instrument_id,
            ),
        )
        await self._db.commit()

    # --- Timeframe operations ---

    async def ensure_timeframe(self, timeframe: TimeframeConfig) -> TimeframeConfig:
        """Create a timeframe if it does not exist and return the stored row."""
        created = await self._db.write(
            """
            INSERT INTO timeframes (name, interval_minutes, description, is_active)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(name) DO NOTHING
            """,
            (
                timeframe.name,
                timeframe.interval_minutes,
                timeframe.description,
                int(timeframe.is_active),
            ),
        )
        if created:
            logger.info("Created timeframe: %s", timeframe.name)
        return await self.find_timeframe_by_name(timeframe.name)

    async def set_timeframe_active(self, name: str, is_active: bool) -> bool:
        """Toggle a timeframe. Returns False if the name is unknown."""
        updated = await self._db.write(
            "UPDATE timeframes SET is_active = ? WHERE name = ?",
            (int(is_active), name),
        )
        return updated > 0

    async def find_timeframe_by_name(self, name: str) -> TimeframeConfig | None:
        """Get a timeframe by name."""
        row = await self._db.fetchone(
            "SELECT * FROM timeframes WHERE name = ?",
            (name,),
        )
        return _row_to_timeframe(row) if row else None

    async def list_timeframes(self) -> list[TimeframeConfig]:
        """Get all timeframes, shortest interval first."""
        rows = await self._db.fetchall(
            "SELECT * FROM timeframes ORDER BY interval_minutes ASC, name ASC"
        )
        return [_row_to_timeframe(row) for row in rows]

    async def list_active_timeframes(self) -> list[TimeframeConfig]:
        """Get active timeframes, shortest interval first."""
        rows = await self._db.fetchall(
            """
            SELECT * FROM timeframes WHERE is_active = 1
            ORDER BY interval_minutes ASC, name ASC
            """
        )
        return [_row_to_timeframe(row) for row in rows]

    # --- Tick operations ---

    async def insert_tick(self, instrument_id: int, tick: Tick) -> None:
        """Append a tick."""
        await self._db.execute(
            """
            INSERT INTO ticks
            (instrument_id, ts, ltp, volume, change, change_percent)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                instrument_id,
                to_epoch_ms(tick.timestamp),
                float(tick.price),
                tick.volume,
                float(tick.change),
                float(tick.change_percent),
            ),
        )
        await self._db.commit()

    async def find_ticks_in_range(
        self,
        instrument_id: int,
        start: datetime,
        end: datetime,
    ) -> list[Tick]:
        """Get ticks with start <= timestamp < end, oldest first."""
        rows = await self._db.fetchall(
            _TICK_SELECT
            + """
            WHERE k.instrument_id = ? AND k.ts >= ? AND k.ts < ?
            ORDER BY k.ts ASC, k.id ASC
            """,
            (instrument_id, to_epoch_ms(start), to_epoch_ms(end)),
        )
        return [_row_to_tick(row) for row in rows]

    async def find_latest_tick(self, instrument_id: int) -> Tick | None:
        """Get the most recent tick for an instrument."""
        row = await self._db.fetchone(
            _TICK_SELECT
            + """
            WHERE k.instrument_id = ?
            ORDER BY k.ts DESC, k.id DESC LIMIT 1
            """,
            (instrument_id,),
        )
        return _row_to_tick(row) if row else None

    async def count_ticks(self, instrument_id: int) -> int:
        """Count ticks stored for an instrument."""
        row = await self._db.fetchone(
            "SELECT COUNT(*) AS count FROM ticks WHERE instrument_id = ?",
            (instrument_id,),
        )
        return row["count"] if row else 0

    async def delete_ticks_older_than(self, cutoff: datetime) -> int:
        """Delete ticks strictly older than cutoff across all instruments."""
        return await self._db.write(
            "DELETE FROM ticks WHERE ts < ?",
            (to_epoch_ms(cutoff),),
        )

    # --- Candle operations ---

    async def find_candle(
        self,
        instrument_id: int,
        timeframe_id: int,
        open_time: datetime,
    ) -> Candle | None:
        """Get the candle for a bucket."""
        row = await self._db.fetchone(
            _CANDLE_SELECT
            + """
            WHERE c.instrument_id = ? AND c.timeframe_id = ? AND c.open_time = ?
            """,
            (instrument_id, timeframe_id, to_epoch_ms(open_time)),
        )
        return _row_to_candle(row) if row else None

    async def insert_candle(self, candle: Candle) -> bool:
        """
        Insert a candle unless its bucket already has one.

        Returns:
            True if this call created the row, False if another writer did
        """
        created = await self._db.write(
            f"""
            INSERT INTO candles ({_CANDLE_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(instrument_id, timeframe_id, open_time) DO NOTHING
            """,
            _candle_params(candle),
        )
        return created > 0

    async def upsert_candle(self, candle: Candle) -> Candle:
        """Save or update a candle in one atomic statement."""
        await self._db.execute(
            f"""
            INSERT INTO candles ({_CANDLE_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(instrument_id, timeframe_id, open_time) DO UPDATE SET
                open = excluded.open,
                high = excluded.high,
                low = excluded.low,
                close = excluded.close,
                volume = excluded.volume,
                tick_count = excluded.tick_count,
                last_tick_at = excluded.last_tick_at,
                typical_price = excluded.typical_price,
                weighted_price = excluded.weighted_price,
                price_change = excluded.price_change,
                price_change_percent = excluded.price_change_percent,
                upper_shadow = excluded.upper_shadow,
                lower_shadow = excluded.lower_shadow,
                body_size = excluded.body_size,
                total_range = excluded.total_range
            """,
            _candle_params(candle),
        )
        await self._db.commit()
        return await self.find_candle(
            candle.instrument_id, candle.timeframe_id, candle.open_time
        )

    async def find_candles(
        self,
        instrument_id: int,
        timeframe_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = 100,
    ) -> list[Candle]:
        """Get candles with start <= open_time <= end, newest first.

        A limit of None returns every matching candle.
        """
        sql = _CANDLE_SELECT + " WHERE c.instrument_id = ? AND c.timeframe_id = ?"
        params: list = [instrument_id, timeframe_id]
        if start is not None:
            sql += " AND c.open_time >= ?"
            params.append(to_epoch_ms(start))
        if end is not None:
            sql += " AND c.open_time <= ?"
            params.append(to_epoch_ms(end))
        sql += " ORDER BY c.open_time DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        rows = await self._db.fetchall(sql, tuple(params))
        return [_row_to_candle(row) for row in rows]

    async def find_latest_candle(
        self, instrument_id: int, timeframe_id: int
    ) -> Candle | None:
        """Get the most recent candle for an instrument and timeframe."""
        candles = await self.find_candles(instrument_id, timeframe_id, limit=1)
        return candles[0] if candles else None

    async def find_latest_price_change(
        self, instrument_id: int, timeframe_id: int
    ) -> dict[str, Decimal] | None:
        """Get the stored open, close and change columns of the latest candle."""
        row = await self._db.fetchone(
            """
            SELECT open, close, price_change, price_change_percent
            FROM candles
            WHERE instrument_id = ? AND timeframe_id = ?
            ORDER BY open_time DESC
            LIMIT 1
            """,
            (instrument_id, timeframe_id),
        )
        if row is None:
            return None
        return {key: _dec(row[key]) or Decimal("0") for key in row.keys()}

    async def count_candles(
        self,
        instrument_id: int,
        timeframe_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> int:
        """Count candles, optionally bounded like find_candles."""
        sql = "SELECT COUNT(*) AS count FROM candles WHERE instrument_id = ? AND timeframe_id = ?"
        params: list = [instrument_id, timeframe_id]
        if start is not None:
            sql += " AND open_time >= ?"
            params.append(to_epoch_ms(start))
        if end is not None:
            sql += " AND open_time <= ?"
            params.append(to_epoch_ms(end))

        row = await self._db.fetchone(sql, tuple(params))
        return row["count"] if row else 0

    async def delete_candles_older_than(self, timeframe_id: int, cutoff: datetime) -> int:
        """Delete candles of one timeframe whose bucket starts before cutoff."""
        return await self._db.write(
            "DELETE FROM candles WHERE timeframe_id = ? AND open_time < ?",
            (timeframe_id, to_epoch_ms(cutoff)),
        )
