"""Database schema definitions."""

SCHEMA = [
    # Instruments, one row per symbol
    """
    CREATE TABLE IF NOT EXISTS instruments (
        id INTEGER PRIMARY KEY,
        symbol TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        exchange TEXT NOT NULL,
        instrument_type TEXT NOT NULL,
        lot_size INTEGER,
        tick_size REAL,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    )
    """,
    # Timeframe configuration
    """
    CREATE TABLE IF NOT EXISTS timeframes (
        id INTEGER PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        interval_minutes REAL NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        is_active INTEGER NOT NULL DEFAULT 1
    )
    """,
    # Raw ticks (append-only)
    """
    CREATE TABLE IF NOT EXISTS ticks (
        id INTEGER PRIMARY KEY,
        instrument_id INTEGER NOT NULL REFERENCES instruments(id),
        ts INTEGER NOT NULL,
        ltp REAL NOT NULL,
        volume INTEGER NOT NULL,
        change REAL NOT NULL DEFAULT 0,
        change_percent REAL NOT NULL DEFAULT 0
    )
    """,
    # Index for tick range scans
    """
    CREATE INDEX IF NOT EXISTS idx_ticks_instrument_ts
    ON ticks(instrument_id, ts)
    """,
    # Index for retention sweeps
    """
    CREATE INDEX IF NOT EXISTS idx_ticks_ts
    ON ticks(ts)
    """,
    # Candles, one row per (instrument, timeframe, bucket start)
    """
    CREATE TABLE IF NOT EXISTS candles (
        id INTEGER PRIMARY KEY,
        instrument_id INTEGER NOT NULL REFERENCES instruments(id),
        timeframe_id INTEGER NOT NULL REFERENCES timeframes(id),
        open_time INTEGER NOT NULL,
        open REAL NOT NULL,
        high REAL NOT NULL,
        low REAL NOT NULL,
        close REAL NOT NULL,
        volume INTEGER NOT NULL,
        tick_count INTEGER NOT NULL DEFAULT 1,
        last_tick_at INTEGER,
        typical_price REAL,
        weighted_price REAL,
        price_change REAL,
        price_change_percent REAL,
        upper_shadow REAL,
        lower_shadow REAL,
        body_size REAL,
        total_range REAL,
        UNIQUE(instrument_id, timeframe_id, open_time)
    )
    """,
    # Index for candle queries
    """
    CREATE INDEX IF NOT EXISTS idx_candles_instrument_timeframe
    ON candles(instrument_id, timeframe_id, open_time DESC)
    """,
]
