"""Market data types, bucket arithmetic, timeframes and candle aggregation."""

from kandle.market.candle import AggregationOutcome, CandleAggregator
from kandle.market.clock import Bucket, bucket_end, bucket_start, get_bucket
from kandle.market.timeframes import TimeframeRegistry, seed_timeframes
from kandle.market.types import (
    Candle,
    Instrument,
    InstrumentSpec,
    Tick,
    TimeframeConfig,
    parse_tick,
)

__all__ = [
    "AggregationOutcome",
    "Bucket",
    "Candle",
    "CandleAggregator",
    "Instrument",
    "InstrumentSpec",
    "Tick",
    "TimeframeConfig",
    "TimeframeRegistry",
    "bucket_end",
    "bucket_start",
    "get_bucket",
    "parse_tick",
    "seed_timeframes",
]
