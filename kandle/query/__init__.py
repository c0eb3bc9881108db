"""Read-side candle queries."""

from kandle.query.service import (
    CandlePage,
    CandleQueryService,
    InstrumentStats,
    PriceChange,
    VolumeLevel,
)

__all__ = [
    "CandlePage",
    "CandleQueryService",
    "InstrumentStats",
    "PriceChange",
    "VolumeLevel",
]
