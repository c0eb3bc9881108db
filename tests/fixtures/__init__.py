"""Test fixtures for Kandle."""

from tests.fixtures.ticks import (
    DAY0_MS,
    TEST_TIMEFRAMES,
    ReferenceBar,
    TickStreamGenerator,
    make_tick,
    raw_tick,
    reference_bars,
    ts,
)

__all__ = [
    "DAY0_MS",
    "TEST_TIMEFRAMES",
    "ReferenceBar",
    "TickStreamGenerator",
    "make_tick",
    "raw_tick",
    "reference_bars",
    "ts",
]
