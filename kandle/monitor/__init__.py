"""Logging setup for the candle engine."""

from kandle.monitor.logger import get_ingest_logger, setup_logging

__all__ = [
    "setup_logging",
    "get_ingest_logger",
]
