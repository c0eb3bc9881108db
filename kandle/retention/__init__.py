"""Retention sweeping for ticks and candles."""

from kandle.retention.sweeper import RetentionPolicy, RetentionSweeper, SweepResult

__all__ = ["RetentionPolicy", "RetentionSweeper", "SweepResult"]
