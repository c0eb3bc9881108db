"""Epoch-aligned bucket arithmetic.

All timeframes are anchored to the Unix epoch rather than to market sessions,
so a 1day bucket runs from 00:00 to 24:00 UTC and a 5min bucket always starts
on a multiple of five minutes past the epoch.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
MS_PER_MINUTE = 60_000

_ONE_MS = timedelta(milliseconds=1)


def ensure_utc(timestamp: datetime) -> datetime:
    """Return an aware UTC datetime; naive values are taken as UTC."""
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc)


def to_epoch_ms(timestamp: datetime) -> int:
    """Convert a datetime to integer epoch milliseconds (floored)."""
    return (ensure_utc(timestamp) - EPOCH) // _ONE_MS


def from_epoch_ms(epoch_ms: int) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return EPOCH + timedelta(milliseconds=epoch_ms)


def minutes_to_ms(interval_minutes: float) -> int:
    """Convert an interval in (possibly fractional) minutes to milliseconds."""
    interval_ms = round(interval_minutes * MS_PER_MINUTE)
    if interval_ms <= 0:
        raise ValueError(f"Interval must be at least 1ms, got {interval_minutes} minutes")
    return interval_ms


def bucket_start_ms(timestamp_ms: int, interval_ms: int) -> int:
    """Start of the bucket containing timestamp_ms."""
    if interval_ms <= 0:
        raise ValueError("Interval must be positive")
    return (timestamp_ms // interval_ms) * interval_ms


@dataclass(frozen=True)
class Bucket:
    """Half-open time interval [start, end)."""

    start: datetime
    end: datetime

    @property
    def start_ms(self) -> int:
        return to_epoch_ms(self.start)

    @property
    def end_ms(self) -> int:
        return to_epoch_ms(self.end)

    def contains(self, timestamp: datetime) -> bool:
        """Check if timestamp falls inside the bucket."""
        return self.start_ms <= to_epoch_ms(timestamp) < self.end_ms


def get_bucket(timestamp: datetime, interval_ms: int) -> Bucket:
    """Calculate the bucket a timestamp falls into."""
    start_ms = bucket_start_ms(to_epoch_ms(timestamp), interval_ms)
    return Bucket(
        start=from_epoch_ms(start_ms),
        end=from_epoch_ms(start_ms + interval_ms),
    )


def bucket_start(timestamp: datetime, interval_minutes: float) -> datetime:
    """Calculate the bucket open time for a timestamp and interval."""
    return get_bucket(timestamp, minutes_to_ms(interval_minutes)).start


def bucket_end(timestamp: datetime, interval_minutes: float) -> datetime:
    """Calculate when the bucket containing timestamp closes."""
    return get_bucket(timestamp, minutes_to_ms(interval_minutes)).end
