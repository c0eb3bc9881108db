"""Tests for epoch-aligned bucket arithmetic."""

import random
from datetime import datetime, timedelta, timezone

import pytest

from kandle.market.clock import (
    EPOCH,
    Bucket,
    bucket_end,
    bucket_start,
    bucket_start_ms,
    from_epoch_ms,
    get_bucket,
    minutes_to_ms,
    to_epoch_ms,
)

from tests.fixtures.ticks import DAY0_MS


class TestBucketStart:
    """Bucket starts are floor(ts / interval) * interval."""

    def test_scenario_one_second_buckets(self):
        assert bucket_start_ms(1000, 1000) == 1000
        assert bucket_start_ms(1500, 1000) == 1000
        assert bucket_start_ms(1999, 1000) == 1000
        assert bucket_start_ms(2000, 1000) == 2000
        assert bucket_start_ms(2001, 1000) == 2000

    def test_random_timestamps_land_inside_their_bucket(self):
        rng = random.Random(42)
        for _ in range(500):
            ts_ms = rng.randint(0, 2_000_000_000_000)
            interval_ms = rng.choice([1000, 60_000, 300_000, 3_600_000, 86_400_000, 7_000])
            start = bucket_start_ms(ts_ms, interval_ms)

            assert start % interval_ms == 0
            assert start <= ts_ms < start + interval_ms

    def test_negative_timestamps_floor_towards_minus_infinity(self):
        assert bucket_start_ms(-1, 1000) == -1000
        assert bucket_start_ms(-1000, 1000) == -1000
        assert bucket_start_ms(-1001, 1000) == -2000

    def test_non_positive_interval_rejected(self):
        with pytest.raises(ValueError):
            bucket_start_ms(1000, 0)

    def test_day_buckets_start_at_utc_midnight(self):
        noon = from_epoch_ms(DAY0_MS) + timedelta(hours=12, minutes=34)
        assert bucket_start(noon, 1440) == datetime(2023, 11, 14, tzinfo=timezone.utc)
        assert bucket_end(noon, 1440) == datetime(2023, 11, 15, tzinfo=timezone.utc)

    def test_five_minute_buckets_align_to_epoch(self):
        moment = datetime(2023, 11, 14, 9, 17, 42, tzinfo=timezone.utc)
        assert bucket_start(moment, 5) == datetime(2023, 11, 14, 9, 15, tzinfo=timezone.utc)
        assert bucket_end(moment, 5) == datetime(2023, 11, 14, 9, 20, tzinfo=timezone.utc)

    def test_non_utc_timestamps_are_normalized(self):
        ist = timezone(timedelta(hours=5, minutes=30))
        moment = datetime(2023, 11, 14, 14, 47, 42, tzinfo=ist)  # 09:17:42 UTC
        assert bucket_start(moment, 5) == datetime(2023, 11, 14, 9, 15, tzinfo=timezone.utc)


class TestConversions:
    def test_epoch_ms_round_trip(self):
        moment = datetime(2023, 11, 14, 9, 17, 42, 123000, tzinfo=timezone.utc)
        assert from_epoch_ms(to_epoch_ms(moment)) == moment

    def test_sub_millisecond_precision_is_floored(self):
        moment = EPOCH + timedelta(microseconds=1999)
        assert to_epoch_ms(moment) == 1

    def test_naive_datetimes_are_taken_as_utc(self):
        assert to_epoch_ms(datetime(1970, 1, 1, 0, 0, 1)) == 1000

    def test_fractional_minutes(self):
        assert minutes_to_ms(1 / 60) == 1000
        assert minutes_to_ms(0.5) == 30_000
        assert minutes_to_ms(1440) == 86_400_000

    def test_zero_interval_rejected(self):
        with pytest.raises(ValueError):
            minutes_to_ms(0)


class TestBucket:
    def test_bucket_is_half_open(self):
        bucket = get_bucket(from_epoch_ms(1500), 1000)

        assert bucket == Bucket(start=from_epoch_ms(1000), end=from_epoch_ms(2000))
        assert bucket.contains(from_epoch_ms(1000))
        assert bucket.contains(from_epoch_ms(1999))
        assert not bucket.contains(from_epoch_ms(2000))
        assert not bucket.contains(from_epoch_ms(999))

    def test_adjacent_buckets_share_a_boundary(self):
        first = get_bucket(from_epoch_ms(1999), 1000)
        second = get_bucket(from_epoch_ms(2000), 1000)

        assert first.end == second.start
        assert second.start_ms == 2000
        assert second.end_ms == 3000
