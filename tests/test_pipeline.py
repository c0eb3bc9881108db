"""
Tests for TickIngestionPipeline.

Covers:
- Fan-out of one tick to every active timeframe
- Random streams checked against independently computed bars
- Partial failure across timeframes
- Tick persistence failures and validation rejections
- Instrument auto-creation and metadata backfill
- Per-symbol ordering under concurrent submission
"""

import asyncio
from collections import defaultdict
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import aiosqlite
import pytest

from kandle.errors import PersistenceError, TickValidationError
from kandle.ingestion.pipeline import TickIngestionPipeline
from kandle.market.candle import CandleAggregator
from kandle.market.clock import to_epoch_ms

from tests.fixtures.ticks import (
    DAY0_MS,
    TickStreamGenerator,
    make_tick,
    raw_tick,
    reference_bars,
    ts,
)


class TestFanOut:
    @pytest.mark.asyncio
    async def test_tick_updates_every_active_timeframe(self, pipeline, repo, registry):
        result = await pipeline.ingest(raw_tick(DAY0_MS + 1234, "19500.5", volume=75))

        assert result.symbol == "NIFTY"
        assert result.timestamp == ts(DAY0_MS + 1234)
        assert result.updated == ["1sec", "1min", "5min", "1hour", "1day"]
        assert not result.is_partial
        assert result.summary == "5 of 5 timeframes updated"
        assert all(outcome.action == "created" for outcome in result.outcomes)

        assert await repo.count_ticks(result.instrument_id) == 1
        for timeframe in registry.list_active():
            candle = await repo.find_latest_candle(result.instrument_id, timeframe.id)
            assert candle.open == Decimal("19500.5")
            assert candle.volume == 75

    @pytest.mark.asyncio
    async def test_scenario_one_second_buckets_across_timeframes(self, pipeline, repo, registry):
        await pipeline.ingest_many([
            raw_tick(1000, "100", 10),
            raw_tick(1500, "102", 20),
            raw_tick(1999, "99", 30),
            raw_tick(2001, "101", 40),
        ])
        instrument = await repo.find_instrument_by_symbol("NIFTY")

        one_sec = await repo.find_candles(
            instrument.id, registry.by_name("1sec").id, limit=None
        )
        five_min = await repo.find_candles(
            instrument.id, registry.by_name("5min").id, limit=None
        )

        assert [c.open_time for c in one_sec] == [ts(2000), ts(1000)]
        assert [c.volume for c in one_sec] == [40, 60]
        assert len(five_min) == 1
        assert five_min[0].open_time == ts(0)
        assert five_min[0].open == Decimal("100")
        assert five_min[0].close == Decimal("101")
        assert five_min[0].volume == 100

    @pytest.mark.asyncio
    async def test_inactive_timeframes_are_skipped(self, repo, registry, aggregator):
        await repo.set_timeframe_active("1sec", False)
        await registry.refresh(repo)
        pipeline = TickIngestionPipeline(repo, registry, aggregator)

        result = await pipeline.ingest(raw_tick(DAY0_MS, "100"))

        assert "1sec" not in result.updated
        assert result.total == 4


class TestRandomStreams:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("policy", ["single_tick", "reaggregate"])
    async def test_candles_match_reference_bars(self, repo, registry, policy):
        print("\n" + "=" * 60)
        print(f"Test: random stream vs reference bars ({policy})")
        print("=" * 60)

        pipeline = TickIngestionPipeline(
            repo, registry, CandleAggregator(repo, update_policy=policy)
        )
        ticks = TickStreamGenerator(seed=7).generate(300)

        volumes_seen: dict[tuple, int] = defaultdict(int)
        for raw in ticks:
            result = await pipeline.ingest(raw)
            assert not result.is_partial, result.failed

            for outcome in result.outcomes:
                key = (outcome.timeframe, outcome.open_time)
                assert outcome.candle.volume >= volumes_seen[key]
                volumes_seen[key] = outcome.candle.volume

        instrument = await repo.find_instrument_by_symbol("NIFTY")
        for timeframe in registry.list_active():
            expected = reference_bars(ticks, timeframe.interval_ms)
            candles = await repo.find_candles(instrument.id, timeframe.id, limit=None)

            print(f"  {timeframe.name}: {len(candles)} candles")
            assert len(candles) == len(expected)

            for candle in candles:
                bar = expected[to_epoch_ms(candle.open_time)]
                assert candle.open == bar.open
                assert candle.high == bar.high
                assert candle.low == bar.low
                assert candle.close == bar.close
                assert candle.volume == bar.volume
                assert candle.high >= max(candle.open, candle.close)
                assert candle.low <= min(candle.open, candle.close)

        print("✅ PASS")


class TestPartialFailure:
    @pytest.mark.asyncio
    async def test_one_timeframe_failure_does_not_block_others(self, pipeline, repo, registry):
        print("\n" + "=" * 60)
        print("Test: store error on 1hour only")
        print("=" * 60)

        one_hour = registry.by_name("1hour")
        real_find = repo.find_candle

        async def flaky_find(instrument_id, timeframe_id, open_time):
            if timeframe_id == one_hour.id:
                raise aiosqlite.OperationalError("database is locked")
            return await real_find(instrument_id, timeframe_id, open_time)

        with patch.object(repo, "find_candle", new=flaky_find):
            result = await pipeline.ingest(raw_tick(DAY0_MS, "100", 10))

        print(f"Summary: {result.summary}")
        print(f"Failed: {result.failed}")

        assert result.is_partial
        assert list(result.failed) == ["1hour"]
        assert "database is locked" in result.failed["1hour"]
        assert result.updated == ["1sec", "1min", "5min", "1day"]
        assert result.summary == "4 of 5 timeframes updated"
        assert await repo.count_ticks(result.instrument_id) == 1
        assert await repo.count_candles(result.instrument_id, one_hour.id) == 0

        # The stored tick is picked up once the timeframe recovers
        result = await pipeline.ingest(raw_tick(DAY0_MS + 1000, "101", 5))
        candle = await repo.find_candle(result.instrument_id, one_hour.id, ts(DAY0_MS))

        assert not result.is_partial
        assert candle.volume == 15
        assert candle.open == Decimal("100")

        print("✅ PASS")

    @pytest.mark.asyncio
    async def test_consistency_error_recorded_per_timeframe(self, pipeline, repo):
        await pipeline.ingest(raw_tick(DAY0_MS + 5000, "100", 10))
        result = await pipeline.ingest(raw_tick(DAY0_MS + 4000, "90", 3))

        # 1sec has a fresh bucket for 4000; every wider bucket saw 5000 first
        assert result.updated == ["1sec"]
        assert sorted(result.failed) == ["1day", "1hour", "1min", "5min"]
        assert await repo.count_ticks(result.instrument_id) == 2


class TestRejections:
    @pytest.mark.asyncio
    async def test_tick_write_failure_aborts_aggregation(self, pipeline, repo, registry):
        failing = AsyncMock(side_effect=aiosqlite.OperationalError("disk I/O error"))

        with patch.object(repo, "insert_tick", new=failing):
            with pytest.raises(PersistenceError):
                await pipeline.ingest(raw_tick(DAY0_MS, "100", 10))

        instrument = await repo.find_instrument_by_symbol("NIFTY")
        for timeframe in registry.list_active():
            assert await repo.count_candles(instrument.id, timeframe.id) == 0

    @pytest.mark.asyncio
    async def test_integer_overflow_becomes_persistence_error(self, pipeline, repo):
        failing = AsyncMock(
            side_effect=OverflowError("Python int too large to convert to SQLite INTEGER")
        )

        with patch.object(repo, "insert_tick", new=failing):
            with pytest.raises(PersistenceError):
                await pipeline.ingest(raw_tick(DAY0_MS, "100", 10))

    @pytest.mark.asyncio
    async def test_invalid_tick_persists_nothing(self, pipeline, repo):
        with pytest.raises(TickValidationError):
            await pipeline.ingest({"symbol": "BAD", "ltp": -1, "timestamp": DAY0_MS})

        assert await repo.find_instrument_by_symbol("BAD") is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "extra",
        [{"ltp": "1e400"}, {"ltp": "1e-400"}, {"volume": "1e30"}],
    )
    async def test_unstorable_values_rejected_before_write(self, pipeline, repo, extra):
        payload = raw_tick(DAY0_MS, "100", 10)
        payload.update(extra)

        with pytest.raises(TickValidationError):
            await pipeline.ingest(payload)

        assert await repo.find_instrument_by_symbol("NIFTY") is None

        result = await pipeline.ingest(raw_tick(DAY0_MS + 500, "100", 10))

        assert not result.is_partial
        assert result.failed == {}


class TestInstruments:
    @pytest.mark.asyncio
    async def test_instrument_created_from_tick_metadata(self, pipeline, repo):
        await pipeline.ingest(
            raw_tick(DAY0_MS, "1450", symbol="INFY", exchange="BSE", lotSize=1)
        )

        instrument = await repo.find_instrument_by_symbol("INFY")
        assert instrument.exchange == "BSE"
        assert instrument.instrument_type == "EQ"
        assert instrument.lot_size == 1
        assert instrument.tick_size is None

    @pytest.mark.asyncio
    async def test_missing_metadata_is_backfilled(self, pipeline, repo):
        await pipeline.ingest(raw_tick(DAY0_MS, "1450", symbol="INFY"))
        await pipeline.ingest(raw_tick(DAY0_MS + 1, "1451", symbol="INFY", tickSize="0.05"))

        instrument = await repo.find_instrument_by_symbol("INFY")
        assert instrument.tick_size == Decimal("0.05")
        assert instrument.exchange == "NSE"

    @pytest.mark.asyncio
    async def test_parsed_ticks_accepted(self, pipeline, repo):
        result = await pipeline.ingest(make_tick(DAY0_MS, "250", 3, symbol="TCS"))

        instrument = await repo.find_instrument_by_symbol("TCS")
        assert instrument.id == result.instrument_id
        assert not result.is_partial


class TestOrdering:
    @pytest.mark.asyncio
    async def test_concurrent_submissions_keep_arrival_order(self, pipeline, repo, registry):
        print("\n" + "=" * 60)
        print("Test: concurrent ingest for two symbols")
        print("=" * 60)

        raws = []
        for i in range(20):
            raws.append(raw_tick(DAY0_MS + i * 100, str(100 + i), 1, symbol="AAA"))
            raws.append(raw_tick(DAY0_MS + i * 100, str(200 - i), 1, symbol="BBB"))

        results = await asyncio.gather(*(pipeline.ingest(raw) for raw in raws))

        assert not any(result.is_partial for result in results)

        one_min = registry.by_name("1min")
        for symbol, first, last in [("AAA", "100", "119"), ("BBB", "200", "181")]:
            instrument = await repo.find_instrument_by_symbol(symbol)
            candle = await repo.find_candle(instrument.id, one_min.id, ts(DAY0_MS))
            print(f"  {symbol}: O={candle.open} C={candle.close} V={candle.volume}")
            assert candle.open == Decimal(first)
            assert candle.close == Decimal(last)
            assert candle.volume == 20
            assert candle.tick_count == 20

        print("✅ PASS")
